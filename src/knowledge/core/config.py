"""
Configuration for the knowledge module.

Settings come from three layers, later layers winning:

1. Dataclass defaults
2. An optional YAML file (``embedding:``, ``chunking:``, ``retrieval:``,
   ``data_dir:`` sections)
3. Environment variables (optionally seeded from ``.env.local``)
"""

import logging
import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml
from dotenv import load_dotenv

from .exceptions import KnowledgeConfigError


logger = logging.getLogger(__name__)


PROVIDER_OPENAI = "openai"
PROVIDER_DASHSCOPE = "dashscope"
SUPPORTED_PROVIDERS = (PROVIDER_OPENAI, PROVIDER_DASHSCOPE)

# Smaller default for providers with stricter per-request input limits
DEFAULT_BATCH_SIZES = {
    PROVIDER_OPENAI: 50,
    PROVIDER_DASHSCOPE: 10,
}

DEFAULT_DOMAIN_KEYWORDS = (
    "用神", "喜神", "忌神", "格局", "十神", "五行", "天干", "地支",
    "日主", "旺衰", "大运", "流年", "值符", "值使", "八门", "九星",
    "八神", "九宫", "遁甲", "吉", "凶",
)


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise KnowledgeConfigError(f"{name} must be an integer, got {raw!r}")
    if value <= 0:
        raise KnowledgeConfigError(f"{name} must be positive, got {value}")
    return value


def _env_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def validate_board_name(board: str) -> str:
    """
    Return ``board`` unchanged if it is usable as a single path component.

    Raises:
        KnowledgeConfigError: If the name is empty, contains a path
            separator or ``..``, or is otherwise not a plain file name
    """
    if (
        not board
        or board != board.strip()
        or "/" in board
        or "\\" in board
        or ".." in board
        or "\x00" in board
        or board.startswith(".")
    ):
        raise KnowledgeConfigError(f"Invalid board name: {board!r}")
    return board


@dataclass
class EmbeddingConfig:
    """
    Embedding provider settings.

    Attributes:
        provider: Provider wire shape (openai or dashscope)
        api_key: Bearer credential for the provider
        base_url: Provider base URL (endpoint path is provider-specific)
        model: Embedding model identifier
        timeout_seconds: HTTP request timeout
        batch_size: Inputs per request; None means the provider default
    """
    provider: str = PROVIDER_OPENAI
    api_key: Optional[str] = None
    base_url: str = "https://api.deepseek.com"
    model: Optional[str] = None
    timeout_seconds: int = 60
    batch_size: Optional[int] = None

    @property
    def effective_batch_size(self) -> int:
        """Configured batch size, or the provider default."""
        if self.batch_size:
            return self.batch_size
        return DEFAULT_BATCH_SIZES.get(self.provider, DEFAULT_BATCH_SIZES[PROVIDER_OPENAI])

    def validate(self) -> None:
        """
        Check that the settings are usable for provider calls.

        Raises:
            KnowledgeConfigError: If credentials, model or provider are invalid
        """
        if self.provider not in SUPPORTED_PROVIDERS:
            raise KnowledgeConfigError(
                f"Unknown embedding provider {self.provider!r}; "
                f"expected one of {', '.join(SUPPORTED_PROVIDERS)}"
            )
        if not self.api_key:
            raise KnowledgeConfigError(
                "Embedding API key is missing (set EMBEDDING_API_KEY or DEEPSEEK_API_KEY)."
            )
        if not self.model:
            raise KnowledgeConfigError("Embedding model is missing (set EMBEDDING_MODEL).")

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None, base: Optional["EmbeddingConfig"] = None) -> "EmbeddingConfig":
        """Create config from environment variables, on top of ``base``."""
        env = os.environ if env is None else env
        base = base or cls()
        batch_size = _env_int(env, "EMBEDDING_BATCH_SIZE", base.batch_size or 0) or None
        return cls(
            provider=(env.get("EMBEDDING_PROVIDER") or base.provider).strip().lower(),
            api_key=env.get("EMBEDDING_API_KEY") or env.get("DEEPSEEK_API_KEY") or base.api_key,
            base_url=env.get("EMBEDDING_BASE_URL") or base.base_url,
            model=env.get("EMBEDDING_MODEL") or base.model,
            timeout_seconds=_env_int(env, "EMBEDDING_TIMEOUT_SECONDS", base.timeout_seconds),
            batch_size=batch_size,
        )


@dataclass
class ChunkingConfig:
    """
    Chunker tuning.

    Attributes:
        max_chars: Upper bound on any passage sent to the embedder
        overlap: Overlap used when a passage exceeds ``max_chars``
        parent_intro_chars: Characters of the first paragraph kept in a parent passage
        child_max_chars: Size cap for child passages
        child_overlap: Overlap carried between consecutive child passages
        min_meaningful_chars: Minimum normalised length for a child passage
        keywords: Domain keywords that keep short child passages
    """
    max_chars: int = 2000
    overlap: int = 200
    parent_intro_chars: int = 250
    child_max_chars: int = 900
    child_overlap: int = 120
    min_meaningful_chars: int = 30
    keywords: tuple = DEFAULT_DOMAIN_KEYWORDS

    def validate(self) -> None:
        """Raise KnowledgeConfigError if overlaps do not fit their caps."""
        if self.child_overlap >= self.child_max_chars:
            raise KnowledgeConfigError("child overlap must be less than child max size")
        if self.overlap >= self.max_chars:
            raise KnowledgeConfigError("chunk overlap must be less than chunk max size")

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None, base: Optional["ChunkingConfig"] = None) -> "ChunkingConfig":
        """Create config from environment variables, on top of ``base``."""
        env = os.environ if env is None else env
        base = base or cls()
        return replace(
            base,
            max_chars=_env_int(env, "EMBEDDING_MAX_CHARS", base.max_chars),
            overlap=_env_int(env, "EMBEDDING_OVERLAP", base.overlap),
            parent_intro_chars=_env_int(env, "KNOWLEDGE_PARENT_INTRO_CHARS", base.parent_intro_chars),
            child_max_chars=_env_int(env, "KNOWLEDGE_CHILD_MAX_CHARS", base.child_max_chars),
            child_overlap=_env_int(env, "KNOWLEDGE_CHILD_OVERLAP", base.child_overlap),
            min_meaningful_chars=_env_int(env, "KNOWLEDGE_MIN_MEANINGFUL_CHARS", base.min_meaningful_chars),
        )


@dataclass
class RetrievalConfig:
    """
    Retrieval tuning.

    Attributes:
        hierarchical: Process-wide switch between hierarchical and flat ranking
        top_k: Default number of passages for flat retrieval
        top_p: Parents selected in hierarchical retrieval (clamped to 1..3)
        max_context_chars: Character budget for hierarchical sections (minimum 500)
    """
    hierarchical: bool = True
    top_k: int = 5
    top_p: int = 2
    max_context_chars: int = 3500

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None, base: Optional["RetrievalConfig"] = None) -> "RetrievalConfig":
        """Create config from environment variables, on top of ``base``."""
        env = os.environ if env is None else env
        base = base or cls()
        return cls(
            hierarchical=_env_bool(env, "USE_HIER_KNOWLEDGE", base.hierarchical),
            top_k=_env_int(env, "KNOWLEDGE_TOP_K", base.top_k),
            top_p=_env_int(env, "KNOWLEDGE_TOP_P", base.top_p),
            max_context_chars=_env_int(env, "KNOWLEDGE_MAX_CONTEXT_CHARS", base.max_context_chars),
        )


@dataclass
class KnowledgeSettings:
    """
    Top-level settings for ingestion and retrieval.

    Example:
        >>> settings = KnowledgeSettings.load(Path("knowledge.yaml"))
        >>> settings.index_dir
        PosixPath('data/index')
    """
    data_dir: Path = Path("data")
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    chunking: ChunkingConfig = field(default_factory=ChunkingConfig)
    retrieval: RetrievalConfig = field(default_factory=RetrievalConfig)

    @property
    def knowledge_dir(self) -> Path:
        """Root of the per-board source document directories."""
        return Path(self.data_dir) / "knowledge"

    @property
    def index_dir(self) -> Path:
        """Directory holding one ``<board>.json`` index per board."""
        return Path(self.data_dir) / "index"

    def board_dir(self, board: str) -> Path:
        """Source document directory for ``board``."""
        return self.knowledge_dir / validate_board_name(board)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "KnowledgeSettings":
        """Create from a parsed YAML mapping; unknown keys are ignored."""
        data = data or {}

        def section(config_cls, key):
            values = data.get(key) or {}
            if not isinstance(values, dict):
                raise KnowledgeConfigError(f"Config section '{key}' must be a mapping")
            known = {f.name for f in fields(config_cls)}
            kwargs = {k: v for k, v in values.items() if k in known}
            if "keywords" in kwargs:
                kwargs["keywords"] = tuple(kwargs["keywords"])
            return config_cls(**kwargs)

        return cls(
            data_dir=Path(data.get("data_dir", "data")),
            embedding=section(EmbeddingConfig, "embedding"),
            chunking=section(ChunkingConfig, "chunking"),
            retrieval=section(RetrievalConfig, "retrieval"),
        )

    @classmethod
    def from_yaml(cls, config_path: Path) -> "KnowledgeSettings":
        """Load settings from a YAML file."""
        config_path = Path(config_path)
        if not config_path.exists():
            raise KnowledgeConfigError(f"Config file not found: {config_path}")

        logger.info(f"Loading config from: {config_path}")

        with open(config_path, "r", encoding="utf-8") as f:
            try:
                data = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise KnowledgeConfigError(f"Invalid YAML in {config_path}: {e}")

        if data is not None and not isinstance(data, dict):
            raise KnowledgeConfigError(f"Config file {config_path} must contain a mapping")
        return cls.from_dict(data or {})

    def with_env_overrides(self, env: Optional[Mapping[str, str]] = None) -> "KnowledgeSettings":
        """Return a copy with environment variable overrides applied."""
        env = os.environ if env is None else env
        return KnowledgeSettings(
            data_dir=Path(env.get("KNOWLEDGE_DATA_DIR") or self.data_dir),
            embedding=EmbeddingConfig.from_env(env, base=self.embedding),
            chunking=ChunkingConfig.from_env(env, base=self.chunking),
            retrieval=RetrievalConfig.from_env(env, base=self.retrieval),
        )

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "KnowledgeSettings":
        """Create settings from defaults plus environment variables."""
        return cls().with_env_overrides(env)

    @classmethod
    def load(
        cls,
        config_path: Optional[Path] = None,
        env_file: Optional[Path] = Path(".env.local"),
    ) -> "KnowledgeSettings":
        """
        Load settings the way the command-line tools do.

        Args:
            config_path: Optional YAML file
            env_file: dotenv file to seed the environment from; variables
                already set in the environment are not overridden

        Returns:
            Fully resolved settings
        """
        if env_file is not None and Path(env_file).exists():
            load_dotenv(dotenv_path=env_file, override=False)
            logger.debug(f"Loaded environment from {env_file}")

        settings = cls.from_yaml(config_path) if config_path else cls()
        return settings.with_env_overrides()
