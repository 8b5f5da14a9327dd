"""
Knowledge retrieval for divination boards.

Ingests plain-text reference documents per board (bazi, qimen, ...) into a
two-level passage index and retrieves grounding context for chat prompts.
"""

__version__ = "0.1.0"
