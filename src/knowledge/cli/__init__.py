"""
Knowledge CLI Module.

Provides command-line tools for:
- Ingesting a board's documents into its index (knowledge-ingest)
- Inspecting retrieval results for a query (knowledge-query)
"""
