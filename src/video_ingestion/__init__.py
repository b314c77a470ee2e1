"""Video transcript ingestion pipeline.

This package turns YouTube talk transcripts into enriched, embedded segments
and commits them in batches to a portable SQLite store for downstream search.
"""
