"""Shared ingestion utilities."""
