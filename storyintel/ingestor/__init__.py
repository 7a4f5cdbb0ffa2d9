"""Story ingestion service."""
