"""Text ingestion and chunking."""
