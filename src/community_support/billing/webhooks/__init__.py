"""Provider webhook ingestion."""
