"""Web framework adapters for the query and ingestion surface."""
