"""Vector store, item store and the ingest/retrieve pipelines."""
