"""Single-worker collection: renderer adapter, extraction, estimation, coverage control."""
