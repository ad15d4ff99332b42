"""Multi-worker scheduling: page-range partitioning, process supervision, restarts."""
