"""jobstream backend: ingestion pipelines, entity resolution, storage adapters
and the workflow engine that drives discovery and status checks.
"""
