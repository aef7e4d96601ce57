"""Pipelines for job ingestion and résumé parsing.

Each step (normalization, extraction, resolution, persistence) is callable on
its own so workflows and the API can reuse it.
"""
