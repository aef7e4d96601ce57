"""Scheduled and on-demand workflows: the engine plus discovery and status checks."""
