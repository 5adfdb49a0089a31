"""Streaming ingestion and session aggregation for clickstream events."""
