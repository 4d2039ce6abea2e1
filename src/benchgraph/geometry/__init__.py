"""Aggregation and curve geometry."""
