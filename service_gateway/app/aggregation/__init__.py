"""Aggregation of backend results according to a binding's strategy."""

from .engine import AggregateResult, AggregationEngine, merge_payloads

__all__ = ["AggregateResult", "AggregationEngine", "merge_payloads"]
