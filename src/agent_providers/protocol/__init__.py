"""Canonical message protocol and backend normalizers."""

from .messages import CanonicalMessage, QueryResult, ResultTracker, Usage


__all__ = ["CanonicalMessage", "QueryResult", "ResultTracker", "Usage"]
