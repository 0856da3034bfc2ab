"""Core utilities shared across agent-providers."""
