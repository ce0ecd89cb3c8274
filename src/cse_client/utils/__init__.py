"""Shared utilities: retry policy, rate limiting, logging."""
