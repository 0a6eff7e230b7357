"""Automated yield-strategy engine: condition evaluation, action execution and scheduling."""
