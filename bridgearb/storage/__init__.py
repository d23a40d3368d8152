"""Persistence for execution history."""

from .db import ExecutionHistory

__all__ = [
    'ExecutionHistory',
]
