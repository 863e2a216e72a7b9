"""CLI command modules."""

from .learn import learn
from .memory import memory

__all__ = [
    "learn",
    "memory",
]
