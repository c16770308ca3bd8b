"""
Storage Module - the primary storage contract and its SQLAlchemy backend.
"""

from .base import PrimaryStorage
from .sql import SQLPrimaryStorage

__all__ = [
    "PrimaryStorage",
    "SQLPrimaryStorage",
]
