"""
Collection-level services built on DocumentManager.

All services commit in batches and walk the keyspace with cursor scans.
"""

from .batch import BatchProcessor
from .bulk import BulkOperations
from .maintenance import IndexMaintenance

__all__ = [
    "BatchProcessor",
    "BulkOperations",
    "IndexMaintenance",
]
