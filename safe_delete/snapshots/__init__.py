"""
Snapshot Module - write-once capture of deleted records and their manifests.
"""

from .codec import decode_attributes, encode_attributes
from .models import (
    Base,
    DeletionManifest,
    ManifestDB,
    ManifestState,
    Snapshot,
    SnapshotDB,
    create_tables,
)
from .store import SnapshotStore

__all__ = [
    "Base",
    "create_tables",
    "SnapshotDB",
    "ManifestDB",
    "ManifestState",
    "Snapshot",
    "DeletionManifest",
    "SnapshotStore",
    "encode_attributes",
    "decode_attributes",
]
