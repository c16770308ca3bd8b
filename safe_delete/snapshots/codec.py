"""
Type-preserving encoding of record attribute maps.

Snapshots must re-materialize records exactly, so values that JSON cannot
represent natively are stored as tagged objects and decoded back to the same
Python type on restore.
"""

import base64
import hashlib
import json
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Any, Dict
from uuid import UUID

from ..config import ChecksumAlgorithm

TYPE_TAG = "$type"


def encode_value(value: Any) -> Any:
    """Convert a Python value into a JSON-safe structure."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    # datetime is a subclass of date, check it first
    if isinstance(value, datetime):
        return {TYPE_TAG: "datetime", "value": value.isoformat()}
    if isinstance(value, date):
        return {TYPE_TAG: "date", "value": value.isoformat()}
    if isinstance(value, time):
        return {TYPE_TAG: "time", "value": value.isoformat()}
    if isinstance(value, timedelta):
        return {TYPE_TAG: "timedelta", "value": value.total_seconds()}
    if isinstance(value, Decimal):
        return {TYPE_TAG: "decimal", "value": str(value)}
    if isinstance(value, UUID):
        return {TYPE_TAG: "uuid", "value": str(value)}
    if isinstance(value, (bytes, bytearray, memoryview)):
        return {
            TYPE_TAG: "bytes",
            "value": base64.b64encode(bytes(value)).decode("ascii"),
        }
    if isinstance(value, tuple):
        return {TYPE_TAG: "tuple", "value": [encode_value(item) for item in value]}
    if isinstance(value, list):
        return [encode_value(item) for item in value]
    if isinstance(value, dict):
        encoded = {str(key): encode_value(item) for key, item in value.items()}
        if TYPE_TAG in encoded:
            return {TYPE_TAG: "dict", "value": encoded}
        return encoded
    raise ValueError(f"Cannot snapshot value of type {type(value).__name__}")


def decode_value(value: Any) -> Any:
    """Inverse of ``encode_value``."""
    if isinstance(value, list):
        return [decode_value(item) for item in value]
    if not isinstance(value, dict):
        return value

    tag = value.get(TYPE_TAG)
    if tag is None:
        return {key: decode_value(item) for key, item in value.items()}

    raw = value["value"]
    if tag == "datetime":
        return datetime.fromisoformat(raw)
    if tag == "date":
        return date.fromisoformat(raw)
    if tag == "time":
        return time.fromisoformat(raw)
    if tag == "timedelta":
        return timedelta(seconds=raw)
    if tag == "decimal":
        return Decimal(raw)
    if tag == "uuid":
        return UUID(raw)
    if tag == "bytes":
        return base64.b64decode(raw)
    if tag == "tuple":
        return tuple(decode_value(item) for item in raw)
    if tag == "dict":
        return {key: decode_value(item) for key, item in raw.items()}
    raise ValueError(f"Unknown snapshot value tag {tag!r}")


def encode_attributes(attributes: Dict[str, Any]) -> Dict[str, Any]:
    """Encode a whole attribute map."""
    return {str(key): encode_value(value) for key, value in attributes.items()}


def decode_attributes(encoded: Dict[str, Any]) -> Dict[str, Any]:
    """Decode a whole attribute map."""
    return {key: decode_value(value) for key, value in encoded.items()}


def canonical_json(data: Any) -> str:
    """Deterministic JSON text used for checksums."""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def calculate_checksum(
    data: Any, algorithm: ChecksumAlgorithm = ChecksumAlgorithm.SHA256
) -> str:
    """
    Calculate the hex checksum of an encoded structure.

    Args:
        data: JSON-safe structure (already encoded)
        algorithm: Hash algorithm to use

    Returns:
        Hex digest
    """
    payload = canonical_json(data).encode("utf-8")

    if algorithm == ChecksumAlgorithm.SHA256:
        return hashlib.sha256(payload).hexdigest()
    elif algorithm == ChecksumAlgorithm.SHA512:
        return hashlib.sha512(payload).hexdigest()
    elif algorithm == ChecksumAlgorithm.BLAKE2B:
        return hashlib.blake2b(payload).hexdigest()
    raise ValueError(f"Unsupported algorithm: {algorithm}")
