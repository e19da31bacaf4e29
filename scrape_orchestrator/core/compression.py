"""Text-safe compression for execution result payloads (gzip + base64)."""

import base64
import gzip
import json
from typing import Any


def compress_payload(data: Any) -> str:
    """Serialize data to JSON, gzip it and return base64 text."""
    raw = json.dumps(data, ensure_ascii=False, default=str).encode("utf-8")
    return base64.b64encode(gzip.compress(raw)).decode("ascii")


def decompress_payload(payload: str) -> Any:
    """Inverse of compress_payload.

    Raises:
        ValueError: payload is not valid base64/gzip/JSON
    """
    try:
        raw = gzip.decompress(base64.b64decode(payload, validate=True))
        return json.loads(raw.decode("utf-8"))
    except (OSError, EOFError, ValueError) as e:
        # binascii.Error, JSONDecodeError and UnicodeDecodeError are ValueErrors
        raise ValueError(f"Invalid compressed payload: {e}") from e


def compression_ratio(data: Any, payload: str) -> float:
    """Compressed size as a percentage of the JSON size."""
    original = len(json.dumps(data, ensure_ascii=False, default=str).encode("utf-8"))
    if original == 0:
        return 0.0
    return round(len(payload) / original * 100, 1)
