"""Request fingerprinting for cache lookups and deduplication."""

from __future__ import annotations

import json
from collections.abc import Mapping
from hashlib import sha256
from typing import Any

# Options that never change what the provider returns
EXCLUDED_OPTION_KEYS = frozenset(
    {
        "trace_id",
        "request_id",
        "debug",
        "timeout",
        "cache_ttl",
        "tags",
    }
)


def result_options(options: Mapping[str, Any] | None) -> dict[str, Any]:
    """Subset of options that affects the provider result."""
    if not options:
        return {}
    return {
        str(key): value
        for key, value in options.items()
        if key not in EXCLUDED_OPTION_KEYS and not str(key).startswith("_")
    }


def _canonical(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {str(k): _canonical(value[k]) for k in sorted(value.keys(), key=str)}
    if isinstance(value, (list, tuple)):
        return [_canonical(item) for item in value]
    if isinstance(value, (bytes, bytearray)):
        return {"__bytes_sha256__": sha256(bytes(value)).hexdigest()}
    return value


def fingerprint(provider_id: str, payload: bytes, options: Mapping[str, Any] | None = None) -> str:
    """Stable SHA-256 key for a normalized request.

    Same provider + payload + result-affecting options always yields the same
    key; trace/debug fields and underscore-prefixed options are ignored.
    """
    identity = {
        "provider": provider_id.strip().lower(),
        "payload_sha256": sha256(payload).hexdigest(),
        "options": _canonical(result_options(options)),
    }
    canonical = json.dumps(identity, sort_keys=True, ensure_ascii=True, separators=(",", ":"), default=str)
    return sha256(canonical.encode("utf-8")).hexdigest()
