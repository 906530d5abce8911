"""
Synaptic Vesicle - Query key derivation
Layer 0: Storage

Deterministic string identities for logical requests. Keys are the JSON
serialization of {path, method, options} with keys sorted at every level.
Volatile per-call fields (cancellation tokens) are dropped from the top level
of the options first; nested user data is kept as-is.
"""
import json
from typing import Any, Dict, Mapping, Optional

VOLATILE_FIELDS = frozenset({"signal", "cancel_token", "cancellation_token"})

TRACKER_KIND = "pagination-tracker"


def sort_object_keys(value: Any, _seen: Optional[set] = None) -> Any:
    """
    Recursively sort mapping keys.

    A container that appears inside itself is replaced by "[Circular]".
    """
    if not isinstance(value, (Mapping, list, tuple)):
        return value

    seen = _seen if _seen is not None else set()
    marker = id(value)
    if marker in seen:
        return "[Circular]"
    seen.add(marker)

    try:
        if isinstance(value, (list, tuple)):
            return [sort_object_keys(item, seen) for item in value]
        return {
            str(key): sort_object_keys(value[key], seen)
            for key in sorted(value, key=str)
        }
    finally:
        seen.discard(marker)


def _request_fields(options: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    return {key: value for key, value in (options or {}).items() if key not in VOLATILE_FIELDS}


def _dumps(payload: Dict[str, Any]) -> str:
    return json.dumps(
        sort_object_keys(payload),
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    )


def create_query_key(path: str, method: str = "GET", options: Optional[Mapping[str, Any]] = None) -> str:
    """Build the cache key for a request; equal logical requests always produce equal keys."""
    return _dumps({
        "path": path,
        "method": method.upper(),
        "options": _request_fields(options),
    })


def create_page_key(
    path: str,
    method: str,
    base_options: Optional[Mapping[str, Any]],
    page_request: Mapping[str, Any]
) -> str:
    """Key of one page of a paginated query."""
    return _dumps({
        "path": path,
        "method": method.upper(),
        "baseOptions": _request_fields(base_options),
        "pageRequest": _request_fields(page_request),
    })


def create_tracker_key(path: str, method: str, base_options: Optional[Mapping[str, Any]]) -> str:
    """Synthetic key under which a pagination tracker is stored."""
    return _dumps({
        "path": path,
        "method": method.upper(),
        "baseOptions": _request_fields(base_options),
        "kind": TRACKER_KIND,
    })


def is_tracker_key(key: str) -> bool:
    """Check whether a key names a pagination tracker."""
    try:
        parsed = json.loads(key)
    except (TypeError, ValueError):
        return False
    return isinstance(parsed, dict) and parsed.get("kind") == TRACKER_KIND


def self_tag_from_key(key: str) -> Optional[str]:
    """The path a key was derived from, used as its exact self tag."""
    try:
        parsed = json.loads(key)
    except (TypeError, ValueError):
        return None
    if isinstance(parsed, dict):
        path = parsed.get("path")
        return path if isinstance(path, str) else None
    return None
