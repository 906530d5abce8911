"""
Dendrites - Page request helpers
Request merging and page collection for the pagination controller.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

from ..synaptic_vesicle.state_store import CacheStore


@dataclass
class PageContext:
    """What page predicates and request builders see about the edge page."""
    response: Any
    all_responses: List[Any]
    request: Dict[str, Any]


@dataclass
class PaginationState:
    """Externally visible projection of a paginated query."""
    data: Any = None
    all_responses: Optional[List[Any]] = None
    all_requests: Optional[List[Dict[str, Any]]] = None
    can_fetch_next: bool = False
    can_fetch_prev: bool = False
    error: Any = None
    page_keys: List[str] = field(default_factory=list)


def merge_request(base: Mapping[str, Any], override: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """
    Merge a page-specific override over a base request fragment.

    ``query`` and ``params`` merge key by key; ``body`` replaces wholesale when
    the override carries one. Other keys are taken from the override when present.
    """
    merged = dict(base)
    if not override:
        return merged

    for name in ("query", "params"):
        if override.get(name):
            merged[name] = {**(base.get(name) or {}), **override[name]}

    if override.get("body") is not None:
        merged["body"] = override["body"]

    for name, value in override.items():
        if name not in ("query", "params", "body"):
            merged[name] = value

    return merged


def collect_page_data(
    page_keys: List[str],
    store: CacheStore,
    page_requests: Mapping[str, Dict[str, Any]],
    fallback_request: Dict[str, Any]
) -> Tuple[List[Any], List[Dict[str, Any]]]:
    """Ordered responses and requests of the tracked pages that currently hold data."""
    responses: List[Any] = []
    requests: List[Dict[str, Any]] = []

    for key in page_keys:
        entry = store.get_cache(key)
        if entry is not None and entry.has_data:
            responses.append(entry.data)
            requests.append(page_requests.get(key, fallback_request))

    return responses, requests
