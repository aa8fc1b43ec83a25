"""Cache key conventions.

Keys follow ``domain:subject:discriminator`` so that a whole family of keys
can be dropped with a single ``CacheService.delete_by_prefix`` call, e.g.
``projects:user:42:`` invalidates every cached project listing of user 42
whatever filters were used to build them.

Key schema:
    project:{id}                          -> single project
    projects:user:{user_id}:{filters}     -> project listing
    devis:{id}                            -> single quote
    devis:user:{user_id}:{filters}        -> quote listing
    craftsman:{id}                        -> single craftsman
    craftsmen:list:{filters}              -> craftsmen directory
    messages:user:{user_id}:...           -> message listings
    tag:{name}:{key}                      -> tagged entries
    req:{user_id}:{path}:{query}          -> cached HTTP responses
"""

import json
from typing import Any, Mapping, Optional

CRAFTSMEN_LIST_PREFIX = "craftsmen:list:"


def _canonical(filters: Optional[Mapping[str, Any]]) -> str:
    # Equal filter dicts must produce equal keys regardless of insertion order
    return json.dumps(dict(filters or {}), sort_keys=True, separators=(",", ":"), default=str)


def project_key(project_id: Any) -> str:
    return f"project:{project_id}"


def projects_user_prefix(user_id: Any) -> str:
    return f"projects:user:{user_id}:"


def projects_list_key(user_id: Any, filters: Optional[Mapping[str, Any]] = None) -> str:
    return f"{projects_user_prefix(user_id)}{_canonical(filters)}"


def devis_key(devis_id: Any) -> str:
    return f"devis:{devis_id}"


def devis_user_prefix(user_id: Any) -> str:
    return f"devis:user:{user_id}:"


def devis_list_key(user_id: Any, filters: Optional[Mapping[str, Any]] = None) -> str:
    return f"{devis_user_prefix(user_id)}{_canonical(filters)}"


def craftsman_key(craftsman_id: Any) -> str:
    return f"craftsman:{craftsman_id}"


def craftsmen_list_key(filters: Optional[Mapping[str, Any]] = None) -> str:
    return f"{CRAFTSMEN_LIST_PREFIX}{_canonical(filters)}"


def messages_user_prefix(user_id: Any) -> str:
    return f"messages:user:{user_id}:"


def tag_prefix(tag: str) -> str:
    return f"tag:{tag}:"


def tagged_key(tag: str, key: str) -> str:
    """Namespace ``key`` under ``tag`` so it can be dropped by ``delete_by_tag``."""
    return f"{tag_prefix(tag)}{key}"


def request_key(user_id: Optional[Any], path: str, query: Optional[Mapping[str, Any]] = None) -> str:
    """Key for a cached GET response, scoped per user."""
    return f"req:{user_id or 'anonymous'}:{path}:{_canonical(query)}"
