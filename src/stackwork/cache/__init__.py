"""Generated-config records and their invalidation policy."""

from .genconfig import (
    completed_config,
    is_changed,
    is_invalidated,
    merge_config,
    parse_genconfig,
    serialize_genconfig,
)
from .store import (
    GenConfigStore,
    GenConfigWarning,
    delete_configured_marker,
    delete_markers,
    touch_built_marker,
    touch_configured_marker,
)

__all__ = [
    "GenConfigStore",
    "GenConfigWarning",
    "completed_config",
    "delete_configured_marker",
    "delete_markers",
    "is_changed",
    "is_invalidated",
    "merge_config",
    "parse_genconfig",
    "serialize_genconfig",
    "touch_built_marker",
    "touch_configured_marker",
]
