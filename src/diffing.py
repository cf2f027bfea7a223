"""
Spec diffing via the last-applied-spec annotation.

After every successful Create/Update the engine stores a serialized copy of
the spec it applied. Managers that opt into engine-side diffing have a
``READY`` verification downgraded to ``UPDATE_REQUIRED`` whenever the
current spec no longer matches that copy.
"""

import json
from typing import Any, Dict, Optional

from manifest import Manifest

LAST_APPLIED_SPEC_ANNOTATION = "last-applied-spec"


def annotation_key(prefix: str) -> str:
    return f"{prefix}/{LAST_APPLIED_SPEC_ANNOTATION}"


def serialize_spec(spec: Dict[str, Any]) -> str:
    """Canonical compact JSON of a spec (stable key order)."""
    return json.dumps(spec, sort_keys=True, separators=(",", ":"))


def last_applied_spec(manifest: Manifest, prefix: str) -> Optional[Dict[str, Any]]:
    """Return the last applied spec, or None if never recorded or unreadable."""
    raw = manifest.meta.annotations.get(annotation_key(prefix))
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return None


def record_last_applied(manifest: Manifest, prefix: str) -> None:
    """Store the manifest's current spec as the last applied one."""
    manifest.meta.annotations[annotation_key(prefix)] = serialize_spec(manifest.spec)


def spec_differs_from_last_applied(manifest: Manifest, prefix: str) -> bool:
    """
    Whether the spec changed since it was last applied.

    A manifest with no (or an unreadable) record counts as changed.
    """
    applied = last_applied_spec(manifest, prefix)
    if applied is None:
        return True
    return serialize_spec(applied) != serialize_spec(manifest.spec)
