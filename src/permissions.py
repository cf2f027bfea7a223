"""
Access Policy - Per-resource permission sets.

A manifest may restrict which mutating operations the engine is allowed to
perform against the external system via the ``<prefix>/access-permissions``
annotation, a subset of the letters ``C``, ``U`` and ``D``. Reading is always
allowed. A missing annotation grants everything.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import FrozenSet, Iterable, List, Optional

from manifest import Manifest

logger = logging.getLogger(__name__)

ACCESS_PERMISSIONS_ANNOTATION = "access-permissions"

_IGNORED_CHARS = {" ", ",", "\t"}


class PermissionParseError(ValueError):
    """Raised when an access-permissions annotation cannot be parsed."""


class Permission(Enum):
    """A mutating operation the engine may perform."""

    CREATE = "C"
    UPDATE = "U"
    DELETE = "D"


_CANONICAL_ORDER = [Permission.CREATE, Permission.UPDATE, Permission.DELETE]


@dataclass(frozen=True)
class PermissionSet:
    """Immutable set of granted permissions."""

    granted: FrozenSet[Permission] = frozenset()

    def allows(self, permission: Permission) -> bool:
        return permission in self.granted

    def allows_all(self, *permissions: Permission) -> bool:
        return all(p in self.granted for p in permissions)

    def missing(self, *permissions: Permission) -> List[Permission]:
        """Return the requested permissions that are not granted, in order."""
        return [p for p in permissions if p not in self.granted]

    @classmethod
    def of(cls, permissions: Iterable[Permission]) -> "PermissionSet":
        return cls(granted=frozenset(permissions))

    def __str__(self) -> str:
        return "".join(p.value for p in _CANONICAL_ORDER if p in self.granted)


PermissionSet.FULL = PermissionSet.of(_CANONICAL_ORDER)
PermissionSet.NONE = PermissionSet()


def annotation_key(prefix: str) -> str:
    """Full annotation key for the given prefix."""
    return f"{prefix}/{ACCESS_PERMISSIONS_ANNOTATION}"


def parse_permissions(annotation: Optional[str]) -> PermissionSet:
    """
    Parse an access-permissions annotation value.

    Args:
        annotation: Annotation value such as ``"CUD"`` or ``"c,d"``, or
            ``None`` when the annotation is absent

    Returns:
        The granted PermissionSet. ``None`` yields full permissions, an empty
        string yields none (read only).

    Raises:
        PermissionParseError: If the value contains anything other than
            C/U/D letters (case-insensitive), commas or whitespace
    """
    if annotation is None:
        return PermissionSet.FULL

    granted = set()
    for char in annotation:
        if char in _IGNORED_CHARS:
            continue
        try:
            granted.add(Permission(char.upper()))
        except ValueError:
            raise PermissionParseError(
                f"Invalid access permission {char!r} in {annotation!r}; "
                f"expected a subset of 'CUD'"
            ) from None

    return PermissionSet.of(granted)


def permissions_for(manifest: Manifest, prefix: str) -> PermissionSet:
    """
    Evaluate the permission set declared on a manifest.

    Raises:
        PermissionParseError: If the annotation is malformed
    """
    value = manifest.meta.annotations.get(annotation_key(prefix))
    permissions = parse_permissions(value)
    if value is not None:
        logger.debug(f"{manifest.ref}: access permissions '{permissions}'")
    return permissions
