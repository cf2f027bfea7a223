"""
Resource managers package.

Resource managers perform Create/Update/Verify/Delete against one external
CRUD API each. They are registered by kind at startup and discovered via
Python entry points (group: 'crudop.managers').
"""

from managers.base import (
    ApplyResponse,
    ApplyResult,
    CreateResult,
    DeleteResponse,
    DeleteResult,
    DiffStrategy,
    ResourceManager,
    TransientError,
    UpdateResult,
    VerifyResponse,
    VerifyResult,
)
from managers.registry import (
    ManagerRegistry,
    UnknownKindError,
    get_registry,
    register_builtin_managers,
    reset_registry,
)

__all__ = [
    "ApplyResponse",
    "ApplyResult",
    "CreateResult",
    "DeleteResponse",
    "DeleteResult",
    "DiffStrategy",
    "ResourceManager",
    "TransientError",
    "UpdateResult",
    "VerifyResponse",
    "VerifyResult",
    "ManagerRegistry",
    "UnknownKindError",
    "get_registry",
    "register_builtin_managers",
    "reset_registry",
]
