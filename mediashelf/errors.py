"""Error taxonomy shared by the store, the repositories and the API façade.

ValidationError and NotFoundError are meant for the user: they describe bad
input or a missing row and never leave the store in a changed state.
ConstraintError is raised when the database itself rejects a write.
MigrationError and StorageIOError come from below the repositories.
"""

from __future__ import annotations

from typing import Optional


class MediaShelfError(Exception):
    """Base class for every error raised by this package."""


class ValidationError(MediaShelfError):
    pass


class NotFoundError(MediaShelfError):
    def __init__(self, entity_type: str, entity_id: str):
        super().__init__(f"{entity_type} not found: {entity_id}")
        self.entity_type = entity_type
        self.entity_id = entity_id


class ConstraintError(MediaShelfError):
    pass


class MigrationError(MediaShelfError):
    def __init__(self, message: str, version: Optional[int] = None):
        if version is not None:
            message = f"schema version {version}: {message}"
        super().__init__(message)
        self.version = version


class UnsupportedSchemaVersionError(MigrationError):
    """The store was written by a newer build than this one."""


class StorageIOError(MediaShelfError):
    pass
