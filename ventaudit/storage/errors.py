"""
Storage Errors
"""


class StorageError(Exception):
    """Base class for record store failures."""


class NotFoundError(StorageError, LookupError):
    """A referenced project, building, zone or shutter id does not exist."""

    def __init__(self, level: str, entity_id: str):
        self.level = level
        self.entity_id = entity_id
        super().__init__(f"{level} not found: {entity_id}")


class PersistenceError(StorageError):
    """The snapshot could not be read or durably written."""


__all__ = ["StorageError", "NotFoundError", "PersistenceError"]
