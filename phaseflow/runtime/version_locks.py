"""
version_locks.py - Shared, advisory locks on definition versions.

A lock row (definitionId, version, instanceId) exists while an instance runs
against that version. Any number of instances may hold the same version;
the lock only tells the Importer not to mutate a version while locked.

Both operations are idempotent.
"""

from __future__ import annotations

import logging
from typing import List, Optional

from .store import DefinitionStore
from .types import DefinitionId, InstanceId, VersionLock

logger = logging.getLogger(__name__)


class VersionLockManager:
    """Acquire and release version locks held in the Definition Store."""

    def __init__(self, store: DefinitionStore):
        self.store = store

    def acquire(self, definition_id: DefinitionId, version: str, instance_id: InstanceId) -> None:
        if self.store.lock_version(definition_id, version, instance_id):
            logger.debug("Locked %s@%s for %s", definition_id, version, instance_id)

    def release(self, definition_id: DefinitionId, version: str, instance_id: InstanceId) -> None:
        if self.store.unlock_version(definition_id, version, instance_id):
            logger.debug("Released %s@%s for %s", definition_id, version, instance_id)

    def holders(self, definition_id: DefinitionId, version: str) -> List[InstanceId]:
        """Instance ids currently holding a lock on (definition_id, version)."""
        return [lock.instance_id for lock in self.store.get_locks(definition_id, version)]

    def is_locked(self, definition_id: DefinitionId, version: str) -> bool:
        return bool(self.holders(definition_id, version))

    def locks(
        self,
        definition_id: Optional[DefinitionId] = None,
        instance_id: Optional[InstanceId] = None,
    ) -> List[VersionLock]:
        return self.store.get_locks(definition_id=definition_id, instance_id=instance_id)
