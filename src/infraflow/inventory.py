"""Record of every cloud resource created by the reconciler.

The inventory is the authoritative answer to "did we create this?". It is
rebuilt from the persisted state at the start of a reconciliation and written
back after every task. Ids are hierarchical, so deleting a resource drops
every id nested below it (deleting a resource group forgets its contents).
"""

from __future__ import annotations

import logging
import threading

from .identifiers import ID_SEPARATOR, Kind, ResourceIdentifier
from .models import AzureResource

logger = logging.getLogger(__name__)


class Inventory:
    """Thread-safe mapping of resource id to its parsed identifier."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._items: dict[str, ResourceIdentifier] = {}

    @classmethod
    def from_list(cls, items: list[AzureResource]) -> Inventory:
        """Rebuild an inventory from persisted managed items.

        Raises:
            InvalidResourceIdError: If a persisted id does not parse.
        """
        inventory = cls()
        for item in items:
            inventory.insert(item.id)
        return inventory

    def insert(self, resource_id: str) -> ResourceIdentifier:
        """Parse and record an id.

        Raises:
            InvalidResourceIdError: If the id does not parse.
        """
        identifier = ResourceIdentifier.parse(resource_id)
        with self._lock:
            existing = self._find(resource_id)
            if existing is not None and existing != resource_id:
                del self._items[existing]
            self._items[resource_id] = identifier
        return identifier

    def delete(self, resource_id: str) -> list[str]:
        """Forget an id and every id nested below it.

        Returns:
            The ids that were removed.
        """
        target = resource_id.lower().rstrip(ID_SEPARATOR)
        prefix = target + ID_SEPARATOR
        with self._lock:
            removed = [
                key
                for key in self._items
                if key.lower() == target or key.lower().startswith(prefix)
            ]
            for key in removed:
                del self._items[key]
        if removed:
            logger.debug(
                "Removed resources from inventory",
                extra={"resource_id": resource_id, "removed": len(removed)},
            )
        return removed

    def get(self, resource_id: str) -> ResourceIdentifier | None:
        with self._lock:
            key = self._find(resource_id)
            return self._items[key] if key is not None else None

    def by_kind(self, kind: Kind) -> dict[str, ResourceIdentifier]:
        """All recorded ids of one kind, keyed by id."""
        with self._lock:
            return {key: ident for key, ident in self._items.items() if ident.kind == kind}

    def to_list(self) -> list[AzureResource]:
        """Persistable form, sorted by id."""
        with self._lock:
            return [
                AzureResource(kind=ident.kind.value, id=key)
                for key, ident in sorted(self._items.items())
            ]

    def __contains__(self, resource_id: object) -> bool:
        return isinstance(resource_id, str) and self.get(resource_id) is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def _find(self, resource_id: str) -> str | None:
        if resource_id in self._items:
            return resource_id
        lowered = resource_id.lower()
        for key in self._items:
            if key.lower() == lowered:
                return key
        return None
