"""Hierarchical scratchpad shared between tasks and reconciliations.

A whiteboard node holds string values, opaque objects and child nodes, each
under flat keys. Only the string values survive persistence: they are
exported as a flat map whose keys are the ``/``-joined paths.
"""

from __future__ import annotations

import threading
from typing import Any

KEY_SEPARATOR = "/"

# Well-known keys
CHILD_IDS = "ids"
CHILD_MIGRATION = "migration"
CHILD_BASIC_LB = "basic-lb"
KEY_COMPLETE = "complete"
KEY_PHASE = "phase"
KEY_PUBLIC_IP_ADDRESSES = "PublicIpAddresses"
KEY_MANAGED_IDENTITY_ID = "managed_identity_id"
KEY_MANAGED_IDENTITY_CLIENT_ID = "managed_identity_client_id"
KEY_RESOURCES_EXIST = "resources_exist"


class Whiteboard:
    """Thread-safe whiteboard node."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._data: dict[str, str] = {}
        self._objects: dict[str, Any] = {}
        self._children: dict[str, Whiteboard] = {}

    @classmethod
    def from_flat_map(cls, data: dict[str, str]) -> Whiteboard:
        whiteboard = cls()
        whiteboard.import_from_flat_map(data)
        return whiteboard

    # String values

    def get(self, key: str) -> str | None:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: str | None) -> None:
        """Set a value; ``None`` deletes it."""
        _check_key(key)
        with self._lock:
            if value is None:
                self._data.pop(key, None)
            else:
                self._data[key] = value

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def has(self, key: str) -> bool:
        with self._lock:
            return key in self._data

    def keys(self) -> list[str]:
        with self._lock:
            return sorted(self._data)

    # Opaque objects

    def get_object(self, key: str) -> Any:
        with self._lock:
            return self._objects.get(key)

    def set_object(self, key: str, value: Any) -> None:
        _check_key(key)
        with self._lock:
            if value is None:
                self._objects.pop(key, None)
            else:
                self._objects[key] = value

    def has_object(self, key: str) -> bool:
        with self._lock:
            return key in self._objects

    # Children

    def child(self, key: str) -> Whiteboard:
        """Return the child node for a key, creating it on first use."""
        _check_key(key)
        with self._lock:
            node = self._children.get(key)
            if node is None:
                node = Whiteboard()
                self._children[key] = node
            return node

    def child_path(self, path: str) -> Whiteboard:
        """Return a descendant addressed by a ``/``-joined path."""
        node = self
        for key in path.split(KEY_SEPARATOR):
            node = node.child(key)
        return node

    def has_child(self, key: str) -> bool:
        with self._lock:
            return key in self._children

    def children_keys(self) -> list[str]:
        with self._lock:
            return sorted(self._children)

    def delete_child(self, key: str) -> None:
        with self._lock:
            self._children.pop(key, None)

    def is_empty(self) -> bool:
        """True when the node holds no string values anywhere in its subtree."""
        with self._lock:
            children = list(self._children.values())
            if self._data:
                return False
        return all(child.is_empty() for child in children)

    # Persistence

    def export_as_flat_map(self) -> dict[str, str]:
        """Flatten every string value into ``{"a/b/key": value}``."""
        result: dict[str, str] = {}
        with self._lock:
            result.update(self._data)
            children = dict(self._children)
        for name, node in children.items():
            for key, value in node.export_as_flat_map().items():
                result[f"{name}{KEY_SEPARATOR}{key}"] = value
        return result

    def import_from_flat_map(self, data: dict[str, str]) -> None:
        """Load values exported by :meth:`export_as_flat_map`."""
        for path, value in data.items():
            *parents, key = path.split(KEY_SEPARATOR)
            node = self
            for parent in parents:
                node = node.child(parent)
            node.set(key, value)


def _check_key(key: str) -> None:
    if not key or KEY_SEPARATOR in key:
        raise ValueError(f"invalid whiteboard key: {key!r}")
