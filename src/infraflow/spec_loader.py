"""Loading of Infrastructure, Cluster and state files with validation.

SECURITY: All file operations enforce size limits to prevent DoS attacks
via large files. Input validation is performed at the boundary.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, TypeVar

import yaml
from pydantic import BaseModel, ValidationError

from .config import MAX_SPEC_FILE_SIZE_BYTES, MAX_STATE_FILE_SIZE_BYTES
from .models import Cluster, Infrastructure, InfrastructureState

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


class SpecLoadError(Exception):
    """Raised when a manifest or state file cannot be loaded or fails validation."""

    pass


def _read_mapping(path: Path, max_size: int) -> dict[str, Any]:
    """Read a YAML (or JSON) file that must contain a mapping."""
    if not path.exists():
        raise SpecLoadError(f"File not found: {path}")

    # SECURITY: Check file size before reading to prevent DoS
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat file {path}: {e}") from e

    if file_size > max_size:
        raise SpecLoadError(f"File exceeds maximum size of {max_size} bytes: {path}")

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise SpecLoadError(f"Failed to read file {path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {path}: {e}") from e

    if raw_data is None:
        return {}
    if not isinstance(raw_data, dict):
        raise SpecLoadError(f"File must contain a YAML mapping: {path}")
    return raw_data


def _validate(model: type[ModelT], data: dict[str, Any], path: Path) -> ModelT:
    try:
        return model.model_validate(data)
    except ValidationError as e:
        # Format Pydantic validation errors for readability
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            msg = error["msg"]
            errors.append(f"  - {loc}: {msg}")

        error_list = "\n".join(errors)
        raise SpecLoadError(f"Validation failed for {path}:\n{error_list}") from e


def load_infrastructure(path: Path) -> Infrastructure:
    """Load an Infrastructure manifest.

    Args:
        path: YAML file with ``metadata``, ``spec`` and optionally ``status``.

    Returns:
        Validated Infrastructure object.

    Raises:
        SpecLoadError: If the file cannot be loaded or fails validation.
    """
    infra = _validate(Infrastructure, _read_mapping(path, MAX_SPEC_FILE_SIZE_BYTES), path)
    logger.info(
        "Loaded infrastructure",
        extra={"path": str(path), "namespace": infra.namespace, "region": infra.region},
    )
    return infra


def load_cluster(path: Path | None) -> Cluster:
    """Load the cluster record; without a file the cluster is empty.

    Raises:
        SpecLoadError: If the file cannot be loaded or fails validation.
    """
    if path is None:
        return Cluster()
    data = _read_mapping(path, MAX_SPEC_FILE_SIZE_BYTES)
    # Kubernetes-style wrapper: the cluster record lives under spec
    if "apiVersion" in data and "spec" in data:
        data = data.get("spec") or {}
        if not isinstance(data, dict):
            raise SpecLoadError(f"Spec section must be a mapping: {path}")
    return _validate(Cluster, data, path)


def load_state(path: Path | None) -> InfrastructureState | None:
    """Load a persisted state file.

    Returns:
        The state, or None when the path is unset or the file does not exist
        yet (first reconciliation).

    Raises:
        SpecLoadError: If the file exists but cannot be loaded.
    """
    if path is None or not path.exists():
        return None
    state = _validate(
        InfrastructureState, _read_mapping(path, MAX_STATE_FILE_SIZE_BYTES), path
    )
    logger.info(
        "Loaded state",
        extra={"path": str(path), "managed_items": len(state.managed_items)},
    )
    return state


def save_state(path: Path, state: InfrastructureState) -> None:
    """Write the state as JSON, replacing the file atomically.

    Raises:
        SpecLoadError: If the file cannot be written.
    """
    content = json.dumps(state.model_dump(by_alias=True), indent=2, sort_keys=True)
    tmp_path = path.with_name(path.name + ".tmp")
    try:
        tmp_path.write_text(content + "\n", encoding="utf-8")
        os.replace(tmp_path, path)
    except OSError as e:
        raise SpecLoadError(f"Failed to write state file {path}: {e}") from e
    logger.debug("Saved state", extra={"path": str(path)})
