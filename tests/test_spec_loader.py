"""Tests for loading manifests and state files."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from infraflow.config import MAX_SPEC_FILE_SIZE_BYTES
from infraflow.models import AzureResource, InfrastructureState
from infraflow.spec_loader import (
    SpecLoadError,
    load_cluster,
    load_infrastructure,
    load_state,
    save_state,
)

INFRASTRUCTURE_YAML = """
apiVersion: extensions.gardener.cloud/v1alpha1
kind: Infrastructure
metadata:
  name: infra
  namespace: shoot--dev--test
  annotations:
    disable-default-outbound-access: "true"
spec:
  region: westeurope
  providerConfig:
    networks:
      vnet:
        cidr: 10.0.0.0/16
      workers: 10.0.0.0/19
      natGateway:
        enabled: true
"""

CLUSTER_SPEC = """
shoot:
  metadata:
    name: test
    annotations:
      shoot-vmo-migration: "true"
cloudProfile:
  countFaultDomains:
    - region: westeurope
      count: 2
  countUpdateDomains:
    - region: westeurope
      count: 5
"""


def write(tmp_path: Path, name: str, content: str) -> Path:
    path = tmp_path / name
    path.write_text(content)
    return path


class TestLoadInfrastructure:
    """Tests for load_infrastructure."""

    def test_valid_manifest(self, tmp_path: Path) -> None:
        """Test loading a complete manifest."""
        infra = load_infrastructure(write(tmp_path, "infra.yaml", INFRASTRUCTURE_YAML))

        assert infra.namespace == "shoot--dev--test"
        assert infra.region == "westeurope"
        assert infra.provider_config.networks.nat_gateway.enabled
        assert infra.annotations["disable-default-outbound-access"] == "true"

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(SpecLoadError, match="File not found"):
            load_infrastructure(tmp_path / "missing.yaml")

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        path = write(tmp_path, "infra.yaml", "metadata: [unclosed")
        with pytest.raises(SpecLoadError, match="Invalid YAML"):
            load_infrastructure(path)

    def test_not_a_mapping(self, tmp_path: Path) -> None:
        path = write(tmp_path, "infra.yaml", "- a\n- b\n")
        with pytest.raises(SpecLoadError, match="must contain a YAML mapping"):
            load_infrastructure(path)

    def test_validation_errors_are_listed(self, tmp_path: Path) -> None:
        """Test that pydantic errors are reported with their location."""
        path = write(
            tmp_path,
            "infra.yaml",
            "metadata:\n  namespace: ns\nspec:\n  providerConfig:\n    networks: {}\n",
        )

        with pytest.raises(SpecLoadError) as exc_info:
            load_infrastructure(path)

        message = str(exc_info.value)
        assert "Validation failed" in message
        assert "  - spec.region:" in message

    def test_file_too_large(self, tmp_path: Path) -> None:
        """Test that oversized files are rejected before parsing."""
        path = write(tmp_path, "infra.yaml", "#" * (MAX_SPEC_FILE_SIZE_BYTES + 1))
        with pytest.raises(SpecLoadError, match="exceeds maximum size"):
            load_infrastructure(path)


class TestLoadCluster:
    """Tests for load_cluster."""

    def test_without_file(self) -> None:
        cluster = load_cluster(None)
        assert cluster.cloud_profile.count_fault_domains == []

    def test_plain_record(self, tmp_path: Path) -> None:
        cluster = load_cluster(write(tmp_path, "cluster.yaml", CLUSTER_SPEC))

        assert cluster.shoot.metadata.annotations["shoot-vmo-migration"] == "true"
        assert cluster.cloud_profile.count_update_domains[0].count == 5

    def test_kubernetes_wrapper(self, tmp_path: Path) -> None:
        """Test that a Cluster resource is unwrapped to its spec."""
        indented = "\n".join(f"  {line}" for line in CLUSTER_SPEC.strip().splitlines())
        content = (
            "apiVersion: extensions.gardener.cloud/v1alpha1\nkind: Cluster\n"
            f"spec:\n{indented}\n"
        )

        cluster = load_cluster(write(tmp_path, "cluster.yaml", content))

        assert cluster.cloud_profile.count_fault_domains[0].region == "westeurope"


class TestStateFile:
    """Tests for load_state and save_state."""

    def test_missing_state(self, tmp_path: Path) -> None:
        """Test that a first run starts without state."""
        assert load_state(tmp_path / "state.json") is None
        assert load_state(None) is None

    def test_save_and_load(self, tmp_path: Path) -> None:
        path = tmp_path / "state.json"
        resource_group_id = "/subscriptions/s/resourceGroups/rg"
        state = InfrastructureState(
            managed_items=[
                AzureResource(kind="Microsoft.Resources/resourceGroups", id=resource_group_id)
            ],
            data={"ids/ResourceGroup": resource_group_id},
        )

        save_state(path, state)

        raw = json.loads(path.read_text())
        assert raw["managedItems"][0]["id"] == resource_group_id
        assert load_state(path) == state
        assert not (tmp_path / "state.json.tmp").exists()

    def test_save_failure(self, tmp_path: Path) -> None:
        with pytest.raises(SpecLoadError, match="Failed to write state file"):
            save_state(tmp_path / "missing-dir" / "state.json", InfrastructureState())

    def test_invalid_state(self, tmp_path: Path) -> None:
        path = write(tmp_path, "state.json", json.dumps({"managedItems": [{"kind": "x"}]}))
        with pytest.raises(SpecLoadError, match="managedItems.0.id"):
            load_state(path)
