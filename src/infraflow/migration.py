"""Migration of legacy availability-set clusters to VMSS-flex.

Non-zonal clusters created before VMSS-flex use an availability set behind a
basic-SKU load balancer. The migration spans several reconciliations; the step
to run next is stored on the whiteboard under
``migration/AvailabilitySet/phase`` and every step persists before the next
one starts, so an interrupted run resumes where it stopped:

1. ``pending``: scale the cloud controller manager and cluster autoscaler to
   zero, back up the public IPs of the basic load balancer.
2. ``lb-deleted``: delete the public and internal load balancers.
3. ``pip-upgraded``: upgrade the backed-up IPs from Basic to Standard SKU.
4. ``avset-empty``: on a later reconciliation, delete the availability set
   once no VM uses it, then mark the migration complete.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import time
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Protocol

from azure.mgmt.network.models import PublicIPAddressSku
from kubernetes import client as k8s_client
from kubernetes import config as k8s_config
from kubernetes.client.rest import ApiException

from .adapter import (
    PUBLIC_IP_ALLOCATION_METHOD,
    PUBLIC_IP_SKU,
    PUBLIC_IP_TIER,
    InfrastructureAdapter,
)
from .clients import ClientFactory
from .config import Config
from .errors import MigrationError, join_errors
from .identifiers import Kind, ResourceIdentifier, resource_id
from .inventory import Inventory
from .whiteboard import (
    CHILD_BASIC_LB,
    CHILD_IDS,
    CHILD_MIGRATION,
    KEY_COMPLETE,
    KEY_PHASE,
    Whiteboard,
)

logger = logging.getLogger(__name__)

# Deployments in the cluster namespace that must not recreate load balancers
# or nodes while the migration runs
DEPLOYMENTS_TO_SCALE_DOWN = ("cloud-controller-manager", "cluster-autoscaler")

INTERNAL_LOAD_BALANCER_SUFFIX = "-internal"
BASIC_SKU = "basic"


class MigrationPhase(str, Enum):
    """Step of the migration that runs next."""

    PENDING = "pending"
    LB_DELETED = "lb-deleted"
    PIP_UPGRADED = "pip-upgraded"
    AVSET_EMPTY = "avset-empty"


class ClusterScaler(Protocol):
    """Scales deployments of the cluster's control plane."""

    async def scale(self, namespace: str, name: str, replicas: int) -> None: ...


class KubernetesClusterScaler:
    """Cluster scaler backed by the Kubernetes apps/v1 API.

    Scaling to zero waits until the deployment reports no replicas, so no
    terminating controller pod can still act on cloud resources.

    Args:
        api: Apps API client; built from the loaded configuration if None.
        timeout_seconds: How long to wait for a deployment to reach zero.
        poll_interval_seconds: Pause between two status reads.
    """

    def __init__(
        self,
        api: k8s_client.AppsV1Api | None = None,
        timeout_seconds: float = 300,
        poll_interval_seconds: float = 5,
    ) -> None:
        self._api = api or k8s_client.AppsV1Api()
        self.timeout_seconds = timeout_seconds
        self.poll_interval_seconds = poll_interval_seconds

    @classmethod
    def from_kubeconfig(
        cls, kubeconfig: str | None = None, **kwargs: float
    ) -> KubernetesClusterScaler:
        """Load in-cluster configuration, falling back to a kubeconfig file."""
        if kubeconfig:
            k8s_config.load_kube_config(config_file=kubeconfig)
        else:
            try:
                k8s_config.load_incluster_config()
            except k8s_config.ConfigException:
                k8s_config.load_kube_config()
        return cls(**kwargs)

    async def _call(self, func: Callable[..., object], **kwargs: object) -> object:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(func, **kwargs))

    async def scale(self, namespace: str, name: str, replicas: int) -> None:
        """Set the replica count; for zero, wait until every pod is gone.

        Raises:
            MigrationError: If the deployment still has replicas at the deadline.
        """
        try:
            await self._call(
                self._api.patch_namespaced_deployment_scale,
                name=name,
                namespace=namespace,
                body={"spec": {"replicas": replicas}},
            )
            if replicas == 0:
                await self._wait_for_zero_replicas(namespace, name)
        except ApiException as e:
            if e.status == 404:
                logger.info(
                    "Deployment not found, nothing to scale",
                    extra={"namespace": namespace, "deployment": name},
                )
                return
            raise

    async def _wait_for_zero_replicas(self, namespace: str, name: str) -> None:
        deadline = time.monotonic() + self.timeout_seconds
        while True:
            deployment = await self._call(
                self._api.read_namespaced_deployment, name=name, namespace=namespace
            )
            status = getattr(deployment, "status", None)
            remaining = getattr(status, "replicas", None) or 0
            if remaining == 0:
                return
            if time.monotonic() >= deadline:
                raise MigrationError(
                    f"deployment {namespace}/{name} still has {remaining} replicas "
                    f"after {self.timeout_seconds}s"
                )
            logger.debug(
                "Waiting for deployment to scale down",
                extra={"namespace": namespace, "deployment": name, "replicas": remaining},
            )
            await asyncio.sleep(self.poll_interval_seconds)


class AvailabilitySetMigration:
    """Moves one cluster from its availability set to VMSS-flex.

    Args:
        factory: Cloud clients.
        adapter: Desired configuration; must have an availability set.
        inventory: Resources created by this controller.
        whiteboard: Holds the migration progress.
        scaler: Scales the control-plane deployments.
        checkpoint: Persists the state; awaited after every step.
        config: Timeouts and parallelism.
    """

    def __init__(
        self,
        factory: ClientFactory,
        adapter: InfrastructureAdapter,
        inventory: Inventory,
        whiteboard: Whiteboard,
        scaler: ClusterScaler | None,
        checkpoint: Callable[[], Awaitable[None]],
        config: Config,
        subscription_id: str,
    ) -> None:
        self.factory = factory
        self.adapter = adapter
        self.inventory = inventory
        self.whiteboard = whiteboard
        self.scaler = scaler
        self.checkpoint = checkpoint
        self.config = config
        self.subscription_id = subscription_id

    def _state(self) -> Whiteboard:
        return self.whiteboard.child(CHILD_MIGRATION).child(Kind.AVAILABILITY_SET.key)

    def _backup(self) -> Whiteboard:
        return self.whiteboard.child(CHILD_MIGRATION).child(CHILD_BASIC_LB)

    @property
    def phase(self) -> MigrationPhase:
        value = self._state().get(KEY_PHASE)
        return MigrationPhase(value) if value else MigrationPhase.PENDING

    @property
    def complete(self) -> bool:
        return self._state().get(KEY_COMPLETE) == "true"

    async def _advance(self, phase: MigrationPhase) -> None:
        self._state().set(KEY_PHASE, phase.value)
        logger.info("Migration advanced", extra={"phase": phase.value})
        await self.checkpoint()

    async def run(self) -> None:
        """Run migration steps until one has to wait for a later reconciliation.

        Raises:
            MigrationError: If a step cannot make progress.
        """
        while not self.complete:
            phase = self.phase
            logger.info(
                "Running availability set migration step",
                extra={"phase": phase.value, "cluster": self.adapter.technical_name},
            )
            if phase == MigrationPhase.PENDING:
                await self._scale_down()
                await self._backup_public_ips()
                await self._advance(MigrationPhase.LB_DELETED)
            elif phase == MigrationPhase.LB_DELETED:
                await self._delete_load_balancers()
                await self._advance(MigrationPhase.PIP_UPGRADED)
            elif phase == MigrationPhase.PIP_UPGRADED:
                await self._upgrade_public_ips()
                await self._advance(MigrationPhase.AVSET_EMPTY)
                # VMs leave the availability set asynchronously
                return
            elif phase == MigrationPhase.AVSET_EMPTY:
                if not await self._delete_empty_availability_set():
                    return

    async def _scale_down(self) -> None:
        if self.scaler is None:
            raise MigrationError("availability set migration requires a cluster scaler")
        namespace = self.adapter.technical_name
        await asyncio.gather(
            *(self._scale_to_zero(namespace, name) for name in DEPLOYMENTS_TO_SCALE_DOWN)
        )

    async def _scale_to_zero(self, namespace: str, name: str) -> None:
        deadline = time.monotonic() + self.config.scale_down_timeout_seconds
        while True:
            try:
                await self.scaler.scale(namespace, name, 0)  # type: ignore[union-attr]
                logger.info(
                    "Scaled deployment to zero",
                    extra={"namespace": namespace, "deployment": name},
                )
                return
            except Exception as e:
                if time.monotonic() >= deadline:
                    raise MigrationError(f"failed to scale down {name}: {e}") from e
                logger.warning(
                    "Scaling deployment failed, retrying",
                    extra={"deployment": name, "error": str(e)},
                )
                await asyncio.sleep(self.config.scale_down_poll_interval_seconds)

    async def _backup_public_ips(self) -> None:
        """Remember the frontend IPs of the basic load balancer."""
        rg = self.adapter.resource_group_name
        lb = await self.factory.load_balancer().get(rg, self.adapter.technical_name)
        if lb is None or lb.sku is None or (lb.sku.name or "").lower() != BASIC_SKU:
            logger.info("No basic load balancer to back up", extra={"resource_group": rg})
            return

        backup = self._backup()
        for frontend in lb.frontend_ip_configurations or []:
            ip = frontend.public_ip_address
            if ip is None or not ip.id:
                continue
            ident = ResourceIdentifier.parse(ip.id)
            backup.child(ident.resource_group).set(ident.name, "true")
            logger.info(
                "Backed up load balancer public IP",
                extra={"resource_group": ident.resource_group, "public_ip": ident.name},
            )

    async def _delete_load_balancers(self) -> None:
        rg = self.adapter.resource_group_name
        client = self.factory.load_balancer()
        name = self.adapter.technical_name
        for lb_name in (name, name + INTERNAL_LOAD_BALANCER_SUFFIX):
            logger.info("Deleting load balancer", extra={"load_balancer": lb_name})
            await client.delete(rg, lb_name)

    async def _upgrade_public_ips(self) -> None:
        """Upgrade every backed-up IP to the Standard SKU.

        IPs upgrade in parallel; an IP that fails stays in the backup and is
        retried by the next reconciliation.
        """
        backup = self._backup()
        entries = [
            (rg, name) for rg in backup.children_keys() for name in backup.child(rg).keys()
        ]
        semaphore = asyncio.Semaphore(self.config.max_parallel_ip_upgrades)
        client = self.factory.public_ip()

        async def upgrade(rg: str, name: str) -> None:
            async with semaphore:
                ip = await client.get(rg, name)
                sku = (ip.sku.name or "").lower() if ip is not None and ip.sku else ""
                if sku == BASIC_SKU:
                    logger.info("Upgrading public IP SKU", extra={"public_ip": name})
                    ip.sku = PublicIPAddressSku(name=PUBLIC_IP_SKU, tier=PUBLIC_IP_TIER)
                    ip.public_ip_allocation_method = PUBLIC_IP_ALLOCATION_METHOD
                    await client.create_or_update(rg, name, ip)
                backup.child(rg).delete(name)

        results = await asyncio.gather(
            *(upgrade(rg, name) for rg, name in entries), return_exceptions=True
        )
        await self.checkpoint()
        error = join_errors(
            [r for r in results if isinstance(r, BaseException)],
            "failed to upgrade public IPs",
        )
        if error is not None:
            raise error

    async def _delete_empty_availability_set(self) -> bool:
        """Delete the availability set once it holds no VM.

        Returns:
            True when the migration completed.
        """
        avset_config = self.adapter.availability_set_config()
        rg = self.adapter.resource_group_name
        name = avset_config.name if avset_config else f"{self.adapter.technical_name}-avset-workers"
        client = self.factory.availability_set()

        avset = await client.get(rg, name)
        if avset is not None and avset.virtual_machines:
            logger.info(
                "Availability set still has VMs, waiting",
                extra={"availability_set": name, "vms": len(avset.virtual_machines)},
            )
            return False
        if avset is not None:
            logger.info("Deleting empty availability set", extra={"availability_set": name})
            await client.delete(rg, name)

        self.inventory.delete(resource_id(self.subscription_id, rg, Kind.AVAILABILITY_SET, name))
        self.whiteboard.child(CHILD_IDS).delete(Kind.AVAILABILITY_SET.key)
        self._state().delete(KEY_PHASE)
        self._state().set(KEY_COMPLETE, "true")
        logger.info("Availability set migration complete", extra={"availability_set": name})
        await self.checkpoint()
        return True
