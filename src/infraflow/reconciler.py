"""Reconciliation and deletion flows for one cluster's infrastructure.

A FlowContext is built per run from the Infrastructure object, the cluster
record and the last persisted state. It wires the adapter, the ensurer and
the availability-set migration into a task graph:

    resource group
    ├── virtual network ────────────────────────┐
    ├── availability set | migration            │
    ├── managed identity                        │
    ├── route table ────────────────────────────┤
    ├── security group ─────────────────────────┤
    └── public IPs ── NAT gateways ─────────────┴── subnets

After every successful task the inventory and the whiteboard are handed to
the caller's persist callback, and one forced persist runs at the end even
when tasks failed, so progress survives a crash or a failed step.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from .adapter import InfrastructureAdapter
from .clients import ClientFactory
from .config import Config
from .ensurer import Ensurer
from .flow import FlowResult, TaskGraph
from .identifiers import Kind
from .inventory import Inventory
from .migration import AvailabilitySetMigration, ClusterScaler
from .models import (
    AvailabilitySetStatus,
    Cluster,
    IdentityStatus,
    Infrastructure,
    InfrastructureState,
    InfrastructureStatus,
    NetworkStatus,
    PurposedResourceStatus,
    ResourceGroupStatus,
    SubnetStatus,
    VNetStatus,
)
from .whiteboard import (
    CHILD_IDS,
    KEY_MANAGED_IDENTITY_CLIENT_ID,
    KEY_MANAGED_IDENTITY_ID,
    KEY_PUBLIC_IP_ADDRESSES,
    KEY_RESOURCES_EXIST,
    Whiteboard,
)

logger = logging.getLogger(__name__)

PersistFunc = Callable[[InfrastructureState], Awaitable[None]]

RECONCILE_FLOW = "reconcile"
DELETE_FLOW = "delete"


@dataclass
class ReconcileResult:
    """Outcome of a reconcile or delete run.

    ``state`` is always set. ``status`` is set by reconcile only. ``error`` is
    None on success, otherwise the FlowError of the failed tasks.
    """

    cluster: str
    state: InfrastructureState
    status: InfrastructureStatus | None = None
    error: Exception | None = None
    flow: FlowResult | None = None
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None

    @property
    def duration_seconds(self) -> float:
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        return self.error is None


class FlowContext:
    """Everything one run needs: inputs, clients, inventory and whiteboard.

    Args:
        factory: Cloud clients.
        infra: The Infrastructure object.
        cluster: Shoot and cloud profile.
        config: Timeouts, parallelism and fail-fast mode.
        state: Last persisted state. Defaults to ``infra.status.state``.
        persist: Writes the state; called after each task and at the end.
        scaler: Scales control-plane deployments during the migration.

    Raises:
        AdapterConfigurationError: If the inputs cannot be translated.
        InvalidResourceIdError: If the persisted inventory holds a bad id.
    """

    def __init__(
        self,
        factory: ClientFactory,
        infra: Infrastructure,
        cluster: Cluster,
        config: Config,
        state: InfrastructureState | None = None,
        persist: PersistFunc | None = None,
        scaler: ClusterScaler | None = None,
    ) -> None:
        if state is None:
            state = infra.status.state or InfrastructureState()
        self.factory = factory
        self.config = config
        self.inventory = Inventory.from_list(state.managed_items)
        self.whiteboard = Whiteboard.from_flat_map(state.data)
        self.adapter = InfrastructureAdapter(infra, cluster, dict(state.data))
        self.ensurer = Ensurer(
            factory,
            self.adapter,
            self.inventory,
            self.whiteboard,
            config.subscription_id,
            checkpoint=self.persist_state,
        )
        self.migration = AvailabilitySetMigration(
            factory,
            self.adapter,
            self.inventory,
            self.whiteboard,
            scaler,
            self.persist_state,
            config,
            config.subscription_id,
        )
        self._persist = persist
        self._persist_lock = asyncio.Lock()
        self._last_persisted: InfrastructureState | None = None

    @property
    def cluster_name(self) -> str:
        return self.adapter.technical_name

    # =========================================================================
    # Persistence
    # =========================================================================

    def build_state(self) -> InfrastructureState:
        """Snapshot of the inventory and the whiteboard's string values."""
        return InfrastructureState(
            managed_items=self.inventory.to_list(),
            data=self.whiteboard.export_as_flat_map(),
        )

    async def persist_state(self, force: bool = False) -> None:
        """Hand the current state to the persist callback.

        A non-forced persist is skipped when nothing changed since the last
        write.
        """
        if self._persist is None:
            return
        async with self._persist_lock:
            state = self.build_state()
            if not force and state == self._last_persisted:
                return
            await self._persist(state)
            self._last_persisted = state
            logger.debug(
                "State persisted",
                extra={
                    "cluster": self.cluster_name,
                    "managed_items": len(state.managed_items),
                    "forced": force,
                },
            )

    async def _on_task_success(self, task: str) -> None:
        await self.persist_state()

    async def _finish(self, result: ReconcileResult) -> ReconcileResult:
        try:
            await self.persist_state(force=True)
        except Exception as e:
            logger.error(
                "Failed to persist state",
                extra={"cluster": self.cluster_name, "error": str(e)},
            )
            if result.error is None:
                result.error = e
        result.state = self.build_state()
        result.end_time = datetime.now(UTC)
        self._log_result(result)
        return result

    # =========================================================================
    # Reconcile
    # =========================================================================

    def reconcile_graph(self) -> TaskGraph:
        """Dependency graph of the reconciliation tasks."""
        timeout = self.config.default_task_timeout_seconds
        long_timeout = self.config.long_task_timeout_seconds
        migrating = self.adapter.migrating_to_vmo()
        graph = TaskGraph(RECONCILE_FLOW)

        rg = graph.add_task(
            "ensure resource group", self.ensurer.ensure_resource_group, timeout=timeout
        )
        vnet = graph.add_task(
            "ensure virtual network",
            self.ensurer.ensure_virtual_network,
            timeout=timeout,
            dependencies=[rg],
        )
        graph.add_task(
            "ensure availability set",
            self.ensurer.ensure_availability_set,
            timeout=timeout,
            dependencies=[rg],
            do_if=self.adapter.availability_set_config() is not None and not migrating,
        )
        graph.add_task(
            "migrate availability set",
            self.migration.run,
            timeout=self.config.migration_task_timeout_seconds,
            dependencies=[rg],
            do_if=migrating,
        )
        graph.add_task(
            "ensure managed identity",
            self.ensurer.ensure_managed_identity,
            timeout=timeout,
            dependencies=[rg],
            do_if=self.adapter.identity_config() is not None,
        )
        route_table = graph.add_task(
            "ensure route table",
            self.ensurer.ensure_route_table,
            timeout=timeout,
            dependencies=[rg],
        )
        security_group = graph.add_task(
            "ensure security group",
            self.ensurer.ensure_security_group,
            timeout=timeout,
            dependencies=[rg],
        )
        ips = graph.add_task(
            "ensure public IPs",
            self.ensurer.ensure_public_ips,
            timeout=long_timeout,
            dependencies=[rg],
        )
        nat = graph.add_task(
            "ensure NAT gateways",
            self.ensurer.ensure_nat_gateways,
            timeout=long_timeout,
            dependencies=[rg, ips],
        )
        graph.add_task(
            "ensure subnets",
            self.ensurer.ensure_subnets,
            timeout=long_timeout,
            dependencies=[vnet, route_table, security_group, nat],
        )
        return graph

    async def reconcile(self) -> ReconcileResult:
        """Bring the cloud to the desired state.

        Task failures do not raise: they are returned in ``result.error``
        after the state has been persisted.
        """
        result = ReconcileResult(cluster=self.cluster_name, state=self.build_state())
        logger.info(
            "Reconciling infrastructure",
            extra={"cluster": self.cluster_name, "region": self.adapter.region},
        )
        flow = await self.reconcile_graph().run(
            on_task_success=self._on_task_success, fail_fast=self.config.fail_fast
        )
        result.flow = flow
        result.error = flow.error
        result.status = self.build_status()
        return await self._finish(result)

    def build_status(self) -> InfrastructureStatus:
        """Provider status derived from the adapter and the whiteboard."""
        adapter = self.adapter
        ids = self.whiteboard.child(CHILD_IDS)

        vnet = adapter.virtual_network_config()
        vnet_status = VNetStatus(
            name=vnet.name,
            resource_group=None if vnet.managed else vnet.resource_group,
        )
        subnets = [
            SubnetStatus(name=zone.subnet.name, zone=zone.subnet.zone, migrated=zone.migrated)
            for zone in adapter.zones()
        ]

        availability_sets = []
        avset = adapter.availability_set_config()
        avset_id = ids.get(Kind.AVAILABILITY_SET.key)
        if avset is not None and avset_id:
            availability_sets.append(
                AvailabilitySetStatus(
                    id=avset_id,
                    name=avset.name,
                    count_fault_domains=avset.fault_domain_count,
                    count_update_domains=avset.update_domain_count,
                )
            )

        identity = None
        identity_config = adapter.identity_config()
        identity_id = self.whiteboard.get(KEY_MANAGED_IDENTITY_ID)
        if identity_config is not None and identity_id:
            identity = IdentityStatus(
                id=identity_id,
                client_id=self.whiteboard.get(KEY_MANAGED_IDENTITY_CLIENT_ID) or "",
                acr_access=identity_config.acr_access,
            )

        addresses = (
            self.whiteboard.child(Kind.NAT_GATEWAY.key).get_object(KEY_PUBLIC_IP_ADDRESSES) or []
        )

        return InfrastructureStatus(
            networks=NetworkStatus(
                vnet=vnet_status,
                subnets=subnets,
                layout=adapter.layout(),
                outbound_access_type=adapter.outbound_access_type(),
            ),
            resource_group=ResourceGroupStatus(name=adapter.resource_group_name),
            availability_sets=availability_sets,
            route_tables=[PurposedResourceStatus(name=adapter.route_table_config().name)],
            security_groups=[PurposedResourceStatus(name=adapter.security_group_config().name)],
            identity=identity,
            zoned=adapter.zoned,
            migrating_to_vmo=adapter.migrating_to_vmo() and not self.migration.complete,
            egress_cidrs=[f"{address}/32" for address in addresses],
        )

    # =========================================================================
    # Delete
    # =========================================================================

    def delete_graph(self) -> TaskGraph:
        """Dependency graph of the deletion tasks."""
        graph = TaskGraph(DELETE_FLOW)
        subnets = graph.add_task(
            "delete subnets in foreign resource group",
            self.ensurer.delete_subnets_in_foreign_group,
            timeout=self.config.long_task_timeout_seconds,
        )
        graph.add_task(
            "delete resource group",
            self.ensurer.delete_resource_group,
            timeout=self.config.long_task_timeout_seconds,
            dependencies=[subnets],
        )
        return graph

    async def delete(self) -> ReconcileResult:
        """Remove everything this controller created for the cluster."""
        result = ReconcileResult(cluster=self.cluster_name, state=self.build_state())
        if len(self.inventory) == 0 and not self.whiteboard.has(KEY_RESOURCES_EXIST):
            logger.info(
                "Nothing was created for the cluster, skipping deletion",
                extra={"cluster": self.cluster_name},
            )
            result.end_time = datetime.now(UTC)
            return result

        logger.info("Deleting infrastructure", extra={"cluster": self.cluster_name})
        flow = await self.delete_graph().run(
            on_task_success=self._on_task_success, fail_fast=self.config.fail_fast
        )
        result.flow = flow
        result.error = flow.error
        return await self._finish(result)

    def _log_result(self, result: ReconcileResult) -> None:
        extra: dict[str, Any] = {
            "cluster": result.cluster,
            "duration_seconds": result.duration_seconds,
            "managed_items": len(result.state.managed_items),
        }
        if result.flow is not None:
            extra["flow"] = result.flow.flow
            extra["tasks"] = {name: state.value for name, state in result.flow.states.items()}
        if result.error is not None:
            extra["error"] = str(result.error)
            logger.error("Flow failed", extra=extra)
        else:
            logger.info("Flow succeeded", extra=extra)


async def reconcile(
    factory: ClientFactory,
    infra: Infrastructure,
    cluster: Cluster,
    config: Config,
    state: InfrastructureState | None = None,
    persist: PersistFunc | None = None,
    scaler: ClusterScaler | None = None,
) -> ReconcileResult:
    """Reconcile the infrastructure of one cluster.

    Raises:
        AdapterConfigurationError: If the inputs cannot be translated.
    """
    context = FlowContext(factory, infra, cluster, config, state, persist, scaler)
    return await context.reconcile()


async def delete(
    factory: ClientFactory,
    infra: Infrastructure,
    cluster: Cluster,
    config: Config,
    state: InfrastructureState | None = None,
    persist: PersistFunc | None = None,
) -> ReconcileResult:
    """Delete the infrastructure of one cluster.

    Raises:
        AdapterConfigurationError: If the inputs cannot be translated.
    """
    context = FlowContext(factory, infra, cluster, config, state, persist)
    return await context.delete()
