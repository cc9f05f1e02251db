"""Per-kind reconciliation of cloud resources.

Each ``ensure_*`` method compares the current cloud object, the desired
configuration from the adapter and the inventory, then creates, updates,
replaces or deletes. Every method is idempotent: with unchanged inputs and
unchanged cloud state the second call issues no writes.

Ids of resources created here go into the inventory right after the cloud
call succeeds, and their ids are written to the whiteboard under ``ids``.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any

from azure.mgmt.network.models import NetworkSecurityGroup, RouteTable, SubResource

from .access import Access
from .adapter import CCM_SERVICE_TAGS, InfrastructureAdapter
from .clients import ClientFactory
from .errors import SpecMismatchError, TerminalConditionError, join_errors
from .forcenew import (
    force_new_nat_gateway,
    force_new_public_ip,
    force_new_subnet,
    same_location,
)
from .identifiers import (
    InvalidResourceIdError,
    Kind,
    ResourceIdentifier,
    ResourceMetadata,
    resource_group_id,
    resource_id,
    subnet_id,
)
from .inventory import Inventory
from .whiteboard import (
    CHILD_IDS,
    KEY_MANAGED_IDENTITY_CLIENT_ID,
    KEY_MANAGED_IDENTITY_ID,
    KEY_PUBLIC_IP_ADDRESSES,
    KEY_RESOURCES_EXIST,
    Whiteboard,
)

logger = logging.getLogger(__name__)

Checkpoint = Callable[[], Awaitable[None]]

RESOURCE_GROUP_LOCATION_HINT = (
    "This error is caused because the resource group location does not match the "
    "shoot's region. To proceed please delete the resource group"
)


def _changed(current: Any | None, target: Any) -> bool:
    """True when a CreateOrUpdate is needed to reach the target."""
    return current is None or current.as_dict() != target.as_dict()


class Ensurer:
    """Reconciles each resource kind against the desired configuration.

    Args:
        factory: Cloud clients.
        adapter: Desired configuration.
        inventory: Resources created by this controller.
        whiteboard: Shared values between tasks and reconciliations.
        subscription_id: Subscription used to build resource ids.
        checkpoint: Called after every successful create or delete inside the
            multi-item steps so partial progress is persisted.
    """

    def __init__(
        self,
        factory: ClientFactory,
        adapter: InfrastructureAdapter,
        inventory: Inventory,
        whiteboard: Whiteboard,
        subscription_id: str,
        checkpoint: Checkpoint | None = None,
    ) -> None:
        self.factory = factory
        self.adapter = adapter
        self.inventory = inventory
        self.whiteboard = whiteboard
        self.subscription_id = subscription_id
        self.access = Access(factory)
        self._checkpoint_fn = checkpoint

    # =========================================================================
    # Helpers
    # =========================================================================

    def _ids(self) -> Whiteboard:
        return self.whiteboard.child(CHILD_IDS)

    def _managed_ip_ids(self, resource_group: str) -> Whiteboard:
        """Ids of created public IPs, kept apart from the user IPs under ``ids``."""
        return self.whiteboard.child(Kind.PUBLIC_IP.key).child(resource_group)

    async def _checkpoint(self) -> None:
        if self._checkpoint_fn is not None:
            await self._checkpoint_fn()

    def _id(self, resource_group: str, kind: Kind, name: str) -> str:
        return resource_id(self.subscription_id, resource_group, kind, name)

    async def _replace_on_location_mismatch(
        self,
        metadata: ResourceMetadata,
        current: Any | None,
        location: str,
        delete: Callable[[], Awaitable[None]],
    ) -> Any | None:
        """Delete a resource that lives in the wrong region.

        Returns:
            None when the resource was deleted, the current object otherwise.
        """
        if current is None or same_location(current.location, location):
            return current

        mismatch = SpecMismatchError(metadata, "location", location, current.location)
        logger.warning(
            "Deleting resource to recreate it in the target region",
            extra={"resource": str(metadata), "error": str(mismatch)},
        )
        await delete()
        if current.id:
            self.inventory.delete(current.id)
        return None

    def _prune_inventory(self, kind: Kind, resource_group: str, present: set[str]) -> None:
        """Forget inventory entries of a kind that no longer exist in the cloud."""
        for key, ident in self.inventory.by_kind(kind).items():
            if ident.resource_group.lower() == resource_group.lower() and ident.name not in present:
                logger.info(
                    "Resource vanished from the cloud, dropping it from the inventory",
                    extra={"resource_id": key},
                )
                self.inventory.delete(key)

    async def _ensure_singleton(self, kind: Kind, client: Any, config: Any) -> Any:
        """Shared flow for route table and security group."""
        current = await client.get(config.resource_group, config.name)
        current = await self._replace_on_location_mismatch(
            config.metadata,
            current,
            config.location,
            lambda: client.delete(config.resource_group, config.name),
        )
        target = config.to_provider(current)
        if _changed(current, target):
            logger.info(
                f"Reconciling {kind.key}",
                extra={"resource_group": config.resource_group, "name": config.name},
            )
            current = await client.create_or_update(config.resource_group, config.name, target)
        self.inventory.insert(current.id)
        self._ids().set(kind.key, current.id)
        return current

    # =========================================================================
    # Reconcile
    # =========================================================================

    async def ensure_resource_group(self) -> None:
        """Create or update the cluster resource group.

        A user-named group is only looked up: it is neither updated nor
        recorded in the inventory.

        Raises:
            SpecMismatchError: If the group exists in another region. A
                resource group is never deleted automatically.
            TerminalConditionError: If the user-named group does not exist.
        """
        config = self.adapter.resource_group()
        client = self.factory.group()
        current = await client.get(config.name)
        if not config.managed:
            if current is None:
                raise TerminalConditionError(config.metadata, "user resource group not found")
            self._ids().set(Kind.RESOURCE_GROUP.key, current.id)
            self.whiteboard.set(KEY_RESOURCES_EXIST, "true")
            return

        if current is not None and not same_location(current.location, config.location):
            raise SpecMismatchError(
                config.metadata,
                "location",
                config.location,
                current.location,
                hint=RESOURCE_GROUP_LOCATION_HINT,
            )

        target = config.to_provider(current)
        if _changed(current, target):
            logger.info(
                "Reconciling resource group",
                extra={"resource_group": config.name, "location": config.location},
            )
            current = await client.create_or_update(config.name, target)

        self.inventory.insert(current.id)
        self._ids().set(Kind.RESOURCE_GROUP.key, current.id)
        self.whiteboard.set(KEY_RESOURCES_EXIST, "true")

    async def ensure_virtual_network(self) -> None:
        """Reconcile a managed vnet or verify that a user-provided one exists.

        Raises:
            TerminalConditionError: If the user-provided vnet does not exist.
        """
        config = self.adapter.virtual_network_config()
        client = self.factory.vnet()

        if not config.managed:
            vnet = await client.get(config.resource_group, config.name)
            if vnet is None:
                raise TerminalConditionError(config.metadata, "user vnet not found")
            self._ids().set(Kind.VIRTUAL_NETWORK.key, vnet.id)
            return

        current = await client.get(config.resource_group, config.name)
        current = await self._replace_on_location_mismatch(
            config.metadata,
            current,
            config.location,
            lambda: client.delete(config.resource_group, config.name),
        )
        target = config.to_provider(current)
        if _changed(current, target):
            logger.info(
                "Reconciling virtual network",
                extra={"vnet": config.name, "cidr": config.cidr},
            )
            current = await client.create_or_update(config.resource_group, config.name, target)

        self.inventory.insert(current.id)
        self._ids().set(Kind.VIRTUAL_NETWORK.key, current.id)

    async def ensure_availability_set(self) -> None:
        """Keep the legacy availability set of non-zonal clusters.

        Fault and update domain counts are immutable, so an existing set is only
        recreated when it lives in the wrong region.
        """
        config = self.adapter.availability_set_config()
        if config is None:
            return
        client = self.factory.availability_set()

        current = await client.get(config.resource_group, config.name)
        current = await self._replace_on_location_mismatch(
            config.metadata,
            current,
            config.location,
            lambda: client.delete(config.resource_group, config.name),
        )
        if current is None:
            logger.info("Creating availability set", extra={"availability_set": config.name})
            current = await client.create_or_update(
                config.resource_group, config.name, config.to_provider(None)
            )

        self.inventory.insert(current.id)
        self._ids().set(Kind.AVAILABILITY_SET.key, current.id)

    async def ensure_route_table(self) -> None:
        await self._ensure_singleton(
            Kind.ROUTE_TABLE, self.factory.route_tables(), self.adapter.route_table_config()
        )

    async def ensure_security_group(self) -> None:
        await self._ensure_singleton(
            Kind.SECURITY_GROUP,
            self.factory.network_security_group(),
            self.adapter.security_group_config(),
        )

    async def ensure_managed_identity(self) -> None:
        """Record the ids of the user-provided managed identity.

        Raises:
            TerminalConditionError: If the identity does not exist.
        """
        config = self.adapter.identity_config()
        if config is None:
            return
        identity = await self.factory.managed_user_identity().get(
            config.resource_group, config.name
        )
        if identity is None:
            raise TerminalConditionError(config.metadata, "user managed identity not found")
        self.whiteboard.set(KEY_MANAGED_IDENTITY_ID, identity.id)
        self.whiteboard.set(KEY_MANAGED_IDENTITY_CLIENT_ID, identity.client_id)

    def _is_own_public_ip(self, ip: Any) -> bool:
        if not self.adapter.has_shoot_prefix(ip.name):
            return False
        tags = ip.tags or {}
        return not any(tag in tags for tag in CCM_SERVICE_TAGS)

    async def ensure_public_ips(self) -> None:
        """Reconcile the NAT gateway public IPs.

        IPs with the cluster prefix that are no longer desired, or whose
        immutable fields changed, are deleted first (detached from their NAT
        gateway). Desired IPs are then created or updated. User-provided IPs
        are only looked up.

        Raises:
            Exception: The joined errors of every failed item.
        """
        rg = self.adapter.resource_group_name
        client = self.factory.public_ip()

        user_ips = {
            (ip.resource_group.lower(), ip.name)
            for ip in self.adapter.ip_configs()
            if not ip.managed
        }
        current_by_name = {
            ip.name: ip
            for ip in await client.list(rg)
            if self._is_own_public_ip(ip) and (rg.lower(), ip.name) not in user_ips
        }
        for ip in current_by_name.values():
            self.inventory.insert(ip.id)
        self._prune_inventory(Kind.PUBLIC_IP, rg, set(current_by_name))

        desired = self.adapter.managed_ip_configs()
        to_delete = [name for name in current_by_name if name not in desired]
        targets = {}
        for name, config in desired.items():
            current = current_by_name.get(name)
            target = config.to_provider(current)
            if current is not None:
                result = force_new_public_ip(current, target)
                if result.force_new:
                    logger.info(
                        "Public IP must be replaced",
                        extra={
                            "public_ip": name,
                            "field": result.field,
                            "current_value": str(result.current_value),
                        },
                    )
                    to_delete.append(name)
                    target = config.to_provider(None)
            targets[name] = target

        errors: list[Exception] = []
        for name in to_delete:
            try:
                await self.access.delete_public_ip(rg, name)
                self.inventory.delete(current_by_name[name].id)
                self._managed_ip_ids(rg).delete(name)
                await self._checkpoint()
            except Exception as e:
                errors.append(e)
        error = join_errors(errors, "failed to delete public IPs")
        if error is not None:
            raise error

        for name, target in targets.items():
            current = None if name in to_delete else current_by_name.get(name)
            try:
                if _changed(current, target):
                    logger.info("Reconciling public IP", extra={"public_ip": name})
                    current = await client.create_or_update(rg, name, target)
                    self.inventory.insert(current.id)
                    await self._checkpoint()
                self._managed_ip_ids(rg).set(name, current.id)
            except Exception as e:
                errors.append(e)

        for config in self.adapter.ip_configs():
            if config.managed:
                continue
            try:
                ip = await client.get(config.resource_group, config.name)
            except Exception as e:
                errors.append(e)
                continue
            if ip is None:
                errors.append(
                    TerminalConditionError(
                        config.metadata,
                        "failed to locate user public IP: "
                        f"{config.resource_group}, {config.name}",
                    )
                )
                continue
            self._ids().child(config.resource_group).child(Kind.PUBLIC_IP.key).set(
                config.name, ip.id
            )

        error = join_errors(errors, "failed to reconcile public IPs")
        if error is not None:
            raise error

    async def ensure_nat_gateways(self) -> None:
        """Reconcile the NAT gateways and record their egress addresses.

        Raises:
            Exception: The joined errors of every failed item.
        """
        rg = self.adapter.resource_group_name
        client = self.factory.nat_gateway()

        current_by_name = {
            nat.name: nat
            for nat in await client.list(rg)
            if self.adapter.has_shoot_prefix(nat.name)
        }
        for nat in current_by_name.values():
            self.inventory.insert(nat.id)
        self._prune_inventory(Kind.NAT_GATEWAY, rg, set(current_by_name))

        desired = self.adapter.nat_gateway_configs()
        to_delete = [name for name in current_by_name if name not in desired]
        targets = {}
        for name, config in desired.items():
            current = current_by_name.get(name)
            target = self._nat_gateway_target(config, current)
            if current is not None:
                result = force_new_nat_gateway(current, target)
                if result.force_new:
                    logger.info(
                        "NAT gateway must be replaced",
                        extra={
                            "nat_gateway": name,
                            "field": result.field,
                            "current_value": str(result.current_value),
                        },
                    )
                    to_delete.append(name)
                    target = self._nat_gateway_target(config, None)
            targets[name] = target

        errors: list[Exception] = []
        for name in to_delete:
            try:
                await self.access.delete_nat_gateway(rg, name)
                self.inventory.delete(current_by_name[name].id)
                self._ids().child(Kind.NAT_GATEWAY.key).delete(name)
                await self._checkpoint()
            except Exception as e:
                errors.append(e)
        error = join_errors(errors, "failed to delete NAT gateways")
        if error is not None:
            raise error

        addresses: list[str] = []
        for name, target in targets.items():
            current = None if name in to_delete else current_by_name.get(name)
            try:
                if _changed(current, target):
                    logger.info("Reconciling NAT gateway", extra={"nat_gateway": name})
                    current = await client.create_or_update(rg, name, target)
                    self.inventory.insert(current.id)
                    await self._checkpoint()
                self._ids().child(Kind.NAT_GATEWAY.key).set(name, current.id)
                addresses.extend(await self._public_ip_addresses(current))
            except Exception as e:
                errors.append(e)

        self.whiteboard.child(Kind.NAT_GATEWAY.key).set_object(KEY_PUBLIC_IP_ADDRESSES, addresses)

        error = join_errors(errors, "failed to reconcile NAT gateways")
        if error is not None:
            raise error

    def _nat_gateway_target(self, config: Any, current: Any | None) -> Any:
        target = config.to_provider(current)
        target.public_ip_addresses = [
            SubResource(id=self._id(ip.resource_group, Kind.PUBLIC_IP, ip.name))
            for ip in config.public_ips
        ]
        return target

    async def _public_ip_addresses(self, nat: Any) -> list[str]:
        """Addresses of the public IPs attached to a NAT gateway."""
        client = self.factory.public_ip()
        addresses = []
        for ref in nat.public_ip_addresses or []:
            ident = ResourceIdentifier.parse(ref.id)
            ip = await client.get(ident.resource_group, ident.name)
            if ip is not None and ip.ip_address:
                addresses.append(ip.ip_address)
        return addresses

    async def ensure_subnets(self) -> None:
        """Reconcile the node subnets in the (possibly shared) vnet.

        Only subnets whose name matches this cluster's node subnet naming are
        touched; sibling clusters in a shared vnet are left alone.

        Raises:
            Exception: The joined errors of every failed item.
        """
        vnet = self.adapter.virtual_network_config()
        rg = self.adapter.resource_group_name
        client = self.factory.subnet()

        current_by_name = {
            subnet.name: subnet
            for subnet in await client.list(vnet.resource_group, vnet.name)
            if self.adapter.is_own_subnet_name(subnet.name)
        }
        for subnet in current_by_name.values():
            self.inventory.insert(subnet.id)
        self._prune_inventory(Kind.SUBNET, vnet.resource_group, set(current_by_name))

        desired = {zone.subnet.name: zone for zone in self.adapter.zones()}
        to_delete = [name for name in current_by_name if name not in desired]
        route_table_id = self._id(rg, Kind.ROUTE_TABLE, self.adapter.route_table_config().name)
        security_group_id = self._id(
            rg, Kind.SECURITY_GROUP, self.adapter.security_group_config().name
        )

        targets = {}
        for name, zone in desired.items():
            current = current_by_name.get(name)
            target = zone.subnet.to_provider(current)
            target.route_table = RouteTable(id=route_table_id)
            target.network_security_group = NetworkSecurityGroup(id=security_group_id)
            if zone.nat_gateway is not None:
                target.nat_gateway = SubResource(
                    id=self._id(rg, Kind.NAT_GATEWAY, zone.nat_gateway.name)
                )
            elif self._references_own_nat_gateway(target):
                target.nat_gateway = None
            if current is not None and force_new_subnet(current, target).force_new:
                to_delete.append(name)
                target = zone.subnet.to_provider(None)
            targets[name] = target

        errors: list[Exception] = []
        for name in to_delete:
            try:
                logger.info("Deleting subnet", extra={"subnet": name, "vnet": vnet.name})
                await client.delete(vnet.resource_group, vnet.name, name)
                self.inventory.delete(current_by_name[name].id)
                self._ids().child(Kind.SUBNET.key).delete(name)
                await self._checkpoint()
            except Exception as e:
                errors.append(e)
        error = join_errors(errors, "failed to delete subnets")
        if error is not None:
            raise error

        for name, target in targets.items():
            current = None if name in to_delete else current_by_name.get(name)
            try:
                if _changed(current, target):
                    logger.info("Reconciling subnet", extra={"subnet": name, "vnet": vnet.name})
                    current = await client.create_or_update(
                        vnet.resource_group, vnet.name, name, target
                    )
                    self.inventory.insert(current.id)
                    await self._checkpoint()
                self._ids().child(Kind.SUBNET.key).set(name, current.id)
            except Exception as e:
                errors.append(e)

        error = join_errors(errors, "failed to reconcile subnets")
        if error is not None:
            raise error

    def _references_own_nat_gateway(self, subnet: Any) -> bool:
        """True if the subnet points at a NAT gateway in the cluster resource group."""
        if subnet.nat_gateway is None or not subnet.nat_gateway.id:
            return False
        try:
            nat = ResourceIdentifier.parse(subnet.nat_gateway.id)
        except InvalidResourceIdError:
            return False
        return nat.resource_group.lower() == self.adapter.resource_group_name.lower()

    # =========================================================================
    # Delete
    # =========================================================================

    async def delete_subnets_in_foreign_group(self) -> None:
        """Delete the node subnets of a user-provided vnet.

        Subnets of a managed vnet disappear with the resource group.
        """
        vnet = self.adapter.virtual_network_config()
        if vnet.managed:
            return

        client = self.factory.subnet()
        errors: list[Exception] = []
        for subnet in await client.list(vnet.resource_group, vnet.name):
            if not self.adapter.is_own_subnet_name(subnet.name):
                continue
            try:
                logger.info(
                    "Deleting subnet in foreign resource group",
                    extra={"subnet": subnet.name, "resource_group": vnet.resource_group},
                )
                await client.delete(vnet.resource_group, vnet.name, subnet.name)
                self.inventory.delete(
                    subnet.id
                    or subnet_id(self.subscription_id, vnet.resource_group, vnet.name, subnet.name)
                )
            except Exception as e:
                errors.append(e)

        error = join_errors(errors, "failed to delete subnets in foreign resource group")
        if error is not None:
            raise error

    async def delete_resource_group(self) -> None:
        """Delete the cluster resource group and forget everything inside it.

        A user-named group is kept; only the resources recorded in the
        inventory are deleted from it.
        """
        config = self.adapter.resource_group()
        if config.managed:
            logger.info("Deleting resource group", extra={"resource_group": config.name})
            await self.factory.group().delete(config.name)
            self.inventory.delete(resource_group_id(self.subscription_id, config.name))
        else:
            logger.info(
                "Keeping user resource group, deleting owned resources",
                extra={"resource_group": config.name},
            )
            await self._delete_inventoried_resources()
        self.whiteboard.delete_child(CHILD_IDS)
        self.whiteboard.delete_child(Kind.PUBLIC_IP.key)
        self.whiteboard.delete(KEY_RESOURCES_EXIST)

    async def _delete_inventoried_resources(self) -> None:
        """Delete recorded resources kind by kind, dependents first.

        Each kind is attempted in full; the first kind with failures stops the
        deletion.
        """
        deleters: dict[Kind, Callable[[ResourceIdentifier], Awaitable[None]]] = {
            Kind.SUBNET: lambda ident: self.factory.subnet().delete(
                ident.resource_group, ident.parent.name, ident.name  # type: ignore[union-attr]
            ),
            Kind.NAT_GATEWAY: lambda ident: self.access.delete_nat_gateway(
                ident.resource_group, ident.name
            ),
            Kind.PUBLIC_IP: lambda ident: self.access.delete_public_ip(
                ident.resource_group, ident.name
            ),
            Kind.AVAILABILITY_SET: lambda ident: self.factory.availability_set().delete(
                ident.resource_group, ident.name
            ),
            Kind.ROUTE_TABLE: lambda ident: self.factory.route_tables().delete(
                ident.resource_group, ident.name
            ),
            Kind.SECURITY_GROUP: lambda ident: self.factory.network_security_group().delete(
                ident.resource_group, ident.name
            ),
            Kind.VIRTUAL_NETWORK: lambda ident: self.factory.vnet().delete(
                ident.resource_group, ident.name
            ),
        }
        for kind, deleter in deleters.items():
            errors: list[Exception] = []
            for key, ident in sorted(self.inventory.by_kind(kind).items()):
                try:
                    logger.info(f"Deleting {kind.key}", extra={"resource_id": key})
                    await deleter(ident)
                    self.inventory.delete(key)
                    await self._checkpoint()
                except Exception as e:
                    errors.append(e)
            error = join_errors(errors, f"failed to delete {kind.key} resources")
            if error is not None:
                raise error
