"""Cloud clients used by the ensurer.

The ensurer only sees the ``ClientFactory`` protocol; tests inject an
in-memory implementation. ``AzureClientFactory`` backs the protocol with the
Azure SDK. SDK calls are blocking, so every call runs in the default executor
and long-running operations are awaited through their poller.

Get returns None for a missing resource and Delete treats a missing resource
as deleted. Every other Azure error propagates.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

from azure.core.exceptions import ResourceNotFoundError
from azure.mgmt.compute import ComputeManagementClient
from azure.mgmt.network import NetworkManagementClient
from azure.mgmt.resource import ResourceManagementClient

from .identifiers import Kind, resource_id

if TYPE_CHECKING:
    from azure.core.credentials import TokenCredential

logger = logging.getLogger(__name__)

# API version used to read user-assigned identities through the generic resource API
MANAGED_IDENTITY_API_VERSION = "2023-01-31"


@dataclass(frozen=True)
class ManagedIdentity:
    """User-assigned managed identity as far as the reconciler needs it."""

    id: str
    client_id: str
    principal_id: str | None = None


class ResourceGroupClient(Protocol):
    async def get(self, name: str) -> Any | None: ...

    async def create_or_update(self, name: str, parameters: Any) -> Any: ...

    async def delete(self, name: str) -> None: ...


class ResourceClient(Protocol):
    """CRUD for a top-level resource kind inside a resource group."""

    async def get(
        self, resource_group: str, name: str, expand: str | None = None
    ) -> Any | None: ...

    async def list(self, resource_group: str) -> list[Any]: ...

    async def create_or_update(self, resource_group: str, name: str, parameters: Any) -> Any: ...

    async def delete(self, resource_group: str, name: str) -> None: ...


class SubnetClient(Protocol):
    async def get(
        self, resource_group: str, vnet: str, name: str, expand: str | None = None
    ) -> Any | None: ...

    async def list(self, resource_group: str, vnet: str) -> list[Any]: ...

    async def create_or_update(
        self, resource_group: str, vnet: str, name: str, parameters: Any
    ) -> Any: ...

    async def delete(self, resource_group: str, vnet: str, name: str) -> None: ...


class ManagedUserIdentityClient(Protocol):
    async def get(self, resource_group: str, name: str) -> ManagedIdentity | None: ...


class ClientFactory(Protocol):
    """Per-kind cloud clients; the single injection seam of the reconciler."""

    def group(self) -> ResourceGroupClient: ...

    def vnet(self) -> ResourceClient: ...

    def subnet(self) -> SubnetClient: ...

    def route_tables(self) -> ResourceClient: ...

    def network_security_group(self) -> ResourceClient: ...

    def public_ip(self) -> ResourceClient: ...

    def nat_gateway(self) -> ResourceClient: ...

    def availability_set(self) -> ResourceClient: ...

    def load_balancer(self) -> ResourceClient: ...

    def managed_user_identity(self) -> ManagedUserIdentityClient: ...


# =============================================================================
# Azure SDK implementation
# =============================================================================


async def _run(func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    """Run a blocking SDK call in the default executor."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, functools.partial(func, *args, **kwargs))


async def _get_or_none(func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any | None:
    try:
        return await _run(func, *args, **kwargs)
    except ResourceNotFoundError:
        return None


async def _list_or_empty(func: Callable[..., Any], *args: Any) -> list[Any]:
    try:
        return await _run(lambda: list(func(*args)))
    except ResourceNotFoundError:
        return []


async def _wait(begin_operation: Callable[..., Any], *args: Any) -> Any:
    """Start a long-running operation and wait for its result."""
    poller = await _run(begin_operation, *args)
    return await _run(poller.result)


async def _delete(begin_operation: Callable[..., Any], *args: Any) -> None:
    try:
        await _wait(begin_operation, *args)
    except ResourceNotFoundError:
        logger.debug("Resource already deleted", extra={"target": "/".join(args)})


class _AzureResourceGroupClient:
    def __init__(self, client: ResourceManagementClient) -> None:
        self._operations = client.resource_groups

    async def get(self, name: str) -> Any | None:
        return await _get_or_none(self._operations.get, name)

    async def create_or_update(self, name: str, parameters: Any) -> Any:
        return await _run(self._operations.create_or_update, name, parameters)

    async def delete(self, name: str) -> None:
        await _delete(self._operations.begin_delete, name)


class _AzureNetworkResourceClient:
    """Wraps one network operation group (virtual_networks, nat_gateways, ...)."""

    def __init__(self, operations: Any) -> None:
        self._operations = operations

    async def get(self, resource_group: str, name: str, expand: str | None = None) -> Any | None:
        return await _get_or_none(self._operations.get, resource_group, name, expand=expand)

    async def list(self, resource_group: str) -> list[Any]:
        return await _list_or_empty(self._operations.list, resource_group)

    async def create_or_update(self, resource_group: str, name: str, parameters: Any) -> Any:
        return await _wait(
            self._operations.begin_create_or_update, resource_group, name, parameters
        )

    async def delete(self, resource_group: str, name: str) -> None:
        await _delete(self._operations.begin_delete, resource_group, name)


class _AzureSubnetClient:
    def __init__(self, client: NetworkManagementClient) -> None:
        self._operations = client.subnets

    async def get(
        self, resource_group: str, vnet: str, name: str, expand: str | None = None
    ) -> Any | None:
        return await _get_or_none(self._operations.get, resource_group, vnet, name, expand=expand)

    async def list(self, resource_group: str, vnet: str) -> list[Any]:
        return await _list_or_empty(self._operations.list, resource_group, vnet)

    async def create_or_update(
        self, resource_group: str, vnet: str, name: str, parameters: Any
    ) -> Any:
        return await _wait(
            self._operations.begin_create_or_update, resource_group, vnet, name, parameters
        )

    async def delete(self, resource_group: str, vnet: str, name: str) -> None:
        await _delete(self._operations.begin_delete, resource_group, vnet, name)


class _AzureAvailabilitySetClient:
    """Availability set operations are synchronous in the compute API."""

    def __init__(self, client: ComputeManagementClient) -> None:
        self._operations = client.availability_sets

    async def get(self, resource_group: str, name: str, expand: str | None = None) -> Any | None:
        return await _get_or_none(self._operations.get, resource_group, name)

    async def list(self, resource_group: str) -> list[Any]:
        return await _list_or_empty(self._operations.list, resource_group)

    async def create_or_update(self, resource_group: str, name: str, parameters: Any) -> Any:
        return await _run(self._operations.create_or_update, resource_group, name, parameters)

    async def delete(self, resource_group: str, name: str) -> None:
        try:
            await _run(self._operations.delete, resource_group, name)
        except ResourceNotFoundError:
            logger.debug(
                "Availability set already deleted",
                extra={"resource_group": resource_group, "name": name},
            )


class _AzureManagedUserIdentityClient:
    def __init__(self, client: ResourceManagementClient, subscription_id: str) -> None:
        self._resources = client.resources
        self._subscription_id = subscription_id

    async def get(self, resource_group: str, name: str) -> ManagedIdentity | None:
        identity_id = resource_id(
            self._subscription_id, resource_group, Kind.MANAGED_IDENTITY, name
        )
        identity = await _get_or_none(
            self._resources.get_by_id,
            resource_id=identity_id,
            api_version=MANAGED_IDENTITY_API_VERSION,
        )
        if identity is None or not identity.properties:
            return None
        return ManagedIdentity(
            id=identity.id or identity_id,
            client_id=identity.properties.get("clientId", ""),
            principal_id=identity.properties.get("principalId"),
        )


class AzureClientFactory:
    """Client factory backed by the Azure management SDKs.

    Args:
        credential: Token credential used for every client.
        subscription_id: Subscription holding the cluster's resources.
    """

    def __init__(self, credential: TokenCredential, subscription_id: str) -> None:
        self.subscription_id = subscription_id
        self._network = NetworkManagementClient(credential, subscription_id)
        self._compute = ComputeManagementClient(credential, subscription_id)
        self._resources = ResourceManagementClient(credential, subscription_id)

    def group(self) -> ResourceGroupClient:
        return _AzureResourceGroupClient(self._resources)

    def vnet(self) -> ResourceClient:
        return _AzureNetworkResourceClient(self._network.virtual_networks)

    def subnet(self) -> SubnetClient:
        return _AzureSubnetClient(self._network)

    def route_tables(self) -> ResourceClient:
        return _AzureNetworkResourceClient(self._network.route_tables)

    def network_security_group(self) -> ResourceClient:
        return _AzureNetworkResourceClient(self._network.network_security_groups)

    def public_ip(self) -> ResourceClient:
        return _AzureNetworkResourceClient(self._network.public_ip_addresses)

    def nat_gateway(self) -> ResourceClient:
        return _AzureNetworkResourceClient(self._network.nat_gateways)

    def availability_set(self) -> ResourceClient:
        return _AzureAvailabilitySetClient(self._compute)

    def load_balancer(self) -> ResourceClient:
        return _AzureNetworkResourceClient(self._network.load_balancers)

    def managed_user_identity(self) -> ManagedUserIdentityClient:
        return _AzureManagedUserIdentityClient(self._resources, self.subscription_id)
