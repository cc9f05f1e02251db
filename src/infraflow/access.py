"""Detach-before-delete operations for public IPs and NAT gateways.

Azure refuses to delete a public IP still attached to a NAT gateway, or a NAT
gateway still attached to a subnet. These helpers are the only code paths that
delete either kind.
"""

from __future__ import annotations

import logging

from .clients import ClientFactory
from .errors import join_errors
from .identifiers import ResourceIdentifier

logger = logging.getLogger(__name__)


class Access:
    """Higher-level cloud operations built on the client factory."""

    def __init__(self, factory: ClientFactory) -> None:
        self._factory = factory

    async def delete_public_ip(self, resource_group: str, name: str) -> None:
        """Detach a public IP from its NAT gateway, then delete it."""
        client = self._factory.public_ip()
        ip = await client.get(resource_group, name, expand="natGateway")
        if ip is None:
            return

        if ip.nat_gateway is not None and ip.nat_gateway.id:
            nat = ResourceIdentifier.parse(ip.nat_gateway.id)
            await self.disassociate_public_ip(nat.resource_group, nat.name, ip.id)

        logger.info(
            "Deleting public IP",
            extra={"resource_group": resource_group, "public_ip": name},
        )
        await client.delete(resource_group, name)

    async def disassociate_public_ip(
        self, resource_group: str, nat_gateway_name: str, public_ip_id: str
    ) -> None:
        """Remove one public IP from a NAT gateway's address list."""
        client = self._factory.nat_gateway()
        nat = await client.get(resource_group, nat_gateway_name)
        if nat is None:
            return

        current = nat.public_ip_addresses or []
        remaining = [ref for ref in current if (ref.id or "").lower() != public_ip_id.lower()]
        if len(remaining) == len(current):
            return

        logger.info(
            "Detaching public IP from NAT gateway",
            extra={"nat_gateway": nat_gateway_name, "public_ip_id": public_ip_id},
        )
        nat.public_ip_addresses = remaining
        await client.create_or_update(resource_group, nat_gateway_name, nat)

    async def delete_nat_gateway(self, resource_group: str, name: str) -> None:
        """Detach a NAT gateway from every subnet, then delete it."""
        await self.disassociate_nat_gateway(resource_group, name)
        logger.info(
            "Deleting NAT gateway",
            extra={"resource_group": resource_group, "nat_gateway": name},
        )
        await self._factory.nat_gateway().delete(resource_group, name)

    async def disassociate_nat_gateway(self, resource_group: str, name: str) -> None:
        """Clear the NAT gateway reference of every subnet using it.

        Raises:
            Exception: The joined errors of the subnet updates that failed.
        """
        nat = await self._factory.nat_gateway().get(resource_group, name, expand="subnets")
        if nat is None:
            return

        subnet_client = self._factory.subnet()
        errors: list[Exception] = []
        for ref in nat.subnets or []:
            try:
                subnet_id = ResourceIdentifier.parse(ref.id)
                if subnet_id.parent is None:
                    raise ValueError(f"subnet id has no virtual network: {ref.id}")
                vnet = subnet_id.parent.name
                subnet = await subnet_client.get(subnet_id.resource_group, vnet, subnet_id.name)
                if subnet is None:
                    continue
                logger.info(
                    "Detaching NAT gateway from subnet",
                    extra={"nat_gateway": name, "subnet": subnet_id.name, "vnet": vnet},
                )
                subnet.nat_gateway = None
                await subnet_client.create_or_update(
                    subnet_id.resource_group, vnet, subnet_id.name, subnet
                )
            except Exception as e:
                errors.append(e)

        error = join_errors(errors, f"failed to detach NAT gateway {name} from subnets")
        if error is not None:
            raise error
