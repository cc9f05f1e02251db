"""Azure resource identifiers, kinds and id templates.

Resource ids follow the ARM layout:

    /subscriptions/{s}/resourceGroups/{rg}
    /subscriptions/{s}/resourceGroups/{rg}/providers/{namespace}/{type}/{name}[/{subtype}/{name2}]

The last type/name pair is the primary resource; a nested resource (a subnet
inside a virtual network) carries its enclosing resource as ``parent``.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

ID_SEPARATOR = "/"


class Kind(str, Enum):
    """Closed set of resource kinds handled by the reconciler.

    The value is the ARM resource type, used when matching parsed ids.
    """

    RESOURCE_GROUP = "Microsoft.Resources/resourceGroups"
    VIRTUAL_NETWORK = "Microsoft.Network/virtualNetworks"
    SUBNET = "Microsoft.Network/virtualNetworks/subnets"
    ROUTE_TABLE = "Microsoft.Network/routeTables"
    SECURITY_GROUP = "Microsoft.Network/networkSecurityGroups"
    PUBLIC_IP = "Microsoft.Network/publicIPAddresses"
    NAT_GATEWAY = "Microsoft.Network/natGateways"
    AVAILABILITY_SET = "Microsoft.Compute/availabilitySets"
    LOAD_BALANCER = "Microsoft.Network/loadBalancers"
    MANAGED_IDENTITY = "Microsoft.ManagedIdentity/userAssignedIdentities"

    @property
    def key(self) -> str:
        """Short name used for whiteboard paths (``ids/<key>``)."""
        return KIND_KEYS[self]

    @classmethod
    def from_value(cls, value: str) -> Kind:
        """Look up a kind by ARM type or short key, ignoring case."""
        lowered = value.lower()
        for kind in cls:
            if kind.value.lower() == lowered or kind.key.lower() == lowered:
                return kind
        raise InvalidResourceIdError(f"unknown resource kind: {value}")


KIND_KEYS: dict[Kind, str] = {
    Kind.RESOURCE_GROUP: "ResourceGroup",
    Kind.VIRTUAL_NETWORK: "VirtualNetwork",
    Kind.SUBNET: "Subnet",
    Kind.ROUTE_TABLE: "RouteTable",
    Kind.SECURITY_GROUP: "SecurityGroup",
    Kind.PUBLIC_IP: "PublicIP",
    Kind.NAT_GATEWAY: "NatGateway",
    Kind.AVAILABILITY_SET: "AvailabilitySet",
    Kind.LOAD_BALANCER: "LoadBalancer",
    Kind.MANAGED_IDENTITY: "ManagedIdentity",
}

# Bit-exact id templates, used to reference resources without a round-trip.
TEMPLATE_RESOURCE_GROUP = "/subscriptions/{subscription}/resourceGroups/{resource_group}"
TEMPLATE_PROVIDER_RESOURCE = TEMPLATE_RESOURCE_GROUP + "/providers/{kind}/{name}"
TEMPLATE_SUBNET = (
    TEMPLATE_RESOURCE_GROUP
    + "/providers/Microsoft.Network/virtualNetworks/{vnet}/subnets/{name}"
)


class InvalidResourceIdError(ValueError):
    """Raised when a string is not a well-formed resource id of a known kind."""

    pass


@dataclass(frozen=True)
class ResourceIdentifier:
    """Parsed components of a resource id."""

    subscription: str
    resource_group: str
    kind: Kind
    name: str
    parent: ResourceIdentifier | None = None

    @classmethod
    def parse(cls, resource_id: str) -> ResourceIdentifier:
        """Parse a resource id string.

        Args:
            resource_id: Full ARM resource id.

        Returns:
            The parsed identifier.

        Raises:
            InvalidResourceIdError: If the id is malformed or of an unknown kind.
        """
        if not resource_id or not resource_id.startswith(ID_SEPARATOR):
            raise InvalidResourceIdError(f"resource id must start with '/': {resource_id!r}")

        segments = resource_id[1:].split(ID_SEPARATOR)
        if any(not segment for segment in segments):
            raise InvalidResourceIdError(f"resource id has empty segments: {resource_id!r}")
        if (
            len(segments) < 4
            or segments[0].lower() != "subscriptions"
            or segments[2].lower() != "resourcegroups"
        ):
            raise InvalidResourceIdError(
                f"resource id is not scoped to a resource group: {resource_id!r}"
            )

        subscription, resource_group = segments[1], segments[3]
        if len(segments) == 4:
            return cls(subscription, resource_group, Kind.RESOURCE_GROUP, resource_group)

        rest = segments[4:]
        if rest[0].lower() != "providers" or len(rest) < 4 or len(rest) % 2 != 0:
            raise InvalidResourceIdError(f"malformed provider path: {resource_id!r}")

        namespace = rest[1]
        pairs = [(rest[i], rest[i + 1]) for i in range(2, len(rest), 2)]
        if len(pairs) > 2:
            raise InvalidResourceIdError(f"resource nesting too deep: {resource_id!r}")

        parent: ResourceIdentifier | None = None
        resource_type = namespace
        for type_segment, name in pairs:
            resource_type = f"{resource_type}/{type_segment}"
            current = cls(
                subscription,
                resource_group,
                Kind.from_value(resource_type),
                name,
                parent,
            )
            parent = current

        return current

    @property
    def id(self) -> str:
        """Canonical string form, built from the templates."""
        if self.kind == Kind.RESOURCE_GROUP:
            return resource_group_id(self.subscription, self.resource_group)
        if self.parent is not None:
            return f"{self.parent.id}/{self.kind.value.rsplit('/', 1)[1]}/{self.name}"
        return resource_id(self.subscription, self.resource_group, self.kind, self.name)

    def __str__(self) -> str:
        return self.id


@dataclass(frozen=True)
class ResourceMetadata:
    """Identity of a resource for error reporting and logging."""

    resource_group: str
    name: str
    kind: Kind
    parent: str | None = None

    def __str__(self) -> str:
        path = f"{self.parent}/{self.name}" if self.parent else self.name
        return f"{self.kind.key} {self.resource_group}/{path}"


def resource_group_id(subscription: str, resource_group: str) -> str:
    """Id of a resource group."""
    return TEMPLATE_RESOURCE_GROUP.format(
        subscription=subscription, resource_group=resource_group
    )


def resource_id(subscription: str, resource_group: str, kind: Kind, name: str) -> str:
    """Id of a top-level resource inside a resource group.

    Raises:
        ValueError: For kinds that are not top-level provider resources.
    """
    if kind in (Kind.RESOURCE_GROUP, Kind.SUBNET):
        raise ValueError(f"{kind.key} ids are not built from the provider template")
    return TEMPLATE_PROVIDER_RESOURCE.format(
        subscription=subscription,
        resource_group=resource_group,
        kind=kind.value,
        name=name,
    )


def subnet_id(subscription: str, resource_group: str, vnet: str, name: str) -> str:
    """Id of a subnet inside a virtual network."""
    return TEMPLATE_SUBNET.format(
        subscription=subscription, resource_group=resource_group, vnet=vnet, name=name
    )
