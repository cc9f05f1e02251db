"""Translation of the infrastructure inputs into the desired cloud state.

The adapter is built once per reconciliation and then only queried. It does
no I/O: names, zones, CIDRs and ownership of every resource are derived from
the Infrastructure object, its last status, the cluster's cloud profile and
the whiteboard values persisted by the previous run.
"""

from __future__ import annotations

import copy
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field

from azure.mgmt.compute.models import AvailabilitySet, Sku
from azure.mgmt.network.models import (
    AddressSpace,
    NatGateway,
    NatGatewaySku,
    NetworkSecurityGroup,
    PublicIPAddress,
    PublicIPAddressSku,
    RouteTable,
    ServiceEndpointPropertiesFormat,
    SubResource,
    Subnet,
    VirtualNetwork,
)
from azure.mgmt.resource.resources.models import ResourceGroup

from .errors import AdapterConfigurationError
from .identifiers import Kind, ResourceMetadata
from .models import (
    ANNOTATION_DISABLE_DEFAULT_OUTBOUND_ACCESS,
    ANNOTATION_VMO_MIGRATION,
    ANNOTATION_ZONE_MIGRATION,
    Cluster,
    DomainCount,
    IdentityConfig,
    Infrastructure,
    NetworkLayout,
    OutboundAccessType,
)
from .whiteboard import CHILD_IDS, CHILD_MIGRATION, KEY_COMPLETE, KEY_SEPARATOR

logger = logging.getLogger(__name__)

TAG_MANAGED_BY = "managed-by"
TAG_SHOOT_NAME = "shoot-name"

# Public IPs carrying these tags belong to the cloud controller manager
CCM_SERVICE_TAGS = ("k8s-azure-service", "k8s-azure-service-legacy")

ROUTE_TABLE_NAME = "worker_route_table"
AVAILABILITY_SET_SKU = "Aligned"
PUBLIC_IP_SKU = "Standard"
PUBLIC_IP_TIER = "Regional"
PUBLIC_IP_ALLOCATION_METHOD = "Static"
NAT_GATEWAY_SKU = "Standard"

AVAILABILITY_SET_MIGRATION_PATH = KEY_SEPARATOR.join(
    (CHILD_MIGRATION, Kind.AVAILABILITY_SET.key, KEY_COMPLETE)
)
AVAILABILITY_SET_ID_PATH = KEY_SEPARATOR.join((CHILD_IDS, Kind.AVAILABILITY_SET.key))


def merge_tags(existing: Mapping[str, str] | None, shoot_name: str) -> dict[str, str]:
    """Add the ownership tags without dropping tags set by anyone else."""
    tags = dict(existing or {})
    tags[TAG_MANAGED_BY] = "true"
    tags[TAG_SHOOT_NAME] = shoot_name
    return tags


def _is_true(value: str | None) -> bool:
    return (value or "").strip().lower() in ("true", "1", "yes")


def find_domain_count_by_region(counts: list[DomainCount], region: str) -> int:
    """Look up the fault or update domain count of a region.

    Raises:
        AdapterConfigurationError: If the cloud profile has no entry for the region.
    """
    for entry in counts:
        if entry.region == region:
            return entry.count
    raise AdapterConfigurationError(f"could not find a domain count for region {region}")


# =============================================================================
# Desired configuration per kind
# =============================================================================


@dataclass(frozen=True)
class ResourceGroupConfig:
    """Cluster resource group; ``managed`` is False for a user-named group."""

    name: str
    location: str
    shoot_name: str
    managed: bool = True

    @property
    def metadata(self) -> ResourceMetadata:
        return ResourceMetadata(self.name, self.name, Kind.RESOURCE_GROUP)

    def to_provider(self, base: ResourceGroup | None) -> ResourceGroup:
        target = copy.deepcopy(base) if base is not None else ResourceGroup(location=self.location)
        target.location = self.location
        target.tags = merge_tags(target.tags, self.shoot_name)
        return target


@dataclass(frozen=True)
class VirtualNetworkConfig:
    """Virtual network; ``managed`` is False for a user-provided vnet."""

    name: str
    resource_group: str
    location: str
    managed: bool
    cidr: str
    shoot_name: str
    ddos_plan_id: str | None = None

    @property
    def metadata(self) -> ResourceMetadata:
        return ResourceMetadata(self.resource_group, self.name, Kind.VIRTUAL_NETWORK)

    def to_provider(self, base: VirtualNetwork | None) -> VirtualNetwork:
        target = copy.deepcopy(base) if base is not None else VirtualNetwork()
        target.location = self.location
        target.address_space = AddressSpace(address_prefixes=[self.cidr])
        if self.ddos_plan_id:
            target.ddos_protection_plan = SubResource(id=self.ddos_plan_id)
            target.enable_ddos_protection = True
        elif target.ddos_protection_plan is not None:
            target.ddos_protection_plan = None
            target.enable_ddos_protection = False
        target.tags = merge_tags(target.tags, self.shoot_name)
        return target


@dataclass(frozen=True)
class AvailabilitySetConfig:
    """Availability set. Domain counts cannot change after creation."""

    name: str
    resource_group: str
    location: str
    fault_domain_count: int
    update_domain_count: int
    shoot_name: str

    @property
    def metadata(self) -> ResourceMetadata:
        return ResourceMetadata(self.resource_group, self.name, Kind.AVAILABILITY_SET)

    def to_provider(self, base: AvailabilitySet | None) -> AvailabilitySet:
        if base is None:
            base = AvailabilitySet(location=self.location)
        target = copy.deepcopy(base)
        target.location = self.location
        target.sku = Sku(name=AVAILABILITY_SET_SKU)
        target.platform_fault_domain_count = self.fault_domain_count
        target.platform_update_domain_count = self.update_domain_count
        target.tags = merge_tags(target.tags, self.shoot_name)
        return target


@dataclass(frozen=True)
class RouteTableConfig:
    name: str
    resource_group: str
    location: str
    shoot_name: str

    @property
    def metadata(self) -> ResourceMetadata:
        return ResourceMetadata(self.resource_group, self.name, Kind.ROUTE_TABLE)

    def to_provider(self, base: RouteTable | None) -> RouteTable:
        # Routes are written by the cloud controller manager and are kept as they are.
        target = copy.deepcopy(base) if base is not None else RouteTable()
        target.location = self.location
        target.tags = merge_tags(target.tags, self.shoot_name)
        return target


@dataclass(frozen=True)
class SecurityGroupConfig:
    name: str
    resource_group: str
    location: str
    shoot_name: str

    @property
    def metadata(self) -> ResourceMetadata:
        return ResourceMetadata(self.resource_group, self.name, Kind.SECURITY_GROUP)

    def to_provider(self, base: NetworkSecurityGroup | None) -> NetworkSecurityGroup:
        target = copy.deepcopy(base) if base is not None else NetworkSecurityGroup()
        target.location = self.location
        target.tags = merge_tags(target.tags, self.shoot_name)
        return target


@dataclass(frozen=True)
class PublicIPConfig:
    """Public IP of a NAT gateway.

    Unmanaged IPs are owned by the user and only referenced. ``used_by_lb``
    marks an IP that serves a load balancer frontend rather than a NAT gateway;
    the adapter never produces such IPs.
    """

    name: str
    resource_group: str
    location: str
    zones: tuple[str, ...]
    managed: bool
    shoot_name: str
    used_by_lb: bool = False

    @property
    def metadata(self) -> ResourceMetadata:
        return ResourceMetadata(self.resource_group, self.name, Kind.PUBLIC_IP)

    def to_provider(self, base: PublicIPAddress | None) -> PublicIPAddress:
        target = copy.deepcopy(base) if base is not None else PublicIPAddress()
        target.location = self.location
        target.zones = list(self.zones) or None
        target.sku = PublicIPAddressSku(name=PUBLIC_IP_SKU, tier=PUBLIC_IP_TIER)
        target.public_ip_allocation_method = PUBLIC_IP_ALLOCATION_METHOD
        target.tags = merge_tags(target.tags, self.shoot_name)
        return target


@dataclass(frozen=True)
class NatGatewayConfig:
    name: str
    resource_group: str
    location: str
    shoot_name: str
    zone: str | None = None
    idle_timeout_minutes: int | None = None
    public_ips: tuple[PublicIPConfig, ...] = ()

    @property
    def metadata(self) -> ResourceMetadata:
        return ResourceMetadata(self.resource_group, self.name, Kind.NAT_GATEWAY)

    def to_provider(self, base: NatGateway | None) -> NatGateway:
        """Desired NAT gateway without its public IP references.

        The IP sub-resources are attached by the ensurer, which knows the
        subscription.
        """
        target = copy.deepcopy(base) if base is not None else NatGateway()
        target.location = self.location
        target.sku = NatGatewaySku(name=NAT_GATEWAY_SKU)
        target.zones = [self.zone] if self.zone else None
        if self.idle_timeout_minutes is not None:
            target.idle_timeout_in_minutes = self.idle_timeout_minutes
        target.tags = merge_tags(target.tags, self.shoot_name)
        return target


@dataclass(frozen=True)
class SubnetConfig:
    """Node subnet of one zone, living in the vnet's resource group."""

    name: str
    resource_group: str
    vnet_name: str
    cidr: str
    service_endpoints: tuple[str, ...] = ()
    zone: str | None = None
    default_outbound_access: bool = True
    migrated: bool = False

    @property
    def metadata(self) -> ResourceMetadata:
        return ResourceMetadata(self.resource_group, self.name, Kind.SUBNET, self.vnet_name)

    def to_provider(self, base: Subnet | None) -> Subnet:
        """Desired subnet without route table, security group and NAT references."""
        target = copy.deepcopy(base) if base is not None else Subnet()
        target.address_prefix = self.cidr

        existing = {ep.service: ep for ep in (target.service_endpoints or []) if ep.service}
        endpoints = [
            existing.get(service) or ServiceEndpointPropertiesFormat(service=service)
            for service in self.service_endpoints
        ]
        if endpoints or target.service_endpoints:
            target.service_endpoints = endpoints

        target.default_outbound_access = self.default_outbound_access
        return target


@dataclass(frozen=True)
class ZoneConfig:
    subnet: SubnetConfig
    nat_gateway: NatGatewayConfig | None = None
    migrated: bool = False


@dataclass(frozen=True)
class ManagedIdentityConfig:
    """User-provided managed identity; only read, never written."""

    name: str
    resource_group: str
    acr_access: bool = False

    @property
    def metadata(self) -> ResourceMetadata:
        return ResourceMetadata(self.resource_group, self.name, Kind.MANAGED_IDENTITY)


# =============================================================================
# Adapter
# =============================================================================


@dataclass
class InfrastructureAdapter:
    """Desired state of one cluster's infrastructure.

    Args:
        infra: The Infrastructure object being reconciled.
        cluster: Shoot and cloud profile of the cluster.
        state_data: Flat whiteboard data persisted by the previous run.

    Raises:
        AdapterConfigurationError: If the inputs cannot be translated (missing
            region entry in the cloud profile, unknown or ambiguous migration
            zone).
    """

    infra: Infrastructure
    cluster: Cluster
    state_data: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.config = self.infra.provider_config
        self._migrated_zone = self._parse_migrated_zone()
        self._vnet = self._virtual_network_config()
        self._avset = self._availability_set_config()
        self._zones = self._zone_configs()

    # Naming

    @property
    def technical_name(self) -> str:
        return self.infra.namespace

    @property
    def resource_group_name(self) -> str:
        if self.config.resource_group is not None:
            return self.config.resource_group.name
        return self.technical_name

    @property
    def region(self) -> str:
        return self.infra.region

    def nat_gateway_name(self, zone: int | None = None, migrated: bool = False) -> str:
        name = f"{self.technical_name}-nat-gateway"
        if zone is None or migrated:
            return name
        return f"{name}-z{zone}"

    def subnet_name(self, zone: int | None = None, migrated: bool = False) -> str:
        name = f"{self.technical_name}-nodes"
        if zone is None or migrated:
            return name
        return f"{name}-z{zone}"

    @staticmethod
    def public_ip_name(nat_gateway_name: str) -> str:
        return f"{nat_gateway_name}-ip"

    def is_own_subnet_name(self, name: str) -> bool:
        """True for the names of this cluster's node subnets only.

        A shared vnet may hold subnets of other clusters whose names share
        this cluster's prefix.
        """
        own = self.subnet_name()
        return name == own or name.startswith(f"{own}-z")

    def has_shoot_prefix(self, name: str | None) -> bool:
        return bool(name) and name.startswith(f"{self.technical_name}-")  # type: ignore[union-attr]

    # Per-kind configuration

    def resource_group(self) -> ResourceGroupConfig:
        return ResourceGroupConfig(
            name=self.resource_group_name,
            location=self.region,
            shoot_name=self.technical_name,
            managed=self.config.resource_group is None,
        )

    def virtual_network_config(self) -> VirtualNetworkConfig:
        return self._vnet

    def availability_set_config(self) -> AvailabilitySetConfig | None:
        return self._avset

    def route_table_config(self) -> RouteTableConfig:
        return RouteTableConfig(
            name=ROUTE_TABLE_NAME,
            resource_group=self.resource_group_name,
            location=self.region,
            shoot_name=self.technical_name,
        )

    def security_group_config(self) -> SecurityGroupConfig:
        return SecurityGroupConfig(
            name=f"{self.technical_name}-workers",
            resource_group=self.resource_group_name,
            location=self.region,
            shoot_name=self.technical_name,
        )

    def identity_config(self) -> ManagedIdentityConfig | None:
        identity: IdentityConfig | None = self.config.identity
        if identity is None:
            return None
        return ManagedIdentityConfig(
            name=identity.name,
            resource_group=identity.resource_group,
            acr_access=identity.acr_access,
        )

    def zones(self) -> list[ZoneConfig]:
        return list(self._zones)

    def nat_gateway_configs(self) -> dict[str, NatGatewayConfig]:
        return {z.nat_gateway.name: z.nat_gateway for z in self._zones if z.nat_gateway}

    def ip_configs(self) -> list[PublicIPConfig]:
        """Every public IP referenced by a NAT gateway, managed or not."""
        return [
            ip
            for nat in self.nat_gateway_configs().values()
            for ip in nat.public_ips
        ]

    def managed_ip_configs(self) -> dict[str, PublicIPConfig]:
        """Public IPs this controller creates and updates, keyed by name."""
        return {ip.name: ip for ip in self.ip_configs() if ip.managed and not ip.used_by_lb}

    # Cluster shape

    @property
    def zoned(self) -> bool:
        return self.config.zoned

    def layout(self) -> NetworkLayout:
        if self.config.networks.zones:
            return NetworkLayout.MULTIPLE_SUBNET
        return NetworkLayout.SINGLE_SUBNET

    def outbound_access_type(self) -> OutboundAccessType:
        if any(z.nat_gateway is not None for z in self._zones):
            return OutboundAccessType.NAT_GATEWAY
        return OutboundAccessType.LOAD_BALANCER

    def vmo_migration_requested(self) -> bool:
        """The shoot (or the infrastructure) asks to move to VMSS-flex."""
        value = self.cluster.shoot.metadata.annotations.get(ANNOTATION_VMO_MIGRATION)
        if value is None:
            value = self.infra.annotations.get(ANNOTATION_VMO_MIGRATION)
        return value == "true"

    def availability_set_migration_complete(self) -> bool:
        return self.state_data.get(AVAILABILITY_SET_MIGRATION_PATH) == "true"

    def availability_set_exists(self) -> bool:
        status = self.infra.provider_status
        if status is not None and status.nodes_availability_set() is not None:
            return True
        return bool(self.state_data.get(AVAILABILITY_SET_ID_PATH))

    def migrating_to_vmo(self) -> bool:
        """The availability set is being replaced during this reconciliation."""
        return self._avset is not None and self.vmo_migration_requested()

    # Builders

    def _parse_migrated_zone(self) -> int | None:
        value = self.infra.annotations.get(ANNOTATION_ZONE_MIGRATION)
        if value is None:
            return None
        zones = self.config.networks.zones
        if not zones:
            logger.info(
                "Ignoring zone migration annotation on single-subnet layout",
                extra={"annotation_value": value},
            )
            return None
        try:
            migrated = int(value.strip())
        except ValueError as e:
            raise AdapterConfigurationError(
                f"annotation {ANNOTATION_ZONE_MIGRATION} must name exactly one zone: {value!r}"
            ) from e
        if migrated not in {z.name for z in zones}:
            raise AdapterConfigurationError(
                f"annotation {ANNOTATION_ZONE_MIGRATION} names zone {migrated} "
                "which is not configured"
            )
        return migrated

    def _virtual_network_config(self) -> VirtualNetworkConfig:
        vnet = self.config.networks.vnet
        managed = vnet.resource_group is None
        cidr = vnet.cidr or self.config.networks.workers
        if cidr is None:
            if managed:
                raise AdapterConfigurationError(
                    "networks.vnet.cidr or networks.workers is required for a managed vnet"
                )
            cidr = ""
        return VirtualNetworkConfig(
            name=self.technical_name if managed else vnet.name or "",
            resource_group=self.resource_group_name if managed else vnet.resource_group or "",
            location=self.region,
            managed=managed,
            cidr=cidr,
            shoot_name=self.technical_name,
            ddos_plan_id=vnet.ddos_protection_plan_id,
        )

    def _availability_set_config(self) -> AvailabilitySetConfig | None:
        if self.config.zoned or not self.availability_set_exists():
            return None
        if self.availability_set_migration_complete():
            return None
        profile = self.cluster.cloud_profile
        return AvailabilitySetConfig(
            name=f"{self.technical_name}-avset-workers",
            resource_group=self.resource_group_name,
            location=self.region,
            fault_domain_count=find_domain_count_by_region(
                profile.count_fault_domains, self.region
            ),
            update_domain_count=find_domain_count_by_region(
                profile.count_update_domains, self.region
            ),
            shoot_name=self.technical_name,
        )

    def _default_outbound_access(self) -> bool:
        return not _is_true(self.infra.annotations.get(ANNOTATION_DISABLE_DEFAULT_OUTBOUND_ACCESS))

    def _public_ip(
        self,
        name: str,
        resource_group: str,
        zones: tuple[str, ...],
        managed: bool,
    ) -> PublicIPConfig:
        return PublicIPConfig(
            name=name,
            resource_group=resource_group,
            location=self.region,
            zones=zones,
            managed=managed,
            shoot_name=self.technical_name,
        )

    def _zone_configs(self) -> list[ZoneConfig]:
        networks = self.config.networks
        if not networks.zones:
            return [self._default_zone()]

        zones = []
        for zone in networks.zones:
            zone_name = str(zone.name)
            migrated = self._migrated_zone == zone.name
            subnet = SubnetConfig(
                name=self.subnet_name(zone.name, migrated),
                resource_group=self._vnet.resource_group,
                vnet_name=self._vnet.name,
                cidr=zone.cidr,
                service_endpoints=tuple(zone.service_endpoints),
                zone=zone_name,
                default_outbound_access=self._default_outbound_access(),
                migrated=migrated,
            )

            nat = None
            if zone.nat_gateway is not None and zone.nat_gateway.enabled:
                nat_name = self.nat_gateway_name(zone.name, migrated)
                if zone.nat_gateway.ip_addresses:
                    ips = tuple(
                        self._public_ip(ref.name, ref.resource_group, (zone_name,), managed=False)
                        for ref in zone.nat_gateway.ip_addresses
                    )
                else:
                    ips = (
                        self._public_ip(
                            self.public_ip_name(nat_name),
                            self.resource_group_name,
                            (zone_name,),
                            managed=True,
                        ),
                    )
                nat = NatGatewayConfig(
                    name=nat_name,
                    resource_group=self.resource_group_name,
                    location=self.region,
                    shoot_name=self.technical_name,
                    zone=zone_name,
                    idle_timeout_minutes=zone.nat_gateway.idle_connection_timeout_minutes,
                    public_ips=ips,
                )
            zones.append(ZoneConfig(subnet=subnet, nat_gateway=nat, migrated=migrated))
        return zones

    def _default_zone(self) -> ZoneConfig:
        networks = self.config.networks
        subnet = SubnetConfig(
            name=self.subnet_name(),
            resource_group=self._vnet.resource_group,
            vnet_name=self._vnet.name,
            cidr=networks.workers,  # type: ignore[arg-type]
            service_endpoints=tuple(networks.service_endpoints),
            default_outbound_access=self._default_outbound_access(),
        )
        nat_config = networks.nat_gateway
        if nat_config is None or not nat_config.enabled:
            return ZoneConfig(subnet=subnet)

        nat_name = self.nat_gateway_name()
        nat_zone = str(nat_config.zone) if nat_config.zone is not None else None
        if nat_config.ip_addresses:
            ips = tuple(
                self._public_ip(
                    ref.name,
                    ref.resource_group,
                    (str(ref.zone),) if ref.zone is not None else (),
                    managed=False,
                )
                for ref in nat_config.ip_addresses
            )
        else:
            ips = (
                self._public_ip(
                    self.public_ip_name(nat_name),
                    self.resource_group_name,
                    (nat_zone,) if nat_zone else (),
                    managed=True,
                ),
            )
        nat = NatGatewayConfig(
            name=nat_name,
            resource_group=self.resource_group_name,
            location=self.region,
            shoot_name=self.technical_name,
            zone=nat_zone,
            idle_timeout_minutes=nat_config.idle_connection_timeout_minutes,
            public_ips=ips,
        )
        return ZoneConfig(subnet=subnet, nat_gateway=nat)
