"""Pydantic models for infrastructure inputs, status and persisted state.

Field aliases follow the camelCase used by the Kubernetes manifests these
models are read from; Python code uses the snake_case names.
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated

from pydantic import BaseModel, Field, field_validator, model_validator

# Annotations consumed on the infrastructure (and shoot) objects
ANNOTATION_ZONE_MIGRATION = "network-layout-zone-migration"
ANNOTATION_DISABLE_DEFAULT_OUTBOUND_ACCESS = "disable-default-outbound-access"
ANNOTATION_VMO_MIGRATION = "shoot-vmo-migration"

PURPOSE_NODES = "nodes"


def _validate_cidr(value: str | None, field_name: str) -> str | None:
    if value is not None and "/" not in value:
        raise ValueError(f"{field_name} must be in CIDR notation (e.g., 10.0.0.0/16)")
    return value


# =============================================================================
# Provider configuration (user input)
# =============================================================================


class ResourceGroupRef(BaseModel):
    """Reference to a user-chosen resource group name."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: Annotated[str, Field(min_length=1, max_length=90)]


class VNetConfig(BaseModel):
    """Virtual network settings. A resource group marks the vnet as user-provided."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: str | None = None
    resource_group: str | None = Field(None, alias="resourceGroup")
    cidr: str | None = None
    ddos_protection_plan_id: str | None = Field(None, alias="ddosProtectionPlanID")

    @field_validator("cidr")
    @classmethod
    def validate_cidr(cls, v: str | None) -> str | None:
        return _validate_cidr(v, "vnet.cidr")

    @model_validator(mode="after")
    def validate_reference(self) -> VNetConfig:
        if (self.name is None) != (self.resource_group is None):
            raise ValueError("vnet.name and vnet.resourceGroup must be set together")
        return self


class PublicIPReference(BaseModel):
    """User-provided public IP for the default-zone NAT gateway."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: Annotated[str, Field(min_length=1)]
    resource_group: Annotated[str, Field(min_length=1, alias="resourceGroup")]
    zone: int | None = None


class ZonedPublicIPReference(BaseModel):
    """User-provided public IP for a zonal NAT gateway."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: Annotated[str, Field(min_length=1)]
    resource_group: Annotated[str, Field(min_length=1, alias="resourceGroup")]


class NatGatewayConfig(BaseModel):
    """NAT gateway of the default zone."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    enabled: bool = False
    idle_connection_timeout_minutes: Annotated[
        int | None, Field(ge=4, le=120, alias="idleConnectionTimeoutMinutes")
    ] = None
    zone: int | None = None
    ip_addresses: list[PublicIPReference] = Field(default_factory=list, alias="ipAddresses")


class ZonedNatGatewayConfig(BaseModel):
    """NAT gateway of one zone."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    enabled: bool = False
    idle_connection_timeout_minutes: Annotated[
        int | None, Field(ge=4, le=120, alias="idleConnectionTimeoutMinutes")
    ] = None
    ip_addresses: list[ZonedPublicIPReference] = Field(
        default_factory=list, alias="ipAddresses"
    )


class ZoneConfig(BaseModel):
    """One availability zone with its own subnet."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: Annotated[int, Field(ge=1)]
    cidr: str
    service_endpoints: list[str] = Field(default_factory=list, alias="serviceEndpoints")
    nat_gateway: ZonedNatGatewayConfig | None = Field(None, alias="natGateway")

    @field_validator("cidr")
    @classmethod
    def validate_cidr(cls, v: str) -> str:
        return _validate_cidr(v, "zones[].cidr")  # type: ignore[return-value]


class NetworkConfig(BaseModel):
    """Network layout of the cluster."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    vnet: VNetConfig = Field(default_factory=VNetConfig)
    workers: str | None = None
    nat_gateway: NatGatewayConfig | None = Field(None, alias="natGateway")
    service_endpoints: list[str] = Field(default_factory=list, alias="serviceEndpoints")
    zones: list[ZoneConfig] = Field(default_factory=list)

    @field_validator("workers")
    @classmethod
    def validate_workers(cls, v: str | None) -> str | None:
        return _validate_cidr(v, "networks.workers")

    @model_validator(mode="after")
    def validate_layout(self) -> NetworkConfig:
        if not self.zones and not self.workers:
            raise ValueError("either networks.workers or networks.zones must be set")
        names = [zone.name for zone in self.zones]
        if len(names) != len(set(names)):
            raise ValueError(f"zone names must be unique: {names}")
        return self


class IdentityConfig(BaseModel):
    """User-provided managed identity attached to the cluster."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: Annotated[str, Field(min_length=1)]
    resource_group: Annotated[str, Field(min_length=1, alias="resourceGroup")]
    acr_access: bool = Field(False, alias="acrAccess")


class InfrastructureConfig(BaseModel):
    """Provider-specific infrastructure configuration of a cluster."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    resource_group: ResourceGroupRef | None = Field(None, alias="resourceGroup")
    networks: NetworkConfig
    identity: IdentityConfig | None = None
    zoned: bool = False


# =============================================================================
# Status (output)
# =============================================================================


class NetworkLayout(str, Enum):
    """Subnet layout of the cluster network."""

    SINGLE_SUBNET = "SingleSubnet"
    MULTIPLE_SUBNET = "MultipleSubnet"


class OutboundAccessType(str, Enum):
    """How cluster nodes reach the internet."""

    NAT_GATEWAY = "NatGateway"
    LOAD_BALANCER = "LoadBalancer"


class VNetStatus(BaseModel):
    model_config = {"extra": "ignore", "populate_by_name": True}

    name: str
    resource_group: str | None = Field(None, alias="resourceGroup")


class SubnetStatus(BaseModel):
    model_config = {"extra": "ignore", "populate_by_name": True}

    name: str
    purpose: str = PURPOSE_NODES
    zone: str | None = None
    migrated: bool = False


class NetworkStatus(BaseModel):
    model_config = {"extra": "ignore", "populate_by_name": True}

    vnet: VNetStatus
    subnets: list[SubnetStatus] = Field(default_factory=list)
    layout: NetworkLayout = NetworkLayout.SINGLE_SUBNET
    outbound_access_type: OutboundAccessType = Field(
        OutboundAccessType.LOAD_BALANCER, alias="outboundAccessType"
    )


class ResourceGroupStatus(BaseModel):
    model_config = {"extra": "ignore", "populate_by_name": True}

    name: str


class AvailabilitySetStatus(BaseModel):
    model_config = {"extra": "ignore", "populate_by_name": True}

    purpose: str = PURPOSE_NODES
    id: str
    name: str
    count_fault_domains: int | None = Field(None, alias="countFaultDomains")
    count_update_domains: int | None = Field(None, alias="countUpdateDomains")


class PurposedResourceStatus(BaseModel):
    """A route table or security group, identified by purpose."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    purpose: str = PURPOSE_NODES
    name: str


class IdentityStatus(BaseModel):
    model_config = {"extra": "ignore", "populate_by_name": True}

    id: str
    client_id: str = Field(alias="clientID")
    acr_access: bool = Field(False, alias="acrAccess")


class InfrastructureStatus(BaseModel):
    """Provider status reported after a reconciliation."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    networks: NetworkStatus
    resource_group: ResourceGroupStatus = Field(alias="resourceGroup")
    availability_sets: list[AvailabilitySetStatus] = Field(
        default_factory=list, alias="availabilitySets"
    )
    route_tables: list[PurposedResourceStatus] = Field(default_factory=list, alias="routeTables")
    security_groups: list[PurposedResourceStatus] = Field(
        default_factory=list, alias="securityGroups"
    )
    identity: IdentityStatus | None = None
    zoned: bool = False
    migrating_to_vmo: bool = Field(False, alias="migratingToVMO")
    egress_cidrs: list[str] = Field(default_factory=list, alias="egressCIDRs")

    def nodes_availability_set(self) -> AvailabilitySetStatus | None:
        for avset in self.availability_sets:
            if avset.purpose == PURPOSE_NODES:
                return avset
        return None


# =============================================================================
# Persisted state
# =============================================================================


class AzureResource(BaseModel):
    """One resource created by the reconciler."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    kind: str
    id: Annotated[str, Field(min_length=1)]


class InfrastructureState(BaseModel):
    """State carried between reconciliations."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    managed_items: list[AzureResource] = Field(default_factory=list, alias="managedItems")
    data: dict[str, str] = Field(default_factory=dict)


# =============================================================================
# Kubernetes-shaped inputs
# =============================================================================


class ObjectMeta(BaseModel):
    model_config = {"extra": "ignore", "populate_by_name": True}

    name: str = ""
    namespace: str = ""
    annotations: dict[str, str] = Field(default_factory=dict)


class InfrastructureSpec(BaseModel):
    model_config = {"extra": "ignore", "populate_by_name": True}

    region: Annotated[str, Field(min_length=1)]
    provider_config: InfrastructureConfig = Field(alias="providerConfig")


class InfrastructureResourceStatus(BaseModel):
    model_config = {"extra": "ignore", "populate_by_name": True}

    provider_status: InfrastructureStatus | None = Field(None, alias="providerStatus")
    state: InfrastructureState | None = None


class Infrastructure(BaseModel):
    """Infrastructure object of one cluster."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    metadata: ObjectMeta
    spec: InfrastructureSpec
    status: InfrastructureResourceStatus = Field(default_factory=InfrastructureResourceStatus)

    @field_validator("metadata")
    @classmethod
    def validate_namespace(cls, v: ObjectMeta) -> ObjectMeta:
        if not v.namespace:
            raise ValueError("metadata.namespace is required")
        return v

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    @property
    def region(self) -> str:
        return self.spec.region

    @property
    def annotations(self) -> dict[str, str]:
        return self.metadata.annotations

    @property
    def provider_config(self) -> InfrastructureConfig:
        return self.spec.provider_config

    @property
    def provider_status(self) -> InfrastructureStatus | None:
        return self.status.provider_status


class DomainCount(BaseModel):
    """Fault or update domain count of one region."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    region: Annotated[str, Field(min_length=1)]
    count: Annotated[int, Field(ge=1)]


class CloudProfileConfig(BaseModel):
    """Region-specific platform defaults."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    count_update_domains: list[DomainCount] = Field(
        default_factory=list, alias="countUpdateDomains"
    )
    count_fault_domains: list[DomainCount] = Field(
        default_factory=list, alias="countFaultDomains"
    )


class Shoot(BaseModel):
    model_config = {"extra": "ignore", "populate_by_name": True}

    metadata: ObjectMeta = Field(default_factory=ObjectMeta)


class Cluster(BaseModel):
    """Cluster record: the shoot and its cloud profile."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    shoot: Shoot = Field(default_factory=Shoot)
    cloud_profile: CloudProfileConfig = Field(
        default_factory=CloudProfileConfig, alias="cloudProfile"
    )
