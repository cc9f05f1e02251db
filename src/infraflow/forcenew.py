"""Immutable-field detection per resource kind.

Each predicate compares the current cloud object with the desired one and
reports whether the resource has to be deleted and recreated instead of
updated in place. These predicates are the only place field immutability is
encoded.
"""

from __future__ import annotations

from typing import Any, NamedTuple

from azure.mgmt.network.models import NatGateway, PublicIPAddress, Subnet


class ForceNew(NamedTuple):
    """Result of a force-new predicate."""

    force_new: bool
    field: str = ""
    current_value: Any = None


NO_FORCE_NEW = ForceNew(False)


def normalize_location(location: str | None) -> str:
    """Normalise a region name ("West Europe" and "westeurope" are equal)."""
    return (location or "").replace(" ", "").lower()


def same_location(current: str | None, desired: str | None) -> bool:
    return normalize_location(current) == normalize_location(desired)


def _zones(zones: list[str] | None) -> list[str]:
    return sorted(zones or [])


def _text(value: Any) -> str:
    # SDK enums render as "Class.MEMBER" through str()
    return str(getattr(value, "value", value) or "").lower()


def force_new_public_ip(current: PublicIPAddress, target: PublicIPAddress) -> ForceNew:
    """Location, zones and allocation method of a public IP are immutable."""
    if not same_location(current.location, target.location):
        return ForceNew(True, "location", current.location)
    if _zones(current.zones) != _zones(target.zones):
        return ForceNew(True, "zones", current.zones)
    if _text(current.public_ip_allocation_method) != _text(target.public_ip_allocation_method):
        return ForceNew(True, "public_ip_allocation_method", current.public_ip_allocation_method)
    return NO_FORCE_NEW


def force_new_nat_gateway(current: NatGateway, target: NatGateway) -> ForceNew:
    """Location and zones of a NAT gateway are immutable."""
    if not same_location(current.location, target.location):
        return ForceNew(True, "location", current.location)
    if _zones(current.zones) != _zones(target.zones):
        return ForceNew(True, "zones", current.zones)
    return NO_FORCE_NEW


def force_new_subnet(current: Subnet, target: Subnet) -> ForceNew:
    """Every subnet property can be updated in place."""
    return NO_FORCE_NEW
