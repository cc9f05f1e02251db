"""Tests for the whiteboard."""

from __future__ import annotations

import pytest

from infraflow.whiteboard import Whiteboard


class TestWhiteboard:
    """Tests for Whiteboard."""

    def test_set_get_delete(self) -> None:
        """Test scalar values."""
        wb = Whiteboard()
        wb.set("key", "value")
        assert wb.get("key") == "value"
        assert wb.has("key")

        wb.set("key", None)
        assert wb.get("key") is None
        assert not wb.has("key")

    def test_invalid_keys(self) -> None:
        """Test that empty keys and keys with separators are rejected."""
        wb = Whiteboard()
        with pytest.raises(ValueError):
            wb.set("", "x")
        with pytest.raises(ValueError):
            wb.set("a/b", "x")
        with pytest.raises(ValueError):
            wb.child("a/b")

    def test_children_created_on_demand(self) -> None:
        """Test child nodes."""
        wb = Whiteboard()
        assert not wb.has_child("ids")

        wb.child("ids").set("Subnet", "id")

        assert wb.has_child("ids")
        assert wb.child("ids").get("Subnet") == "id"
        assert wb.children_keys() == ["ids"]

    def test_child_path(self) -> None:
        """Test addressing a descendant by path."""
        wb = Whiteboard()
        wb.child_path("migration/AvailabilitySet").set("phase", "pending")
        assert wb.child("migration").child("AvailabilitySet").get("phase") == "pending"

    def test_objects_are_not_exported(self) -> None:
        """Test that opaque objects never reach the persisted form."""
        wb = Whiteboard()
        wb.child("NatGateway").set_object("PublicIpAddresses", ["1.2.3.4"])

        assert wb.child("NatGateway").get_object("PublicIpAddresses") == ["1.2.3.4"]
        assert wb.export_as_flat_map() == {}
        assert wb.is_empty()

    def test_export_import_flat_map(self) -> None:
        """Test that string leaves survive a flat-map round trip."""
        wb = Whiteboard()
        wb.set("resources_exist", "true")
        wb.child("ids").set("VirtualNetwork", "vnet-id")
        wb.child("migration").child("basic-lb").child("rg").set("lb-ip", "true")

        flat = wb.export_as_flat_map()

        assert flat == {
            "resources_exist": "true",
            "ids/VirtualNetwork": "vnet-id",
            "migration/basic-lb/rg/lb-ip": "true",
        }
        restored = Whiteboard.from_flat_map(flat)
        assert restored.export_as_flat_map() == flat
        assert restored.child_path("migration/basic-lb/rg").get("lb-ip") == "true"

    def test_delete_child(self) -> None:
        """Test dropping a subtree."""
        wb = Whiteboard.from_flat_map({"ids/Subnet/a": "1", "other": "2"})
        wb.delete_child("ids")
        assert wb.export_as_flat_map() == {"other": "2"}

    def test_is_empty(self) -> None:
        """Test emptiness across the subtree."""
        wb = Whiteboard()
        wb.child("a").child("b")
        assert wb.is_empty()

        wb.child("a").child("b").set("c", "d")
        assert not wb.is_empty()
