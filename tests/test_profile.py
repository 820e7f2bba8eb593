"""Tests for connection profiles."""

from __future__ import annotations

import uuid

import pytest

from busharness.profile import ConnectionProfile, validate_settings


class TestConnectionProfile:
    """Building and inspecting profiles."""

    def test_new(self) -> None:
        """The connection setting is filled in and extra settings kept."""
        profile = ConnectionProfile.new("wired-1", "802-3-ethernet", **{"802-3-ethernet": {"mtu": 1500}})
        assert profile.id == "wired-1"
        assert profile.type == "802-3-ethernet"
        assert profile.uuid is not None
        uuid.UUID(profile.uuid)
        assert profile.settings["802-3-ethernet"] == {"mtu": 1500}
        assert profile.path is None

    def test_explicit_uuid(self) -> None:
        """A given uuid is used as is."""
        assert ConnectionProfile.new("w", "wifi", uuid="fixed").uuid == "fixed"

    def test_missing_connection_setting(self) -> None:
        """Accessors return None when there is no connection setting."""
        profile = ConnectionProfile({"ipv4": {"method": "auto"}})
        assert (profile.id, profile.uuid, profile.type) == (None, None, None)

    def test_to_wire_is_a_copy(self) -> None:
        """Changing the wire copy leaves the profile alone."""
        profile = ConnectionProfile.new("w", "wifi", wifi={"ssid": b"home"})
        wire = profile.to_wire()
        wire["wifi"]["ssid"] = b"away"
        assert profile.settings["wifi"]["ssid"] == b"home"

    def test_invalid_path(self) -> None:
        """Only object paths can be recorded."""
        with pytest.raises(ValueError, match="invalid object path"):
            ConnectionProfile({}, path="Settings/1")


class TestValidateSettings:
    """The a{sa{sv}} shape check."""

    @pytest.mark.parametrize(
        "settings",
        [
            [("connection", {})],
            {1: {}},
            {"connection": "wired"},
            {"connection": {2: "x"}},
        ],
    )
    def test_rejected(self, settings: object) -> None:
        """Anything but a map of str to a map of str is a TypeError."""
        with pytest.raises(TypeError):
            validate_settings(settings)

    def test_inner_maps_copied(self) -> None:
        """The returned settings do not share inner maps with the input."""
        inner = {"id": "a"}
        result = validate_settings({"connection": inner})
        assert result == {"connection": {"id": "a"}}
        assert result["connection"] is not inner
