# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Connection profiles sent to the stub service.

A profile is a mapping of setting name to a mapping of key to value
(signature ``a{sa{sv}}``)::

    {
        "connection": {"id": "wired-1", "uuid": "…", "type": "802-3-ethernet"},
        "802-3-ethernet": {"mtu": 1500},
    }
"""

from __future__ import annotations

import copy
import uuid as uuid_module
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, TypeAlias

from busharness.bus import is_object_path

__all__ = ["PROFILE_SIGNATURE", "ConnectionProfile", "validate_settings"]

PROFILE_SIGNATURE = "a{sa{sv}}"

Settings: TypeAlias = dict[str, dict[str, Any]]


def validate_settings(settings: object) -> Settings:
    """Check that *settings* has the profile shape and return it.

    Raises:
        TypeError: If *settings* is not a ``dict[str, dict[str, value]]``.

    """
    if not isinstance(settings, Mapping):
        raise TypeError(f"profile settings must be a mapping, got {type(settings).__name__}")
    for name, values in settings.items():
        if not isinstance(name, str):
            raise TypeError(f"setting names must be str, got {name!r}")
        if not isinstance(values, Mapping):
            raise TypeError(f"setting {name!r} must map keys to values, got {type(values).__name__}")
        for key in values:
            if not isinstance(key, str):
                raise TypeError(f"keys of setting {name!r} must be str, got {key!r}")
    return {name: dict(values) for name, values in settings.items()}


@dataclass
class ConnectionProfile:
    """A connection profile and, once the stub accepted it, its object path."""

    settings: Settings = field(default_factory=dict)
    path: str | None = None

    def __post_init__(self) -> None:
        """Validate the settings shape and the path."""
        self.settings = validate_settings(self.settings)
        if self.path is not None and not is_object_path(self.path):
            raise ValueError(f"invalid object path {self.path!r}")

    @classmethod
    def new(cls, id: str, type: str, *, uuid: str | None = None, **settings: Mapping[str, Any]) -> ConnectionProfile:
        """Build a profile with a ``connection`` setting plus *settings*.

        Setting names may not be valid Python identifiers; pass them through
        ``**{"802-3-ethernet": {...}}``.
        """
        connection = {"id": id, "uuid": uuid or str(uuid_module.uuid4()), "type": type}
        return cls({"connection": connection, **{k: dict(v) for k, v in settings.items()}})

    @property
    def id(self) -> str | None:
        """The ``connection.id`` value, if set."""
        return self.settings.get("connection", {}).get("id")

    @property
    def uuid(self) -> str | None:
        """The ``connection.uuid`` value, if set."""
        return self.settings.get("connection", {}).get("uuid")

    @property
    def type(self) -> str | None:
        """The ``connection.type`` value, if set."""
        return self.settings.get("connection", {}).get("type")

    def to_wire(self) -> Settings:
        """Return a deep copy of the settings, ready to be sent."""
        return copy.deepcopy(self.settings)
