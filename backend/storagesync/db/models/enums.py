"""Enum types for database models."""

from __future__ import annotations

import enum


class ConnectionStatus(str, enum.Enum):
    """Lifecycle state of a storage connection."""

    ACTIVE = "active"
    DISCONNECTED = "disconnected"
