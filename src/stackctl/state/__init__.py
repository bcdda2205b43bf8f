"""State management helpers for stackctl."""
from __future__ import annotations

from .registry import (
    PROVISIONING_FILE,
    ProvisioningState,
    StateRegistry,
    StateRegistryError,
)

__all__ = [
    "PROVISIONING_FILE",
    "ProvisioningState",
    "StateRegistry",
    "StateRegistryError",
]
