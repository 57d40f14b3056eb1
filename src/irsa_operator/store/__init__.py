"""Persistence for identity mappings and reconciliation state."""

from .configmap_store import (
    ConfigMapIdentityMappingStore,
    ConfigMapResourceStateStore,
    ResourceStateStore,
)
from .identity_store import IdentityMappingStore, StoredMapping

__all__ = [
    "ConfigMapIdentityMappingStore",
    "ConfigMapResourceStateStore",
    "IdentityMappingStore",
    "ResourceStateStore",
    "StoredMapping",
]
