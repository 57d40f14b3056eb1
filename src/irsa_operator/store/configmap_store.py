"""
ConfigMap-backed persistence for identity mappings and resource states.

Mappings live in one ConfigMap in the operator namespace, one data key per
mapping (``<namespace>.<serviceAccount>``) holding a JSON entry with the
mapping and its version. Namespaces are DNS labels and never contain a dot,
so the key splits unambiguously on the first one.

Writes replace the ConfigMap guarded by the resourceVersion read with it,
so a concurrent writer surfaces as ConflictError (HTTP 409).
"""

import json
import logging
import threading
from typing import Any

from irsa_operator.constants import MAPPING_STORE_CONFIGMAP, RESOURCE_STATE_CONFIGMAP
from irsa_operator.errors import ConflictError, ValidationError
from irsa_operator.models import IdentityMapping, MappingKey, ResourceState, parse_model
from irsa_operator.store.identity_store import IdentityMappingStore, StoredMapping
from irsa_operator.utils.kubernetes import KubernetesGateway

logger = logging.getLogger(__name__)

RESOURCE_STATE_DATA_KEY = "resource-states.json"


def entry_key(key: MappingKey) -> str:
    namespace, service_account = key
    return f"{namespace}.{service_account}"


def encode_entry(stored: StoredMapping) -> str:
    return json.dumps(
        {
            "mapping": stored.mapping.model_dump(mode="json", by_alias=True, exclude_none=True),
            "version": stored.version,
        },
        sort_keys=True,
    )


def decode_entry(data_key: str, raw: str) -> StoredMapping:
    """
    Decode one ConfigMap entry.

    Raises:
        ValidationError: If the entry is not a valid stored mapping
    """
    resource = f"ConfigMap/{MAPPING_STORE_CONFIGMAP}[{data_key}]"
    try:
        payload = json.loads(raw)
    except ValueError as e:
        raise ValidationError(f"entry is not valid JSON: {e}", resource=resource) from e
    if not isinstance(payload, dict) or "mapping" not in payload:
        raise ValidationError("entry has no mapping", resource=resource)
    mapping = parse_model(IdentityMapping, payload["mapping"], resource=resource)
    return StoredMapping(mapping=mapping, version=int(payload.get("version", 1)))


class ConfigMapIdentityMappingStore(IdentityMappingStore):
    """Identity mapping store persisted in a ConfigMap."""

    def __init__(
        self,
        gateway: KubernetesGateway,
        namespace: str,
        name: str = MAPPING_STORE_CONFIGMAP,
    ):
        super().__init__()
        self.gateway = gateway
        self.namespace = namespace
        self.name = name

    def _snapshot(self) -> tuple[dict[MappingKey, StoredMapping], Any]:
        data, resource_version = self.gateway.read_json_config_map(self.namespace, self.name)
        entries: dict[MappingKey, StoredMapping] = {}
        for data_key, raw in data.items():
            stored = decode_entry(data_key, raw)
            entries[stored.mapping.key] = stored
        return entries, resource_version

    def _commit(self, entries: dict[MappingKey, StoredMapping], token: Any) -> None:
        data = {entry_key(key): encode_entry(stored) for key, stored in entries.items()}
        self.gateway.write_json_config_map(
            self.namespace,
            self.name,
            data,
            resource_version=token,
            component="identity-store",
        )


class ResourceStateStore:
    """In-memory persistence for the reconciliation state machine."""

    def __init__(self):
        self._states: dict[str, ResourceState] = {}
        self._lock = threading.Lock()

    def load(self) -> dict[str, ResourceState]:
        with self._lock:
            return {key: state.model_copy() for key, state in self._states.items()}

    def save(self, states: dict[str, ResourceState]) -> None:
        with self._lock:
            self._states = {key: state.model_copy() for key, state in states.items()}


class ConfigMapResourceStateStore(ResourceStateStore):
    """Resource states persisted as one JSON document in a ConfigMap."""

    def __init__(
        self,
        gateway: KubernetesGateway,
        namespace: str,
        name: str = RESOURCE_STATE_CONFIGMAP,
    ):
        super().__init__()
        self.gateway = gateway
        self.namespace = namespace
        self.name = name
        self._resource_version: str | None = None

    def load(self) -> dict[str, ResourceState]:
        data, self._resource_version = self.gateway.read_json_config_map(
            self.namespace, self.name
        )
        raw = data.get(RESOURCE_STATE_DATA_KEY)
        if not raw:
            return {}
        try:
            payload = json.loads(raw)
        except ValueError:
            # Retry bookkeeping only; starting from scratch is safe
            logger.warning(
                f"Discarding unreadable resource states in ConfigMap "
                f"{self.namespace}/{self.name}"
            )
            return {}
        return {
            key: ResourceState.model_validate(value)
            for key, value in payload.items()
        }

    def save(self, states: dict[str, ResourceState]) -> None:
        payload = {
            key: state.model_dump(mode="json", by_alias=True)
            for key, state in sorted(states.items())
        }
        data = {RESOURCE_STATE_DATA_KEY: json.dumps(payload, sort_keys=True)}
        try:
            self._resource_version = self._write(data)
        except ConflictError:
            # Only the leader writes; adopt whatever a previous leader left behind
            _, self._resource_version = self.gateway.read_json_config_map(
                self.namespace, self.name
            )
            self._resource_version = self._write(data)

    def _write(self, data: dict[str, str]) -> str | None:
        return self.gateway.write_json_config_map(
            self.namespace,
            self.name,
            data,
            resource_version=self._resource_version,
            component="resource-state",
        )
