"""Unit tests for the ConfigMap-backed stores."""

import json

import pytest

from irsa_operator.constants import MAPPING_STORE_CONFIGMAP, RESOURCE_STATE_CONFIGMAP
from irsa_operator.errors import ConflictError, ValidationError
from irsa_operator.models import ResourceState
from irsa_operator.store import ConfigMapIdentityMappingStore, ConfigMapResourceStateStore
from irsa_operator.store.configmap_store import RESOURCE_STATE_DATA_KEY, decode_entry
from tests.fixtures.backends import FakeKubernetesGateway
from tests.fixtures.identity import make_mapping

NAMESPACE = "irsa-system"


@pytest.fixture
def gateway():
    return FakeKubernetesGateway()


@pytest.fixture
def store(gateway):
    return ConfigMapIdentityMappingStore(gateway, NAMESPACE)


class TestConfigMapIdentityMappingStore:
    def test_first_write_creates_the_config_map(self, store, gateway):
        store.put(make_mapping())

        data, version = gateway.config_maps[(NAMESPACE, MAPPING_STORE_CONFIGMAP)]
        assert version is not None
        entry = json.loads(data["demo-namespace.demo-service-account"])
        assert entry["version"] == 1
        assert entry["mapping"]["serviceAccount"] == "demo-service-account"
        assert entry["mapping"]["roleArn"].endswith(":role/demo-irsa-role")

    def test_entries_survive_a_new_store_instance(self, store, gateway):
        store.put(make_mapping())
        store.put(make_mapping(namespace="other-namespace"))

        reopened = ConfigMapIdentityMappingStore(gateway, NAMESPACE)

        assert [m.namespace for m in reopened.list()] == ["demo-namespace", "other-namespace"]
        assert reopened.get_versioned("demo-namespace", "demo-service-account").version == 1

    def test_concurrent_writer_surfaces_as_conflict(self, store, gateway):
        store.put(make_mapping())
        original = gateway.read_json_config_map

        def stale_read(namespace, name):
            data, _ = original(namespace, name)
            return data, "stale"

        gateway.read_json_config_map = stale_read

        with pytest.raises(ConflictError):
            store.put(make_mapping(namespace="other-namespace"))

    def test_delete_rewrites_the_config_map(self, store, gateway):
        store.put(make_mapping())

        store.delete("demo-namespace", "demo-service-account")

        data, _ = gateway.config_maps[(NAMESPACE, MAPPING_STORE_CONFIGMAP)]
        assert data == {}

    def test_corrupt_entry_is_a_validation_error(self, store, gateway):
        gateway.config_maps[(NAMESPACE, MAPPING_STORE_CONFIGMAP)] = (
            {"demo-namespace.demo-service-account": "{not json"},
            "1",
        )

        with pytest.raises(ValidationError):
            list(store.list())


class TestDecodeEntry:
    def test_missing_mapping(self):
        with pytest.raises(ValidationError):
            decode_entry("demo-namespace.x", json.dumps({"version": 1}))

    def test_invalid_mapping(self):
        payload = {"mapping": {"namespace": "demo-namespace"}, "version": 1}
        with pytest.raises(ValidationError):
            decode_entry("demo-namespace.x", json.dumps(payload))


class TestConfigMapResourceStateStore:
    def test_round_trip(self, gateway):
        store = ConfigMapResourceStateStore(gateway, NAMESPACE)
        states = {
            "iam:arn": ResourceState(
                key="iam:arn", phase="Failed", attempts=2, next_attempt_at=12.5
            )
        }

        store.save(states)
        loaded = ConfigMapResourceStateStore(gateway, NAMESPACE).load()

        assert loaded == states

    def test_empty_when_missing(self, gateway):
        assert ConfigMapResourceStateStore(gateway, NAMESPACE).load() == {}

    def test_unreadable_payload_is_discarded(self, gateway):
        gateway.config_maps[(NAMESPACE, RESOURCE_STATE_CONFIGMAP)] = (
            {RESOURCE_STATE_DATA_KEY: "{broken"},
            "1",
        )

        assert ConfigMapResourceStateStore(gateway, NAMESPACE).load() == {}

    def test_save_recovers_from_stale_version(self, gateway):
        first = ConfigMapResourceStateStore(gateway, NAMESPACE)
        second = ConfigMapResourceStateStore(gateway, NAMESPACE)
        first.save({})
        second.load()
        first.save({"a": ResourceState(key="a")})

        second.save({"b": ResourceState(key="b")})

        assert set(first.load()) == {"b"}
