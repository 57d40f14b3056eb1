"""Shared pytest fixtures for IRSA operator unit tests."""

import random

import pytest

from irsa_operator.observability.audit import AuditTrail
from irsa_operator.services import (
    ReconciliationEngine,
    ResourceStateTracker,
    RetryPolicy,
)
from irsa_operator.store import IdentityMappingStore, ResourceStateStore
from tests.fixtures.backends import (
    ISSUER_URL,
    ROLE_ARN,
    FakeIamGateway,
    FakeKubernetesGateway,
    Journal,
)
from tests.fixtures.identity import ManualClock


@pytest.fixture
def journal():
    return Journal()


@pytest.fixture
def kubernetes(journal):
    return FakeKubernetesGateway(journal=journal)


@pytest.fixture
def iam(journal):
    gateway = FakeIamGateway(journal=journal)
    gateway.add_role(ROLE_ARN)
    return gateway


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def store():
    return IdentityMappingStore()


@pytest.fixture
def state_store():
    return ResourceStateStore()


@pytest.fixture
def make_engine(kubernetes, iam, store, state_store, clock):
    """Factory for engines wired to the fake backends."""

    def factory(**overrides) -> ReconciliationEngine:
        max_attempts = overrides.pop("max_attempts", 5)
        tracker = ResourceStateTracker(
            RetryPolicy(base=1.0, cap=60.0, max_attempts=max_attempts),
            clock=clock,
            rng=random.Random(7),
        )
        options = {
            "tracker": tracker,
            "state_store": state_store,
            "audit": AuditTrail(),
            "call_timeout": 5.0,
        }
        options.update(overrides)
        return ReconciliationEngine(kubernetes, iam, store, ISSUER_URL, **options)

    return factory


@pytest.fixture
def engine(make_engine):
    return make_engine()
