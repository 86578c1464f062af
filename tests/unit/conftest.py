"""Shared fixtures for unit tests — uses mock backends, no network needed."""

import pytest
import sys
import os

# Add project root to path so service_maker is importable
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", ".."))

from service_maker.backends.memory.state import InMemoryInstanceRepository
from service_maker.backends.mock.compute import MockComputeBackend
from service_maker.backends.mock.probe import MockReachabilityProbe
from service_maker.core.instances import InstanceStore
from service_maker.core.lifecycle import LifecycleAdapter
from service_maker.core.policy import NaivePolicy
from service_maker.core.pool import PoolReconciler


DEFAULT_AMI = "ami-d05e75b8"
DEFAULT_TYPE = "t2.micro"
DEFAULT_GROUP = "service-maker"
VALID_IP_ADDRESS = "127.0.0.1"


@pytest.fixture
def repository():
    return InMemoryInstanceRepository()


@pytest.fixture
def store(repository):
    return InstanceStore(repository)


@pytest.fixture
def compute():
    backend = MockComputeBackend(mock_ip=VALID_IP_ADDRESS)
    backend.add_security_group(DEFAULT_GROUP)
    return backend


@pytest.fixture
def probe():
    return MockReachabilityProbe()


@pytest.fixture
def lifecycle(store, compute, probe):
    return LifecycleAdapter(store, compute, probe, key_name="", default_security_group=DEFAULT_GROUP)


@pytest.fixture
def policy():
    return NaivePolicy({DEFAULT_TYPE: 3})


@pytest.fixture
def reconciler(lifecycle, compute, policy):
    return PoolReconciler(lifecycle, compute, policy, image_for_type=lambda _: DEFAULT_AMI)
