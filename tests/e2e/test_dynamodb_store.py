"""E2E: the Instance Store and Lifecycle Adapter on a LocalStack DynamoDB table.

Requires Docker; skipped when LocalStack cannot be started.
"""

from __future__ import annotations

import asyncio
from dataclasses import replace

import pytest

from service_maker.backends.aws.state import DynamoDBInstanceRepository
from service_maker.backends.mock.compute import MockComputeBackend
from service_maker.backends.mock.probe import MockReachabilityProbe
from service_maker.core.errors import ConcurrencyError, InstanceNotFound, NotFound
from service_maker.core.instances import InstanceStore
from service_maker.core.lifecycle import LifecycleAdapter
from service_maker.core.models import Instance, InstanceSpec, InstanceState


@pytest.fixture
def store(localstack_env):
    repository = DynamoDBInstanceRepository(
        instances_table=localstack_env["instances_table"],
        endpoint_url=localstack_env["endpoint_url"],
        region_name=localstack_env["region"],
    )
    return InstanceStore(repository)


@pytest.mark.asyncio
async def test_create_get_and_filter(store):
    created = await store.create_instance("ami-0a1b2c3d", "t2.nano")

    fetched = await store.get_instance(created.id)
    assert fetched == created
    assert fetched.revision == 1

    matches = await store.get_all_instances(ami="ami-0a1b2c3d", type="t2.nano")
    assert [m.id for m in matches] == [created.id]
    assert await store.get_all_instances(ami="ami-0a1b2c3d", type="t2.large") == []

    with pytest.raises(NotFound):
        await store.get_instance("foo-bar-baz")


@pytest.mark.asyncio
async def test_conditional_update_rejects_stale_revision(store):
    created = await store.create_instance()

    ready = await store.update_instance(
        replace(created, state=InstanceState.READY, uri="https://10.0.0.1")
    )
    assert ready.revision == 2
    assert ready.uri == "https://10.0.0.1"

    with pytest.raises(ConcurrencyError) as excinfo:
        await store.update_instance(replace(created, state=InstanceState.FAILED))
    assert excinfo.value.actual == 2

    assert await store.get_instance(created.id) == ready


@pytest.mark.asyncio
async def test_concurrent_updates_only_one_wins(store):
    snapshot = await store.create_instance()

    results = await asyncio.gather(
        *[
            store.update_instance(replace(snapshot, state=state))
            for state in (InstanceState.FAILED, InstanceState.TERMINATING, InstanceState.STOPPED)
        ],
        return_exceptions=True,
    )

    assert sum(isinstance(r, Instance) for r in results) == 1
    assert sum(isinstance(r, ConcurrencyError) for r in results) == 2
    assert (await store.get_instance(snapshot.id)).revision == 2


@pytest.mark.asyncio
async def test_update_missing_record_raises_not_found(store):
    with pytest.raises(InstanceNotFound):
        await store.update_instance(Instance(id="foo-bar-baz", ami="ami-d05e75b8", type="t2.micro"))


@pytest.mark.asyncio
async def test_lifecycle_records_outcome_in_dynamodb(store):
    compute = MockComputeBackend(mock_ip="10.0.0.9")
    compute.add_security_group("service-maker")
    lifecycle = LifecycleAdapter(store, compute, MockReachabilityProbe(), default_security_group="service-maker")

    instance = await lifecycle.run_instances(InstanceSpec(ami="ami-d05e75b8", type="t2.micro"))
    await lifecycle.wait_for_polling()
    assert (await store.get_instance(instance.id)).uri == "https://10.0.0.9"

    await lifecycle.terminate_instances(instance.id)

    record = await store.get_instance(instance.id)
    assert record.state is InstanceState.TERMINATED
    assert record.uri is None
