"""Smoke tests for the mock backends the other unit tests rely on."""

import pytest
from botocore.exceptions import ClientError

from service_maker.backends.mock.compute import client_error
from service_maker.core.errors import ConcurrencyError, StoreError, WaitTimeoutError
from service_maker.core.models import Instance, InstanceState


@pytest.mark.asyncio
async def test_repository_crud(repository):
    instance = Instance(id="abc", ami="ami-d05e75b8", type="t2.micro")
    await repository.create(instance)

    with pytest.raises(StoreError):
        await repository.create(instance)

    updated = await repository.update(Instance(id="abc", ami="ami-d05e75b8", type="t2.micro", state="failed"))
    assert updated.revision == 2
    assert await repository.find_one("abc") == updated
    assert await repository.find(state=InstanceState.FAILED) == [updated]
    assert await repository.find_one("missing") is None

    with pytest.raises(ConcurrencyError) as excinfo:
        await repository.update(instance)
    assert (excinfo.value.expected, excinfo.value.actual) == (1, 2)


@pytest.mark.asyncio
async def test_compute_run_and_describe_filters(compute):
    resp = await compute.run_instances(
        ImageId="ami-d05e75b8",
        InstanceType="t2.micro",
        MinCount=1,
        MaxCount=1,
        SecurityGroups=["service-maker"],
        TagSpecifications=[{"ResourceType": "instance", "Tags": [{"Key": "ID", "Value": "abc"}]}],
    )
    provider_id = resp["Instances"][0]["InstanceId"]
    compute.add_instance("t2.small", "running", {"smake": "pool"})

    by_tag = await compute.describe_instances(Filters=[{"Name": "tag:ID", "Values": ["abc"]}])
    assert [i["InstanceId"] for r in by_tag["Reservations"] for i in r["Instances"]] == [provider_id]

    pending = await compute.describe_instances(
        Filters=[{"Name": "instance-state-name", "Values": ["pending"]}]
    )
    assert len(pending["Reservations"]) == 1

    pooled = await compute.describe_instances(
        Filters=[
            {"Name": "tag-key", "Values": ["smake"]},
            {"Name": "tag-value", "Values": ["pool"]},
            {"Name": "instance-type", "Values": ["t2.small"]},
        ]
    )
    assert len(pooled["Reservations"]) == 1


@pytest.mark.asyncio
async def test_compute_error_injection(compute):
    compute.fail("CreateTags", client_error("Throttling", "slow down", "CreateTags"), times=1)
    provider_id = compute.add_instance()

    with pytest.raises(ClientError):
        await compute.create_tags(Resources=[provider_id], Tags=[{"Key": "a", "Value": "b"}])
    await compute.create_tags(Resources=[provider_id], Tags=[{"Key": "a", "Value": "b"}])

    assert compute.tags_of(provider_id) == {"a": "b"}
    assert len(compute.calls_to("CreateTags")) == 2


@pytest.mark.asyncio
async def test_compute_waiters(compute):
    provider_id = compute.add_instance(tags={"ID": "abc"})
    params = {"Filters": [{"Name": "tag:ID", "Values": ["abc"]}]}

    await compute.wait_for("instance_running", **params)
    with pytest.raises(WaitTimeoutError):
        await compute.wait_for("instance_stopped", **params)

    await compute.stop_instances(InstanceIds=[provider_id])
    await compute.wait_for("instance_stopped", **params)

    compute.wait_timeouts.add("instance_stopped")
    with pytest.raises(WaitTimeoutError, match="timed out"):
        await compute.wait_for("instance_stopped", **params)
