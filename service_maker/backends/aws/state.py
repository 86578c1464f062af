"""DynamoDB-backed instance repository."""

from __future__ import annotations

import asyncio
from functools import reduce

import boto3
from boto3.dynamodb.conditions import Attr

from service_maker.core.errors import ConcurrencyError, InstanceNotFound, StoreError
from service_maker.core.models import Instance


def create_instances_table(client, table_name: str) -> None:
    """Create the instances table with a low-level DynamoDB client and wait for it."""
    client.create_table(
        TableName=table_name,
        AttributeDefinitions=[{"AttributeName": "id", "AttributeType": "S"}],
        KeySchema=[{"AttributeName": "id", "KeyType": "HASH"}],
        BillingMode="PAY_PER_REQUEST",
    )
    client.get_waiter("table_exists").wait(TableName=table_name)


class DynamoDBInstanceRepository:
    """Stores one item per instance keyed on ``id``.

    boto3 is synchronous, so every table call runs in a worker thread.
    Updates are conditional on the stored ``revision``, which gives the same
    compare-and-swap guarantee as the in-memory repository across processes.
    """

    def __init__(
        self,
        instances_table: str,
        endpoint_url: str | None = None,
        region_name: str | None = None,
    ):
        kwargs = {}
        if endpoint_url:
            kwargs["endpoint_url"] = endpoint_url
        if region_name:
            kwargs["region_name"] = region_name
        dynamodb = boto3.resource("dynamodb", **kwargs)
        self._instances = dynamodb.Table(instances_table)
        self._conditional_check_failed = (
            self._instances.meta.client.exceptions.ConditionalCheckFailedException
        )

    async def create(self, instance: Instance) -> Instance:
        try:
            await asyncio.to_thread(
                self._instances.put_item,
                Item=instance.to_item(),
                ConditionExpression="attribute_not_exists(id)",
            )
        except self._conditional_check_failed as exc:
            raise StoreError(f"Instance {instance.id} already exists") from exc
        return instance

    async def find(self, **filters: str) -> list[Instance]:
        kwargs = {}
        if filters:
            kwargs["FilterExpression"] = reduce(
                lambda acc, cond: acc & cond,
                [Attr(field).eq(value) for field, value in filters.items()],
            )
        items = []
        while True:
            resp = await asyncio.to_thread(self._instances.scan, **kwargs)
            items.extend(resp.get("Items", []))
            if "LastEvaluatedKey" not in resp:
                break
            kwargs["ExclusiveStartKey"] = resp["LastEvaluatedKey"]
        return [Instance.from_item(item) for item in items]

    async def find_one(self, instance_id: str) -> Instance | None:
        resp = await asyncio.to_thread(
            self._instances.get_item, Key={"id": instance_id}, ConsistentRead=True
        )
        item = resp.get("Item")
        return Instance.from_item(item) if item else None

    async def update(self, instance: Instance) -> Instance:
        try:
            resp = await asyncio.to_thread(
                self._instances.update_item,
                Key={"id": instance.id},
                UpdateExpression="SET #ami = :ami, #type = :type, #state = :state, #uri = :uri, #revision = :next",
                ConditionExpression="attribute_exists(id) AND #revision = :expected",
                ExpressionAttributeNames={
                    "#ami": "ami",
                    "#type": "type",
                    "#state": "state",
                    "#uri": "uri",
                    "#revision": "revision",
                },
                ExpressionAttributeValues={
                    ":ami": instance.ami,
                    ":type": instance.type,
                    ":state": instance.state.value,
                    ":uri": instance.uri,
                    ":expected": instance.revision,
                    ":next": instance.revision + 1,
                },
                ReturnValues="ALL_NEW",
            )
        except self._conditional_check_failed:
            current = await self.find_one(instance.id)
            if current is None:
                raise InstanceNotFound(f"Instance {instance.id} not found") from None
            raise ConcurrencyError(instance.id, instance.revision, current.revision) from None
        return Instance.from_item(resp["Attributes"])
