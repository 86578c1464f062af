"""Mock compute backend for testing.

Simulates just enough of EC2 for the lifecycle and pool logic: instances
with tags and states, security groups, describe filters, waiters and
error injection. Errors are raised as botocore ClientErrors so callers see
the same exception types as against the real API.
"""

from __future__ import annotations

import copy
import itertools
import re
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any

from botocore.exceptions import ClientError

from service_maker.core.errors import WaitTimeoutError

VALID_TYPES = {"t2.nano", "t2.micro", "t2.small", "t2.medium", "t2.large", "m4.large", "c4.large"}

_AMI_PATTERN = re.compile(r"^ami-[0-9a-f]{8}([0-9a-f]{9})?$")

_WAITER_TARGETS = {
    "instance_running": "running",
    "instance_stopped": "stopped",
    "instance_terminated": "terminated",
}


def client_error(code: str, message: str, operation: str) -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": message}}, operation)


class MockComputeBackend:
    """In-memory EC2 double implementing the ComputeProvider protocol.

    ``calls`` records every request as ``(operation, params)``. Use
    ``fail(operation, error, times)`` to make an operation raise.
    """

    def __init__(self, mock_ip: str = "127.0.0.1", launch_state: str = "pending"):
        self.mock_ip = mock_ip
        self.launch_state = launch_state
        self.instances: dict[str, dict] = {}
        self.security_groups: dict[str, dict] = {}
        self.calls: list[tuple[str, dict]] = []
        self.wait_timeouts: set[str] = set()
        self._failures: dict[str, list] = {}
        self._clock = itertools.count()
        self._epoch = datetime(2015, 1, 1, tzinfo=timezone.utc)

    # ---- Test helpers ----

    def fail(self, operation: str, error: Exception, times: int | None = None) -> None:
        """Make ``operation`` raise ``error``; forever when ``times`` is None."""
        self._failures[operation] = [error, times]

    def calls_to(self, operation: str) -> list[dict]:
        return [params for op, params in self.calls if op == operation]

    def add_instance(
        self,
        instance_type: str = "t2.micro",
        state: str = "running",
        tags: dict[str, str] | None = None,
        ami: str = "ami-d05e75b8",
    ) -> str:
        instance_id = f"i-{uuid.uuid4().hex[:8]}"
        self.instances[instance_id] = {
            "InstanceId": instance_id,
            "ImageId": ami,
            "InstanceType": instance_type,
            "State": {"Name": state},
            "Tags": [{"Key": k, "Value": v} for k, v in (tags or {}).items()],
            "PublicIpAddress": self.mock_ip,
            "LaunchTime": self._epoch + timedelta(seconds=next(self._clock)),
            "SecurityGroups": [],
        }
        return instance_id

    def add_security_group(self, name: str) -> str:
        group_id = f"sg-{uuid.uuid4().hex[:8]}"
        self.security_groups[name] = {"GroupId": group_id, "GroupName": name, "IpPermissions": []}
        return group_id

    def set_state(self, instance_id: str, state: str) -> None:
        self.instances[instance_id]["State"] = {"Name": state}

    def tags_of(self, instance_id: str) -> dict[str, str]:
        return {t["Key"]: t["Value"] for t in self.instances[instance_id]["Tags"]}

    def _record(self, operation: str, params: dict) -> None:
        self.calls.append((operation, copy.deepcopy(params)))
        failure = self._failures.get(operation)
        if failure is None:
            return
        error, remaining = failure
        if remaining is not None:
            if remaining <= 0:
                return
            failure[1] = remaining - 1
        raise error

    def _get(self, instance_id: str, operation: str) -> dict:
        if instance_id not in self.instances:
            raise client_error(
                "InvalidInstanceID.NotFound",
                f"The instance ID '{instance_id}' does not exist",
                operation,
            )
        return self.instances[instance_id]

    # ---- Instances ----

    async def run_instances(self, **params: Any) -> dict:
        self._record("RunInstances", params)
        ami = params["ImageId"]
        instance_type = params["InstanceType"]
        if not _AMI_PATTERN.match(ami):
            raise client_error(
                "InvalidAMIID.Malformed",
                f"Invalid id: \"{ami}\" (expecting \"ami-...\")",
                "RunInstances",
            )
        if instance_type not in VALID_TYPES:
            raise client_error(
                "InvalidParameterValue",
                f"Invalid value '{instance_type}' for InstanceType.",
                "RunInstances",
            )
        for name in params.get("SecurityGroups", []):
            if name not in self.security_groups:
                raise client_error(
                    "InvalidGroup.NotFound",
                    f"The security group '{name}' does not exist",
                    "RunInstances",
                )

        tags: dict[str, str] = {}
        for spec in params.get("TagSpecifications", []):
            if spec.get("ResourceType") == "instance":
                tags.update({t["Key"]: t["Value"] for t in spec["Tags"]})

        instance_id = self.add_instance(instance_type, self.launch_state, tags, ami)
        self.instances[instance_id]["SecurityGroups"] = [
            {"GroupName": name} for name in params.get("SecurityGroups", [])
        ]
        return {"Instances": [copy.deepcopy(self.instances[instance_id])]}

    async def describe_instances(self, **params: Any) -> dict:
        self._record("DescribeInstances", params)
        if "InstanceIds" in params:
            matches = [self._get(i, "DescribeInstances") for i in params["InstanceIds"]]
        else:
            matches = list(self.instances.values())
        for f in params.get("Filters", []):
            matches = [i for i in matches if self._matches(i, f["Name"], f["Values"])]
        return {
            "Reservations": [{"Instances": [copy.deepcopy(i)]} for i in matches]
        }

    @staticmethod
    def _matches(instance: dict, name: str, values: list[str]) -> bool:
        tags = {t["Key"]: t["Value"] for t in instance["Tags"]}
        if name.startswith("tag:"):
            return tags.get(name[4:]) in values
        if name == "tag-key":
            return any(k in values for k in tags)
        if name == "tag-value":
            return any(v in values for v in tags.values())
        if name == "instance-state-name":
            return instance["State"]["Name"] in values
        if name == "instance-type":
            return instance["InstanceType"] in values
        raise client_error("InvalidParameterValue", f"Unsupported filter {name}", "DescribeInstances")

    async def _transition(self, operation: str, params: dict, target: str, key: str) -> dict:
        self._record(operation, params)
        changes = []
        for instance_id in params["InstanceIds"]:
            instance = self._get(instance_id, operation)
            previous = instance["State"]["Name"]
            instance["State"] = {"Name": target}
            changes.append(
                {
                    "InstanceId": instance_id,
                    "PreviousState": {"Name": previous},
                    "CurrentState": {"Name": target},
                }
            )
        return {key: changes}

    async def terminate_instances(self, **params: Any) -> dict:
        return await self._transition("TerminateInstances", params, "terminated", "TerminatingInstances")

    async def start_instances(self, **params: Any) -> dict:
        return await self._transition("StartInstances", params, "running", "StartingInstances")

    async def stop_instances(self, **params: Any) -> dict:
        return await self._transition("StopInstances", params, "stopped", "StoppingInstances")

    # ---- Security groups ----

    async def create_security_group(self, **params: Any) -> dict:
        self._record("CreateSecurityGroup", params)
        name = params["GroupName"]
        if name == "default" or name.startswith("sg-"):
            raise client_error(
                "InvalidGroup.Reserved",
                f"The security group '{name}' is reserved",
                "CreateSecurityGroup",
            )
        if name in self.security_groups:
            raise client_error(
                "InvalidGroup.Duplicate",
                f"The security group '{name}' already exists",
                "CreateSecurityGroup",
            )
        return {"GroupId": self.add_security_group(name)}

    async def describe_security_groups(self, **params: Any) -> dict:
        self._record("DescribeSecurityGroups", params)
        groups = []
        for name in params.get("GroupNames", []):
            if name not in self.security_groups:
                raise client_error(
                    "InvalidGroup.NotFound",
                    f"The security group '{name}' does not exist",
                    "DescribeSecurityGroups",
                )
            groups.append(copy.deepcopy(self.security_groups[name]))
        return {"SecurityGroups": groups}

    async def authorize_security_group_ingress(self, **params: Any) -> dict:
        self._record("AuthorizeSecurityGroupIngress", params)
        for group in self.security_groups.values():
            if group["GroupId"] == params["GroupId"]:
                group["IpPermissions"].extend(copy.deepcopy(params["IpPermissions"]))
                return {"Return": True}
        raise client_error(
            "InvalidGroupId.NotFound",
            f"The security group '{params['GroupId']}' does not exist",
            "AuthorizeSecurityGroupIngress",
        )

    # ---- Tags ----

    async def create_tags(self, **params: Any) -> dict:
        self._record("CreateTags", params)
        for resource in params["Resources"]:
            instance = self._get(resource, "CreateTags")
            tags = {t["Key"]: t["Value"] for t in instance["Tags"]}
            tags.update({t["Key"]: t["Value"] for t in params["Tags"]})
            instance["Tags"] = [{"Key": k, "Value": v} for k, v in tags.items()]
        return {}

    async def delete_tags(self, **params: Any) -> dict:
        self._record("DeleteTags", params)
        keys = {t["Key"] for t in params["Tags"]}
        for resource in params["Resources"]:
            instance = self._get(resource, "DeleteTags")
            instance["Tags"] = [t for t in instance["Tags"] if t["Key"] not in keys]
        return {}

    # ---- Waiters ----

    async def wait_for(self, waiter_name: str, **params: Any) -> dict:
        self._record(f"wait:{waiter_name}", params)
        target = _WAITER_TARGETS[waiter_name]
        if waiter_name in self.wait_timeouts:
            raise WaitTimeoutError(f"Waiting for {waiter_name} timed out")
        resp = await self.describe_instances(**params)
        instances = [i for r in resp["Reservations"] for i in r["Instances"]]
        if not instances or any(i["State"]["Name"] != target for i in instances):
            raise WaitTimeoutError(f"Waiting for {waiter_name} timed out")
        return resp
