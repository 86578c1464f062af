"""Build a wired pool from environment variables.

Thin glue between configuration and the cloud-agnostic core; no pool logic
lives here.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from service_maker.core.errors import ValidationError
from service_maker.core.instances import InstanceStore
from service_maker.core.lifecycle import LifecycleAdapter
from service_maker.core.policy import NaivePolicy
from service_maker.core.pool import PoolReconciler
from service_maker.core.readiness import HttpHealthProbe, SshReachabilityProbe
from service_maker.shared import config

logger = logging.getLogger(__name__)


@dataclass
class Pool:
    store: InstanceStore
    lifecycle: LifecycleAdapter
    reconciler: PoolReconciler


def _get_repository():
    """DynamoDB when INSTANCES_TABLE is set, in-memory otherwise."""
    table = config.get_env("INSTANCES_TABLE", "")
    if not table:
        from service_maker.backends.memory.state import InMemoryInstanceRepository

        logger.info("INSTANCES_TABLE not set, keeping instance records in memory")
        return InMemoryInstanceRepository()

    from service_maker.backends.aws.state import DynamoDBInstanceRepository

    return DynamoDBInstanceRepository(
        instances_table=table,
        endpoint_url=config.DYNAMODB_ENDPOINT_URL(),
        region_name=config.AWS_REGION(),
    )


def _get_compute_backend():
    from service_maker.backends.aws.compute import EC2ComputeBackend

    return EC2ComputeBackend(
        region_name=config.AWS_REGION(),
        endpoint_url=config.EC2_ENDPOINT_URL(),
        wait_delay=config.WAIT_DELAY(),
        wait_max_attempts=config.WAIT_MAX_ATTEMPTS(),
    )


def _get_probe(compute):
    """SSH connect probe by default; READINESS_PROBE=http polls a health endpoint."""
    kind = config.READINESS_PROBE().lower()
    if kind == "ssh":
        return SshReachabilityProbe(
            compute, timeout=config.PROBE_TIMEOUT(), interval=config.PROBE_INTERVAL()
        )
    if kind == "http":
        return HttpHealthProbe(
            compute,
            port=config.HEALTH_PORT(),
            path=config.HEALTH_PATH(),
            timeout=config.PROBE_TIMEOUT(),
            interval=config.PROBE_INTERVAL(),
        )
    raise ValidationError(f"Unknown READINESS_PROBE {kind!r}, expected 'ssh' or 'http'")


def build_pool(compute=None, repository=None, probe=None, policy=None) -> Pool:
    """Assemble Store, Lifecycle Adapter and Reconciler.

    Any collaborator passed in is used as-is; the rest come from config.
    """
    compute = compute if compute is not None else _get_compute_backend()
    store = InstanceStore(repository if repository is not None else _get_repository())
    if probe is None:
        probe = _get_probe(compute)
    if policy is None:
        policy = NaivePolicy.from_string(config.POOL_SHAPE())
    lifecycle = LifecycleAdapter(store, compute, probe)
    return Pool(
        store=store,
        lifecycle=lifecycle,
        reconciler=PoolReconciler(lifecycle, compute, policy),
    )
