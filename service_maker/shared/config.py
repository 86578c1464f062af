"""Configuration helpers: read from environment variables."""

from __future__ import annotations

import json
import os


def get_env(name: str, default: str | None = None) -> str:
    """Get an environment variable, raising if missing and no default."""
    value = os.environ.get(name, default)
    if value is None:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value


# Provider / persistence settings
AWS_REGION = lambda: get_env("AWS_REGION", "us-west-2")
EC2_ENDPOINT_URL = lambda: get_env("EC2_ENDPOINT_URL", "") or None
INSTANCES_TABLE = lambda: get_env("INSTANCES_TABLE")
DYNAMODB_ENDPOINT_URL = lambda: get_env("DYNAMODB_ENDPOINT_URL", "") or None

# Launch defaults
DEFAULT_AMI = lambda: get_env("DEFAULT_AMI", "ami-d05e75b8")
DEFAULT_INSTANCE_TYPE = lambda: get_env("DEFAULT_INSTANCE_TYPE", "t2.micro")
DEFAULT_SECURITY_GROUP = lambda: get_env("DEFAULT_SECURITY_GROUP", "service-maker")
KEY_NAME = lambda: get_env("KEY_NAME", "")

# Pool shape, e.g. "t2.micro=3,t2.small=1"
POOL_SHAPE = lambda: get_env("POOL_SHAPE", "")

# Waiter bounds (Delay seconds x MaxAttempts)
WAIT_DELAY = lambda: int(get_env("WAIT_DELAY", "15"))
WAIT_MAX_ATTEMPTS = lambda: int(get_env("WAIT_MAX_ATTEMPTS", "40"))

# Readiness probe bounds
PROBE_TIMEOUT = lambda: float(get_env("PROBE_TIMEOUT", "600"))
PROBE_INTERVAL = lambda: float(get_env("PROBE_INTERVAL", "10"))

# Readiness probe kind: "ssh" (TCP connect on port 22) or "http" (GET on HEALTH_PORT/HEALTH_PATH)
READINESS_PROBE = lambda: get_env("READINESS_PROBE", "ssh")
HEALTH_PORT = lambda: int(get_env("HEALTH_PORT", "80"))
HEALTH_PATH = lambda: get_env("HEALTH_PATH", "/health")

# Tagging convention
ID_TAG_KEY = "ID"
POOL_TAG_KEY = "smake"
POOL_TAG_VALUE = "pool"

SSH_PORT = 22
URI_SCHEME = "https"

_DEFAULT_AMI_CATALOG = {
    "t2.micro": "ami-d05e75b8",
    "t2.small": "ami-d05e75b8",
    "t2.medium": "ami-d05e75b8",
}


def image_for_type(instance_type: str) -> str:
    """Look up the launch image for an instance type.

    AMI_CATALOG may hold a JSON object overriding the built-in catalog.
    Unknown types fall back to DEFAULT_AMI.
    """
    catalog = dict(_DEFAULT_AMI_CATALOG)
    override = get_env("AMI_CATALOG", "")
    if override:
        catalog.update(json.loads(override))
    return catalog.get(instance_type, DEFAULT_AMI())
