#!/usr/bin/env python3
"""Create the DynamoDB table that backs the persistent instance Store."""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))


def main() -> None:
    parser = argparse.ArgumentParser(description="Create the service-maker instances table")
    parser.add_argument(
        "--table",
        default=os.environ.get("INSTANCES_TABLE", "service-maker-instances"),
        help="Table name (default: INSTANCES_TABLE or service-maker-instances)",
    )
    parser.add_argument(
        "--region",
        default=os.environ.get("AWS_REGION"),
        help="AWS region (or set AWS_REGION)",
    )
    parser.add_argument(
        "--endpoint-url",
        default=os.environ.get("DYNAMODB_ENDPOINT_URL"),
        help="Custom DynamoDB endpoint, e.g. LocalStack",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Print what would be created without calling DynamoDB",
    )
    args = parser.parse_args()

    if args.dry_run:
        print(f"Would create table {args.table} (hash key: id) in {args.region or 'default region'}")
        return

    import boto3

    from service_maker.backends.aws.state import create_instances_table

    kwargs = {"region_name": args.region}
    if args.endpoint_url:
        kwargs["endpoint_url"] = args.endpoint_url
    client = boto3.client("dynamodb", **kwargs)

    existing = client.list_tables().get("TableNames", [])
    if args.table in existing:
        print(f"Table {args.table} already exists")
        return

    create_instances_table(client, args.table)
    print(f"Created table {args.table}")


if __name__ == "__main__":
    main()
