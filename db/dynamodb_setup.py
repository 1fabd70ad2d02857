"""
Creates the DynamoDB table backing the package catalog.

Table: PackagesTable (override with REGISTRY_DYNAMODB_TABLE or --table)
Keys:
    PK = PKG#<name>       one partition per package
    SK = VER#<version>    one item per published version

Item attributes mirror PackageRecord.to_dict(): id, name, version,
description, tags, author, created_at, download_count, checksum, size.

Publishing relies on conditional writes against the primary key, so no
secondary index is required.

Usage:
    python db/dynamodb_setup.py [--table NAME] [--region REGION]
"""

import argparse
import sys

import boto3
from botocore.exceptions import ClientError

from pkgregistry.config import get_settings

KEY_SCHEMA = [
    {"AttributeName": "PK", "KeyType": "HASH"},
    {"AttributeName": "SK", "KeyType": "RANGE"},
]
ATTRIBUTE_DEFINITIONS = [
    {"AttributeName": "PK", "AttributeType": "S"},
    {"AttributeName": "SK", "AttributeType": "S"},
]


def create_table(table_name: str, region: str, client=None) -> bool:
    """Create the catalog table and wait until it is active.

    Returns False when the table already exists.
    """
    client = client or boto3.client("dynamodb", region_name=region)
    print(f"Creating catalog table '{table_name}' in {region}...")
    try:
        client.create_table(
            TableName=table_name,
            KeySchema=KEY_SCHEMA,
            AttributeDefinitions=ATTRIBUTE_DEFINITIONS,
            BillingMode="PAY_PER_REQUEST",
        )
    except ClientError as e:
        if e.response["Error"]["Code"] != "ResourceInUseException":
            raise
        print(f"Table '{table_name}' already exists, nothing to do.")
        return False

    client.get_waiter("table_exists").wait(TableName=table_name)
    print(f"Table '{table_name}' is active.")
    return True


def main(argv=None) -> int:
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Create the package catalog DynamoDB table")
    parser.add_argument("--table", default=settings.dynamodb_table, help="table name")
    parser.add_argument("--region", default=settings.aws_region, help="AWS region")
    args = parser.parse_args(argv)
    create_table(args.table, args.region)
    return 0


if __name__ == "__main__":
    sys.exit(main())
