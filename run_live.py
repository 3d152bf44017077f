# run_live.py
import base64
import json
from datetime import datetime, timezone
from typing import Optional

import boto3
from botocore.exceptions import ClientError

# Import the main handler function and settings
from cli.push_records import build_control_message, build_data_message, compress_message, create_log_event
from lambdas.ingest_issues.app import ISSUE_STORE, handler
from lambdas.ingest_issues.models import get_settings


def _create_table_if_missing(dynamodb, table_name: str, key_schema: list, attribute_definitions: list,
                             ttl_attribute: Optional[str] = None):
    try:
        dynamodb.meta.client.describe_table(TableName=table_name)
        print(f"DynamoDB table '{table_name}' already exists.")
    except ClientError as e:
        if e.response['Error']['Code'] != 'ResourceNotFoundException':
            raise e
        print(f"DynamoDB table '{table_name}' not found. Creating it now...")
        dynamodb.create_table(
            TableName=table_name,
            KeySchema=key_schema,
            AttributeDefinitions=attribute_definitions,
            BillingMode='PAY_PER_REQUEST',
        )
        dynamodb.Table(table_name).wait_until_exists()
        if ttl_attribute:
            dynamodb.meta.client.update_time_to_live(
                TableName=table_name,
                TimeToLiveSpecification={'Enabled': True, 'AttributeName': ttl_attribute},
            )
        print(f"Table '{table_name}' created successfully.")


def setup_dynamodb_tables():
    """Checks for and creates the Issues and IssueCounts tables if they don't exist."""
    settings = get_settings()
    dynamodb = boto3.resource('dynamodb', region_name=settings.aws_region)

    _create_table_if_missing(
        dynamodb, settings.issues_table_name,
        key_schema=[
            {'AttributeName': 'workspaceID', 'KeyType': 'HASH'},
            {'AttributeName': 'group', 'KeyType': 'RANGE'},
        ],
        attribute_definitions=[
            {'AttributeName': 'workspaceID', 'AttributeType': 'S'},
            {'AttributeName': 'group', 'AttributeType': 'S'},
        ],
    )
    _create_table_if_missing(
        dynamodb, settings.issue_counts_table_name,
        key_schema=[
            {'AttributeName': 'id', 'KeyType': 'HASH'},
            {'AttributeName': 'hour', 'KeyType': 'RANGE'},
        ],
        attribute_definitions=[
            {'AttributeName': 'id', 'AttributeType': 'S'},
            {'AttributeName': 'hour', 'AttributeType': 'S'},
        ],
        ttl_attribute='expiry',
    )


def _kinesis_record(sequence_number: str, data: bytes) -> dict:
    return {
        "eventID": f"shardId-000000000000:{sequence_number}",
        "eventSource": "aws:kinesis",
        "kinesis": {
            "sequenceNumber": sequence_number,
            "partitionKey": "issues",
            "data": base64.b64encode(data).decode('ascii'),
        },
    }


def build_sample_event() -> dict:
    """Three records: a control frame, a data frame with one error, a corrupt payload."""
    error_line = (
        "2024-01-01T00:00:00.000Z\t6f1b1c0e-8a4e-4b7a-9d3e-0c1f2a3b4c5d\tERROR\t"
        "TypeError: Cannot read properties of undefined (reading 'id')\n"
        "    at handler (file:///var/task/index.mjs:12:25)"
    )
    data_message = build_data_message(
        "/aws/lambda/checkout-api", "2024/01/01/[$LATEST]abc123",
        [create_log_event(error_line, datetime(2024, 1, 1, tzinfo=timezone.utc))],
    )
    return {
        "Records": [
            _kinesis_record("1001", compress_message(build_control_message())),
            _kinesis_record("1002", compress_message(data_message)),
            _kinesis_record("1003", b"\x00\x01 not a gzip frame"),
        ]
    }


def run_live():
    """Executes the ingest_issues Lambda handler using your live AWS credentials."""
    print("--- Starting LIVE Run of ingest_issues Lambda ---")

    try:
        setup_dynamodb_tables()
    except Exception as e:
        print(f"Could not complete setup. Aborting run. Error: {e}")
        return

    try:
        print("\n--- Invoking Lambda handler (this will write to DynamoDB) ---")
        result = handler(build_sample_event(), {})
        print("--- Lambda handler execution finished ---")

        print("\n--- Final JSON Output from Lambda: ---")
        print(json.dumps(result, indent=2))

        settings = get_settings()
        issue_count = ISSUE_STORE.issues_table.scan(Select='COUNT').get('Count', 0)
        print(f"\n Success! '{settings.issues_table_name}' now holds {issue_count} issue(s).")
    except Exception as e:
        print(f"\n An unexpected error occurred during the run: {e}")


if __name__ == "__main__":
    run_live()
