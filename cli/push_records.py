import os
import argparse
import gzip
import json
import uuid
from datetime import datetime, timezone
from typing import List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from dotenv import load_dotenv

# Load environment variables from a .env file for local testing
load_dotenv()

STREAM_NAME = os.environ.get("KINESIS_STREAM_NAME")
AWS_REGION = os.environ.get("AWS_REGION", "us-east-1")


def create_log_event(message: str, timestamp: Optional[datetime] = None) -> dict:
    """
    Creates a single CloudWatch log event as found in a subscription frame.
    """
    timestamp = timestamp or datetime.now(timezone.utc)
    return {
        "id": uuid.uuid4().hex,
        "timestamp": int(timestamp.timestamp() * 1000),
        "message": message,
    }


def build_data_message(log_group: str, log_stream: str, events: List[dict],
                       owner: str = "123456789012", subscription_filter: str = "issues-local") -> dict:
    return {
        "messageType": "DATA_MESSAGE",
        "owner": owner,
        "logGroup": log_group,
        "logStream": log_stream,
        "subscriptionFilters": [subscription_filter],
        "logEvents": events,
    }


def build_control_message() -> dict:
    """CloudWatch sends one of these to check the destination is reachable."""
    return {
        "messageType": "CONTROL_MESSAGE",
        "owner": "CloudwatchLogs",
        "logGroup": "",
        "logStream": "",
        "subscriptionFilters": [],
        "logEvents": [{
            "id": "",
            "timestamp": int(datetime.now(timezone.utc).timestamp() * 1000),
            "message": "CWL CONTROL MESSAGE: Checking health of destination Kinesis stream.",
        }],
    }


def compress_message(message: dict) -> bytes:
    """gzip the JSON frame, the same way CloudWatch Logs writes it to the stream."""
    return gzip.compress(json.dumps(message).encode('utf-8'))


def send_to_stream(message: dict, partition_key: str = "issues", stream_name: Optional[str] = None):
    """
    Puts one compressed frame on the Kinesis stream.
    """
    stream_name = stream_name or STREAM_NAME
    if not stream_name:
        print("❌ ERROR: KINESIS_STREAM_NAME environment variable not set. Please create a .env file.")
        return None

    kinesis = boto3.client('kinesis', region_name=AWS_REGION)
    try:
        response = kinesis.put_record(
            StreamName=stream_name,
            Data=compress_message(message),
            PartitionKey=partition_key,
        )
        print(f"✅ Frame sent. Shard: {response['ShardId']}, Sequence number: {response['SequenceNumber']}")
        return response['SequenceNumber']
    except (BotoCoreError, ClientError) as e:
        print("❌ Failed to send frame.")
        print(f"Error: {e}")
        return None


def send_log_file_in_batches(file_path: str, log_group: str, log_stream: str = "cli",
                             batch_size: int = 500, stream_name: Optional[str] = None) -> int:
    """
    Reads a log file and sends its lines as data frames of up to batch_size
    events each. Returns the number of frames sent.
    """
    print(f"--- Reading log file: {file_path} ---")
    with open(file_path, 'r', encoding='utf-8') as f:
        lines = [line.rstrip("\n") for line in f if line.strip()]

    if not lines:
        print("⚠️ Warning: Log file is empty. Skipping.")
        return 0

    num_batches = (len(lines) + batch_size - 1) // batch_size
    print(f"Total lines: {len(lines)}. Sending {num_batches} frame(s) of up to {batch_size} events each.")

    sent = 0
    for i in range(num_batches):
        batch = lines[i * batch_size:(i + 1) * batch_size]
        frame = build_data_message(log_group, log_stream, [create_log_event(line) for line in batch])
        if send_to_stream(frame, partition_key=log_group, stream_name=stream_name):
            sent += 1
    return sent


if __name__ == "__main__":
    parser = argparse.ArgumentParser(
        description="Pushes CloudWatch-Logs-style frames to the issue ingestion Kinesis stream."
    )
    parser.add_argument('log_files', metavar='FILE', type=str, nargs='*',
                        help='Log files to send. Without any, a small demo batch is sent.')
    parser.add_argument('--log-group', default="/aws/lambda/checkout-api", help='Log group to stamp on the frames.')
    parser.add_argument('--batch-size', type=int, default=500, help='Events per frame.')
    args = parser.parse_args()

    print("--- Issue Ingestion Test CLI ---")
    if args.log_files:
        for file_path in args.log_files:
            send_log_file_in_batches(file_path, args.log_group, batch_size=args.batch_size)
    else:
        # A few lines from a Node function, one of them an error with a stack
        events = [
            create_log_event("START RequestId: 6f1b1c0e-8a4e-4b7a-9d3e-0c1f2a3b4c5d Version: $LATEST"),
            create_log_event(
                "2025-06-25T02:37:12.198Z\t6f1b1c0e-8a4e-4b7a-9d3e-0c1f2a3b4c5d\tERROR\t"
                "TypeError: Cannot read properties of undefined (reading 'id')\n"
                "    at handler (file:///var/task/index.mjs:12:25)\n"
                "    at Runtime.handleOnceNonStreaming (file:///var/runtime/index.mjs:1173:29)"
            ),
            create_log_event("Task timed out after 3.00 seconds"),
        ]
        send_to_stream(build_data_message(args.log_group, "2025/06/25/[$LATEST]abc123", events))
        send_to_stream(build_control_message())
