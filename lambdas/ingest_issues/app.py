# lambdas/ingest_issues/app.py
import time
from typing import Any, Dict, List

import boto3

from .coordinator import BatchCoordinator
from .deadline import DeadlineGuard
from .extractor import IssueExtractor
from .issue_store import DynamoIssueStore
from .models import Actor, RawRecord, get_settings

# initialize the clients and the store outside of the handler so warm invocations reuse them
SETTINGS = get_settings()
DYNAMODB_RESOURCE = boto3.resource('dynamodb', region_name=SETTINGS.aws_region)
ISSUE_STORE = DynamoIssueStore(
    issues_table=DYNAMODB_RESOURCE.Table(SETTINGS.issues_table_name),
    counts_table=DYNAMODB_RESOURCE.Table(SETTINGS.issue_counts_table_name),
    count_ttl_days=SETTINGS.issue_count_ttl_days,
)

# Ingestion is background work, it always runs as the system actor.
SYSTEM_ACTOR = Actor(type="system", workspace_id=SETTINGS.workspace_id)


def parse_kinesis_event(event: Dict[str, Any]) -> List[RawRecord]:
    """
    Turns a Kinesis stream event into raw records.

    The record id is the sequence number, which is what Lambda expects back as
    a batch item failure identifier. eventID is the fallback.
    """
    records = []
    for record in event.get('Records') or []:
        kinesis = record.get('kinesis') or {}
        record_id = kinesis.get('sequenceNumber') or record.get('eventID')
        if not record_id:
            print("⚠️ Warning: Kinesis record without a sequence number or eventID. Skipping.")
            continue
        records.append(RawRecord(record_id=record_id, payload=kinesis.get('data') or ""))
    return records


def handler(event: Dict[str, Any], context: object) -> Dict[str, Any]:
    """
    Main Lambda handler, triggered by a Kinesis stream of CloudWatch Logs
    subscription frames. Returns the batch item failures for the records that
    were not attempted before the deadline.
    """
    records = parse_kinesis_event(event)
    if not records:
        print("ℹ️ No records to process. Exiting.")
        return {"batchItemFailures": []}

    print(f"--- Ingest Issues Lambda Triggered: {len(records)} record(s) ---")
    started = time.monotonic()

    extractor = IssueExtractor(ISSUE_STORE, SYSTEM_ACTOR, SETTINGS)
    coordinator = BatchCoordinator(extractor)
    with DeadlineGuard.for_context(context, SETTINGS) as deadline:
        result = coordinator.process(records, deadline)

    counts = result.counts()
    print(f"✅ Batch finished in {time.monotonic() - started:.2f}s: "
          f"{counts['done']} done, {counts['failed']} failed, {counts['unattempted']} unattempted.")
    return result.to_response()
