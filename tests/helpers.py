# tests/helpers.py
import base64
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from cli.push_records import build_control_message, build_data_message, compress_message, create_log_event
from lambdas.ingest_issues.models import DecodedMessage, RawRecord

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)
NOW = datetime(2024, 6, 1, tzinfo=timezone.utc)
LOG_GROUP = "/aws/lambda/checkout-api"
LOG_STREAM = "2024/01/01/[$LATEST]abc123"
REQUEST_ID = "6f1b1c0e-8a4e-4b7a-9d3e-0c1f2a3b4c5d"

NODE_ERROR = (
    f"2024-01-01T00:00:00.000Z\t{REQUEST_ID}\tERROR\t"
    "TypeError: Cannot read properties of undefined (reading 'id')\n"
    "    at handler (file:///var/task/index.mjs:12:25)\n"
    "    at Runtime.handleOnceNonStreaming (file:///var/runtime/index.mjs:1173:29)"
)
NODE_ERROR_NO_STACK = (
    f"2024-01-01T00:00:00.000Z\t{REQUEST_ID}\tERROR\t"
    "TypeError: Cannot read properties of undefined (reading 'id')"
)
INFO_LINE = f"2024-01-01T00:00:00.000Z\t{REQUEST_ID}\tINFO\tcheckout started"


def at(seconds: float) -> datetime:
    return T0 + timedelta(seconds=seconds)


def data_frame(lines: List[str], times: Optional[List[datetime]] = None, log_group: str = LOG_GROUP,
               subscription_filter: str = "issues-ws_1") -> dict:
    times = times or [T0] * len(lines)
    events = [create_log_event(line, ts) for line, ts in zip(lines, times)]
    return build_data_message(log_group, LOG_STREAM, events, subscription_filter=subscription_filter)


def decoded(frame: dict) -> DecodedMessage:
    return DecodedMessage.model_validate(frame)


def encoded_record(record_id: str, frame: dict) -> RawRecord:
    return RawRecord(record_id=record_id, payload=base64.b64encode(compress_message(frame)).decode("ascii"))


def control_record(record_id: str) -> RawRecord:
    return encoded_record(record_id, build_control_message())


def corrupt_record(record_id: str) -> RawRecord:
    return RawRecord(record_id=record_id, payload=base64.b64encode(b"\x00\x01 definitely not gzip").decode("ascii"))


def kinesis_event(records: List[RawRecord]) -> dict:
    return {
        "Records": [
            {
                "eventID": f"shardId-000000000000:{r.record_id}",
                "eventSource": "aws:kinesis",
                "kinesis": {"sequenceNumber": r.record_id, "partitionKey": "issues", "data": r.payload},
            }
            for r in records
        ]
    }
