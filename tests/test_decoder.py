# tests/test_decoder.py
import base64
import gzip
import json
import zlib

import pytest

from helpers import LOG_GROUP, NODE_ERROR, T0, control_record, corrupt_record, data_frame, encoded_record
from lambdas.ingest_issues.decoder import DecodeStatus, decode_record
from lambdas.ingest_issues.errors import DecodeError
from lambdas.ingest_issues.models import RawRecord


def _record(raw: bytes) -> RawRecord:
    return RawRecord(record_id="r1", payload=base64.b64encode(raw).decode("ascii"))


def test_data_frame_decodes_with_events():
    result = decode_record(encoded_record("r1", data_frame([NODE_ERROR])))

    assert result.status is DecodeStatus.OK
    events = result.message.events()
    assert len(events) == 1
    assert events[0].log_group == LOG_GROUP
    assert events[0].timestamp == T0
    assert events[0].message == NODE_ERROR


def test_control_frame_is_a_skip():
    result = decode_record(control_record("r1"))

    assert result.status is DecodeStatus.SKIP
    assert "CONTROL_MESSAGE" in result.reason
    assert result.unwrap() is None


def test_raw_gzip_bytes_are_accepted():
    payload = gzip.compress(json.dumps(data_frame([NODE_ERROR])).encode("utf-8"))

    result = decode_record(RawRecord(record_id="r1", payload=payload))

    assert result.status is DecodeStatus.OK


def test_zlib_wrapped_payload_is_accepted():
    result = decode_record(_record(zlib.compress(json.dumps(data_frame([NODE_ERROR])).encode("utf-8"))))

    assert result.status is DecodeStatus.OK


def test_event_level_group_overrides_frame():
    frame = data_frame([NODE_ERROR])
    frame["logEvents"][0]["logGroup"] = "/aws/lambda/other"

    result = decode_record(encoded_record("r1", frame))

    assert result.message.events()[0].log_group == "/aws/lambda/other"


@pytest.mark.parametrize("record, reason", [
    (RawRecord(record_id="r1", payload="not base64 at all!"), "base64"),
    (corrupt_record("r1"), "inflate"),
    (_record(gzip.compress(b"\xff\xfe\xfa")), "UTF-8"),
    (_record(gzip.compress(b"{not json")), "malformed"),
    (_record(gzip.compress(b'{"logEvents": []}')), "malformed"),
    (_record(gzip.compress(b'{"messageType": "DATA_MESSAGE", "logEvents": [{"timestamp": 1, "message": "x"}]}')),
     "malformed"),
    (_record(gzip.compress(b'{"messageType": "DATA_MESSAGE", "logGroup": "g", "logEvents": [{"message": "x"}]}')),
     "malformed"),
])
def test_bad_payloads_are_errors(record, reason):
    result = decode_record(record)

    assert result.status is DecodeStatus.ERROR
    assert reason in result.reason
    with pytest.raises(DecodeError):
        result.unwrap()
