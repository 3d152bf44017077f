# tests/test_signature_extraction.py
import json
import time

import pytest

from helpers import INFO_LINE, LOG_GROUP, NODE_ERROR, NODE_ERROR_NO_STACK, REQUEST_ID
from lambdas.ingest_issues.signature import fingerprint, normalize_frame, parse_error, top_frame

PYTHON_TRACEBACK = (
    "Traceback (most recent call last):\n"
    '  File "/var/runtime/bootstrap.py", line 60, in handle\n'
    "    result = handler(event, context)\n"
    '  File "/var/task/app.py", line 14, in handler\n'
    "    total = order['total']\n"
    "KeyError: 'total'"
)

# What the Python runtime prints for an unhandled exception
PYTHON_LAMBDA_ERROR = (
    "[ERROR] KeyError: 'total'\r"
    "Traceback (most recent call last):\r"
    '  File "/var/task/app.py", line 14, in handler\r'
    "    total = order['total']"
)

NODE_INVOKE_ERROR = f"2024-01-01T00:00:00.000Z\t{REQUEST_ID}\tERROR\tInvoke Error \t" + json.dumps({
    "errorType": "TypeError",
    "errorMessage": "Cannot read properties of undefined (reading 'id')",
    "stack": [
        "TypeError: Cannot read properties of undefined (reading 'id')",
        "    at handler (file:///var/task/index.mjs:12:25)",
        "    at Runtime.handleOnceNonStreaming (file:///var/runtime/index.mjs:1173:29)",
    ],
})


def test_node_stack_is_parsed():
    sig = parse_error(NODE_ERROR)

    assert sig.error_type == "TypeError"
    assert sig.message == "Cannot read properties of undefined (reading 'id')"
    assert len(sig.stack) == 2
    assert sig.top_frame == "handler (index.mjs)"


def test_node_invoke_error_json_matches_plain_stack():
    sig = parse_error(NODE_INVOKE_ERROR)

    assert sig.error_type == "TypeError"
    assert sig.top_frame == "handler (index.mjs)"
    assert sig.fingerprint(LOG_GROUP) == parse_error(NODE_ERROR).fingerprint(LOG_GROUP)


def test_python_traceback_uses_innermost_app_frame():
    sig = parse_error(PYTHON_TRACEBACK)

    assert sig.error_type == "KeyError"
    assert sig.message == "'total'"
    assert sig.top_frame == "app.py in handler"
    assert "    total = order['total']" in sig.stack


def test_python_runtime_error_reads_type_from_header():
    sig = parse_error(PYTHON_LAMBDA_ERROR)

    assert sig.error_type == "KeyError"
    assert sig.message == "'total'"
    assert sig.top_frame == "app.py in handler"


def test_python_runtime_json_stack_trace():
    line = json.dumps({
        "errorMessage": "'total'",
        "errorType": "KeyError",
        "requestId": REQUEST_ID,
        "stackTrace": ['  File "/var/task/app.py", line 14, in handler\n    total = order[\'total\']\n'],
    })

    sig = parse_error(line)

    assert sig.error_type == "KeyError"
    assert sig.top_frame == "app.py in handler"


def test_structured_json_error_log():
    line = json.dumps({"level": "error", "msg": "payment failed", "err": {
        "name": "CardDeclinedError", "message": "card declined", "stack": "CardDeclinedError: card declined\n    at charge (/var/task/pay.js:3:9)",
    }})

    sig = parse_error(line)

    assert sig.error_type == "CardDeclinedError"
    assert sig.top_frame == "charge (pay.js)"


@pytest.mark.parametrize("line, error_type", [
    ("Task timed out after 3.00 seconds", "Lambda.Timeout"),
    ("RequestId: abc Error: Runtime exited with error: signal: killed", "Runtime.ExitError"),
])
def test_platform_failures(line, error_type):
    assert parse_error(line).error_type == error_type


@pytest.mark.parametrize("line, error_type, message", [
    (NODE_ERROR_NO_STACK, "TypeError", "Cannot read properties of undefined (reading 'id')"),
    (f"[ERROR]\t2024-01-01T00:00:00.000Z\t{REQUEST_ID}\tpayment provider unreachable", "Error",
     "payment provider unreachable"),
    ('[2025-06-25T02:37:12.198126+00:00][CRITICAL]: NullPointerException in user_authentication.py '
     'Details: {"service": "auth-service", "line": 152}', "NullPointerException", None),
    ("level=error msg=ConnectionError: refused", "ConnectionError", None),
])
def test_level_tagged_lines(line, error_type, message):
    sig = parse_error(line)

    assert sig.error_type == error_type
    assert sig.stack == []
    if message is not None:
        assert sig.message == message


@pytest.mark.parametrize("line", [
    INFO_LINE,
    "START RequestId: 6f1b1c0e-8a4e-4b7a-9d3e-0c1f2a3b4c5d Version: $LATEST",
    "2024-06-17T13:33:00Z [DEBUG] All systems operational. A-OK.",
    json.dumps({"level": "info", "msg": "order created", "orderId": 7}),
    f"2024-01-01T00:00:00.000Z\t{REQUEST_ID}\tINFO\tretrying\n at least once more",
    "",
    "   ",
])
def test_ordinary_lines_have_no_signature(line):
    assert parse_error(line) is None


def test_frame_normalization():
    assert normalize_frame("handler (file:///var/task/index.mjs:12:25)") == "handler (index.mjs)"
    assert normalize_frame("/var/task/chunk-4F2A9C1B.mjs:3:1") == "chunk-<HASH>.mjs"


def test_fingerprint_is_deterministic_and_sensitive_to_each_input():
    base = fingerprint("TypeError", "handler (index.mjs)", LOG_GROUP)

    assert base == fingerprint("TypeError", "handler (index.mjs)", LOG_GROUP)
    assert base != fingerprint("RangeError", "handler (index.mjs)", LOG_GROUP)
    assert base != fingerprint("TypeError", "other (index.mjs)", LOG_GROUP)
    assert base != fingerprint("TypeError", "handler (index.mjs)", "/aws/lambda/other")
    # parts cannot bleed into each other
    assert fingerprint("a", "b c", "d") != fingerprint("a b", "c", "d")


def test_same_error_on_a_different_line_keeps_its_group():
    moved = NODE_ERROR.replace("index.mjs:12:25", "index.mjs:40:3")

    assert parse_error(moved).fingerprint(LOG_GROUP) == parse_error(NODE_ERROR).fingerprint(LOG_GROUP)


def test_stackless_errors_share_a_group_per_type_and_log_group():
    first = parse_error("[ERROR] TypeError: cannot read id")
    second = parse_error("[ERROR] TypeError: connection refused")

    assert first.top_frame == second.top_frame == ""
    assert first.fingerprint(LOG_GROUP) == second.fingerprint(LOG_GROUP)
    assert first.fingerprint(LOG_GROUP) == fingerprint("TypeError", "", LOG_GROUP)
    assert first.fingerprint(LOG_GROUP) != first.fingerprint("/aws/lambda/other")
    assert first.fingerprint(LOG_GROUP) != parse_error("[ERROR] RangeError: cannot read id").fingerprint(LOG_GROUP)


def test_timeouts_of_any_length_share_a_group():
    first = parse_error("Task timed out after 3.00 seconds")
    second = parse_error("Task timed out after 6.01 seconds")

    assert top_frame(first.stack) == ""
    assert first.fingerprint(LOG_GROUP) == second.fingerprint(LOG_GROUP)


def test_eval_frames_with_nested_locations():
    assert top_frame(["    at fn (eval at load (/var/task/index.js:3:9), <anonymous>:1:1)"]) == (
        "fn (eval at load (index.js:3:9), <anonymous>)"
    )


def test_pathological_frame_lines_are_cheap_to_reject():
    lines = ["    at " + "(" * 20_000, "    at " + "(" * 200_000, "    at x (" + "a(" * 1_000]

    started = time.monotonic()
    assert top_frame(lines) == ""
    assert parse_error("\n".join(lines)) is None
    assert time.monotonic() - started < 2
