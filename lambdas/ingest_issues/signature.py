# lambdas/ingest_issues/signature.py
"""
Error signature detection for CloudWatch log lines.

A signature is the error type, message and stack of one failing log line.
Signatures fingerprint to a stable group key so repeated occurrences of the
same logical error land on the same issue.

Recognised shapes, in the order they are tried:
  - Lambda runtime error objects / structured JSON error logs
  - Python tracebacks
  - Node style stacks ("TypeError: ...\\n    at fn (file:1:2)")
  - Lambda platform failures (timeouts, runtime exits)
  - level tagged lines ("[ERROR] ...", "\\tERROR\\t", "ERROR: ...")
"""
import hashlib
import json
import re
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

ERROR_LEVELS = {"ERROR", "FATAL", "CRITICAL"}

# Lambda Node runtime prefix: "<ts>\t<request id>\tERROR\t"
LAMBDA_PREFIX = re.compile(r"^\S+\t[0-9a-fA-F-]{36}\t(?P<level>[A-Z]+)\t")
# Lambda Python logging prefix: "[ERROR]\t<ts>\t<request id>\t"
PY_LOGGING_PREFIX = re.compile(r"^\[(?P<level>[A-Z]+)\]\t\S+\t\S+\t")
LEVEL_TAG = re.compile(
    r"\[(?P<bracket>ERROR|CRITICAL|FATAL)\]:?\s*"
    r"|\b(?P<colon>ERROR|CRITICAL|FATAL):\s+"
    r"|\blevel=(?P<kv>error|fatal|critical)\b\s*",
    re.IGNORECASE,
)

# Parenthesised locations nest one level deep at most ("at f (eval at g (x.js:1:2))").
JS_FRAME = re.compile(
    r"^\s+at\s+(?P<frame>[^()]*\((?:[^()]|\([^()]*\))*\)|\S+:\d+(?::\d+)?|\S*<anonymous>\S*|native)\s*$")
PY_FRAME = re.compile(r'^\s*File "(?P<file>[^"]+)", line \d+(?:, in (?P<func>.+?))?\s*$')
PY_EXCEPTION = re.compile(r"^(?P<type>[A-Za-z_][\w.]*)(?::\s?(?P<message>.*))?$")
TYPED_MESSAGE = re.compile(
    r"^(?P<type>(?:[A-Za-z_$][\w$.]*)?(?:Error|Exception|Fault))(?:\s*\[[^\]]*\])?:\s*(?P<message>.*)$"
)
TYPE_WORD = re.compile(r"\b(?P<type>(?:[A-Z][\w$.]*)?(?:Error|Exception))\b")

TIMEOUT_RE = re.compile(r"Task timed out after [\d.]+ seconds")
RUNTIME_EXIT_RE = re.compile(r"Runtime exited(?: with error)?:?\s*(?P<detail>.*)")

INTERNAL_FRAME_MARKERS = ("node:", "internal/", "/var/runtime/", "/var/lang/")

# Longer lines are never treated as frames, and error type words are looked for in this prefix only.
MAX_SCAN_CHARS = 2048

FRAME_RULES: List[Tuple[re.Pattern, str]] = [
    (re.compile(r"file://"), ""),
    (re.compile(r"/var/task/"), ""),
    # line and column numbers shift with every deploy
    (re.compile(r":\d+(?::\d+)?(?=\)?$)"), ""),
    (re.compile(r"(?<=[-.])(?=[0-9A-Za-z]*\d)[0-9A-Za-z]{8,}(?=\.m?js\b)"), "<HASH>"),
]


@dataclass(frozen=True)
class ErrorSignature:
    error_type: str
    message: str
    stack: List[str] = field(default_factory=list)

    @property
    def top_frame(self) -> str:
        return top_frame(self.stack)

    def fingerprint(self, log_group: str) -> str:
        return fingerprint(self.error_type, self.top_frame, log_group)


def normalize_frame(frame: str) -> str:
    normalized = frame.strip()
    for pattern, token in FRAME_RULES:
        normalized = pattern.sub(token, normalized)
    return normalized


def _is_internal(frame: str) -> bool:
    return any(marker in frame for marker in INTERNAL_FRAME_MARKERS)


def top_frame(stack: List[str]) -> str:
    """
    Picks the frame that best identifies where an error was raised.

    JS stacks list the innermost frame first, Python tracebacks last.
    Runtime frames are passed over in favour of application frames.
    """
    js_frames = [m.group("frame") for line in stack if (m := _js_frame(line))]
    if js_frames:
        app_frames = [f for f in js_frames if not _is_internal(f)]
        return normalize_frame((app_frames or js_frames)[0])

    py_frames = []
    for line in stack:
        m = PY_FRAME.match(line)
        if m:
            py_frames.append(f"{m.group('file')} in {m.group('func') or '<module>'}")
    if py_frames:
        app_frames = [f for f in py_frames if not _is_internal(f)]
        return normalize_frame((app_frames or py_frames)[-1])
    return ""


def fingerprint(error_type: str, frame: str, log_group: str) -> str:
    """Deterministic group key. JSON encoding keeps the three parts unambiguous."""
    payload = json.dumps([error_type, frame, log_group], ensure_ascii=False)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


# Parsing helpers

def _clean(line: str) -> str:
    return line.replace("\r\n", "\n").replace("\r", "\n").replace("\u00a0", " ")


def _js_frame(line: str) -> Optional[re.Match]:
    if len(line) > MAX_SCAN_CHARS:
        return None
    return JS_FRAME.match(line)


def _strip_prefix(line: str) -> Tuple[Optional[str], str]:
    """Splits the Lambda log prefix off a line, returning (level, rest)."""
    for pattern in (LAMBDA_PREFIX, PY_LOGGING_PREFIX):
        m = pattern.match(line)
        if m:
            return m.group("level"), line[m.end():]
    return None, line


def _frame_lines(lines: List[str]) -> List[str]:
    """Keeps stack frames, plus the source line Python prints under a frame."""
    frames = []
    after_py_frame = False
    for line in lines:
        if _js_frame(line) or PY_FRAME.match(line):
            frames.append(line.rstrip())
            after_py_frame = bool(PY_FRAME.match(line))
            continue
        if after_py_frame and line.startswith((" ", "\t")) and line.strip():
            frames.append(line.rstrip())
        after_py_frame = False
    return frames


def _stack_lines(value) -> List[str]:
    if isinstance(value, str):
        lines = _clean(value).split("\n")
    elif isinstance(value, list):
        lines = []
        for item in value:
            lines.extend(_clean(str(item)).split("\n"))
    else:
        return []
    return _frame_lines(lines)


def _split_typed(message: str) -> Tuple[str, str]:
    """'TypeError: boom' -> ('TypeError', 'boom'). Falls back to 'Error'."""
    m = TYPED_MESSAGE.match(message.strip())
    if m:
        return m.group("type"), m.group("message").strip()
    m = TYPE_WORD.search(message, 0, MAX_SCAN_CHARS)
    if m:
        return m.group("type"), message.strip()
    return "Error", message.strip()


# Strategies

def _from_json(text: str) -> Optional[ErrorSignature]:
    start, end = text.find("{"), text.rfind("}")
    if start == -1 or end <= start:
        return None
    try:
        data = json.loads(text[start:end + 1])
    except ValueError:
        return None
    if not isinstance(data, dict):
        return None

    if "errorType" in data or "errorMessage" in data:
        return ErrorSignature(
            error_type=str(data.get("errorType") or "Error"),
            message=str(data.get("errorMessage") or ""),
            stack=_stack_lines(data.get("stack") or data.get("stackTrace")),
        )

    level = str(data.get("level") or data.get("severity") or "").upper()
    if level not in ERROR_LEVELS:
        return None
    err = data.get("error") or data.get("err")
    if isinstance(err, dict):
        return ErrorSignature(
            error_type=str(err.get("name") or err.get("type") or "Error"),
            message=str(err.get("message") or data.get("message") or data.get("msg") or ""),
            stack=_stack_lines(err.get("stack")),
        )
    error_type, message = _split_typed(str(data.get("message") or data.get("msg") or err or ""))
    return ErrorSignature(error_type=error_type, message=message)


def _from_python_traceback(text: str) -> Optional[ErrorSignature]:
    marker = "Traceback (most recent call last):"
    if marker not in text:
        return None
    head, _, tail = text.partition(marker)
    lines = tail.split("\n")

    error_type, message = None, ""
    for line in reversed(lines):
        if not line.strip() or line.startswith((" ", "\t")):
            continue
        m = PY_EXCEPTION.match(line.strip())
        if m:
            error_type, message = m.group("type"), (m.group("message") or "").strip()
            break
    if error_type is None:
        # Lambda puts the exception first: "[ERROR] ValueError: boom\nTraceback ..."
        _, header = _strip_prefix(head.strip())
        header = LEVEL_TAG.sub("", header, count=1)
        error_type, message = _split_typed(header)

    return ErrorSignature(error_type=error_type, message=message, stack=_frame_lines(lines))


def _from_js_stack(text: str) -> Optional[ErrorSignature]:
    lines = text.split("\n")
    first_frame = next((i for i, line in enumerate(lines) if _js_frame(line)), None)
    if first_frame is None:
        return None
    header = next((lines[i] for i in range(first_frame - 1, -1, -1) if lines[i].strip()), "")
    _, header = _strip_prefix(header)
    error_type, message = _split_typed(header)
    return ErrorSignature(error_type=error_type, message=message, stack=_frame_lines(lines[first_frame:]))


def _from_platform(text: str) -> Optional[ErrorSignature]:
    m = TIMEOUT_RE.search(text)
    if m:
        return ErrorSignature(error_type="Lambda.Timeout", message=m.group(0))
    m = RUNTIME_EXIT_RE.search(text)
    if m:
        return ErrorSignature(error_type="Runtime.ExitError", message=m.group(0).strip())
    return None


def _from_level_tag(text: str) -> Optional[ErrorSignature]:
    first_line = text.split("\n", 1)[0]
    level, rest = _strip_prefix(first_line)
    if level is None:
        m = LEVEL_TAG.search(first_line)
        if not m:
            return None
        rest = first_line[m.end():]
    elif level not in ERROR_LEVELS:
        return None
    # the Node prefix wraps console.error("msg"), strip any inner tag too
    rest = LEVEL_TAG.sub("", rest, count=1) if LEVEL_TAG.match(rest) else rest
    if not rest.strip():
        return None
    error_type, message = _split_typed(rest)
    return ErrorSignature(error_type=error_type, message=message)


STRATEGIES: Tuple[Callable[[str], Optional[ErrorSignature]], ...] = (
    _from_json,
    _from_python_traceback,
    _from_js_stack,
    _from_platform,
    _from_level_tag,
)


def parse_error(line: str) -> Optional[ErrorSignature]:
    """Returns the error signature of a log line, or None for ordinary lines."""
    if not line or not line.strip():
        return None
    text = _clean(line)
    for strategy in STRATEGIES:
        signature = strategy(text)
        if signature:
            return signature
    return None
