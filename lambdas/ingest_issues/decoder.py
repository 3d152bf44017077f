# lambdas/ingest_issues/decoder.py
import base64
import binascii
import zlib
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from pydantic import ValidationError

from .errors import DecodeError
from .models import DecodedMessage, RawRecord

GZIP_MAGIC = b"\x1f\x8b"
# wbits for zlib.decompress: auto-detect gzip or zlib headers.
_AUTO_WBITS = zlib.MAX_WBITS | 32


class DecodeStatus(Enum):
    OK = "ok"
    SKIP = "skip"
    ERROR = "error"


@dataclass(frozen=True)
class DecodeResult:
    """Tagged outcome of decoding one record."""
    status: DecodeStatus
    message: Optional[DecodedMessage] = None
    reason: str = ""

    @classmethod
    def ok(cls, message: DecodedMessage) -> "DecodeResult":
        return cls(DecodeStatus.OK, message=message)

    @classmethod
    def skip(cls, message_type: str) -> "DecodeResult":
        return cls(DecodeStatus.SKIP, reason=f"messageType={message_type}")

    @classmethod
    def error(cls, reason: str) -> "DecodeResult":
        return cls(DecodeStatus.ERROR, reason=reason)

    def unwrap(self) -> Optional[DecodedMessage]:
        """Returns the message (None for a skip) or raises DecodeError."""
        if self.status is DecodeStatus.ERROR:
            raise DecodeError(self.reason)
        return self.message


def _compressed_bytes(payload) -> bytes:
    if isinstance(payload, (bytes, bytearray)):
        data = bytes(payload)
        if data.startswith(GZIP_MAGIC):
            return data
        return base64.b64decode(data, validate=True)
    return base64.b64decode(payload, validate=True)


def decode_record(record: RawRecord) -> DecodeResult:
    """
    Turns one raw record into a CloudWatch Logs frame.

    The payload is base64 text wrapping gzip-compressed JSON. Frames that are
    not DATA_MESSAGE come back as a skip. Any failure along the way comes back
    as an error result; nothing is raised.
    """
    try:
        compressed = _compressed_bytes(record.payload)
    except (binascii.Error, ValueError, TypeError) as e:
        return DecodeResult.error(f"invalid base64 payload: {e}")

    try:
        text = zlib.decompress(compressed, _AUTO_WBITS).decode("utf-8")
    except zlib.error as e:
        return DecodeResult.error(f"could not inflate payload: {e}")
    except UnicodeDecodeError as e:
        return DecodeResult.error(f"payload is not UTF-8: {e}")

    try:
        message = DecodedMessage.model_validate_json(text)
    except ValidationError as e:
        return DecodeResult.error(f"malformed frame: {e.error_count()} validation error(s): {e.errors()[0]['msg']}")

    if not message.is_data:
        return DecodeResult.skip(message.message_type)
    return DecodeResult.ok(message)
