# lambdas/ingest_issues/models.py
"""
Settings, wire models and domain dataclasses for the issue ingestion Lambda.

Wire models (the CloudWatch Logs subscription frame) are pydantic models so the
decode step validates shape up front. Domain records are plain dataclasses.
"""
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DATA_MESSAGE = "DATA_MESSAGE"

# Namespace for deterministic issue ids, uuid5(namespace, "<workspace>:<group>").
ISSUE_NAMESPACE = uuid.uuid5(uuid.NAMESPACE_DNS, "issues.ingest-issues")


class AppSettings(BaseSettings):
    """
    Manages env vars using pydantic BaseSettings.
    It also reads a local .env file, which is handy for run_live.py.
    """
    model_config = SettingsConfigDict(
        env_file='.env', env_file_encoding='utf-8', extra='ignore', populate_by_name=True
    )

    aws_region: str = Field("us-east-1", alias='AWS_REGION')
    issues_table_name: str = Field("Issues", alias='ISSUES_TABLE_NAME')
    issue_counts_table_name: str = Field("IssueCounts", alias='ISSUE_COUNTS_TABLE_NAME')
    issue_count_ttl_days: int = Field(30, alias='ISSUE_COUNT_TTL_DAYS')

    # Deadline
    batch_deadline_seconds: float = Field(60.0, alias='BATCH_DEADLINE_SECONDS')
    deadline_headroom_seconds: float = Field(5.0, alias='DEADLINE_HEADROOM_SECONDS')

    # Store retries
    store_max_attempts: int = Field(3, ge=1, alias='STORE_MAX_ATTEMPTS')
    store_retry_base_delay: float = Field(0.2, ge=0, alias='STORE_RETRY_BASE_DELAY')

    # Workspace resolution
    subscription_filter_prefix: str = Field("issues-", alias='SUBSCRIPTION_FILTER_PREFIX')
    workspace_id: Optional[str] = Field(None, alias='WORKSPACE_ID')

    kinesis_stream_name: Optional[str] = Field(None, alias='KINESIS_STREAM_NAME')


@lru_cache()
def get_settings() -> AppSettings:
    return AppSettings()


# Time helpers

def to_iso(value: datetime) -> str:
    """UTC, millisecond precision, so string order matches time order."""
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds")


def from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value).astimezone(timezone.utc)


def from_epoch_ms(value: int) -> datetime:
    return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)


def to_epoch_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def hour_bucket(value: datetime) -> datetime:
    return value.astimezone(timezone.utc).replace(minute=0, second=0, microsecond=0)


# Wire models

class CloudWatchLogEvent(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra='ignore')

    id: str = ""
    timestamp: int = Field(..., ge=0)
    message: str
    log_group: Optional[str] = Field(None, alias='logGroup')
    log_stream: Optional[str] = Field(None, alias='logStream')


class DecodedMessage(BaseModel):
    """A CloudWatch Logs subscription frame after inflate + JSON parse."""
    model_config = ConfigDict(populate_by_name=True, extra='ignore')

    message_type: str = Field(..., alias='messageType')
    owner: str = ""
    log_group: str = Field("", alias='logGroup')
    log_stream: str = Field("", alias='logStream')
    subscription_filters: List[str] = Field(default_factory=list, alias='subscriptionFilters')
    log_events: List[CloudWatchLogEvent] = Field(default_factory=list, alias='logEvents')

    @property
    def is_data(self) -> bool:
        return self.message_type == DATA_MESSAGE

    @model_validator(mode='after')
    def _data_frames_name_a_log_group(self):
        if self.is_data and not self.log_group:
            if any(not e.log_group for e in self.log_events):
                raise ValueError("data frame without a logGroup")
        return self

    def events(self) -> List["LogEvent"]:
        """Log events with the frame's group/stream filled in."""
        return [
            LogEvent(
                event_id=e.id,
                log_group=e.log_group or self.log_group,
                log_stream=e.log_stream or self.log_stream,
                timestamp=from_epoch_ms(e.timestamp),
                message=e.message,
            )
            for e in self.log_events
        ]


# Domain models

@dataclass(frozen=True)
class RawRecord:
    """One item of the inbound batch. payload is base64 text or bytes."""
    record_id: str
    payload: Union[str, bytes]


@dataclass(frozen=True)
class Actor:
    """Identity the ingestion runs as. Passed explicitly, never ambient."""
    type: str = "system"
    workspace_id: Optional[str] = None


@dataclass(frozen=True)
class LogEvent:
    event_id: str
    log_group: str
    log_stream: str
    timestamp: datetime
    message: str


@dataclass(frozen=True)
class Pointer:
    """Where the full logs of an occurrence can be fetched from."""
    log_group: str
    log_stream: str
    timestamp: int

    def to_item(self) -> Dict[str, Any]:
        return {"logGroup": self.log_group, "logStream": self.log_stream, "timestamp": self.timestamp}

    @classmethod
    def from_item(cls, item: Optional[Dict[str, Any]]) -> Optional["Pointer"]:
        if not item:
            return None
        return cls(
            log_group=item.get("logGroup", ""),
            log_stream=item.get("logStream", ""),
            timestamp=int(item.get("timestamp", 0)),
        )


@dataclass(frozen=True)
class IssueFields:
    """The occurrence data an upsert writes or merges."""
    error: str
    message: str
    stack: List[str]
    pointer: Pointer
    time_seen: datetime


@dataclass
class Issue:
    id: str
    workspace_id: str
    group: str
    error: str
    message: str
    stack: List[str]
    pointer: Optional[Pointer]
    time_seen: datetime
    time_created: datetime
    time_updated: datetime
    time_ignored: Optional[datetime] = None
    time_resolved: Optional[datetime] = None

    @staticmethod
    def make_id(workspace_id: str, group: str) -> str:
        return str(uuid.uuid5(ISSUE_NAMESPACE, f"{workspace_id}:{group}"))

    @classmethod
    def create(cls, workspace_id: str, group: str, fields: IssueFields) -> "Issue":
        return cls(
            id=cls.make_id(workspace_id, group),
            workspace_id=workspace_id,
            group=group,
            error=fields.error,
            message=fields.message,
            stack=list(fields.stack),
            pointer=fields.pointer,
            time_seen=fields.time_seen,
            time_created=fields.time_seen,
            time_updated=fields.time_seen,
        )

    def merged(self, fields: IssueFields, now: datetime) -> "Issue":
        """
        Folds a new occurrence into this issue.

        time_seen only moves forward. Details are replaced only when the new
        occurrence carries a stack and the stored one does not.
        """
        merged = replace(
            self,
            time_seen=max(self.time_seen, fields.time_seen),
            time_updated=max(self.time_updated, now),
        )
        if fields.stack and not self.stack:
            merged = replace(
                merged,
                error=fields.error,
                message=fields.message,
                stack=list(fields.stack),
                pointer=fields.pointer,
            )
        return merged

    def to_item(self) -> Dict[str, Any]:
        item = {
            "id": self.id,
            "workspaceID": self.workspace_id,
            "group": self.group,
            "error": self.error,
            "message": self.message,
            "stack": list(self.stack),
            "pointer": self.pointer.to_item() if self.pointer else None,
            "timeSeen": to_iso(self.time_seen),
            "timeCreated": to_iso(self.time_created),
            "timeUpdated": to_iso(self.time_updated),
        }
        if self.time_ignored:
            item["timeIgnored"] = to_iso(self.time_ignored)
        if self.time_resolved:
            item["timeResolved"] = to_iso(self.time_resolved)
        return item

    @classmethod
    def from_item(cls, item: Dict[str, Any]) -> "Issue":
        return cls(
            id=item["id"],
            workspace_id=item["workspaceID"],
            group=item["group"],
            error=item.get("error", ""),
            message=item.get("message", ""),
            stack=list(item.get("stack") or []),
            pointer=Pointer.from_item(item.get("pointer")),
            time_seen=from_iso(item["timeSeen"]),
            time_created=from_iso(item["timeCreated"]),
            time_updated=from_iso(item["timeUpdated"]),
            time_ignored=from_iso(item.get("timeIgnored")),
            time_resolved=from_iso(item.get("timeResolved")),
        )


@dataclass
class IssueCount:
    workspace_id: str
    group: str
    hour: datetime
    count: int

    @staticmethod
    def make_key(workspace_id: str, group: str) -> str:
        return f"{workspace_id}#{group}"

    def expiry(self, ttl_days: int) -> int:
        return int((self.hour + timedelta(days=ttl_days)).timestamp())
