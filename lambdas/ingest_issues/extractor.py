# lambdas/ingest_issues/extractor.py
import time
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional

from .errors import ExtractError, StoreError
from .models import (
    Actor, AppSettings, DecodedMessage, IssueFields, LogEvent, Pointer,
    get_settings, hour_bucket, to_epoch_ms,
)
from .signature import ErrorSignature, parse_error


@dataclass
class GroupedOccurrences:
    """Every occurrence of one group inside a single message."""
    group: str
    representative: IssueFields
    latest: datetime
    hourly: Counter = field(default_factory=Counter)

    def add(self, fields: IssueFields):
        if fields.time_seen > self.latest:
            self.latest = fields.time_seen
        if fields.stack and not self.representative.stack:
            self.representative = fields
        self.hourly[hour_bucket(fields.time_seen)] += 1

    def upsert_fields(self) -> IssueFields:
        rep = self.representative
        return IssueFields(
            error=rep.error, message=rep.message, stack=rep.stack, pointer=rep.pointer, time_seen=self.latest,
        )


@dataclass
class ExtractionSummary:
    workspace_id: str
    events_seen: int = 0
    errors_found: int = 0
    issues_upserted: int = 0
    counts_incremented: int = 0


def resolve_workspace(message: DecodedMessage, actor: Actor, filter_prefix: str) -> str:
    """
    Workspace the frame belongs to: a "<prefix><workspace>" subscription filter
    wins, then the actor's workspace, then the sending account.
    """
    if filter_prefix:
        for name in message.subscription_filters:
            if name.startswith(filter_prefix) and len(name) > len(filter_prefix):
                return name[len(filter_prefix):]
    if actor.workspace_id:
        return actor.workspace_id
    if message.owner:
        return message.owner
    raise ExtractError("could not resolve a workspace for the message")


def occurrence_fields(event: LogEvent, signature: ErrorSignature) -> IssueFields:
    return IssueFields(
        error=signature.error_type,
        message=signature.message,
        stack=list(signature.stack),
        pointer=Pointer(
            log_group=event.log_group,
            log_stream=event.log_stream,
            timestamp=to_epoch_ms(event.timestamp),
        ),
        time_seen=event.timestamp,
    )


class IssueExtractor:
    """
    Derives issues from a decoded log frame and persists them.

    One call handles one message: events are parsed for error signatures,
    folded per fingerprint, then each group is upserted and its hourly counts
    incremented. Transient store failures are retried a bounded number of
    times; anything else surfaces as ExtractError.
    """
    def __init__(self, store, actor: Actor, settings: Optional[AppSettings] = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.store = store
        self.actor = actor
        self.settings = settings or get_settings()
        self.sleep = sleep

    def extract(self, message: DecodedMessage) -> ExtractionSummary:
        try:
            return self._extract(message)
        except ExtractError:
            raise
        except Exception as e:
            raise ExtractError(f"{type(e).__name__}: {e}") from e

    def _extract(self, message: DecodedMessage) -> ExtractionSummary:
        workspace_id = resolve_workspace(message, self.actor, self.settings.subscription_filter_prefix)
        summary = ExtractionSummary(workspace_id=workspace_id)

        groups: Dict[str, GroupedOccurrences] = {}
        for event in message.events():
            summary.events_seen += 1
            signature = parse_error(event.message)
            if signature is None:
                continue
            summary.errors_found += 1
            fields = occurrence_fields(event, signature)
            group = signature.fingerprint(event.log_group)
            if group not in groups:
                groups[group] = GroupedOccurrences(group=group, representative=fields, latest=fields.time_seen)
            groups[group].add(fields)

        for grouped in groups.values():
            self._with_retry(self.store.upsert_issue, workspace_id, grouped.group, grouped.upsert_fields())
            summary.issues_upserted += 1
            for hour, delta in sorted(grouped.hourly.items()):
                self._with_retry(self.store.increment_count, workspace_id, grouped.group, hour, delta)
                summary.counts_incremented += 1
        return summary

    def _with_retry(self, fn, *args):
        attempts = self.settings.store_max_attempts
        for attempt in range(1, attempts + 1):
            try:
                return fn(*args)
            except StoreError as e:
                if not e.transient:
                    raise
                if attempt == attempts:
                    raise ExtractError(f"giving up after {attempts} attempts: {e}") from e
                delay = self.settings.store_retry_base_delay * (2 ** (attempt - 1))
                print(f" -> ⚠️ Transient store error ({e.code or 'connection'}), retrying in {delay:.2f}s "
                      f"(attempt {attempt}/{attempts})")
                self.sleep(delay)
