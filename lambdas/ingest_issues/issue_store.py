# lambdas/ingest_issues/issue_store.py
import threading
from datetime import datetime, timezone
from typing import Callable, Dict, Optional, Tuple

from botocore.exceptions import BotoCoreError, ClientError

from .errors import StoreError
from .models import Issue, IssueCount, IssueFields, hour_bucket, to_iso

# Error codes worth a local retry. Anything else is treated as permanent.
TRANSIENT_ERROR_CODES = {
    "ProvisionedThroughputExceededException",
    "ThrottlingException",
    "RequestLimitExceeded",
    "InternalServerError",
    "ServiceUnavailable",
    "TransactionConflictException",
}

CONDITIONAL_CHECK_FAILED = "ConditionalCheckFailedException"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _error_code(e: ClientError) -> str:
    return e.response.get("Error", {}).get("Code", "")


def _store_error(e: Exception, action: str) -> StoreError:
    if isinstance(e, ClientError):
        code = _error_code(e)
        message = e.response.get("Error", {}).get("Message", str(e))
        return StoreError(f"{action} failed ({code}): {message}", transient=code in TRANSIENT_ERROR_CODES, code=code)
    # BotoCoreError covers dropped connections, endpoint and read timeouts
    return StoreError(f"{action} failed: {e}", transient=True)


class DynamoIssueStore:
    """
    Issue store backed by two DynamoDB tables.

    Issues:      workspaceID (HASH), group (RANGE)
    IssueCounts: id = "<workspace>#<group>" (HASH), hour (RANGE), TTL on expiry

    Every write is a single conditional or atomic item update, so replaying an
    occurrence is safe and concurrent batches serialize in DynamoDB.
    """
    def __init__(self, issues_table, counts_table, count_ttl_days: int = 30,
                 clock: Callable[[], datetime] = _utcnow):
        self.issues_table = issues_table
        self.counts_table = counts_table
        self.count_ttl_days = count_ttl_days
        self.clock = clock

    def upsert_issue(self, workspace_id: str, group: str, fields: IssueFields) -> Issue:
        key = {"workspaceID": workspace_id, "group": group}
        issue = Issue.create(workspace_id, group, fields)
        try:
            self.issues_table.put_item(
                Item=issue.to_item(),
                ConditionExpression="attribute_not_exists(#group)",
                ExpressionAttributeNames={"#group": "group"},
            )
            return issue
        except ClientError as e:
            if _error_code(e) != CONDITIONAL_CHECK_FAILED:
                raise _store_error(e, "put issue")
        except BotoCoreError as e:
            raise _store_error(e, "put issue")

        # The issue already exists: merge this occurrence into it.
        self._conditional_update(
            key,
            UpdateExpression="SET #timeSeen = :ts",
            ConditionExpression="#timeSeen < :ts",
            ExpressionAttributeNames={"#timeSeen": "timeSeen"},
            ExpressionAttributeValues={":ts": to_iso(fields.time_seen)},
        )
        if fields.stack:
            self._conditional_update(
                key,
                UpdateExpression="SET #error = :error, #message = :message, #stack = :stack, #pointer = :pointer",
                ConditionExpression="attribute_not_exists(#stack) OR size(#stack) = :zero",
                ExpressionAttributeNames={
                    "#error": "error", "#message": "message", "#stack": "stack", "#pointer": "pointer",
                },
                ExpressionAttributeValues={
                    ":error": fields.error,
                    ":message": fields.message,
                    ":stack": list(fields.stack),
                    ":pointer": fields.pointer.to_item(),
                    ":zero": 0,
                },
            )
        try:
            response = self.issues_table.update_item(
                Key=key,
                UpdateExpression="SET #timeUpdated = :now",
                ConditionExpression="#timeUpdated < :now",
                ExpressionAttributeNames={"#timeUpdated": "timeUpdated"},
                ExpressionAttributeValues={":now": to_iso(self.clock())},
                ReturnValues="ALL_NEW",
            )
            return Issue.from_item(response["Attributes"])
        except ClientError as e:
            if _error_code(e) != CONDITIONAL_CHECK_FAILED:
                raise _store_error(e, "update issue")
        except BotoCoreError as e:
            raise _store_error(e, "update issue")
        return self.get_issue(workspace_id, group)

    def _conditional_update(self, key: Dict[str, str], **kwargs) -> bool:
        """Runs a conditional update. Returns False when the condition did not hold."""
        try:
            self.issues_table.update_item(Key=key, **kwargs)
            return True
        except ClientError as e:
            if _error_code(e) == CONDITIONAL_CHECK_FAILED:
                return False
            raise _store_error(e, "update issue")
        except BotoCoreError as e:
            raise _store_error(e, "update issue")

    def increment_count(self, workspace_id: str, group: str, hour: datetime, delta: int) -> IssueCount:
        hour = hour_bucket(hour)
        count = IssueCount(workspace_id=workspace_id, group=group, hour=hour, count=delta)
        try:
            response = self.counts_table.update_item(
                Key={"id": IssueCount.make_key(workspace_id, group), "hour": to_iso(hour)},
                UpdateExpression=(
                    "ADD #count :delta "
                    "SET #workspaceID = :workspace, #group = :group, #expiry = if_not_exists(#expiry, :expiry)"
                ),
                ExpressionAttributeNames={
                    "#count": "count", "#workspaceID": "workspaceID", "#group": "group", "#expiry": "expiry",
                },
                ExpressionAttributeValues={
                    ":delta": delta,
                    ":workspace": workspace_id,
                    ":group": group,
                    ":expiry": count.expiry(self.count_ttl_days),
                },
                ReturnValues="UPDATED_NEW",
            )
        except (BotoCoreError, ClientError) as e:
            raise _store_error(e, "increment count")
        count.count = int(response.get("Attributes", {}).get("count", delta))
        return count

    def get_issue(self, workspace_id: str, group: str) -> Optional[Issue]:
        try:
            response = self.issues_table.get_item(Key={"workspaceID": workspace_id, "group": group})
        except (BotoCoreError, ClientError) as e:
            raise _store_error(e, "get issue")
        item = response.get("Item")
        return Issue.from_item(item) if item else None

    def get_count(self, workspace_id: str, group: str, hour: datetime) -> int:
        try:
            response = self.counts_table.get_item(
                Key={"id": IssueCount.make_key(workspace_id, group), "hour": to_iso(hour_bucket(hour))}
            )
        except (BotoCoreError, ClientError) as e:
            raise _store_error(e, "get count")
        return int(response.get("Item", {}).get("count", 0))


class MemoryIssueStore:
    """
    Process-local issue store with the same merge rules as DynamoIssueStore.
    Used by the tests.
    """
    def __init__(self, clock: Callable[[], datetime] = _utcnow):
        self.clock = clock
        self.issues: Dict[Tuple[str, str], Issue] = {}
        self.counts: Dict[Tuple[str, str, datetime], int] = {}
        self._lock = threading.Lock()

    def upsert_issue(self, workspace_id: str, group: str, fields: IssueFields) -> Issue:
        with self._lock:
            existing = self.issues.get((workspace_id, group))
            if existing is None:
                issue = Issue.create(workspace_id, group, fields)
            else:
                issue = existing.merged(fields, self.clock())
            self.issues[(workspace_id, group)] = issue
            return issue

    def increment_count(self, workspace_id: str, group: str, hour: datetime, delta: int) -> IssueCount:
        key = (workspace_id, group, hour_bucket(hour))
        with self._lock:
            self.counts[key] = self.counts.get(key, 0) + delta
            return IssueCount(workspace_id=workspace_id, group=group, hour=key[2], count=self.counts[key])

    def get_issue(self, workspace_id: str, group: str) -> Optional[Issue]:
        return self.issues.get((workspace_id, group))

    def get_count(self, workspace_id: str, group: str, hour: datetime) -> int:
        return self.counts.get((workspace_id, group, hour_bucket(hour)), 0)
