# lambdas/ingest_issues/coordinator.py
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Sequence

from .decoder import DecodeResult, DecodeStatus, decode_record
from .deadline import DeadlineGuard
from .models import RawRecord


class RecordState(Enum):
    PENDING = "pending"
    DONE = "done"
    FAILED = "failed"
    UNATTEMPTED = "unattempted"


@dataclass
class BatchResult:
    """Terminal state of every record in one batch, in input order."""
    states: Dict[str, RecordState] = field(default_factory=dict)

    @property
    def incomplete(self) -> List[str]:
        """Records the transport should redeliver: only those never attempted."""
        return [rid for rid, state in self.states.items() if state is RecordState.UNATTEMPTED]

    def counts(self) -> Counter:
        return Counter(state.value for state in self.states.values())

    def to_response(self) -> dict:
        return {"batchItemFailures": [{"itemIdentifier": rid} for rid in self.incomplete]}


class BatchCoordinator:
    """
    Drives one batch through decode and extraction, strictly in order.

    Decode and extraction failures are logged and the record is still
    acknowledged: retrying content that failed once would fail forever. Only
    records left unattempted when the deadline trips are reported for
    redelivery.
    """
    def __init__(self, extractor, decoder: Callable[[RawRecord], DecodeResult] = decode_record):
        self.extractor = extractor
        self.decoder = decoder

    def process(self, records: Sequence[RawRecord], deadline: DeadlineGuard) -> BatchResult:
        result = BatchResult()
        # insertion ordered, O(1) removal; what is left at the end was never attempted
        pending: Dict[str, RawRecord] = {}
        for record in records:
            result.states[record.record_id] = RecordState.PENDING
            pending[record.record_id] = record

        for record in records:
            if deadline.expired:
                print(f" -> ⚠️ Deadline reached with {len(pending)} record(s) left unattempted.")
                break
            result.states[record.record_id] = self._process_record(record)
            pending.pop(record.record_id, None)

        for record_id in pending:
            result.states[record_id] = RecordState.UNATTEMPTED
        return result

    def _process_record(self, record: RawRecord) -> RecordState:
        decoded = self.decoder(record)
        if decoded.status is DecodeStatus.ERROR:
            print(f" -> ❌ Could not decode record {record.record_id}: {decoded.reason}")
            return RecordState.FAILED
        if decoded.status is DecodeStatus.SKIP:
            print(f" -> Skipping record {record.record_id} ({decoded.reason}).")
            return RecordState.DONE

        try:
            summary = self.extractor.extract(decoded.message)
        except Exception as e:
            # ExtractError in practice; anything else is logged the same way
            print(f" -> ❌ Could not extract issues from record {record.record_id}: {e}")
            return RecordState.FAILED

        print(f" -> Record {record.record_id}: {summary.errors_found}/{summary.events_seen} error event(s), "
              f"{summary.issues_upserted} issue(s) upserted.")
        return RecordState.DONE
