import logging
from datetime import timedelta
from typing import List, Optional, Union

from sqlalchemy.exc import SQLAlchemyError

from clock import MonotonicClock
from crypto import GENESIS_DIGEST, chain_digest
from db import SessionLocal
from errors import AuditAppendFailed, NotAuthorized, NotFound
from lanes import LaneLocks
from ledger import RecordLedger
from models import AccessAction, AccessLogEntry
from schemas import AccessLogOut

logger = logging.getLogger("ehr.audit")


def _digest_fields(record_id, seq, accessor_address, action, timestamp, context):
    return (record_id, seq, accessor_address, action.value, timestamp.isoformat(), context)


class AccessAuditLog:
    """
    Append-only, hash-chained access history per record.

    There is no update or delete path. Appends for one record are serialized so
    ``seq`` stays gap-free and each ``prev_digest`` names the row before it.
    """

    def __init__(self, ledger: RecordLedger, session_factory=SessionLocal, clock=None):
        self._ledger = ledger
        self._session_factory = session_factory
        self._clock = clock or MonotonicClock()
        self._record_lanes = LaneLocks()

    def append(
        self,
        record_id: int,
        accessor_address: str,
        action: Union[AccessAction, str],
        context: Optional[str] = None,
    ) -> AccessLogOut:
        action = AccessAction(action)
        with self._record_lanes.lane(record_id):
            try:
                if not self._ledger.exists(record_id):
                    raise NotFound(f"record {record_id} not found", field="record_id")
                with self._session_factory() as db:
                    last = (
                        db.query(AccessLogEntry)
                        .filter_by(record_id=record_id)
                        .order_by(AccessLogEntry.seq.desc())
                        .first()
                    )
                    seq = last.seq + 1 if last else 1
                    prev = last.digest if last else GENESIS_DIGEST
                    ts = self._clock.now()
                    if last is not None and ts <= last.timestamp:
                        # Another process wrote with a later clock; keep per-record order
                        ts = last.timestamp + timedelta(microseconds=1)
                    entry = AccessLogEntry(
                        record_id=record_id,
                        seq=seq,
                        accessor_address=accessor_address,
                        action=action,
                        timestamp=ts,
                        context=context,
                        prev_digest=prev,
                        digest=chain_digest(prev, _digest_fields(record_id, seq, accessor_address,
                                                                 action, ts, context)),
                    )
                    db.add(entry)
                    db.commit()
                    return AccessLogOut.model_validate(entry)
            except SQLAlchemyError as exc:
                logger.warning("audit append for record %s failed: %s", record_id, exc)
                raise AuditAppendFailed(f"could not append {action.value} for record {record_id}") from exc

    def _entries(self, record_id: int) -> List[AccessLogOut]:
        with self._session_factory() as db:
            rows = (
                db.query(AccessLogEntry)
                .filter_by(record_id=record_id)
                .order_by(AccessLogEntry.timestamp.asc(), AccessLogEntry.seq.asc())
                .all()
            )
            return [AccessLogOut.model_validate(r) for r in rows]

    def get_logs_for_record(self, record_id: int, requester_address: str) -> List[AccessLogOut]:
        # Owner only; providers cannot read who else looked at a record
        rec = self._ledger.get_record(record_id)
        if rec.patient_address != requester_address:
            raise NotAuthorized(f"{requester_address} may not read access logs of record {record_id}",
                                field="requester_address")
        return self._entries(record_id)

    def count(self, record_id: int) -> int:
        with self._session_factory() as db:
            return db.query(AccessLogEntry).filter_by(record_id=record_id).count()

    def verify_chain(self, record_id: int) -> bool:
        prev = GENESIS_DIGEST
        for expected_seq, e in enumerate(self._entries(record_id), start=1):
            if e.seq != expected_seq or e.prev_digest != prev:
                return False
            digest = chain_digest(prev, _digest_fields(e.record_id, e.seq, e.accessor_address,
                                                       e.action, e.timestamp, e.context))
            if digest != e.digest:
                return False
            prev = e.digest
        return True
