import logging
from typing import List, Union

from authorization import AuthorizationGraph
from clock import MonotonicClock
from db import SessionLocal
from errors import InvalidType, NotAuthorized, NotFound
from models import RecordEntry, RecordType
from schemas import RecordOut

logger = logging.getLogger("ehr.ledger")


def parse_record_type(value: Union[RecordType, str]) -> RecordType:
    if isinstance(value, RecordType):
        return value
    try:
        return RecordType(value)
    except ValueError:
        raise InvalidType(f"record_type must be one of {', '.join(t.value for t in RecordType)}",
                          field="record_type")


class RecordLedger:
    """
    Append-only references to externally stored documents.

    The only mutation a stored entry admits is archiving (``active`` -> False).
    """

    def __init__(self, authorization: AuthorizationGraph, session_factory=SessionLocal, clock=None):
        self._authorization = authorization
        self._session_factory = session_factory
        self._clock = clock or MonotonicClock()

    def add_record(
        self,
        patient_address: str,
        uploader_address: str,
        content_hash: str,
        record_type: Union[RecordType, str],
        description: str = "",
    ) -> RecordOut:
        record_type = parse_record_type(record_type)
        # Checked fresh on every write, never cached
        if not self._authorization.is_authorized(patient_address, uploader_address):
            raise NotAuthorized(f"{uploader_address} may not add records for {patient_address}",
                                field="uploader_address")

        with self._session_factory() as db:
            rec = RecordEntry(
                patient_address=patient_address,
                uploader_address=uploader_address,
                record_type=record_type,
                description=description or "",
                content_hash=content_hash,
                created_at=self._clock.now(),
                active=True,
            )
            db.add(rec)
            db.commit()
            logger.info("record %s committed for %s by %s", rec.id, patient_address, uploader_address)
            return RecordOut.model_validate(rec)

    def get_records_for_patient(self, patient_address: str, include_archived: bool = False) -> List[RecordOut]:
        with self._session_factory() as db:
            q = db.query(RecordEntry).filter_by(patient_address=patient_address)
            if not include_archived:
                q = q.filter_by(active=True)
            recs = q.order_by(RecordEntry.created_at.desc(), RecordEntry.id.desc()).all()
            return [RecordOut.model_validate(r) for r in recs]

    def get_record(self, record_id: int) -> RecordOut:
        with self._session_factory() as db:
            rec = db.get(RecordEntry, record_id)
            if rec is None:
                raise NotFound(f"record {record_id} not found", field="record_id")
            return RecordOut.model_validate(rec)

    def exists(self, record_id: int) -> bool:
        with self._session_factory() as db:
            return db.get(RecordEntry, record_id) is not None

    def archive(self, record_id: int) -> RecordOut:
        with self._session_factory() as db:
            rec = db.get(RecordEntry, record_id)
            if rec is None:
                raise NotFound(f"record {record_id} not found", field="record_id")
            if rec.active:
                rec.active = False
                db.commit()
                logger.info("record %s archived", record_id)
            return RecordOut.model_validate(rec)
