"""
Single entry surface over the registry, authorization graph, record ledger and audit log.

Every read or write of a record is preceded by an authorization check and
followed by an audit append. Mutations for one patient run inside that
patient's lane; the lane is held from the authorization check through the
ledger commit and released before the audit append, so a slow audit store
never blocks the patient's next write.

An audit append that keeps failing after ``audit_attempts`` tries does not undo
the ledger write. The entry is queued (see ``flush_pending_audits``) and the
call returns its records with ``audit_pending=True``, unless ``strict_audit``
is set, in which case ``AuditAppendFailed`` is raised with the committed
record attached.
"""
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import List, Optional, Union

import config
from audit import AccessAuditLog
from authorization import AuthorizationGraph
from blobstore import BlobStore, SqlBlobStore
from clock import MonotonicClock
from db import SessionLocal
from errors import AuditAppendFailed, NotAPatient, NotAuthorized, NotFound, NotRegistered
from lanes import LaneLocks
from ledger import RecordLedger, parse_record_type
from models import AccessAction, RecordType, Role
from registry import IdentityRegistry
from schemas import AccessLogOut, ActorOut, DocumentOut, GrantOut, RecordOut

logger = logging.getLogger("ehr.facade")


@dataclass(frozen=True)
class PendingAudit:
    record_id: int
    accessor_address: str
    action: AccessAction
    context: Optional[str]


class AccessFacade:
    def __init__(
        self,
        session_factory=SessionLocal,
        *,
        clock=None,
        blob_store: Optional[BlobStore] = None,
        audit_attempts: int = config.AUDIT_APPEND_ATTEMPTS,
        retry_backoff: float = config.AUDIT_RETRY_BACKOFF_SEC,
        strict_audit: bool = config.STRICT_AUDIT,
        sleep=time.sleep,
    ):
        clock = clock or MonotonicClock()
        self.registry = IdentityRegistry(session_factory, clock=clock)
        self.authorization = AuthorizationGraph(self.registry, session_factory, clock=clock)
        self.ledger = RecordLedger(self.authorization, session_factory, clock=clock)
        self.audit = AccessAuditLog(self.ledger, session_factory, clock=clock)
        self.blob_store = blob_store or SqlBlobStore(session_factory)

        self._lanes = LaneLocks()
        self._audit_attempts = max(1, audit_attempts)
        self._retry_backoff = retry_backoff
        self._strict_audit = strict_audit
        self._sleep = sleep
        self._pending = deque()
        self._pending_lock = threading.Lock()
        self._flush_lock = threading.Lock()

    # -------- Identity --------
    def register(self, address: str, name: str, role: Union[Role, str], password: Optional[str] = None) -> ActorOut:
        return self.registry.register(address, name, role, password=password)

    def authenticate(self, address: str, password: str) -> ActorOut:
        return self.registry.authenticate(address, password)

    def lookup(self, address: str) -> ActorOut:
        return self.registry.lookup(address)

    # -------- Grants --------
    def grant(self, patient_address: str, provider_address: str) -> GrantOut:
        with self._lanes.lane(patient_address):
            return self.authorization.grant(patient_address, provider_address)

    def revoke(self, patient_address: str, provider_address: str) -> None:
        with self._lanes.lane(patient_address):
            self.authorization.revoke(patient_address, provider_address)

    def is_authorized(self, patient_address: str, provider_address: str) -> bool:
        return self.authorization.is_authorized(patient_address, provider_address)

    def list_authorized_providers(self, patient_address: str, requester_address: str) -> List[GrantOut]:
        if requester_address != patient_address:
            raise NotAuthorized("only the patient may list their providers", field="requester_address")
        return self.authorization.list_providers(patient_address)

    # -------- Records --------
    def _require_patient(self, patient_address: str):
        try:
            actor = self.registry.lookup(patient_address)
        except NotFound:
            raise NotRegistered(f"{patient_address} is not registered", field="patient_address")
        if actor.role is not Role.PATIENT:
            raise NotAPatient(f"{patient_address} is not a patient", field="patient_address")

    def _require_access(self, patient_address: str, requester_address: str, field: str):
        if not self.authorization.is_authorized(patient_address, requester_address):
            logger.warning("denied %s access to records of %s", requester_address, patient_address)
            raise NotAuthorized(f"{requester_address} is not authorized for {patient_address}", field=field)

    def submit_record(
        self,
        patient_address: str,
        uploader_address: str,
        content_hash: str,
        record_type: Union[RecordType, str],
        description: str = "",
        context: Optional[str] = None,
    ) -> RecordOut:
        record_type = parse_record_type(record_type)
        self._require_patient(patient_address)
        with self._lanes.lane(patient_address):
            self._require_access(patient_address, uploader_address, "uploader_address")
            record = self.ledger.add_record(patient_address, uploader_address, content_hash,
                                            record_type, description)
        return self._audited(record, uploader_address, AccessAction.CREATE, context)

    def submit_document(
        self,
        patient_address: str,
        uploader_address: str,
        data: bytes,
        record_type: Union[RecordType, str],
        description: str = "",
        context: Optional[str] = None,
    ) -> RecordOut:
        record_type = parse_record_type(record_type)
        self._require_patient(patient_address)
        # Fail before storing bytes nobody may attach; submit_record re-checks inside the lane
        self._require_access(patient_address, uploader_address, "uploader_address")
        content_hash = self.blob_store.put(data)
        return self.submit_record(patient_address, uploader_address, content_hash, record_type,
                                  description, context)

    def fetch_patient_records(
        self,
        patient_address: str,
        requester_address: str,
        context: Optional[str] = None,
    ) -> List[RecordOut]:
        self._require_access(patient_address, requester_address, "requester_address")
        records = self.ledger.get_records_for_patient(patient_address)
        return [self._audited(r, requester_address, AccessAction.VIEW, context) for r in records]

    def _record_for(self, record_id: int, requester_address: str, owner_only: bool = False) -> RecordOut:
        # Unknown and forbidden ids raise the same error
        try:
            record = self.ledger.get_record(record_id)
        except NotFound:
            record = None
        if record is not None:
            if owner_only:
                allowed = record.patient_address == requester_address
            else:
                allowed = self.authorization.is_authorized(record.patient_address, requester_address)
            if allowed:
                return record
        logger.warning("denied %s access to record %s", requester_address, record_id)
        raise NotAuthorized(f"{requester_address} may not access record {record_id}", field="requester_address")

    def fetch_record(self, record_id: int, requester_address: str, context: Optional[str] = None) -> RecordOut:
        record = self._record_for(record_id, requester_address)
        return self._audited(record, requester_address, AccessAction.VIEW, context)

    def read_document(self, record_id: int, requester_address: str, context: Optional[str] = None) -> DocumentOut:
        record = self._record_for(record_id, requester_address)
        data = self.blob_store.get(record.content_hash)
        record = self._audited(record, requester_address, AccessAction.VIEW, context)
        return DocumentOut(record=record, data=data)

    def archive_record(self, record_id: int, requester_address: str, context: Optional[str] = None) -> RecordOut:
        record = self._record_for(record_id, requester_address, owner_only=True)
        with self._lanes.lane(record.patient_address):
            record = self.ledger.archive(record_id)
        return self._audited(record, requester_address, AccessAction.ARCHIVE, context)

    # -------- Audit --------
    def fetch_access_logs(self, record_id: int, requester_address: str) -> List[AccessLogOut]:
        # Reading the log is not itself logged
        self._record_for(record_id, requester_address, owner_only=True)
        return self.audit.get_logs_for_record(record_id, requester_address)

    def verify_access_logs(self, record_id: int, requester_address: str) -> bool:
        self._record_for(record_id, requester_address, owner_only=True)
        return self.audit.verify_chain(record_id)

    def _audited(self, record: RecordOut, accessor_address: str, action: AccessAction,
                 context: Optional[str]) -> RecordOut:
        if self._append_audit(record, accessor_address, action, context) is None:
            return record.model_copy(update={"audit_pending": True})
        return record

    def _append_audit(self, record: RecordOut, accessor_address: str, action: AccessAction,
                      context: Optional[str]) -> Optional[AccessLogOut]:
        """Returns the appended entry, or None when the entry was queued instead."""
        last_error = None
        for attempt in range(1, self._audit_attempts + 1):
            try:
                return self.audit.append(record.id, accessor_address, action, context)
            except AuditAppendFailed as exc:
                last_error = exc
                logger.warning("audit %s for record %s failed (attempt %d/%d)",
                               action.value, record.id, attempt, self._audit_attempts)
                if attempt < self._audit_attempts and self._retry_backoff:
                    self._sleep(self._retry_backoff * attempt)

        with self._pending_lock:
            self._pending.append(PendingAudit(record.id, accessor_address, action, context))
        logger.error("audit %s for record %s queued after %d attempts",
                     action.value, record.id, self._audit_attempts)
        if self._strict_audit:
            raise AuditAppendFailed(
                f"record {record.id} is stored but its {action.value} audit entry is pending",
                record=record.model_copy(update={"audit_pending": True}),
            ) from last_error
        return None

    def pending_audit_count(self) -> int:
        with self._pending_lock:
            return len(self._pending)

    def flush_pending_audits(self) -> int:
        """Re-append queued entries oldest first; stops at the first one that still fails."""
        flushed = 0
        # One flusher at a time keeps replay order; enqueuers only ever wait on _pending_lock
        with self._flush_lock:
            while True:
                with self._pending_lock:
                    if not self._pending:
                        break
                    item = self._pending.popleft()
                try:
                    self.audit.append(item.record_id, item.accessor_address, item.action, item.context)
                except AuditAppendFailed:
                    with self._pending_lock:
                        self._pending.appendleft(item)
                        remaining = len(self._pending)
                    logger.warning("flush stopped with %d audit entries pending", remaining)
                    break
                flushed += 1
        if flushed:
            logger.info("flushed %d pending audit entries", flushed)
        return flushed
