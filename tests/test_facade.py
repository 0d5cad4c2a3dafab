"""
End-to-end behaviour of AccessFacade: the grant/submit/revoke scenarios
plus the audit completeness rules.
"""

import pytest
from sqlalchemy.exc import OperationalError

from audit import AccessAuditLog
from errors import (
    AlreadyRegistered, AuditAppendFailed, InvalidType, NotAPatient, NotAuthorized, NotRegistered,
)
from facade import AccessFacade
from models import AccessAction, AccessLogEntry, Blob, RecordEntry, RecordType, Role


def audit_rows(session_factory):
    with session_factory() as db:
        return db.query(AccessLogEntry).count()


def record_rows(session_factory):
    with session_factory() as db:
        return db.query(RecordEntry).count()


class TestScenarios:
    def test_grant_submit_and_read_logs(self, p1_d1):
        """Scenario A."""
        p1_d1.grant("p1", "d1")
        rec = p1_d1.submit_record("p1", "d1", "hash123", "PRESCRIPTION", "checkup")
        assert rec.id == 1
        logs = p1_d1.fetch_access_logs(1, "p1")
        assert len(logs) == 1
        assert logs[0].action is AccessAction.CREATE
        assert logs[0].accessor_address == "d1"

    def test_revoke_blocks_submission(self, granted):
        """Scenario B."""
        granted.revoke("p1", "d1")
        with pytest.raises(NotAuthorized):
            granted.submit_record("p1", "d1", "hash123", RecordType.PRESCRIPTION, "checkup")

    def test_double_registration(self, facade):
        """Scenario C."""
        facade.register("p1", "John Doe", "PATIENT")
        with pytest.raises(AlreadyRegistered):
            facade.register("p1", "John Doe", "PATIENT")

    def test_doctor_cannot_grant(self, p1_d1):
        """Scenario D."""
        with pytest.raises(NotAPatient):
            p1_d1.grant("d1", "p1")

    def test_fetch_logs_view(self, granted):
        """Scenario E."""
        rec = granted.submit_record("p1", "d1", "hash123", RecordType.PRESCRIPTION, "checkup")
        records = granted.fetch_patient_records("p1", "d1")
        assert [r.id for r in records] == [rec.id]
        logs = granted.fetch_access_logs(rec.id, "p1")
        assert [(e.action, e.accessor_address) for e in logs] == [
            (AccessAction.CREATE, "d1"),
            (AccessAction.VIEW, "d1"),
        ]


class TestWriteGating:
    def test_unauthorized_submit_leaves_no_trace(self, p1_d1, session_factory):
        with pytest.raises(NotAuthorized) as exc:
            p1_d1.submit_record("p1", "d1", "h", RecordType.LAB_RESULT)
        assert exc.value.field == "uploader_address"
        assert record_rows(session_factory) == 0
        assert audit_rows(session_factory) == 0

    def test_patient_submits_own_record(self, p1_d1):
        rec = p1_d1.submit_record("p1", "p1", "h", RecordType.MEDICAL_HISTORY, "self-reported")
        assert rec.uploader_address == "p1"

    def test_invalid_type_leaves_no_trace(self, granted, session_factory):
        with pytest.raises(InvalidType):
            granted.submit_record("p1", "d1", "h", "SELFIE")
        assert record_rows(session_factory) == 0

    def test_submit_for_non_patient(self, granted):
        with pytest.raises(NotAPatient):
            granted.submit_record("d1", "d1", "h", RecordType.LAB_RESULT)
        with pytest.raises(NotRegistered):
            granted.submit_record("ghost", "ghost", "h", RecordType.LAB_RESULT)

    def test_create_view_revoke_create(self, granted):
        rec = granted.submit_record("p1", "d1", "a", RecordType.LAB_RESULT)
        granted.fetch_patient_records("p1", "d1")
        granted.revoke("p1", "d1")
        with pytest.raises(NotAuthorized):
            granted.submit_record("p1", "d1", "b", RecordType.LAB_RESULT)
        with pytest.raises(NotAuthorized):
            granted.fetch_patient_records("p1", "d1")
        assert [r.id for r in granted.fetch_patient_records("p1", "p1")] == [rec.id]


class TestReads:
    def test_one_view_per_record(self, granted):
        ids = [granted.submit_record("p1", "d1", h, RecordType.DIAGNOSIS).id for h in ("a", "b", "c")]
        records = granted.fetch_patient_records("p1", "d1", context="10.1.1.1")
        assert [r.id for r in records] == list(reversed(ids))
        for record_id in ids:
            views = [e for e in granted.fetch_access_logs(record_id, "p1") if e.action is AccessAction.VIEW]
            assert len(views) == 1
            assert views[0].context == "10.1.1.1"

    def test_stranger_cannot_read(self, granted, session_factory):
        granted.register("d2", "Dr. Who", Role.DOCTOR)
        granted.submit_record("p1", "d1", "a", RecordType.DIAGNOSIS)
        before = audit_rows(session_factory)
        with pytest.raises(NotAuthorized):
            granted.fetch_patient_records("p1", "d2")
        with pytest.raises(NotAuthorized):
            granted.fetch_record(1, "d2")
        assert audit_rows(session_factory) == before

    def test_unknown_and_forbidden_ids_look_alike(self, granted):
        granted.register("d2", "Dr. Who", Role.DOCTOR)
        rec = granted.submit_record("p1", "d1", "a", RecordType.DIAGNOSIS)
        for read in (granted.fetch_record, granted.read_document, granted.archive_record,
                     granted.fetch_access_logs, granted.verify_access_logs):
            with pytest.raises(NotAuthorized) as forbidden:
                read(rec.id, "d2")
            with pytest.raises(NotAuthorized) as unknown:
                read(rec.id + 100, "d2")
            assert forbidden.value.kind == unknown.value.kind
            assert forbidden.value.field == unknown.value.field == "requester_address"
            assert forbidden.value.message.replace(f"record {rec.id}", "record N") == \
                unknown.value.message.replace(f"record {rec.id + 100}", "record N")

    def test_fetch_access_logs_is_not_logged(self, granted):
        rec = granted.submit_record("p1", "d1", "a", RecordType.DIAGNOSIS)
        for _ in range(3):
            assert len(granted.fetch_access_logs(rec.id, "p1")) == 1

    def test_provider_cannot_read_logs(self, granted):
        rec = granted.submit_record("p1", "d1", "a", RecordType.DIAGNOSIS)
        with pytest.raises(NotAuthorized):
            granted.fetch_access_logs(rec.id, "d1")

    def test_fetch_single_record_logs_view(self, granted):
        rec = granted.submit_record("p1", "d1", "a", RecordType.DIAGNOSIS)
        assert granted.fetch_record(rec.id, "p1") == rec
        assert [e.action for e in granted.fetch_access_logs(rec.id, "p1")] == [
            AccessAction.CREATE, AccessAction.VIEW,
        ]


class TestArchive:
    def test_owner_archives(self, granted):
        rec = granted.submit_record("p1", "d1", "a", RecordType.VACCINATION)
        archived = granted.archive_record(rec.id, "p1")
        assert archived.active is False
        assert granted.fetch_patient_records("p1", "p1") == []
        assert granted.fetch_access_logs(rec.id, "p1")[-1].action is AccessAction.ARCHIVE

    def test_provider_cannot_archive(self, granted):
        rec = granted.submit_record("p1", "d1", "a", RecordType.VACCINATION)
        with pytest.raises(NotAuthorized):
            granted.archive_record(rec.id, "d1")


class TestProviders:
    def test_list_authorized_providers(self, granted):
        granted.register("c1", "Corner Clinic", Role.CLINIC)
        granted.grant("p1", "c1")
        granted.grant("p1", "c1")
        assert [g.provider_address for g in granted.list_authorized_providers("p1", "p1")] == ["d1", "c1"]

    def test_only_patient_lists(self, granted):
        with pytest.raises(NotAuthorized):
            granted.list_authorized_providers("p1", "d1")


class TestDocuments:
    def test_submit_and_read_document(self, granted):
        rec = granted.submit_document("p1", "d1", b"%PDF-1.4 lab panel", RecordType.LAB_RESULT, "panel")
        assert len(rec.content_hash) == 64
        doc = granted.read_document(rec.id, "p1")
        assert doc.data == b"%PDF-1.4 lab panel"
        assert doc.record.id == rec.id
        assert doc.record.audit_pending is False
        assert [e.action for e in granted.fetch_access_logs(rec.id, "p1")] == [
            AccessAction.CREATE, AccessAction.VIEW,
        ]

    def test_unauthorized_upload_stores_nothing(self, p1_d1, session_factory):
        with pytest.raises(NotAuthorized):
            p1_d1.submit_document("p1", "d1", b"data", RecordType.LAB_RESULT)
        with session_factory() as db:
            assert db.query(Blob).count() == 0


class TestAuditFailures:
    @pytest.fixture
    def flaky(self, granted, monkeypatch):
        """Audit store that fails the next ``failures`` appends."""
        state = {"failures": 0, "calls": 0}
        real_append = granted.audit.append

        def append(*args, **kwargs):
            state["calls"] += 1
            if state["failures"] > 0:
                state["failures"] -= 1
                raise AuditAppendFailed("audit store unavailable")
            return real_append(*args, **kwargs)

        monkeypatch.setattr(granted.audit, "append", append)
        return granted, state

    def test_transient_failure_is_retried(self, flaky):
        facade, state = flaky
        state["failures"] = 2
        rec = facade.submit_record("p1", "d1", "a", RecordType.LAB_RESULT)
        assert state["calls"] == 3
        assert rec.audit_pending is False
        assert facade.pending_audit_count() == 0
        assert len(facade.fetch_access_logs(rec.id, "p1")) == 1

    def test_exhausted_retry_keeps_record(self, flaky, session_factory):
        facade, state = flaky
        state["failures"] = 3
        rec = facade.submit_record("p1", "d1", "a", RecordType.LAB_RESULT)
        assert rec.audit_pending is True
        stored = facade.ledger.get_record(rec.id)
        assert stored.content_hash == rec.content_hash
        assert stored.audit_pending is False
        assert facade.fetch_access_logs(rec.id, "p1") == []
        assert facade.pending_audit_count() == 1

        assert facade.flush_pending_audits() == 1
        logs = facade.fetch_access_logs(rec.id, "p1")
        assert [(e.action, e.accessor_address) for e in logs] == [(AccessAction.CREATE, "d1")]
        assert facade.pending_audit_count() == 0

    def test_flush_stops_on_failure(self, flaky):
        facade, state = flaky
        state["failures"] = 3
        facade.submit_record("p1", "d1", "a", RecordType.LAB_RESULT)
        state["failures"] = 1
        assert facade.flush_pending_audits() == 0
        assert facade.pending_audit_count() == 1
        assert facade.flush_pending_audits() == 1

    def test_degraded_reads_are_flagged(self, flaky):
        facade, state = flaky
        ids = [facade.submit_record("p1", "d1", h, RecordType.DIAGNOSIS).id for h in ("a", "b")]
        state["failures"] = 3
        records = facade.fetch_patient_records("p1", "d1")
        assert [(r.id, r.audit_pending) for r in records] == [(ids[1], True), (ids[0], False)]
        assert facade.pending_audit_count() == 1

    def test_store_fault_degrades_submission(self, granted, session_factory):
        def broken_commit_factory():
            db = session_factory()

            def commit():
                raise OperationalError("INSERT INTO access_logs", {}, Exception("database is locked"))

            db.commit = commit
            return db

        granted.audit = AccessAuditLog(granted.ledger, broken_commit_factory)
        rec = granted.submit_record("p1", "d1", "a", RecordType.LAB_RESULT)
        assert rec.audit_pending is True
        assert record_rows(session_factory) == 1
        assert audit_rows(session_factory) == 0
        assert granted.pending_audit_count() == 1

    def test_failed_flush_keeps_queue_order(self, flaky):
        facade, state = flaky
        state["failures"] = 6
        first = facade.submit_record("p1", "d1", "a", RecordType.LAB_RESULT)
        second = facade.submit_record("p1", "d1", "b", RecordType.LAB_RESULT)
        state["failures"] = 1
        assert facade.flush_pending_audits() == 0
        assert [p.record_id for p in facade._pending] == [first.id, second.id]
        assert facade.flush_pending_audits() == 2

    def test_flush_does_not_hold_queue_lock_while_appending(self, flaky):
        facade, state = flaky
        state["failures"] = 3
        facade.submit_record("p1", "d1", "a", RecordType.LAB_RESULT)
        queued_append = facade.audit.append
        queue_free = []

        def append(*args, **kwargs):
            free = facade._pending_lock.acquire(blocking=False)
            if free:
                facade._pending_lock.release()
            queue_free.append(free)
            return queued_append(*args, **kwargs)

        facade.audit.append = append
        assert facade.flush_pending_audits() == 1
        assert queue_free == [True]

    def test_strict_mode_raises_with_record(self, session_factory):
        facade = AccessFacade(session_factory, retry_backoff=0, strict_audit=True, audit_attempts=2)
        facade.register("p1", "John Doe", Role.PATIENT)

        def broken(*args, **kwargs):
            raise AuditAppendFailed("audit store unavailable")

        facade.audit.append = broken
        with pytest.raises(AuditAppendFailed) as exc:
            facade.submit_record("p1", "p1", "a", RecordType.LAB_RESULT)
        assert exc.value.retryable is True
        assert exc.value.record is not None
        assert exc.value.record.audit_pending is True
        assert facade.ledger.get_record(exc.value.record.id).content_hash == "a"
        assert facade.pending_audit_count() == 1

    def test_backoff_between_attempts(self, session_factory):
        sleeps = []
        facade = AccessFacade(session_factory, retry_backoff=0.5, audit_attempts=3, sleep=sleeps.append)
        facade.register("p1", "John Doe", Role.PATIENT)

        def broken(*args, **kwargs):
            raise AuditAppendFailed("audit store unavailable")

        facade.audit.append = broken
        facade.submit_record("p1", "p1", "a", RecordType.LAB_RESULT)
        assert sleeps == [0.5, 1.0]


def test_verify_access_logs(granted):
    rec = granted.submit_record("p1", "d1", "a", RecordType.LAB_RESULT)
    granted.fetch_patient_records("p1", "d1")
    assert granted.verify_access_logs(rec.id, "p1") is True
    with pytest.raises(NotAuthorized):
        granted.verify_access_logs(rec.id, "d1")
