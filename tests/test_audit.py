"""
Governance Core - Audit Log Test Suite

Covers:
- Audit record writes, tags and queries
- Security incidents and severity counts
- Agent-action approval state machine
- Append-only enforcement and tamper detection
- Storage failures and timeouts

Run with: pytest tests/test_audit.py -v
"""

import sqlite3
import threading
from datetime import datetime, timedelta, timezone

import pytest

from governance_core import metrics
from governance_core.audit import (
    ApprovalState, AuditEvent, AuditResult, IncidentCategory, SecurityIncident, Severity,
)
from governance_core.config import ComplianceConfig
from governance_core.exceptions import (
    IntegrityError, InvalidTransitionError, NotFoundError, StorageConnectionError, StorageError,
    StorageTimeoutError, ValidationError,
)


def _event(principal="alice", action="LOGIN", resource="session", **kwargs):
    return AuditEvent(principal_id=principal, action=action, resource=resource, **kwargs)


def _incident(severity=Severity.HIGH, category=IncidentCategory.AUTHORIZATION, principal="mallory"):
    return SecurityIncident(category=category, severity=severity,
                            description="test incident", principal_id=principal)


# ══════════════════════════════════════════════════════════════════════════════
# AUDIT RECORDS
# ══════════════════════════════════════════════════════════════════════════════

class TestAuditRecords:

    def test_record_and_query(self, audit_log):
        record_id = audit_log.record_audit(_event(metadata={"ip": "10.0.0.1"}))
        assert record_id.startswith("aud_")

        records = audit_log.query_audit()
        assert len(records) == 1
        record = records[0]
        assert record.id == record_id
        assert record.result is AuditResult.SUCCESS
        assert record.metadata == {"ip": "10.0.0.1"}
        assert audit_log.verify_record(record)

    def test_query_newest_first_and_filtered(self, audit_log):
        base = datetime(2026, 1, 1, tzinfo=timezone.utc)
        for i in range(5):
            audit_log.record_audit(_event(principal="alice" if i % 2 == 0 else "bob",
                                          action=f"A{i}", timestamp=base + timedelta(hours=i)))

        actions = [r.action for r in audit_log.query_audit()]
        assert actions == ["A4", "A3", "A2", "A1", "A0"]

        alice = audit_log.query_audit(principal_id="alice")
        assert [r.action for r in alice] == ["A4", "A2", "A0"]

        window = audit_log.query_audit(start=base + timedelta(hours=1),
                                       end=base + timedelta(hours=3))
        assert [r.action for r in window] == ["A3", "A2", "A1"]

    def test_query_limit_is_capped(self, audit_log):
        for i in range(5):
            audit_log.record_audit(_event(action=f"A{i}"))
        assert len(audit_log.query_audit(limit=2)) == 2

        audit_log.config = ComplianceConfig(
            audit_query_limit=3, incident_query_limit=500,
            evidence_window_days=30, frameworks=[],
        )
        assert len(audit_log.query_audit(limit=100)) == 3

    def test_naive_timestamps_treated_as_utc(self, audit_log):
        audit_log.record_audit(_event(timestamp=datetime(2026, 3, 1, 12, 0)))
        record = audit_log.query_audit()[0]
        assert record.timestamp == datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
        assert audit_log.verify_record(record)

    def test_non_json_metadata_normalized(self, audit_log):
        when = datetime(2026, 1, 1, tzinfo=timezone.utc)
        audit_log.record_audit(_event(metadata={"when": when, "ids": (1, 2)}))
        record = audit_log.query_audit()[0]
        assert record.metadata == {"when": str(when), "ids": [1, 2]}
        assert audit_log.verify_record(record)

    def test_failure_results_recorded(self, audit_log):
        audit_log.record_audit(_event(result=AuditResult.FAILURE))
        assert audit_log.query_audit()[0].result is AuditResult.FAILURE


# ══════════════════════════════════════════════════════════════════════════════
# SECURITY INCIDENTS
# ══════════════════════════════════════════════════════════════════════════════

class TestSecurityIncidents:

    def test_record_and_filter(self, audit_log):
        audit_log.record_security_incident(_incident(Severity.HIGH))
        audit_log.record_security_incident(_incident(Severity.MEDIUM))
        audit_log.record_security_incident(_incident(Severity.HIGH, IncidentCategory.VIOLATION))

        assert len(audit_log.query_security_incidents()) == 3
        high = audit_log.query_security_incidents(severity=Severity.HIGH)
        assert len(high) == 2
        assert all(i.id.startswith("inc_") for i in high)
        assert len(audit_log.query_security_incidents(severity="high",
                                                      category="violation")) == 1

    def test_unknown_severity_rejected(self, audit_log):
        with pytest.raises(ValidationError):
            audit_log.query_security_incidents(severity="catastrophic")

    def test_severity_counts(self, audit_log):
        for severity in (Severity.CRITICAL, Severity.HIGH, Severity.HIGH, Severity.LOW):
            audit_log.record_security_incident(_incident(severity))
        counts = audit_log.incident_severity_counts()
        assert counts[Severity.CRITICAL] == 1
        assert counts[Severity.HIGH] == 2
        assert counts[Severity.MEDIUM] == 0
        assert counts[Severity.LOW] == 1

    def test_incident_metric_increments(self, audit_log):
        labels = {"category": "DATA_ACCESS", "severity": "LOW"}
        name = "governance_security_incidents_total"
        before = metrics.REGISTRY.get_sample_value(name, labels) or 0.0
        audit_log.record_security_incident(_incident(Severity.LOW, IncidentCategory.DATA_ACCESS))
        assert metrics.REGISTRY.get_sample_value(name, labels) == before + 1
        assert name.encode() in metrics.export_metrics()


# ══════════════════════════════════════════════════════════════════════════════
# AGENT ACTIONS
# ══════════════════════════════════════════════════════════════════════════════

class TestAgentActions:

    def test_record_pending(self, audit_log):
        action_id = audit_log.record_agent_action("bot-1", "deploy", {"env": "prod"})
        pending = audit_log.query_pending_agent_actions()
        assert [a.id for a in pending] == [action_id]
        action = pending[0]
        assert action.state is ApprovalState.PENDING
        assert action.approver_id is None
        assert action.metadata == {"env": "prod"}
        assert audit_log.verify_agent_action(action)

    def test_approve_transitions_once(self, audit_log):
        action_id = audit_log.record_agent_action("bot-1", "deploy")
        assert audit_log.approve_agent_action(action_id, "execAlice") is True

        action = audit_log.get_agent_action(action_id)
        assert action.state is ApprovalState.APPROVED
        assert action.approver_id == "execAlice"
        assert action.decided_at is not None
        assert action.version == 1
        assert audit_log.verify_agent_action(action)
        assert audit_log.query_pending_agent_actions() == []

        with pytest.raises(InvalidTransitionError):
            audit_log.approve_agent_action(action_id, "execBob")
        with pytest.raises(InvalidTransitionError):
            audit_log.reject_agent_action(action_id, "execBob", "too late")
        assert audit_log.get_agent_action(action_id).approver_id == "execAlice"

    def test_reject_records_reason(self, audit_log):
        action_id = audit_log.record_agent_action("bot-1", "wipe")
        audit_log.reject_agent_action(action_id, "execAlice", "destructive")
        action = audit_log.get_agent_action(action_id)
        assert action.state is ApprovalState.REJECTED
        assert action.decision_reason == "destructive"

    def test_unknown_action(self, audit_log):
        with pytest.raises(NotFoundError):
            audit_log.approve_agent_action("act_missing", "execAlice")
        with pytest.raises(NotFoundError):
            audit_log.get_agent_action("act_missing")

    def test_concurrent_decisions_single_winner(self, audit_log):
        action_id = audit_log.record_agent_action("bot-1", "deploy")
        outcomes = []
        lock = threading.Lock()

        def decide(approver):
            try:
                audit_log.approve_agent_action(action_id, approver)
                result = "ok"
            except (InvalidTransitionError, StorageError):
                result = "lost"
            with lock:
                outcomes.append(result)

        threads = [threading.Thread(target=decide, args=(f"exec{i}",)) for i in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count("ok") == 1
        assert audit_log.get_agent_action(action_id).version == 1


# ══════════════════════════════════════════════════════════════════════════════
# APPEND-ONLY & TAMPER DETECTION
# ══════════════════════════════════════════════════════════════════════════════

class TestAppendOnly:

    def test_audit_rows_cannot_change(self, audit_log, db):
        record_id = audit_log.record_audit(_event())
        with pytest.raises(StorageError):
            db.execute("UPDATE audit_events SET action = 'X' WHERE id = ?", (record_id,))
        with pytest.raises(StorageError):
            db.execute("DELETE FROM audit_events WHERE id = ?", (record_id,))
        assert db.fetch_count("audit_events") == 1

    def test_security_rows_cannot_change(self, audit_log, db):
        audit_log.record_security_incident(_incident())
        with pytest.raises(StorageError):
            db.execute("DELETE FROM security_events")
        with pytest.raises(StorageError):
            db.execute("UPDATE security_events SET severity = 'LOW'")

    def test_decided_actions_immutable(self, audit_log, db):
        action_id = audit_log.record_agent_action("bot-1", "deploy")
        audit_log.approve_agent_action(action_id, "execAlice")
        with pytest.raises(StorageError):
            db.execute("UPDATE agent_actions SET approval_state = 'pending' WHERE id = ?",
                       (action_id,))
        with pytest.raises(StorageError):
            db.execute("DELETE FROM agent_actions WHERE id = ?", (action_id,))

    def test_tampering_detected(self, audit_log, database_config):
        good = audit_log.record_audit(_event(action="GOOD"))
        bad = audit_log.record_audit(_event(action="BAD"))
        assert audit_log.verify_integrity().ok

        # Bypass the triggers the way an attacker with file access could
        conn = sqlite3.connect(database_config.db_path)
        conn.execute("DROP TRIGGER audit_events_no_update")
        conn.execute("UPDATE audit_events SET resource = 'forged' WHERE id = ?", (bad,))
        conn.commit()
        conn.close()

        report = audit_log.verify_integrity()
        assert not report.ok
        assert report.failed_ids == [bad]
        assert good not in report.failed_ids
        assert report.checked == 2

    def test_tampered_pending_action_cannot_be_decided(self, audit_log, database_config):
        action_id = audit_log.record_agent_action("bot-1", "summarize")

        # Pending rows are not trigger-protected, so a raw edit goes through
        conn = sqlite3.connect(database_config.db_path)
        conn.execute("UPDATE agent_actions SET action = 'wire_funds' WHERE id = ?", (action_id,))
        conn.commit()
        conn.close()

        with pytest.raises(IntegrityError) as exc:
            audit_log.approve_agent_action(action_id, "execAlice")
        assert exc.value.error_code == "GOV-CRY-0001"
        with pytest.raises(IntegrityError):
            audit_log.reject_agent_action(action_id, "execAlice", "looks wrong")

        action = audit_log.get_agent_action(action_id)
        assert action.state is ApprovalState.PENDING
        assert action.approver_id is None
        report = audit_log.verify_integrity()
        assert not report.ok
        assert report.failed_ids == [action_id]

        incidents = audit_log.query_security_incidents(
            severity=Severity.CRITICAL, category=IncidentCategory.VIOLATION)
        assert len(incidents) == 2
        assert all(i.metadata["action_id"] == action_id for i in incidents)
        assert incidents[0].principal_id == "execAlice"

    def test_sqlite_integrity_and_stats(self, audit_log, db):
        audit_log.record_audit(_event())
        assert db.integrity_check()
        stats = db.get_db_stats()
        assert stats["tables"]["audit_events"] == 1
        assert stats["query_stats"]["INSERT"]["count"] >= 1


# ══════════════════════════════════════════════════════════════════════════════
# STORAGE FAILURES
# ══════════════════════════════════════════════════════════════════════════════

class TestStorageFailures:

    def test_write_times_out_while_locked(self, audit_log, database_config):
        blocker = sqlite3.connect(database_config.db_path, isolation_level=None)
        blocker.execute("BEGIN IMMEDIATE")
        try:
            with pytest.raises(StorageTimeoutError):
                audit_log.record_audit(_event(), timeout=0.1)
        finally:
            blocker.execute("ROLLBACK")
            blocker.close()
        # Nothing half-written
        assert audit_log.query_audit() == []

    def test_unavailable_store_raises_storage_error(self, audit_log, db, monkeypatch):
        def unavailable(timeout=None):
            raise StorageConnectionError(db.db_path)

        monkeypatch.setattr(db.pool, "acquire", unavailable)
        with pytest.raises(StorageError):
            audit_log.record_audit(_event())
        with pytest.raises(StorageError):
            audit_log.query_audit()
