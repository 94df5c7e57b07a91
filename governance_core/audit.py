"""
Governance Core - Audit Log

Durable, queryable, integrity-tagged event history:
- Audit records (HMAC-tagged, append-only)
- Security incidents (append-only operational signals)
- Agent actions awaiting human approval (guarded state machine)

Components depend on the narrow AuditWriter / AuditReader interfaces,
never on the storage handle itself.
"""

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Dict, Any, List, Union

from governance_core import metrics
from governance_core.config import ComplianceConfig
from governance_core.crypto_utils import CryptoService, generate_id
from governance_core.db_manager import DatabaseManager
from governance_core.exceptions import (
    IntegrityError, InvalidTransitionError, NotFoundError, StorageError, ValidationError
)

logger = logging.getLogger("governance.audit")


# ══════════════════════════════════════════════════════════════════════════════
# TIME HELPERS
# ══════════════════════════════════════════════════════════════════════════════

def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    """Fixed-width UTC ISO-8601 so stored timestamps sort lexically."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _normalize_metadata(metadata: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    # Round-trip through JSON so tags computed now match rows read back later
    return json.loads(json.dumps(metadata or {}, default=str))


# ══════════════════════════════════════════════════════════════════════════════
# ENUMS
# ══════════════════════════════════════════════════════════════════════════════

class AuditResult(Enum):
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"
    PENDING = "PENDING"


class IncidentCategory(Enum):
    AUTHENTICATION = "AUTHENTICATION"
    AUTHORIZATION = "AUTHORIZATION"
    DATA_ACCESS = "DATA_ACCESS"
    AGENT_ACTION = "AGENT_ACTION"
    VIOLATION = "VIOLATION"


class Severity(Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class ApprovalState(Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


def _coerce(enum_cls, value):
    if value is None or isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).upper() if enum_cls is not ApprovalState else str(value).lower())
    except ValueError:
        raise ValidationError(
            f"Unknown {enum_cls.__name__}: {value}",
            context={"allowed": [member.value for member in enum_cls]},
        )


# ══════════════════════════════════════════════════════════════════════════════
# RECORDS
# ══════════════════════════════════════════════════════════════════════════════

@dataclass
class AuditEvent:
    """An event to be recorded; id, timestamp and tag are assigned on write."""
    principal_id: str
    action: str
    resource: str
    result: AuditResult = AuditResult.SUCCESS
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class AuditRecord:
    """Immutable, integrity-tagged audit row."""
    id: str
    timestamp: datetime
    principal_id: str
    action: str
    resource: str
    result: AuditResult
    ip_address: Optional[str]
    user_agent: Optional[str]
    metadata: Dict[str, Any]
    integrity_tag: str

    def tagged_content(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": to_iso(self.timestamp),
            "principal_id": self.principal_id,
            "action": self.action,
            "resource": self.resource,
            "result": self.result.value,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "metadata": self.metadata,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {**self.tagged_content(), "integrity_tag": self.integrity_tag}

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "AuditRecord":
        return cls(
            id=row["id"],
            timestamp=from_iso(row["timestamp"]),
            principal_id=row["principal_id"],
            action=row["action"],
            resource=row["resource"],
            result=AuditResult(row["result"]),
            ip_address=row["ip_address"],
            user_agent=row["user_agent"],
            metadata=json.loads(row["metadata_json"] or "{}"),
            integrity_tag=row["integrity_tag"],
        )


@dataclass
class SecurityIncident:
    """Append-only security signal. `id` and `timestamp` are set on write."""
    category: IncidentCategory
    severity: Severity
    description: str
    principal_id: str
    ip_address: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    timestamp: Optional[datetime] = None
    id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": to_iso(self.timestamp) if self.timestamp else None,
            "category": self.category.value,
            "severity": self.severity.value,
            "description": self.description,
            "principal_id": self.principal_id,
            "ip_address": self.ip_address,
            "metadata": self.metadata,
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "SecurityIncident":
        return cls(
            id=row["id"],
            timestamp=from_iso(row["timestamp"]),
            category=IncidentCategory(row["category"]),
            severity=Severity(row["severity"]),
            description=row["description"],
            principal_id=row["principal_id"],
            ip_address=row["ip_address"],
            metadata=json.loads(row["metadata_json"] or "{}"),
        )


@dataclass(frozen=True)
class PendingAgentAction:
    """Agent-proposed action and its (at most one) human decision."""
    id: str
    timestamp: datetime
    principal_id: str
    action: str
    metadata: Dict[str, Any]
    integrity_tag: str
    state: ApprovalState = ApprovalState.PENDING
    approver_id: Optional[str] = None
    decided_at: Optional[datetime] = None
    decision_reason: Optional[str] = None
    version: int = 0

    @property
    def is_decided(self) -> bool:
        return self.state is not ApprovalState.PENDING

    def tagged_content(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": to_iso(self.timestamp),
            "principal_id": self.principal_id,
            "action": self.action,
            "metadata": self.metadata,
            "state": self.state.value,
            "approver_id": self.approver_id,
            "decided_at": to_iso(self.decided_at) if self.decided_at else None,
            "decision_reason": self.decision_reason,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {**self.tagged_content(), "integrity_tag": self.integrity_tag, "version": self.version}

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "PendingAgentAction":
        return cls(
            id=row["id"],
            timestamp=from_iso(row["timestamp"]),
            principal_id=row["principal_id"],
            action=row["action"],
            metadata=json.loads(row["metadata_json"] or "{}"),
            integrity_tag=row["integrity_tag"],
            state=ApprovalState(row["approval_state"]),
            approver_id=row["approver_id"],
            decided_at=from_iso(row["decided_at"]),
            decision_reason=row["decision_reason"],
            version=row["version"],
        )


@dataclass
class IntegrityReport:
    checked: int = 0
    failed_ids: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed_ids

    def to_dict(self) -> Dict[str, Any]:
        return {"ok": self.ok, "checked": self.checked, "failed_ids": list(self.failed_ids)}


# ══════════════════════════════════════════════════════════════════════════════
# INTERFACES
# ══════════════════════════════════════════════════════════════════════════════

class AuditWriter(ABC):
    """Write side of the audit trail."""

    @abstractmethod
    def record_audit(self, event: AuditEvent, timeout: Optional[float] = None) -> str:
        ...

    @abstractmethod
    def record_security_incident(self, incident: SecurityIncident,
                                 timeout: Optional[float] = None) -> str:
        ...

    @abstractmethod
    def record_agent_action(self, principal_id: str, action: str,
                            metadata: Optional[Dict[str, Any]] = None,
                            timeout: Optional[float] = None) -> str:
        ...


class AuditReader(ABC):
    """Read side of the audit trail."""

    @abstractmethod
    def query_audit(self, principal_id: Optional[str] = None,
                    start: Optional[datetime] = None,
                    end: Optional[datetime] = None,
                    limit: Optional[int] = None) -> List[AuditRecord]:
        ...

    @abstractmethod
    def query_security_incidents(self, severity=None, category=None,
                                 limit: Optional[int] = None) -> List[SecurityIncident]:
        ...

    @abstractmethod
    def query_pending_agent_actions(self) -> List[PendingAgentAction]:
        ...

    @abstractmethod
    def get_agent_action(self, action_id: str) -> PendingAgentAction:
        ...

    @abstractmethod
    def incident_severity_counts(self) -> Dict[Severity, int]:
        ...


# ══════════════════════════════════════════════════════════════════════════════
# AUDIT LOG
# ══════════════════════════════════════════════════════════════════════════════

class AuditLog(AuditWriter, AuditReader):
    """SQLite-backed audit trail with HMAC integrity tags."""

    def __init__(self, db: DatabaseManager, crypto: CryptoService,
                 config: Optional[ComplianceConfig] = None):
        self.db = db
        self.crypto = crypto
        self.config = config or ComplianceConfig()
        self.db.initialize()

    # ── Writes ──

    def _write(self, table: str, row: Dict[str, Any], timeout: Optional[float]):
        try:
            self.db.insert(table, row, timeout=timeout)
        except StorageError:
            metrics.record_audit_write(table, False)
            logger.error("Write to %s failed for %s", table, row.get("id"))
            raise
        metrics.record_audit_write(table, True)

    def record_audit(self, event: AuditEvent, timeout: Optional[float] = None) -> str:
        record = AuditRecord(
            id=generate_id("aud"),
            timestamp=event.timestamp or utc_now(),
            principal_id=event.principal_id,
            action=event.action,
            resource=event.resource,
            result=_coerce(AuditResult, event.result),
            ip_address=event.ip_address,
            user_agent=event.user_agent,
            metadata=_normalize_metadata(event.metadata),
            integrity_tag="",
        )
        record = replace(record, integrity_tag=self.crypto.integrity_tag(record.tagged_content()))

        self._write("audit_events", {
            "id": record.id,
            "timestamp": to_iso(record.timestamp),
            "principal_id": record.principal_id,
            "action": record.action,
            "resource": record.resource,
            "result": record.result.value,
            "ip_address": record.ip_address,
            "user_agent": record.user_agent,
            "metadata_json": json.dumps(record.metadata, sort_keys=True),
            "integrity_tag": record.integrity_tag,
        }, timeout)

        logger.info("Audit event logged: %s on %s by %s (%s)",
                    record.action, record.resource, record.principal_id, record.result.value)
        return record.id

    def record_security_incident(self, incident: SecurityIncident,
                                 timeout: Optional[float] = None) -> str:
        category = _coerce(IncidentCategory, incident.category)
        severity = _coerce(Severity, incident.severity)
        incident_id = generate_id("inc")
        timestamp = incident.timestamp or utc_now()

        self._write("security_events", {
            "id": incident_id,
            "timestamp": to_iso(timestamp),
            "category": category.value,
            "severity": severity.value,
            "description": incident.description,
            "principal_id": incident.principal_id,
            "ip_address": incident.ip_address,
            "metadata_json": json.dumps(_normalize_metadata(incident.metadata), sort_keys=True),
        }, timeout)

        metrics.record_incident(category.value, severity.value)
        logger.warning("Security incident logged: %s/%s - %s",
                       category.value, severity.value, incident.description)
        return incident_id

    def record_agent_action(self, principal_id: str, action: str,
                            metadata: Optional[Dict[str, Any]] = None,
                            timeout: Optional[float] = None) -> str:
        pending = PendingAgentAction(
            id=generate_id("act"),
            timestamp=utc_now(),
            principal_id=principal_id,
            action=action,
            metadata=_normalize_metadata(metadata),
            integrity_tag="",
        )
        pending = replace(pending, integrity_tag=self.crypto.integrity_tag(pending.tagged_content()))

        self._write("agent_actions", {
            "id": pending.id,
            "timestamp": to_iso(pending.timestamp),
            "principal_id": pending.principal_id,
            "action": pending.action,
            "metadata_json": json.dumps(pending.metadata, sort_keys=True),
            "integrity_tag": pending.integrity_tag,
            "approval_state": pending.state.value,
            "version": pending.version,
        }, timeout)

        logger.info("Agent action logged: %s by %s - PENDING APPROVAL", action, principal_id)
        return pending.id

    # ── Approval state machine ──

    def approve_agent_action(self, action_id: str, approver_id: str,
                             timeout: Optional[float] = None) -> bool:
        """PENDING → APPROVED. Raises NotFoundError / InvalidTransitionError."""
        self._decide(action_id, approver_id, ApprovalState.APPROVED, None, timeout)
        return True

    def reject_agent_action(self, action_id: str, approver_id: str, reason: str = "",
                            timeout: Optional[float] = None) -> bool:
        """PENDING → REJECTED. Raises NotFoundError / InvalidTransitionError."""
        self._decide(action_id, approver_id, ApprovalState.REJECTED, reason or None, timeout)
        return True

    def _decide(self, action_id: str, approver_id: str, state: ApprovalState,
                reason: Optional[str], timeout: Optional[float]) -> PendingAgentAction:
        current = self.get_agent_action(action_id)
        if current.is_decided:
            raise InvalidTransitionError(action_id, current.state.value)
        # A decision re-tags the row, so the stored content must be checked first
        if not self.verify_agent_action(current):
            self.record_security_incident(SecurityIncident(
                category=IncidentCategory.VIOLATION,
                severity=Severity.CRITICAL,
                description=f"Tampered agent action blocked at {state.value}: {action_id}",
                principal_id=approver_id,
                metadata={"action_id": action_id, "stored_action": current.action},
            ), timeout=timeout)
            logger.error("Integrity check failed for agent action %s; decision refused", action_id)
            raise IntegrityError(action_id)

        decided = replace(
            current,
            state=state,
            approver_id=approver_id,
            decided_at=utc_now(),
            decision_reason=reason,
            version=current.version + 1,
        )
        decided = replace(decided, integrity_tag=self.crypto.integrity_tag(decided.tagged_content()))

        # Optimistic check: only the writer that still sees the read version wins
        updated = self.db.execute(
            """UPDATE agent_actions
               SET approval_state = ?, approver_id = ?, decided_at = ?,
                   decision_reason = ?, integrity_tag = ?, version = ?
               WHERE id = ? AND approval_state = 'pending' AND version = ?""",
            (decided.state.value, decided.approver_id, to_iso(decided.decided_at),
             decided.decision_reason, decided.integrity_tag, decided.version,
             action_id, current.version),
            timeout=timeout,
        )
        if updated == 0:
            latest = self.get_agent_action(action_id)
            raise InvalidTransitionError(action_id, latest.state.value)

        metrics.AGENT_ACTION_DECISIONS.labels(state=state.value).inc()
        logger.info("Agent action %s %s by %s", action_id, state.value, approver_id)
        return decided

    # ── Reads ──

    def _cap(self, limit: Optional[int], ceiling: int) -> int:
        if limit is None or limit <= 0:
            return ceiling
        return min(limit, ceiling)

    def query_audit(self, principal_id: Optional[str] = None,
                    start: Optional[datetime] = None,
                    end: Optional[datetime] = None,
                    limit: Optional[int] = None) -> List[AuditRecord]:
        """Matching records, newest first, capped at the configured limit."""
        conditions, params = [], []
        if principal_id:
            conditions.append("principal_id = ?")
            params.append(principal_id)
        if start:
            conditions.append("timestamp >= ?")
            params.append(to_iso(start))
        if end:
            conditions.append("timestamp <= ?")
            params.append(to_iso(end))

        sql = "SELECT * FROM audit_events"
        if conditions:
            sql += " WHERE " + " AND ".join(conditions)
        sql += " ORDER BY timestamp DESC, rowid DESC LIMIT ?"
        params.append(self._cap(limit, self.config.audit_query_limit))

        return [AuditRecord.from_row(row) for row in self.db.fetch_all(sql, tuple(params))]

    def query_security_incidents(self, severity: Union[Severity, str, None] = None,
                                 category: Union[IncidentCategory, str, None] = None,
                                 limit: Optional[int] = None) -> List[SecurityIncident]:
        severity = _coerce(Severity, severity)
        category = _coerce(IncidentCategory, category)
        conditions, params = [], []
        if severity:
            conditions.append("severity = ?")
            params.append(severity.value)
        if category:
            conditions.append("category = ?")
            params.append(category.value)

        sql = "SELECT * FROM security_events"
        if conditions:
            sql += " WHERE " + " AND ".join(conditions)
        sql += " ORDER BY timestamp DESC, rowid DESC LIMIT ?"
        params.append(self._cap(limit, self.config.incident_query_limit))

        return [SecurityIncident.from_row(row) for row in self.db.fetch_all(sql, tuple(params))]

    def query_pending_agent_actions(self) -> List[PendingAgentAction]:
        rows = self.db.fetch_all(
            "SELECT * FROM agent_actions WHERE approval_state = 'pending' "
            "ORDER BY timestamp DESC, rowid DESC"
        )
        return [PendingAgentAction.from_row(row) for row in rows]

    def get_agent_action(self, action_id: str) -> PendingAgentAction:
        row = self.db.fetch_one("SELECT * FROM agent_actions WHERE id = ?", (action_id,))
        if row is None:
            raise NotFoundError("Agent action", action_id)
        return PendingAgentAction.from_row(row)

    def incident_severity_counts(self) -> Dict[Severity, int]:
        rows = self.db.fetch_all(
            "SELECT severity, COUNT(*) AS cnt FROM security_events GROUP BY severity"
        )
        counts = {severity: 0 for severity in Severity}
        for row in rows:
            counts[Severity(row["severity"])] = row["cnt"]
        return counts

    # ── Verification ──

    def verify_record(self, record: AuditRecord) -> bool:
        return self.crypto.verify_integrity_tag(record.tagged_content(), record.integrity_tag)

    def verify_agent_action(self, action: PendingAgentAction) -> bool:
        return self.crypto.verify_integrity_tag(action.tagged_content(), action.integrity_tag)

    def verify_integrity(self) -> IntegrityReport:
        """
        Recompute every stored tag. Detects modified rows; deletion or
        reordering is not detectable because rows are not chained.
        """
        report = IntegrityReport()
        for row in self.db.fetch_all("SELECT * FROM audit_events ORDER BY rowid"):
            report.checked += 1
            if not self.verify_record(AuditRecord.from_row(row)):
                report.failed_ids.append(row["id"])
        for row in self.db.fetch_all("SELECT * FROM agent_actions ORDER BY rowid"):
            report.checked += 1
            if not self.verify_agent_action(PendingAgentAction.from_row(row)):
                report.failed_ids.append(row["id"])

        if report.failed_ids:
            logger.error("Integrity verification failed for %d record(s): %s",
                         len(report.failed_ids), report.failed_ids)
        return report
