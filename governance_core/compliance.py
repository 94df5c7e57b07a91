"""
Governance Core - Compliance Engine

Framework assessment and data retention:
- Framework catalog (SOC2, ISO27001, GDPR) with weighted requirements
- Three-tier evidence checks per requirement category
- Retention policies and deletion scheduling (scheduling only)
- Compliance report and signed evidence export

Assessments never block authorization traffic; engine state is guarded
by a lock so scheduled runs can overlap with on-demand calls.
"""

import copy
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional, Dict, Any, List, FrozenSet

from governance_core import metrics
from governance_core.audit import (
    AuditEvent, AuditReader, AuditResult, AuditWriter, to_iso, utc_now,
)
from governance_core.config import ComplianceConfig
from governance_core.crypto_utils import CryptoService, KeyMaterial, canonical_json
from governance_core.exceptions import FrameworkNotFoundError, NotFoundError, ValidationError

logger = logging.getLogger("governance.compliance")

SYSTEM_PRINCIPAL = "system"
SIGNATURE_ALGORITHM = "RSA-PSS-SHA256"


# ══════════════════════════════════════════════════════════════════════════════
# TYPES
# ══════════════════════════════════════════════════════════════════════════════

class ComplianceStatus(Enum):
    COMPLIANT = "COMPLIANT"
    PARTIAL = "PARTIAL"
    NON_COMPLIANT = "NON_COMPLIANT"
    PENDING = "PENDING"


class RequirementCategory(Enum):
    ACCESS_CONTROL = "ACCESS_CONTROL"
    ENCRYPTION = "ENCRYPTION"
    AUDIT = "AUDIT"
    DATA_PROTECTION = "DATA_PROTECTION"
    RETENTION = "RETENTION"


class DeletionMethod(Enum):
    SECURE_DELETE = "SECURE_DELETE"
    OVERWRITE = "OVERWRITE"
    CRYPTOGRAPHIC_ERASE = "CRYPTOGRAPHIC_ERASE"


STATUS_SCORES = {
    ComplianceStatus.COMPLIANT: 100,
    ComplianceStatus.PARTIAL: 50,
    ComplianceStatus.NON_COMPLIANT: 0,
    ComplianceStatus.PENDING: 0,
}

STATUS_GAUGE = {
    ComplianceStatus.COMPLIANT: 1.0,
    ComplianceStatus.PARTIAL: 0.5,
    ComplianceStatus.NON_COMPLIANT: 0.0,
    ComplianceStatus.PENDING: 0.0,
}

# Evidence tags each category looks for, compared case-insensitively
CATEGORY_EVIDENCE: Dict[RequirementCategory, FrozenSet[str]] = {
    RequirementCategory.ACCESS_CONTROL: frozenset({
        "rbac implementation", "mfa enforcement", "access logs"}),
    RequirementCategory.ENCRYPTION: frozenset({
        "end-to-end encryption", "key management", "hsm integration"}),
    RequirementCategory.AUDIT: frozenset({
        "real-time monitoring", "security event logging", "audit trails"}),
    RequirementCategory.DATA_PROTECTION: frozenset({
        "data encryption", "access controls", "audit logging"}),
    RequirementCategory.RETENTION: frozenset({
        "data deletion procedures", "retention policies"}),
}


@dataclass
class Requirement:
    id: str
    title: str
    description: str
    category: RequirementCategory
    evidence: List[str] = field(default_factory=list)
    status: ComplianceStatus = ComplianceStatus.PENDING
    last_checked: Optional[datetime] = None
    weight: float = 1.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "category": self.category.value,
            "evidence": list(self.evidence),
            "status": self.status.value,
            "last_checked": to_iso(self.last_checked) if self.last_checked else None,
            "weight": self.weight,
        }


@dataclass
class ComplianceFramework:
    name: str
    title: str
    version: str
    requirements: List[Requirement]
    status: ComplianceStatus = ComplianceStatus.PENDING
    last_assessed: Optional[datetime] = None

    def requirement(self, requirement_id: str) -> Requirement:
        for req in self.requirements:
            if req.id == requirement_id:
                return req
        raise NotFoundError("Requirement", f"{self.name}/{requirement_id}")

    def count(self, status: ComplianceStatus) -> int:
        return sum(1 for r in self.requirements if r.status is status)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "title": self.title,
            "version": self.version,
            "status": self.status.value,
            "last_assessed": to_iso(self.last_assessed) if self.last_assessed else None,
            "requirements": [r.to_dict() for r in self.requirements],
        }


@dataclass(frozen=True)
class RetentionPolicy:
    data_type: str
    retention_days: int
    encryption_required: bool = True
    deletion_method: DeletionMethod = DeletionMethod.SECURE_DELETE
    audit_required: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "data_type": self.data_type,
            "retention_days": self.retention_days,
            "encryption_required": self.encryption_required,
            "deletion_method": self.deletion_method.value,
            "audit_required": self.audit_required,
        }


@dataclass
class EvidenceBundle:
    """Exportable evidence; signed when a private key is supplied."""
    payload: Dict[str, Any]
    signature: Optional[str] = None
    algorithm: Optional[str] = None

    @property
    def signed(self) -> bool:
        return self.signature is not None

    def verify(self, crypto: CryptoService, public_key: KeyMaterial) -> bool:
        if not self.signature:
            return False
        return crypto.verify(canonical_json(self.payload), self.signature, public_key)

    def to_token(self, crypto: CryptoService, private_key: KeyMaterial) -> str:
        """Portable RS256 JWT carrying the payload."""
        return crypto.sign_claims({
            "sub": self.payload.get("framework"),
            "iat": int(utc_now().timestamp()),
            "evidence": self.payload,
        }, private_key)

    def to_dict(self) -> Dict[str, Any]:
        return {"payload": self.payload, "signature": self.signature, "algorithm": self.algorithm}


# ══════════════════════════════════════════════════════════════════════════════
# DEFAULT CATALOG
# ══════════════════════════════════════════════════════════════════════════════

def default_frameworks() -> Dict[str, ComplianceFramework]:
    ac = RequirementCategory.ACCESS_CONTROL
    return {
        "SOC2": ComplianceFramework("SOC2", "SOC 2 Type II", "2023", [
            Requirement("CC6.1", "Logical Access Security",
                        "Implement logical access security software, infrastructure, "
                        "and architectures over protected information assets",
                        ac, ["RBAC implementation", "MFA enforcement", "Access logs"]),
            Requirement("CC6.2", "Access Restriction",
                        "Restrict access to information assets",
                        ac, ["Role-based permissions", "Executive approval system"]),
            Requirement("CC7.1", "System Operations",
                        "Use system operations to detect, monitor, and alert on security events",
                        RequirementCategory.AUDIT,
                        ["Real-time monitoring", "Security event logging", "Audit trails"]),
        ]),
        "ISO27001": ComplianceFramework("ISO27001", "ISO 27001", "2022", [
            Requirement("A.9.1", "Access Control Policy",
                        "Business requirements for access control",
                        ac, ["Access control policies", "User provisioning procedures"]),
            Requirement("A.10.1", "Cryptographic Controls",
                        "Policy on the use of cryptographic controls",
                        RequirementCategory.ENCRYPTION,
                        ["End-to-end encryption", "Key management", "HSM integration"]),
        ]),
        "GDPR": ComplianceFramework("GDPR", "GDPR", "2018", [
            Requirement("Art.32", "Security of Processing",
                        "Implement appropriate technical and organizational measures",
                        RequirementCategory.DATA_PROTECTION,
                        ["Data encryption", "Access controls", "Audit logging"]),
            Requirement("Art.17", "Right to Erasure",
                        "Data subject right to have personal data erased",
                        RequirementCategory.RETENTION,
                        ["Data deletion procedures", "Retention policies"]),
        ]),
    }


def default_retention_policies() -> List[RetentionPolicy]:
    return [
        RetentionPolicy("audit_logs", 2555, deletion_method=DeletionMethod.SECURE_DELETE),
        RetentionPolicy("user_data", 365, deletion_method=DeletionMethod.CRYPTOGRAPHIC_ERASE),
        RetentionPolicy("ai_actions", 1095, deletion_method=DeletionMethod.SECURE_DELETE),
        RetentionPolicy("security_events", 2555, deletion_method=DeletionMethod.SECURE_DELETE),
    ]


# ══════════════════════════════════════════════════════════════════════════════
# EVALUATION
# ══════════════════════════════════════════════════════════════════════════════

def evaluate_requirement(requirement: Requirement) -> ComplianceStatus:
    """All category tags → COMPLIANT, some → PARTIAL, none → NON_COMPLIANT."""
    expected = CATEGORY_EVIDENCE.get(requirement.category, frozenset())
    present = {e.strip().lower() for e in requirement.evidence} & expected
    if expected and present == expected:
        return ComplianceStatus.COMPLIANT
    if present:
        return ComplianceStatus.PARTIAL
    return ComplianceStatus.NON_COMPLIANT


def overall_status(requirements: List[Requirement]) -> ComplianceStatus:
    statuses = {r.status for r in requirements}
    if ComplianceStatus.NON_COMPLIANT in statuses:
        return ComplianceStatus.NON_COMPLIANT
    if ComplianceStatus.PARTIAL in statuses or ComplianceStatus.PENDING in statuses:
        return ComplianceStatus.PARTIAL
    return ComplianceStatus.COMPLIANT


def compliance_score(frameworks: List[ComplianceFramework]) -> int:
    total_weight = 0.0
    total = 0.0
    for framework in frameworks:
        for req in framework.requirements:
            total_weight += req.weight
            total += STATUS_SCORES[req.status] * req.weight
    return round(total / total_weight) if total_weight > 0 else 0


# ══════════════════════════════════════════════════════════════════════════════
# COMPLIANCE ENGINE
# ══════════════════════════════════════════════════════════════════════════════

class ComplianceEngine:
    """Assesses frameworks against evidence and schedules retention."""

    def __init__(self, writer: AuditWriter, reader: AuditReader,
                 crypto: Optional[CryptoService] = None,
                 config: Optional[ComplianceConfig] = None,
                 frameworks: Optional[Dict[str, ComplianceFramework]] = None,
                 retention_policies: Optional[List[RetentionPolicy]] = None):
        self.writer = writer
        self.reader = reader
        self.crypto = crypto
        self.config = config or ComplianceConfig()
        self._lock = threading.Lock()

        if frameworks is None:
            enabled = {name.upper() for name in self.config.frameworks}
            frameworks = {k: v for k, v in default_frameworks().items() if k in enabled}
        self._frameworks = {name.upper(): fw for name, fw in frameworks.items()}
        self._retention = {p.data_type: p for p in (
            default_retention_policies() if retention_policies is None else retention_policies
        )}

    # ── Frameworks ──

    def _framework(self, name: str) -> ComplianceFramework:
        framework = self._frameworks.get((name or "").strip().upper())
        if framework is None:
            raise FrameworkNotFoundError(name)
        return framework

    def framework_names(self) -> List[str]:
        return sorted(self._frameworks)

    def get_framework(self, name: str) -> ComplianceFramework:
        with self._lock:
            return copy.deepcopy(self._framework(name))

    def assess(self, name: str) -> ComplianceFramework:
        """
        Re-evaluate every requirement of `name` and derive the framework
        status. Re-running without new evidence yields identical statuses.
        """
        with self._lock:
            framework = self._framework(name)
            now = utc_now()
            for req in framework.requirements:
                req.status = evaluate_requirement(req)
                req.last_checked = now
            framework.status = overall_status(framework.requirements)
            framework.last_assessed = now
            snapshot = copy.deepcopy(framework)

        metrics.FRAMEWORK_STATUS.labels(framework=snapshot.name).set(STATUS_GAUGE[snapshot.status])
        self.writer.record_audit(AuditEvent(
            principal_id=SYSTEM_PRINCIPAL,
            action="COMPLIANCE_ASSESSMENT",
            resource=snapshot.name,
            result=AuditResult.SUCCESS,
            metadata={"status": snapshot.status.value,
                      "requirements": len(snapshot.requirements)},
        ))
        logger.info("Assessed %s: %s", snapshot.name, snapshot.status.value)
        return snapshot

    def submit_evidence(self, name: str, requirement_id: str,
                        evidence: List[str]) -> Requirement:
        """Replace a requirement's evidence; takes effect on the next assessment."""
        if isinstance(evidence, str):
            raise ValidationError("evidence must be a list of strings")
        with self._lock:
            req = self._framework(name).requirement(requirement_id)
            req.evidence = [str(e) for e in evidence]
            snapshot = copy.deepcopy(req)
        logger.debug("Evidence updated for %s/%s", name, requirement_id)
        return snapshot

    # ── Retention ──

    def retention_policy_for(self, data_type: str) -> Optional[RetentionPolicy]:
        return self._retention.get(data_type)

    def retention_policies(self) -> List[RetentionPolicy]:
        return list(self._retention.values())

    def schedule_deletion(self, data_type: str, now: Optional[datetime] = None) -> bool:
        policy = self.retention_policy_for(data_type)
        if policy is None:
            logger.warning("No retention policy found for data type: %s", data_type)
            return False

        deletion_date = (now or utc_now()) + timedelta(days=policy.retention_days)
        self.writer.record_audit(AuditEvent(
            principal_id=SYSTEM_PRINCIPAL,
            action="SCHEDULE_DELETION",
            resource=data_type,
            result=AuditResult.SUCCESS,
            metadata={
                "deletion_date": to_iso(deletion_date),
                "deletion_day": deletion_date.date().isoformat(),
                "retention_days": policy.retention_days,
                "deletion_method": policy.deletion_method.value,
            },
        ))
        logger.info("Deletion of %s scheduled for %s", data_type, deletion_date.date())
        return True

    # ── Reporting ──

    def report(self) -> Dict[str, Any]:
        with self._lock:
            frameworks = [copy.deepcopy(fw) for fw in self._frameworks.values()]

        score = compliance_score(frameworks)
        metrics.COMPLIANCE_SCORE.set(score)
        return {
            "generated_at": to_iso(utc_now()),
            "frameworks": [{
                "name": fw.name,
                "title": fw.title,
                "version": fw.version,
                "status": fw.status.value,
                "last_assessed": to_iso(fw.last_assessed) if fw.last_assessed else None,
                "requirements_count": len(fw.requirements),
                "compliant_requirements": fw.count(ComplianceStatus.COMPLIANT),
                "partial_requirements": fw.count(ComplianceStatus.PARTIAL),
                "non_compliant_requirements": fw.count(ComplianceStatus.NON_COMPLIANT),
                "pending_requirements": fw.count(ComplianceStatus.PENDING),
            } for fw in frameworks],
            "retention_policies": [p.to_dict() for p in self.retention_policies()],
            "overall_score": score,
        }

    def export_evidence(self, name: str, private_key: Optional[KeyMaterial] = None,
                        window_days: Optional[int] = None) -> EvidenceBundle:
        """
        Bundle requirement statuses with the recent audit window. The bundle
        is signed through CryptoService when `private_key` is given.
        """
        framework = self.get_framework(name)
        window = self.config.evidence_window_days if window_days is None else window_days
        now = utc_now()
        records = self.reader.query_audit(start=now - timedelta(days=window), end=now)

        payload = {
            "framework": framework.name,
            "title": framework.title,
            "version": framework.version,
            "status": framework.status.value,
            "assessment_date": to_iso(now),
            "requirements": [{
                "id": r.id,
                "title": r.title,
                "status": r.status.value,
                "evidence": list(r.evidence),
                "last_checked": to_iso(r.last_checked) if r.last_checked else None,
            } for r in framework.requirements],
            "audit_logs": [r.to_dict() for r in records],
        }

        bundle = EvidenceBundle(payload=payload)
        if private_key is not None:
            if self.crypto is None:
                raise ValidationError("Signing evidence requires a CryptoService")
            bundle.signature = self.crypto.sign(canonical_json(payload), private_key)
            bundle.algorithm = SIGNATURE_ALGORITHM
        else:
            logger.warning("Evidence for %s exported unsigned; pass a private key to sign it", framework.name)
        logger.info("Exported evidence for %s (%d audit records, signed=%s)",
                    framework.name, len(records), bundle.signed)
        return bundle
