"""
Governance Core - Compliance Engine Test Suite

Covers:
- Requirement evaluation tiers per category
- Framework assessment and idempotence
- Retention policies and deletion scheduling
- Compliance report scoring
- Evidence export, signatures and tokens

Run with: pytest tests/test_compliance.py -v
"""

from datetime import datetime, timedelta, timezone

import pytest

from governance_core.audit import AuditEvent, AuditResult
from governance_core.compliance import (
    ComplianceEngine, ComplianceStatus, DeletionMethod, Requirement, RequirementCategory,
    compliance_score, default_frameworks, evaluate_requirement, overall_status,
)
from governance_core.config import ComplianceConfig
from governance_core.exceptions import (
    FrameworkNotFoundError, NotFoundError, ValidationError,
)


def _req(category, evidence, weight=1.0, status=ComplianceStatus.PENDING):
    return Requirement("R", "title", "desc", category, list(evidence), status=status, weight=weight)


# ══════════════════════════════════════════════════════════════════════════════
# REQUIREMENT EVALUATION
# ══════════════════════════════════════════════════════════════════════════════

class TestEvaluateRequirement:

    @pytest.mark.parametrize("category,evidence,expected", [
        (RequirementCategory.ACCESS_CONTROL,
         ["RBAC implementation", "MFA enforcement", "Access logs"], ComplianceStatus.COMPLIANT),
        (RequirementCategory.ACCESS_CONTROL, ["Access logs"], ComplianceStatus.PARTIAL),
        (RequirementCategory.ACCESS_CONTROL, ["Role-based permissions"],
         ComplianceStatus.NON_COMPLIANT),
        (RequirementCategory.ENCRYPTION,
         ["End-to-end encryption", "Key management", "HSM integration"],
         ComplianceStatus.COMPLIANT),
        (RequirementCategory.ENCRYPTION, ["HSM integration"], ComplianceStatus.PARTIAL),
        (RequirementCategory.AUDIT, ["Real-time monitoring"], ComplianceStatus.PARTIAL),
        (RequirementCategory.DATA_PROTECTION, ["Audit logging"], ComplianceStatus.PARTIAL),
        (RequirementCategory.RETENTION,
         ["Data deletion procedures", "Retention policies"], ComplianceStatus.COMPLIANT),
        (RequirementCategory.RETENTION, [], ComplianceStatus.NON_COMPLIANT),
    ])
    def test_tiers(self, category, evidence, expected):
        assert evaluate_requirement(_req(category, evidence)) is expected

    def test_tags_match_case_insensitively(self):
        req = _req(RequirementCategory.DATA_PROTECTION,
                   ["data ENCRYPTION", " Access Controls ", "audit logging"])
        assert evaluate_requirement(req) is ComplianceStatus.COMPLIANT

    def test_extra_evidence_ignored(self):
        req = _req(RequirementCategory.RETENTION,
                   ["Data deletion procedures", "Retention policies", "Shredder"])
        assert evaluate_requirement(req) is ComplianceStatus.COMPLIANT

    def test_overall_status(self):
        c = _req(RequirementCategory.AUDIT, [], status=ComplianceStatus.COMPLIANT)
        p = _req(RequirementCategory.AUDIT, [], status=ComplianceStatus.PARTIAL)
        n = _req(RequirementCategory.AUDIT, [], status=ComplianceStatus.NON_COMPLIANT)
        assert overall_status([c, c]) is ComplianceStatus.COMPLIANT
        assert overall_status([c, p]) is ComplianceStatus.PARTIAL
        assert overall_status([c, p, n]) is ComplianceStatus.NON_COMPLIANT


# ══════════════════════════════════════════════════════════════════════════════
# ASSESSMENT
# ══════════════════════════════════════════════════════════════════════════════

class TestAssessment:

    def test_frameworks_pending_before_assessment(self, compliance):
        framework = compliance.get_framework("GDPR")
        assert framework.status is ComplianceStatus.PENDING
        assert all(r.status is ComplianceStatus.PENDING for r in framework.requirements)
        assert framework.last_assessed is None

    def test_gdpr_compliant(self, compliance, audit_log):
        framework = compliance.assess("GDPR")
        art32 = framework.requirement("Art.32")
        assert art32.evidence == ["Data encryption", "Access controls", "Audit logging"]
        assert art32.status is ComplianceStatus.COMPLIANT
        assert framework.status is ComplianceStatus.COMPLIANT
        assert framework.last_assessed is not None

        record = audit_log.query_audit()[0]
        assert record.action == "COMPLIANCE_ASSESSMENT"
        assert record.resource == "GDPR"
        assert record.principal_id == "system"
        assert record.metadata == {"status": "COMPLIANT", "requirements": 2}

    def test_default_catalog_statuses(self, compliance):
        soc2 = compliance.assess("SOC2")
        assert soc2.requirement("CC6.1").status is ComplianceStatus.COMPLIANT
        assert soc2.requirement("CC6.2").status is ComplianceStatus.NON_COMPLIANT
        assert soc2.status is ComplianceStatus.NON_COMPLIANT

    def test_assessment_is_idempotent(self, compliance):
        first = compliance.assess("ISO27001")
        second = compliance.assess("ISO27001")
        assert first.status is second.status
        assert [r.status for r in first.requirements] == [r.status for r in second.requirements]

    def test_name_lookup(self, compliance):
        assert compliance.assess("gdpr").name == "GDPR"
        with pytest.raises(FrameworkNotFoundError):
            compliance.assess("HIPAA")
        with pytest.raises(NotFoundError):
            compliance.get_framework("PCI")

    def test_returned_framework_is_a_snapshot(self, compliance):
        framework = compliance.assess("GDPR")
        framework.requirements[0].evidence.clear()
        assert compliance.get_framework("GDPR").requirement("Art.32").evidence

    def test_submit_evidence(self, compliance):
        compliance.submit_evidence("SOC2", "CC6.2", ["RBAC implementation"])
        assert compliance.get_framework("SOC2").requirement("CC6.2").status \
            is ComplianceStatus.PENDING
        soc2 = compliance.assess("SOC2")
        assert soc2.requirement("CC6.2").status is ComplianceStatus.PARTIAL
        assert soc2.status is ComplianceStatus.PARTIAL

    def test_submit_evidence_validation(self, compliance):
        with pytest.raises(NotFoundError):
            compliance.submit_evidence("SOC2", "CC9.9", [])
        with pytest.raises(ValidationError):
            compliance.submit_evidence("SOC2", "CC6.2", "RBAC implementation")

    def test_enabled_frameworks_from_config(self, audit_log, crypto):
        config = ComplianceConfig(audit_query_limit=1000, incident_query_limit=500,
                                  evidence_window_days=30, frameworks=["gdpr"])
        engine = ComplianceEngine(audit_log, audit_log, crypto, config)
        assert engine.framework_names() == ["GDPR"]


# ══════════════════════════════════════════════════════════════════════════════
# RETENTION
# ══════════════════════════════════════════════════════════════════════════════

class TestRetention:

    def test_default_policies(self, compliance):
        audit_logs = compliance.retention_policy_for("audit_logs")
        assert audit_logs.retention_days == 2555
        assert audit_logs.deletion_method is DeletionMethod.SECURE_DELETE
        user_data = compliance.retention_policy_for("user_data")
        assert user_data.retention_days == 365
        assert user_data.deletion_method is DeletionMethod.CRYPTOGRAPHIC_ERASE
        assert compliance.retention_policy_for("ai_actions").retention_days == 1095
        assert compliance.retention_policy_for("security_events").retention_days == 2555
        assert all(p.encryption_required and p.audit_required
                   for p in compliance.retention_policies())
        assert compliance.retention_policy_for("cat_pictures") is None

    def test_schedule_audit_log_deletion(self, compliance, audit_log):
        now = datetime(2026, 10, 17, 9, 30, tzinfo=timezone.utc)
        assert compliance.schedule_deletion("audit_logs", now=now) is True

        records = audit_log.query_audit()
        assert len(records) == 1
        record = records[0]
        assert record.action == "SCHEDULE_DELETION"
        assert record.resource == "audit_logs"
        expected = now + timedelta(days=2555)
        assert record.metadata["deletion_day"] == expected.date().isoformat()
        assert datetime.fromisoformat(record.metadata["deletion_date"]) == expected
        assert record.metadata["retention_days"] == 2555
        assert record.metadata["deletion_method"] == "SECURE_DELETE"

    def test_schedule_unknown_type(self, compliance, audit_log):
        assert compliance.schedule_deletion("cat_pictures") is False
        assert audit_log.query_audit() == []


# ══════════════════════════════════════════════════════════════════════════════
# REPORTING
# ══════════════════════════════════════════════════════════════════════════════

class TestReport:

    def test_pending_requirements_score_zero(self, compliance):
        report = compliance.report()
        assert report["overall_score"] == 0
        assert {f["name"] for f in report["frameworks"]} == {"SOC2", "ISO27001", "GDPR"}
        assert all(f["status"] == "PENDING" for f in report["frameworks"])
        assert len(report["retention_policies"]) == 4

    def test_score_after_assessment(self, compliance):
        for name in compliance.framework_names():
            compliance.assess(name)
        report = compliance.report()
        # SOC2: C, N, C   ISO27001: N, C   GDPR: C, C  -> 5 of 7 compliant
        assert report["overall_score"] == round(500 / 7)
        gdpr = next(f for f in report["frameworks"] if f["name"] == "GDPR")
        assert gdpr["compliant_requirements"] == 2
        assert gdpr["non_compliant_requirements"] == 0

    def test_weighted_score(self):
        framework = default_frameworks()["GDPR"]
        framework.requirements[0].status = ComplianceStatus.COMPLIANT
        framework.requirements[0].weight = 3.0
        framework.requirements[1].status = ComplianceStatus.PARTIAL
        assert compliance_score([framework]) == round((300 + 50) / 4)
        assert compliance_score([]) == 0


# ══════════════════════════════════════════════════════════════════════════════
# EVIDENCE EXPORT
# ══════════════════════════════════════════════════════════════════════════════

class TestEvidenceExport:

    def test_unsigned_bundle(self, compliance, audit_log):
        old = datetime.now(timezone.utc) - timedelta(days=90)
        audit_log.record_audit(AuditEvent("alice", "OLD", "x", AuditResult.SUCCESS, timestamp=old))
        compliance.assess("GDPR")

        bundle = compliance.export_evidence("GDPR")
        assert not bundle.signed
        payload = bundle.payload
        assert payload["framework"] == "GDPR"
        assert payload["status"] == "COMPLIANT"
        assert {r["id"] for r in payload["requirements"]} == {"Art.32", "Art.17"}
        actions = [r["action"] for r in payload["audit_logs"]]
        assert "COMPLIANCE_ASSESSMENT" in actions
        assert "OLD" not in actions

    def test_signed_bundle_verifies(self, compliance, crypto, key_pair):
        compliance.assess("ISO27001")
        bundle = compliance.export_evidence("ISO27001", private_key=key_pair.private_key)
        assert bundle.signed
        assert bundle.algorithm == "RSA-PSS-SHA256"
        assert bundle.verify(crypto, key_pair.public_key)

        bundle.payload["status"] = "COMPLIANT"
        assert not bundle.verify(crypto, key_pair.public_key)

    def test_token_form(self, compliance, crypto, key_pair):
        bundle = compliance.export_evidence("GDPR")
        token = bundle.to_token(crypto, key_pair.private_key)
        claims = crypto.verify_claims(token, key_pair.public_key)
        assert claims["sub"] == "GDPR"
        assert claims["evidence"]["framework"] == "GDPR"

    def test_unknown_framework(self, compliance):
        with pytest.raises(FrameworkNotFoundError):
            compliance.export_evidence("HIPAA")

    def test_signing_requires_crypto(self, audit_log, compliance_config, key_pair):
        engine = ComplianceEngine(audit_log, audit_log, None, compliance_config)
        with pytest.raises(ValidationError):
            engine.export_evidence("GDPR", private_key=key_pair.private_key)
