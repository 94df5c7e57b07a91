"""
Governance Core - Manager

Single construction point for the governance components. Built once at
startup from GovernanceConfig and used by the command layer:

    CryptoService → AuditLog → AccessControl → ComplianceEngine
"""

import logging
from typing import Optional, Dict, Any, List

from governance_core.access_control import (
    AccessControl, AuthorizationDecision, PolicyStore, Principal,
)
from governance_core.audit import (
    ApprovalState, AuditEvent, AuditLog, AuditResult, IntegrityReport, PendingAgentAction,
)
from governance_core.compliance import ComplianceEngine, ComplianceFramework, EvidenceBundle
from governance_core.config import GovernanceConfig
from governance_core.crypto_utils import CryptoService, KeyMaterial, load_or_create_master_key
from governance_core.db_manager import DatabaseManager
from governance_core.exceptions import ForbiddenError, GovernanceError, StorageError

logger = logging.getLogger("governance.manager")


class GovernanceManager:
    """Facade over crypto, audit, access control and compliance."""

    def __init__(self, config: Optional[GovernanceConfig] = None,
                 master_key: Optional[bytes] = None,
                 policy: Optional[PolicyStore] = None):
        self.config = config or GovernanceConfig()
        key = master_key if master_key is not None else load_or_create_master_key(self.config.security)

        self.crypto = CryptoService(key, self.config.security)
        self.db = DatabaseManager(self.config.database.db_path, self.config.database)
        self.audit = AuditLog(self.db, self.crypto, self.config.compliance)
        self.access = AccessControl(policy or PolicyStore.default(),
                                    self.audit, self.audit, self.config.security)
        self.compliance = ComplianceEngine(self.audit, self.audit, self.crypto,
                                           self.config.compliance)
        logger.info("Governance core ready (db=%s)", self.config.database.db_path)

    def __enter__(self) -> "GovernanceManager":
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def close(self):
        self.db.close()

    # ── Authorization ──

    def authorize(self, principal: Principal, resource: str, action: str,
                  context: Optional[Dict[str, Any]] = None) -> AuthorizationDecision:
        return self.access.authorize(principal, resource, action, context)

    def submit_agent_action(self, principal: Principal, action: str,
                            metadata: Optional[Dict[str, Any]] = None) -> AuthorizationDecision:
        return self.access.authorize_agent_action(principal, action, metadata)

    def pending_agent_actions(self) -> List[PendingAgentAction]:
        return self.audit.query_pending_agent_actions()

    def approve_agent_action(self, action_id: str, approver: Principal) -> PendingAgentAction:
        return self._decide(action_id, approver, ApprovalState.APPROVED, "")

    def reject_agent_action(self, action_id: str, approver: Principal,
                            reason: str = "") -> PendingAgentAction:
        return self._decide(action_id, approver, ApprovalState.REJECTED, reason)

    def _decide(self, action_id: str, approver: Principal, state: ApprovalState,
                reason: str) -> PendingAgentAction:
        operation = "APPROVE_AGENT_ACTION" if state is ApprovalState.APPROVED else "REJECT_AGENT_ACTION"
        metadata = {"action_id": action_id}
        try:
            self.audit.get_agent_action(action_id)

            verb = "approve" if state is ApprovalState.APPROVED else "reject"
            decision = self.access.authorize(approver, "ai_actions", verb)
            if not decision.allowed:
                raise ForbiddenError(operation, approver.principal_id, decision.reason or "")

            if state is ApprovalState.APPROVED:
                self.audit.approve_agent_action(action_id, approver.principal_id)
            else:
                self.audit.reject_agent_action(action_id, approver.principal_id, reason)
        except GovernanceError as e:
            self._record_decision_failure(operation, approver, metadata, e)
            raise

        self.audit.record_audit(AuditEvent(
            principal_id=approver.principal_id,
            action=operation,
            resource="ai_actions",
            result=AuditResult.SUCCESS,
            metadata={**metadata, "reason": reason} if reason else metadata,
        ))
        return self.audit.get_agent_action(action_id)

    def _record_decision_failure(self, operation: str, approver: Principal,
                                 metadata: Dict[str, Any], error: GovernanceError):
        # Storage failures are not recorded twice; the caught error propagates
        if isinstance(error, StorageError):
            return
        self.audit.record_audit(AuditEvent(
            principal_id=approver.principal_id,
            action=operation,
            resource="ai_actions",
            result=AuditResult.FAILURE,
            metadata={**metadata, "error": error.error_code},
        ))
        logger.warning("%s failed for %s: %s", operation, approver.principal_id, error)

    # ── Compliance ──

    def assess(self, name: str) -> ComplianceFramework:
        return self.compliance.assess(name)

    def report(self) -> Dict[str, Any]:
        return self.compliance.report()

    def export_evidence(self, name: str, private_key: Optional[KeyMaterial] = None) -> EvidenceBundle:
        """Evidence bundle for a framework. Unsigned unless `private_key` is given."""
        return self.compliance.export_evidence(name, private_key=private_key)

    def schedule_deletion(self, data_type: str) -> bool:
        return self.compliance.schedule_deletion(data_type)

    # ── Security posture ──

    def security_report(self) -> Dict[str, Any]:
        return self.access.security_report()

    def verify_audit(self) -> IntegrityReport:
        return self.audit.verify_integrity()
