"""
Governance Core - Access Control

Role-based authorization with MFA and executive-approval gates:
- PolicyStore: immutable role → permission table and sensitivity rules
- AccessControl: per-call decision state machine, recorded through AuditLog
- Principal directory: create, role change, deactivation (never deletion)

Decision order: inactive → agent → MFA → permission → approval → allow.
Every branch ends with exactly one audit write.
"""

import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from types import MappingProxyType
from typing import Optional, Dict, Any, List, FrozenSet, Mapping, Tuple, Union

from governance_core import metrics
from governance_core.audit import (
    AuditEvent, AuditReader, AuditResult, AuditWriter, IncidentCategory,
    SecurityIncident, Severity,
)
from governance_core.config import SecurityConfig
from governance_core.crypto_utils import generate_id
from governance_core.exceptions import (
    ForbiddenError, NotFoundError, StorageError, ValidationError,
)

logger = logging.getLogger("governance.access")

WILDCARD = "*"

REASON_INACTIVE = "User account is inactive"
REASON_AGENT = "Agent actions require executive approval"
REASON_MFA = "Multi-factor authentication (MFA) required"
REASON_PERMISSION = "Insufficient permissions"
REASON_APPROVAL = "Executive approval required"
REASON_SYSTEM = "Authorization system error"


# ══════════════════════════════════════════════════════════════════════════════
# ROLES & PERMISSIONS
# ══════════════════════════════════════════════════════════════════════════════

class Role(Enum):
    EXECUTIVE = "executive"
    ADMIN = "admin"
    MANAGER = "manager"
    MEMBER = "member"
    VIEWER = "viewer"

    @classmethod
    def parse(cls, value: Union["Role", str]) -> "Role":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValidationError(
                f"Unknown role: {value}",
                context={"allowed": [role.value for role in cls]},
            )


@dataclass(frozen=True)
class Permission:
    resource: str
    actions: Tuple[str, ...]
    conditions: Dict[str, Any] = field(default_factory=dict, compare=False)

    def allows(self, resource: str, action: str) -> bool:
        if self.resource != WILDCARD and self.resource != resource:
            return False
        return WILDCARD in self.actions or action in self.actions

    def to_dict(self) -> Dict[str, Any]:
        return {"resource": self.resource, "actions": list(self.actions),
                "conditions": dict(self.conditions)}


@dataclass(frozen=True)
class SensitivityRule:
    """Matches when the resource OR the action is in its set."""
    resources: FrozenSet[str]
    actions: FrozenSet[str]

    def matches(self, resource: str, action: str) -> bool:
        return resource in self.resources or action in self.actions


@dataclass
class Principal:
    principal_id: str
    username: str
    role: Role
    mfa_enabled: bool = False
    is_active: bool = True
    email: Optional[str] = None
    permissions: Tuple[Permission, ...] = ()
    is_agent: bool = False

    def __post_init__(self):
        # Accepts role names; unknown names raise ValidationError
        self.role = Role.parse(self.role)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "principal_id": self.principal_id,
            "username": self.username,
            "role": self.role.value,
            "mfa_enabled": self.mfa_enabled,
            "is_active": self.is_active,
            "email": self.email,
            "permissions": [p.to_dict() for p in self.permissions],
            "is_agent": self.is_agent,
        }


def _perm(resource: str, *actions: str) -> Permission:
    return Permission(resource=resource, actions=tuple(actions))


@dataclass(frozen=True)
class PolicyStore:
    """Immutable policy table, built once and injected into AccessControl."""
    role_permissions: Mapping[Role, Tuple[Permission, ...]]
    mfa_rule: SensitivityRule
    approval_rule: SensitivityRule
    audit_rule: SensitivityRule

    def __post_init__(self):
        object.__setattr__(self, "role_permissions",
                           MappingProxyType({Role.parse(role): tuple(perms)
                                             for role, perms in self.role_permissions.items()}))

    @classmethod
    def default(cls) -> "PolicyStore":
        return cls(
            role_permissions={
                Role.EXECUTIVE: (
                    _perm(WILDCARD, WILDCARD),
                    _perm("ai_actions", "approve", "reject", "execute"),
                    _perm("security", "view", "configure", "audit"),
                    _perm("users", "create", "read", "update", "delete"),
                ),
                Role.ADMIN: (
                    _perm("users", "read", "update"),
                    _perm("ai_actions", "view", "approve"),
                    _perm("audit", "read"),
                    _perm("security", "view"),
                ),
                Role.MANAGER: (
                    _perm("ai_actions", "view", "request"),
                    _perm("users", "read"),
                    _perm("audit", "read"),
                ),
                Role.MEMBER: (
                    _perm("ai_actions", "view", "request"),
                    _perm("profile", "read", "update"),
                ),
                Role.VIEWER: (
                    _perm("ai_actions", "view"),
                    _perm("profile", "read"),
                ),
            },
            mfa_rule=SensitivityRule(
                resources=frozenset({"security", "users", "ai_actions"}),
                actions=frozenset({"delete", "execute", "approve", "configure"}),
            ),
            approval_rule=SensitivityRule(
                resources=frozenset({"ai_actions", "security", "users"}),
                actions=frozenset({"execute", "approve", "delete", "configure"}),
            ),
            audit_rule=SensitivityRule(
                resources=frozenset({"ai_actions", "security", "users", "audit"}),
                actions=frozenset({"create", "update", "delete", "execute", "approve"}),
            ),
        )

    def permissions_for(self, role: Role) -> Tuple[Permission, ...]:
        return self.role_permissions.get(role, ())

    def allows(self, role: Role, resource: str, action: str) -> bool:
        return any(p.allows(resource, action) for p in self.permissions_for(role))


# ══════════════════════════════════════════════════════════════════════════════
# DECISIONS
# ══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class AuthorizationDecision:
    allowed: bool
    reason: Optional[str] = None
    requires_approval: bool = False
    audit_required: bool = False
    pending_action_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "reason": self.reason,
            "requires_approval": self.requires_approval,
            "audit_required": self.audit_required,
            "pending_action_id": self.pending_action_id,
        }


# ══════════════════════════════════════════════════════════════════════════════
# ACCESS CONTROL
# ══════════════════════════════════════════════════════════════════════════════

class AccessControl:
    """Authorization decisions and principal lifecycle."""

    def __init__(self, policy: PolicyStore, writer: AuditWriter,
                 reader: Optional[AuditReader] = None,
                 config: Optional[SecurityConfig] = None):
        self.policy = policy
        self.writer = writer
        self.reader = reader
        self.config = config or SecurityConfig()
        self._users: Dict[str, Principal] = {}

    # ── Authorization ──

    def check_permission(self, role: Union[Role, str], resource: str, action: str) -> bool:
        return self.policy.allows(Role.parse(role), resource, action)

    def _has_permission(self, principal: Principal, resource: str, action: str) -> bool:
        if self.policy.allows(principal.role, resource, action):
            return True
        return any(p.allows(resource, action) for p in principal.permissions)

    def _deny(self, principal: Principal, severity: Severity, description: str,
              reason: str, metadata: Dict[str, Any], timeout: float,
              requires_approval: bool = False) -> AuthorizationDecision:
        self.writer.record_security_incident(SecurityIncident(
            category=IncidentCategory.AUTHORIZATION,
            severity=severity,
            description=description,
            principal_id=principal.principal_id,
            metadata=metadata,
        ), timeout=timeout)
        logger.warning("Denied %s: %s", principal.principal_id, description)
        return AuthorizationDecision(allowed=False, reason=reason,
                                     requires_approval=requires_approval)

    def authorize(self, principal: Principal, resource: str, action: str,
                  context: Optional[Dict[str, Any]] = None,
                  timeout: Optional[float] = None) -> AuthorizationDecision:
        """
        Decide whether `principal` may perform `action` on `resource`.

        Denials are results, not exceptions. If the audit store is
        unavailable the call fails closed with a generic reason.
        """
        timeout = self.config.authorization_timeout if timeout is None else timeout
        try:
            decision = self._authorize(principal, resource, action, context or {}, timeout)
        except StorageError:
            logger.exception("Authorization check failed for %s (%s on %s)",
                             principal.principal_id, action, resource)
            self._report_system_error(principal, resource, action, timeout)
            decision = AuthorizationDecision(allowed=False, reason=REASON_SYSTEM)

        metrics.record_decision(decision.allowed, decision.reason or "")
        return decision

    def _authorize(self, principal: Principal, resource: str, action: str,
                   context: Dict[str, Any], timeout: float) -> AuthorizationDecision:
        metadata = {"resource": resource, "action": action}
        if context:
            metadata["context"] = context

        if not principal.is_active:
            return self._deny(principal, Severity.HIGH,
                              f"Inactive user attempted access: {principal.principal_id}",
                              REASON_INACTIVE, metadata, timeout)

        if principal.is_agent:
            action_id = self.writer.record_agent_action(
                principal.principal_id, f"{action}:{resource}", metadata, timeout=timeout
            )
            logger.info("Queued agent action %s for approval", action_id)
            return AuthorizationDecision(allowed=False, reason=REASON_AGENT,
                                         requires_approval=True,
                                         audit_required=True,
                                         pending_action_id=action_id)

        if self.policy.mfa_rule.matches(resource, action) and not principal.mfa_enabled:
            return self._deny(principal, Severity.MEDIUM,
                              f"MFA required for action: {action} on {resource}",
                              REASON_MFA, metadata, timeout)

        if not self._has_permission(principal, resource, action):
            return self._deny(principal, Severity.HIGH,
                              f"Unauthorized access attempt: {action} on {resource}",
                              REASON_PERMISSION,
                              {**metadata, "role": principal.role.value}, timeout)

        requires_approval = self.policy.approval_rule.matches(resource, action)
        if requires_approval and principal.role is not Role.EXECUTIVE:
            return self._deny(principal, Severity.MEDIUM,
                              f"Executive approval required for: {action} on {resource}",
                              REASON_APPROVAL, metadata, timeout,
                              requires_approval=True)

        self.writer.record_audit(AuditEvent(
            principal_id=principal.principal_id,
            action=f"AUTHORIZE_{action.upper()}",
            resource=resource,
            result=AuditResult.SUCCESS,
            ip_address=context.get("ip_address"),
            user_agent=context.get("user_agent"),
            metadata={"role": principal.role.value, "requires_approval": requires_approval},
        ), timeout=timeout)
        return AuthorizationDecision(
            allowed=True,
            audit_required=self.policy.audit_rule.matches(resource, action),
        )

    def _report_system_error(self, principal: Principal, resource: str,
                             action: str, timeout: float):
        try:
            self.writer.record_security_incident(SecurityIncident(
                category=IncidentCategory.AUTHORIZATION,
                severity=Severity.MEDIUM,
                description="Authorization system error",
                principal_id=principal.principal_id,
                metadata={"resource": resource, "action": action},
            ), timeout=timeout)
        except StorageError:
            logger.error("Could not record authorization system error for %s",
                         principal.principal_id)

    def authorize_agent_action(self, principal: Principal, action: str,
                               metadata: Optional[Dict[str, Any]] = None,
                               timeout: Optional[float] = None) -> AuthorizationDecision:
        """
        An active human Executive with MFA may run an agent action directly;
        any other caller has it queued for approval.
        """
        timeout = self.config.authorization_timeout if timeout is None else timeout
        try:
            if (principal.role is Role.EXECUTIVE and principal.is_active
                    and principal.mfa_enabled and not principal.is_agent):
                self.writer.record_audit(AuditEvent(
                    principal_id=principal.principal_id,
                    action=f"AI_ACTION_{action.upper()}",
                    resource="ai_actions",
                    result=AuditResult.SUCCESS,
                    metadata=metadata or {},
                ), timeout=timeout)
                decision = AuthorizationDecision(allowed=True, audit_required=True)
            else:
                action_id = self.writer.record_agent_action(
                    principal.principal_id, action, metadata, timeout=timeout
                )
                decision = AuthorizationDecision(allowed=False, reason=REASON_AGENT,
                                                 requires_approval=True,
                                                 audit_required=True,
                                                 pending_action_id=action_id)
        except StorageError:
            logger.exception("Agent action authorization failed for %s", principal.principal_id)
            self._report_system_error(principal, "ai_actions", action, timeout)
            decision = AuthorizationDecision(allowed=False, reason=REASON_SYSTEM)

        metrics.record_decision(decision.allowed, decision.reason or "")
        return decision

    # ── Principal directory ──

    def _reject_management(self, operation: str, caller: Principal, reason: str,
                           metadata: Dict[str, Any]):
        self.writer.record_security_incident(SecurityIncident(
            category=IncidentCategory.AUTHORIZATION,
            severity=Severity.HIGH,
            description=f"Unauthorized {operation.lower().replace('_', ' ')} attempt",
            principal_id=caller.principal_id,
            metadata=metadata,
        ))
        self.writer.record_audit(AuditEvent(
            principal_id=caller.principal_id,
            action=operation,
            resource="users",
            result=AuditResult.FAILURE,
            metadata={**metadata, "reason": reason},
        ))
        raise ForbiddenError(operation, caller.principal_id, reason)

    def create_user(self, creator: Principal, username: str, role: Union[Role, str],
                    email: Optional[str] = None, mfa_enabled: bool = False,
                    is_agent: bool = False,
                    permissions: Tuple[Permission, ...] = ()) -> Principal:
        role = Role.parse(role)
        if not username:
            raise ValidationError("username is required")

        decision = self.authorize(creator, "users", "create")
        if not decision.allowed:
            raise ForbiddenError("CREATE_USER", creator.principal_id, decision.reason or "")

        user = Principal(
            principal_id=generate_id("usr"),
            username=username,
            role=role,
            mfa_enabled=mfa_enabled,
            is_active=True,
            email=email,
            permissions=tuple(permissions),
            is_agent=is_agent,
        )
        self.writer.record_audit(AuditEvent(
            principal_id=creator.principal_id,
            action="CREATE_USER",
            resource="users",
            metadata={"created_user_id": user.principal_id, "role": role.value},
        ))
        self._users[user.principal_id] = user
        logger.info("User %s created by %s with role %s",
                    user.principal_id, creator.principal_id, role.value)
        return user

    def register(self, principal: Principal) -> Principal:
        """Add an externally provisioned principal to the directory."""
        self._users[principal.principal_id] = principal
        return principal

    def get_user(self, user_id: str) -> Principal:
        user = self._users.get(user_id)
        if user is None:
            raise NotFoundError("User", user_id)
        return user

    def list_users(self, include_inactive: bool = False) -> List[Principal]:
        return [u for u in self._users.values() if include_inactive or u.is_active]

    def update_user_role(self, user_id: str, new_role: Union[Role, str],
                         updated_by: Principal) -> Principal:
        new_role = Role.parse(new_role)
        metadata = {"target_user_id": user_id, "new_role": new_role.value}

        if updated_by.role is not Role.EXECUTIVE or not updated_by.is_active:
            self._reject_management("UPDATE_USER_ROLE", updated_by,
                                    "only an active executive may change roles", metadata)
        if not updated_by.mfa_enabled:
            self._reject_management("UPDATE_USER_ROLE", updated_by, REASON_MFA, metadata)

        user = self.get_user(user_id)
        updated = replace(user, role=new_role)
        self.writer.record_audit(AuditEvent(
            principal_id=updated_by.principal_id,
            action="UPDATE_USER_ROLE",
            resource="users",
            metadata={**metadata, "previous_role": user.role.value},
        ))
        self._users[user_id] = updated
        logger.info("Role of %s changed %s -> %s by %s",
                    user_id, user.role.value, new_role.value, updated_by.principal_id)
        return updated

    def deactivate_user(self, user_id: str, deactivated_by: Principal) -> Principal:
        metadata = {"deactivated_user_id": user_id}
        if not deactivated_by.is_active or not self._has_permission(deactivated_by, "users", "update"):
            self._reject_management("DEACTIVATE_USER", deactivated_by,
                                    "users:update permission required", metadata)
        if not deactivated_by.mfa_enabled:
            self._reject_management("DEACTIVATE_USER", deactivated_by, REASON_MFA, metadata)

        user = self.get_user(user_id)
        deactivated = replace(user, is_active=False)
        self.writer.record_audit(AuditEvent(
            principal_id=deactivated_by.principal_id,
            action="DEACTIVATE_USER",
            resource="users",
            metadata=metadata,
        ))
        self._users[user_id] = deactivated
        logger.info("User %s deactivated by %s", user_id, deactivated_by.principal_id)
        return deactivated

    # ── Security posture ──

    def _require_reader(self) -> AuditReader:
        if self.reader is None:
            raise ValidationError("AccessControl was constructed without an AuditReader")
        return self.reader

    def security_score(self) -> int:
        counts = self._require_reader().incident_severity_counts()
        score = 100
        score -= counts.get(Severity.CRITICAL, 0) * 20
        score -= counts.get(Severity.HIGH, 0) * 10
        score -= counts.get(Severity.MEDIUM, 0) * 5
        score = max(0, score)
        metrics.SECURITY_SCORE.set(score)
        return score

    def security_report(self) -> Dict[str, Any]:
        reader = self._require_reader()
        counts = reader.incident_severity_counts()
        return {
            "total_security_events": sum(counts.values()),
            "critical_events": counts.get(Severity.CRITICAL, 0),
            "high_severity_events": counts.get(Severity.HIGH, 0),
            "recent_audit_events": [r.to_dict() for r in reader.query_audit(limit=10)],
            "security_score": self.security_score(),
        }
