"""
Governance Core - Prometheus Metrics

Counters and gauges for:
- Authorization decisions (by outcome and reason)
- Security incidents (by category and severity)
- Audit store writes (by table and status)
- Compliance and security scores
"""

from prometheus_client import (
    Counter, Gauge, CollectorRegistry, generate_latest,
)


# ══════════════════════════════════════════════════════════════════════════════
# METRICS DEFINITIONS
# ══════════════════════════════════════════════════════════════════════════════

REGISTRY = CollectorRegistry()

AUTHORIZATION_DECISIONS = Counter(
    "governance_authorization_decisions_total",
    "Authorization decisions returned to callers",
    ["outcome", "reason"],
    registry=REGISTRY,
)
SECURITY_INCIDENTS = Counter(
    "governance_security_incidents_total",
    "Security incidents recorded",
    ["category", "severity"],
    registry=REGISTRY,
)
AUDIT_WRITES = Counter(
    "governance_audit_writes_total",
    "Audit store writes",
    ["table", "status"],
    registry=REGISTRY,
)
AGENT_ACTION_DECISIONS = Counter(
    "governance_agent_action_decisions_total",
    "Agent action approvals and rejections",
    ["state"],
    registry=REGISTRY,
)
COMPLIANCE_SCORE = Gauge(
    "governance_compliance_score",
    "Overall compliance score from the latest report (0-100)",
    registry=REGISTRY,
)
FRAMEWORK_STATUS = Gauge(
    "governance_framework_compliant",
    "Framework status from the latest assessment (1=compliant, 0.5=partial, 0=non-compliant)",
    ["framework"],
    registry=REGISTRY,
)
SECURITY_SCORE = Gauge(
    "governance_security_score",
    "Security score from recorded incidents (0-100)",
    registry=REGISTRY,
)


# ══════════════════════════════════════════════════════════════════════════════
# RECORDING HELPERS
# ══════════════════════════════════════════════════════════════════════════════

def record_decision(allowed: bool, reason: str = ""):
    AUTHORIZATION_DECISIONS.labels(
        outcome="allowed" if allowed else "denied",
        reason=reason or "none",
    ).inc()


def record_incident(category: str, severity: str):
    SECURITY_INCIDENTS.labels(category=category, severity=severity).inc()


def record_audit_write(table: str, success: bool):
    AUDIT_WRITES.labels(table=table, status="ok" if success else "error").inc()


def export_metrics() -> bytes:
    """Render all metrics in the Prometheus text exposition format."""
    return generate_latest(REGISTRY)
