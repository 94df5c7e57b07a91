"""
Governance Core - Access Control, Audit and Compliance

Gates sensitive actions behind role checks, multi-factor requirements and
(for agent-originated actions) human executive approval, keeps a
tamper-evident audit trail, and scores the system against compliance
frameworks.

Modules:
- config: Centralized configuration (environment-driven)
- exceptions: Structured exception hierarchy
- crypto_utils: Encryption, password hashing, signatures, integrity tags
- db_manager: SQLite audit store with pooling and append-only schema
- audit: Audit records, security incidents, agent-action approvals
- access_control: Roles, policy store and authorization decisions
- compliance: Framework assessment, retention and evidence export
- metrics: Prometheus metrics export
- governance: GovernanceManager facade
- cli: Operator command line
"""

__version__ = "1.0.0"
__author__ = "Governance Core Team"
__description__ = "Access control, audit and compliance core"
