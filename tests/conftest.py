"""
Shared fixtures: a throwaway SQLite store, a fixed master key and
pre-wired components for every test module.
"""

import pytest

from governance_core.access_control import AccessControl, PolicyStore, Principal, Role
from governance_core.audit import AuditLog
from governance_core.compliance import ComplianceEngine
from governance_core.config import (
    ComplianceConfig, DatabaseConfig, GovernanceConfig, LoggingConfig, SecurityConfig,
)
from governance_core.crypto_utils import CryptoService, generate_key_pair
from governance_core.db_manager import DatabaseManager
from governance_core.governance import GovernanceManager

MASTER_KEY = bytes(range(32))


# ══════════════════════════════════════════════════════════════════════════════
# CONFIGURATION
# ══════════════════════════════════════════════════════════════════════════════

@pytest.fixture
def security_config(tmp_path):
    """Low iteration counts keep the suite fast; algorithms are unchanged."""
    return SecurityConfig(
        master_key="",
        key_file=str(tmp_path / "master.key"),
        kdf_iterations=1_000,
        password_iterations=1_000,
        associated_data="governance-core",
        rsa_key_size=2048,
        authorization_timeout=2.0,
    )


@pytest.fixture
def database_config(tmp_path):
    return DatabaseConfig(
        db_path=str(tmp_path / "governance.db"),
        pool_size=2,
        max_overflow=4,
        connect_timeout=5.0,
        acquire_timeout=2.0,
        write_timeout=2.0,
        journal_mode="WAL",
        synchronous="FULL",
    )


@pytest.fixture
def compliance_config():
    return ComplianceConfig(
        audit_query_limit=1000,
        incident_query_limit=500,
        evidence_window_days=30,
        frameworks=["SOC2", "ISO27001", "GDPR"],
    )


@pytest.fixture
def governance_config(security_config, database_config, compliance_config):
    return GovernanceConfig(
        security=security_config,
        database=database_config,
        compliance=compliance_config,
        logging=LoggingConfig(level="DEBUG", format="%(levelname)s %(name)s %(message)s"),
    )


# ══════════════════════════════════════════════════════════════════════════════
# COMPONENTS
# ══════════════════════════════════════════════════════════════════════════════

@pytest.fixture
def crypto(security_config):
    return CryptoService(MASTER_KEY, security_config)


@pytest.fixture
def db(database_config):
    manager = DatabaseManager(database_config.db_path, database_config)
    manager.initialize()
    yield manager
    manager.close()


@pytest.fixture
def audit_log(db, crypto, compliance_config):
    return AuditLog(db, crypto, compliance_config)


@pytest.fixture
def policy():
    return PolicyStore.default()


@pytest.fixture
def access(policy, audit_log, security_config):
    return AccessControl(policy, audit_log, audit_log, security_config)


@pytest.fixture
def compliance(audit_log, crypto, compliance_config):
    return ComplianceEngine(audit_log, audit_log, crypto, compliance_config)


@pytest.fixture
def manager(governance_config):
    gm = GovernanceManager(governance_config, master_key=MASTER_KEY)
    yield gm
    gm.close()


@pytest.fixture(scope="session")
def key_pair():
    return generate_key_pair(2048)


# ══════════════════════════════════════════════════════════════════════════════
# PRINCIPALS
# ══════════════════════════════════════════════════════════════════════════════

@pytest.fixture
def make_principal():
    """Factory: make_principal(Role.MEMBER, mfa_enabled=False, ...)."""
    def _make(role=Role.MEMBER, principal_id=None, mfa_enabled=True,
              is_active=True, is_agent=False, **kwargs):
        pid = principal_id or f"{role.value}_user"
        return Principal(principal_id=pid, username=pid, role=role,
                         mfa_enabled=mfa_enabled, is_active=is_active,
                         is_agent=is_agent, **kwargs)
    return _make


@pytest.fixture
def executive(make_principal):
    return make_principal(Role.EXECUTIVE, principal_id="execAlice")
