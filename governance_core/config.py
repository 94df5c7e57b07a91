"""
Governance Core - Centralized Configuration

Single source of truth for all governance settings.
Environment-variable driven with secure defaults.
"""

import os
from dataclasses import dataclass, field, asdict
from typing import List, Dict, Any
from pathlib import Path


# ══════════════════════════════════════════════════════════════════════════════
# ENVIRONMENT
# ══════════════════════════════════════════════════════════════════════════════

def _env(key: str, default: str = "") -> str:
    return os.environ.get(key, default)


def _env_int(key: str, default: int = 0) -> int:
    try:
        return int(os.environ.get(key, str(default)))
    except (ValueError, TypeError):
        return default


def _env_float(key: str, default: float = 0.0) -> float:
    try:
        return float(os.environ.get(key, str(default)))
    except (ValueError, TypeError):
        return default


def _env_list(key: str, default: str = "", sep: str = ",") -> List[str]:
    raw = os.environ.get(key, default)
    return [item.strip() for item in raw.split(sep) if item.strip()] if raw else []


# ══════════════════════════════════════════════════════════════════════════════
# BASE PATHS
# ══════════════════════════════════════════════════════════════════════════════

def data_dir() -> Path:
    """Directory holding the database and the generated master key."""
    return Path(_env("GOVERNANCE_HOME", "~/.governance_core")).expanduser()


# ══════════════════════════════════════════════════════════════════════════════
# SECURITY CONFIG
# ══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class SecurityConfig:
    """Key material and cryptographic parameters."""
    # Master key (hex or urlsafe base64). Empty means: load or generate key_file.
    master_key: str = field(default_factory=lambda: _env("GOVERNANCE_MASTER_KEY", ""))
    key_file: str = field(default_factory=lambda: _env(
        "GOVERNANCE_KEY_FILE", str(data_dir() / "master.key")
    ))

    kdf_iterations: int = field(default_factory=lambda: _env_int("GOVERNANCE_KDF_ITERATIONS", 100_000))
    password_iterations: int = field(default_factory=lambda: _env_int("GOVERNANCE_PASSWORD_ITERATIONS", 100_000))
    associated_data: str = field(default_factory=lambda: _env("GOVERNANCE_AAD", "governance-core"))
    rsa_key_size: int = field(default_factory=lambda: _env_int("GOVERNANCE_RSA_KEY_SIZE", 2048))

    # Seconds an authorization decision may wait on its audit write
    authorization_timeout: float = field(default_factory=lambda: _env_float("GOVERNANCE_AUTHZ_TIMEOUT", 5.0))


# ══════════════════════════════════════════════════════════════════════════════
# DATABASE CONFIG
# ══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class DatabaseConfig:
    """Audit store configuration."""
    db_path: str = field(default_factory=lambda: _env(
        "GOVERNANCE_DB_PATH", str(data_dir() / "governance.db")
    ))
    pool_size: int = field(default_factory=lambda: _env_int("GOVERNANCE_DB_POOL_SIZE", 5))
    max_overflow: int = field(default_factory=lambda: _env_int("GOVERNANCE_DB_MAX_OVERFLOW", 10))
    connect_timeout: float = field(default_factory=lambda: _env_float("GOVERNANCE_DB_TIMEOUT", 30.0))
    acquire_timeout: float = field(default_factory=lambda: _env_float("GOVERNANCE_DB_ACQUIRE_TIMEOUT", 10.0))
    write_timeout: float = field(default_factory=lambda: _env_float("GOVERNANCE_DB_WRITE_TIMEOUT", 5.0))
    journal_mode: str = field(default_factory=lambda: _env("GOVERNANCE_DB_JOURNAL_MODE", "WAL"))
    synchronous: str = field(default_factory=lambda: _env("GOVERNANCE_DB_SYNCHRONOUS", "FULL"))


# ══════════════════════════════════════════════════════════════════════════════
# COMPLIANCE CONFIG
# ══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class ComplianceConfig:
    """Query caps and evidence export window."""
    audit_query_limit: int = field(default_factory=lambda: _env_int("GOVERNANCE_AUDIT_QUERY_LIMIT", 1000))
    incident_query_limit: int = field(default_factory=lambda: _env_int("GOVERNANCE_INCIDENT_QUERY_LIMIT", 500))
    evidence_window_days: int = field(default_factory=lambda: _env_int("GOVERNANCE_EVIDENCE_WINDOW_DAYS", 30))
    frameworks: List[str] = field(default_factory=lambda: _env_list(
        "GOVERNANCE_FRAMEWORKS", "SOC2,ISO27001,GDPR"
    ))


# ══════════════════════════════════════════════════════════════════════════════
# LOGGING CONFIG
# ══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class LoggingConfig:
    level: str = field(default_factory=lambda: _env("GOVERNANCE_LOG_LEVEL", "INFO"))
    format: str = field(default_factory=lambda: _env(
        "GOVERNANCE_LOG_FORMAT", "%(asctime)s %(levelname)s [%(name)s] %(message)s"
    ))


# ══════════════════════════════════════════════════════════════════════════════
# AGGREGATE
# ══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class GovernanceConfig:
    """All configuration sections, read once at startup."""
    security: SecurityConfig = field(default_factory=SecurityConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    compliance: ComplianceConfig = field(default_factory=ComplianceConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def get_all_configs(config: GovernanceConfig) -> Dict[str, Any]:
    """Return all configuration as a serializable dictionary."""
    return {
        "security": {k: v for k, v in asdict(config.security).items()
                     if k not in ("master_key",)},
        "database": asdict(config.database),
        "compliance": asdict(config.compliance),
        "logging": asdict(config.logging),
    }
