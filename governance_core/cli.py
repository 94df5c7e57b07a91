"""
Governance Core - Command Line Interface

Operator commands over the governance store. Every command prints JSON.
"""

import json
import logging
import os
import sys
from dataclasses import replace
from pathlib import Path
from typing import Any, Optional

import click

from governance_core.access_control import Principal, Role
from governance_core.config import GovernanceConfig
from governance_core.crypto_utils import generate_key_pair, load_or_create_master_key
from governance_core.exceptions import GovernanceError
from governance_core.governance import GovernanceManager


def _emit(payload: Any):
    click.echo(json.dumps(payload, indent=2, sort_keys=True, default=str))


def _fail(error: GovernanceError):
    click.echo(json.dumps(error.to_dict(), indent=2, default=str), err=True)
    sys.exit(1)


class _State:
    def __init__(self, config: GovernanceConfig):
        self.config = config
        self._manager: Optional[GovernanceManager] = None

    @property
    def manager(self) -> GovernanceManager:
        if self._manager is None:
            self._manager = GovernanceManager(self.config)
        return self._manager

    def close(self):
        if self._manager is not None:
            self._manager.close()


def _approver(approver_id: str, role: str) -> Principal:
    # Operator identity is established upstream; the CLI only names it
    return Principal(principal_id=approver_id, username=approver_id,
                     role=Role.parse(role), mfa_enabled=True, is_active=True)


@click.group()
@click.option("--db", "db_path", type=click.Path(dir_okay=False), default=None,
              help="Path to the governance database")
@click.option("--log-level", default=None,
              type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
              help="Logging level (default: GOVERNANCE_LOG_LEVEL or INFO)")
@click.pass_context
def main(ctx: click.Context, db_path: Optional[str], log_level: Optional[str]):
    """Access control, audit and compliance tooling."""
    config = GovernanceConfig()
    if db_path:
        config = replace(config, database=replace(config.database, db_path=db_path))

    logging.basicConfig(
        level=(log_level or config.logging.level).upper(),
        format=config.logging.format,
        stream=sys.stderr,
    )
    state = _State(config)
    ctx.obj = state
    ctx.call_on_close(state.close)


@main.command("init-key")
@click.pass_obj
def init_key(state: _State):
    """Load the master key, generating and persisting it if absent."""
    try:
        key = load_or_create_master_key(state.config.security)
    except GovernanceError as e:
        _fail(e)
    source = "environment" if state.config.security.master_key else state.config.security.key_file
    _emit({"source": source, "bits": len(key) * 8})


@main.command()
@click.argument("name")
@click.pass_obj
def assess(state: _State, name: str):
    """Assess a compliance framework (SOC2, ISO27001, GDPR)."""
    try:
        _emit(state.manager.assess(name).to_dict())
    except GovernanceError as e:
        _fail(e)


@main.command()
@click.pass_obj
def report(state: _State):
    """Compliance report across all frameworks."""
    try:
        manager = state.manager
        for name in manager.compliance.framework_names():
            manager.assess(name)
        _emit(manager.report())
    except GovernanceError as e:
        _fail(e)


@main.command()
@click.pass_obj
def pending(state: _State):
    """List agent actions awaiting approval."""
    try:
        _emit([a.to_dict() for a in state.manager.pending_agent_actions()])
    except GovernanceError as e:
        _fail(e)


@main.command()
@click.argument("action_id")
@click.option("--approver", required=True, help="Approving principal id")
@click.option("--role", default="executive", help="Approver role")
@click.pass_obj
def approve(state: _State, action_id: str, approver: str, role: str):
    """Approve a pending agent action."""
    try:
        _emit(state.manager.approve_agent_action(action_id, _approver(approver, role)).to_dict())
    except GovernanceError as e:
        _fail(e)


@main.command()
@click.argument("action_id")
@click.option("--approver", required=True, help="Rejecting principal id")
@click.option("--reason", default="", help="Reason recorded with the rejection")
@click.option("--role", default="executive", help="Approver role")
@click.pass_obj
def reject(state: _State, action_id: str, approver: str, reason: str, role: str):
    """Reject a pending agent action."""
    try:
        action = state.manager.reject_agent_action(action_id, _approver(approver, role), reason)
        _emit(action.to_dict())
    except GovernanceError as e:
        _fail(e)


@main.command("schedule-deletion")
@click.argument("data_type")
@click.pass_obj
def schedule_deletion(state: _State, data_type: str):
    """Schedule deletion of a data type per its retention policy."""
    try:
        scheduled = state.manager.schedule_deletion(data_type)
    except GovernanceError as e:
        _fail(e)
    _emit({"data_type": data_type, "scheduled": scheduled})
    if not scheduled:
        sys.exit(2)


@main.command("export-evidence")
@click.argument("name")
@click.option("--private-key", "private_key_path", type=click.Path(exists=True, dir_okay=False),
              default=None, help="PEM private key used to sign the bundle (unsigned if omitted)")
@click.pass_obj
def export_evidence(state: _State, name: str, private_key_path: Optional[str]):
    """Export a compliance evidence bundle, unsigned unless --private-key is given."""
    private_key = Path(private_key_path).read_bytes() if private_key_path else None
    try:
        _emit(state.manager.export_evidence(name, private_key=private_key).to_dict())
    except GovernanceError as e:
        _fail(e)


@main.command("verify-audit")
@click.pass_obj
def verify_audit(state: _State):
    """Recompute integrity tags of stored audit rows."""
    try:
        result = state.manager.verify_audit()
    except GovernanceError as e:
        _fail(e)
    _emit(result.to_dict())
    if not result.ok:
        sys.exit(3)


@main.command()
@click.option("--out", "out_dir", type=click.Path(file_okay=False), default=None,
              help="Write public.pem and private.pem (mode 0600) here instead of printing")
@click.pass_obj
def keypair(state: _State, out_dir: Optional[str]):
    """Generate an RSA key pair for evidence signing."""
    pair = generate_key_pair(state.config.security.rsa_key_size)
    if out_dir is None:
        _emit({"public_key": pair.public_key, "private_key": pair.private_key})
        return
    target = Path(out_dir)
    target.mkdir(parents=True, exist_ok=True)
    private_path = target / "private.pem"
    try:
        fd = os.open(str(private_path), os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    except FileExistsError:
        raise click.ClickException(f"{private_path} already exists; refusing to overwrite")
    with os.fdopen(fd, "w", encoding="ascii") as f:
        f.write(pair.private_key)
    (target / "public.pem").write_text(pair.public_key, encoding="ascii")
    _emit({"public_key": str(target / "public.pem"), "private_key": str(private_path)})


if __name__ == "__main__":
    main()
