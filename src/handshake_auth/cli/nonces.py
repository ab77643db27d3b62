#!/usr/bin/env python3
"""
Nonce store maintenance CLI for the handshake authentication engine.

Provisions the nonce table, sweeps expired records and inspects the store.
Sweeping is meant to run periodically (cron, systemd timer) next to the
service that issues challenges.
"""

import asyncio
import json
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import click
from tabulate import tabulate

from ..audit import LogLevel, setup_audit_logger
from ..auth_engine import HandshakeEngine
from ..config import ConfigManager, HandshakeAuthConfig
from ..exceptions import HandshakeError
from ..nonce_store import create_nonce_store
from ..protocol import format_timestamp


def _load(config_path: Optional[Path]) -> HandshakeAuthConfig:
    try:
        return ConfigManager().load_config(config_path)
    except HandshakeError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


def _build_engine(config: HandshakeAuthConfig) -> HandshakeEngine:
    audit_logger = setup_audit_logger(
        enabled=config.audit.enabled,
        log_level=LogLevel(config.audit.log_level),
        log_file_path=config.audit.log_path or None,
        log_successes=config.audit.log_successes,
        log_failures=config.audit.log_failures,
    )
    store = create_nonce_store(config.nonce_store.backend, config.nonce_store.path)
    return HandshakeEngine(config.handshake, nonce_store=store, audit_logger=audit_logger)


@click.group()
@click.option(
    '--config', '-c', 'config_path',
    type=click.Path(dir_okay=False, path_type=Path),
    help='Path to YAML configuration file'
)
@click.pass_context
def main(ctx: click.Context, config_path: Optional[Path]) -> None:
    """Manage the handshake nonce store."""
    ctx.ensure_object(dict)
    ctx.obj['config_path'] = config_path


@main.command()
@click.pass_context
def setup(ctx: click.Context) -> None:
    """Create the nonce table if it does not exist."""
    config = _load(ctx.obj['config_path'])
    store = create_nonce_store(config.nonce_store.backend, config.nonce_store.path)
    try:
        asyncio.run(store.setup())
    except HandshakeError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    click.echo(f"Nonce store ready ({config.nonce_store.backend})")


@main.command()
@click.pass_context
def sweep(ctx: click.Context) -> None:
    """Delete expired nonce records."""
    engine = _build_engine(_load(ctx.obj['config_path']))
    try:
        count = asyncio.run(engine.sweep_expired())
    except HandshakeError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    click.echo(f"Expired nonces cleaned: {count}")


@main.command(name='list')
@click.option(
    '--format', 'output_format',
    type=click.Choice(['table', 'json']),
    default='table',
    help='Output format'
)
@click.pass_context
def list_nonces(ctx: click.Context, output_format: str) -> None:
    """List stored nonce records."""
    config = _load(ctx.obj['config_path'])
    store = create_nonce_store(config.nonce_store.backend, config.nonce_store.path)
    try:
        records = asyncio.run(store.list_records())
    except HandshakeError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    now = datetime.now(timezone.utc)
    rows = [
        {
            "token": record.token,
            "expires_at": format_timestamp(record.expires_at),
            "status": "live" if record.is_live(now) else "expired",
        }
        for record in records
    ]

    if output_format == 'json':
        click.echo(json.dumps(rows, indent=2))
    elif rows:
        click.echo(tabulate(rows, headers="keys", tablefmt="grid"))
    else:
        click.echo("No nonce records stored")


@main.command(name='check-config')
@click.argument(
    'config_file',
    type=click.Path(exists=True, dir_okay=False, path_type=Path)
)
def check_config(config_file: Path) -> None:
    """Validate a configuration file."""
    issues = ConfigManager().validate_config_file(config_file)
    if issues:
        for issue in issues:
            click.echo(f"Error: {issue}", err=True)
        sys.exit(1)
    click.echo("Configuration is valid")


if __name__ == '__main__':
    main()
