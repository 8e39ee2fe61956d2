"""
Main entry point for the SSH broker.

This module provides the command-line interface: running the broker,
managing its configuration and inspecting stored sessions.
"""

import asyncio
import logging
import signal
import sys
from datetime import timedelta
from typing import Optional

import typer

from .application.startup import ApplicationStartup
from .core.domain.connection import ConnectionConfig
from .core.domain.results import utc_now
from .core.exceptions import BrokerError
from .infrastructure.clients.ssh.transport import AsyncSSHTransport
from .infrastructure.config.loader import ConfigLoader
from .infrastructure.config.models import BrokerConfig
from .infrastructure.logging.setup import LoggingManager
from .infrastructure.persistence.session_store import SessionStore
from .infrastructure.services.ssh.connection_manager import ConnectionManager
from .infrastructure.services.ssh.jump_host_manager import JumpHostManager

cli = typer.Typer(
    name="ssh-broker",
    help="Pooled SSH connections, tunnels, jump host chains and recoverable sessions"
)

logger = logging.getLogger(__name__)


def _load(config_file: Optional[str]) -> BrokerConfig:
    try:
        return ConfigLoader().load_config(config_file)
    except Exception as e:
        typer.echo(f"Failed to load configuration: {e}", err=True)
        sys.exit(1)


@cli.command()
def run(
    config_file: Optional[str] = typer.Option(
        None, "--config", "-c", help="Configuration file path"
    ),
    log_level: Optional[str] = typer.Option(
        None, "--log-level", help="Logging level"
    ),
    debug: bool = typer.Option(
        False, "--debug", help="Enable debug mode"
    )
) -> None:
    """Start the broker and keep persisted sessions recovering until interrupted."""

    config = _load(config_file)
    if log_level:
        config.logging.level = log_level.upper()
    if debug:
        config.debug = True
        config.logging.level = "DEBUG"

    try:
        asyncio.run(run_broker(config))
    except KeyboardInterrupt:
        logger.info("Broker interrupted by user")
    except Exception as e:
        logger.error(f"Broker failed: {e}")
        sys.exit(1)


@cli.command()
def init_config(
    output: str = typer.Option(
        "config.yaml", "--output", "-o", help="Output configuration file"
    ),
    format: str = typer.Option(
        "yaml", "--format", "-f", help="Configuration format (yaml/json)"
    )
) -> None:
    """Generate a default configuration file."""

    try:
        ConfigLoader().save_config(BrokerConfig(), output, format)
        typer.echo(f"Default configuration saved to {output}")
    except Exception as e:
        typer.echo(f"Error saving configuration: {e}", err=True)
        sys.exit(1)


@cli.command()
def validate_config(
    config_file: str = typer.Argument(..., help="Configuration file to validate")
) -> None:
    """Validate a configuration file."""

    try:
        config = ConfigLoader().load_config(config_file)
    except Exception as e:
        typer.echo(f"Configuration validation failed: {e}", err=True)
        sys.exit(1)

    typer.echo(f"Configuration file {config_file} is valid")
    typer.echo(f"Broker: {config.name} v{config.version}")
    typer.echo(f"Allowed hosts: {', '.join(config.allowed_hosts) or 'none'}")
    typer.echo(f"Session database: {config.sessions.database_url}")


@cli.command()
def list_sessions(
    config_file: Optional[str] = typer.Option(
        None, "--config", "-c", help="Configuration file path"
    ),
    persisted_only: bool = typer.Option(
        False, "--persisted-only", help="Only show sessions flagged persist"
    )
) -> None:
    """List sessions in the session database."""

    config = _load(config_file)
    store = SessionStore(config.sessions.database_url)
    try:
        sessions = store.list_persisted() if persisted_only else store.list_all()
    finally:
        store.close()

    if not sessions:
        typer.echo("No sessions stored")
        return

    for data in sessions:
        flags = []
        if data.persist:
            flags.append("persist")
        if data.auto_recover:
            flags.append("auto-recover")
        typer.echo(
            f"{data.session_id}  {data.connection_config.label}  "
            f"state={data.recovery_state.value} recoveries={data.recovery_count} "
            f"tunnels={len(data.tunnels)} last_active={data.last_active.isoformat()}"
            + (f"  [{', '.join(flags)}]" if flags else ""))


@cli.command()
def cleanup_sessions(
    config_file: Optional[str] = typer.Option(
        None, "--config", "-c", help="Configuration file path"
    ),
    max_age_days: Optional[float] = typer.Option(
        None, "--max-age-days", help="Age threshold (defaults to sessions.expiry_days)"
    )
) -> None:
    """Delete non-persisted sessions inactive for longer than the age threshold."""

    config = _load(config_file)
    days = config.sessions.expiry_days if max_age_days is None else max_age_days
    store = SessionStore(config.sessions.database_url)
    try:
        deleted = store.delete_expired(utc_now() - timedelta(days=days))
    finally:
        store.close()
    typer.echo(f"Deleted {len(deleted)} expired sessions")


@cli.command()
def delete_session(
    session_id: str = typer.Argument(..., help="Session to delete"),
    config_file: Optional[str] = typer.Option(
        None, "--config", "-c", help="Configuration file path"
    )
) -> None:
    """Delete a stored session and its resources."""

    config = _load(config_file)
    store = SessionStore(config.sessions.database_url)
    try:
        deleted = store.delete(session_id)
    finally:
        store.close()

    if not deleted:
        typer.echo(f"Session not found: {session_id}", err=True)
        sys.exit(1)
    typer.echo(f"Deleted session {session_id}")


@cli.command()
def validate_chain(
    chain_file: str = typer.Argument(..., help="YAML/JSON jump chain definition"),
    config_file: Optional[str] = typer.Option(
        None, "--config", "-c", help="Configuration file path"
    )
) -> None:
    """Validate a jump chain definition without connecting."""

    config = _load(config_file)
    try:
        document = ConfigLoader().load_document(chain_file)
    except Exception as e:
        typer.echo(f"Failed to read {chain_file}: {e}", err=True)
        sys.exit(1)

    manager = JumpHostManager(
        ConnectionManager(AsyncSSHTransport(config.known_hosts_path), allowed_hosts=config.allowed_hosts),
        defaults=config.jump,
    )
    result = manager.validate_jump_chain(document.get('jumps') or [])

    errors = list(result.errors)
    target = document.get('target')
    if isinstance(target, dict):
        try:
            errors.extend(f"Target: {p}" for p in ConnectionConfig.from_dict(target).validation_errors())
        except (TypeError, ValueError, BrokerError) as e:
            errors.append(f"Target: invalid config ({e})")

    for warning in result.warnings:
        typer.echo(f"Warning: {warning}")
    if errors:
        for error in errors:
            typer.echo(f"Error: {error}", err=True)
        sys.exit(1)
    typer.echo(f"Jump chain in {chain_file} is valid ({len(document.get('jumps') or [])} hops)")


async def run_broker(config: BrokerConfig) -> None:
    """
    Run the broker until SIGINT or SIGTERM.

    Args:
        config: Broker configuration
    """
    logging_manager = LoggingManager(config.logging)
    await logging_manager.start()

    startup = ApplicationStartup(config)
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, stop_event.set)
        except NotImplementedError:
            # Windows event loops have no signal handlers
            signal.signal(signum, lambda *_: loop.call_soon_threadsafe(stop_event.set))

    try:
        await startup.start_application()
        logger.info("Broker running; press Ctrl+C to stop")
        await stop_event.wait()
        logger.info("Shutdown requested")
    finally:
        await startup.stop_application()
        await logging_manager.stop()


def main() -> None:
    """Main entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
