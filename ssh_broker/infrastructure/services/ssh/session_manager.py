"""
Session manager: durable snapshots of connections and their resources.

A session captures a connection's config together with its tunnels,
port-forward rules and jump chain. Restoring a session reconnects and
rebuilds those resources; sessions flagged ``auto_recover`` get a
recovery task that watches the connection and restores it with backoff.
"""

import asyncio
import json
import logging
import time
import warnings
from dataclasses import replace
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from .connection_manager import ConnectionManager
from .jump_host_manager import JumpHostManager
from .registry import SessionRegistry
from .tunnel_manager import TunnelManager
from ....core.domain.connection import Connection
from ....core.domain.events import EventNames
from ....core.domain.results import OperationResult, utc_now
from ....core.domain.session import (
    RecoveryResult, RecoveryState, SessionConfig, SessionData, SessionInfo, SessionStatus
)
from ....core.domain.tunnel import LocalTunnelConfig, TunnelConfig
from ....core.exceptions import BrokerError, PartialRecoveryWarning, SessionError
from ....core.interfaces.lifecycle import IComponent
from ....core.services.backoff import recovery_delay
from ...config.models import SessionStoreConfig
from ...persistence.session_store import SessionStore

logger = logging.getLogger(__name__)


class SessionManager(IComponent):
    """Persists, restores and auto-recovers sessions."""

    def __init__(self, connection_manager: ConnectionManager,
                 store: SessionStore,
                 tunnel_manager: Optional[TunnelManager] = None,
                 jump_host_manager: Optional[JumpHostManager] = None,
                 config: Optional[SessionStoreConfig] = None,
                 registry: Optional[SessionRegistry] = None,
                 sleep: Optional[Callable[[float], Awaitable[Any]]] = None):
        self._cm = connection_manager
        self._store = store
        self._tm = tunnel_manager
        self._jm = jump_host_manager
        self._config = config or SessionStoreConfig()
        self._registry = registry or SessionRegistry()
        self._event_bus = connection_manager.event_bus
        self._sleep = sleep or asyncio.sleep

        self._sweep_task: Optional['asyncio.Task[None]'] = None
        self._running = False

    @property
    def name(self) -> str:
        return "SessionManager"

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    async def start(self) -> None:
        """Load persisted sessions and resume recovery for auto-recovering ones."""
        if self._running:
            return
        self._running = True

        stored = await asyncio.to_thread(self._store.list_persisted)
        resumed = 0
        for data in stored:
            if self._registry.get(data.session_id) is not None:
                continue
            info = SessionInfo(data=data, status=SessionStatus.PERSISTED)
            self._registry.add(info)
            if data.auto_recover and data.recovery_state != RecoveryState.FAILED:
                self._start_recovery(info)
                resumed += 1

        if self._config.cleanup_interval_s:
            self._sweep_task = asyncio.create_task(self._sweep_loop())
        logger.info(f"Session manager started ({len(stored)} persisted sessions, "
                    f"{resumed} recovering)")

    async def stop(self) -> None:
        self._running = False
        await self.cleanup()
        logger.info("Session manager stopped")

    async def check_health(self) -> Dict[str, Any]:
        sessions = self._registry.all()
        failed = [i.session_id for i in sessions if i.data.recovery_state == RecoveryState.FAILED]
        return {
            'healthy': not failed,
            'status': 'running' if self._running else 'stopped',
            'details': {
                'sessions_total': len(sessions),
                'sessions_active': sum(1 for i in sessions if self._status(i) == SessionStatus.ACTIVE),
                'recovery_tasks': sum(1 for t in self._registry.recovery_tasks.values() if not t.done()),
                'sessions_failed': failed,
            }
        }

    # Persisting

    async def persist_session(self, config: Union[SessionConfig, Dict[str, Any]]) -> OperationResult:
        """
        Snapshot a live connection into a new session.

        Args:
            config: Which connection to snapshot, what to capture and the
                recovery policy

        Returns:
            OperationResult with the session id and what was captured
        """
        try:
            if isinstance(config, dict):
                config = SessionConfig(**config)
            policy = config.recovery_policy
        except (TypeError, ValueError, BrokerError) as e:
            return OperationResult.fail(f"Invalid session config: {e}")

        try:
            connection = self._require_connection(config.connection_id)
        except SessionError as e:
            return OperationResult.fail(str(e))

        data = SessionData(
            connection_config=connection.config,
            persist=config.persist,
            auto_recover=config.auto_recover,
            recovery_policy=policy,
            port_forwards=list(config.port_forwards) if config.save_port_forwards else [],
            save_options=config.save_options,
        )
        self._capture(data, connection)

        if data.persist:
            try:
                await asyncio.to_thread(self._store.save, data)
            except Exception as e:
                logger.error(f"Failed to store session {data.session_id}: {e}")
                return OperationResult.fail(f"Failed to persist session: {e}")

        info = SessionInfo(data=data, connection_id=connection.id, status=SessionStatus.ACTIVE)
        self._registry.add(info)
        if data.auto_recover:
            self._start_recovery(info)

        logger.info(f"Session {data.session_id} created for {connection.config.label} "
                    f"({len(data.tunnels)} tunnels, {len(data.port_forwards)} port forwards"
                    f"{', jump chain' if data.jump_chain else ''})")
        await self._event_bus.publish(EventNames.SESSION_PERSISTED, {
            'session_id': data.session_id,
            'connection_id': connection.id,
            'persisted': data.persist,
        }, source=self.name)

        return OperationResult.ok({
            'session_id': data.session_id,
            'connection_id': connection.id,
            'persisted': data.persist,
            'auto_recover': data.auto_recover,
            'created_at': data.created_at.isoformat(),
            'tunnels': len(data.tunnels),
            'port_forwards': len(data.port_forwards),
            'jump_chain': data.jump_chain is not None,
        })

    def _capture(self, data: SessionData, connection: Connection) -> None:
        """Copy the connection's counters and live resources into ``data``."""
        data.connection_config = connection.config
        data.connection_metadata = {
            'connection_id': connection.id,
            'bytes_sent': connection.bytes_sent,
            'bytes_received': connection.bytes_received,
            'commands_executed': connection.commands_executed,
            'error_count': connection.error_count,
        }

        if data.save_options.get('tunnels') and self._tm is not None:
            data.tunnels = [t.config for t in self._tm.tunnels_for_connection(connection.id)]

        if data.save_options.get('jump_chain') and self._jm is not None:
            chain = self._jm.find_chain_for_connection(connection.id)
            if chain is not None:
                data.jump_chain = chain.config

    # Restoring

    async def restore_session(self, session_id: str) -> OperationResult:
        """
        Reconnect a session and rebuild its resources.

        Only the reconnection can fail the restore. Tunnels, port forwards
        and the jump chain that cannot be rebuilt are reported as warnings.

        Returns:
            OperationResult wrapping a RecoveryResult
        """
        started = time.perf_counter()
        info = await self._lookup(session_id)
        if info is None:
            return OperationResult.fail(f"Session not found: {session_id}")

        data = info.data
        data.last_recovery_attempt = utc_now()
        problems: List[str] = []

        try:
            connection, chain_id = await self._reconnect(data, problems)
        except BrokerError as e:
            info.connection_id = None
            info.status = SessionStatus.DISCONNECTED
            await self._save_bookkeeping(data)
            logger.warning(f"Failed to restore session {session_id}: {e}")
            return OperationResult.fail(f"Failed to restore session {session_id}: {e}")

        result = RecoveryResult(session_id=session_id, connection_id=connection.id, jump_chain=chain_id)
        if self._tm is not None:
            await self._restore_tunnels(data, connection, result, problems)
        elif data.tunnels or data.port_forwards:
            problems.append("Tunnels not restored: tunnel manager unavailable")

        info.connection_id = connection.id
        info.status = SessionStatus.ACTIVE
        data.recovery_count += 1
        data.recovery_state = RecoveryState.STABLE
        data.last_active = utc_now()
        await self._save_bookkeeping(data)

        result.warnings = problems
        result.recovery_time_ms = (time.perf_counter() - started) * 1000.0
        if problems:
            warnings.warn(
                f"Session {session_id} partially restored: {'; '.join(problems)}",
                PartialRecoveryWarning, stacklevel=2)
            logger.warning(f"Session {session_id} restored with {len(problems)} warnings")
        else:
            logger.info(f"Session {session_id} restored on {connection.id}")

        await self._event_bus.publish(EventNames.SESSION_RECOVERED, {
            'session_id': session_id,
            'connection_id': connection.id,
            'warnings': list(problems),
        }, source=self.name)
        return OperationResult.ok(result.to_dict(), warnings=problems)

    async def _reconnect(self, data: SessionData, problems: List[str]) -> Tuple[Connection, Optional[str]]:
        if data.jump_chain is not None:
            if self._jm is None:
                problems.append("Jump chain not restored: jump host manager unavailable")
            else:
                chained = await self._jm.connect_through_jumps(data.jump_chain)
                connection = (self._cm.peek_connection(chained.data['connection_id'])
                              if chained.success else None)
                if connection is not None:
                    return connection, chained.data['chain_id']
                if chained.data and chained.data.get('chain_id'):
                    await self._jm.close_jump_chain(chained.data['chain_id'])
                problems.append(f"Jump chain not restored ({chained.error}); connected directly")

        return await self._cm.get_or_create(data.connection_config), None

    async def _restore_tunnels(self, data: SessionData, connection: Connection,
                               result: RecoveryResult, problems: List[str]) -> None:
        existing = {self._tunnel_key(t.config): t.id
                    for t in self._tm.tunnels_for_connection(connection.id)}

        for config in data.tunnels:
            tunnel_id = await self._recreate(replace(config, connection_id=connection.id),
                                             existing, problems)
            if tunnel_id:
                result.tunnels.append(tunnel_id)

        for rule in data.port_forwards:
            if rule.protocol != 'tcp':
                problems.append(f"Port forward {rule.local_port} -> {rule.remote_host}:"
                                f"{rule.remote_port} not restored: {rule.protocol} is not supported")
                continue
            config = LocalTunnelConfig(
                connection_id=connection.id,
                bind_address=rule.bind_address,
                local_port=rule.local_port,
                remote_host=rule.remote_host,
                remote_port=rule.remote_port,
            )
            tunnel_id = await self._recreate(config, existing, problems)
            if tunnel_id:
                result.port_forwards.append(tunnel_id)

    async def _recreate(self, config: TunnelConfig, existing: Dict[str, str],
                        problems: List[str]) -> Optional[str]:
        key = self._tunnel_key(config)
        if key in existing:
            return existing[key]

        created = await self._tm.create_tunnel(config)
        if not created.success:
            problems.append(f"{config.type.value.capitalize()} tunnel not restored: {created.error}")
            return None
        existing[key] = created.data['tunnel_id']
        return created.data['tunnel_id']

    @staticmethod
    def _tunnel_key(config: TunnelConfig) -> str:
        return json.dumps(config.to_dict(), sort_keys=True, default=str)

    # Auto-recovery

    def _start_recovery(self, info: SessionInfo) -> None:
        task = self._registry.recovery_tasks.get(info.session_id)
        if task is not None and not task.done():
            return
        self._registry.recovery_tasks[info.session_id] = asyncio.create_task(
            self._recovery_loop(info.session_id))

    async def _recovery_loop(self, session_id: str) -> None:
        """Check the session's connection every interval; recover it when unhealthy."""
        while True:
            await self._sleep(self._config.check_interval_s)
            info = self._registry.get(session_id)
            if info is None:
                return
            if self._is_healthy(info):
                continue
            if not await self._recover(info):
                return

    def _is_healthy(self, info: SessionInfo) -> bool:
        if not info.connection_id:
            return False
        connection = self._cm.peek_connection(info.connection_id)
        return connection is not None and connection.is_live()

    async def _recover(self, info: SessionInfo) -> bool:
        data = info.data
        policy = data.recovery_policy
        data.recovery_state = RecoveryState.RECOVERING
        info.status = SessionStatus.DISCONNECTED
        logger.warning(f"Session {info.session_id} connection lost; starting recovery")
        await self._event_bus.publish(EventNames.SESSION_RECOVERING, {
            'session_id': info.session_id,
            'max_attempts': policy.max_attempts,
        }, source=self.name)

        for attempt in range(1, policy.max_attempts + 1):
            delay_ms = recovery_delay(policy.strategy, attempt, policy.backoff_ms,
                                      self._config.max_backoff_ms)
            logger.info(f"Recovery attempt {attempt}/{policy.max_attempts} for session "
                        f"{info.session_id} in {delay_ms / 1000:.1f}s")
            await self._sleep(delay_ms / 1000.0)

            if self._registry.get(info.session_id) is not info:
                return False

            result = await self.restore_session(info.session_id)
            if result.success:
                return True
            logger.warning(f"Recovery attempt {attempt}/{policy.max_attempts} for session "
                           f"{info.session_id} failed: {result.error}")

        data.recovery_state = RecoveryState.FAILED
        await self._save_bookkeeping(data)
        logger.error(f"Session {info.session_id} recovery failed after "
                     f"{policy.max_attempts} attempts")
        await self._event_bus.publish(EventNames.SESSION_FAILED, {
            'session_id': info.session_id,
            'attempts': policy.max_attempts,
        }, source=self.name)
        return False

    # Queries and updates

    def list_sessions(self, active_only: bool = False) -> OperationResult:
        sessions = []
        for info in self._registry.all():
            info.status = self._status(info)
            if active_only and info.status != SessionStatus.ACTIVE:
                continue
            sessions.append(info.to_dict())
        return OperationResult.ok({'sessions': sessions, 'count': len(sessions)})

    async def save_session_state(self, session_id: str) -> OperationResult:
        """Re-snapshot a session from its live connection and write it to the store."""
        info = self._registry.get(session_id)
        if info is None:
            return OperationResult.fail(f"Session not found: {session_id}")

        connection = self._live_connection(info)
        if connection is None:
            return OperationResult.fail(f"Session {session_id} has no active connection")

        data = info.data
        self._capture(data, connection)
        data.last_active = utc_now()
        try:
            await asyncio.to_thread(self._store.save, data)
        except Exception as e:
            logger.error(f"Failed to save session {session_id}: {e}")
            return OperationResult.fail(f"Failed to save session state: {e}")

        return OperationResult.ok({
            'session_id': session_id,
            'saved': True,
            'tunnels': len(data.tunnels),
            'port_forwards': len(data.port_forwards),
            'jump_chain': data.jump_chain is not None,
            'last_active': data.last_active.isoformat(),
        })

    async def load_session_state(self, session_id: str) -> OperationResult:
        """Current state of a session: connection, live tunnels, chain and metrics."""
        info = await self._lookup(session_id)
        if info is None:
            return OperationResult.fail(f"Session not found: {session_id}")

        data = info.data
        connection = self._live_connection(info)
        tunnels = (self._tm.tunnels_for_connection(connection.id)
                   if connection is not None and self._tm is not None else [])
        chain = (self._jm.find_chain_for_connection(connection.id)
                 if connection is not None and self._jm is not None else None)

        if connection is not None:
            transferred = connection.bytes_sent + connection.bytes_received
            commands = connection.commands_executed
        else:
            transferred = (data.connection_metadata.get('bytes_sent', 0)
                           + data.connection_metadata.get('bytes_received', 0))
            commands = data.connection_metadata.get('commands_executed', 0)

        return OperationResult.ok({
            'session_id': session_id,
            'status': self._status(info).value,
            'connection_state': {
                'connection_id': connection.id if connection else None,
                'connected': connection is not None,
                'status': connection.status.value if connection else 'disconnected',
                'host': data.connection_config.host,
                'port': data.connection_config.port,
                'username': data.connection_config.username,
            },
            'active_tunnels': [t.id for t in tunnels],
            'saved_tunnels': [t.to_dict() for t in data.tunnels],
            'port_forwards': [rule.to_dict() for rule in data.port_forwards],
            'jump_chain': chain.id if chain else None,
            'has_saved_jump_chain': data.jump_chain is not None,
            'recovery_state': data.recovery_state.value,
            'recovery_count': data.recovery_count,
            'metrics': {
                'uptime_seconds': (utc_now() - data.created_at).total_seconds(),
                'bytes_transferred': transferred,
                'commands_executed': commands,
            },
        })

    async def heartbeat(self, session_id: str) -> OperationResult:
        """Mark a session as active now."""
        info = self._registry.get(session_id)
        if info is None:
            return OperationResult.fail(f"Session not found: {session_id}")

        info.data.last_active = utc_now()
        await self._save_bookkeeping(info.data)
        return OperationResult.ok({
            'session_id': session_id,
            'last_active': info.data.last_active.isoformat(),
        })

    # Removal

    async def cleanup_expired_sessions(self, max_age_days: Optional[float] = None) -> OperationResult:
        """Delete non-persisted sessions inactive for longer than ``max_age_days``."""
        days = self._config.expiry_days if max_age_days is None else max_age_days
        cutoff = utc_now() - timedelta(days=days)

        stale = [info.session_id for info in self._registry.all()
                 if not info.data.persist and info.data.last_active < cutoff]
        try:
            deleted = set(await asyncio.to_thread(self._store.delete_expired, cutoff))
            for session_id in stale:
                if session_id not in deleted:
                    # the stored row may be newer than the in-memory snapshot
                    await asyncio.to_thread(self._store.delete, session_id)
        except Exception as e:
            logger.error(f"Failed to sweep expired sessions: {e}")
            return OperationResult.fail(f"Failed to clean up sessions: {e}")

        deleted.update(stale)
        for session_id in deleted:
            await self._forget(session_id)

        if deleted:
            logger.info(f"Removed {len(deleted)} expired sessions")
        return OperationResult.ok({
            'deleted': len(deleted),
            'session_ids': sorted(deleted),
            'cutoff': cutoff.isoformat(),
        })

    async def delete_session(self, session_id: str) -> OperationResult:
        """Cancel a session's recovery and delete it with all stored resources."""
        info = await self._forget(session_id)
        try:
            stored = await asyncio.to_thread(self._store.delete, session_id)
        except Exception as e:
            logger.error(f"Failed to delete session {session_id}: {e}")
            return OperationResult.fail(f"Failed to delete session: {e}")

        if info is None and not stored:
            return OperationResult.fail(f"Session not found: {session_id}")

        logger.info(f"Session {session_id} deleted")
        await self._event_bus.publish(EventNames.SESSION_DELETED, {
            'session_id': session_id,
        }, source=self.name)
        return OperationResult.ok({'session_id': session_id, 'deleted': True})

    async def cleanup(self) -> None:
        """Cancel recovery and sweep tasks and release the store."""
        tasks = [t for t in self._registry.recovery_tasks.values() if not t.done()]
        if self._sweep_task is not None:
            tasks.append(self._sweep_task)
            self._sweep_task = None
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._registry.recovery_tasks.clear()
        self._store.close()

    async def _forget(self, session_id: str) -> Optional[SessionInfo]:
        info = self._registry.remove(session_id)
        task = self._registry.recovery_tasks.pop(session_id, None)
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        return info

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._config.cleanup_interval_s)
            await self.cleanup_expired_sessions()

    # Helpers

    def _require_connection(self, connection_id: str) -> Connection:
        connection = self._cm.peek_connection(connection_id)
        if connection is None or not connection.is_live():
            raise SessionError(f"Connection not found or not active: {connection_id}")
        return connection

    async def _lookup(self, session_id: str) -> Optional[SessionInfo]:
        info = self._registry.get(session_id)
        if info is not None:
            return info
        data = await asyncio.to_thread(self._store.load, session_id)
        if data is None:
            return None
        info = SessionInfo(data=data, status=SessionStatus.PERSISTED)
        self._registry.add(info)
        return info

    def _live_connection(self, info: SessionInfo) -> Optional[Connection]:
        if not info.connection_id:
            return None
        connection = self._cm.peek_connection(info.connection_id)
        return connection if connection is not None and connection.is_live() else None

    def _status(self, info: SessionInfo) -> SessionStatus:
        if self._live_connection(info) is not None:
            return SessionStatus.ACTIVE
        if info.connection_id is None and info.data.persist and info.status != SessionStatus.DISCONNECTED:
            return SessionStatus.PERSISTED
        return SessionStatus.DISCONNECTED

    async def _save_bookkeeping(self, data: SessionData) -> None:
        if not data.persist:
            return
        try:
            await asyncio.to_thread(self._store.update_activity, data)
        except Exception as e:
            logger.error(f"Failed to update stored session {data.session_id}: {e}")
