"""
SQLAlchemy-backed store for session snapshots.

A session row holds the connection config and bookkeeping; each tunnel,
port-forward rule and jump chain is its own row in ``session_resources``
so that a damaged resource does not prevent loading the rest.
"""

import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from .models import Base, SessionRecord, SessionResourceRecord
from ...core.domain.connection import ConnectionConfig
from ...core.domain.jump import JumpChainConfig
from ...core.domain.session import (
    PortForwardRule, RecoveryPolicy, RecoveryState, ResourceType, SessionData
)
from ...core.domain.tunnel import tunnel_config_from_dict
from ...core.exceptions import BrokerError

logger = logging.getLogger(__name__)


def _to_db_time(value: datetime) -> datetime:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _from_db_time(value: datetime) -> datetime:
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


class SessionStore:
    """Durable session storage. Thread-safe, so calls may run in worker threads."""

    def __init__(self, database_url: str = "sqlite:///data/sessions.db") -> None:
        self.database_url = database_url
        url = make_url(database_url)
        engine_kwargs: Dict[str, Any] = {}

        if url.get_backend_name() == 'sqlite':
            engine_kwargs['connect_args'] = {'check_same_thread': False}
            if not url.database or url.database == ':memory:':
                engine_kwargs['poolclass'] = StaticPool
            else:
                Path(url.database).parent.mkdir(parents=True, exist_ok=True)

        self.engine = create_engine(database_url, echo=False, **engine_kwargs)
        Base.metadata.create_all(self.engine)
        self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False)
        self._lock = threading.Lock()

    def get_session(self) -> Session:
        """Get a new database session"""
        return self.SessionLocal()

    def save(self, data: SessionData) -> None:
        """Insert or replace a session and all of its resources."""
        with self._lock, self.get_session() as db:
            record = db.get(SessionRecord, data.session_id)
            if record is None:
                record = SessionRecord(session_id=data.session_id)
                db.add(record)

            record.connection_config = json.dumps(data.connection_config.to_dict())
            record.created_at = _to_db_time(data.created_at)
            record.last_active = _to_db_time(data.last_active)
            record.persist = data.persist
            record.auto_recover = data.auto_recover
            record.recovery_count = data.recovery_count
            record.recovery_state = data.recovery_state.value
            record.state_data = json.dumps(data.state_dict())
            record.resources = self._resource_rows(data)
            db.commit()

    def load(self, session_id: str) -> Optional[SessionData]:
        with self._lock, self.get_session() as db:
            record = db.get(SessionRecord, session_id)
            return self._to_data(record) if record is not None else None

    def list_persisted(self) -> List[SessionData]:
        """All sessions flagged ``persist``."""
        with self._lock, self.get_session() as db:
            records = db.query(SessionRecord).filter_by(persist=True) \
                .order_by(SessionRecord.created_at).all()
            return [self._to_data(record) for record in records]

    def list_all(self) -> List[SessionData]:
        with self._lock, self.get_session() as db:
            records = db.query(SessionRecord).order_by(SessionRecord.created_at).all()
            return [self._to_data(record) for record in records]

    def update_activity(self, data: SessionData) -> bool:
        """Write the mutable bookkeeping fields without touching resources."""
        with self._lock, self.get_session() as db:
            record = db.get(SessionRecord, data.session_id)
            if record is None:
                return False
            record.last_active = _to_db_time(data.last_active)
            record.recovery_count = data.recovery_count
            record.recovery_state = data.recovery_state.value
            record.state_data = json.dumps(data.state_dict())
            db.commit()
            return True

    def delete(self, session_id: str) -> bool:
        with self._lock, self.get_session() as db:
            record = db.get(SessionRecord, session_id)
            if record is None:
                return False
            db.delete(record)
            db.commit()
            return True

    def delete_expired(self, cutoff: datetime) -> List[str]:
        """Delete non-persisted sessions last active before ``cutoff``."""
        with self._lock, self.get_session() as db:
            records = db.query(SessionRecord).filter(
                SessionRecord.persist.is_(False),
                SessionRecord.last_active < _to_db_time(cutoff),
            ).all()
            deleted = [record.session_id for record in records]
            for record in records:
                db.delete(record)
            db.commit()
            return deleted

    def close(self) -> None:
        self.engine.dispose()

    def _resource_rows(self, data: SessionData) -> List[SessionResourceRecord]:
        rows = [
            SessionResourceRecord(resource_type=ResourceType.TUNNEL.value,
                                  resource_config=json.dumps(tunnel.to_dict()))
            for tunnel in data.tunnels
        ]
        rows.extend(
            SessionResourceRecord(resource_type=ResourceType.PORT_FORWARD.value,
                                  resource_config=json.dumps(rule.to_dict()))
            for rule in data.port_forwards
        )
        if data.jump_chain is not None:
            rows.append(SessionResourceRecord(
                resource_type=ResourceType.JUMP_CHAIN.value,
                resource_config=json.dumps(data.jump_chain.to_dict())))
        return rows

    def _to_data(self, record: SessionRecord) -> SessionData:
        state = json.loads(record.state_data) if record.state_data else {}
        last_attempt = state.get('last_recovery_attempt')
        data = SessionData(
            session_id=record.session_id,
            connection_config=ConnectionConfig.from_dict(json.loads(record.connection_config)),
            created_at=_from_db_time(record.created_at),
            last_active=_from_db_time(record.last_active),
            persist=bool(record.persist),
            auto_recover=bool(record.auto_recover),
            recovery_policy=RecoveryPolicy.from_dict(state.get('recovery_policy') or {}),
            connection_metadata=dict(state.get('connection_metadata') or {}),
            recovery_count=record.recovery_count or 0,
            last_recovery_attempt=datetime.fromisoformat(last_attempt) if last_attempt else None,
            recovery_state=RecoveryState(record.recovery_state or 'stable'),
        )
        data.save_options.update(state.get('save_options') or {})

        for row in record.resources:
            try:
                payload = json.loads(row.resource_config)
                resource_type = ResourceType(row.resource_type)
                if resource_type == ResourceType.TUNNEL:
                    data.tunnels.append(tunnel_config_from_dict(payload))
                elif resource_type == ResourceType.PORT_FORWARD:
                    data.port_forwards.append(PortForwardRule.from_dict(payload))
                elif resource_type == ResourceType.JUMP_CHAIN:
                    data.jump_chain = JumpChainConfig.from_dict(payload)
            except (ValueError, TypeError, KeyError, BrokerError) as e:
                logger.warning(
                    f"Skipping unreadable {row.resource_type} resource of session "
                    f"{record.session_id}: {e}")

        return data
