"""
Database models for persisted sessions.
"""

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


class SessionRecord(Base):
    """One persisted session snapshot."""
    __tablename__ = 'sessions'

    session_id = Column(String(64), primary_key=True)
    connection_config = Column(Text, nullable=False)
    # naive UTC
    created_at = Column(DateTime, nullable=False)
    last_active = Column(DateTime, nullable=False, index=True)
    persist = Column(Boolean, default=True, nullable=False, index=True)
    auto_recover = Column(Boolean, default=False, nullable=False)
    recovery_count = Column(Integer, default=0, nullable=False)
    recovery_state = Column(String(20), default='stable', nullable=False)
    state_data = Column(Text)

    resources = relationship(
        "SessionResourceRecord", back_populates="session",
        cascade="all, delete-orphan", order_by="SessionResourceRecord.id")


class SessionResourceRecord(Base):
    """A tunnel, port-forward rule or jump chain belonging to a session."""
    __tablename__ = 'session_resources'

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(String(64), ForeignKey('sessions.session_id', ondelete='CASCADE'),
                        nullable=False, index=True)
    resource_type = Column(String(20), nullable=False)
    resource_config = Column(Text, nullable=False)

    session = relationship("SessionRecord", back_populates="resources")
