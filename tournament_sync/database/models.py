from sqlalchemy import (
    Column, Integer, String, DateTime, Boolean, Text,
    Enum as SQLEnum, UniqueConstraint, CheckConstraint, Index
)
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func
from enum import Enum

Base = declarative_base()

class SyncState(Enum):
    CLEAN = "clean"
    PENDING = "pending"
    FAILED = "failed"

class ReconciliationState(Enum):
    IDLE = "idle"
    COMPUTING = "computing"
    SUBMITTING = "submitting"
    CONFIRMING = "confirming"
    SYNCED = "synced"
    PARTIAL_FAILURE = "partial_failure"

class TournamentWeek(Base):
    __tablename__ = 'tournament_weeks'

    week = Column(Integer, primary_key=True, autoincrement=False)

    # Phase boundaries (UTC)
    registration_start = Column(DateTime(timezone=True), nullable=False)
    registration_end = Column(DateTime(timezone=True), nullable=False)
    point_collection_start = Column(DateTime(timezone=True), nullable=False)
    point_collection_end = Column(DateTime(timezone=True), nullable=False)

    # Metadata
    created_at = Column(DateTime, default=func.now())

    __table_args__ = (
        CheckConstraint('week > 0', name='ck_week_positive'),
    )

    def __repr__(self):
        return f"<TournamentWeek(week={self.week}, ends={self.point_collection_end})>"

class PlayerWeekScore(Base):
    __tablename__ = 'player_week_scores'

    id = Column(Integer, primary_key=True)
    player_address = Column(String(64), nullable=False)
    week = Column(Integer, nullable=False, index=True)

    # Off-chain fields, written by match results only
    off_chain_score = Column(Integer, nullable=False, default=0)

    # Sync bookkeeping, written by the reconciliation scheduler only
    last_synced_score = Column(Integer, nullable=True)
    last_sync_attempt_at = Column(DateTime(timezone=True), nullable=True)
    sync_state = Column(SQLEnum(SyncState), nullable=False, default=SyncState.PENDING)

    # Metadata
    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint('player_address', 'week', name='uq_player_week'),
        CheckConstraint('off_chain_score >= 0', name='ck_off_chain_score_non_negative'),
        Index('ix_player_week_sync_state', 'week', 'sync_state'),
    )

    def to_dict(self) -> dict:
        return {
            'player': self.player_address,
            'off_chain_score': self.off_chain_score,
            'last_synced_score': self.last_synced_score,
            'sync_state': self.sync_state.value if self.sync_state else None,
            'last_sync_attempt_at': self.last_sync_attempt_at.isoformat() if self.last_sync_attempt_at else None,
        }

    def __repr__(self):
        return (f"<PlayerWeekScore(player='{self.player_address}', week={self.week}, "
                f"score={self.off_chain_score}, state={self.sync_state})>")

class WeekSyncStatus(Base):
    __tablename__ = 'week_sync_status'

    week = Column(Integer, primary_key=True, autoincrement=False)
    state = Column(SQLEnum(ReconciliationState), nullable=False)

    # Failure details from the latest terminal outcome
    error_kind = Column(String(50), nullable=True)
    last_error = Column(Text, nullable=True)
    requires_operator = Column(Boolean, default=False, nullable=False)

    # Latest job details
    idempotency_key = Column(String(64), nullable=True)
    last_tx_hash = Column(String(80), nullable=True)
    chain_writes = Column(Integer, default=0, nullable=False)
    attempts = Column(Integer, default=0, nullable=False)
    trigger = Column(String(20), nullable=True)  # "timer" or "manual"

    # Cross-process claim held while a pass runs; NULL when the week is free
    claimed_by = Column(String(120), nullable=True)
    claimed_at = Column(DateTime(timezone=True), nullable=True)

    # Metadata
    updated_at = Column(DateTime(timezone=True), nullable=True)
    last_synced_at = Column(DateTime(timezone=True), nullable=True)

    def to_dict(self) -> dict:
        return {
            'state': self.state.value,
            'error_kind': self.error_kind,
            'last_error': self.last_error,
            'requires_operator': self.requires_operator,
            'idempotency_key': self.idempotency_key,
            'last_tx_hash': self.last_tx_hash,
            'chain_writes': self.chain_writes,
            'attempts': self.attempts,
            'trigger': self.trigger,
            'claimed_by': self.claimed_by,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None,
            'last_synced_at': self.last_synced_at.isoformat() if self.last_synced_at else None,
        }

    def __repr__(self):
        return f"<WeekSyncStatus(week={self.week}, state={self.state}, error='{self.error_kind}')>"

class TournamentEntry(Base):
    __tablename__ = 'tournament_entries'

    id = Column(Integer, primary_key=True)
    player_address = Column(String(64), nullable=False)
    week = Column(Integer, nullable=False)
    room_id = Column(Integer, nullable=False)  # 1-based, filled in join order

    # Ticket purchase that paid for the entry
    ticket_tx_hash = Column(String(80), nullable=True)

    joined_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint('player_address', 'week', name='uq_entry_player_week'),
        UniqueConstraint('ticket_tx_hash', name='uq_entry_ticket'),
        CheckConstraint('room_id > 0', name='ck_room_id_positive'),
        Index('ix_entry_week_room', 'week', 'room_id'),
    )

    def to_dict(self) -> dict:
        return {
            'wallet': self.player_address,
            'week': self.week,
            'roomId': self.room_id,
            'ticketTxHash': self.ticket_tx_hash,
            'joinedAt': self.joined_at.isoformat() if self.joined_at else None,
        }

    def __repr__(self):
        return f"<TournamentEntry(player='{self.player_address}', week={self.week}, room={self.room_id})>"
