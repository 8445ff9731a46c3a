# gamepulse/models.py
import uuid
from enum import Enum

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
)

from gamepulse.database import Base, JSONType, utcnow


def new_event_id() -> str:
    return str(uuid.uuid4())


class EventType(str, Enum):
    """Event types the aggregators understand. Ingestion also stores unknown ones."""

    APP_INSTALLED = "app_installed"
    APP_LAUNCHED = "app_launched"
    GAME_STARTED = "game_started"
    GAME_ENDED = "game_ended"
    LEVEL_COMPLETED = "level_completed"
    CURRENCY_EARNED = "currency_earned"
    CURRENCY_SPENT = "currency_spent"
    PURCHASE_COMPLETED = "purchase_completed"
    AD_WATCHED = "ad_watched"
    NICKNAME_CHANGED = "nickname_changed"


class EventStatus(str, Enum):
    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"


# --- EVENT STORE ---

class Event(Base):
    __tablename__ = "events"

    id = Column(String(36), primary_key=True, default=new_event_id)
    event_type = Column(String(50), nullable=False)
    subject_id = Column(String(255), nullable=False)
    payload = Column(JSONType, nullable=False, default=dict)
    client_timestamp = Column(Float, nullable=True)
    received_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    status = Column(String(16), nullable=False, default=EventStatus.PENDING.value)
    processing_attempts = Column(Integer, nullable=False, default=0)
    processing_error = Column(Text, nullable=True)

    __table_args__ = (
        Index("ix_events_status_type_received", "status", "event_type", "received_at"),
        Index("ix_events_type_received", "event_type", "received_at"),
        Index("ix_events_subject", "subject_id", "received_at"),
    )


class LedgerEntry(Base):
    """(scope, event) pairs already folded. The composite key is the dedup store."""

    __tablename__ = "aggregation_ledger"

    scope = Column(String(120), primary_key=True)
    event_id = Column(String(36), primary_key=True, index=True)
    processed_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


# --- AGGREGATE STORE ---

class LeaderboardEntry(Base):
    __tablename__ = "leaderboard_entries"

    subject_id = Column(String(255), primary_key=True)
    best_score = Column(Integer, nullable=False, default=0, index=True)
    games_played = Column(Integer, nullable=False, default=0)
    total_playtime_seconds = Column(BigInteger, nullable=False, default=0)
    last_played_at = Column(DateTime(timezone=True))
    updated_at = Column(DateTime(timezone=True), default=utcnow)


class Tournament(Base):
    __tablename__ = "tournaments"

    id = Column(String(100), primary_key=True)
    name = Column(String(200), nullable=False)
    starts_at = Column(DateTime(timezone=True), nullable=False)
    ends_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class TournamentStanding(Base):
    __tablename__ = "tournament_standings"

    tournament_id = Column(String(100), primary_key=True)
    subject_id = Column(String(255), primary_key=True)
    best_score = Column(Integer, nullable=False, default=0)
    attempts = Column(Integer, nullable=False, default=0)
    first_attempt_at = Column(DateTime(timezone=True))
    last_attempt_at = Column(DateTime(timezone=True))
    updated_at = Column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        Index("ix_tournament_standings_score", "tournament_id", "best_score"),
    )


class KpiDaily(Base):
    __tablename__ = "kpi_daily"

    day = Column(Date, primary_key=True)
    platform = Column(String(20), primary_key=True)
    events_total = Column(Integer, nullable=False, default=0)
    active_users = Column(Integer, nullable=False, default=0)
    installs = Column(Integer, nullable=False, default=0)
    games_played = Column(Integer, nullable=False, default=0)
    total_score = Column(BigInteger, nullable=False, default=0)
    playtime_seconds = Column(BigInteger, nullable=False, default=0)
    levels_completed = Column(Integer, nullable=False, default=0)
    coins_earned = Column(BigInteger, nullable=False, default=0)
    coins_spent = Column(BigInteger, nullable=False, default=0)
    gems_earned = Column(BigInteger, nullable=False, default=0)
    gems_spent = Column(BigInteger, nullable=False, default=0)
    purchases = Column(Integer, nullable=False, default=0)
    revenue_cents = Column(BigInteger, nullable=False, default=0)
    ads_watched = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), default=utcnow)


# Additive columns of KpiDaily, in display order
KPI_COUNTERS = (
    "events_total",
    "active_users",
    "installs",
    "games_played",
    "total_score",
    "playtime_seconds",
    "levels_completed",
    "coins_earned",
    "coins_spent",
    "gems_earned",
    "gems_spent",
    "purchases",
    "revenue_cents",
    "ads_watched",
)


class ActivityDaily(Base):
    __tablename__ = "activity_daily"

    day = Column(Date, primary_key=True)
    platform = Column(String(20), primary_key=True)
    subject_id = Column(String(255), primary_key=True)

    __table_args__ = (Index("ix_activity_daily_subject", "subject_id", "day"),)


class SubjectCohort(Base):
    __tablename__ = "subject_cohorts"

    subject_id = Column(String(255), primary_key=True)
    first_seen_day = Column(Date, nullable=False, index=True)
    last_seen_day = Column(Date, nullable=False)


class Player(Base):
    """Profile side data carried by events; written by the post-ingest processor."""

    __tablename__ = "players"

    subject_id = Column(String(255), primary_key=True)
    nickname = Column(String(50))
    platform = Column(String(20))
    first_seen_at = Column(DateTime(timezone=True))
    last_seen_at = Column(DateTime(timezone=True))


# --- SCHEDULER ---

class JobRun(Base):
    __tablename__ = "job_runs"

    name = Column(String(100), primary_key=True)
    in_flight = Column(Boolean, nullable=False, default=False)
    last_started_at = Column(DateTime(timezone=True))
    last_finished_at = Column(DateTime(timezone=True))
    last_success_at = Column(DateTime(timezone=True))
    last_error = Column(Text)
    run_count = Column(Integer, nullable=False, default=0)
    failure_count = Column(Integer, nullable=False, default=0)
    last_result = Column(JSONType)
