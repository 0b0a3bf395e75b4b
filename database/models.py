"""SQLAlchemy models."""

from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, Float, Integer, JSON, String
from sqlalchemy.orm import declarative_base

Base = declarative_base()

JOB_PENDING = "pending"
JOB_RUNNING = "running"
JOB_COMPLETED = "completed"
JOB_STOPPED = "stopped"


class TradeRecord(Base):
    """Append-only trade log; rows are never updated by the strategy runtime."""

    __tablename__ = "trades"

    id = Column(Integer, primary_key=True)
    bot_id = Column(String, nullable=False, index=True)
    strategy = Column(String, nullable=False, index=True)
    owner_id = Column(String, nullable=False, default="", index=True)
    wallet_id = Column(String, nullable=False, default="")
    category = Column(String, nullable=False, default="")
    input_mint = Column(String, nullable=False)
    output_mint = Column(String, nullable=False, index=True)
    in_amount = Column(Integer, nullable=False, default=0)
    out_amount = Column(Integer, nullable=False, default=0)
    # Output still held; exits elsewhere zero it out.
    remaining_out = Column(Integer, nullable=False, default=0)
    spent = Column(Float, nullable=False, default=0.0)
    price_impact = Column(Float, nullable=True)
    signature = Column(String, nullable=False, index=True)
    simulated = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class TpSlRule(Base):
    __tablename__ = "tp_sl_rules"

    id = Column(Integer, primary_key=True)
    trade_id = Column(Integer, nullable=True, index=True)
    owner_id = Column(String, nullable=False, default="")
    wallet_id = Column(String, nullable=False, default="")
    mint = Column(String, nullable=False, index=True)
    strategy = Column(String, nullable=False)
    entry_price = Column(Float, nullable=True)
    take_profit = Column(Float, nullable=True)
    stop_loss = Column(Float, nullable=True)
    amount = Column(Integer, nullable=False, default=0)
    enabled = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class ScheduledJob(Base):
    __tablename__ = "scheduled_jobs"

    id = Column(String, primary_key=True)
    owner_id = Column(String, nullable=False, default="", index=True)
    wallet_id = Column(String, nullable=False, default="")
    kind = Column(String, nullable=False)
    launch_at = Column(DateTime, nullable=False, index=True)
    config = Column(JSON, nullable=False, default=dict)
    status = Column(String, nullable=False, default=JOB_PENDING)  # pending/running/completed/stopped
    last_error = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class StrategyRunStatus(Base):
    """Persisted "should be running" rows replayed at process start."""

    __tablename__ = "strategy_runs"

    bot_id = Column(String, primary_key=True)
    kind = Column(String, nullable=False)
    owner_id = Column(String, nullable=False, default="")
    config = Column(JSON, nullable=False, default=dict)
    status = Column(String, nullable=False, default="running")
    reason = Column(String, nullable=True)
    restart_count = Column(Integer, nullable=False, default=0)
    started_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
