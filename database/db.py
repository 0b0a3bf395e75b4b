"""Database helpers and CRUD operations."""

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import create_engine, func
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from config import DATABASE_URL
from database.models import (
    Base,
    JOB_PENDING,
    ScheduledJob,
    StrategyRunStatus,
    TpSlRule,
    TradeRecord,
)


def _make_engine(url: str):
    if url in ("sqlite://", "sqlite:///:memory:"):
        return create_engine(
            url,
            future=True,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_engine(url, future=True)


engine = _make_engine(DATABASE_URL)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False, future=True)


def configure(url: str) -> None:
    """Rebind the module engine (tests, alternate deployments) and create tables."""
    global engine, SessionLocal
    engine.dispose()
    engine = _make_engine(url)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False, future=True)
    init_db()


def init_db() -> None:
    Base.metadata.create_all(bind=engine)


def get_db() -> Session:
    return SessionLocal()


# Trades

def append_trade(
    *,
    bot_id: str,
    strategy: str,
    owner_id: str,
    wallet_id: str,
    category: str,
    input_mint: str,
    output_mint: str,
    in_amount: int,
    out_amount: int,
    spent: float,
    price_impact: float | None,
    signature: str,
    simulated: bool,
) -> TradeRecord:
    db = get_db()
    try:
        row = TradeRecord(
            bot_id=bot_id,
            strategy=strategy,
            owner_id=owner_id or "",
            wallet_id=wallet_id or "",
            category=category or "",
            input_mint=input_mint,
            output_mint=output_mint,
            in_amount=int(in_amount),
            out_amount=int(out_amount),
            remaining_out=int(out_amount),
            spent=float(spent),
            price_impact=price_impact,
            signature=signature,
            simulated=bool(simulated),
        )
        db.add(row)
        db.commit()
        db.refresh(row)
        return row
    finally:
        db.close()


def count_open_trades(strategy: str, owner_id: str) -> int:
    db = get_db()
    try:
        return int(
            db.query(func.count(TradeRecord.id))
            .filter(
                TradeRecord.strategy == strategy,
                TradeRecord.owner_id == (owner_id or ""),
                TradeRecord.remaining_out > 0,
            )
            .scalar()
            or 0
        )
    finally:
        db.close()


def list_trades(bot_id: str | None = None, limit: int = 100) -> list[TradeRecord]:
    db = get_db()
    try:
        query = db.query(TradeRecord)
        if bot_id:
            query = query.filter(TradeRecord.bot_id == bot_id)
        return query.order_by(TradeRecord.id.desc()).limit(int(limit)).all()
    finally:
        db.close()


def create_tpsl_rule(
    *,
    trade_id: int | None,
    owner_id: str,
    wallet_id: str,
    mint: str,
    strategy: str,
    amount: int,
    take_profit: float | None,
    stop_loss: float | None,
    entry_price: float | None = None,
) -> TpSlRule:
    db = get_db()
    try:
        rule = TpSlRule(
            trade_id=trade_id,
            owner_id=owner_id or "",
            wallet_id=wallet_id or "",
            mint=mint,
            strategy=strategy,
            amount=int(amount),
            take_profit=take_profit,
            stop_loss=stop_loss,
            entry_price=entry_price,
        )
        db.add(rule)
        db.commit()
        db.refresh(rule)
        return rule
    finally:
        db.close()


# Scheduled jobs

def create_scheduled_job(
    *,
    job_id: str,
    owner_id: str,
    wallet_id: str,
    kind: str,
    launch_at: datetime,
    config: dict[str, Any],
) -> ScheduledJob:
    db = get_db()
    try:
        job = ScheduledJob(
            id=job_id,
            owner_id=owner_id or "",
            wallet_id=wallet_id or "",
            kind=kind,
            launch_at=launch_at,
            config=dict(config or {}),
            status=JOB_PENDING,
        )
        db.add(job)
        db.commit()
        db.refresh(job)
        return job
    finally:
        db.close()


def get_scheduled_job(job_id: str) -> Optional[ScheduledJob]:
    db = get_db()
    try:
        return db.query(ScheduledJob).filter(ScheduledJob.id == job_id).first()
    finally:
        db.close()


def list_pending_jobs(after: datetime | None = None) -> list[ScheduledJob]:
    db = get_db()
    try:
        query = db.query(ScheduledJob).filter(ScheduledJob.status == JOB_PENDING)
        if after is not None:
            query = query.filter(ScheduledJob.launch_at > after)
        return query.order_by(ScheduledJob.launch_at.asc()).all()
    finally:
        db.close()


def update_scheduled_job(job_id: str, **changes: Any) -> Optional[ScheduledJob]:
    db = get_db()
    try:
        job = db.query(ScheduledJob).filter(ScheduledJob.id == job_id).first()
        if not job:
            return None
        for key, value in changes.items():
            setattr(job, key, value)
        db.commit()
        db.refresh(job)
        return job
    finally:
        db.close()


def set_job_status(job_id: str, status: str, error: str | None = None) -> Optional[ScheduledJob]:
    changes: dict[str, Any] = {"status": status}
    if error is not None:
        changes["last_error"] = error[:500]
    return update_scheduled_job(job_id, **changes)


def delete_scheduled_job(job_id: str) -> bool:
    db = get_db()
    try:
        deleted = db.query(ScheduledJob).filter(ScheduledJob.id == job_id).delete()
        db.commit()
        return bool(deleted)
    finally:
        db.close()


# Run status rows

def upsert_run_status(bot_id: str, *, kind: str, owner_id: str, config: dict[str, Any], status: str) -> StrategyRunStatus:
    db = get_db()
    try:
        row = db.query(StrategyRunStatus).filter(StrategyRunStatus.bot_id == bot_id).first()
        if row is None:
            row = StrategyRunStatus(bot_id=bot_id, kind=kind, owner_id=owner_id or "", config=dict(config or {}))
            db.add(row)
        else:
            row.kind = kind
            row.config = dict(config or {})
            row.restart_count = int(row.restart_count or 0) + 1
        row.status = status
        row.reason = None
        db.commit()
        db.refresh(row)
        return row
    finally:
        db.close()


def set_run_status(bot_id: str, status: str, reason: str | None = None) -> Optional[StrategyRunStatus]:
    db = get_db()
    try:
        row = db.query(StrategyRunStatus).filter(StrategyRunStatus.bot_id == bot_id).first()
        if row is None:
            return None
        row.status = status
        row.reason = reason
        db.commit()
        db.refresh(row)
        return row
    finally:
        db.close()


def list_runs(status: str) -> list[StrategyRunStatus]:
    db = get_db()
    try:
        return db.query(StrategyRunStatus).filter(StrategyRunStatus.status == status).all()
    finally:
        db.close()
