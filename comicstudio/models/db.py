import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    Index,
    Integer,
    JSON,
    String,
    Text,
)

from comicstudio.core.database import Base


def utcnow() -> datetime:
    """Current UTC time, naive (all stored timestamps are UTC)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


class Account(Base):
    """Credit-holding account (one per user)"""

    __tablename__ = "accounts"
    __table_args__ = (
        CheckConstraint("credits_balance >= 0", name="ck_accounts_credits_non_negative"),
    )

    account_id = Column(String(36), primary_key=True, default=new_id)
    email = Column(String(255), nullable=True, unique=True)
    display_name = Column(String(100), nullable=True)
    credits_balance = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class CreditTransaction(Base):
    """Append-only ledger entry"""

    __tablename__ = "credit_transactions"
    __table_args__ = (
        Index("ix_credit_transactions_account_created", "account_id", "created_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    tx_id = Column(String(36), nullable=False, unique=True, default=new_id)
    account_id = Column(String(36), nullable=False)
    amount = Column(Integer, nullable=False)  # positive: credit, negative: debit
    balance_after = Column(Integer, nullable=False)
    reason = Column(String(100), nullable=False)  # purchase, job_cancelled, panel_generation, ...
    meta = Column("metadata", JSON, nullable=True)  # job_id etc.
    created_at = Column(DateTime, nullable=False, default=utcnow)


class GenerationJob(Base):
    __tablename__ = "generation_jobs"
    __table_args__ = (
        Index("ix_generation_jobs_account_created", "account_id", "created_at"),
    )

    job_id = Column(String(36), primary_key=True, default=new_id)
    account_id = Column(String(36), nullable=False)
    subject_ref = Column(String(36), nullable=True)  # target panel
    job_type = Column(String(50), nullable=False)
    status = Column(
        String(20), nullable=False, default="pending", index=True
    )  # pending, processing, success, failed, cancelled
    input = Column(JSON, nullable=True)
    result = Column(JSON, nullable=True)
    error = Column(JSON, nullable=True)
    estimated_credits = Column(Integer, nullable=False)
    estimated_duration_seconds = Column(Integer, nullable=True)
    progress = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    started_at = Column(DateTime, nullable=True)
    finished_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class Panel(Base):
    """Image fields of a comic panel written back by finished jobs"""

    __tablename__ = "panels"

    panel_id = Column(String(36), primary_key=True, default=new_id)
    image_url = Column(Text, nullable=True)
    thumbnail_url = Column(Text, nullable=True)
    generation_prompt = Column(Text, nullable=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
