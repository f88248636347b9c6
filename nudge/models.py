"""
Nudge - Data Models
Follow-up sequences anchored to an original sent (or queued) email.

Tables:
  follow_up_sequences, follow_up_messages, scheduled_emails,
  email_messages, mailbox_connections, audit_log
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from sqlalchemy import (
    create_engine, Column, Integer, String, Text,
    DateTime, ForeignKey, JSON, Index, UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship, sessionmaker
from pydantic import BaseModel, Field
from nudge.config import DATABASE_URL, DEFAULT_SEND_TIME

# ── SQLAlchemy Setup ──────────────────────────────────────────────

Base = declarative_base()
engine = create_engine(DATABASE_URL, echo=False, pool_pre_ping=True)
SessionLocal = sessionmaker(bind=engine)


def utcnow() -> datetime:
    """Naive UTC timestamp, the representation every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ── Enums ─────────────────────────────────────────────────────────

class SequenceStatus(str, Enum):
    ACTIVE = "active"
    CANCELLED_REPLY = "cancelled_reply"     # Recipient answered on the thread
    CANCELLED_USER = "cancelled_user"       # Owner stopped the chain
    COMPLETED = "completed"                 # Every message resolved without reply


class MessageStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    CANCELLED = "cancelled"
    FAILED = "failed"                       # Gave up after MAX_SEND_ATTEMPTS


class ScheduledEmailStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    CANCELLED = "cancelled"
    FAILED = "failed"


class Direction(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


TERMINAL_MESSAGE_STATUSES = (
    MessageStatus.SENT.value,
    MessageStatus.CANCELLED.value,
    MessageStatus.FAILED.value,
)


# ── Database Models ───────────────────────────────────────────────

class FollowUpSequence(Base):
    """A chain of follow-ups anchored to one original email. Never hard-deleted."""
    __tablename__ = "follow_up_sequences"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(36), nullable=False, index=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # Anchor
    original_message_id = Column(String(200), nullable=False)
    thread_id = Column(String(200), nullable=False)
    recipient_email = Column(String(300), nullable=False)
    contact_name = Column(String(300))
    original_subject = Column(String(500))
    original_sent_at = Column(DateTime, nullable=False)
    timezone = Column(String(64), nullable=False, default="UTC")
    scheduled_email_id = Column(Integer, ForeignKey("scheduled_emails.id"), index=True)

    status = Column(String(50), default=SequenceStatus.ACTIVE.value, nullable=False, index=True)

    messages = relationship(
        "FollowUpMessage",
        back_populates="sequence",
        order_by="FollowUpMessage.sequence_number",
        cascade="all, delete-orphan",
    )
    scheduled_email = relationship("ScheduledEmail", back_populates="follow_up_sequences")

    __table_args__ = (
        Index("ix_follow_up_sequences_user_thread", "user_id", "thread_id"),
    )


class FollowUpMessage(Base):
    """One reminder in a sequence. send_after_days is measured from original_sent_at."""
    __tablename__ = "follow_up_messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    sequence_id = Column(Integer, ForeignKey("follow_up_sequences.id"), nullable=False, index=True)
    sequence_number = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=utcnow)

    # Scheduling
    send_after_days = Column(Integer, nullable=False)
    send_time = Column(String(5), nullable=False, default=DEFAULT_SEND_TIME)
    scheduled_send_at = Column(DateTime, nullable=False)

    # Content
    subject = Column(String(500), nullable=False)
    body_html = Column(Text, nullable=False)

    # Status
    status = Column(String(50), default=MessageStatus.PENDING.value, nullable=False)
    sent_at = Column(DateTime)
    sent_message_id = Column(String(200))

    # Sweep bookkeeping
    attempts = Column(Integer, default=0, nullable=False)
    last_error = Column(Text)
    locked_by = Column(String(100))
    locked_at = Column(DateTime)

    sequence = relationship("FollowUpSequence", back_populates="messages")

    __table_args__ = (
        UniqueConstraint("sequence_id", "sequence_number", name="uq_follow_up_message_number"),
        Index("ix_follow_up_messages_due", "status", "scheduled_send_at"),
    )


class ScheduledEmail(Base):
    """Send-later queue. Follow-up chains may anchor here before the email goes out."""
    __tablename__ = "scheduled_emails"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(36), nullable=False, index=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    recipient_email = Column(String(300), nullable=False)
    cc = Column(String(1000))
    bcc = Column(String(1000))
    subject = Column(String(500), nullable=False)
    body_html = Column(Text, nullable=False)
    thread_id = Column(String(200))
    in_reply_to = Column(String(500))
    references_header = Column(Text)
    contact_name = Column(String(300))

    scheduled_send_at = Column(DateTime, nullable=False)
    status = Column(String(50), default=ScheduledEmailStatus.PENDING.value, nullable=False)
    sent_at = Column(DateTime)
    sent_message_id = Column(String(200))
    sent_thread_id = Column(String(200))
    attempts = Column(Integer, default=0, nullable=False)
    last_error = Column(Text)

    follow_up_sequences = relationship("FollowUpSequence", back_populates="scheduled_email")

    __table_args__ = (
        Index("ix_scheduled_emails_due", "status", "scheduled_send_at"),
    )


class EmailMessage(Base):
    """Mailbox cache populated by the email sync. Read here for reply detection."""
    __tablename__ = "email_messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(36), nullable=False)
    provider_message_id = Column(String(200), nullable=False)
    thread_id = Column(String(200), nullable=False)
    direction = Column(String(20), nullable=False)
    from_address = Column(String(300))
    date = Column(DateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "provider_message_id", name="uq_email_message_provider_id"),
        Index("ix_email_messages_thread", "user_id", "thread_id", "direction"),
    )


class MailboxConnection(Base):
    """Connected mailbox for a user. Token refresh happens elsewhere."""
    __tablename__ = "mailbox_connections"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(36), unique=True, nullable=False)
    email_address = Column(String(300), nullable=False)
    access_token = Column(Text, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class AuditLog(Base):
    """Traceability for every follow-up state change."""
    __tablename__ = "audit_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    created_at = Column(DateTime, default=utcnow, index=True)
    request_id = Column(String(36), index=True)
    event = Column(String(100), nullable=False, index=True)
    user_id = Column(String(36), index=True)
    sequence_id = Column(Integer, index=True)
    message_id = Column(Integer)
    actor = Column(String(100))                      # api, worker, system
    payload = Column(JSON)


# ── Pydantic Schemas ──────────────────────────────────────────────

class FollowUpDraft(BaseModel):
    """One message as the edit form holds it: delay relative to the previous message."""
    relative_delay_days: int
    send_time: str = DEFAULT_SEND_TIME
    subject: str
    body_html: str


class FollowUpCreateRequest(BaseModel):
    # Both optional only when anchoring to a queued email
    original_message_id: Optional[str] = None
    thread_id: Optional[str] = None
    recipient_email: str
    contact_name: Optional[str] = None
    original_subject: Optional[str] = None
    original_sent_at: Optional[datetime] = None
    timezone: Optional[str] = None
    scheduled_email_id: Optional[int] = None
    messages: list[FollowUpDraft] = Field(default_factory=list)


class FollowUpEditRequest(BaseModel):
    messages: list[FollowUpDraft] = Field(default_factory=list)


class ScheduledEmailCreateRequest(BaseModel):
    to: str
    cc: Optional[str] = None
    bcc: Optional[str] = None
    subject: str
    body_html: str
    scheduled_send_at: datetime
    thread_id: Optional[str] = None
    in_reply_to: Optional[str] = None
    references: Optional[str] = None
    contact_name: Optional[str] = None


class DraftSuggestionRequest(BaseModel):
    recipient_email: str
    contact_name: Optional[str] = None
    original_subject: Optional[str] = None
    sequence_number: int = 1
    days_since_original: int = 0
    instructions: Optional[str] = None


class DraftSuggestion(BaseModel):
    """Strict JSON schema for AI follow-up draft output."""
    subject: str
    body_html: str


# ── Init Database ─────────────────────────────────────────────────

def init_db():
    """Create all tables."""
    Base.metadata.create_all(bind=engine)


def get_db():
    """Dependency for FastAPI routes."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
