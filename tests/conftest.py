import os

# Must be set before nudge.config is imported anywhere
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["ANTHROPIC_API_KEY"] = ""

from datetime import datetime, timedelta
from typing import Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from nudge.errors import DetectionFailure, SendFailure
from nudge.integrations.gmail import EmailSender, ReplyDetector, SentEmail
from nudge.models import Base, FollowUpCreateRequest, FollowUpDraft

T0 = datetime(2024, 1, 1, 9, 0)
USER = "user-1"


class FakeSender(EmailSender):
    def __init__(self):
        self.calls = []
        self.fail_subjects = set()
        self.failures_left = 0

    def send(self, user_id, to, subject, body_html, cc=None, bcc=None,
             thread_id=None, in_reply_to=None, references=None):
        if subject in self.fail_subjects or self.failures_left > 0:
            self.failures_left = max(0, self.failures_left - 1)
            raise SendFailure("provider unavailable")
        self.calls.append({"user_id": user_id, "to": to, "subject": subject,
                           "thread_id": thread_id, "cc": cc, "bcc": bcc})
        return SentEmail(message_id=f"gmail-{len(self.calls)}", thread_id=thread_id or "thread-new")


class FakeDetector(ReplyDetector):
    def __init__(self):
        self.reply = False
        self.broken = False
        self.calls = []

    def has_reply_since(self, user_id, thread_id, since):
        self.calls.append((user_id, thread_id, since))
        if self.broken:
            raise DetectionFailure("mailbox unreachable")
        return self.reply


def draft(delay: int, subject: Optional[str] = None, send_time: str = "09:00",
          body_html: str = "<p>Just checking in.</p>") -> FollowUpDraft:
    return FollowUpDraft(
        relative_delay_days=delay,
        send_time=send_time,
        subject=subject if subject is not None else f"Following up ({delay}d)",
        body_html=body_html,
    )


def create_request(delays, original_sent_at: datetime = T0, **overrides) -> FollowUpCreateRequest:
    fields = {
        "original_message_id": "gmail-orig",
        "thread_id": "thread-1",
        "recipient_email": "ada@example.com",
        "contact_name": "Ada Lovelace",
        "original_subject": "Coffee next week?",
        "original_sent_at": original_sent_at,
        "messages": [draft(d, subject=f"Follow-up {i + 1}") for i, d in enumerate(delays)],
    }
    fields.update(overrides)
    return FollowUpCreateRequest(**fields)


def days(n: int, hours: int = 0) -> timedelta:
    return timedelta(days=n, hours=hours)


@pytest.fixture
def db():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    session = sessionmaker(bind=engine)()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


@pytest.fixture
def sender():
    return FakeSender()


@pytest.fixture
def detector():
    return FakeDetector()
