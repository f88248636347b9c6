"""
Nudge - Send-later Queue
Emails queued for a future send. A follow-up chain can hang off a queued
email; it only starts counting once the email actually goes out.
"""
import logging
from datetime import datetime
from typing import Optional
from sqlalchemy.orm import Session
from nudge.audit import audit, gen_request_id
from nudge.engine.delays import to_naive_utc
from nudge.engine.draft_checker import has_body_content
from nudge.errors import ConcurrencyConflict, SequenceNotFound, ValidationError
from nudge.followups import FollowUpManager, cancel_pending
from nudge.models import (
    ScheduledEmail, ScheduledEmailCreateRequest, ScheduledEmailStatus,
    SequenceStatus, utcnow,
)

logger = logging.getLogger(__name__)


def create_scheduled_email(
    db: Session,
    user_id: str,
    req: ScheduledEmailCreateRequest,
    actor: str = "api",
) -> ScheduledEmail:
    if not req.to.strip():
        raise ValidationError(None, "recipient is required")
    if not req.subject.strip():
        raise ValidationError(None, "subject is required")
    if not has_body_content(req.body_html):
        raise ValidationError(None, "body is required")

    email = ScheduledEmail(
        user_id=user_id,
        recipient_email=req.to.strip(),
        cc=req.cc or None,
        bcc=req.bcc or None,
        subject=req.subject.strip(),
        body_html=req.body_html,
        thread_id=req.thread_id or None,
        in_reply_to=req.in_reply_to or None,
        references_header=req.references or None,
        contact_name=req.contact_name or None,
        scheduled_send_at=to_naive_utc(req.scheduled_send_at),
        status=ScheduledEmailStatus.PENDING.value,
    )
    db.add(email)
    db.flush()
    audit(db, "scheduled_email_created", user_id=user_id, actor=actor,
          payload={"scheduled_email_id": email.id, "scheduled_send_at": email.scheduled_send_at.isoformat()})
    db.commit()
    logger.info(f"Scheduled email {email.id} queued for {email.scheduled_send_at}")
    return email


def list_scheduled_emails(db: Session, user_id: str, status: Optional[str] = ScheduledEmailStatus.PENDING.value):
    q = db.query(ScheduledEmail).filter(ScheduledEmail.user_id == user_id)
    if status:
        q = q.filter(ScheduledEmail.status == status)
    return q.order_by(ScheduledEmail.scheduled_send_at.asc()).all()


def cancel_scheduled_email(
    db: Session,
    user_id: str,
    scheduled_email_id: int,
    actor: str = "api",
) -> ScheduledEmail:
    """Cancel a queued email and every chain waiting on it."""
    email = db.query(ScheduledEmail).filter(
        ScheduledEmail.id == scheduled_email_id,
        ScheduledEmail.user_id == user_id,
    ).with_for_update().first()
    if not email:
        raise SequenceNotFound(f"Scheduled email {scheduled_email_id} not found")
    if email.status != ScheduledEmailStatus.PENDING.value:
        db.rollback()
        raise ConcurrencyConflict(f"Scheduled email {scheduled_email_id} is {email.status}")

    email.status = ScheduledEmailStatus.CANCELLED.value
    now = utcnow()
    for sequence in email.follow_up_sequences:
        if sequence.status != SequenceStatus.ACTIVE.value:
            continue
        cancel_pending(db, sequence)
        sequence.status = SequenceStatus.CANCELLED_USER.value
        sequence.updated_at = now
        audit(db, "follow_up_cancelled", user_id=user_id, sequence_id=sequence.id, actor=actor,
              payload={"reason": "scheduled_email_cancelled"})

    audit(db, "scheduled_email_cancelled", user_id=user_id, actor=actor,
          payload={"scheduled_email_id": email.id})
    db.commit()
    logger.info(f"Scheduled email {scheduled_email_id} cancelled")
    return email


def mark_scheduled_email_sent(
    db: Session,
    email: ScheduledEmail,
    message_id: str,
    thread_id: str,
    sent_at: datetime,
    manager: FollowUpManager,
    request_id: Optional[str] = None,
):
    """Record the send and re-anchor chains that were waiting on it. Caller commits."""
    request_id = request_id or gen_request_id()
    email.status = ScheduledEmailStatus.SENT.value
    email.sent_at = sent_at
    email.sent_message_id = message_id
    email.sent_thread_id = thread_id
    email.last_error = None
    for sequence in email.follow_up_sequences:
        if sequence.status == SequenceStatus.ACTIVE.value:
            manager.reanchor(db, sequence, message_id, thread_id, sent_at, request_id=request_id)
    audit(db, "scheduled_email_sent", user_id=email.user_id, actor="worker", request_id=request_id,
          payload={"scheduled_email_id": email.id, "message_id": message_id})


def serialize_scheduled_email(email: ScheduledEmail) -> dict:
    return {
        "id": email.id,
        "to": email.recipient_email,
        "cc": email.cc,
        "bcc": email.bcc,
        "subject": email.subject,
        "body_html": email.body_html,
        "thread_id": email.thread_id,
        "contact_name": email.contact_name,
        "scheduled_send_at": email.scheduled_send_at.isoformat(),
        "status": email.status,
        "sent_at": email.sent_at.isoformat() if email.sent_at else None,
        "attempts": email.attempts,
        "follow_up_ids": [s.id for s in email.follow_up_sequences],
    }
