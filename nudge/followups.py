"""
Nudge - Follow-up Sequences
Create, edit, cancel and read follow-up chains.

Every write path locks the sequence row, re-reads message status and only
touches messages that are still pending. Sent, cancelled and failed messages
are history and never change. The one exception lives in the sweep: a send
the provider accepted is recorded as sent even if its claim was lost.

A reply cancels every pending message except one another sweep is sending
at that moment. That message ends up sent, or is cancelled on a later pass.
"""
import logging
from datetime import datetime, timedelta
from typing import Optional, Sequence
from sqlalchemy import func, or_
from sqlalchemy.orm import Session
from nudge.audit import audit, gen_request_id
from nudge.config import DEFAULT_TIMEZONE, LOCK_TIMEOUT_SECONDS
from nudge.engine.delays import (
    absolute_send_instant, days_elapsed, resolve_zone, to_absolute,
    to_naive_utc, to_relative,
)
from nudge.engine.draft_checker import DraftChecker
from nudge.errors import ConcurrencyConflict, SequenceNotFound, ValidationError
from nudge.models import (
    FollowUpSequence, FollowUpMessage, ScheduledEmail, FollowUpDraft,
    FollowUpCreateRequest, SequenceStatus, MessageStatus,
    ScheduledEmailStatus, TERMINAL_MESSAGE_STATUSES, utcnow,
)

logger = logging.getLogger(__name__)


def lock_is_live(message: FollowUpMessage, now: datetime) -> bool:
    """A sweep currently owns this message."""
    if not message.locked_by or not message.locked_at:
        return False
    return now - message.locked_at < timedelta(seconds=LOCK_TIMEOUT_SECONDS)


def pending_messages(sequence: FollowUpSequence) -> list[FollowUpMessage]:
    return [m for m in sequence.messages if m.status == MessageStatus.PENDING.value]


def unclaimed(now: datetime):
    """SQL filter: no sweep holds a live claim on the message."""
    stale_before = now - timedelta(seconds=LOCK_TIMEOUT_SECONDS)
    return or_(FollowUpMessage.locked_by.is_(None), FollowUpMessage.locked_at < stale_before)


def cancel_pending(db: Session, sequence: FollowUpSequence, now: Optional[datetime] = None) -> int:
    """
    Guarded bulk cancel. Returns how many messages actually moved.
    With `now`, messages a sweep is sending right now are left alone; the
    owning sweep records its outcome and orphans are cleaned up later.
    """
    q = db.query(FollowUpMessage).filter(
        FollowUpMessage.sequence_id == sequence.id,
        FollowUpMessage.status == MessageStatus.PENDING.value,
    )
    if now is not None:
        q = q.filter(unclaimed(now))
    return q.update(
        {
            FollowUpMessage.status: MessageStatus.CANCELLED.value,
            FollowUpMessage.locked_by: None,
            FollowUpMessage.locked_at: None,
        },
        synchronize_session="fetch",
    )


def cancel_orphans(db: Session, now: datetime, user_id: Optional[str] = None) -> int:
    """
    Cancel pending messages left behind on sequences that already stopped.
    That happens when a reply lands while another sweep is mid-send and
    that send then fails. Caller commits.
    """
    q = db.query(FollowUpMessage.id).join(FollowUpSequence).filter(
        FollowUpSequence.status != SequenceStatus.ACTIVE.value,
        FollowUpMessage.status == MessageStatus.PENDING.value,
        unclaimed(now),
    )
    if user_id:
        q = q.filter(FollowUpSequence.user_id == user_id)
    ids = [row[0] for row in q.all()]
    if not ids:
        return 0
    return db.query(FollowUpMessage).filter(
        FollowUpMessage.id.in_(ids),
        FollowUpMessage.status == MessageStatus.PENDING.value,
    ).update(
        {
            FollowUpMessage.status: MessageStatus.CANCELLED.value,
            FollowUpMessage.locked_by: None,
            FollowUpMessage.locked_at: None,
        },
        synchronize_session="fetch",
    )


def converge(db: Session, sequence: FollowUpSequence, request_id: Optional[str] = None) -> bool:
    """Mark an active sequence completed once nothing is pending. Returns True if it changed."""
    if sequence.status != SequenceStatus.ACTIVE.value:
        return False
    remaining = db.query(FollowUpMessage).filter(
        FollowUpMessage.sequence_id == sequence.id,
        FollowUpMessage.status == MessageStatus.PENDING.value,
    ).count()
    if remaining:
        return False
    sequence.status = SequenceStatus.COMPLETED.value
    sequence.updated_at = utcnow()
    audit(db, "follow_up_completed", user_id=sequence.user_id, sequence_id=sequence.id,
          actor="worker", request_id=request_id)
    return True


def reschedule_pending(sequence: FollowUpSequence):
    """Recompute send instants after the anchor moved."""
    for m in pending_messages(sequence):
        m.scheduled_send_at = absolute_send_instant(
            sequence.original_sent_at, m.send_after_days, m.send_time, sequence.timezone,
        )


class FollowUpManager:
    """Owns the follow-up sequence lifecycle outside of the sweep."""

    def __init__(self):
        self.checker = DraftChecker()

    # ── Create ───────────────────────────────────────────────────

    def create(
        self,
        db: Session,
        user_id: str,
        req: FollowUpCreateRequest,
        now: Optional[datetime] = None,
        actor: str = "api",
    ) -> FollowUpSequence:
        """Validate every draft, then persist the sequence and its messages in one commit."""
        now = to_naive_utc(now or utcnow())
        request_id = gen_request_id()
        tz = req.timezone or DEFAULT_TIMEZONE
        try:
            resolve_zone(tz)
        except ValueError as e:
            raise ValidationError(None, str(e)) from e

        scheduled = None
        if req.scheduled_email_id is not None:
            scheduled = db.query(ScheduledEmail).filter(
                ScheduledEmail.id == req.scheduled_email_id,
                ScheduledEmail.user_id == user_id,
            ).first()
            if not scheduled or scheduled.status != ScheduledEmailStatus.PENDING.value:
                raise ValidationError(None, "queued email not found or no longer pending")
            original_sent_at = scheduled.scheduled_send_at
            original_message_id = req.original_message_id or f"scheduled-{scheduled.id}"
            thread_id = req.thread_id or scheduled.thread_id or f"scheduled-{scheduled.id}"
        else:
            if not req.original_message_id or not req.thread_id or not req.original_sent_at:
                raise ValidationError(None, "original_message_id, thread_id and original_sent_at are required")
            original_sent_at = to_naive_utc(req.original_sent_at)
            original_message_id = req.original_message_id
            thread_id = req.thread_id

        if not req.recipient_email.strip():
            raise ValidationError(None, "recipient_email is required")

        self.checker.check(req.messages, original_sent_at, now)

        sequence = FollowUpSequence(
            user_id=user_id,
            original_message_id=original_message_id,
            thread_id=thread_id,
            recipient_email=req.recipient_email.strip(),
            contact_name=req.contact_name or None,
            original_subject=req.original_subject or None,
            original_sent_at=original_sent_at,
            timezone=tz,
            scheduled_email_id=scheduled.id if scheduled else None,
            status=SequenceStatus.ACTIVE.value,
        )
        self._add_messages(sequence, req.messages, first_number=1)
        db.add(sequence)
        db.flush()

        audit(db, "follow_up_created", user_id=user_id, sequence_id=sequence.id, actor=actor,
              request_id=request_id,
              payload={"thread_id": thread_id, "messages": len(req.messages),
                       "send_after_days": [m.send_after_days for m in sequence.messages]})
        db.commit()
        logger.info(f"Follow-up sequence {sequence.id} created for thread {thread_id} "
                    f"({len(req.messages)} message(s))")
        return sequence

    # ── Edit ─────────────────────────────────────────────────────

    def edit(
        self,
        db: Session,
        user_id: str,
        sequence_id: int,
        drafts: Sequence[FollowUpDraft],
        now: Optional[datetime] = None,
        actor: str = "api",
    ) -> FollowUpSequence:
        """Replace the pending messages. History keeps its numbers, new ones continue after it."""
        now = to_naive_utc(now or utcnow())
        request_id = gen_request_id()
        sequence = self._lock(db, user_id, sequence_id)

        try:
            if sequence.status != SequenceStatus.ACTIVE.value:
                raise ConcurrencyConflict(f"Follow-up {sequence_id} is {sequence.status}, not active")

            self.checker.check(drafts, sequence.original_sent_at, now)

            pending = pending_messages(sequence)
            if any(lock_is_live(m, now) for m in pending):
                raise ConcurrencyConflict(f"Follow-up {sequence_id} is being sent right now")

            history = [m for m in sequence.messages if m.status in TERMINAL_MESSAGE_STATUSES]
            next_number = max((m.sequence_number for m in history), default=0) + 1

            for m in pending:
                sequence.messages.remove(m)
            # Old numbers must be gone before new rows reuse them
            db.flush()

            self._add_messages(sequence, drafts, first_number=next_number)
            sequence.updated_at = now
            audit(db, "follow_up_edited", user_id=user_id, sequence_id=sequence.id, actor=actor,
                  request_id=request_id,
                  payload={"replaced": len(pending), "messages": len(drafts),
                           "first_number": next_number})
            db.commit()
        except Exception:
            db.rollback()
            raise

        logger.info(f"Follow-up sequence {sequence_id} edited: {len(pending)} pending replaced by {len(drafts)}")
        return sequence

    # ── Cancel ───────────────────────────────────────────────────

    def cancel(
        self,
        db: Session,
        user_id: str,
        sequence_id: int,
        actor: str = "api",
        now: Optional[datetime] = None,
    ) -> FollowUpSequence:
        """User-initiated cancellation of every pending message."""
        now = to_naive_utc(now or utcnow())
        sequence = self._lock(db, user_id, sequence_id)
        try:
            if sequence.status != SequenceStatus.ACTIVE.value:
                raise ConcurrencyConflict(f"Follow-up {sequence_id} is {sequence.status}, not active")
            if any(lock_is_live(m, now) for m in pending_messages(sequence)):
                raise ConcurrencyConflict(f"Follow-up {sequence_id} is being sent right now")

            cancelled = cancel_pending(db, sequence)
            sequence.status = SequenceStatus.CANCELLED_USER.value
            sequence.updated_at = now
            audit(db, "follow_up_cancelled", user_id=user_id, sequence_id=sequence.id, actor=actor,
                  payload={"reason": "user", "cancelled_messages": cancelled})
            db.commit()
        except Exception:
            db.rollback()
            raise

        logger.info(f"Follow-up sequence {sequence_id} cancelled by user ({cancelled} message(s))")
        return sequence

    def cancel_for_reply(
        self,
        db: Session,
        sequence: FollowUpSequence,
        request_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> int:
        """
        Reply-driven cancellation. No-op on a sequence that already stopped. Caller commits.
        A message another sweep has claimed keeps its claim so a send already
        in flight is still recorded as sent.
        """
        if sequence.status != SequenceStatus.ACTIVE.value:
            return 0
        now = to_naive_utc(now or utcnow())
        cancelled = cancel_pending(db, sequence, now=now)
        sequence.status = SequenceStatus.CANCELLED_REPLY.value
        sequence.updated_at = now
        audit(db, "follow_up_cancelled", user_id=sequence.user_id, sequence_id=sequence.id,
              actor="worker", request_id=request_id,
              payload={"reason": "reply", "cancelled_messages": cancelled})
        return cancelled

    def reanchor(
        self,
        db: Session,
        sequence: FollowUpSequence,
        original_message_id: str,
        thread_id: str,
        sent_at: datetime,
        request_id: Optional[str] = None,
    ):
        """The queued email went out: point the chain at the real message. Caller commits."""
        sequence.original_message_id = original_message_id
        sequence.thread_id = thread_id
        sequence.original_sent_at = to_naive_utc(sent_at)
        reschedule_pending(sequence)
        sequence.updated_at = utcnow()
        audit(db, "follow_up_reanchored", user_id=sequence.user_id, sequence_id=sequence.id,
              actor="worker", request_id=request_id,
              payload={"thread_id": thread_id, "original_sent_at": sequence.original_sent_at.isoformat()})

    # ── Read ─────────────────────────────────────────────────────

    def get(self, db: Session, user_id: str, sequence_id: int) -> FollowUpSequence:
        sequence = db.query(FollowUpSequence).filter(
            FollowUpSequence.id == sequence_id,
            FollowUpSequence.user_id == user_id,
        ).first()
        if not sequence:
            raise SequenceNotFound(f"Follow-up {sequence_id} not found")
        return sequence

    def list_for_user(
        self,
        db: Session,
        user_id: str,
        thread_id: Optional[str] = None,
        status: Optional[str] = None,
    ) -> list[FollowUpSequence]:
        q = db.query(FollowUpSequence).filter(FollowUpSequence.user_id == user_id)
        if thread_id:
            q = q.filter(FollowUpSequence.thread_id == thread_id)
        if status:
            q = q.filter(FollowUpSequence.status == status)
        return q.order_by(FollowUpSequence.created_at.desc(), FollowUpSequence.id.desc()).all()

    def relative_drafts(self, sequence: FollowUpSequence) -> list[FollowUpDraft]:
        """Pending messages in the form the edit screen uses."""
        pending = pending_messages(sequence)
        relative = to_relative([m.send_after_days for m in pending])
        return [
            FollowUpDraft(
                relative_delay_days=delay,
                send_time=m.send_time,
                subject=m.subject,
                body_html=m.body_html,
            )
            for m, delay in zip(pending, relative)
        ]

    def summary(self, sequence: FollowUpSequence, now: Optional[datetime] = None) -> dict:
        """Badge data for the inbox and contact views."""
        now = to_naive_utc(now or utcnow())
        counts = {s.value: 0 for s in MessageStatus}
        for m in sequence.messages:
            counts[m.status] = counts.get(m.status, 0) + 1
        pending = pending_messages(sequence)
        next_send = min((m.scheduled_send_at for m in pending), default=None)
        return {
            "status": sequence.status,
            "total": len(sequence.messages),
            **counts,
            "next_send_at": next_send.isoformat() if next_send else None,
            "days_since_original": days_elapsed(sequence.original_sent_at, now),
        }

    def serialize(self, sequence: FollowUpSequence, now: Optional[datetime] = None) -> dict:
        return {
            "id": sequence.id,
            "thread_id": sequence.thread_id,
            "original_message_id": sequence.original_message_id,
            "recipient_email": sequence.recipient_email,
            "contact_name": sequence.contact_name,
            "original_subject": sequence.original_subject,
            "original_sent_at": sequence.original_sent_at.isoformat(),
            "timezone": sequence.timezone,
            "scheduled_email_id": sequence.scheduled_email_id,
            "status": sequence.status,
            "summary": self.summary(sequence, now),
            "messages": [
                {
                    "id": m.id,
                    "sequence_number": m.sequence_number,
                    "send_after_days": m.send_after_days,
                    "send_time": m.send_time,
                    "scheduled_send_at": m.scheduled_send_at.isoformat(),
                    "subject": m.subject,
                    "body_html": m.body_html,
                    "status": m.status,
                    "sent_at": m.sent_at.isoformat() if m.sent_at else None,
                    "attempts": m.attempts,
                    "last_error": m.last_error,
                }
                for m in sequence.messages
            ],
        }

    def get_stats(self, db: Session) -> dict:
        """Counts per sequence and message status."""
        seq_rows = db.query(FollowUpSequence.status, func.count(FollowUpSequence.id)).group_by(
            FollowUpSequence.status).all()
        msg_rows = db.query(FollowUpMessage.status, func.count(FollowUpMessage.id)).group_by(
            FollowUpMessage.status).all()
        stats = {f"sequences_{s.value}": 0 for s in SequenceStatus}
        stats.update({f"sequences_{status}": count for status, count in seq_rows})
        stats.update({f"messages_{s.value}": 0 for s in MessageStatus})
        stats.update({f"messages_{status}": count for status, count in msg_rows})
        return stats

    # ── Helpers ──────────────────────────────────────────────────

    def _lock(self, db: Session, user_id: str, sequence_id: int) -> FollowUpSequence:
        sequence = db.query(FollowUpSequence).filter(
            FollowUpSequence.id == sequence_id,
            FollowUpSequence.user_id == user_id,
        ).with_for_update().first()
        if not sequence:
            raise SequenceNotFound(f"Follow-up {sequence_id} not found")
        return sequence

    def _add_messages(self, sequence: FollowUpSequence, drafts: Sequence[FollowUpDraft], first_number: int):
        absolute = to_absolute([d.relative_delay_days for d in drafts])
        for offset, (draft, days) in enumerate(zip(drafts, absolute)):
            sequence.messages.append(FollowUpMessage(
                sequence_number=first_number + offset,
                send_after_days=days,
                send_time=draft.send_time,
                scheduled_send_at=absolute_send_instant(
                    sequence.original_sent_at, days, draft.send_time, sequence.timezone,
                ),
                subject=draft.subject.strip(),
                body_html=draft.body_html,
                status=MessageStatus.PENDING.value,
                attempts=0,
            ))
