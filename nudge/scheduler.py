"""
Nudge - Follow-up Sweep & Worker
Finds due follow-ups, checks the thread for a reply once per sequence, then
either cancels the whole remaining chain or sends the due messages in order.
Also flushes the send-later queue. Designed to run as a separate worker
process alongside the API server, or on demand through the API.
"""
import logging
import signal
import sys
import time
import uuid
from datetime import datetime, timedelta
from typing import Optional
from sqlalchemy import or_
from sqlalchemy.orm import Session
from nudge.audit import audit, gen_request_id
from nudge.config import LOCK_TIMEOUT_SECONDS, MAX_SEND_ATTEMPTS, SCHEMA_VERSION, SWEEP_INTERVAL_SECONDS
from nudge.engine.delays import to_naive_utc
from nudge.errors import DetectionFailure, SendFailure
from nudge.followups import FollowUpManager, cancel_orphans, cancel_pending, converge, lock_is_live, pending_messages
from nudge.integrations.gmail import EmailSender, GmailClient, GmailReplyDetector, GmailSender, ReplyDetector
from nudge.models import (
    SessionLocal, FollowUpSequence, FollowUpMessage, ScheduledEmail,
    SequenceStatus, MessageStatus, ScheduledEmailStatus, init_db, utcnow,
)
from nudge.outbox import mark_scheduled_email_sent

logger = logging.getLogger(__name__)

# Graceful shutdown flag
_shutdown = False


class FollowUpSweeper:
    """One reconciliation pass over due follow-ups and queued emails."""

    def __init__(
        self,
        sender: EmailSender,
        detector: ReplyDetector,
        manager: Optional[FollowUpManager] = None,
        worker_id: Optional[str] = None,
    ):
        self.sender = sender
        self.detector = detector
        self.manager = manager or FollowUpManager()
        self.worker_id = worker_id or f"sweep-{uuid.uuid4().hex[:8]}"

    def sweep(self, db: Session, now: Optional[datetime] = None, user_id: Optional[str] = None) -> dict:
        """Queued emails first, so chains anchored to them see the real send time."""
        now = to_naive_utc(now or utcnow())
        return {
            "scheduled_emails": self.process_scheduled_emails(db, now=now, user_id=user_id),
            "follow_ups": self.process_follow_ups(db, now=now, user_id=user_id),
        }

    # ── Follow-up sequences ──────────────────────────────────────

    def process_follow_ups(self, db: Session, now: Optional[datetime] = None, user_id: Optional[str] = None) -> dict:
        now = to_naive_utc(now or utcnow())
        q = db.query(FollowUpSequence.id).join(FollowUpMessage).filter(
            FollowUpSequence.status == SequenceStatus.ACTIVE.value,
            FollowUpMessage.status == MessageStatus.PENDING.value,
            FollowUpMessage.scheduled_send_at <= now,
        )
        if user_id:
            q = q.filter(FollowUpSequence.user_id == user_id)
        sequence_ids = [row[0] for row in q.distinct().order_by(FollowUpSequence.id).all()]

        results = {"sent": 0, "cancelled": 0, "failed": 0, "errors": 0, "skipped": 0}
        orphans = cancel_orphans(db, now, user_id=user_id)
        db.commit()
        if orphans:
            results["cancelled"] += orphans
            logger.info(f"Cancelled {orphans} follow-up(s) left pending on stopped sequences")

        for sequence_id in sequence_ids:
            request_id = gen_request_id()
            try:
                self._process_sequence(db, sequence_id, now, request_id, results)
            except Exception as e:
                db.rollback()
                results["errors"] += 1
                logger.error(f"Follow-up sequence {sequence_id} failed: {e}", exc_info=True)

        if sequence_ids:
            logger.info(f"Follow-up sweep: {results}")
        return results

    def _process_sequence(self, db: Session, sequence_id: int, now: datetime, request_id: str, results: dict):
        sequence = db.query(FollowUpSequence).filter(
            FollowUpSequence.id == sequence_id,
        ).with_for_update().first()
        if not sequence or sequence.status != SequenceStatus.ACTIVE.value:
            db.commit()
            results["skipped"] += 1
            return

        anchor = sequence.scheduled_email
        if anchor is not None and anchor.status != ScheduledEmailStatus.SENT.value:
            logger.debug(f"Sequence {sequence_id} waits for scheduled email {anchor.id}")
            db.commit()
            results["skipped"] += 1
            return

        due = [
            m for m in pending_messages(sequence)
            if m.scheduled_send_at <= now and not lock_is_live(m, now)
        ]
        if not due:
            db.commit()
            results["skipped"] += 1
            return

        # One reply check for the whole sequence
        try:
            has_reply = self.detector.has_reply_since(
                sequence.user_id, sequence.thread_id, sequence.original_sent_at,
            )
        except DetectionFailure as e:
            db.rollback()
            results["errors"] += 1
            logger.warning(f"Reply check failed for sequence {sequence_id}, leaving it pending: {e}")
            return

        if has_reply:
            cancelled = self.manager.cancel_for_reply(db, sequence, request_id=request_id, now=now)
            db.commit()
            results["cancelled"] += cancelled
            logger.info(f"Reply detected on thread {sequence.thread_id}: "
                        f"cancelled {cancelled} follow-up(s) in sequence {sequence_id}")
            return

        for message in due:
            # A reply seen by an overlapping sweep stops the rest of the chain
            if sequence.status != SequenceStatus.ACTIVE.value:
                break
            if not self._claim(db, message, now):
                results["skipped"] += 1
                continue
            # Claim is visible to overlapping sweeps before the provider call
            db.commit()

            outcome = self._send(db, sequence, message, now, request_id)
            results[outcome] += 1
            if outcome != "sent":
                # Later messages wait for the earlier one
                break

        converge(db, sequence, request_id=request_id)
        db.commit()

    def _claim(self, db: Session, message: FollowUpMessage, now: datetime) -> bool:
        stale_before = now - timedelta(seconds=LOCK_TIMEOUT_SECONDS)
        claimed = db.query(FollowUpMessage).filter(
            FollowUpMessage.id == message.id,
            FollowUpMessage.status == MessageStatus.PENDING.value,
            or_(FollowUpMessage.locked_by.is_(None), FollowUpMessage.locked_at < stale_before),
        ).update(
            {FollowUpMessage.locked_by: self.worker_id, FollowUpMessage.locked_at: now},
            synchronize_session=False,
        )
        return claimed == 1

    def _send(self, db: Session, sequence: FollowUpSequence, message: FollowUpMessage,
              now: datetime, request_id: str) -> str:
        """Returns "sent", "errors" (still pending) or "failed" (gave up)."""
        try:
            result = self.sender.send(
                sequence.user_id,
                to=sequence.recipient_email,
                subject=message.subject,
                body_html=message.body_html,
                thread_id=sequence.thread_id,
            )
        except SendFailure as e:
            return self._record_failure(db, sequence, message, str(e), request_id)
        except Exception as e:
            # Still counts as an attempt and releases the claim
            logger.error(f"Unexpected sender error for follow-up message {message.id}: {e}", exc_info=True)
            return self._record_failure(db, sequence, message, f"{type(e).__name__}: {e}", request_id)

        updated = db.query(FollowUpMessage).filter(
            FollowUpMessage.id == message.id,
            FollowUpMessage.status == MessageStatus.PENDING.value,
            FollowUpMessage.locked_by == self.worker_id,
        ).update(
            {
                FollowUpMessage.status: MessageStatus.SENT.value,
                FollowUpMessage.sent_at: now,
                FollowUpMessage.sent_message_id: result.message_id,
                FollowUpMessage.attempts: FollowUpMessage.attempts + 1,
                FollowUpMessage.last_error: None,
                FollowUpMessage.locked_by: None,
                FollowUpMessage.locked_at: None,
            },
            synchronize_session=False,
        )
        if updated != 1:
            # Delivery already happened, so the row must say so
            updated = db.query(FollowUpMessage).filter(
                FollowUpMessage.id == message.id,
                FollowUpMessage.status.in_([MessageStatus.PENDING.value, MessageStatus.CANCELLED.value]),
            ).update(
                {
                    FollowUpMessage.status: MessageStatus.SENT.value,
                    FollowUpMessage.sent_at: now,
                    FollowUpMessage.sent_message_id: result.message_id,
                    FollowUpMessage.attempts: FollowUpMessage.attempts + 1,
                    FollowUpMessage.locked_by: None,
                    FollowUpMessage.locked_at: None,
                },
                synchronize_session=False,
            )
            logger.error(f"Follow-up message {message.id} was sent after its claim was lost "
                         f"(recorded as sent: {updated == 1})")
        audit(db, "follow_up_sent", user_id=sequence.user_id, sequence_id=sequence.id,
              message_id=message.id, actor="worker", request_id=request_id,
              payload={"sequence_number": message.sequence_number, "provider_message_id": result.message_id})
        db.commit()
        logger.info(f"Follow-up #{message.sequence_number} of sequence {sequence.id} sent to {sequence.recipient_email}")
        return "sent"

    def _record_failure(self, db: Session, sequence: FollowUpSequence, message: FollowUpMessage,
                        error: str, request_id: str) -> str:
        attempts = (message.attempts or 0) + 1
        gave_up = attempts >= MAX_SEND_ATTEMPTS
        values = {
            FollowUpMessage.attempts: attempts,
            FollowUpMessage.last_error: error,
            FollowUpMessage.locked_by: None,
            FollowUpMessage.locked_at: None,
        }
        if gave_up:
            values[FollowUpMessage.status] = MessageStatus.FAILED.value

        db.query(FollowUpMessage).filter(
            FollowUpMessage.id == message.id,
            FollowUpMessage.status == MessageStatus.PENDING.value,
            FollowUpMessage.locked_by == self.worker_id,
        ).update(values, synchronize_session=False)

        event = "follow_up_failed" if gave_up else "follow_up_send_failed"
        audit(db, event, user_id=sequence.user_id, sequence_id=sequence.id, message_id=message.id,
              actor="worker", request_id=request_id, payload={"attempts": attempts, "error": error})
        db.commit()

        if gave_up:
            logger.error(f"Follow-up message {message.id} failed after {attempts} attempts: {error}")
            return "failed"
        logger.warning(f"Follow-up message {message.id} send failed (attempt {attempts}), will retry: {error}")
        return "errors"

    # ── Send-later queue ─────────────────────────────────────────

    def process_scheduled_emails(self, db: Session, now: Optional[datetime] = None,
                                 user_id: Optional[str] = None) -> dict:
        now = to_naive_utc(now or utcnow())
        q = db.query(ScheduledEmail.id).filter(
            ScheduledEmail.status == ScheduledEmailStatus.PENDING.value,
            ScheduledEmail.scheduled_send_at <= now,
        )
        if user_id:
            q = q.filter(ScheduledEmail.user_id == user_id)
        email_ids = [row[0] for row in q.order_by(ScheduledEmail.scheduled_send_at, ScheduledEmail.id).all()]
        db.commit()

        results = {"sent": 0, "failed": 0, "errors": 0, "skipped": 0}
        for email_id in email_ids:
            request_id = gen_request_id()
            try:
                results[self._process_scheduled_email(db, email_id, now, request_id)] += 1
            except Exception as e:
                db.rollback()
                results["errors"] += 1
                logger.error(f"Scheduled email {email_id} failed: {e}", exc_info=True)

        if email_ids:
            logger.info(f"Scheduled email sweep: {results}")
        return results

    def _process_scheduled_email(self, db: Session, email_id: int, now: datetime, request_id: str) -> str:
        # Row lock is held across the send so overlapping sweeps serialize here
        email = db.query(ScheduledEmail).filter(
            ScheduledEmail.id == email_id,
        ).with_for_update().first()
        if not email or email.status != ScheduledEmailStatus.PENDING.value:
            db.commit()
            return "skipped"

        try:
            result = self.sender.send(
                email.user_id,
                to=email.recipient_email,
                subject=email.subject,
                body_html=email.body_html,
                cc=email.cc,
                bcc=email.bcc,
                thread_id=email.thread_id,
                in_reply_to=email.in_reply_to,
                references=email.references_header,
            )
        except SendFailure as e:
            return self._record_scheduled_failure(db, email, str(e), request_id)
        except Exception as e:
            logger.error(f"Unexpected sender error for scheduled email {email_id}: {e}", exc_info=True)
            return self._record_scheduled_failure(db, email, f"{type(e).__name__}: {e}", request_id)

        mark_scheduled_email_sent(
            db, email, result.message_id, result.thread_id or email.thread_id or "", now,
            self.manager, request_id=request_id,
        )
        db.commit()
        logger.info(f"Scheduled email {email_id} sent to {email.recipient_email}")
        return "sent"

    def _record_scheduled_failure(self, db: Session, email: ScheduledEmail, error: str, request_id: str) -> str:
        email.attempts = (email.attempts or 0) + 1
        email.last_error = error
        gave_up = email.attempts >= MAX_SEND_ATTEMPTS
        if gave_up:
            email.status = ScheduledEmailStatus.FAILED.value
            # Chains waiting on an email that never went out cannot start
            for sequence in email.follow_up_sequences:
                if sequence.status == SequenceStatus.ACTIVE.value:
                    cancel_pending(db, sequence)
                    sequence.status = SequenceStatus.CANCELLED_USER.value
                    audit(db, "follow_up_cancelled", user_id=sequence.user_id, sequence_id=sequence.id,
                          actor="worker", request_id=request_id,
                          payload={"reason": "scheduled_email_failed"})
        audit(db, "scheduled_email_send_failed", user_id=email.user_id, actor="worker",
              request_id=request_id,
              payload={"scheduled_email_id": email.id, "attempts": email.attempts, "error": error})
        db.commit()
        logger.warning(f"Scheduled email {email.id} send failed (attempt {email.attempts}): {error}")
        return "failed" if gave_up else "errors"


def build_sweeper(db: Session) -> FollowUpSweeper:
    """Sweeper wired to the Gmail collaborators for this session."""
    client = GmailClient(db)
    return FollowUpSweeper(GmailSender(client), GmailReplyDetector(client))


def _handle_signal(signum, frame):
    global _shutdown
    logger.info(f"Received signal {signum}. Shutting down gracefully...")
    _shutdown = True


def run_worker(poll_interval: int = SWEEP_INTERVAL_SECONDS):
    """
    Worker loop: run one sweep per cycle until SIGTERM/SIGINT.

    Args:
        poll_interval: Seconds between sweeps
    """
    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    init_db()
    logger.info(
        f"Nudge worker started. Schema: {SCHEMA_VERSION}. "
        f"Sweeping every {poll_interval}s."
    )

    while not _shutdown:
        db = SessionLocal()
        try:
            results = build_sweeper(db).sweep(db)
            logger.debug(f"Sweep results: {results}")
        except Exception as e:
            logger.error(f"Worker error: {e}", exc_info=True)
        finally:
            db.close()

        # Sleep in small increments to allow graceful shutdown
        for _ in range(poll_interval):
            if _shutdown:
                break
            time.sleep(1)

    logger.info("Worker shutdown complete.")


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stdout,
    )
    interval = int(sys.argv[1]) if len(sys.argv) > 1 else SWEEP_INTERVAL_SECONDS
    run_worker(poll_interval=interval)
