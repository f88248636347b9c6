"""
Nudge - Audit Trail
One row per state change of a sequence, a follow-up message or a queued email.
Rows are added to the caller's session and land with the caller's commit, so a
rolled-back change leaves no audit row behind.
"""
import logging
import uuid
from typing import Optional
from sqlalchemy.orm import Session
from nudge.models import AuditLog

logger = logging.getLogger(__name__)

AUDIT_EVENTS = frozenset({
    # Sequences
    "follow_up_created", "follow_up_edited", "follow_up_cancelled",
    "follow_up_completed", "follow_up_reanchored",
    # Individual follow-ups
    "follow_up_sent", "follow_up_send_failed", "follow_up_failed",
    # Send-later queue
    "scheduled_email_created", "scheduled_email_sent",
    "scheduled_email_send_failed", "scheduled_email_cancelled",
})


def gen_request_id() -> str:
    """Correlates the audit rows of one API call or one sequence within a sweep."""
    return f"req-{uuid.uuid4().hex[:12]}"


def audit(
    db: Session,
    event: str,
    user_id: Optional[str] = None,
    sequence_id: Optional[int] = None,
    message_id: Optional[int] = None,
    actor: str = "system",
    request_id: Optional[str] = None,
    payload: Optional[dict] = None,
) -> AuditLog:
    """Stage an audit row. `actor` is "api", "worker" or "system"."""
    if event not in AUDIT_EVENTS:
        logger.warning(f"Unregistered audit event: {event}")
    row = AuditLog(
        event=event,
        actor=actor,
        user_id=user_id,
        sequence_id=sequence_id,
        message_id=message_id,
        request_id=request_id or gen_request_id(),
        payload=payload or {},
    )
    db.add(row)
    logger.debug(f"audit {event} user={user_id} sequence={sequence_id} message={message_id} by {actor}")
    return row
