"""
Nudge - HTTP API
FastAPI routes for follow-up sequences and the send-later queue.
The caller is identified by the X-User-Id header set by the auth proxy.
"""
import logging
from typing import Optional
from fastapi import FastAPI, Depends, Header, HTTPException
from sqlalchemy.orm import Session
from nudge.config import SCHEMA_VERSION
from nudge.engine.draft_writer import suggest_follow_up
from nudge.errors import ConcurrencyConflict, NudgeError, SequenceNotFound, ValidationError
from nudge.followups import FollowUpManager
from nudge.models import (
    FollowUpCreateRequest, FollowUpEditRequest, ScheduledEmailCreateRequest,
    DraftSuggestionRequest, init_db, get_db,
)
from nudge.outbox import (
    cancel_scheduled_email, create_scheduled_email, list_scheduled_emails,
    serialize_scheduled_email,
)
from nudge.scheduler import FollowUpSweeper, build_sweeper

logger = logging.getLogger(__name__)

app = FastAPI(title="Nudge", version="1.0.0")
manager = FollowUpManager()


@app.on_event("startup")
def startup():
    init_db()
    logger.info("Nudge API started. Schema: %s", SCHEMA_VERSION)


def current_user(x_user_id: Optional[str] = Header(default=None)) -> str:
    if not x_user_id:
        raise HTTPException(401, "Unauthorized")
    return x_user_id


def get_sweeper(db: Session = Depends(get_db)) -> FollowUpSweeper:
    return build_sweeper(db)


def _http_error(e: NudgeError) -> HTTPException:
    if isinstance(e, ValidationError):
        return HTTPException(422, e.to_dict())
    if isinstance(e, SequenceNotFound):
        return HTTPException(404, str(e))
    if isinstance(e, ConcurrencyConflict):
        return HTTPException(409, str(e))
    logger.error(f"Unhandled follow-up error: {e}")
    return HTTPException(500, str(e))


# ── Health ───────────────────────────────────────────────────────

@app.get("/health")
def health():
    return {"status": "healthy", "schema_version": SCHEMA_VERSION}


# ── API: Follow-ups ──────────────────────────────────────────────

@app.get("/api/follow-ups")
def list_follow_ups(
    thread_id: Optional[str] = None,
    status: Optional[str] = None,
    user_id: str = Depends(current_user),
    db: Session = Depends(get_db),
):
    sequences = manager.list_for_user(db, user_id, thread_id=thread_id, status=status)
    return {"follow_ups": [manager.serialize(s) for s in sequences]}


@app.get("/api/follow-ups/{sequence_id}")
def get_follow_up(sequence_id: int, user_id: str = Depends(current_user), db: Session = Depends(get_db)):
    try:
        sequence = manager.get(db, user_id, sequence_id)
    except NudgeError as e:
        raise _http_error(e)
    body = manager.serialize(sequence)
    body["drafts"] = [d.model_dump() for d in manager.relative_drafts(sequence)]
    return {"follow_up": body}


@app.post("/api/follow-ups", status_code=201)
def create_follow_up(req: FollowUpCreateRequest, user_id: str = Depends(current_user),
                     db: Session = Depends(get_db)):
    try:
        sequence = manager.create(db, user_id, req)
    except NudgeError as e:
        raise _http_error(e)
    return {"follow_up": manager.serialize(sequence)}


@app.put("/api/follow-ups/{sequence_id}")
def edit_follow_up(sequence_id: int, req: FollowUpEditRequest, user_id: str = Depends(current_user),
                   db: Session = Depends(get_db)):
    try:
        sequence = manager.edit(db, user_id, sequence_id, req.messages)
    except NudgeError as e:
        raise _http_error(e)
    return {"follow_up": manager.serialize(sequence)}


@app.delete("/api/follow-ups/{sequence_id}")
def cancel_follow_up(sequence_id: int, user_id: str = Depends(current_user), db: Session = Depends(get_db)):
    try:
        sequence = manager.cancel(db, user_id, sequence_id)
    except NudgeError as e:
        raise _http_error(e)
    return {"success": True, "status": sequence.status}


@app.post("/api/follow-ups/process")
def process_follow_ups(
    user_id: str = Depends(current_user),
    db: Session = Depends(get_db),
    sweeper: FollowUpSweeper = Depends(get_sweeper),
):
    results = sweeper.process_follow_ups(db, user_id=user_id)
    return {"success": True, **results}


@app.post("/api/follow-ups/draft")
def draft_follow_up(req: DraftSuggestionRequest, user_id: str = Depends(current_user)):
    draft = suggest_follow_up(req)
    return draft.model_dump()


# ── API: Send-later queue ────────────────────────────────────────

@app.get("/api/schedule")
def list_schedule(user_id: str = Depends(current_user), db: Session = Depends(get_db)):
    return {"scheduled_emails": [serialize_scheduled_email(e) for e in list_scheduled_emails(db, user_id)]}


@app.post("/api/schedule", status_code=201)
def create_schedule(req: ScheduledEmailCreateRequest, user_id: str = Depends(current_user),
                    db: Session = Depends(get_db)):
    try:
        email = create_scheduled_email(db, user_id, req)
    except NudgeError as e:
        raise _http_error(e)
    return {"scheduled_email": serialize_scheduled_email(email)}


@app.delete("/api/schedule/{scheduled_email_id}")
def cancel_schedule(scheduled_email_id: int, user_id: str = Depends(current_user),
                    db: Session = Depends(get_db)):
    try:
        cancel_scheduled_email(db, user_id, scheduled_email_id)
    except NudgeError as e:
        raise _http_error(e)
    return {"success": True}


@app.post("/api/schedule/process")
def process_schedule(
    user_id: str = Depends(current_user),
    db: Session = Depends(get_db),
    sweeper: FollowUpSweeper = Depends(get_sweeper),
):
    results = sweeper.process_scheduled_emails(db, user_id=user_id)
    return {"success": True, **results}
