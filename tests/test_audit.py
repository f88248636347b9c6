import logging

from conftest import USER
from nudge.audit import AUDIT_EVENTS, audit, gen_request_id
from nudge.models import AuditLog


def test_audit_row_lands_with_caller_commit(db):
    audit(db, "follow_up_created", user_id=USER, sequence_id=7, actor="api", payload={"messages": 2})
    db.rollback()
    assert db.query(AuditLog).count() == 0

    audit(db, "follow_up_created", user_id=USER, sequence_id=7, actor="api", request_id="req-fixed")
    db.commit()
    row = db.query(AuditLog).one()
    assert (row.event, row.actor, row.sequence_id, row.request_id) == ("follow_up_created", "api", 7, "req-fixed")
    assert row.payload == {}


def test_audit_generates_request_id_when_missing(db):
    row = audit(db, "follow_up_sent", user_id=USER)
    assert row.request_id.startswith("req-")
    assert gen_request_id() != gen_request_id()


def test_unregistered_event_is_still_recorded(db, caplog):
    assert "something_else" not in AUDIT_EVENTS
    with caplog.at_level(logging.WARNING, logger="nudge.audit"):
        audit(db, "something_else")
    db.commit()
    assert db.query(AuditLog).filter(AuditLog.event == "something_else").count() == 1
    assert "Unregistered audit event" in caplog.text
