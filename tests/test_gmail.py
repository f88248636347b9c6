import base64
import json
from datetime import datetime, timezone
from email import message_from_bytes
from email.policy import default

import httpx
import pytest

from conftest import USER
from nudge.errors import DetectionFailure, SendFailure
from nudge.integrations.gmail import (
    GmailClient, GmailReplyDetector, GmailSender, build_raw_message, extract_address,
)
from nudge.models import Direction, EmailMessage, MailboxConnection

SINCE = datetime(2024, 1, 1, 9, 0)
OWNER = "me@example.com"


def ms(dt: datetime) -> str:
    return str(int(dt.replace(tzinfo=timezone.utc).timestamp() * 1000))


def thread_message(sender: str, at: datetime) -> dict:
    return {
        "id": f"m-{at.isoformat()}",
        "internalDate": ms(at),
        "payload": {"headers": [{"name": "From", "value": sender}]},
    }


@pytest.fixture
def connected(db):
    db.add(MailboxConnection(user_id=USER, email_address=OWNER, access_token="token-123"))
    db.commit()
    return db


def client_for(db, handler) -> GmailClient:
    return GmailClient(db, http=httpx.Client(transport=httpx.MockTransport(handler)))


def test_build_raw_message_headers():
    raw = build_raw_message(OWNER, "ada@example.com", "Checking in", "<p>Hi</p>",
                            cc="bob@example.com", in_reply_to="<abc@mail>", references="<abc@mail>")
    msg = message_from_bytes(base64.urlsafe_b64decode(raw), policy=default)
    assert msg["To"] == "ada@example.com"
    assert msg["Cc"] == "bob@example.com"
    assert msg["Subject"] == "Checking in"
    assert msg["In-Reply-To"] == "<abc@mail>"
    assert msg.get_content_type() == "text/html"
    assert "<p>Hi</p>" in msg.get_content()


def test_extract_address():
    assert extract_address("Ada Lovelace <Ada@Example.com>") == "ada@example.com"
    assert extract_address("bob@example.com") == "bob@example.com"
    assert extract_address("") == ""


def test_sender_posts_into_thread(connected):
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"id": "sent-1", "threadId": "thread-1"})

    result = GmailSender(client_for(connected, handler)).send(
        USER, to="ada@example.com", subject="Checking in", body_html="<p>Hi</p>", thread_id="thread-1",
    )

    assert result.message_id == "sent-1"
    assert result.thread_id == "thread-1"
    assert seen["url"].endswith("/gmail/v1/users/me/messages/send")
    assert seen["auth"] == "Bearer token-123"
    assert seen["body"]["threadId"] == "thread-1"
    assert "raw" in seen["body"]


def test_sender_wraps_http_errors(connected):
    def handler(request):
        return httpx.Response(503, json={"error": "backend"})

    with pytest.raises(SendFailure):
        GmailSender(client_for(connected, handler)).send(USER, "ada@example.com", "s", "<p>b</p>")


def test_sender_without_connection(db):
    sender = GmailSender(client_for(db, lambda r: httpx.Response(200, json={})))
    with pytest.raises(SendFailure):
        sender.send(USER, "ada@example.com", "s", "<p>b</p>")


def test_detector_uses_cached_inbound_message(connected):
    connected.add(EmailMessage(user_id=USER, provider_message_id="in-1", thread_id="thread-1",
                               direction=Direction.INBOUND.value, from_address="ada@example.com",
                               date=datetime(2024, 1, 2, 8, 0)))
    connected.commit()

    def handler(request):
        raise AssertionError("live fetch not expected")

    assert GmailReplyDetector(client_for(connected, handler)).has_reply_since(USER, "thread-1", SINCE) is True


def test_detector_ignores_cached_messages_before_since(connected):
    connected.add(EmailMessage(user_id=USER, provider_message_id="in-0", thread_id="thread-1",
                               direction=Direction.INBOUND.value, date=datetime(2023, 12, 31)))
    connected.commit()

    def handler(request):
        return httpx.Response(200, json={"messages": []})

    assert GmailReplyDetector(client_for(connected, handler)).has_reply_since(USER, "thread-1", SINCE) is False


def test_detector_live_thread_reply(connected):
    def handler(request):
        assert request.url.path.endswith("/threads/thread-1")
        assert request.url.params["format"] == "metadata"
        return httpx.Response(200, json={"messages": [
            thread_message(f"Me <{OWNER}>", datetime(2024, 1, 1, 9, 0)),
            thread_message("Ada <ada@example.com>", datetime(2024, 1, 3, 12, 0)),
        ]})

    assert GmailReplyDetector(client_for(connected, handler)).has_reply_since(USER, "thread-1", SINCE) is True


def test_detector_owner_messages_are_not_replies(connected):
    def handler(request):
        return httpx.Response(200, json={"messages": [
            thread_message(f"Me <{OWNER}>", datetime(2024, 1, 1, 9, 0)),
            thread_message(OWNER.upper(), datetime(2024, 1, 4, 9, 0)),
            thread_message("ada@example.com", datetime(2023, 12, 30, 9, 0)),
        ]})

    assert GmailReplyDetector(client_for(connected, handler)).has_reply_since(USER, "thread-1", SINCE) is False


def test_detector_raises_on_fetch_error(connected):
    def handler(request):
        return httpx.Response(500)

    with pytest.raises(DetectionFailure):
        GmailReplyDetector(client_for(connected, handler)).has_reply_since(USER, "thread-1", SINCE)


def test_detector_without_connection(db):
    detector = GmailReplyDetector(client_for(db, lambda r: httpx.Response(200, json={})))
    with pytest.raises(DetectionFailure):
        detector.has_reply_since(USER, "thread-1", SINCE)


def test_sender_treats_unreadable_body_as_send_failure(connected):
    def handler(request):
        return httpx.Response(200, content=b"<html>upstream proxy page</html>")

    with pytest.raises(SendFailure):
        GmailSender(client_for(connected, handler)).send(USER, "ada@example.com", "s", "<p>b</p>")


def test_detector_treats_unreadable_body_as_detection_failure(connected):
    def handler(request):
        return httpx.Response(200, content=b"not json")

    with pytest.raises(DetectionFailure):
        GmailReplyDetector(client_for(connected, handler)).has_reply_since(USER, "thread-1", SINCE)
