"""
Nudge - Mail Collaborators (Gmail)
The sweep only talks to these two interfaces:
  - EmailSender: dispatch a follow-up as an in-thread reply
  - ReplyDetector: has the recipient answered since a given instant?

Deciding what counts as a reply lives in GmailReplyDetector and nowhere else.
"""
import base64
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from email.message import EmailMessage as MimeMessage
from email.utils import parseaddr
from typing import Optional
import httpx
from sqlalchemy.orm import Session
from nudge.config import GMAIL_API_BASE_URL, GMAIL_TIMEOUT_SECONDS
from nudge.engine.delays import to_naive_utc
from nudge.errors import DetectionFailure, SendFailure
from nudge.models import Direction, EmailMessage, MailboxConnection

logger = logging.getLogger(__name__)


@dataclass
class SentEmail:
    message_id: str
    thread_id: str


class EmailSender(ABC):
    """Abstract interface for sending mail on a user's behalf."""

    @abstractmethod
    def send(
        self,
        user_id: str,
        to: str,
        subject: str,
        body_html: str,
        cc: Optional[str] = None,
        bcc: Optional[str] = None,
        thread_id: Optional[str] = None,
        in_reply_to: Optional[str] = None,
        references: Optional[str] = None,
    ) -> SentEmail:
        """Send one message. Raises SendFailure."""
        ...


class ReplyDetector(ABC):
    """Abstract interface for reply detection on a thread."""

    @abstractmethod
    def has_reply_since(self, user_id: str, thread_id: str, since: datetime) -> bool:
        """True if someone other than the owner wrote on the thread at or after `since`. Raises DetectionFailure."""
        ...


def build_raw_message(
    from_address: str,
    to: str,
    subject: str,
    body_html: str,
    cc: Optional[str] = None,
    bcc: Optional[str] = None,
    in_reply_to: Optional[str] = None,
    references: Optional[str] = None,
) -> str:
    """Compose an HTML MIME message, base64url-encoded as the Gmail API expects."""
    msg = MimeMessage()
    msg["From"] = from_address
    msg["To"] = to
    if cc:
        msg["Cc"] = cc
    if bcc:
        msg["Bcc"] = bcc
    msg["Subject"] = subject
    if in_reply_to:
        msg["In-Reply-To"] = in_reply_to
    if references:
        msg["References"] = references
    msg.set_content(body_html, subtype="html")
    return base64.urlsafe_b64encode(msg.as_bytes()).decode("ascii")


def extract_address(header_value: str) -> str:
    """'Ada <ada@example.com>' -> 'ada@example.com'."""
    return parseaddr(header_value or "")[1].lower().strip()


class GmailClient:
    """Thin Gmail REST client for one user's mailbox."""

    def __init__(self, db: Session, http: Optional[httpx.Client] = None):
        self.db = db
        self.base_url = GMAIL_API_BASE_URL
        self.http = http or httpx.Client(timeout=GMAIL_TIMEOUT_SECONDS)

    def connection(self, user_id: str) -> Optional[MailboxConnection]:
        return self.db.query(MailboxConnection).filter(
            MailboxConnection.user_id == user_id
        ).first()

    def request(self, conn: MailboxConnection, method: str, path: str, **kwargs) -> dict:
        """Authenticated request. Every failure, including an unreadable body, surfaces as an httpx error."""
        headers = kwargs.pop("headers", {})
        headers["Authorization"] = f"Bearer {conn.access_token}"
        resp = self.http.request(method, f"{self.base_url}{path}", headers=headers, **kwargs)
        resp.raise_for_status()
        try:
            return resp.json()
        except ValueError as e:
            raise httpx.DecodingError(f"Gmail returned a non-JSON body: {e}", request=resp.request) from e


class GmailSender(EmailSender):
    """Send mail through the Gmail API."""

    def __init__(self, client: GmailClient):
        self.client = client

    def send(
        self,
        user_id: str,
        to: str,
        subject: str,
        body_html: str,
        cc: Optional[str] = None,
        bcc: Optional[str] = None,
        thread_id: Optional[str] = None,
        in_reply_to: Optional[str] = None,
        references: Optional[str] = None,
    ) -> SentEmail:
        conn = self.client.connection(user_id)
        if not conn:
            raise SendFailure(f"No mailbox connected for user {user_id}")

        raw = build_raw_message(
            conn.email_address, to, subject, body_html,
            cc=cc, bcc=bcc, in_reply_to=in_reply_to, references=references,
        )
        body = {"raw": raw}
        if thread_id:
            body["threadId"] = thread_id

        try:
            result = self.client.request(conn, "POST", "/messages/send", json=body)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            logger.error(f"Gmail send error: {e}")
            raise SendFailure(str(e)) from e

        return SentEmail(
            message_id=result.get("id", ""),
            thread_id=result.get("threadId", thread_id or ""),
        )


class GmailReplyDetector(ReplyDetector):
    """
    Checks the synced mailbox cache first, then the live thread.
    A message counts as a reply when its sender is not the owner's mailbox,
    so follow-ups the owner sends never cancel their own chain.
    """

    def __init__(self, client: GmailClient):
        self.client = client

    def has_reply_since(self, user_id: str, thread_id: str, since: datetime) -> bool:
        since = to_naive_utc(since)

        cached = self.client.db.query(EmailMessage.id).filter(
            EmailMessage.user_id == user_id,
            EmailMessage.thread_id == thread_id,
            EmailMessage.direction == Direction.INBOUND.value,
            EmailMessage.date >= since,
        ).first()
        if cached:
            return True

        conn = self.client.connection(user_id)
        if not conn:
            raise DetectionFailure(f"No mailbox connected for user {user_id}")

        try:
            thread = self.client.request(
                conn, "GET", f"/threads/{thread_id}",
                params={"format": "metadata", "metadataHeaders": "From"},
            )
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            logger.warning(f"Gmail thread fetch failed for {thread_id}: {e}")
            raise DetectionFailure(str(e)) from e

        owner = conn.email_address.lower()
        since_ms = int(since.replace(tzinfo=timezone.utc).timestamp() * 1000)
        for msg in thread.get("messages", []):
            headers = msg.get("payload", {}).get("headers", [])
            sender = next(
                (h.get("value", "") for h in headers if h.get("name", "").lower() == "from"),
                "",
            )
            if extract_address(sender) == owner:
                continue
            if int(msg.get("internalDate") or 0) >= since_ms:
                return True
        return False
