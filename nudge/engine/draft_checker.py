"""
Nudge - Draft Checker
Validates a whole batch of follow-up drafts before anything is written.
A batch either passes entirely or raises on the first offending draft.
"""
import logging
from datetime import datetime
from typing import Sequence
from bs4 import BeautifulSoup
from nudge.config import EMPTY_BODY_PLACEHOLDERS
from nudge.engine.delays import min_first_delay, parse_send_time
from nudge.errors import ValidationError
from nudge.models import FollowUpDraft

logger = logging.getLogger(__name__)


def has_body_content(body_html: str) -> bool:
    """False for the empty string, an empty editor paragraph, or markup with no visible text."""
    if body_html is None:
        return False
    stripped = body_html.strip()
    if stripped in EMPTY_BODY_PLACEHOLDERS:
        return False
    soup = BeautifulSoup(stripped, "html.parser")
    if soup.get_text(strip=True):
        return True
    # An image-only body still says something
    return soup.find("img") is not None


class DraftChecker:
    """
    Pre-write checker for follow-up drafts.
    Index 0 is anchored to the original email, later drafts to their predecessor.
    """

    def check(
        self,
        drafts: Sequence[FollowUpDraft],
        original_sent_at: datetime,
        now: datetime,
    ) -> None:
        if not drafts:
            raise ValidationError(None, "at least one follow-up message is required")

        first_floor = min_first_delay(original_sent_at, now)
        for index, draft in enumerate(drafts):
            floor = first_floor if index == 0 else 1
            if draft.relative_delay_days < floor:
                if index == 0:
                    reason = f"first follow-up must be at least {floor} day(s) after the original email"
                else:
                    reason = "follow-up must be at least 1 day after the previous one"
                self._fail(index, reason)

            if parse_send_time(draft.send_time) is None:
                self._fail(index, f"send time must be HH:MM, got {draft.send_time!r}")

            if not (draft.subject or "").strip():
                self._fail(index, "subject is required")

            if not has_body_content(draft.body_html):
                self._fail(index, "body is required")

    def _fail(self, index: int, reason: str):
        logger.info(f"Draft rejected at index {index}: {reason}")
        raise ValidationError(index, reason)
