"""
Nudge - Follow-up Draft Writer
Suggests a subject and body for a follow-up. The user always edits before scheduling.
Falls back to a plain template when no API key is configured or the model misbehaves.
"""
import json
import logging
from html import escape
from typing import Optional
from anthropic import Anthropic
from pydantic import ValidationError
from nudge.config import ANTHROPIC_API_KEY, LLM_MODEL
from nudge.engine.draft_checker import has_body_content
from nudge.models import DraftSuggestion, DraftSuggestionRequest

logger = logging.getLogger(__name__)

client = Anthropic(api_key=ANTHROPIC_API_KEY) if ANTHROPIC_API_KEY else None

WRITER_SYSTEM = """You write short follow-up emails for someone managing their professional network.
- Warm, brief, never pushy
- Under 90 words
- Reference the original email's topic when known
- No apologies for following up, no guilt
- Plain paragraphs wrapped in <p> tags, no other markup"""

SEQUENCE_FRAMEWORKS = {
    1: "Gentle nudge. Bring the original note back to the top of their inbox.",
    2: "Add a small piece of value or context. Keep the ask light.",
    3: "Final, gracious check-in. Leave the door open.",
}


def _fallback(req: DraftSuggestionRequest) -> DraftSuggestion:
    name = req.contact_name.split()[0] if req.contact_name else "there"
    subject = f"Re: {req.original_subject}" if req.original_subject else "Following up"
    return DraftSuggestion(
        subject=subject,
        body_html=(
            f"<p>Hi {escape(name)},</p>"
            "<p>Just floating this back to the top of your inbox in case it got buried.</p>"
            "<p>Best,</p>"
        ),
    )


def _parse(text: str) -> Optional[DraftSuggestion]:
    candidates = [text]
    start = text.find("{")
    end = text.rfind("}") + 1
    if start >= 0 and end > start:
        candidates.append(text[start:end])

    for candidate in candidates:
        try:
            draft = DraftSuggestion(**json.loads(candidate))
        except (json.JSONDecodeError, TypeError, ValidationError):
            continue
        if draft.subject.strip() and has_body_content(draft.body_html):
            return draft
    return None


def suggest_follow_up(req: DraftSuggestionRequest) -> DraftSuggestion:
    """Return a follow-up draft for the given context."""
    if not client:
        return _fallback(req)

    framework = SEQUENCE_FRAMEWORKS.get(req.sequence_number, SEQUENCE_FRAMEWORKS[3])
    prompt = f"""Write follow-up #{req.sequence_number} for this thread:
Recipient: {req.contact_name or req.recipient_email}
Original subject: {req.original_subject or 'unknown'}
Days since the original email: {req.days_since_original}
Framework: {framework}
Extra instructions: {req.instructions or 'none'}

Return ONLY a JSON object:
{{"subject": "subject line", "body_html": "<p>...</p>"}}"""

    try:
        response = client.messages.create(
            model=LLM_MODEL,
            max_tokens=512,
            system=WRITER_SYSTEM,
            messages=[{"role": "user", "content": prompt}],
        )
        draft = _parse(response.content[0].text)
        if draft:
            return draft
        logger.warning("Draft writer returned invalid JSON")
    except Exception as e:
        logger.error(f"Draft generation failed: {e}")

    return _fallback(req)
