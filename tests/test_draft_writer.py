from nudge.engine import draft_writer
from nudge.models import DraftSuggestionRequest


def request(**overrides) -> DraftSuggestionRequest:
    fields = {"recipient_email": "ada@example.com", "contact_name": "Ada Lovelace",
              "original_subject": "Coffee next week?"}
    fields.update(overrides)
    return DraftSuggestionRequest(**fields)


def test_fallback_without_api_key(monkeypatch):
    monkeypatch.setattr(draft_writer, "client", None)
    draft = draft_writer.suggest_follow_up(request())
    assert draft.subject == "Re: Coffee next week?"
    assert "Hi Ada," in draft.body_html


def test_fallback_without_context():
    draft = draft_writer._fallback(request(contact_name=None, original_subject=None))
    assert draft.subject == "Following up"
    assert "Hi there," in draft.body_html


def test_parse_plain_json():
    draft = draft_writer._parse('{"subject": "Quick check", "body_html": "<p>Any thoughts?</p>"}')
    assert draft.subject == "Quick check"


def test_parse_json_wrapped_in_prose():
    text = 'Sure, here it is:\n{"subject": "Quick check", "body_html": "<p>Hi</p>"}\nHope that helps.'
    assert draft_writer._parse(text).body_html == "<p>Hi</p>"


def test_parse_rejects_garbage_and_empty_bodies():
    assert draft_writer._parse("no json here") is None
    assert draft_writer._parse('{"subject": "x"}') is None
    assert draft_writer._parse('{"subject": "x", "body_html": "<p></p>"}') is None


class _Block:
    def __init__(self, text):
        self.text = text


class _Response:
    def __init__(self, text):
        self.content = [_Block(text)]


class _Messages:
    def __init__(self, text):
        self.text = text
        self.kwargs = None

    def create(self, **kwargs):
        self.kwargs = kwargs
        return _Response(self.text)


class _Client:
    def __init__(self, text):
        self.messages = _Messages(text)


def test_model_output_is_used(monkeypatch):
    fake = _Client('{"subject": "Circling back", "body_html": "<p>Hi Ada</p>"}')
    monkeypatch.setattr(draft_writer, "client", fake)
    draft = draft_writer.suggest_follow_up(request(sequence_number=2))
    assert draft.subject == "Circling back"
    assert "Add a small piece of value" in fake.messages.kwargs["messages"][0]["content"]


def test_invalid_model_output_falls_back(monkeypatch):
    monkeypatch.setattr(draft_writer, "client", _Client("I cannot help with that"))
    assert draft_writer.suggest_follow_up(request()).subject == "Re: Coffee next week?"
