# tests/test_validators.py
import base64
import json
import re

import pytest

from utils.helpers import (
    decode_jwt_payload,
    extract_json,
    format_time_sent,
    generate_request_id,
    html_to_text,
    rich_to_plain,
    secure_randint,
)
from utils.identity import create_email, generate_person
from utils.validators import sanitize_input, validate_delay_range, validate_task_request

EMAIL_PATTERN = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")


def test_sanitize_input():
    """Control characters are stripped and length is capped"""
    assert sanitize_input("  spaces  ") == "spaces"
    assert sanitize_input("bell\x07 ring") == "bell ring"
    assert sanitize_input(None) == ""
    assert len(sanitize_input("x" * 5000)) == 2000


def test_validate_delay_range():
    assert validate_delay_range({"min": 2, "max": 5}) == {"min": 2, "max": 5}
    assert validate_delay_range({"min": 5, "max": 2}) is None
    assert validate_delay_range({"min": 0, "max": 5}) is None
    assert validate_delay_range({"min": "a", "max": 5}) is None
    assert validate_delay_range(None) is None


def test_validate_task_request_clamps():
    """Concurrency never exceeds the total and the total never exceeds the limit"""
    values = validate_task_request({"max_conversations": 50, "concurrent_conversations": 80}, max_limit=20)

    assert values["max_conversations"] == 20
    assert values["concurrent_conversations"] == 20
    assert values["use_fake_names"] is True


def test_validate_task_request_defaults():
    values = validate_task_request({})

    assert values["max_conversations"] == 1
    assert values["concurrent_conversations"] == 1
    assert values["max_turns"] is None
    assert values["consumer_message_delay_range"] is None


@pytest.mark.parametrize("data", [
    {"max_conversations": -3},
    {"concurrent_conversations": -1},
    {"max_conversations": "many"},
    {"max_turns": 0},
])
def test_validate_task_request_rejects(data):
    with pytest.raises(ValueError):
        validate_task_request(data)


def test_rich_to_plain_lists_quick_replies():
    event = {
        "type": "ContentEvent",
        "message": "<p>Pick one</p>",
        "quickReplies": {
            "replies": [
                {"click": {"actions": [{"type": "publishText", "text": "Billing"}]}},
                {"click": {"actions": [{"type": "publishText", "text": "Delivery"}]}},
                {"click": {"actions": [{"type": "link", "uri": "https://example.com"}]}},
            ]
        },
    }

    text = rich_to_plain(event)

    assert text.startswith("Pick one")
    assert "select from the following options:" in text
    assert "- Billing" in text
    assert "- Delivery" in text
    assert "example.com" not in text


def test_html_to_text():
    assert html_to_text("Hello<br/>there &amp; welcome") == "Hello\nthere & welcome"


def test_format_time_sent():
    assert format_time_sent(0) == "\n(time sent 00:00:00)"


def test_secure_randint_bounds():
    draws = {secure_randint(3, 6) for _ in range(200)}

    assert draws <= {3, 4, 5}
    assert secure_randint(4, 4) == 4


def test_decode_jwt_payload():
    claims = {"lp_consumer_id": "abc", "exp": 1}
    payload = base64.urlsafe_b64encode(json.dumps(claims).encode()).rstrip(b"=").decode()

    assert decode_jwt_payload(f"h.{payload}.s") == claims
    assert decode_jwt_payload("not-a-token") == {}


def test_extract_json():
    assert extract_json('{"score": 7}') == {"score": 7}
    assert extract_json('Sure! ```json\n{"score": 7, "assessment": "ok"}\n```') == {"score": 7, "assessment": "ok"}
    assert extract_json("no json here") is None
    assert extract_json(None) is None


def test_generate_request_id_is_unique():
    first, second = generate_request_id("acct"), generate_request_id("acct")

    assert first.startswith("task_acct_")
    assert first != second


def test_generated_person_has_valid_email():
    person = generate_person()

    assert EMAIL_PATTERN.match(person.email)
    assert person.full_name == f"{person.first_name} {person.last_name}"
    assert EMAIL_PATTERN.match(create_email("Mary-Jane", "O'Neil"))
