import base64
import html
import json
import re
import secrets
import uuid
from datetime import datetime, timezone
from typing import Optional, Dict, Any

from loguru import logger

_TAG_RE = re.compile(r'<[^>]+>')
_BREAK_RE = re.compile(r'<\s*(br|/p|/div|/li)\s*/?>', re.IGNORECASE)
_BLANK_LINES_RE = re.compile(r'\n{3,}')


def html_to_text(value: str) -> str:
    """Strip markup from an agent message, keeping line breaks"""
    text = _BREAK_RE.sub('\n', value)
    text = _TAG_RE.sub('', text)
    text = html.unescape(text)
    return _BLANK_LINES_RE.sub('\n\n', text).strip()


def rich_to_plain(event: Dict[str, Any]) -> str:
    """
    Render an agent content event as plain text.
    Quick reply options are listed under the message so the synthetic
    consumer can pick one.
    """
    message = (event or {}).get('message', '')

    try:
        replies = ((event.get('quickReplies') or {}).get('replies')) or []
        options = []
        for reply in replies:
            for action in (reply.get('click') or {}).get('actions') or []:
                if action.get('type') == 'publishText' and action.get('text'):
                    options.append(action['text'])

        if options:
            options_text = "\nselect from the following options:\n" + "\n".join(f"- {o}" for o in options)
            message = f"{message} + {options_text}"

        return html_to_text(str(message))

    except (AttributeError, TypeError) as e:
        logger.warning(f"⚠️ Could not render rich content, using raw message: {e}")
        return str(event.get('message', '')) if isinstance(event, dict) else ''


def format_time_sent(timestamp_ms: int) -> str:
    """Timestamp suffix appended to each buffered agent message"""
    sent = datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc)
    return f"\n(time sent {sent.strftime('%H:%M:%S')})"


def secure_randint(low: int, high: int) -> int:
    """Random integer in [low, high) from the OS CSPRNG"""
    if high <= low:
        return low
    return low + secrets.randbelow(high - low)


def decode_jwt_payload(token: str) -> Dict[str, Any]:
    """Read the claims of a JWT without verifying its signature"""
    try:
        payload = token.split('.')[1]
        payload += '=' * (-len(payload) % 4)
        return json.loads(base64.urlsafe_b64decode(payload))
    except (IndexError, ValueError, AttributeError) as e:
        logger.warning(f"⚠️ Could not decode JWT payload: {e}")
        return {}


def generate_request_id(account_id: str) -> str:
    return f"task_{account_id}_{uuid.uuid4().hex}"


def extract_json(text: Optional[str]) -> Optional[Dict[str, Any]]:
    """Pull the first JSON object out of an LLM reply"""
    if not text:
        return None

    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass

    match = re.search(r'\{.*\}', text, re.DOTALL)
    if not match:
        return None

    try:
        return json.loads(match.group(0))
    except json.JSONDecodeError:
        return None
