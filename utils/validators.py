import re
from typing import Dict, Any, Optional

from config import settings


def sanitize_input(text: Optional[str], limit: int = 2000) -> str:
    """Trim free text that ends up in LLM prompts"""
    if not text:
        return ""
    text = re.sub(r'[\x00-\x08\x0b\x0c\x0e-\x1f]', '', text)
    return text.strip()[:limit]


def validate_delay_range(delay_range: Optional[Dict[str, Any]]) -> Optional[Dict[str, int]]:
    """Return a usable {min, max} range in seconds, or None to fall back to the default delay"""
    if not delay_range:
        return None

    try:
        low = int(delay_range.get("min") or 0)
        high = int(delay_range.get("max") or 0)
    except (TypeError, ValueError):
        return None

    if low <= 0 or high <= 0 or low > high:
        return None

    return {"min": low, "max": high}


def validate_task_request(data: Dict[str, Any], max_limit: Optional[int] = None) -> Dict[str, Any]:
    """
    Normalise a task submission.
    Raises ValueError on values that cannot describe a task.
    """
    max_limit = max_limit or settings.max_conversations_limit

    try:
        max_conversations = int(data.get("max_conversations") or 1)
        concurrent = int(data.get("concurrent_conversations") or 1)
    except (TypeError, ValueError):
        raise ValueError("max_conversations and concurrent_conversations must be integers")

    if max_conversations < 1:
        raise ValueError("max_conversations must be at least 1")
    if concurrent < 1:
        raise ValueError("concurrent_conversations must be at least 1")

    max_conversations = min(max_conversations, max_limit)
    concurrent = min(concurrent, max_conversations)

    max_turns = data.get("max_turns")
    if max_turns is not None:
        max_turns = int(max_turns)
        if max_turns < 1:
            raise ValueError("max_turns must be at least 1")

    return {
        "name": sanitize_input(data.get("name"), 200) or None,
        "max_conversations": max_conversations,
        "concurrent_conversations": concurrent,
        "use_delays": bool(data.get("use_delays", True)),
        "use_fake_names": bool(data.get("use_fake_names", True)),
        "max_turns": max_turns,
        "consumer_message_delay_range": validate_delay_range(data.get("consumer_message_delay_range")),
        "skill_id": data.get("skill_id"),
        "brand_id": data.get("brand_id"),
        "scenario": sanitize_input(data.get("scenario")) or None,
        "persona": sanitize_input(data.get("persona")) or None,
        "created_by": data.get("created_by"),
    }
