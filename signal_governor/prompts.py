"""LLM prompt templates for engagement scoring.

Raw scores rate one day of a user's activity on a single platform. Smart scores
only need a written summary; their value is computed from the raw scores.
"""

import json
from typing import Any, Dict, List

SYSTEM_PROMPT = "You are a helpful assistant that evaluates user activity data. You must respond with only valid JSON."

RAW_SCORE_PROMPT = (
    "Rate how much this person contributed to the community on {day} based on their {source} activity.\n\n"
    "Score from 0 to {max_value}. Reward substance: questions answered, ideas shared, people helped.\n"
    "Short greetings, reactions and repeated messages count for very little.\n\n"
    "Return ONLY valid JSON with exactly these keys:\n"
    "{{\"value\": <number>, \"summary\": \"<one sentence>\", \"description\": \"<two or three sentences>\"}}\n"
    "No markdown, no extra keys."
)

SMART_SCORE_PROMPT = (
    "Below are daily engagement scores (out of {max_value}) for one person over the last {previous_days} days,\n"
    "each with a short summary of that day's activity.\n\n"
    "Describe their overall contribution pattern.\n\n"
    "Return ONLY valid JSON with exactly these keys:\n"
    "{{\"summary\": \"<one sentence>\", \"description\": \"<two or three sentences>\"}}\n"
    "No markdown, no extra keys."
)


def render_user_payload(username: str, activity: List[Dict[str, Any]], max_chars: int) -> str:
    data = json.dumps(activity, ensure_ascii=False, indent=2, default=str)
    if len(data) > max_chars:
        data = data[: max(0, max_chars - 3)] + "..."
    return f"User Data for {username}:\n{data}"
