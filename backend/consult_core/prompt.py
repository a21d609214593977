from __future__ import annotations

from .models import ChatContext, ChatMessage

SYSTEM_PROMPT = (
    "You are a medical consultation assistant. Be helpful, cautious, and avoid definitive diagnoses. "
    "If uncertain, ask follow-up questions."
)
DEFAULT_TOPIC = "General consultation"
TOPIC_MAX_CHARS = 80


def truncate(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    return text[: max_chars - 1] + "…"


def _join_or_none(values: list[str] | None) -> str:
    return ", ".join(values) if values else "None"


def render_context(context: ChatContext | None) -> str:
    if context is None:
        return ""
    return (
        f"\nAllergies: {_join_or_none(context.allergies)}"
        f"\nMedications: {_join_or_none(context.medications)}"
        f"\nConditions: {_join_or_none(context.conditions)}"
    )


def render_transcript(messages: list[ChatMessage]) -> str:
    return "\n".join(f"{message.role.upper()}: {message.content}" for message in messages)


def assemble_prompt(messages: list[ChatMessage], context: ChatContext | None = None) -> str:
    return f"{SYSTEM_PROMPT}\n{render_context(context)}\n\nConversation:\n{render_transcript(messages)}"


def consultation_topic(messages: list[ChatMessage]) -> str:
    first_user = next((message.content for message in messages if message.role == "user"), None)
    return truncate(first_user or DEFAULT_TOPIC, TOPIC_MAX_CHARS)


def last_user_message(messages: list[ChatMessage]) -> str | None:
    for message in reversed(messages):
        if message.role == "user":
            return message.content
    return None
