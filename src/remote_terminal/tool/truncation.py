"""Output truncation — bound command output before it reaches the model."""

from __future__ import annotations

MAX_OUTPUT_CHARS = 8000
MAX_MESSAGE_CHARS = 4000
TRUNCATION_MARKER = "\n... (truncated)"


def truncate_output(
    text: str,
    max_chars: int = MAX_OUTPUT_CHARS,
    marker: str = TRUNCATION_MARKER,
) -> str:
    """Keep the first ``max_chars`` characters and append ``marker``.

    Text at or below the budget is returned untouched.
    """
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + marker


def truncate_message(text: str, max_chars: int = MAX_MESSAGE_CHARS) -> str:
    """Bound a reply shown to a human (chat window, message bubble)."""
    return truncate_output(text, max_chars=max_chars)
