"""User text validation applied before any retrieval or provider call."""

import re
from typing import Optional

from support_rag.errors import InputValidationError

MAX_INPUT_CHARS = 2000

_DANGEROUS_PATTERNS = [
    re.compile(r"<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>", re.IGNORECASE),
    re.compile(r"javascript:", re.IGNORECASE),
    re.compile(r"vbscript:", re.IGNORECASE),
    re.compile(r"\bon\w+\s*=", re.IGNORECASE),
    re.compile(r"<iframe\b[^<]*(?:(?!</iframe>)<[^<]*)*</iframe>", re.IGNORECASE),
    re.compile(r"<object\b[^<]*(?:(?!</object>)<[^<]*)*</object>", re.IGNORECASE),
    re.compile(r"<embed\b[^<]*(?:(?!</embed>)<[^<]*)*</embed>", re.IGNORECASE),
]

# Shown to the end user when their message is rejected
REJECTED_MESSAGES = {
    "empty": "输入验证失败: 输入不能为空",
    "too_long": "输入验证失败: 输入内容过长",
    "unsafe": "输入验证失败: 输入包含不安全的内容",
}


def sanitize_text(text: str) -> str:
    """Trim and escape angle brackets."""
    return text.strip().replace("<", "&lt;").replace(">", "&gt;")


def validate_text_input(text: Optional[str], max_chars: int = MAX_INPUT_CHARS) -> str:
    """
    Validate a user message and return its sanitized form.

    Raises:
        InputValidationError: empty, longer than max_chars, or containing
            script-like markup; context["reason"] names which.
    """
    if text is None or not text.strip():
        raise InputValidationError("empty input", field="message", context={"reason": "empty"})
    if len(text) > max_chars:
        raise InputValidationError(
            f"input is {len(text)} chars (max {max_chars})", field="message", context={"reason": "too_long"}
        )
    for pattern in _DANGEROUS_PATTERNS:
        if pattern.search(text):
            raise InputValidationError(
                f"input matches unsafe pattern {pattern.pattern[:30]!r}", field="message",
                context={"reason": "unsafe"},
            )
    return sanitize_text(text)


def rejection_message(error: InputValidationError) -> str:
    return REJECTED_MESSAGES.get(error.context.get("reason", ""), REJECTED_MESSAGES["unsafe"])
