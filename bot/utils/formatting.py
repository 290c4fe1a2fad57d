from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Any

_PLACEHOLDER = re.compile(r"\{(\w+)\}")
_CHANNEL_MENTION = re.compile(r"<#(\d+)>")
_NON_NAME = re.compile(r"[^a-z0-9\-_]+")


def normalize_phone(value: str | None) -> str:
    """Reduce a WhatsApp JID or raw number to bare digits-ish form.

    ``15551234567@s.whatsapp.net`` and ``+1 555 123 4567`` both become
    ``15551234567``.
    """
    if not value:
        return ""
    cleaned = str(value).split("@", 1)[0].split(":", 1)[0]
    cleaned = re.sub(r"[\s\-()]", "", cleaned)
    return cleaned.lstrip("+")


def render_template(template: str, values: Mapping[str, Any]) -> str:
    def _swap(match: re.Match[str]) -> str:
        key = match.group(1)
        if key in values and values[key] is not None:
            return str(values[key])
        return match.group(0)

    return _PLACEHOLDER.sub(_swap, template or "")


def sanitize_channel_fragment(value: str, max_length: int = 25) -> str:
    lowered = (value or "").strip().lower().replace(" ", "-")
    cleaned = _NON_NAME.sub("", lowered).strip("-_")
    return cleaned[:max_length] or "ticket"


def ticket_channel_name(prefix: str, username: str, phone: str, max_length: int = 25) -> str:
    fragment = sanitize_channel_fragment(username, max_length)
    if fragment == "ticket":
        fragment = sanitize_channel_fragment(phone, max_length)
    return f"{prefix}{fragment}"


def substitute_channel_mentions(content: str, special_channels: Mapping[str, Any]) -> str:
    """Replace ``<#id>`` mentions of configured special channels with their snippet."""
    if not special_channels:
        return content

    def _swap(match: re.Match[str]) -> str:
        entry = special_channels.get(match.group(1))
        if isinstance(entry, Mapping) and entry.get("message"):
            return str(entry["message"])
        return match.group(0)

    return _CHANNEL_MENTION.sub(_swap, content)


def as_snowflake(value: Any) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
