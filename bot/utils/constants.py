from __future__ import annotations

from typing import Any

TICKET_STATUS_OPEN = "open"
TICKET_STATUS_CLOSING = "closing"
TICKET_STATUS_CLOSED = "closed"

# Allowed forward moves; anything else is rejected.
TICKET_TRANSITIONS: dict[str | None, frozenset[str]] = {
    None: frozenset({TICKET_STATUS_OPEN}),
    TICKET_STATUS_OPEN: frozenset({TICKET_STATUS_CLOSING}),
    TICKET_STATUS_CLOSING: frozenset({TICKET_STATUS_CLOSED}),
    TICKET_STATUS_CLOSED: frozenset(),
}

INSTANCE_STATUS_ACTIVE = "active"
INSTANCE_STATUS_INACTIVE = "inactive"

# Only these keys are ever written to the shared instance index.
IDENTITY_FIELDS = ("guildId", "categoryId", "transcriptChannelId", "vouchChannelId")
CHANNEL_IDENTITY_FIELDS = ("categoryId", "transcriptChannelId", "vouchChannelId")

INDEX_FILE_NAME = "instance_configs.json"
INSTANCES_DIR_NAME = "instances"
SETTINGS_FILE_NAME = "settings.json"
TICKET_STATUS_FILE_NAME = "ticket_status.json"
CHANNEL_MAP_FILE_NAME = "channel_map.json"
CONTACTS_FILE_NAME = "contacts.json"
INSTANCE_SUBDIRS = ("auth", "temp", "transcripts", "assets", "logs")

NEW_TICKET_MARKER = "[---NewTicket---]"
TRANSCRIPT_HEADER = "# 📄 Transcript"
VOUCH_PREFIX = "vouch!"
QR_TIMEOUT = "TIMEOUT"

CLOSE_BUTTON_PREFIX = "close-ticket-"
EDIT_BUTTON_PREFIX = "edit-user-"

MESSAGE_TEMPLATE_KEYS = {
    "welcomeMessage": "Welcome (asks for name)",
    "introMessage": "Intro (after name)",
    "reopenTicketMessage": "Returning contact",
    "newTicketMessage": "New ticket (Discord side)",
    "closingMessage": "Closing",
    "vouchMessage": "Vouch request",
    "vouchSuccessMessage": "Vouch received",
}

FEATURE_FLAGS = {
    "transcriptsEnabled": "Transcripts",
    "vouchEnabled": "Vouches",
    "sendClosingMessage": "Closing message to WhatsApp",
}

DEFAULT_SETTINGS: dict[str, Any] = {
    "welcomeMessage": (
        "Welcome to Support! 😊 We're here to help. What's your name so we can get you connected?"
    ),
    "introMessage": (
        "Nice to meet you, {name}! 😊 I'm setting up your support ticket right now. "
        "Our team will be with you soon to help with your request!"
    ),
    "reopenTicketMessage": "Welcome back, {name}! 👋 Our team will continue assisting you with your request.",
    "newTicketMessage": (
        "# 📋 New Support Ticket\n**A new ticket has been created for {name}**\n"
        "WhatsApp: `{phoneNumber}`\n\nSupport agents will respond as soon as possible."
    ),
    "closingMessage": (
        "Thank you for contacting support. Your ticket is now being closed and a transcript will be saved."
    ),
    "vouchMessage": (
        "Hey {name}! Thanks for using our service! We'd love to hear your feedback.\n\n"
        "To leave a vouch, simply send a message starting with *Vouch!* followed by your feedback."
    ),
    "vouchSuccessMessage": "✅ Thank you for your vouch! It has been posted to our community channel.",
    "sendClosingMessage": False,
    "transcriptsEnabled": True,
    "vouchEnabled": True,
    "specialChannels": {},
}
