from __future__ import annotations

from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

import discord

WHATSAPP_GREEN = discord.Color.from_rgb(37, 211, 102)


def make_embed(
    title: str,
    description: str,
    color: discord.Color | None = None,
    footer: str | None = None,
) -> discord.Embed:
    resolved_color = color if color is not None else discord.Color.blurple()
    embed = discord.Embed(
        title=title,
        description=description,
        color=resolved_color,
        timestamp=datetime.now(UTC),
    )
    if footer:
        embed.set_footer(text=footer)
    return embed


def success_embed(message: str) -> discord.Embed:
    return make_embed(title="Success", description=message, color=discord.Color.green())


def error_embed(message: str) -> discord.Embed:
    return make_embed(title="Error", description=message, color=discord.Color.red())


def ticket_info_embed(name: str, phone: str) -> discord.Embed:
    embed = make_embed(
        title="Ticket Information",
        description="Replies in this channel are forwarded to the contact on WhatsApp.",
        color=WHATSAPP_GREEN,
    )
    embed.add_field(name="Contact", value=name or "Unknown", inline=True)
    embed.add_field(name="WhatsApp", value=f"`{phone}`", inline=True)
    return embed


def closing_embed(closed_by: str | None, delay_seconds: float) -> discord.Embed:
    who = f" by {closed_by}" if closed_by else ""
    return make_embed(
        title="Ticket Closed",
        description=f"This ticket was closed{who}. The channel will be deleted in {delay_seconds:g} seconds.",
        color=discord.Color.orange(),
    )


def vouch_embed(name: str, feedback: str) -> discord.Embed:
    return make_embed(
        title=f"New vouch from {name}",
        description=feedback,
        color=discord.Color.gold(),
        footer="Sent via WhatsApp",
    )


def status_embed(rows: list[Mapping[str, Any]]) -> discord.Embed:
    if not rows:
        return make_embed("WhatsApp Bridge Status", "No bridge is configured for this server.")
    embed = make_embed("WhatsApp Bridge Status", "Current state of this server's bridge.", color=WHATSAPP_GREEN)
    for row in rows:
        connected = "🟢 connected" if row.get("connected") else "🔴 not connected"
        embed.add_field(name="WhatsApp", value=connected, inline=True)
        embed.add_field(name="Service", value=str(row.get("status")), inline=True)
        embed.add_field(name="Open tickets", value=str(row.get("open_tickets", 0)), inline=True)
        category = f"<#{row['category_id']}>" if row.get("category_id") else "not set"
        transcripts = f"<#{row['transcript_channel_id']}>" if row.get("transcript_channel_id") else "disabled"
        vouches = f"<#{row['vouch_channel_id']}>" if row.get("vouch_channel_id") else "disabled"
        embed.add_field(name="Category", value=category, inline=True)
        embed.add_field(name="Transcripts", value=transcripts, inline=True)
        embed.add_field(name="Vouches", value=vouches, inline=True)
    return embed


def qr_embed(qr: str, timeout_seconds: int) -> discord.Embed:
    return make_embed(
        title="Scan to link WhatsApp",
        description=(
            "Open WhatsApp → Linked devices → Link a device, then scan a QR rendered from this code "
            f"within {timeout_seconds} seconds:\n```\n{qr[:3900]}\n```"
        ),
        color=WHATSAPP_GREEN,
    )
