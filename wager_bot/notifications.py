"""Ticket panels, reminders and audit log posts.

Everything here is best effort: Discord failures are logged and swallowed so a
committed ticket transition is never undone by a message that failed to send.
"""

from __future__ import annotations

import io
import logging
from collections.abc import Iterable, Sequence
from datetime import UTC, datetime

import discord

from .custom_ids import (
    VERB_ACCEPT,
    VERB_CLAIM,
    VERB_CLOSE,
    VERB_DECIDE,
    VERB_DISPOSE,
    VERB_DODGE,
    VERB_EXTEND,
    build_custom_id,
    domain_for_kind,
)
from .models import (
    KIND_2V2,
    KIND_WAR,
    SIDE_INITIATOR,
    SIDE_OPPONENT,
    Ticket,
)

log = logging.getLogger(__name__)

TRANSCRIPT_MESSAGE_LIMIT = 500


def mention(user_id: int) -> str:
    return f"<@{user_id}>"


def mention_all(user_ids: Iterable[int]) -> str:
    return " ".join(mention(user_id) for user_id in user_ids)


def ticket_label(ticket: Ticket) -> str:
    if ticket.kind == KIND_WAR:
        return "War"
    if ticket.kind == KIND_2V2:
        return "2v2 Wager"
    return "Wager"


def side_label(ticket: Ticket, side: str) -> str:
    return " & ".join(mention(user_id) for user_id in ticket.side_members(side))


def channel_name(kind: str, names: Sequence[str]) -> str:
    """Channel name such as ``wager-alice-vs-bob`` (lowercase, max 90 chars)."""
    if kind == KIND_2V2:
        raw = "2v2-wager-" + "-".join(names[:2]) + "-vs-" + "-".join(names[2:4])
    elif kind == KIND_WAR:
        raw = f"war-{names[0]}-vs-{names[1]}"
    else:
        raw = f"wager-{names[0]}-vs-{names[1]}"
    return "-".join(raw.split()).lower()[:90]


def _button(
    ticket: Ticket,
    verb: str,
    label: str,
    *extra: object,
    style: discord.ButtonStyle = discord.ButtonStyle.secondary,
) -> discord.ui.Button:
    return discord.ui.Button(
        label=label,
        style=style,
        custom_id=build_custom_id(
            domain_for_kind(ticket.kind), verb, ticket.ticket_id, *extra
        ),
    )


def build_view(buttons: Iterable[discord.ui.Button]) -> discord.ui.View:
    view = discord.ui.View(timeout=None)
    for button in buttons:
        view.add_item(button)
    return view


def challenge_buttons(ticket: Ticket) -> list[discord.ui.Button]:
    return [
        _button(ticket, VERB_ACCEPT, "Accept", style=discord.ButtonStyle.success),
        _button(ticket, VERB_CLOSE, "Cancel", style=discord.ButtonStyle.danger),
    ]


def control_buttons(ticket: Ticket) -> list[discord.ui.Button]:
    buttons = [
        _button(ticket, VERB_CLAIM, "Claim", style=discord.ButtonStyle.primary),
        _button(
            ticket,
            VERB_DECIDE,
            "Challenger wins",
            SIDE_INITIATOR,
            style=discord.ButtonStyle.success,
        ),
        _button(
            ticket,
            VERB_DECIDE,
            "Challenged wins",
            SIDE_OPPONENT,
            style=discord.ButtonStyle.success,
        ),
    ]
    for index, user_id in enumerate(ticket.participant_ids, start=1):
        buttons.append(_button(ticket, VERB_DODGE, f"Dodge #{index}", user_id))
    buttons.append(_button(ticket, VERB_CLOSE, "Close", style=discord.ButtonStyle.danger))
    return buttons


def build_ticket_embed(ticket: Ticket, *, title: str, description: str) -> discord.Embed:
    embed = discord.Embed(
        title=title,
        description=description,
        color=discord.Color.blurple(),
        timestamp=datetime.now(UTC),
    )
    embed.add_field(name="Challenger", value=side_label(ticket, SIDE_INITIATOR))
    embed.add_field(name="Challenged", value=side_label(ticket, SIDE_OPPONENT))
    if ticket.kind == KIND_WAR:
        embed.add_field(name="Region", value=ticket.region, inline=False)
    embed.set_footer(text=f"Ticket {ticket.ticket_id}")
    return embed


async def send_safely(channel, **kwargs) -> object | None:
    if channel is None:
        return None
    try:
        return await channel.send(**kwargs)
    except discord.Forbidden:
        log.warning("Forbidden sending to channel %s", getattr(channel, "id", None))
    except discord.HTTPException as exc:
        log.warning(
            "HTTPException sending to channel %s: %s", getattr(channel, "id", None), exc
        )
    return None


async def build_transcript(channel, *, limit: int = TRANSCRIPT_MESSAGE_LIMIT) -> str:
    lines: list[str] = []
    try:
        async for message in channel.history(limit=limit, oldest_first=True):
            stamp = message.created_at.strftime("%Y-%m-%d %H:%M:%S")
            author = getattr(message.author, "display_name", message.author)
            lines.append(f"[{stamp}] {author}: {message.content}")
    except discord.HTTPException as exc:
        log.warning("Unable to read history of channel %s: %s", channel.id, exc)
    return "\n".join(lines)


class AuditReporter:
    """Posts ticket outcomes and transcripts to the configured log channels."""

    def __init__(
        self,
        bot,
        *,
        log_channel_id: int | None = None,
        dodge_channel_id: int | None = None,
    ) -> None:
        self._bot = bot
        self.log_channel_id = log_channel_id
        self.dodge_channel_id = dodge_channel_id

    async def resolve_channel(self, guild, channel_id: int | None):
        """Look in the guild cache first, then fall back to a REST fetch."""
        if not channel_id:
            return None
        channel = guild.get_channel(channel_id) if guild is not None else None
        if channel is not None:
            return channel
        try:
            channel = await self._bot.fetch_channel(channel_id)
        except discord.NotFound:
            log.warning("Log channel %s not found", channel_id)
            return None
        except discord.Forbidden:
            log.warning("No access to log channel %s; check bot permissions", channel_id)
            return None
        except discord.HTTPException as exc:
            log.warning("Cannot fetch log channel %s: %s", channel_id, exc)
            return None
        channel_guild = getattr(channel, "guild", None)
        if guild is not None and channel_guild is not None and channel_guild.id != guild.id:
            log.warning(
                "Channel %s belongs to guild %s, expected %s",
                channel_id,
                channel_guild.id,
                guild.id,
            )
            return None
        return channel

    async def report(self, guild, message: str, *, dodge: bool = False, file=None) -> bool:
        channel_id = self.dodge_channel_id if dodge else self.log_channel_id
        if dodge and not channel_id:
            channel_id = self.log_channel_id
        channel = await self.resolve_channel(guild, channel_id)
        if channel is None:
            log.info("[AUDIT] %s", message)
            return False
        kwargs: dict[str, object] = {"content": message}
        if file is not None:
            kwargs["file"] = file
        return await send_safely(channel, **kwargs) is not None

    async def transcript(self, guild, ticket: Ticket, channel, *, reason: str) -> bool:
        text = await build_transcript(channel)
        if not text:
            return False
        payload = discord.File(
            io.BytesIO(text.encode("utf-8")),
            filename=f"transcript-{ticket.ticket_id}.txt",
        )
        return await self.report(
            guild,
            f"{ticket_label(ticket)} ticket `{ticket.ticket_id}` {reason}",
            file=payload,
        )


class Notifier:
    """Messages posted into ticket channels as the lifecycle moves forward."""

    def __init__(self, audit: AuditReporter | None = None) -> None:
        self.audit = audit

    async def challenge_opened(self, channel, ticket: Ticket) -> None:
        embed = build_ticket_embed(
            ticket,
            title=f"{ticket_label(ticket)} Challenge",
            description=(
                f"{side_label(ticket, SIDE_OPPONENT)}, you have been challenged by "
                f"{side_label(ticket, SIDE_INITIATOR)}. Accept within 24 hours or "
                "the ticket closes automatically."
            ),
        )
        await send_safely(
            channel,
            content=mention_all(ticket.participant_ids),
            embed=embed,
            view=build_view(challenge_buttons(ticket)),
        )

    async def challenge_accepted(self, channel, ticket: Ticket) -> None:
        embed = build_ticket_embed(
            ticket,
            title=f"{ticket_label(ticket)} Accepted",
            description=(
                "Chat is now open. A hoster will claim this ticket and record "
                "the result."
            ),
        )
        await send_safely(
            channel,
            content=mention_all(ticket.participant_ids),
            embed=embed,
            view=build_view(control_buttons(ticket)),
        )

    async def ticket_claimed(self, channel, ticket: Ticket) -> None:
        if ticket.claimed_by is None:
            return
        await send_safely(
            channel, content=f"Ticket claimed by {mention(ticket.claimed_by)}."
        )

    async def ticket_decided(self, guild, channel, ticket: Ticket) -> None:
        if ticket.winner_side is None:
            return
        winners = side_label(ticket, ticket.winner_side)
        await send_safely(
            channel,
            content=f"Result recorded: {winners} won. This channel closes shortly.",
        )
        if self.audit is not None:
            loser_side = (
                SIDE_OPPONENT if ticket.winner_side == SIDE_INITIATOR else SIDE_INITIATOR
            )
            await self.audit.report(
                guild,
                f"{ticket_label(ticket)} result: {winners} defeated "
                f"{side_label(ticket, loser_side)} (decided by "
                f"{mention(ticket.closed_by) if ticket.closed_by else 'system'})",
            )

    async def ticket_dodged(self, guild, channel, ticket: Ticket, *, automatic: bool) -> None:
        if ticket.dodged_by is None:
            return
        if automatic:
            content = (
                "Auto-dodge applied: the challenge was accepted but no result was "
                f"recorded in time. {side_label(ticket, SIDE_OPPONENT)} marked as "
                "dodging. This channel closes shortly."
            )
        else:
            content = f"{mention(ticket.dodged_by)} has been marked as dodging."
        view = None
        if not automatic:
            view = build_view(
                [
                    _button(
                        ticket,
                        VERB_DISPOSE,
                        "Delete channel",
                        style=discord.ButtonStyle.danger,
                    )
                ]
            )
        kwargs: dict[str, object] = {"content": content}
        if view is not None:
            kwargs["view"] = view
        await send_safely(channel, **kwargs)
        if self.audit is not None:
            marked_by = mention(ticket.closed_by) if ticket.closed_by else "system"
            await self.audit.report(
                guild,
                f"{ticket_label(ticket)} dodge: {mention(ticket.dodged_by)} dodged "
                f"(ticket `{ticket.ticket_id}`, marked by {marked_by})",
                dodge=True,
            )

    async def ticket_closed(self, guild, channel, ticket: Ticket, *, automatic: bool) -> None:
        if automatic:
            content = (
                "Ticket auto-closed: the challenge was not accepted within 24 hours. "
                f"{mention_all(ticket.participant_ids)}"
            )
        else:
            closer = mention(ticket.closed_by) if ticket.closed_by else "staff"
            content = f"Ticket closed by {closer}. This channel closes shortly."
        await send_safely(channel, content=content)

    async def inactivity_warning(self, channel, ticket: Ticket) -> bool:
        view = build_view(
            [
                _button(
                    ticket,
                    VERB_EXTEND,
                    "Extend ticket",
                    style=discord.ButtonStyle.primary,
                )
            ]
        )
        sent = await send_safely(
            channel,
            content=(
                f"{mention_all(ticket.participant_ids)}\n"
                "This ticket has been open for 48 hours without a result. "
                "Auto-dodge applies in 24 hours unless it is extended."
            ),
            view=view,
        )
        return sent is not None

    async def inactivity_reminder(self, channel, ticket: Ticket) -> bool:
        sent = await send_safely(
            channel,
            content=(
                f"{mention_all(ticket.participant_ids)}\n"
                "This ticket has been inactive. Please continue or close it if "
                "it is resolved."
            ),
        )
        return sent is not None

    async def ticket_extended(self, channel, ticket: Ticket) -> None:
        await send_safely(
            channel,
            content="Ticket extended. The inactivity timer has been reset.",
        )

    async def before_delete(self, guild, channel, ticket: Ticket, *, reason: str) -> None:
        if self.audit is None:
            return
        await self.audit.transcript(guild, ticket, channel, reason=reason)


__all__ = [
    "AuditReporter",
    "Notifier",
    "build_transcript",
    "build_view",
    "channel_name",
    "challenge_buttons",
    "control_buttons",
    "mention",
    "mention_all",
    "send_safely",
]
