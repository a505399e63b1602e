"""Routing of ticket buttons to lifecycle operations."""

from __future__ import annotations

import logging

import discord

from .custom_ids import (
    VERB_ACCEPT,
    VERB_CLAIM,
    VERB_CLOSE,
    VERB_DECIDE,
    VERB_DISPOSE,
    VERB_DODGE,
    VERB_EXTEND,
    CustomId,
    InvalidCustomId,
    parse_custom_id,
)
from .errors import ExternalServiceUnavailable, WagerError
from .lifecycle import LifecycleService
from .models import SIDE_INITIATOR, SIDE_OPPONENT, SIDES, GuildSettings, Ticket
from .notifications import mention

log = logging.getLogger(__name__)

GENERIC_FAILURE = "Something went wrong while handling this ticket. Please try again."


class NotAllowed(WagerError):
    user_message = "You are not allowed to do that on this ticket."


def user_facing_message(exc: Exception) -> str:
    if isinstance(exc, ExternalServiceUnavailable):
        return exc.user_message
    if isinstance(exc, WagerError):
        return str(exc)
    return GENERIC_FAILURE


def is_staff(member, settings: GuildSettings) -> bool:
    permissions = getattr(member, "guild_permissions", None)
    if permissions is not None and getattr(permissions, "administrator", False):
        return True
    staff = set(settings.staff_role_ids)
    return any(role.id in staff for role in getattr(member, "roles", []))


class InteractionRouter:
    def __init__(self, lifecycle: LifecycleService) -> None:
        self._lifecycle = lifecycle

    async def handle(self, interaction: discord.Interaction) -> bool:
        """Handle a component interaction; returns ``False`` if it is not ours."""
        data = interaction.data or {}
        parsed = parse_custom_id(data.get("custom_id"))  # type: ignore[union-attr]
        if parsed is None:
            return False
        await interaction.response.defer(ephemeral=True, thinking=True)
        try:
            message = await self.dispatch(parsed, interaction)
        except WagerError as exc:
            log.info(
                "Ticket %s %s by %s rejected: %s",
                parsed.ticket_id,
                parsed.verb,
                interaction.user.id,
                exc,
            )
            message = user_facing_message(exc)
        except InvalidCustomId as exc:
            log.warning("Malformed custom id %s: %s", data.get("custom_id"), exc)
            message = GENERIC_FAILURE
        except Exception:  # pylint: disable=broad-except
            log.exception(
                "Unhandled error for %s on ticket %s", parsed.verb, parsed.ticket_id
            )
            message = GENERIC_FAILURE
        try:
            await interaction.followup.send(message, ephemeral=True)
        except discord.HTTPException as exc:
            log.warning("Failed to answer interaction %s: %s", interaction.id, exc)
        return True

    async def dispatch(self, custom_id: CustomId, interaction: discord.Interaction) -> str:
        guild = interaction.guild
        if guild is None:
            raise NotAllowed("Ticket buttons only work inside a server.")
        ticket = self._lifecycle.find(
            custom_id.ticket_id,
            guild_id=guild.id,
            channel_id=getattr(interaction.channel, "id", None),
        )
        actor = interaction.user
        settings = self._lifecycle.settings_for(ticket.guild_id)
        staff = is_staff(actor, settings)
        verb = custom_id.verb

        if verb == VERB_ACCEPT:
            return await self._accept(ticket, actor.id, staff)
        if verb == VERB_EXTEND:
            if not staff and actor.id not in ticket.participant_ids:
                raise NotAllowed("Only participants or staff can extend this ticket.")
            await self._lifecycle.extend(ticket.ticket_id, actor.id)
            return "Ticket extended."
        if verb == VERB_DODGE:
            return await self._dodge(ticket, custom_id, actor.id, staff)
        if not staff:
            raise NotAllowed("Only hosters, moderators or administrators can do that.")
        if verb == VERB_CLAIM:
            await self._lifecycle.claim(ticket.ticket_id, actor.id)
            return "Ticket claimed."
        if verb == VERB_DECIDE:
            side = custom_id.extra[0] if custom_id.extra else ""
            if side not in SIDES:
                raise InvalidCustomId(f"Unknown side {side!r}")
            await self._lifecycle.decide_winner(ticket.ticket_id, side, actor_id=actor.id)
            label = "Challenger" if side == SIDE_INITIATOR else "Challenged"
            return f"Result recorded: {label} side wins."
        if verb == VERB_CLOSE:
            await self._lifecycle.close(ticket.ticket_id, actor.id)
            return "Ticket closed."
        if verb == VERB_DISPOSE:
            await self._lifecycle.dispose(ticket.ticket_id, actor.id)
            return "Channel will be deleted shortly."
        raise InvalidCustomId(f"Unsupported verb {verb!r}")

    async def _accept(self, ticket: Ticket, actor_id: int, staff: bool) -> str:
        if actor_id in ticket.side_members(SIDE_INITIATOR):
            raise NotAllowed(
                "You cannot accept your own challenge. Only the challenged side can accept."
            )
        if not staff and actor_id not in ticket.side_members(SIDE_OPPONENT):
            raise NotAllowed("Only the challenged side or staff can accept.")
        await self._lifecycle.accept(ticket.ticket_id, actor_id)
        return "Challenge accepted. Good luck!"

    async def _dodge(
        self, ticket: Ticket, custom_id: CustomId, actor_id: int, staff: bool
    ) -> str:
        dodger_id = custom_id.extra_int(0) if custom_id.extra else actor_id
        self_dodge = (
            dodger_id == actor_id and actor_id in ticket.side_members(SIDE_OPPONENT)
        )
        if not staff and not self_dodge:
            raise NotAllowed("Only staff or the challenged side can mark a dodge.")
        await self._lifecycle.mark_dodge(ticket.ticket_id, dodger_id, actor_id=actor_id)
        return f"{mention(dodger_id)} marked as dodging."


__all__ = [
    "GENERIC_FAILURE",
    "InteractionRouter",
    "NotAllowed",
    "is_staff",
    "user_facing_message",
]
