from __future__ import annotations

import logging
from collections.abc import Iterable

import discord

log = logging.getLogger(__name__)

PARTICIPANT_LOCKED = discord.PermissionOverwrite(
    view_channel=True,
    read_message_history=True,
    attach_files=True,
    send_messages=False,
)
STAFF_FULL_ACCESS = discord.PermissionOverwrite(
    view_channel=True,
    send_messages=True,
    read_message_history=True,
    attach_files=True,
)
STAFF_REVOKED = discord.PermissionOverwrite(
    view_channel=False,
    send_messages=False,
    read_message_history=False,
)


def member_target(user_id: int) -> discord.Object:
    return discord.Object(id=user_id, type=discord.Member)


def _explicit(overwrite: discord.PermissionOverwrite) -> dict[str, bool]:
    return {name: value for name, value in overwrite if value is not None}


def _copy(overwrite: discord.PermissionOverwrite) -> discord.PermissionOverwrite:
    return discord.PermissionOverwrite(**_explicit(overwrite))


def locked_overwrites(
    guild, participant_ids: Iterable[int], staff_role_ids: Iterable[int]
) -> dict[object, discord.PermissionOverwrite]:
    """Overwrites for a freshly created ticket channel.

    Nobody can post until the challenge is accepted; staff keep full access.
    Staff roles that no longer exist in the guild are skipped.
    """
    overwrites: dict[object, discord.PermissionOverwrite] = {
        guild.default_role: discord.PermissionOverwrite(view_channel=False)
    }
    for user_id in participant_ids:
        overwrites[member_target(user_id)] = _copy(PARTICIPANT_LOCKED)
    for role_id in staff_role_ids:
        role = guild.get_role(role_id)
        if role is None:
            log.warning("Staff role %s missing in guild %s", role_id, guild.id)
            continue
        overwrites[role] = _copy(STAFF_FULL_ACCESS)
    return overwrites


async def _edit(channel, target, *, reason: str, **changes: bool) -> bool:
    overwrite = channel.overwrites_for(target)
    overwrite.update(**changes)
    try:
        await channel.set_permissions(target, overwrite=overwrite, reason=reason)
    except discord.Forbidden:
        log.warning(
            "Forbidden editing overwrite for %s in channel %s", target.id, channel.id
        )
        return False
    except discord.HTTPException as exc:
        log.warning(
            "HTTPException editing overwrite for %s in channel %s: %s",
            target.id,
            channel.id,
            exc,
        )
        return False
    return True


async def unlock_participants(channel, participant_ids: Iterable[int]) -> list[int]:
    """Grant send to every participant; returns the ids that could not be updated."""
    failed: list[int] = []
    for user_id in participant_ids:
        ok = await _edit(
            channel,
            member_target(user_id),
            reason="Challenge accepted",
            send_messages=True,
        )
        if not ok:
            failed.append(user_id)
    return failed


async def hand_off_to_claimer(
    channel, guild, staff_role_ids: Iterable[int], claimer_id: int
) -> list[int]:
    failed: list[int] = []
    for role_id in staff_role_ids:
        role = guild.get_role(role_id)
        if role is None:
            continue
        ok = await _edit(
            channel,
            role,
            reason="Ticket claimed",
            **_explicit(STAFF_REVOKED),
        )
        if not ok:
            failed.append(role_id)
    ok = await _edit(
        channel,
        member_target(claimer_id),
        reason="Ticket claimed",
        **_explicit(STAFF_FULL_ACCESS),
    )
    if not ok:
        failed.append(claimer_id)
    return failed


async def reopen_after_dodge(
    channel, participant_ids: Iterable[int], dodger_id: int
) -> list[int]:
    """Let the remaining participants keep talking; staff overwrites are untouched."""
    remaining = [user_id for user_id in participant_ids if user_id != dodger_id]
    failed: list[int] = []
    for user_id in remaining:
        ok = await _edit(
            channel,
            member_target(user_id),
            reason="Dodge recorded",
            view_channel=True,
            send_messages=True,
        )
        if not ok:
            failed.append(user_id)
    return failed


__all__ = [
    "PARTICIPANT_LOCKED",
    "STAFF_FULL_ACCESS",
    "STAFF_REVOKED",
    "hand_off_to_claimer",
    "locked_overwrites",
    "member_target",
    "reopen_after_dodge",
    "unlock_participants",
]
