from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from datetime import datetime

import discord

from .errors import ExternalServiceUnavailable, InvalidParticipants
from .models import (
    TIER_LADDER,
    ParticipantProfile,
    TierConfig,
    TierDefinition,
    utc_now,
)
from .storage import TicketStore

log = logging.getLogger(__name__)

TOP_N = 10
LEADERBOARD_SIZE = 15
PROFILE_WRITE_ATTEMPTS = 5


def tier_for_wins(wins: int) -> TierDefinition | None:
    """Return the highest tier whose threshold is at most ``wins``."""
    for tier in TIER_LADDER:
        if wins >= tier.threshold:
            return tier
    return None


def validate_teams(winner_ids: Sequence[int], loser_ids: Sequence[int]) -> None:
    if not winner_ids or not loser_ids:
        raise InvalidParticipants("Both teams need at least one member.")
    if len(winner_ids) != len(loser_ids):
        raise InvalidParticipants("Teams must have the same size.")
    everyone = [*winner_ids, *loser_ids]
    if len(set(everyone)) != len(everyone):
        raise InvalidParticipants("A player cannot appear twice in one result.")


async def fetch_guild_member(guild, user_id: int):
    member = guild.get_member(user_id)
    if member is not None:
        return member
    try:
        return await guild.fetch_member(user_id)
    except discord.NotFound:
        log.info("Member %s not found in guild %s", user_id, guild.id)
    except discord.Forbidden:
        log.warning("Forbidden fetching member %s in guild %s", user_id, guild.id)
    except discord.HTTPException as exc:
        log.warning(
            "HTTPException fetching member %s in guild %s: %s", user_id, guild.id, exc
        )
    return None


async def _add_member_role(member, role, *, reason: str) -> bool:
    if role in getattr(member, "roles", []):
        return False
    try:
        await member.add_roles(role, reason=reason)
    except discord.Forbidden:
        log.warning(
            "Forbidden when adding role %s to %s (guild %s)",
            role.id,
            member.id,
            member.guild.id,
        )
        return False
    except discord.HTTPException as exc:
        log.warning(
            "HTTPException adding role %s to %s in guild %s: %s",
            role.id,
            member.id,
            member.guild.id,
            exc,
        )
        return False
    return True


async def _remove_member_role(member, role, *, reason: str) -> bool:
    if role not in getattr(member, "roles", []):
        return False
    try:
        await member.remove_roles(role, reason=reason)
    except discord.Forbidden:
        log.warning(
            "Forbidden when removing role %s from %s (guild %s)",
            role.id,
            member.id,
            member.guild.id,
        )
        return False
    except discord.HTTPException as exc:
        log.warning(
            "HTTPException removing role %s from %s in guild %s: %s",
            role.id,
            member.id,
            member.guild.id,
            exc,
        )
        return False
    return True


class RankEngine:
    def __init__(
        self,
        store: TicketStore,
        *,
        top_n: int = TOP_N,
        clock: Callable[[], datetime] = utc_now,
        attempts: int = PROFILE_WRITE_ATTEMPTS,
    ) -> None:
        self._store = store
        self.top_n = top_n
        self._clock = clock
        self._attempts = attempts

    def tier_for_wins(self, wins: int) -> TierDefinition | None:
        return tier_for_wins(wins)

    def _tier_config(self, guild) -> TierConfig | None:
        return self._store.get_tier_config(guild.id)

    def _update_profile(
        self, user_id: int, mutate: Callable[[ParticipantProfile], None]
    ) -> ParticipantProfile:
        for attempt in range(1, self._attempts + 1):
            profile = self._store.load_profile(user_id)
            mutate(profile)
            if self._store.save_profile(profile):
                return profile
            log.info(
                "Profile %s changed concurrently (attempt %s/%s); retrying",
                user_id,
                attempt,
                self._attempts,
            )
        raise ExternalServiceUnavailable(
            f"Profile {user_id} kept changing; giving up after {self._attempts} attempts"
        )

    async def record_result(
        self, guild, winner_ids: Sequence[int], loser_ids: Sequence[int]
    ) -> tuple[list[ParticipantProfile], list[ParticipantProfile]]:
        validate_teams(winner_ids, loser_ids)
        now = self._clock()
        winners = [
            self._update_profile(user_id, lambda profile: profile.record_win(now))
            for user_id in winner_ids
        ]
        losers = [
            self._update_profile(user_id, lambda profile: profile.record_loss(now))
            for user_id in loser_ids
        ]
        log.info(
            "Recorded result in guild %s: winners=%s losers=%s",
            getattr(guild, "id", None),
            list(winner_ids),
            list(loser_ids),
        )
        if guild is not None:
            await self._resync(guild, winners)
        return winners, losers

    async def override_stats(
        self, guild, user_id: int, *, wins: int, losses: int
    ) -> ParticipantProfile:
        if wins < 0 or losses < 0:
            raise ValueError("Wins and losses must be zero or more.")

        def apply(profile: ParticipantProfile) -> None:
            profile.wins = wins
            profile.losses = losses
            profile.games_played = wins + losses

        profile = self._update_profile(user_id, apply)
        log.info(
            "Stats overridden for %s in guild %s: %sW/%sL",
            user_id,
            getattr(guild, "id", None),
            wins,
            losses,
        )
        if guild is not None:
            await self._resync(guild, [profile])
        return profile

    async def _resync(self, guild, profiles: Sequence[ParticipantProfile]) -> None:
        for profile in profiles:
            try:
                await self.sync_participant_tier(guild, profile.user_id, profile.wins)
            except Exception:  # pylint: disable=broad-except
                log.exception("Tier sync failed for %s", profile.user_id)
        try:
            await self.sync_top_n(guild)
        except Exception:  # pylint: disable=broad-except
            log.exception("Top-%s sync failed for guild %s", self.top_n, guild.id)

    async def sync_participant_tier(self, guild, user_id: int, wins: int) -> str | None:
        """Make the member hold exactly the tier role matching ``wins``.

        Returns the target tier key. Does nothing without configured tier roles
        or when the member is not in the guild.
        """
        config = self._tier_config(guild)
        tier = tier_for_wins(wins)
        target_key = tier.key if tier else None
        if config is None or not config.tier_role_ids():
            return target_key
        member = await fetch_guild_member(guild, user_id)
        if member is None:
            return target_key

        target_role_id = config.role_for(target_key)
        held = {role.id: role for role in getattr(member, "roles", [])}
        for role_id in config.tier_role_ids():
            if role_id == target_role_id or role_id not in held:
                continue
            await _remove_member_role(member, held[role_id], reason="Wager tier update")
        if target_role_id is not None and target_role_id not in held:
            role = guild.get_role(target_role_id)
            if role is None:
                log.warning(
                    "Tier role %s for %s missing in guild %s",
                    target_role_id,
                    target_key,
                    guild.id,
                )
            else:
                await _add_member_role(member, role, reason="Wager tier update")
        return target_key

    def _present_profiles(self, guild) -> list[ParticipantProfile]:
        present = {
            member.id
            for member in getattr(guild, "members", [])
            if not getattr(member, "bot", False)
        }
        return [
            profile for profile in self._store.list_profiles() if profile.user_id in present
        ]

    def rank_members(self, guild) -> list[int]:
        profiles = [profile for profile in self._present_profiles(guild) if profile.wins > 0]
        profiles.sort(key=lambda profile: profile.user_id)
        profiles.sort(key=lambda profile: profile.wins, reverse=True)
        return [profile.user_id for profile in profiles[: self.top_n]]

    def leaderboard(self, guild, limit: int = LEADERBOARD_SIZE) -> list[ParticipantProfile]:
        """Players still in the guild with at least one recorded game, best first.

        Ordered by wins, then games played, then fewest losses, then user id.
        """
        profiles = [
            profile
            for profile in self._present_profiles(guild)
            if profile.wins > 0 or profile.losses > 0
        ]
        profiles.sort(
            key=lambda profile: (
                -profile.wins,
                -profile.games_played,
                profile.losses,
                profile.user_id,
            )
        )
        return profiles[:limit]

    async def sync_top_n(self, guild) -> list[int]:
        """Give the top-N role to exactly the current leaders."""
        config = self._tier_config(guild)
        if config is None or config.top_role_id is None:
            return []
        role = guild.get_role(config.top_role_id)
        if role is None:
            log.warning(
                "Top-%s role %s missing in guild %s",
                self.top_n,
                config.top_role_id,
                guild.id,
            )
            return []
        leaders = self.rank_members(guild)
        leader_set = set(leaders)
        for member in getattr(guild, "members", []):
            if member.id in leader_set:
                await _add_member_role(member, role, reason=f"Wager top {self.top_n}")
            else:
                await _remove_member_role(member, role, reason=f"Wager top {self.top_n}")
        return leaders


__all__ = [
    "LEADERBOARD_SIZE",
    "PROFILE_WRITE_ATTEMPTS",
    "RankEngine",
    "TOP_N",
    "fetch_guild_member",
    "tier_for_wins",
    "validate_teams",
]
