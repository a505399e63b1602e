from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping

import discord

from .errors import AllCategoriesFull, CategoryNotConfigured, ServerChannelLimit
from .models import (
    DEFAULT_REGION,
    MAX_CHANNELS_PER_CATEGORY,
    CategorySlot,
    GuildSettings,
)

log = logging.getLogger(__name__)

MAX_GUILD_CHANNELS = 500
# Discord error code for "Maximum number of guild channels reached".
GUILD_CHANNEL_LIMIT_CODE = 30013


class ResourceAllocator:
    """Tracks how many ticket channels live in each configured category.

    Slots are shared between every (kind, region) pair that lists the same
    category. Counts are advisory: the check and the channel creation are not
    atomic, so two concurrent creations may briefly overfill a category.
    """

    def __init__(
        self,
        *,
        capacity: int = MAX_CHANNELS_PER_CATEGORY,
        guild_channel_limit: int = MAX_GUILD_CHANNELS,
    ) -> None:
        self.capacity = capacity
        self.guild_channel_limit = guild_channel_limit
        self._slots: dict[int, dict[int, CategorySlot]] = {}
        self._order: dict[tuple[int, str, str], list[int]] = {}

    def configure(self, settings: GuildSettings) -> list[int]:
        """Rebuild the category order for a guild from its settings.

        Slots already tracked keep their counts. Returns the category ids that
        were not tracked before.
        """
        guild_slots = self._slots.setdefault(settings.guild_id, {})
        added: list[int] = []
        for key in [k for k in self._order if k[0] == settings.guild_id]:
            del self._order[key]
        for category_key, category_ids in settings.categories.items():
            kind, _, region = category_key.partition(":")
            self._order[(settings.guild_id, kind, region or DEFAULT_REGION)] = list(
                category_ids
            )
            for category_id in category_ids:
                if category_id not in guild_slots:
                    guild_slots[category_id] = CategorySlot(
                        category_id=category_id, capacity=self.capacity
                    )
                    added.append(category_id)
        return added

    def slots(
        self, guild_id: int, kind: str, region: str = DEFAULT_REGION
    ) -> list[CategorySlot]:
        guild_slots = self._slots.get(guild_id, {})
        return [
            guild_slots[category_id]
            for category_id in self._order.get((guild_id, kind, region), [])
            if category_id in guild_slots
        ]

    def slot(self, guild_id: int, category_id: int) -> CategorySlot | None:
        return self._slots.get(guild_id, {}).get(category_id)

    def allocate(
        self,
        guild_id: int,
        kind: str,
        region: str = DEFAULT_REGION,
        *,
        guild_channel_count: int,
    ) -> CategorySlot:
        if guild_channel_count >= self.guild_channel_limit:
            raise ServerChannelLimit()
        slots = self.slots(guild_id, kind, region)
        if not slots:
            raise CategoryNotConfigured(
                f"No category configured for {kind} ({region}) in guild {guild_id}"
            )
        for slot in slots:
            if slot.has_room:
                return slot
        raise AllCategoriesFull()

    async def open_channel(
        self,
        guild,
        kind: str,
        region: str,
        *,
        name: str,
        overwrites: Mapping[object, discord.PermissionOverwrite],
        reason: str | None = None,
    ):
        """Create a ticket channel in the first category with room.

        Returns ``(channel, slot)``. Categories that vanished from the guild
        are marked full and skipped.
        """
        while True:
            slot = self.allocate(
                guild.id, kind, region, guild_channel_count=len(guild.channels)
            )
            category = guild.get_channel(slot.category_id)
            if category is None:
                log.warning(
                    "Category %s missing in guild %s; marking it full",
                    slot.category_id,
                    guild.id,
                )
                slot.count = slot.capacity
                continue
            break
        try:
            channel = await guild.create_text_channel(
                name,
                category=category,
                overwrites=dict(overwrites),
                reason=reason,
            )
        except discord.HTTPException as exc:
            if getattr(exc, "code", None) == GUILD_CHANNEL_LIMIT_CODE:
                raise ServerChannelLimit() from exc
            raise
        slot.count += 1
        log.info(
            "Opened channel %s in category %s (%s/%s) for %s",
            channel.id,
            slot.category_id,
            slot.count,
            slot.capacity,
            kind,
        )
        return channel, slot

    def release(self, guild_id: int, category_id: int | None) -> None:
        if category_id is None:
            return
        slot = self.slot(guild_id, category_id)
        if slot is None:
            return
        slot.count = max(0, slot.count - 1)

    async def delete_channel(
        self, guild, channel_id: int, category_id: int | None, *, reason: str
    ) -> bool:
        """Delete a ticket channel and free its slot.

        The slot is released even when the channel was already gone.
        """
        channel = guild.get_channel(channel_id)
        deleted = False
        if channel is None:
            log.info("Channel %s already gone in guild %s", channel_id, guild.id)
        else:
            try:
                await channel.delete(reason=reason)
                deleted = True
            except discord.NotFound:
                log.info("Channel %s already deleted", channel_id)
            except discord.Forbidden:
                log.warning("Forbidden deleting channel %s", channel_id)
                return False
            except discord.HTTPException as exc:
                log.warning("HTTPException deleting channel %s: %s", channel_id, exc)
                return False
        self.release(guild.id, category_id)
        return deleted

    def reconcile(self, guild, category_ids: Iterable[int] | None = None) -> None:
        guild_slots = self._slots.get(guild.id, {})
        if category_ids is None:
            category_ids = list(guild_slots)
        reconciled = 0
        for category_id in category_ids:
            slot = guild_slots.get(category_id)
            if slot is None:
                continue
            reconciled += 1
            category = guild.get_channel(category_id)
            children = getattr(category, "channels", None) if category else None
            if children is None:
                slot.count = slot.capacity
                log.warning(
                    "Category %s not found in guild %s; treating as full",
                    category_id,
                    guild.id,
                )
                continue
            slot.count = len(children)
        log.info("Reconciled %s category slots for guild %s", reconciled, guild.id)


__all__ = [
    "GUILD_CHANNEL_LIMIT_CODE",
    "MAX_GUILD_CHANNELS",
    "ResourceAllocator",
]
