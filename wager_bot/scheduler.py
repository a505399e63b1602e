from __future__ import annotations

import logging
from collections import OrderedDict
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta
from typing import Literal

import discord
from discord.ext import tasks

from .allocator import ResourceAllocator
from .config import EscalationPolicy
from .errors import InvalidTransition, NotFound
from .lifecycle import LifecycleService
from .models import OPEN_ACCEPTED, OPEN_UNACCEPTED, Ticket, utc_now
from .notifications import Notifier
from .storage import TicketStore
from .timers import DeferredTasks

log = logging.getLogger(__name__)

EscalationAction = Literal["expire_unaccepted", "expire_accepted", "warn"]

REMINDER_CACHE_SIZE = 2048


def plan_escalation(
    ticket: Ticket, now: datetime, policy: EscalationPolicy
) -> EscalationAction | None:
    """Pick the single time-driven action due for ``ticket``, if any."""
    if ticket.status == OPEN_UNACCEPTED:
        if ticket.accepted_at is None and now - ticket.created_at >= policy.unaccepted_timeout:
            return "expire_unaccepted"
        return None
    if ticket.status != OPEN_ACCEPTED:
        return None
    reference = ticket.activity_reference
    if reference is None:
        return None
    elapsed = now - reference
    if elapsed >= policy.accepted_timeout:
        return "expire_accepted"
    if ticket.last_inactivity_warning_at is None and elapsed >= policy.warning_after:
        return "warn"
    return None


class ReminderCache:
    """Last reminder time per channel; entries expire after ``ttl``."""

    def __init__(self, ttl: timedelta, *, max_entries: int = REMINDER_CACHE_SIZE) -> None:
        self.ttl = ttl
        self.max_entries = max_entries
        self._entries: OrderedDict[int, datetime] = OrderedDict()

    def get(self, channel_id: int, now: datetime) -> datetime | None:
        sent_at = self._entries.get(channel_id)
        if sent_at is None:
            return None
        if now - sent_at >= self.ttl:
            del self._entries[channel_id]
            return None
        return sent_at

    def is_cooling_down(self, channel_id: int, now: datetime) -> bool:
        return self.get(channel_id, now) is not None

    def mark(self, channel_id: int, now: datetime) -> None:
        self._entries.pop(channel_id, None)
        self._entries[channel_id] = now
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    def retain(self, channel_ids: Iterable[int]) -> None:
        keep = set(channel_ids)
        for channel_id in [cid for cid in self._entries if cid not in keep]:
            del self._entries[channel_id]

    def __contains__(self, channel_id: object) -> bool:
        return channel_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)


async def last_activity(channel) -> datetime | None:
    last_message_id = getattr(channel, "last_message_id", None)
    if last_message_id:
        return discord.utils.snowflake_time(last_message_id)
    try:
        async for message in channel.history(limit=1):
            return message.created_at
    except discord.HTTPException as exc:
        log.warning("Unable to read history of channel %s: %s", channel.id, exc)
    return None


class EscalationScheduler:
    def __init__(
        self,
        lifecycle: LifecycleService,
        store: TicketStore,
        allocator: ResourceAllocator,
        notifier: Notifier,
        deferred: DeferredTasks,
        *,
        guilds: Callable[[], Iterable[object]],
        policy: EscalationPolicy | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._lifecycle = lifecycle
        self._store = store
        self._allocator = allocator
        self._notifier = notifier
        self._deferred = deferred
        self._guilds = guilds
        self.policy = policy or lifecycle.policy
        self._clock = clock
        self.reminders = ReminderCache(self.policy.reminder_cooldown)
        self._lifecycle_loop: tasks.Loop | None = None
        self._reminder_loop: tasks.Loop | None = None

    # ----- loop management -----
    def start(self) -> None:
        for guild in self._guilds():
            try:
                self._lifecycle.ensure_slots(guild)
            except Exception:  # pylint: disable=broad-except
                log.exception("Allocator reconcile failed for guild %s", guild.id)
        if self._lifecycle_loop is None:
            self._lifecycle_loop = tasks.loop(
                seconds=self.policy.lifecycle_interval.total_seconds()
            )(self.run_lifecycle_sweep)
        if self._reminder_loop is None:
            self._reminder_loop = tasks.loop(
                seconds=self.policy.reminder_interval.total_seconds()
            )(self.run_reminder_sweep)
        for loop in (self._lifecycle_loop, self._reminder_loop):
            if not loop.is_running():
                loop.start()
        log.info(
            "Escalation scheduler started (lifecycle every %s, reminders every %s)",
            self.policy.lifecycle_interval,
            self.policy.reminder_interval,
        )

    def stop(self) -> None:
        for loop in (self._lifecycle_loop, self._reminder_loop):
            if loop is not None and loop.is_running():
                loop.cancel()
        cancelled = self._deferred.cancel_all()
        log.info("Escalation scheduler stopped; %s deferred task(s) cancelled", cancelled)

    @property
    def running(self) -> bool:
        return any(
            loop is not None and loop.is_running()
            for loop in (self._lifecycle_loop, self._reminder_loop)
        )

    # ----- sweeps -----
    async def run_lifecycle_sweep(self) -> dict[str, int]:
        counts = {"expire_unaccepted": 0, "expire_accepted": 0, "warn": 0}
        for guild in self._guilds():
            try:
                tickets = self._store.list_open_tickets(guild.id)
            except Exception:  # pylint: disable=broad-except
                log.exception("Listing open tickets failed for guild %s", guild.id)
                continue
            for ticket in tickets:
                action = await self._escalate(ticket)
                if action is not None:
                    counts[action] += 1
        if any(counts.values()):
            log.info("Lifecycle sweep: %s", counts)
        return counts

    async def _escalate(self, ticket: Ticket) -> EscalationAction | None:
        action = plan_escalation(ticket, self._clock(), self.policy)
        if action is None:
            return None
        try:
            if action == "expire_unaccepted":
                await self._lifecycle.expire_unaccepted(ticket)
            elif action == "expire_accepted":
                await self._lifecycle.expire_accepted(ticket)
            else:
                await self._lifecycle.send_inactivity_warning(ticket)
        except (InvalidTransition, NotFound) as exc:
            log.info(
                "Skipped %s for ticket %s; it changed concurrently (%s)",
                action,
                ticket.ticket_id,
                type(exc).__name__,
            )
            return None
        except Exception:  # pylint: disable=broad-except
            log.exception("Escalation %s failed for ticket %s", action, ticket.ticket_id)
            return None
        return action

    async def run_reminder_sweep(self) -> int:
        sent = 0
        open_channels: list[int] = []
        complete = True
        for guild in self._guilds():
            try:
                tickets = self._store.list_open_tickets(guild.id)
            except Exception:  # pylint: disable=broad-except
                log.exception("Listing open tickets failed for guild %s", guild.id)
                complete = False
                continue
            for ticket in tickets:
                open_channels.append(ticket.channel_id)
                try:
                    if await self._remind(guild, ticket):
                        sent += 1
                except Exception:  # pylint: disable=broad-except
                    log.exception("Reminder failed for ticket %s", ticket.ticket_id)
        # A failed listing leaves cooldowns untouched until the next full sweep.
        if complete:
            self.reminders.retain(open_channels)
        return sent

    async def _remind(self, guild, ticket: Ticket) -> bool:
        now = self._clock()
        if self.reminders.is_cooling_down(ticket.channel_id, now):
            return False
        channel = guild.get_channel(ticket.channel_id)
        if channel is None:
            return False
        last = await last_activity(channel)
        if last is None or now - last < self.policy.reminder_inactivity:
            return False
        if not await self._notifier.inactivity_reminder(channel, ticket):
            return False
        self.reminders.mark(ticket.channel_id, now)
        log.info("Inactivity reminder posted for ticket %s", ticket.ticket_id)
        return True


__all__ = [
    "EscalationAction",
    "EscalationScheduler",
    "ReminderCache",
    "last_activity",
    "plan_escalation",
]
