"""Guarded ticket transitions.

Every state change is one conditional DynamoDB update. When the condition
fails the ticket is re-read only to pick the error to raise; the re-read never
decides a transition. Side effects after a committed write (permissions,
panels, profiles, roles, channel deletion) are best effort.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Awaitable, Callable, Sequence
from datetime import datetime

from boto3.dynamodb.conditions import Attr, ConditionBase

from .allocator import ResourceAllocator
from .config import EscalationPolicy
from .errors import (
    AlreadyAccepted,
    AlreadyClaimed,
    CategoryNotConfigured,
    ClaimedByOther,
    InvalidParticipants,
    InvalidTransition,
    OpenTicketLimitReached,
    TicketNotFound,
)
from .models import (
    CLOSED,
    DEFAULT_REGION,
    DODGE,
    KIND_1V1,
    KIND_2V2,
    KIND_WAR,
    OPEN_ACCEPTED,
    OPEN_STATUSES,
    OPEN_UNACCEPTED,
    PARTICIPANT_COUNTS,
    SIDE_OPPONENT,
    SIDES,
    WAR_REGIONS,
    GuildSettings,
    Ticket,
    format_timestamp,
    opposite_side,
    utc_now,
)
from .notifications import Notifier, channel_name
from .permissions import (
    hand_off_to_claimer,
    locked_overwrites,
    reopen_after_dodge,
    unlock_participants,
)
from .ranks import RankEngine
from .storage import TicketStore
from .timers import DeferredTasks

log = logging.getLogger(__name__)

REASON_DECIDED = "decided"
REASON_DODGE = "dodge"
REASON_MANUAL = "closed"
REASON_EXPIRED_UNACCEPTED = "expired_unaccepted"
REASON_EXPIRED_ACCEPTED = "expired_accepted"

MAX_OPEN_WAGER_TICKETS = 4
WAGER_KINDS = (KIND_1V1, KIND_2V2)

GuildResolver = Callable[[int], object | None]


def validate_participants(kind: str, participant_ids: Sequence[int]) -> tuple[int, ...]:
    expected = PARTICIPANT_COUNTS.get(kind)
    if expected is None:
        raise InvalidParticipants(f"Unknown challenge type: {kind}")
    ids = tuple(int(user_id) for user_id in participant_ids)
    if len(ids) != expected:
        raise InvalidParticipants(
            f"A {kind} challenge needs exactly {expected} participants."
        )
    if len(set(ids)) != len(ids):
        raise InvalidParticipants("A player cannot appear twice in one challenge.")
    return ids


def _open_status() -> ConditionBase:
    return Attr("status").is_in(list(OPEN_STATUSES))


class LifecycleService:
    def __init__(
        self,
        store: TicketStore,
        allocator: ResourceAllocator,
        ranks: RankEngine,
        notifier: Notifier,
        deferred: DeferredTasks,
        *,
        guild_resolver: GuildResolver,
        clock: Callable[[], datetime] = utc_now,
        policy: EscalationPolicy | None = None,
        max_open_tickets: int = MAX_OPEN_WAGER_TICKETS,
    ) -> None:
        self._store = store
        self._allocator = allocator
        self._ranks = ranks
        self._notifier = notifier
        self._deferred = deferred
        self._resolve_guild = guild_resolver
        self._clock = clock
        self.policy = policy or EscalationPolicy()
        self.max_open_tickets = max_open_tickets

    # ----- helpers -----
    def settings_for(self, guild_id: int) -> GuildSettings:
        settings = self._store.get_settings(guild_id)
        if settings is None:
            return GuildSettings(guild_id=guild_id)
        return settings

    def ensure_slots(self, guild) -> GuildSettings:
        """Load the guild settings and bring the allocator in line with them.

        Categories added since the last call are counted from the guild;
        tracked categories keep their running counts.
        """
        settings = self.settings_for(guild.id)
        added = self._allocator.configure(settings)
        if added:
            self._allocator.reconcile(guild, added)
        return settings

    def check_open_limit(self, guild_id: int, kind: str, participant_ids: Sequence[int]) -> None:
        if kind not in WAGER_KINDS:
            return
        counts = self._store.open_ticket_counts(guild_id, kinds=WAGER_KINDS)
        for user_id in participant_ids:
            if counts[user_id] >= self.max_open_tickets:
                raise OpenTicketLimitReached(user_id, self.max_open_tickets)

    def _context(self, ticket: Ticket):
        guild = self._resolve_guild(ticket.guild_id)
        channel = guild.get_channel(ticket.channel_id) if guild is not None else None
        return guild, channel

    async def _best_effort(self, what: str, ticket: Ticket, action: Awaitable[object]) -> None:
        try:
            await action
        except Exception:  # pylint: disable=broad-except
            log.exception("%s failed for ticket %s", what, ticket.ticket_id)

    def _commit(
        self,
        ticket: Ticket,
        operation: str,
        condition: ConditionBase,
        set_fields: dict[str, object],
        remove_fields: Sequence[str] = (),
        *,
        actor_id: int | None = None,
    ) -> Ticket:
        updated = self._store.update_ticket(
            ticket,
            condition=condition,
            set_fields=set_fields,
            remove_fields=remove_fields,
        )
        if updated is None:
            raise self._classify_failure(ticket.ticket_id, operation, actor_id)
        log.info(
            "Ticket %s: %s committed (%s -> %s)",
            ticket.ticket_id,
            operation,
            ticket.status,
            updated.status,
        )
        return updated

    def _classify_failure(
        self, ticket_id: str, operation: str, actor_id: int | None
    ) -> Exception:
        current = self._store.get_ticket(ticket_id)
        if current is None:
            return TicketNotFound(ticket_id=ticket_id)
        if operation == "accept" and current.accepted_at is not None:
            return AlreadyAccepted(ticket_id=ticket_id)
        if current.status == OPEN_ACCEPTED and current.claimed_by is not None:
            if operation == "claim":
                return AlreadyClaimed(ticket_id=ticket_id)
            if operation == "decide" and actor_id != current.claimed_by:
                return ClaimedByOther(ticket_id=ticket_id)
        return InvalidTransition(
            f"Cannot {operation} a ticket in status {current.status}",
            ticket_id=ticket_id,
        )

    def schedule_deletion(self, ticket: Ticket, *, reason: str) -> None:
        async def delete() -> None:
            guild, channel = self._context(ticket)
            if guild is None:
                self._allocator.release(ticket.guild_id, ticket.category_id)
                return
            if channel is not None:
                await self._best_effort(
                    "Transcript",
                    ticket,
                    self._notifier.before_delete(guild, channel, ticket, reason=reason),
                )
            await self._allocator.delete_channel(
                guild, ticket.channel_id, ticket.category_id, reason=reason
            )
            log.info("Deleted channel %s of ticket %s", ticket.channel_id, ticket.ticket_id)

        self._deferred.schedule(
            ticket.ticket_id, self.policy.deletion_grace.total_seconds(), delete
        )

    # ----- lookup -----
    def find(
        self,
        ticket_id: str | None = None,
        *,
        guild_id: int | None = None,
        channel_id: int | None = None,
    ) -> Ticket:
        if ticket_id:
            ticket = self._store.get_ticket(ticket_id)
            if ticket is not None:
                return ticket
        if guild_id is not None and channel_id is not None:
            ticket = self._store.find_open_by_channel(guild_id, channel_id)
            if ticket is not None:
                return ticket
        raise TicketNotFound(ticket_id=ticket_id)

    # ----- user operations -----
    async def create(
        self,
        guild,
        kind: str,
        participants: Sequence[int],
        *,
        region: str = DEFAULT_REGION,
        created_by: int | None = None,
    ) -> Ticket:
        participant_ids = validate_participants(kind, participants)
        if kind == KIND_WAR:
            if region not in WAR_REGIONS:
                raise CategoryNotConfigured(f"Unknown war region: {region}")
        else:
            region = DEFAULT_REGION
        self.check_open_limit(guild.id, kind, participant_ids)
        settings = self.ensure_slots(guild)

        names = []
        for user_id in participant_ids:
            member = guild.get_member(user_id)
            names.append(getattr(member, "name", None) or str(user_id))
        ticket_id = uuid.uuid4().hex
        channel, slot = await self._allocator.open_channel(
            guild,
            kind,
            region,
            name=channel_name(kind, names),
            overwrites=locked_overwrites(guild, participant_ids, settings.staff_role_ids),
            reason=f"{kind} challenge {ticket_id}",
        )
        ticket = Ticket(
            ticket_id=ticket_id,
            guild_id=guild.id,
            channel_id=channel.id,
            category_id=slot.category_id,
            kind=kind,
            region=region,
            participant_ids=participant_ids,
            status=OPEN_UNACCEPTED,
            created_at=self._clock(),
            created_by=created_by,
        )
        try:
            self._store.create_ticket(ticket)
        except Exception:
            log.error("Persisting ticket %s failed; removing its channel", ticket_id)
            await self._allocator.delete_channel(
                guild, channel.id, slot.category_id, reason="Ticket could not be saved"
            )
            raise
        log.info(
            "Created %s ticket %s in channel %s for %s",
            kind,
            ticket_id,
            channel.id,
            list(participant_ids),
        )
        await self._best_effort(
            "Challenge panel", ticket, self._notifier.challenge_opened(channel, ticket)
        )
        return ticket

    async def accept(self, ticket_id: str, actor_id: int) -> Ticket:
        ticket = self.find(ticket_id)
        updated = self._commit(
            ticket,
            "accept",
            Attr("status").eq(OPEN_UNACCEPTED) & Attr("accepted_at").not_exists(),
            {
                "status": OPEN_ACCEPTED,
                "accepted_at": self._clock(),
                "accepted_by": actor_id,
            },
            actor_id=actor_id,
        )
        _guild, channel = self._context(updated)
        if channel is not None:
            await self._best_effort(
                "Unlock", updated, unlock_participants(channel, updated.participant_ids)
            )
            await self._best_effort(
                "Control panel",
                updated,
                self._notifier.challenge_accepted(channel, updated),
            )
        return updated

    async def claim(self, ticket_id: str, actor_id: int) -> Ticket:
        ticket = self.find(ticket_id)
        updated = self._commit(
            ticket,
            "claim",
            Attr("status").eq(OPEN_ACCEPTED) & Attr("claimed_by").not_exists(),
            {"claimed_by": actor_id, "claimed_at": self._clock()},
            actor_id=actor_id,
        )
        guild, channel = self._context(updated)
        if channel is not None:
            staff_role_ids = self.settings_for(updated.guild_id).staff_role_ids
            await self._best_effort(
                "Claim hand-off",
                updated,
                hand_off_to_claimer(channel, guild, staff_role_ids, actor_id),
            )
            await self._best_effort(
                "Claim notice", updated, self._notifier.ticket_claimed(channel, updated)
            )
        return updated

    async def decide_winner(
        self, ticket_id: str, side: str, *, actor_id: int | None = None
    ) -> Ticket:
        if side not in SIDES:
            raise ValueError(f"Unknown side: {side}")
        ticket = self.find(ticket_id)
        condition = Attr("status").eq(OPEN_ACCEPTED)
        if actor_id is not None:
            condition = condition & (
                Attr("claimed_by").not_exists() | Attr("claimed_by").eq(str(actor_id))
            )
        fields: dict[str, object] = {
            "status": CLOSED,
            "winner_side": side,
            "closed_at": self._clock(),
            "close_reason": REASON_DECIDED,
        }
        if actor_id is not None:
            fields["closed_by"] = actor_id
        updated = self._commit(ticket, "decide", condition, fields, actor_id=actor_id)

        guild, channel = self._context(updated)
        winners = updated.side_members(side)
        losers = updated.side_members(opposite_side(side))
        await self._best_effort(
            "Result recording", updated, self._ranks.record_result(guild, winners, losers)
        )
        if guild is not None:
            await self._best_effort(
                "Result notice",
                updated,
                self._notifier.ticket_decided(guild, channel, updated),
            )
        self.schedule_deletion(updated, reason=f"Result decided ({side})")
        return updated

    async def mark_dodge(
        self, ticket_id: str, dodger_id: int, *, actor_id: int | None = None
    ) -> Ticket:
        ticket = self.find(ticket_id)
        dodged_side = ticket.side_of(dodger_id)
        if dodged_side is None:
            raise InvalidParticipants(
                "Only a participant of this ticket can be marked as dodging."
            )
        fields: dict[str, object] = {
            "status": DODGE,
            "dodged_by": dodger_id,
            "dodged_side": dodged_side,
            "closed_at": self._clock(),
            "close_reason": REASON_DODGE,
        }
        if actor_id is not None:
            fields["closed_by"] = actor_id
        updated = self._commit(ticket, "dodge", _open_status(), fields, actor_id=actor_id)
        guild, channel = self._context(updated)
        if channel is not None:
            await self._best_effort(
                "Dodge reopen",
                updated,
                reopen_after_dodge(channel, updated.participant_ids, dodger_id),
            )
        if guild is not None:
            await self._best_effort(
                "Dodge notice",
                updated,
                self._notifier.ticket_dodged(guild, channel, updated, automatic=False),
            )
        return updated

    async def extend(self, ticket_id: str, actor_id: int | None = None) -> Ticket:
        ticket = self.find(ticket_id)
        updated = self._commit(
            ticket,
            "extend",
            Attr("status").eq(OPEN_ACCEPTED),
            {"last_extension_at": self._clock()},
            ("last_inactivity_warning_at",),
            actor_id=actor_id,
        )
        _guild, channel = self._context(updated)
        if channel is not None:
            await self._best_effort(
                "Extend notice", updated, self._notifier.ticket_extended(channel, updated)
            )
        return updated

    async def close(
        self, ticket_id: str, actor_id: int | None, *, reason: str = REASON_MANUAL
    ) -> Ticket:
        ticket = self.find(ticket_id)
        fields: dict[str, object] = {
            "status": CLOSED,
            "closed_at": self._clock(),
            "close_reason": reason,
        }
        if actor_id is not None:
            fields["closed_by"] = actor_id
        updated = self._commit(ticket, "close", _open_status(), fields, actor_id=actor_id)
        guild, channel = self._context(updated)
        if guild is not None:
            await self._best_effort(
                "Close notice",
                updated,
                self._notifier.ticket_closed(guild, channel, updated, automatic=False),
            )
        self.schedule_deletion(updated, reason="Ticket closed")
        return updated

    async def dispose(self, ticket_id: str, actor_id: int | None = None) -> Ticket:
        ticket = self.find(ticket_id)
        if not ticket.is_terminal:
            raise InvalidTransition(
                "Close or resolve the ticket before deleting its channel.",
                ticket_id=ticket_id,
            )
        log.info("Ticket %s channel disposal requested by %s", ticket_id, actor_id)
        self.schedule_deletion(ticket, reason="Ticket disposed")
        return ticket

    # ----- scheduler operations -----
    async def expire_unaccepted(self, ticket: Ticket) -> Ticket:
        updated = self._commit(
            ticket,
            "expire",
            Attr("status").eq(OPEN_UNACCEPTED) & Attr("accepted_at").not_exists(),
            {
                "status": CLOSED,
                "closed_at": self._clock(),
                "close_reason": REASON_EXPIRED_UNACCEPTED,
            },
        )
        guild, channel = self._context(updated)
        if guild is not None:
            await self._best_effort(
                "Expiry notice",
                updated,
                self._notifier.ticket_closed(guild, channel, updated, automatic=True),
            )
        self.schedule_deletion(updated, reason="Auto-closed: not accepted in time")
        return updated

    def _extension_guard(self, ticket: Ticket) -> ConditionBase:
        if ticket.last_extension_at is None:
            return Attr("last_extension_at").not_exists()
        return Attr("last_extension_at").eq(format_timestamp(ticket.last_extension_at))

    async def send_inactivity_warning(self, ticket: Ticket) -> Ticket:
        updated = self._commit(
            ticket,
            "warn",
            Attr("status").eq(OPEN_ACCEPTED)
            & Attr("last_inactivity_warning_at").not_exists()
            & self._extension_guard(ticket),
            {"last_inactivity_warning_at": self._clock()},
        )
        _guild, channel = self._context(updated)
        if channel is None:
            log.warning(
                "Channel %s of ticket %s missing; warning not posted",
                updated.channel_id,
                updated.ticket_id,
            )
            return updated
        await self._best_effort(
            "Inactivity warning",
            updated,
            self._notifier.inactivity_warning(channel, updated),
        )
        return updated

    async def expire_accepted(self, ticket: Ticket) -> Ticket:
        updated = self._commit(
            ticket,
            "expire",
            Attr("status").eq(OPEN_ACCEPTED) & self._extension_guard(ticket),
            {
                "status": DODGE,
                "dodged_by": ticket.captain(SIDE_OPPONENT),
                "dodged_side": SIDE_OPPONENT,
                "closed_at": self._clock(),
                "close_reason": REASON_EXPIRED_ACCEPTED,
            },
        )
        guild, channel = self._context(updated)
        if guild is not None:
            await self._best_effort(
                "Auto-dodge notice",
                updated,
                self._notifier.ticket_dodged(guild, channel, updated, automatic=True),
            )
        self.schedule_deletion(updated, reason="Auto-dodge: no result in time")
        return updated


__all__ = [
    "LifecycleService",
    "MAX_OPEN_WAGER_TICKETS",
    "REASON_DECIDED",
    "REASON_DODGE",
    "REASON_EXPIRED_ACCEPTED",
    "REASON_EXPIRED_UNACCEPTED",
    "REASON_MANUAL",
    "WAGER_KINDS",
    "validate_participants",
]
