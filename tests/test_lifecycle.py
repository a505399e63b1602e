import asyncio

import pytest
from botocore.exceptions import ClientError

from wager_bot.errors import (
    AllCategoriesFull,
    AlreadyAccepted,
    AlreadyClaimed,
    CategoryNotConfigured,
    ClaimedByOther,
    ExternalServiceUnavailable,
    InvalidParticipants,
    InvalidTransition,
    OpenTicketLimitReached,
    TicketNotFound,
)
from wager_bot.lifecycle import (
    MAX_OPEN_WAGER_TICKETS,
    REASON_DECIDED,
    REASON_EXPIRED_ACCEPTED,
    REASON_EXPIRED_UNACCEPTED,
    validate_participants,
)
from wager_bot.models import (
    CLOSED,
    DODGE,
    OPEN_ACCEPTED,
    OPEN_UNACCEPTED,
    SIDE_INITIATOR,
    SIDE_OPPONENT,
)

HOSTER_ID = 10
MODERATOR_ID = 11


async def open_ticket(harness, kind="1v1", participants=(1, 2), **kwargs):
    return await harness.lifecycle.create(
        harness.guild, kind, list(participants), created_by=participants[0], **kwargs
    )


async def accepted_ticket(harness, kind="1v1", participants=(1, 2)):
    ticket = await open_ticket(harness, kind, participants)
    return await harness.lifecycle.accept(ticket.ticket_id, participants[len(participants) // 2])


def test_validate_participants():
    assert validate_participants("2v2", [1, 2, 3, 4]) == (1, 2, 3, 4)
    with pytest.raises(InvalidParticipants):
        validate_participants("1v1", [1])
    with pytest.raises(InvalidParticipants):
        validate_participants("1v1", [1, 1])
    with pytest.raises(InvalidParticipants):
        validate_participants("3v3", [1, 2, 3, 4, 5, 6])


@pytest.mark.asyncio
async def test_create_opens_locked_channel_and_persists_ticket(harness):
    ticket = await open_ticket(harness)

    assert ticket.status == OPEN_UNACCEPTED
    assert ticket.category_id == 501
    assert ticket.created_at == harness.clock.now
    assert harness.store.get_ticket(ticket.ticket_id) == ticket
    channel = harness.channel(ticket.channel_id)
    assert channel.name == "wager-alice-vs-bob"
    assert channel.overwrites[2].send_messages is False
    panel = channel.sent[0]
    assert "<@1>" in panel["content"] and "<@2>" in panel["content"]
    assert panel["view"] is not None
    assert harness.allocator.slot(harness.guild.id, 501).count == 1


@pytest.mark.asyncio
async def test_create_uses_kind_specific_categories(harness):
    duo = await open_ticket(harness, "2v2", (1, 2, 3, 4))
    war = await open_ticket(harness, "war", (1, 2), region="Europe")

    assert duo.category_id == 503
    assert harness.channel(duo.channel_id).name == "2v2-wager-alice-bob-vs-carol-dave"
    assert war.category_id == 504
    assert war.region == "Europe"


@pytest.mark.asyncio
async def test_create_rejects_unknown_or_unconfigured_war_regions(harness):
    with pytest.raises(CategoryNotConfigured):
        await open_ticket(harness, "war", (1, 2), region="Atlantis")
    with pytest.raises(CategoryNotConfigured):
        await open_ticket(harness, "war", (1, 2), region="NA West")
    assert harness.table.calls.count("put_item") == 2


@pytest.mark.asyncio
async def test_create_fails_when_categories_are_full(harness):
    harness.lifecycle.ensure_slots(harness.guild)
    harness.allocator.slot(harness.guild.id, 501).count = 50
    harness.allocator.slot(harness.guild.id, 502).count = 50

    with pytest.raises(AllCategoriesFull):
        await open_ticket(harness)
    assert harness.store.list_open_tickets(harness.guild.id) == []


@pytest.mark.asyncio
async def test_create_uses_category_added_after_others_filled(harness):
    harness.lifecycle.ensure_slots(harness.guild)
    harness.allocator.slot(harness.guild.id, 501).count = 50
    harness.allocator.slot(harness.guild.id, 502).count = 50
    harness.guild.add_category(505)
    settings = harness.store.get_settings(harness.guild.id)
    settings.set_category_ids("1v1", "default", [501, 502, 505])
    harness.store.save_settings(settings)

    ticket = await open_ticket(harness)

    assert ticket.category_id == 505
    assert harness.allocator.slot(harness.guild.id, 501).count == 50


@pytest.mark.asyncio
async def test_create_limits_open_wager_tickets_per_player(harness):
    tickets = [await open_ticket(harness) for _ in range(MAX_OPEN_WAGER_TICKETS)]

    with pytest.raises(OpenTicketLimitReached) as excinfo:
        await open_ticket(harness, "2v2", (3, 4, 2, 1))
    assert excinfo.value.user_id == 2
    assert "<@2> has reached the maximum of **4**" in str(excinfo.value)
    assert len(harness.store.list_open_tickets(harness.guild.id)) == MAX_OPEN_WAGER_TICKETS

    war = await open_ticket(harness, "war", (1, 2), region="Europe")
    assert war.kind == "war"

    await harness.lifecycle.close(tickets[0].ticket_id, HOSTER_ID)
    assert (await open_ticket(harness)).status == OPEN_UNACCEPTED


@pytest.mark.asyncio
async def test_create_removes_channel_when_ticket_cannot_be_saved(harness):
    harness.lifecycle.ensure_slots(harness.guild)
    harness.table.failures["put_item"] = ClientError(
        {"Error": {"Code": "InternalServerError", "Message": "down"}}, "PutItem"
    )

    with pytest.raises(ExternalServiceUnavailable):
        await open_ticket(harness)

    category = harness.guild.get_channel(501)
    assert category.channels == []
    assert harness.allocator.slot(harness.guild.id, 501).count == 0


@pytest.mark.asyncio
async def test_full_wager_flow_records_result_and_deletes_channel(harness):
    ticket = await open_ticket(harness)
    channel = harness.channel(ticket.channel_id)

    accepted = await harness.lifecycle.accept(ticket.ticket_id, 2)
    assert accepted.status == OPEN_ACCEPTED
    assert accepted.accepted_by == 2
    assert channel.overwrites[1].send_messages is True

    claimed = await harness.lifecycle.claim(ticket.ticket_id, HOSTER_ID)
    assert claimed.claimed_by == HOSTER_ID
    assert channel.overwrites[HOSTER_ID].send_messages is True

    decided = await harness.lifecycle.decide_winner(
        ticket.ticket_id, SIDE_INITIATOR, actor_id=HOSTER_ID
    )
    assert decided.status == CLOSED
    assert decided.winner_side == SIDE_INITIATOR
    assert decided.close_reason == REASON_DECIDED
    assert decided.closed_by == HOSTER_ID
    assert harness.store.get_profile(1).wins == 1
    assert harness.store.get_profile(2).losses == 1
    assert any("defeated" in message.content for message in harness.log_channel.messages)
    assert ticket.ticket_id in harness.deferred

    await harness.deferred.drain()

    assert harness.sleeps == [10.0]
    assert channel.deleted is True
    assert harness.allocator.slot(harness.guild.id, 501).count == 0
    assert "file" in harness.log_channel.sent[-1]


@pytest.mark.asyncio
async def test_concurrent_accepts_have_one_winner(harness):
    ticket = await open_ticket(harness)

    results = await asyncio.gather(
        harness.lifecycle.accept(ticket.ticket_id, 2),
        harness.lifecycle.accept(ticket.ticket_id, 2),
        return_exceptions=True,
    )

    accepted = [result for result in results if not isinstance(result, Exception)]
    failures = [result for result in results if isinstance(result, Exception)]
    assert len(accepted) == 1
    assert len(failures) == 1
    assert isinstance(failures[0], AlreadyAccepted)


@pytest.mark.asyncio
async def test_concurrent_claims_have_one_winner(harness):
    ticket = await accepted_ticket(harness)

    results = await asyncio.gather(
        harness.lifecycle.claim(ticket.ticket_id, HOSTER_ID),
        harness.lifecycle.claim(ticket.ticket_id, MODERATOR_ID),
        return_exceptions=True,
    )

    assert sum(isinstance(result, AlreadyClaimed) for result in results) == 1
    stored = harness.store.get_ticket(ticket.ticket_id)
    assert stored.claimed_by in (HOSTER_ID, MODERATOR_ID)


@pytest.mark.asyncio
async def test_claim_requires_accepted_ticket(harness):
    ticket = await open_ticket(harness)

    with pytest.raises(InvalidTransition):
        await harness.lifecycle.claim(ticket.ticket_id, HOSTER_ID)


@pytest.mark.asyncio
async def test_only_claimer_can_decide_a_claimed_ticket(harness):
    ticket = await accepted_ticket(harness)
    await harness.lifecycle.claim(ticket.ticket_id, HOSTER_ID)

    with pytest.raises(ClaimedByOther):
        await harness.lifecycle.decide_winner(
            ticket.ticket_id, SIDE_OPPONENT, actor_id=MODERATOR_ID
        )
    assert harness.store.get_ticket(ticket.ticket_id).status == OPEN_ACCEPTED

    decided = await harness.lifecycle.decide_winner(
        ticket.ticket_id, SIDE_OPPONENT, actor_id=HOSTER_ID
    )
    assert decided.winner_side == SIDE_OPPONENT


@pytest.mark.asyncio
async def test_decide_requires_accepted_ticket_and_known_side(harness):
    ticket = await open_ticket(harness)

    with pytest.raises(InvalidTransition):
        await harness.lifecycle.decide_winner(ticket.ticket_id, SIDE_INITIATOR)
    with pytest.raises(ValueError):
        await harness.lifecycle.decide_winner(ticket.ticket_id, "draw")


@pytest.mark.asyncio
async def test_decide_credits_whole_team_in_2v2(harness):
    ticket = await accepted_ticket(harness, "2v2", (1, 2, 3, 4))

    await harness.lifecycle.decide_winner(ticket.ticket_id, SIDE_OPPONENT, actor_id=HOSTER_ID)

    assert [harness.store.get_profile(uid).wins for uid in (3, 4)] == [1, 1]
    assert [harness.store.get_profile(uid).losses for uid in (1, 2)] == [1, 1]


@pytest.mark.asyncio
async def test_rank_failure_does_not_undo_decision(harness):
    ticket = await accepted_ticket(harness)

    async def broken_record(guild, winners, losers):
        raise ExternalServiceUnavailable("profiles unavailable")

    harness.ranks.record_result = broken_record

    decided = await harness.lifecycle.decide_winner(ticket.ticket_id, SIDE_INITIATOR)

    assert decided.status == CLOSED
    assert harness.store.get_ticket(ticket.ticket_id).status == CLOSED
    assert ticket.ticket_id in harness.deferred


@pytest.mark.asyncio
async def test_dodge_from_unaccepted_and_accepted_states(harness):
    pending = await open_ticket(harness)
    running = await accepted_ticket(harness, "2v2", (1, 2, 3, 4))

    first = await harness.lifecycle.mark_dodge(pending.ticket_id, 2, actor_id=HOSTER_ID)
    second = await harness.lifecycle.mark_dodge(running.ticket_id, 1, actor_id=HOSTER_ID)

    assert first.status == DODGE
    assert first.dodged_side == SIDE_OPPONENT
    assert second.dodged_by == 1
    assert second.dodged_side == SIDE_INITIATOR
    assert harness.channel(running.channel_id).overwrites[1].send_messages is False
    assert harness.channel(running.channel_id).overwrites[2].send_messages is True
    assert len(harness.dodge_log_channel.messages) == 2
    assert pending.ticket_id not in harness.deferred


@pytest.mark.asyncio
async def test_dodge_requires_a_participant(harness):
    ticket = await open_ticket(harness)

    with pytest.raises(InvalidParticipants):
        await harness.lifecycle.mark_dodge(ticket.ticket_id, 12, actor_id=HOSTER_ID)
    assert harness.store.get_ticket(ticket.ticket_id).status == OPEN_UNACCEPTED


@pytest.mark.asyncio
async def test_terminal_tickets_reject_further_transitions(harness):
    ticket = await open_ticket(harness)
    await harness.lifecycle.close(ticket.ticket_id, HOSTER_ID)

    for operation in (
        harness.lifecycle.accept(ticket.ticket_id, 2),
        harness.lifecycle.claim(ticket.ticket_id, HOSTER_ID),
        harness.lifecycle.decide_winner(ticket.ticket_id, SIDE_INITIATOR),
        harness.lifecycle.mark_dodge(ticket.ticket_id, 2),
        harness.lifecycle.extend(ticket.ticket_id, 1),
        harness.lifecycle.close(ticket.ticket_id, HOSTER_ID),
    ):
        with pytest.raises(InvalidTransition):
            await operation
    assert harness.store.get_ticket(ticket.ticket_id).status == CLOSED


@pytest.mark.asyncio
async def test_unknown_ticket_is_not_found(harness):
    with pytest.raises(TicketNotFound):
        await harness.lifecycle.accept("missing", 2)


@pytest.mark.asyncio
async def test_find_falls_back_to_channel(harness):
    ticket = await open_ticket(harness)

    found = harness.lifecycle.find(
        "stale", guild_id=harness.guild.id, channel_id=ticket.channel_id
    )

    assert found.ticket_id == ticket.ticket_id


@pytest.mark.asyncio
async def test_dispose_only_after_terminal_state(harness):
    ticket = await accepted_ticket(harness)

    with pytest.raises(InvalidTransition):
        await harness.lifecycle.dispose(ticket.ticket_id, HOSTER_ID)

    await harness.lifecycle.mark_dodge(ticket.ticket_id, 2, actor_id=HOSTER_ID)
    await harness.lifecycle.dispose(ticket.ticket_id, HOSTER_ID)
    await harness.deferred.drain()

    assert harness.channel(ticket.channel_id) is None


@pytest.mark.asyncio
async def test_extend_clears_warning_and_resets_activity(harness):
    ticket = await accepted_ticket(harness)
    harness.clock.advance(days=2)
    warned = await harness.lifecycle.send_inactivity_warning(ticket)
    assert warned.last_inactivity_warning_at == harness.clock.now

    harness.clock.advance(hours=1)
    extended = await harness.lifecycle.extend(ticket.ticket_id, 1)

    assert extended.last_inactivity_warning_at is None
    assert extended.last_extension_at == harness.clock.now
    assert extended.activity_reference == harness.clock.now


@pytest.mark.asyncio
async def test_extend_requires_accepted_ticket(harness):
    ticket = await open_ticket(harness)

    with pytest.raises(InvalidTransition):
        await harness.lifecycle.extend(ticket.ticket_id, 1)


@pytest.mark.asyncio
async def test_expire_unaccepted_closes_and_schedules_deletion(harness):
    ticket = await open_ticket(harness)
    harness.clock.advance(hours=25)

    expired = await harness.lifecycle.expire_unaccepted(ticket)

    assert expired.status == CLOSED
    assert expired.close_reason == REASON_EXPIRED_UNACCEPTED
    assert expired.closed_by is None
    assert ticket.ticket_id in harness.deferred


@pytest.mark.asyncio
async def test_expire_unaccepted_loses_to_concurrent_accept(harness):
    ticket = await open_ticket(harness)
    await harness.lifecycle.accept(ticket.ticket_id, 2)

    with pytest.raises(InvalidTransition):
        await harness.lifecycle.expire_unaccepted(ticket)
    assert harness.store.get_ticket(ticket.ticket_id).status == OPEN_ACCEPTED


@pytest.mark.asyncio
async def test_expire_accepted_marks_challenged_captain_as_dodging(harness):
    ticket = await accepted_ticket(harness, "2v2", (1, 2, 3, 4))
    harness.clock.advance(days=3)

    expired = await harness.lifecycle.expire_accepted(ticket)

    assert expired.status == DODGE
    assert expired.dodged_by == 3
    assert expired.dodged_side == SIDE_OPPONENT
    assert expired.close_reason == REASON_EXPIRED_ACCEPTED
    assert harness.dodge_log_channel.messages
    assert ticket.ticket_id in harness.deferred


@pytest.mark.asyncio
async def test_extension_invalidates_stale_escalations(harness):
    ticket = await accepted_ticket(harness)
    harness.clock.advance(days=3)
    stale = harness.store.get_ticket(ticket.ticket_id)
    await harness.lifecycle.extend(ticket.ticket_id, 1)

    with pytest.raises(InvalidTransition):
        await harness.lifecycle.expire_accepted(stale)
    with pytest.raises(InvalidTransition):
        await harness.lifecycle.send_inactivity_warning(stale)
    assert harness.store.get_ticket(ticket.ticket_id).status == OPEN_ACCEPTED


@pytest.mark.asyncio
async def test_warning_is_sent_once(harness):
    ticket = await accepted_ticket(harness)
    harness.clock.advance(days=2, minutes=1)

    await harness.lifecycle.send_inactivity_warning(ticket)
    with pytest.raises(InvalidTransition):
        await harness.lifecycle.send_inactivity_warning(ticket)

    channel = harness.channel(ticket.channel_id)
    warnings = [m for m in channel.messages if "Auto-dodge applies" in m.content]
    assert len(warnings) == 1


@pytest.mark.asyncio
async def test_deletion_releases_slot_when_channel_already_gone(harness):
    ticket = await open_ticket(harness)
    await harness.lifecycle.close(ticket.ticket_id, HOSTER_ID)
    harness.guild.remove_channel(harness.channel(ticket.channel_id))

    await harness.deferred.drain()

    assert harness.allocator.slot(harness.guild.id, 501).count == 0
