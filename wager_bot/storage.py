from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from datetime import datetime
from typing import Any

from boto3.dynamodb.conditions import Attr, ConditionBase, Key
from botocore.exceptions import BotoCoreError, ClientError

from .errors import ExternalServiceUnavailable
from .models import (
    OPEN_STATUSES,
    GuildSettings,
    ParticipantProfile,
    Ticket,
    TierConfig,
    format_timestamp,
)

log = logging.getLogger(__name__)

CONDITIONAL_FAILURE = "ConditionalCheckFailedException"


def is_conditional_failure(exc: ClientError) -> bool:
    return exc.response.get("Error", {}).get("Code") == CONDITIONAL_FAILURE


@contextmanager
def _dynamo_call(operation: str) -> Iterator[None]:
    try:
        yield
    except ClientError as exc:
        if is_conditional_failure(exc):
            raise
        log.error("DynamoDB %s failed: %s", operation, exc)
        raise ExternalServiceUnavailable(f"DynamoDB {operation} failed") from exc
    except BotoCoreError as exc:
        log.error("DynamoDB %s failed: %s", operation, exc)
        raise ExternalServiceUnavailable(f"DynamoDB {operation} failed") from exc


def _serialize(value: object) -> object:
    if isinstance(value, datetime):
        return format_timestamp(value)
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return str(value)
    return value


def build_update_expression(
    set_fields: Mapping[str, object], remove_fields: Iterable[str] = ()
) -> tuple[str, dict[str, str], dict[str, object]]:
    """Build a SET/REMOVE expression with placeholders that do not collide
    with the ones boto3 generates for condition objects (``#n0``/``:v0``)."""
    names: dict[str, str] = {}
    values: dict[str, object] = {}
    set_parts: list[str] = []
    index = 0
    for field_name, value in set_fields.items():
        names[f"#f{index}"] = field_name
        values[f":u{index}"] = _serialize(value)
        set_parts.append(f"#f{index} = :u{index}")
        index += 1
    remove_parts: list[str] = []
    for field_name in remove_fields:
        names[f"#f{index}"] = field_name
        remove_parts.append(f"#f{index}")
        index += 1
    clauses: list[str] = []
    if set_parts:
        clauses.append("SET " + ", ".join(set_parts))
    if remove_parts:
        clauses.append("REMOVE " + ", ".join(remove_parts))
    if not clauses:
        raise ValueError("Update must set or remove at least one attribute")
    return " ".join(clauses), names, values


class TicketStore:
    def __init__(self, table) -> None:
        self._table = table

    def ensure_table(self) -> None:
        if self._table is None:
            raise RuntimeError("Wager table is not configured")

    # ----- Tickets -----
    def create_ticket(self, ticket: Ticket) -> None:
        self.ensure_table()
        with _dynamo_call("put_item"):
            self._table.put_item(
                Item=ticket.to_item(),
                ConditionExpression=Attr("pk").not_exists(),
            )

    def get_ticket(self, ticket_id: str) -> Ticket | None:
        self.ensure_table()
        with _dynamo_call("get_item"):
            resp = self._table.get_item(Key=Ticket.key(ticket_id), ConsistentRead=True)
        item = resp.get("Item")
        if not item:
            return None
        return Ticket.from_item(item)

    def update_ticket(
        self,
        ticket: Ticket,
        *,
        condition: ConditionBase,
        set_fields: Mapping[str, object],
        remove_fields: Iterable[str] = (),
    ) -> Ticket | None:
        """Apply a guarded update and return the new ticket.

        Returns ``None`` when the guard did not hold (the item changed or
        vanished since it was read).
        """
        self.ensure_table()
        fields = dict(set_fields)
        status = fields.get("status")
        if status is not None:
            fields["gsi_sk"] = Ticket.gsi_sk(
                str(status), ticket.channel_id, ticket.ticket_id
            )
        expression, names, values = build_update_expression(fields, remove_fields)
        kwargs: dict[str, Any] = {
            "Key": Ticket.key(ticket.ticket_id),
            "UpdateExpression": expression,
            "ConditionExpression": Attr("pk").exists() & condition,
            "ExpressionAttributeNames": names,
            "ReturnValues": "ALL_NEW",
        }
        if values:
            kwargs["ExpressionAttributeValues"] = values
        try:
            with _dynamo_call("update_item"):
                resp = self._table.update_item(**kwargs)
        except ClientError as exc:
            if is_conditional_failure(exc):
                log.debug(
                    "Guarded update on ticket %s lost: %s", ticket.ticket_id, expression
                )
                return None
            raise  # pragma: no cover - _dynamo_call re-raises only conditionals
        return Ticket.from_item(resp["Attributes"])

    def find_open_by_channel(self, guild_id: int, channel_id: int) -> Ticket | None:
        self.ensure_table()
        for status in OPEN_STATUSES:
            items = self._query_index(guild_id, f"{status}#{channel_id}#")
            if items:
                return Ticket.from_item(items[0])
        return None

    def list_open_tickets(self, guild_id: int) -> list[Ticket]:
        self.ensure_table()
        tickets: list[Ticket] = []
        for status in OPEN_STATUSES:
            tickets.extend(
                Ticket.from_item(item)
                for item in self._query_index(guild_id, f"{status}#")
            )
        tickets.sort(key=lambda ticket: (ticket.created_at, ticket.ticket_id))
        return tickets

    def open_ticket_counts(
        self, guild_id: int, *, kinds: Iterable[str] | None = None
    ) -> Counter[int]:
        """Number of open tickets each user takes part in, optionally by kind."""
        wanted = set(kinds) if kinds is not None else None
        counts: Counter[int] = Counter()
        for ticket in self.list_open_tickets(guild_id):
            if wanted is None or ticket.kind in wanted:
                counts.update(ticket.participant_ids)
        return counts

    def _query_index(self, guild_id: int, prefix: str) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        kwargs: dict[str, Any] = {
            "IndexName": Ticket.GSI_NAME,
            "KeyConditionExpression": Key("gsi_pk").eq(Ticket.gsi_pk(guild_id))
            & Key("gsi_sk").begins_with(prefix),
        }
        while True:
            with _dynamo_call("query"):
                resp = self._table.query(**kwargs)
            items.extend(resp.get("Items", []))
            last_key = resp.get("LastEvaluatedKey")
            if not last_key:
                break
            kwargs["ExclusiveStartKey"] = last_key
        return items

    # ----- Profiles -----
    def get_profile(self, user_id: int) -> ParticipantProfile | None:
        self.ensure_table()
        with _dynamo_call("get_item"):
            resp = self._table.get_item(
                Key=ParticipantProfile.key(user_id), ConsistentRead=True
            )
        item = resp.get("Item")
        if not item:
            return None
        return ParticipantProfile.from_item(item)

    def load_profile(self, user_id: int) -> ParticipantProfile:
        return self.get_profile(user_id) or ParticipantProfile(user_id=user_id)

    def save_profile(self, profile: ParticipantProfile) -> bool:
        """Write ``profile`` if nobody else updated it since it was read.

        Bumps ``profile.version`` on success; returns ``False`` on conflict.
        """
        self.ensure_table()
        if profile.version == 0:
            condition = Attr("pk").not_exists()
        else:
            condition = Attr("version").eq(profile.version)
        item = profile.to_item()
        item["version"] = profile.version + 1
        try:
            with _dynamo_call("put_item"):
                self._table.put_item(Item=item, ConditionExpression=condition)
        except ClientError as exc:
            if is_conditional_failure(exc):
                return False
            raise  # pragma: no cover - _dynamo_call re-raises only conditionals
        profile.version += 1
        return True

    def get_profiles(self, user_ids: Iterable[int]) -> dict[int, ParticipantProfile]:
        profiles: dict[int, ParticipantProfile] = {}
        for user_id in dict.fromkeys(user_ids):
            profile = self.get_profile(user_id)
            if profile is not None:
                profiles[user_id] = profile
        return profiles

    def list_profiles(self) -> list[ParticipantProfile]:
        self.ensure_table()
        items: list[dict[str, Any]] = []
        kwargs: dict[str, Any] = {
            "FilterExpression": Attr("sk").eq(ParticipantProfile.SK_VALUE)
        }
        while True:
            with _dynamo_call("scan"):
                resp = self._table.scan(**kwargs)
            items.extend(resp.get("Items", []))
            last_key = resp.get("LastEvaluatedKey")
            if not last_key:
                break
            kwargs["ExclusiveStartKey"] = last_key
        return [ParticipantProfile.from_item(item) for item in items]

    # ----- Guild configuration -----
    def get_settings(self, guild_id: int) -> GuildSettings | None:
        self.ensure_table()
        with _dynamo_call("get_item"):
            resp = self._table.get_item(Key=GuildSettings.key(guild_id))
        item = resp.get("Item")
        if not item:
            return None
        return GuildSettings.from_item(item)

    def save_settings(self, settings: GuildSettings) -> None:
        self.ensure_table()
        with _dynamo_call("put_item"):
            self._table.put_item(Item=settings.to_item())

    def get_tier_config(self, guild_id: int) -> TierConfig | None:
        self.ensure_table()
        with _dynamo_call("get_item"):
            resp = self._table.get_item(Key=TierConfig.key(guild_id))
        item = resp.get("Item")
        if not item:
            return None
        return TierConfig.from_item(item)

    def save_tier_config(self, config: TierConfig) -> None:
        self.ensure_table()
        with _dynamo_call("put_item"):
            self._table.put_item(Item=config.to_item())


__all__ = [
    "CONDITIONAL_FAILURE",
    "TicketStore",
    "build_update_expression",
    "is_conditional_failure",
]
