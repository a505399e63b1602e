from __future__ import annotations

import copy
import itertools
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from types import SimpleNamespace

import discord
import pytest
from botocore.exceptions import ClientError

from wager_bot.allocator import ResourceAllocator
from wager_bot.config import EscalationPolicy
from wager_bot.interactions import InteractionRouter
from wager_bot.lifecycle import LifecycleService
from wager_bot.models import TIER_LADDER, GuildSettings, TierConfig
from wager_bot.notifications import AuditReporter, Notifier
from wager_bot.ranks import RankEngine
from wager_bot.scheduler import EscalationScheduler
from wager_bot.storage import TicketStore
from wager_bot.timers import DeferredTasks

GUILD_ID = 1000
HOSTER_ROLE_ID = 700
MODERATOR_ROLE_ID = 701
TOP_ROLE_ID = 900
LOG_CHANNEL_ID = 950
DODGE_LOG_CHANNEL_ID = 951
START = datetime(2024, 1, 1, 12, 0, tzinfo=UTC)


def conditional_failure(operation: str) -> ClientError:
    return ClientError(
        {"Error": {"Code": "ConditionalCheckFailedException", "Message": "failed"}},
        operation,
    )


def _evaluate(condition, item: dict[str, object]) -> bool:
    expression = condition.get_expression()
    operator = expression["operator"]
    values = expression["values"]
    if operator == "AND":
        return all(_evaluate(part, item) for part in values)
    if operator == "OR":
        return any(_evaluate(part, item) for part in values)
    if operator == "NOT":
        return not _evaluate(values[0], item)
    name = values[0].name
    present = name in item
    current = item.get(name)
    if operator == "attribute_exists":
        return present
    if operator == "attribute_not_exists":
        return not present
    if operator == "=":
        return present and current == values[1]
    if operator == "<>":
        return not present or current != values[1]
    if operator == "<":
        return present and current < values[1]  # type: ignore[operator]
    if operator == "<=":
        return present and current <= values[1]  # type: ignore[operator]
    if operator == ">":
        return present and current > values[1]  # type: ignore[operator]
    if operator == ">=":
        return present and current >= values[1]  # type: ignore[operator]
    if operator == "begins_with":
        return present and str(current).startswith(values[1])
    if operator == "IN":
        return present and current in values[1]
    if operator == "BETWEEN":
        return present and values[1] <= current <= values[2]  # type: ignore[operator]
    raise NotImplementedError(operator)


_SET_RE = re.compile(r"SET (?P<set>.*?)(?: REMOVE |$)")
_REMOVE_RE = re.compile(r"REMOVE (?P<remove>.*)$")


class FakeTable:
    """In-memory stand-in for a boto3 DynamoDB Table resource."""

    def __init__(self) -> None:
        self.items: dict[tuple[str, str], dict[str, object]] = {}
        self.failures: dict[str, Exception] = {}
        self.calls: list[str] = []

    def _maybe_fail(self, operation: str) -> None:
        self.calls.append(operation)
        failure = self.failures.pop(operation, None)
        if failure is not None:
            raise failure

    def get_item(self, *, Key, ConsistentRead=False):
        del ConsistentRead
        self._maybe_fail("get_item")
        item = self.items.get((Key["pk"], Key["sk"]))
        return {"Item": copy.deepcopy(item)} if item is not None else {}

    def put_item(self, *, Item, ConditionExpression=None):
        self._maybe_fail("put_item")
        key = (Item["pk"], Item["sk"])
        existing = self.items.get(key, {})
        if ConditionExpression is not None and not _evaluate(ConditionExpression, existing):
            raise conditional_failure("PutItem")
        self.items[key] = copy.deepcopy(Item)
        return {}

    def update_item(
        self,
        *,
        Key,
        UpdateExpression,
        ConditionExpression=None,
        ExpressionAttributeNames=None,
        ExpressionAttributeValues=None,
        ReturnValues="NONE",
    ):
        self._maybe_fail("update_item")
        key = (Key["pk"], Key["sk"])
        existing = self.items.get(key, {})
        if ConditionExpression is not None and not _evaluate(ConditionExpression, existing):
            raise conditional_failure("UpdateItem")
        names = ExpressionAttributeNames or {}
        values = ExpressionAttributeValues or {}
        updated = copy.deepcopy(existing) or {"pk": Key["pk"], "sk": Key["sk"]}
        set_match = _SET_RE.search(UpdateExpression)
        if set_match and UpdateExpression.startswith("SET"):
            for assignment in set_match.group("set").split(","):
                placeholder, value_key = (part.strip() for part in assignment.split("="))
                updated[names.get(placeholder, placeholder)] = copy.deepcopy(
                    values[value_key]
                )
        remove_match = _REMOVE_RE.search(UpdateExpression)
        if remove_match:
            for placeholder in remove_match.group("remove").split(","):
                updated.pop(names.get(placeholder.strip(), placeholder.strip()), None)
        self.items[key] = updated
        if ReturnValues == "ALL_NEW":
            return {"Attributes": copy.deepcopy(updated)}
        return {}

    def query(self, *, KeyConditionExpression, IndexName=None, ExclusiveStartKey=None, **_):
        del ExclusiveStartKey
        self._maybe_fail("query")
        sort_key = "gsi_sk" if IndexName else "sk"
        matches = [
            copy.deepcopy(item)
            for item in self.items.values()
            if _evaluate(KeyConditionExpression, item)
        ]
        matches.sort(key=lambda item: str(item.get(sort_key, "")))
        return {"Items": matches, "Count": len(matches)}

    def scan(self, *, FilterExpression=None, ExclusiveStartKey=None, **_):
        del ExclusiveStartKey
        self._maybe_fail("scan")
        matches = [
            copy.deepcopy(item)
            for item in self.items.values()
            if FilterExpression is None or _evaluate(FilterExpression, item)
        ]
        return {"Items": matches, "Count": len(matches)}

    def delete_item(self, *, Key, ConditionExpression=None):
        self._maybe_fail("delete_item")
        key = (Key["pk"], Key["sk"])
        if ConditionExpression is not None and not _evaluate(
            ConditionExpression, self.items.get(key, {})
        ):
            raise conditional_failure("DeleteItem")
        self.items.pop(key, None)
        return {}


def http_error(cls=discord.HTTPException, status: int = 500, code: int = 0):
    error = cls(SimpleNamespace(status=status, reason="error"), "boom")
    error.code = code
    return error


class FakeClock:
    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeRole:
    def __init__(self, role_id: int, name: str = "") -> None:
        self.id = role_id
        self.name = name or f"role-{role_id}"

    def __repr__(self) -> str:
        return f"FakeRole({self.id})"


class FakeMember:
    def __init__(
        self,
        member_id: int,
        name: str,
        guild: FakeGuild,
        *,
        bot: bool = False,
        administrator: bool = False,
    ) -> None:
        self.id = member_id
        self.name = name
        self.display_name = name
        self.guild = guild
        self.bot = bot
        self.roles: list[FakeRole] = []
        self.guild_permissions = SimpleNamespace(administrator=administrator)
        self.role_failure: Exception | None = None

    async def add_roles(self, *roles, reason=None):
        del reason
        if self.role_failure is not None:
            raise self.role_failure
        for role in roles:
            if role not in self.roles:
                self.roles.append(role)

    async def remove_roles(self, *roles, reason=None):
        del reason
        if self.role_failure is not None:
            raise self.role_failure
        self.roles = [role for role in self.roles if role not in roles]

    def role_ids(self) -> set[int]:
        return {role.id for role in self.roles}


@dataclass
class FakeMessage:
    id: int
    content: str
    author: object
    created_at: datetime
    kwargs: dict[str, object] = field(default_factory=dict)


class FakeCategory:
    def __init__(self, category_id: int, guild: FakeGuild) -> None:
        self.id = category_id
        self.guild = guild
        self.category = None
        self.channels: list[FakeChannel] = []


class FakeChannel:
    _message_ids = itertools.count(1)

    def __init__(
        self,
        channel_id: int,
        guild: FakeGuild,
        *,
        name: str = "",
        category: FakeCategory | None = None,
    ) -> None:
        self.id = channel_id
        self.guild = guild
        self.name = name
        self.category = category
        self.overwrites: dict[int, discord.PermissionOverwrite] = {}
        self.messages: list[FakeMessage] = []
        self.last_message_id: int | None = None
        self.deleted = False
        self.send_failure: Exception | None = None
        self.permission_failures: dict[int, Exception] = {}
        self.delete_failure: Exception | None = None

    @property
    def sent(self) -> list[dict[str, object]]:
        return [message.kwargs for message in self.messages]

    async def send(self, content=None, **kwargs):
        if self.send_failure is not None:
            raise self.send_failure
        kwargs["content"] = content if content is not None else kwargs.get("content")
        message = FakeMessage(
            id=next(self._message_ids),
            content=kwargs.get("content") or "",
            author=SimpleNamespace(display_name="wager-bot"),
            created_at=START,
            kwargs=kwargs,
        )
        self.messages.append(message)
        return message

    async def history(self, *, limit=100, oldest_first=False):
        ordered = self.messages if oldest_first else list(reversed(self.messages))
        for message in ordered[:limit]:
            yield message

    def overwrites_for(self, target) -> discord.PermissionOverwrite:
        current = self.overwrites.get(target.id)
        if current is None:
            return discord.PermissionOverwrite()
        return discord.PermissionOverwrite(
            **{name: value for name, value in current if value is not None}
        )

    async def set_permissions(self, target, *, overwrite=None, reason=None):
        del reason
        failure = self.permission_failures.get(target.id)
        if failure is not None:
            raise failure
        self.overwrites[target.id] = overwrite

    async def delete(self, *, reason=None):
        del reason
        if self.delete_failure is not None:
            raise self.delete_failure
        self.deleted = True
        self.guild.remove_channel(self)


class FakeGuild:
    def __init__(self, guild_id: int = GUILD_ID) -> None:
        self.id = guild_id
        self.default_role = FakeRole(guild_id, "@everyone")
        self._roles: dict[int, FakeRole] = {guild_id: self.default_role}
        self._members: dict[int, FakeMember] = {}
        self._channels: dict[int, object] = {}
        self._ids = itertools.count(5000)
        self.create_failure: Exception | None = None
        self.filler_channels = 0

    @property
    def members(self) -> list[FakeMember]:
        return list(self._members.values())

    @property
    def channels(self) -> list[object]:
        return [*self._channels.values(), *([None] * self.filler_channels)]

    def add_role(self, role_id: int, name: str = "") -> FakeRole:
        role = FakeRole(role_id, name)
        self._roles[role_id] = role
        return role

    def add_member(self, member_id: int, name: str, **kwargs) -> FakeMember:
        member = FakeMember(member_id, name, self, **kwargs)
        self._members[member_id] = member
        return member

    def remove_member(self, member_id: int) -> None:
        self._members.pop(member_id, None)

    def add_category(self, category_id: int) -> FakeCategory:
        category = FakeCategory(category_id, self)
        self._channels[category_id] = category
        return category

    def add_text_channel(self, channel_id: int, name: str = "") -> FakeChannel:
        channel = FakeChannel(channel_id, self, name=name)
        self._channels[channel_id] = channel
        return channel

    def remove_channel(self, channel) -> None:
        self._channels.pop(channel.id, None)
        if channel.category is not None and channel in channel.category.channels:
            channel.category.channels.remove(channel)

    def get_channel(self, channel_id: int):
        return self._channels.get(channel_id)

    def get_member(self, member_id: int):
        return self._members.get(member_id)

    async def fetch_member(self, member_id: int):
        member = self._members.get(member_id)
        if member is None:
            raise http_error(discord.NotFound, status=404)
        return member

    def get_role(self, role_id: int):
        return self._roles.get(role_id)

    async def create_text_channel(self, name, *, category=None, overwrites=None, reason=None):
        del reason
        if self.create_failure is not None:
            raise self.create_failure
        channel = FakeChannel(next(self._ids), self, name=name, category=category)
        for target, overwrite in (overwrites or {}).items():
            channel.overwrites[target.id] = overwrite
        self._channels[channel.id] = channel
        if category is not None:
            category.channels.append(channel)
        return channel


class FakeBot:
    def __init__(self, *guilds: FakeGuild) -> None:
        self.guilds = list(guilds)

    def get_guild(self, guild_id: int):
        for guild in self.guilds:
            if guild.id == guild_id:
                return guild
        return None

    async def fetch_channel(self, channel_id: int):
        for guild in self.guilds:
            channel = guild.get_channel(channel_id)
            if channel is not None:
                return channel
        raise http_error(discord.NotFound, status=404)


class FakeResponse:
    def __init__(self) -> None:
        self.deferred = False
        self.messages: list[str] = []

    def is_done(self) -> bool:
        return self.deferred or bool(self.messages)

    async def defer(self, *, ephemeral=False, thinking=False):
        del ephemeral, thinking
        self.deferred = True

    async def send_message(self, content=None, *, ephemeral=False, **kwargs):
        del ephemeral, kwargs
        self.messages.append(content)


class FakeFollowup:
    def __init__(self) -> None:
        self.messages: list[str] = []

    async def send(self, content=None, *, ephemeral=False, **kwargs):
        del ephemeral, kwargs
        self.messages.append(content)


class FakeInteraction:
    def __init__(self, user, guild, *, custom_id: str | None = None, channel=None) -> None:
        self.id = 42
        self.user = user
        self.guild = guild
        self.channel = channel
        self.data = {"custom_id": custom_id} if custom_id is not None else {}
        self.type = discord.InteractionType.component
        self.response = FakeResponse()
        self.followup = FakeFollowup()

    @property
    def replies(self) -> list[str]:
        return [*self.response.messages, *self.followup.messages]


@dataclass
class Harness:
    table: FakeTable
    store: TicketStore
    clock: FakeClock
    guild: FakeGuild
    bot: FakeBot
    allocator: ResourceAllocator
    deferred: DeferredTasks
    sleeps: list[float]
    ranks: RankEngine
    audit: AuditReporter
    notifier: Notifier
    lifecycle: LifecycleService
    scheduler: EscalationScheduler
    router: InteractionRouter
    policy: EscalationPolicy
    log_channel: FakeChannel
    dodge_log_channel: FakeChannel

    def member(self, member_id: int) -> FakeMember:
        return self.guild.get_member(member_id)

    def channel(self, channel_id: int) -> FakeChannel:
        return self.guild.get_channel(channel_id)

    def interaction(self, user_id: int, custom_id: str | None = None, channel=None):
        return FakeInteraction(
            self.member(user_id), self.guild, custom_id=custom_id, channel=channel
        )


@pytest.fixture
def table() -> FakeTable:
    return FakeTable()


@pytest.fixture
def store(table: FakeTable) -> TicketStore:
    return TicketStore(table)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def guild() -> FakeGuild:
    guild = FakeGuild()
    guild.add_role(HOSTER_ROLE_ID, "Hoster")
    guild.add_role(MODERATOR_ROLE_ID, "Moderator")
    guild.add_role(TOP_ROLE_ID, "Top 10")
    for index, tier in enumerate(TIER_LADDER):
        guild.add_role(800 + index, tier.name)
    for category_id in (501, 502, 503, 504):
        guild.add_category(category_id)
    guild.add_member(1, "alice")
    guild.add_member(2, "bob")
    guild.add_member(3, "carol")
    guild.add_member(4, "dave")
    hoster = guild.add_member(10, "hoster")
    hoster.roles.append(guild.get_role(HOSTER_ROLE_ID))
    moderator = guild.add_member(11, "moderator")
    moderator.roles.append(guild.get_role(MODERATOR_ROLE_ID))
    guild.add_member(12, "outsider")
    guild.add_member(13, "admin", administrator=True)
    guild.add_member(99, "helper-bot", bot=True)
    return guild


def seed_guild_config(store: TicketStore, guild_id: int = GUILD_ID) -> None:
    settings = GuildSettings(
        guild_id=guild_id,
        hoster_role_ids=[HOSTER_ROLE_ID],
        moderator_role_ids=[MODERATOR_ROLE_ID],
    )
    settings.set_category_ids("1v1", "default", [501, 502])
    settings.set_category_ids("2v2", "default", [503])
    settings.set_category_ids("war", "Europe", [504])
    store.save_settings(settings)
    store.save_tier_config(
        TierConfig(
            guild_id=guild_id,
            role_ids={tier.key: 800 + index for index, tier in enumerate(TIER_LADDER)},
            top_role_id=TOP_ROLE_ID,
        )
    )


@pytest.fixture
def harness(table: FakeTable, store: TicketStore, clock: FakeClock, guild: FakeGuild) -> Harness:
    seed_guild_config(store)
    log_channel = guild.add_text_channel(LOG_CHANNEL_ID, "wager-logs")
    dodge_log_channel = guild.add_text_channel(DODGE_LOG_CHANNEL_ID, "dodge-logs")
    bot = FakeBot(guild)
    sleeps: list[float] = []

    async def fake_sleep(delay: float) -> None:
        sleeps.append(delay)

    policy = EscalationPolicy()
    allocator = ResourceAllocator()
    deferred = DeferredTasks(sleep=fake_sleep)
    ranks = RankEngine(store, clock=clock)
    audit = AuditReporter(
        bot, log_channel_id=LOG_CHANNEL_ID, dodge_channel_id=DODGE_LOG_CHANNEL_ID
    )
    notifier = Notifier(audit)
    lifecycle = LifecycleService(
        store,
        allocator,
        ranks,
        notifier,
        deferred,
        guild_resolver=bot.get_guild,
        clock=clock,
        policy=policy,
    )
    scheduler = EscalationScheduler(
        lifecycle,
        store,
        allocator,
        notifier,
        deferred,
        guilds=lambda: list(bot.guilds),
        policy=policy,
        clock=clock,
    )
    return Harness(
        table=table,
        store=store,
        clock=clock,
        guild=guild,
        bot=bot,
        allocator=allocator,
        deferred=deferred,
        sleeps=sleeps,
        ranks=ranks,
        audit=audit,
        notifier=notifier,
        lifecycle=lifecycle,
        scheduler=scheduler,
        router=InteractionRouter(lifecycle),
        policy=policy,
        log_channel=log_channel,
        dodge_log_channel=dodge_log_channel,
    )


@pytest.fixture
def make_error():
    return http_error
