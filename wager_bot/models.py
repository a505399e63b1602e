from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import ClassVar, Final, Literal

ISO_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

TicketKind = Literal["1v1", "2v2", "war"]
TicketStatus = Literal["OPEN_UNACCEPTED", "OPEN_ACCEPTED", "DODGE", "CLOSED"]
Side = Literal["initiator", "opponent"]

KIND_1V1: Final = "1v1"
KIND_2V2: Final = "2v2"
KIND_WAR: Final = "war"
TICKET_KINDS: Final[tuple[str, ...]] = (KIND_1V1, KIND_2V2, KIND_WAR)
PARTICIPANT_COUNTS: Final[dict[str, int]] = {KIND_1V1: 2, KIND_2V2: 4, KIND_WAR: 2}

OPEN_UNACCEPTED: Final = "OPEN_UNACCEPTED"
OPEN_ACCEPTED: Final = "OPEN_ACCEPTED"
DODGE: Final = "DODGE"
CLOSED: Final = "CLOSED"
OPEN_STATUSES: Final[tuple[str, ...]] = (OPEN_UNACCEPTED, OPEN_ACCEPTED)
TERMINAL_STATUSES: Final[tuple[str, ...]] = (DODGE, CLOSED)

SIDE_INITIATOR: Final = "initiator"
SIDE_OPPONENT: Final = "opponent"
SIDES: Final[tuple[str, ...]] = (SIDE_INITIATOR, SIDE_OPPONENT)

DEFAULT_REGION: Final = "default"
WAR_REGIONS: Final[tuple[str, ...]] = ("Europe", "South America", "NA East", "NA West")

MAX_CHANNELS_PER_CATEGORY: Final = 50


def utc_now() -> datetime:
    return datetime.now(UTC)


def utc_now_iso() -> str:
    """Return current UTC timestamp in ISO-8601 format (ms precision)."""
    return format_timestamp(utc_now())


def format_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).strftime(ISO_FORMAT)


def parse_timestamp(raw: object) -> datetime | None:
    if raw in (None, "", "None"):
        return None
    try:
        return datetime.strptime(str(raw), ISO_FORMAT).replace(tzinfo=UTC)
    except ValueError:
        parsed = datetime.fromisoformat(str(raw))
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def _optional_int(raw: object) -> int | None:
    if raw in (None, "", "None"):
        return None
    try:
        return int(raw)  # type: ignore[arg-type]
    except (TypeError, ValueError):  # pragma: no cover - defensive
        return None


def opposite_side(side: str) -> str:
    if side == SIDE_INITIATOR:
        return SIDE_OPPONENT
    if side == SIDE_OPPONENT:
        return SIDE_INITIATOR
    raise ValueError(f"Unknown side: {side}")


@dataclass(slots=True)
class Ticket:
    ticket_id: str
    guild_id: int
    channel_id: int
    kind: str
    participant_ids: tuple[int, ...]
    created_at: datetime
    status: str = OPEN_UNACCEPTED
    region: str = DEFAULT_REGION
    category_id: int | None = None
    created_by: int | None = None
    accepted_at: datetime | None = None
    accepted_by: int | None = None
    claimed_at: datetime | None = None
    claimed_by: int | None = None
    closed_at: datetime | None = None
    closed_by: int | None = None
    close_reason: str | None = None
    winner_side: str | None = None
    dodged_by: int | None = None
    dodged_side: str | None = None
    last_inactivity_warning_at: datetime | None = None
    last_extension_at: datetime | None = None

    PK_TEMPLATE: ClassVar[str] = "TICKET#%s"
    SK_VALUE: ClassVar[str] = "TICKET"
    GSI_NAME: ClassVar[str] = "guild-status-index"
    GSI_PK_TEMPLATE: ClassVar[str] = "GUILD#%s"

    _TIMESTAMP_FIELDS: ClassVar[tuple[str, ...]] = (
        "accepted_at",
        "claimed_at",
        "closed_at",
        "last_inactivity_warning_at",
        "last_extension_at",
    )
    _USER_FIELDS: ClassVar[tuple[str, ...]] = (
        "created_by",
        "accepted_by",
        "claimed_by",
        "closed_by",
        "dodged_by",
    )

    @classmethod
    def key(cls, ticket_id: str) -> dict[str, str]:
        return {"pk": cls.PK_TEMPLATE % ticket_id, "sk": cls.SK_VALUE}

    @classmethod
    def gsi_pk(cls, guild_id: int) -> str:
        return cls.GSI_PK_TEMPLATE % guild_id

    @staticmethod
    def gsi_sk(status: str, channel_id: int, ticket_id: str) -> str:
        return f"{status}#{channel_id}#{ticket_id}"

    def to_item(self) -> dict[str, object]:
        item: dict[str, object] = self.key(self.ticket_id)
        item.update(
            {
                "gsi_pk": self.gsi_pk(self.guild_id),
                "gsi_sk": self.gsi_sk(self.status, self.channel_id, self.ticket_id),
                "ticket_id": self.ticket_id,
                "guild_id": str(self.guild_id),
                "channel_id": str(self.channel_id),
                "kind": self.kind,
                "region": self.region,
                "status": self.status,
                "participant_ids": [str(uid) for uid in self.participant_ids],
                "created_at": format_timestamp(self.created_at),
            }
        )
        if self.category_id is not None:
            item["category_id"] = str(self.category_id)
        for name in self._USER_FIELDS:
            value = getattr(self, name)
            if value is not None:
                item[name] = str(value)
        for name in self._TIMESTAMP_FIELDS:
            value = getattr(self, name)
            if value is not None:
                item[name] = format_timestamp(value)
        for name in ("close_reason", "winner_side", "dodged_side"):
            value = getattr(self, name)
            if value is not None:
                item[name] = value
        return item

    @classmethod
    def from_item(cls, item: dict[str, object]) -> Ticket:
        ticket_id = str(item.get("ticket_id") or str(item["pk"]).split("#", 1)[1])
        raw_participants: Iterable[object] = item.get("participant_ids", [])  # type: ignore[assignment]
        created_at = parse_timestamp(item.get("created_at"))
        ticket = cls(
            ticket_id=ticket_id,
            guild_id=int(item["guild_id"]),  # type: ignore[arg-type]
            channel_id=int(item["channel_id"]),  # type: ignore[arg-type]
            kind=str(item.get("kind", KIND_1V1)),
            participant_ids=tuple(int(uid) for uid in raw_participants),  # type: ignore[arg-type]
            created_at=created_at or utc_now(),
            status=str(item.get("status", OPEN_UNACCEPTED)),
            region=str(item.get("region", DEFAULT_REGION)),
            category_id=_optional_int(item.get("category_id")),
        )
        for name in cls._USER_FIELDS:
            setattr(ticket, name, _optional_int(item.get(name)))
        for name in cls._TIMESTAMP_FIELDS:
            setattr(ticket, name, parse_timestamp(item.get(name)))
        for name in ("close_reason", "winner_side", "dodged_side"):
            value = item.get(name)
            setattr(ticket, name, str(value) if value is not None else None)
        return ticket

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_accepted(self) -> bool:
        return self.accepted_at is not None

    @property
    def is_claimed(self) -> bool:
        return self.claimed_by is not None

    @property
    def team_size(self) -> int:
        return len(self.participant_ids) // 2

    def side_members(self, side: str) -> tuple[int, ...]:
        half = self.team_size
        if side == SIDE_INITIATOR:
            return self.participant_ids[:half]
        if side == SIDE_OPPONENT:
            return self.participant_ids[half:]
        raise ValueError(f"Unknown side: {side}")

    def side_of(self, user_id: int) -> str | None:
        for side in SIDES:
            if user_id in self.side_members(side):
                return side
        return None

    def captain(self, side: str) -> int:
        return self.side_members(side)[0]

    @property
    def activity_reference(self) -> datetime | None:
        """Start of the inactivity window for accepted tickets."""
        if self.accepted_at is None:
            return None
        if self.last_extension_at is None:
            return self.accepted_at
        return max(self.accepted_at, self.last_extension_at)


@dataclass(slots=True)
class ParticipantProfile:
    user_id: int
    wins: int = 0
    losses: int = 0
    games_played: int = 0
    win_streak: int = 0
    loss_streak: int = 0
    peak_win_streak: int = 0
    last_result_at: datetime | None = None
    version: int = 0

    PK_TEMPLATE: ClassVar[str] = "PROFILE#%s"
    SK_VALUE: ClassVar[str] = "PROFILE"

    @classmethod
    def key(cls, user_id: int) -> dict[str, str]:
        return {"pk": cls.PK_TEMPLATE % user_id, "sk": cls.SK_VALUE}

    def to_item(self) -> dict[str, object]:
        item: dict[str, object] = self.key(self.user_id)
        item.update(
            {
                "user_id": str(self.user_id),
                "wins": self.wins,
                "losses": self.losses,
                "games_played": self.games_played,
                "win_streak": self.win_streak,
                "loss_streak": self.loss_streak,
                "peak_win_streak": self.peak_win_streak,
                "version": self.version,
            }
        )
        if self.last_result_at is not None:
            item["last_result_at"] = format_timestamp(self.last_result_at)
        return item

    @classmethod
    def from_item(cls, item: dict[str, object]) -> ParticipantProfile:
        user_id = int(str(item.get("user_id") or str(item["pk"]).split("#", 1)[1]))
        return cls(
            user_id=user_id,
            wins=int(item.get("wins", 0)),  # type: ignore[arg-type]
            losses=int(item.get("losses", 0)),  # type: ignore[arg-type]
            games_played=int(item.get("games_played", 0)),  # type: ignore[arg-type]
            win_streak=int(item.get("win_streak", 0)),  # type: ignore[arg-type]
            loss_streak=int(item.get("loss_streak", 0)),  # type: ignore[arg-type]
            peak_win_streak=int(item.get("peak_win_streak", 0)),  # type: ignore[arg-type]
            last_result_at=parse_timestamp(item.get("last_result_at")),
            version=int(item.get("version", 0)),  # type: ignore[arg-type]
        )

    def record_win(self, at: datetime) -> None:
        self.games_played += 1
        self.wins += 1
        self.win_streak += 1
        self.loss_streak = 0
        self.peak_win_streak = max(self.peak_win_streak, self.win_streak)
        self.last_result_at = at

    def record_loss(self, at: datetime) -> None:
        self.games_played += 1
        self.losses += 1
        self.loss_streak += 1
        self.win_streak = 0
        self.last_result_at = at


@dataclass(slots=True)
class GuildSettings:
    guild_id: int
    categories: dict[str, list[int]] = field(default_factory=dict)
    hoster_role_ids: list[int] = field(default_factory=list)
    moderator_role_ids: list[int] = field(default_factory=list)
    updated_by: int = 0
    updated_at: str = ""

    PK_TEMPLATE: ClassVar[str] = "GUILD#%s"
    SK_VALUE: ClassVar[str] = "SETTINGS"

    @classmethod
    def key(cls, guild_id: int) -> dict[str, str]:
        return {"pk": cls.PK_TEMPLATE % guild_id, "sk": cls.SK_VALUE}

    @staticmethod
    def category_key(kind: str, region: str = DEFAULT_REGION) -> str:
        return f"{kind}:{region}"

    def category_ids(self, kind: str, region: str = DEFAULT_REGION) -> list[int]:
        return list(self.categories.get(self.category_key(kind, region), []))

    def set_category_ids(
        self, kind: str, region: str, category_ids: Sequence[int]
    ) -> None:
        self.categories[self.category_key(kind, region)] = list(category_ids)

    @property
    def staff_role_ids(self) -> list[int]:
        ordered: list[int] = []
        for role_id in [*self.hoster_role_ids, *self.moderator_role_ids]:
            if role_id not in ordered:
                ordered.append(role_id)
        return ordered

    def to_item(self) -> dict[str, object]:
        item: dict[str, object] = self.key(self.guild_id)
        item.update(
            {
                "categories": {
                    key: [str(cid) for cid in ids] for key, ids in self.categories.items()
                },
                "hoster_role_ids": [str(rid) for rid in self.hoster_role_ids],
                "moderator_role_ids": [str(rid) for rid in self.moderator_role_ids],
                "updated_by": str(self.updated_by),
                "updated_at": self.updated_at,
            }
        )
        return item

    @classmethod
    def from_item(cls, item: dict[str, object]) -> GuildSettings:
        guild_id = int(str(item["pk"]).split("#", 1)[1])
        raw_categories: dict[str, Iterable[object]] = item.get("categories", {})  # type: ignore[assignment]
        return cls(
            guild_id=guild_id,
            categories={
                str(key): [int(cid) for cid in ids]  # type: ignore[arg-type]
                for key, ids in raw_categories.items()
            },
            hoster_role_ids=[int(rid) for rid in item.get("hoster_role_ids", [])],  # type: ignore[union-attr]
            moderator_role_ids=[
                int(rid) for rid in item.get("moderator_role_ids", [])  # type: ignore[union-attr]
            ],
            updated_by=int(item.get("updated_by", 0)),  # type: ignore[arg-type]
            updated_at=str(item.get("updated_at", "")),
        )


@dataclass(frozen=True, slots=True)
class TierDefinition:
    key: str
    name: str
    threshold: int


# Highest threshold first.
TIER_LADDER: Final[tuple[TierDefinition, ...]] = (
    TierDefinition("grandMaster", "Grand Master", 35),
    TierDefinition("master", "Master", 30),
    TierDefinition("diamond2", "Diamond 2", 28),
    TierDefinition("diamond1", "Diamond 1", 26),
    TierDefinition("platinum3", "Platinum 3", 24),
    TierDefinition("platinum2", "Platinum 2", 22),
    TierDefinition("platinum1", "Platinum 1", 20),
    TierDefinition("gold3", "Gold 3", 18),
    TierDefinition("gold2", "Gold 2", 16),
    TierDefinition("gold1", "Gold 1", 14),
    TierDefinition("silver3", "Silver 3", 12),
    TierDefinition("silver2", "Silver 2", 10),
    TierDefinition("silver1", "Silver 1", 8),
    TierDefinition("iron3", "Iron 3", 6),
    TierDefinition("iron2", "Iron 2", 4),
    TierDefinition("iron1", "Iron 1", 2),
)
TIER_KEYS: Final[frozenset[str]] = frozenset(tier.key for tier in TIER_LADDER)


@dataclass(slots=True)
class TierConfig:
    guild_id: int
    role_ids: dict[str, int] = field(default_factory=dict)
    top_role_id: int | None = None
    updated_by: int = 0
    updated_at: str = ""

    PK_TEMPLATE: ClassVar[str] = "GUILD#%s"
    SK_VALUE: ClassVar[str] = "TIERS"

    @classmethod
    def key(cls, guild_id: int) -> dict[str, str]:
        return {"pk": cls.PK_TEMPLATE % guild_id, "sk": cls.SK_VALUE}

    def role_for(self, tier_key: str | None) -> int | None:
        if tier_key is None:
            return None
        return self.role_ids.get(tier_key)

    def tier_role_ids(self) -> set[int]:
        return {role_id for key, role_id in self.role_ids.items() if key in TIER_KEYS}

    def to_item(self) -> dict[str, object]:
        item: dict[str, object] = self.key(self.guild_id)
        item.update(
            {
                "role_ids": {key: str(rid) for key, rid in self.role_ids.items()},
                "updated_by": str(self.updated_by),
                "updated_at": self.updated_at,
            }
        )
        if self.top_role_id is not None:
            item["top_role_id"] = str(self.top_role_id)
        return item

    @classmethod
    def from_item(cls, item: dict[str, object]) -> TierConfig:
        guild_id = int(str(item["pk"]).split("#", 1)[1])
        raw_roles: dict[str, object] = item.get("role_ids", {})  # type: ignore[assignment]
        role_ids: dict[str, int] = {}
        for key, raw in raw_roles.items():
            role_id = _optional_int(raw)
            if role_id is not None:
                role_ids[str(key)] = role_id
        return cls(
            guild_id=guild_id,
            role_ids=role_ids,
            top_role_id=_optional_int(item.get("top_role_id")),
            updated_by=int(item.get("updated_by", 0)),  # type: ignore[arg-type]
            updated_at=str(item.get("updated_at", "")),
        )


@dataclass(slots=True)
class CategorySlot:
    category_id: int
    count: int = 0
    capacity: int = MAX_CHANNELS_PER_CATEGORY

    @property
    def has_room(self) -> bool:
        return self.count < self.capacity


__all__ = [
    "CLOSED",
    "CategorySlot",
    "DEFAULT_REGION",
    "DODGE",
    "GuildSettings",
    "ISO_FORMAT",
    "KIND_1V1",
    "KIND_2V2",
    "KIND_WAR",
    "MAX_CHANNELS_PER_CATEGORY",
    "OPEN_ACCEPTED",
    "OPEN_STATUSES",
    "OPEN_UNACCEPTED",
    "PARTICIPANT_COUNTS",
    "ParticipantProfile",
    "SIDES",
    "SIDE_INITIATOR",
    "SIDE_OPPONENT",
    "Side",
    "TERMINAL_STATUSES",
    "TICKET_KINDS",
    "TIER_KEYS",
    "TIER_LADDER",
    "Ticket",
    "TicketKind",
    "TicketStatus",
    "TierConfig",
    "TierDefinition",
    "WAR_REGIONS",
    "format_timestamp",
    "opposite_side",
    "parse_timestamp",
    "utc_now",
    "utc_now_iso",
]
