"""Component custom ids of the form ``<domain>:<verb>:<ticketId>[:<extra>...]``."""

from __future__ import annotations

from dataclasses import dataclass

from .models import KIND_WAR

MAX_CUSTOM_ID_LENGTH = 100

DOMAIN_WAGER = "wager"
DOMAIN_WAR = "war"
DOMAINS = frozenset({DOMAIN_WAGER, DOMAIN_WAR})

VERB_ACCEPT = "accept"
VERB_CLAIM = "claim"
VERB_DECIDE = "decide"
VERB_DODGE = "dodge"
VERB_EXTEND = "extend"
VERB_CLOSE = "close"
VERB_DISPOSE = "dispose"
VERBS = frozenset(
    {
        VERB_ACCEPT,
        VERB_CLAIM,
        VERB_DECIDE,
        VERB_DODGE,
        VERB_EXTEND,
        VERB_CLOSE,
        VERB_DISPOSE,
    }
)


class InvalidCustomId(ValueError):
    pass


@dataclass(frozen=True, slots=True)
class CustomId:
    domain: str
    verb: str
    ticket_id: str
    extra: tuple[str, ...] = ()

    def __str__(self) -> str:
        return build_custom_id(self.domain, self.verb, self.ticket_id, *self.extra)

    def extra_int(self, index: int = 0) -> int:
        try:
            return int(self.extra[index])
        except (IndexError, ValueError) as exc:
            raise InvalidCustomId(f"Missing numeric argument {index}") from exc


def domain_for_kind(kind: str) -> str:
    return DOMAIN_WAR if kind == KIND_WAR else DOMAIN_WAGER


def build_custom_id(domain: str, verb: str, ticket_id: str, *extra: object) -> str:
    if domain not in DOMAINS:
        raise InvalidCustomId(f"Unknown domain: {domain}")
    if verb not in VERBS:
        raise InvalidCustomId(f"Unknown verb: {verb}")
    parts = [domain, verb, ticket_id, *(str(value) for value in extra)]
    if any(not part or ":" in part for part in parts):
        raise InvalidCustomId("Custom id segments must be non-empty and colon-free")
    value = ":".join(parts)
    if len(value) > MAX_CUSTOM_ID_LENGTH:
        raise InvalidCustomId(
            f"Custom id exceeds {MAX_CUSTOM_ID_LENGTH} characters: {value!r}"
        )
    return value


def parse_custom_id(raw: str | None) -> CustomId | None:
    """Parse ``raw`` positionally; returns ``None`` for ids owned by other handlers."""
    if not raw or len(raw) > MAX_CUSTOM_ID_LENGTH:
        return None
    parts = raw.split(":")
    if len(parts) < 3:
        return None
    domain, verb, ticket_id, *extra = parts
    if domain not in DOMAINS or verb not in VERBS or not ticket_id:
        return None
    return CustomId(domain=domain, verb=verb, ticket_id=ticket_id, extra=tuple(extra))


__all__ = [
    "CustomId",
    "DOMAINS",
    "DOMAIN_WAGER",
    "DOMAIN_WAR",
    "InvalidCustomId",
    "MAX_CUSTOM_ID_LENGTH",
    "VERBS",
    "VERB_ACCEPT",
    "VERB_CLAIM",
    "VERB_CLOSE",
    "VERB_DECIDE",
    "VERB_DISPOSE",
    "VERB_DODGE",
    "VERB_EXTEND",
    "build_custom_id",
    "domain_for_kind",
    "parse_custom_id",
]
