"""Environment configuration for the wager bot."""

from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import timedelta

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def env_bool(name: str, *, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    lowered = raw.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    return default


def env_int(name: str, *, default: int | None = None) -> int | None:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class EscalationPolicy:
    unaccepted_timeout: timedelta = timedelta(days=1)
    warning_after: timedelta = timedelta(days=2)
    accepted_timeout: timedelta = timedelta(days=3)
    reminder_inactivity: timedelta = timedelta(hours=36)
    reminder_cooldown: timedelta = timedelta(hours=3)
    deletion_grace: timedelta = timedelta(seconds=10)
    lifecycle_interval: timedelta = timedelta(hours=1)
    reminder_interval: timedelta = timedelta(minutes=30)

    @classmethod
    def for_testing(cls) -> EscalationPolicy:
        """Day-scale windows shrunk to minutes for manual end-to-end runs."""
        return cls(
            unaccepted_timeout=timedelta(minutes=2),
            warning_after=timedelta(minutes=4),
            accepted_timeout=timedelta(minutes=6),
            reminder_inactivity=timedelta(minutes=3),
            reminder_cooldown=timedelta(minutes=2),
            deletion_grace=timedelta(seconds=10),
            lifecycle_interval=timedelta(minutes=1),
            reminder_interval=timedelta(minutes=1),
        )


@dataclass(frozen=True)
class BotConfig:
    discord_token: str
    table_name: str
    aws_region: str
    guild_id: int | None
    log_channel_id: int | None
    dodge_log_channel_id: int | None
    test_mode: bool

    @classmethod
    def load(cls) -> BotConfig:
        missing: list[str] = []

        def need(name: str) -> str:
            value = os.getenv(name)
            if not value:
                missing.append(name)
                return ""
            return value

        discord_token = need("DISCORD_TOKEN")
        table_name = need("WAGER_TABLE_NAME")

        if missing:
            raise RuntimeError("Missing env vars: " + ", ".join(sorted(set(missing))))

        return cls(
            discord_token=discord_token,
            table_name=table_name,
            aws_region=os.getenv("AWS_REGION") or "us-east-1",
            guild_id=env_int("WAGER_GUILD_ID"),
            log_channel_id=env_int("WAGER_LOG_CHANNEL_ID"),
            dodge_log_channel_id=env_int("WAGER_DODGE_LOG_CHANNEL_ID"),
            test_mode=env_bool("WAGER_TEST_MODE"),
        )

    @property
    def escalation_policy(self) -> EscalationPolicy:
        if self.test_mode:
            return EscalationPolicy.for_testing()
        return EscalationPolicy()


__all__ = ["BotConfig", "EscalationPolicy", "env_bool", "env_int"]
