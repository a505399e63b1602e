"""Wager and war ticket bot."""

from .allocator import ResourceAllocator
from .config import BotConfig, EscalationPolicy
from .errors import (
    AllCategoriesFull,
    AlreadyAccepted,
    AlreadyClaimed,
    CapacityExceeded,
    CategoryNotConfigured,
    ClaimedByOther,
    ExternalServiceUnavailable,
    InvalidParticipants,
    InvalidTransition,
    NotFound,
    ServerChannelLimit,
    TicketNotFound,
    WagerError,
)
from .lifecycle import LifecycleService
from .models import (
    GuildSettings,
    ParticipantProfile,
    Ticket,
    TierConfig,
    TierDefinition,
    utc_now_iso,
)
from .ranks import RankEngine, tier_for_wins
from .scheduler import EscalationScheduler, ReminderCache, plan_escalation
from .storage import TicketStore
from .timers import DeferredTasks

__all__ = [
    "AllCategoriesFull",
    "AlreadyAccepted",
    "AlreadyClaimed",
    "BotConfig",
    "CapacityExceeded",
    "CategoryNotConfigured",
    "ClaimedByOther",
    "DeferredTasks",
    "EscalationPolicy",
    "EscalationScheduler",
    "ExternalServiceUnavailable",
    "GuildSettings",
    "InvalidParticipants",
    "InvalidTransition",
    "LifecycleService",
    "NotFound",
    "ParticipantProfile",
    "RankEngine",
    "ReminderCache",
    "ResourceAllocator",
    "ServerChannelLimit",
    "Ticket",
    "TicketNotFound",
    "TicketStore",
    "TierConfig",
    "TierDefinition",
    "WagerError",
    "plan_escalation",
    "tier_for_wins",
    "utc_now_iso",
]
