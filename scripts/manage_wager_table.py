#!/usr/bin/env python3
"""Administrative helper for the wager bot DynamoDB table.

Guild settings (ticket categories, staff roles) and tier roles are not
editable from Discord; this script writes them.

Typical usage (dry-run):

    python scripts/manage_wager_table.py --table Wagers categories \
        --guild 123 --kind war --region Europe --category-ids 111 222

Execute writes after reviewing the dry-run output:

    python scripts/manage_wager_table.py --table Wagers --execute tiers \
        --guild 123 --role iron1=555 --role iron2=556 --top-role 999
"""

from __future__ import annotations

import argparse
import asyncio
import logging
from typing import Any

import boto3

from wager_bot.models import (
    DEFAULT_REGION,
    TICKET_KINDS,
    TIER_KEYS,
    WAR_REGIONS,
    GuildSettings,
    TierConfig,
    utc_now_iso,
)
from wager_bot.ranks import RankEngine
from wager_bot.storage import TicketStore

log = logging.getLogger(__name__)


def load_all_items(table) -> list[dict[str, Any]]:
    items: list[dict[str, Any]] = []
    kwargs: dict[str, Any] = {}
    while True:
        resp = table.scan(**kwargs)
        items.extend(resp.get("Items", []))
        last_key = resp.get("LastEvaluatedKey")
        if not last_key:
            break
        kwargs = {"ExclusiveStartKey": last_key}
    return items


def parse_role_pairs(values: list[str] | None) -> dict[str, int]:
    roles: dict[str, int] = {}
    for raw in values or []:
        key, sep, role_id = raw.partition("=")
        if not sep:
            raise ValueError(f"Expected tier=role_id, got {raw!r}")
        if key not in TIER_KEYS:
            raise ValueError(f"Unknown tier {key!r}; expected one of {sorted(TIER_KEYS)}")
        roles[key] = int(role_id)
    return roles


def update_categories(
    store: TicketStore,
    guild_id: int,
    kind: str,
    region: str,
    category_ids: list[int],
    *,
    dry_run: bool,
) -> GuildSettings:
    if kind == "war" and region not in WAR_REGIONS:
        raise ValueError(f"War region must be one of {', '.join(WAR_REGIONS)}")
    if kind != "war":
        region = DEFAULT_REGION
    settings = store.get_settings(guild_id) or GuildSettings(guild_id=guild_id)
    settings.set_category_ids(kind, region, category_ids)
    settings.updated_at = utc_now_iso()
    if dry_run:
        log.info("Would set %s/%s categories to %s", kind, region, category_ids)
    else:
        store.save_settings(settings)
        log.info("Saved %s/%s categories for guild %s", kind, region, guild_id)
    return settings


def update_staff(
    store: TicketStore,
    guild_id: int,
    *,
    hosters: list[int] | None,
    moderators: list[int] | None,
    dry_run: bool,
) -> GuildSettings:
    settings = store.get_settings(guild_id) or GuildSettings(guild_id=guild_id)
    if hosters is not None:
        settings.hoster_role_ids = hosters
    if moderators is not None:
        settings.moderator_role_ids = moderators
    settings.updated_at = utc_now_iso()
    if dry_run:
        log.info(
            "Would set hosters=%s moderators=%s",
            settings.hoster_role_ids,
            settings.moderator_role_ids,
        )
    else:
        store.save_settings(settings)
        log.info("Saved staff roles for guild %s", guild_id)
    return settings


def update_tiers(
    store: TicketStore,
    guild_id: int,
    roles: dict[str, int],
    *,
    top_role_id: int | None,
    dry_run: bool,
) -> TierConfig:
    config = store.get_tier_config(guild_id) or TierConfig(guild_id=guild_id)
    config.role_ids.update(roles)
    if top_role_id is not None:
        config.top_role_id = top_role_id
    config.updated_at = utc_now_iso()
    if dry_run:
        log.info("Would set tier roles %s (top role %s)", config.role_ids, config.top_role_id)
    else:
        store.save_tier_config(config)
        log.info("Saved tier roles for guild %s", guild_id)
    return config


def override_stats(
    store: TicketStore, user_id: int, *, wins: int, losses: int, dry_run: bool
) -> None:
    if dry_run:
        current = store.load_profile(user_id)
        log.info(
            "Would change %s from %sW/%sL to %sW/%sL",
            user_id,
            current.wins,
            current.losses,
            wins,
            losses,
        )
        return
    profile = asyncio.run(
        RankEngine(store).override_stats(None, user_id, wins=wins, losses=losses)
    )
    log.info(
        "Stats for %s set to %sW/%sL; roles resync on the next result",
        user_id,
        profile.wins,
        profile.losses,
    )


def list_open(store: TicketStore, guild_id: int) -> None:
    tickets = store.list_open_tickets(guild_id)
    if not tickets:
        log.info("No open tickets for guild %s", guild_id)
        return
    for ticket in tickets:
        log.info(
            "%s %s %s channel=%s participants=%s created=%s",
            ticket.ticket_id,
            ticket.kind,
            ticket.status,
            ticket.channel_id,
            list(ticket.participant_ids),
            ticket.created_at.isoformat(),
        )


def summarize(table) -> None:
    counts: dict[str, int] = {}
    for item in load_all_items(table):
        sk = str(item.get("sk", ""))
        label = f"TICKET:{item.get('status')}" if sk == "TICKET" else sk
        counts[label] = counts.get(label, 0) + 1
    for label in sorted(counts):
        log.info("%-28s %s", label, counts[label])


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Manage wager bot data")
    parser.add_argument("--table", required=True, help="DynamoDB table name")
    parser.add_argument("--profile", default=None, help="Optional AWS profile name for boto3")
    parser.add_argument(
        "--execute",
        action="store_true",
        help="Apply changes. Without this flag the script performs a dry run.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    categories = sub.add_parser("categories", help="Set ticket categories")
    categories.add_argument("--guild", type=int, required=True)
    categories.add_argument("--kind", choices=TICKET_KINDS, required=True)
    categories.add_argument("--region", default=DEFAULT_REGION)
    categories.add_argument("--category-ids", type=int, nargs="+", required=True)

    staff = sub.add_parser("staff", help="Set hoster and moderator roles")
    staff.add_argument("--guild", type=int, required=True)
    staff.add_argument("--hosters", type=int, nargs="*", default=None)
    staff.add_argument("--moderators", type=int, nargs="*", default=None)

    tiers = sub.add_parser("tiers", help="Map tier keys to role ids")
    tiers.add_argument("--guild", type=int, required=True)
    tiers.add_argument("--role", action="append", help="tier=role_id (repeatable)")
    tiers.add_argument("--top-role", type=int, default=None)

    stats = sub.add_parser("set-stats", help="Override a player's wins and losses")
    stats.add_argument("--user", type=int, required=True)
    stats.add_argument("--wins", type=int, required=True)
    stats.add_argument("--losses", type=int, required=True)

    open_tickets = sub.add_parser("list-open", help="List open tickets of a guild")
    open_tickets.add_argument("--guild", type=int, required=True)

    sub.add_parser("summary", help="Count items by type")
    return parser


def main() -> None:
    args = build_parser().parse_args()
    logging.basicConfig(level=logging.INFO, format="%(message)s")
    session_kwargs = {"profile_name": args.profile} if args.profile else {}
    session = boto3.Session(**session_kwargs)
    table = session.resource("dynamodb").Table(args.table)
    store = TicketStore(table)
    dry_run = not args.execute

    if args.command == "categories":
        update_categories(
            store, args.guild, args.kind, args.region, args.category_ids, dry_run=dry_run
        )
    elif args.command == "staff":
        update_staff(
            store,
            args.guild,
            hosters=args.hosters,
            moderators=args.moderators,
            dry_run=dry_run,
        )
    elif args.command == "tiers":
        update_tiers(
            store,
            args.guild,
            parse_role_pairs(args.role),
            top_role_id=args.top_role,
            dry_run=dry_run,
        )
    elif args.command == "set-stats":
        override_stats(store, args.user, wins=args.wins, losses=args.losses, dry_run=dry_run)
    elif args.command == "list-open":
        list_open(store, args.guild)
    else:
        summarize(table)

    if dry_run and args.command in {"categories", "staff", "tiers", "set-stats"}:
        log.info("Dry run complete. Re-run with --execute to apply changes.")


if __name__ == "__main__":
    main()
