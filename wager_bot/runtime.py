from __future__ import annotations

import logging
from collections.abc import Sequence

import boto3
import discord
from discord import app_commands

from .allocator import ResourceAllocator
from .config import BotConfig
from .errors import InvalidParticipants, WagerError
from .interactions import GENERIC_FAILURE, InteractionRouter, is_staff, user_facing_message
from .lifecycle import LifecycleService
from .models import KIND_1V1, KIND_2V2, KIND_WAR, WAR_REGIONS
from .notifications import AuditReporter, Notifier, mention
from .ranks import RankEngine, tier_for_wins
from .scheduler import EscalationScheduler
from .storage import TicketStore
from .timers import DeferredTasks

log = logging.getLogger("wager-bot")

REGION_CHOICES = [app_commands.Choice(name=region, value=region) for region in WAR_REGIONS]


def team_label(user_ids: Sequence[int]) -> str:
    return " & ".join(mention(user_id) for user_id in user_ids)


class WagerRuntime:
    def __init__(self, config: BotConfig, *, table=None) -> None:
        intents = discord.Intents.default()
        intents.guilds = True
        intents.members = True

        self.config = config
        self.bot = discord.Client(intents=intents)
        self.tree = app_commands.CommandTree(self.bot)
        if table is None:
            dynamodb = boto3.resource("dynamodb", region_name=config.aws_region)
            table = dynamodb.Table(config.table_name)
        self.store = TicketStore(table)
        self.policy = config.escalation_policy
        self.allocator = ResourceAllocator()
        self.deferred = DeferredTasks()
        self.ranks = RankEngine(self.store)
        self.audit = AuditReporter(
            self.bot,
            log_channel_id=config.log_channel_id,
            dodge_channel_id=config.dodge_log_channel_id,
        )
        self.notifier = Notifier(self.audit)
        self.lifecycle = LifecycleService(
            self.store,
            self.allocator,
            self.ranks,
            self.notifier,
            self.deferred,
            guild_resolver=self.bot.get_guild,
            policy=self.policy,
        )
        self.router = InteractionRouter(self.lifecycle)
        self.scheduler = EscalationScheduler(
            self.lifecycle,
            self.store,
            self.allocator,
            self.notifier,
            self.deferred,
            guilds=lambda: list(self.bot.guilds),
            policy=self.policy,
        )
        self.register_events()
        self.register_commands()

    @classmethod
    def create(cls) -> WagerRuntime:
        return cls(BotConfig.load())

    # ----- handlers -----
    async def _reply(self, interaction: discord.Interaction, message: str) -> None:
        if interaction.response.is_done():
            await interaction.followup.send(message, ephemeral=True)
        else:
            await interaction.response.send_message(message, ephemeral=True)

    async def open_challenge(
        self,
        interaction: discord.Interaction,
        kind: str,
        participants: list[discord.abc.User],
        *,
        region: str | None = None,
    ) -> None:
        guild = interaction.guild
        if guild is None:
            await self._reply(interaction, "Challenges can only be created in a server.")
            return
        await interaction.response.defer(ephemeral=True, thinking=True)
        try:
            if any(getattr(user, "bot", False) for user in participants):
                raise InvalidParticipants("Bots cannot take part in a challenge.")
            kwargs = {"region": region} if region else {}
            ticket = await self.lifecycle.create(
                guild,
                kind,
                [user.id for user in participants],
                created_by=interaction.user.id,
                **kwargs,
            )
        except WagerError as exc:
            await self._reply(interaction, user_facing_message(exc))
            return
        except Exception:  # pylint: disable=broad-except
            log.exception("Creating %s challenge failed", kind)
            await self._reply(interaction, GENERIC_FAILURE)
            return
        await self._reply(interaction, f"Challenge created: <#{ticket.channel_id}>")

    async def record(
        self,
        interaction: discord.Interaction,
        winners: Sequence[discord.abc.User],
        losers: Sequence[discord.abc.User],
    ) -> None:
        guild = interaction.guild
        if guild is None or not is_staff(
            interaction.user, self.lifecycle.settings_for(guild.id)
        ):
            await self._reply(interaction, "Only staff can record results.")
            return
        await interaction.response.defer(ephemeral=True, thinking=True)
        winner_ids = [user.id for user in winners]
        loser_ids = [user.id for user in losers]
        try:
            profiles, _losers = await self.ranks.record_result(guild, winner_ids, loser_ids)
        except WagerError as exc:
            await self._reply(interaction, user_facing_message(exc))
            return
        except Exception:  # pylint: disable=broad-except
            log.exception("Recording result %s vs %s failed", winner_ids, loser_ids)
            await self._reply(interaction, GENERIC_FAILURE)
            return
        if len(profiles) == 1:
            detail = f"{profiles[0].wins}W/{profiles[0].losses}L"
        else:
            detail = ", ".join(
                f"{mention(p.user_id)} {p.wins}W/{p.losses}L" for p in profiles
            )
        await self._reply(
            interaction,
            f"Result recorded: {team_label(winner_ids)} beat {team_label(loser_ids)} "
            f"({detail}).",
        )

    def describe_rank(self, user_id: int) -> str:
        profile = self.store.load_profile(user_id)
        tier = tier_for_wins(profile.wins)
        tier_name = tier.name if tier else "Unranked"
        return (
            f"{mention(user_id)}: **{tier_name}** | {profile.wins}W/{profile.losses}L "
            f"({profile.games_played} played) | streak {profile.win_streak}, "
            f"best {profile.peak_win_streak}"
        )

    def describe_leaderboard(self, guild) -> str:
        board = self.ranks.leaderboard(guild)
        if not board:
            return "No players with wager results yet."
        lines = ["**Wager leaderboard**"]
        for position, profile in enumerate(board, start=1):
            played = profile.games_played
            rate = round(profile.wins / played * 100) if played else 0
            lines.append(
                f"**#{position}** {mention(profile.user_id)}: {played} wagers, "
                f"{profile.wins}W/{profile.losses}L ({rate}%)"
            )
        return "\n".join(lines)

    async def set_stats(
        self,
        interaction: discord.Interaction,
        member: discord.abc.User,
        wins: int,
        losses: int,
    ) -> None:
        permissions = getattr(interaction.user, "guild_permissions", None)
        if interaction.guild is None or not getattr(permissions, "administrator", False):
            await self._reply(interaction, "Only administrators can override stats.")
            return
        await interaction.response.defer(ephemeral=True, thinking=True)
        try:
            profile = await self.ranks.override_stats(
                interaction.guild, member.id, wins=wins, losses=losses
            )
        except (WagerError, ValueError) as exc:
            await self._reply(interaction, str(exc))
            return
        await self._reply(
            interaction,
            f"Stats for {mention(member.id)} set to {profile.wins}W/{profile.losses}L.",
        )

    # ----- registration -----
    def register_commands(self) -> None:
        wager = app_commands.Group(name="wager", description="Wager challenges")
        war = app_commands.Group(name="war", description="War challenges")

        @wager.command(name="challenge", description="Challenge a player to a 1v1 wager")
        @app_commands.describe(opponent="Player to challenge")
        async def wager_challenge(
            interaction: discord.Interaction, opponent: discord.Member
        ) -> None:
            await self.open_challenge(interaction, KIND_1V1, [interaction.user, opponent])

        @wager.command(name="challenge2v2", description="Challenge a team to a 2v2 wager")
        @app_commands.describe(
            teammate="Your teammate",
            opponent="First challenged player",
            opponent_teammate="Second challenged player",
        )
        async def wager_challenge_2v2(
            interaction: discord.Interaction,
            teammate: discord.Member,
            opponent: discord.Member,
            opponent_teammate: discord.Member,
        ) -> None:
            await self.open_challenge(
                interaction,
                KIND_2V2,
                [interaction.user, teammate, opponent, opponent_teammate],
            )

        @wager.command(name="record", description="Record a wager result (staff)")
        @app_commands.describe(winner="Winning player", loser="Losing player")
        async def wager_record(
            interaction: discord.Interaction,
            winner: discord.Member,
            loser: discord.Member,
        ) -> None:
            await self.record(interaction, [winner], [loser])

        @wager.command(name="record2v2", description="Record a 2v2 wager result (staff)")
        @app_commands.describe(
            winner="Winning player",
            winner_teammate="Winning teammate",
            loser="Losing player",
            loser_teammate="Losing teammate",
        )
        async def wager_record_2v2(
            interaction: discord.Interaction,
            winner: discord.Member,
            winner_teammate: discord.Member,
            loser: discord.Member,
            loser_teammate: discord.Member,
        ) -> None:
            await self.record(
                interaction, [winner, winner_teammate], [loser, loser_teammate]
            )

        @wager.command(name="rank", description="Show wager stats and tier")
        @app_commands.describe(member="Player to look up (defaults to you)")
        async def wager_rank(
            interaction: discord.Interaction, member: discord.Member | None = None
        ) -> None:
            target = member or interaction.user
            try:
                message = self.describe_rank(target.id)
            except WagerError as exc:
                message = user_facing_message(exc)
            await self._reply(interaction, message)

        @wager.command(name="leaderboard", description="Show the top wager players")
        async def wager_leaderboard(interaction: discord.Interaction) -> None:
            if interaction.guild is None:
                await self._reply(interaction, "The leaderboard is only available in a server.")
                return
            try:
                message = self.describe_leaderboard(interaction.guild)
            except WagerError as exc:
                message = user_facing_message(exc)
            await self._reply(interaction, message)

        @wager.command(name="setstats", description="Override wager stats (admin)")
        @app_commands.describe(
            member="Player to update", wins="Total wins", losses="Total losses"
        )
        async def wager_set_stats(
            interaction: discord.Interaction,
            member: discord.Member,
            wins: app_commands.Range[int, 0, 100_000],
            losses: app_commands.Range[int, 0, 100_000],
        ) -> None:
            await self.set_stats(interaction, member, wins, losses)

        @war.command(name="challenge", description="Challenge another guild to a war")
        @app_commands.describe(
            opponent="Captain of the challenged guild", region="Server region"
        )
        @app_commands.choices(region=REGION_CHOICES)
        async def war_challenge(
            interaction: discord.Interaction,
            opponent: discord.Member,
            region: app_commands.Choice[str],
        ) -> None:
            await self.open_challenge(
                interaction, KIND_WAR, [interaction.user, opponent], region=region.value
            )

        self.tree.add_command(wager)
        self.tree.add_command(war)

    def register_events(self) -> None:
        @self.bot.event
        async def on_ready() -> None:  # pragma: no cover - Discord lifecycle hook
            if self.config.guild_id is not None:
                guild = discord.Object(id=self.config.guild_id)
                self.tree.copy_global_to(guild=guild)
                await self.tree.sync(guild=guild)
                log.info("Commands synced to guild %s", self.config.guild_id)
            else:
                await self.tree.sync()
                log.info("Commands synced globally")
            if not self.scheduler.running:
                self.scheduler.start()
            log.info("Wager bot ready as %s (%s)", self.bot.user, self.bot.user.id)

        @self.bot.event
        async def on_interaction(interaction: discord.Interaction) -> None:
            if interaction.type is not discord.InteractionType.component:
                return
            await self.router.handle(interaction)

    async def run(self) -> None:  # pragma: no cover - network entry point
        try:
            async with self.bot:
                await self.bot.start(self.config.discord_token)
        finally:
            self.scheduler.stop()


async def main() -> None:  # pragma: no cover - CLI entry point
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )
    runtime = WagerRuntime.create()
    await runtime.run()


__all__ = ["WagerRuntime", "main"]
