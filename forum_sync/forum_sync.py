from __future__ import annotations

from typing import Any, Dict, Optional

import asyncio
import logging

import discord
from aiohttp import web
from redbot.core import commands, Config
from redbot.core.bot import Red
from redbot.core.data_manager import cog_data_path

from .config import CONFIG_IDENTIFIER, DEFAULT_GLOBAL_CONFIG, MAPPINGS_FILENAME, load_mappings
from .context import ContextProvider
from .discord_client import (
    DiscordGateway,
    chat_message_from_discord,
    chat_thread_from_discord,
    forum_tags_from_discord,
)
from .discord_handlers import DiscordHandlers
from .errors import ForumSyncError, MappingError
from .github_client import GitHubClient
from .github_handlers import GitHubHandlers
from .health import DEGRADED, HEALTHY, HealthMonitor
from .mappings import MappingManager
from .persistence import ConfigPersistence
from .registry import MappingRegistry
from .resilience import CircuitBreaker, ErrorHandler, Resilience, RetryOptions
from .webhook import WebhookRouter, build_app

STATUS_EMOJI = {HEALTHY: "🟢", DEGRADED: "🟡"}


class ForumSync(commands.Cog):
    """
    Mirror GitHub issues into Discord forum channels, and back.

    - One forum channel per watched repository (a mapping)
    - Forum threads <-> issues, messages <-> comments
    - Archive <-> closed, lock <-> locked, tags <-> labels
    - GitHub events arrive on a built-in webhook endpoint
    - Each mapping has its own store, error counters and circuit breaker
    """

    def __init__(self, bot: Red) -> None:
        self.bot = bot
        self.config = Config.get_conf(self, identifier=CONFIG_IDENTIFIER, force_registration=True)
        self.config.register_global(**DEFAULT_GLOBAL_CONFIG)
        self.log = logging.getLogger(f"red.{__name__}")

        self.registry = MappingRegistry()
        self.gateway = DiscordGateway(bot)
        self.github = GitHubClient()
        self.persistence = ConfigPersistence(cog_data_path(self) / MAPPINGS_FILENAME)

        self._runner: Optional[web.AppRunner] = None
        self._bootstrap_task: Optional[asyncio.Task] = None

    # ----------------------
    # Lifecycle
    # ----------------------
    async def cog_load(self) -> None:
        """Load mappings, wire components and start the webhook server."""
        settings = await self.config.all()
        if settings.get("log_level"):
            logging.getLogger("red.forum_sync").setLevel(settings["log_level"].upper())

        data = await self.persistence.load()
        # Raises ConfigurationError, which aborts the load
        mappings = load_mappings(
            {**data, "webhook_port": settings["webhook_port"], "log_level": settings["log_level"]}
        )
        self._build(settings)
        self.registry.initialize(mappings)

        await self._start_webhook_server(settings)
        self.health.start()
        self._bootstrap_task = asyncio.create_task(self._bootstrap())

    async def cog_unload(self) -> None:
        self.health.stop()
        if self._bootstrap_task is not None and not self._bootstrap_task.done():
            self._bootstrap_task.cancel()
        await self._stop_webhook_server()
        await self.github.close()
        self.log.debug("ForumSync unloaded")

    def _build(self, settings: Dict[str, Any]) -> None:
        self.error_handler = ErrorHandler(RetryOptions(**settings["retry"]))
        self.breaker = CircuitBreaker(**settings["breaker"])
        self.health = HealthMonitor(
            self.registry, self.error_handler, self.breaker, interval=settings["health_check_interval"]
        )
        resilience = Resilience(self.error_handler, self.breaker, self.health)
        self.provider = ContextProvider(self.registry, github_token=settings["github_token"])

        self.discord_handlers = DiscordHandlers(
            self.provider, self.gateway, self.github, resilience, archive_debounce=settings["archive_debounce"]
        )
        self.github_handlers = GitHubHandlers(self.gateway, resilience, echo_ttl=settings["echo_ttl"])
        self.router = WebhookRouter(self.provider, self.error_handler, self.health)
        self.github_handlers.register(self.router)
        self.manager = MappingManager(
            self.registry, self.provider, self.persistence, self.gateway, self.github, self.github_handlers
        )

    async def _bootstrap(self) -> None:
        await self.bot.wait_until_red_ready()
        self.log.info("Rebuilding stores for %d mapping(s)", len(self.registry))
        await self.discord_handlers.handle_ready()

    async def _start_webhook_server(self, settings: Dict[str, Any]) -> None:
        app = build_app(self.router, self.health, webhook_path=settings["webhook_path"])
        runner = web.AppRunner(app)
        await runner.setup()
        site = web.TCPSite(runner, settings["webhook_host"], settings["webhook_port"])
        try:
            await site.start()
        except OSError:
            await runner.cleanup()
            self.log.exception(
                "Could not bind webhook server to %s:%s", settings["webhook_host"], settings["webhook_port"]
            )
            return
        self._runner = runner
        self.log.info(
            "Webhook server listening on %s:%s%s",
            settings["webhook_host"], settings["webhook_port"], settings["webhook_path"],
        )

    async def _stop_webhook_server(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
            self.log.debug("Webhook server stopped")

    # ----------------------
    # Listeners
    # ----------------------
    @commands.Cog.listener()
    async def on_thread_create(self, thread: discord.Thread) -> None:
        if not self.registry.is_channel_managed(thread.parent_id):
            return
        await self.discord_handlers.handle_thread_create(chat_thread_from_discord(thread))

    @commands.Cog.listener()
    async def on_thread_update(self, before: discord.Thread, after: discord.Thread) -> None:
        if not self.registry.is_channel_managed(after.parent_id):
            return
        await self.discord_handlers.handle_thread_update(chat_thread_from_discord(after))

    @commands.Cog.listener()
    async def on_raw_thread_delete(self, payload: discord.RawThreadDeleteEvent) -> None:
        if not self.registry.is_channel_managed(payload.parent_id):
            return
        await self.discord_handlers.handle_thread_delete(payload.thread_id, payload.parent_id)

    @commands.Cog.listener()
    async def on_message(self, message: discord.Message) -> None:
        """Mirror forum thread messages to GitHub."""
        if message.author.bot or not message.guild or not isinstance(message.channel, discord.Thread):
            return
        if not self.registry.is_channel_managed(message.channel.parent_id):
            return
        await self.discord_handlers.handle_message(chat_message_from_discord(message))

    @commands.Cog.listener()
    async def on_raw_message_delete(self, payload: discord.RawMessageDeleteEvent) -> None:
        channel = self.bot.get_channel(payload.channel_id)
        parent_id = getattr(channel, "parent_id", None)
        if not self.registry.is_channel_managed(parent_id):
            return
        await self.discord_handlers.handle_message_delete(payload.channel_id, parent_id, payload.message_id)

    @commands.Cog.listener()
    async def on_guild_channel_update(self, before: discord.abc.GuildChannel, after: discord.abc.GuildChannel) -> None:
        if not isinstance(after, discord.ForumChannel) or not self.registry.is_channel_managed(after.id):
            return
        if getattr(before, "available_tags", None) != after.available_tags:
            await self.discord_handlers.handle_channel_update(after.id, forum_tags_from_discord(after))

    # ----------------------
    # Commands
    # ----------------------
    @commands.group(name="forumsync")
    @commands.admin_or_permissions(manage_guild=True)
    async def forumsync(self, ctx: commands.Context) -> None:
        """Configure GitHub <-> forum sync."""

    @forumsync.command(name="token")
    async def forumsync_token(self, ctx: commands.Context, token: str) -> None:
        """Set the GitHub token used for mappings without their own."""
        login = await self.github.validate_token(token)
        if login is None:
            await ctx.send("❌ Token validation failed.")
            return
        await self.config.github_token.set(token)
        self.provider.github_token = token
        await ctx.send(f"✅ GitHub token set (authenticated as `{login}`).")
        try:
            await ctx.message.delete()
        except (discord.Forbidden, discord.NotFound):
            pass

    @forumsync.command(name="category")
    async def forumsync_category(self, ctx: commands.Context, category: discord.CategoryChannel) -> None:
        """Set the category new forum channels are created in."""
        await self.config.forum_category_id.set(category.id)
        await ctx.send(f"✅ New forum channels will be created in **{category.name}**.")

    @forumsync.command(name="webhook")
    async def forumsync_webhook(self, ctx: commands.Context, port: Optional[int] = None, path: Optional[str] = None) -> None:
        """Show or change the webhook listener. Changing it restarts the server."""
        if port is None and path is None:
            settings = await self.config.all()
            running = "🟢 Running" if self._runner is not None else "🔴 Stopped"
            await ctx.send(
                f"Webhook server: {running} on `{settings['webhook_host']}:{settings['webhook_port']}"
                f"{settings['webhook_path']}`"
            )
            return
        if port is not None:
            if not 1 <= port <= 65535:
                await ctx.send("❌ Port must be between 1 and 65535.")
                return
            await self.config.webhook_port.set(port)
        if path is not None:
            await self.config.webhook_path.set(path if path.startswith("/") else f"/{path}")

        await self._stop_webhook_server()
        settings = await self.config.all()
        await self._start_webhook_server(settings)
        if self._runner is None:
            await ctx.send("❌ Webhook server could not start; check the logs.")
            return
        await ctx.send(f"✅ Webhook server restarted on port {settings['webhook_port']}{settings['webhook_path']}.")

    @forumsync.command(name="watch")
    async def forumsync_watch(self, ctx: commands.Context, owner: str, repo: str) -> None:
        """Start mirroring a repository into a new forum channel."""
        if not ctx.guild:
            await ctx.send("Run this in a guild.")
            return
        category_id = await self.config.forum_category_id()
        if not category_id:
            await ctx.send("❌ No forum category set. Use `forumsync category` first.")
            return

        async with ctx.typing():
            try:
                mapping, result = await self.manager.add_mapping(
                    owner, repo, guild_id=ctx.guild.id, category_id=category_id, created_by=ctx.author.id
                )
            except MappingError as e:
                await ctx.send(f"❌ {e}")
                return
            except (ForumSyncError, discord.HTTPException):
                self.log.exception("Failed to watch %s/%s", owner, repo)
                await ctx.send("❌ Failed to add the mapping; check the logs.")
                return

        embed = discord.Embed(title="✅ Now watching", color=discord.Color.green())
        embed.add_field(name="Repository", value=mapping.repo_key, inline=False)
        embed.add_field(name="Channel", value=f"<#{mapping.channel_id}>", inline=True)
        embed.add_field(name="Mapping ID", value=f"`{mapping.id}`", inline=True)
        if result is not None:
            embed.add_field(
                name="Initial sync",
                value=f"Synced {result.synced}/{result.total}, skipped {result.skipped}, errors {result.errors}",
                inline=False,
            )
        await ctx.send(embed=embed)

    @forumsync.command(name="unwatch")
    async def forumsync_unwatch(self, ctx: commands.Context, owner: str, repo: str, delete_channel: bool = False) -> None:
        """Stop mirroring a repository, optionally deleting its forum channel."""
        try:
            mapping = await self.manager.remove_mapping(owner, repo, delete_channel=delete_channel)
        except MappingError as e:
            await ctx.send(f"❌ {e}")
            return
        self.health.reset_mapping_health(mapping.id)
        note = " and deleted its channel" if delete_channel else ""
        await ctx.send(f"✅ Stopped watching {mapping.repo_key}{note}.")

    @forumsync.command(name="list")
    async def forumsync_list(self, ctx: commands.Context) -> None:
        """List watched repositories."""
        mappings = self.registry.all_mappings()
        if not mappings:
            await ctx.send("No repositories are being watched.")
            return
        embed = discord.Embed(title="Watched repositories", color=discord.Color.blurple())
        for mapping in mappings[:25]:
            store = self.registry.get_store(mapping.id)
            threads = len(store.threads) if store else 0
            secret = "🔒" if mapping.webhook_secret else "🔓"
            embed.add_field(
                name=f"{secret} {mapping.repo_key}",
                value=f"<#{mapping.channel_id}> · `{mapping.id}` · {threads} thread(s)",
                inline=False,
            )
        await ctx.send(embed=embed)

    @forumsync.command(name="health")
    async def forumsync_health(self, ctx: commands.Context, mapping_id: Optional[str] = None) -> None:
        """Show system health, or one mapping's health."""
        if mapping_id is not None:
            health = self.health.get_mapping_health(mapping_id)
            if health is None:
                await ctx.send(f"❌ Mapping not found: `{mapping_id}`")
                return
            embed = discord.Embed(title=f"{STATUS_EMOJI.get(health.status, '🔴')} {health.repository}")
            embed.add_field(name="Status", value=health.status, inline=True)
            embed.add_field(name="Circuit", value=health.circuit, inline=True)
            embed.add_field(name="Threads", value=str(health.thread_count), inline=True)
            embed.add_field(name="Errors", value=f"{health.error_count} total, {health.consecutive_errors} in a row", inline=True)
            embed.add_field(name="Rejected", value=str(health.rejected), inline=True)
            if health.last_activity:
                embed.add_field(name="Last activity", value=f"<t:{int(health.last_activity.timestamp())}:R>", inline=True)
            await ctx.send(embed=embed)
            return

        system = self.health.get_system_health()
        embed = discord.Embed(title=f"{STATUS_EMOJI.get(system.status, '🔴')} ForumSync: {system.status}")
        embed.add_field(name="Mappings", value=str(len(system.mappings)), inline=True)
        embed.add_field(name="Uptime", value=f"{int(system.uptime // 3600)}h {int(system.uptime % 3600 // 60)}m", inline=True)
        for health in system.mappings[:20]:
            embed.add_field(
                name=f"{STATUS_EMOJI.get(health.status, '🔴')} {health.repository}",
                value=f"`{health.mapping_id}` · circuit {health.circuit} · {health.consecutive_errors} error(s) in a row",
                inline=False,
            )
        await ctx.send(embed=embed)

    @forumsync.command(name="secret")
    async def forumsync_secret(self, ctx: commands.Context, mapping_id: str, secret: Optional[str] = None) -> None:
        """Set a mapping's webhook secret. Leave it out to disable signature checks."""
        try:
            await self.manager.set_webhook_secret(mapping_id, secret)
        except MappingError as e:
            await ctx.send(f"❌ {e}")
            return
        await ctx.send("✅ Webhook secret set." if secret else "✅ Webhook secret cleared.")
        if secret:
            try:
                await ctx.message.delete()
            except (discord.Forbidden, discord.NotFound):
                pass

    @forumsync.command(name="reset")
    async def forumsync_reset(self, ctx: commands.Context, mapping_id: str) -> None:
        """Reset a mapping's circuit breaker, error counters and health."""
        if self.registry.get_mapping(mapping_id) is None:
            await ctx.send(f"❌ Mapping not found: `{mapping_id}`")
            return
        self.health.reset_mapping_health(mapping_id)
        await ctx.tick()
