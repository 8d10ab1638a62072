"""
Adding and removing mappings at runtime.
"""
from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Optional, Tuple

from .context import ContextProvider
from .discord_client import DiscordGateway
from .errors import CounterpartMissingError, MappingError
from .github_client import GitHubClient
from .github_handlers import GitHubHandlers
from .models import Mapping, RepoCredentials, RepositoryRef, SyncResult
from .persistence import ConfigPersistence
from .registry import MappingRegistry

log = logging.getLogger("red.forum_sync.mappings")


class MappingManager:
    def __init__(
        self,
        registry: MappingRegistry,
        provider: ContextProvider,
        persistence: ConfigPersistence,
        gateway: DiscordGateway,
        github: GitHubClient,
        github_handlers: GitHubHandlers,
    ) -> None:
        self.registry = registry
        self.provider = provider
        self.persistence = persistence
        self.gateway = gateway
        self.github = github
        self.github_handlers = github_handlers
        self._add_lock = asyncio.Lock()

    async def add_mapping(
        self,
        owner: str,
        repo: str,
        *,
        guild_id: int,
        category_id: Optional[int] = None,
        created_by: Optional[int] = None,
        sync: bool = True,
    ) -> Tuple[Mapping, Optional[SyncResult]]:
        """
        Watch ``owner/repo``: create its forum channel, register and persist the
        mapping, then optionally mirror the repository's open issues.
        """
        async with self._add_lock:
            mapping = await self._create_mapping(owner, repo, guild_id, category_id, created_by)

        result = None
        if sync:
            result = await self.sync_existing_issues(mapping)
            mapping = await self.persistence.update_mapping(mapping.id, {"auto_synced": True})
            self.registry.update_mapping(mapping)
        return mapping, result

    async def _create_mapping(
        self,
        owner: str,
        repo: str,
        guild_id: int,
        category_id: Optional[int],
        created_by: Optional[int],
    ) -> Mapping:
        if self.registry.get_mapping_by_repo(owner, repo) is not None:
            raise MappingError(f"Already watching {owner}/{repo}")
        credentials = RepoCredentials(owner=owner, repo=repo, token=self.provider.github_token)
        if not await self.github.repository_exists(credentials):
            raise MappingError(f"Repository {owner}/{repo} not found or inaccessible")

        channel_id = await self.gateway.create_forum_channel(
            guild_id,
            f"{owner}-{repo}"[:100],
            category_id=category_id,
            topic=f"GitHub Issues for {owner}/{repo}",
        )
        mapping = Mapping(
            id=f"{owner}-{repo}-{int(time.time() * 1000)}",
            channel_id=channel_id,
            repository=RepositoryRef(owner=owner, name=repo),
            enabled=True,
            created_at=datetime.now(timezone.utc).isoformat(),
            created_by=created_by,
        )
        try:
            await self.persistence.add_mapping(mapping)
        except Exception:
            await self._discard_channel(channel_id)
            raise
        self.registry.add_mapping(mapping)
        log.info("Added mapping %s: %s <-> channel %s", mapping.id, mapping.repo_key, channel_id)
        return mapping

    async def _discard_channel(self, channel_id: int) -> None:
        """Delete a forum channel created for a mapping that was never saved."""
        try:
            await self.gateway.delete_channel(channel_id)
            log.info("Deleted unused forum channel %s", channel_id)
        except Exception:
            log.exception("Failed to delete unused forum channel %s", channel_id)

    async def remove_mapping(self, owner: str, repo: str, *, delete_channel: bool = False) -> Mapping:
        mapping = self.registry.get_mapping_by_repo(owner, repo)
        if mapping is None:
            raise MappingError(f"Not watching {owner}/{repo}")

        if delete_channel:
            try:
                await self.gateway.delete_channel(mapping.channel_id)
                log.info("Deleted forum channel %s", mapping.channel_id)
            except CounterpartMissingError:
                log.info("Forum channel %s was already gone", mapping.channel_id)
            except Exception:
                # Removing the mapping still goes ahead
                log.exception("Failed to delete forum channel %s", mapping.channel_id)

        self.registry.remove_mapping(mapping.id)
        await self.persistence.remove_mapping(mapping.id)
        log.info("Removed mapping %s (%s)", mapping.id, mapping.repo_key)
        return mapping

    async def set_webhook_secret(self, mapping_id: str, secret: Optional[str]) -> Mapping:
        if self.registry.get_mapping(mapping_id) is None:
            raise MappingError(f"Mapping not found: {mapping_id}")
        mapping = await self.persistence.update_mapping(mapping_id, {"webhook_secret": secret})
        self.registry.update_mapping(mapping)
        return mapping

    async def sync_existing_issues(self, mapping: Mapping) -> SyncResult:
        """Create threads for open issues that have none yet. Pull requests are skipped."""
        result = SyncResult()
        ctx = self.provider.from_mapping(mapping)
        if ctx is None:
            raise MappingError(f"Store not found for mapping: {mapping.id}")

        try:
            ctx.store.available_tags = await self.gateway.fetch_available_tags(mapping.channel_id)
        except CounterpartMissingError:
            ctx.logger.warning("Forum channel %s not found", mapping.channel_id)

        issues = await self.github.list_issues(ctx.repo_credentials, state="open")
        result.total = len(issues)
        ctx.logger.info("Found %d open issue(s) to sync", len(issues))

        for issue in issues:
            if issue.is_pull_request:
                result.skipped += 1
                continue
            try:
                created = await self.github_handlers.create_thread_for_issue(ctx, issue)
            except Exception:
                ctx.logger.exception("Failed to sync issue #%d", issue.number)
                result.errors += 1
                continue
            if created:
                result.synced += 1
                if result.synced % 10 == 0:
                    ctx.logger.info("Synced %d/%d issues", result.synced, result.total)
            else:
                result.skipped += 1

        ctx.logger.info(
            "Initial sync done: %d synced, %d skipped, %d error(s)", result.synced, result.skipped, result.errors
        )
        return result
