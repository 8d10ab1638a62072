"""
Discord -> GitHub handlers.

Called from the cog's listeners with platform-neutral models. Each GitHub
call goes through the mapping's breaker and retry loop; a final failure is
logged against the mapping and never escapes into discord.py's dispatcher.
"""
from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, List, Optional

from .context import ContextProvider, MappingContext
from .discord_client import DiscordGateway
from .errors import CircuitOpenError, CounterpartMissingError
from .github_client import GitHubClient
from .helpers import extract_discord_link, format_issue_body
from .models import ChatMessage, ChatThread, ForumTag, Thread
from .resilience import Resilience


class DiscordHandlers:
    def __init__(
        self,
        provider: ContextProvider,
        gateway: DiscordGateway,
        github: GitHubClient,
        resilience: Resilience,
        *,
        archive_debounce: float = 0.5,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.provider = provider
        self.gateway = gateway
        self.github = github
        self.resilience = resilience
        self.archive_debounce = archive_debounce
        self._sleep = sleep

    async def _run(self, ctx: MappingContext, operation: str, fn: Callable[[], Awaitable[Any]]) -> Any:
        return await self.resilience.run(ctx, operation, fn)

    # ----------------------
    # Startup
    # ----------------------
    async def handle_ready(self) -> None:
        """Rebuild every mapping's store from GitHub."""
        for ctx in self.provider.all_contexts():
            try:
                await self.bootstrap_mapping(ctx)
            except Exception:
                ctx.logger.exception("Failed to initialize mapping")
                ctx.store.increment_sync_errors()

    async def bootstrap_mapping(self, ctx: MappingContext) -> int:
        store = ctx.store
        creds = ctx.repo_credentials
        try:
            store.available_tags = await self._run(
                ctx, "fetch_available_tags", lambda: self.gateway.fetch_available_tags(ctx.mapping.channel_id)
            )
        except CounterpartMissingError:
            ctx.logger.warning("Forum channel %s not found", ctx.mapping.channel_id)

        issues = await self._run(ctx, "list_issues", lambda: self.github.list_issues(creds))
        for issue in issues:
            if issue.is_pull_request:
                continue
            thread_id, _ = extract_discord_link(issue.body)
            if thread_id is None:
                continue
            store.add_thread(
                Thread(
                    id=thread_id,
                    title=issue.title,
                    body=issue.body,
                    number=issue.number,
                    node_id=issue.node_id,
                    applied_tag_ids=store.tag_ids_for_labels(issue.labels),
                    locked=issue.locked,
                    archived=issue.state == "closed",
                )
            )

        comments = await self._run(ctx, "list_comments", lambda: self.github.list_comments(creds))
        for comment in comments:
            thread_id, message_id = extract_discord_link(comment.body)
            if thread_id is None or message_id is None:
                continue
            thread = store.get_thread(thread_id)
            if thread is not None and thread.number == comment.issue_number:
                store.add_comment(thread_id, message_id, comment.id)

        ctx.logger.info("Loaded %d issue(s)", len(store.threads))
        return len(store.threads)

    async def handle_channel_update(self, channel_id: int, tags: List[ForumTag]) -> None:
        ctx = self.provider.from_channel(channel_id)
        if ctx is None:
            return
        ctx.store.available_tags = list(tags)
        ctx.logger.info("Forum tags updated")

    # ----------------------
    # Threads
    # ----------------------
    async def handle_thread_create(self, thread: ChatThread) -> None:
        ctx = self.provider.from_channel(thread.parent_id)
        if ctx is None:
            return
        row = Thread(id=thread.id, title=thread.name, applied_tag_ids=list(thread.applied_tag_ids))
        if ctx.store.add_thread(row):
            ctx.logger.info("Thread created: %s", thread.name)
        else:
            ctx.logger.debug("Thread %s is already tracked", thread.id)

    async def handle_thread_update(self, thread: ChatThread) -> None:
        ctx = self.provider.from_channel(thread.parent_id)
        if ctx is None:
            return
        row = ctx.store.get_thread(thread.id)
        if row is None:
            return

        if ctx.store.consume_echo(row, archived=thread.archived, locked=thread.locked) is not None:
            ctx.logger.debug("Ignoring update caused by GitHub sync on thread %s", thread.id)
            row.archived = thread.archived
            row.locked = thread.locked
            return

        row.applied_tag_ids = list(thread.applied_tag_ids)
        try:
            if row.locked != thread.locked and not row.lock_locking:
                if row.archived and not thread.archived:
                    # Locking reopened the thread; the re-archive that follows is part of it
                    row.lock_archiving = True
                row.locked = thread.locked
                await self._mirror_lock(ctx, row, thread.locked)

            if row.lock_archiving:
                if thread.archived:
                    row.lock_archiving = False
                return
            if row.archived != thread.archived:
                await self._sleep(self.archive_debounce)
                if row.lock_archiving or row.archived == thread.archived:
                    return
                row.archived = thread.archived
                await self._mirror_archive(ctx, row, thread.archived)
        except CircuitOpenError:
            ctx.logger.warning("Skipped mirroring state of thread %s: circuit open", thread.id)
        except Exception:
            ctx.logger.exception("Failed to mirror state of thread %s", thread.id)
            ctx.store.increment_sync_errors()

    async def _mirror_lock(self, ctx: MappingContext, row: Thread, locked: bool) -> None:
        if row.number is None:
            return
        creds = ctx.repo_credentials
        if locked:
            await self._run(ctx, "lock_issue", lambda: self.github.lock_issue(creds, row.number))
        else:
            await self._run(ctx, "unlock_issue", lambda: self.github.unlock_issue(creds, row.number))
        ctx.logger.info("%s issue #%d", "Locked" if locked else "Unlocked", row.number)

    async def _mirror_archive(self, ctx: MappingContext, row: Thread, archived: bool) -> None:
        if row.number is None:
            return
        state = "closed" if archived else "open"
        await self._run(
            ctx, "update_issue", lambda: self.github.update_issue(ctx.repo_credentials, row.number, state=state)
        )
        ctx.logger.info("%s issue #%d", "Closed" if archived else "Reopened", row.number)

    async def handle_thread_delete(self, thread_id: int, parent_id: Optional[int]) -> None:
        ctx = self.provider.from_channel(parent_id)
        if ctx is None:
            return
        row = ctx.store.delete_thread(thread_id)
        if row is None or row.node_id is None:
            return
        try:
            await self._run(
                ctx, "delete_issue", lambda: self.github.delete_issue(ctx.repo_credentials, row.node_id)
            )
            ctx.logger.info("Deleted issue #%s", row.number)
        except CounterpartMissingError:
            ctx.logger.info("Issue #%s was already gone", row.number)
        except Exception:
            ctx.logger.exception("Failed to delete issue #%s", row.number)
            ctx.store.increment_sync_errors()

    # ----------------------
    # Messages
    # ----------------------
    async def handle_message(self, message: ChatMessage) -> None:
        if message.author_is_bot or message.webhook_id is not None:
            return
        ctx = self.provider.from_channel(message.parent_id)
        if ctx is None:
            return
        row = ctx.store.get_thread(message.channel_id)
        if row is None:
            return

        try:
            if row.linked:
                await self._create_comment(ctx, row, message)
            elif row.body is None:
                await self._create_issue(ctx, row, message)
            else:
                ctx.logger.warning("Issue for thread %s is still being created; message %s not mirrored",
                                   row.id, message.id)
        except CircuitOpenError:
            ctx.logger.warning("Message %s not mirrored: circuit open", message.id)
        except Exception:
            ctx.logger.exception("Failed to mirror message %s", message.id)
            ctx.store.increment_sync_errors()

    async def _create_issue(self, ctx: MappingContext, row: Thread, message: ChatMessage) -> None:
        body = format_issue_body(message)
        # Claims the row; a second message arriving meanwhile is not turned into another issue
        row.body = body
        labels = ctx.store.labels_for_tag_ids(row.applied_tag_ids) if ctx.mapping.sync_labels else []
        try:
            issue = await self._run(
                ctx, "create_issue", lambda: self.github.create_issue(ctx.repo_credentials, row.title, body, labels)
            )
        except Exception:
            row.body = None
            raise
        ctx.store.update_thread(row.id, number=issue.number, node_id=issue.node_id, body=issue.body)
        ctx.logger.info("Created issue #%d: %s", issue.number, row.title)

    async def _create_comment(self, ctx: MappingContext, row: Thread, message: ChatMessage) -> None:
        body = format_issue_body(message)
        comment = await self._run(
            ctx, "create_comment", lambda: self.github.create_comment(ctx.repo_credentials, row.number, body)
        )
        ctx.store.add_comment(row.id, message.id, comment.id)
        ctx.logger.debug("Created comment %s on issue #%d", comment.id, row.number)

    async def handle_message_delete(self, thread_id: int, parent_id: Optional[int], message_id: int) -> None:
        ctx = self.provider.from_channel(parent_id)
        if ctx is None:
            return
        if ctx.store.consume_message_delete(message_id):
            ctx.logger.debug("Ignoring delete of message %s caused by GitHub sync", message_id)
            return
        row = ctx.store.get_thread(thread_id)
        if row is None:
            return
        comment = ctx.store.remove_comment_by_message(thread_id, message_id)
        if comment is None or row.number is None:
            return
        try:
            await self._run(
                ctx,
                "delete_comment",
                lambda: self.github.delete_comment(ctx.repo_credentials, row.number, comment.git_id),
            )
            ctx.logger.debug("Deleted comment %s", comment.git_id)
        except CounterpartMissingError:
            ctx.logger.info("Comment %s was already gone", comment.git_id)
        except Exception:
            ctx.logger.exception("Failed to delete comment %s", comment.git_id)
            ctx.store.increment_sync_errors()
