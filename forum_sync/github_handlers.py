"""
GitHub -> Discord handlers.

Every handler runs inside the router's retry loop, so each one checks the
store before acting and can be replayed without duplicating work.
"""
from __future__ import annotations

from typing import Any, Dict, List, Tuple

from .context import MappingContext
from .discord_client import DiscordGateway
from .errors import CorrelationMissError, CounterpartMissingError
from .github_client import issue_ref_from_payload
from .helpers import extract_discord_link, format_thread_starter, has_bot_marker
from .models import IssueRef, Thread
from .resilience import Resilience
from .webhook import EventKind, WebhookAction, WebhookRouter

# (archived, locked) states the thread passes through
State = Tuple[bool, bool]


class GitHubHandlers:
    def __init__(self, gateway: DiscordGateway, resilience: Resilience, *, echo_ttl: float = 10.0) -> None:
        self.gateway = gateway
        self.resilience = resilience
        self.echo_ttl = echo_ttl

    def register(self, router: WebhookRouter) -> None:
        issues = EventKind.ISSUES
        comments = EventKind.ISSUE_COMMENT
        router.register(issues, WebhookAction.OPENED, self.on_issue_opened)
        router.register(issues, WebhookAction.EDITED, self.on_issue_edited)
        router.register(issues, WebhookAction.CLOSED, self.on_issue_closed)
        router.register(issues, WebhookAction.REOPENED, self.on_issue_reopened)
        router.register(issues, WebhookAction.LOCKED, self.on_issue_locked)
        router.register(issues, WebhookAction.UNLOCKED, self.on_issue_unlocked)
        router.register(issues, WebhookAction.DELETED, self.on_issue_deleted)
        router.register(issues, WebhookAction.LABELED, self.on_issue_labels_changed)
        router.register(issues, WebhookAction.UNLABELED, self.on_issue_labels_changed)
        router.register(comments, WebhookAction.CREATED, self.on_comment_created)
        router.register(comments, WebhookAction.EDITED, self.on_comment_edited)
        router.register(comments, WebhookAction.DELETED, self.on_comment_deleted)
        router.register(EventKind.PING, WebhookAction.PING, self.on_ping)

    async def _call(self, ctx: MappingContext, operation: str, fn) -> Any:
        return await self.resilience.guard(ctx, operation, fn)

    @staticmethod
    def _require_thread(ctx: MappingContext, issue: IssueRef) -> Thread:
        thread = ctx.store.find_issue_thread(issue.number, issue.node_id)
        if thread is None:
            raise CorrelationMissError(f"No thread for issue #{issue.number}")
        return thread

    # ----------------------
    # Issues
    # ----------------------
    async def on_issue_opened(self, ctx: MappingContext, payload: Dict[str, Any]) -> None:
        await self.create_thread_for_issue(ctx, issue_ref_from_payload(payload["issue"]))

    async def create_thread_for_issue(self, ctx: MappingContext, issue: IssueRef) -> bool:
        """
        Open a forum thread for ``issue`` unless one exists or is being made.

        Returns True when a thread was created.
        """
        store = ctx.store

        if store.find_issue_thread(issue.number, issue.node_id) is not None:
            ctx.logger.debug("Issue #%d already has a thread", issue.number)
            return False

        thread_id, _ = extract_discord_link(issue.body)
        if thread_id is not None and store.get_thread(thread_id) is not None:
            # Opened from Discord; the webhook can beat the create call's response
            store.update_thread(thread_id, number=issue.number, node_id=issue.node_id, body=issue.body)
            ctx.logger.debug("Linked thread %s to issue #%d from webhook", thread_id, issue.number)
            return False
        if has_bot_marker(issue.body):
            ctx.logger.debug("Issue #%d was mirrored from Discord, skipping", issue.number)
            return False

        if not store.claim_issue(issue.number):
            ctx.logger.debug("Thread for issue #%d is already being created", issue.number)
            return False
        try:
            tag_ids = store.tag_ids_for_labels(issue.labels) if ctx.mapping.sync_labels else []
            content = format_thread_starter(issue.body, issue.author or "unknown", issue.html_url)
            chat = await self._call(
                ctx,
                "create_thread",
                lambda: self.gateway.create_thread(ctx.mapping.channel_id, issue.title, content, tag_ids),
            )
            row = Thread(
                id=chat.id,
                title=issue.title,
                body=issue.body,
                number=issue.number,
                node_id=issue.node_id,
                applied_tag_ids=list(chat.applied_tag_ids),
                locked=issue.locked,
            )
            if not store.add_thread(row):
                # The thread_create listener got there first
                store.update_thread(chat.id, number=issue.number, node_id=issue.node_id, body=issue.body)
            ctx.logger.info("Created thread %s for issue #%d: %s", chat.id, issue.number, issue.title)
        finally:
            store.release_issue(issue.number)
        return True

    async def on_issue_closed(self, ctx: MappingContext, payload: Dict[str, Any]) -> None:
        thread = self._require_thread(ctx, issue_ref_from_payload(payload["issue"]))
        await self._set_archived(ctx, thread, True)

    async def on_issue_reopened(self, ctx: MappingContext, payload: Dict[str, Any]) -> None:
        thread = self._require_thread(ctx, issue_ref_from_payload(payload["issue"]))
        await self._set_archived(ctx, thread, False)

    async def on_issue_locked(self, ctx: MappingContext, payload: Dict[str, Any]) -> None:
        thread = self._require_thread(ctx, issue_ref_from_payload(payload["issue"]))
        await self._set_locked(ctx, thread, True)

    async def on_issue_unlocked(self, ctx: MappingContext, payload: Dict[str, Any]) -> None:
        thread = self._require_thread(ctx, issue_ref_from_payload(payload["issue"]))
        await self._set_locked(ctx, thread, False)

    async def on_issue_deleted(self, ctx: MappingContext, payload: Dict[str, Any]) -> None:
        thread = self._require_thread(ctx, issue_ref_from_payload(payload["issue"]))
        # Drop the row first so the thread_delete event finds nothing to mirror back
        ctx.store.delete_thread(thread.id)
        try:
            await self._call(ctx, "delete_thread", lambda: self.gateway.delete_thread(thread.id))
        except CounterpartMissingError:
            ctx.logger.info("Thread %s was already gone", thread.id)
        except Exception:
            ctx.store.add_thread(thread)
            raise
        ctx.logger.info("Deleted thread %s for issue #%s", thread.id, thread.number)

    async def on_issue_edited(self, ctx: MappingContext, payload: Dict[str, Any]) -> None:
        issue = issue_ref_from_payload(payload["issue"])
        thread = self._require_thread(ctx, issue)

        closed = issue.state == "closed"
        if issue.title and issue.title != thread.title:
            await self._rename(ctx, thread, issue.title, keep_archived=closed)
            ctx.logger.info("Renamed thread %s to %r", thread.id, issue.title)
        ctx.store.update_thread(thread.id, title=issue.title, body=issue.body)

        if closed != thread.archived:
            await self._set_archived(ctx, thread, closed)

    async def on_issue_labels_changed(self, ctx: MappingContext, payload: Dict[str, Any]) -> None:
        if not ctx.mapping.sync_labels:
            return
        issue = issue_ref_from_payload(payload["issue"])
        thread = self._require_thread(ctx, issue)
        tag_ids = ctx.store.tag_ids_for_labels(issue.labels)
        if sorted(tag_ids) == sorted(thread.applied_tag_ids):
            return
        try:
            await self._call(ctx, "set_tags", lambda: self.gateway.set_tags(thread.id, tag_ids))
        except Exception as e:
            # Labels are cosmetic; a failure here must not fail the delivery
            ctx.logger.warning("Could not update tags on thread %s: %s", thread.id, e)
            return
        ctx.store.update_thread(thread.id, applied_tag_ids=tag_ids)

    async def on_ping(self, ctx: MappingContext, payload: Dict[str, Any]) -> None:
        ctx.logger.info("Received ping from GitHub: %s", payload.get("zen", ""))

    # ----------------------
    # Comments
    # ----------------------
    async def on_comment_created(self, ctx: MappingContext, payload: Dict[str, Any]) -> None:
        comment = payload["comment"]
        if has_bot_marker(comment.get("body")):
            ctx.logger.debug("Skipping mirrored comment %s", comment.get("id"))
            return
        thread = self._require_thread(ctx, issue_ref_from_payload(payload["issue"]))
        git_id = int(comment["id"])
        if thread.find_comment_by_git_id(git_id) is not None:
            return

        if thread.archived and not thread.locked:
            # Posting reopens an archived thread
            ctx.store.expect_echo(thread, archived=False, locked=thread.locked, ttl=self.echo_ttl)
        message_id = await self._relay(ctx, thread, comment)
        ctx.store.add_comment(thread.id, message_id, git_id)
        ctx.logger.debug("Relayed comment %s to message %s", git_id, message_id)

    async def on_comment_edited(self, ctx: MappingContext, payload: Dict[str, Any]) -> None:
        comment = payload["comment"]
        if has_bot_marker(comment.get("body")):
            return
        thread = self._require_thread(ctx, issue_ref_from_payload(payload["issue"]))
        git_id = int(comment["id"])
        existing = thread.find_comment_by_git_id(git_id)
        if existing is None:
            raise CorrelationMissError(f"No message for comment {git_id}")

        # The row still points at the old message, so its delete event must not reach GitHub.
        # A failed delete raises here and leaves the correlation as it was.
        ctx.store.expect_message_delete(existing.id)
        try:
            await self._call(
                ctx, "delete_message", lambda: self.gateway.delete_message(thread.id, existing.id)
            )
        except CounterpartMissingError:
            ctx.store.discard_message_delete(existing.id)
            ctx.logger.debug("Message %s was already gone", existing.id)
        except Exception:
            ctx.store.discard_message_delete(existing.id)
            raise

        try:
            message_id = await self._relay(ctx, thread, comment)
        except Exception:
            ctx.store.remove_comment_mapping(thread.id, git_id)
            ctx.logger.warning("Dropped correlation for comment %s: recreate failed after delete", git_id)
            raise
        ctx.store.update_comment_mapping(thread.id, git_id, message_id)

    async def on_comment_deleted(self, ctx: MappingContext, payload: Dict[str, Any]) -> None:
        thread = self._require_thread(ctx, issue_ref_from_payload(payload["issue"]))
        git_id = int(payload["comment"]["id"])
        comment = ctx.store.remove_comment_mapping(thread.id, git_id)
        if comment is None:
            raise CorrelationMissError(f"No message for comment {git_id}")
        try:
            await self._call(ctx, "delete_message", lambda: self.gateway.delete_message(thread.id, comment.id))
        except CounterpartMissingError:
            ctx.logger.debug("Message %s was already gone", comment.id)
        except Exception:
            ctx.store.add_comment(thread.id, comment.id, git_id)
            raise
        ctx.logger.debug("Deleted message %s for comment %s", comment.id, git_id)

    async def _relay(self, ctx: MappingContext, thread: Thread, comment: Dict[str, Any]) -> int:
        user = comment.get("user") or {}
        return await self._call(
            ctx,
            "post_message",
            lambda: self.gateway.post_message(
                thread.id,
                comment.get("body") or "",
                username=user.get("login", "GitHub"),
                avatar_url=user.get("avatar_url"),
            ),
        )

    # ----------------------
    # Thread state
    # ----------------------
    async def _set_archived(self, ctx: MappingContext, thread: Thread, archived: bool) -> None:
        current = await self._call(ctx, "get_thread_state", lambda: self.gateway.get_thread_state(thread.id))
        if current.archived == archived:
            ctx.store.update_thread(thread.id, archived=archived)
            return
        await self._apply_states(ctx, thread, (current.archived, current.locked), [(archived, current.locked)])
        ctx.store.update_thread(thread.id, archived=archived)
        ctx.logger.info("%s thread %s", "Archived" if archived else "Unarchived", thread.id)

    async def _rename(self, ctx: MappingContext, thread: Thread, name: str, *, keep_archived: bool) -> None:
        current = await self._call(ctx, "get_thread_state", lambda: self.gateway.get_thread_state(thread.id))
        if not current.archived:
            await self._call(ctx, "rename_thread", lambda: self.gateway.rename_thread(thread.id, name))
            return

        # An archived thread can only be renamed by unarchiving it in the same edit
        seq = ctx.store.expect_echo(thread, archived=False, locked=current.locked, ttl=self.echo_ttl)
        try:
            await self._call(
                ctx, "rename_thread", lambda: self.gateway.rename_thread(thread.id, name, unarchive=True)
            )
        except Exception:
            ctx.store.discard_echo(thread, seq)
            raise
        if keep_archived:
            await self._apply_states(ctx, thread, (False, current.locked), [(True, current.locked)])
        else:
            ctx.store.update_thread(thread.id, archived=False)

    async def _set_locked(self, ctx: MappingContext, thread: Thread, locked: bool) -> None:
        current = await self._call(ctx, "get_thread_state", lambda: self.gateway.get_thread_state(thread.id))
        if current.locked == locked:
            ctx.store.update_thread(thread.id, locked=locked)
            return

        if current.archived:
            # An archived thread has to be reopened to change its lock
            steps: List[State] = [(False, current.locked), (False, locked), (True, locked)]
            thread.lock_archiving = True
            thread.lock_locking = True
        else:
            steps = [(False, locked)]
        try:
            await self._apply_states(ctx, thread, (current.archived, current.locked), steps)
        finally:
            thread.lock_archiving = False
            thread.lock_locking = False
        ctx.store.update_thread(thread.id, locked=locked)
        ctx.logger.info("%s thread %s", "Locked" if locked else "Unlocked", thread.id)

    async def _apply_states(self, ctx: MappingContext, thread: Thread, start: State, steps: List[State]) -> None:
        """
        Walk the thread from ``start`` through ``steps``, one field per step.

        Each step is registered as an expected echo before the call so the
        resulting thread_update is not mirrored back to GitHub.
        """
        state = start
        for target_archived, target_locked in steps:
            seq = ctx.store.expect_echo(thread, archived=target_archived, locked=target_locked, ttl=self.echo_ttl)
            try:
                if target_archived != state[0]:
                    await self._call(
                        ctx, "set_archived", lambda: self.gateway.set_archived(thread.id, target_archived)
                    )
                elif target_locked != state[1]:
                    await self._call(ctx, "set_locked", lambda: self.gateway.set_locked(thread.id, target_locked))
            except Exception:
                ctx.store.discard_echo(thread, seq)
                raise
            state = (target_archived, target_locked)
