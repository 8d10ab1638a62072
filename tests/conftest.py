"""Shared fakes and fixtures for the forum sync tests.

The fakes stand in for the two platform boundaries (DiscordGateway and
GitHubClient). They keep just enough state to let tests assert on what the
handlers did, and can be told to fail a named operation via ``fail``.
"""

from __future__ import annotations

import asyncio
import itertools
import json
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import pytest

from forum_sync.context import ContextProvider, MappingContext
from forum_sync.discord_handlers import DiscordHandlers
from forum_sync.errors import CounterpartMissingError
from forum_sync.github_handlers import GitHubHandlers
from forum_sync.health import HealthMonitor
from forum_sync.models import (
    ChatMessage,
    ChatThread,
    ForumTag,
    IssueCommentRef,
    IssueRef,
    Mapping,
    MappingOptions,
    RepositoryRef,
)
from forum_sync.registry import MappingRegistry
from forum_sync.resilience import CircuitBreaker, ErrorHandler, Resilience, RetryOptions
from forum_sync.webhook import WebhookRouter

ALPHA_CHANNEL = 111
BETA_CHANNEL = 222
GUILD_ID = 999


async def no_sleep(_delay: float) -> None:
    await asyncio.sleep(0)


def make_mapping(
    mapping_id: str = "m1",
    channel_id: int = ALPHA_CHANNEL,
    owner: str = "octo",
    name: str = "alpha",
    *,
    enabled: bool = True,
    webhook_secret: Optional[str] = None,
    sync_labels: bool = True,
) -> Mapping:
    return Mapping(
        id=mapping_id,
        channel_id=channel_id,
        repository=RepositoryRef(owner=owner, name=name),
        enabled=enabled,
        webhook_secret=webhook_secret,
        options=None if sync_labels else MappingOptions(sync_labels=False),
    )


# ---------------------------------------------------------------------------
# Fake Discord gateway
# ---------------------------------------------------------------------------


@dataclass
class FakeThread:
    id: int
    parent_id: int
    name: str
    content: str = ""
    archived: bool = False
    locked: bool = False
    tag_ids: Optional[List[int]] = None

    def as_chat(self) -> ChatThread:
        return ChatThread(
            id=self.id,
            parent_id=self.parent_id,
            name=self.name,
            archived=self.archived,
            locked=self.locked,
            applied_tag_ids=list(self.tag_ids or []),
        )


class FakeGateway:
    def __init__(self) -> None:
        self.threads: Dict[int, FakeThread] = {}
        self.messages: Dict[int, Tuple[int, str, Optional[str]]] = {}
        self.deleted_messages: List[int] = []
        self.deleted_threads: List[int] = []
        self.state_changes: List[Tuple[int, str, bool]] = []
        self.tags: Dict[int, List[ForumTag]] = {}
        self.channels: List[int] = []
        self.fail: Dict[str, Exception] = {}
        self.calls: List[str] = []
        self._ids = itertools.count(5000)

    def _check(self, operation: str) -> None:
        self.calls.append(operation)
        error = self.fail.get(operation)
        if error is not None:
            raise error

    def _get(self, thread_id: int) -> FakeThread:
        thread = self.threads.get(thread_id)
        if thread is None:
            raise CounterpartMissingError(f"Thread {thread_id} not found")
        return thread

    def add_thread(self, thread_id: int, parent_id: int, name: str = "thread", **state: Any) -> FakeThread:
        thread = self.threads[thread_id] = FakeThread(id=thread_id, parent_id=parent_id, name=name, **state)
        return thread

    async def create_thread(self, forum_id: int, name: str, content: str, tag_ids: List[int]) -> ChatThread:
        self._check("create_thread")
        thread = self.add_thread(next(self._ids), forum_id, name, content=content, tag_ids=list(tag_ids))
        return thread.as_chat()

    async def get_thread_state(self, thread_id: int) -> ChatThread:
        self._check("get_thread_state")
        return self._get(thread_id).as_chat()

    async def set_archived(self, thread_id: int, archived: bool) -> None:
        self._check("set_archived")
        self._get(thread_id).archived = archived
        self.state_changes.append((thread_id, "archived", archived))

    async def set_locked(self, thread_id: int, locked: bool) -> None:
        self._check("set_locked")
        self._get(thread_id).locked = locked
        self.state_changes.append((thread_id, "locked", locked))

    async def rename_thread(self, thread_id: int, name: str, *, unarchive: bool = False) -> None:
        self._check("rename_thread")
        thread = self._get(thread_id)
        if thread.archived and not unarchive:
            raise RuntimeError("Cannot edit an archived thread")
        thread.name = name
        if thread.archived:
            thread.archived = False
            self.state_changes.append((thread_id, "archived", False))

    async def set_tags(self, thread_id: int, tag_ids: List[int]) -> None:
        self._check("set_tags")
        self._get(thread_id).tag_ids = list(tag_ids)

    async def delete_thread(self, thread_id: int) -> None:
        self._check("delete_thread")
        self._get(thread_id)
        del self.threads[thread_id]
        self.deleted_threads.append(thread_id)

    async def fetch_available_tags(self, forum_id: int) -> List[ForumTag]:
        self._check("fetch_available_tags")
        return list(self.tags.get(forum_id, []))

    async def post_message(
        self, thread_id: int, content: str, *, username: Optional[str] = None, avatar_url: Optional[str] = None
    ) -> int:
        self._check("post_message")
        self._get(thread_id)
        message_id = next(self._ids)
        self.messages[message_id] = (thread_id, content, username)
        return message_id

    async def delete_message(self, thread_id: int, message_id: int) -> None:
        self._check("delete_message")
        if message_id not in self.messages:
            raise CounterpartMissingError(f"Message {message_id} not found")
        del self.messages[message_id]
        self.deleted_messages.append(message_id)

    async def create_forum_channel(
        self, guild_id: int, name: str, *, category_id: Optional[int] = None, topic: Optional[str] = None
    ) -> int:
        self._check("create_forum_channel")
        channel_id = next(self._ids)
        self.channels.append(channel_id)
        return channel_id

    async def delete_channel(self, channel_id: int) -> None:
        self._check("delete_channel")
        self.channels.remove(channel_id)


# ---------------------------------------------------------------------------
# Fake GitHub client
# ---------------------------------------------------------------------------


class FakeGitHub:
    def __init__(self) -> None:
        self.issues: Dict[int, IssueRef] = {}
        self.comments: Dict[int, IssueCommentRef] = {}
        self.locked: Dict[int, bool] = {}
        self.deleted_issues: List[str] = []
        self.deleted_comments: List[int] = []
        self.updates: List[Tuple[int, Dict[str, Any]]] = []
        self.missing_repos: List[str] = []
        self.fail: Dict[str, Exception] = {}
        self.calls: List[str] = []
        self._numbers = itertools.count(1)
        self._comment_ids = itertools.count(9000)

    def _check(self, operation: str) -> None:
        self.calls.append(operation)
        error = self.fail.get(operation)
        if error is not None:
            raise error

    async def create_issue(self, credentials, title: str, body: str, labels: Optional[List[str]] = None) -> IssueRef:
        self._check("create_issue")
        number = next(self._numbers)
        issue = self.issues[number] = IssueRef(
            number=number, node_id=f"I_{number}", title=title, body=body, labels=list(labels or [])
        )
        return issue

    async def update_issue(self, credentials, number: int, **changes: Any) -> None:
        self._check("update_issue")
        self.updates.append((number, {k: v for k, v in changes.items() if v is not None}))

    async def lock_issue(self, credentials, number: int) -> None:
        self._check("lock_issue")
        self.locked[number] = True

    async def unlock_issue(self, credentials, number: int) -> None:
        self._check("unlock_issue")
        self.locked[number] = False

    async def delete_issue(self, credentials, node_id: str) -> None:
        self._check("delete_issue")
        self.deleted_issues.append(node_id)

    async def list_issues(self, credentials, state: str = "all") -> List[IssueRef]:
        self._check("list_issues")
        return [i for i in self.issues.values() if state == "all" or i.state == state]

    async def create_comment(self, credentials, number: int, body: str) -> IssueCommentRef:
        self._check("create_comment")
        comment = IssueCommentRef(id=next(self._comment_ids), issue_number=number, body=body)
        self.comments[comment.id] = comment
        return comment

    async def delete_comment(self, credentials, number: int, comment_id: int) -> None:
        self._check("delete_comment")
        if self.comments.pop(comment_id, None) is None:
            raise CounterpartMissingError(f"Comment {comment_id} not found")
        self.deleted_comments.append(comment_id)

    async def list_comments(self, credentials) -> List[IssueCommentRef]:
        self._check("list_comments")
        return list(self.comments.values())

    async def repository_exists(self, credentials) -> bool:
        self._check("repository_exists")
        return credentials.full_name not in self.missing_repos

    async def close(self) -> None:
        pass


# ---------------------------------------------------------------------------
# Webhook payloads
# ---------------------------------------------------------------------------


def repository_payload(owner: str = "octo", name: str = "alpha") -> Dict[str, Any]:
    return {"owner": {"login": owner}, "name": name, "full_name": f"{owner}/{name}"}


def issue_json(
    number: int = 1,
    *,
    title: str = "Bug report",
    body: str = "It broke",
    state: str = "open",
    locked: bool = False,
    labels: Optional[List[str]] = None,
    login: str = "octocat",
) -> Dict[str, Any]:
    return {
        "number": number,
        "node_id": f"I_{number}",
        "title": title,
        "body": body,
        "state": state,
        "locked": locked,
        "labels": [{"name": label} for label in labels or []],
        "html_url": f"https://github.com/octo/alpha/issues/{number}",
        "user": {"login": login},
    }


def issue_event(action: str, owner: str = "octo", name: str = "alpha", **issue: Any) -> Dict[str, Any]:
    return {"action": action, "issue": issue_json(**issue), "repository": repository_payload(owner, name)}


def comment_event(
    action: str,
    comment_id: int,
    body: str = "Looks good",
    *,
    number: int = 1,
    login: str = "octocat",
    owner: str = "octo",
    name: str = "alpha",
) -> Dict[str, Any]:
    return {
        "action": action,
        "issue": issue_json(number),
        "comment": {
            "id": comment_id,
            "body": body,
            "user": {"login": login, "avatar_url": f"https://avatars.example/{login}"},
        },
        "repository": repository_payload(owner, name),
    }


def encode(payload: Dict[str, Any]) -> bytes:
    return json.dumps(payload).encode()


def chat_message(
    message_id: int,
    thread_id: int,
    parent_id: int = ALPHA_CHANNEL,
    content: str = "hello",
    **kwargs: Any,
) -> ChatMessage:
    return ChatMessage(
        id=message_id,
        channel_id=thread_id,
        parent_id=parent_id,
        guild_id=GUILD_ID,
        content=content,
        author_id=kwargs.pop("author_id", 42),
        author_name=kwargs.pop("author_name", "alice"),
        **kwargs,
    )


# ---------------------------------------------------------------------------
# Wired-up environment
# ---------------------------------------------------------------------------


@dataclass
class SyncEnv:
    registry: MappingRegistry
    provider: ContextProvider
    error_handler: ErrorHandler
    breaker: CircuitBreaker
    health: HealthMonitor
    resilience: Resilience
    gateway: FakeGateway
    github: FakeGitHub
    discord: DiscordHandlers
    handlers: GitHubHandlers
    router: WebhookRouter

    def context(self, mapping_id: str = "m1") -> MappingContext:
        ctx = self.provider.from_mapping(self.registry.get_mapping(mapping_id))
        assert ctx is not None
        return ctx

    def store(self, mapping_id: str = "m1"):
        return self.registry.get_store(mapping_id)


def build_env(mappings: List[Mapping], *, max_retries: int = 0, threshold: int = 5) -> SyncEnv:
    registry = MappingRegistry()
    registry.initialize(mappings)
    provider = ContextProvider(registry, github_token="ghp_test")
    error_handler = ErrorHandler(RetryOptions(max_retries=max_retries, initial_delay=0.01), sleep=no_sleep)
    breaker = CircuitBreaker(threshold=threshold, timeout=5.0, reset_timeout=60.0)
    health = HealthMonitor(registry, error_handler, breaker)
    resilience = Resilience(error_handler, breaker, health)
    gateway = FakeGateway()
    github = FakeGitHub()
    discord_handlers = DiscordHandlers(provider, gateway, github, resilience, archive_debounce=0, sleep=no_sleep)
    github_handlers = GitHubHandlers(gateway, resilience)
    router = WebhookRouter(provider, error_handler, health)
    github_handlers.register(router)
    return SyncEnv(
        registry=registry,
        provider=provider,
        error_handler=error_handler,
        breaker=breaker,
        health=health,
        resilience=resilience,
        gateway=gateway,
        github=github,
        discord=discord_handlers,
        handlers=github_handlers,
        router=router,
    )


@pytest.fixture
def env() -> SyncEnv:
    """Two independent mappings: m1 (octo/alpha, channel 111) and m2 (octo/beta, channel 222)."""
    return build_env(
        [
            make_mapping("m1", ALPHA_CHANNEL, "octo", "alpha"),
            make_mapping("m2", BETA_CHANNEL, "octo", "beta"),
        ]
    )
