"""
Per-mapping correlation store.

A store is owned by exactly one mapping. Handlers only reach it through that
mapping's context, and every mutation below is a single synchronous step, so
no locking is needed inside one event loop.
"""
from __future__ import annotations

import itertools
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set

from .helpers import map_github_labels_to_tag_ids, map_tag_ids_to_github_labels
from .models import Comment, ExpectedEcho, ForumTag, Thread


@dataclass
class StoreOperations:
    created: int = 0
    updated: int = 0
    deleted: int = 0
    commented: int = 0


@dataclass
class StoreMetrics:
    thread_count: int = 0
    issue_count: int = 0
    last_sync: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    sync_errors: int = 0
    operations: StoreOperations = field(default_factory=StoreOperations)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "thread_count": self.thread_count,
            "issue_count": self.issue_count,
            "last_sync": self.last_sync.isoformat(),
            "sync_errors": self.sync_errors,
            "operations": {
                "created": self.operations.created,
                "updated": self.operations.updated,
                "deleted": self.operations.deleted,
                "commented": self.operations.commented,
            },
        }


class CorrelationStore:
    """Threads, comment correlations and the forum tag catalog for one mapping."""

    def __init__(self, mapping_id: Optional[str] = None, *, clock: Callable[[], float] = time.monotonic) -> None:
        self.mapping_id = mapping_id
        self.threads: List[Thread] = []
        self.available_tags: List[ForumTag] = []
        self.metrics = StoreMetrics()
        self._clock = clock
        self._sequence = itertools.count(1)
        self._creating_issues: Set[int] = set()
        self._expected_deletes: Set[int] = set()

    # ----------------------
    # Threads
    # ----------------------
    def add_thread(self, thread: Thread) -> bool:
        """Insert a row. Returns False when a row with that id already exists."""
        if self.get_thread(thread.id) is not None:
            return False
        thread.mapping_id = self.mapping_id
        self.threads.append(thread)
        self._refresh_counts()
        self._record("created")
        return True

    def get_thread(self, thread_id: int) -> Optional[Thread]:
        return next((t for t in self.threads if t.id == thread_id), None)

    def get_thread_by_issue_number(self, number: int) -> Optional[Thread]:
        return next((t for t in self.threads if t.number == number), None)

    def get_thread_by_node_id(self, node_id: str) -> Optional[Thread]:
        return next((t for t in self.threads if t.node_id == node_id), None)

    def find_issue_thread(self, number: Optional[int], node_id: Optional[str]) -> Optional[Thread]:
        thread = self.get_thread_by_node_id(node_id) if node_id else None
        if thread is None and number is not None:
            thread = self.get_thread_by_issue_number(number)
        return thread

    def update_thread(self, thread_id: int, **updates: Any) -> Optional[Thread]:
        thread = self.get_thread(thread_id)
        if thread is None:
            return None
        for key, value in updates.items():
            if not hasattr(thread, key):
                raise AttributeError(f"Thread has no field {key!r}")
            setattr(thread, key, value)
        self._refresh_counts()
        self._record("updated")
        return thread

    def delete_thread(self, thread_id: int) -> Optional[Thread]:
        """Remove the whole row, comments included."""
        thread = self.get_thread(thread_id)
        if thread is None:
            return None
        self.threads.remove(thread)
        self._refresh_counts()
        self._record("deleted")
        return thread

    # ----------------------
    # Comments
    # ----------------------
    def add_comment(self, thread_id: int, message_id: int, git_id: int) -> Optional[Comment]:
        thread = self.get_thread(thread_id)
        if thread is None:
            return None
        existing = thread.find_comment_by_git_id(git_id)
        if existing is not None:
            return existing
        comment = Comment(id=message_id, git_id=git_id)
        thread.comments.append(comment)
        self._record("commented")
        return comment

    def find_comment_by_git_id(self, thread_id: int, git_id: int) -> Optional[Comment]:
        thread = self.get_thread(thread_id)
        return thread.find_comment_by_git_id(git_id) if thread else None

    def update_comment_mapping(self, thread_id: int, git_id: int, new_message_id: int) -> Optional[Comment]:
        comment = self.find_comment_by_git_id(thread_id, git_id)
        if comment is not None:
            comment.id = new_message_id
            self._record("updated")
        return comment

    def remove_comment_mapping(self, thread_id: int, git_id: int) -> Optional[Comment]:
        thread = self.get_thread(thread_id)
        if thread is None:
            return None
        comment = thread.find_comment_by_git_id(git_id)
        if comment is not None:
            thread.comments.remove(comment)
        return comment

    def remove_comment_by_message(self, thread_id: int, message_id: int) -> Optional[Comment]:
        thread = self.get_thread(thread_id)
        if thread is None:
            return None
        comment = thread.find_comment_by_message(message_id)
        if comment is not None:
            thread.comments.remove(comment)
        return comment

    # ----------------------
    # Tags
    # ----------------------
    def tag_ids_for_labels(self, labels: List[str]) -> List[int]:
        """Exact-name label -> tag mapping. Unmatched labels are dropped."""
        return map_github_labels_to_tag_ids(self.available_tags, labels)

    def labels_for_tag_ids(self, tag_ids: List[int]) -> List[str]:
        return map_tag_ids_to_github_labels(self.available_tags, tag_ids)

    # ----------------------
    # In-flight issue creation
    # ----------------------
    def claim_issue(self, number: int) -> bool:
        """Reserve an issue number for thread creation. False if already claimed."""
        if number in self._creating_issues:
            return False
        self._creating_issues.add(number)
        return True

    def release_issue(self, number: int) -> None:
        self._creating_issues.discard(number)

    # ----------------------
    # Reflection suppression
    # ----------------------
    def expect_echo(self, thread: Thread, *, archived: bool, locked: bool, ttl: float) -> int:
        """Record a thread state the bot is about to cause. Returns its sequence number."""
        seq = next(self._sequence)
        thread.pending_echoes.append(
            ExpectedEcho(seq=seq, archived=archived, locked=locked, expires_at=self._clock() + ttl)
        )
        return seq

    def consume_echo(self, thread: Thread, *, archived: bool, locked: bool) -> Optional[int]:
        """Drop the oldest live echo matching this state and return its sequence number."""
        now = self._clock()
        thread.pending_echoes = [e for e in thread.pending_echoes if e.expires_at > now]
        for echo in thread.pending_echoes:
            if echo.archived == archived and echo.locked == locked:
                thread.pending_echoes.remove(echo)
                return echo.seq
        return None

    def discard_echo(self, thread: Thread, seq: int) -> None:
        thread.pending_echoes = [e for e in thread.pending_echoes if e.seq != seq]

    def expect_message_delete(self, message_id: int) -> None:
        """Mark a message the bot is about to delete itself."""
        self._expected_deletes.add(message_id)

    def consume_message_delete(self, message_id: int) -> bool:
        if message_id in self._expected_deletes:
            self._expected_deletes.discard(message_id)
            return True
        return False

    def discard_message_delete(self, message_id: int) -> None:
        self._expected_deletes.discard(message_id)

    # ----------------------
    # Metrics
    # ----------------------
    def increment_sync_errors(self) -> None:
        self.metrics.sync_errors += 1

    def get_metrics(self) -> StoreMetrics:
        return replace(self.metrics, operations=replace(self.metrics.operations))

    def reset_metrics(self) -> None:
        self.metrics = StoreMetrics()
        self._refresh_counts()

    def clear(self) -> None:
        self.threads = []
        self.available_tags = []
        self._creating_issues.clear()
        self._expected_deletes.clear()
        self.reset_metrics()

    def _record(self, operation: str) -> None:
        setattr(self.metrics.operations, operation, getattr(self.metrics.operations, operation) + 1)
        self.metrics.last_sync = datetime.now(timezone.utc)

    def _refresh_counts(self) -> None:
        self.metrics.thread_count = len(self.threads)
        self.metrics.issue_count = sum(1 for t in self.threads if t.number is not None)
