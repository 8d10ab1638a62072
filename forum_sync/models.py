"""
Data model for the forum sync cog.

Mappings are loaded from the mappings file and never mutated in place; the
correlation records (Thread and Comment) live in a per-mapping store and are
rebuilt from GitHub on every start.
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class RepositoryRef:
    owner: str
    name: str

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"


@dataclass(frozen=True)
class MappingOptions:
    """Optional per-mapping switches."""

    sync_labels: bool = True
    sync_assignees: bool = False
    github_token: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "sync_labels": self.sync_labels,
            "sync_assignees": self.sync_assignees,
        }
        if self.github_token:
            data["github_token"] = self.github_token
        return data

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["MappingOptions"]:
        if data is None:
            return None
        return cls(
            sync_labels=bool(data.get("sync_labels", True)),
            sync_assignees=bool(data.get("sync_assignees", False)),
            github_token=data.get("github_token"),
        )


@dataclass(frozen=True)
class Mapping:
    """
    One GitHub repository <-> Discord forum channel pairing.

    This is the unit of tenancy: every store, breaker and error counter is
    keyed by ``id``.
    """

    id: str
    channel_id: int
    repository: RepositoryRef
    enabled: bool = True
    webhook_secret: Optional[str] = None
    options: Optional[MappingOptions] = None
    created_at: Optional[str] = None
    created_by: Optional[int] = None
    auto_synced: bool = False

    @property
    def repo_key(self) -> str:
        return self.repository.full_name

    @property
    def sync_labels(self) -> bool:
        return self.options.sync_labels if self.options else True

    def with_changes(self, **changes: Any) -> "Mapping":
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        """Serialise back to the mappings file layout."""
        data: Dict[str, Any] = {
            "id": self.id,
            "channel_id": str(self.channel_id),
            "repository": {"owner": self.repository.owner, "name": self.repository.name},
            "enabled": self.enabled,
        }
        if self.webhook_secret is not None:
            data["webhook_secret"] = self.webhook_secret
        if self.options is not None:
            data["options"] = self.options.to_dict()
        if self.created_at is not None:
            data["created_at"] = self.created_at
        if self.created_by is not None:
            data["created_by"] = str(self.created_by)
        if self.auto_synced:
            data["auto_synced"] = True
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Mapping":
        """Build a mapping from an already validated dict."""
        repo = data["repository"]
        created_by = data.get("created_by")
        return cls(
            id=str(data["id"]),
            channel_id=int(data["channel_id"]),
            repository=RepositoryRef(owner=repo["owner"], name=repo["name"]),
            enabled=bool(data.get("enabled", True)),
            webhook_secret=data.get("webhook_secret"),
            options=MappingOptions.from_dict(data.get("options")),
            created_at=data.get("created_at"),
            created_by=int(created_by) if created_by is not None else None,
            auto_synced=bool(data.get("auto_synced", False)),
        )


@dataclass(frozen=True)
class RepoCredentials:
    owner: str
    repo: str
    token: Optional[str] = None

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.repo}"


@dataclass(frozen=True)
class ForumTag:
    """Platform-neutral view of a Discord forum tag."""

    id: int
    name: str


@dataclass
class Comment:
    """Correlates one Discord message with one GitHub issue comment."""

    id: int
    git_id: int


@dataclass
class ExpectedEcho:
    """A thread state the bot itself caused and expects to see reported back."""

    seq: int
    archived: bool
    locked: bool
    expires_at: float


@dataclass
class Thread:
    """
    The correlation row linking one forum thread to one GitHub issue.

    A row without ``number``/``node_id`` is unlinked: the Discord thread exists
    but its issue has not been created yet.
    """

    id: int
    title: str
    body: Optional[str] = None
    number: Optional[int] = None
    node_id: Optional[str] = None
    applied_tag_ids: List[int] = field(default_factory=list)
    locked: bool = False
    archived: bool = False
    lock_archiving: bool = False
    lock_locking: bool = False
    comments: List[Comment] = field(default_factory=list)
    mapping_id: Optional[str] = None
    pending_echoes: List[ExpectedEcho] = field(default_factory=list, repr=False)

    @property
    def linked(self) -> bool:
        return self.number is not None and self.node_id is not None

    def find_comment_by_git_id(self, git_id: int) -> Optional[Comment]:
        return next((c for c in self.comments if c.git_id == git_id), None)

    def find_comment_by_message(self, message_id: int) -> Optional[Comment]:
        return next((c for c in self.comments if c.id == message_id), None)


@dataclass(frozen=True)
class IssueRef:
    """The parts of a GitHub issue the sync protocol cares about."""

    number: int
    node_id: str
    title: str = ""
    body: str = ""
    state: str = "open"
    locked: bool = False
    labels: List[str] = field(default_factory=list)
    is_pull_request: bool = False
    html_url: Optional[str] = None
    author: Optional[str] = None


@dataclass(frozen=True)
class IssueCommentRef:
    id: int
    issue_number: int
    body: str = ""


@dataclass(frozen=True)
class ChatAttachment:
    url: str
    filename: str
    content_type: Optional[str] = None


@dataclass(frozen=True)
class ChatMessage:
    """A Discord message reduced to what the sync protocol needs."""

    id: int
    channel_id: int
    parent_id: Optional[int]
    guild_id: Optional[int]
    content: str
    author_id: int
    author_name: str
    author_avatar_url: Optional[str] = None
    author_is_bot: bool = False
    webhook_id: Optional[int] = None
    attachments: List[ChatAttachment] = field(default_factory=list)

    @property
    def jump_url(self) -> str:
        return f"https://discord.com/channels/{self.guild_id}/{self.channel_id}/{self.id}"


@dataclass(frozen=True)
class ChatThread:
    """A Discord forum thread reduced to what the sync protocol needs."""

    id: int
    parent_id: Optional[int]
    name: str
    archived: bool = False
    locked: bool = False
    applied_tag_ids: List[int] = field(default_factory=list)


@dataclass
class SyncResult:
    total: int = 0
    synced: int = 0
    errors: int = 0
    skipped: int = 0
