"""
Per-operation mapping contexts.

Everything downstream of an incoming event works through a MappingContext:
the mapping, its store, the credentials to use for GitHub and a logger that
tags every line with the mapping. A context is built fresh for each event and
never kept around.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, MutableMapping, Optional, Tuple

from .models import Mapping, RepoCredentials
from .registry import MappingRegistry
from .store import CorrelationStore

log = logging.getLogger("red.forum_sync.context")


class MappingLoggerAdapter(logging.LoggerAdapter):
    """Prefixes log lines with ``[mapping id] owner/repo | ``."""

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> Tuple[Any, MutableMapping[str, Any]]:
        extra = self.extra or {}
        return f"[{extra['mapping_id']}] {extra['repository']} | {msg}", kwargs


@dataclass
class MappingContext:
    mapping: Mapping
    store: CorrelationStore
    repo_credentials: RepoCredentials
    logger: MappingLoggerAdapter

    @property
    def mapping_id(self) -> str:
        return self.mapping.id


class ContextProvider:
    """Derives MappingContexts from a channel, a repository or a webhook payload."""

    def __init__(
        self,
        registry: MappingRegistry,
        *,
        github_token: Optional[str] = None,
        logger_name: str = "red.forum_sync",
    ) -> None:
        self.registry = registry
        self.github_token = github_token
        self._logger = logging.getLogger(logger_name)

    def from_mapping(self, mapping: Mapping) -> Optional[MappingContext]:
        store = self.registry.get_store(mapping.id)
        if store is None:
            log.error("Store not found for mapping %s", mapping.id)
            return None

        token = mapping.options.github_token if mapping.options and mapping.options.github_token else self.github_token
        credentials = RepoCredentials(owner=mapping.repository.owner, repo=mapping.repository.name, token=token)
        adapter = MappingLoggerAdapter(
            self._logger,
            {"mapping_id": mapping.id, "repository": mapping.repo_key, "channel_id": mapping.channel_id},
        )
        return MappingContext(mapping=mapping, store=store, repo_credentials=credentials, logger=adapter)

    def from_channel(self, channel_id: Optional[int]) -> Optional[MappingContext]:
        if channel_id is None:
            return None
        mapping = self.registry.get_mapping_by_channel(channel_id)
        if mapping is None:
            log.debug("No mapping found for channel %s", channel_id)
            return None
        return self.from_mapping(mapping)

    def from_repository(self, owner: str, name: str) -> Optional[MappingContext]:
        mapping = self.registry.get_mapping_by_repo(owner, name)
        if mapping is None:
            log.debug("No mapping found for repository %s/%s", owner, name)
            return None
        return self.from_mapping(mapping)

    def from_webhook_payload(self, payload: Dict[str, Any]) -> Optional[MappingContext]:
        ref = extract_repository(payload)
        if ref is None:
            log.debug("Webhook payload missing repository information")
            return None
        return self.from_repository(*ref)

    def all_contexts(self) -> List[MappingContext]:
        contexts = []
        for mapping in self.registry.all_mappings():
            context = self.from_mapping(mapping)
            if context is not None:
                contexts.append(context)
        return contexts

    def is_channel_managed(self, channel_id: int) -> bool:
        return self.registry.is_channel_managed(channel_id)

    def is_repository_managed(self, owner: str, name: str) -> bool:
        return self.registry.is_repo_managed(owner, name)

    def should_process_webhook(self, payload: Dict[str, Any]) -> bool:
        ref = extract_repository(payload)
        return ref is not None and self.is_repository_managed(*ref)


def extract_repository(payload: Any) -> Optional[Tuple[str, str]]:
    """Return ``(owner, name)`` from a GitHub webhook payload, or None."""
    if not isinstance(payload, dict):
        return None
    repository = payload.get("repository")
    if not isinstance(repository, dict):
        return None
    owner = repository.get("owner")
    owner_login = owner.get("login") if isinstance(owner, dict) else None
    name = repository.get("name")
    if not owner_login or not name:
        return None
    return owner_login, name
