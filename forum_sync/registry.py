"""
Registry of repository <-> forum mappings and their correlation stores.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from .errors import MappingError
from .models import Mapping
from .store import CorrelationStore

log = logging.getLogger("red.forum_sync.registry")


def repo_key(owner: str, name: str) -> str:
    return f"{owner}/{name}"


@dataclass(frozen=True)
class _Indexes:
    """One consistent snapshot of every lookup table."""

    stores: Dict[str, CorrelationStore] = field(default_factory=dict)
    mappings: Dict[str, Mapping] = field(default_factory=dict)
    by_channel: Dict[int, str] = field(default_factory=dict)
    by_repo: Dict[str, str] = field(default_factory=dict)

    def copy(self) -> "_Indexes":
        return _Indexes(dict(self.stores), dict(self.mappings), dict(self.by_channel), dict(self.by_repo))


class MappingRegistry:
    """
    Holds every enabled mapping and the store that belongs to it.

    Mutations build a new set of indexes and swap it in with one assignment,
    so readers only ever see the state before or after an add/remove.
    """

    def __init__(self) -> None:
        self._indexes = _Indexes()

    def initialize(self, mappings: Iterable[Mapping]) -> None:
        mappings = list(mappings)
        log.info("Initializing registry with %d mapping(s)", len(mappings))
        self.clear()

        indexes = _Indexes()
        for mapping in mappings:
            if not mapping.enabled:
                log.debug("Skipping disabled mapping: %s", mapping.id)
                continue
            self._index(indexes, mapping, CorrelationStore(mapping.id))
            log.info(
                "Initialized store for mapping %s: channel %s <-> %s",
                mapping.id, mapping.channel_id, mapping.repo_key,
            )
        self._indexes = indexes
        log.info("Registry initialization complete. Active mappings: %d", len(indexes.stores))

    def add_mapping(self, mapping: Mapping) -> CorrelationStore:
        current = self._indexes
        if mapping.id in current.mappings:
            raise MappingError(f"Mapping already exists: {mapping.id}")
        indexes = current.copy()
        store = CorrelationStore(mapping.id)
        self._index(indexes, mapping, store)
        self._indexes = indexes
        log.info("Added mapping %s (%s, channel %s)", mapping.id, mapping.repo_key, mapping.channel_id)
        return store

    def remove_mapping(self, mapping_id: str) -> Mapping:
        current = self._indexes
        mapping = current.mappings.get(mapping_id)
        if mapping is None:
            raise MappingError(f"Mapping not found: {mapping_id}")
        indexes = current.copy()
        store = indexes.stores.pop(mapping_id, None)
        del indexes.mappings[mapping_id]
        if indexes.by_channel.get(mapping.channel_id) == mapping_id:
            del indexes.by_channel[mapping.channel_id]
        if indexes.by_repo.get(mapping.repo_key) == mapping_id:
            del indexes.by_repo[mapping.repo_key]
        self._indexes = indexes
        if store is not None:
            store.clear()
        log.info("Removed mapping %s (%s)", mapping_id, mapping.repo_key)
        return mapping

    def update_mapping(self, mapping: Mapping) -> None:
        """Replace a mapping's settings, keeping its store. Channel and repository must not change."""
        current = self._indexes
        old = current.mappings.get(mapping.id)
        if old is None:
            raise MappingError(f"Mapping not found: {mapping.id}")
        if old.channel_id != mapping.channel_id or old.repo_key != mapping.repo_key:
            raise MappingError(f"Channel or repository of mapping {mapping.id} cannot change")
        indexes = current.copy()
        indexes.mappings[mapping.id] = mapping
        self._indexes = indexes

    def clear(self) -> None:
        for store in self._indexes.stores.values():
            store.clear()
        self._indexes = _Indexes()

    @staticmethod
    def _index(indexes: _Indexes, mapping: Mapping, store: CorrelationStore) -> None:
        if mapping.channel_id in indexes.by_channel:
            log.warning("Channel %s is mapped multiple times; %s takes over", mapping.channel_id, mapping.id)
        if mapping.repo_key in indexes.by_repo:
            log.warning("Repository %s is mapped multiple times; %s takes over", mapping.repo_key, mapping.id)
        indexes.stores[mapping.id] = store
        indexes.mappings[mapping.id] = mapping
        indexes.by_channel[mapping.channel_id] = mapping.id
        indexes.by_repo[mapping.repo_key] = mapping.id

    # ----------------------
    # Lookups
    # ----------------------
    def get_store(self, mapping_id: str) -> Optional[CorrelationStore]:
        return self._indexes.stores.get(mapping_id)

    def get_store_by_channel(self, channel_id: int) -> Optional[CorrelationStore]:
        mapping_id = self._indexes.by_channel.get(channel_id)
        return self._indexes.stores.get(mapping_id) if mapping_id else None

    def get_store_by_repo(self, owner: str, name: str) -> Optional[CorrelationStore]:
        mapping_id = self._indexes.by_repo.get(repo_key(owner, name))
        return self._indexes.stores.get(mapping_id) if mapping_id else None

    def get_mapping(self, mapping_id: str) -> Optional[Mapping]:
        return self._indexes.mappings.get(mapping_id)

    def get_mapping_by_channel(self, channel_id: int) -> Optional[Mapping]:
        mapping_id = self._indexes.by_channel.get(channel_id)
        return self._indexes.mappings.get(mapping_id) if mapping_id else None

    def get_mapping_by_repo(self, owner: str, name: str) -> Optional[Mapping]:
        mapping_id = self._indexes.by_repo.get(repo_key(owner, name))
        return self._indexes.mappings.get(mapping_id) if mapping_id else None

    def all_mappings(self) -> List[Mapping]:
        return list(self._indexes.mappings.values())

    def all_stores(self) -> Dict[str, CorrelationStore]:
        return dict(self._indexes.stores)

    def is_channel_managed(self, channel_id: int) -> bool:
        return channel_id in self._indexes.by_channel

    def is_repo_managed(self, owner: str, name: str) -> bool:
        return repo_key(owner, name) in self._indexes.by_repo

    def statistics(self) -> Dict[str, Any]:
        indexes = self._indexes
        stats: Dict[str, Any] = {
            "total_mappings": len(indexes.stores),
            "total_threads": 0,
            "total_issues": 0,
            "mappings": [],
        }
        for mapping_id, store in indexes.stores.items():
            mapping = indexes.mappings[mapping_id]
            metrics = store.get_metrics()
            stats["total_threads"] += metrics.thread_count
            stats["total_issues"] += metrics.issue_count
            stats["mappings"].append(
                {
                    "id": mapping_id,
                    "channel": mapping.channel_id,
                    "repository": mapping.repo_key,
                    "metrics": metrics.to_dict(),
                }
            )
        return stats

    def __len__(self) -> int:
        return len(self._indexes.stores)
