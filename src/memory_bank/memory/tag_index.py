"""Derived tag -> document index for one scope.

A rebuild loads every document in the scope once and produces a single
in-memory ``TagMapping``. Two serializers render it: the current
``tag_index_v1`` file and the legacy ``tags/index.json`` document kept for
older readers. Rebuilds are always full and are serialized per scope.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

from memory_bank.errors import MemoryBankError
from memory_bank.memory.types import (
    JSON_DOCUMENT_SCHEMA,
    DocumentPath,
    format_timestamp,
    parse_timestamp,
    utc_now,
)

if TYPE_CHECKING:
    from memory_bank.memory.repository import DocumentRepository
    from memory_bank.memory.storage import StorageAdapter

logger = logging.getLogger(__name__)

TAG_INDEX_SCHEMA = "tag_index_v1"
LEGACY_INDEX_PATH = "tags/index.json"

_LEGACY_TITLES = {
    "en": ("Tags Index", "Mapping between tags and documents"),
    "ja": ("タグインデックス", "タグとドキュメントの関連付け"),
    "zh": ("标签索引", "标签和文档的映射关系"),
}


@dataclass
class TagIndex:
    """Current-format index: flat tag -> [path] mapping plus bookkeeping."""

    context: str
    index: dict[str, list[str]] = field(default_factory=dict)
    document_count: int = 0
    updated_at: datetime = field(default_factory=utc_now)
    full_rebuild: bool = True

    def paths_for(self, tag: str) -> list[str]:
        return self.index.get(tag, [])

    def to_dict(self) -> dict[str, Any]:
        return {
            "schema": TAG_INDEX_SCHEMA,
            "metadata": {
                "updatedAt": format_timestamp(self.updated_at),
                "documentCount": self.document_count,
                "fullRebuild": self.full_rebuild,
                "context": self.context,
            },
            "index": self.index,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TagIndex:
        """Parse a stored index. Raises ValueError on a malformed structure."""
        if not isinstance(data, dict) or data.get("schema") != TAG_INDEX_SCHEMA:
            raise ValueError("not a tag_index_v1 document")
        meta = data.get("metadata") or {}
        raw_index = data.get("index")
        if not isinstance(meta, dict) or not isinstance(raw_index, dict):
            raise ValueError("tag index is missing metadata or index")
        index = {
            str(tag): [str(p) for p in paths]
            for tag, paths in raw_index.items()
            if isinstance(paths, list)
        }
        return cls(
            context=str(meta.get("context", "")),
            index=index,
            document_count=int(meta.get("documentCount", 0)),
            updated_at=parse_timestamp(meta.get("updatedAt")) or utc_now(),
            full_rebuild=bool(meta.get("fullRebuild", True)),
        )


@dataclass
class TagMapping:
    """One pass over a scope: tag -> [(path, title)] in listing order."""

    entries: dict[str, list[tuple[str, str]]] = field(default_factory=dict)
    document_count: int = 0
    _seen: set[tuple[str, str]] = field(default_factory=set, repr=False)

    def add(self, tag: str, path: str, title: str) -> None:
        if (tag, path) in self._seen:
            return
        self._seen.add((tag, path))
        self.entries.setdefault(tag, []).append((path, title))

    def to_tag_index(self, context: str) -> TagIndex:
        return TagIndex(
            context=context,
            index={tag: [p for p, _ in docs] for tag, docs in self.entries.items()},
            document_count=self.document_count,
        )

    def to_legacy_document(self, language: str = "en") -> dict[str, Any]:
        title, description = _LEGACY_TITLES.get(language, _LEGACY_TITLES["en"])
        stamp = format_timestamp(utc_now())
        return {
            "schema": JSON_DOCUMENT_SCHEMA,
            "metadata": {
                "id": "tags-index",
                "title": title,
                "documentType": "generic",
                "path": LEGACY_INDEX_PATH,
                "tags": ["index", "meta"],
                "lastModified": stamp,
                "createdAt": stamp,
                "version": 1,
            },
            "content": {
                "sections": [{"title": "Tags List", "content": description}],
                "tagMap": {
                    tag: {
                        "count": len(docs),
                        "documents": [{"path": p, "title": t} for p, t in docs],
                    }
                    for tag, docs in self.entries.items()
                },
            },
        }


class TagIndexBuilder:
    """Builds, persists and loads tag indexes for a repository's scopes."""

    def __init__(self, storage: StorageAdapter, language: str = "en") -> None:
        self.storage = storage
        self.language = language
        self._scope_locks: dict[Path, asyncio.Lock] = {}

    def _lock_for(self, root: Path) -> asyncio.Lock:
        lock = self._scope_locks.get(root)
        if lock is None:
            lock = asyncio.Lock()
            self._scope_locks[root] = lock
        return lock

    async def build(self, repository: DocumentRepository, scope: Any = None) -> TagMapping:
        """Load every document in the scope and collect its tags."""
        mapping = TagMapping()
        for path in await repository.list(scope):
            try:
                doc = await repository.get(scope, path)
            except MemoryBankError as e:
                logger.warning("Skipping %s during index rebuild: %s", path, e)
                continue
            if doc is None:
                continue
            mapping.document_count += 1
            title = doc.title or path.value
            for tag in doc.tags:
                mapping.add(tag.value, path.value, title)
        return mapping

    async def rebuild(self, repository: DocumentRepository, scope: Any = None) -> TagIndex:
        """Full rebuild; writes the current index, then the legacy document."""
        root = repository.scope_root(scope)
        async with self._lock_for(root):
            mapping = await self.build(repository, scope)
            index = mapping.to_tag_index(repository.context)
            await self.storage.write_text(
                repository.index_file(scope),
                json.dumps(index.to_dict(), indent=2, ensure_ascii=False),
            )
            try:
                await self.storage.write_text(
                    root / LEGACY_INDEX_PATH,
                    json.dumps(mapping.to_legacy_document(self.language), indent=2, ensure_ascii=False),
                )
            except MemoryBankError as e:
                logger.warning("Legacy tag index write failed for %s: %s", root, e)
        logger.info(
            "Rebuilt %s tag index at %s: %d documents, %d tags",
            repository.context, root, index.document_count, len(index.index),
        )
        return index

    async def load(self, repository: DocumentRepository, scope: Any = None) -> TagIndex | None:
        """Stored index for the scope, or None when missing or unreadable."""
        index_file = repository.index_file(scope)
        if not await self.storage.file_exists(index_file):
            return None
        try:
            raw = await self.storage.read_text(index_file)
            return TagIndex.from_dict(json.loads(raw))
        except (MemoryBankError, ValueError, TypeError) as e:
            logger.warning("Ignoring unreadable tag index %s: %s", index_file, e)
            return None


def is_index_artifact(path: DocumentPath | str, index_filename: str) -> bool:
    value = path.value if isinstance(path, DocumentPath) else path
    return value in (index_filename, LEGACY_INDEX_PATH)
