"""Tag queries, answered from the stored index when one exists."""

from __future__ import annotations

import logging
from typing import Any, Iterable

from memory_bank.errors import ValidationError
from memory_bank.memory.repository import DocumentRepository
from memory_bank.memory.tag_index import TagIndex
from memory_bank.memory.types import DocumentPath, MemoryDocument, Tag, coerce_tags

logger = logging.getLogger(__name__)


def _union(index: TagIndex, tags: list[str]) -> list[str]:
    seen: dict[str, None] = {}
    for tag in tags:
        for path in index.paths_for(tag):
            seen.setdefault(path, None)
    return list(seen)


def _intersection(index: TagIndex, tags: list[str]) -> list[str]:
    result = list(dict.fromkeys(index.paths_for(tags[0])))
    for tag in tags[1:]:
        if not result:
            break
        allowed = set(index.paths_for(tag))
        result = [p for p in result if p in allowed]
    return result


class SearchService:
    """AND/OR tag search over one repository."""

    def __init__(self, repository: DocumentRepository) -> None:
        self.repository = repository

    async def find_paths(
        self,
        scope: Any,
        tags: Iterable[Tag | str],
        match_all: bool = False,
    ) -> list[DocumentPath]:
        wanted = [t.value for t in coerce_tags(tags)]
        if not wanted:
            return []

        index = await self.repository.load_index(scope)
        if index is None:
            logger.debug("No tag index for %s, falling back to full scan", scope or self.repository.context)
            docs = await self.repository.find_by_tags(scope, wanted, match_all)
            return [d.path for d in docs]

        raw = _intersection(index, wanted) if match_all else _union(index, wanted)
        paths: list[DocumentPath] = []
        for value in raw:
            try:
                paths.append(DocumentPath(value))
            except ValidationError:
                logger.debug("Dropping invalid path from tag index: %r", value)
        return paths

    async def find_documents(
        self,
        scope: Any,
        tags: Iterable[Tag | str],
        match_all: bool = False,
    ) -> list[MemoryDocument]:
        """Matching documents; index entries whose file is gone are skipped."""
        docs: list[MemoryDocument] = []
        for path in await self.find_paths(scope, tags, match_all):
            doc = await self.repository.get(scope, path)
            if doc is None:
                logger.debug("Tag index references missing document %s", path)
                continue
            docs.append(doc)
        return docs
