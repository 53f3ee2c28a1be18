"""Scoped document repositories: one per branch, one global.

Both repositories share the read/write/list machinery in
``DocumentRepository``; subclasses decide where a scope lives on disk, how it
is bootstrapped and what the index file is called. Every mutating write of a
non-index document triggers a full tag index rebuild for its scope. A failed
rebuild never undoes the write; it is logged and returned to the caller in
``SaveOutcome.index_error``.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable

from memory_bank.errors import (
    BranchNotFoundError,
    DocumentNotFoundError,
    MemoryBankError,
    ValidationError,
)
from memory_bank.memory.codec import decode_document, encode_document
from memory_bank.memory.storage import StorageAdapter
from memory_bank.memory.tag_index import (
    LEGACY_INDEX_PATH,
    TagIndex,
    TagIndexBuilder,
    TagMapping,
    is_index_artifact,
)
from memory_bank.memory.types import (
    JSON_DOCUMENT_SCHEMA,
    BranchInfo,
    DocumentPath,
    MemoryDocument,
    Tag,
    coerce_tags,
    format_timestamp,
    utc_now,
)
from memory_bank.memory.validation import validate_json_document

logger = logging.getLogger(__name__)

CORE_FILES = ("branchContext.json", "activeContext.json", "progress.json", "systemPatterns.json")

_CORE_TITLES = {
    "en": ("Branch Context", "Active Context", "Progress", "System Patterns"),
    "ja": ("ブランチコンテキスト", "アクティブコンテキスト", "進捗状況", "システムパターン"),
    "zh": ("分支上下文", "活动上下文", "进度", "系统模式"),
}


@dataclass(frozen=True)
class SaveOutcome:
    """Result of a write: the stored document and any index rebuild failure."""

    document: MemoryDocument
    index_error: MemoryBankError | None = None

    @property
    def index_updated(self) -> bool:
        return self.index_error is None


@dataclass(frozen=True)
class DeleteOutcome:
    """Result of a delete; truthy when a file was removed."""

    deleted: bool
    index_error: MemoryBankError | None = None

    def __bool__(self) -> bool:
        return self.deleted

    @property
    def index_updated(self) -> bool:
        return self.index_error is None


@dataclass(frozen=True)
class RecentBranch:
    branch: BranchInfo
    last_modified: datetime


def as_document_path(path: DocumentPath | str) -> DocumentPath:
    return path if isinstance(path, DocumentPath) else DocumentPath(path)


class DocumentRepository:
    """CRUD for documents inside one kind of scope."""

    context = ""
    index_filename = ""

    def __init__(
        self,
        root: Path,
        storage: StorageAdapter | None = None,
        index_builder: TagIndexBuilder | None = None,
        language: str = "en",
    ) -> None:
        self.root = Path(root)
        self.storage = storage or StorageAdapter()
        self.language = language
        self.index_builder = index_builder or TagIndexBuilder(self.storage, language)

    # ── Layout (subclass hooks) ───────────────────────────────

    def scope_root(self, scope: Any = None) -> Path:
        raise NotImplementedError

    def index_file(self, scope: Any = None) -> Path:
        return self.scope_root(scope) / self.index_filename

    def is_index_artifact(self, path: DocumentPath | str) -> bool:
        return is_index_artifact(path, self.index_filename)

    async def exists(self, scope: Any = None) -> bool:
        raise NotImplementedError

    async def initialize(self, scope: Any = None) -> None:
        raise NotImplementedError

    async def _missing_scope(self, scope: Any) -> list[DocumentPath]:
        raise NotImplementedError

    async def _root_ready(self, scope: Any) -> bool:
        return await self.storage.dir_exists(self.scope_root(scope))

    async def _ensure_scope(self, scope: Any) -> None:
        if not await self._root_ready(scope):
            await self.initialize(scope)

    def _is_core_document(self, path: DocumentPath) -> bool:
        return False

    # ── Documents ─────────────────────────────────────────────

    async def get(self, scope: Any, path: DocumentPath | str) -> MemoryDocument | None:
        """Load a document, or None when it does not exist.

        A ``.md`` request falls back to the ``.json`` sibling when only that
        exists.
        """
        doc_path = as_document_path(path)
        root = self.scope_root(scope)
        target = doc_path.resolve_under(root)
        if not await self.storage.file_exists(target):
            if doc_path.extension.lower() != "md":
                return None
            alternate = doc_path.to_alternate_format()
            target = alternate.resolve_under(root)
            if not await self.storage.file_exists(target):
                return None
            logger.debug("Serving %s from %s", doc_path, alternate)
            doc_path = alternate

        try:
            raw = await self.storage.read_text(target)
            info = await self.storage.stat(target)
        except DocumentNotFoundError:
            return None
        return decode_document(doc_path, raw, info.modified)

    async def save(self, scope: Any, document: MemoryDocument) -> SaveOutcome:
        """Write ``document`` and rebuild the scope's tag index."""
        root = self.scope_root(scope)
        target = document.path.resolve_under(root)
        text = encode_document(document)
        if document.is_json:
            validate_json_document(document.path, text, core=self._is_core_document(document.path))

        await self._ensure_scope(scope)
        await self.storage.write_text(target, text)
        logger.info("Saved %s %s (v%d)", self.context, document.path, document.version)

        stored = MemoryDocument(
            path=document.path,
            content=text,
            tags=document.tags,
            last_modified=document.last_modified,
            version=document.version,
        )
        index_error = None
        if not self.is_index_artifact(document.path):
            index_error = await self._rebuild_quietly(scope)
        return SaveOutcome(stored, index_error)

    async def delete(self, scope: Any, path: DocumentPath | str) -> DeleteOutcome:
        """Remove a document; the outcome is falsy when it did not exist."""
        doc_path = as_document_path(path)
        target = doc_path.resolve_under(self.scope_root(scope))
        if not await self.storage.file_exists(target):
            return DeleteOutcome(False)
        if not await self.storage.delete(target):
            return DeleteOutcome(False)
        logger.info("Deleted %s %s", self.context, doc_path)
        index_error = None
        if not self.is_index_artifact(doc_path):
            index_error = await self._rebuild_quietly(scope)
        return DeleteOutcome(True, index_error)

    async def list(self, scope: Any = None) -> list[DocumentPath]:
        """All documents in the scope, sorted, index artifacts excluded."""
        root = self.scope_root(scope)
        if not await self.storage.dir_exists(root):
            return await self._missing_scope(scope)
        paths: list[DocumentPath] = []
        for rel in await self.storage.list_files(root):
            if self.is_index_artifact(rel):
                continue
            try:
                paths.append(DocumentPath(rel))
            except ValidationError:
                logger.debug("Skipping file with unusable name: %s", rel)
        return paths

    async def find_by_tags(
        self,
        scope: Any,
        tags: Iterable[Tag | str],
        match_all: bool = False,
    ) -> list[MemoryDocument]:
        """Full scan: load every document and filter by tag membership."""
        wanted = {t.value for t in coerce_tags(tags)}
        if not wanted:
            return []
        results: list[MemoryDocument] = []
        for path in await self.list(scope):
            doc = await self.get(scope, path)
            if doc is None:
                continue
            present = doc.tag_values
            if (wanted <= present) if match_all else (wanted & present):
                results.append(doc)
        return results

    async def validate_structure(self, scope: Any = None) -> bool:
        try:
            root = self.scope_root(scope)
            if not await self.storage.dir_exists(root):
                return False
            if not await self.storage.dir_exists(root / "tags"):
                return False
            for name in self._required_files():
                if not await self.storage.file_exists(root / name):
                    return False
        except MemoryBankError as e:
            logger.warning("Structure check failed for %s: %s", scope or self.context, e)
            return False
        return True

    def _required_files(self) -> tuple[str, ...]:
        return ()

    # ── Index ─────────────────────────────────────────────────

    async def rebuild_index(self, scope: Any = None) -> TagIndex:
        return await self.index_builder.rebuild(self, scope)

    async def load_index(self, scope: Any = None) -> TagIndex | None:
        return await self.index_builder.load(self, scope)

    async def _rebuild_quietly(self, scope: Any) -> MemoryBankError | None:
        try:
            await self.rebuild_index(scope)
        except MemoryBankError as e:
            logger.warning("Tag index rebuild failed for %s: %s", scope or self.context, e)
            return e
        return None

    async def _write_if_absent(self, target: Path, content: str) -> bool:
        if await self.storage.file_exists(target):
            return False
        await self.storage.write_text(target, content)
        return True


# ── Branch scope ──────────────────────────────────────────


def _seed_content(doc_type: str, branch: BranchInfo) -> dict[str, Any]:
    if doc_type == "branch_context":
        return {"branchName": branch.name, "purpose": "", "userStories": []}
    if doc_type == "active_context":
        return {
            "currentWork": "",
            "recentChanges": [],
            "activeDecisions": [],
            "considerations": [],
            "nextSteps": [],
        }
    if doc_type == "progress":
        return {
            "status": "",
            "workingFeatures": [],
            "pendingImplementation": [],
            "knownIssues": [],
        }
    return {"technicalDecisions": []}


def seed_document(filename: str, title: str, branch: BranchInfo) -> str:
    path = DocumentPath(filename)
    doc_type = path.infer_document_type()
    stamp = format_timestamp(utc_now())
    envelope = {
        "schema": JSON_DOCUMENT_SCHEMA,
        "metadata": {
            "id": f"{branch.safe_name}-{path.basename}",
            "title": title,
            "documentType": doc_type,
            "path": filename,
            "tags": ["core", doc_type.replace("_", "-")],
            "lastModified": stamp,
            "createdAt": stamp,
            "version": 1,
        },
        "content": _seed_content(doc_type, branch),
    }
    return json.dumps(envelope, indent=2, ensure_ascii=False)


class BranchDocumentRepository(DocumentRepository):
    """Documents of one workstream, under ``<root>/<safe branch name>/``.

    Writing to a branch that does not exist yet initializes it first.
    """

    context = "branch"
    index_filename = "_index.json"

    def scope_root(self, scope: Any = None) -> Path:
        if scope is None:
            raise ValidationError("Branch name cannot be empty")
        branch = scope if isinstance(scope, BranchInfo) else BranchInfo(scope)
        return self.root / branch.safe_name

    async def exists(self, scope: Any = None) -> bool:
        try:
            root = self.scope_root(scope)
        except ValidationError:
            return False
        return await self.storage.dir_exists(root)

    async def initialize(self, scope: Any = None) -> None:
        """Create the branch directory and seed missing core documents."""
        root = self.scope_root(scope)
        branch = scope if isinstance(scope, BranchInfo) else BranchInfo(scope)
        await self.storage.mkdir(root / "tags")

        titles = _CORE_TITLES.get(self.language, _CORE_TITLES["en"])
        seeded = 0
        for filename, title in zip(CORE_FILES, titles):
            if await self._write_if_absent(root / filename, seed_document(filename, title, branch)):
                seeded += 1
        if seeded:
            logger.info("Initialized branch %s (%d core documents)", branch, seeded)
            await self._rebuild_quietly(branch)

    async def _missing_scope(self, scope: Any) -> list[DocumentPath]:
        raise BranchNotFoundError(f"Branch not found: {scope}", details={"branch": scope})

    def _required_files(self) -> tuple[str, ...]:
        return CORE_FILES

    def _is_core_document(self, path: DocumentPath) -> bool:
        return path.value in CORE_FILES

    async def read_core_files(self, scope: Any) -> dict[str, MemoryDocument]:
        """The core documents that exist, keyed by filename."""
        found: dict[str, MemoryDocument] = {}
        for filename in CORE_FILES:
            doc = await self.get(scope, filename)
            if doc is not None:
                found[filename] = doc
        return found

    async def recent_branches(self, limit: int = 10) -> list[RecentBranch]:
        """Branch scopes ordered by directory mtime, newest first."""
        if not await self.storage.dir_exists(self.root):
            return []
        entries: list[RecentBranch] = []
        for name, modified in await self.storage.list_dirs(self.root):
            try:
                entries.append(RecentBranch(BranchInfo.from_safe_name(name), modified))
            except ValidationError:
                logger.debug("Skipping directory that is not a branch: %s", name)
        entries.sort(key=lambda e: e.last_modified, reverse=True)
        return entries[:limit]


# ── Global scope ──────────────────────────────────────────


class GlobalDocumentRepository(DocumentRepository):
    """Documents shared by every branch. The scope argument is ignored."""

    context = "global"
    index_filename = "_global_index.json"

    def scope_root(self, scope: Any = None) -> Path:
        return self.root

    async def exists(self, scope: Any = None) -> bool:
        """The global scope is always resolvable; it is created on first write."""
        return True

    async def initialize(self, scope: Any = None) -> None:
        """Create the global root and the tags index placeholder."""
        await self.storage.mkdir(self.root / "tags")
        placeholder = json.dumps(
            TagMapping().to_legacy_document(self.language), indent=2, ensure_ascii=False
        )
        if await self._write_if_absent(self.root / LEGACY_INDEX_PATH, placeholder):
            logger.info("Initialized global memory bank at %s", self.root)
        await self._rebuild_quietly(None)

    async def _missing_scope(self, scope: Any) -> list[DocumentPath]:
        return []

    def _required_files(self) -> tuple[str, ...]:
        return (LEGACY_INDEX_PATH,)
