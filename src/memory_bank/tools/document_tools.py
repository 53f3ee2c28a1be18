"""Document tools for collaborators (agents, CLI, transports).

Every tool is an async callable returning an ``OperationResult``: either
``ok`` with data, or a failure carrying the error kind (``validation``,
``not_found``, ``storage``, ``invalid_state``) and a message. Scopes are
addressed with ``branch``; leaving it out targets the global scope.
"""

from __future__ import annotations

import functools
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from memory_bank.errors import MemoryBankError
from memory_bank.memory.codec import decode_document, same_body
from memory_bank.memory.types import DocumentPath, MemoryDocument, format_timestamp, utc_now

if TYPE_CHECKING:
    from memory_bank.core import MemoryBank

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OperationResult:
    ok: bool
    data: Any = None
    error_kind: str | None = None
    message: str | None = None

    @classmethod
    def success(cls, data: Any = None, message: str | None = None) -> OperationResult:
        return cls(ok=True, data=data, message=message)

    @classmethod
    def failure(cls, error: MemoryBankError) -> OperationResult:
        return cls(ok=False, error_kind=error.kind, message=error.message)

    def to_dict(self) -> dict[str, Any]:
        if self.ok:
            result: dict[str, Any] = {"success": True, "data": self.data}
            if self.message:
                result["message"] = self.message
            return result
        return {"success": False, "error": {"kind": self.error_kind, "message": self.message}}


def _tool(fn: Callable[..., Awaitable[OperationResult]]) -> Callable[..., Awaitable[OperationResult]]:
    @functools.wraps(fn)
    async def wrapper(*args: Any, **kwargs: Any) -> OperationResult:
        try:
            return await fn(*args, **kwargs)
        except MemoryBankError as e:
            log = logger.error if e.kind == "storage" else logger.warning
            log("%s failed (%s): %s", fn.__name__, e.kind, e.message)
            return OperationResult.failure(e)

    return wrapper


def get_document_tools(bank: MemoryBank) -> dict[str, callable]:
    """Return a dict of tool_name -> async callable for document operations.

    These can be registered with a transport or called directly.
    """

    @_tool
    async def initialize(branch: str | None = None) -> OperationResult:
        """Create the global scope and, when named, the branch scope."""
        await bank.initialize(branch)
        return OperationResult.success({"branch": branch, "initialized": True})

    @_tool
    async def get_document(path: str, branch: str | None = None) -> OperationResult:
        """Read one document."""
        doc = await bank.repository(branch).get(bank.scope(branch), DocumentPath(path))
        if doc is None:
            return OperationResult(ok=False, error_kind="not_found", message=f"Document not found: {path}")
        return OperationResult.success(doc.to_dict())

    @_tool
    async def save_document(
        path: str,
        content: str,
        tags: list[str] | None = None,
        branch: str | None = None,
    ) -> OperationResult:
        """Create or replace a document. ``tags=None`` keeps existing tags."""
        doc_path = DocumentPath(path)
        scope = bank.scope(branch)
        repo = bank.repository(branch)
        existing = await repo.get(scope, doc_path)
        if existing is not None and existing.path == doc_path:
            if same_body(doc_path, existing.content, content):
                content = existing.content
            doc = existing.revise(content=content, tags=tags)
            if doc is existing:
                return OperationResult.success(
                    {"document": existing.to_dict(), "changed": False, "indexUpdated": True}
                )
        else:
            if tags is None:
                # Tags already embedded in the content (metadata, front matter, inline)
                tags = decode_document(doc_path, content, utc_now()).tags
            doc = MemoryDocument(path=doc_path, content=content, tags=tags)
        outcome = await repo.save(scope, doc)
        return OperationResult.success(
            {
                "document": outcome.document.to_dict(),
                "changed": True,
                "indexUpdated": outcome.index_updated,
            },
            message=None if outcome.index_updated else f"Tag index not updated: {outcome.index_error}",
        )

    @_tool
    async def delete_document(path: str, branch: str | None = None) -> OperationResult:
        """Delete a document. Deleting a missing document is not an error."""
        outcome = await bank.repository(branch).delete(bank.scope(branch), DocumentPath(path))
        return OperationResult.success(
            {"path": path, "deleted": outcome.deleted, "indexUpdated": outcome.index_updated},
            message=None if outcome.index_updated else f"Tag index not updated: {outcome.index_error}",
        )

    @_tool
    async def list_documents(branch: str | None = None) -> OperationResult:
        """List every document path in the scope."""
        paths = await bank.repository(branch).list(bank.scope(branch))
        return OperationResult.success([p.value for p in paths])

    @_tool
    async def find_by_tags(
        tags: list[str],
        match_all: bool = False,
        branch: str | None = None,
    ) -> OperationResult:
        """Full-scan tag filter returning whole documents."""
        docs = await bank.repository(branch).find_by_tags(bank.scope(branch), tags, match_all)
        return OperationResult.success([d.to_dict() for d in docs])

    @_tool
    async def search(
        tags: list[str],
        match_all: bool = False,
        branch: str | None = None,
    ) -> OperationResult:
        """Index-backed tag search returning document paths."""
        paths = await bank.search_service(branch).find_paths(bank.scope(branch), tags, match_all)
        return OperationResult.success([p.value for p in paths])

    @_tool
    async def generate_and_rebuild_tag_index(branch: str | None = None) -> OperationResult:
        """Force a full rebuild of the scope's tag index."""
        index = await bank.repository(branch).rebuild_index(bank.scope(branch))
        return OperationResult.success(index.to_dict())

    @_tool
    async def apply_patch(
        path: str,
        operations: list[dict[str, Any]],
        tags: list[str] | None = None,
        branch: str | None = None,
    ) -> OperationResult:
        """Apply JSON Patch operations to a JSON document."""
        outcome = await bank.patch_engine(branch).apply(bank.scope(branch), path, operations, tags)
        return OperationResult.success(
            {"document": outcome.document.to_dict(), "indexUpdated": outcome.index_updated},
            message=None if outcome.index_updated else f"Tag index not updated: {outcome.index_error}",
        )

    @_tool
    async def read_core_files(branch: str) -> OperationResult:
        """The branch's core documents, keyed by filename."""
        docs = await bank.branches.read_core_files(bank.scope(branch))
        return OperationResult.success({name: doc.to_dict() for name, doc in docs.items()})

    @_tool
    async def recent_branches(limit: int = 10) -> OperationResult:
        """Most recently touched branches, newest first."""
        entries = await bank.branches.recent_branches(limit)
        return OperationResult.success(
            [{"name": e.branch.name, "lastModified": format_timestamp(e.last_modified)} for e in entries]
        )

    return {
        "initialize": initialize,
        "get_document": get_document,
        "save_document": save_document,
        "delete_document": delete_document,
        "list_documents": list_documents,
        "find_by_tags": find_by_tags,
        "search": search,
        "generate_and_rebuild_tag_index": generate_and_rebuild_tag_index,
        "apply_patch": apply_patch,
        "read_core_files": read_core_files,
        "recent_branches": recent_branches,
    }
