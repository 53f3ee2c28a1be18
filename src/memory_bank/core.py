"""MemoryBank facade: wires storage, repositories, index, patch and search.

Callers address a scope by branch name; ``None`` means the global scope.
"""

from __future__ import annotations

import logging
from typing import Any

from memory_bank.config import ConfigProvider, MemoryBankConfig
from memory_bank.memory.patch import PatchEngine
from memory_bank.memory.repository import (
    BranchDocumentRepository,
    DocumentRepository,
    GlobalDocumentRepository,
)
from memory_bank.memory.search import SearchService
from memory_bank.memory.storage import StorageAdapter
from memory_bank.memory.tag_index import TagIndexBuilder
from memory_bank.memory.types import BranchInfo

logger = logging.getLogger(__name__)


class MemoryBank:
    """One docs root with its global scope and all branch scopes."""

    def __init__(self, config: MemoryBankConfig) -> None:
        self.config = config
        self.paths = ConfigProvider(config)
        self.storage = StorageAdapter(config.storage)
        self.index_builder = TagIndexBuilder(self.storage, config.language)
        self.branches = BranchDocumentRepository(
            self.paths.branch_root(), self.storage, self.index_builder, config.language
        )
        self.global_docs = GlobalDocumentRepository(
            self.paths.global_memory_path(), self.storage, self.index_builder, config.language
        )
        self._patchers = {
            "branch": PatchEngine(self.branches),
            "global": PatchEngine(self.global_docs),
        }
        self._searchers = {
            "branch": SearchService(self.branches),
            "global": SearchService(self.global_docs),
        }

    # ── Scope routing ────────────────────────────────────────

    def repository(self, branch: str | BranchInfo | None = None) -> DocumentRepository:
        return self.global_docs if branch is None else self.branches

    def patch_engine(self, branch: str | BranchInfo | None = None) -> PatchEngine:
        return self._patchers["global" if branch is None else "branch"]

    def search_service(self, branch: str | BranchInfo | None = None) -> SearchService:
        return self._searchers["global" if branch is None else "branch"]

    @staticmethod
    def scope(branch: str | BranchInfo | None) -> Any:
        """Validated scope argument for the repositories."""
        if branch is None or isinstance(branch, BranchInfo):
            return branch
        return BranchInfo(branch)

    # ── Lifecycle ────────────────────────────────────────────

    async def initialize(self, branch: str | BranchInfo | None = None) -> None:
        """Bootstrap the global scope, and the branch scope when one is named."""
        scope = self.scope(branch)
        await self.global_docs.initialize()
        if scope is not None:
            await self.branches.initialize(scope)
        logger.info("Memory bank ready at %s", self.paths.docs_root)
