"""Tests for the branch and global document repositories."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from memory_bank.config import StorageConfig
from memory_bank.errors import BranchNotFoundError, StorageError, ValidationError
from memory_bank.memory.repository import (
    CORE_FILES,
    BranchDocumentRepository,
    GlobalDocumentRepository,
)
from memory_bank.memory.storage import StorageAdapter
from memory_bank.memory.types import DocumentPath, MemoryDocument

BRANCH = "feature/x"


@pytest.fixture
def storage() -> StorageAdapter:
    return StorageAdapter(StorageConfig(base_delay=0, max_delay=0))


@pytest.fixture
def branches(tmp_path: Path, storage: StorageAdapter) -> BranchDocumentRepository:
    return BranchDocumentRepository(tmp_path / "branch-memory-bank", storage)


@pytest.fixture
def global_repo(tmp_path: Path, storage: StorageAdapter) -> GlobalDocumentRepository:
    return GlobalDocumentRepository(tmp_path / "global-memory-bank", storage)


def _doc(path: str, content: str, tags=()) -> MemoryDocument:
    return MemoryDocument(path=DocumentPath(path), content=content, tags=tags)


class TestBranchBootstrap:
    @pytest.mark.asyncio
    async def test_initialize_seeds_core_documents(self, branches: BranchDocumentRepository):
        await branches.initialize(BRANCH)
        paths = [p.value for p in await branches.list(BRANCH)]
        assert sorted(paths) == sorted(CORE_FILES)
        for name in CORE_FILES:
            data = json.loads((branches.root / "feature-x" / name).read_text(encoding="utf-8"))
            assert data["schema"] == "memory_document_v2"
            assert data["metadata"]["path"] == name

    @pytest.mark.asyncio
    async def test_initialize_does_not_overwrite(self, branches: BranchDocumentRepository):
        await branches.initialize(BRANCH)
        progress = branches.root / "feature-x" / "progress.json"
        progress.write_text('{"custom": true}', encoding="utf-8")
        await branches.initialize(BRANCH)
        assert json.loads(progress.read_text(encoding="utf-8")) == {"custom": True}

    @pytest.mark.asyncio
    async def test_exists(self, branches: BranchDocumentRepository):
        assert await branches.exists(BRANCH) is False
        await branches.initialize(BRANCH)
        assert await branches.exists(BRANCH) is True

    @pytest.mark.asyncio
    async def test_exists_with_invalid_name(self, branches: BranchDocumentRepository):
        assert await branches.exists("no-namespace") is False

    @pytest.mark.asyncio
    async def test_validate_structure(self, branches: BranchDocumentRepository):
        assert await branches.validate_structure(BRANCH) is False
        await branches.initialize(BRANCH)
        assert await branches.validate_structure(BRANCH) is True
        (branches.root / "feature-x" / "progress.json").unlink()
        assert await branches.validate_structure(BRANCH) is False

    @pytest.mark.asyncio
    async def test_validate_structure_invalid_name(self, branches: BranchDocumentRepository):
        assert await branches.validate_structure("main") is False

    @pytest.mark.asyncio
    async def test_save_auto_initializes(self, branches: BranchDocumentRepository):
        await branches.save(BRANCH, _doc("notes/a.md", "hello"))
        assert await branches.validate_structure(BRANCH) is True

    @pytest.mark.asyncio
    async def test_list_missing_branch(self, branches: BranchDocumentRepository):
        with pytest.raises(BranchNotFoundError):
            await branches.list("feature/missing")

    @pytest.mark.asyncio
    async def test_read_core_files(self, branches: BranchDocumentRepository):
        await branches.initialize(BRANCH)
        core = await branches.read_core_files(BRANCH)
        assert set(core) == set(CORE_FILES)

    @pytest.mark.asyncio
    async def test_recent_branches(self, branches: BranchDocumentRepository):
        await branches.initialize("feature/a")
        await branches.initialize("fix/b-1")
        (branches.root / "loose").mkdir()
        names = {r.branch.name for r in await branches.recent_branches()}
        assert {"feature/a", "fix/b-1"} <= names
        assert len(await branches.recent_branches(limit=1)) == 1


class TestDocumentCrud:
    @pytest.mark.asyncio
    async def test_round_trip_markdown_with_tags(self, branches: BranchDocumentRepository):
        outcome = await branches.save(BRANCH, _doc("notes/a.md", "# A\n\nbody", ["alpha"]))
        assert outcome.index_error is None
        doc = await branches.get(BRANCH, "notes/a.md")
        assert doc is not None
        assert doc.tag_values == {"alpha"}
        assert "body" in doc.content
        assert doc.title == "A"

    @pytest.mark.asyncio
    async def test_untagged_text_written_verbatim(self, branches: BranchDocumentRepository):
        await branches.save(BRANCH, _doc("plain.txt", "just text\n"))
        raw = (branches.root / "feature-x" / "plain.txt").read_text(encoding="utf-8")
        assert raw == "just text\n"

    @pytest.mark.asyncio
    async def test_json_tags_stored_in_metadata(self, branches: BranchDocumentRepository):
        await branches.save(BRANCH, _doc("data.json", '{"a": 1}', ["x", "y"]))
        raw = json.loads((branches.root / "feature-x" / "data.json").read_text(encoding="utf-8"))
        assert raw["a"] == 1
        assert raw["metadata"]["tags"] == ["x", "y"]
        doc = await branches.get(BRANCH, "data.json")
        assert doc.tag_values == {"x", "y"}

    @pytest.mark.asyncio
    async def test_untagged_json_gets_metadata(self, branches: BranchDocumentRepository):
        await branches.save(BRANCH, _doc("list.json", '{"items": ["apple"]}'))
        raw = json.loads((branches.root / "feature-x" / "list.json").read_text(encoding="utf-8"))
        assert raw["items"] == ["apple"]
        assert raw["metadata"]["tags"] == []
        assert raw["metadata"]["version"] == 1
        assert raw["metadata"]["path"] == "list.json"
        assert "schema" not in raw

    @pytest.mark.asyncio
    async def test_json_array_kept_as_is(self, branches: BranchDocumentRepository):
        await branches.save(BRANCH, _doc("list.json", '["apple"]'))
        raw = (branches.root / "feature-x" / "list.json").read_text(encoding="utf-8")
        assert raw == '["apple"]'

    @pytest.mark.asyncio
    @pytest.mark.parametrize("path,first,second", [
        ("v.json", '{"a": 1}', '{"a": 2}'),
        ("v.md", "one", "two"),
    ])
    async def test_untagged_version_survives_reload(self, branches: BranchDocumentRepository, path, first, second):
        saved = (await branches.save(BRANCH, _doc(path, first))).document
        await branches.save(BRANCH, saved.update_content(second))
        reloaded = await branches.get(BRANCH, path)
        assert reloaded.version == 2
        third = (await branches.save(BRANCH, reloaded.update_content(first))).document
        assert third.version == 3
        assert (await branches.get(BRANCH, path)).version == 3

    @pytest.mark.asyncio
    async def test_inline_tag_markers(self, branches: BranchDocumentRepository):
        await branches.initialize(BRANCH)
        note = branches.root / "feature-x" / "notes.md"
        note.write_text("# Notes\n\ntags: #design #api\n\nBody text.\n", encoding="utf-8")
        doc = await branches.get(BRANCH, "notes.md")
        assert [t.value for t in doc.tags] == ["design", "api"]
        hits = await branches.find_by_tags(BRANCH, ["api"])
        assert [d.path.value for d in hits] == ["notes.md"]

    @pytest.mark.asyncio
    async def test_front_matter_tags_win_over_inline(self, branches: BranchDocumentRepository):
        await branches.save(BRANCH, _doc("n.md", "tags: #old\n", ["new"]))
        doc = await branches.get(BRANCH, "n.md")
        assert doc.tag_values == {"new"}
        cleared = await branches.save(BRANCH, doc.update_tags([]))
        assert (await branches.get(BRANCH, "n.md")).tags == ()
        assert cleared.document.version == 2

    @pytest.mark.asyncio
    async def test_invalid_json_rejected_before_write(self, branches: BranchDocumentRepository):
        with pytest.raises(ValidationError):
            await branches.save(BRANCH, _doc("bad.json", "{not json"))
        assert not (branches.root / "feature-x").exists()

    @pytest.mark.asyncio
    async def test_corrupt_json_on_disk_still_readable(self, branches: BranchDocumentRepository):
        await branches.initialize(BRANCH)
        (branches.root / "feature-x" / "broken.json").write_text("{oops", encoding="utf-8")
        doc = await branches.get(BRANCH, "broken.json")
        assert doc is not None
        assert doc.content == "{oops"
        assert doc.tags == ()

    @pytest.mark.asyncio
    async def test_version_from_metadata(self, branches: BranchDocumentRepository):
        await branches.save(BRANCH, _doc("v.json", '{"a": 1}', ["x"]).update_content('{"a": 2}'))
        doc = await branches.get(BRANCH, "v.json")
        assert doc.version == 2

    @pytest.mark.asyncio
    async def test_get_missing(self, branches: BranchDocumentRepository):
        assert await branches.get(BRANCH, "nope.md") is None

    @pytest.mark.asyncio
    async def test_md_falls_back_to_json(self, branches: BranchDocumentRepository):
        await branches.save(BRANCH, _doc("notes/plan.json", '{"a": 1}'))
        doc = await branches.get(BRANCH, "notes/plan.md")
        assert doc is not None
        assert doc.path.value == "notes/plan.json"

    @pytest.mark.asyncio
    async def test_get_rejects_traversal(self, branches: BranchDocumentRepository):
        with pytest.raises(ValidationError):
            await branches.get(BRANCH, "../outside.json")

    @pytest.mark.asyncio
    async def test_delete(self, branches: BranchDocumentRepository):
        await branches.save(BRANCH, _doc("a.md", "a"))
        removed = await branches.delete(BRANCH, "a.md")
        assert removed.deleted is True
        assert removed.index_updated
        assert (await branches.delete(BRANCH, "a.md")).deleted is False
        assert await branches.get(BRANCH, "a.md") is None

    @pytest.mark.asyncio
    async def test_list_excludes_index_artifacts(self, branches: BranchDocumentRepository):
        await branches.save(BRANCH, _doc("a.md", "a", ["t"]))
        root = branches.root / "feature-x"
        assert (root / "_index.json").exists()
        assert (root / "tags" / "index.json").exists()
        paths = [p.value for p in await branches.list(BRANCH)]
        assert "_index.json" not in paths
        assert "tags/index.json" not in paths
        assert "a.md" in paths


class TestFindByTags:
    @pytest.mark.asyncio
    async def test_and_or(self, branches: BranchDocumentRepository):
        await branches.save(BRANCH, _doc("a.md", "a", ["x", "y"]))
        await branches.save(BRANCH, _doc("b.md", "b", ["y"]))
        any_y = {d.path.value for d in await branches.find_by_tags(BRANCH, ["x", "y"])}
        all_xy = {d.path.value for d in await branches.find_by_tags(BRANCH, ["x", "y"], match_all=True)}
        assert {"a.md", "b.md"} <= any_y
        assert all_xy == {"a.md"}

    @pytest.mark.asyncio
    async def test_zero_tags_is_empty(self, branches: BranchDocumentRepository):
        await branches.save(BRANCH, _doc("a.md", "a", ["x"]))
        assert await branches.find_by_tags(BRANCH, [], match_all=True) == []
        assert await branches.find_by_tags(BRANCH, [], match_all=False) == []


class TestIndexFailure:
    @pytest.mark.asyncio
    async def test_rebuild_failure_does_not_undo_write(self, branches: BranchDocumentRepository, monkeypatch):
        await branches.initialize(BRANCH)

        async def broken_rebuild(repository, scope=None):
            raise StorageError("disk full")

        monkeypatch.setattr(branches.index_builder, "rebuild", broken_rebuild)
        outcome = await branches.save(BRANCH, _doc("a.md", "kept"))
        assert isinstance(outcome.index_error, StorageError)
        assert not outcome.index_updated
        doc = await branches.get(BRANCH, "a.md")
        assert doc.content == "kept"


    @pytest.mark.asyncio
    async def test_delete_reports_index_failure(self, branches: BranchDocumentRepository, monkeypatch):
        await branches.save(BRANCH, _doc("a.md", "a", ["x"]))

        async def broken_rebuild(repository, scope=None):
            raise StorageError("disk full")

        monkeypatch.setattr(branches.index_builder, "rebuild", broken_rebuild)
        outcome = await branches.delete(BRANCH, "a.md")
        assert outcome.deleted is True
        assert isinstance(outcome.index_error, StorageError)
        assert not outcome.index_updated


class TestDocumentValidation:
    @pytest.mark.asyncio
    async def test_core_document_needs_envelope(self, branches: BranchDocumentRepository):
        await branches.initialize(BRANCH)
        target = branches.root / "feature-x" / "branchContext.json"
        before = target.read_text(encoding="utf-8")
        with pytest.raises(ValidationError, match="missing required key"):
            await branches.save(BRANCH, _doc("branchContext.json", '{"a": 1}'))
        assert target.read_text(encoding="utf-8") == before

    @pytest.mark.asyncio
    async def test_core_document_field_types(self, branches: BranchDocumentRepository):
        await branches.initialize(BRANCH)
        core = await branches.read_core_files(BRANCH)
        data = json.loads(core["progress.json"].content)
        data["content"]["knownIssues"] = "none"
        with pytest.raises(ValidationError, match="knownIssues"):
            await branches.save(BRANCH, core["progress.json"].update_content(json.dumps(data)))

    @pytest.mark.asyncio
    async def test_valid_core_update_accepted(self, branches: BranchDocumentRepository):
        await branches.initialize(BRANCH)
        core = await branches.read_core_files(BRANCH)
        data = json.loads(core["activeContext.json"].content)
        data["content"]["currentWork"] = "indexing"
        outcome = await branches.save(BRANCH, core["activeContext.json"].update_content(json.dumps(data)))
        assert outcome.document.version == 2

    @pytest.mark.asyncio
    async def test_envelope_content_must_be_object(self, branches: BranchDocumentRepository):
        body = json.dumps({"schema": "memory_document_v2", "metadata": {}, "content": "text"})
        with pytest.raises(ValidationError, match="content must be an object"):
            await branches.save(BRANCH, _doc("notes/plan.json", body))

    @pytest.mark.asyncio
    async def test_envelope_metadata_types(self, branches: BranchDocumentRepository):
        body = json.dumps({"schema": "memory_document_v2", "metadata": {"title": 3}, "content": {"a": 1}})
        with pytest.raises(ValidationError, match="metadata.title"):
            await branches.save(BRANCH, _doc("notes/plan.json", body))

    @pytest.mark.asyncio
    async def test_plain_json_not_checked_as_envelope(self, branches: BranchDocumentRepository):
        await branches.save(BRANCH, _doc("notes/data.json", '{"content": "free form"}'))
        assert await branches.get(BRANCH, "notes/data.json") is not None

    @pytest.mark.asyncio
    async def test_core_names_only_special_in_branches(self, global_repo: GlobalDocumentRepository):
        await global_repo.save(None, _doc("progress.json", '{"a": 1}'))
        assert await global_repo.get(None, "progress.json") is not None


class TestGlobalRepository:
    @pytest.mark.asyncio
    async def test_initialize(self, global_repo: GlobalDocumentRepository):
        await global_repo.initialize()
        assert (global_repo.root / "tags" / "index.json").exists()
        assert (global_repo.root / "_global_index.json").exists()
        assert await global_repo.validate_structure() is True

    @pytest.mark.asyncio
    async def test_exists_is_resolvable(self, global_repo: GlobalDocumentRepository):
        await global_repo.initialize()
        assert await global_repo.exists() is True

    @pytest.mark.asyncio
    async def test_exists_before_initialize(self, global_repo: GlobalDocumentRepository):
        assert await global_repo.exists() is True
        assert not global_repo.root.exists()

    @pytest.mark.asyncio
    async def test_first_save_creates_layout(self, global_repo: GlobalDocumentRepository):
        await global_repo.save(None, _doc("a.md", "a"))
        assert await global_repo.validate_structure() is True

    @pytest.mark.asyncio
    async def test_list_missing_root(self, global_repo: GlobalDocumentRepository):
        assert await global_repo.list() == []

    @pytest.mark.asyncio
    async def test_scope_argument_ignored(self, global_repo: GlobalDocumentRepository):
        await global_repo.save(None, _doc("core/glossary.md", "terms", ["glossary"]))
        doc = await global_repo.get("anything", "core/glossary.md")
        assert doc is not None
        assert doc.tag_values == {"glossary"}

    @pytest.mark.asyncio
    async def test_initialize_keeps_existing_placeholder(self, global_repo: GlobalDocumentRepository):
        await global_repo.save(None, _doc("a.md", "a", ["t"]))
        await global_repo.initialize()
        legacy = json.loads((global_repo.root / "tags" / "index.json").read_text(encoding="utf-8"))
        assert "t" in legacy["content"]["tagMap"]
