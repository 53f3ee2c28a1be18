"""JSON Patch (RFC 6902) updates for JSON documents.

Operations are validated up front, then applied in order to a copy of the
parsed content with the ``jsonpatch`` library. Any failure leaves the stored
document untouched. The result is re-serialized with sorted keys so that
repeated patches produce stable diffs.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Iterable, Mapping

import jsonpatch
import jsonpointer

from memory_bank.errors import DocumentNotFoundError, InvalidStateError, ValidationError
from memory_bank.memory.repository import DocumentRepository, SaveOutcome, as_document_path
from memory_bank.memory.types import DocumentPath, Tag, coerce_tags

logger = logging.getLogger(__name__)

PATCH_OPS = ("add", "remove", "replace", "move", "copy", "test")

# "~" must be followed by 0 or 1 (RFC 6901 escapes)
_BAD_ESCAPE = re.compile(r"~(?![01])")

_MISSING = object()


def validate_pointer(pointer: Any, field_name: str = "path") -> str:
    if not isinstance(pointer, str) or not pointer:
        raise ValidationError(f"Patch {field_name} must be a non-empty JSON pointer")
    if not pointer.startswith("/"):
        raise ValidationError(
            f"Patch {field_name} must start with '/': {pointer}",
            details={field_name: pointer},
        )
    if _BAD_ESCAPE.search(pointer):
        raise ValidationError(
            f"Patch {field_name} has an invalid '~' escape: {pointer}",
            details={field_name: pointer},
        )
    return pointer


@dataclass(frozen=True)
class PatchOperation:
    """One validated JSON Patch operation."""

    op: str
    path: str
    value: Any = _MISSING
    from_path: str | None = None

    def __post_init__(self) -> None:
        if self.op not in PATCH_OPS:
            raise ValidationError(
                f"Unsupported patch operation {self.op!r}, expected one of {', '.join(PATCH_OPS)}",
                details={"op": self.op},
            )
        validate_pointer(self.path)
        if self.op in ("add", "replace", "test") and self.value is _MISSING:
            raise ValidationError(f"Patch operation '{self.op}' requires a value", details={"path": self.path})
        if self.op in ("move", "copy"):
            if self.from_path is None:
                raise ValidationError(f"Patch operation '{self.op}' requires 'from'", details={"path": self.path})
            validate_pointer(self.from_path, "from")

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> PatchOperation:
        if not isinstance(data, Mapping):
            raise ValidationError("Patch operation must be an object")
        return cls(
            op=data.get("op", ""),
            path=data.get("path", ""),
            value=data.get("value", _MISSING),
            from_path=data.get("from"),
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"op": self.op, "path": self.path}
        if self.value is not _MISSING:
            data["value"] = self.value
        if self.from_path is not None:
            data["from"] = self.from_path
        return data


def parse_operations(operations: Iterable[PatchOperation | Mapping[str, Any]]) -> list[PatchOperation]:
    ops = [op if isinstance(op, PatchOperation) else PatchOperation.from_dict(op) for op in operations]
    if not ops:
        raise ValidationError("At least one patch operation is required")
    return ops


class PatchEngine:
    """Applies JSON Patch operations to documents of one repository."""

    def __init__(self, repository: DocumentRepository) -> None:
        self.repository = repository

    async def apply(
        self,
        scope: Any,
        path: DocumentPath | str,
        operations: Iterable[PatchOperation | Mapping[str, Any]],
        tags: Iterable[Tag | str] | None = None,
    ) -> SaveOutcome:
        """Patch the document at ``path``; ``tags`` replaces the tag set when given."""
        doc_path = as_document_path(path)
        ops = parse_operations(operations)
        new_tags = coerce_tags(tags) if tags is not None else None

        doc = await self.repository.get(scope, doc_path)
        if doc is None:
            raise DocumentNotFoundError(f"Document not found: {doc_path}", details={"path": doc_path})

        try:
            current = json.loads(doc.content)
        except ValueError as e:
            raise InvalidStateError(
                f"Cannot patch {doc_path}: content is not valid JSON",
                details={"path": doc_path},
            ) from e

        try:
            patched = jsonpatch.JsonPatch([op.to_dict() for op in ops]).apply(current, in_place=False)
        except (jsonpatch.JsonPatchException, jsonpointer.JsonPointerException, TypeError) as e:
            raise ValidationError(
                f"Patch failed for {doc_path}: {e}",
                details={"path": doc_path},
            ) from e

        tags_changed = new_tags is not None and {t.value for t in new_tags} != doc.tag_values
        if patched == current and not tags_changed:
            logger.debug("Patch on %s changed nothing", doc_path)
            return SaveOutcome(doc)

        updated = doc.revise(
            content=json.dumps(patched, sort_keys=True, indent=2, ensure_ascii=False),
            tags=new_tags,
        )
        outcome = await self.repository.save(scope, updated)
        logger.info("Applied %d patch operations to %s (v%d)", len(ops), doc_path, updated.version)
        return outcome
