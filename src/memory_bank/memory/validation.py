"""Structural checks for JSON documents before they are written.

Any JSON object that declares ``schema: memory_document_v2`` must have an
object ``content`` and well-typed metadata. The four core branch documents
must be such envelopes, and their ``content`` fields must have the types the
seeded documents use.
"""

from __future__ import annotations

import json
from typing import Any

from memory_bank.errors import ValidationError
from memory_bank.memory.types import JSON_DOCUMENT_SCHEMA, DocumentPath

ENVELOPE_KEYS = ("schema", "metadata", "content")

_STRING_METADATA = ("id", "title", "documentType", "path", "lastModified", "createdAt")

# documentType -> {field: expected type}
_CORE_CONTENT_FIELDS: dict[str, dict[str, type]] = {
    "branch_context": {"branchName": str, "purpose": str, "background": str, "userStories": list},
    "active_context": {
        "currentWork": str,
        "recentChanges": list,
        "activeDecisions": list,
        "considerations": list,
        "nextSteps": list,
    },
    "progress": {
        "status": str,
        "currentState": str,
        "workingFeatures": list,
        "pendingImplementation": list,
        "knownIssues": list,
    },
    "system_patterns": {"technicalDecisions": list},
}

_TYPE_NAMES = {str: "a string", list: "a list", dict: "an object"}


def _fail(path: DocumentPath, message: str) -> ValidationError:
    return ValidationError(f"Invalid document {path}: {message}", details={"path": path})


def _check_metadata(path: DocumentPath, meta: Any) -> None:
    if not isinstance(meta, dict):
        raise _fail(path, "metadata must be an object")
    for key in _STRING_METADATA:
        if key in meta and not isinstance(meta[key], str):
            raise _fail(path, f"metadata.{key} must be a string")
    tags = meta.get("tags", [])
    if not isinstance(tags, list) or not all(isinstance(t, str) for t in tags):
        raise _fail(path, "metadata.tags must be a list of strings")
    version = meta.get("version", 1)
    if not isinstance(version, int) or isinstance(version, bool) or version < 1:
        raise _fail(path, "metadata.version must be a positive integer")


def _check_core_content(path: DocumentPath, doc_type: str, content: dict[str, Any]) -> None:
    for key, expected in _CORE_CONTENT_FIELDS.get(doc_type, {}).items():
        if key in content and not isinstance(content[key], expected):
            raise _fail(path, f"content.{key} must be {_TYPE_NAMES[expected]}")
    if doc_type == "system_patterns":
        for decision in content.get("technicalDecisions", []):
            if not isinstance(decision, dict):
                raise _fail(path, "content.technicalDecisions entries must be objects")


def validate_json_document(path: DocumentPath, text: str, core: bool = False) -> None:
    """Raise ValidationError when ``text`` is not an acceptable document body.

    ``core`` marks one of the branch's core documents, which must be a full
    ``memory_document_v2`` envelope.
    """
    try:
        data = json.loads(text)
    except ValueError as e:
        raise _fail(path, f"not valid JSON: {e}") from e

    if core:
        if not isinstance(data, dict):
            raise _fail(path, "core documents must be JSON objects")
        for key in ENVELOPE_KEYS:
            if key not in data:
                raise _fail(path, f"missing required key {key!r}")

    if not isinstance(data, dict) or data.get("schema") != JSON_DOCUMENT_SCHEMA:
        if core:
            raise _fail(path, f"schema must be {JSON_DOCUMENT_SCHEMA!r}")
        return

    _check_metadata(path, data.get("metadata", {}))
    content = data.get("content")
    if not isinstance(content, dict):
        raise _fail(path, "content must be an object")
    if core:
        _check_core_content(path, path.infer_document_type(), content)
