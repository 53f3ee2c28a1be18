"""Translate between stored file text and MemoryDocument.

JSON objects keep their tags and bookkeeping in a ``metadata`` object, the
one ``memory_document_v2`` envelopes carry; it is added on save when missing.
Plain-text documents keep them in a YAML front matter block, read and written
with python-frontmatter. Text without front matter may instead carry an
inline ``tags: #a #b`` line. A first-version text document with neither
front matter nor tags is stored byte-for-byte.
"""

from __future__ import annotations

import json
import logging
import re
import uuid
from datetime import datetime
from typing import Any

import frontmatter

from memory_bank.errors import ValidationError
from memory_bank.memory.types import (
    DocumentPath,
    MemoryDocument,
    Tag,
    format_timestamp,
    parse_timestamp,
)

logger = logging.getLogger(__name__)

_INLINE_TAGS_LINE = re.compile(r"^tags:[ \t]+((?:#[\w-]+[ \t]*)+)\r?$", re.MULTILINE)
_HASHTAG = re.compile(r"#([\w-]+)")

# Rewritten by every save
_MANAGED_META = ("path", "tags", "lastModified", "version")
# Filled in when the caller leaves them out
_DEFAULTED_META = ("id", "title", "documentType", "createdAt")


def _lenient_tags(raw: Any) -> list[Tag]:
    if isinstance(raw, str):
        raw = raw.split(",")
    if not isinstance(raw, (list, tuple)):
        return []
    tags: list[Tag] = []
    for item in raw:
        if item is None:
            continue
        try:
            tags.append(Tag.sanitize(str(item)))
        except ValidationError:
            logger.debug("Ignoring unusable tag %r", item)
    return tags


def _version(raw: Any) -> int:
    if isinstance(raw, int) and not isinstance(raw, bool) and raw >= 1:
        return raw
    return 1


def inline_tags(text: str) -> list[Tag]:
    """Tags from the first ``tags: #a #b`` line in ``text``."""
    match = _INLINE_TAGS_LINE.search(text)
    if match is None:
        return []
    return _lenient_tags(_HASHTAG.findall(match.group(1)))


# ── Decode ────────────────────────────────────────────────


def decode_document(path: DocumentPath, raw: str, modified: datetime) -> MemoryDocument:
    """Build a document from file text; ``modified`` is the file mtime fallback."""
    if path.is_json:
        return _decode_json(path, raw, modified)
    return _decode_text(path, raw, modified)


def _decode_json(path: DocumentPath, raw: str, modified: datetime) -> MemoryDocument:
    try:
        data = json.loads(raw)
    except ValueError:
        # Corrupt JSON is still returned so callers can see and replace it
        logger.warning("Document %s is not valid JSON, loading without tags", path)
        return MemoryDocument(path=path, content=raw, last_modified=modified)

    meta = data.get("metadata") if isinstance(data, dict) else None
    if not isinstance(meta, dict):
        return MemoryDocument(path=path, content=raw, last_modified=modified)

    return MemoryDocument(
        path=path,
        content=raw,
        tags=_lenient_tags(meta.get("tags")),
        last_modified=parse_timestamp(meta.get("lastModified")) or modified,
        version=_version(meta.get("version")),
    )


def _decode_text(path: DocumentPath, raw: str, modified: datetime) -> MemoryDocument:
    if not frontmatter.checks(raw):
        return MemoryDocument(path=path, content=raw, tags=inline_tags(raw), last_modified=modified)
    try:
        post = frontmatter.loads(raw)
    except Exception as e:
        logger.warning("Unreadable front matter in %s: %s", path, e)
        return MemoryDocument(path=path, content=raw, last_modified=modified)
    meta = dict(post.metadata)
    tags = _lenient_tags(meta["tags"]) if "tags" in meta else inline_tags(post.content)
    return MemoryDocument(
        path=path,
        content=raw,
        tags=tags,
        last_modified=parse_timestamp(meta.get("lastModified")) or modified,
        version=_version(meta.get("version")),
    )


# ── Encode ────────────────────────────────────────────────


def encode_document(document: MemoryDocument) -> str:
    """Render the text that should be written for ``document``."""
    if document.is_json:
        return _encode_json(document)
    return _encode_text(document)


def _encode_json(document: MemoryDocument) -> str:
    try:
        data = json.loads(document.content)
    except ValueError as e:
        raise ValidationError(
            f"Content of {document.path} is not valid JSON: {e}",
            details={"path": document.path},
        ) from e

    if not isinstance(data, dict):
        # Arrays and scalars have nowhere to keep metadata
        if document.tags:
            raise ValidationError(
                f"Tags on {document.path} need a JSON object at the top level",
                details={"path": document.path},
            )
        return document.content

    stamp = format_timestamp(document.last_modified)
    meta = data.get("metadata")
    if not isinstance(meta, dict):
        meta = data["metadata"] = {}
    meta.setdefault("id", str(uuid.uuid4()))
    meta.setdefault("title", document.title or document.path.basename)
    meta.setdefault("documentType", document.path.infer_document_type())
    meta["path"] = document.path.value
    meta["tags"] = [t.value for t in document.tags]
    meta["lastModified"] = stamp
    meta.setdefault("createdAt", stamp)
    meta["version"] = document.version
    return json.dumps(data, indent=2, ensure_ascii=False)


def _load_front_matter(document: MemoryDocument) -> frontmatter.Post:
    try:
        return frontmatter.loads(document.content)
    except Exception as e:
        raise ValidationError(
            f"Front matter of {document.path} cannot be parsed: {e}",
            details={"path": document.path},
        ) from e


def _encode_text(document: MemoryDocument) -> str:
    has_front_matter = frontmatter.checks(document.content)
    if not has_front_matter and not document.tags and document.version == 1:
        return document.content

    post = _load_front_matter(document) if has_front_matter else frontmatter.Post(document.content)
    # An explicit empty list keeps inline markers in the body from coming back
    post.metadata["tags"] = [t.value for t in document.tags]
    post.metadata["version"] = document.version
    post.metadata["lastModified"] = format_timestamp(document.last_modified)
    return frontmatter.dumps(post) + "\n"


# ── Comparison ────────────────────────────────────────────


def same_body(path: DocumentPath, stored: str, candidate: str) -> bool:
    """Whether saving ``candidate`` over ``stored`` would only touch bookkeeping.

    Metadata the codec rewrites on every save is ignored, and so are the
    defaults it filled in earlier when the candidate leaves them out.
    """
    if stored == candidate:
        return True
    if path.is_json:
        return _same_json_body(stored, candidate)
    return _same_text_body(stored, candidate)


def _same_json_body(stored: str, candidate: str) -> bool:
    try:
        old, new = json.loads(stored), json.loads(candidate)
    except ValueError:
        return False
    if not isinstance(old, dict) or not isinstance(new, dict):
        return old == new

    old_meta = old.pop("metadata", None)
    new_meta = new.pop("metadata", None)
    old_meta = dict(old_meta) if isinstance(old_meta, dict) else {}
    new_meta = dict(new_meta) if isinstance(new_meta, dict) else {}
    for key in _MANAGED_META:
        old_meta.pop(key, None)
        new_meta.pop(key, None)
    for key in _DEFAULTED_META:
        if key not in new_meta:
            old_meta.pop(key, None)
    return old == new and old_meta == new_meta


def _split_text(raw: str) -> tuple[dict[str, Any], str]:
    if not frontmatter.checks(raw):
        return {}, raw
    post = frontmatter.loads(raw)
    return dict(post.metadata), post.content


def _same_text_body(stored: str, candidate: str) -> bool:
    try:
        old_meta, old_body = _split_text(stored)
        new_meta, new_body = _split_text(candidate)
    except Exception as e:
        logger.debug("Front matter comparison skipped: %s", e)
        return False
    for key in _MANAGED_META:
        old_meta.pop(key, None)
        new_meta.pop(key, None)
    # python-frontmatter strips the body on load
    return old_meta == new_meta and old_body.strip() == new_body.strip()
