"""Value types for the memory bank: paths, tags, branches and documents."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import Any, Iterable

from memory_bank.errors import ValidationError

JSON_DOCUMENT_SCHEMA = "memory_document_v2"

# Characters that are unsafe on at least one supported filesystem
_INVALID_PATH_CHARS = re.compile(r'[<>:"|?*\x00-\x1f]')
_DRIVE_LETTER = re.compile(r"^[a-zA-Z]:")
_TAG_RE = re.compile(r"^[a-z0-9-]+$")
_TAG_INVALID_CHARS = re.compile(r"[^a-z0-9-]")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(dt: datetime) -> str:
    """Format as ISO 8601 UTC with millisecond precision and a ``Z`` suffix."""
    return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: Any) -> datetime | None:
    """Parse a stored timestamp. Returns None for anything unparseable."""
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str) and value:
        try:
            dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


# ── Document paths ────────────────────────────────────────


@dataclass(frozen=True)
class DocumentPath:
    """Relative, normalized, slash-separated document identifier.

    Normalization collapses doubled slashes and ``.`` segments. Construction
    fails with ValidationError for empty, absolute or traversing paths.
    """

    value: str

    def __post_init__(self) -> None:
        object.__setattr__(self, "value", self._normalize(self.value))

    @staticmethod
    def _normalize(raw: str) -> str:
        if not isinstance(raw, str) or not raw.strip():
            raise ValidationError("Document path cannot be empty")
        if "\\" in raw:
            raise ValidationError(
                "Document path cannot contain backslashes. Use forward slashes (/) instead.",
                details={"path": raw},
            )
        if raw.startswith("/") or _DRIVE_LETTER.match(raw):
            raise ValidationError("Document path cannot be absolute", details={"path": raw})
        if raw.endswith("/"):
            raise ValidationError("Document path cannot end with a slash", details={"path": raw})
        if _INVALID_PATH_CHARS.search(raw):
            raise ValidationError(
                'Document path contains invalid characters (<, >, :, ", |, ?, *)',
                details={"path": raw},
            )

        segments = [s for s in raw.split("/") if s not in ("", ".")]
        if ".." in segments:
            raise ValidationError('Document path cannot contain ".."', details={"path": raw})
        if not segments:
            raise ValidationError("Document path cannot be empty", details={"path": raw})
        return "/".join(segments)

    def __str__(self) -> str:
        return self.value

    @property
    def directory(self) -> str:
        head, _, _ = self.value.rpartition("/")
        return head

    @property
    def filename(self) -> str:
        return self.value.rpartition("/")[2]

    @property
    def basename(self) -> str:
        return PurePosixPath(self.filename).stem if "." in self.filename else self.filename

    @property
    def extension(self) -> str:
        name = self.filename
        return name.rpartition(".")[2] if "." in name else ""

    @property
    def is_json(self) -> bool:
        return self.extension.lower() == "json"

    def with_extension(self, extension: str) -> DocumentPath:
        if not extension:
            raise ValidationError("Extension cannot be empty")
        name = f"{self.basename}.{extension}"
        return DocumentPath(f"{self.directory}/{name}" if self.directory else name)

    def to_alternate_format(self) -> DocumentPath:
        """``.md`` <-> ``.json`` counterpart; other extensions map to themselves."""
        ext = self.extension.lower()
        if ext == "md":
            return self.with_extension("json")
        if ext == "json":
            return self.with_extension("md")
        return self

    def infer_document_type(self) -> str:
        base = self.basename.lower()
        if "branchcontext" in base or "branch-context" in base:
            return "branch_context"
        if "activecontext" in base or "active-context" in base:
            return "active_context"
        if "progress" in base:
            return "progress"
        if "systempatterns" in base or "system-patterns" in base:
            return "system_patterns"
        return "generic"

    def resolve_under(self, root: Path) -> Path:
        """Absolute filesystem path below ``root``; refuses to escape it."""
        root_resolved = root.resolve()
        candidate = (root_resolved / self.value).resolve()
        if candidate != root_resolved and root_resolved not in candidate.parents:
            raise ValidationError(
                f"Document path resolves outside the scope root: {self.value}",
                details={"path": self.value, "root": root_resolved},
            )
        return candidate


# ── Tags ──────────────────────────────────────────────────


@dataclass(frozen=True)
class Tag:
    """Lowercase token of letters, digits and hyphens."""

    value: str

    def __post_init__(self) -> None:
        if not isinstance(self.value, str) or not self.value:
            raise ValidationError("Tag cannot be empty")
        if not _TAG_RE.match(self.value):
            raise ValidationError(
                "Tag must contain only lowercase letters, numbers, and hyphens",
                details={"tag": self.value},
            )

    def __str__(self) -> str:
        return self.value

    def as_hashtag(self) -> str:
        return f"#{self.value}"

    @classmethod
    def sanitize(cls, raw: str) -> Tag:
        """Lenient constructor for legacy metadata: lowercase, invalid chars -> ``-``."""
        return cls(_TAG_INVALID_CHARS.sub("-", str(raw).strip().lower()))


def coerce_tags(tags: Iterable[Tag | str]) -> tuple[Tag, ...]:
    """Validate and de-duplicate tags, keeping first-seen order."""
    seen: dict[str, Tag] = {}
    for tag in tags:
        t = tag if isinstance(tag, Tag) else Tag(tag)
        seen.setdefault(t.value, t)
    return tuple(seen.values())


# ── Branches ──────────────────────────────────────────────

_BRANCH_ESCAPES = {"%": "%25", "-": "%2D"}
_BRANCH_UNESCAPE_RE = re.compile(r"%(25|2D)")


def encode_branch_name(name: str) -> str:
    """Map a namespaced branch name to a filesystem-safe directory name.

    ``%`` becomes ``%25`` and ``-`` becomes ``%2D``; then every ``/`` becomes
    ``-``. Since literal hyphens are escaped, the mapping is reversible:
    ``feature/x`` -> ``feature-x``, ``fix/bug-1`` -> ``fix-bug%2D1``.
    """
    escaped = "".join(_BRANCH_ESCAPES.get(ch, ch) for ch in name)
    return escaped.replace("/", "-")


def decode_branch_name(safe_name: str) -> str:
    """Inverse of :func:`encode_branch_name`."""
    return _BRANCH_UNESCAPE_RE.sub(
        lambda m: "%" if m.group(1) == "25" else "-",
        safe_name.replace("-", "/"),
    )


@dataclass(frozen=True)
class BranchInfo:
    """A namespaced workstream identifier such as ``feature/login``."""

    name: str

    def __post_init__(self) -> None:
        name = self.name
        if not isinstance(name, str) or not name.strip():
            raise ValidationError("Branch name cannot be empty")
        if "/" not in name:
            raise ValidationError(
                "Branch name must include a namespace prefix with slash",
                details={"branch": name},
            )
        segments = name.split("/")
        if any(not s or s in (".", "..") for s in segments):
            raise ValidationError("Branch name has an empty or relative segment", details={"branch": name})
        if "\\" in name or _INVALID_PATH_CHARS.search(name) or any(c.isspace() for c in name):
            raise ValidationError("Branch name contains invalid characters", details={"branch": name})

    def __str__(self) -> str:
        return self.name

    @property
    def namespace(self) -> str:
        return self.name.split("/", 1)[0]

    @property
    def display_name(self) -> str:
        return self.name.split("/", 1)[1]

    @property
    def safe_name(self) -> str:
        return encode_branch_name(self.name)

    @classmethod
    def from_safe_name(cls, safe_name: str) -> BranchInfo:
        return cls(decode_branch_name(safe_name))


# ── Documents ─────────────────────────────────────────────


@dataclass(frozen=True, eq=False)
class MemoryDocument:
    """One stored artifact.

    Instances are immutable: the update methods return a new document with
    ``version + 1`` and a fresh ``last_modified``, or ``self`` when the new
    value equals the current one. Tag order is kept for display but ignored
    for equality.
    """

    path: DocumentPath
    content: str
    tags: tuple[Tag, ...] = ()
    last_modified: datetime = field(default_factory=utc_now)
    version: int = 1

    def __post_init__(self) -> None:
        object.__setattr__(self, "tags", coerce_tags(self.tags))
        if self.last_modified.tzinfo is None:
            object.__setattr__(self, "last_modified", self.last_modified.replace(tzinfo=timezone.utc))
        if not isinstance(self.version, int) or self.version < 1:
            raise ValidationError("Document version must be an integer >= 1", details={"version": self.version})

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, MemoryDocument):
            return NotImplemented
        return (
            self.path == other.path
            and self.content == other.content
            and self.tag_values == other.tag_values
            and self.last_modified == other.last_modified
            and self.version == other.version
        )

    def __hash__(self) -> int:
        return hash((self.path, self.content, self.tag_values, self.version))

    @property
    def tag_values(self) -> frozenset[str]:
        return frozenset(t.value for t in self.tags)

    @property
    def is_json(self) -> bool:
        return self.path.is_json

    def has_tag(self, tag: Tag | str) -> bool:
        value = tag.value if isinstance(tag, Tag) else tag
        return value in self.tag_values

    # ── Immutable updates ──

    def revise(
        self,
        *,
        content: str | None = None,
        tags: Iterable[Tag | str] | None = None,
    ) -> MemoryDocument:
        """Apply content and/or tag changes as a single version bump."""
        new_content = self.content if content is None else content
        new_tags = self.tags if tags is None else coerce_tags(tags)
        if new_content == self.content and frozenset(t.value for t in new_tags) == self.tag_values:
            return self
        return MemoryDocument(
            path=self.path,
            content=new_content,
            tags=new_tags,
            last_modified=utc_now(),
            version=self.version + 1,
        )

    def update_content(self, content: str) -> MemoryDocument:
        return self.revise(content=content)

    def update_tags(self, tags: Iterable[Tag | str]) -> MemoryDocument:
        return self.revise(tags=tags)

    def add_tag(self, tag: Tag | str) -> MemoryDocument:
        return self.revise(tags=(*self.tags, tag))

    def remove_tag(self, tag: Tag | str) -> MemoryDocument:
        value = tag.value if isinstance(tag, Tag) else tag
        return self.revise(tags=[t for t in self.tags if t.value != value])

    # ── Presentation ──

    @property
    def title(self) -> str | None:
        """``metadata.title`` for JSON documents, else the first ``# `` heading."""
        if self.is_json:
            try:
                data = json.loads(self.content)
            except ValueError:
                data = None
            if isinstance(data, dict) and isinstance(data.get("metadata"), dict):
                title = data["metadata"].get("title")
                if isinstance(title, str) and title:
                    return title
        for line in self.content.splitlines():
            line = line.strip()
            if line.startswith("# "):
                return line[2:].strip()
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path.value,
            "content": self.content,
            "tags": [t.value for t in self.tags],
            "lastModified": format_timestamp(self.last_modified),
            "version": self.version,
        }
