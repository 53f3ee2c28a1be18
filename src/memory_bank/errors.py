"""Error taxonomy shared by every layer of the memory bank.

Each error carries a ``kind`` string so the tool layer can turn it into a
discriminated result without inspecting the class hierarchy:

- ``validation``    malformed path / tag / branch name / patch operation
- ``not_found``     document, branch or index absent
- ``storage``       permission denied or I/O failure that survived retries
- ``invalid_state`` patch against content that is not JSON
"""

from __future__ import annotations

from typing import Any


class MemoryBankError(Exception):
    """Base class for all memory bank errors."""

    kind = "error"

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"kind": self.kind, "message": self.message}
        if self.details:
            data["details"] = {k: str(v) for k, v in self.details.items()}
        return data


class ValidationError(MemoryBankError):
    kind = "validation"


class NotFoundError(MemoryBankError):
    kind = "not_found"


class DocumentNotFoundError(NotFoundError):
    pass


class BranchNotFoundError(NotFoundError):
    pass


class StorageError(MemoryBankError):
    """I/O failure. The original exception is chained as ``__cause__``."""

    kind = "storage"


class StoragePermissionError(StorageError):
    pass


class InvalidStateError(MemoryBankError):
    kind = "invalid_state"
