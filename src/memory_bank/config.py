"""Configuration loading from environment variables and memory-bank.toml."""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib
from pathlib import Path

from memory_bank.memory.types import BranchInfo

_DEFAULT_DOCS_ROOT = Path("./docs")
_CONFIG_FILENAME = "memory-bank.toml"

SUPPORTED_LANGUAGES = ("en", "ja", "zh")

GLOBAL_MEMORY_DIR = "global-memory-bank"
BRANCH_MEMORY_DIR = "branch-memory-bank"


@dataclass
class StorageConfig:
    """Retry tuning for the storage adapter. Delays are in seconds."""

    max_retries: int = 3
    mkdir_retries: int = 2
    base_delay: float = 0.3
    backoff_factor: float = 2.0
    max_delay: float = 2.0


@dataclass
class MemoryBankConfig:
    """Top-level memory bank configuration."""

    docs_root: Path = _DEFAULT_DOCS_ROOT
    language: str = "en"
    log_level: str = "INFO"
    storage: StorageConfig = field(default_factory=StorageConfig)

    def __post_init__(self) -> None:
        self.docs_root = Path(self.docs_root)
        if self.language not in SUPPORTED_LANGUAGES:
            raise ValueError(
                f"Unsupported language {self.language!r}, expected one of {', '.join(SUPPORTED_LANGUAGES)}"
            )


def load_config(config_path: Path | None = None) -> MemoryBankConfig:
    """Load configuration from environment variables and optional memory-bank.toml.

    Priority: environment variables > memory-bank.toml > defaults.
    """
    file_data: dict = {}
    if config_path and config_path.exists():
        file_data = tomllib.loads(config_path.read_text())
    else:
        # Search current dir and ~/.memory-bank/
        for candidate in [Path.cwd() / _CONFIG_FILENAME, Path.home() / ".memory-bank" / _CONFIG_FILENAME]:
            if candidate.exists():
                file_data = tomllib.loads(candidate.read_text())
                break

    storage_data = file_data.get("storage", {})

    docs_root = (
        os.getenv("MEMORY_BANK_ROOT")
        or os.getenv("DOCS_ROOT")
        or file_data.get("docs_root")
        or str(_DEFAULT_DOCS_ROOT)
    )

    config = MemoryBankConfig(
        docs_root=Path(docs_root).expanduser(),
        language=os.getenv("MEMORY_BANK_LANGUAGE", file_data.get("language", "en")),
        log_level=os.getenv("MEMORY_BANK_LOG_LEVEL", file_data.get("log_level", "INFO")),
        storage=StorageConfig(
            max_retries=int(storage_data.get("max_retries", 3)),
            mkdir_retries=int(storage_data.get("mkdir_retries", 2)),
            base_delay=float(storage_data.get("base_delay", 0.3)),
            backoff_factor=float(storage_data.get("backoff_factor", 2.0)),
            max_delay=float(storage_data.get("max_delay", 2.0)),
        ),
    )
    return config


class ConfigProvider:
    """Answers layout questions for the repositories."""

    def __init__(self, config: MemoryBankConfig) -> None:
        self.config = config

    @property
    def language(self) -> str:
        return self.config.language

    @property
    def docs_root(self) -> Path:
        return self.config.docs_root

    def global_memory_path(self) -> Path:
        return self.config.docs_root / GLOBAL_MEMORY_DIR

    def branch_root(self) -> Path:
        return self.config.docs_root / BRANCH_MEMORY_DIR

    def branch_memory_path(self, branch: BranchInfo | str) -> Path:
        info = branch if isinstance(branch, BranchInfo) else BranchInfo(branch)
        return self.branch_root() / info.safe_name
