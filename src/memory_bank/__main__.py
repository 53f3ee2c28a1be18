"""Entry point: python -m memory_bank [init|reindex|search]

- "init [branch]":                    Create the global scope (and a branch scope)
- "reindex [branch]":                 Rebuild the tag index of one scope
- "search <tag>... [--all] [--branch name]": Tag search, OR unless --all
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys

from memory_bank.config import load_config


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def _build_tools() -> dict:
    config = load_config()
    _setup_logging(config.log_level)

    from memory_bank.core import MemoryBank
    from memory_bank.tools.document_tools import get_document_tools

    return get_document_tools(MemoryBank(config))


def _parse_search_args(args: list[str]) -> tuple[list[str], bool, str | None]:
    tags: list[str] = []
    match_all = False
    branch = None
    it = iter(args)
    for arg in it:
        if arg == "--all":
            match_all = True
        elif arg == "--branch":
            branch = next(it, None)
        else:
            tags.append(arg)
    return tags, match_all, branch


def _run(tool_name: str, **kwargs) -> None:
    tools = _build_tools()
    result = asyncio.run(tools[tool_name](**kwargs))
    print(json.dumps(result.to_dict(), indent=2, ensure_ascii=False))
    if not result.ok:
        sys.exit(1)


def main() -> None:
    cmd = sys.argv[1] if len(sys.argv) > 1 else ""
    rest = sys.argv[2:]

    if cmd == "init":
        _run("initialize", branch=rest[0] if rest else None)
    elif cmd == "reindex":
        _run("generate_and_rebuild_tag_index", branch=rest[0] if rest else None)
    elif cmd == "search":
        tags, match_all, branch = _parse_search_args(rest)
        _run("search", tags=tags, match_all=match_all, branch=branch)
    else:
        print("Usage: python -m memory_bank [init|reindex|search]")
        print("  init [branch]                        Create the global scope and optionally a branch")
        print("  reindex [branch]                     Rebuild the tag index (global when no branch)")
        print("  search <tag>... [--all] [--branch B]  Find documents by tag")
        sys.exit(1)


if __name__ == "__main__":
    main()
