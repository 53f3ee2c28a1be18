"""Memory bank storage: scoped documents with a derived tag index.

Layout:
    <docs_root>/
    ├── global-memory-bank/
    │   ├── _global_index.json         # Current tag index (tag -> paths)
    │   ├── tags/index.json            # Legacy tag index document
    │   └── core/*.json, notes/*.md    # Shared documents
    └── branch-memory-bank/
        └── feature-login/             # Safe-encoded branch name
            ├── _index.json
            ├── tags/index.json
            ├── branchContext.json     # Seeded on first use
            ├── activeContext.json
            ├── progress.json
            └── systemPatterns.json

JSON documents use the ``memory_document_v2`` envelope; plain-text documents
keep their tags in YAML front matter. The index files are derived data and
are rebuilt after every write.
"""
