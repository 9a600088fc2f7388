"""Memory store: scoped markdown records + derived index, search and link graph.

Layout (one per scope root):
    ~/.claude/memory/                  # user scope
    <repo>/.claude/memory/             # project scope
    <repo>/.claude/memory/local/       # local scope (not shared)
    <enterprise path>/                 # enterprise scope, opt-in
    ├── permanent/
    │   └── gotcha-redis-pool.md       # One record per file, YAML frontmatter
    ├── index.json                     # Derived index, rebuildable from permanent/
    └── .versions/                     # Timestamped backups (10 per record)

Scope precedence for ties and duplicate ids: user > project > local > enterprise.
"""
