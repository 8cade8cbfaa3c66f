"""
aimem CLI — Scriptable Access to a Memory Database

Commands:
    aimem init    [PATH]                        create store (+ .gitignore)
    aimem add     TYPE "content" [--tag T]      append an entry (stdin if "-")
    aimem show    ID                            display one entry
    aimem list    [--type T] [-k N]             most recent entries
    aimem search  "term" [--type T] [-k N]      full-text search
    aimem range   START END [--type T]          entries in a date range
    aimem edit    ID [--content C] [--set K=V]  edit content or metadata
    aimem append  ID "text"                     append an update block
    aimem deprecate ID [--superseded-by N]      mark progress as deprecated
    aimem context ["query"] [--budget N]        token-budgeted context -> stdout
    aimem budget  USED [--window N]             context window report
    aimem report  KIND [--save] [-k N]          synthesize a phase report
    aimem embed                                 compute pending embeddings
    aimem stats                                 store statistics
    aimem metrics [--days N] [--prune]          telemetry summary
    aimem export  [--format md|jsonl] [--out D] export entries
    aimem import  SOURCE [--dry-run]            import markdown or JSONL
    aimem backup  [--label L] [--markdown]      copy the database to .backup/
    aimem verify                                read-only integrity check
    aimem recover [--from FILE]                 restore the latest backup

Environment variables:
    AIMEM_DB        Path to SQLite database (default: .aimem/memory.db)
    AIMEM_CONFIG    Path to a JSON config file (default: none)
    AIMEM_BUDGET    Token budget for `context` (default: usable window)
    AIMEM_BACKEND   Backend preference: auto|sqlite|native-sqlite|memory

Precedence:
    CLI --flag  >  AIMEM_* env var  >  compiled default

Exit codes:
    0  Success
    1  Operational error (bad args, unknown id, validation failure)
    2  Internal failure (unexpected exception, I/O error)
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Env parsing (bad values fall back to defaults)
# ---------------------------------------------------------------------------


def _env_int(name: str, default: Optional[int]) -> Optional[int]:
    """Parse integer env var with fallback. Never raises on bad input."""
    v = os.environ.get(name)
    if not v:
        return default
    try:
        return int(v)
    except ValueError:
        return default


def _env_str(name: str, default: Optional[str]) -> Optional[str]:
    return os.environ.get(name, default)


# ---------------------------------------------------------------------------
# Resolvers
# ---------------------------------------------------------------------------


def _resolve_config(args: argparse.Namespace):
    """Config file (--config > AIMEM_CONFIG), then db/backend overrides."""
    from aimem.config import load_config
    path = getattr(args, "config", None) or _env_str("AIMEM_CONFIG", None)
    cfg = load_config(path)
    if getattr(args, "db", None):
        cfg.store.db_path = args.db
    elif os.environ.get("AIMEM_DB"):
        cfg.store.db_path = os.environ["AIMEM_DB"]
    backend = _env_str("AIMEM_BACKEND", None)
    if backend:
        cfg.store.backend = backend
    return cfg


def _resolve_budget(args: argparse.Namespace) -> Optional[int]:
    """Token budget: --budget > AIMEM_BUDGET > None (usable window)."""
    if getattr(args, "budget", None) is not None:
        return args.budget
    return _env_int("AIMEM_BUDGET", None)


def _open_store(args: argparse.Namespace):
    """Open a MemoryStore; creates the DB and parent dirs if needed."""
    from aimem.store import MemoryStore
    cfg = _resolve_config(args)
    db = cfg.store.db_path
    if db != ":memory:":
        Path(db).parent.mkdir(parents=True, exist_ok=True)
    return MemoryStore(cfg).open()


# ---------------------------------------------------------------------------
# Stderr helpers (respect --quiet)
# ---------------------------------------------------------------------------

_quiet = False


def _info(msg: str) -> None:
    """Print progress to stderr (suppressed by --quiet)."""
    if not _quiet:
        print(msg, file=sys.stderr)


def _warn(msg: str) -> None:
    """Print warning to stderr (always visible)."""
    print(msg, file=sys.stderr)


def _fail(msg: str) -> None:
    _warn(msg)
    sys.exit(1)


def _json_out(data: Any) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False))


def _print_entries(entries, as_json: bool) -> None:
    if as_json:
        out = []
        for e in entries:
            d = e.to_dict()
            d.pop("embedding", None)
            out.append(d)
        _json_out(out)
        return
    if not entries:
        _info("No entries found.")
        return
    for e in entries:
        first = e.content.strip().split("\n", 1)[0]
        print(f"  {e.id:>5}  {e.tag:28s} {first[:70]}")


def _parse_pairs(pairs: Optional[List[str]]) -> Dict[str, Any]:
    """KEY=VALUE pairs; targets accept comma-separated lists."""
    out: Dict[str, Any] = {}
    for pair in pairs or []:
        if "=" not in pair:
            _fail(f"Expected KEY=VALUE, got: {pair}")
        key, value = pair.split("=", 1)
        key = key.strip()
        if key == "targets":
            out[key] = [t.strip() for t in value.split(",") if t.strip()]
        else:
            out[key] = value.strip()
    return out


def _read_content(value: str) -> str:
    if value == "-":
        return sys.stdin.read()
    return value


# ===========================================================================
# Commands: init / add / show
# ===========================================================================


def cmd_init(args: argparse.Namespace) -> None:
    """Create the database (idempotent) and a .gitignore beside it."""
    from aimem.store import MemoryStore
    cfg = _resolve_config(args)
    db_path = Path(args.path) / "memory.db" if args.path else Path(cfg.store.db_path)
    existed = db_path.exists()
    db_path.parent.mkdir(parents=True, exist_ok=True)
    cfg.store.db_path = str(db_path)
    store = MemoryStore(cfg).open()
    report = store.migration
    store.close()

    gitignore = db_path.parent / ".gitignore"
    if not gitignore.exists():
        gitignore.write_text("*.db\n*.db-wal\n*.db-shm\n.backup/\n", encoding="utf-8")

    if existed:
        _info(f"Store exists: {db_path}")
        if report is not None and report.applied:
            _info(f"  Migrated to schema v{report.to_version}")
    else:
        _info(f"Memory store initialized: {db_path}")
    print(f'export AIMEM_DB="{db_path.resolve()}"')


def cmd_add(args: argparse.Namespace) -> None:
    """Append one entry; prints the new id."""
    from aimem.types import Entry, file_type_from_name
    store = _open_store(args)
    try:
        entry = Entry(
            file_type=file_type_from_name(args.type),
            content=_read_content(args.content),
            tag=args.tag or "",
            metadata=_parse_pairs(args.set),
        )
        if args.timestamp:
            entry.timestamp = args.timestamp
        entry_id = store.append_entry(entry)
        stored = store.get_entry(entry_id)
    finally:
        store.close()
    if getattr(args, "json", False):
        _json_out({"id": entry_id, "tag": stored.tag, "timestamp": stored.timestamp})
    else:
        print(entry_id)


def cmd_show(args: argparse.Namespace) -> None:
    store = _open_store(args)
    entry = store.get_entry(args.id)
    store.close()
    if entry is None:
        _fail(f"Entry not found: {args.id}")

    if getattr(args, "json", False):
        d = entry.to_dict()
        d.pop("embedding", None)
        _json_out(d)
        return
    print(f"ID:         {entry.id}")
    print(f"Type:       {entry.file_type}")
    print(f"Tag:        {entry.tag}")
    print(f"Timestamp:  {entry.timestamp}")
    print(f"Embedding:  {entry.embedding_state}")
    meta = entry.metadata.to_dict()
    if meta:
        print(f"Metadata:   {json.dumps(meta, ensure_ascii=False, sort_keys=True)}")
    print(f"\n--- Content ---\n{entry.content}")


# ===========================================================================
# Commands: list / search / range
# ===========================================================================


def cmd_list(args: argparse.Namespace) -> None:
    store = _open_store(args)
    try:
        if args.progress or args.phase:
            entries = store.query_by_metadata(
                progress=args.progress, phase=args.phase,
                file_type=args.type, limit=args.k,
            )
        else:
            entries = store.get_recent(args.type, args.k)
    finally:
        store.close()
    _print_entries(entries, getattr(args, "json", False))


def cmd_search(args: argparse.Namespace) -> None:
    store = _open_store(args)
    try:
        entries = store.full_text_search(args.term, args.k, file_type=args.type)
    finally:
        store.close()
    _print_entries(entries, getattr(args, "json", False))


def cmd_range(args: argparse.Namespace) -> None:
    store = _open_store(args)
    try:
        entries = store.query_by_date_range(args.type, args.start, args.end, args.k)
    finally:
        store.close()
    _print_entries(entries, getattr(args, "json", False))


# ===========================================================================
# Commands: edit / append / deprecate
# ===========================================================================


def cmd_edit(args: argparse.Namespace) -> None:
    if args.content is None and not args.set:
        _fail("Nothing to edit: pass --content and/or --set KEY=VALUE")
    store = _open_store(args)
    try:
        content = _read_content(args.content) if args.content is not None else None
        updated = store.edit_entry(
            args.id, content=content, metadata=_parse_pairs(args.set) or None,
            merge=not args.replace_metadata,
        )
    finally:
        store.close()
    if updated is None:
        _fail(f"Entry not found: {args.id}")
    _info(f"Entry {args.id} updated")


def cmd_append(args: argparse.Namespace) -> None:
    store = _open_store(args)
    try:
        updated = store.append_to_entry(args.id, _read_content(args.text))
    finally:
        store.close()
    if updated is None:
        _fail(f"Entry not found: {args.id}")
    _info(f"Entry {args.id} extended")


def cmd_deprecate(args: argparse.Namespace) -> None:
    store = _open_store(args)
    try:
        if args.superseded_by is not None:
            ok = store.mark_superseded(args.id, args.superseded_by)
        else:
            ok = store.mark_deprecated(args.id)
    finally:
        store.close()
    if not ok:
        _fail(f"Entry not found: {args.id}")
    _info(f"Entry {args.id} deprecated")


# ===========================================================================
# Commands: context / budget / embed (engine-backed)
# ===========================================================================


async def _run_context(cfg, args: argparse.Namespace, budget: Optional[int]):
    from aimem.engine import MemoryEngine
    async with MemoryEngine(cfg) as engine:
        selection = await engine.select_context(
            args.query, budget,
            file_types=args.type or None,
            threshold=args.threshold,
            allow_truncation=not args.no_truncate,
        )
        if args.document:
            text = engine.formatter.format_as_document(selection.entries)
        else:
            text = engine.render_context(selection)
    return selection, text


def cmd_context(args: argparse.Namespace) -> None:
    """Rank entries against a query and print what fits the budget."""
    cfg = _resolve_config(args)
    cfg.embedding.enabled = args.semantic
    budget = _resolve_budget(args)
    selection, text = asyncio.run(_run_context(cfg, args, budget))
    if getattr(args, "json", False):
        _json_out(selection.to_dict())
        return
    _info(
        f"[context] {selection.selected_count}/{selection.total_count} entries, "
        f"{selection.total_tokens}/{selection.budget} tokens"
        + (f", entry {selection.truncated_id} truncated" if selection.truncated_id else "")
    )
    if text:
        print(text)


def cmd_budget(args: argparse.Namespace) -> None:
    from aimem.tokens import get_context_budget
    cfg = _resolve_config(args)
    report = get_context_budget(args.used, args.window, cfg.budget)
    if getattr(args, "json", False):
        _json_out(report.to_dict())
        return
    print(f"Status:     {report.status}")
    print(f"Used:       {report.used} / {report.total} ({report.percent_used}%)")
    print(f"Remaining:  {report.remaining}")
    for rec in report.recommendations:
        print(f"  - {rec}")


def cmd_report(args: argparse.Namespace) -> None:
    """Synthesize a phase report; content to stdout, optionally stored."""
    from aimem.reports import synthesize_report
    store = _open_store(args)
    try:
        report = synthesize_report(
            store, args.kind, args.recent, file_types=args.type, title=args.title,
        )
        entry_id = store.append_entry(report.to_entry()) if args.save else None
    finally:
        store.close()
    if getattr(args, "json", False):
        data = report.to_dict()
        data["id"] = entry_id
        _json_out(data)
        return
    _info(f"[report] {report.report_type}: {report.source_count} source entries")
    if entry_id is not None:
        _info(f"[report] saved as {report.file_type} entry {entry_id}")
    print(report.content, end="")


async def _run_embed(cfg) -> Dict[str, Any]:
    from aimem.engine import MemoryEngine
    engine = MemoryEngine(cfg)
    try:
        await engine.start()
        await engine.flush()
        return {
            "embedded": engine.embeddings.embedded,
            "failed": engine.embeddings.failed,
            "indexed": engine.vectors.size,
            "pending": engine.store.stats()["embeddings"].get("pending", 0),
        }
    finally:
        await engine.close()


def cmd_embed(args: argparse.Namespace) -> None:
    """Compute embeddings for every pending entry."""
    cfg = _resolve_config(args)
    cfg.embedding.enabled = True
    result = asyncio.run(_run_embed(cfg))
    if getattr(args, "json", False):
        _json_out(result)
    else:
        _info(
            f"[embed] {result['embedded']} embedded, {result['failed']} failed, "
            f"{result['indexed']} indexed, {result['pending']} still pending"
        )
    if result["failed"] or result["pending"]:
        sys.exit(1)


# ===========================================================================
# Commands: stats / metrics
# ===========================================================================


def cmd_stats(args: argparse.Namespace) -> None:
    store = _open_store(args)
    stats = store.stats()
    store.close()

    if getattr(args, "json", False):
        stats["status"] = "ok"
        _json_out(stats)
        return
    print("Memory Store Statistics")
    print("=" * 40)
    print(f"  Database:       {stats['db_path']}")
    print(f"  Backend:        {stats['backend']}")
    print(f"  Schema version: {stats['schema_version']}")
    print(f"  FTS5:           {'available' if stats['fts5'] else 'unavailable'}")
    print(f"  Total entries:  {stats['total_entries']}")
    print("  By type:")
    for typ, count in sorted(stats["by_type"].items()):
        print(f"    {typ:18s}: {count}")
    print("  Embeddings:")
    for state, count in sorted(stats["embeddings"].items()):
        print(f"    {state:18s}: {count}")


def cmd_metrics(args: argparse.Namespace) -> None:
    from aimem.metrics import MetricsService
    store = _open_store(args)
    try:
        service = MetricsService(store, store.config.metrics)
        if args.prune:
            removed = service.prune(args.retention)
            _info(f"[metrics] pruned {removed} row(s)")
        summary = service.summary(args.days)
    finally:
        store.close()

    if getattr(args, "json", False):
        _json_out(summary)
        return
    tokens = summary["tokens"]
    print(f"Telemetry (last {args.days} days)")
    print("=" * 40)
    print(f"  Token records:  {tokens['count']}")
    print(f"  Total tokens:   {tokens['total_tokens']}")
    print(f"  Avg tokens:     {tokens['avg_tokens']}")
    if tokens["latest_status"]:
        print(f"  Latest status:  {tokens['latest_status']}")
    if summary["queries"]:
        print("  Queries:")
        for op, q in summary["queries"].items():
            print(f"    {op:22s} n={q['count']:<5} avg={q['avg_ms']}ms p95={q['p95_ms']}ms")


# ===========================================================================
# Commands: export / import
# ===========================================================================


def cmd_export(args: argparse.Namespace) -> None:
    from aimem.export import export_jsonl, export_markdown
    store = _open_store(args)
    try:
        if args.format == "jsonl":
            if args.out:
                with open(args.out, "w", encoding="utf-8") as fh:
                    export_jsonl(store, file_type=args.type, output=fh, log=_info)
            else:
                export_jsonl(store, file_type=args.type, log=_info)
        else:
            written = export_markdown(
                store, args.out or ".", file_types=[args.type] if args.type else None,
                log=_info,
            )
            if getattr(args, "json", False):
                _json_out(written)
    finally:
        store.close()


def cmd_import(args: argparse.Namespace) -> None:
    from aimem.export import import_jsonl, import_markdown
    store = _open_store(args)
    try:
        if args.source == "-":
            result = import_jsonl(store, sys.stdin, dry_run=args.dry_run, log=_info)
        elif args.source.endswith((".jsonl", ".json")):
            result = import_jsonl(store, args.source, dry_run=args.dry_run, log=_info)
        else:
            try:
                result = import_markdown(store, args.source, dry_run=args.dry_run, log=_info)
            except FileNotFoundError:
                _fail(f"No such file or directory: {args.source}")
    finally:
        store.close()
    if getattr(args, "json", False):
        _json_out(result.to_dict())
    if result.errors:
        sys.exit(1)


# ===========================================================================
# Commands: backup / verify / recover
# ===========================================================================


def cmd_backup(args: argparse.Namespace) -> None:
    store = _open_store(args)
    try:
        if args.markdown:
            from aimem.export import backup_markdown
            path = backup_markdown(store, label=args.label, log=_info)
        else:
            path = store.backup(args.label)
    finally:
        store.close()
    print(path)


def cmd_verify(args: argparse.Namespace) -> None:
    from aimem.recovery import verify_integrity
    db = _resolve_config(args).store.db_path
    report = verify_integrity(db)
    if getattr(args, "json", False):
        _json_out({"valid": report.valid, "issues": report.issues})
    elif report.valid:
        _info(f"{db}: ok")
    else:
        for issue in report.issues:
            _warn(f"{db}: {issue}")
    if not report.valid:
        sys.exit(1)


def cmd_recover(args: argparse.Namespace) -> None:
    from aimem.recovery import attempt_recovery
    db = _resolve_config(args).store.db_path
    if not attempt_recovery(db, args.source):
        _fail(f"Recovery failed: no usable backup for {db}")
    _info(f"{db}: restored")


# ===========================================================================
# Main
# ===========================================================================


def main(argv: Optional[List[str]] = None) -> None:
    """CLI entry point: aimem <command> [args]."""
    global _quiet
    from aimem.types import FILE_TYPES

    _db_default = _env_str("AIMEM_DB", ".aimem/memory.db")
    _common = argparse.ArgumentParser(add_help=False)
    _common.add_argument(
        "--db", default=argparse.SUPPRESS,
        help=f"Path to SQLite database (default: {_db_default})",
    )
    _common.add_argument(
        "--config", default=argparse.SUPPRESS,
        help="JSON config file (default: AIMEM_CONFIG or none)",
    )
    _common.add_argument(
        "--quiet", "-q", action="store_true", default=argparse.SUPPRESS,
        help="Suppress stderr progress messages",
    )
    _common.add_argument(
        "--json", action="store_true", default=argparse.SUPPRESS,
        help="Machine-readable JSON output",
    )
    _common.add_argument(
        "-v", "--verbose", action="store_true", default=argparse.SUPPRESS,
        help="Enable verbose logging",
    )

    parser = argparse.ArgumentParser(
        prog="aimem",
        description="aimem: typed, searchable memory for LLM agents",
        parents=[_common],
    )
    sub = parser.add_subparsers(dest="command", help="Available commands")
    types_help = f"Entry type ({', '.join(FILE_TYPES)}) or alias"

    p = sub.add_parser("init", parents=[_common], help="Create the memory store")
    p.add_argument("path", nargs="?", default=None, help="Store directory (default: dirname of --db)")
    p.set_defaults(func=cmd_init)

    p = sub.add_parser("add", parents=[_common], help="Append an entry")
    p.add_argument("type", help=types_help)
    p.add_argument("content", help='Entry content ("-" reads stdin)')
    p.add_argument("--tag", default=None, help="Explicit [TYPE:YYYY-MM-DD] tag")
    p.add_argument("--timestamp", default=None, help="ISO-8601 timestamp (default: now)")
    p.add_argument("--set", action="append", metavar="KEY=VALUE", help="Metadata field")
    p.set_defaults(func=cmd_add)

    p = sub.add_parser("show", parents=[_common], help="Show one entry")
    p.add_argument("id", type=int)
    p.set_defaults(func=cmd_show)

    p = sub.add_parser("list", parents=[_common], help="Most recent entries")
    p.add_argument("--type", default=None, help=types_help)
    p.add_argument("--progress", default=None, help="Filter by metadata progress")
    p.add_argument("--phase", default=None, help="Filter by metadata phase")
    p.add_argument("-k", type=int, default=None, help="Max results (default: 50)")
    p.set_defaults(func=cmd_list)

    p = sub.add_parser("search", parents=[_common], help="Full-text search")
    p.add_argument("term", help="Search term")
    p.add_argument("--type", default=None, help=types_help)
    p.add_argument("-k", type=int, default=None, help="Max results (default: 50)")
    p.set_defaults(func=cmd_search)

    p = sub.add_parser("range", parents=[_common], help="Entries in a date range")
    p.add_argument("start", help="Start date or timestamp (inclusive)")
    p.add_argument("end", help="End date or timestamp (inclusive)")
    p.add_argument("--type", default=None, help=types_help)
    p.add_argument("-k", type=int, default=None, help="Max results (default: 50)")
    p.set_defaults(func=cmd_range)

    p = sub.add_parser("edit", parents=[_common], help="Edit content or metadata")
    p.add_argument("id", type=int)
    p.add_argument("--content", default=None, help='New content ("-" reads stdin)')
    p.add_argument("--set", action="append", metavar="KEY=VALUE", help="Metadata field")
    p.add_argument("--replace-metadata", action="store_true",
                   help="Replace metadata instead of merging")
    p.set_defaults(func=cmd_edit)

    p = sub.add_parser("append", parents=[_common], help="Append an update block")
    p.add_argument("id", type=int)
    p.add_argument("text", help='Text to append ("-" reads stdin)')
    p.set_defaults(func=cmd_append)

    p = sub.add_parser("deprecate", parents=[_common], help="Mark an entry deprecated")
    p.add_argument("id", type=int)
    p.add_argument("--superseded-by", type=int, default=None,
                   help="Record the entry that replaces it")
    p.set_defaults(func=cmd_deprecate)

    p = sub.add_parser("context", parents=[_common], help="Token-budgeted context (stdout)")
    p.add_argument("query", nargs="?", default=None, help="Relevance query")
    p.add_argument("--budget", type=int, default=None,
                   help="Token budget (default: AIMEM_BUDGET or usable window)")
    p.add_argument("--type", action="append", default=None, help=types_help)
    p.add_argument("--threshold", type=float, default=None, help="Minimum final score")
    p.add_argument("--no-truncate", action="store_true", help="Never truncate an entry")
    p.add_argument("--document", action="store_true", help="Group output by entry type")
    p.add_argument("--semantic", action="store_true",
                   help="Blend embedding similarity into ranking (needs sentence-transformers)")
    p.set_defaults(func=cmd_context)

    p = sub.add_parser("budget", parents=[_common], help="Context window report")
    p.add_argument("used", type=int, help="Tokens used so far")
    p.add_argument("--window", type=int, default=None, help="Context window size")
    p.set_defaults(func=cmd_budget)

    p = sub.add_parser("report", parents=[_common], help="Synthesize a phase report (stdout)")
    p.add_argument("kind", help="research | plan | execution | any custom name")
    p.add_argument("-k", "--recent", type=int, default=None,
                   help="Recent entries to analyze per type")
    p.add_argument("--type", action="append", default=None,
                   help="Entry types for custom reports (repeatable)")
    p.add_argument("--title", default=None, help="Heading for custom reports")
    p.add_argument("--save", action="store_true",
                   help="Store the report as a *_REPORT entry")
    p.set_defaults(func=cmd_report)

    p = sub.add_parser("embed", parents=[_common], help="Compute pending embeddings")
    p.set_defaults(func=cmd_embed)

    p = sub.add_parser("stats", parents=[_common], help="Store statistics")
    p.set_defaults(func=cmd_stats)

    p = sub.add_parser("metrics", parents=[_common], help="Telemetry summary")
    p.add_argument("--days", type=float, default=7, help="Window in days (default: 7)")
    p.add_argument("--prune", action="store_true", help="Apply the retention window first")
    p.add_argument("--retention", type=int, default=None, help="Retention days for --prune")
    p.set_defaults(func=cmd_metrics)

    p = sub.add_parser("export", parents=[_common], help="Export entries")
    p.add_argument("--format", choices=("md", "jsonl"), default="md")
    p.add_argument("--out", default=None, help="Directory (md) or file (jsonl, default stdout)")
    p.add_argument("--type", default=None, help=types_help)
    p.set_defaults(func=cmd_export)

    p = sub.add_parser("import", parents=[_common], help="Import markdown or JSONL")
    p.add_argument("source", help='Markdown file/dir, .jsonl file, or "-" for JSONL on stdin')
    p.add_argument("--dry-run", action="store_true", help="Count without writing")
    p.set_defaults(func=cmd_import)

    p = sub.add_parser("backup", parents=[_common], help="Back up the database file")
    p.add_argument("--label", default="manual", help="Backup label (default: manual)")
    p.add_argument("--markdown", action="store_true",
                   help="Write markdown files instead of a database copy")
    p.set_defaults(func=cmd_backup)

    p = sub.add_parser("verify", parents=[_common], help="Read-only integrity check")
    p.set_defaults(func=cmd_verify)

    p = sub.add_parser("recover", parents=[_common], help="Restore from a backup")
    p.add_argument("--from", dest="source", default=None,
                   help="Backup file (default: latest in .backup/)")
    p.set_defaults(func=cmd_recover)

    args = parser.parse_args(argv)

    _quiet = getattr(args, "quiet", False)

    if getattr(args, "verbose", False):
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(name)s %(levelname)s %(message)s",
        )
    else:
        logging.basicConfig(level=logging.WARNING)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    from aimem.errors import AimemError

    try:
        args.func(args)
    except BrokenPipeError:
        devnull = os.open(os.devnull, os.O_WRONLY)
        os.dup2(devnull, sys.stdout.fileno())
        sys.exit(0)
    except KeyboardInterrupt:
        sys.exit(0)
    except (AimemError, ValueError) as e:
        _warn(f"Error: {e}")
        sys.exit(1)
    except Exception as e:
        _warn(f"Internal error: {e}")
        if getattr(args, "verbose", False):
            import traceback
            traceback.print_exc(file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
