"""Command line front-end for the benchmark store and graph descriptions.

Usage:
    benchgraph bench create IOR --description "IOR runs"
    benchgraph field add IOR OPERATION --key
    benchgraph field add IOR NODES --key --numeric
    benchgraph field add IOR BANDWIDTH --numeric
    benchgraph import IOR results.csv
    benchgraph data ior.desc
    benchgraph graph ior.desc -o ior.gp -D RUN=3

Environment variables:
    BENCHGRAPH_DB:          Path of the benchmark database
    BENCHGRAPH_CHUNK_SIZE:  Rows per import transaction
    BENCHGRAPH_SEPARATOR:   Field separator of the raw data output
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Sequence

from aiohttp import web

from benchgraph import __version__, pipeline
from benchgraph.config import BenchGraphConfig, load_config
from benchgraph.dashboard.routes import create_app
from benchgraph.describe.expression import compile_sql, parse_expression
from benchgraph.errors import BenchGraphError, ImportCanceled, UnresolvedReferenceError
from benchgraph.store.benchstore import Benchmark, BenchmarkStore, Predicate
from benchgraph.store.importer import import_csv
from benchgraph.store.names import canonical_name, field_column

logger = logging.getLogger(__name__)

_ON = {"on", "yes", "true", "1"}
_OFF = {"off", "no", "false", "0"}


def _switch(value: str) -> bool:
    v = value.strip().lower()
    if v in _ON:
        return True
    if v in _OFF:
        return False
    raise argparse.ArgumentTypeError(f"expected on/off, got {value!r}")


def _assignments(items: Sequence[str] | None) -> dict[str, str]:
    result: dict[str, str] = {}
    for item in items or ():
        name, sep, value = item.partition("=")
        if not sep or not name.strip():
            raise BenchGraphError(f"expected NAME=VALUE, got {item!r}")
        result[name.strip()] = value
    return result


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="benchgraph",
        description="Store benchmark results and turn graph descriptions into plots",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--db", help="Path of the benchmark database (overrides config)")
    parser.add_argument("--config", "-c", help="Path to JSON config file")
    parser.add_argument(
        "--log-level", "-l",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level (default: from config, INFO)",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = parser.add_subparsers(dest="command", required=True)

    # bench
    bench = sub.add_parser("bench", help="Manage benchmarks")
    bsub = bench.add_subparsers(dest="action", required=True)
    p = bsub.add_parser("create", help="Create a benchmark")
    p.add_argument("name")
    p.add_argument("--description", "-d", default="")
    bsub.add_parser("list", help="List benchmarks")
    p = bsub.add_parser("rename", help="Rename a benchmark")
    p.add_argument("name")
    p.add_argument("new_name")
    p = bsub.add_parser("remove", help="Remove a benchmark without fields or data")
    p.add_argument("name")
    p = bsub.add_parser("describe", help="Show a benchmark, or set its description")
    p.add_argument("name")
    p.add_argument("text", nargs="?")

    # field
    fld = sub.add_parser("field", help="Manage the fields of a benchmark")
    fsub = fld.add_subparsers(dest="action", required=True)
    p = fsub.add_parser("add", help="Add a field")
    p.add_argument("bench")
    p.add_argument("name")
    p.add_argument("--numeric", "-n", action="store_true")
    p.add_argument("--key", "-k", action="store_true")
    p.add_argument("--default", help="Value written into existing experiments")
    p.add_argument("--description", "-d", default="")
    p = fsub.add_parser("remove", help="Remove a field")
    p.add_argument("bench")
    p.add_argument("name")
    p = fsub.add_parser("rename", help="Rename a field")
    p.add_argument("bench")
    p.add_argument("name")
    p.add_argument("new_name")
    for action, what in (("numeric", "numeric type"), ("key", "key status")):
        p = fsub.add_parser(action, help=f"Switch the {what} of a field")
        p.add_argument("bench")
        p.add_argument("name")
        p.add_argument("value", type=_switch)

    # index
    index = sub.add_parser("index", help="Manage secondary indices")
    isub = index.add_subparsers(dest="action", required=True)
    for action in ("add", "drop"):
        p = isub.add_parser(action, help=f"{action.capitalize()} an index")
        p.add_argument("bench")
        p.add_argument("fields", nargs="+")
    p = isub.add_parser("list", help="List indices")
    p.add_argument("bench")

    # data loading and maintenance
    p = sub.add_parser("import", help="Import a CSV file (header row names the fields)")
    p.add_argument("bench")
    p.add_argument("file")
    p.add_argument("--delimiter", default=",")
    p.add_argument("--set", "-s", action="append", metavar="FIELD=VALUE",
                   help="Fixed field value applied to every row (repeatable)")
    p.add_argument("--auto-key", metavar="FIELD",
                   help="Numeric key field filled with the row number")
    p.add_argument("--chunk-size", type=int, help="Rows per transaction (overrides config)")

    p = sub.add_parser("outlier", help="Mark or clear outliers")
    p.add_argument("bench")
    p.add_argument("--where", "-w", help="Filter expression, e.g. '$NODES == 1'")
    p.add_argument("--id", type=int, action="append", dest="ids", help="Experiment id")
    p.add_argument("--clear", action="store_true", help="Clear the outlier flag instead")

    p = sub.add_parser("delete", help="Delete experiments")
    p.add_argument("bench")
    p.add_argument("--where", "-w", help="Filter expression")
    p.add_argument("--id", type=int, action="append", dest="ids", help="Experiment id")
    p.add_argument("--all", action="store_true", help="Delete every experiment")

    p = sub.add_parser("sql", help="Run raw SQL against the database")
    p.add_argument("statement")

    # descriptions
    for name, fmt, help_text in (
        ("graph", "gnuplot", "Write a gnuplot script"),
        ("data", "data", "Write delimited raw data"),
        ("xmlplot", "xml", "Write an XML plot document"),
    ):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("description")
        p.add_argument("--output", "-o", help="Output file (default: stdout)")
        p.add_argument("--define", "-D", action="append", metavar="NAME=VALUE",
                       help="Environment override for the description (repeatable)")
        p.set_defaults(format=fmt)
        if name == "data":
            p.add_argument("--separator", help="Field separator (overrides config)")

    p = sub.add_parser("serve", help="Serve the JSON dashboard API")
    p.add_argument("--host", default="127.0.0.1")
    p.add_argument("--port", "-p", type=int, default=8480)

    return parser


# ── Helpers ──────────────────────────────────────────────────────

def where_predicate(store: BenchmarkStore, bench: Benchmark, text: str) -> Predicate:
    """Compile a filter expression over *bench*'s fields."""
    names = {f.name for f in store.fields(bench)}

    def column(name: str) -> str:
        cname = canonical_name(name)
        if cname not in names:
            raise UnresolvedReferenceError(f"${name} is not a field of {bench.name}")
        return '"' + field_column(cname) + '"'

    sql, params = compile_sql(parse_expression(text), column)
    return Predicate(sql, params)


def _out(text: str) -> None:
    sys.stdout.write(text if text.endswith("\n") else text + "\n")


def _table(rows: Sequence[Sequence[Any]]) -> str:
    if not rows:
        return ""
    widths = [max(len(str(r[i])) for r in rows) for i in range(len(rows[0]))]
    return "\n".join(
        "  ".join(str(v).ljust(w) for v, w in zip(r, widths)).rstrip() for r in rows
    )


# ── Commands ─────────────────────────────────────────────────────

def cmd_bench(store: BenchmarkStore, args: argparse.Namespace) -> None:
    if args.action == "create":
        b = store.create_benchmark(args.name, args.description)
        _out(f"created {b.name}")
    elif args.action == "list":
        rows = [("NAME", "EXPERIMENTS", "DESCRIPTION")]
        for b in store.list_benchmarks():
            rows.append((b.name, store.count_experiments(b), b.description))
        _out(_table(rows))
    elif args.action == "rename":
        b = store.rename_benchmark(args.name, args.new_name)
        _out(f"renamed to {b.name}")
    elif args.action == "remove":
        store.remove_benchmark(args.name)
        _out(f"removed {canonical_name(args.name)}")
    elif args.action == "describe":
        if args.text is not None:
            store.set_benchmark_description(args.name, args.text)
        b = store.get_benchmark(args.name)
        lines = [f"{b.name}: {b.description}".rstrip(": ")]
        rows = [("FIELD", "TYPE", "KEY", "DESCRIPTION")]
        for f in store.fields(b):
            rows.append((f.name, "numeric" if f.numeric else "text",
                         "key" if f.is_key else "", f.description))
        lines.append(_table(rows))
        lines.append(f"experiments: {store.count_experiments(b)}")
        _out("\n".join(lines))


def cmd_field(store: BenchmarkStore, args: argparse.Namespace) -> None:
    if args.action == "add":
        f = store.add_field(args.bench, args.name, numeric=args.numeric, key=args.key,
                            default=args.default, description=args.description)
        _out(f"added {f.name}")
    elif args.action == "remove":
        store.remove_field(args.bench, args.name)
        _out(f"removed {canonical_name(args.name)}")
    elif args.action == "rename":
        f = store.rename_field(args.bench, args.name, args.new_name)
        _out(f"renamed to {f.name}")
    elif args.action == "numeric":
        f = store.set_field_numeric(args.bench, args.name, args.value)
        _out(f"{f.name} is {'numeric' if f.numeric else 'text'}")
    elif args.action == "key":
        f = store.set_field_key(args.bench, args.name, args.value)
        _out(f"{f.name} is {'a key' if f.is_key else 'not a key'}")


def cmd_index(store: BenchmarkStore, args: argparse.Namespace) -> None:
    if args.action == "add":
        idx = store.create_index(args.bench, args.fields)
        _out(f"created {idx.name}")
    elif args.action == "drop":
        store.drop_index(args.bench, args.fields)
        _out("dropped")
    else:
        for idx in store.list_indices(args.bench):
            _out(f"{idx.name}: {', '.join(idx.fields)}")


def cmd_import(store: BenchmarkStore, args: argparse.Namespace, config: BenchGraphConfig) -> None:
    def progress(rows_done: int) -> None:
        logger.info("... %d rows", rows_done)

    try:
        result = import_csv(
            store, args.bench, Path(args.file),
            delimiter=args.delimiter,
            chunk_size=args.chunk_size or config.import_chunk_size,
            fixed=_assignments(args.set),
            auto_key=args.auto_key,
            progress=progress,
        )
    except FileNotFoundError as e:
        raise BenchGraphError(f"cannot read {args.file}: {e.strerror}") from None
    _out(f"{result.rows} rows: {result.inserted} new, {result.duplicates} already present")


def cmd_outlier(store: BenchmarkStore, args: argparse.Namespace) -> None:
    flag = not args.clear
    if args.ids:
        for exp_id in args.ids:
            store.set_outlier(exp_id, flag)
        count = len(args.ids)
    elif args.where:
        b = store.get_benchmark(args.bench)
        count = store.mark_outliers(b, where_predicate(store, b, args.where), flag)
    else:
        raise BenchGraphError("outlier needs --where or --id")
    _out(f"{count} experiment(s) {'marked' if flag else 'cleared'}")


def cmd_delete(store: BenchmarkStore, args: argparse.Namespace) -> None:
    b = store.get_benchmark(args.bench)
    if args.ids:
        count = store.remove_experiments(b, ids=args.ids)
    elif args.where:
        count = store.remove_experiments(b, where=where_predicate(store, b, args.where))
    elif args.all:
        count = store.remove_experiments(b)
    else:
        raise BenchGraphError("delete needs --where, --id or --all")
    _out(f"{count} experiment(s) deleted")


def cmd_sql(store: BenchmarkStore, args: argparse.Namespace) -> None:
    rows = store.execute_sql(args.statement)
    if rows:
        header = list(rows[0])
        _out(_table([header] + [[r[h] for h in header] for r in rows]))


def cmd_render(store: BenchmarkStore, args: argparse.Namespace, config: BenchGraphConfig) -> None:
    separator = getattr(args, "separator", None) or config.data_separator
    model = pipeline.evaluate(
        args.description, store, _assignments(args.define),
        separator=separator,
        confidence=config.confidence,
    )
    if getattr(args, "separator", None):
        model.separator = args.separator
    text = pipeline.render(model, args.format)
    if args.output:
        Path(args.output).write_text(text, encoding="utf-8")
        logger.info("Wrote %s", args.output)
    else:
        sys.stdout.write(text)


def cmd_serve(store: BenchmarkStore, args: argparse.Namespace) -> None:
    web.run_app(create_app(store), host=args.host, port=args.port)


def run(args: argparse.Namespace, config: BenchGraphConfig) -> None:
    with BenchmarkStore(config.db_path) as store:
        if args.command == "bench":
            cmd_bench(store, args)
        elif args.command == "field":
            cmd_field(store, args)
        elif args.command == "index":
            cmd_index(store, args)
        elif args.command == "import":
            cmd_import(store, args, config)
        elif args.command == "outlier":
            cmd_outlier(store, args)
        elif args.command == "delete":
            cmd_delete(store, args)
        elif args.command == "sql":
            cmd_sql(store, args)
        elif args.command in ("graph", "data", "xmlplot"):
            cmd_render(store, args, config)
        elif args.command == "serve":
            cmd_serve(store, args)


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        config = load_config(args.config, {"db_path": args.db, "log_level": args.log_level})
    except (BenchGraphError, json.JSONDecodeError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    try:
        run(args, config)
    except ImportCanceled as e:
        print(f"Canceled: {e}", file=sys.stderr)
        return 2
    except BenchGraphError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
