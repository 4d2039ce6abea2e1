"""Benchmark schema and experiment storage."""

from benchgraph.store.benchstore import Benchmark, BenchmarkStore, Field, Index, Predicate
from benchgraph.store.importer import Cancellation, ImportResult, import_csv, import_rows

__all__ = [
    "Benchmark",
    "BenchmarkStore",
    "Cancellation",
    "Field",
    "ImportResult",
    "Index",
    "Predicate",
    "import_csv",
    "import_rows",
]
