"""Bulk import of experiment rows.

Rows are inserted in fixed-size transaction chunks. A chunk boundary is the
failure and cancellation checkpoint: a failing row rolls back only the open
chunk, earlier chunks stay committed.

Usage::

    result = import_csv(store, "IOR", "results.csv", chunk_size=500)
    print(result.inserted, result.duplicates)
"""

from __future__ import annotations

import csv
import io
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping, TextIO

from benchgraph.errors import ImportCanceled, ImportDataError, StoreError
from benchgraph.store.benchstore import Benchmark, BenchmarkStore
from benchgraph.store.names import canonical_name

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 1000


@dataclass
class ImportResult:
    rows: int = 0
    inserted: int = 0
    duplicates: int = 0


class Cancellation:
    """Cooperative cancellation flag, polled by the importer between rows."""

    def __init__(self) -> None:
        self._canceled = False

    def cancel(self) -> None:
        self._canceled = True

    @property
    def canceled(self) -> bool:
        return self._canceled


def import_rows(
    store: BenchmarkStore,
    bench: str | Benchmark,
    rows: Iterable[Mapping[str, Any]],
    *,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    fixed: Mapping[str, Any] | None = None,
    auto_key: str | None = None,
    cancel: Cancellation | None = None,
    progress: Callable[[int], None] | None = None,
    first_line: int = 1,
) -> ImportResult:
    """Insert *rows* into *bench*, skipping rows whose identity already exists.

    Args:
        fixed: Field values applied to every row (override row values).
        auto_key: Name of a numeric key field filled with the 1-based row
            number. Created when missing, which is only possible while the
            benchmark has no data.
        cancel: Polled between rows; on cancel the open chunk is rolled back
            and :class:`ImportCanceled` is raised.
        progress: Called with the number of rows committed so far after each chunk.
        first_line: Input line number of the first row (for error messages).

    Raises:
        ImportDataError: A row could not be stored.
        ImportCanceled: *cancel* was triggered.
    """
    if chunk_size < 1:
        raise StoreError(f"chunk size must be >= 1, got {chunk_size}")
    b = store.get_benchmark(bench)
    if auto_key and store.find_field(b, auto_key) is None:
        store.add_field(b, auto_key, numeric=True, key=True)
    key_name = canonical_name(auto_key) if auto_key else None
    overrides = dict(fixed or {})

    committed = ImportResult()
    source = iter(rows)
    number = 0
    exhausted = False

    while not exhausted:
        pending = ImportResult()
        line = first_line + number
        try:
            with store.batch(b) as batch:
                while pending.rows < chunk_size:
                    if cancel is not None and cancel.canceled:
                        raise ImportCanceled(committed.rows)
                    try:
                        raw = next(source)
                    except StopIteration:
                        exhausted = True
                        break
                    number += 1
                    line = first_line + number - 1
                    values = dict(raw)
                    values.update(overrides)
                    if key_name:
                        values[key_name] = number
                    try:
                        _, inserted = batch.add(values)
                    except ImportDataError as e:
                        raise ImportDataError(str(e), line) from None
                    except StoreError as e:
                        raise ImportDataError(str(e), line) from e
                    pending.rows += 1
                    if inserted:
                        pending.inserted += 1
                    else:
                        pending.duplicates += 1
        except ImportCanceled:
            logger.warning(
                "Import into %s canceled; %d rows committed", b.name, committed.rows
            )
            raise
        except ImportDataError:
            logger.error(
                "Import into %s failed near line %d; %d rows committed",
                b.name, line, committed.rows,
            )
            raise
        committed.rows += pending.rows
        committed.inserted += pending.inserted
        committed.duplicates += pending.duplicates
        if pending.rows and progress is not None:
            progress(committed.rows)

    logger.info(
        "Imported %d rows into %s: %d new, %d already present",
        committed.rows, b.name, committed.inserted, committed.duplicates,
    )
    return committed


def import_csv(
    store: BenchmarkStore,
    bench: str | Benchmark,
    source: str | Path | TextIO,
    *,
    delimiter: str = ",",
    **kwargs: Any,
) -> ImportResult:
    """Import a CSV file whose header row names the benchmark's fields."""
    if isinstance(source, (str, Path)):
        with open(source, newline="", encoding="utf-8") as f:
            return _import_stream(store, bench, f, delimiter, **kwargs)
    return _import_stream(store, bench, source, delimiter, **kwargs)


def _import_stream(
    store: BenchmarkStore,
    bench: str | Benchmark,
    stream: TextIO,
    delimiter: str,
    **kwargs: Any,
) -> ImportResult:
    reader = csv.DictReader(stream, delimiter=delimiter, skipinitialspace=True)
    if not reader.fieldnames:
        raise ImportDataError("input has no header row", 1)
    b = store.get_benchmark(bench)
    for name in reader.fieldnames:
        if store.find_field(b, name) is None:
            raise ImportDataError(f"column {name!r} is not a field of {b.name}", 1)
    rows = ({k: v for k, v in row.items() if k is not None} for row in reader)
    # header is line 1, first data row is line 2
    return import_rows(store, b, rows, first_line=2, **kwargs)


def import_csv_text(store: BenchmarkStore, bench: str | Benchmark, text: str, **kwargs: Any) -> ImportResult:
    return import_csv(store, bench, io.StringIO(text), **kwargs)
