"""BenchmarkStore — SQLite-backed benchmark schema and experiment storage.

Every benchmark owns a set of typed fields and one wide table
(``<NAME>_VIEW``) with one row per experiment:

  BENCH   benchmark id
  EXP     experiment id (primary key)
  OUT     outlier flag
  _<F>    one column per field (NUMERIC or TEXT)

The wide table is created lazily from the current field set and rebuilt
whenever the field set changes. Secondary indices are materialized on it
and recreated with it.

Schema invariants:
  - field type and key membership are frozen while the benchmark has data
  - only non-key fields may be added to a benchmark with data; existing
    rows receive the supplied default
  - fields and benchmarks can only be removed while empty

The connection is a single, non-reentrant resource: one transactional
operation at a time. Concurrent hosts must serialize access themselves.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Iterator, Mapping, Sequence

from benchgraph.errors import (
    ImportDataError,
    SchemaError,
    SchemaVersionError,
    StoreBusyError,
    StoreError,
    UnknownNameError,
)
from benchgraph.store.names import (
    BENCH_COLUMN,
    EXP_COLUMN,
    OUTLIER_COLUMN,
    canonical_name,
    encode_identity,
    field_column,
    index_name,
    normalize_number,
    normalize_text,
    view_table,
)
from benchgraph.store.schema import SCHEMA_SQL, SCHEMA_VERSION

logger = logging.getLogger(__name__)


def _q(identifier: str) -> str:
    return '"' + identifier.replace('"', '""') + '"'


# ── Records ──────────────────────────────────────────────────────

@dataclass(frozen=True)
class Benchmark:
    bench_id: int
    name: str
    description: str = ""

    @property
    def view(self) -> str:
        return view_table(self.name)


@dataclass(frozen=True)
class Field:
    field_id: int
    bench_id: int
    name: str
    numeric: bool
    is_key: bool
    position: int
    description: str = ""

    @property
    def column(self) -> str:
        return field_column(self.name)

    def convert(self, value: Any) -> Any:
        """Convert *value* to this field's storage type (ValueError if impossible)."""
        if self.numeric:
            return normalize_number(value)
        return normalize_text(value)


@dataclass(frozen=True)
class Index:
    index_id: int
    bench_id: int
    fields: tuple[str, ...]
    name: str


@dataclass(frozen=True)
class Predicate:
    """A WHERE fragment over wide-table columns plus its bound parameters."""
    sql: str = ""
    params: tuple[Any, ...] = ()

    def __bool__(self) -> bool:
        return bool(self.sql.strip())

    def __and__(self, other: Predicate) -> Predicate:
        if not other:
            return self
        if not self:
            return other
        return Predicate(f"({self.sql}) AND ({other.sql})", self.params + other.params)

    @classmethod
    def equals(cls, field_name: str, value: Any) -> Predicate:
        column = _q(field_column(canonical_name(field_name)))
        if value is None:
            return cls(f"{column} IS NULL")
        return cls(f"{column} = ?", (value,))

    @classmethod
    def all_of(cls, predicates: Iterable[Predicate]) -> Predicate:
        result = cls()
        for p in predicates:
            result = result & p
        return result


# ── Store ────────────────────────────────────────────────────────

class BenchmarkStore:
    """Benchmark schema, experiments and wide tables in one SQLite file."""

    def __init__(self, db_path: str | Path) -> None:
        self._db_path = str(db_path)
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()

    def open(self) -> BenchmarkStore:
        """Open the database, create the catalog and check the schema version."""
        if self._db_path != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self._db_path, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys=ON")
        if self._db_path != ":memory:":
            conn.execute("PRAGMA journal_mode=WAL")
        try:
            self._check_version(conn)
        except Exception:
            conn.close()
            raise
        self._conn = conn
        logger.info("Benchmark store opened: %s", self._db_path)
        return self

    def close(self) -> None:
        if self._conn:
            self._conn.close()
            self._conn = None

    def __enter__(self) -> BenchmarkStore:
        if self._conn is None:
            self.open()
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    @property
    def db_path(self) -> str:
        return self._db_path

    def _check_version(self, conn: sqlite3.Connection) -> None:
        has_meta = conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name='metadata'"
        ).fetchone()
        if has_meta is not None:
            rows = dict(conn.execute("SELECT key, value FROM metadata").fetchall())
            if "schema_major" in rows:
                found = (int(rows["schema_major"]), int(rows.get("schema_minor", 0)))
                if found != SCHEMA_VERSION:
                    raise SchemaVersionError(
                        f"database {self._db_path} has schema version "
                        f"{found[0]}.{found[1]}, expected "
                        f"{SCHEMA_VERSION[0]}.{SCHEMA_VERSION[1]}"
                    )
                return
        conn.executescript(SCHEMA_SQL)
        conn.executemany(
            "INSERT OR REPLACE INTO metadata (key, value) VALUES (?, ?)",
            [("schema_major", str(SCHEMA_VERSION[0])),
             ("schema_minor", str(SCHEMA_VERSION[1]))],
        )
        logger.info("Store schema v%d.%d created", *SCHEMA_VERSION)

    def _require(self) -> sqlite3.Connection:
        if self._conn is None:
            raise StoreError("store is not open")
        return self._conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block atomically; any exception rolls everything back."""
        conn = self._require()
        if not self._lock.acquire(blocking=False):
            raise StoreBusyError("store is busy with another operation")
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            self._lock.release()

    # ── Benchmarks ───────────────────────────────────────────────

    def list_benchmarks(self) -> list[Benchmark]:
        rows = self._require().execute(
            "SELECT bench_id, name, description FROM benchmarks ORDER BY name"
        ).fetchall()
        return [Benchmark(r["bench_id"], r["name"], r["description"]) for r in rows]

    def find_benchmark(self, name: str) -> Benchmark | None:
        row = self._require().execute(
            "SELECT bench_id, name, description FROM benchmarks WHERE name = ?",
            (canonical_name(name),),
        ).fetchone()
        if row is None:
            return None
        return Benchmark(row["bench_id"], row["name"], row["description"])

    def get_benchmark(self, bench: str | Benchmark) -> Benchmark:
        if isinstance(bench, Benchmark):
            return bench
        found = self.find_benchmark(bench)
        if found is None:
            raise UnknownNameError(f"unknown benchmark {bench!r}")
        return found

    def create_benchmark(self, name: str, description: str = "") -> Benchmark:
        cname = canonical_name(name)
        with self.transaction() as conn:
            if conn.execute("SELECT 1 FROM benchmarks WHERE name = ?", (cname,)).fetchone():
                raise SchemaError(f"benchmark {cname} already exists")
            cur = conn.execute(
                "INSERT INTO benchmarks (name, description) VALUES (?, ?)",
                (cname, description),
            )
        logger.info("Benchmark created: %s", cname)
        return Benchmark(cur.lastrowid, cname, description)

    def ensure_benchmark(self, name: str, description: str = "") -> Benchmark:
        """Return the benchmark called *name*, creating it on first reference."""
        return self.find_benchmark(name) or self.create_benchmark(name, description)

    def set_benchmark_description(self, bench: str | Benchmark, description: str) -> Benchmark:
        b = self.get_benchmark(bench)
        with self.transaction() as conn:
            conn.execute(
                "UPDATE benchmarks SET description = ? WHERE bench_id = ?",
                (description, b.bench_id),
            )
        return Benchmark(b.bench_id, b.name, description)

    def rename_benchmark(self, bench: str | Benchmark, new_name: str) -> Benchmark:
        b = self.get_benchmark(bench)
        cname = canonical_name(new_name)
        if cname == b.name:
            return b
        renamed = Benchmark(b.bench_id, cname, b.description)
        with self.transaction() as conn:
            if conn.execute("SELECT 1 FROM benchmarks WHERE name = ?", (cname,)).fetchone():
                raise SchemaError(f"benchmark {cname} already exists")
            if self._view_exists(conn, b):
                self._drop_physical_indices(conn, b)
                conn.execute(f"ALTER TABLE {_q(b.view)} RENAME TO {_q(renamed.view)}")
                self._create_physical_indices(conn, renamed)
            conn.execute(
                "UPDATE benchmarks SET name = ? WHERE bench_id = ?", (cname, b.bench_id)
            )
        logger.info("Benchmark renamed: %s -> %s", b.name, cname)
        return renamed

    def remove_benchmark(self, bench: str | Benchmark) -> None:
        b = self.get_benchmark(bench)
        with self.transaction() as conn:
            if self._has_data(conn, b):
                raise SchemaError(f"benchmark {b.name} still has experiments")
            if self._fields(conn, b):
                raise SchemaError(f"benchmark {b.name} still has fields")
            conn.execute(f"DROP TABLE IF EXISTS {_q(b.view)}")
            conn.execute("DELETE FROM indices WHERE bench_id = ?", (b.bench_id,))
            conn.execute("DELETE FROM benchmarks WHERE bench_id = ?", (b.bench_id,))
        logger.info("Benchmark removed: %s", b.name)

    # ── Fields ───────────────────────────────────────────────────

    def fields(self, bench: str | Benchmark) -> list[Field]:
        return self._fields(self._require(), self.get_benchmark(bench))

    def key_fields(self, bench: str | Benchmark) -> list[Field]:
        return [f for f in self.fields(bench) if f.is_key]

    def find_field(self, bench: str | Benchmark, name: str) -> Field | None:
        cname = canonical_name(name)
        for f in self.fields(bench):
            if f.name == cname:
                return f
        return None

    def get_field(self, bench: str | Benchmark, name: str) -> Field:
        f = self.find_field(bench, name)
        if f is None:
            b = self.get_benchmark(bench)
            raise UnknownNameError(f"benchmark {b.name} has no field {name!r}")
        return f

    def add_field(
        self,
        bench: str | Benchmark,
        name: str,
        *,
        numeric: bool = False,
        key: bool = False,
        default: Any = None,
        description: str = "",
    ) -> Field:
        """Add a field. With data present only non-key fields are allowed;
        *default* is written into every existing row."""
        b = self.get_benchmark(bench)
        cname = canonical_name(name)
        with self.transaction() as conn:
            old = self._fields(conn, b)
            if any(f.name == cname for f in old):
                raise SchemaError(f"benchmark {b.name} already has a field {cname}")
            has_data = self._has_data(conn, b)
            if has_data and key:
                raise SchemaError(
                    f"cannot add key field {cname}: benchmark {b.name} has experiments"
                )
            position = max((f.position for f in old), default=0) + 1
            cur = conn.execute(
                """INSERT INTO fields (bench_id, name, numeric, is_key, position, description)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (b.bench_id, cname, int(numeric), int(key), position, description),
            )
            new = Field(cur.lastrowid, b.bench_id, cname, bool(numeric), bool(key),
                        position, description)
            try:
                fill = new.convert(default)
            except ValueError:
                raise SchemaError(
                    f"default {default!r} for numeric field {cname} is not a number"
                ) from None
            self._rebuild_view(conn, b, old, old + [new], defaults={cname: fill})
        logger.info("Field added: %s.%s (numeric=%s key=%s)", b.name, cname, numeric, key)
        return new

    def remove_field(self, bench: str | Benchmark, name: str) -> None:
        b = self.get_benchmark(bench)
        f = self.get_field(b, name)
        with self.transaction() as conn:
            if self._has_data(conn, b):
                raise SchemaError(
                    f"cannot remove field {f.name}: benchmark {b.name} has experiments"
                )
            old = self._fields(conn, b)
            for idx in self._indices(conn, b):
                if f.name in idx.fields:
                    conn.execute(f"DROP INDEX IF EXISTS {_q(idx.name)}")
                    conn.execute("DELETE FROM indices WHERE index_id = ?", (idx.index_id,))
            conn.execute("DELETE FROM fields WHERE field_id = ?", (f.field_id,))
            self._rebuild_view(conn, b, old, [x for x in old if x.field_id != f.field_id])
        logger.info("Field removed: %s.%s", b.name, f.name)

    def rename_field(self, bench: str | Benchmark, name: str, new_name: str) -> Field:
        b = self.get_benchmark(bench)
        f = self.get_field(b, name)
        cname = canonical_name(new_name)
        if cname == f.name:
            return f
        renamed = Field(f.field_id, f.bench_id, cname, f.numeric, f.is_key,
                        f.position, f.description)
        with self.transaction() as conn:
            old = self._fields(conn, b)
            if any(x.name == cname for x in old):
                raise SchemaError(f"benchmark {b.name} already has a field {cname}")
            conn.execute("UPDATE fields SET name = ? WHERE field_id = ?", (cname, f.field_id))
            for idx in self._indices(conn, b):
                if f.name in idx.fields:
                    names = ",".join(cname if n == f.name else n for n in idx.fields)
                    conn.execute(
                        "UPDATE indices SET field_list = ? WHERE index_id = ?",
                        (names, idx.index_id),
                    )
            new = [renamed if x.field_id == f.field_id else x for x in old]
            self._rebuild_view(conn, b, old, new, renames={cname: f.name})
        logger.info("Field renamed: %s.%s -> %s", b.name, f.name, cname)
        return renamed

    def set_field_numeric(self, bench: str | Benchmark, name: str, numeric: bool) -> Field:
        return self._change_field(bench, name, "numeric", numeric)

    def set_field_key(self, bench: str | Benchmark, name: str, key: bool) -> Field:
        return self._change_field(bench, name, "is_key", key)

    def _change_field(self, bench: str | Benchmark, name: str, column: str, value: bool) -> Field:
        b = self.get_benchmark(bench)
        f = self.get_field(b, name)
        if bool(getattr(f, column)) == bool(value):
            return f
        what = "type" if column == "numeric" else "key membership"
        with self.transaction() as conn:
            if self._has_data(conn, b):
                raise SchemaError(
                    f"cannot change {what} of {b.name}.{f.name}: benchmark has experiments"
                )
            old = self._fields(conn, b)
            conn.execute(
                f"UPDATE fields SET {column} = ? WHERE field_id = ?",
                (int(bool(value)), f.field_id),
            )
            new = self._fields(conn, b)
            self._rebuild_view(conn, b, old, new)
        logger.info("Field %s changed: %s.%s = %s", what, b.name, f.name, bool(value))
        return self.get_field(b, f.name)

    def _fields(self, conn: sqlite3.Connection, b: Benchmark) -> list[Field]:
        rows = conn.execute(
            """SELECT field_id, bench_id, name, numeric, is_key, position, description
               FROM fields WHERE bench_id = ? ORDER BY position""",
            (b.bench_id,),
        ).fetchall()
        return [
            Field(r["field_id"], r["bench_id"], r["name"], bool(r["numeric"]),
                  bool(r["is_key"]), r["position"], r["description"])
            for r in rows
        ]

    # ── Wide table ───────────────────────────────────────────────

    def _view_exists(self, conn: sqlite3.Connection, b: Benchmark) -> bool:
        return conn.execute(
            "SELECT 1 FROM sqlite_master WHERE type='table' AND name = ?", (b.view,)
        ).fetchone() is not None

    def _create_view(self, conn: sqlite3.Connection, table: str, b: Benchmark,
                     fields: Sequence[Field]) -> None:
        columns = [
            f"{BENCH_COLUMN} INTEGER NOT NULL",
            f"{EXP_COLUMN} INTEGER PRIMARY KEY",
            f"{OUTLIER_COLUMN} INTEGER NOT NULL DEFAULT 0",
        ]
        for f in fields:
            columns.append(f"{_q(f.column)} {'NUMERIC' if f.numeric else 'TEXT'}")
        conn.execute(f"CREATE TABLE {_q(table)} ({', '.join(columns)})")

    def _ensure_view(self, conn: sqlite3.Connection, b: Benchmark, fields: Sequence[Field]) -> None:
        if not self._view_exists(conn, b):
            self._create_view(conn, b.view, b, fields)
            self._create_physical_indices(conn, b)
            logger.debug("Wide table %s created with %d fields", b.view, len(fields))

    def _rebuild_view(
        self,
        conn: sqlite3.Connection,
        b: Benchmark,
        old: Sequence[Field],
        new: Sequence[Field],
        defaults: Mapping[str, Any] | None = None,
        renames: Mapping[str, str] | None = None,
    ) -> None:
        """Replace the wide table after a field-set change, keeping its rows."""
        if not self._view_exists(conn, b):
            return
        empty = conn.execute(f"SELECT 1 FROM {_q(b.view)} LIMIT 1").fetchone() is None
        if empty:
            # recreated lazily on the next insert
            conn.execute(f"DROP TABLE {_q(b.view)}")
            return
        defaults = defaults or {}
        renames = renames or {}
        old_names = {f.name for f in old}
        tmp = f"{b.view}__REBUILD"
        self._create_view(conn, tmp, b, new)
        targets = [BENCH_COLUMN, EXP_COLUMN, OUTLIER_COLUMN]
        sources = list(targets)
        params: list[Any] = []
        for f in new:
            targets.append(_q(f.column))
            source = renames.get(f.name, f.name)
            if source in old_names:
                sources.append(_q(field_column(source)))
            else:
                sources.append("?")
                params.append(defaults.get(f.name))
        conn.execute(
            f"INSERT INTO {_q(tmp)} ({', '.join(targets)}) "
            f"SELECT {', '.join(sources)} FROM {_q(b.view)}",
            params,
        )
        conn.execute(f"DROP TABLE {_q(b.view)}")
        conn.execute(f"ALTER TABLE {_q(tmp)} RENAME TO {_q(b.view)}")
        self._create_physical_indices(conn, b)
        logger.debug("Wide table %s rebuilt with %d fields", b.view, len(new))

    # ── Secondary indices ────────────────────────────────────────

    def list_indices(self, bench: str | Benchmark) -> list[Index]:
        return self._indices(self._require(), self.get_benchmark(bench))

    def create_index(self, bench: str | Benchmark, field_names: Sequence[str]) -> Index:
        b = self.get_benchmark(bench)
        if not field_names:
            raise SchemaError("an index needs at least one field")
        names = tuple(self.get_field(b, n).name for n in field_names)
        if len(set(names)) != len(names):
            raise SchemaError(f"duplicate field in index {', '.join(names)}")
        with self.transaction() as conn:
            if conn.execute(
                "SELECT 1 FROM indices WHERE bench_id = ? AND field_list = ?",
                (b.bench_id, ",".join(names)),
            ).fetchone():
                raise SchemaError(f"index on {', '.join(names)} already exists")
            cur = conn.execute(
                "INSERT INTO indices (bench_id, field_list) VALUES (?, ?)",
                (b.bench_id, ",".join(names)),
            )
            idx = Index(cur.lastrowid, b.bench_id, names, index_name(b.name, cur.lastrowid))
            if self._view_exists(conn, b):
                self._create_physical_index(conn, b, idx)
        logger.info("Index created on %s(%s)", b.name, ", ".join(names))
        return idx

    def drop_index(self, bench: str | Benchmark, field_names: Sequence[str]) -> None:
        b = self.get_benchmark(bench)
        names = tuple(canonical_name(n) for n in field_names)
        with self.transaction() as conn:
            for idx in self._indices(conn, b):
                if idx.fields == names:
                    conn.execute(f"DROP INDEX IF EXISTS {_q(idx.name)}")
                    conn.execute("DELETE FROM indices WHERE index_id = ?", (idx.index_id,))
                    break
            else:
                raise UnknownNameError(f"no index on {b.name}({', '.join(names)})")
        logger.info("Index dropped on %s(%s)", b.name, ", ".join(names))

    def _indices(self, conn: sqlite3.Connection, b: Benchmark) -> list[Index]:
        rows = conn.execute(
            "SELECT index_id, field_list FROM indices WHERE bench_id = ? ORDER BY index_id",
            (b.bench_id,),
        ).fetchall()
        return [
            Index(r["index_id"], b.bench_id, tuple(r["field_list"].split(",")),
                  index_name(b.name, r["index_id"]))
            for r in rows
        ]

    def _create_physical_index(self, conn: sqlite3.Connection, b: Benchmark, idx: Index) -> None:
        columns = ", ".join(_q(field_column(n)) for n in idx.fields)
        conn.execute(f"CREATE INDEX IF NOT EXISTS {_q(idx.name)} ON {_q(b.view)} ({columns})")

    def _create_physical_indices(self, conn: sqlite3.Connection, b: Benchmark) -> None:
        for idx in self._indices(conn, b):
            self._create_physical_index(conn, b, idx)

    def _drop_physical_indices(self, conn: sqlite3.Connection, b: Benchmark) -> None:
        for idx in self._indices(conn, b):
            conn.execute(f"DROP INDEX IF EXISTS {_q(idx.name)}")

    # ── Experiments ──────────────────────────────────────────────

    def add_experiment(self, bench: str | Benchmark, values: Mapping[str, Any]) -> tuple[int, bool]:
        """Insert one experiment. Returns ``(exp_id, inserted)``.

        A row whose key values match an existing experiment is not an error:
        the existing id is returned with ``inserted=False``.
        """
        b = self.get_benchmark(bench)
        with self.batch(b) as batch:
            return batch.add(values)

    @contextmanager
    def batch(self, bench: str | Benchmark) -> Iterator[ExperimentBatch]:
        """Insert many experiments inside one transaction."""
        b = self.get_benchmark(bench)
        with self.transaction() as conn:
            fields = self._fields(conn, b)
            if not any(f.is_key for f in fields):
                raise SchemaError(f"benchmark {b.name} has no key fields")
            self._ensure_view(conn, b, fields)
            yield ExperimentBatch(conn, b, fields)

    def get_experiment(self, bench: str | Benchmark, exp_id: int) -> dict[str, Any] | None:
        rows = list(self.select(bench, where=Predicate(f"{EXP_COLUMN} = ?", (exp_id,)),
                                include_outliers=True))
        return rows[0] if rows else None

    def count_experiments(
        self,
        bench: str | Benchmark,
        where: Predicate | None = None,
        include_outliers: bool = True,
    ) -> int:
        b = self.get_benchmark(bench)
        conn = self._require()
        if not where:
            sql = "SELECT COUNT(*) FROM experiments WHERE bench_id = ?"
            if not include_outliers:
                sql += " AND outlier = 0"
            return conn.execute(sql, (b.bench_id,)).fetchone()[0]
        if not self._view_exists(conn, b):
            return 0
        clause, params = self._where(where, include_outliers)
        return conn.execute(f"SELECT COUNT(*) FROM {_q(b.view)}{clause}", params).fetchone()[0]

    def remove_experiments(
        self,
        bench: str | Benchmark,
        ids: Iterable[int] | None = None,
        where: Predicate | None = None,
    ) -> int:
        """Delete experiments by id, by predicate, or all of them. Returns the count."""
        b = self.get_benchmark(bench)
        with self.transaction() as conn:
            if not self._view_exists(conn, b):
                return 0
            if ids is not None:
                doomed = [(int(i), b.bench_id) for i in ids]
                before = conn.total_changes
                conn.executemany(
                    "DELETE FROM experiments WHERE exp_id = ? AND bench_id = ?", doomed
                )
                removed = conn.total_changes - before
                conn.executemany(
                    f"DELETE FROM {_q(b.view)} WHERE {EXP_COLUMN} = ?",
                    [(i,) for i, _ in doomed],
                )
            else:
                clause, params = self._where(where, include_outliers=True)
                cur = conn.execute(
                    f"DELETE FROM experiments WHERE bench_id = ? AND exp_id IN "
                    f"(SELECT {EXP_COLUMN} FROM {_q(b.view)}{clause})",
                    (b.bench_id, *params),
                )
                removed = cur.rowcount
                conn.execute(f"DELETE FROM {_q(b.view)}{clause}", params)
        logger.info("Removed %d experiments from %s", removed, b.name)
        return removed

    def is_outlier(self, exp_id: int) -> bool:
        row = self._require().execute(
            "SELECT outlier FROM experiments WHERE exp_id = ?", (exp_id,)
        ).fetchone()
        if row is None:
            raise UnknownNameError(f"unknown experiment {exp_id}")
        return bool(row["outlier"])

    def set_outlier(self, exp_id: int, outlier: bool = True) -> None:
        conn = self._require()
        row = conn.execute(
            "SELECT b.bench_id, b.name, b.description FROM experiments e "
            "JOIN benchmarks b ON b.bench_id = e.bench_id WHERE e.exp_id = ?",
            (exp_id,),
        ).fetchone()
        if row is None:
            raise UnknownNameError(f"unknown experiment {exp_id}")
        b = Benchmark(row["bench_id"], row["name"], row["description"])
        with self.transaction() as conn:
            conn.execute(
                "UPDATE experiments SET outlier = ? WHERE exp_id = ?", (int(outlier), exp_id)
            )
            conn.execute(
                f"UPDATE {_q(b.view)} SET {OUTLIER_COLUMN} = ? WHERE {EXP_COLUMN} = ?",
                (int(outlier), exp_id),
            )

    def mark_outliers(self, bench: str | Benchmark, where: Predicate, outlier: bool = True) -> int:
        """Set the outlier flag on every experiment matching *where*."""
        b = self.get_benchmark(bench)
        with self.transaction() as conn:
            if not self._view_exists(conn, b):
                return 0
            clause, params = self._where(where, include_outliers=True)
            cur = conn.execute(
                f"UPDATE experiments SET outlier = ? WHERE bench_id = ? AND exp_id IN "
                f"(SELECT {EXP_COLUMN} FROM {_q(b.view)}{clause})",
                (int(outlier), b.bench_id, *params),
            )
            conn.execute(f"UPDATE {_q(b.view)} SET {OUTLIER_COLUMN} = ?{clause}",
                         (int(outlier), *params))
        return cur.rowcount

    def _has_data(self, conn: sqlite3.Connection, b: Benchmark) -> bool:
        return conn.execute(
            "SELECT 1 FROM experiments WHERE bench_id = ? LIMIT 1", (b.bench_id,)
        ).fetchone() is not None

    # ── Selection ────────────────────────────────────────────────

    @staticmethod
    def _where(where: Predicate | None, include_outliers: bool) -> tuple[str, tuple[Any, ...]]:
        pred = where or Predicate()
        if not include_outliers:
            pred = Predicate(f"{OUTLIER_COLUMN} = 0") & pred
        if not pred:
            return "", ()
        return f" WHERE {pred.sql}", pred.params

    def select(
        self,
        bench: str | Benchmark,
        where: Predicate | None = None,
        *,
        include_outliers: bool = False,
        columns: Sequence[str] | None = None,
        distinct: bool = False,
        order: Sequence[str] | None = None,
    ) -> Iterator[dict[str, Any]]:
        """Iterate matching wide-table rows in experiment order.

        Each row maps canonical field names to values, plus ``bench_id``,
        ``exp_id`` and ``outlier``.
        """
        b = self.get_benchmark(bench)
        conn = self._require()
        if not self._view_exists(conn, b):
            return
        fields = self._fields(conn, b)
        if columns is None:
            names = [f.name for f in fields]
        else:
            names = [self.get_field(b, c).name for c in columns]
        selected = [_q(field_column(n)) for n in names]
        if not distinct:
            selected = [BENCH_COLUMN, EXP_COLUMN, OUTLIER_COLUMN] + selected
        clause, params = self._where(where, include_outliers)
        if order:
            ordering = ", ".join(_q(self.get_field(b, o).column) for o in order)
        else:
            ordering = ", ".join(selected) if distinct else EXP_COLUMN
        sql = (f"SELECT {'DISTINCT ' if distinct else ''}{', '.join(selected)} "
               f"FROM {_q(b.view)}{clause} ORDER BY {ordering}")
        logger.debug("select: %s %s", sql, params)
        for row in conn.execute(sql, params):
            values = tuple(row)
            if distinct:
                yield dict(zip(names, values))
            else:
                item = dict(zip(names, values[3:]))
                item["bench_id"], item["exp_id"], item["outlier"] = (
                    values[0], values[1], bool(values[2]))
                yield item

    def distinct_values(
        self,
        bench: str | Benchmark,
        field_name: str,
        where: Predicate | None = None,
        include_outliers: bool = False,
    ) -> list[Any]:
        f = self.get_field(bench, field_name)
        return [
            row[f.name]
            for row in self.select(bench, where, include_outliers=include_outliers,
                                   columns=[f.name], distinct=True)
        ]

    def execute_sql(self, sql: str, params: Sequence[Any] = ()) -> list[dict[str, Any]]:
        """Raw SQL pass-through against the wide tables. Not validated."""
        conn = self._require()
        if not self._lock.acquire(blocking=False):
            raise StoreBusyError("store is busy with another operation")
        try:
            rows = conn.execute(sql, tuple(params)).fetchall()
        except sqlite3.Error as e:
            raise StoreError(f"SQL failed: {e}") from e
        finally:
            self._lock.release()
        return [dict(r) for r in rows]


class ExperimentBatch:
    """Experiment insertion within an open store transaction."""

    def __init__(self, conn: sqlite3.Connection, bench: Benchmark, fields: Sequence[Field]) -> None:
        self._conn = conn
        self.bench = bench
        self.fields = list(fields)
        self._by_name = {f.name: f for f in self.fields}
        self._keys = [f for f in self.fields if f.is_key]
        columns = [BENCH_COLUMN, EXP_COLUMN, OUTLIER_COLUMN] + [_q(f.column) for f in self.fields]
        self._insert_sql = (
            f"INSERT INTO {_q(bench.view)} ({', '.join(columns)}) "
            f"VALUES ({', '.join('?' for _ in columns)})"
        )

    def convert(self, values: Mapping[str, Any]) -> dict[str, Any]:
        row: dict[str, Any] = {}
        for name, value in values.items():
            cname = canonical_name(name)
            f = self._by_name.get(cname)
            if f is None:
                raise UnknownNameError(f"benchmark {self.bench.name} has no field {name!r}")
            try:
                row[cname] = f.convert(value)
            except ValueError:
                raise ImportDataError(
                    f"value {value!r} of numeric field {cname} is not a number"
                ) from None
        return row

    def identity(self, row: Mapping[str, Any]) -> str:
        key_values = []
        for f in self._keys:
            v = row.get(f.name)
            if v is None or v == "":
                raise ImportDataError(f"key field {f.name} has no value")
            key_values.append(v)
        return encode_identity(key_values)

    def add(self, values: Mapping[str, Any]) -> tuple[int, bool]:
        row = self.convert(values)
        identity = self.identity(row)
        cur = self._conn.execute(
            "INSERT OR IGNORE INTO experiments (bench_id, identity) VALUES (?, ?)",
            (self.bench.bench_id, identity),
        )
        if cur.rowcount == 0:
            existing = self._conn.execute(
                "SELECT exp_id FROM experiments WHERE bench_id = ? AND identity = ?",
                (self.bench.bench_id, identity),
            ).fetchone()
            return existing["exp_id"], False
        exp_id = cur.lastrowid
        self._conn.execute(
            self._insert_sql,
            (self.bench.bench_id, exp_id, 0, *(row.get(f.name) for f in self.fields)),
        )
        return exp_id, True
