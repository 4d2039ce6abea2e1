"""Catalog DDL for the benchmark store.

Tables:
  metadata     – key/value store; holds the schema version pair
  benchmarks   – one row per benchmark
  fields       – typed fields of each benchmark (``is_key`` marks identity fields)
  experiments  – one row per distinct identity string within a benchmark
  indices      – secondary index definitions (ordered field lists)

The per-benchmark wide tables (``<NAME>_VIEW``) are not part of this script;
they are created on demand from the current field set.
"""

SCHEMA_VERSION = (1, 0)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS metadata (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS benchmarks (
    bench_id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL UNIQUE,
    description TEXT NOT NULL DEFAULT ''
);

CREATE TABLE IF NOT EXISTS fields (
    field_id INTEGER PRIMARY KEY AUTOINCREMENT,
    bench_id INTEGER NOT NULL REFERENCES benchmarks(bench_id),
    name TEXT NOT NULL,
    numeric INTEGER NOT NULL DEFAULT 0,
    is_key INTEGER NOT NULL DEFAULT 0,
    position INTEGER NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    UNIQUE (bench_id, name)
);

CREATE TABLE IF NOT EXISTS experiments (
    exp_id INTEGER PRIMARY KEY AUTOINCREMENT,
    bench_id INTEGER NOT NULL REFERENCES benchmarks(bench_id),
    identity TEXT NOT NULL,
    outlier INTEGER NOT NULL DEFAULT 0,
    UNIQUE (bench_id, identity)
);

CREATE TABLE IF NOT EXISTS indices (
    index_id INTEGER PRIMARY KEY AUTOINCREMENT,
    bench_id INTEGER NOT NULL REFERENCES benchmarks(bench_id),
    field_list TEXT NOT NULL,
    UNIQUE (bench_id, field_list)
);

CREATE INDEX IF NOT EXISTS idx_fields_bench ON fields(bench_id);
CREATE INDEX IF NOT EXISTS idx_experiments_bench ON experiments(bench_id);
"""
