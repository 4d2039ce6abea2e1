"""Tests for the benchmark store: schema, wide tables, experiments, indices."""

import sqlite3

import pytest

from benchgraph.errors import (
    ImportDataError,
    SchemaError,
    SchemaVersionError,
    StoreBusyError,
    UnknownNameError,
)
from benchgraph.store.benchstore import BenchmarkStore, Predicate
from benchgraph.store.names import (
    canonical_name,
    encode_identity,
    field_column,
    index_name,
    normalize_number,
    view_table,
)
from benchgraph.store.schema import SCHEMA_VERSION


def _tables(store):
    return {r["name"] for r in store.execute_sql(
        "SELECT name FROM sqlite_master WHERE type='table'")}


def _indexes(store):
    return {r["name"] for r in store.execute_sql(
        "SELECT name FROM sqlite_master WHERE type='index'")}


# ── Names ────────────────────────────────────────────────────────

class TestNames:
    def test_canonical_name(self):
        assert canonical_name("bytes-per sec") == "BYTES_PER_SEC"
        assert canonical_name("Bytes_Per_Sec") == "BYTES_PER_SEC"
        assert canonical_name("  ior  ") == "IOR"
        assert canonical_name("__a__b__") == "A_B"

    def test_canonical_name_rejects(self):
        with pytest.raises(SchemaError, match="no usable"):
            canonical_name("---")
        with pytest.raises(SchemaError, match="start with a letter"):
            canonical_name("1abc")

    def test_table_naming(self):
        assert view_table("IOR") == "IOR_VIEW"
        assert field_column("NODES") == "_NODES"
        assert index_name("IOR", 3) == "IOR_VIEW_IDX_3"

    def test_normalize_number(self):
        assert normalize_number("1") == 1
        assert normalize_number(1.0) == 1
        assert isinstance(normalize_number("1.0"), int)
        assert normalize_number("2.5") == 2.5
        assert normalize_number("") is None
        assert normalize_number(None) is None
        with pytest.raises(ValueError):
            normalize_number("abc")

    def test_identity_escapes_separator(self):
        assert encode_identity(["a,b", 1]) == "a%2Cb,1"
        assert encode_identity(["read", 2]) != encode_identity(["read,2"])


# ── Catalog and version ──────────────────────────────────────────

class TestCatalog:
    def test_creates_catalog(self, store):
        tables = _tables(store)
        for name in ("metadata", "benchmarks", "fields", "experiments", "indices"):
            assert name in tables

    def test_schema_version_pair(self, store):
        rows = {r["key"]: r["value"] for r in store.execute_sql("SELECT key, value FROM metadata")}
        assert (int(rows["schema_major"]), int(rows["schema_minor"])) == SCHEMA_VERSION

    def test_reopen(self, tmp_path):
        path = tmp_path / "re.db"
        with BenchmarkStore(path) as s:
            s.create_benchmark("A")
        with BenchmarkStore(path) as s:
            assert [b.name for b in s.list_benchmarks()] == ["A"]

    def test_version_mismatch_is_fatal(self, tmp_path):
        path = tmp_path / "old.db"
        BenchmarkStore(path).open().close()
        conn = sqlite3.connect(path)
        conn.execute("UPDATE metadata SET value = '99' WHERE key = 'schema_major'")
        conn.commit()
        conn.close()
        with pytest.raises(SchemaVersionError, match="99.0"):
            BenchmarkStore(path).open()

    def test_memory_store(self):
        with BenchmarkStore(":memory:") as s:
            s.create_benchmark("X")
            assert s.find_benchmark("x").name == "X"

    def test_nested_transaction_is_busy(self, store):
        with store.transaction():
            with pytest.raises(StoreBusyError):
                store.create_benchmark("B")


# ── Benchmarks ───────────────────────────────────────────────────

class TestBenchmarks:
    def test_create_and_get(self, store):
        b = store.create_benchmark("my-bench", "desc")
        assert b.name == "MY_BENCH"
        assert store.get_benchmark("My Bench") == b
        assert store.get_benchmark("my_bench").description == "desc"

    def test_duplicate(self, store):
        store.create_benchmark("A")
        with pytest.raises(SchemaError, match="already exists"):
            store.create_benchmark("a")

    def test_ensure_creates_once(self, store):
        first = store.ensure_benchmark("A")
        assert store.ensure_benchmark("A") == first
        assert len(store.list_benchmarks()) == 1

    def test_unknown(self, store):
        with pytest.raises(UnknownNameError):
            store.get_benchmark("nope")

    def test_rename_moves_wide_table(self, ior):
        ior.add_experiment("IOR", {"OPERATION": "read", "NODES": 1, "BANDWIDTH": 100})
        ior.create_index("IOR", ["NODES"])
        ior.rename_benchmark("IOR", "ior2")
        tables = _tables(ior)
        assert "IOR2_VIEW" in tables
        assert "IOR_VIEW" not in tables
        assert ior.count_experiments("IOR2") == 1
        idx = ior.list_indices("IOR2")[0]
        assert idx.name.startswith("IOR2_VIEW_IDX_")
        assert idx.name in _indexes(ior)

    def test_remove_requires_no_fields(self, ior):
        with pytest.raises(SchemaError, match="fields"):
            ior.remove_benchmark("IOR")

    def test_remove_requires_no_data(self, ior):
        ior.add_experiment("IOR", {"OPERATION": "read", "NODES": 1})
        with pytest.raises(SchemaError, match="experiments"):
            ior.remove_benchmark("IOR")

    def test_remove_empty(self, store):
        store.create_benchmark("A")
        store.remove_benchmark("A")
        assert store.find_benchmark("A") is None

    def test_set_description(self, store):
        store.create_benchmark("A")
        store.set_benchmark_description("A", "new")
        assert store.get_benchmark("A").description == "new"


# ── Fields ───────────────────────────────────────────────────────

class TestFields:
    def test_fields_in_position_order(self, ior):
        assert [f.name for f in ior.fields("IOR")] == ["OPERATION", "NODES", "BANDWIDTH"]
        assert [f.name for f in ior.key_fields("IOR")] == ["OPERATION", "NODES"]
        assert ior.get_field("IOR", "nodes").numeric

    def test_duplicate_field(self, ior):
        with pytest.raises(SchemaError, match="already has"):
            ior.add_field("IOR", "Nodes")

    def test_schema_change_fails_with_data_and_succeeds_after_delete(self, ior):
        ior.add_experiment("IOR", {"OPERATION": "read", "NODES": 1, "BANDWIDTH": 1})
        with pytest.raises(SchemaError):
            ior.add_field("IOR", "RUN", key=True)
        with pytest.raises(SchemaError):
            ior.remove_field("IOR", "BANDWIDTH")
        with pytest.raises(SchemaError):
            ior.set_field_numeric("IOR", "BANDWIDTH", False)
        with pytest.raises(SchemaError):
            ior.set_field_key("IOR", "BANDWIDTH", True)

        ior.remove_experiments("IOR")
        ior.add_field("IOR", "RUN", key=True, numeric=True)
        ior.remove_field("IOR", "BANDWIDTH")
        ior.set_field_numeric("IOR", "RUN", False)
        ior.set_field_key("IOR", "RUN", False)
        assert [f.name for f in ior.key_fields("IOR")] == ["OPERATION", "NODES"]

    def test_add_non_key_field_with_data_backfills_default(self, ior):
        ior.add_experiment("IOR", {"OPERATION": "read", "NODES": 1, "BANDWIDTH": 100})
        ior.add_field("IOR", "RUN", numeric=True, default="7")
        rows = list(ior.select("IOR"))
        assert rows[0]["RUN"] == 7
        assert rows[0]["BANDWIDTH"] == 100

    def test_bad_numeric_default(self, ior):
        with pytest.raises(SchemaError, match="not a number"):
            ior.add_field("IOR", "RUN", numeric=True, default="x")

    def test_rename_keeps_data(self, ior):
        ior.add_experiment("IOR", {"OPERATION": "read", "NODES": 1, "BANDWIDTH": 100})
        f = ior.rename_field("IOR", "BANDWIDTH", "bw")
        assert f.name == "BW"
        assert list(ior.select("IOR"))[0]["BW"] == 100

    def test_unknown_field(self, ior):
        with pytest.raises(UnknownNameError):
            ior.get_field("IOR", "missing")


# ── Experiments ──────────────────────────────────────────────────

class TestExperiments:
    def test_insert_is_idempotent_by_key(self, ior):
        exp_id, inserted = ior.add_experiment("IOR", {"OPERATION": "read", "NODES": 1, "BANDWIDTH": 100})
        assert inserted
        again, inserted = ior.add_experiment("IOR", {"OPERATION": "read", "NODES": "1.0", "BANDWIDTH": 5})
        assert not inserted
        assert again == exp_id
        assert ior.count_experiments("IOR") == 1
        assert ior.get_experiment("IOR", exp_id)["BANDWIDTH"] == 100

    def test_identity_ignores_non_key_fields_and_order(self, ior):
        a, _ = ior.add_experiment("IOR", {"BANDWIDTH": 1, "NODES": 2, "OPERATION": "write"})
        b, inserted = ior.add_experiment("IOR", {"OPERATION": "write", "NODES": 2})
        assert a == b and not inserted

    def test_requires_key_fields(self, store):
        store.create_benchmark("NOKEY")
        store.add_field("NOKEY", "VALUE", numeric=True)
        with pytest.raises(SchemaError, match="no key fields"):
            store.add_experiment("NOKEY", {"VALUE": 1})

    def test_rejects_empty_key(self, ior):
        with pytest.raises(ImportDataError, match="NODES"):
            ior.add_experiment("IOR", {"OPERATION": "read"})

    def test_rejects_unknown_field(self, ior):
        with pytest.raises(UnknownNameError):
            ior.add_experiment("IOR", {"OPERATION": "read", "NODES": 1, "COLOR": "red"})

    def test_rejects_non_numeric(self, ior):
        with pytest.raises(ImportDataError, match="BANDWIDTH"):
            ior.add_experiment("IOR", {"OPERATION": "read", "NODES": 1, "BANDWIDTH": "fast"})

    def test_outliers(self, ior):
        a, _ = ior.add_experiment("IOR", {"OPERATION": "read", "NODES": 1, "BANDWIDTH": 100})
        ior.add_experiment("IOR", {"OPERATION": "read", "NODES": 2, "BANDWIDTH": 200})
        assert not ior.is_outlier(a)
        ior.set_outlier(a)
        assert ior.is_outlier(a)
        assert [r["NODES"] for r in ior.select("IOR")] == [2]
        assert len(list(ior.select("IOR", include_outliers=True))) == 2
        assert ior.count_experiments("IOR", include_outliers=False) == 1
        ior.set_outlier(a, False)
        assert not ior.is_outlier(a)

    def test_mark_outliers_by_predicate(self, ior):
        for n in (1, 2, 3):
            ior.add_experiment("IOR", {"OPERATION": "read", "NODES": n, "BANDWIDTH": n})
        marked = ior.mark_outliers("IOR", Predicate('"_NODES" > ?', (1,)))
        assert marked == 2
        assert [r["NODES"] for r in ior.select("IOR")] == [1]

    def test_remove_by_id_and_predicate(self, ior):
        ids = [ior.add_experiment("IOR", {"OPERATION": "read", "NODES": n})[0] for n in (1, 2, 3)]
        assert ior.remove_experiments("IOR", ids=[ids[0]]) == 1
        assert ior.remove_experiments("IOR", where=Predicate.equals("NODES", 2)) == 1
        assert [r["NODES"] for r in ior.select("IOR")] == [3]

    def test_select_filters_and_orders(self, ior):
        ior.add_experiment("IOR", {"OPERATION": "write", "NODES": 1, "BANDWIDTH": 50})
        ior.add_experiment("IOR", {"OPERATION": "read", "NODES": 1, "BANDWIDTH": 100})
        rows = list(ior.select("IOR", Predicate.equals("OPERATION", "read")))
        assert [r["BANDWIDTH"] for r in rows] == [100]
        assert set(rows[0]) >= {"OPERATION", "NODES", "BANDWIDTH", "exp_id", "bench_id", "outlier"}
        assert ior.distinct_values("IOR", "OPERATION") == ["read", "write"]

    def test_select_empty_benchmark(self, ior):
        assert list(ior.select("IOR")) == []
        assert ior.distinct_values("IOR", "NODES") == []

    def test_batch_rolls_back_on_error(self, ior):
        with pytest.raises(ImportDataError):
            with ior.batch("IOR") as batch:
                batch.add({"OPERATION": "read", "NODES": 1})
                batch.add({"OPERATION": "read", "NODES": "x"})
        assert ior.count_experiments("IOR") == 0


# ── Indices ──────────────────────────────────────────────────────

class TestIndices:
    def test_create_list_drop(self, ior):
        idx = ior.create_index("IOR", ["operation", "nodes"])
        assert idx.fields == ("OPERATION", "NODES")
        assert [i.fields for i in ior.list_indices("IOR")] == [("OPERATION", "NODES")]
        ior.drop_index("IOR", ["OPERATION", "NODES"])
        assert ior.list_indices("IOR") == []

    def test_physical_index_follows_table(self, ior):
        idx = ior.create_index("IOR", ["NODES"])
        assert idx.name not in _indexes(ior)
        ior.add_experiment("IOR", {"OPERATION": "read", "NODES": 1})
        assert idx.name in _indexes(ior)
        ior.add_field("IOR", "RUN")
        assert idx.name in _indexes(ior)

    def test_duplicate_and_unknown(self, ior):
        ior.create_index("IOR", ["NODES"])
        with pytest.raises(SchemaError):
            ior.create_index("IOR", ["NODES"])
        with pytest.raises(UnknownNameError):
            ior.create_index("IOR", ["MISSING"])
        with pytest.raises(UnknownNameError):
            ior.drop_index("IOR", ["OPERATION"])

    def test_remove_field_drops_its_indices(self, ior):
        ior.create_index("IOR", ["BANDWIDTH"])
        ior.remove_field("IOR", "BANDWIDTH")
        assert ior.list_indices("IOR") == []

    def test_raw_sql_error(self, ior):
        from benchgraph.errors import StoreError
        with pytest.raises(StoreError, match="SQL failed"):
            ior.execute_sql("SELECT * FROM NO_SUCH_TABLE")
