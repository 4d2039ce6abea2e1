"""Shared fixtures: an open store and the IOR benchmark used across tests."""

import pytest

from benchgraph.store.benchstore import BenchmarkStore


@pytest.fixture
def store(tmp_path):
    s = BenchmarkStore(tmp_path / "bench.db").open()
    yield s
    s.close()


@pytest.fixture
def ior(store):
    """IOR with key fields OPERATION (text) and NODES (numeric), plus BANDWIDTH."""
    store.create_benchmark("IOR", "IOR runs")
    store.add_field("IOR", "OPERATION", key=True)
    store.add_field("IOR", "NODES", numeric=True, key=True)
    store.add_field("IOR", "BANDWIDTH", numeric=True)
    return store


@pytest.fixture
def ior_data(ior):
    """IOR with read/write results on 1 and 2 nodes."""
    for op, nodes, bw in (("read", 1, 100), ("read", 2, 200), ("write", 1, 50), ("write", 2, 80)):
        ior.add_experiment("IOR", {"OPERATION": op, "NODES": nodes, "BANDWIDTH": bw})
    return ior
