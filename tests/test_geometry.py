"""Tests for the curve geometry engine: axis mapping, bar groups and the
normalize/accumulate/stack adjustments."""

import logging

import pytest

from benchgraph.errors import GraphError
from benchgraph.pipeline import evaluate_text


def layout(store, text):
    model = evaluate_text(text, store, environ={})
    assert len(model.graphs) == 1
    return model.graphs[0]


def xy(curve):
    return [(p.x, p.y) for p in curve.points]


NUMERIC = "[graph]\nxtype: numeric\nytype: numeric\n[bench]\nname: IOR\n"
CATEGORY = "[graph]\nxtype: category\nytype: numeric\n{extra}[bench]\nname: IOR\n"


def category(extra=""):
    return CATEGORY.format(extra=extra)


def curve(nodes=None, extra=""):
    flt = f"filter: $NODES == {nodes}\n" if nodes is not None else ""
    return f"[curve]\n{flt}xval: $OPERATION\nyval: $BANDWIDTH\n{extra}"


# ── Numeric axes ─────────────────────────────────────────────────

class TestNumeric:
    def test_read_bandwidth_by_nodes(self, ior_data):
        g = layout(ior_data, NUMERIC + "filter: $OPERATION == 'read'\n"
                   "[curve]\nxval: $NODES\nyval: $BANDWIDTH\n")
        (c,) = g.curves
        assert c.curve_id == 1
        assert xy(c) == [(1.0, 100.0), (2.0, 200.0)]
        assert [(p.raw_x, p.raw_y) for p in c.points] == [(1, 100), (2, 200)]

    def test_points_sorted_by_position(self, ior):
        for nodes, bw in ((8, 1), (2, 2), (16, 3)):
            ior.add_experiment("IOR", {"OPERATION": "read", "NODES": nodes, "BANDWIDTH": bw})
        g = layout(ior, NUMERIC + "[curve]\nxval: $NODES\nyval: $BANDWIDTH\n")
        assert [p.x for p in g.curves[0].points] == [2.0, 8.0, 16.0]

    def test_plotted_equals_raw_without_adjustments(self, ior_data):
        g = layout(ior_data, NUMERIC + "[curve]\nxval: $NODES\nyval: $BANDWIDTH\n")
        for p in g.points():
            assert (p.x, p.y) == (p.raw_x, p.raw_y)

    def test_aggregation_with_error_range(self, ior_data):
        g = layout(ior_data, NUMERIC.replace("ytype: numeric\n", "ytype: numeric\naggr: avg\n")
                   + "[curve]\nxval: $NODES\nyval: $BANDWIDTH\n")
        p1, p2 = g.curves[0].points
        assert (p1.y, p1.low, p1.high) == (75.0, 50.0, 100.0)
        assert (p2.y, p2.low, p2.high) == (140.0, 80.0, 200.0)

    def test_non_numeric_value_on_numeric_axis(self, ior_data):
        with pytest.raises(GraphError, match="non-numeric value 'read'"):
            layout(ior_data, NUMERIC + "[curve]\nxval: $OPERATION\nyval: $BANDWIDTH\n")

    def test_iterate_gives_one_curve_per_instance(self, ior_data):
        g = layout(ior_data, NUMERIC + "[curve]\nxval: $NODES\nyval: $BANDWIDTH\n"
                   "iterate: $OPERATION\n")
        assert [c.curve_id for c in g.curves] == [1, 2]
        assert [c.label for c in g.curves] == ["IOR OPERATION=read", "IOR OPERATION=write"]
        assert xy(g.curves[1]) == [(1.0, 50.0), (2.0, 80.0)]

    def test_skipped_curves_get_no_id(self, ior_data):
        g = layout(ior_data, NUMERIC
                   + "[curve]\nxval: $NODES\nyval: $BANDWIDTH\noptions: skip\n"
                   + "[curve]\nxval: $NODES\nyval: $BANDWIDTH\nlabel: shown\n")
        assert [(c.curve_id, c.label) for c in g.curves] == [(1, "shown")]


# ── Category axes ────────────────────────────────────────────────

class TestCategories:
    def test_observed_values_sorted(self, ior_data):
        g = layout(ior_data, category("aggr: avg\n") + curve())
        assert g.x.categories == ["read", "write"]
        assert g.x.ticks == [(1.0, "read"), (2.0, "write")]
        assert [(p.raw_x, p.x, p.y) for p in g.curves[0].points] == [
            ("read", 1.0, 150.0), ("write", 2.0, 65.0)]

    def test_observed_values_in_first_seen_order_across_curves(self, ior_data):
        text = (category()
                + curve(1, "filter: $OPERATION == 'write'\n")
                + curve(2, "filter: $OPERATION == 'read'\n"))
        g = layout(ior_data, text)
        assert g.x.categories == ["write", "read"]
        assert [p.x for p in g.curves[0].points] == [1.0]
        assert [p.x for p in g.curves[1].points] == [2.0]

    def test_skipped_curves_do_not_claim_positions(self, ior_data):
        text = (category()
                + curve(1, "filter: $OPERATION == 'write'\noptions: skip\n")
                + curve(2))
        g = layout(ior_data, text)
        assert g.x.categories == ["read", "write"]

    def test_configured_categories_come_first(self, ior_data):
        g = layout(ior_data, category("xcategory: write, extra\n") + curve(1))
        assert g.x.categories == ["write", "extra", "read"]
        assert {p.raw_x: p.x for p in g.curves[0].points} == {"read": 3.0, "write": 1.0}

    def test_numeric_categories_in_numeric_order(self, ior):
        for nodes in (10, 9, 100):
            ior.add_experiment("IOR", {"OPERATION": "read", "NODES": nodes, "BANDWIDTH": 1})
        g = layout(ior, category() + "[curve]\nxval: $NODES\nyval: $BANDWIDTH\n")
        assert g.x.categories == ["9", "10", "100"]

    def test_tick_skip(self, ior):
        for op in "abcde":
            ior.add_experiment("IOR", {"OPERATION": op, "NODES": 1, "BANDWIDTH": 1})
        g = layout(ior, category("xskip: 2\n") + curve())
        assert [label for _, label in g.x.ticks] == ["a", "c", "e"]

    def test_hbars_take_values_along_x(self, ior_data):
        text = ("[graph]\nxtype: numeric\nytype: category\naggr: max\n[bench]\nname: IOR\n"
                "[curve]\nxval: $BANDWIDTH\nyval: $OPERATION\nstyle: hbars\n")
        g = layout(ior_data, text)
        (c,) = g.curves
        assert c.value_axis == "x"
        assert g.y.categories == ["read", "write"]
        assert [(p.raw_x, p.raw_y, p.x, p.y) for p in c.points] == [
            (200, "read", 200.0, 1.0), (80, "write", 80.0, 2.0)]


class TestBarOffsets:
    def test_offsets_within_group(self, ior_data):
        text = (category("options: xoffset\n")
                + curve(1, "style: bars\n") + curve(2, "style: bars\n") + curve(1, "style: lines\n"))
        g = layout(ior_data, text)
        assert g.x.group_width == 6
        assert g.x.ticks == [(6.0, "read"), (12.0, "write")]
        assert [p.x for p in g.curves[0].points] == [5.0, 11.0]
        assert [p.x for p in g.curves[1].points] == [6.0, 12.0]
        assert [p.x for p in g.curves[2].points] == [6.0, 12.0]

    def test_nogroup_bar_stays_on_tick(self, ior_data):
        text = (category("options: xoffset\n")
                + curve(1, "style: bars\n") + curve(2, "style: bars\noptions: nogroup\n"))
        g = layout(ior_data, text)
        assert g.x.group_width == 5
        assert [p.x for p in g.curves[0].points] == [5.0, 10.0]
        assert [p.x for p in g.curves[1].points] == [5.0, 10.0]

    def test_no_offsets_unless_requested(self, ior_data):
        g = layout(ior_data, category() + curve(1, "style: bars\n") + curve(2, "style: bars\n"))
        assert g.x.group_width == 1
        assert [p.x for p in g.curves[1].points] == [1.0, 2.0]


# ── Adjustments ──────────────────────────────────────────────────

class TestNormalize:
    def test_divides_by_base_curve(self, ior_data):
        text = (category("options: normalize\n")
                + curve(1, "options: base, skip\n") + curve(2))
        g = layout(ior_data, text)
        (c,) = g.curves
        assert [p.y for p in c.points] == [2.0, pytest.approx(1.6)]
        assert [p.raw_y for p in c.points] == [200, 80]

    def test_missing_divisor_falls_back_to_axis_base(self, ior_data):
        base = "[curve]\nfilter: $NODES == 1\nfilter: $OPERATION == 'read'\n" \
               "xval: $OPERATION\nyval: $BANDWIDTH\noptions: base, skip\n"
        g = layout(ior_data, category("options: normalize\nybase: 0.5\n") + base + curve(2))
        read, write = g.curves[0].points
        assert read.y == 2.0
        assert write.y == 0.5

    def test_two_base_curves(self, ior_data):
        text = category("options: normalize\n") + curve(1, "options: base\n") + curve(2, "options: base\n")
        with pytest.raises(GraphError, match="more than one curve"):
            layout(ior_data, text)

    def test_without_base_curve_values_are_kept(self, ior_data, caplog):
        with caplog.at_level(logging.WARNING, logger="benchgraph.geometry.engine"):
            g = layout(ior_data, category("options: normalize\n") + curve(2))
        assert [p.y for p in g.curves[0].points] == [200.0, 80.0]
        assert "no curve with option 'base'" in caplog.text


class TestAccumulate:
    def test_running_sum(self, ior_data):
        g = layout(ior_data, NUMERIC + "filter: $OPERATION == 'read'\n"
                   "[curve]\nxval: $NODES\nyval: $BANDWIDTH\noptions: accum\n")
        assert [p.y for p in g.curves[0].points] == [100.0, 300.0]
        assert [p.raw_y for p in g.curves[0].points] == [100, 200]


class TestStack:
    def test_stacked_on_previous_curves(self, ior_data):
        text = (category("options: stack\n") + curve(1) + curve(2)
                + curve(1, "options: no_stack\n") + curve(2))
        g = layout(ior_data, text)
        assert [p.y for p in g.curves[0].points] == [100.0, 50.0]
        assert [p.y for p in g.curves[1].points] == [300.0, 130.0]
        assert [p.y for p in g.curves[2].points] == [100.0, 50.0]
        assert [p.y for p in g.curves[3].points] == [500.0, 210.0]

    def test_error_range_moves_with_value(self, ior_data):
        text = (category("options: stack\naggr: avg\n")
                + "[curve]\nfilter: $NODES == 1\nxval: $OPERATION\nyval: $BANDWIDTH\n"
                + "[curve]\nxval: $OPERATION\nyval: $BANDWIDTH\n")
        g = layout(ior_data, text)
        read = g.curves[1].points[0]
        assert (read.y, read.low, read.high) == (250.0, 200.0, 300.0)
