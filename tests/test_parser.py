"""Tests for the description parser: sections, continuation, includes, errors."""

import pytest

from benchgraph.describe.parser import parse_file, parse_text, split_list
from benchgraph.errors import DescriptionError, DescriptionSyntaxError

BASIC = """\
# IOR bandwidth
[global]
env: SCALE = 1024

[graph]
title: IOR bandwidth
xtype: numeric
ytype: numeric

[bench]
name: IOR
filter: $OPERATION == "read"

[curve]
xval: $NODES
yval: $BANDWIDTH
aggr: avg
"""


# ── Sections and items ───────────────────────────────────────────

class TestSections:
    def test_basic(self):
        desc = parse_text(BASIC)
        assert [s.kind for s in desc.sections] == ["global", "graph", "bench", "curve"]
        curve = desc.of_kind("curve")[0]
        assert curve.value("xval") == "$NODES"
        assert curve.get("aggr").line == 17
        assert desc.of_kind("bench")[0].all("filter")[0].value == '$OPERATION == "read"'

    def test_implicit_global(self):
        desc = parse_text("env: A = 1\n[graph]\nxtype: numeric\nytype: numeric\n")
        assert desc.sections[0].kind == "global"
        assert desc.sections[0].value("env") == "A = 1"

    def test_end_stops_parsing(self):
        desc = parse_text("[graph]\nxtype: numeric\n[end]\nthis is not parsed\n")
        assert len(desc.sections) == 1

    def test_case_insensitive(self):
        desc = parse_text("[GRAPH]\nXTYPE: numeric\n")
        assert desc.sections[0].kind == "graph"
        assert desc.sections[0].value("xtype") == "numeric"

    def test_comments_and_blank_lines(self):
        desc = parse_text("; comment\n\n   # another\n[graph]\nxtype: numeric\n")
        assert desc.sections[0].line == 4

    def test_multiple_values(self):
        desc = parse_text("[curve]\nfilter: $A > 1\nfilter: $B > 2\noptions: base\noptions: skip\n")
        curve = desc.sections[0]
        assert len(curve.all("filter")) == 2
        assert curve.flags() == {"base", "skip"}

    def test_split_list(self):
        assert split_list("$A, $B  $C") == ["$A", "$B", "$C"]
        assert split_list("a b, c d", ",") == ["a b", "c d"]


# ── Continuation ─────────────────────────────────────────────────

class TestContinuation:
    def test_joined(self):
        desc = parse_text("[curve]\nyval: $A + \\\n   $B\nxval: $C\n")
        curve = desc.sections[0]
        assert curve.value("yval") == "$A + $B"
        assert curve.get("yval").line == 2
        assert curve.get("xval").line == 4

    def test_trailing_continuation(self):
        desc = parse_text("[curve]\nyval: $A \\\n")
        assert desc.sections[0].value("yval") == "$A"


# ── Errors ───────────────────────────────────────────────────────

class TestErrors:
    def test_unknown_key(self):
        with pytest.raises(DescriptionSyntaxError, match=r"<description>:3: unknown key 'colour'"):
            parse_text("[curve]\nxval: 1\ncolour: red\n")

    def test_duplicate_key(self):
        with pytest.raises(DescriptionSyntaxError, match=":3: duplicate key 'xval'"):
            parse_text("[curve]\nxval: 1\nxval: 2\n")

    def test_unknown_section(self):
        with pytest.raises(DescriptionSyntaxError, match="unknown section"):
            parse_text("[plot]\n")

    def test_malformed_line(self):
        with pytest.raises(DescriptionSyntaxError, match="malformed"):
            parse_text("[graph]\njust words\n")

    @pytest.mark.parametrize("line", [
        "xtype: numbers",
        "aggr: average",
        "confidence: 1.5",
        "xskip: 0",
        "xmin: low",
        "options: sideways",
    ])
    def test_graph_checks(self, line):
        with pytest.raises(DescriptionSyntaxError) as exc:
            parse_text(f"[graph]\n{line}\n")
        assert exc.value.line == 2

    @pytest.mark.parametrize("line", [
        "style: pie",
        "iterate: OPERATION",
        "options: stacked",
    ])
    def test_curve_checks(self, line):
        with pytest.raises(DescriptionSyntaxError):
            parse_text(f"[curve]\n{line}\n")

    def test_global_checks(self):
        with pytest.raises(DescriptionSyntaxError, match="NAME = value"):
            parse_text("[global]\nenv: nothing\n")
        with pytest.raises(DescriptionSyntaxError, match="name\\(arg"):
            parse_text("[global]\nfunction: f = 1\n")

    def test_missing_file(self, tmp_path):
        with pytest.raises(DescriptionError, match="cannot read"):
            parse_file(tmp_path / "nope.desc")


# ── Includes ─────────────────────────────────────────────────────

class TestIncludes:
    def test_include_can_be_disabled(self, tmp_path):
        (tmp_path / "common.desc").write_text("[global]\nenv: A = 1\n")
        text = '[graph]\ninclude "common.desc"\n'
        with pytest.raises(DescriptionSyntaxError, match=":2: include is not allowed"):
            parse_text(text, base_dir=tmp_path, allow_include=False)
        assert parse_text(text, base_dir=tmp_path).sections[1].kind == "global"

    def test_include_relative_to_including_file(self, tmp_path):
        (tmp_path / "sub").mkdir()
        (tmp_path / "sub" / "common.desc").write_text("[global]\nenv: A = 1\n")
        main = tmp_path / "main.desc"
        main.write_text('include "sub/common.desc"\n[graph]\nxtype: numeric\n')
        desc = parse_file(main)
        assert [s.kind for s in desc.sections] == ["global", "graph"]
        assert desc.sections[0].source.endswith("common.desc")
        assert desc.sections[1].line == 2

    def test_error_position_in_included_file(self, tmp_path):
        (tmp_path / "bad.desc").write_text("[graph]\n\nnope: 1\n")
        main = tmp_path / "main.desc"
        main.write_text('include: "bad.desc"\n')
        with pytest.raises(DescriptionSyntaxError) as exc:
            parse_file(main)
        assert exc.value.line == 3
        assert exc.value.source.endswith("bad.desc")

    def test_recursive_include(self, tmp_path):
        a = tmp_path / "a.desc"
        b = tmp_path / "b.desc"
        a.write_text('include "b.desc"\n')
        b.write_text('include "a.desc"\n')
        with pytest.raises(DescriptionSyntaxError, match="recursive include"):
            parse_file(a)

    def test_missing_include(self, tmp_path):
        main = tmp_path / "main.desc"
        main.write_text('include "missing.desc"\n')
        with pytest.raises(DescriptionSyntaxError, match="cannot include"):
            parse_file(main)
