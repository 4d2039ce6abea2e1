"""End-to-end: import results, evaluate a description file, render."""

import pytest

from benchgraph.pipeline import evaluate, evaluate_text, render
from benchgraph.store.importer import import_csv_text

CSV = "OPERATION,NODES,BANDWIDTH\nread,1,100\nread,2,200\nwrite,1,50\nwrite,2,80\n"

IOR_DESC = """\
# IOR bandwidth by node count
[global]
env: OP = read

[graph]
title: IOR %OP bandwidth
xlabel: nodes
xtype: numeric
ytype: numeric

[bench]
name: IOR
filter: $OPERATION == '%OP'

[curve]
xval: $NODES
yval: $BANDWIDTH
"""


@pytest.fixture
def desc_file(tmp_path):
    path = tmp_path / "ior.desc"
    path.write_text(IOR_DESC)
    return path


class TestEndToEnd:
    def test_ior_read_bandwidth(self, ior, desc_file):
        import_csv_text(ior, "IOR", CSV)
        model = evaluate(desc_file, ior, environ={})
        assert model.source == str(desc_file)
        (graph,) = model.graphs
        assert graph.title == "IOR read bandwidth"
        assert render(model, "data") == "1:1:100:1:100\n1:2:200:2:200\n"

    def test_reimport_changes_nothing(self, ior, desc_file):
        import_csv_text(ior, "IOR", CSV)
        before = render(evaluate(desc_file, ior, environ={}), "gnuplot")
        result = import_csv_text(ior, "IOR", CSV)
        assert (result.inserted, result.duplicates) == (0, 4)
        assert render(evaluate(desc_file, ior, environ={}), "gnuplot") == before

    def test_override_beats_os_environment_and_default(self, ior, desc_file):
        import_csv_text(ior, "IOR", CSV)
        model = evaluate(desc_file, ior, {"OP": "write"}, environ={"OP": "read"})
        assert model.graphs[0].title == "IOR write bandwidth"
        assert [p.y for p in model.points()] == [50.0, 80.0]

    def test_os_environment_beats_default(self, ior, desc_file):
        import_csv_text(ior, "IOR", CSV)
        model = evaluate(desc_file, ior, environ={"OP": "write"})
        assert model.graphs[0].title == "IOR write bandwidth"

    def test_contexts_do_not_leak(self, ior, desc_file):
        import_csv_text(ior, "IOR", CSV)
        evaluate(desc_file, ior, {"OP": "write"}, environ={})
        assert evaluate(desc_file, ior, environ={}).graphs[0].title == "IOR read bandwidth"

    def test_separator(self, ior):
        import_csv_text(ior, "IOR", CSV)
        text = "[global]\nseparator: ;\n" + IOR_DESC.split("[global]\nenv: OP = read\n")[1]
        model = evaluate_text(text, ior, {"OP": "read"}, environ={})
        assert model.separator == ";"
        assert render(model, "data").splitlines()[0] == "1;1;100;1;100"
        assert evaluate_text(IOR_DESC, ior, separator=",", environ={}).separator == ","

    def test_several_graphs(self, ior):
        import_csv_text(ior, "IOR", CSV)
        second = IOR_DESC.split("[global]\nenv: OP = read\n")[1].replace("%OP", "write")
        model = evaluate_text(IOR_DESC + second, ior, environ={})
        assert [g.title for g in model.graphs] == ["IOR read bandwidth", "IOR write bandwidth"]
        assert render(model, "data").count("\n\n") == 1

    def test_confidence_default_and_graph_key(self, ior):
        for bw in (10, 12, 14):
            ior.add_experiment("IOR", {"OPERATION": "read", "NODES": bw, "BANDWIDTH": bw})
        text = ("[graph]\nxtype: numeric\nytype: numeric\n{conf}[bench]\nname: IOR\n"
                "[curve]\nxval: 1\nyval: $BANDWIDTH\naggr: delta\n")
        narrow = evaluate_text(text.format(conf=""), ior, confidence=0.5, environ={})
        wide = evaluate_text(text.format(conf="confidence: 0.99\n"), ior, confidence=0.5, environ={})
        assert narrow.graphs[0].curves[0].points[0].y < wide.graphs[0].curves[0].points[0].y
