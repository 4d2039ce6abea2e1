"""benchgraph: benchmark result store and graph description evaluator."""

__version__ = "0.1.0"
