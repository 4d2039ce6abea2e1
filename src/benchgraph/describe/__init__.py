"""Graph descriptions: parser, expression environment, descriptor tree, binder."""

from benchgraph.describe.context import EvaluationContext
from benchgraph.describe.parser import Description, parse_file, parse_text

__all__ = ["Description", "EvaluationContext", "parse_file", "parse_text"]
