"""Exception hierarchy shared by the store, the description language and the renderers."""

from __future__ import annotations


class BenchGraphError(Exception):
    """Root of every error raised by benchgraph."""


# ── Store ────────────────────────────────────────────────────────

class StoreError(BenchGraphError):
    pass


class SchemaError(StoreError):
    """A schema change would violate an invariant (data present, duplicate name, ...)."""


class UnknownNameError(StoreError):
    """A benchmark, field or index that does not exist was referenced."""


class SchemaVersionError(StoreError):
    """The database was written by an incompatible schema version."""


class StoreBusyError(StoreError):
    """The store connection is already in use by another operation."""


class ImportDataError(StoreError):
    """A row could not be stored; the open chunk was rolled back."""

    def __init__(self, message: str, line: int | None = None) -> None:
        self.line = line
        if line is not None:
            message = f"line {line}: {message}"
        super().__init__(message)


class ImportCanceled(BenchGraphError):
    """Bulk import stopped on request; committed chunks are kept."""

    def __init__(self, rows_committed: int) -> None:
        self.rows_committed = rows_committed
        super().__init__(f"import canceled after {rows_committed} committed rows")


# ── Description language ─────────────────────────────────────────

class ExpressionError(BenchGraphError):
    """An expression could not be parsed or evaluated."""


class DescriptionError(BenchGraphError):
    """A graph description is invalid. Carries the input position when known."""

    def __init__(self, message: str, line: int | None = None, source: str | None = None) -> None:
        self.message = message
        self.line = line
        self.source = source
        super().__init__(self._format())

    def _format(self) -> str:
        if self.line is None:
            return self.message
        return f"{self.source or '<description>'}:{self.line}: {self.message}"


class DescriptionSyntaxError(DescriptionError):
    pass


class UnresolvedReferenceError(DescriptionError):
    """A column, variable, function or benchmark name does not resolve."""


class GraphError(BenchGraphError):
    """Bound curve data cannot be laid out."""
