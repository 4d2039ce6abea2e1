"""Runtime configuration.

Values are resolved in this order (later wins):

  1. dataclass defaults
  2. JSON config file (``--config``)
  3. environment variables
  4. explicit overrides (command line)

Environment variables:
    BENCHGRAPH_DB:          Path of the benchmark database
    BENCHGRAPH_CHUNK_SIZE:  Rows per import transaction
    BENCHGRAPH_SEPARATOR:   Field separator of the raw data output
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Mapping

from benchgraph.errors import BenchGraphError

logger = logging.getLogger(__name__)

_ENV_VARS = {
    "BENCHGRAPH_DB": "db_path",
    "BENCHGRAPH_CHUNK_SIZE": "import_chunk_size",
    "BENCHGRAPH_SEPARATOR": "data_separator",
}


@dataclass
class BenchGraphConfig:
    """Settings shared by the command line, the importer and the renderers."""
    db_path: str = "benchgraph.db"
    import_chunk_size: int = 1000
    data_separator: str = ":"
    confidence: float = 0.95
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        self.import_chunk_size = int(self.import_chunk_size)
        self.confidence = float(self.confidence)
        if self.import_chunk_size < 1:
            raise BenchGraphError(
                f"import_chunk_size must be >= 1, got {self.import_chunk_size}"
            )
        if not 0.0 < self.confidence < 1.0:
            raise BenchGraphError(
                f"confidence must be between 0 and 1, got {self.confidence}"
            )
        if not self.data_separator:
            raise BenchGraphError("data_separator must not be empty")


def load_config(
    config_path: str | Path | None = None,
    overrides: Mapping[str, Any] | None = None,
    environ: Mapping[str, str] | None = None,
) -> BenchGraphConfig:
    """Build a :class:`BenchGraphConfig` from file, environment and overrides."""
    raw: dict[str, Any] = {}
    known = {f.name for f in fields(BenchGraphConfig)}

    if config_path:
        path = Path(config_path).resolve()
        if not path.exists():
            raise BenchGraphError(f"config file not found: {path}")
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
        unknown = set(data) - known
        if unknown:
            raise BenchGraphError(
                f"unknown config keys in {path}: {', '.join(sorted(unknown))}"
            )
        raw.update(data)
        logger.debug("Config loaded from %s", path)

    env = os.environ if environ is None else environ
    for var, key in _ENV_VARS.items():
        if env.get(var):
            raw[key] = env[var]

    for key, value in (overrides or {}).items():
        if value is not None and key in known:
            raw[key] = value

    return BenchGraphConfig(**raw)
