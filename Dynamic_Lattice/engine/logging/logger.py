"""JSON line logger for topology rebuild records."""

from __future__ import annotations

import json
import csv
import threading
from collections import Counter
from pathlib import Path
from typing import Any, TYPE_CHECKING

from ...config import Config

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from ..logging_models import BaseLogEntry


class MetricAggregator:
    """Aggregate event counts per step and write ``metrics.csv``."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self.counts: Counter[str] = Counter()
        self._lock = threading.Lock()

    def add(self, step: int, category: str, amount: int = 1) -> None:
        """Increment the count for ``category`` in ``step``."""

        with self._lock:
            self.counts[category] += amount

    def flush(self, step: int) -> None:
        """Write accumulated counts for ``step`` to ``metrics.csv``."""

        with self._lock:
            if not self.counts:
                return
            self.path.parent.mkdir(parents=True, exist_ok=True)
            file_exists = self.path.exists()
            with self.path.open("a", newline="") as fh:
                fieldnames = ["step", *sorted(self.counts.keys())]
                writer = csv.DictWriter(fh, fieldnames=fieldnames)
                if not file_exists:
                    writer.writeheader()
                writer.writerow({"step": step, **self.counts})
            self.counts.clear()


_AGGREGATOR: MetricAggregator | None = None


def _get_aggregator() -> MetricAggregator:
    global _AGGREGATOR
    path = Path(Config.output_dir) / "metrics.csv"
    if _AGGREGATOR is None or _AGGREGATOR.path != path:
        _AGGREGATOR = MetricAggregator(path)
    return _AGGREGATOR


def log_record(
    category: str,
    label: str,
    *,
    step: int | None = None,
    value: dict[str, Any] | None = None,
    metadata: dict[str, Any] | None = None,
    path: Path | None = None,
    **extra: Any,
) -> bool:
    """Append a record to ``<output_dir>/<category>_log.jsonl``.

    Returns ``False`` without writing when the ``category``/``label`` pair is
    disabled in :attr:`Config.log_files`.
    """

    if not Config.is_log_enabled(category, label):
        return False
    if path is None:
        path = Path(Config.output_dir) / f"{category}_log.jsonl"
    path.parent.mkdir(parents=True, exist_ok=True)
    data: dict[str, Any] = {"label": label}
    if step is not None:
        data["step"] = step
    if value is not None:
        if isinstance(value, dict):
            data.update(value)
        else:
            data["value"] = value
    if metadata is not None:
        data["metadata"] = metadata
    if extra:
        data.update(extra)
    with path.open("a") as fh:
        fh.write(json.dumps(data, default=str) + "\n")
    if step is not None:
        _get_aggregator().add(step, f"{category}.{label}")
    return True


def log_entry(category: str, label: str, entry: "BaseLogEntry") -> bool:
    """Write a validated :mod:`pydantic` log entry."""

    return log_record(
        category, label, step=entry.step, value=entry.model_dump(mode="json", exclude={"step"})
    )


def flush_metrics(step: int) -> None:
    """Flush aggregated metrics for ``step`` to disk."""

    _get_aggregator().flush(step)
