"""Structural checks run before a rebuilt CSR is published."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional

import numpy as np

from .errors import StructuralIntegrityError

__all__ = ["VerificationReport", "TopologyVerifier"]

# Failures reported per check before truncating the list.
_MAX_EXAMPLES = 3


@dataclass
class VerificationReport:
    failures: List[str] = field(default_factory=list)
    rows_checked: int = 0

    @property
    def ok(self) -> bool:
        return not self.failures


class TopologyVerifier:
    """Validate CSR arrays.

    Parameters
    ----------
    strict:
        Also reject duplicate columns within a row.
    """

    def __init__(self, strict: bool = True) -> None:
        self.strict = strict

    def check(
        self,
        row_offsets: np.ndarray,
        col_indices: np.ndarray,
        node_count: Optional[int] = None,
        expected_degrees: Optional[np.ndarray] = None,
    ) -> VerificationReport:
        """Return a report listing every violated invariant."""

        offsets = np.asarray(row_offsets, dtype=np.int64)
        cols = np.asarray(col_indices, dtype=np.int64)
        report = VerificationReport()
        if offsets.ndim != 1 or offsets.size == 0:
            report.failures.append("row_offsets must be a non-empty 1-D array")
            return report
        n = offsets.size - 1 if node_count is None else int(node_count)
        if offsets.size != n + 1:
            report.failures.append(
                f"row_offsets has {offsets.size} entries, expected {n + 1}"
            )
            return report
        report.rows_checked = n
        if offsets[0] != 0:
            report.failures.append(f"row_offsets[0] is {offsets[0]}, expected 0")
        if offsets[-1] != cols.size:
            report.failures.append(
                f"row_offsets[{n}] is {offsets[-1]}, expected nnz {cols.size}"
            )
        lengths = np.diff(offsets)
        bad_rows = np.flatnonzero(lengths < 0)
        for row in bad_rows[:_MAX_EXAMPLES]:
            report.failures.append(
                f"row {row}: offsets decrease ({offsets[row]} > {offsets[row + 1]})"
            )
        out_of_range = np.flatnonzero((cols < 0) | (cols >= n))
        for e in out_of_range[:_MAX_EXAMPLES]:
            report.failures.append(f"entry {e}: column {cols[e]} outside [0, {n})")
        if len(out_of_range) > _MAX_EXAMPLES:
            report.failures.append(
                f"{len(out_of_range) - _MAX_EXAMPLES} more out-of-range columns"
            )
        if expected_degrees is not None:
            expected = np.asarray(expected_degrees, dtype=np.int64)
            if expected.shape != lengths.shape:
                report.failures.append("expected degree array has the wrong length")
            else:
                mismatched = np.flatnonzero(expected != lengths)
                for row in mismatched[:_MAX_EXAMPLES]:
                    report.failures.append(
                        f"row {row}: length {lengths[row]} != degree {expected[row]}"
                    )
        if self.strict and bad_rows.size == 0 and offsets[-1] == cols.size and cols.size:
            rows = np.repeat(np.arange(n, dtype=np.int64), lengths)
            same_row = rows[1:] == rows[:-1]
            dup = np.flatnonzero(same_row & (cols[1:] <= cols[:-1]))
            for e in dup[:_MAX_EXAMPLES]:
                kind = "duplicate" if cols[e + 1] == cols[e] else "unsorted"
                report.failures.append(
                    f"row {rows[e]}: {kind} column {cols[e + 1]} at entry {e + 1}"
                )
        return report

    def verify(
        self,
        row_offsets: np.ndarray,
        col_indices: np.ndarray,
        node_count: Optional[int] = None,
        expected_degrees: Optional[np.ndarray] = None,
    ) -> VerificationReport:
        """Like :meth:`check` but raise :class:`StructuralIntegrityError` on failure."""

        report = self.check(row_offsets, col_indices, node_count, expected_degrees)
        if not report.ok:
            raise StructuralIntegrityError(report.failures)
        return report
