"""
Change Detection and Area Accounting
====================================

Post-classification comparison of two classified maps of the same ROI:

    - Per-class area at each time point
    - Signed per-class area change
    - Pixel transition matrix (from class x to class)
    - Transition-coded change map
    - Plain-text and tabular change reports

Areas come from the grid's pixel geometry (constant for projected grids,
latitude-dependent for geographic ones) and are accumulated with
``math.fsum`` so the summation order never changes the result.
"""

import math
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from ..data.raster import Raster
from ..models.classifier import CLASSIFICATION_BAND, NODATA_LABEL

NODATA_NAME = 'No data'
SQ_M_PER_HECTARE = 10000.0


@dataclass(frozen=True)
class AreaReport:
    """Per-class area (square metres) of one classified map."""
    period: str
    areas: Mapping[int, float]
    pixel_counts: Mapping[int, int]

    @property
    def total_area(self) -> float:
        return math.fsum(self.areas.values())

    @property
    def total_pixels(self) -> int:
        return int(sum(self.pixel_counts.values()))

    def to_frame(self, class_names: Optional[Mapping[int, str]] = None) -> pd.DataFrame:
        class_names = class_names or {}
        return pd.DataFrame({
            'class': list(self.areas),
            'name': [class_names.get(c, f"Class {c}") for c in self.areas],
            'pixels': [self.pixel_counts[c] for c in self.areas],
            'area_m2': list(self.areas.values()),
            'area_ha': [a / SQ_M_PER_HECTARE for a in self.areas.values()],
        })


@dataclass(frozen=True)
class ClassChange:
    """Area change of one class between two time points."""
    value: int
    name: str
    area_before: float
    area_after: float

    @property
    def delta(self) -> float:
        return self.area_after - self.area_before


@dataclass
class ChangeReport:
    """Two area reports, their per-class deltas and the transition matrix."""
    before: AreaReport
    after: AreaReport
    changes: List[ClassChange]
    changed_area: float = 0.0
    transitions: Optional[pd.DataFrame] = None
    class_names: Dict[int, str] = field(default_factory=dict)

    def delta_percent(self, change: ClassChange) -> float:
        """Signed change as a percentage of the earlier total classified area."""
        total = self.before.total_area
        return change.delta / total * 100.0 if total > 0 else 0.0

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame({
            'class': [c.value for c in self.changes],
            'name': [c.name for c in self.changes],
            f'area_{self.before.period}_m2': [c.area_before for c in self.changes],
            f'area_{self.after.period}_m2': [c.area_after for c in self.changes],
            'delta_m2': [c.delta for c in self.changes],
            'delta_ha': [c.delta / SQ_M_PER_HECTARE for c in self.changes],
            'delta_pct': [self.delta_percent(c) for c in self.changes],
        })


class ChangeAccountant:
    """
    Post-classification comparison and area accounting.

    Compares two classified rasters on the same grid.
    """

    def __init__(
        self,
        class_values: Sequence[int],
        class_names: Optional[Mapping[int, str]] = None,
        band: str = CLASSIFICATION_BAND
    ):
        """
        Args:
            class_values: Land cover class labels
            class_names: Mapping of class labels to names
            band: Band holding the labels in classified rasters
        """
        self.class_values = [int(v) for v in class_values]
        self.class_names = dict(class_names or {})
        self.band = band

    def _name(self, value: int) -> str:
        if value == NODATA_LABEL:
            return NODATA_NAME
        return self.class_names.get(value, f"Class {value}")

    def area_report(self, classified: Raster, period: str = '') -> AreaReport:
        """
        Per-class area of one classified map.

        area(c) = sum over rows of (pixels == c in row) x pixel area of row
        """
        labels = classified[self.band]
        row_areas = classified.grid.pixel_areas()

        areas: Dict[int, float] = {}
        counts: Dict[int, int] = {}
        for value in self.class_values:
            per_row = (labels == value).sum(axis=1)
            counts[value] = int(per_row.sum())
            areas[value] = math.fsum(per_row * row_areas)
        return AreaReport(period, areas, counts)

    def _check_grids(self, before: Raster, after: Raster):
        if not before.grid.matches(after.grid):
            raise ValueError(
                "Classified rasters are on different grids: "
                f"{before.grid.shape} vs {after.grid.shape}"
            )

    def transition_matrix(self, before: Raster, after: Raster) -> pd.DataFrame:
        """
        Pixel counts from each class (rows) to each class (columns).

        A leading no-data row and column collect unclassified pixels and
        labels outside the class set, so every pixel lands in exactly one
        cell and the matrix sums to the pixel count.
        """
        self._check_grids(before, after)
        values = [NODATA_LABEL] + self.class_values
        n = len(values)

        a = np.asarray(before[self.band]).astype(np.int64).ravel()
        b = np.asarray(after[self.band]).astype(np.int64).ravel()
        top = int(max(a.max(initial=0), b.max(initial=0), max(values))) + 1
        lut = np.zeros(top, dtype=np.int64)
        for i, value in enumerate(values):
            lut[value] = i
        a_idx = np.where(a >= 0, lut[np.clip(a, 0, top - 1)], 0)
        b_idx = np.where(b >= 0, lut[np.clip(b, 0, top - 1)], 0)

        counts = np.bincount(a_idx * n + b_idx, minlength=n * n).reshape(n, n)
        names = [self._name(v) for v in values]
        return pd.DataFrame(
            counts,
            index=pd.Index(names, name='from'),
            columns=pd.Index(names, name='to'),
        )

    def change_map(self, before: Raster, after: Raster) -> Raster:
        """
        Transition-coded change raster.

        Changed pixels hold ``from * K + to`` with K = largest label + 1,
        unchanged pixels hold 0 and pixels unclassified in either map -1.
        """
        self._check_grids(before, after)
        a = np.asarray(before[self.band]).astype(np.int32)
        b = np.asarray(after[self.band]).astype(np.int32)
        k = max(self.class_values) + 1

        valid = (a != NODATA_LABEL) & (b != NODATA_LABEL)
        coded = np.where(a != b, a * k + b, 0)
        coded = np.where(valid, coded, -1).astype(np.int32)
        return Raster({'transition': coded}, before.grid, nodata=-1)

    def compare(
        self,
        before: Raster,
        after: Raster,
        period_before: str = 'before',
        period_after: str = 'after',
        with_transitions: bool = True
    ) -> ChangeReport:
        """
        Compare two classified maps.

        Returns:
            ChangeReport with both area reports, per-class deltas and, when
            requested, the transition matrix
        """
        self._check_grids(before, after)
        report_before = self.area_report(before, period_before)
        report_after = self.area_report(after, period_after)

        changes = [
            ClassChange(
                value=value,
                name=self._name(value),
                area_before=report_before.areas[value],
                area_after=report_after.areas[value],
            )
            for value in self.class_values
        ]

        report = ChangeReport(
            report_before, report_after, changes,
            changed_area=self._changed_area(before, after),
            class_names={v: self._name(v) for v in self.class_values},
        )
        if with_transitions:
            report.transitions = self.transition_matrix(before, after)
        return report

    def _changed_area(self, before: Raster, after: Raster) -> float:
        a = before[self.band]
        b = after[self.band]
        changed = (a != b) & (a != NODATA_LABEL) & (b != NODATA_LABEL)
        return math.fsum(changed.sum(axis=1) * before.grid.pixel_areas())

    def generate_report(self, report: ChangeReport) -> str:
        """
        Generate text report of changes.

        Args:
            report: Computed change report

        Returns:
            Formatted report string
        """
        lines = []
        lines.append("=" * 60)
        lines.append(f"LAND COVER CHANGE REPORT: {report.before.period} - {report.after.period}")
        lines.append("=" * 60)
        lines.append("")

        lines.append("SUMMARY")
        lines.append("-" * 40)
        lines.append(f"Classified area {report.before.period}: "
                     f"{report.before.total_area / SQ_M_PER_HECTARE:,.2f} ha")
        lines.append(f"Classified area {report.after.period}: "
                     f"{report.after.total_area / SQ_M_PER_HECTARE:,.2f} ha")
        lines.append(f"Area changed: {report.changed_area / SQ_M_PER_HECTARE:,.2f} ha")
        lines.append("")

        lines.append("AREA BY CLASS (hectares)")
        lines.append("-" * 40)
        lines.append(f"  {'Class':<18} {report.before.period:>12} {report.after.period:>12} "
                     f"{'Change':>12} {'%':>8}")
        for change in report.changes:
            sign = "+" if change.delta > 0 else ""
            lines.append(
                f"  {change.name:<18} {change.area_before / SQ_M_PER_HECTARE:>12,.2f} "
                f"{change.area_after / SQ_M_PER_HECTARE:>12,.2f} "
                f"{sign}{change.delta / SQ_M_PER_HECTARE:>11,.2f} "
                f"{report.delta_percent(change):>+7.2f}%"
            )
        lines.append("")

        if report.transitions is not None:
            lines.append("MAJOR TRANSITIONS (pixels)")
            lines.append("-" * 40)
            major = self._major_transitions(report.transitions)
            if not major:
                lines.append("  none")
            for from_name, to_name, count in major:
                lines.append(f"  {from_name} → {to_name}: {count:,}")
            lines.append("")

        lines.append("=" * 60)
        return "\n".join(lines)

    @staticmethod
    def _major_transitions(transitions: pd.DataFrame, limit: int = 10) -> List[Tuple[str, str, int]]:
        stacked = transitions.stack()
        rows = [
            (from_name, to_name, int(count))
            for (from_name, to_name), count in stacked.items()
            if from_name != to_name and NODATA_NAME not in (from_name, to_name) and count > 0
        ]
        return sorted(rows, key=lambda row: -row[2])[:limit]
