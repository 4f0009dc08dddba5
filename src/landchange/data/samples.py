"""
Training Sample Extraction
==========================

Samples composite band and index values at labelled reference geometries
and partitions the samples into reproducible training and validation sets.

Points take the pixel that contains them; polygons take every pixel whose
centre falls inside (or, for polygons smaller than a pixel, the pixel under
their representative point). Geometries off the raster and samples with
no-value features are dropped and counted, never fatal.
"""

import logging
import math
from dataclasses import dataclass
from typing import List, Mapping, Sequence, Tuple, Union

import geopandas as gpd
import numpy as np
import pandas as pd
from rasterio.windows import Window
from shapely.geometry import MultiPoint, Point
from shapely.geometry.base import BaseGeometry
from sklearn.model_selection import train_test_split

from ..errors import InvalidGeometryError
from .raster import GridSpec, Raster

logger = logging.getLogger(__name__)

References = Mapping[int, Union[gpd.GeoDataFrame, gpd.GeoSeries]]


@dataclass
class SampleSet:
    """Sampled feature table plus counts of what had to be dropped."""
    table: pd.DataFrame
    skipped_outside: int = 0
    skipped_nodata: int = 0

    @property
    def class_counts(self) -> pd.Series:
        return self.table.iloc[:, 0].value_counts().sort_index()


@dataclass
class TrainingSplit:
    training: pd.DataFrame
    validation: pd.DataFrame
    samples: SampleSet


def _point_pixel(grid: GridSpec, point: Point) -> Tuple[int, int]:
    col, row = ~grid.transform * (point.x, point.y)
    row, col = int(math.floor(row)), int(math.floor(col))
    height, width = grid.shape
    if not (0 <= row < height and 0 <= col < width):
        raise InvalidGeometryError(f"Point ({point.x}, {point.y}) lies outside the raster")
    return row, col


def geometry_pixels(grid: GridSpec, geometry: BaseGeometry) -> Tuple[np.ndarray, np.ndarray]:
    """
    Row and column indices of the pixels a reference geometry covers.

    Raises:
        InvalidGeometryError: geometry is empty or misses the raster
    """
    if geometry is None or geometry.is_empty:
        raise InvalidGeometryError("Empty reference geometry")

    if isinstance(geometry, Point):
        row, col = _point_pixel(grid, geometry)
        return np.array([row]), np.array([col])
    if isinstance(geometry, MultiPoint):
        pixels = []
        for point in geometry.geoms:
            try:
                pixels.append(_point_pixel(grid, point))
            except InvalidGeometryError:
                continue
        if not pixels:
            raise InvalidGeometryError("No point of the MultiPoint lies on the raster")
        rows, cols = zip(*pixels)
        return np.array(rows), np.array(cols)

    height, width = grid.shape
    west, south, east, north = geometry.bounds
    inverse = ~grid.transform
    c0, r0 = inverse * (west, north)
    c1, r1 = inverse * (east, south)
    col_off = max(0, int(math.floor(min(c0, c1))))
    row_off = max(0, int(math.floor(min(r0, r1))))
    col_end = min(width, int(math.ceil(max(c0, c1))))
    row_end = min(height, int(math.ceil(max(r0, r1))))
    if col_end <= col_off or row_end <= row_off:
        raise InvalidGeometryError("Reference polygon lies outside the raster")

    window = Window(col_off, row_off, col_end - col_off, row_end - row_off)
    inside = grid.window_grid(window).inside_mask(geometry)
    rows, cols = np.nonzero(inside)
    if rows.size == 0:
        # Smaller than a pixel: fall back to the pixel under the polygon
        row, col = _point_pixel(grid, geometry.representative_point())
        return np.array([row]), np.array([col])
    return rows + row_off, cols + col_off


class TrainingSetBuilder:
    """Extracts labelled feature vectors and splits them train/validation."""

    def __init__(
        self,
        feature_names: Sequence[str],
        train_ratio: float = 0.7,
        seed: int = 42,
        label_column: str = 'landcover'
    ):
        if not 0.0 < train_ratio < 1.0:
            raise ValueError(f"train_ratio must be in (0, 1), got {train_ratio}")
        self.feature_names = list(feature_names)
        self.train_ratio = train_ratio
        self.seed = seed
        self.label_column = label_column

    def sample(self, references: References, raster: Raster) -> SampleSet:
        """
        Extract feature values at every reference geometry.

        Args:
            references: Class label -> geometries of that class
            raster: Composite with all feature bands

        Returns:
            SampleSet whose table has the label column, a ``geometry_id``
            column and one column per feature
        """
        raster.require(self.feature_names)
        features = raster.stack(self.feature_names)
        grid = raster.grid

        frames: List[pd.DataFrame] = []
        skipped_outside = 0
        skipped_nodata = 0

        for label, geometries in references.items():
            if isinstance(geometries, gpd.GeoDataFrame):
                geometries = geometries.geometry
            if geometries.crs is not None:
                geometries = geometries.to_crs(grid.crs.to_wkt())

            for position, geometry in enumerate(geometries):
                try:
                    rows, cols = geometry_pixels(grid, geometry)
                except InvalidGeometryError as exc:
                    logger.debug(f"Skipping class {label} geometry {position}: {exc}")
                    skipped_outside += 1
                    continue

                values = features[:, rows, cols].T
                valid = np.isfinite(values).all(axis=1)
                skipped_nodata += int((~valid).sum())
                if not valid.any():
                    continue

                frame = pd.DataFrame(values[valid], columns=self.feature_names)
                frame.insert(0, 'geometry_id', f"{label}_{position}")
                frame.insert(0, self.label_column, int(label))
                frames.append(frame)

        if frames:
            table = pd.concat(frames, ignore_index=True)
        else:
            table = pd.DataFrame(columns=[self.label_column, 'geometry_id'] + self.feature_names)

        if skipped_outside or skipped_nodata:
            logger.warning(
                f"Dropped {skipped_outside} geometries outside the raster and "
                f"{skipped_nodata} samples with missing values"
            )
        logger.info(f"Sampled {len(table)} reference pixels")
        return SampleSet(table, skipped_outside, skipped_nodata)

    def split(self, samples: SampleSet) -> Tuple[pd.DataFrame, pd.DataFrame]:
        """
        Partition samples into training and validation sets.

        The split depends only on the seed and the sample order. It is
        stratified by class whenever every class has enough samples for
        both sides.
        """
        table = samples.table
        if len(table) < 2:
            raise ValueError(f"Need at least 2 samples to split, got {len(table)}")

        labels = table[self.label_column]
        counts = labels.value_counts()
        n_classes = len(counts)
        n_train = int(math.floor(len(table) * self.train_ratio))
        n_test = len(table) - n_train
        stratify = None
        if counts.min() >= 2 and n_train >= n_classes and n_test >= n_classes:
            stratify = labels

        training, validation = train_test_split(
            table,
            train_size=self.train_ratio,
            random_state=self.seed,
            shuffle=True,
            stratify=stratify,
        )
        logger.info(f"Split {len(table)} samples: {len(training)} training, {len(validation)} validation")
        return training, validation

    def build(self, references: References, raster: Raster) -> TrainingSplit:
        samples = self.sample(references, raster)
        training, validation = self.split(samples)
        return TrainingSplit(training, validation, samples)
