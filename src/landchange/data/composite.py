"""
Median Composite Builder
========================

Reduces a filtered, cloud-masked time series to one representative
composite on the output grid:

    1. Filter frames by sensor, date range and ROI overlap
    2. Normalize bands and mask clouds per frame
    3. Align each frame to the output grid
    4. Per-band, per-pixel median over valid observations (tile-parallel)
    5. Clip to the ROI

Pixels never observed cloud-free stay no-value in the composite.
"""

import logging
from datetime import date
from typing import Iterable, List, Mapping, Sequence

import numpy as np
from rasterio.windows import Window
from shapely.geometry.base import BaseGeometry

from ..errors import EmptyCollectionError, UnsupportedSensorError
from ..utils.tiling import map_tiles
from .cloud_mask import mask_clouds
from .raster import GridSpec, Raster
from .scenes import Frame
from .sensors import CANONICAL_BANDS, SensorSpec, normalize_bands

logger = logging.getLogger(__name__)


def nan_median(stack: np.ndarray) -> np.ndarray:
    """
    Median along axis 0 ignoring NaN.

    Positions where every value is NaN come back as NaN without the
    all-NaN RuntimeWarning numpy would emit.
    """
    empty = ~np.isfinite(stack).any(axis=0)
    if empty.any():
        stack = np.where(empty, 0.0, stack)
    median = np.nanmedian(stack, axis=0)
    median[empty] = np.nan
    return median


class CompositeBuilder:
    """Builds cloud-free median composites over a fixed ROI and grid."""

    def __init__(
        self,
        grid: GridSpec,
        roi: BaseGeometry,
        roi_crs,
        sensors: Mapping[str, SensorSpec],
        tile_size: int = 512,
        workers: int = 4,
        progress: bool = True
    ):
        """
        Args:
            grid: Output grid of the composite
            roi: Region of interest
            roi_crs: CRS of ``roi``
            sensors: Known sensors by name
            tile_size: Tile edge length for the median reduction
            workers: Thread pool size
            progress: Show progress bars
        """
        self.grid = grid
        self.roi = grid.geometry_to_grid_crs(roi, roi_crs)
        self.sensors = sensors
        self.tile_size = tile_size
        self.workers = workers
        self.progress = progress

    def _sensor(self, name: str) -> SensorSpec:
        try:
            return self.sensors[name]
        except KeyError:
            raise UnsupportedSensorError(f"No band mapping configured for sensor '{name}'") from None

    def select(
        self,
        frames: Iterable[Frame],
        start: date,
        end: date,
        sensors: Sequence[str]
    ) -> List[Frame]:
        """Keep frames of ``sensors`` acquired in [start, end) that overlap the ROI."""
        sensors = set(sensors)
        selected = []
        for frame in frames:
            if frame.sensor not in sensors or not (start <= frame.acquired < end):
                continue
            frame_grid = frame.raster.grid
            roi = frame_grid.geometry_to_grid_crs(self.roi, self.grid.crs)
            if not frame_grid.footprint.intersects(roi):
                logger.debug(f"Frame {frame.scene_id} does not overlap the ROI")
                continue
            selected.append(frame)
        return selected

    def prepare(self, frame: Frame) -> Raster:
        """Normalize, cloud-mask and align one frame to the output grid."""
        sensor = self._sensor(frame.sensor)
        raster = normalize_bands(frame.raster, sensor)
        raster = mask_clouds(raster, sensor)
        return raster.align(self.grid)

    def build(
        self,
        frames: Iterable[Frame],
        start: date,
        end: date,
        sensors: Sequence[str]
    ) -> Raster:
        """
        Build the median composite for one time period.

        Args:
            frames: Candidate frames (any sensor, any date)
            start: Period start (inclusive)
            end: Period end (exclusive)
            sensors: Sensors merged into this composite

        Returns:
            Composite with the canonical bands, clipped to the ROI

        Raises:
            EmptyCollectionError: no frame passed the filters
        """
        selected = self.select(frames, start, end, sensors)
        if not selected:
            raise EmptyCollectionError(
                f"No scenes from {sorted(sensors)} between {start} and {end} overlap the ROI"
            )
        logger.info(f"Compositing {len(selected)} frames ({start} - {end})")

        prepared = [self.prepare(frame) for frame in selected]

        def reduce_tile(window: Window) -> np.ndarray:
            rows, cols = window.toslices()
            return np.stack([
                nan_median(np.stack([r[band][rows, cols] for r in prepared]))
                for band in CANONICAL_BANDS
            ])

        composite = map_tiles(
            reduce_tile,
            self.grid,
            bands=len(CANONICAL_BANDS),
            tile_size=self.tile_size,
            workers=self.workers,
            desc="Median composite",
            progress=self.progress,
        )
        raster = Raster(dict(zip(CANONICAL_BANDS, composite)), self.grid)
        return raster.clip(self.roi)
