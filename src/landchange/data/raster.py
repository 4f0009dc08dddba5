"""
Raster Data Model
=================

Immutable multi-band raster on a georeferenced grid, plus the handful of
grid operations the pipeline needs:

    - Masking and clipping to a region of interest
    - Window extraction for tile-parallel processing
    - Nearest-neighbour alignment onto another grid
    - Per-pixel area for area accounting
    - GeoTIFF reading

Float bands encode no-value pixels as NaN. Integer bands (classified maps)
use the raster's ``nodata`` value.
"""

import math
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import rasterio
from rasterio.crs import CRS
from rasterio.features import geometry_mask
from rasterio.transform import Affine, array_bounds, from_origin
from rasterio.warp import Resampling, reproject, transform_geom
from rasterio.windows import Window
from rasterio.windows import transform as window_transform
from shapely.geometry import box, mapping, shape
from shapely.geometry.base import BaseGeometry

from ..errors import MissingBandError

# Mean Earth radius (IUGG), used for geographic pixel areas
EARTH_RADIUS_M = 6371008.8


@dataclass(frozen=True)
class GridSpec:
    """Pixel grid shared by every band of a raster."""
    width: int
    height: int
    transform: Affine
    crs: CRS

    @classmethod
    def from_bounds(
        cls,
        bounds: Tuple[float, float, float, float],
        scale: float,
        crs
    ) -> "GridSpec":
        """
        Build a north-up grid covering ``bounds`` at ``scale`` units per pixel.

        Args:
            bounds: (west, south, east, north) in ``crs`` units
            scale: Pixel size
            crs: Anything ``CRS.from_user_input`` accepts
        """
        west, south, east, north = bounds
        width = max(1, int(math.ceil((east - west) / scale)))
        height = max(1, int(math.ceil((north - south) / scale)))
        return cls(
            width=width,
            height=height,
            transform=from_origin(west, north, scale, scale),
            crs=CRS.from_user_input(crs),
        )

    @property
    def shape(self) -> Tuple[int, int]:
        return self.height, self.width

    @property
    def resolution(self) -> Tuple[float, float]:
        return abs(self.transform.a), abs(self.transform.e)

    @property
    def bounds(self) -> Tuple[float, float, float, float]:
        return array_bounds(self.height, self.width, self.transform)

    @property
    def footprint(self) -> BaseGeometry:
        return box(*self.bounds)

    def window_grid(self, window: Window) -> "GridSpec":
        return GridSpec(
            width=int(window.width),
            height=int(window.height),
            transform=window_transform(window, self.transform),
            crs=self.crs,
        )

    def matches(self, other: "GridSpec") -> bool:
        return (
            self.shape == other.shape
            and self.crs == other.crs
            and self.transform.almost_equals(other.transform)
        )

    def pixel_areas(self) -> np.ndarray:
        """
        Area of one pixel in square metres, per row.

        Projected grids have a constant pixel area. Geographic grids use the
        spherical area of the latitude band each row covers.

        Returns:
            Array of shape (height,)
        """
        if not self.crs.is_geographic:
            res_x, res_y = self.resolution
            units = self.crs.linear_units_factor[1] if self.crs.is_projected else 1.0
            return np.full(self.height, res_x * res_y * units * units, dtype=np.float64)

        dlon = math.radians(abs(self.transform.a))
        rows = np.arange(self.height + 1, dtype=np.float64)
        edges = np.radians(self.transform.f + rows * self.transform.e)
        band = np.abs(np.sin(edges[:-1]) - np.sin(edges[1:]))
        return EARTH_RADIUS_M ** 2 * dlon * band

    def geometry_to_grid_crs(self, geometry: BaseGeometry, geometry_crs) -> BaseGeometry:
        """Reproject a shapely geometry into this grid's CRS."""
        src = CRS.from_user_input(geometry_crs)
        if src == self.crs:
            return geometry
        return shape(transform_geom(src, self.crs, mapping(geometry)))

    def inside_mask(self, geometry: BaseGeometry) -> np.ndarray:
        """Boolean array, True for pixels whose centre lies inside ``geometry``."""
        if geometry.is_empty:
            return np.zeros(self.shape, dtype=bool)
        return geometry_mask(
            [mapping(geometry)],
            out_shape=self.shape,
            transform=self.transform,
            invert=True,
        )


def _frozen(array: np.ndarray) -> np.ndarray:
    """Read-only array the caller can no longer change."""
    array = np.asarray(array)
    base = array.base if isinstance(array.base, np.ndarray) else None
    if array.flags.writeable or (base is not None and base.flags.writeable):
        array = array.copy()
        array.setflags(write=False)
    return array


class Raster:
    """
    Named bands on a shared grid.

    Rasters never change after construction: writeable input arrays are
    copied, band arrays are exposed as read-only views and every operation
    returns a new Raster.
    """

    def __init__(
        self,
        bands: Mapping[str, np.ndarray],
        grid: GridSpec,
        nodata: Optional[float] = None
    ):
        """
        Args:
            bands: Band name -> 2D array of shape ``grid.shape``
            grid: Grid geometry shared by all bands
            nodata: No-value marker for integer bands (float bands use NaN)
        """
        frozen: Dict[str, np.ndarray] = {}
        for name, array in bands.items():
            array = np.asarray(array)
            if array.shape != grid.shape:
                raise ValueError(
                    f"Band '{name}' has shape {array.shape}, grid expects {grid.shape}"
                )
            frozen[name] = _frozen(array)
        self._bands = frozen
        self.grid = grid
        self.nodata = nodata

    def __repr__(self) -> str:
        return f"Raster(bands={list(self._bands)}, shape={self.shape}, crs={self.grid.crs})"

    def __contains__(self, name: str) -> bool:
        return name in self._bands

    def __getitem__(self, name: str) -> np.ndarray:
        try:
            return self._bands[name]
        except KeyError:
            raise MissingBandError(name, self._bands) from None

    @property
    def band_names(self) -> Tuple[str, ...]:
        return tuple(self._bands)

    @property
    def shape(self) -> Tuple[int, int]:
        return self.grid.shape

    def require(self, names: Iterable[str]):
        for name in names:
            if name not in self._bands:
                raise MissingBandError(name, self._bands)

    def select(self, names: Sequence[str]) -> "Raster":
        self.require(names)
        return Raster({n: self._bands[n] for n in names}, self.grid, self.nodata)

    def drop(self, names: Iterable[str]) -> "Raster":
        names = set(names)
        return Raster(
            {n: a for n, a in self._bands.items() if n not in names},
            self.grid,
            self.nodata,
        )

    def rename(self, names: Mapping[str, str]) -> "Raster":
        return Raster(
            {names.get(n, n): a for n, a in self._bands.items()},
            self.grid,
            self.nodata,
        )

    def with_bands(self, bands: Mapping[str, np.ndarray]) -> "Raster":
        """Return a copy with ``bands`` added (or replaced)."""
        merged = dict(self._bands)
        merged.update(bands)
        return Raster(merged, self.grid, self.nodata)

    def stack(self, names: Optional[Sequence[str]] = None) -> np.ndarray:
        """Stack bands into a (bands, height, width) array."""
        names = list(names) if names is not None else list(self._bands)
        self.require(names)
        return np.stack([self._bands[n] for n in names])

    def valid_mask(self, names: Optional[Sequence[str]] = None) -> np.ndarray:
        """True where every selected band holds a value."""
        names = list(names) if names is not None else list(self._bands)
        valid = np.ones(self.shape, dtype=bool)
        for name in names:
            array = self[name]
            if np.issubdtype(array.dtype, np.floating):
                valid &= np.isfinite(array)
            elif self.nodata is not None:
                valid &= array != self.nodata
        return valid

    def apply_mask(self, mask: np.ndarray, keep: Iterable[str] = ()) -> "Raster":
        """
        Null every pixel where ``mask`` is False.

        Args:
            mask: Boolean validity array of shape ``self.shape``
            keep: Bands left untouched (e.g. the quality band itself)
        """
        mask = np.asarray(mask, dtype=bool)
        if mask.shape != self.shape:
            raise ValueError(f"Mask shape {mask.shape} does not match raster {self.shape}")
        keep = set(keep)
        masked: Dict[str, np.ndarray] = {}
        for name, array in self._bands.items():
            if name in keep:
                masked[name] = array
            elif np.issubdtype(array.dtype, np.floating):
                masked[name] = np.where(mask, array, np.nan)
            else:
                fill = self.nodata if self.nodata is not None else 0
                masked[name] = np.where(mask, array, fill).astype(array.dtype)
        return Raster(masked, self.grid, self.nodata)

    def clip(self, geometry: BaseGeometry, geometry_crs=None) -> "Raster":
        """Null pixels whose centre falls outside ``geometry``."""
        if geometry_crs is not None:
            geometry = self.grid.geometry_to_grid_crs(geometry, geometry_crs)
        return self.apply_mask(self.grid.inside_mask(geometry))

    def window(self, window: Window) -> "Raster":
        rows, cols = window.toslices()
        return Raster(
            {n: a[rows, cols] for n, a in self._bands.items()},
            self.grid.window_grid(window),
            self.nodata,
        )

    def align(self, grid: GridSpec, resampling: Resampling = Resampling.nearest) -> "Raster":
        """
        Resample every band onto ``grid``.

        Pixels of ``grid`` not covered by this raster become no-value.
        """
        if self.grid.matches(grid):
            return self

        aligned: Dict[str, np.ndarray] = {}
        for name, array in self._bands.items():
            floating = np.issubdtype(array.dtype, np.floating)
            fill = np.nan if floating else (self.nodata if self.nodata is not None else 0)
            destination = np.full(grid.shape, fill, dtype=array.dtype)
            reproject(
                source=np.ascontiguousarray(array),
                destination=destination,
                src_transform=self.grid.transform,
                src_crs=self.grid.crs,
                src_nodata=fill,
                dst_transform=grid.transform,
                dst_crs=grid.crs,
                dst_nodata=fill,
                resampling=resampling,
            )
            aligned[name] = destination
        return Raster(aligned, grid, self.nodata)

    @classmethod
    def read(cls, path, band_names: Optional[Sequence[str]] = None) -> "Raster":
        """
        Load a GeoTIFF.

        Band names come from ``band_names`` when given, otherwise from the
        file's band descriptions, otherwise ``band_1``, ``band_2``, ...
        """
        with rasterio.open(path) as src:
            data = src.read()
            grid = GridSpec(src.width, src.height, src.transform, src.crs)
            names: List[str]
            if band_names is not None:
                names = list(band_names)
            else:
                names = [
                    desc or f"band_{i + 1}"
                    for i, desc in enumerate(src.descriptions)
                ]
            if len(names) != data.shape[0]:
                raise ValueError(
                    f"{path}: {data.shape[0]} bands but {len(names)} names given"
                )
            nodata = src.nodata

        bands = {}
        for name, array in zip(names, data):
            if nodata is not None and np.issubdtype(array.dtype, np.floating):
                array = np.where(array == nodata, np.nan, array)
            bands[name] = array
        return cls(bands, grid)
