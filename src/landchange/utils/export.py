"""
Export Sink
===========

Persists classified rasters as GeoTIFF and tables as CSV under a local
destination folder.

Every export is idempotent: the artifact is written to a temporary file next
to its destination and moved into place with ``os.replace``. If an identical
file already exists the temporary file is discarded, so re-running an export
never duplicates or half-writes an artifact. Writes to the same destination
are serialized; different names never wait on each other.
"""

import hashlib
import logging
import os
import tempfile
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Dict, Iterator, Mapping, Optional, Tuple, TypeVar

import numpy as np
import pandas as pd
import rasterio
from rasterio.crs import CRS
from rasterio.errors import RasterioError
from rasterio.warp import transform_bounds
from shapely.geometry.base import BaseGeometry

from ..data.raster import GridSpec, Raster
from ..errors import ExportFailureError

logger = logging.getLogger(__name__)

T = TypeVar('T')

DEFAULT_MAX_PIXELS = 1e10


def _sha256(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, 'rb') as f:
        for chunk in iter(lambda: f.read(1 << 20), b''):
            digest.update(chunk)
    return digest.hexdigest()


def hex_to_rgb(color: str) -> Tuple[int, int, int]:
    color = color.lstrip('#')
    return int(color[0:2], 16), int(color[2:4], 16), int(color[4:6], 16)


class LocalExportSink:
    """Export sink writing to folders below ``root``."""

    def __init__(self, root):
        self.root = Path(root)
        # path -> [lock, number of writers holding or waiting for it]
        self._locks: Dict[Path, list] = {}
        self._registry_lock = threading.Lock()

    @contextmanager
    def _locked(self, path: Path) -> Iterator[None]:
        """Serialize writers of one path; the entry is dropped once unused."""
        with self._registry_lock:
            entry = self._locks.setdefault(path, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._registry_lock:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[path]

    def destination(self, name: str, folder: str, suffix: str) -> Path:
        return self.root / folder / f"{name}{suffix}"

    def _commit(self, path: Path, write: Callable[[Path], None]) -> Path:
        """Write via ``write(tmp_path)`` then atomically move into ``path``."""
        with self._locked(path):
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                fd, tmp_name = tempfile.mkstemp(prefix=f".{path.stem}.", suffix=path.suffix, dir=path.parent)
                os.close(fd)
                tmp = Path(tmp_name)
                try:
                    write(tmp)
                    if path.exists() and _sha256(path) == _sha256(tmp):
                        logger.info(f"Unchanged, keeping existing {path}")
                    else:
                        os.replace(tmp, path)
                        logger.info(f"Exported {path}")
                finally:
                    if tmp.exists():
                        tmp.unlink()
            except (OSError, RasterioError) as exc:
                raise ExportFailureError(f"Failed to write {path}: {exc}") from exc
        return path

    def export_raster(
        self,
        raster: Raster,
        name: str,
        folder: str,
        roi: Optional[BaseGeometry] = None,
        roi_crs=None,
        scale: Optional[float] = None,
        crs=None,
        max_pixels: float = DEFAULT_MAX_PIXELS,
        palette: Optional[Mapping[int, str]] = None,
        tags: Optional[Mapping[str, str]] = None
    ) -> Path:
        """
        Write a raster as an LZW-compressed GeoTIFF.

        Args:
            raster: Raster to export (all bands)
            name: Artifact name (file stem)
            folder: Destination folder below the sink root
            roi: Optional region; pixels outside become no-value
            roi_crs: CRS of ``roi`` (default: output CRS)
            scale: Output pixel size (default: raster's own)
            crs: Output CRS (default: raster's own)
            max_pixels: Refuse exports larger than this
            palette: Class value -> hex color, written as a colormap
            tags: Extra GeoTIFF metadata

        Returns:
            Path of the written file

        Raises:
            ExportFailureError: too many pixels or write failure
        """
        grid = raster.grid
        if crs is not None or scale is not None:
            target_crs = CRS.from_user_input(crs) if crs is not None else grid.crs
            target_scale = scale if scale is not None else grid.resolution[0]
            bounds = grid.bounds
            if target_crs != grid.crs:
                bounds = transform_bounds(grid.crs, target_crs, *bounds)
            grid = GridSpec.from_bounds(bounds, target_scale, target_crs)
            raster = raster.align(grid)
        if roi is not None:
            raster = raster.clip(roi, roi_crs if roi_crs is not None else grid.crs)

        n_pixels = grid.width * grid.height
        if n_pixels > max_pixels:
            raise ExportFailureError(
                f"{name}: {n_pixels:,} pixels exceeds the export limit of {max_pixels:,.0f}"
            )

        data = raster.stack()
        floating = np.issubdtype(data.dtype, np.floating)
        nodata = np.nan if floating else raster.nodata
        path = self.destination(name, folder, '.tif')

        def write(tmp: Path):
            profile = {
                'driver': 'GTiff',
                'height': grid.height,
                'width': grid.width,
                'count': data.shape[0],
                'dtype': data.dtype.name,
                'crs': grid.crs,
                'transform': grid.transform,
                'nodata': nodata,
                'compress': 'lzw',
            }
            with rasterio.open(tmp, 'w', **profile) as dst:
                dst.write(data)
                for i, band in enumerate(raster.band_names, start=1):
                    dst.set_band_description(i, band)
                if tags:
                    dst.update_tags(**{k: str(v) for k, v in tags.items()})
                if palette and data.dtype in (np.uint8, np.uint16):
                    dst.write_colormap(1, {
                        int(value): hex_to_rgb(color) + (255,)
                        for value, color in palette.items()
                    })

        return self._commit(path, write)

    def export_table(self, table: pd.DataFrame, name: str, folder: str, index: bool = False) -> Path:
        """Write a DataFrame as CSV."""
        path = self.destination(name, folder, '.csv')
        return self._commit(path, lambda tmp: table.to_csv(tmp, index=index))

    def export_text(self, text: str, name: str, folder: str) -> Path:
        path = self.destination(name, folder, '.txt')
        return self._commit(path, lambda tmp: tmp.write_text(text, encoding='utf-8'))


def export_with_retry(export: Callable[[], T], attempts: int = 3, delay: float = 2.0) -> T:
    """
    Call ``export`` until it succeeds or ``attempts`` are used up.

    Only ExportFailureError is retried; the last one is re-raised.
    """
    for attempt in range(1, attempts + 1):
        try:
            return export()
        except ExportFailureError as exc:
            if attempt == attempts:
                raise
            logger.warning(f"Export attempt {attempt}/{attempts} failed: {exc}; retrying in {delay}s")
            time.sleep(delay)
