"""
Tile-Parallel Execution
=======================

Splits a grid into fixed-size windows, runs a per-tile function on a
thread pool and stitches the results back by window position. Tiles never
share output memory, so stitching needs no locking.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, List, Optional

import numpy as np
from rasterio.windows import Window
from tqdm import tqdm

from ..data.raster import GridSpec

logger = logging.getLogger(__name__)


class TileGrid:
    """Row-major tiling of a grid into windows of at most ``tile_size`` pixels."""

    def __init__(self, grid: GridSpec, tile_size: int = 512):
        if tile_size < 1:
            raise ValueError(f"tile_size must be positive, got {tile_size}")
        self.grid = grid
        self.tile_size = tile_size

    def windows(self) -> List[Window]:
        height, width = self.grid.shape
        return [
            Window(col, row,
                   min(self.tile_size, width - col),
                   min(self.tile_size, height - row))
            for row in range(0, height, self.tile_size)
            for col in range(0, width, self.tile_size)
        ]

    def __len__(self) -> int:
        height, width = self.grid.shape
        rows = -(-height // self.tile_size)
        cols = -(-width // self.tile_size)
        return rows * cols


def map_tiles(
    func: Callable[[Window], np.ndarray],
    grid: GridSpec,
    dtype=np.float64,
    fill=np.nan,
    bands: Optional[int] = None,
    tile_size: int = 512,
    workers: int = 4,
    desc: str = "Tiles",
    progress: bool = True
) -> np.ndarray:
    """
    Evaluate ``func`` on every tile of ``grid`` and stitch the results.

    Args:
        func: Receives a window, returns an array of shape (h, w), or
            (bands, h, w) when ``bands`` is set
        grid: Output grid
        dtype: Output dtype
        fill: Initial output value
        bands: Leading band dimension of the output, if any
        tile_size: Tile edge length in pixels
        workers: Thread pool size
        desc: Progress bar label
        progress: Show a tqdm progress bar

    Returns:
        Stitched array of shape grid.shape or (bands, *grid.shape)
    """
    shape = grid.shape if bands is None else (bands,) + grid.shape
    output = np.full(shape, fill, dtype=dtype)
    tiles = TileGrid(grid, tile_size)
    windows = tiles.windows()
    logger.debug(f"{desc}: {len(windows)} tiles on {workers} workers")

    with ThreadPoolExecutor(max_workers=max(1, workers)) as pool:
        futures = {pool.submit(func, window): window for window in windows}
        for future in tqdm(as_completed(futures), total=len(futures),
                           desc=desc, disable=not progress, leave=False):
            window = futures[future]
            rows, cols = window.toslices()
            output[..., rows, cols] = future.result()

    return output
