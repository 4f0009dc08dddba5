"""Shared fixtures: small synthetic grids and scenes in UTM 33N at 30 m."""

from datetime import date

import geopandas as gpd
import numpy as np
import pytest
from rasterio.crs import CRS as RasterCRS
from rasterio.transform import from_origin
from shapely.geometry import Point, box

from landchange.data.raster import GridSpec, Raster
from landchange.data.scenes import Frame
from landchange.data.sensors import LANDSAT_C2_GAIN, LANDSAT_C2_OFFSET

CRS = 'EPSG:32633'
ORIGIN = (500000.0, 4000000.0)


def make_grid(height=10, width=10, scale=30.0):
    return GridSpec(width, height, from_origin(*ORIGIN, scale, scale), RasterCRS.from_user_input(CRS))


def reflectance_to_dn(value):
    return int(round((value - LANDSAT_C2_OFFSET) / LANDSAT_C2_GAIN))


def make_scene(grid, reflectance, native_bands, qa=None):
    """
    Raw scene with every native band at a constant reflectance.

    Args:
        grid: Scene grid
        reflectance: Role -> reflectance, or one value for every role
        native_bands: Role -> native band name of the sensor
        qa: Optional QA_PIXEL array (default: all clear)
    """
    bands = {}
    for role, native in native_bands.items():
        value = reflectance[role] if isinstance(reflectance, dict) else reflectance
        bands[native] = np.full(grid.shape, reflectance_to_dn(value), dtype=np.uint16)
    bands['QA_PIXEL'] = qa if qa is not None else np.zeros(grid.shape, dtype=np.uint16)
    return Raster(bands, grid)


def make_frame(grid, reflectance, sensor, native_bands, acquired, qa=None, scene_id='scene'):
    return Frame(make_scene(grid, reflectance, native_bands, qa), sensor, acquired, scene_id)


@pytest.fixture
def grid():
    return make_grid()


@pytest.fixture
def composite(grid):
    """Canonical-band composite: water on the left half, vegetation on the right."""
    height, width = grid.shape
    left = np.zeros(grid.shape, dtype=bool)
    left[:, : width // 2] = True

    def band(water, vegetation):
        return np.where(left, water, vegetation).astype(np.float64)

    return Raster({
        'BLUE': band(0.08, 0.04),
        'GREEN': band(0.10, 0.08),
        'RED': band(0.06, 0.05),
        'NIR': band(0.02, 0.40),
        'SWIR1': band(0.01, 0.20),
        'SWIR2': band(0.01, 0.10),
    }, grid)


@pytest.fixture
def period_dates():
    return date(2000, 1, 1), date(2001, 1, 1)


def pixel_center(row, col):
    x0, y0 = ORIGIN
    return Point(x0 + 30 * col + 15, y0 - 30 * row - 15)


def pixel_box(row, col, rows=1, cols=1):
    x0, y0 = ORIGIN
    return box(x0 + 30 * col, y0 - 30 * (row + rows), x0 + 30 * (col + cols), y0 - 30 * row)


def gdf(geometries):
    return gpd.GeoDataFrame(geometry=list(geometries), crs=CRS)


@pytest.fixture
def references():
    """Water points on the two left columns, vegetation boxes on the right."""
    water = gdf(pixel_center(r, c) for r in range(10) for c in (0, 1))
    vegetation = gdf([pixel_box(0, 6, 5, 2), pixel_box(5, 8, 5, 2)])
    return {1: water, 2: vegetation}
