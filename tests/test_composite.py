"""Tests for median compositing."""

from datetime import date

import numpy as np
import pytest
from rasterio.transform import from_origin
from shapely.geometry import box

from landchange.data.composite import CompositeBuilder, nan_median
from landchange.data.raster import GridSpec
from landchange.data.sensors import CANONICAL_BANDS, DEFAULT_SENSORS
from landchange.errors import EmptyCollectionError, UnsupportedSensorError

from conftest import CRS, make_frame

L5 = DEFAULT_SENSORS['LANDSAT_5'].bands
L7 = DEFAULT_SENSORS['LANDSAT_7'].bands
L8 = DEFAULT_SENSORS['LANDSAT_8'].bands

CLOUD = 1 << 3


def builder_for(grid, tile_size=4):
    return CompositeBuilder(
        grid, grid.footprint, CRS, DEFAULT_SENSORS,
        tile_size=tile_size, workers=2, progress=False,
    )


class TestNanMedian:

    def test_ignores_nan(self):
        stack = np.array([[1.0, np.nan], [3.0, 4.0], [np.nan, np.nan]])
        np.testing.assert_allclose(nan_median(stack), [2.0, 4.0])

    def test_all_nan_no_warning(self, recwarn):
        result = nan_median(np.full((3, 2), np.nan))
        assert np.isnan(result).all()
        assert not [w for w in recwarn if issubclass(w.category, RuntimeWarning)]


class TestCompositeBuilder:

    def test_median_of_clear_observations(self, grid, period_dates):
        start, end = period_dates
        cloudy = np.zeros(grid.shape, dtype=np.uint16)
        cloudy[0, 0] = CLOUD
        frames = [
            make_frame(grid, 0.1, 'LANDSAT_5', L5, date(2000, 2, 1), scene_id='a'),
            make_frame(grid, 0.2, 'LANDSAT_5', L5, date(2000, 3, 1), scene_id='b'),
            make_frame(grid, 0.9, 'LANDSAT_5', L5, date(2000, 4, 1), qa=cloudy, scene_id='c'),
        ]

        composite = builder_for(grid).build(frames, start, end, ['LANDSAT_5'])

        assert composite.band_names == CANONICAL_BANDS
        # two clear values at the cloudy pixel, three elsewhere
        assert composite['RED'][0, 0] == pytest.approx(0.15, abs=1e-4)
        assert composite['RED'][5, 5] == pytest.approx(0.2, abs=1e-4)

    def test_never_clear_pixel_is_nodata(self, grid, period_dates):
        start, end = period_dates
        cloudy = np.zeros(grid.shape, dtype=np.uint16)
        cloudy[2, 3] = CLOUD
        frames = [
            make_frame(grid, 0.1, 'LANDSAT_5', L5, date(2000, 2, 1), qa=cloudy, scene_id='a'),
            make_frame(grid, 0.3, 'LANDSAT_5', L5, date(2000, 6, 1), qa=cloudy, scene_id='b'),
        ]

        composite = builder_for(grid).build(frames, start, end, ['LANDSAT_5'])

        for band in CANONICAL_BANDS:
            assert np.isnan(composite[band][2, 3])
        assert np.isfinite(composite['NIR']).sum() == grid.width * grid.height - 1

    def test_merges_sensors(self, grid, period_dates):
        start, end = period_dates
        frames = [
            make_frame(grid, 0.1, 'LANDSAT_5', L5, date(2000, 2, 1), scene_id='tm'),
            make_frame(grid, 0.3, 'LANDSAT_7', L7, date(2000, 3, 1), scene_id='etm'),
            make_frame(grid, 0.9, 'LANDSAT_8', L8, date(2000, 4, 1), scene_id='oli'),
        ]

        composite = builder_for(grid).build(frames, start, end, ['LANDSAT_5', 'LANDSAT_7'])

        np.testing.assert_allclose(composite['SWIR2'], 0.2, atol=1e-4)

    def test_date_range_end_exclusive(self, grid, period_dates):
        start, end = period_dates
        frames = [
            make_frame(grid, 0.1, 'LANDSAT_5', L5, date(2000, 6, 1), scene_id='in'),
            make_frame(grid, 0.9, 'LANDSAT_5', L5, end, scene_id='out'),
        ]

        composite = builder_for(grid).build(frames, start, end, ['LANDSAT_5'])

        np.testing.assert_allclose(composite['GREEN'], 0.1, atol=1e-4)

    def test_tiling_does_not_change_result(self, grid, period_dates):
        start, end = period_dates
        rng = np.random.default_rng(0)
        frames = []
        for i in range(3):
            qa = np.where(rng.random(grid.shape) < 0.3, CLOUD, 0).astype(np.uint16)
            frames.append(make_frame(grid, 0.1 * (i + 1), 'LANDSAT_5', L5, date(2000, i + 1, 1),
                                     qa=qa, scene_id=str(i)))

        small = builder_for(grid, tile_size=3).build(frames, start, end, ['LANDSAT_5'])
        whole = builder_for(grid, tile_size=64).build(frames, start, end, ['LANDSAT_5'])

        np.testing.assert_array_equal(small.stack(), whole.stack())

    def test_clipped_to_roi(self, grid, period_dates):
        start, end = period_dates
        west, south, east, north = grid.bounds
        roi = box(west, south, west + 5 * 30.0, north)
        builder = CompositeBuilder(grid, roi, CRS, DEFAULT_SENSORS, progress=False)
        frames = [make_frame(grid, 0.1, 'LANDSAT_5', L5, date(2000, 2, 1))]

        composite = builder.build(frames, start, end, ['LANDSAT_5'])

        assert np.isfinite(composite['RED'][:, :5]).all()
        assert np.isnan(composite['RED'][:, 5:]).all()

    def test_aligns_offset_frame(self, grid, period_dates):
        start, end = period_dates
        west, south, east, north = grid.bounds
        # same pixel size, shifted five columns east
        shifted = GridSpec(grid.width, grid.height, from_origin(west + 150.0, north, 30.0, 30.0), grid.crs)
        frames = [make_frame(shifted, 0.1, 'LANDSAT_5', L5, date(2000, 2, 1))]

        composite = builder_for(grid).build(frames, start, end, ['LANDSAT_5'])

        assert np.isnan(composite['RED'][:, :5]).all()
        np.testing.assert_allclose(composite['RED'][:, 5:], 0.1, atol=1e-4)

    def test_no_matching_frames(self, grid, period_dates):
        start, end = period_dates
        frames = [make_frame(grid, 0.1, 'LANDSAT_8', L8, date(2000, 2, 1))]

        with pytest.raises(EmptyCollectionError):
            builder_for(grid).build(frames, start, end, ['LANDSAT_5'])

    def test_frames_outside_roi_ignored(self, grid, period_dates):
        start, end = period_dates
        far = GridSpec(10, 10, from_origin(700000.0, 3000000.0, 30.0, 30.0), grid.crs)
        frames = [make_frame(far, 0.1, 'LANDSAT_5', L5, date(2000, 2, 1))]

        with pytest.raises(EmptyCollectionError):
            builder_for(grid).build(frames, start, end, ['LANDSAT_5'])

    def test_unknown_sensor(self, grid, period_dates):
        start, end = period_dates
        frames = [make_frame(grid, 0.1, 'SENTINEL_2', L8, date(2000, 2, 1))]

        with pytest.raises(UnsupportedSensorError):
            builder_for(grid).build(frames, start, end, ['SENTINEL_2'])
