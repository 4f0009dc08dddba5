"""Tests for the local export sink."""

import numpy as np
import pandas as pd
import pytest
import rasterio
from shapely.geometry import box

from landchange.data.raster import Raster
from landchange.errors import ExportFailureError
from landchange.utils.export import LocalExportSink, export_with_retry, hex_to_rgb

from conftest import make_grid


@pytest.fixture
def sink(tmp_path):
    return LocalExportSink(tmp_path / 'out')


@pytest.fixture
def classified():
    labels = np.ones((6, 6), dtype=np.uint8)
    labels[3:] = 2
    return Raster({'classification': labels}, make_grid(6, 6), nodata=0)


class TestLocalExportSink:

    def test_raster_roundtrip_metadata(self, sink, classified):
        path = sink.export_raster(
            classified, 'map_2000', 'run',
            palette={1: '#00ff00', 2: '#0000ff'},
            tags={'period': '2000'},
        )

        assert path == sink.root / 'run' / 'map_2000.tif'
        with rasterio.open(path) as src:
            np.testing.assert_array_equal(src.read(1), classified['classification'])
            assert src.nodata == 0
            assert src.descriptions == ('classification',)
            assert src.tags()['period'] == '2000'
            assert src.colormap(1)[2] == (0, 0, 255, 255)
            assert src.crs == classified.grid.crs

    def test_clip_to_roi(self, sink, classified):
        west, south, east, north = classified.grid.bounds
        path = sink.export_raster(classified, 'clipped', 'run', roi=box(west, south, west + 90.0, north))
        with rasterio.open(path) as src:
            data = src.read(1)
        assert (data[:, :3] != 0).all()
        assert (data[:, 3:] == 0).all()

    def test_reexport_is_idempotent(self, sink):
        table = pd.DataFrame({'class': [1, 2], 'area_m2': [900.0, 1800.0]})
        path = sink.export_table(table, 'areas', 'run')
        before = path.stat()

        again = sink.export_table(table, 'areas', 'run')

        assert again == path
        assert path.stat().st_ino == before.st_ino
        assert path.stat().st_mtime_ns == before.st_mtime_ns
        assert sorted(p.name for p in path.parent.iterdir()) == ['areas.csv']

    def test_changed_content_replaces(self, sink):
        sink.export_text('first', 'report', 'run')
        path = sink.export_text('second', 'report', 'run')
        assert path.read_text(encoding='utf-8') == 'second'

    def test_repeated_raster_export_leaves_one_file(self, sink, classified):
        sink.export_raster(classified, 'map', 'run')
        path = sink.export_raster(classified, 'map', 'run')
        assert [p.name for p in path.parent.iterdir()] == ['map.tif']

    def test_path_locks_released(self, sink):
        for i in range(20):
            sink.export_text(f"report {i}", f"report_{i}", 'run')
        sink.export_text('report 0', 'report_0', 'run')
        assert sink._locks == {}

    def test_pixel_limit(self, sink, classified):
        with pytest.raises(ExportFailureError):
            sink.export_raster(classified, 'big', 'run', max_pixels=10)
        assert not (sink.root / 'run' / 'big.tif').exists()

    def test_reprojected_export(self, sink, classified):
        path = sink.export_raster(classified, 'coarse', 'run', scale=60.0)
        with rasterio.open(path) as src:
            assert (src.width, src.height) == (3, 3)
            assert src.res == (60.0, 60.0)

    def test_write_failure(self, tmp_path, classified):
        blocker = tmp_path / 'file'
        blocker.write_text('not a directory')
        sink = LocalExportSink(blocker)
        with pytest.raises(ExportFailureError):
            sink.export_text('x', 'report', 'run')


class TestExportWithRetry:

    def test_retries_until_success(self):
        calls = []

        def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise ExportFailureError("transient")
            return 'done'

        assert export_with_retry(flaky, attempts=3, delay=0) == 'done'
        assert len(calls) == 3

    def test_gives_up(self):
        calls = []

        def broken():
            calls.append(1)
            raise ExportFailureError("down")

        with pytest.raises(ExportFailureError):
            export_with_retry(broken, attempts=2, delay=0)
        assert len(calls) == 2

    def test_other_errors_not_retried(self):
        calls = []

        def bug():
            calls.append(1)
            raise KeyError('x')

        with pytest.raises(KeyError):
            export_with_retry(bug, attempts=3, delay=0)
        assert len(calls) == 1


def test_hex_to_rgb():
    assert hex_to_rgb('#1f78b4') == (31, 120, 180)
