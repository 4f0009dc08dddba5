"""Tests for spectral index computation."""

import numpy as np
import pytest

from landchange.data.indices import DEFAULT_INDICES, add_indices, safe_divide
from landchange.data.raster import Raster
from landchange.errors import MissingBandError

from conftest import make_grid


def single_pixel(**bands):
    grid = make_grid(1, 1)
    return Raster({k: np.array([[v]], dtype=np.float64) for k, v in bands.items()}, grid)


class TestSafeDivide:

    def test_zero_denominator_is_nan(self):
        result = safe_divide(np.array([1.0, 1.0, 0.0]), np.array([2.0, 0.0, 0.0]))
        assert result[0] == 0.5
        assert np.isnan(result[1:]).all()

    def test_no_warning(self, recwarn):
        safe_divide(np.array([1.0]), np.array([0.0]))
        assert not [w for w in recwarn if issubclass(w.category, RuntimeWarning)]


class TestIndices:

    def test_ndwi(self):
        raster = single_pixel(GREEN=0.3, NIR=0.1)
        assert DEFAULT_INDICES['NDWI'].compute(raster)[0, 0] == pytest.approx(0.5)

    def test_ndwi_zero_sum(self):
        raster = single_pixel(GREEN=0.0, NIR=0.0)
        assert np.isnan(DEFAULT_INDICES['NDWI'].compute(raster)[0, 0])

    def test_evi(self):
        raster = single_pixel(NIR=0.4, RED=0.1, BLUE=0.05)
        expected = 2.5 * (0.4 - 0.1) / (0.4 + 6 * 0.1 - 7.5 * 0.05 + 1)
        assert DEFAULT_INDICES['EVI'].compute(raster)[0, 0] == pytest.approx(expected)

    @pytest.mark.parametrize('name,first,second', [
        ('NBR', 'NIR', 'SWIR2'),
        ('NDMI', 'NIR', 'SWIR1'),
        ('NDBI', 'SWIR1', 'NIR'),
        ('NDBaI', 'SWIR1', 'SWIR2'),
    ])
    def test_normalized_differences(self, name, first, second):
        raster = single_pixel(**{first: 0.6, second: 0.2})
        assert DEFAULT_INDICES[name].compute(raster)[0, 0] == pytest.approx(0.5)

    def test_nodata_propagates(self):
        raster = single_pixel(GREEN=np.nan, NIR=0.1)
        assert np.isnan(DEFAULT_INDICES['NDWI'].compute(raster)[0, 0])

    def test_missing_band(self):
        with pytest.raises(MissingBandError):
            DEFAULT_INDICES['NDWI'].compute(single_pixel(GREEN=0.3))


class TestAddIndices:

    def test_appends_all_by_default(self, composite):
        result = add_indices(composite)
        assert result.band_names == composite.band_names + tuple(DEFAULT_INDICES)
        assert 'NDWI' not in composite

    def test_subset(self, composite):
        result = add_indices(composite, ['NDWI'])
        assert result.band_names[-1] == 'NDWI'
        assert result['NDWI'][0, 0] > 0
        assert result['NDWI'][0, -1] < 0

    def test_unknown_index(self, composite):
        with pytest.raises(ValueError):
            add_indices(composite, ['SAVI'])
