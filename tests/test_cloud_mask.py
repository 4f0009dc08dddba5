"""Tests for QA_PIXEL cloud masking."""

from itertools import product

import numpy as np
import pytest

from landchange.data.cloud_mask import mask_clouds, quality_mask
from landchange.data.raster import Raster
from landchange.data.sensors import DEFAULT_SENSORS, QA_BITS
from landchange.errors import MissingBandError

from conftest import make_grid


def qa_raster(values):
    values = np.asarray(values, dtype=np.uint16).reshape(1, -1)
    grid = make_grid(height=1, width=values.shape[1])
    return Raster({
        'QA_PIXEL': values,
        'RED': np.full(values.shape, 0.1),
    }, grid)


class TestQualityMask:

    def test_every_flag_combination(self):
        """A pixel is valid only when none of the four monitored bits is set."""
        combos = list(product([0, 1], repeat=4))
        bits = [QA_BITS['dilated_cloud'], QA_BITS['cirrus'], QA_BITS['cloud'], QA_BITS['cloud_shadow']]
        values = [sum(flag << bit for flag, bit in zip(combo, bits)) for combo in combos]

        mask = quality_mask(qa_raster(values))[0]

        for combo, valid in zip(combos, mask):
            assert valid == (sum(combo) == 0), combo

    def test_unmonitored_bits_ignored(self):
        # bit 0 fill, bit 6 clear, bit 7 water
        mask = quality_mask(qa_raster([1, 1 << 6, 1 << 7, (1 << 6) | (1 << 3)]))[0]
        assert mask.tolist() == [True, True, True, False]

    def test_custom_bits(self):
        mask = quality_mask(qa_raster([1 << 3, 1 << 5]), bits=[5])[0]
        assert mask.tolist() == [True, False]

    def test_missing_qa_band(self):
        raster = Raster({'RED': np.zeros((2, 2))}, make_grid(2, 2))
        with pytest.raises(MissingBandError):
            quality_mask(raster)


class TestMaskClouds:

    def test_masks_and_drops_qa(self):
        raster = qa_raster([0, 1 << 3, 1 << 4, 0])
        masked = mask_clouds(raster, DEFAULT_SENSORS['LANDSAT_8'])

        assert 'QA_PIXEL' not in masked
        red = masked['RED'][0]
        assert np.isfinite(red).tolist() == [True, False, False, True]

    def test_input_unchanged(self):
        raster = qa_raster([1 << 3, 0])
        mask_clouds(raster, DEFAULT_SENSORS['LANDSAT_8'])
        assert np.isfinite(raster['RED']).all()
