"""
Cloud and Quality Masking
=========================

Derives per-pixel validity from a bit-packed quality band. A pixel is kept
only when none of the monitored flags (dilated cloud, cirrus, cloud, cloud
shadow by default) is set.
"""

from typing import Iterable, Mapping, Union

import numpy as np

from .raster import Raster
from .sensors import QA_BITS, SensorSpec


def quality_mask(
    raster: Raster,
    qa_band: str = 'QA_PIXEL',
    bits: Union[Mapping[str, int], Iterable[int]] = QA_BITS
) -> np.ndarray:
    """
    Compute the validity mask from quality flags.

    Args:
        raster: Raster holding the quality band
        qa_band: Name of the quality band
        bits: Bit positions to test (mapping of flag name -> bit, or bits)

    Returns:
        Boolean array, True where every monitored bit is unset

    Raises:
        MissingBandError: raster has no ``qa_band``
    """
    flags = np.asarray(raster[qa_band]).astype(np.int64)
    positions = bits.values() if isinstance(bits, Mapping) else bits

    valid = np.ones(flags.shape, dtype=bool)
    for bit in positions:
        valid &= ((flags >> bit) & 1) == 0
    return valid


def mask_clouds(raster: Raster, sensor: SensorSpec) -> Raster:
    """Null cloudy pixels and drop the quality band."""
    mask = quality_mask(raster, sensor.qa_band, sensor.qa_bits)
    return raster.drop([sensor.qa_band]).apply_mask(mask)
