"""
Spectral Indices
================

Per-pixel indices over canonical reflectance bands. A zero denominator
yields a no-value pixel (NaN) rather than an error or a warning.

Indices:
    - EVI: Enhanced Vegetation Index
    - NBR: Normalized Burn Ratio
    - NDMI: Normalized Difference Moisture Index
    - NDWI: Normalized Difference Water Index (McFeeters)
    - NDBI: Normalized Difference Built-up Index
    - NDBaI: Normalized Difference Bareness Index
"""

from dataclasses import dataclass
from typing import Callable, Dict, Mapping, Optional, Sequence, Tuple

import numpy as np

from .raster import Raster

Bands = Mapping[str, np.ndarray]


def safe_divide(numerator: np.ndarray, denominator: np.ndarray) -> np.ndarray:
    """Elementwise division that returns NaN where the denominator is zero."""
    numerator = np.asarray(numerator, dtype=np.float64)
    denominator = np.asarray(denominator, dtype=np.float64)
    out = np.full(np.broadcast(numerator, denominator).shape, np.nan)
    np.divide(numerator, denominator, out=out, where=denominator != 0)
    return out


@dataclass(frozen=True)
class SpectralIndex:
    """Index defined as numerator / denominator over canonical bands."""
    name: str
    bands: Tuple[str, ...]
    numerator: Callable[[Bands], np.ndarray]
    denominator: Callable[[Bands], np.ndarray]

    def compute(self, raster: Raster) -> np.ndarray:
        raster.require(self.bands)
        values = {band: raster[band].astype(np.float64) for band in self.bands}
        return safe_divide(self.numerator(values), self.denominator(values))


def normalized_difference(name: str, first: str, second: str) -> SpectralIndex:
    """(first - second) / (first + second)"""
    return SpectralIndex(
        name,
        (first, second),
        lambda b: b[first] - b[second],
        lambda b: b[first] + b[second],
    )


EVI = SpectralIndex(
    'EVI',
    ('NIR', 'RED', 'BLUE'),
    lambda b: 2.5 * (b['NIR'] - b['RED']),
    lambda b: b['NIR'] + 6.0 * b['RED'] - 7.5 * b['BLUE'] + 1.0,
)

DEFAULT_INDICES: Dict[str, SpectralIndex] = {
    index.name: index for index in (
        EVI,
        normalized_difference('NBR', 'NIR', 'SWIR2'),
        normalized_difference('NDMI', 'NIR', 'SWIR1'),
        normalized_difference('NDWI', 'GREEN', 'NIR'),
        normalized_difference('NDBI', 'SWIR1', 'NIR'),
        normalized_difference('NDBaI', 'SWIR1', 'SWIR2'),
    )
}


def add_indices(raster: Raster, names: Optional[Sequence[str]] = None) -> Raster:
    """
    Append index bands to a composite.

    Args:
        raster: Composite with canonical bands
        names: Indices to compute (default: all of DEFAULT_INDICES)

    Returns:
        New raster with one extra band per index
    """
    names = list(names) if names is not None else list(DEFAULT_INDICES)
    unknown = [n for n in names if n not in DEFAULT_INDICES]
    if unknown:
        raise ValueError(f"Unknown spectral indices: {', '.join(unknown)}")

    return raster.with_bands({
        name: DEFAULT_INDICES[name].compute(raster) for name in names
    })
