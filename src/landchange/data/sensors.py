"""
Sensor Band Normalization
=========================

Maps each sensor's native band layout to canonical band roles and converts
digital numbers to surface reflectance.

Landsat Collection 2 Level-2 products share one scaling
(``DN * 0.0000275 - 0.2``) but differ in band numbering: TM/ETM+ (Landsat
5/7) start the visible bands at SR_B1, OLI (Landsat 8/9) at SR_B2.
"""

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, Mapping, Optional

import numpy as np

from ..errors import UnsupportedSensorError
from .raster import Raster

CANONICAL_BANDS = ('BLUE', 'GREEN', 'RED', 'NIR', 'SWIR1', 'SWIR2')

# Landsat C2 QA_PIXEL bit positions
QA_BITS = MappingProxyType({
    'dilated_cloud': 1,
    'cirrus': 2,
    'cloud': 3,
    'cloud_shadow': 4,
})

LANDSAT_C2_GAIN = 0.0000275
LANDSAT_C2_OFFSET = -0.2


@dataclass(frozen=True)
class SensorSpec:
    """Band layout, radiometric scaling and quality band of one sensor."""
    name: str
    bands: Mapping[str, str]
    gain: float = LANDSAT_C2_GAIN
    offset: float = LANDSAT_C2_OFFSET
    qa_band: str = 'QA_PIXEL'
    qa_bits: Mapping[str, int] = field(default_factory=lambda: QA_BITS)
    fill_value: Optional[int] = 0

    def __post_init__(self):
        object.__setattr__(self, 'bands', MappingProxyType(dict(self.bands)))
        object.__setattr__(self, 'qa_bits', MappingProxyType(dict(self.qa_bits)))

    def native_band(self, role: str) -> str:
        try:
            return self.bands[role]
        except KeyError:
            raise UnsupportedSensorError(
                f"Sensor '{self.name}' has no band mapped to role {role}"
            ) from None


_TM_ETM_BANDS = {
    'BLUE': 'SR_B1', 'GREEN': 'SR_B2', 'RED': 'SR_B3',
    'NIR': 'SR_B4', 'SWIR1': 'SR_B5', 'SWIR2': 'SR_B7',
}
_OLI_BANDS = {
    'BLUE': 'SR_B2', 'GREEN': 'SR_B3', 'RED': 'SR_B4',
    'NIR': 'SR_B5', 'SWIR1': 'SR_B6', 'SWIR2': 'SR_B7',
}

DEFAULT_SENSORS: Dict[str, SensorSpec] = {
    'LANDSAT_5': SensorSpec('LANDSAT_5', _TM_ETM_BANDS),
    'LANDSAT_7': SensorSpec('LANDSAT_7', _TM_ETM_BANDS),
    'LANDSAT_8': SensorSpec('LANDSAT_8', _OLI_BANDS),
    'LANDSAT_9': SensorSpec('LANDSAT_9', _OLI_BANDS),
}


def normalize_bands(raster: Raster, sensor: SensorSpec) -> Raster:
    """
    Rename native bands to canonical roles and scale to reflectance.

    Args:
        raster: Raw scene with native band names
        sensor: Sensor description

    Returns:
        Raster with the canonical bands (float64 reflectance, NaN where the
        native value is the fill value) plus the untouched quality band

    Raises:
        UnsupportedSensorError: mapping lacks a canonical role
        MissingBandError: scene lacks a mapped native band
    """
    natives = {role: sensor.native_band(role) for role in CANONICAL_BANDS}
    raster.require(natives.values())

    bands = {}
    for role, native in natives.items():
        dn = raster[native]
        reflectance = dn.astype(np.float64) * sensor.gain + sensor.offset
        if sensor.fill_value is not None:
            reflectance[dn == sensor.fill_value] = np.nan
        bands[role] = reflectance

    if sensor.qa_band in raster:
        bands[sensor.qa_band] = raster[sensor.qa_band]

    return Raster(bands, raster.grid)
