"""
Pipeline Configuration
======================

Loads the YAML run configuration into one immutable ``PipelineConfig``
that is passed explicitly to every stage.

Example:
    config = load_config('configs/config.yaml')
    grid = config.grid()
"""

import logging
from dataclasses import dataclass, field, replace
from datetime import date
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple

import geopandas as gpd
import yaml
from rasterio.crs import CRS
from rasterio.errors import CRSError
from rasterio.warp import transform_bounds
from shapely.geometry import box
from shapely.geometry.base import BaseGeometry

from .data.indices import DEFAULT_INDICES
from .data.raster import GridSpec
from .data.scenes import SceneEntry
from .data.sensors import CANONICAL_BANDS, DEFAULT_SENSORS, SensorSpec
from .errors import ConfigError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PeriodConfig:
    """One time point: date range and the sensors merged into its composite."""
    name: str
    start: date
    end: date
    sensors: Tuple[str, ...]


@dataclass(frozen=True)
class LandCoverClass:
    value: int
    name: str
    color: str = '#000000'
    samples: Optional[Path] = None


@dataclass(frozen=True)
class ClassifierConfig:
    n_estimators: int = 300
    seed: Optional[int] = 42
    params: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))


@dataclass(frozen=True)
class SamplingConfig:
    train_ratio: float = 0.7
    seed: int = 42
    label_column: str = 'landcover'


@dataclass(frozen=True)
class TilingConfig:
    tile_size: int = 512
    workers: int = 4
    progress: bool = True


@dataclass(frozen=True)
class ExportConfig:
    root: Path = Path('outputs')
    folder: str = 'landcover_change'
    prefix: str = 'landcover'
    max_pixels: float = 1e10
    retries: int = 3
    retry_delay: float = 2.0


# Output pixel size when none is configured, per CRS unit
DEFAULT_SCALE_METRES = 30.0
DEFAULT_SCALE_DEGREES = 0.00025
MAX_SCALE_DEGREES = 1.0

DEFAULT_PERIODS = (
    PeriodConfig('2000', date(2000, 1, 1), date(2001, 1, 1), ('LANDSAT_5', 'LANDSAT_7')),
    PeriodConfig('2023', date(2023, 1, 1), date(2024, 1, 1), ('LANDSAT_8', 'LANDSAT_9')),
)


@dataclass(frozen=True)
class PipelineConfig:
    """Complete, immutable run configuration."""
    roi: BaseGeometry
    roi_crs: str
    crs: str
    scale: float
    classes: Tuple[LandCoverClass, ...]
    periods: Tuple[PeriodConfig, ...] = DEFAULT_PERIODS
    sensors: Mapping[str, SensorSpec] = field(default_factory=lambda: MappingProxyType(dict(DEFAULT_SENSORS)))
    scenes: Tuple[SceneEntry, ...] = ()
    max_cloud_cover: Optional[float] = None
    indices: Tuple[str, ...] = tuple(DEFAULT_INDICES)
    classifier: ClassifierConfig = field(default_factory=ClassifierConfig)
    sampling: SamplingConfig = field(default_factory=SamplingConfig)
    tiling: TilingConfig = field(default_factory=TilingConfig)
    export: ExportConfig = field(default_factory=ExportConfig)

    @property
    def feature_names(self) -> Tuple[str, ...]:
        return tuple(CANONICAL_BANDS) + tuple(self.indices)

    @property
    def class_values(self) -> Tuple[int, ...]:
        return tuple(c.value for c in self.classes)

    @property
    def class_names(self) -> Dict[int, str]:
        return {c.value: c.name for c in self.classes}

    @property
    def palette(self) -> Dict[int, str]:
        return {c.value: c.color for c in self.classes}

    def grid(self) -> GridSpec:
        """Output grid covering the ROI at the configured CRS and scale."""
        bounds = self.roi.bounds
        if CRS.from_user_input(self.roi_crs) != CRS.from_user_input(self.crs):
            bounds = transform_bounds(self.roi_crs, self.crs, *bounds)
        return GridSpec.from_bounds(bounds, self.scale, self.crs)


def _require(section: Mapping, key: str, where: str):
    if not isinstance(section, Mapping):
        raise ConfigError(f"Entries of {where} must be mappings")
    if key not in section:
        raise ConfigError(f"Missing '{key}' in {where}")
    return section[key]


def _list(raw: Mapping, key: str) -> Sequence:
    items = raw.get(key) or []
    if not isinstance(items, (list, tuple)):
        raise ConfigError(f"'{key}' must be a list")
    return items


def _as_date(value, where: str) -> date:
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except ValueError as exc:
        raise ConfigError(f"Invalid date {value!r} in {where}") from exc


def _section(raw: Mapping, key: str) -> Mapping:
    """Optional mapping section; an empty YAML key counts as absent."""
    section = raw.get(key) or {}
    if not isinstance(section, Mapping):
        raise ConfigError(f"'{key}' must be a mapping, got {type(section).__name__}")
    return section


def _resolve(path, base_dir: Path) -> Path:
    path = Path(path)
    return path if path.is_absolute() else base_dir / path


def _parse_roi(section: Mapping, base_dir: Path) -> Tuple[BaseGeometry, str]:
    crs = str(section.get('crs', 'EPSG:4326'))
    if 'bounds' in section:
        bounds = section['bounds']
        if not isinstance(bounds, (list, tuple)) or len(bounds) != 4:
            raise ConfigError("roi.bounds must be [west, south, east, north]")
        return box(*map(float, bounds)), crs
    if 'path' in section:
        gdf = gpd.read_file(_resolve(section['path'], base_dir))
        if gdf.empty:
            raise ConfigError(f"ROI file {section['path']} holds no geometries")
        crs = gdf.crs.to_string() if gdf.crs is not None else crs
        return gdf.geometry.union_all(), crs
    raise ConfigError("roi needs either 'bounds' or 'path'")


def _parse_sensors(section: Mapping) -> Mapping[str, SensorSpec]:
    sensors = dict(DEFAULT_SENSORS)
    for name, overrides in section.items():
        overrides = overrides or {}
        if not isinstance(overrides, Mapping):
            raise ConfigError(f"sensors.{name} must be a mapping")
        base = sensors.get(name, SensorSpec(name, {}))
        known = {'bands', 'gain', 'offset', 'qa_band', 'qa_bits', 'fill_value'}
        unknown = set(overrides) - known
        if unknown:
            raise ConfigError(f"Unknown keys for sensor {name}: {sorted(unknown)}")
        sensors[name] = replace(base, **overrides)
    return MappingProxyType(sensors)


def _parse_classes(items: Sequence[Mapping], base_dir: Path) -> Tuple[LandCoverClass, ...]:
    classes = []
    for item in items:
        value = int(_require(item, 'value', 'classes'))
        if value <= 0:
            raise ConfigError(f"Class values must be positive (0 is no-data), got {value}")
        samples = item.get('samples')
        classes.append(LandCoverClass(
            value=value,
            name=str(item.get('name', f"Class {value}")),
            color=str(item.get('color', '#000000')),
            samples=_resolve(samples, base_dir) if samples else None,
        ))
    if not classes:
        raise ConfigError("At least one land cover class is required")
    if len({c.value for c in classes}) != len(classes):
        raise ConfigError("Duplicate class values")
    return tuple(classes)


def _parse_periods(items: Sequence[Mapping]) -> Tuple[PeriodConfig, ...]:
    periods = []
    for item in items:
        name = str(_require(item, 'name', 'periods'))
        start = _as_date(_require(item, 'start', f"period {name}"), f"period {name}")
        end = _as_date(_require(item, 'end', f"period {name}"), f"period {name}")
        if end <= start:
            raise ConfigError(f"Period {name}: end must be after start")
        sensors = tuple(_require(item, 'sensors', f"period {name}"))
        periods.append(PeriodConfig(name, start, end, sensors))
    if len(periods) != 2:
        raise ConfigError(f"Exactly two periods are compared, got {len(periods)}")
    return tuple(periods)


def _parse_scenes(items: Sequence[Mapping], base_dir: Path) -> Tuple[SceneEntry, ...]:
    scenes = []
    for item in items or ():
        band_names = item.get('bands')
        scenes.append(SceneEntry(
            path=_resolve(_require(item, 'path', 'scenes'), base_dir),
            sensor=str(_require(item, 'sensor', 'scenes')),
            acquired=_as_date(_require(item, 'date', 'scenes'), f"scene {item['path']}"),
            cloud_cover=item.get('cloud_cover'),
            band_names=tuple(band_names) if band_names else None,
        ))
    return tuple(scenes)


def parse_config(raw: Mapping, base_dir: Path = Path('.')) -> PipelineConfig:
    """Build a PipelineConfig from an already-parsed YAML mapping."""
    if not isinstance(raw, Mapping):
        raise ConfigError("Configuration root must be a mapping")

    if 'roi' not in raw:
        raise ConfigError("Missing 'roi' in config")
    roi, roi_crs = _parse_roi(_section(raw, 'roi'), base_dir)
    output = _section(raw, 'output')
    crs = str(output.get('crs', 'EPSG:4326'))
    try:
        output_crs = CRS.from_user_input(crs)
    except CRSError as exc:
        raise ConfigError(f"Invalid output CRS {crs!r}") from exc
    default_scale = DEFAULT_SCALE_DEGREES if output_crs.is_geographic else DEFAULT_SCALE_METRES
    scale = float(output.get('scale', default_scale))
    if scale <= 0:
        raise ConfigError("output.scale must be positive")
    if output_crs.is_geographic and scale > MAX_SCALE_DEGREES:
        raise ConfigError(
            f"output.scale {scale} is in degrees for geographic CRS {crs}; "
            f"use a projected output.crs for metre pixel sizes"
        )

    sensors = _parse_sensors(_section(raw, 'sensors'))
    periods = _parse_periods(_list(raw, 'periods')) if raw.get('periods') is not None else DEFAULT_PERIODS
    for period in periods:
        missing = [s for s in period.sensors if s not in sensors]
        if missing:
            raise ConfigError(f"Period {period.name} uses unknown sensors {missing}")

    indices = tuple(_list(raw, 'indices')) if raw.get('indices') is not None else tuple(DEFAULT_INDICES)
    unknown = [i for i in indices if i not in DEFAULT_INDICES]
    if unknown:
        raise ConfigError(f"Unknown spectral indices {unknown}")

    classifier = _section(raw, 'classifier')
    sampling = _section(raw, 'sampling')
    tiling = _section(raw, 'tiling')
    export = _section(raw, 'export')

    train_ratio = float(sampling.get('train_ratio', 0.7))
    if not 0.0 < train_ratio < 1.0:
        raise ConfigError("sampling.train_ratio must be between 0 and 1")
    retries = int(export.get('retries', 3))
    if retries < 1:
        raise ConfigError("export.retries must be at least 1")

    return PipelineConfig(
        roi=roi,
        roi_crs=roi_crs,
        crs=crs,
        scale=scale,
        classes=_parse_classes(_list(raw, 'classes'), base_dir),
        periods=periods,
        sensors=sensors,
        scenes=_parse_scenes(_list(raw, 'scenes'), base_dir),
        max_cloud_cover=raw.get('max_cloud_cover'),
        indices=indices,
        classifier=ClassifierConfig(
            n_estimators=int(classifier.get('n_estimators', 300)),
            seed=classifier.get('seed', 42),
            params=MappingProxyType(dict(_section(classifier, 'params'))),
        ),
        sampling=SamplingConfig(
            train_ratio=train_ratio,
            seed=int(sampling.get('seed', 42)),
            label_column=str(sampling.get('label_column', 'landcover')),
        ),
        tiling=TilingConfig(
            tile_size=int(tiling.get('tile_size', 512)),
            workers=int(tiling.get('workers', 4)),
            progress=bool(tiling.get('progress', True)),
        ),
        export=ExportConfig(
            root=_resolve(export.get('root', 'outputs'), base_dir),
            folder=str(export.get('folder', 'landcover_change')),
            prefix=str(export.get('prefix', 'landcover')),
            max_pixels=float(export.get('max_pixels', 1e10)),
            retries=retries,
            retry_delay=float(export.get('retry_delay', 2.0)),
        ),
    )


def load_config(config_path) -> PipelineConfig:
    """Load configuration from YAML file."""
    config_path = Path(config_path)
    try:
        with open(config_path, 'r') as f:
            raw = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"Cannot read configuration {config_path}: {exc}") from exc

    config = parse_config(raw, config_path.parent)
    logger.info(f"Loaded configuration from {config_path}")
    return config
