"""
Scene Catalog
=============

Local stand-in for an image collection: a list of GeoTIFF scenes with
sensor and acquisition metadata, filterable by sensor, date range and cloud
cover before any pixels are read.
"""

import logging
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import Iterable, Iterator, List, Optional, Sequence, Tuple

from .raster import Raster

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SceneEntry:
    """Catalog record of one scene on disk."""
    path: Path
    sensor: str
    acquired: date
    cloud_cover: Optional[float] = None
    band_names: Optional[Tuple[str, ...]] = None

    @property
    def scene_id(self) -> str:
        return Path(self.path).stem


@dataclass(frozen=True)
class Frame:
    """One loaded scene of a time series."""
    raster: Raster
    sensor: str
    acquired: date
    scene_id: str = ''


class SceneCatalog:
    """Queryable collection of scenes."""

    def __init__(self, entries: Iterable[SceneEntry]):
        self.entries: Tuple[SceneEntry, ...] = tuple(
            sorted(entries, key=lambda e: (e.acquired, e.scene_id))
        )

    def __len__(self) -> int:
        return len(self.entries)

    def query(
        self,
        sensors: Sequence[str],
        start: date,
        end: date,
        max_cloud_cover: Optional[float] = None
    ) -> List[SceneEntry]:
        """
        Select scenes by metadata.

        Args:
            sensors: Accepted sensor names
            start: First acquisition date (inclusive)
            end: Last acquisition date (exclusive)
            max_cloud_cover: Scene-level cloud cover ceiling in percent;
                scenes without a cloud cover value are kept

        Returns:
            Matching entries in acquisition order
        """
        sensors = set(sensors)
        selected = [
            entry for entry in self.entries
            if entry.sensor in sensors
            and start <= entry.acquired < end
            and (max_cloud_cover is None
                 or entry.cloud_cover is None
                 or entry.cloud_cover <= max_cloud_cover)
        ]
        logger.info(
            f"Catalog query {sorted(sensors)} {start} - {end}: "
            f"{len(selected)} of {len(self.entries)} scenes"
        )
        return selected

    def load(self, entries: Iterable[SceneEntry]) -> Iterator[Frame]:
        """Read the given scenes as frames, one at a time."""
        for entry in entries:
            logger.debug(f"Reading scene {entry.path}")
            raster = Raster.read(entry.path, entry.band_names)
            yield Frame(raster, entry.sensor, entry.acquired, entry.scene_id)
