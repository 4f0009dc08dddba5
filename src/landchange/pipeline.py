"""
Land Cover Change Pipeline
==========================

Runs the full workflow for the two configured time periods:

    composite -> spectral indices -> training samples -> classification

The two period branches are independent and run concurrently; a failure in
one branch is recorded without stopping the other. Once both classified
maps exist they are compared for per-class area change. All artifacts are
then exported to the sink.

Usage:
    config = load_config('configs/config.yaml')
    result = LandCoverChangePipeline(config).run()
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

import geopandas as gpd

from .config import PeriodConfig, PipelineConfig
from .data.composite import CompositeBuilder
from .data.indices import add_indices
from .data.raster import Raster
from .data.samples import References, TrainingSetBuilder, TrainingSplit
from .data.scenes import Frame, SceneCatalog
from .errors import ExportFailureError, LandChangeError
from .models.classifier import (
    ClassificationResult,
    ClassificationStage,
    ClassifierCapability,
    RandomForestCapability,
)
from .utils.change_detection import ChangeAccountant, ChangeReport
from .utils.export import LocalExportSink, export_with_retry

logger = logging.getLogger(__name__)

@dataclass
class PeriodResult:
    """Outputs of one time-period branch, or the error that stopped it."""
    period: PeriodConfig
    composite: Optional[Raster] = None
    split: Optional[TrainingSplit] = None
    classification: Optional[ClassificationResult] = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.classification is not None


@dataclass
class PipelineResult:
    periods: Dict[str, PeriodResult]
    change: Optional[ChangeReport] = None
    report_text: str = ''
    exported: List[Path] = field(default_factory=list)
    export_errors: List[ExportFailureError] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return (
            all(r.ok for r in self.periods.values())
            and self.change is not None
            and not self.export_errors
        )


def load_references(config: PipelineConfig) -> References:
    """Read the reference geometries of every class that has a sample file."""
    references = {}
    for land_cover in config.classes:
        if land_cover.samples is None:
            logger.warning(f"No reference samples configured for class '{land_cover.name}'")
            continue
        if not Path(land_cover.samples).exists():
            raise FileNotFoundError(f"Reference samples not found: {land_cover.samples}")
        gdf = gpd.read_file(land_cover.samples)
        logger.info(f"Loaded {len(gdf)} reference geometries for '{land_cover.name}'")
        references[land_cover.value] = gdf
    return references


class LandCoverChangePipeline:
    """Two-period land cover classification and change accounting."""

    def __init__(
        self,
        config: PipelineConfig,
        catalog: Optional[SceneCatalog] = None,
        references: Optional[References] = None,
        classifier: Optional[ClassifierCapability] = None,
        sink: Optional[LocalExportSink] = None
    ):
        """
        Args:
            config: Run configuration
            catalog: Scene source (default: scenes listed in the config)
            references: Class label -> reference geometries
                (default: the per-class sample files in the config)
            classifier: Classifier capability (default: random forest)
            sink: Export sink (default: local folder from the config)
        """
        self.config = config
        self.catalog = catalog if catalog is not None else SceneCatalog(config.scenes)
        self._references = references
        self.sink = sink if sink is not None else LocalExportSink(config.export.root)

        tiling = config.tiling
        self.grid = config.grid()
        self.builder = CompositeBuilder(
            self.grid, config.roi, config.roi_crs, config.sensors,
            tile_size=tiling.tile_size, workers=tiling.workers, progress=tiling.progress,
        )
        self.trainer = TrainingSetBuilder(
            config.feature_names,
            train_ratio=config.sampling.train_ratio,
            seed=config.sampling.seed,
            label_column=config.sampling.label_column,
        )
        capability = classifier if classifier is not None else RandomForestCapability(
            n_estimators=config.classifier.n_estimators,
            seed=config.classifier.seed,
            params=config.classifier.params,
            tile_size=tiling.tile_size,
            workers=tiling.workers,
            progress=tiling.progress,
        )
        self.stage = ClassificationStage(
            capability,
            config.feature_names,
            config.class_values,
            [c.name for c in config.classes],
            label_column=config.sampling.label_column,
        )
        self.accountant = ChangeAccountant(config.class_values, config.class_names)

    @property
    def references(self) -> References:
        if self._references is None:
            self._references = load_references(self.config)
        return self._references

    def frames_for(self, period: PeriodConfig) -> List[Frame]:
        entries = self.catalog.query(
            period.sensors, period.start, period.end, self.config.max_cloud_cover
        )
        return list(self.catalog.load(entries))

    def run_period(self, period: PeriodConfig, frames: Optional[Sequence[Frame]] = None) -> PeriodResult:
        """
        Composite, sample and classify one time period.

        Raises whatever the failing stage raises; see ``run`` for isolation.
        """
        result = PeriodResult(period)
        frames = frames if frames is not None else self.frames_for(period)

        logger.info(f"[{period.name}] Building composite")
        composite = self.builder.build(frames, period.start, period.end, period.sensors)
        result.composite = add_indices(composite, self.config.indices)

        logger.info(f"[{period.name}] Sampling reference data")
        result.split = self.trainer.build(self.references, result.composite)

        logger.info(f"[{period.name}] Classifying")
        result.classification = self.stage.run(
            result.split.training, result.split.validation, result.composite
        )
        return result

    def _run_branch(self, period: PeriodConfig) -> PeriodResult:
        try:
            return self.run_period(period)
        except LandChangeError as exc:
            logger.error(f"[{period.name}] Branch failed: {type(exc).__name__}: {exc}")
            return PeriodResult(period, error=exc)
        except Exception as exc:
            # Any other failure still aborts this period only
            logger.exception(f"[{period.name}] Branch failed unexpectedly: {exc}")
            return PeriodResult(period, error=exc)

    def run(self) -> PipelineResult:
        """Run both periods, compare them and export every artifact."""
        periods = self.config.periods
        # Both branches share the read-only reference data
        if self._references is None:
            self._references = load_references(self.config)

        with ThreadPoolExecutor(max_workers=len(periods)) as pool:
            outcomes = list(pool.map(self._run_branch, periods))
        results = {r.period.name: r for r in outcomes}

        pipeline_result = PipelineResult(results)
        before, after = outcomes
        if before.ok and after.ok:
            change = self.accountant.compare(
                before.classification.classified,
                after.classification.classified,
                before.period.name,
                after.period.name,
            )
            pipeline_result.change = change
            pipeline_result.report_text = self.accountant.generate_report(change)
        else:
            failed = [r.period.name for r in outcomes if not r.ok]
            logger.error(f"Change report skipped, failed periods: {', '.join(failed)}")

        self.export(pipeline_result)
        return pipeline_result

    def _export(self, result: PipelineResult, export: Callable[[], Path]):
        settings = self.config.export
        try:
            path = export_with_retry(export, settings.retries, settings.retry_delay)
            result.exported.append(path)
        except ExportFailureError as exc:
            logger.error(str(exc))
            result.export_errors.append(exc)

    def export(self, result: PipelineResult):
        """Export classified maps, sample tables and reports of a run."""
        settings = self.config.export
        folder, prefix = settings.folder, settings.prefix
        sink = self.sink
        tags = {f"class_{v}": n for v, n in self.config.class_names.items()}

        for name, period in result.periods.items():
            if not period.ok:
                continue
            classified = period.classification.classified
            self._export(result, lambda: sink.export_raster(
                classified, f"{prefix}_{name}_classified", folder,
                roi=self.config.roi, roi_crs=self.config.roi_crs,
                max_pixels=settings.max_pixels, palette=self.config.palette,
                tags={**tags, 'period': name},
            ))
            split = period.split
            self._export(result, lambda: sink.export_table(
                split.training, f"{prefix}_{name}_training_samples", folder))
            self._export(result, lambda: sink.export_table(
                split.validation, f"{prefix}_{name}_validation_samples", folder))
            assessment = period.classification.assessment
            if assessment is not None:
                self._export(result, lambda: sink.export_table(
                    assessment.get_confusion_matrix(), f"{prefix}_{name}_error_matrix", folder, index=True))

        change = result.change
        if change is None:
            return
        span = f"{change.before.period}_{change.after.period}"
        names = self.config.class_names
        before = result.periods[change.before.period].classification.classified
        after = result.periods[change.after.period].classification.classified

        self._export(result, lambda: sink.export_table(
            change.to_frame(), f"{prefix}_{span}_area_change", folder))
        for report in (change.before, change.after):
            self._export(result, lambda report=report: sink.export_table(
                report.to_frame(names), f"{prefix}_{report.period}_area", folder))
        if change.transitions is not None:
            self._export(result, lambda: sink.export_table(
                change.transitions, f"{prefix}_{span}_transitions", folder, index=True))
        self._export(result, lambda: sink.export_raster(
            self.accountant.change_map(before, after), f"{prefix}_{span}_transitions", folder,
            max_pixels=settings.max_pixels,
        ))
        self._export(result, lambda: sink.export_text(
            result.report_text, f"{prefix}_{span}_report", folder))
