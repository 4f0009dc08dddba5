"""
Classification Stage
====================

Thin adapter between the pipeline and a supervised classifier capability.

The stage owns the feature/label contract: which bands feed the model,
which column holds the label and which labels are legal. The algorithm is
supplied by a capability exposing ``train(...) -> Model`` and
``Model.predict(raster) -> Raster``. The default capability wraps
scikit-learn's RandomForestClassifier.
"""

import logging
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Protocol, Sequence

import numpy as np
import pandas as pd
from rasterio.windows import Window
from sklearn.ensemble import RandomForestClassifier

from ..data.raster import Raster
from ..errors import ClassificationError, ClassifierTrainingError, LandChangeError
from ..utils.metrics import AccuracyAssessment
from ..utils.tiling import map_tiles

logger = logging.getLogger(__name__)

CLASSIFICATION_BAND = 'classification'
NODATA_LABEL = 0


class Model(Protocol):
    feature_names: Sequence[str]

    def predict_table(self, table: pd.DataFrame) -> np.ndarray:
        ...

    def predict(self, raster: Raster) -> Raster:
        ...


class ClassifierCapability(Protocol):
    def train(self, table: pd.DataFrame, label_column: str, feature_names: Sequence[str]) -> Model:
        ...


def label_dtype(max_label: int):
    """Smallest unsigned dtype that holds every label."""
    if max_label <= np.iinfo(np.uint8).max:
        return np.uint8
    if max_label <= np.iinfo(np.uint16).max:
        return np.uint16
    return np.int32


class RandomForestModel:
    """Trained random forest applied tile by tile to feature rasters."""

    def __init__(
        self,
        estimator: RandomForestClassifier,
        feature_names: Sequence[str],
        tile_size: int = 512,
        workers: int = 4,
        progress: bool = True
    ):
        self.estimator = estimator
        self.feature_names = list(feature_names)
        self.tile_size = tile_size
        self.workers = workers
        self.progress = progress

    def predict_table(self, table: pd.DataFrame) -> np.ndarray:
        return self.estimator.predict(table[self.feature_names].to_numpy(dtype=np.float64))

    def predict(self, raster: Raster) -> Raster:
        """
        Classify every pixel of ``raster``.

        Pixels with a no-value in any feature band get NODATA_LABEL.

        Returns:
            Single-band raster named CLASSIFICATION_BAND
        """
        raster.require(self.feature_names)
        dtype = label_dtype(int(np.max(self.estimator.classes_)))

        def classify_tile(window: Window) -> np.ndarray:
            tile = raster.window(window)
            features = tile.stack(self.feature_names)
            n_features, height, width = features.shape
            samples = features.reshape(n_features, -1).T
            valid = np.isfinite(samples).all(axis=1)
            labels = np.full(height * width, NODATA_LABEL, dtype=dtype)
            if valid.any():
                labels[valid] = self.estimator.predict(samples[valid])
            return labels.reshape(height, width)

        labels = map_tiles(
            classify_tile,
            raster.grid,
            dtype=dtype,
            fill=NODATA_LABEL,
            tile_size=self.tile_size,
            workers=self.workers,
            desc="Classifying",
            progress=self.progress,
        )
        return Raster({CLASSIFICATION_BAND: labels}, raster.grid, nodata=NODATA_LABEL)


class RandomForestCapability:
    """Random forest classifier capability (scikit-learn)."""

    def __init__(
        self,
        n_estimators: int = 300,
        seed: Optional[int] = 42,
        params: Optional[Mapping[str, Any]] = None,
        tile_size: int = 512,
        workers: int = 4,
        progress: bool = True
    ):
        """
        Args:
            n_estimators: Number of trees
            seed: Random state of the forest
            params: Extra RandomForestClassifier keyword arguments
            tile_size: Tile edge length for prediction
            workers: Prediction thread pool size
            progress: Show progress bars
        """
        self.n_estimators = n_estimators
        self.seed = seed
        self.params = dict(params or {})
        self.tile_size = tile_size
        self.workers = workers
        self.progress = progress

    def train(self, table: pd.DataFrame, label_column: str, feature_names: Sequence[str]) -> RandomForestModel:
        if table.empty:
            raise ValueError("Training table is empty")

        estimator = RandomForestClassifier(
            n_estimators=self.n_estimators,
            random_state=self.seed,
            **self.params
        )
        features = table[list(feature_names)].to_numpy(dtype=np.float64)
        labels = table[label_column].to_numpy(dtype=np.int64)

        logger.info(
            f"Training random forest: {self.n_estimators} trees, "
            f"{len(labels)} samples, {features.shape[1]} features"
        )
        estimator.fit(features, labels)
        return RandomForestModel(
            estimator, feature_names,
            tile_size=self.tile_size, workers=self.workers, progress=self.progress
        )


@dataclass
class ClassificationResult:
    classified: Raster
    model: Model
    assessment: Optional[AccuracyAssessment]


class ClassificationStage:
    """Trains a model on the training set and classifies a feature raster."""

    def __init__(
        self,
        capability: ClassifierCapability,
        feature_names: Sequence[str],
        class_values: Sequence[int],
        class_names: Optional[Sequence[str]] = None,
        label_column: str = 'landcover'
    ):
        self.capability = capability
        self.feature_names = list(feature_names)
        self.class_values = [int(v) for v in class_values]
        self.class_names = list(class_names) if class_names else None
        self.label_column = label_column

    def train(self, training: pd.DataFrame) -> Model:
        unknown = set(training[self.label_column].unique()) - set(self.class_values)
        if unknown:
            raise ClassifierTrainingError(f"Training labels outside the class set: {sorted(unknown)}")
        try:
            return self.capability.train(training, self.label_column, self.feature_names)
        except ClassifierTrainingError:
            raise
        except Exception as exc:
            raise ClassifierTrainingError(f"Classifier training failed: {exc}") from exc

    def assess(self, model: Model, validation: pd.DataFrame) -> Optional[AccuracyAssessment]:
        """Validation accuracy; reported only, never gating."""
        if validation.empty:
            logger.warning("Validation set is empty, skipping accuracy assessment")
            return None
        assessment = AccuracyAssessment(self.class_values, self.class_names)
        assessment.update(model.predict_table(validation), validation[self.label_column].to_numpy())
        logger.info("\n" + assessment.format_report())
        return assessment

    def run(self, training: pd.DataFrame, validation: pd.DataFrame, raster: Raster) -> ClassificationResult:
        """
        Train, assess and classify.

        Raises:
            ClassifierTrainingError: capability failed to train
            ClassificationError: model failed to predict
        """
        model = self.train(training)
        try:
            assessment = self.assess(model, validation)
            classified = model.predict(raster)
        except LandChangeError:
            raise
        except Exception as exc:
            raise ClassificationError(f"Classification failed: {exc}") from exc

        labels = classified[CLASSIFICATION_BAND]
        legal = np.isin(labels, self.class_values + [NODATA_LABEL])
        if not legal.all():
            raise ValueError(f"Classifier produced labels outside the class set: {np.unique(labels[~legal])}")
        return ClassificationResult(classified, model, assessment)
