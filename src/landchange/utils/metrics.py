"""
Accuracy Assessment for Land Cover Classification
=================================================

Error-matrix metrics for validating a classifier on held-out samples:
    - Overall accuracy
    - Cohen's kappa
    - Producer's accuracy (recall) per class
    - User's accuracy (precision) per class
    - F1 score per class
"""

from typing import Dict, List, Optional, Sequence

import numpy as np
import pandas as pd


class AccuracyAssessment:
    """
    Accumulates an error matrix over predictions and derives metrics.

    Rows of the matrix are reference classes, columns predicted classes,
    both ordered as ``class_values``.
    """

    def __init__(
        self,
        class_values: Sequence[int],
        class_names: Optional[Sequence[str]] = None
    ):
        """
        Args:
            class_values: Class labels in matrix order
            class_names: Optional names for reporting
        """
        self.class_values = [int(v) for v in class_values]
        self.class_names = list(class_names) if class_names else [f'class_{v}' for v in self.class_values]
        self._index = {value: i for i, value in enumerate(self.class_values)}

        self.reset()

    def reset(self):
        """Reset the accumulated matrix."""
        n = len(self.class_values)
        self.confusion_matrix = np.zeros((n, n), dtype=np.int64)

    def update(self, predictions: np.ndarray, references: np.ndarray):
        """
        Add predictions to the error matrix.

        Labels outside ``class_values`` are ignored.

        Args:
            predictions: Predicted class labels
            references: Reference class labels
        """
        predictions = np.asarray(predictions).ravel()
        references = np.asarray(references).ravel()
        if predictions.shape != references.shape:
            raise ValueError("predictions and references differ in length")

        lookup = np.vectorize(lambda v: self._index.get(int(v), -1), otypes=[np.int64])
        pred_idx = lookup(predictions) if predictions.size else predictions.astype(np.int64)
        ref_idx = lookup(references) if references.size else references.astype(np.int64)

        keep = (pred_idx >= 0) & (ref_idx >= 0)
        n = len(self.class_values)
        flat = ref_idx[keep] * n + pred_idx[keep]
        self.confusion_matrix += np.bincount(flat, minlength=n * n).reshape(n, n)

    def compute(self) -> Dict[str, float]:
        """
        Compute all metrics from the error matrix.

        Returns:
            Dictionary of metric names and values
        """
        metrics = {}
        matrix = self.confusion_matrix.astype(np.float64)
        total = matrix.sum()

        # Overall accuracy
        correct = np.trace(matrix)
        metrics['accuracy'] = correct / max(total, 1)

        # Kappa
        if total > 0:
            expected = (matrix.sum(axis=0) * matrix.sum(axis=1)).sum() / total ** 2
            observed = correct / total
            metrics['kappa'] = (observed - expected) / (1 - expected) if expected < 1 else 1.0
        else:
            metrics['kappa'] = 0.0

        for i, name in enumerate(self.class_names):
            tp = matrix[i, i]
            reference_total = matrix[i, :].sum()
            predicted_total = matrix[:, i].sum()

            producers = tp / max(reference_total, 1)
            users = tp / max(predicted_total, 1)
            f1 = 2 * producers * users / max(producers + users, 1e-6)

            metrics[f'producers_{name}'] = producers
            metrics[f'users_{name}'] = users
            metrics[f'f1_{name}'] = f1

        return metrics

    def get_confusion_matrix(self) -> pd.DataFrame:
        """Error matrix as a labelled DataFrame."""
        return pd.DataFrame(
            self.confusion_matrix.copy(),
            index=pd.Index(self.class_names, name='reference'),
            columns=pd.Index(self.class_names, name='predicted'),
        )

    def format_report(self) -> str:
        """Render a plain-text accuracy report."""
        metrics = self.compute()

        lines: List[str] = []
        lines.append("=" * 60)
        lines.append("ACCURACY ASSESSMENT")
        lines.append("=" * 60)
        lines.append(f"Overall Accuracy: {metrics['accuracy']:.4f}")
        lines.append(f"Kappa: {metrics['kappa']:.4f}")
        lines.append("")
        lines.append(f"{'Class':<15} {'Producer':<10} {'User':<10} {'F1':<10} {'Support'}")
        lines.append("-" * 60)
        for i, name in enumerate(self.class_names):
            support = self.confusion_matrix[i, :].sum()
            lines.append(
                f"{name:<15} {metrics[f'producers_{name}']:<10.4f} "
                f"{metrics[f'users_{name}']:<10.4f} {metrics[f'f1_{name}']:<10.4f} {support}"
            )
        lines.append("=" * 60)
        return "\n".join(lines)
