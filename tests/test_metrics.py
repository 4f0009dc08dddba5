"""Tests for the accuracy assessment."""

import numpy as np
import pytest

from landchange.utils.metrics import AccuracyAssessment


class TestAccuracyAssessment:

    def test_error_matrix(self):
        assessment = AccuracyAssessment([1, 2, 3], ['Water', 'Forest', 'Urban'])
        assessment.update(predictions=[1, 1, 2, 2, 3, 2], references=[1, 2, 2, 2, 3, 3])

        matrix = assessment.get_confusion_matrix()
        assert matrix.loc['Forest', 'Water'] == 1
        assert matrix.loc['Urban', 'Forest'] == 1
        assert matrix.to_numpy().sum() == 6

        metrics = assessment.compute()
        assert metrics['accuracy'] == pytest.approx(4 / 6)
        assert metrics['producers_Forest'] == pytest.approx(2 / 3)
        assert metrics['users_Forest'] == pytest.approx(2 / 3)
        assert metrics['users_Water'] == pytest.approx(1 / 2)

    def test_kappa(self):
        assessment = AccuracyAssessment([1, 2])
        assessment.update([1, 1, 2, 2], [1, 2, 1, 2])
        # observed 0.5, expected 0.5
        assert assessment.compute()['kappa'] == pytest.approx(0.0)

    def test_unknown_labels_ignored(self):
        assessment = AccuracyAssessment([1, 2])
        assessment.update(np.array([1, 0, 2]), np.array([1, 1, 7]))
        assert assessment.confusion_matrix.sum() == 1

    def test_empty(self):
        assessment = AccuracyAssessment([1, 2])
        assessment.update([], [])
        metrics = assessment.compute()
        assert metrics['accuracy'] == 0.0
        assert metrics['kappa'] == 0.0

    def test_reset_and_report(self):
        assessment = AccuracyAssessment([1, 2], ['A', 'B'])
        assessment.update([1, 2], [1, 2])
        assert 'Overall Accuracy: 1.0000' in assessment.format_report()
        assessment.reset()
        assert assessment.confusion_matrix.sum() == 0
