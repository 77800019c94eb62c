"""Tests for the expressed gene mixture classifier."""

import numpy as np
import pandas as pd
import pytest

from neurodiff.exceptions import InputValidationError, ModelFitError
from neurodiff.expression import (ExpressedGeneClassifier, ashman_d,
                                  median_log_expression)


class TestHelpers:

    def test_median_log_expression(self):
        counts = pd.DataFrame([[0, 1, 3], [7, 7, 15]], index=["a", "b"])
        medians = median_log_expression(counts)
        assert medians["a"] == pytest.approx(1.0)
        assert medians["b"] == pytest.approx(3.0)

    def test_ashman_d(self):
        assert ashman_d(np.array([0.0, 4.0]), np.array([1.0, 1.0])) == pytest.approx(4.0)


class TestExpressedGeneClassifier:

    def test_background_genes_excluded(self, simulated):
        dataset, _ = simulated
        expressed = ExpressedGeneClassifier(seed=42).classify_dataset(dataset)

        ids = set(expressed.gene_ids)
        expressed_truth = {g for g in dataset.gene_ids if g.startswith("ENSG")}
        background_truth = {g for g in dataset.gene_ids if g.startswith("BKG")}

        assert expressed_truth <= ids
        assert not ids & background_truth
        assert expressed.component_means[0] > expressed.component_means[1]
        assert expressed.separation >= 2.0
        assert expressed.seed == 42

    def test_same_seed_same_membership(self, simulated):
        dataset, _ = simulated
        first = ExpressedGeneClassifier(seed=3).classify(dataset.counts)
        second = ExpressedGeneClassifier(seed=3).classify(dataset.counts)
        assert first.gene_ids == second.gene_ids
        assert first.component_means == second.component_means

    def test_membership_in_input_order(self, simulated):
        dataset, _ = simulated
        expressed = ExpressedGeneClassifier(seed=1).classify_dataset(dataset)
        membership = expressed.membership
        assert list(membership.index) == dataset.gene_ids
        assert int(membership.sum()) == len(expressed)

    def test_filter_dataset(self, simulated):
        dataset, _ = simulated
        filtered, expressed = ExpressedGeneClassifier(seed=1).filter_dataset(dataset)
        assert filtered.gene_ids == list(expressed.gene_ids)
        assert filtered.n_samples == dataset.n_samples

    def test_poor_separation_is_fatal(self, simulated):
        dataset, _ = simulated
        with pytest.raises(ModelFitError, match="separated"):
            ExpressedGeneClassifier(seed=1, min_separation=1e6).classify(dataset.counts)

    def test_near_empty_component_is_fatal(self, simulated):
        dataset, _ = simulated
        with pytest.raises(ModelFitError, match="nearly empty"):
            ExpressedGeneClassifier(seed=1, min_component_fraction=0.45).classify(dataset.counts)

    def test_constant_medians_are_fatal(self):
        counts = pd.DataFrame(np.full((20, 4), 5), index=[f"g{i}" for i in range(20)])
        with pytest.raises(ModelFitError, match="constant"):
            ExpressedGeneClassifier(seed=1).classify(counts)

    def test_too_few_genes_are_fatal(self):
        counts = pd.DataFrame([[1, 2], [100, 120], [0, 0]], index=["a", "b", "c"])
        with pytest.raises(ModelFitError):
            ExpressedGeneClassifier(seed=1).classify(counts)

    def test_model_order_fixed_at_two(self):
        with pytest.raises(InputValidationError):
            ExpressedGeneClassifier(seed=1, n_components=3)
