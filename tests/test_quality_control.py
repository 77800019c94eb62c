"""Tests for high-variance gene selection and PCA diagnostics."""

import numpy as np
import pandas as pd
import pytest

from neurodiff.dataset import Design
from neurodiff.differential import DispersionTrend
from neurodiff.exceptions import InputValidationError
from neurodiff.normalization import NormalizedMatrix
from neurodiff.quality_control import (HighVarianceGeneSelector, PCAProjector,
                                       correlation_ratio)


def _matrix(values, samples):
    frame = pd.DataFrame(values, columns=samples)
    frame.index = [f"g{i}" for i in range(len(frame))]
    return NormalizedMatrix(
        values=frame,
        design=Design("group", reference_level="A"),
        size_factors=pd.Series(1.0, index=samples),
        trend=DispersionTrend("mean", 0.1),
    )


def _group_separated_matrix(n_genes=200, n_signal=40, seed=0):
    rng = np.random.default_rng(seed)
    samples = [f"S{i + 1}" for i in range(8)]
    values = rng.normal(8.0, 0.2, (n_genes, 8))
    values[:n_signal, 4:] += 3.0
    metadata = pd.DataFrame(
        {
            "group": ["A"] * 4 + ["B"] * 4,
            "batch": ["b1", "b2"] * 4,
            "rin": [8.1, 7.5, 9.0, 8.4, 7.9, 8.8, 7.2, 8.6],
            "sample_name": samples,
        },
        index=samples,
    )
    return _matrix(values, samples), metadata


class TestHighVarianceGeneSelector:

    def test_top_k_by_variance(self):
        matrix, _ = _group_separated_matrix()
        selected = HighVarianceGeneSelector(n_genes=40).select(matrix)
        assert set(selected) == {f"g{i}" for i in range(40)}

    def test_capped_at_gene_count(self):
        matrix, _ = _group_separated_matrix(n_genes=30, n_signal=5)
        assert len(HighVarianceGeneSelector(n_genes=500).select(matrix)) == 30

    def test_ties_keep_matrix_order(self):
        row = [1.0, 2.0, 3.0, 4.0]
        matrix = _matrix([row, [0, 0, 0, 0], row, row], ["a", "b", "c", "d"])
        assert HighVarianceGeneSelector(n_genes=3).select(matrix) == ["g0", "g2", "g3"]

    def test_uses_sample_variance(self):
        matrix = _matrix([[1.0, 3.0]], ["a", "b"])
        assert HighVarianceGeneSelector().gene_variances(matrix)["g0"] == pytest.approx(2.0)

    def test_non_positive_k_rejected(self):
        with pytest.raises(InputValidationError):
            HighVarianceGeneSelector(n_genes=0)


class TestPCAProjector:

    def test_projection_shapes(self):
        matrix, _ = _group_separated_matrix()
        genes = HighVarianceGeneSelector(n_genes=100).select(matrix)
        result = PCAProjector(n_components=10).project(matrix, genes)

        # at most n_samples - 1 informative components
        assert result.components == [f"PC{i}" for i in range(1, 8)]
        assert list(result.coordinates.index) == list(matrix.values.columns)
        assert result.loadings.shape == (100, 7)
        assert result.explained_variance_ratio.sum() == pytest.approx(1.0)
        assert result.explained_variance_ratio.is_monotonic_decreasing

    def test_pc1_separates_groups(self):
        matrix, _ = _group_separated_matrix()
        result = PCAProjector(n_components=3).project(matrix, list(matrix.values.index))
        pc1 = result.coordinates["PC1"]
        assert np.sign(pc1.iloc[:4]).nunique() == 1
        assert np.sign(pc1.iloc[:4].iloc[0]) != np.sign(pc1.iloc[4:].iloc[0])

    def test_covariate_correlation_table(self):
        matrix, metadata = _group_separated_matrix()
        result = PCAProjector(n_components=3).project(matrix, list(matrix.values.index))
        table = result.correlate_covariates(metadata)

        assert set(table["covariate"]) == {"group", "batch", "rin"}
        assert set(table.loc[table["covariate"] == "rin", "kind"]) == {"numeric"}
        assert set(table.loc[table["covariate"] == "group", "kind"]) == {"categorical"}
        assert len(table) == 3 * 3

        group_pc1 = table[(table["covariate"] == "group") & (table["component"] == "PC1")].iloc[0]
        assert group_pc1["correlation"] > 0.95
        assert group_pc1["pvalue"] < 0.001

    def test_confounded_query(self):
        matrix, metadata = _group_separated_matrix()
        result = PCAProjector(n_components=3).project(matrix, list(matrix.values.index))
        confounded = result.confounded(metadata, threshold=0.9, alpha=0.01)
        assert ("PC1", "group") in set(zip(confounded["component"], confounded["covariate"]))

    def test_unknown_covariate_rejected(self):
        matrix, metadata = _group_separated_matrix()
        result = PCAProjector(n_components=2).project(matrix, list(matrix.values.index))
        with pytest.raises(InputValidationError):
            result.correlate_covariates(metadata, covariates=["age"])

    def test_empty_gene_set_rejected(self):
        matrix, _ = _group_separated_matrix()
        with pytest.raises(InputValidationError):
            PCAProjector().project(matrix, [])


def test_correlation_ratio_bounds():
    labels = pd.Series(["a", "a", "b", "b"])
    assert correlation_ratio(labels, np.array([1.0, 1.0, 5.0, 5.0])) == pytest.approx(1.0)
    assert correlation_ratio(labels, np.array([1.0, 5.0, 1.0, 5.0])) == pytest.approx(0.0)
