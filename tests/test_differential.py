"""Tests for dispersion estimation, GLM fitting and the differential expression engine."""

import numpy as np
import pandas as pd
import pytest
from scipy.stats import nbinom

from neurodiff.dataset import Design
from neurodiff.differential import (DEFAULT_THRESHOLDS,
                                    DifferentialExpressionEngine,
                                    ThresholdConfig, benjamini_hochberg,
                                    estimate_size_factors,
                                    extract_gene_list, fit_dispersion_trend,
                                    fit_gene, rank_results)
from neurodiff.differential.dispersion import (genewise_dispersion,
                                               linear_model_mu,
                                               nb_log_likelihood)
from neurodiff.exceptions import InputValidationError
from neurodiff.expression import ExpressedGeneClassifier


@pytest.fixture(scope="module")
def de_run(simulated):
    dataset, truth = simulated
    filtered, _ = ExpressedGeneClassifier(seed=42).filter_dataset(dataset)
    result = DifferentialExpressionEngine().run(filtered, Design("group", reference_level="A"))
    return result, truth


@pytest.fixture(scope="module")
def zero_gene_run(make_dataset):
    dataset, _ = make_dataset(n_null=150, n_shifted=50, n_background=0, n_zero=3, seed=11)
    return DifferentialExpressionEngine().run(dataset, Design("group", reference_level="A"))


class TestSizeFactors:

    def test_recovers_column_scaling(self):
        rng = np.random.default_rng(0)
        base = rng.integers(1, 500, (100, 1)).astype(float)
        scale = np.array([0.5, 1.0, 2.0, 4.0])
        factors = estimate_size_factors(base * scale)
        expected = scale / np.exp(np.mean(np.log(scale)))
        assert np.allclose(factors, expected)

    def test_needs_a_gene_without_zeros(self):
        with pytest.raises(InputValidationError):
            estimate_size_factors(np.array([[0, 1], [1, 0]]))


class TestDispersionEstimation:

    def test_log_likelihood_matches_scipy(self):
        y = np.array([0, 3, 10, 25, 7], dtype=float)
        mu = np.array([2.0, 4.0, 9.0, 20.0, 6.0])
        alpha = 0.3
        expected = nbinom.logpmf(y, 1 / alpha, 1 / (1 + alpha * mu)).sum()
        assert nb_log_likelihood(y, mu, alpha) == pytest.approx(expected)

    def test_genewise_recovers_dispersion(self):
        rng = np.random.default_rng(5)
        size = 10.0
        y = rng.negative_binomial(size, size / (size + 100.0), 400).astype(float)
        design = np.ones((400, 1))
        mu = np.full(400, y.mean())
        estimate = genewise_dispersion(y, mu, design, 1e-8, 400.0)
        assert estimate == pytest.approx(0.1, rel=0.3)

    def test_linear_model_mu_matches_group_means(self):
        counts = np.array([[10.0, 20.0, 100.0, 120.0]])
        design = np.column_stack([np.ones(4), [0, 0, 1, 1]])
        mu = linear_model_mu(counts, design, np.ones(4))
        assert np.allclose(mu, [[15.0, 15.0, 110.0, 110.0]])

    def test_trend_recovers_parameters(self):
        rng = np.random.default_rng(2)
        means = np.exp(rng.uniform(np.log(5), np.log(5000), 3000))
        truth = 0.05 + 2.0 / means
        genewise = truth * np.exp(rng.normal(0.0, 0.2, means.size))
        trend = fit_dispersion_trend(means, genewise)
        assert trend.fit_type == "parametric"
        assert trend.asymptotic == pytest.approx(0.05, rel=0.3)
        assert trend.extra_poisson == pytest.approx(2.0, rel=0.3)

    def test_trend_falls_back_to_mean(self):
        trend = fit_dispersion_trend(np.array([10.0, 20.0]), np.array([0.2, 0.4]))
        assert trend.fit_type == "mean"
        assert np.allclose(trend(np.array([1.0, 100.0])), trend.asymptotic)


class TestGeneFit:

    def test_recovers_fold_change(self):
        rng = np.random.default_rng(4)
        groups = np.repeat([0.0, 1.0], 20)
        mu = 200.0 * np.power(4.0, groups)
        y = rng.negative_binomial(20.0, 20.0 / (20.0 + mu)).astype(float)
        design = np.column_stack([np.ones(40), groups])

        fit = fit_gene(y, design, np.zeros(40), 0.05, coefficient=1)
        assert fit.tested
        assert fit.converged
        assert fit.log2_fold_change == pytest.approx(2.0, abs=0.3)
        assert fit.pvalue < 1e-6

    def test_invalid_dispersion_untested(self):
        fit = fit_gene(np.array([1.0, 2.0, 3.0]), np.ones((3, 1)), np.zeros(3), np.nan, 0)
        assert not fit.tested
        assert fit.untested_reason == "invalid dispersion"
        assert np.isnan(fit.pvalue)


class TestMultipleTesting:

    def test_missing_pvalues_not_counted(self):
        pvalues = pd.Series([0.01, np.nan, 0.04, 0.03])
        adjusted = benjamini_hochberg(pvalues)
        assert np.isnan(adjusted.iloc[1])
        assert adjusted.iloc[0] == pytest.approx(0.03)
        assert adjusted.iloc[2] == pytest.approx(0.04)
        assert adjusted.iloc[3] == pytest.approx(0.04)

    def test_rank_results_order(self):
        table = pd.DataFrame(
            {
                "tested": [True, False, True, True],
                "padj": [0.2, np.nan, 0.01, 0.01],
                "pvalue": [0.1, np.nan, 0.001, 0.001],
                "log2FoldChange": [1.0, np.nan, -2.0, 3.0],
            },
            index=["a", "b", "c", "d"],
        )
        assert list(rank_results(table).index) == ["d", "c", "a", "b"]


class TestDifferentialExpressionEngine:

    def test_table_columns_and_index(self, de_run):
        result, _ = de_run
        assert result.table.index.name == "gene_id"
        assert list(result.table.columns[:7]) == [
            "symbol", "baseMean", "log2FoldChange", "lfcSE", "stat", "pvalue", "padj"
        ]
        assert result.coefficient == "group[T.B]"
        assert result.reference_level == "A"
        assert result.test_level == "B"

    def test_padj_bounded_and_monotone(self, de_run):
        result, _ = de_run
        tested = result.tested.sort_values("pvalue", kind="mergesort")
        padj = tested["padj"].to_numpy()
        assert np.all((padj >= 0) & (padj <= 1))
        assert np.all(np.diff(padj) >= -1e-12)
        assert np.all(padj >= tested["pvalue"].to_numpy() - 1e-12)

    def test_sorted_by_significance(self, de_run):
        result, _ = de_run
        padj = result.table["padj"].dropna().to_numpy()
        assert np.all(np.diff(padj) >= 0)

    def test_recovers_shifted_genes(self, de_run):
        result, truth = de_run
        table = result.table
        significant = table.index[table["padj"] < 0.1]

        shifted = truth[truth].index
        null = truth[~truth].index.intersection(table.index)

        detected = len(significant.intersection(shifted)) / len(shifted)
        false_discoveries = len(significant.intersection(null))

        assert detected >= 0.7
        # nominal FDR plus three binomial standard errors of the observed proportion
        tolerance = 3 * np.sqrt(0.1 * 0.9 / max(len(significant), 1))
        assert false_discoveries / max(len(significant), 1) <= 0.1 + tolerance
        assert false_discoveries / len(null) <= 0.05

    def test_fold_change_direction(self, de_run):
        result, truth = de_run
        shifted = truth[truth].index
        up = [gene for i, gene in enumerate(shifted) if i % 2 == 0]
        down = [gene for i, gene in enumerate(shifted) if i % 2 == 1]
        lfc = result.table["log2FoldChange"]
        assert lfc.loc[up].median() == pytest.approx(1.0, abs=0.25)
        assert lfc.loc[down].median() == pytest.approx(-1.0, abs=0.25)

    def test_summary_splits_up_and_down(self, de_run):
        result, _ = de_run
        summary = result.summary()
        assert summary.alpha == 0.1
        assert summary.n_up + summary.n_down == summary.n_significant
        assert summary.n_up > 0 and summary.n_down > 0
        assert result.summary(alpha=0.01).n_significant <= summary.n_significant

    def test_size_factors_reported(self, de_run):
        result, _ = de_run
        assert result.size_factors.index.tolist() == [f"S{i}" for i in range(1, 9)]
        assert np.exp(np.log(result.size_factors).mean()) == pytest.approx(1.0, abs=0.05)

    def test_all_zero_genes_untested(self, zero_gene_run):
        table = zero_gene_run.table
        zero = table.loc[table.index.str.startswith("ZERO")]
        assert len(zero) == 3
        assert not zero["tested"].any()
        assert set(zero["untested_reason"]) == {"all counts zero"}
        assert zero["pvalue"].isna().all() and zero["padj"].isna().all()
        assert list(table.index[-3:]) == list(zero.index)

    def test_covariate_adjusted_run(self, small_simulated):
        dataset, _ = small_simulated
        filtered, _ = ExpressedGeneClassifier(seed=1).filter_dataset(dataset)
        design = Design("group", reference_level="A", covariates=("rin",))
        result = DifferentialExpressionEngine().run(filtered, design)
        assert result.coefficient == "group[T.B]"
        assert result.table["tested"].mean() > 0.95

    def test_no_residual_degrees_of_freedom(self, tiny_dataset):
        two_samples = tiny_dataset.drop_samples(["s2", "s4"])
        with pytest.raises(InputValidationError, match="degrees of freedom"):
            DifferentialExpressionEngine().run(two_samples, Design("group", reference_level="A"))


class TestGeneLists:

    def _table(self):
        return pd.DataFrame(
            {
                "symbol": ["Gad1", "Sst", "Gad1", None, "Pvalb", "Vip"],
                "log2FoldChange": [2.0, -1.5, 1.2, 0.8, 0.5, 3.0],
                "pvalue": [1e-6, 1e-5, 1e-4, 1e-3, 0.01, np.nan],
                "padj": [1e-4, 1e-3, 0.01, 0.05, 0.1, np.nan],
                "tested": [True, True, True, True, True, False],
            },
            index=["g1", "g2", "g3", "g4", "g5", "g6"],
        )

    def test_strict_thresholds(self):
        gene_list = extract_gene_list(self._table(), ThresholdConfig("t", 0.8, 0.05))
        # g4 has lfc == 0.8 and padj == 0.05, both excluded
        assert gene_list.symbols == ("Gad1", "Sst")

    def test_duplicate_symbols_keep_first(self):
        gene_list = extract_gene_list(self._table(), ThresholdConfig("t", 0.0, 0.5))
        assert gene_list.symbols == ("Gad1", "Sst", "g4", "Pvalb")
        assert gene_list.gene_ids == ("g1", "g2", "g4", "g5")

    def test_up_down_split(self):
        gene_list = extract_gene_list(self._table(), ThresholdConfig("t", 0.0, 0.5))
        assert (gene_list.n_up, gene_list.n_down) == (3, 1)
        assert gene_list.n_up + gene_list.n_down == len(gene_list)

    def test_pvalue_column(self):
        gene_list = extract_gene_list(self._table(), ThresholdConfig("t", 0.0, 1e-4, "pvalue"))
        assert gene_list.symbols == ("Gad1", "Sst")

    def test_invalid_column_rejected(self):
        with pytest.raises(InputValidationError):
            ThresholdConfig("t", 0.0, 0.1, "qvalue")

    def test_monotone_under_loosening(self, de_run):
        result, _ = de_run
        strict = result.gene_list(ThresholdConfig("strict", 1.0, 0.01))
        loose = result.gene_list(ThresholdConfig("loose", 0.5, 0.1))
        looser = result.gene_list(ThresholdConfig("looser", 0.0, 0.2))
        assert set(strict.symbols) <= set(loose.symbols) <= set(looser.symbols)

    def test_default_configurations_consistent(self, de_run):
        result, _ = de_run
        for config in DEFAULT_THRESHOLDS:
            gene_list = result.gene_list(config)
            assert gene_list.n_up + gene_list.n_down == len(gene_list)
            assert len(set(gene_list.symbols)) == len(gene_list)
