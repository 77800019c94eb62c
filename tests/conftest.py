"""Shared fixtures: simulated negative binomial RNA-seq datasets."""

import logging

import numpy as np
import pandas as pd
import pytest

from neurodiff.dataset import Design, ExpressionDataset

GROUPS = ("A", "B")


def _gene_ids(prefix, n, start=0):
    return [f"{prefix}{i:06d}" for i in range(start, start + n)]


def simulate_dataset(
    n_null=1500,
    n_shifted=500,
    n_background=400,
    n_per_group=4,
    fold=2.0,
    dispersion=0.05,
    extra_poisson=2.0,
    n_zero=0,
    seed=0,
):
    """
    Two groups of negative binomial samples.

    The first ``n_shifted`` expressed genes change ``fold``-fold in group B
    (alternating up and down). Gene dispersions follow
    ``dispersion + extra_poisson / mean``. Background genes are near-zero Poisson noise;
    ``n_zero`` genes are all zero.
    """
    rng = np.random.default_rng(seed)
    n_samples = 2 * n_per_group
    n_expressed = n_null + n_shifted

    base_means = np.exp(rng.uniform(np.log(50), np.log(2000), n_expressed))
    log2_fold = np.zeros(n_expressed)
    log2_fold[:n_shifted] = np.where(np.arange(n_shifted) % 2 == 0, 1.0, -1.0) * np.log2(fold)

    groups = np.repeat(GROUPS, n_per_group)
    in_b = (groups == "B").astype(float)
    size_factors = rng.uniform(0.7, 1.4, n_samples)

    mu = (
        base_means[:, None]
        * np.power(2.0, log2_fold[:, None] * in_b[None, :])
        * size_factors[None, :]
    )
    size = 1.0 / (dispersion + extra_poisson / base_means)[:, None]
    expressed = rng.negative_binomial(size, size / (size + mu))

    background = rng.poisson(rng.uniform(0.0, 0.5, (n_background, 1)), (n_background, n_samples))
    zeros = np.zeros((n_zero, n_samples), dtype=int)

    gene_ids = (
        _gene_ids("ENSG", n_expressed)
        + _gene_ids("BKG", n_background)
        + _gene_ids("ZERO", n_zero)
    )
    sample_ids = [f"S{i + 1}" for i in range(n_samples)]

    counts = pd.DataFrame(
        np.vstack([expressed, background, zeros]).astype(np.int64),
        index=gene_ids,
        columns=sample_ids,
    )
    samples = pd.DataFrame(
        {
            "group": groups,
            "batch": ["b1", "b2"] * n_per_group,
            "rin": rng.uniform(7.0, 9.5, n_samples).round(2),
        },
        index=sample_ids,
    )
    genes = pd.DataFrame({"symbol": [f"Gene{i}" for i in range(len(gene_ids))]}, index=gene_ids)

    truth = pd.Series(False, index=gene_ids, name="shifted")
    truth.iloc[:n_shifted] = True

    return ExpressionDataset(counts=counts, samples=samples, genes=genes), truth


@pytest.fixture
def design():
    return Design(group_column="group", reference_level="A")


@pytest.fixture(scope="session")
def simulated():
    """Full-size dataset: 1500 null + 500 shifted expressed genes, 400 background."""
    return simulate_dataset()


@pytest.fixture(scope="session")
def small_simulated():
    """Small dataset for pipeline, export and CLI tests."""
    return simulate_dataset(n_null=250, n_shifted=100, n_background=80, seed=7)


@pytest.fixture
def tiny_dataset():
    counts = pd.DataFrame(
        [[10, 12, 30, 33], [0, 0, 0, 0], [5, 7, 6, 4]],
        index=["g1", "g2", "g3"],
        columns=["s1", "s2", "s3", "s4"],
    )
    samples = pd.DataFrame({"group": ["A", "A", "B", "B"]}, index=counts.columns)
    genes = pd.DataFrame({"symbol": ["Gad1", "Slc17a7", "Pvalb"]}, index=counts.index)
    return ExpressionDataset(counts=counts, samples=samples, genes=genes)


@pytest.fixture(autouse=True)
def reset_logging():
    """Drop handlers bound to streams captured by the finished test"""
    yield
    logging.getLogger().handlers.clear()


@pytest.fixture(scope="session")
def make_dataset():
    """Factory for custom simulated datasets"""
    return simulate_dataset
