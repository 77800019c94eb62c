"""Tests for expression dataset containers, design and loading."""

import numpy as np
import pandas as pd
import pytest

from neurodiff.dataset import Design, ExpressionDataset, load_expression_dataset
from neurodiff.exceptions import InputValidationError


def _frames():
    counts = pd.DataFrame(
        [[1, 2, 3, 4], [5, 6, 7, 8]], index=["g1", "g2"], columns=["s1", "s2", "s3", "s4"]
    )
    samples = pd.DataFrame(
        {"group": ["A", "A", "B", "B"], "batch": ["x", "y", "x", "y"], "age": [1.0, 2.0, 3.0, 6.0]},
        index=["s1", "s2", "s3", "s4"],
    )
    genes = pd.DataFrame({"symbol": ["Gad1", "Gad2"]}, index=["g1", "g2"])
    return counts, samples, genes


class TestExpressionDataset:

    def test_from_frames_aligns_metadata_order(self):
        counts, samples, genes = _frames()
        dataset = ExpressionDataset.from_frames(counts, samples.iloc[::-1], genes.iloc[::-1])
        assert dataset.sample_ids == ["s1", "s2", "s3", "s4"]
        assert list(dataset.genes.index) == ["g1", "g2"]
        assert list(dataset.symbols) == ["Gad1", "Gad2"]

    def test_misaligned_samples_rejected(self):
        counts, samples, genes = _frames()
        with pytest.raises(InputValidationError):
            ExpressionDataset(counts=counts, samples=samples.iloc[::-1], genes=genes)

    def test_missing_metadata_rejected(self):
        counts, samples, genes = _frames()
        with pytest.raises(InputValidationError, match="without metadata"):
            ExpressionDataset.from_frames(counts, samples.drop(index="s2"), genes)

    @pytest.mark.parametrize("bad_value", [-1, 2.5, np.nan])
    def test_invalid_counts_rejected(self, bad_value):
        counts, samples, genes = _frames()
        counts = counts.astype(float)
        counts.iloc[0, 0] = bad_value
        with pytest.raises(InputValidationError):
            ExpressionDataset(counts=counts, samples=samples, genes=genes)

    def test_symbol_column_required(self):
        counts, samples, genes = _frames()
        with pytest.raises(InputValidationError, match="symbol"):
            ExpressionDataset(counts=counts, samples=samples, genes=genes.rename(columns={"symbol": "name"}))

    def test_duplicated_genes_rejected(self):
        counts, samples, genes = _frames()
        counts.index = ["g1", "g1"]
        genes.index = ["g1", "g1"]
        with pytest.raises(InputValidationError, match="Duplicated"):
            ExpressionDataset(counts=counts, samples=samples, genes=genes)

    def test_drop_samples_returns_new_dataset(self):
        dataset = ExpressionDataset(*_frames())
        reduced = dataset.drop_samples(["s2"])
        assert reduced.sample_ids == ["s1", "s3", "s4"]
        assert dataset.n_samples == 4
        assert list(reduced.samples.index) == ["s1", "s3", "s4"]

    def test_drop_unknown_sample_rejected(self):
        dataset = ExpressionDataset(*_frames())
        with pytest.raises(InputValidationError, match="unknown samples"):
            dataset.drop_samples(["s9"])

    def test_subset_genes_keeps_original_order(self):
        dataset = ExpressionDataset(*_frames())
        subset = dataset.subset_genes(["g2", "g1"])
        assert subset.gene_ids == ["g1", "g2"]
        assert dataset.subset_genes(["g2"]).gene_ids == ["g2"]


class TestDesign:

    def test_reference_level_required(self):
        with pytest.raises(InputValidationError):
            Design(group_column="group", reference_level="")

    def test_group_levels_reference_first(self):
        _, samples, _ = _frames()
        design = Design("group", reference_level="B")
        assert design.group_levels(samples) == ["B", "A"]
        assert design.tested_coefficient(samples) == "group[T.A]"

    def test_reference_absent_rejected(self):
        _, samples, _ = _frames()
        with pytest.raises(InputValidationError, match="Reference level"):
            Design("group", reference_level="C").validate(samples)

    def test_more_than_two_levels_needs_test_level(self):
        _, samples, _ = _frames()
        samples = samples.assign(group=["A", "B", "C", "C"])
        with pytest.raises(InputValidationError, match="test_level"):
            Design("group", reference_level="A").validate(samples)
        design = Design("group", reference_level="A", test_level="C")
        assert design.tested_coefficient(samples) == "group[T.C]"

    def test_missing_covariate_column_rejected(self):
        _, samples, _ = _frames()
        with pytest.raises(InputValidationError, match="absent"):
            Design("group", reference_level="A", covariates=("rin",)).validate(samples)

    def test_model_matrix_columns(self):
        _, samples, _ = _frames()
        design = Design("group", reference_level="A", covariates=("batch", "age"))
        matrix = design.model_matrix(samples)
        assert list(matrix.columns) == ["Intercept", "batch[T.y]", "age", "group[T.B]"]
        assert matrix["age"].mean() == pytest.approx(0.0)
        assert list(matrix["group[T.B]"]) == [0.0, 0.0, 1.0, 1.0]

    def test_confounded_covariate_rejected(self):
        _, samples, _ = _frames()
        samples = samples.assign(condition=samples["group"])
        design = Design("group", reference_level="A", covariates=("condition",))
        with pytest.raises(InputValidationError, match="full rank"):
            design.model_matrix(samples)


class TestLoader:

    def _write(self, directory, counts, samples, genes):
        counts.to_csv(directory / "counts.csv")
        samples.to_csv(directory / "samples.csv")
        genes.to_csv(directory / "genes.csv")

    def test_load_directory(self, tmp_path):
        counts, samples, genes = _frames()
        self._write(tmp_path, counts, samples, genes)
        dataset = load_expression_dataset(tmp_path)
        assert dataset.n_genes == 2
        assert dataset.n_samples == 4
        assert dataset.tpm is None
        assert int(dataset.counts.loc["g2", "s4"]) == 8

    def test_load_with_tpm(self, tmp_path):
        counts, samples, genes = _frames()
        self._write(tmp_path, counts, samples, genes)
        (counts * 1.5).to_csv(tmp_path / "tpm.csv")
        dataset = load_expression_dataset(tmp_path)
        assert dataset.tpm is not None
        assert dataset.tpm.shape == dataset.counts.shape

    def test_missing_file_rejected(self, tmp_path):
        counts, samples, _ = _frames()
        counts.to_csv(tmp_path / "counts.csv")
        samples.to_csv(tmp_path / "samples.csv")
        with pytest.raises(InputValidationError, match="genes.csv"):
            load_expression_dataset(tmp_path)

    def test_missing_directory_rejected(self, tmp_path):
        with pytest.raises(InputValidationError):
            load_expression_dataset(tmp_path / "nope")
