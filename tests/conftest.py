"""
Pytest configuration and shared fixtures.

Provides synthetic RNA-seq count generators with a subject-blocked design so
the model, pipeline and CLI suites can run without external data.
"""

import numpy as np
import pandas as pd
import pytest

from hostde.core.expression import ExpressionSet


def make_sample_metadata(
    n_subjects: int = 2,
    conditions: tuple = ("control", "infected"),
    n_replicates: int = 3,
) -> pd.DataFrame:
    """
    Crossed design: every subject contributes replicates to every condition.

    Sample ids are S01, S02, ... in subject-major order.
    """
    rows = []
    for s in range(n_subjects):
        for condition in conditions:
            for r in range(n_replicates):
                rows.append({
                    'subject': f"P{s + 1}",
                    'condition': condition,
                    'replicate': r + 1,
                })
    metadata = pd.DataFrame(rows)
    metadata.index = pd.Index([f"S{i + 1:02d}" for i in range(len(metadata))], name='sample_id')
    return metadata


def simulate_counts(
    metadata: pd.DataFrame,
    n_genes: int = 500,
    fold_changes: dict | None = None,
    dispersion: float = 0.02,
    subject_sd: float = 0.15,
    seed: int = 42,
) -> tuple[pd.DataFrame, pd.DataFrame]:
    """
    Negative binomial counts with subject effects and library size variation.

    Args:
        metadata: Sample metadata with 'subject' and 'condition' columns.
        n_genes: Number of null genes (G0000, G0001, ...).
        fold_changes: Extra genes {gene_id: fold change in 'infected'}.
        dispersion: NB dispersion (variance = mu + dispersion × mu²).
        subject_sd: SD of per-gene subject effects on the log2 scale.
        seed: Random seed.

    Returns:
        (counts, lengths) as genes × samples DataFrames.
    """
    rng = np.random.RandomState(seed)
    fold_changes = fold_changes or {}
    gene_ids = [f"G{i:04d}" for i in range(n_genes)] + list(fold_changes)
    n_samples = len(metadata)

    base = np.exp(rng.uniform(np.log(100), np.log(2000), size=len(gene_ids)))
    base[n_genes:] = 500.0
    lib_scale = rng.uniform(0.8, 1.25, size=n_samples)

    subjects = metadata['subject'].astype(str).to_numpy()
    infected = (metadata['condition'] == 'infected').to_numpy()
    subject_effects = {
        s: rng.normal(0, subject_sd, size=len(gene_ids)) for s in np.unique(subjects)
    }

    mu = np.empty((len(gene_ids), n_samples))
    for j in range(n_samples):
        mu[:, j] = base * lib_scale[j] * np.exp2(subject_effects[subjects[j]])
    for g, fc in enumerate(fold_changes.values(), start=n_genes):
        mu[g, infected] *= fc

    size = 1.0 / dispersion
    counts = rng.negative_binomial(size, size / (size + mu)).astype(float)
    lengths = 1500.0 * rng.uniform(0.95, 1.05, size=mu.shape)

    columns = pd.Index(metadata.index, name=None)
    index = pd.Index(gene_ids, name='gene_id')
    return (
        pd.DataFrame(counts, index=index, columns=columns),
        pd.DataFrame(lengths, index=index, columns=columns),
    )


def simulate_blocked_expression(
    n_genes: int,
    n_subjects: int,
    n_replicates: int,
    rho: float,
    seed: int = 0,
) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Gaussian log-expression with compound-symmetric within-subject errors.

    Subjects are nested in two conditions (first half control). Returns
    (log_expr, X, subject_ids).
    """
    rng = np.random.RandomState(seed)
    subjects = np.repeat(np.arange(n_subjects), n_replicates)
    condition = (subjects >= n_subjects // 2).astype(int)
    X = np.column_stack([1 - condition, condition]).astype(float)

    sigma = rng.uniform(0.2, 1.0, size=n_genes)
    means = rng.uniform(4, 12, size=(n_genes, 1))
    effects = rng.normal(0, 0.5, size=(n_genes, 1)) * condition[None, :]
    subject_effect = rng.normal(0, 1, size=(n_genes, n_subjects))[:, subjects]
    noise = rng.normal(0, 1, size=(n_genes, len(subjects)))

    log_expr = (
        means + effects
        + sigma[:, None] * (np.sqrt(rho) * subject_effect + np.sqrt(1 - rho) * noise)
    )
    return log_expr, X, np.array([f"P{s}" for s in subjects])


@pytest.fixture
def sample_metadata():
    """12 samples: 2 subjects × 2 conditions × 3 replicates."""
    return make_sample_metadata()


@pytest.fixture
def count_frames(sample_metadata):
    """Null genes plus one 4-fold infected-up gene 'GUP'."""
    return simulate_counts(sample_metadata, n_genes=500, fold_changes={'GUP': 4.0})


@pytest.fixture
def expression_set(count_frames, sample_metadata):
    counts, lengths = count_frames
    return ExpressionSet.from_frames(counts, lengths, sample_metadata)


@pytest.fixture
def write_table(tmp_path):
    """Write a DataFrame as TSV under tmp_path and return the path."""
    def _write(df: pd.DataFrame, name: str, index: bool = True, index_label: str | None = None):
        path = tmp_path / name
        df.to_csv(path, sep='\t', index=index, index_label=index_label)
        return path
    return _write
