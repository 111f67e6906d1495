"""
Tests for pairwise enrichment matrices and gene-set construction.
"""

import numpy as np
import pandas as pd
import pytest

from hostde.stats.enrichment import (
    EnrichmentMatrixBuilder,
    reference_sets_from_table,
    result_gene_sets,
)
from hostde.stats.multiple_testing import fdr_correction


@pytest.fixture
def background():
    return [f"G{i:05d}" for i in range(10000)]


class TestEnrichmentMonotonicity:

    def test_odds_ratio_up_p_value_down_with_overlap(self, background):
        reference = set(background[:100])
        test_sets = {}
        for overlap in range(0, 101, 10):
            # overlap genes from the reference, the rest from outside it
            test_sets[f"overlap_{overlap}"] = set(background[:overlap]) | set(background[5000:5100 - overlap])

        matrices = EnrichmentMatrixBuilder().build({'ref': reference}, test_sets, background)
        odds = matrices.odds_ratio.loc['ref'].to_numpy()
        pvals = matrices.p_value.loc['ref'].to_numpy()

        assert matrices.overlap.loc['ref'].tolist() == list(range(0, 101, 10))
        assert odds[0] == 0.0
        assert odds[-1] == np.inf
        assert np.all(np.diff(odds) > 0)
        assert np.all(np.diff(pvals[1:]) <= 0)
        assert pvals[0] > pvals[1]


class TestEnrichmentMatrixBuilder:

    @pytest.fixture
    def sets(self, background):
        rng = np.random.RandomState(0)
        genes = np.array(background)
        refs = {
            'lung_UP': set(genes[:300]),
            'lung_DOWN': set(genes[300:500]),
            'blood_UP': set(rng.choice(genes, 250, replace=False)),
        }
        tests = {
            'UP': set(genes[:150]) | set(rng.choice(genes[1000:], 100, replace=False)),
            'DOWN': set(rng.choice(genes, 120, replace=False)),
        }
        return refs, tests

    def test_matrix_layout(self, sets, background):
        refs, tests = sets
        matrices = EnrichmentMatrixBuilder().build(refs, tests, background)
        assert matrices.odds_ratio.shape == (3, 2)
        assert matrices.odds_ratio.index.name == 'reference'
        assert matrices.odds_ratio.columns.name == 'test'
        assert list(matrices.p_value.index) == ['lung_UP', 'lung_DOWN', 'blood_UP']
        assert matrices.background_size.to_dict() == {'lung_UP': 10000, 'lung_DOWN': 10000, 'blood_UP': 10000}
        assert matrices.failures == []

    def test_fdr_is_bh_over_flattened_matrix(self, sets, background):
        refs, tests = sets
        matrices = EnrichmentMatrixBuilder().build(refs, tests, background)
        expected = fdr_correction(matrices.p_value.to_numpy().ravel()).reshape(3, 2)
        np.testing.assert_allclose(matrices.fdr.to_numpy(), expected)

    def test_mask_follows_threshold(self, sets, background):
        refs, tests = sets
        matrices = EnrichmentMatrixBuilder(fdr_threshold=0.05).build(refs, tests, background)
        np.testing.assert_array_equal(matrices.mask.to_numpy(), matrices.fdr.to_numpy() <= 0.05)
        assert matrices.mask.loc['lung_UP', 'UP']

    def test_sets_restricted_to_background(self, background):
        refs = {'ref': {'G00000', 'G00001', 'OUTSIDE_1', 'OUTSIDE_2'}}
        tests = {'test': {'G00000', 'OUTSIDE_1'}}
        matrices = EnrichmentMatrixBuilder().build(refs, tests, background[:100])
        # q, k, m are all counted within the background
        assert matrices.overlap.loc['ref', 'test'] == 1
        assert matrices.percent_overlap.loc['ref', 'test'] == pytest.approx(100.0)

    def test_workers_do_not_change_results(self, sets, background):
        refs, tests = sets
        seq = EnrichmentMatrixBuilder(n_workers=1).build(refs, tests, background)
        par = EnrichmentMatrixBuilder(n_workers=4).build(refs, tests, background)
        pd.testing.assert_frame_equal(seq.p_value, par.p_value)
        pd.testing.assert_frame_equal(seq.odds_ratio, par.odds_ratio)

    def test_long_format(self, sets, background):
        refs, tests = sets
        long = EnrichmentMatrixBuilder().build(refs, tests, background).to_long()
        assert len(long) == 6
        row = long[(long['reference'] == 'lung_UP') & (long['test'] == 'UP')].iloc[0]
        assert row['overlap'] == 150
        assert bool(row['significant'])

    def test_identical_sets_do_not_fail(self):
        genes = {f"G{i}" for i in range(50)}
        matrices = EnrichmentMatrixBuilder().build({'all': genes}, {'all': genes}, genes)
        assert matrices.failures == []
        assert matrices.odds_ratio.loc['all', 'all'] == np.inf
        assert matrices.p_value.loc['all', 'all'] == 1.0

    def test_empty_background_raises(self):
        with pytest.raises(ValueError, match="empty"):
            EnrichmentMatrixBuilder().build({'a': {'x'}}, {'b': {'x'}}, [])


class TestStratifiedBackgrounds:

    def test_each_reference_uses_its_own_background(self, background):
        first, second = background[:5000], background[5000:]
        strata = [
            ({'a_UP': set(first[:200])}, first),
            ({'b_UP': set(second[:200])}, second),
        ]
        tests = {'UP': set(first[:100]) | set(second[:50])}
        matrices = EnrichmentMatrixBuilder().build_stratified(strata, tests)

        assert matrices.background_size.to_dict() == {'a_UP': 5000, 'b_UP': 5000}
        assert matrices.overlap.loc['a_UP', 'UP'] == 100
        assert matrices.overlap.loc['b_UP', 'UP'] == 50
        # The test set is counted inside each row's background only
        assert matrices.percent_overlap.loc['a_UP', 'UP'] == pytest.approx(100.0)
        assert matrices.percent_overlap.loc['b_UP', 'UP'] == pytest.approx(100.0)

    def test_matches_single_background_rows(self, background):
        first, second = background[:4000], background[3000:]
        refs_a = {'a_UP': set(first[:300]), 'a_DOWN': set(first[300:500])}
        refs_b = {'b_UP': set(second[:250])}
        tests = {'UP': set(background[:400]), 'DOWN': set(background[3100:3300])}

        builder = EnrichmentMatrixBuilder()
        combined = builder.build_stratified([(refs_a, first), (refs_b, second)], tests)
        alone_a = builder.build(refs_a, tests, first)
        alone_b = builder.build(refs_b, tests, second)

        pd.testing.assert_frame_equal(combined.p_value.loc[['a_UP', 'a_DOWN']], alone_a.p_value)
        pd.testing.assert_frame_equal(combined.p_value.loc[['b_UP']], alone_b.p_value)
        pd.testing.assert_frame_equal(combined.odds_ratio.loc[['b_UP']], alone_b.odds_ratio)

        expected = fdr_correction(combined.p_value.to_numpy().ravel()).reshape(3, 2)
        np.testing.assert_allclose(combined.fdr.to_numpy(), expected)

    def test_long_format_carries_background_size(self, background):
        strata = [
            ({'a_UP': set(background[:50])}, background[:1000]),
            ({'b_UP': set(background[:50])}, background[:2000]),
        ]
        long = EnrichmentMatrixBuilder().build_stratified(strata, {'UP': set(background[:80])}).to_long()
        assert dict(zip(long['reference'], long['background_size'])) == {'a_UP': 1000, 'b_UP': 2000}

    def test_empty_stratum_background_names_references(self, background):
        strata = [({'a_UP': {'G00001'}}, background[:10]), ({'b_UP': {'G00001'}}, [])]
        with pytest.raises(ValueError, match="empty for reference set.*b_UP"):
            EnrichmentMatrixBuilder().build_stratified(strata, {'UP': {'G00001'}})

    def test_duplicate_reference_name_raises(self, background):
        strata = [({'a_UP': {'G00001'}}, background[:10]), ({'a_UP': {'G00002'}}, background[:10])]
        with pytest.raises(ValueError, match="more than once"):
            EnrichmentMatrixBuilder().build_stratified(strata, {'UP': {'G00001'}})


class TestSetConstruction:

    def test_reference_sets_from_table(self):
        table = pd.DataFrame({
            'gene_id': ['A', 'B', 'C', 'D', 'E', 'F'],
            'log2FoldChange': [2.0, -1.5, 0.5, 3.0, -2.0, np.nan],
            'padj': [0.01, 0.001, 0.01, 0.2, 0.04, 0.01],
        })
        sets, measured = reference_sets_from_table(table, 'lung')
        assert sets == {'lung_UP': {'A'}, 'lung_DOWN': {'B', 'E'}}
        assert measured == {'A', 'B', 'C', 'D', 'E'}

    def test_reference_table_missing_column(self):
        table = pd.DataFrame({'gene_id': ['A'], 'lfc': [1.0], 'padj': [0.01]})
        with pytest.raises(ValueError, match="log2FoldChange"):
            reference_sets_from_table(table, 'lung')

    def test_result_gene_sets(self):
        results = pd.DataFrame({
            'classification': ['UP', 'DOWN', 'NO', 'UP', 'NO'],
            'correlated': [True, False, True, False, False],
            'r_qpcr': [0.8, 0.1, -0.9, 0.2, 0.0],
        }, index=pd.Index(['A', 'B', 'C', 'D', 'E'], name='gene_id'))

        sets = result_gene_sets(results)
        assert sets == {'UP': {'A', 'D'}, 'DOWN': {'B'}, 'CORRELATED': {'A', 'C'}}

        split = result_gene_sets(results, correlation_score_col='r_qpcr')
        assert split['CORRELATED_POS'] == {'A'}
        assert split['CORRELATED_NEG'] == {'C'}

    def test_results_without_classification_raise(self):
        with pytest.raises(ValueError, match="classification"):
            result_gene_sets(pd.DataFrame({'x': [1]}))
