"""
Tests for empirical Bayes variance moderation and moderated contrasts.
"""

from dataclasses import FrozenInstanceError, replace

import numpy as np
import pytest
from scipy import stats
from scipy.special import polygamma

from hostde.stats.blocked_fit import BlockedFit
from hostde.stats.empirical_bayes import (
    EmpiricalBayesContrastTester,
    EmpiricalBayesPrior,
    fit_f_dist,
    squeeze_var,
    trigamma_inverse,
)


def _fit(coefficients, sigma2, df=6.0, cov=None):
    coefficients = np.asarray(coefficients, dtype=float)
    n, p = coefficients.shape
    if cov is None:
        cov = np.broadcast_to(np.eye(p) / 4.0, (n, p, p)).copy()
    return BlockedFit(
        gene_ids=[f"G{i}" for i in range(n)],
        row_index=np.arange(n),
        coefficients=coefficients,
        sigma2=np.asarray(sigma2, dtype=float),
        df_residual=np.full(n, df),
        cov_unscaled=cov,
        average_log_expression=np.full(n, 5.0),
        levels=['control', 'infected'],
        correlation=0.0,
    )


class TestTrigammaInverse:

    @pytest.mark.parametrize("x", [0.05, 0.5, 1.0, 10.0, 1e3])
    def test_inverts_trigamma(self, x):
        assert polygamma(1, trigamma_inverse(x)) == pytest.approx(x, rel=1e-6)

    def test_non_positive_is_infinite(self):
        assert trigamma_inverse(0.0) == np.inf
        assert trigamma_inverse(-1.0) == np.inf


class TestFitFDist:

    def test_recovers_prior(self):
        rng = np.random.RandomState(0)
        d0, s0_sq, d = 8.0, 0.5, 4.0
        true_var = d0 * s0_sq / rng.chisquare(d0, size=50000)
        sigma2 = true_var * rng.chisquare(d, size=50000) / d

        est_d0, est_s0 = fit_f_dist(sigma2, d)
        assert est_d0 == pytest.approx(d0, rel=0.2)
        assert est_s0 == pytest.approx(s0_sq, rel=0.05)

    def test_no_extra_variation_gives_infinite_df(self):
        rng = np.random.RandomState(1)
        sigma2 = 0.3 * rng.chisquare(6, size=20000) / 6
        d0, s0_sq = fit_f_dist(sigma2, 6)
        assert d0 == np.inf or d0 > 200
        assert s0_sq == pytest.approx(0.3, rel=0.05)

    def test_ignores_non_finite_and_zero(self):
        rng = np.random.RandomState(2)
        sigma2 = 0.5 * rng.chisquare(4, size=1000) / 4 * np.exp(rng.normal(0, 0.5, size=1000))
        with_bad = np.concatenate([sigma2, [np.nan, 0.0, np.inf]])
        assert fit_f_dist(with_bad, 4.0) == pytest.approx(fit_f_dist(sigma2, 4.0))

    def test_empty_input_warns(self):
        with pytest.warns(RuntimeWarning, match="No usable variances"):
            d0, _ = fit_f_dist(np.array([np.nan]), 4.0)
        assert d0 == np.inf


class TestSqueezeVar:

    def test_posterior_between_prior_and_observed(self):
        sigma2 = np.array([0.1, 1.0, 4.0])
        post, df_total = squeeze_var(sigma2, 4.0, d0=4.0, s0_sq=1.0)
        np.testing.assert_allclose(post, [0.55, 1.0, 2.5])
        np.testing.assert_allclose(df_total, 8.0)

    def test_infinite_prior_df_uses_prior_variance(self):
        post, df_total = squeeze_var(np.array([0.1, 4.0]), 4.0, d0=np.inf, s0_sq=0.7)
        np.testing.assert_allclose(post, [0.7, 0.7])
        assert np.all(np.isinf(df_total))


class TestEmpiricalBayesContrastTester:

    def test_moderated_t_matches_formula(self):
        rng = np.random.RandomState(3)
        n = 300
        coefficients = np.column_stack([rng.normal(5, 1, n), rng.normal(5, 1, n)])
        sigma2 = 0.2 * rng.chisquare(6, size=n) / 6 * np.exp(rng.normal(0, 0.4, size=n))
        fit = _fit(coefficients, sigma2)

        tester = EmpiricalBayesContrastTester()
        result = tester.contrast(fit, np.array([-1.0, 1.0]))

        d0, s0_sq = fit_f_dist(sigma2, 6.0)
        post = (d0 * s0_sq + 6.0 * sigma2) / (d0 + 6.0)
        expected_se = np.sqrt(post) * np.sqrt(0.5)
        expected_t = (coefficients[:, 1] - coefficients[:, 0]) / expected_se

        np.testing.assert_allclose(result.effect, coefficients[:, 1] - coefficients[:, 0])
        np.testing.assert_allclose(result.std_error, expected_se)
        np.testing.assert_allclose(result.t_statistic, expected_t)
        np.testing.assert_allclose(result.p_value, 2 * stats.t.sf(np.abs(expected_t), d0 + 6.0))
        assert result.d0 == pytest.approx(d0)

    def test_shared_prior_across_contrasts(self):
        rng = np.random.RandomState(4)
        fit = _fit(rng.normal(5, 1, size=(100, 2)), 0.3 * rng.chisquare(6, size=100) / 6)
        tester = EmpiricalBayesContrastTester()
        prior = tester.estimate_prior(fit)
        first = tester.contrast(fit, np.array([-1.0, 1.0]), prior=prior)
        second = tester.contrast(fit, np.array([1.0, -1.0]), prior=prior)
        assert first.d0 == second.d0 == prior.d0
        np.testing.assert_allclose(first.t_statistic, -second.t_statistic)
        np.testing.assert_allclose(first.p_value, second.p_value)

    def test_prior_follows_each_fit(self):
        rng = np.random.RandomState(6)
        n = 400
        coefficients = rng.normal(5, 1, size=(n, 2))
        sigma2 = 0.2 * rng.chisquare(6, size=n) / 6 * np.exp(rng.normal(0, 0.4, size=n))
        fit_a = _fit(coefficients, sigma2)
        fit_b = replace(fit_a, sigma2=sigma2 * 25.0)

        tester = EmpiricalBayesContrastTester()
        result_a = tester.contrast(fit_a, np.array([-1.0, 1.0]))
        result_b = tester.contrast(fit_b, np.array([-1.0, 1.0]))

        assert result_b.s0_sq == pytest.approx(25.0 * result_a.s0_sq, rel=1e-6)
        assert result_b.d0 == pytest.approx(result_a.d0, rel=1e-6)
        assert result_b.s0_sq == pytest.approx(tester.estimate_prior(fit_b).s0_sq)
        # Scaling every variance scales the standard errors, so t shrinks by 5
        np.testing.assert_allclose(result_b.t_statistic, result_a.t_statistic / 5.0, rtol=1e-6)

    def test_explicit_prior_is_used(self):
        rng = np.random.RandomState(7)
        fit = _fit(rng.normal(5, 1, size=(50, 2)), rng.uniform(0.1, 1, size=50))
        prior = EmpiricalBayesPrior(d0=4.0, s0_sq=2.0)
        result = EmpiricalBayesContrastTester().contrast(fit, np.array([-1.0, 1.0]), prior=prior)
        np.testing.assert_allclose(result.s2_post, (4.0 * 2.0 + 6.0 * fit.sigma2) / 10.0)
        np.testing.assert_allclose(result.df_total, 10.0)
        assert (result.d0, result.s0_sq) == (4.0, 2.0)

    def test_prior_is_frozen(self):
        prior = EmpiricalBayesPrior(d0=4.0, s0_sq=2.0)
        with pytest.raises(FrozenInstanceError):
            prior.d0 = 1.0

    def test_wrong_contrast_length_raises(self):
        fit = _fit(np.ones((3, 2)), np.ones(3))
        with pytest.raises(ValueError, match="does not match"):
            EmpiricalBayesContrastTester().contrast(fit, np.array([1.0, -1.0, 0.0]))

    def test_to_dataframe(self):
        rng = np.random.RandomState(5)
        fit = _fit(rng.normal(5, 1, size=(10, 2)), rng.uniform(0.1, 1, size=10))
        df = EmpiricalBayesContrastTester().contrast(fit, np.array([-1.0, 1.0])).to_dataframe()
        assert df.index.name == 'gene_id'
        assert list(df.columns) == ['effect', 'std_error', 't_statistic', 'p_value', 's2_post', 'df_total']
