"""Tests for the likelihood-ratio tests of K-1 versus K classes."""

import numpy as np
import pytest

from latent_mixture import (
    BootstrapParams,
    CancellationToken,
    EstimationCancelled,
    EstimationParams,
    ModelSpecificationError,
    ProfileMixture,
    bootstrap_lrt,
    fit_mixture,
    likelihood_ratio_tests,
    vuong_lo_mendell_rubin,
)
from latent_mixture.lrt import lo_mendell_rubin_adjusted, vuong_reference


@pytest.fixture(scope="module")
def two_class_data(two_class_profile):
    data, _ = two_class_profile
    return data[:1000]


@pytest.fixture(scope="module")
def params():
    return EstimationParams(n_starts=4, n_final=2, seed=0, max_workers=1)


@pytest.fixture(scope="module")
def fits(two_class_data, params):
    one = fit_mixture(ProfileMixture(1, 1), two_class_data, params=params)
    two = fit_mixture(ProfileMixture(2, 1), two_class_data, params=params)
    return one, two


class TestLoMendellRubin:

    def test_adjustment_formula(self):
        reference = np.array([1.0, 5.0, 8.0, 9.0, 12.0])
        statistic, p_value = lo_mendell_rubin_adjusted(10.0, 3, 100, reference=reference)
        expected = 10.0 / (1.0 + 1.0 / (3 * np.log(100)))
        assert statistic == pytest.approx(expected)
        # expected is about 9.32: only the draw at 12 reaches it
        assert p_value == pytest.approx(0.2)

    def test_without_reference_only_statistic(self):
        statistic, p_value = lo_mendell_rubin_adjusted(10.0, 3, 100)
        assert statistic < 10.0
        assert p_value is None

    def test_adjusted_statistic_is_smaller(self):
        statistic, _ = lo_mendell_rubin_adjusted(25.0, 2, 500)
        assert statistic < 25.0

    def test_refers_to_vuong_reference(self, fits, two_class_data):
        one, two = fits
        reference = vuong_reference(one, two, two_class_data, n_draws=2000, seed=5)
        statistic = 2 * (two.log_likelihood - one.log_likelihood)
        adjusted, p_value = lo_mendell_rubin_adjusted(statistic, two.n_parameters - one.n_parameters,
                                                      two.n_obs, reference=reference)
        assert p_value == pytest.approx(np.mean(reference >= adjusted))

        result = likelihood_ratio_tests(one, two, two_class_data, vlmr_draws=2000)
        shared = vuong_reference(one, two, two_class_data, n_draws=2000)
        assert result.lmr_p == pytest.approx(np.mean(shared >= result.lmr_statistic))
        assert result.vlmr_p == pytest.approx(np.mean(shared >= result.statistic))


class TestVLMR:

    def test_rejects_one_class(self, fits, two_class_data):
        one, two = fits
        statistic, p_value = vuong_lo_mendell_rubin(one, two, two_class_data, n_draws=2000)
        assert statistic == pytest.approx(2 * (two.log_likelihood - one.log_likelihood))
        assert statistic > 0
        assert p_value < 0.05

    def test_requires_adjacent_class_counts(self, fits, two_class_data, params):
        one, _ = fits
        three = fit_mixture(ProfileMixture(3, 1), two_class_data, params=params)
        with pytest.raises(ModelSpecificationError):
            vuong_lo_mendell_rubin(one, three, two_class_data)


class TestBootstrapLRT:
    """Bootstrap LRT with 10 draws on data from a two-class model."""

    @pytest.fixture(scope="class")
    def bootstrap(self):
        return BootstrapParams(n_bootstrap=10, null_starts=2, null_final=1,
                               alt_starts=4, alt_final=2, seed=3, max_workers=2)

    def test_rejects_one_class(self, fits, two_class_data, bootstrap, params):
        one, two = fits
        observed, p_value, draws = bootstrap_lrt(one, two, two_class_data, params=bootstrap,
                                                 estimation=params)
        assert len(draws) == 10
        assert observed > draws.max()
        assert p_value < 0.05

    def test_reproducible(self, fits, two_class_data, params):
        one, two = fits
        bootstrap = BootstrapParams(n_bootstrap=3, null_starts=1, null_final=1,
                                    alt_starts=2, alt_final=1, seed=5, max_workers=3)
        _, _, first = bootstrap_lrt(one, two, two_class_data, params=bootstrap, estimation=params)
        _, _, second = bootstrap_lrt(one, two, two_class_data, params=bootstrap, estimation=params)
        np.testing.assert_allclose(first, second)

    def test_cancelled(self, fits, two_class_data, bootstrap, params):
        one, two = fits
        token = CancellationToken()
        token.cancel()
        with pytest.raises(EstimationCancelled):
            bootstrap_lrt(one, two, two_class_data, params=bootstrap, estimation=params, cancel=token)


class TestCombined:

    def test_all_tests(self, fits, two_class_data, params):
        one, two = fits
        bootstrap = BootstrapParams(n_bootstrap=5, null_starts=2, null_final=1,
                                    alt_starts=3, alt_final=1, seed=0, max_workers=2)
        result = likelihood_ratio_tests(one, two, two_class_data, bootstrap=bootstrap,
                                        estimation=params, vlmr_draws=1000)
        assert result.null_classes == 1 and result.alt_classes == 2
        assert result.df == 2
        assert result.lmr_statistic < result.statistic
        assert result.lmr_p < 0.05
        assert result.vlmr_p < 0.05
        assert result.bootstrap_p < 0.2
        assert len(result.bootstrap_statistics) == 5
        assert result.summary()["n_bootstrap"] == 5

    def test_without_optional_tests(self, fits, two_class_data):
        one, two = fits
        result = likelihood_ratio_tests(one, two, two_class_data, vlmr=False)
        assert result.vlmr_p is None
        assert result.bootstrap_p is None
        assert result.lmr_statistic < result.statistic
        assert result.lmr_p is None
