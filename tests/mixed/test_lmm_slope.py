"""Tests for LMM with random intercept + slope."""

import numpy as np
import pytest

from pymixed.mixed import lmm


@pytest.fixture
def slope_fit(repeated_measures):
    d = repeated_measures
    return lmm(
        d['y'], d['X'],
        groups={'subject': d['subject']},
        random_effects={'subject': ['1', 'days']},
        random_data={'days': d['days']},
    )


class TestLMMRandomSlope:
    """Tests for random intercept + slope models."""

    def test_basic_fit(self, slope_fit):
        """LMM with random slope fits and converges."""
        assert slope_fit.converged
        assert len(slope_fit.coefficients) == 2

    def test_fixed_effects_recovery(self, slope_fit, repeated_measures):
        """Fixed effects approximately recover true parameters."""
        d = repeated_measures
        np.testing.assert_allclose(slope_fit.coefficients[0], d['beta_intercept'], atol=20.0)
        np.testing.assert_allclose(slope_fit.coefficients[1], d['beta_days'], atol=5.0)

    def test_variance_recovery(self, slope_fit, repeated_measures):
        """Standard deviations are recovered to within sampling error."""
        d = repeated_measures
        vc = slope_fit.var_components
        assert vc[0].std_dev == pytest.approx(d['sigma_intercept'], rel=0.6)
        assert vc[1].std_dev == pytest.approx(d['sigma_slope'], rel=0.6)
        assert slope_fit.sigma == pytest.approx(d['sigma_resid'], rel=0.2)

    def test_two_variance_components(self, slope_fit):
        """Model should have 2 variance components (intercept + slope)."""
        vc = slope_fit.var_components
        assert len(vc) == 2
        assert vc[0].name == '(Intercept)'
        assert vc[1].name == 'days'
        assert vc[0].variance > 0
        assert vc[1].variance > 0

    def test_correlation_estimated(self, slope_fit):
        """Slope component should have a correlation with intercept."""
        vc = slope_fit.var_components
        # First term has no correlation (it's the baseline)
        assert vc[0].corr is None
        # Second term should have correlation with first
        assert vc[1].corr is not None
        assert -1.0 <= vc[1].corr <= 1.0

    def test_blups_shape(self, slope_fit, repeated_measures):
        """BLUPs should be (n_subjects, 2) for intercept + slope."""
        ranef = slope_fit.ranef['subject']
        assert ranef.shape == (repeated_measures['n_subjects'], 2)

    def test_theta_layout(self, slope_fit):
        """θ packs the 2×2 lower-triangular factor row by row."""
        assert len(slope_fit.theta) == 3
        assert slope_fit.theta_names == (
            'subject:(Intercept)', 'subject:days,(Intercept)', 'subject:days',
        )
        # Diagonal entries are bounded below by zero
        assert slope_fit.theta[0] >= 0
        assert slope_fit.theta[2] >= 0

    def test_covariance_from_theta(self, slope_fit):
        """Variance components are σ² T T' for T built from θ."""
        t = slope_fit.theta
        T = np.array([[t[0], 0.0], [t[1], t[2]]])
        cov = slope_fit.sigma ** 2 * (T @ T.T)
        vc = slope_fit.var_components
        np.testing.assert_allclose([vc[0].variance, vc[1].variance], np.diag(cov), rtol=1e-10)
        np.testing.assert_allclose(
            vc[1].corr, cov[1, 0] / np.sqrt(cov[0, 0] * cov[1, 1]), rtol=1e-10,
        )

    def test_block_diagonal_storage(self, slope_fit):
        """A single vector-valued term keeps a block-diagonal factor."""
        layout = slope_fit.model.system.layout()
        assert layout[(0, 0)] == 'blockdiag'
        assert layout[(1, 0)] == 'dense'
        assert layout[(1, 1)] == 'dense'


def _fit_growth(d):
    return lmm(
        d['y'], d['X'], {'subject': d['subject']},
        random_effects={'subject': ['1', 'time']}, random_data={'time': d['time']},
    )


class TestGrowthCurveRecovery:
    """Intercept 35, slope 2, σ = 1.5, sds 2 and 0.3, correlation -0.5, four occasions."""

    def test_large_sample_recovers_all_parameters(self, growth_curves, growth_truth):
        """3000 subjects: every estimate within about three standard errors."""
        truth = growth_truth
        fit = _fit_growth(growth_curves(np.random.default_rng(20), n_subjects=3000))
        intercept, slope = fit.var_components

        assert fit.converged
        assert fit.coefficients[0] == pytest.approx(truth['intercept'], abs=0.15)
        assert fit.coefficients[1] == pytest.approx(truth['slope'], abs=0.05)
        assert fit.sigma == pytest.approx(truth['sigma_resid'], abs=0.05)
        assert intercept.std_dev == pytest.approx(truth['sd_intercept'], abs=0.15)
        assert slope.std_dev == pytest.approx(truth['sd_slope'], abs=0.1)
        assert slope.corr == pytest.approx(truth['corr'], abs=0.3)

    def test_twenty_subject_design_is_unbiased_for_fixed_effects(self, growth_curves, growth_truth):
        """Averaged over 40 replicates of the 20 × 4 design, β̂ and σ̂ center on the truth."""
        truth = growth_truth
        rng = np.random.default_rng(21)
        estimates = []
        for _ in range(40):
            fit = _fit_growth(growth_curves(rng, n_subjects=20))
            estimates.append([fit.coefficients[0], fit.coefficients[1], fit.sigma])
        mean_intercept, mean_slope, mean_sigma = np.mean(estimates, axis=0)

        # Per-replicate standard errors are about 0.48, 0.16 and 0.14
        assert mean_intercept == pytest.approx(truth['intercept'], abs=0.3)
        assert mean_slope == pytest.approx(truth['slope'], abs=0.1)
        assert mean_sigma == pytest.approx(truth['sigma_resid'], abs=0.15)
