"""Tests for LMM with random intercepts."""

import numpy as np
import pytest

from pymixed.core.compute.tolerances import OPTIMUM_DEVIANCE, OPTIMUM_THETA
from pymixed.mixed import lmm, MixedDesign, LinearMixedModel


class TestLMMRandomIntercept:
    """Tests for the basic random intercept model."""

    def test_basic_fit(self, grouped_intercepts):
        """LMM fits and returns LMMSolution."""
        d = grouped_intercepts
        result = lmm(d['y'], d['X'], groups={'group': d['group']})

        assert result.converged
        assert result.status.value == 'converged'
        assert len(result.coefficients) == 2

    def test_fixed_effects_close_to_truth(self, grouped_intercepts):
        """Fixed effects recover true values within reasonable tolerance."""
        d = grouped_intercepts
        result = lmm(d['y'], d['X'], groups={'group': d['group']})

        # Intercept ≈ 5.0, slope ≈ 2.0
        np.testing.assert_allclose(
            result.coefficients[0], d['beta0'], atol=2.0
        )
        np.testing.assert_allclose(
            result.coefficients[1], d['beta1'], atol=0.5
        )

    def test_variance_components(self, grouped_intercepts):
        """Variance components are positive and reasonable."""
        d = grouped_intercepts
        result = lmm(d['y'], d['X'], groups={'group': d['group']})

        vc = result.var_components
        assert len(vc) == 1  # one random intercept
        assert vc[0].group == 'group'
        assert vc[0].name == '(Intercept)'
        assert vc[0].variance > 0
        assert vc[0].std_dev > 0
        assert vc[0].corr is None  # no second term to correlate with

    def test_theta_is_relative_std_dev(self, grouped_intercepts):
        """For a scalar term θ = σ_b / σ."""
        d = grouped_intercepts
        result = lmm(d['y'], d['X'], groups={'group': d['group']})

        np.testing.assert_allclose(
            result.theta[0] * result.sigma, result.var_components[0].std_dev,
            rtol=1e-10,
        )
        assert result.theta_names == ('group:(Intercept)',)

    def test_blups_shape(self, grouped_intercepts):
        """BLUPs have correct shape: (n_groups, 1)."""
        d = grouped_intercepts
        result = lmm(d['y'], d['X'], groups={'group': d['group']})

        ranef = result.ranef
        assert 'group' in ranef
        assert ranef['group'].shape == (d['n_groups'], 1)

    def test_blups_sum_near_zero(self, grouped_intercepts):
        """BLUPs should approximately sum to zero (shrinkage property)."""
        d = grouped_intercepts
        result = lmm(d['y'], d['X'], groups={'group': d['group']})

        blups = result.ranef['group'][:, 0]
        assert abs(np.mean(blups)) < 1.0  # not exactly zero due to shrinkage

    def test_icc(self, grouped_intercepts):
        """ICC is between 0 and 1."""
        d = grouped_intercepts
        result = lmm(d['y'], d['X'], groups={'group': d['group']})

        icc = result.icc
        assert 'group' in icc
        assert 0 < icc['group'] < 1

    def test_fitted_plus_residuals_equals_y(self, grouped_intercepts):
        """Fitted values + residuals = y."""
        d = grouped_intercepts
        result = lmm(d['y'], d['X'], groups={'group': d['group']})

        np.testing.assert_allclose(
            result.fitted_values + result.residuals, d['y'], atol=1e-8
        )

    def test_model_fit_stats(self, grouped_intercepts):
        """Log-likelihood, AIC, BIC are consistent with the deviance."""
        d = grouped_intercepts
        result = lmm(d['y'], d['X'], groups={'group': d['group']})

        assert np.isfinite(result.log_likelihood)
        np.testing.assert_allclose(result.log_likelihood, -0.5 * result.deviance)
        # β (2), θ (1), σ (1)
        np.testing.assert_allclose(result.aic, result.deviance + 2 * 4)

    def test_reml_vs_ml(self, grouped_intercepts):
        """REML and ML give different but close results."""
        d = grouped_intercepts
        result_reml = lmm(d['y'], d['X'], groups={'group': d['group']}, reml=True)
        result_ml = lmm(d['y'], d['X'], groups={'group': d['group']}, reml=False)

        np.testing.assert_allclose(
            result_reml.coefficients, result_ml.coefficients, rtol=0.1
        )
        assert result_reml.reml and not result_ml.reml
        assert result_reml.info['method'] == 'REML'
        assert result_reml.params.residual_variance != result_ml.params.residual_variance

    def test_t_values(self, grouped_intercepts):
        d = grouped_intercepts
        result = lmm(d['y'], d['X'], groups={'group': d['group']})
        np.testing.assert_allclose(result.t_values, result.coefficients / result.se)

    def test_fixef_dict(self, grouped_intercepts):
        """fixef property returns correct dict."""
        d = grouped_intercepts
        result = lmm(d['y'], d['X'], groups={'group': d['group']})

        fixef = result.fixef
        assert '(Intercept)' in fixef
        assert 'X1' in fixef

    def test_timing_sections(self, grouped_intercepts):
        d = grouped_intercepts
        result = lmm(d['y'], d['X'], groups={'group': d['group']})
        for section in ('setup', 'optimization', 'final_solve', 'total_seconds'):
            assert section in result.timing


class TestClosedForms:
    """Balanced one-way layout and the limits of θ."""

    def test_reml_matches_anova_estimators(self, one_way):
        """Balanced one-way REML equals the ANOVA moment estimators."""
        d = one_way
        y, group, J, m = d['y'], d['group'], d['n_groups'], d['m']
        means = np.array([y[group == g].mean() for g in range(J)])
        ssw = np.sum((y - means[group]) ** 2)
        ssb = m * np.sum((means - y.mean()) ** 2)
        msw = ssw / (J * (m - 1))
        msb = ssb / (J - 1)
        assert msb > msw  # interior optimum for this seed

        result = lmm(y, d['X'], groups={'group': group}, reml=True)

        np.testing.assert_allclose(result.params.residual_variance, msw, rtol=OPTIMUM_THETA.rtol)
        np.testing.assert_allclose(
            result.var_components[0].variance, (msb - msw) / m, rtol=OPTIMUM_THETA.rtol
        )
        np.testing.assert_allclose(result.coefficients[0], y.mean(), rtol=1e-8)

    def test_theta_zero_is_ols(self, grouped_intercepts):
        """At θ = 0 the deviance is the OLS log-likelihood deviance."""
        d = grouped_intercepts
        design = MixedDesign.from_groups(d['y'], d['X'], {'group': d['group']})
        model = LinearMixedModel(design)
        dev = model.set_theta([0.0])

        beta_ols, *_ = np.linalg.lstsq(d['X'], d['y'], rcond=None)
        rss = np.sum((d['y'] - d['X'] @ beta_ols) ** 2)
        n = d['y'].shape[0]
        np.testing.assert_allclose(dev, n * (1 + np.log(2 * np.pi * rss / n)), rtol=1e-10)
        np.testing.assert_allclose(model.fixef(), beta_ols, rtol=1e-8)

    def test_large_theta_gives_group_means(self, one_way):
        """As θ → ∞ the fitted values approach the unpenalized group means."""
        d = one_way
        design = MixedDesign.from_groups(d['y'], d['X'], {'group': d['group']})
        model = LinearMixedModel(design)
        model.set_theta([1e3])

        means = np.array([d['y'][d['group'] == g].mean() for g in range(d['n_groups'])])
        np.testing.assert_allclose(model.fitted(), means[d['group']], rtol=1e-6)


class TestPriorWeights:
    """Weights scale the residual variance of each observation to σ²/wᵢ."""

    @pytest.mark.parametrize("reml", [False, True])
    def test_constant_weights_leave_fit_unchanged(self, one_way, reml):
        """With wᵢ = c the model is reparameterized, not changed: σ² → cσ², θ → θ/√c."""
        d = one_way
        c = 2.0
        plain = lmm(d['y'], d['X'], {'group': d['group']}, reml=reml)
        weighted = lmm(d['y'], d['X'], {'group': d['group']}, reml=reml,
                       weights=np.full(d['y'].shape[0], c))

        np.testing.assert_allclose(weighted.deviance, plain.deviance,
                                   rtol=OPTIMUM_DEVIANCE.rtol)
        np.testing.assert_allclose(weighted.log_likelihood, plain.log_likelihood,
                                   rtol=OPTIMUM_DEVIANCE.rtol)
        np.testing.assert_allclose(weighted.aic, plain.aic, rtol=OPTIMUM_DEVIANCE.rtol)
        np.testing.assert_allclose(weighted.theta * np.sqrt(c), plain.theta,
                                   rtol=OPTIMUM_THETA.rtol)
        np.testing.assert_allclose(weighted.sigma ** 2, c * plain.sigma ** 2,
                                   rtol=OPTIMUM_THETA.rtol)
        np.testing.assert_allclose(weighted.coefficients, plain.coefficients, rtol=1e-6)


class TestLMMNoEffect:
    """Test LMM when there is no random-effect signal."""

    def test_no_signal_is_singular(self, rng):
        """With no group signal the fit lands on the boundary with a warning."""
        n_groups = 10
        n_per = 10
        n = n_groups * n_per

        group = np.repeat(np.arange(n_groups), n_per)
        X = np.ones((n, 1))  # intercept only
        y = np.tile(rng.normal(0, 1, n_per), n_groups)  # identical group means

        with pytest.warns(RuntimeWarning, match="singular"):
            result = lmm(y, X, groups={'group': group})
        assert result.is_singular
        assert result.theta[0] == 0.0
        assert result.result.has_warning('singular')
