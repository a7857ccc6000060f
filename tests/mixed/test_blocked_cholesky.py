"""
Tests for the blocked system and its Cholesky factor.

The blocked factor must agree with a dense Cholesky factorization of the
full scaled system for every storage layout (diagonal, block-diagonal,
sparse and dense blocks), and the profiled deviance read off it must
agree with a direct dense evaluation.
"""

import numpy as np
import pytest

from pymixed.core.compute.tolerances import DETERMINISTIC, REEVALUATION
from pymixed.core.exceptions import InvalidParameter, DimensionMismatch
from pymixed.mixed import MixedDesign, LinearMixedModel, parse_random_effects
from pymixed.mixed._blocks import BlockedSystem, to_dense
from pymixed.mixed._cholesky import update_L, fixef, ranef_spherical, unscaled_vcov
from pymixed.mixed._covariance import lambda_factors, lambda_matrix
from pymixed.mixed._deviance import profiled_deviance


def _dense_parts(system, theta):
    """Z Λ (system order), X, y as dense arrays."""
    factors = lambda_factors(theta, system.reterms)
    ZL = np.hstack([
        (term.Z @ lambda_matrix(T, term.n_levels)).toarray()
        for term, T in zip(system.reterms, factors)
    ])
    return ZL, system.X, system.y


def _dense_system(system, theta):
    ZL, X, y = _dense_parts(system, theta)
    q = ZL.shape[1]
    full = np.column_stack([ZL, X, y])
    M = full.T @ full
    M[:q, :q] += np.eye(q)
    return M


def _assemble_L(system):
    widths = [t.n_columns for t in system.reterms] + [system.n_fixed + 1]
    offsets = np.concatenate([[0], np.cumsum(widths)])
    out = np.zeros((offsets[-1], offsets[-1]))
    for k, row in enumerate(system.L):
        for j, block in enumerate(row):
            out[offsets[k]:offsets[k + 1], offsets[j]:offsets[j + 1]] = to_dense(block)
    return out


def _dense_deviance(system, theta, reml=False):
    """Profiled deviance by penalized least squares on dense arrays."""
    ZL, X, y = _dense_parts(system, theta)
    n, q = ZL.shape
    p = X.shape[1]
    aug = np.vstack([np.hstack([ZL, X]), np.hstack([np.eye(q), np.zeros((q, p))])])
    rhs = np.concatenate([y, np.zeros(q)])
    coef, *_ = np.linalg.lstsq(aug, rhs, rcond=None)
    r2 = np.sum((rhs - aug @ coef) ** 2)
    A = ZL.T @ ZL + np.eye(q)
    ld_re = np.linalg.slogdet(A)[1]
    if not reml:
        return ld_re + n * (1 + np.log(2 * np.pi * r2 / n))
    schur = X.T @ X - X.T @ ZL @ np.linalg.solve(A, ZL.T @ X)
    ld_x = np.linalg.slogdet(schur)[1]
    return ld_re + ld_x + (n - p) * (1 + np.log(2 * np.pi * r2 / (n - p)))


def _gls_deviance(system, theta, w, reml=False):
    """-2 log-likelihood profiled over β and σ from V = ZΛΛ'Z' + W⁻¹."""
    ZL, X, y = _dense_parts(system, theta)
    n, p = X.shape
    V = ZL @ ZL.T + np.diag(1.0 / w)
    Vinv_X = np.linalg.solve(V, X)
    XtVX = X.T @ Vinv_X
    beta = np.linalg.solve(XtVX, Vinv_X.T @ y)
    r = y - X @ beta
    r2 = r @ np.linalg.solve(V, r)
    ld_v = np.linalg.slogdet(V)[1]
    if not reml:
        return ld_v + n * (1 + np.log(2 * np.pi * r2 / n))
    return ld_v + np.linalg.slogdet(XtVX)[1] + (n - p) * (1 + np.log(2 * np.pi * r2 / (n - p)))


def _system(d, groups, random_effects=None, random_data=None):
    reterms = parse_random_effects(groups, random_effects, random_data, d['y'].shape[0])
    return BlockedSystem.build(d['X'], reterms, d['y'])


@pytest.fixture
def systems(repeated_measures, crossed_design, nested_design, partially_crossed):
    s, c, n, pc = repeated_measures, crossed_design, nested_design, partially_crossed
    return {
        'slope': (_system(s, {'subject': s['subject']},
                          {'subject': ['1', 'days']}, {'days': s['days']}),
                  np.array([0.9, 0.05, 0.25])),
        'crossed': (_system(c, {'subject': c['subject'], 'item': c['item']}),
                    np.array([1.7, 1.2])),
        'nested': (_system(n, {'classroom': n['classroom'], 'student': n['student']}),
                   np.array([1.3, 2.4])),
        'partial': (_system(pc, {'subject': pc['subject'], 'item': pc['item']}),
                    np.array([1.1, 0.8])),
    }


class TestFactorAgainstDense:

    @pytest.mark.parametrize("name", ['slope', 'crossed', 'nested', 'partial'])
    def test_factor_matches_dense_cholesky(self, systems, name):
        system, theta = systems[name]
        update_L(system, theta)
        expected = np.linalg.cholesky(_dense_system(system, theta))
        np.testing.assert_allclose(_assemble_L(system), expected, rtol=1e-9, atol=1e-9)

    @pytest.mark.parametrize("name", ['slope', 'crossed', 'nested', 'partial'])
    @pytest.mark.parametrize("reml", [False, True])
    def test_deviance_matches_dense(self, systems, name, reml):
        system, theta = systems[name]
        update_L(system, theta)
        np.testing.assert_allclose(
            profiled_deviance(system, reml=reml),
            _dense_deviance(system, theta, reml=reml),
            rtol=REEVALUATION.rtol,
        )

    def test_fixef_and_modes_solve_penalized_least_squares(self, systems):
        system, theta = systems['crossed']
        update_L(system, theta)
        beta = fixef(system)
        u = np.concatenate(ranef_spherical(system, beta))

        ZL, X, y = _dense_parts(system, theta)
        q = ZL.shape[1]
        aug = np.vstack([np.hstack([ZL, X]), np.hstack([np.eye(q), np.zeros((q, X.shape[1]))])])
        coef, *_ = np.linalg.lstsq(aug, np.concatenate([y, np.zeros(q)]), rcond=None)
        np.testing.assert_allclose(u, coef[:q], rtol=1e-8, atol=1e-10)
        np.testing.assert_allclose(beta, coef[q:], rtol=1e-8)

    def test_unscaled_vcov(self, systems):
        system, theta = systems['slope']
        update_L(system, theta)
        ZL, X, _ = _dense_parts(system, theta)
        A = ZL.T @ ZL + np.eye(ZL.shape[1])
        schur = X.T @ X - X.T @ ZL @ np.linalg.solve(A, ZL.T @ X)
        np.testing.assert_allclose(unscaled_vcov(system), np.linalg.inv(schur), rtol=1e-8)

    def test_refactoring_overwrites(self, systems):
        """Factoring at θ₁, then θ₂, equals factoring at θ₂ directly."""
        system, theta = systems['nested']
        update_L(system, theta * 3.0)
        update_L(system, theta)
        first = _assemble_L(system).copy()
        update_L(system, theta)
        np.testing.assert_allclose(_assemble_L(system), first,
                                   rtol=DETERMINISTIC.rtol, atol=DETERMINISTIC.atol)


class TestPriorWeights:

    @pytest.fixture
    def weighted(self, crossed_design):
        d = crossed_design
        n = d['y'].shape[0]
        w = np.linspace(0.5, 2.0, n)
        reterms = parse_random_effects({'subject': d['subject'], 'item': d['item']}, None, None, n)
        return BlockedSystem.build(d['X'], reterms, d['y'], weights=w), w

    @pytest.mark.parametrize("reml", [False, True])
    def test_deviance_matches_gls_likelihood(self, weighted, reml):
        """Weighted deviance equals the marginal likelihood with Var(ε) = σ²W⁻¹."""
        system, w = weighted
        theta = np.array([1.3, 0.9])
        update_L(system, theta)
        np.testing.assert_allclose(
            profiled_deviance(system, reml=reml),
            _gls_deviance(system, theta, w, reml=reml),
            rtol=REEVALUATION.rtol,
        )

    def test_unit_weights_match_unweighted(self, crossed_design):
        d = crossed_design
        n = d['y'].shape[0]
        reterms = parse_random_effects({'subject': d['subject'], 'item': d['item']}, None, None, n)
        plain = BlockedSystem.build(d['X'], reterms, d['y'])
        unit = BlockedSystem.build(d['X'], reterms, d['y'], weights=np.ones(n))
        theta = np.array([0.7, 1.4])
        update_L(plain, theta)
        update_L(unit, theta)
        np.testing.assert_allclose(profiled_deviance(unit), profiled_deviance(plain),
                                   rtol=DETERMINISTIC.rtol)


class TestDeterminismAndInvariance:

    def test_repeated_evaluation_is_identical(self, crossed_design):
        d = crossed_design
        design = MixedDesign.from_groups(d['y'], d['X'], {'subject': d['subject'], 'item': d['item']})
        model = LinearMixedModel(design)
        a = model.objective(np.array([1.1, 0.8]))
        model.objective(np.array([0.3, 2.0]))
        b = model.objective(np.array([1.1, 0.8]))
        assert a == b

    def test_fit_is_deterministic(self, crossed_design):
        d = crossed_design
        design = MixedDesign.from_groups(d['y'], d['X'], {'subject': d['subject'], 'item': d['item']})
        first = LinearMixedModel(design).fit()
        second = LinearMixedModel(design).fit()
        np.testing.assert_array_equal(first.theta, second.theta)
        assert first.deviance == second.deviance
        assert first.optsum.n_evaluations == second.optsum.n_evaluations

    def test_row_permutation_invariance(self, crossed_design, rng):
        """Reordering observations leaves the deviance unchanged."""
        d = crossed_design
        perm = rng.permutation(d['y'].shape[0])
        groups = {'subject': d['subject'], 'item': d['item']}
        model = LinearMixedModel(MixedDesign.from_groups(d['y'], d['X'], groups))
        permuted = LinearMixedModel(MixedDesign.from_groups(
            d['y'][perm], d['X'][perm], {k: v[perm] for k, v in groups.items()},
        ))
        for theta in ([1.0, 1.0], [0.4, 2.2], [0.0, 0.7]):
            np.testing.assert_allclose(
                model.objective(np.array(theta)), permuted.objective(np.array(theta)),
                rtol=REEVALUATION.rtol,
            )


class TestSystemErrors:

    def test_wrong_theta_length(self, systems):
        system, _ = systems['crossed']
        with pytest.raises(InvalidParameter):
            update_L(system, np.array([1.0]))

    def test_nonfinite_theta(self, systems):
        system, _ = systems['crossed']
        with pytest.raises(InvalidParameter):
            update_L(system, np.array([np.nan, 1.0]))

    def test_row_mismatch(self, crossed_design):
        d = crossed_design
        reterms = parse_random_effects({'subject': d['subject']}, None, None, d['y'].shape[0])
        with pytest.raises(DimensionMismatch):
            BlockedSystem.build(d['X'][:-1], reterms, d['y'])

    def test_no_terms(self, crossed_design):
        d = crossed_design
        with pytest.raises(DimensionMismatch):
            BlockedSystem.build(d['X'], [], d['y'])

    def test_shared_system_cannot_be_reweighted(self, systems):
        system, _ = systems['crossed']
        other = system.with_response(system.y[::-1].copy())
        with pytest.raises(RuntimeError):
            other.reweight(np.ones(system.n_obs), other.y)

    def test_with_response_shares_crossproducts(self, systems):
        system, theta = systems['nested']
        y_new = system.y + 1.0
        other = system.with_response(y_new)
        assert other.A[0][0] is system.A[0][0]
        assert other.A[1][0] is system.A[1][0]
        update_L(other, theta)
        fresh = BlockedSystem.build(system.X, system.reterms, y_new)
        update_L(fresh, theta)
        np.testing.assert_allclose(profiled_deviance(other), profiled_deviance(fresh),
                                   rtol=DETERMINISTIC.rtol)
