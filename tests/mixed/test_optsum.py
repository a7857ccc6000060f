"""Tests for saving and restoring optimizer summaries."""

import io
import json

import numpy as np
import pytest

from pymixed.core.compute.tolerances import REEVALUATION
from pymixed.core.exceptions import ConvergenceError, ValidationError
from pymixed.mixed import (
    lmm, glmm, save_optsum, restore_optsum, MixedDesign,
    LinearMixedModel, GeneralizedLinearMixedModel, OptimizerStatus,
)
from pymixed.mixed.families import resolve_family
from pymixed.mixed.optsum import optsum_to_dict, optsum_from_dict, FORMAT_VERSION


@pytest.fixture
def slope_fit(repeated_measures):
    d = repeated_measures
    return lmm(
        d['y'], d['X'], {'subject': d['subject']},
        random_effects={'subject': ['1', 'days']}, random_data={'days': d['days']},
    )


def _slope_model(d, reml=False):
    design = MixedDesign.from_groups(
        d['y'], d['X'], {'subject': d['subject']},
        random_effects={'subject': ['1', 'days']}, random_data={'days': d['days']},
    )
    return LinearMixedModel(design, reml=reml)


def _saved(fit) -> dict:
    buf = io.StringIO()
    save_optsum(fit, buf)
    return json.loads(buf.getvalue())


class TestLMMRoundTrip:

    def test_restore_from_path(self, slope_fit, repeated_measures, tmp_path):
        path = tmp_path / 'fit.json'
        save_optsum(slope_fit, path)

        restored = restore_optsum(_slope_model(repeated_measures), path)

        np.testing.assert_array_equal(restored.theta, slope_fit.theta)
        np.testing.assert_allclose(restored.deviance, slope_fit.deviance, rtol=REEVALUATION.rtol)
        np.testing.assert_allclose(restored.coefficients, slope_fit.coefficients, rtol=1e-10)
        assert restored.optsum.n_evaluations == slope_fit.optsum.n_evaluations
        assert restored.status == OptimizerStatus.CONVERGED

    def test_restore_from_file_object(self, slope_fit, repeated_measures):
        buf = io.StringIO()
        save_optsum(slope_fit, buf)
        buf.seek(0)
        restored = restore_optsum(_slope_model(repeated_measures), buf)
        np.testing.assert_allclose(restored.sigma, slope_fit.sigma, rtol=1e-10)

    def test_payload_contents(self, slope_fit):
        payload = _saved(slope_fit)
        assert payload['format_version'] == FORMAT_VERSION
        assert payload['model'] == 'lmm'
        assert payload['names'] == list(slope_fit.theta_names)
        # −∞ bound on the off-diagonal θ entry is stored as null
        assert payload['lower'] == [0.0, None, 0.0]
        assert len(payload['trace']) == slope_fit.optsum.n_evaluations
        assert payload['status'] == 'converged'

    def test_dict_round_trip(self, slope_fit):
        optsum, kind = optsum_from_dict(optsum_to_dict(slope_fit.optsum, 'lmm'))
        assert kind == 'lmm'
        np.testing.assert_array_equal(optsum.x_final, slope_fit.optsum.x_final)
        np.testing.assert_array_equal(optsum.lower, slope_fit.optsum.lower)
        assert optsum.trace[-1][2] == slope_fit.optsum.trace[-1][2]

    def test_reml_flag_must_match(self, slope_fit, repeated_measures):
        buf = io.StringIO()
        save_optsum(slope_fit, buf)
        buf.seek(0)
        with pytest.raises(ValidationError, match="reml"):
            restore_optsum(_slope_model(repeated_measures, reml=True), buf)

    def test_wrong_data_fails_verification(self, slope_fit, repeated_measures):
        d = dict(repeated_measures)
        d['y'] = d['y'] + np.linspace(0, 5, d['y'].shape[0])
        buf = io.StringIO()
        save_optsum(slope_fit, buf)
        buf.seek(0)
        with pytest.raises(ConvergenceError) as exc_info:
            restore_optsum(_slope_model(d), buf)
        assert exc_info.value.reason == 'objective_mismatch'
        assert exc_info.value.final_change > exc_info.value.threshold

    def test_tampered_objective_fails_verification(self, slope_fit, repeated_measures):
        payload = _saved(slope_fit)
        payload['f_final'] += 1.0
        with pytest.raises(ConvergenceError):
            restore_optsum(_slope_model(repeated_measures), io.StringIO(json.dumps(payload)))


class TestGLMMRoundTrip:

    @pytest.fixture
    def model(self, bernoulli_groups):
        d = bernoulli_groups
        design = MixedDesign.from_groups(d['y'], d['X'], {'group': d['group']})
        return GeneralizedLinearMixedModel(design, resolve_family('bernoulli'))

    def test_joint_summary(self, bernoulli_groups, model):
        d = bernoulli_groups
        fit = glmm(d['y'], d['X'], {'group': d['group']})
        payload = _saved(fit)
        assert payload['model'] == 'glmm'
        assert len(payload['x_final']) == 3

        restored = restore_optsum(model, io.StringIO(json.dumps(payload)))
        np.testing.assert_allclose(restored.coefficients, fit.coefficients, rtol=1e-10)
        np.testing.assert_allclose(restored.deviance, fit.deviance, rtol=REEVALUATION.rtol)

    def test_fast_summary(self, bernoulli_groups, model):
        d = bernoulli_groups
        fit = glmm(d['y'], d['X'], {'group': d['group']}, fast=True)
        payload = _saved(fit)
        assert len(payload['x_final']) == 1

        restored = restore_optsum(model, io.StringIO(json.dumps(payload)))
        np.testing.assert_array_equal(restored.theta, fit.theta)
        np.testing.assert_allclose(restored.coefficients, fit.coefficients, rtol=1e-6)

    def test_agq_summary(self, bernoulli_groups, model):
        d = bernoulli_groups
        fit = glmm(d['y'], d['X'], {'group': d['group']}, quadrature_points=3)
        buf = io.StringIO()
        save_optsum(fit, buf)
        buf.seek(0)
        restored = restore_optsum(model, buf)
        assert restored.params.quadrature_points == 3
        np.testing.assert_allclose(restored.deviance, fit.deviance, rtol=REEVALUATION.rtol)

    def test_kind_must_match(self, slope_fit, model):
        buf = io.StringIO()
        save_optsum(slope_fit, buf)
        buf.seek(0)
        with pytest.raises(ValidationError, match="'lmm' model"):
            restore_optsum(model, buf)


class TestMalformedPayloads:

    def test_not_json(self, repeated_measures):
        with pytest.raises(ValidationError, match="not valid JSON"):
            restore_optsum(_slope_model(repeated_measures), io.StringIO("{not json"))

    def test_missing_keys(self, slope_fit, repeated_measures):
        payload = _saved(slope_fit)
        del payload['x_final']
        with pytest.raises(ValidationError, match="missing keys"):
            restore_optsum(_slope_model(repeated_measures), io.StringIO(json.dumps(payload)))

    def test_unknown_version(self, slope_fit):
        payload = _saved(slope_fit)
        payload['format_version'] = FORMAT_VERSION + 1
        with pytest.raises(ValidationError, match="format_version"):
            optsum_from_dict(payload)

    def test_unknown_status(self, slope_fit):
        payload = _saved(slope_fit)
        payload['status'] = 'finished'
        with pytest.raises(ValidationError, match="malformed"):
            optsum_from_dict(payload)

    def test_inconsistent_lengths(self, slope_fit):
        payload = _saved(slope_fit)
        payload['x_start'] = payload['x_start'][:2]
        with pytest.raises(ValidationError, match="inconsistent"):
            optsum_from_dict(payload)

    def test_wrong_parameter_count(self, slope_fit, grouped_intercepts):
        d = grouped_intercepts
        model = LinearMixedModel(MixedDesign.from_groups(d['y'], d['X'], {'group': d['group']}))
        buf = io.StringIO()
        save_optsum(slope_fit, buf)
        buf.seek(0)
        with pytest.raises(ValidationError, match="length 3"):
            restore_optsum(model, buf)

    def test_unfitted_model_cannot_be_saved(self, repeated_measures):
        with pytest.raises(ValidationError, match="not fitted"):
            save_optsum(_slope_model(repeated_measures), io.StringIO())
