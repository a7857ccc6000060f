"""
Save and restore optimizer summaries.

A fitted model is fully determined by its data and the final parameter
vector. save_optsum() writes the optimizer summary as JSON; given a model
built from the same data, restore_optsum() sets the stored parameters,
performs the single final factorization, checks that the stored objective
value is reproduced and returns a solution without running the optimizer.
"""

from __future__ import annotations

import json
import logging
import os
from typing import IO, Any

import numpy as np

from pymixed.core.compute.tolerances import REEVALUATION
from pymixed.core.exceptions import ConvergenceError, ValidationError
from pymixed.mixed._model import LinearMixedModel, GeneralizedLinearMixedModel
from pymixed.mixed._optimizer import OptSummary, OptimizerStatus

logger = logging.getLogger(__name__)

FORMAT_VERSION = 1

_REQUIRED = (
    'format_version', 'model', 'x_start', 'x_final', 'f_initial', 'f_final',
    'lower', 'optimizer', 'n_evaluations', 'status',
)


def _floats(values) -> list[float | None]:
    """JSON-safe list: infinite bounds become null."""
    return [float(v) if np.isfinite(v) else None for v in np.asarray(values, dtype=np.float64)]


def _array(values, fill: float = -np.inf) -> np.ndarray:
    return np.array([fill if v is None else v for v in values], dtype=np.float64)


def optsum_to_dict(optsum: OptSummary, model_kind: str) -> dict[str, Any]:
    """JSON-ready dictionary for an optimizer summary."""
    if optsum.x_final is None:
        raise ValidationError("optimizer summary has no final parameters (model not fitted)")
    return {
        'format_version': FORMAT_VERSION,
        'model': model_kind,
        'x_start': _floats(optsum.x_start),
        'x_final': _floats(optsum.x_final),
        'f_initial': float(optsum.f_initial),
        'f_final': float(optsum.f_final),
        'lower': _floats(optsum.lower),
        'names': list(optsum.names),
        'optimizer': optsum.optimizer,
        'max_evaluations': int(optsum.max_evaluations),
        'deviance_tolerance': float(optsum.deviance_tolerance),
        'parameter_tolerance': float(optsum.parameter_tolerance),
        'thinning': int(optsum.thinning),
        'quadrature_points': int(optsum.quadrature_points),
        'reml': bool(optsum.reml),
        'n_evaluations': int(optsum.n_evaluations),
        'n_penalized': int(optsum.n_penalized),
        'status': optsum.status.value,
        'message': optsum.message,
        'trace': [
            {'evaluation': int(i), 'x': _floats(x), 'f': float(f)}
            for i, x, f in optsum.trace
        ],
    }


def optsum_from_dict(payload: dict[str, Any]) -> tuple[OptSummary, str]:
    """Rebuild an OptSummary from its dictionary form.

    Raises:
        ValidationError: Missing keys, unknown version or status.
    """
    if not isinstance(payload, dict):
        raise ValidationError(f"optimizer summary must be a JSON object, got {type(payload).__name__}")
    missing = [k for k in _REQUIRED if k not in payload]
    if missing:
        raise ValidationError(f"optimizer summary is missing keys: {missing}")
    if payload['format_version'] != FORMAT_VERSION:
        raise ValidationError(
            f"unsupported optimizer summary format_version {payload['format_version']!r}, "
            f"expected {FORMAT_VERSION}"
        )
    try:
        status = OptimizerStatus(payload['status'])
        optsum = OptSummary(
            x_start=_array(payload['x_start']),
            lower=_array(payload['lower']),
            optimizer=str(payload['optimizer']),
            max_evaluations=int(payload.get('max_evaluations', 10_000)),
            deviance_tolerance=float(payload.get('deviance_tolerance', 1e-8)),
            parameter_tolerance=float(payload.get('parameter_tolerance', 1e-6)),
            thinning=int(payload.get('thinning', 1)),
            quadrature_points=int(payload.get('quadrature_points', 1)),
            reml=bool(payload.get('reml', False)),
            names=tuple(payload.get('names', ())),
            x_final=_array(payload['x_final'], fill=np.nan),
            f_initial=float(payload['f_initial']),
            f_final=float(payload['f_final']),
            n_evaluations=int(payload['n_evaluations']),
            n_penalized=int(payload.get('n_penalized', 0)),
            trace=[
                (int(e['evaluation']), _array(e['x'], fill=np.nan), float(e['f']))
                for e in payload.get('trace', [])
            ],
            status=status,
            message=str(payload.get('message', '')),
        )
    except (TypeError, ValueError, KeyError) as e:
        raise ValidationError(f"malformed optimizer summary: {e}") from e
    if optsum.x_start.shape != optsum.x_final.shape or optsum.lower.shape != optsum.x_final.shape:
        raise ValidationError("optimizer summary vectors have inconsistent lengths")
    return optsum, str(payload['model'])


def save_optsum(solution_or_optsum, path_or_file: str | os.PathLike | IO[str]) -> None:
    """Write the optimizer summary of a fitted model as JSON.

    Args:
        solution_or_optsum: LMMSolution, GLMMSolution, a fitted model, or an
            OptSummary (stored as an LMM summary).
        path_or_file: File path or writable text file object.
    """
    if isinstance(solution_or_optsum, OptSummary):
        optsum, kind = solution_or_optsum, 'lmm'
    else:
        model = getattr(solution_or_optsum, 'model', solution_or_optsum)
        if isinstance(model, LinearMixedModel):
            kind = 'lmm'
        elif isinstance(model, GeneralizedLinearMixedModel):
            kind = 'glmm'
        else:
            raise ValidationError(
                f"cannot save optimizer summary of {type(solution_or_optsum).__name__}"
            )
        optsum = model.optsum
        if optsum is None:
            raise ValidationError("model has no optimizer summary (not fitted)")

    payload = optsum_to_dict(optsum, kind)
    if isinstance(path_or_file, (str, os.PathLike)):
        with open(path_or_file, 'w', encoding='utf-8') as fh:
            json.dump(payload, fh, indent=2)
    else:
        json.dump(payload, path_or_file, indent=2)


def _load(path_or_file) -> dict:
    try:
        if isinstance(path_or_file, (str, os.PathLike)):
            with open(path_or_file, 'r', encoding='utf-8') as fh:
                return json.load(fh)
        return json.load(path_or_file)
    except json.JSONDecodeError as e:
        raise ValidationError(f"optimizer summary is not valid JSON: {e}") from e


def restore_optsum(model, path_or_file, rtol: float | None = None):
    """Restore a fit from a saved optimizer summary without optimizing.

    Args:
        model: An unfitted LinearMixedModel or GeneralizedLinearMixedModel
            built from the same data as the saved fit.
        path_or_file: File path or readable text file object.
        rtol: Relative tolerance for the re-verified objective (default
            the re-evaluation tolerance tier).

    Returns:
        LMMSolution or GLMMSolution at the stored parameters.

    Raises:
        ValidationError: Malformed payload, or one that does not match the
            model (kind, parameter count, REML flag).
        ConvergenceError: The recomputed objective differs from the stored
            one by more than the tolerance.
    """
    from pymixed.mixed.solvers import lmm_solution, glmm_solution

    optsum, kind = optsum_from_dict(_load(path_or_file))
    rtol = REEVALUATION.rtol if rtol is None else rtol
    atol = REEVALUATION.atol
    x = optsum.x_final

    if isinstance(model, LinearMixedModel):
        if kind != 'lmm':
            raise ValidationError(f"saved summary is for a {kind!r} model, not 'lmm'")
        if x.shape[0] != model.n_theta:
            raise ValidationError(
                f"saved θ has length {x.shape[0]}, model expects {model.n_theta}"
            )
        if optsum.reml != model.reml:
            raise ValidationError(
                f"saved fit used reml={optsum.reml}, model has reml={model.reml}"
            )
        recomputed = model.set_theta(x)
        _verify(optsum, recomputed, rtol, atol)
        model.optsum = optsum
        return lmm_solution(model)

    if isinstance(model, GeneralizedLinearMixedModel):
        if kind != 'glmm':
            raise ValidationError(f"saved summary is for a {kind!r} model, not 'glmm'")
        p, nt = model.design.p, model.n_theta
        model.n_agq = optsum.quadrature_points
        if x.shape[0] == nt:
            # θ-only summary: β comes from PIRLS at θ
            recomputed = model.objective_fast(x)
            beta = model._pirls(x, model.initial_beta(), True).beta
            theta = x
        elif x.shape[0] == p + nt:
            recomputed = model.objective(x, optsum.quadrature_points)
            beta, theta = x[:p], x[p:]
        else:
            raise ValidationError(
                f"saved parameter vector has length {x.shape[0]}, model expects "
                f"{nt} (θ) or {p + nt} (β, θ)"
            )
        _verify(optsum, recomputed, rtol, atol)
        model.optsum = optsum
        model.set_params(beta, theta)
        return glmm_solution(model)

    raise ValidationError(f"cannot restore into {type(model).__name__}")


def _verify(optsum: OptSummary, recomputed: float, rtol: float, atol: float) -> None:
    diff = abs(recomputed - optsum.f_final)
    threshold = atol + rtol * abs(optsum.f_final)
    logger.debug("restored objective %.12g (stored %.12g, |diff| %.3g)",
                 recomputed, optsum.f_final, diff)
    if not diff <= threshold:
        raise ConvergenceError(
            f"Restored objective {recomputed:.10g} does not match stored "
            f"value {optsum.f_final:.10g} (|difference| {diff:.3g} > {threshold:.3g})",
            iterations=optsum.n_evaluations,
            final_change=diff,
            reason='objective_mismatch',
            threshold=threshold,
        )
