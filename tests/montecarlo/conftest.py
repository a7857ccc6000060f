"""
Shared fixtures for parametric bootstrap tests.

The fitted models are small so that each test can afford tens of refits.
"""

import numpy as np
import pytest

from pymixed.mixed import lmm, glmm


@pytest.fixture
def rng():
    return np.random.default_rng(7)


@pytest.fixture
def intercept_fit(rng):
    """y ~ x + (1 | group): 12 groups of 8."""
    n_groups, n_per = 12, 8
    group = np.repeat(np.arange(n_groups), n_per)
    x = rng.normal(0, 1, n_groups * n_per)
    y = 2.0 + 0.7 * x + rng.normal(0, 1.2, n_groups)[group] + rng.normal(0, 0.8, x.shape[0])
    X = np.column_stack([np.ones_like(x), x])
    return lmm(y, X, {'group': group})


@pytest.fixture
def slope_fit(rng):
    """y ~ t + (1 + t | subject): 10 subjects, 6 occasions."""
    n_subjects, n_times = 10, 6
    subject = np.repeat(np.arange(n_subjects), n_times)
    t = np.tile(np.arange(n_times, dtype=float), n_subjects)
    b = rng.multivariate_normal([0, 0], [[4.0, 0.3], [0.3, 0.5]], n_subjects)
    y = 5.0 + b[subject, 0] + (1.0 + b[subject, 1]) * t + rng.normal(0, 1.0, t.shape[0])
    X = np.column_stack([np.ones_like(t), t])
    return lmm(y, X, {'subject': subject},
               random_effects={'subject': ['1', 't']}, random_data={'t': t})


@pytest.fixture
def poisson_fit(rng):
    """Count y ~ x + (1 | group): 10 groups of 12, Laplace fit without the joint stage."""
    n_groups, n_per = 10, 12
    group = np.repeat(np.arange(n_groups), n_per)
    x = rng.normal(0, 1, n_groups * n_per)
    eta = 0.8 + 0.4 * x + rng.normal(0, 0.5, n_groups)[group]
    y = rng.poisson(np.exp(eta)).astype(float)
    X = np.column_stack([np.ones_like(x), x])
    return glmm(y, X, {'group': group}, family='poisson', fast=True)
