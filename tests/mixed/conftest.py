"""
Simulated designs for the mixed model tests.

Every fixture draws one dataset from a known model, so estimates can be
checked against the generating values. Together they cover the block
layouts the factorizer distinguishes:

    repeated_measures   one vector-valued term (block-diagonal L)
    grouped_intercepts  one scalar term (diagonal L)
    one_way             balanced one-way layout with closed-form estimators
    nested_design       nested factors (no fill-in)
    crossed_design      fully crossed factors (dense fill-in)
    partially_crossed   incompletely crossed factors (sparse off-diagonal L)
    growth_curves       factory for the 4-occasion intercept/slope study
    bernoulli_groups, poisson_groups
                        non-gaussian responses with a random intercept
"""

import numpy as np
import pytest


def _with_intercept(*columns):
    return np.column_stack([np.ones(columns[0].shape[0]), *columns])


def _slope_covariance(sd_intercept, sd_slope, corr):
    off = corr * sd_intercept * sd_slope
    return np.array([[sd_intercept ** 2, off], [off, sd_slope ** 2]])


@pytest.fixture
def rng():
    return np.random.default_rng(2024)


@pytest.fixture
def repeated_measures(rng):
    """y ~ days + (1 + days | subject), 18 subjects observed on days 0-9."""
    n_subjects, n_days = 18, 10
    truth = {
        'beta_intercept': 250.0, 'beta_days': 10.0,
        'sigma_intercept': 25.0, 'sigma_slope': 6.0, 'sigma_resid': 25.0,
    }
    b = rng.multivariate_normal(
        [0.0, 0.0],
        _slope_covariance(truth['sigma_intercept'], truth['sigma_slope'], 0.07),
        size=n_subjects,
    )
    subject = np.repeat(np.arange(n_subjects), n_days)
    days = np.tile(np.arange(n_days, dtype=float), n_subjects)
    y = (truth['beta_intercept'] + b[subject, 0]
         + (truth['beta_days'] + b[subject, 1]) * days
         + rng.normal(0.0, truth['sigma_resid'], subject.shape[0]))
    return {'y': y, 'X': _with_intercept(days), 'subject': subject, 'days': days,
            'n_subjects': n_subjects, 'n_days': n_days, **truth}


@pytest.fixture
def grouped_intercepts(rng):
    """y ~ x + (1 | group), 20 groups of 10."""
    n_groups, n_per = 20, 10
    effects = rng.normal(0.0, 3.0, n_groups)
    group = np.repeat(np.arange(n_groups), n_per)
    x = rng.normal(0.0, 1.0, group.shape[0])
    y = 5.0 + 2.0 * x + effects[group] + rng.normal(0.0, 1.0, group.shape[0])
    return {'y': y, 'X': _with_intercept(x), 'group': group, 'x': x,
            'n_groups': n_groups, 'n_per_group': n_per,
            'beta0': 5.0, 'beta1': 2.0, 'sigma_group': 3.0, 'sigma_resid': 1.0}


@pytest.fixture
def one_way(rng):
    """Balanced y ~ 1 + (1 | group), 12 groups of 6."""
    n_groups, m = 12, 6
    group = np.repeat(np.arange(n_groups), m)
    y = 10.0 + rng.normal(0, 2.0, n_groups)[group] + rng.normal(0, 1.0, n_groups * m)
    return {'y': y, 'group': group, 'n_groups': n_groups, 'm': m,
            'X': np.ones((n_groups * m, 1))}


@pytest.fixture
def nested_design(rng):
    """y ~ x + (1 | classroom) + (1 | student), 12 classrooms × 5 students × 4 visits."""
    n_classrooms, per_classroom, visits = 12, 5, 4
    n_students = n_classrooms * per_classroom
    classroom_effects = rng.normal(0.0, 3.0, n_classrooms)
    student_effects = rng.normal(0.0, 1.5, n_students)
    student = np.repeat(np.arange(n_students), visits)
    classroom = student // per_classroom
    x = rng.normal(0.0, 1.0, student.shape[0])
    y = (10.0 + 0.5 * x + classroom_effects[classroom] + student_effects[student]
         + rng.normal(0.0, 1.0, student.shape[0]))
    return {'y': y, 'X': _with_intercept(x), 'classroom': classroom, 'student': student,
            'x': x, 'n_classrooms': n_classrooms, 'n_students': n_students,
            'beta0': 10.0, 'beta1': 0.5}


@pytest.fixture
def crossed_design(rng):
    """y ~ x + (1 | subject) + (1 | item), every one of 30 subjects sees all 10 items."""
    n_subjects, n_items = 30, 10
    subject_effects = rng.normal(0.0, 2.0, n_subjects)
    item_effects = rng.normal(0.0, 1.5, n_items)
    subject = np.repeat(np.arange(n_subjects), n_items)
    item = np.tile(np.arange(n_items), n_subjects)
    x = rng.normal(0.0, 1.0, subject.shape[0])
    y = (3.0 + 1.5 * x + subject_effects[subject] + item_effects[item]
         + rng.normal(0.0, 1.0, subject.shape[0]))
    return {'y': y, 'X': _with_intercept(x), 'subject': subject, 'item': item, 'x': x,
            'n_subjects': n_subjects, 'n_items': n_items, 'beta0': 3.0, 'beta1': 1.5}


@pytest.fixture
def partially_crossed(rng):
    """y ~ x + (1 | subject) + (1 | item) where each of 60 subjects sees 3 of 40 items.

    Items for subject s are (7s + 13k) mod 40, k = 0, 1, 2, each seen twice;
    every item is used and the subject-item incidence has density 0.075.
    """
    n_subjects, n_items, per_subject, reps = 60, 40, 3, 2
    s = np.repeat(np.arange(n_subjects), per_subject)
    k = np.tile(np.arange(per_subject), n_subjects)
    subject = np.repeat(s, reps)
    item = np.repeat((7 * s + 13 * k) % n_items, reps)
    x = rng.normal(0.0, 1.0, subject.shape[0])
    y = (1.0 - 0.5 * x + rng.normal(0.0, 1.2, n_subjects)[subject]
         + rng.normal(0.0, 0.8, n_items)[item] + rng.normal(0.0, 1.0, subject.shape[0]))
    return {'y': y, 'X': _with_intercept(x), 'subject': subject, 'item': item, 'x': x,
            'n_subjects': n_subjects, 'n_items': n_items}


_GROWTH_TRUTH = {
    'intercept': 35.0, 'slope': 2.0, 'sigma_resid': 1.5,
    'sd_intercept': 2.0, 'sd_slope': 0.3, 'corr': -0.5,
}


@pytest.fixture
def growth_truth():
    """Generating parameters of growth_curves."""
    return dict(_GROWTH_TRUTH)


@pytest.fixture
def growth_curves():
    """Factory: y ~ time + (1 + time | subject) with 4 occasions (time 0-3).

    Calling it with (rng, n_subjects) draws one dataset from _GROWTH_TRUTH.
    """
    cov = _slope_covariance(
        _GROWTH_TRUTH['sd_intercept'], _GROWTH_TRUTH['sd_slope'], _GROWTH_TRUTH['corr'],
    )

    def draw(rng, n_subjects=20):
        subject = np.repeat(np.arange(n_subjects), 4)
        time = np.tile(np.arange(4, dtype=float), n_subjects)
        b = rng.multivariate_normal([0.0, 0.0], cov, size=n_subjects)
        y = (_GROWTH_TRUTH['intercept'] + b[subject, 0]
             + (_GROWTH_TRUTH['slope'] + b[subject, 1]) * time
             + rng.normal(0.0, _GROWTH_TRUTH['sigma_resid'], subject.shape[0]))
        return {'y': y, 'X': _with_intercept(time), 'subject': subject, 'time': time}

    return draw


@pytest.fixture
def bernoulli_groups(rng):
    """Binary y ~ x + (1 | group), 20 groups of 20."""
    n_groups, n_per = 20, 20
    effects = rng.normal(0.0, 1.0, n_groups)
    group = np.repeat(np.arange(n_groups), n_per)
    x = rng.normal(0.0, 1.0, group.shape[0])
    prob = 1.0 / (1.0 + np.exp(-(-0.5 + x + effects[group])))
    y = rng.binomial(1, prob).astype(float)
    return {'y': y, 'X': _with_intercept(x), 'group': group, 'x': x,
            'n_groups': n_groups, 'beta0': -0.5, 'beta1': 1.0, 'sigma_group': 1.0}


@pytest.fixture
def poisson_groups(rng):
    """Count y ~ x + (1 | group), 15 groups of 20."""
    n_groups, n_per = 15, 20
    effects = rng.normal(0.0, 0.5, n_groups)
    group = np.repeat(np.arange(n_groups), n_per)
    x = rng.normal(0.0, 1.0, group.shape[0])
    y = rng.poisson(np.exp(1.0 + 0.5 * x + effects[group])).astype(float)
    return {'y': y, 'X': _with_intercept(x), 'group': group, 'x': x,
            'n_groups': n_groups, 'beta0': 1.0, 'beta1': 0.5, 'sigma_group': 0.5}
