"""
Response families and link functions for mixed models.

Families and links form a closed set of variants. Each is a frozen
dataclass whose fields are the functions that define it, so a family is
plain data: it can be compared, hashed and passed between threads.

Each Link defines:
- g(μ) → η  (link)
- g⁻¹(η) → μ  (inverse link)
- dμ/dη  (derivative of inverse link, for PIRLS weights)

Each Family defines:
- A variance function V(μ)
- A unit deviance d(y, μ) (deviance residuals before prior weights)
- A log-likelihood for AIC/BIC
- An initialization of μ for the first PIRLS iteration
- A response check and a simulator for the parametric bootstrap

References:
    McCullagh, P., & Nelder, J. A. (1989). Generalized Linear Models (2nd ed.)
    R Core Team. stats::family, stats::make.link
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

import numpy as np
from numpy.typing import NDArray
from scipy import stats
from scipy.special import gammaln

from pymixed.core.exceptions import ValidationError

_EPS = 1e-10


# =====================================================================
# Link functions
# =====================================================================

@dataclass(frozen=True)
class Link:
    """Link function g(μ) mapping mean to linear predictor."""
    name: str
    link: Callable[[NDArray], NDArray]
    linkinv: Callable[[NDArray], NDArray]
    mu_eta: Callable[[NDArray], NDArray]

    def __repr__(self) -> str:
        return f"Link({self.name!r})"


def _logit_linkinv(eta: NDArray) -> NDArray:
    # Clip to prevent overflow in exp
    eta = np.clip(eta, -500, 500)
    return 1.0 / (1.0 + np.exp(-eta))


def _logit_mu_eta(eta: NDArray) -> NDArray:
    p = _logit_linkinv(eta)
    return np.maximum(p * (1.0 - p), _EPS)


def _logit_link(mu: NDArray) -> NDArray:
    mu = np.clip(mu, _EPS, 1 - _EPS)
    return np.log(mu / (1 - mu))


def _cloglog_link(mu: NDArray) -> NDArray:
    mu = np.clip(mu, _EPS, 1 - _EPS)
    return np.log(-np.log1p(-mu))


def _cloglog_linkinv(eta: NDArray) -> NDArray:
    eta = np.clip(eta, -500, 500)
    return np.clip(-np.expm1(-np.exp(eta)), _EPS, 1 - _EPS)


def _cloglog_mu_eta(eta: NDArray) -> NDArray:
    eta = np.clip(eta, -500, 30)
    return np.maximum(np.exp(eta - np.exp(eta)), _EPS)


IDENTITY = Link(
    name='identity',
    link=lambda mu: np.array(mu, dtype=np.float64),
    linkinv=lambda eta: np.array(eta, dtype=np.float64),
    mu_eta=lambda eta: np.ones_like(eta),
)

LOGIT = Link(
    name='logit',
    link=_logit_link,
    linkinv=_logit_linkinv,
    mu_eta=_logit_mu_eta,
)

PROBIT = Link(
    name='probit',
    link=lambda mu: stats.norm.ppf(np.clip(mu, _EPS, 1 - _EPS)),
    linkinv=lambda eta: np.clip(stats.norm.cdf(eta), _EPS, 1 - _EPS),
    mu_eta=lambda eta: np.maximum(stats.norm.pdf(eta), _EPS),
)

LOG = Link(
    name='log',
    link=lambda mu: np.log(np.maximum(mu, _EPS)),
    linkinv=lambda eta: np.exp(np.clip(eta, -500, 500)),
    mu_eta=lambda eta: np.maximum(np.exp(np.clip(eta, -500, 500)), _EPS),
)

INVERSE = Link(
    name='inverse',
    link=lambda mu: 1.0 / np.maximum(mu, _EPS),
    linkinv=lambda eta: 1.0 / np.maximum(eta, _EPS),
    mu_eta=lambda eta: -1.0 / np.maximum(eta ** 2, 1e-20),
)

CLOGLOG = Link(
    name='cloglog',
    link=_cloglog_link,
    linkinv=_cloglog_linkinv,
    mu_eta=_cloglog_mu_eta,
)

LINKS: dict[str, Link] = {
    lk.name: lk for lk in (IDENTITY, LOGIT, PROBIT, LOG, INVERSE, CLOGLOG)
}


def resolve_link(link: str | Link | None, default: Link) -> Link:
    """Resolve a link argument to a Link instance."""
    if link is None:
        return default
    if isinstance(link, Link):
        return link
    if isinstance(link, str):
        found = LINKS.get(link.lower())
        if found is None:
            valid = ', '.join(sorted(LINKS))
            raise ValidationError(f"Unknown link: {link!r}. Valid links: {valid}")
        return found
    raise ValidationError(f"link must be str or Link, got {type(link).__name__}")


# =====================================================================
# Families
# =====================================================================

@dataclass(frozen=True)
class Family:
    """Response distribution of a (generalized) linear mixed model.

    Attributes:
        name: 'gaussian', 'bernoulli', 'binomial' or 'poisson'.
        link: The link function in use.
        variance: V(μ).
        unit_deviance: Deviance residuals d(y, μ) per observation, before
            prior weights.
        log_likelihood: (y, μ, wt, dispersion) → conditional log-likelihood.
        initialize: (y, wt) → starting μ for PIRLS.
        check_response: (y, wt) → None; raises ValidationError.
        simulate: (rng, μ, wt) → simulated response.
        dispersion_is_fixed: True when the dispersion is known (φ = 1).
    """
    name: str
    link: Link
    variance: Callable[[NDArray], NDArray]
    unit_deviance: Callable[[NDArray, NDArray], NDArray]
    log_likelihood: Callable[..., float]
    initialize: Callable[[NDArray, NDArray], NDArray]
    check_response: Callable[[NDArray, NDArray], None]
    simulate: Callable[..., NDArray]
    dispersion_is_fixed: bool

    def with_link(self, link: str | Link | None) -> Family:
        return _FACTORIES[self.name](link)

    def deviance(self, y: NDArray, mu: NDArray, wt: NDArray) -> float:
        """Total deviance Σ wt_i d(y_i, μ_i)."""
        return float(np.sum(wt * self.unit_deviance(y, mu)))

    def __repr__(self) -> str:
        return f"Family({self.name!r}, link={self.link.name!r})"


# --- Gaussian --------------------------------------------------------

def _gaussian_loglik(y, mu, wt, dispersion):
    n = float(np.sum(wt > 0))
    rss = float(np.sum(wt * (y - mu) ** 2))
    return -0.5 * (rss / dispersion + n * np.log(2 * np.pi * dispersion))


def _no_check(y, wt):
    return None


def gaussian(link: str | Link | None = None) -> Family:
    """Gaussian family. Default link: identity. V(μ) = 1."""
    return Family(
        name='gaussian',
        link=resolve_link(link, IDENTITY),
        variance=lambda mu: np.ones_like(mu),
        unit_deviance=lambda y, mu: (y - mu) ** 2,
        log_likelihood=_gaussian_loglik,
        initialize=lambda y, wt: np.array(y, dtype=np.float64),
        check_response=_no_check,
        simulate=lambda rng, mu, wt, sigma=1.0: mu + sigma * rng.standard_normal(mu.shape[0]) / np.sqrt(wt),
        dispersion_is_fixed=False,
    )


# --- Bernoulli / Binomial --------------------------------------------

def _binomial_variance(mu):
    mu = np.clip(mu, _EPS, 1 - _EPS)
    return mu * (1.0 - mu)


def _binomial_unit_deviance(y, mu):
    mu = np.clip(mu, _EPS, 1 - _EPS)
    # 0*log(0) = 0; np.where evaluates both branches
    with np.errstate(divide='ignore', invalid='ignore'):
        term1 = np.where(y > 0, y * np.log(y / mu), 0.0)
        term2 = np.where(y < 1, (1 - y) * np.log((1 - y) / (1 - mu)), 0.0)
    return 2.0 * (term1 + term2)


def _bernoulli_loglik(y, mu, wt, dispersion):
    mu = np.clip(mu, _EPS, 1 - _EPS)
    return float(np.sum(wt * (y * np.log(mu) + (1 - y) * np.log(1 - mu))))


def _binomial_loglik(y, mu, wt, dispersion):
    # wt = number of trials, y = proportion of successes
    mu = np.clip(mu, _EPS, 1 - _EPS)
    successes = np.round(wt * y)
    log_choose = gammaln(wt + 1) - gammaln(successes + 1) - gammaln(wt - successes + 1)
    return float(np.sum(log_choose + successes * np.log(mu)
                        + (wt - successes) * np.log(1 - mu)))


def _check_bernoulli(y, wt):
    if not np.all((y == 0) | (y == 1)):
        raise ValidationError("bernoulli response must contain only 0 and 1")


def _check_binomial(y, wt):
    if np.any((y < 0) | (y > 1)):
        raise ValidationError("binomial response must be proportions in [0, 1]")
    successes = wt * y
    if not np.allclose(successes, np.round(successes), atol=1e-8):
        raise ValidationError(
            "binomial response times weights (trials) must be whole numbers of successes"
        )


def bernoulli(link: str | Link | None = None) -> Family:
    """Bernoulli family for 0/1 responses. Default link: logit."""
    return Family(
        name='bernoulli',
        link=resolve_link(link, LOGIT),
        variance=_binomial_variance,
        unit_deviance=_binomial_unit_deviance,
        log_likelihood=_bernoulli_loglik,
        # R's default: (y + 0.5) / 2 for binary data
        initialize=lambda y, wt: (y + 0.5) / 2.0,
        check_response=_check_bernoulli,
        simulate=lambda rng, mu, wt: (rng.random(mu.shape[0]) < mu).astype(np.float64),
        dispersion_is_fixed=True,
    )


def binomial(link: str | Link | None = None) -> Family:
    """Binomial family: y are proportions, prior weights are trial counts.

    Default link: logit.
    """
    return Family(
        name='binomial',
        link=resolve_link(link, LOGIT),
        variance=_binomial_variance,
        unit_deviance=_binomial_unit_deviance,
        log_likelihood=_binomial_loglik,
        initialize=lambda y, wt: (wt * y + 0.5) / (wt + 1.0),
        check_response=_check_binomial,
        simulate=lambda rng, mu, wt: rng.binomial(np.round(wt).astype(np.int64), mu) / wt,
        dispersion_is_fixed=True,
    )


# --- Poisson ---------------------------------------------------------

def _poisson_unit_deviance(y, mu):
    mu = np.maximum(mu, _EPS)
    with np.errstate(divide='ignore', invalid='ignore'):
        term = np.where(y > 0, y * np.log(y / mu), 0.0)
    return 2.0 * (term - (y - mu))


def _poisson_loglik(y, mu, wt, dispersion):
    mu = np.maximum(mu, _EPS)
    return float(np.sum(wt * (y * np.log(mu) - mu - gammaln(y + 1))))


def _check_poisson(y, wt):
    if np.any(y < 0):
        raise ValidationError("poisson response must be non-negative")
    if not np.allclose(y, np.round(y)):
        raise ValidationError("poisson response must contain whole-number counts")


def poisson(link: str | Link | None = None) -> Family:
    """Poisson family. Default link: log. V(μ) = μ."""
    return Family(
        name='poisson',
        link=resolve_link(link, LOG),
        variance=lambda mu: np.maximum(mu, _EPS),
        unit_deviance=_poisson_unit_deviance,
        log_likelihood=_poisson_loglik,
        # R: y + 0.1 (to avoid log(0))
        initialize=lambda y, wt: y + 0.1,
        check_response=_check_poisson,
        simulate=lambda rng, mu, wt: rng.poisson(mu).astype(np.float64),
        dispersion_is_fixed=True,
    )


_FACTORIES: dict[str, Callable[..., Family]] = {
    'gaussian': gaussian,
    'bernoulli': bernoulli,
    'binomial': binomial,
    'poisson': poisson,
}


def resolve_family(family: str | Family, link: str | Link | None = None) -> Family:
    """Resolve family (and optional link) arguments to a Family instance.

    Args:
        family: Family name or instance.
        link: Optional link name or instance; overrides the family's link.

    Raises:
        ValidationError: Unknown family/link, or gaussian with a
            non-identity link (a gaussian model is a linear mixed model).
    """
    if isinstance(family, Family):
        fam = family if link is None else family.with_link(link)
    elif isinstance(family, str):
        factory = _FACTORIES.get(family.lower())
        if factory is None:
            valid = ', '.join(sorted(_FACTORIES))
            raise ValidationError(f"Unknown family: {family!r}. Valid families: {valid}")
        fam = factory(link)
    else:
        raise ValidationError(f"family must be str or Family, got {type(family).__name__}")

    if fam.name == 'gaussian' and fam.link.name != 'identity':
        raise ValidationError(
            f"gaussian family requires the identity link, got {fam.link.name!r}"
        )
    return fam
