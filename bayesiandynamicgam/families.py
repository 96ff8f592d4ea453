"""
Observation families and latent trend models for dynamic GAMs.

Both are closed enumerations. Code that branches on them matches every
member and raises on anything else, so adding a member without handling it
fails loudly instead of falling through to a default.
"""

from __future__ import annotations

from enum import Enum

import numpy as np

# Tweedie power parameter used by the Tweedie-Poisson family
TWEEDIE_POWER = 1.5


class Family(str, Enum):
    """Observation family of a dynamic GAM."""

    POISSON = "poisson"
    NEGATIVE_BINOMIAL = "nb"
    TWEEDIE_POISSON = "tw"

    @classmethod
    def parse(cls, value: str | Family) -> Family:
        """
        Parse a family name or alias.

        Parameters
        ----------
        value : str or Family
            Family name. Accepted aliases include "negativebinomial",
            "negative_binomial" and "tweedie".

        Returns
        -------
        Family
            The matching family.
        """
        if isinstance(value, cls):
            return value

        aliases = {
            "poisson": cls.POISSON,
            "nb": cls.NEGATIVE_BINOMIAL,
            "negbinom": cls.NEGATIVE_BINOMIAL,
            "negativebinomial": cls.NEGATIVE_BINOMIAL,
            "negative_binomial": cls.NEGATIVE_BINOMIAL,
            "tw": cls.TWEEDIE_POISSON,
            "tweedie": cls.TWEEDIE_POISSON,
            "tweedie_poisson": cls.TWEEDIE_POISSON,
        }

        key = str(value).lower()
        if key not in aliases:
            raise ValueError(
                f"Unknown family '{value}'. Supported families: {list(aliases.keys())}"
            )
        return aliases[key]

    @property
    def has_dispersion(self) -> bool:
        """Whether the family carries a per-series dispersion parameter."""
        if self is Family.POISSON:
            return False
        if self in (Family.NEGATIVE_BINOMIAL, Family.TWEEDIE_POISSON):
            return True
        raise ValueError(f"Unhandled family: {self!r}")


class TrendModel(str, Enum):
    """Latent trend process layered into the linear predictor."""

    NONE = "None"
    RW = "RW"
    AR1 = "AR1"
    AR2 = "AR2"
    AR3 = "AR3"
    GP = "GP"

    @classmethod
    def parse(cls, value: str | TrendModel | None) -> TrendModel:
        """Parse a trend model tag such as "RW", "ar2" or "None"."""
        if isinstance(value, cls):
            return value
        if value is None:
            return cls.NONE

        for member in cls:
            if member.value.lower() == str(value).lower():
                return member

        raise ValueError(
            f"Unknown trend model '{value}'. "
            f"Supported trend models: {[m.value for m in cls]}"
        )

    @property
    def ar_order(self) -> int:
        """Autoregressive order (0 for non-autoregressive trends)."""
        if self in (TrendModel.NONE, TrendModel.RW, TrendModel.GP):
            return 0
        if self is TrendModel.AR1:
            return 1
        if self is TrendModel.AR2:
            return 2
        if self is TrendModel.AR3:
            return 3
        raise ValueError(f"Unhandled trend model: {self!r}")

    @property
    def is_dynamic(self) -> bool:
        """Whether the model has a latent trend to forecast forward."""
        return self is not TrendModel.NONE


def simulate_observations(
    family: Family,
    mu: np.ndarray,
    rng: np.random.Generator,
    dispersion: np.ndarray | None = None,
) -> np.ndarray:
    """
    Simulate count observations from an observation family.

    Parameters
    ----------
    family : Family
        Observation family.
    mu : np.ndarray
        Expected values (after the inverse link), any shape.
    rng : np.random.Generator
        Random number generator.
    dispersion : np.ndarray, optional
        Dispersion parameter ``phi`` broadcastable to ``mu``. Required for
        the negative binomial and Tweedie-Poisson families.

    Returns
    -------
    np.ndarray
        Simulated counts with the same shape as ``mu`` (float dtype).
    """
    mu = np.asarray(mu, dtype=np.float64)

    if family is Family.POISSON:
        return rng.poisson(mu).astype(np.float64)

    if dispersion is None:
        raise ValueError(f"Family '{family.value}' requires a dispersion parameter")
    phi = np.broadcast_to(np.asarray(dispersion, dtype=np.float64), mu.shape)

    if family is Family.NEGATIVE_BINOMIAL:
        # numpy parameterisation: n successes, success probability p
        p = phi / (phi + mu)
        return rng.negative_binomial(phi, p).astype(np.float64)

    if family is Family.TWEEDIE_POISSON:
        rate = simulate_tweedie(mu, phi, rng, power=TWEEDIE_POWER)
        return rng.poisson(rate).astype(np.float64)

    raise ValueError(f"Unhandled family: {family!r}")


def simulate_tweedie(
    mu: np.ndarray,
    phi: np.ndarray,
    rng: np.random.Generator,
    power: float = TWEEDIE_POWER,
) -> np.ndarray:
    """
    Simulate from a Tweedie distribution with ``1 < power < 2``.

    Uses the compound Poisson-gamma representation: ``N ~ Poisson(lambda)``
    gamma jumps with common shape and scale, summed. The sum of ``N`` such
    jumps is gamma with shape ``N * shape``, and exactly zero when ``N = 0``.
    """
    if not 1 < power < 2:
        raise ValueError("Tweedie power must lie strictly between 1 and 2")

    mu = np.asarray(mu, dtype=np.float64)
    phi = np.asarray(phi, dtype=np.float64)

    poisson_rate = mu ** (2 - power) / (phi * (2 - power))
    gamma_shape = (2 - power) / (power - 1)
    gamma_scale = phi * (power - 1) * mu ** (power - 1)

    n_jumps = rng.poisson(poisson_rate)
    total_shape = n_jumps * gamma_shape

    out = np.zeros(np.broadcast(mu, phi).shape)
    positive = n_jumps > 0
    out[positive] = rng.gamma(
        total_shape[positive], np.broadcast_to(gamma_scale, out.shape)[positive]
    )
    return out
