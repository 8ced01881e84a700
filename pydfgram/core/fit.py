"""
Nonlinear least-squares fitting of baselines and peaks.

All fits go through :func:`fit_function`, which wraps
``scipy.optimize.curve_fit`` (Levenberg-Marquardt, analytic Jacobian) and
returns an immutable :class:`FitOutcome`.  "No good fit" is an expected
result, so it is never raised: the outcome carries ``success=False`` and a
message, and callers branch on the flag.

Usage example
-------------
>>> from pydfgram.core.curve import Curve
>>> from pydfgram.core.fit import fit_peak
>>> outcome = fit_peak("Gaussian", Curve(x, y))
>>> if outcome.success:
...     print(outcome.peak_outcome().center.value)
"""

from __future__ import annotations

import logging
import math
import warnings
from dataclasses import dataclass
from typing import Dict, Optional, Sequence, Tuple

import numpy as np
from scipy import optimize

from pydfgram.core.curve import Curve
from pydfgram.core.fit_functions import (
    EXTRA_PARAM_DEFAULTS,
    FitFunction,
    peak_function,
    polynomial,
)
from pydfgram.core.ranges import Ranges

log = logging.getLogger(__name__)

_SQRT_PI_4LN2 = math.sqrt(math.pi / (4.0 * math.log(2.0)))


def _round_half_away(x: float) -> float:
    return math.copysign(math.floor(abs(x) + 0.5), x)


# ===========================================================================
# Result types
# ===========================================================================

@dataclass(frozen=True)
class DoubleWithError:
    """A fitted value with its standard error."""

    value: float = 0.0
    error: float = 0.0

    def _scale(self, prec: int) -> Optional[float]:
        m = max(abs(self.value), abs(self.error))
        if not math.isfinite(m) or m == 0:
            return None
        n = 1 + math.floor(math.log10(m))
        return 10.0 ** (prec - n)

    def rounded_error(self, prec: int) -> float:
        """Error rounded to *prec* significant digits of max(|value|, |error|).

        Rounding is anchored to the larger magnitude so the error never shows
        more digits than the value itself warrants.
        """
        fac = self._scale(prec)
        if fac is None:
            return self.error
        return _round_half_away(self.error * fac) / fac

    def __str__(self):
        return f"{self.value:g} ± {self.error:g}"


_NAN = DoubleWithError(math.nan, math.nan)


@dataclass(frozen=True)
class PeakOutcome:
    """Physical peak quantities derived from a peak fit."""

    center: DoubleWithError
    height: DoubleWithError
    fwhm: DoubleWithError
    intensity: DoubleWithError


@dataclass(frozen=True)
class FitOutcome:
    """Result of one fit attempt.

    On failure ``function`` is None and ``parameters`` is empty; calling
    :meth:`y` is then a programming error.
    """

    success: bool
    function: Optional[FitFunction] = None
    parameters: Tuple[DoubleWithError, ...] = ()
    message: str = ""
    chi2: float = math.nan
    dof: int = 0

    @classmethod
    def failure(cls, message: str) -> "FitOutcome":
        return cls(success=False, message=message)

    @property
    def n_par(self) -> int:
        return len(self.parameters)

    def parameter_at(self, i: int) -> DoubleWithError:
        return self.parameters[i]

    @property
    def values(self) -> np.ndarray:
        return np.array([p.value for p in self.parameters])

    @property
    def errors(self) -> np.ndarray:
        return np.array([p.error for p in self.parameters])

    def as_dict(self) -> Dict[str, DoubleWithError]:
        if not self.success:
            return {}
        return dict(zip(self.function.param_names, self.parameters))

    def y(self, x):
        """Evaluate the fitted function at *x* (scalar or array)."""
        if not self.success:
            raise RuntimeError("y(x) requires a successful fit")
        scalar = np.ndim(x) == 0
        out = self.function(np.atleast_1d(np.asarray(x, dtype=float)), self.values)
        return float(out[0]) if scalar else out

    def peak_outcome(self) -> PeakOutcome:
        """Center, height, FWHM and integrated intensity of a peak fit."""
        if not self.success:
            return PeakOutcome(_NAN, _NAN, _NAN, _NAN)
        p = self.as_dict()
        height, center, fwhm = p["height"], p["center"], p["fwhm"]
        eta = p["eta"].value if "eta" in p else None
        if self.function.name == "Lorentzian":
            k = math.pi / 2.0
        elif eta is not None:
            k = eta * math.pi / 2.0 + (1.0 - eta) * _SQRT_PI_4LN2
        else:
            k = _SQRT_PI_4LN2
        area = k * height.value * fwhm.value
        rel = math.hypot(
            height.error / height.value if height.value else math.nan,
            fwhm.error / fwhm.value if fwhm.value else math.nan,
        )
        return PeakOutcome(
            center=center,
            height=height,
            fwhm=DoubleWithError(abs(fwhm.value), fwhm.error),
            intensity=DoubleWithError(area, abs(area) * rel),
        )


@dataclass(frozen=True)
class RawOutcome:
    """Model-free statistics of a windowed curve.

    ``center``/``height`` are position and value of the maximum, ``fwhm`` the
    distance between the half-maximum crossings around it, ``centroid`` the
    intensity-weighted mean position and ``intensity`` the trapezoid
    integral.
    """

    count: int = 0
    center: float = math.nan
    height: float = math.nan
    fwhm: float = math.nan
    centroid: float = math.nan
    intensity: float = math.nan

    @classmethod
    def from_curve(cls, curve: Curve) -> "RawOutcome":
        xs, ys = curve.xs, curve.ys
        n = xs.size
        if n == 0:
            return cls()
        imax = int(np.argmax(ys))
        height = float(ys[imax])
        center = float(xs[imax])
        half = 0.5 * height

        lo = imax
        while lo > 0 and ys[lo - 1] >= half:
            lo -= 1
        hi = imax
        while hi < n - 1 and ys[hi + 1] >= half:
            hi += 1
        x_lo = float(np.interp(half, [ys[lo - 1], ys[lo]], [xs[lo - 1], xs[lo]])) if lo > 0 else float(xs[0])
        x_hi = float(np.interp(half, [ys[hi + 1], ys[hi]], [xs[hi + 1], xs[hi]])) if hi < n - 1 else float(xs[-1])
        fwhm = x_hi - x_lo
        if not fwhm > 0:
            fwhm = float(np.median(np.diff(xs))) if n > 1 else math.nan

        total = float(ys.sum())
        centroid = float((xs * ys).sum() / total) if total != 0 else math.nan
        intensity = float(np.trapezoid(ys, xs)) if n > 1 else math.nan
        return cls(n, center, height, fwhm, centroid, intensity)

    def peak_outcome(self) -> PeakOutcome:
        """Raw statistics in the shape of a fitted peak (zero errors)."""
        return PeakOutcome(
            center=DoubleWithError(self.center, 0.0),
            height=DoubleWithError(self.height, 0.0),
            fwhm=DoubleWithError(self.fwhm, 0.0),
            intensity=DoubleWithError(self.intensity, 0.0),
        )


# ===========================================================================
# Fit engine
# ===========================================================================

def fit_function(
    func: FitFunction,
    xs: np.ndarray,
    ys: np.ndarray,
    p0: Sequence[float],
    maxfev: int = 10_000,
) -> FitOutcome:
    """Least-squares fit of *func* to (xs, ys) starting from *p0*.

    Returns a failed outcome for fewer samples than parameters, a
    non-converging fit, non-finite parameters or a rank-deficient Jacobian.
    """
    xs = np.asarray(xs, dtype=float)
    ys = np.asarray(ys, dtype=float)
    mask = np.isfinite(xs) & np.isfinite(ys)
    xs, ys = xs[mask], ys[mask]
    n_par = func.n_par

    if len(p0) != n_par:
        raise ValueError(f"{func.name} needs {n_par} initial values, got {len(p0)}")
    if xs.size < n_par:
        return FitOutcome.failure(
            f"{func.name}: {xs.size} data point(s) for {n_par} parameter(s)"
        )

    def f(x, *p):
        return func.evaluate(x, np.asarray(p))

    def jac(x, *p):
        return func.jacobian(x, np.asarray(p))

    log.debug("fit %s: n=%d, p0=%s", func.name, xs.size, list(p0))
    try:
        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            popt, pcov = optimize.curve_fit(
                f, xs, ys, p0=np.asarray(p0, dtype=float),
                jac=jac, method="lm", maxfev=maxfev,
            )
    except (RuntimeError, ValueError, np.linalg.LinAlgError,
            optimize.OptimizeWarning) as exc:
        log.debug("fit %s failed: %s", func.name, exc)
        return FitOutcome.failure(f"{func.name}: fit did not converge: {exc}")

    if not np.all(np.isfinite(popt)):
        return FitOutcome.failure(f"{func.name}: non-finite parameters")
    jac_opt = np.asarray(jac(xs, *popt), dtype=float)
    if not np.all(np.isfinite(jac_opt)) or np.linalg.matrix_rank(jac_opt) < n_par:
        return FitOutcome.failure(f"{func.name}: singular Jacobian")

    diag = np.diag(pcov) if np.ndim(pcov) == 2 else np.full(n_par, np.nan)
    perr = np.where(np.isfinite(diag), np.sqrt(np.abs(diag)), np.nan)
    resid = ys - f(xs, *popt)
    chi2 = float(np.sum(resid ** 2))
    dof = max(1, xs.size - n_par)

    return FitOutcome(
        success=True,
        function=func,
        parameters=tuple(DoubleWithError(float(v), float(e)) for v, e in zip(popt, perr)),
        message="Fit converged.",
        chi2=chi2,
        dof=dof,
    )


def fit_polynomial(degree: int, curve: Curve, ranges: Optional[Ranges] = None) -> FitOutcome:
    """Fit a polynomial of *degree* to the points of *curve* inside *ranges*."""
    func = polynomial(degree)
    if ranges is not None:
        curve = curve.intersect(ranges)
    if curve.size < func.n_par:
        return FitOutcome.failure(
            f"Polynomial: {curve.size} data point(s) for {func.n_par} parameter(s)"
        )
    # Start Levenberg-Marquardt from the linear least-squares solution
    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        p0 = np.polynomial.polynomial.polyfit(curve.xs, curve.ys, degree)
    if not np.all(np.isfinite(p0)):
        p0 = np.zeros(func.n_par)
    return fit_function(func, curve.xs, curve.ys, p0)


def fit_peak(
    function_name: str,
    curve: Curve,
    raw: Optional[RawOutcome] = None,
    guess: Optional[Dict[str, float]] = None,
) -> FitOutcome:
    """Fit the peak shape *function_name* to *curve*.

    Initial height/center/fwhm come from the raw statistics of the curve
    unless given in *guess*.
    """
    func = peak_function(function_name)
    if curve.size < func.n_par:
        return FitOutcome.failure(
            f"{func.name}: {curve.size} data point(s) for {func.n_par} parameter(s)"
        )
    raw = raw if raw is not None else RawOutcome.from_curve(curve)
    start = {"height": raw.height, "center": raw.center, "fwhm": raw.fwhm}
    start.update({k: v for k, v in EXTRA_PARAM_DEFAULTS.items() if k in func.param_names})
    if guess:
        start.update({k: float(v) for k, v in guess.items() if v is not None})
    p0 = [start[name] for name in func.param_names]
    if not np.all(np.isfinite(p0)) or start["fwhm"] == 0:
        return FitOutcome.failure(f"{func.name}: no usable initial guess")
    return fit_function(func, curve.xs, curve.ys, p0)
