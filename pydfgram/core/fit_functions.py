"""
Parametric functions for baseline and peak fitting.

Each function is a :class:`FitFunction` record bundling ``evaluate(x, p)``,
its analytic ``jacobian(x, p)`` (shape ``(len(x), n_par)``) and the ordered
parameter names.  The fit engine in :mod:`pydfgram.core.fit` only talks to
this interface.

Peak shapes are parameterized with **height** (value at the center),
**center** and **fwhm** (full width at half maximum) so that fitted values
are directly the physical quantities shown to users.

Supported peak shapes
---------------------
* Gaussian
* Lorentzian
* PseudoVoigt  (η·Lorentzian + (1−η)·Gaussian, common FWHM)

plus the pseudo-shape ``Raw``, for which no fit is attempted.

Adding a shape means writing its evaluate/jacobian pair and calling
:func:`register_peak_function`; the fit engine is not touched.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, Tuple

import numpy as np

# ===========================================================================
# Capability record
# ===========================================================================

ArrayFunc = Callable[[np.ndarray, np.ndarray], np.ndarray]


@dataclass(frozen=True)
class FitFunction:
    """y = f(x; p) with Jacobian ∂f/∂p."""

    name: str
    param_names: Tuple[str, ...]
    evaluate: ArrayFunc
    jacobian: ArrayFunc

    @property
    def n_par(self) -> int:
        return len(self.param_names)

    def __call__(self, x, params) -> np.ndarray:
        return self.evaluate(np.asarray(x, dtype=float), np.asarray(params, dtype=float))


RAW = "Raw"

# ===========================================================================
# Polynomial
# ===========================================================================

def _poly_eval(x: np.ndarray, p: np.ndarray) -> np.ndarray:
    return np.polynomial.polynomial.polyval(x, p)


def _poly_jac(x: np.ndarray, p: np.ndarray) -> np.ndarray:
    return np.vander(np.atleast_1d(x), len(p), increasing=True)


def polynomial(degree: int) -> FitFunction:
    """Polynomial p0 + p1·x + … + p_degree·x^degree."""
    if degree < 0:
        raise ValueError(f"polynomial degree must be >= 0, got {degree}")
    return FitFunction(
        name="Polynomial",
        param_names=tuple(f"p{k}" for k in range(degree + 1)),
        evaluate=_poly_eval,
        jacobian=_poly_jac,
    )


# ===========================================================================
# Peak profiles
# ===========================================================================

_LN2 = np.log(2.0)


def _gauss_unit(x, center, fwhm):
    """Unit-height Gaussian and its derivatives w.r.t. center and fwhm."""
    u = x - center
    g = np.exp(-4.0 * _LN2 * u ** 2 / fwhm ** 2)
    dg_dc = g * 8.0 * _LN2 * u / fwhm ** 2
    dg_dw = g * 8.0 * _LN2 * u ** 2 / fwhm ** 3
    return g, dg_dc, dg_dw


def _lorentz_unit(x, center, fwhm):
    """Unit-height Lorentzian and its derivatives w.r.t. center and fwhm."""
    u = x - center
    q = 1.0 + 4.0 * u ** 2 / fwhm ** 2
    ell = 1.0 / q
    dl_dc = 8.0 * u / (fwhm ** 2 * q ** 2)
    dl_dw = 8.0 * u ** 2 / (fwhm ** 3 * q ** 2)
    return ell, dl_dc, dl_dw


def _gaussian_eval(x, p):
    height, center, fwhm = p
    return height * _gauss_unit(x, center, fwhm)[0]


def _gaussian_jac(x, p):
    height, center, fwhm = p
    g, dc, dw = _gauss_unit(np.atleast_1d(x), center, fwhm)
    return np.column_stack([g, height * dc, height * dw])


def _lorentzian_eval(x, p):
    height, center, fwhm = p
    return height * _lorentz_unit(x, center, fwhm)[0]


def _lorentzian_jac(x, p):
    height, center, fwhm = p
    ell, dc, dw = _lorentz_unit(np.atleast_1d(x), center, fwhm)
    return np.column_stack([ell, height * dc, height * dw])


def _pseudo_voigt_eval(x, p):
    height, center, fwhm, eta = p
    g = _gauss_unit(x, center, fwhm)[0]
    ell = _lorentz_unit(x, center, fwhm)[0]
    return height * (eta * ell + (1.0 - eta) * g)


def _pseudo_voigt_jac(x, p):
    height, center, fwhm, eta = p
    x = np.atleast_1d(x)
    g, g_c, g_w = _gauss_unit(x, center, fwhm)
    ell, l_c, l_w = _lorentz_unit(x, center, fwhm)
    return np.column_stack([
        eta * ell + (1.0 - eta) * g,
        height * (eta * l_c + (1.0 - eta) * g_c),
        height * (eta * l_w + (1.0 - eta) * g_w),
        height * (ell - g),
    ])


_PEAK_PARAMS = ("height", "center", "fwhm")

PEAK_FUNCTIONS: Dict[str, FitFunction] = {}


def register_peak_function(func: FitFunction) -> None:
    """Make *func* selectable as a peak shape by its name."""
    if tuple(func.param_names[:3]) != _PEAK_PARAMS:
        raise ValueError(
            f"peak function {func.name!r} must start with parameters {_PEAK_PARAMS}"
        )
    PEAK_FUNCTIONS[func.name] = func


register_peak_function(FitFunction("Gaussian", _PEAK_PARAMS, _gaussian_eval, _gaussian_jac))
register_peak_function(FitFunction("Lorentzian", _PEAK_PARAMS, _lorentzian_eval, _lorentzian_jac))
register_peak_function(FitFunction("PseudoVoigt", _PEAK_PARAMS + ("eta",),
                                   _pseudo_voigt_eval, _pseudo_voigt_jac))

# Initial guess for shape parameters beyond height/center/fwhm
EXTRA_PARAM_DEFAULTS: Dict[str, float] = {"eta": 0.5}


def peak_function_names() -> Tuple[str, ...]:
    """Selectable peak shapes, ``Raw`` first."""
    return (RAW,) + tuple(PEAK_FUNCTIONS)


def peak_function(name: str) -> FitFunction:
    try:
        return PEAK_FUNCTIONS[name]
    except KeyError:
        raise ValueError(f"Unknown peak function: {name!r}") from None


def check_peak_function_name(name: str) -> str:
    if name != RAW:
        peak_function(name)
    return name
