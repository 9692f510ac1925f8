"""
Natural cubic spline interpolation in JAX.

Used for tabulated quantities that are smooth in log space, such as dust
opacity tables.
"""

import jax.numpy as jnp
from jax.scipy.linalg import solve
from dataclasses import dataclass


@dataclass
class CubicSpline:
    """
    Natural cubic spline interpolant.

    Attributes
    ----------
    t : array
        Knot abscissae, strictly increasing.
    u : array
        Knot ordinates.
    h : array
        Knot spacings, ``h[i] = t[i+1] - t[i]``.
    z : array
        Second derivatives at the knots.
    extrapolate : bool
        If False, evaluation outside ``[t[0], t[-1]]`` raises ValueError.
        If True, the end segments are continued linearly.
    """
    t: jnp.ndarray
    u: jnp.ndarray
    h: jnp.ndarray
    z: jnp.ndarray
    extrapolate: bool

    def __call__(self, t_eval):
        t_eval = jnp.asarray(t_eval)
        if not self.extrapolate:
            if jnp.any((t_eval < self.t[0]) | (t_eval > self.t[-1])):
                raise ValueError(
                    f"Out-of-bounds value passed to interpolant. "
                    f"Must be between {float(self.t[0])} and {float(self.t[-1])}"
                )

        inside = self._evaluate(jnp.clip(t_eval, self.t[0], self.t[-1]))
        if not self.extrapolate:
            return inside

        # Linear continuation with the end-point slopes
        slope_lo = ((self.u[1] - self.u[0]) / self.h[0]
                    - self.h[0] * (2 * self.z[0] + self.z[1]) / 6)
        slope_hi = ((self.u[-1] - self.u[-2]) / self.h[-1]
                    + self.h[-1] * (self.z[-2] + 2 * self.z[-1]) / 6)
        below = self.u[0] + slope_lo * (t_eval - self.t[0])
        above = self.u[-1] + slope_hi * (t_eval - self.t[-1])
        return jnp.where(t_eval < self.t[0], below,
                         jnp.where(t_eval > self.t[-1], above, inside))

    def _evaluate(self, t_eval):
        # largest i with t[i] <= t_eval, restricted to valid intervals
        i = jnp.searchsorted(self.t, t_eval, side='right') - 1
        i = jnp.clip(i, 0, len(self.t) - 2)

        h = self.h[i]
        left = self.t[i + 1] - t_eval
        right = t_eval - self.t[i]
        return (self.z[i] * left**3 / (6 * h) +
                self.z[i + 1] * right**3 / (6 * h) +
                (self.u[i + 1] / h - self.z[i + 1] * h / 6) * right +
                (self.u[i] / h - self.z[i] * h / 6) * left)


def cubic_spline(t, u, extrapolate=False):
    """
    Construct a natural cubic spline interpolant.

    Parameters
    ----------
    t : array_like
        Knot abscissae. Must be strictly increasing, with at least 2 knots.
    u : array_like
        Knot ordinates.
    extrapolate : bool, optional
        If False (default), out-of-bounds evaluation raises errors.
        If True, the spline is continued linearly beyond the end knots.

    Returns
    -------
    CubicSpline
        The interpolant object, callable for evaluation.

    Examples
    --------
    >>> t = jnp.array([0., 1., 2., 3.])
    >>> u = jnp.array([0., 1., 4., 9.])
    >>> spline = cubic_spline(t, u)
    >>> spline(1.5)
    """
    t = jnp.asarray(t, dtype=jnp.float64)
    u = jnp.asarray(u, dtype=jnp.float64)
    if t.shape != u.shape or t.ndim != 1 or len(t) < 2:
        raise ValueError("t and u must be 1-d arrays of equal length >= 2")

    n = len(t)
    h = jnp.diff(t)

    # Tridiagonal system for the second derivatives. The natural boundary
    # conditions z[0] = z[n-1] = 0 are imposed as identity rows.
    main = jnp.ones(n)
    main = main.at[1:-1].set(2.0 * (h[:-1] + h[1:]))
    upper = jnp.zeros(n - 1).at[1:].set(h[1:])
    lower = jnp.zeros(n - 1).at[:-1].set(h[:-1])
    A = jnp.diag(main) + jnp.diag(upper, 1) + jnp.diag(lower, -1)

    slopes = jnp.diff(u) / h
    rhs = jnp.zeros(n).at[1:-1].set(6.0 * (slopes[1:] - slopes[:-1]))

    z = solve(A, rhs)
    return CubicSpline(t, u, h, z, extrapolate)
