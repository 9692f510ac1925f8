"""
Statistical equilibrium at a single grid point.

The rate matrix ``M`` follows the convention ``dn_i/dt = sum_j M[i, j] n_j``:
the entry ``M[i, j]`` (i != j) is the rate per particle of transitions from
level j into level i, and the diagonal holds minus the total rate out of
each level, so that every column sums to zero.
"""

import logging
from functools import partial

import jax
import jax.numpy as jnp
import numpy as np

from .constants import HCKB

logger = logging.getLogger(__name__)


class PopulationSolveFailed(RuntimeError):
    """The rate equations at one point gave no physical solution."""


class CollisionTable:
    """
    All collisional transitions of a species, concatenated over partners.

    Attributes
    ----------
    lcu, lcl : np.ndarray
        Upper and lower level of every collisional transition.
    """

    def __init__(self, mol):
        self.mol = mol
        if mol.partners:
            self.lcu = np.concatenate([p.lcu for p in mol.partners])
            self.lcl = np.concatenate([p.lcl for p in mol.partners])
        else:
            self.lcu = np.zeros(0, dtype=np.int64)
            self.lcl = np.zeros(0, dtype=np.int64)
        self._boltzmann = (mol.energies[self.lcu] - mol.energies[self.lcl]) * HCKB
        self._gratio = mol.weights[self.lcu] / mol.weights[self.lcl]

    @property
    def n_transitions(self) -> int:
        return len(self.lcu)


@jax.jit
def _interpolate_rates(T, temperatures, rates):
    """Linear interpolation of a (ntrans, ntemp) table, clamped at the ends."""
    return jax.vmap(lambda row: jnp.interp(T, temperatures, row), out_axes=-1)(rates)


def collision_rates(mol, T, densities, table=None):
    """
    Collisional rates of ``mol`` at given temperatures and partner densities.

    Parameters
    ----------
    mol : MolecularData
    T : array
        Kinetic temperatures [K], shape (N,).
    densities : array
        Density components [m^-3], shape (N, ndens).
    table : CollisionTable, optional
        Precomputed transition table of ``mol``.

    Returns
    -------
    up, down : np.ndarray
        Rates [s^-1] of every collisional transition, shape (N, ntrans).
        Downward rates are interpolated in the partner tables, clamped to
        the table end values outside them; upward rates follow from
        detailed balance.
    """
    table = table or CollisionTable(mol)
    T = np.atleast_1d(np.asarray(T, dtype=np.float64))
    densities = np.atleast_2d(np.asarray(densities, dtype=np.float64))
    if not mol.partners:
        empty = np.zeros((len(T), 0))
        return empty, empty.copy()

    down = []
    for p in mol.partners:
        lo, hi = p.temperatures[0], p.temperatures[-1]
        if np.any((T < lo) | (T > hi)):
            logger.debug(f"{mol.name}/{p.name}: temperatures outside [{lo}, {hi}] K are clamped "
                         f"to the table ends")
        k = np.asarray(_interpolate_rates(jnp.asarray(T), jnp.asarray(p.temperatures),
                                          jnp.asarray(p.down)))
        n_partner = densities[:, p.density_index] * p.density_scale
        down.append(k * n_partner[:, None])
    down = np.concatenate(down, axis=1)
    up = down * table._gratio * np.exp(-table._boltzmann / T[:, None])
    return up, down


@partial(jax.jit, static_argnames=("nlev",))
def assemble_rate_matrix(nlev, lau, lal, aeinst, beinstu, beinstl, jbar, lcu, lcl, up, down):
    """
    Build the rate matrix of one point.

    Parameters
    ----------
    nlev : int
        Number of levels.
    lau, lal, aeinst, beinstu, beinstl : array
        Radiative transitions of the species.
    jbar : array
        Mean intensity in every line [W m^-2 Hz^-1 sr^-1].
    lcu, lcl, up, down : array
        Collisional transitions and their rates [s^-1] at this point.

    Returns
    -------
    jnp.ndarray
        The (nlev, nlev) rate matrix with zero column sums.
    """
    M = jnp.zeros((nlev, nlev))
    M = M.at[lau, lal].add(beinstl * jbar)
    M = M.at[lal, lau].add(aeinst + beinstu * jbar)
    M = M.at[lcu, lcl].add(up)
    M = M.at[lcl, lcu].add(down)
    M = M - jnp.diag(jnp.diag(M))
    return M - jnp.diag(M.sum(axis=0))


@jax.jit
def _solve_with_normalisation(matrix, row):
    nlev = matrix.shape[0]
    A = matrix.at[row, :].set(1.0)
    rhs = jnp.zeros(nlev).at[row].set(1.0)
    return jnp.linalg.solve(A, rhs)


def solve_rate_matrix(matrix, pops_guess, pop_floor=1e-30, negative_tolerance=1e-6):
    """
    Solve the rate equations for the equilibrium populations.

    The equation of the most populated level in ``pops_guess`` is replaced
    by the normalisation ``sum(n) = 1``.

    Returns
    -------
    np.ndarray
        Populations, all at least ``pop_floor`` and summing to one.

    Raises
    ------
    PopulationSolveFailed
        If the system is singular or a population comes out more negative
        than ``negative_tolerance``.
    """
    row = int(np.argmax(pops_guess))
    pops = np.asarray(_solve_with_normalisation(jnp.asarray(matrix), row))
    if not np.all(np.isfinite(pops)):
        raise PopulationSolveFailed("singular rate matrix")
    if pops.min() < -negative_tolerance:
        raise PopulationSolveFailed(f"negative population {pops.min():.3e}")
    pops = np.maximum(pops, pop_floor)
    return pops / pops.sum()


def relative_change(new, old, min_pop):
    """Largest fractional change over levels with ``new > min_pop``."""
    new = np.asarray(new)
    mask = new > min_pop
    if not np.any(mask):
        return 0.0
    return float(np.max(np.abs(new[mask] - np.asarray(old)[mask]) / new[mask]))


class PointRates:
    """
    Everything the rate equations of one point need besides jbar.

    Bundles the radiative data of a species with the collisional rates
    already evaluated at the point, so that repeated solves within an
    iteration only pass the changing mean intensity.
    """

    def __init__(self, mol, table: CollisionTable, up, down):
        self.nlev = mol.nlev
        self._radiative = tuple(jnp.asarray(a) for a in
                                (mol.lau, mol.lal, mol.aeinst, mol.beinstu, mol.beinstl))
        self._collisional = (jnp.asarray(table.lcu), jnp.asarray(table.lcl),
                             jnp.asarray(up), jnp.asarray(down))

    def matrix(self, jbar):
        lau, lal, aeinst, beinstu, beinstl = self._radiative
        lcu, lcl, up, down = self._collisional
        return assemble_rate_matrix(self.nlev, lau, lal, aeinst, beinstu, beinstl,
                                    jnp.asarray(jbar), lcu, lcl, up, down)

    def solve(self, jbar, pops_guess, pop_floor=1e-30, negative_tolerance=1e-6):
        return solve_rate_matrix(self.matrix(jbar), pops_guess, pop_floor, negative_tolerance)


def statistical_equilibrium(rates: PointRates, pops, jbar_fn, params):
    """
    Iterate the local rate equations with a population-dependent mean intensity.

    ``jbar_fn(pops)`` returns the mean intensity in every line given trial
    populations of this point; the local contribution to it is what makes
    the equations non-linear. The iteration runs at least
    ``params.min_sub_iterations`` and at most ``params.max_sub_iterations``
    times and stops once the fractional change drops below
    ``params.tolerance``.

    Returns
    -------
    pops : np.ndarray
        The new populations.
    n_iter : int
        Number of solves performed.

    Raises
    ------
    PopulationSolveFailed
        If any of the solves fails.
    """
    pops = np.asarray(pops, dtype=np.float64)
    for it in range(1, params.max_sub_iterations + 1):
        new = rates.solve(jbar_fn(pops), pops, params.pop_floor, params.negative_tolerance)
        diff = relative_change(new, pops, params.min_pop)
        pops = new
        if it >= params.min_sub_iterations and diff < params.tolerance:
            break
    return pops, it
