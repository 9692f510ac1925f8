"""
Level populations and the per-point quantities derived from the fields.
"""

from dataclasses import dataclass
from typing import NamedTuple

import jax
import jax.numpy as jnp
import numpy as np

from .constants import AMU, KBOLTZ, HCKB
from .ratematrix import CollisionTable, PointRates, collision_rates
from .source_function import dust_coefficients


class Rates(NamedTuple):
    """Collisional rates [s^-1] per point and collisional transition."""
    up: np.ndarray
    down: np.ndarray


@jax.jit
def _boltzmann(energies, weights, T):
    T = T[..., None]
    safe_T = jnp.where(T > 0, T, 1.0)
    # relative to the ground state, which keeps the exponent bounded
    w = weights * jnp.exp(-(energies - energies[0]) * HCKB / safe_T)
    ground = jnp.zeros_like(w).at[..., 0].set(1.0)
    w = jnp.where(T > 0, w, ground)
    return w / w.sum(axis=-1, keepdims=True)


def lte_populations(mol, T, pop_floor=1e-30):
    """
    Boltzmann populations of ``mol`` at kinetic temperature ``T``.

    Parameters
    ----------
    mol : MolecularData
    T : float or array
        Temperature(s) [K]. A non-positive temperature puts everything in
        the lowest level.
    pop_floor : float
        Lower limit of every population; levels that underflow are raised
        to it before renormalising.

    Returns
    -------
    np.ndarray
        Writable populations, shape ``np.shape(T) + (nlev,)``.
    """
    pops = np.array(_boltzmann(jnp.asarray(mol.energies), jnp.asarray(mol.weights),
                               jnp.asarray(T, dtype=jnp.float64)))
    pops = np.maximum(pops, pop_floor)
    return pops / pops.sum(axis=-1, keepdims=True)


@dataclass
class Populations:
    """
    Level populations of one species on the whole grid.

    Attributes
    ----------
    species : int
        Index of the species in the run.
    pops : np.ndarray
        Level populations, shape (N, nlev).
    nmol : np.ndarray
        Number density of the species [m^-3], shape (N,).
    binv : np.ndarray
        Inverse Doppler width [s/m], shape (N,).
    knu, dust : np.ndarray
        Dust opacity [m^-1] and dust Planck function per point and line.
    rates : Rates
        Collisional rates per point.
    converged : np.ndarray
        Convergence flag per point from the last pass.
    change : np.ndarray
        Fractional population change per point in the last pass.
    """
    species: int
    pops: np.ndarray
    nmol: np.ndarray
    binv: np.ndarray
    knu: np.ndarray
    dust: np.ndarray
    rates: Rates
    converged: np.ndarray
    change: np.ndarray

    def point_rates(self, mol, table: CollisionTable, i: int) -> PointRates:
        return PointRates(mol, table, self.rates.up[i], self.rates.down[i])


def inverse_doppler_width(T, molecular_weight, doppler):
    """1 / sqrt(2 k T / m + b_turb^2)."""
    T = np.asarray(T, dtype=np.float64)
    return 1.0 / np.sqrt(2.0 * KBOLTZ * T / (AMU * molecular_weight) + np.asarray(doppler) ** 2)


def prepare_populations(grid, mol, species_index: int, dust_opacity=None,
                        table: CollisionTable = None, pop_floor: float = 1e-30) -> Populations:
    """
    Derive the per-point quantities of one species from the sampled fields.

    Populations start in LTE at the local kinetic temperature, floored at
    ``pop_floor``.
    """
    table = table or CollisionTable(mol)
    tkin = grid.temperature[:, 0]
    nmol = grid.abundance[:, species_index] * grid.density[:, 0]
    binv = inverse_doppler_width(tkin, mol.molecular_weight, grid.doppler)
    knu, dust = dust_coefficients(dust_opacity, mol, grid.density[:, 0], grid.gas_to_dust,
                                  grid.temperature[:, 1])
    up, down = collision_rates(mol, np.where(tkin > 0, tkin, 1.0), grid.density, table)
    n = grid.n_points
    return Populations(
        species=species_index,
        pops=lte_populations(mol, tkin, pop_floor),
        nmol=nmol,
        binv=binv,
        knu=knu,
        dust=dust,
        rates=Rates(up, down),
        converged=np.zeros(n, dtype=bool),
        change=np.full(n, np.inf),
    )
