"""
Sampling of the user's physical fields onto the grid.

The callbacks are evaluated exactly once per grid point (and five times per
neighbour edge for the velocity), so they may be slow; they must be
deterministic for a given position.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

import numpy as np

from .config import ConfigurationError
from .constants import DIM, N_EDGE_SAMPLES

logger = logging.getLogger(__name__)

# Positions along an edge, as a fraction of its length, at which the
# velocity is sampled
EDGE_SAMPLE_POSITIONS = np.linspace(0.0, 1.0, N_EDGE_SAMPLES)

_EDGE_VANDERMONDE_INV = np.linalg.inv(
    np.vander(EDGE_SAMPLE_POSITIONS, N_EDGE_SAMPLES, increasing=True))

DEFAULT_GAS_TO_DUST = 100.0


@dataclass(frozen=True)
class PhysicalModel:
    """
    Physical field callbacks of a model.

    Every callback takes the Cartesian position ``(x, y, z)`` [m].

    Attributes
    ----------
    density : callable
        Returns a sequence of number densities [m^-3], one per collision
        partner density field.
    temperature : callable
        Returns ``(T_kin, T_dust)`` [K]. A non-positive dust temperature
        means "same as kinetic".
    abundance : callable
        Returns a sequence of fractional abundances relative to the first
        density component, one per species.
    doppler : callable
        Returns the turbulent Doppler b parameter [m/s].
    velocity : callable
        Returns the bulk velocity vector [m/s].
    magnetic_field : callable, optional
        Returns the magnetic field vector [T]. Stored for downstream use only.
    gas_to_dust : callable, optional
        Returns the gas-to-dust mass ratio. Defaults to 100 everywhere.
    """
    density: Callable
    temperature: Callable
    abundance: Callable
    doppler: Callable
    velocity: Callable
    magnetic_field: Optional[Callable] = None
    gas_to_dust: Optional[Callable] = None


def sample_fields(grid, model: PhysicalModel, n_species: int, n_densities: Optional[int] = None):
    """
    Evaluate the point-wise callbacks at every grid point and store the
    results on ``grid``.

    Parameters
    ----------
    grid : Grid
        The grid; its field attributes are overwritten.
    model : PhysicalModel
    n_species : int
        Number of species; the abundance callback must return exactly this
        many values.
    n_densities : int, optional
        Minimum number of density components the density callback must
        return (one more than the highest partner density index in use).

    Raises
    ------
    ConfigurationError
        If a callback returns the wrong number of components.
    """
    n = grid.n_points
    density, abundance = [], []
    temperature = np.zeros((n, 2))
    doppler = np.zeros(n)
    velocity = np.zeros((n, DIM))
    bfield = np.zeros((n, DIM))
    gas_to_dust = np.full(n, DEFAULT_GAS_TO_DUST)

    for i, (x, y, z) in enumerate(grid.positions):
        dens = np.atleast_1d(np.asarray(model.density(x, y, z), dtype=np.float64))
        abun = np.atleast_1d(np.asarray(model.abundance(x, y, z), dtype=np.float64))
        if len(abun) != n_species:
            raise ConfigurationError(
                f"abundance callback returned {len(abun)} values for {n_species} species")
        if i and len(dens) != len(density[0]):
            raise ConfigurationError("density callback returned a varying number of components")
        density.append(dens)
        abundance.append(abun)

        tkin, tdust = model.temperature(x, y, z)
        temperature[i] = tkin, (tdust if tdust > 0 else tkin)
        doppler[i] = model.doppler(x, y, z)
        velocity[i] = model.velocity(x, y, z)
        if model.magnetic_field is not None:
            bfield[i] = model.magnetic_field(x, y, z)
        if model.gas_to_dust is not None:
            gas_to_dust[i] = model.gas_to_dust(x, y, z)

    density = np.array(density)
    if n_densities is not None and density.shape[1] < n_densities:
        raise ConfigurationError(
            f"density callback returned {density.shape[1]} components, "
            f"but collision partners need {n_densities}")
    interior = ~grid.sink
    if np.any(temperature[interior, 0] <= 0):
        raise ConfigurationError("kinetic temperatures must be positive")
    if np.any(density[interior] < 0) or np.any(np.array(abundance)[interior] < 0):
        raise ConfigurationError("densities and abundances cannot be negative")

    grid.density = density
    grid.temperature = temperature
    grid.abundance = np.array(abundance)
    grid.doppler = doppler
    grid.velocity = velocity
    grid.magnetic_field = bfield
    grid.gas_to_dust = gas_to_dust
    logger.debug(f"Sampled fields at {n} points")
    return grid


def sample_edge_velocities(grid, model: PhysicalModel):
    """
    Fit the velocity along every neighbour edge with a quartic polynomial.

    The velocity is sampled at five equally spaced positions ``s`` in
    [0, 1] along each edge and the interpolating polynomial coefficients
    are stored in ``grid.velocity_coeffs``, shape (N, K, 5, 3), so that the
    velocity at fraction ``s`` of edge ``(i, k)`` is
    ``sum_p coeffs[i, k, p] * s**p``. Rays stop on entering a sink, so
    edges starting at sink points are left at zero.
    """
    n, k_max = grid.neighbors.shape
    coeffs = np.zeros((n, k_max, N_EDGE_SAMPLES, DIM))
    for i in grid.interior:
        origin = grid.positions[i]
        for k in range(grid.n_neighbors[i]):
            step = grid.edge_length[i, k] * grid.edge_dir[i, k]
            samples = np.array([model.velocity(*(origin + s * step)) for s in EDGE_SAMPLE_POSITIONS],
                               dtype=np.float64)
            coeffs[i, k] = _EDGE_VANDERMONDE_INV @ samples
    grid.velocity_coeffs = coeffs
    return grid


def edge_velocity(coeffs, s):
    """
    Evaluate edge velocity polynomials.

    Parameters
    ----------
    coeffs : array
        Polynomial coefficients, shape (..., 5, 3).
    s : array
        Fractions along the edges, shape (...,).

    Returns
    -------
    array
        Velocities, shape (..., 3).
    """
    powers = np.asarray(s)[..., None] ** np.arange(N_EDGE_SAMPLES)
    return np.einsum("...p,...pd->...d", powers, coeffs)


def sample_model(grid, model: PhysicalModel, n_species: int, n_densities: Optional[int] = None):
    """Sample both the point fields and the edge velocity polynomials."""
    sample_fields(grid, model, n_species, n_densities)
    return sample_edge_velocities(grid, model)


def required_densities(molecules: Sequence) -> int:
    """Number of density components the collision partners of ``molecules`` read."""
    indices = [p.density_index for mol in molecules for p in mol.partners]
    return max(indices) + 1 if indices else 1
