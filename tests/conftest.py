"""
Pytest configuration and shared fixtures for pylime tests.

JAX x64 mode is enabled before any test module imports pylime.
"""

import os

# Set x64 mode via environment variable BEFORE any imports
os.environ["JAX_ENABLE_X64"] = "true"

import numpy as np  # noqa: E402
import pytest  # noqa: E402

import pylime  # noqa: E402
from pylime.fields import PhysicalModel, sample_model  # noqa: E402
from pylime.grid import build_grid  # noqa: E402
from pylime.molecular_data import CollisionPartner, MolecularData, two_level_molecule  # noqa: E402

RADIUS = 1.0e15  # m

# Slightly perturbed octahedron, so that the point set is in general position
_SINK_DIRECTIONS = np.array([
    [1.0, 0.05, 0.02],
    [-1.0, -0.03, 0.04],
    [0.04, 1.0, -0.05],
    [-0.02, -1.0, 0.03],
    [0.05, -0.04, 1.0],
    [-0.03, 0.02, -1.0],
])


def uniform_model(density=1.0e10, tkin=20.0, tdust=0.0, abundance=1.0e-9, doppler=200.0,
                  velocity=None):
    """A model with constant fields; ``velocity`` may be a callable."""
    if velocity is None:
        velocity = lambda x, y, z: (0.0, 0.0, 0.0)  # noqa: E731
    abundances = np.atleast_1d(abundance)
    return PhysicalModel(
        density=lambda x, y, z: [density],
        temperature=lambda x, y, z: (tkin, tdust),
        abundance=lambda x, y, z: list(abundances),
        doppler=lambda x, y, z: doppler,
        velocity=velocity,
    )


def single_point_grid(model, n_species=1, radius=RADIUS):
    """One interior point surrounded by six sink points on the surface."""
    sinks = _SINK_DIRECTIONS / np.linalg.norm(_SINK_DIRECTIONS, axis=1)[:, None] * radius
    points = np.vstack([[0.01 * radius, -0.02 * radius, 0.015 * radius], sinks])
    sink = np.array([False] + [True] * len(sinks))
    grid = build_grid(points, sink, radius, solid_angle_samples=400, seed=3)
    return sample_model(grid, model, n_species)


@pytest.fixture
def two_level():
    return two_level_molecule(energy=3.84, aeinst=7.2e-8, rate=1e-17).validate()


@pytest.fixture
def three_level():
    """A three-level rotor with two lines and one collision partner."""
    partner = CollisionPartner(
        "H2", 0, [10.0, 20.0, 50.0, 100.0],
        lcu=[1, 2, 2], lcl=[0, 0, 1],
        down=[[3.0e-17, 3.2e-17, 3.5e-17, 3.8e-17],
              [1.0e-17, 1.1e-17, 1.2e-17, 1.3e-17],
              [4.0e-17, 4.3e-17, 4.6e-17, 5.0e-17]],
    )
    return MolecularData(
        "rotor", 28.0,
        energies=[0.0, 3.845, 11.535],
        weights=[1.0, 3.0, 5.0],
        lau=[1, 2], lal=[0, 1],
        aeinst=[7.2e-8, 6.9e-7],
        freq=[115.2712018e9, 230.538e9],
        partners=(partner,),
    ).validate()
