"""
pylime: non-LTE molecular line radiative transfer on unstructured 3D grids.

Level populations are solved at every point of a Delaunay grid, coupled to
a Monte Carlo estimate of the local radiation field, and iterated until
they converge. JAX is used for the per-point rate-matrix kernels.
"""

# Enable 64-bit precision in JAX; the rate equations are badly conditioned
# in single precision. This must happen before any JAX operations.
import os
os.environ.setdefault("JAX_ENABLE_X64", "true")
import jax
jax.config.update("jax_enable_x64", True)

__version__ = "0.1.0"

from . import constants

from .config import ConfigurationError, Parameters
from .grid import FatalGeometryError, Grid, GridPoint, build_grid, generate_points, smooth_points
from .fields import PhysicalModel, sample_fields, sample_edge_velocities
from .molecular_data import CollisionPartner, MolecularData
from .source_function import DustOpacity, planck
from .blends import BlendSet, find_blends
from .populations import Populations, lte_populations, prepare_populations
from .ratematrix import PopulationSolveFailed, assemble_rate_matrix, collision_rates, solve_rate_matrix
from .transport import RayBuffer, mean_intensity, trace_photons
from .convergence import (
    ConvergenceResult, ConvergenceState, ConvergenceTracker, LevelPopulationSolver,
    NonConvergenceError, PassReport,
)
from .persistence import load_grid, save_grid
from .engine import build_model_grid, resume, run, solve_populations

__all__ = [
    # Version
    "__version__",
    # Submodules
    "constants",
    # Configuration and errors
    "Parameters",
    "ConfigurationError",
    "FatalGeometryError",
    "PopulationSolveFailed",
    "NonConvergenceError",
    # Inputs
    "PhysicalModel",
    "MolecularData",
    "CollisionPartner",
    "DustOpacity",
    # Grid
    "Grid",
    "GridPoint",
    "build_grid",
    "generate_points",
    "smooth_points",
    "sample_fields",
    "sample_edge_velocities",
    # Physics
    "planck",
    "BlendSet",
    "find_blends",
    "Populations",
    "lte_populations",
    "prepare_populations",
    "collision_rates",
    "assemble_rate_matrix",
    "solve_rate_matrix",
    "RayBuffer",
    "trace_photons",
    "mean_intensity",
    # Iteration
    "ConvergenceState",
    "ConvergenceTracker",
    "ConvergenceResult",
    "PassReport",
    "LevelPopulationSolver",
    # Entry points
    "build_model_grid",
    "solve_populations",
    "run",
    "resume",
    "save_grid",
    "load_grid",
]
