"""
Top-level entry points: build a grid for a model and iterate its level
populations to convergence.
"""

import logging
from typing import Callable, Optional, Sequence

import numpy as np

from .config import ConfigurationError, Parameters
from .convergence import ConvergenceResult, LevelPopulationSolver
from .fields import PhysicalModel, required_densities, sample_model
from .grid import Grid, build_grid, generate_points, smooth_points
from .molecular_data import MolecularData, validate_species
from .persistence import load_grid, save_grid
from .populations import prepare_populations
from .ratematrix import CollisionTable
from .source_function import DustOpacity

logger = logging.getLogger(__name__)


def build_model_grid(model: PhysicalModel, params: Parameters, n_species: int,
                     n_densities: Optional[int] = None) -> Grid:
    """
    Sample points from ``model``, smooth them, build the grid and sample
    the fields onto it.

    All random numbers are drawn from generators seeded by ``params.seed``.
    """
    params.validate()
    rng = np.random.default_rng(np.random.SeedSequence([params.seed, 0]))
    points, sink = generate_points(model, params, rng)
    points = smooth_points(points, sink, params.radius, params.min_scale,
                           params.smooth_iterations)
    grid = build_grid(points, sink, params.radius, params.solid_angle_samples, params.seed)
    sample_model(grid, model, n_species, n_densities)
    logger.info(f"Built grid of {grid.n_points} points ({np.count_nonzero(grid.sink)} sinks)")
    return grid


def _prepare(grid, molecules, params, dust):
    molecules = validate_species(molecules)
    if not grid.has_fields:
        raise ConfigurationError("grid has no sampled fields")
    if grid.abundance.shape[1] != len(molecules):
        raise ConfigurationError(
            f"grid carries abundances of {grid.abundance.shape[1]} species, "
            f"{len(molecules)} molecules given")
    if grid.density.shape[1] < required_densities(molecules):
        raise ConfigurationError(
            f"collision partners need {required_densities(molecules)} density components, "
            f"the grid has {grid.density.shape[1]}")
    populations = [prepare_populations(grid, mol, s, dust, CollisionTable(mol),
                                       params.pop_floor)
                   for s, mol in enumerate(molecules)]
    return molecules, populations


def file_checkpoint(path) -> Callable:
    """A checkpoint hook that saves the solver state to ``path`` after each pass."""
    def checkpoint(solver):
        save_grid(path, solver.grid, solver.populations, solver.n_rays,
                  solver.tracker.iteration, [m.name for m in solver.molecules],
                  solver.tracker.streak)
    return checkpoint


def solve_populations(grid: Grid, molecules: Sequence[MolecularData], params: Parameters,
                      dust: Optional[DustOpacity] = None, progress: Optional[Callable] = None,
                      checkpoint=None) -> ConvergenceResult:
    """
    Iterate the level populations on an existing grid.

    ``checkpoint`` is either a callable receiving the solver after each pass
    or a path to save the state to.
    """
    params.validate()
    molecules, populations = _prepare(grid, molecules, params, dust)
    if checkpoint is not None and not callable(checkpoint):
        checkpoint = file_checkpoint(checkpoint)
    solver = LevelPopulationSolver(grid, molecules, populations, params, progress, checkpoint)
    return solver.run()


def run(model: PhysicalModel, molecules: Sequence[MolecularData], params: Parameters,
        dust: Optional[DustOpacity] = None, progress: Optional[Callable] = None,
        checkpoint=None) -> ConvergenceResult:
    """
    Build a grid for ``model`` and solve the level populations of
    ``molecules`` on it.

    Parameters
    ----------
    model : PhysicalModel
        Field callbacks.
    molecules : sequence of MolecularData
        Species, in the order of the abundance callback's output.
    params : Parameters
    dust : DustOpacity, optional
        Dust opacity; without it the continuum is ignored.
    progress : callable, optional
        Receives a :class:`~pylime.convergence.PassReport` after each pass.
    checkpoint : callable or path, optional
        Per-pass checkpoint hook or file.

    Returns
    -------
    ConvergenceResult

    Raises
    ------
    ConfigurationError
        If the parameters or the molecular data are invalid.
    FatalGeometryError
        If no grid can be built.
    """
    params.validate()
    molecules = validate_species(molecules)
    grid = build_model_grid(model, params, len(molecules), required_densities(molecules))
    return solve_populations(grid, molecules, params, dust, progress, checkpoint)


def resume(path, molecules: Sequence[MolecularData], params: Parameters,
           dust: Optional[DustOpacity] = None, progress: Optional[Callable] = None,
           checkpoint=None) -> ConvergenceResult:
    """
    Continue a run from a file written by a checkpoint.

    The pass counter and the goal streak continue from the saved state, so
    a resumed run ends where an uninterrupted one would and
    ``params.max_iterations`` bounds the total number of passes.
    """
    params.validate()
    saved = load_grid(path)
    molecules, populations = _prepare(saved.grid, molecules, params, dust)
    if len(saved.species) != len(molecules):
        raise ConfigurationError(
            f"{path} holds {len(saved.species)} species, {len(molecules)} molecules given")
    for mol, p, state in zip(molecules, populations, saved.species):
        if state.name != mol.name or state.pops.shape != p.pops.shape:
            raise ConfigurationError(f"saved species {state.name!r} does not match {mol.name!r}")
        p.pops = state.pops.copy()
        p.converged = state.converged.copy()
        p.change = state.change.copy()
    if checkpoint is not None and not callable(checkpoint):
        checkpoint = file_checkpoint(checkpoint)
    solver = LevelPopulationSolver(saved.grid, molecules, populations, params, progress,
                                   checkpoint, n_rays=saved.n_rays)
    logger.info(f"Resuming from iteration {saved.iteration}")
    return solver.run(start_iteration=saved.iteration, start_streak=saved.streak)
