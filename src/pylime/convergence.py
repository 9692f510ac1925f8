"""
The outer fixed-point iteration over the whole grid.

A pass visits every non-sink point, traces rays through the populations of
the previous pass, solves the local rate equations and stores the result in
a separate buffer; the new populations are committed only after every point
has been processed. A pass therefore gives the same result whatever the
number of worker threads or the order in which points are handled.
"""

import enum
import logging
import math
import warnings
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, List, NamedTuple, Optional, Sequence

import numpy as np

from .blends import BlendSet, find_blends, no_blends
from .populations import Populations, lte_populations
from .ratematrix import CollisionTable, PopulationSolveFailed, relative_change, statistical_equilibrium
from .source_function import background_intensity, line_coefficients
from .transport import LineContext, mean_intensity, trace_photons

logger = logging.getLogger(__name__)


class NonConvergenceError(RuntimeError):
    """The iteration ended without reaching the convergence goal."""


class ConvergenceState(enum.Enum):
    INITIALIZING = "initializing"
    ITERATING = "iterating"
    CONVERGED = "converged"
    MAX_ITER_EXCEEDED = "max_iter_exceeded"


class ConvergenceTracker:
    """
    State machine of the outer iteration.

    ``INITIALIZING -> ITERATING -> CONVERGED | MAX_ITER_EXCEEDED``

    The run converges once the converged fraction exceeds ``goal`` in
    ``goal_streak`` consecutive passes. Reaching ``max_iterations`` passes
    first ends it in ``MAX_ITER_EXCEEDED``.
    """

    def __init__(self, goal: float = 0.5, goal_streak: int = 2, max_iterations: int = 16):
        self.goal = goal
        self.goal_streak = goal_streak
        self.max_iterations = max_iterations
        self.state = ConvergenceState.INITIALIZING
        self.iteration = 0
        self.streak = 0

    @property
    def finished(self) -> bool:
        return self.state in (ConvergenceState.CONVERGED, ConvergenceState.MAX_ITER_EXCEEDED)

    def start(self, iteration: int = 0, streak: int = 0) -> ConvergenceState:
        """
        Leave initialisation.

        ``iteration`` > 0 resumes an earlier run, which had reached the goal in
        its last ``streak`` passes.
        """
        if self.state is not ConvergenceState.INITIALIZING:
            raise RuntimeError(f"cannot start from state {self.state.name}")
        self.iteration = iteration
        self.streak = streak
        self.state = ConvergenceState.ITERATING
        if self.streak >= self.goal_streak:
            self.state = ConvergenceState.CONVERGED
        elif self.iteration >= self.max_iterations:
            self.state = ConvergenceState.MAX_ITER_EXCEEDED
        return self.state

    def record_pass(self, converged_fraction: float) -> ConvergenceState:
        """Account for one finished pass and return the new state."""
        if self.state is not ConvergenceState.ITERATING:
            raise RuntimeError(f"cannot record a pass in state {self.state.name}")
        self.iteration += 1
        self.streak = self.streak + 1 if converged_fraction > self.goal else 0
        if self.streak >= self.goal_streak:
            self.state = ConvergenceState.CONVERGED
        elif self.iteration >= self.max_iterations:
            self.state = ConvergenceState.MAX_ITER_EXCEEDED
        return self.state


class PassReport(NamedTuple):
    """Diagnostics of one pass, handed to the progress sink."""
    iteration: int
    converged_fraction: tuple
    max_change: tuple
    rays_cast: int
    n_failed: int
    state: ConvergenceState


@dataclass
class ConvergenceResult:
    """
    Outcome of a run.

    Attributes
    ----------
    state : ConvergenceState
        ``CONVERGED`` or ``MAX_ITER_EXCEEDED``.
    iterations : int
        Number of passes run in total.
    grid : Grid
    populations : list of Populations
        Final populations, one entry per species.
    n_rays : np.ndarray
        Ray count per point at the end of the run.
    history : list of PassReport
    """
    state: ConvergenceState
    iterations: int
    grid: object
    populations: List[Populations]
    n_rays: np.ndarray
    history: List[PassReport] = field(default_factory=list)

    @property
    def converged(self) -> bool:
        return self.state is ConvergenceState.CONVERGED

    @property
    def point_converged(self) -> np.ndarray:
        """Convergence flag per point and species, shape (nspecies, N)."""
        return np.array([p.converged for p in self.populations])

    def raise_for_status(self) -> "ConvergenceResult":
        if not self.converged:
            fractions = self.history[-1].converged_fraction if self.history else ()
            raise NonConvergenceError(
                f"no convergence after {self.iterations} iterations "
                f"(converged fractions {fractions})")
        return self


class PointResult(NamedTuple):
    pops: np.ndarray
    change: float
    converged: bool
    failed: bool
    rays_cast: int


class LevelPopulationSolver:
    """
    Drives the passes of a run.

    Parameters
    ----------
    grid : Grid
        Grid with sampled fields.
    molecules : sequence of MolecularData
    populations : list of Populations
        One per species, prepared for ``grid``.
    params : Parameters
    progress : callable, optional
        Called with a :class:`PassReport` after each pass.
    checkpoint : callable, optional
        Called as ``checkpoint(solver)`` after each pass, between passes.
    n_rays : array, optional
        Ray counts per point to resume with.
    """

    def __init__(self, grid, molecules: Sequence, populations: List[Populations], params,
                 progress: Optional[Callable] = None, checkpoint: Optional[Callable] = None,
                 n_rays=None):
        self.grid = grid
        self.molecules = list(molecules)
        self.populations = populations
        self.params = params
        self.progress = progress
        self.checkpoint = checkpoint
        self.tables = [CollisionTable(mol) for mol in self.molecules]
        self.cmb = [background_intensity(mol, params.tcmb) for mol in self.molecules]
        self.blends: List[BlendSet] = [
            find_blends(mol, params.blend_velocity) if params.blend else no_blends()
            for mol in self.molecules]
        self.interior = grid.interior
        if n_rays is None:
            n_rays = np.full(grid.n_points, params.min_rays, dtype=np.int64)
        self.n_rays = np.asarray(n_rays, dtype=np.int64).copy()
        self.tracker = ConvergenceTracker(params.goal, params.goal_streak, params.max_iterations)
        self.history: List[PassReport] = []

        for s, blends in enumerate(self.blends):
            if not blends.empty:
                logger.info(f"{self.molecules[s].name}: {blends.n_pairs // 2} blended line pairs")

    # -- per point ---------------------------------------------------------

    def _rng(self, point: int, species: int):
        seq = np.random.SeedSequence([self.params.seed, int(point), species,
                                      int(self.n_rays[point])])
        return np.random.default_rng(seq)

    def _mean_edge(self, i):
        k = self.grid.n_neighbors[i]
        return float(self.grid.edge_length[i, :k].mean())

    def _lte_is_enough(self, s: int, i: int, pops) -> bool:
        threshold = self.params.lte_tau_threshold
        if threshold is None:
            return False
        mol, p = self.molecules[s], self.populations[s]
        _, alpha = line_coefficients(np.ones(mol.nline), p.binv[i], p.nmol[i], pops, mol,
                                     p.knu[i], p.dust[i])
        return bool(np.all(np.abs(alpha) * self._mean_edge(i) < threshold))

    def solve_point(self, s: int, i: int, old_pops) -> PointResult:
        """Transport and local solve for species ``s`` at point ``i``."""
        mol, p, params = self.molecules[s], self.populations[s], self.params
        pops = old_pops[i]
        T = self.grid.temperature[i, 0]

        if params.lte_only or self._lte_is_enough(s, i, pops):
            new = lte_populations(mol, T, params.pop_floor)
            change = relative_change(new, pops, params.min_pop)
            return PointResult(new, change, change < params.tolerance, False, 0)

        ctx = LineContext.from_populations(mol, p, self.cmb[s], self.blends[s], pops=old_pops)
        n = int(self.n_rays[i])
        rays = trace_photons(self.grid, i, ctx, n, self._rng(i, s),
                             rays_per_segment=params.rays_per_segment,
                             taylor_cutoff=params.taylor_cutoff, max_path=params.max_path)
        rates = p.point_rates(mol, self.tables[s], i)

        def jbar_fn(trial):
            return mean_intensity(rays, i, ctx, trial, params.taylor_cutoff)[0]

        try:
            new, _ = statistical_equilibrium(rates, pops, jbar_fn, params)
        except PopulationSolveFailed as e:
            logger.debug(f"{mol.name}: solve failed at point {i}: {e}")
            return PointResult(pops.copy(), math.inf, False, True, n)
        change = relative_change(new, pops, params.min_pop)
        return PointResult(new, change, change < params.tolerance, False, n)

    # -- passes ------------------------------------------------------------

    def initialize(self):
        """
        Set the starting populations of the non-sink points.

        Without ``init_lte`` (or ``lte_only``) these are the optically thin
        solution: statistical equilibrium with the background field alone.
        Sink points keep their LTE populations throughout.
        """
        params = self.params
        if params.init_lte or params.lte_only:
            return
        for s, (mol, p) in enumerate(zip(self.molecules, self.populations)):
            jbar = self.cmb[s] * mol.norm
            n_failed = 0
            for i in self.interior:
                try:
                    p.pops[i] = p.point_rates(mol, self.tables[s], i).solve(
                        jbar, p.pops[i], params.pop_floor, params.negative_tolerance)
                except PopulationSolveFailed:
                    n_failed += 1
            if n_failed:
                logger.warning(f"{mol.name}: optically thin start failed at {n_failed} points, "
                               f"starting from LTE there")

    def run_pass(self) -> PassReport:
        """Run one synchronous pass over all non-sink points and all species."""
        fractions, max_changes = [], []
        rays_cast = 0
        n_failed = 0
        unconverged = np.zeros(self.grid.n_points, dtype=bool)

        for s, p in enumerate(self.populations):
            old = p.pops.copy()
            old.setflags(write=False)
            if self.params.n_threads > 1:
                with ThreadPoolExecutor(max_workers=self.params.n_threads) as pool:
                    results = list(pool.map(lambda i: self.solve_point(s, i, old), self.interior))
            else:
                results = [self.solve_point(s, i, old) for i in self.interior]

            new = old.copy()
            for i, r in zip(self.interior, results):
                new[i] = r.pops
                p.converged[i] = r.converged
                p.change[i] = r.change
                rays_cast += r.rays_cast
                n_failed += r.failed
            p.pops = new

            flags = p.converged[self.interior]
            unconverged[self.interior] |= ~flags
            fractions.append(float(flags.mean()) if len(flags) else 1.0)
            finite = p.change[self.interior][np.isfinite(p.change[self.interior])]
            max_changes.append(float(finite.max()) if len(finite) else 0.0)

        state = self.tracker.record_pass(min(fractions))
        self._escalate(unconverged)

        report = PassReport(self.tracker.iteration, tuple(fractions), tuple(max_changes),
                            rays_cast, n_failed, state)
        self.history.append(report)
        names = ", ".join(f"{m.name} {f:.1%} (max change {c:.2e})"
                          for m, f, c in zip(self.molecules, fractions, max_changes))
        logger.info(f"Iteration {report.iteration}: converged {names}; "
                    f"{rays_cast} rays, {n_failed} failed solves")
        return report

    def _escalate(self, unconverged):
        """Grow the ray counts of points that need less Monte Carlo noise."""
        if self.params.lte_only:
            return
        grow = unconverged.copy()
        if self.params.escalate_converged:
            grow[self.interior] = True
        grow &= ~self.grid.sink
        grown = np.ceil(self.n_rays[grow] * self.params.ray_growth).astype(np.int64)
        self.n_rays[grow] = np.minimum(grown, self.params.max_rays)
        capped = np.count_nonzero(grow & (self.n_rays >= self.params.max_rays))
        if capped:
            logger.debug(f"{capped} points are at the ray limit of {self.params.max_rays}")

    def run(self, start_iteration: int = 0, start_streak: int = 0) -> ConvergenceResult:
        """
        Iterate until convergence or the iteration limit.

        ``start_iteration`` and ``start_streak`` continue the pass counter and
        goal streak of a checkpointed run.

        A run that ends in ``MAX_ITER_EXCEEDED`` emits a ``RuntimeWarning``;
        call :meth:`ConvergenceResult.raise_for_status` to turn it into an
        exception.
        """
        if start_iteration == 0:
            self.initialize()
        self.tracker.start(start_iteration, start_streak)
        while not self.tracker.finished:
            report = self.run_pass()
            if self.progress is not None:
                self.progress(report)
            if self.checkpoint is not None:
                self.checkpoint(self)

        result = ConvergenceResult(self.tracker.state, self.tracker.iteration, self.grid,
                                   self.populations, self.n_rays.copy(), list(self.history))
        if result.converged:
            logger.info(f"Converged after {result.iterations} iterations")
        else:
            warnings.warn(f"Level populations did not converge within "
                          f"{self.params.max_iterations} iterations", RuntimeWarning)
        return result
