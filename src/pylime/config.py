"""
Run configuration.

A single :class:`Parameters` instance describes one run: the domain and how
it is sampled, the Monte Carlo ray counts and the convergence policy. It is
validated once, before any grid is built, so that configuration mistakes
surface as :class:`ConfigurationError` instead of as numerical failures deep
inside an iteration.
"""

from dataclasses import dataclass, replace
from typing import Optional


class ConfigurationError(ValueError):
    """Raised for parameters or input data that make a run impossible."""


SAMPLING_MODES = ("log", "uniform")


@dataclass(frozen=True)
class Parameters:
    """
    Parameters of a level-population run.

    Attributes
    ----------
    radius : float
        Radius of the spherical model domain [m].
    min_scale : float
        Smallest spatial scale to resolve [m]. No interior grid point is
        placed closer than this to the origin.
    n_points : int
        Number of interior grid points, i.e. points whose populations are
        iterated.
    n_sink_points : int
        Number of sink points placed on the domain surface. Sinks terminate
        ray walks and carry fixed populations.
    sampling : str
        Radial law for candidate grid points: ``"log"`` draws uniformly in
        log(r) between ``min_scale`` and ``radius``, ``"uniform"`` draws
        uniformly in volume.
    density_power : float
        Candidates are accepted with probability (n / n_ref)**density_power
        where n_ref is the density at ``min_scale``.
    smooth_iterations : int
        Number of smoothing passes applied to the sampled points.
    solid_angle_samples : int
        Random directions per grid point used to estimate the solid angle
        subtended by each neighbour.
    tcmb : float
        Temperature of the background radiation field [K]. Zero switches
        the background off.
    seed : int
        Master seed from which every random stream of the run is derived.
    lte_only : bool
        Use LTE populations everywhere and skip the radiative transfer.
    init_lte : bool
        Start the iteration from LTE populations rather than from the
        optically thin solution (statistical equilibrium with only the
        background field).
    lte_tau_threshold : float, optional
        If set, a point whose local line-centre optical depth in every line
        of a species is below this value gets LTE populations for that
        species instead of a full statistical-equilibrium solve.
    blend : bool
        Treat lines closer than ``blend_velocity`` as blended.
    blend_velocity : float
        Velocity separation below which two lines blend [m/s].
    taylor_cutoff : float
        Optical depth below which the source-function integration factor is
        evaluated from its Taylor series.
    min_rays, max_rays : int
        Initial and maximum number of rays per grid point.
    ray_growth : float
        Factor by which the ray count of an unconverged point grows between
        passes.
    escalate_converged : bool
        Also grow the ray count of points that converged in the last pass.
    rays_per_segment : int
        Random sub-samples of the velocity field per ray segment.
    max_path : float, optional
        Maximum path length of a ray walk [m]. Rays that reach it stop
        without picking up the background.
    tolerance : float
        Fractional population change under which a point counts as
        converged.
    goal : float
        Fraction of converged points a pass has to exceed.
    goal_streak : int
        Number of consecutive passes above ``goal`` that end the iteration.
    max_iterations : int
        Maximum number of passes.
    max_sub_iterations, min_sub_iterations : int
        Bounds on the local statistical-equilibrium iterations per point
        and pass.
    min_pop : float
        Levels with populations below this are ignored when measuring
        changes.
    pop_floor : float
        Smallest population any level may have.
    negative_tolerance : float
        Solutions with entries more negative than this are rejected.
    n_threads : int
        Number of worker threads used within a pass.
    """
    radius: float
    min_scale: float
    n_points: int
    n_sink_points: int
    sampling: str = "log"
    density_power: float = 0.2
    smooth_iterations: int = 20
    solid_angle_samples: int = 1000
    tcmb: float = 2.725
    seed: int = 1971
    lte_only: bool = False
    init_lte: bool = False
    lte_tau_threshold: Optional[float] = None
    blend: bool = False
    blend_velocity: float = 1.0e4
    taylor_cutoff: float = 0.66
    min_rays: int = 9
    max_rays: int = 10000
    ray_growth: float = 2.0
    escalate_converged: bool = False
    rays_per_segment: int = 3
    max_path: Optional[float] = None
    tolerance: float = 1.0e-6
    goal: float = 0.5
    goal_streak: int = 2
    max_iterations: int = 16
    max_sub_iterations: int = 50
    min_sub_iterations: int = 5
    min_pop: float = 1.0e-6
    pop_floor: float = 1.0e-30
    negative_tolerance: float = 1.0e-6
    n_threads: int = 1

    def validate(self) -> "Parameters":
        """
        Check the parameters for consistency.

        Returns
        -------
        Parameters
            ``self``, so that construction and validation can be chained.

        Raises
        ------
        ConfigurationError
            If any parameter is out of its allowed domain.
        """
        if not self.radius > 0:
            raise ConfigurationError(f"radius must be positive, got {self.radius}")
        if not 0 < self.min_scale < self.radius:
            raise ConfigurationError(
                f"min_scale must lie in (0, radius), got {self.min_scale} "
                f"for radius {self.radius}")
        if self.n_points < 1:
            raise ConfigurationError(f"n_points must be at least 1, got {self.n_points}")
        if self.n_sink_points < 0:
            raise ConfigurationError(
                f"n_sink_points cannot be negative, got {self.n_sink_points}")
        if self.sampling not in SAMPLING_MODES:
            raise ConfigurationError(
                f"Unknown sampling mode {self.sampling!r}, expected one of {SAMPLING_MODES}")
        if self.smooth_iterations < 0:
            raise ConfigurationError("smooth_iterations cannot be negative")
        if self.solid_angle_samples < 1:
            raise ConfigurationError("solid_angle_samples must be at least 1")
        if self.tcmb < 0:
            raise ConfigurationError(f"tcmb cannot be negative, got {self.tcmb}")
        if self.blend_velocity <= 0:
            raise ConfigurationError("blend_velocity must be positive")
        if self.taylor_cutoff <= 0:
            raise ConfigurationError("taylor_cutoff must be positive")
        if self.min_rays < 1:
            raise ConfigurationError(f"min_rays must be at least 1, got {self.min_rays}")
        if self.max_rays < self.min_rays:
            raise ConfigurationError(
                f"max_rays ({self.max_rays}) must not be below min_rays ({self.min_rays})")
        if not self.ray_growth > 1:
            raise ConfigurationError(f"ray_growth must exceed 1, got {self.ray_growth}")
        if self.rays_per_segment < 1:
            raise ConfigurationError("rays_per_segment must be at least 1")
        if self.max_path is not None and not self.max_path > 0:
            raise ConfigurationError("max_path must be positive when given")
        if self.lte_tau_threshold is not None and not self.lte_tau_threshold > 0:
            raise ConfigurationError("lte_tau_threshold must be positive when given")
        if not self.tolerance > 0:
            raise ConfigurationError("tolerance must be positive")
        if not 0 < self.goal <= 1:
            raise ConfigurationError(f"goal must lie in (0, 1], got {self.goal}")
        if self.goal_streak < 1:
            raise ConfigurationError("goal_streak must be at least 1")
        if self.max_iterations < 1:
            raise ConfigurationError("max_iterations must be at least 1")
        if self.min_sub_iterations < 1 or self.max_sub_iterations < self.min_sub_iterations:
            raise ConfigurationError(
                "sub-iteration bounds must satisfy 1 <= min_sub_iterations <= max_sub_iterations")
        if not 0 < self.pop_floor < self.min_pop:
            raise ConfigurationError("pop_floor must be positive and below min_pop")
        if self.negative_tolerance < 0:
            raise ConfigurationError("negative_tolerance cannot be negative")
        if self.n_threads < 1:
            raise ConfigurationError(f"n_threads must be at least 1, got {self.n_threads}")
        return self

    def with_updates(self, **changes) -> "Parameters":
        """Return a validated copy with some fields replaced."""
        return replace(self, **changes).validate()
