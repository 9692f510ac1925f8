"""
Monte Carlo estimate of the mean line intensity at a grid point.

Rays start at the point, walk from Voronoi cell to Voronoi cell along the
connectivity graph and integrate the line radiation of every cell they
cross. The cell of the starting point itself is left out of the walk: its
contribution depends on the populations being solved for and is added in
:func:`mean_intensity`, which is evaluated anew in each local iteration
(accelerated lambda iteration). All rays of a point are walked together as
arrays.
"""

import logging
from typing import NamedTuple, Optional

import numpy as np

from .blends import BlendSet, no_blends
from .constants import DIM, HPIP, NEGTAULIM, VELOCITY_SPAN
from .fields import edge_velocity
from .source_function import calc_source_fn, gaussline, line_coefficients

logger = logging.getLogger(__name__)

# Rounds of rejection sampling used to draw a direction inside a given face
MAX_DIRECTION_ROUNDS = 64


class RayBuffer(NamedTuple):
    """
    Per-ray results of one point's ray walks.

    Attributes
    ----------
    phot : np.ndarray
        Intensity arriving at the edge of the point's own cell along each
        ray, per line, in normalised units, shape (R, nline).
    vfac0 : np.ndarray
        Line-profile factor of each ray at the point itself, shape (R,).
    vfac0_blend : np.ndarray
        Profile factor of every blended partner entry, shape (R, npairs).
    first_ds : np.ndarray
        Path length inside the point's own cell [m], shape (R,).
    n_steps : int
        Total number of cell crossings.
    """
    phot: np.ndarray
    vfac0: np.ndarray
    vfac0_blend: np.ndarray
    first_ds: np.ndarray
    n_steps: int

    @property
    def n_rays(self) -> int:
        return len(self.vfac0)


class LineContext(NamedTuple):
    """Read-only data the walk needs about one species."""
    mol: object
    pops: np.ndarray
    nmol: np.ndarray
    binv: np.ndarray
    knu: np.ndarray
    dust: np.ndarray
    cmb: np.ndarray
    blends: BlendSet

    @classmethod
    def from_populations(cls, mol, populations, cmb, blends: Optional[BlendSet] = None,
                         pops=None):
        return cls(mol, populations.pops if pops is None else pops, populations.nmol,
                   populations.binv, populations.knu, populations.dust, np.asarray(cmb),
                   blends if blends is not None else no_blends())


def _exit_faces(grid, here, x, direction):
    """
    Distance to, and index of, the face through which each ray leaves its cell.

    Returns ``(ds, k)``; ``k`` is -1 for rays with no face ahead of them.
    """
    e = grid.edge_dir[here]
    length = grid.edge_length[here]
    valid = grid.neighbors[here] >= 0
    mid = grid.positions[here][:, None, :] + 0.5 * length[..., None] * e
    cos = np.einsum("rkd,rd->rk", e, direction)
    ahead = valid & (cos > 0)
    dist = np.einsum("rkd,rkd->rk", mid - x[:, None, :], e) / np.where(ahead, cos, 1.0)
    dist = np.where(ahead, dist, np.inf)
    k = np.argmin(dist, axis=1)
    ds = dist[np.arange(len(here)), k]
    k = np.where(np.isfinite(ds), k, -1)
    return np.maximum(ds, 0.0), k


def _face_exit(directions, edge_dir, edge_length):
    cos = directions @ edge_dir.T
    metric = np.where(cos > 0, cos / edge_length[None, :], -np.inf)
    return np.argmax(metric, axis=1)


def sample_directions(grid, point: int, n_rays: int, rng) -> np.ndarray:
    """
    Draw ray directions stratified over the faces of a point's cell.

    The number of rays through each face follows the solid-angle weights by
    systematic sampling; within a face the direction is uniform. Where
    rejection sampling does not find a direction inside a small face, the
    ray points straight at the neighbour.
    """
    k = grid.n_neighbors[point]
    weights = grid.solid_angle[point, :k]
    edge_dir = grid.edge_dir[point, :k]
    edge_length = grid.edge_length[point, :k]

    cumulative = np.cumsum(weights)
    cumulative /= cumulative[-1]
    positions = (rng.random() + np.arange(n_rays)) / n_rays
    faces = np.minimum(np.searchsorted(cumulative, positions, side="right"), k - 1)

    directions = edge_dir[faces].copy()
    pending = np.arange(n_rays)
    for _ in range(MAX_DIRECTION_ROUNDS):
        if len(pending) == 0:
            break
        u = rng.normal(size=(len(pending), DIM))
        u /= np.linalg.norm(u, axis=1)[:, None]
        hit = _face_exit(u, edge_dir, edge_length) == faces[pending]
        directions[pending[hit]] = u[hit]
        pending = pending[~hit]
    if len(pending):
        logger.debug(f"point {point}: {len(pending)} rays fall back to the neighbour direction")
    return directions


def _segment_profiles(grid, here, kexit, x, direction, ds, deltav, binv, dv_blend, n_sub, rng):
    """
    Line-profile factors averaged over random positions along each segment.

    The segment is split into ``n_sub`` equal parts with one random sample
    in each; the velocity at a sample comes from the polynomial of the edge
    towards the neighbour behind the exit face.
    """
    n = len(here)
    coeffs = grid.velocity_coeffs[here, kexit]
    origin = grid.positions[here]
    e = grid.edge_dir[here, kexit]
    length = grid.edge_length[here, kexit]

    vfac = np.zeros(n)
    vfac_blend = np.zeros((n, len(dv_blend)))
    for m in range(n_sub):
        frac = (m + rng.random(n)) / n_sub
        xs = x + (frac * ds)[:, None] * direction
        s = np.clip(np.einsum("rd,rd->r", xs - origin, e) / length, 0.0, 1.0)
        vproj = np.einsum("rd,rd->r", edge_velocity(coeffs, s), direction)
        vfac += gaussline(deltav - vproj, binv)
        if len(dv_blend):
            vfac_blend += gaussline(deltav[:, None] - dv_blend[None, :] - vproj[:, None],
                                    binv[:, None])
    return vfac / n_sub, vfac_blend / n_sub


def _add_blends(jnu, alpha, ctx, cells, pops, vfac_blend):
    """Add the line emission and absorption of blended partners."""
    blends = ctx.blends
    if blends.empty:
        return jnu, alpha
    mol = ctx.mol
    p = blends.partner
    factor = vfac_blend * (HPIP * ctx.binv[cells] * ctx.nmol[cells])[:, None]
    upper = pops[:, mol.lau[p]]
    lower = pops[:, mol.lal[p]]
    jnu_b = factor * upper * mol.aeinst[p]
    alpha_b = factor * (lower * mol.beinstl[p] - upper * mol.beinstu[p])
    # one column per pair; a line may have several partners
    for col, line in enumerate(blends.line):
        jnu[:, line] += jnu_b[:, col]
        alpha[:, line] += alpha_b[:, col]
    return jnu, alpha


def coefficients(ctx, cells, vfac, vfac_blend, pops=None):
    """
    Emissivity and opacity of every line in ``cells`` for given profile factors.

    ``pops`` overrides the populations of the cells, shape (len(cells), nlev).
    """
    mol = ctx.mol
    if pops is None:
        pops = ctx.pops[cells]
    jnu, alpha = line_coefficients(np.repeat(vfac[:, None], mol.nline, axis=1), ctx.binv[cells],
                                   ctx.nmol[cells], pops, mol, ctx.knu[cells], ctx.dust[cells])
    return _add_blends(jnu, alpha, ctx, cells, pops, vfac_blend)


def trace_photons(grid, point: int, ctx: LineContext, n_rays: int, rng,
                  rays_per_segment: int = 3, taylor_cutoff: float = 0.66,
                  max_path: Optional[float] = None, max_steps: Optional[int] = None) -> RayBuffer:
    """
    Walk ``n_rays`` rays out of ``point`` and record what reaches its cell.

    Parameters
    ----------
    grid : Grid
        Grid with sampled fields and edge velocities.
    point : int
        Index of a non-sink point.
    ctx : LineContext
        Species data and the populations to use along the rays.
    n_rays : int
        Number of rays.
    rng : np.random.Generator
        Source of every random number used.
    rays_per_segment : int
        Velocity sub-samples per segment.
    taylor_cutoff : float
        Optical depth below which the Taylor form of the attenuation is used.
    max_path : float, optional
        Rays stop after this path length [m] without collecting the background.
    max_steps : int, optional
        Safety limit on cell crossings per ray; defaults to the number of
        grid points.

    Returns
    -------
    RayBuffer
    """
    mol = ctx.mol
    nline = mol.nline
    dv_blend = ctx.blends.deltav
    if max_steps is None:
        max_steps = grid.n_points

    direction = sample_directions(grid, point, n_rays, rng)
    binv0 = ctx.binv[point]
    vproj0 = direction @ grid.velocity[point]
    deltav = (rng.random(n_rays) - 0.5) * VELOCITY_SPAN / binv0 + vproj0
    vfac0 = gaussline(deltav - vproj0, binv0)
    vfac0_blend = gaussline(deltav[:, None] - dv_blend[None, :] - vproj0[:, None], binv0)

    phot = np.zeros((n_rays, nline))
    tau = np.zeros((n_rays, nline))
    x = np.repeat(grid.positions[point][None, :], n_rays, axis=0)
    here = np.full(n_rays, point, dtype=np.int64)

    # own cell: only its length is kept
    first_ds, kexit = _exit_faces(grid, here, x, direction)
    escaped = kexit < 0
    if np.any(escaped):
        logger.debug(f"point {point}: {np.count_nonzero(escaped)} rays start outside every face")
        first_ds[escaped] = 0.0
        phot[escaped] = ctx.cmb
    path = first_ds.copy()
    x += first_ds[:, None] * direction
    here = np.where(escaped, point, grid.neighbors[point, np.maximum(kexit, 0)])
    active = np.flatnonzero(~escaped)

    n_steps = 0
    for _ in range(max_steps):
        if len(active) == 0:
            break
        if max_path is not None:
            active = active[path[active] < max_path]
        cells = here[active]

        at_sink = grid.sink[cells]
        if np.any(at_sink):
            done = active[at_sink]
            phot[done] += np.exp(-tau[done]) * ctx.cmb
            active, cells = active[~at_sink], cells[~at_sink]
        if len(active) == 0:
            break

        ds, kexit = _exit_faces(grid, cells, x[active], direction[active])
        lost = kexit < 0
        if np.any(lost):
            # leaving the convex hull of the points is leaving the domain
            done = active[lost]
            phot[done] += np.exp(-tau[done]) * ctx.cmb
            active, cells, ds, kexit = active[~lost], cells[~lost], ds[~lost], kexit[~lost]
            if len(active) == 0:
                break
        if max_path is not None:
            ds = np.minimum(ds, max_path - path[active])

        vfac, vfac_blend = _segment_profiles(grid, cells, kexit, x[active], direction[active], ds,
                                             deltav[active], ctx.binv[cells], dv_blend,
                                             rays_per_segment, rng)
        jnu, alpha = coefficients(ctx, cells, vfac, vfac_blend)
        dtau = alpha * ds[:, None]
        remnant, _ = calc_source_fn(dtau, taylor_cutoff)
        phot[active] += np.exp(-tau[active]) * remnant * jnu * mol.norminv * ds[:, None]
        tau[active] = np.maximum(tau[active] + dtau, NEGTAULIM)

        x[active] += ds[:, None] * direction[active]
        path[active] += ds
        here[active] = grid.neighbors[cells, kexit]
        n_steps += len(active)
    else:
        if len(active):
            logger.debug(f"point {point}: {len(active)} rays hit the step limit of {max_steps}")

    return RayBuffer(phot, vfac0, vfac0_blend, first_ds, n_steps)


def mean_intensity(rays: RayBuffer, point: int, ctx: LineContext, pops=None,
                   taylor_cutoff: float = 0.66):
    """
    Combine the stored rays with trial populations of the point itself.

    Parameters
    ----------
    rays : RayBuffer
        Output of :func:`trace_photons` for ``point``.
    point : int
    ctx : LineContext
    pops : array, optional
        Trial populations of ``point``; defaults to those in ``ctx``.

    Returns
    -------
    jbar : np.ndarray
        Mean intensity per line [W m^-2 Hz^-1 sr^-1].
    n_contributing : np.ndarray
        Number of rays with a non-zero profile weight, per line.
    """
    mol = ctx.mol
    if pops is None:
        pops = ctx.pops[point]
    n = rays.n_rays
    cells = np.full(n, point, dtype=np.int64)
    jnu, alpha = coefficients(ctx, cells, rays.vfac0, rays.vfac0_blend,
                              np.broadcast_to(pops, (n, mol.nlev)))
    dtau = alpha * rays.first_ds[:, None]
    remnant, attenuation = calc_source_fn(dtau, taylor_cutoff)
    local = remnant * jnu * mol.norminv * rays.first_ds[:, None]

    weight = rays.vfac0[:, None]
    vsum = weight.sum(axis=0)
    n_contributing = np.full(mol.nline, np.count_nonzero(rays.vfac0 > 0))
    if not np.all(vsum > 0):
        return np.asarray(ctx.cmb) * mol.norm * np.ones(mol.nline), n_contributing
    jbar = (weight * (attenuation * rays.phot + local)).sum(axis=0) / vsum
    return jbar * mol.norm, n_contributing
