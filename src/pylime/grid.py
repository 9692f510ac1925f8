"""
Grid construction: point sampling, smoothing and Delaunay connectivity.

The grid is an arena: every per-point quantity is a row of an array, and
neighbour relations are integer indices into those arrays. Neighbour lists
are padded to a common length with ``-1``.
"""

import logging
from dataclasses import dataclass
from typing import NamedTuple, Optional, Tuple

import numpy as np
from scipy.sparse import csr_matrix
from scipy.sparse.csgraph import connected_components
from scipy.spatial import Delaunay, QhullError, cKDTree

from .config import ConfigurationError
from .constants import DIM

logger = logging.getLogger(__name__)

# Fraction of the nearest-neighbour distance by which smoothing moves a point
SMOOTH_STEP = 0.1


class FatalGeometryError(RuntimeError):
    """Raised when no usable transport graph can be built from the points."""


class GridPoint(NamedTuple):
    """Read-only view of one grid point and its neighbour edges."""
    id: int
    position: np.ndarray
    sink: bool
    neighbors: np.ndarray
    direction: np.ndarray
    length: np.ndarray
    weight: np.ndarray
    velocity: Optional[np.ndarray]
    density: Optional[np.ndarray]
    temperature: Optional[np.ndarray]
    abundance: Optional[np.ndarray]
    doppler: Optional[float]


def _view(a):
    if a is None:
        return None
    v = a.view()
    v.setflags(write=False)
    return v


@dataclass
class Grid:
    """
    Geometry, connectivity and sampled fields of all grid points.

    Attributes
    ----------
    positions : np.ndarray
        Point coordinates [m], shape (N, 3).
    sink : np.ndarray
        Boolean sink flag, shape (N,).
    radius : float
        Radius of the spherical domain [m].
    neighbors : np.ndarray
        Neighbour indices, shape (N, K), padded with -1.
    n_neighbors : np.ndarray
        Number of valid entries in each row of ``neighbors``.
    edge_dir : np.ndarray
        Unit vector from each point towards each neighbour, shape (N, K, 3).
    edge_length : np.ndarray
        Distance to each neighbour [m], shape (N, K).
    solid_angle : np.ndarray
        Fraction of the full sphere, seen from the point, whose rays leave
        its Voronoi cell through the face shared with each neighbour,
        shape (N, K). Rows of interior points sum to 1.

    The remaining attributes are filled in by :mod:`pylime.fields` and are
    ``None`` until then.
    """
    positions: np.ndarray
    sink: np.ndarray
    radius: float
    neighbors: np.ndarray
    n_neighbors: np.ndarray
    edge_dir: np.ndarray
    edge_length: np.ndarray
    solid_angle: np.ndarray
    density: Optional[np.ndarray] = None
    temperature: Optional[np.ndarray] = None
    abundance: Optional[np.ndarray] = None
    doppler: Optional[np.ndarray] = None
    velocity: Optional[np.ndarray] = None
    magnetic_field: Optional[np.ndarray] = None
    gas_to_dust: Optional[np.ndarray] = None
    velocity_coeffs: Optional[np.ndarray] = None

    @property
    def n_points(self) -> int:
        return len(self.positions)

    @property
    def interior(self) -> np.ndarray:
        """Indices of the non-sink points, in increasing order."""
        return np.flatnonzero(~self.sink)

    @property
    def max_neighbors(self) -> int:
        return self.neighbors.shape[1]

    @property
    def has_fields(self) -> bool:
        return self.temperature is not None and self.velocity_coeffs is not None

    def point(self, i: int) -> GridPoint:
        """Return a read-only view of point ``i``."""
        k = self.n_neighbors[i]
        pick = (lambda a: None if a is None else _view(a[i]))
        return GridPoint(
            id=int(i),
            position=_view(self.positions[i]),
            sink=bool(self.sink[i]),
            neighbors=_view(self.neighbors[i, :k]),
            direction=_view(self.edge_dir[i, :k]),
            length=_view(self.edge_length[i, :k]),
            weight=_view(self.solid_angle[i, :k]),
            velocity=pick(self.velocity),
            density=pick(self.density),
            temperature=pick(self.temperature),
            abundance=pick(self.abundance),
            doppler=None if self.doppler is None else float(self.doppler[i]),
        )

    def edges(self):
        """Directed edges as ``(i, j)`` index arrays."""
        rows = np.repeat(np.arange(self.n_points), self.n_neighbors)
        valid = self.neighbors >= 0
        return rows, self.neighbors[valid]


def _segment_leaves_sphere(a, b, radius, rtol=1e-9):
    """
    True where the segment a-b leaves the ball of ``radius``.

    The ball is convex, so a segment leaves it only if an end point does.
    """
    limit = radius * (1 + rtol)
    return np.maximum(np.linalg.norm(a, axis=1), np.linalg.norm(b, axis=1)) > limit


def _solid_angle_weights(directions, lengths, n_samples, rng):
    """
    Monte Carlo estimate of the share of directions leaving through each face.

    A ray from the point along ``u`` leaves the Voronoi cell through the
    bisector plane it hits first, which is the face maximising
    ``cos(u, e_k) / len_k`` over the faces in front of it.
    """
    u = rng.normal(size=(n_samples, DIM))
    u /= np.linalg.norm(u, axis=1)[:, None]
    cos = u @ directions.T
    metric = np.where(cos > 0, cos / lengths[None, :], -np.inf)
    exits = np.argmax(metric, axis=1)
    ok = np.isfinite(metric[np.arange(n_samples), exits])
    counts = np.bincount(exits[ok], minlength=len(lengths)).astype(np.float64)
    total = counts.sum()
    if total == 0:
        return np.full(len(lengths), 1.0 / len(lengths))
    return counts / total


def build_grid(points, sink, radius: float, solid_angle_samples: int = 1000,
               seed: int = 0) -> Grid:
    """
    Build the connectivity graph of a point set.

    Parameters
    ----------
    points : array_like
        Point coordinates [m], shape (N, 3).
    sink : array_like
        Boolean sink flag per point.
    radius : float
        Domain radius [m]. All points must lie within it.
    solid_angle_samples : int
        Random directions per point for the solid-angle weights.
    seed : int
        Seed of the direction samples; each point draws from its own stream.

    Returns
    -------
    Grid

    Raises
    ------
    FatalGeometryError
        If there are fewer than 4 points, duplicate points, points outside
        the domain, a degenerate (flat) point set, points the tessellation
        had to drop, a non-sink point without neighbours, or a connectivity
        graph that falls apart into several pieces.
    """
    points = np.ascontiguousarray(points, dtype=np.float64)
    sink = np.asarray(sink, dtype=bool)
    if points.ndim != 2 or points.shape[1] != DIM:
        raise FatalGeometryError(f"points must have shape (N, {DIM}), got {points.shape}")
    n = len(points)
    if sink.shape != (n,):
        raise FatalGeometryError(f"sink flags have shape {sink.shape}, expected ({n},)")
    if n < DIM + 1:
        raise FatalGeometryError(f"at least {DIM + 1} points are needed, got {n}")
    if not np.all(np.isfinite(points)):
        raise FatalGeometryError("point coordinates must be finite")
    if len(np.unique(points, axis=0)) != n:
        raise FatalGeometryError("duplicate grid points")
    r = np.linalg.norm(points, axis=1)
    if np.any(r > radius * (1 + 1e-9)):
        raise FatalGeometryError(
            f"{np.count_nonzero(r > radius * (1 + 1e-9))} points lie outside the domain radius {radius}")

    try:
        tri = Delaunay(points)
    except QhullError as e:
        raise FatalGeometryError(f"Delaunay tessellation failed: {e}") from e
    if len(tri.coplanar):
        raise FatalGeometryError(
            f"{len(tri.coplanar)} points were dropped by the tessellation as coplanar or coincident")

    indptr, indices = tri.vertex_neighbor_vertices
    rows = np.repeat(np.arange(n), np.diff(indptr))
    keep = ~_segment_leaves_sphere(points[rows], points[indices], radius)
    if not np.all(keep):
        logger.debug(f"Discarding {np.count_nonzero(~keep)} edges leaving the domain")
    rows, cols = rows[keep], indices[keep]

    n_neighbors = np.bincount(rows, minlength=n)
    lonely = np.flatnonzero((n_neighbors == 0) & ~sink)
    if len(lonely):
        raise FatalGeometryError(f"non-sink points without neighbours: {lonely.tolist()}")

    adjacency = csr_matrix((np.ones(len(rows)), (rows, cols)), shape=(n, n))
    n_components, _ = connected_components(adjacency, directed=False)
    if n_components > 1:
        raise FatalGeometryError(f"connectivity graph has {n_components} disconnected components")

    k_max = int(n_neighbors.max())
    neighbors = np.full((n, k_max), -1, dtype=np.int64)
    slot = np.arange(len(rows)) - np.repeat(np.cumsum(n_neighbors) - n_neighbors, n_neighbors)
    neighbors[rows, slot] = cols

    valid = neighbors >= 0
    delta = np.where(valid[..., None], points[np.where(valid, neighbors, 0)] - points[:, None, :], 0.0)
    edge_length = np.linalg.norm(delta, axis=2)
    edge_dir = np.where(valid[..., None], delta / np.where(valid, edge_length, 1.0)[..., None], 0.0)

    solid_angle = np.zeros((n, k_max))
    for i in np.flatnonzero(~sink):
        k = n_neighbors[i]
        rng = np.random.default_rng(np.random.SeedSequence([seed, int(i)]))
        solid_angle[i, :k] = _solid_angle_weights(edge_dir[i, :k], edge_length[i, :k],
                                                  solid_angle_samples, rng)

    logger.debug(f"Grid of {n} points ({np.count_nonzero(sink)} sinks), "
                 f"{len(rows)} directed edges, up to {k_max} neighbours per point")
    return Grid(points, sink, float(radius), neighbors, n_neighbors,
                edge_dir, edge_length, solid_angle)


def _random_directions(rng, n):
    u = rng.normal(size=(n, DIM))
    return u / np.linalg.norm(u, axis=1)[:, None]


def generate_points(model, params, rng) -> Tuple[np.ndarray, np.ndarray]:
    """
    Sample grid point positions from the density field.

    Interior candidates are drawn with the radial law ``params.sampling``
    between ``params.min_scale`` and ``params.radius`` and accepted with
    probability ``(n / n_ref) ** params.density_power``, where ``n`` is the
    first density component and ``n_ref`` its value at ``min_scale`` on the
    x axis. Sink points are spread uniformly over the domain surface.

    Returns
    -------
    points : np.ndarray
        Shape (n_points + n_sink_points, 3); interior points first.
    sink : np.ndarray
        Boolean sink flags.
    """
    n_ref = float(model.density(params.min_scale, 0.0, 0.0)[0])
    if not n_ref > 0:
        raise ConfigurationError(f"density at min_scale must be positive, got {n_ref}")

    log_lo, log_hi = np.log(params.min_scale), np.log(params.radius)
    accepted = []
    n_tried = 0
    max_tries = 1000 * params.n_points + 10000
    while len(accepted) < params.n_points:
        if n_tried > max_tries:
            raise FatalGeometryError(
                f"only {len(accepted)} of {params.n_points} points accepted after {n_tried} candidates; "
                f"the density field is too steep for rejection sampling")
        if params.sampling == "log":
            r = np.exp(rng.uniform(log_lo, log_hi))
        else:
            r = params.radius * rng.random() ** (1.0 / 3.0)
            if r < params.min_scale:
                n_tried += 1
                continue
        x = r * _random_directions(rng, 1)[0]
        dens = float(model.density(*x)[0])
        n_tried += 1
        if rng.random() < min(1.0, max(dens, 0.0) / n_ref) ** params.density_power:
            accepted.append(x)

    interior = np.array(accepted).reshape(-1, DIM)
    sinks = params.radius * _random_directions(rng, params.n_sink_points)
    logger.debug(f"Accepted {len(interior)} of {n_tried} candidate points")
    points = np.vstack([interior, sinks])
    sink = np.zeros(len(points), dtype=bool)
    sink[len(interior):] = True
    return points, sink


def smooth_points(points, sink, radius: float, min_scale: float, iterations: int) -> np.ndarray:
    """
    Even out the point distribution.

    In every iteration each point steps away from its nearest neighbour by
    a tenth of their separation. Sink points are projected back onto the
    domain surface afterwards; interior moves that would leave the shell
    ``min_scale <= r < radius`` are skipped. All points move simultaneously,
    so the result does not depend on point order.
    """
    points = np.array(points, dtype=np.float64)
    sink = np.asarray(sink, dtype=bool)
    if len(points) < 2:
        return points
    for _ in range(iterations):
        _, idx = cKDTree(points).query(points, k=2)
        nearest = points[idx[:, 1]]
        moved = points + SMOOTH_STEP * (points - nearest)

        r = np.linalg.norm(moved, axis=1)
        ok_interior = ~sink & (r < radius) & (r >= min_scale)
        ok_sink = sink & (r > 0)
        moved[ok_sink] *= (radius / r[ok_sink])[:, None]
        ok = ok_interior | ok_sink
        points[ok] = moved[ok]
    return points
