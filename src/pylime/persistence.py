"""
Saving and restoring grids with their populations (HDF5).

The file holds everything needed to resume an iteration: geometry,
connectivity, edge data, sampled fields, the populations and convergence
flags of every species and the ray count of every point. Arrays are stored
without compression or conversion, so a restored grid is bit-for-bit equal
to the saved one.
"""

import logging
from typing import List, NamedTuple

import h5py
import numpy as np

from .grid import Grid

logger = logging.getLogger(__name__)

FORMAT_VERSION = 1

_GEOMETRY = ("positions", "sink", "neighbors", "n_neighbors", "edge_dir", "edge_length",
             "solid_angle")
_FIELDS = ("density", "temperature", "abundance", "doppler", "velocity", "magnetic_field",
           "gas_to_dust", "velocity_coeffs")


class SpeciesState(NamedTuple):
    """Saved state of one species."""
    name: str
    pops: np.ndarray
    converged: np.ndarray
    change: np.ndarray


class Checkpoint(NamedTuple):
    """Contents of a saved run."""
    grid: Grid
    species: List[SpeciesState]
    n_rays: np.ndarray
    iteration: int
    streak: int = 0


def save_grid(path, grid: Grid, populations=(), n_rays=None, iteration: int = 0,
              names=None, streak: int = 0) -> None:
    """
    Write a grid and its populations to ``path``.

    Parameters
    ----------
    path : str or path-like
        Output file; overwritten if it exists.
    grid : Grid
    populations : sequence of Populations
        One per species, in run order.
    n_rays : array, optional
        Ray count per point.
    iteration : int
        Number of passes run so far.
    names : sequence of str, optional
        Species names, stored for checking on restore.
    streak : int
        Number of consecutive passes so far that met the convergence goal.
    """
    names = list(names) if names is not None else [f"species{p.species}" for p in populations]
    logger.info(f"Saving grid to: {path}")
    with h5py.File(path, "w") as f:
        f.attrs["format_version"] = FORMAT_VERSION
        f.attrs["radius"] = grid.radius
        f.attrs["iteration"] = iteration
        f.attrs["streak"] = streak

        geo = f.create_group("geometry")
        for key in _GEOMETRY:
            geo.create_dataset(key, data=getattr(grid, key))

        fields = f.create_group("fields")
        for key in _FIELDS:
            value = getattr(grid, key)
            if value is not None:
                fields.create_dataset(key, data=value)

        if n_rays is not None:
            f.create_dataset("n_rays", data=np.asarray(n_rays))

        species = f.create_group("species")
        for s, (name, p) in enumerate(zip(names, populations)):
            grp = species.create_group(str(s))
            grp.attrs["name"] = name
            grp.create_dataset("pops", data=p.pops)
            grp.create_dataset("converged", data=p.converged)
            grp.create_dataset("change", data=p.change)
    logger.debug(f"Saved {grid.n_points} points and {len(names)} species")


def load_grid(path) -> Checkpoint:
    """
    Read a file written by :func:`save_grid`.

    Raises
    ------
    ValueError
        If ``path`` is not an HDF5 file of a supported format version.
    """
    logger.info(f"Loading grid from: {path}")
    if not h5py.is_hdf5(path):
        raise ValueError(f"{path} is not an HDF5 file")
    with h5py.File(path, "r") as f:
        version = int(f.attrs.get("format_version", -1))
        if version != FORMAT_VERSION:
            raise ValueError(f"unsupported grid file format version {version}")
        geo = {key: f["geometry"][key][()] for key in _GEOMETRY}
        fields = {key: f["fields"][key][()] for key in _FIELDS if key in f["fields"]}
        grid = Grid(radius=float(f.attrs["radius"]), **geo, **fields)

        n_rays = f["n_rays"][()] if "n_rays" in f else None
        species = []
        for s in range(len(f["species"])):
            grp = f["species"][str(s)]
            name = grp.attrs["name"]
            if isinstance(name, bytes):
                name = name.decode()
            species.append(SpeciesState(str(name), grp["pops"][()], grp["converged"][()],
                                        grp["change"][()]))
        iteration = int(f.attrs["iteration"])
        streak = int(f.attrs.get("streak", 0))
    return Checkpoint(grid, species, n_rays, iteration, streak)
