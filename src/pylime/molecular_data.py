"""
Molecular data model: energy levels, radiative transitions and collisional
rate tables for one species.

Instances are built by a loader (file parsing is not part of this package),
validated once, and then shared read-only between all worker threads.
"""

from dataclasses import dataclass, field
from typing import List, Sequence, Tuple

import numpy as np

from .config import ConfigurationError
from .constants import CLIGHT, HPLANCK, TNORM, ORTHO_TO_PARA
from .source_function import planck


def _frozen(a, dtype=np.float64) -> np.ndarray:
    a = np.array(a, dtype=dtype)
    a.setflags(write=False)
    return a


@dataclass(frozen=True)
class CollisionPartner:
    """
    Collisional rate coefficients of one species with one collision partner.

    Attributes
    ----------
    name : str
        Partner name, e.g. ``"p-H2"``.
    density_index : int
        Index into the sequence returned by the density callback.
    temperatures : np.ndarray
        Temperature table [K], strictly increasing.
    lcu, lcl : np.ndarray
        0-based upper and lower level index of each collisional transition.
    down : np.ndarray
        Downward rate coefficients [m^3 s^-1], shape (ntrans, ntemp).
    density_scale : float
        Factor applied to the partner density. Used when one density field
        stands in for several partners (ortho/para H2).
    """
    name: str
    density_index: int
    temperatures: np.ndarray
    lcu: np.ndarray
    lcl: np.ndarray
    down: np.ndarray
    density_scale: float = 1.0

    def __post_init__(self):
        object.__setattr__(self, "temperatures", _frozen(self.temperatures))
        object.__setattr__(self, "lcu", _frozen(self.lcu, np.int64))
        object.__setattr__(self, "lcl", _frozen(self.lcl, np.int64))
        object.__setattr__(self, "down", _frozen(self.down))

    @property
    def n_transitions(self) -> int:
        return len(self.lcu)

    def scaled(self, name: str, density_scale: float) -> "CollisionPartner":
        """Return a copy reading the same density with a different scale."""
        return CollisionPartner(name, self.density_index, self.temperatures,
                                self.lcu, self.lcl, self.down, density_scale)


@dataclass(frozen=True)
class MolecularData:
    """
    Immutable description of one molecular species.

    Attributes
    ----------
    name : str
        Species name.
    molecular_weight : float
        Molecular weight [amu].
    energies : np.ndarray
        Level energies [cm^-1], shape (nlev,).
    weights : np.ndarray
        Statistical weights, shape (nlev,).
    lau, lal : np.ndarray
        0-based upper and lower level of each radiative transition.
    aeinst : np.ndarray
        Einstein A coefficients [s^-1].
    freq : np.ndarray
        Line frequencies [Hz].
    partners : tuple of CollisionPartner
        Collision partners of the species.

    Derived attributes ``beinstu``, ``beinstl`` (Einstein B coefficients,
    SI, per unit of J_nu) and the normalisation ``norm``/``norminv`` (the
    Planck function at the first line frequency and 2.725 K) are filled in
    on construction.
    """
    name: str
    molecular_weight: float
    energies: np.ndarray
    weights: np.ndarray
    lau: np.ndarray
    lal: np.ndarray
    aeinst: np.ndarray
    freq: np.ndarray
    partners: Tuple[CollisionPartner, ...] = ()
    beinstu: np.ndarray = field(init=False, repr=False)
    beinstl: np.ndarray = field(init=False, repr=False)
    norm: float = field(init=False, repr=False)
    norminv: float = field(init=False, repr=False)

    def __post_init__(self):
        set_ = object.__setattr__
        set_(self, "energies", _frozen(self.energies))
        set_(self, "weights", _frozen(self.weights))
        set_(self, "lau", _frozen(self.lau, np.int64))
        set_(self, "lal", _frozen(self.lal, np.int64))
        set_(self, "aeinst", _frozen(self.aeinst))
        set_(self, "freq", _frozen(self.freq))
        set_(self, "partners", tuple(self.partners))

        with np.errstate(divide="ignore", invalid="ignore"):
            beinstu = self.aeinst * CLIGHT**2 / (2 * HPLANCK * self.freq**3)
        if len(self.lau) and np.all(self.lau < len(self.weights)) and np.all(self.lal < len(self.weights)):
            beinstl = self.weights[self.lau] / self.weights[self.lal] * beinstu
        else:
            beinstl = np.full_like(beinstu, np.nan)
        set_(self, "beinstu", _frozen(beinstu))
        set_(self, "beinstl", _frozen(beinstl))

        norm = float(planck(self.freq[0], TNORM)) if len(self.freq) else 1.0
        set_(self, "norm", norm)
        set_(self, "norminv", 1.0 / norm if norm > 0 else 0.0)

    @property
    def nlev(self) -> int:
        return len(self.energies)

    @property
    def nline(self) -> int:
        return len(self.lau)

    @property
    def npart(self) -> int:
        return len(self.partners)

    def validate(self) -> "MolecularData":
        """
        Check the internal consistency of the data.

        Returns
        -------
        MolecularData
            ``self``.

        Raises
        ------
        ConfigurationError
            For invalid level indices, non-positive frequencies, Einstein
            coefficients or weights, malformed temperature tables or negative
            rate coefficients.
        """
        nlev = self.nlev
        if nlev < 2:
            raise ConfigurationError(f"{self.name}: at least two levels are needed, got {nlev}")
        if self.weights.shape != (nlev,):
            raise ConfigurationError(f"{self.name}: {len(self.weights)} weights for {nlev} levels")
        if np.any(self.weights <= 0):
            raise ConfigurationError(f"{self.name}: statistical weights must be positive")
        if not self.molecular_weight > 0:
            raise ConfigurationError(f"{self.name}: molecular weight must be positive")
        if self.nline < 1:
            raise ConfigurationError(f"{self.name}: no radiative transitions")
        n = self.nline
        for arr, label in ((self.lal, "lal"), (self.aeinst, "aeinst"), (self.freq, "freq")):
            if arr.shape != (n,):
                raise ConfigurationError(f"{self.name}: {label} has shape {arr.shape}, expected ({n},)")
        _check_levels(self.name, "radiative", self.lau, self.lal, nlev)
        if np.any(self.aeinst <= 0):
            raise ConfigurationError(f"{self.name}: Einstein A coefficients must be positive")
        if np.any(self.freq <= 0):
            raise ConfigurationError(f"{self.name}: line frequencies must be positive")

        for partner in self.partners:
            label = f"{self.name}/{partner.name}"
            temps = partner.temperatures
            if temps.ndim != 1 or len(temps) < 1:
                raise ConfigurationError(f"{label}: empty temperature table")
            if np.any(temps <= 0) or np.any(np.diff(temps) <= 0):
                raise ConfigurationError(
                    f"{label}: temperatures must be positive and strictly increasing")
            if partner.lcl.shape != partner.lcu.shape:
                raise ConfigurationError(f"{label}: lcu and lcl differ in length")
            if partner.down.shape != (partner.n_transitions, len(temps)):
                raise ConfigurationError(
                    f"{label}: rate table has shape {partner.down.shape}, "
                    f"expected ({partner.n_transitions}, {len(temps)})")
            if np.any(~np.isfinite(partner.down)) or np.any(partner.down < 0):
                raise ConfigurationError(f"{label}: negative or non-finite rate coefficients")
            if partner.density_index < 0:
                raise ConfigurationError(f"{label}: negative density index")
            if not partner.density_scale >= 0:
                raise ConfigurationError(f"{label}: negative density scale")
            _check_levels(label, "collisional", partner.lcu, partner.lcl, nlev)
        return self

    def ortho_para_partners(self, ortho_to_para: float = ORTHO_TO_PARA) -> "MolecularData":
        """
        Split a single total-H2 collision partner into ortho and para H2.

        Data files often tabulate rates with p-H2 and o-H2 separately, while
        the model supplies only the total H2 density. This returns a copy in
        which every partner whose name contains ``"p-H2"`` reads the density
        scaled by ``1 / (1 + ortho_to_para)`` and every partner containing
        ``"o-H2"`` by ``ortho_to_para / (1 + ortho_to_para)``. Other partners
        are unchanged.
        """
        para = 1.0 / (1.0 + ortho_to_para)
        ortho = ortho_to_para / (1.0 + ortho_to_para)
        partners = []
        for p in self.partners:
            if "o-H2" in p.name:
                partners.append(p.scaled(p.name, ortho * p.density_scale))
            elif "p-H2" in p.name:
                partners.append(p.scaled(p.name, para * p.density_scale))
            else:
                partners.append(p)
        return MolecularData(self.name, self.molecular_weight, self.energies, self.weights,
                             self.lau, self.lal, self.aeinst, self.freq, tuple(partners))


def _check_levels(name, kind, upper, lower, nlev):
    if len(upper) == 0:
        return
    if upper.min() < 0 or lower.min() < 0 or upper.max() >= nlev or lower.max() >= nlev:
        raise ConfigurationError(f"{name}: {kind} transition references a level outside 0..{nlev - 1}")
    if np.any(upper == lower):
        raise ConfigurationError(f"{name}: {kind} transition with identical upper and lower level")


def validate_species(molecules: Sequence[MolecularData]) -> List[MolecularData]:
    """Validate a list of species for a run; at least one is required."""
    molecules = list(molecules)
    if not molecules:
        raise ConfigurationError("at least one species is required")
    names = [m.name for m in molecules]
    if len(set(names)) != len(names):
        raise ConfigurationError(f"species names must be unique, got {names}")
    return [m.validate() for m in molecules]


def two_level_molecule(name="two-level", energy=1.0, g=(1.0, 3.0), aeinst=1e-5,
                       freq=None, molecular_weight=28.0, rate=1e-16,
                       temperatures=(10.0, 1000.0)) -> MolecularData:
    """
    A minimal two-level species with a single collision partner.

    Parameters
    ----------
    energy : float
        Energy of the upper level [cm^-1].
    g : tuple of float
        Statistical weights of the two levels.
    aeinst : float
        Einstein A coefficient [s^-1].
    freq : float, optional
        Line frequency [Hz]; defaults to ``energy * 100 * c``.
    rate : float
        Downward collision rate coefficient [m^3 s^-1], constant in T.
    """
    if freq is None:
        freq = energy * 100.0 * CLIGHT
    partner = CollisionPartner("H2", 0, np.asarray(temperatures, float), [1], [0],
                               np.full((1, len(temperatures)), rate))
    return MolecularData(name, molecular_weight, [0.0, energy], list(g), [1], [0],
                         [aeinst], [freq], (partner,))
