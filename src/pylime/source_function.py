"""
Line and continuum source-function numerics.

Everything here works on intensities in units of the species normalisation
(the Planck function at the first line frequency and 2.725 K) except
:func:`planck`, which is in SI units [W m^-2 Hz^-1 sr^-1].
"""

import jax.numpy as jnp
import numpy as np

from .constants import AMU, CLIGHT, HPLANCK, KBOLTZ, HPIP, GAS_MEAN_MOLECULAR_WEIGHT
from .cubic_splines import cubic_spline


def planck(freq, T):
    """
    Planck function B_nu(T).

    Parameters
    ----------
    freq : float or array
        Frequency [Hz].
    T : float or array
        Temperature [K]. Non-positive temperatures give zero.

    Returns
    -------
    float or array
        Specific intensity [W m^-2 Hz^-1 sr^-1].
    """
    freq = jnp.asarray(freq, dtype=jnp.float64)
    T = jnp.asarray(T, dtype=jnp.float64)
    safe_T = jnp.where(T > 0, T, 1.0)
    x = HPLANCK * freq / (KBOLTZ * safe_T)
    B = 2 * HPLANCK * freq**3 / CLIGHT**2 / jnp.expm1(x)
    return jnp.where(T > 0, B, 0.0)


def background_intensity(mol, tcmb: float) -> np.ndarray:
    """
    Background intensity per line of ``mol`` in normalised units.

    Zero everywhere when ``tcmb`` is zero.
    """
    if tcmb <= 0:
        return np.zeros(mol.nline)
    return np.asarray(planck(mol.freq, tcmb)) * mol.norminv


def gaussline(v, binv):
    """Unnormalised Gaussian line profile exp(-(v binv)^2)."""
    return np.exp(-(v * binv) ** 2)


def calc_source_fn(dtau, taylor_cutoff=0.66):
    """
    Attenuation factors of one ray segment.

    Returns ``(remnant, attenuation)`` with ``attenuation = exp(-dtau)`` and
    ``remnant = (1 - exp(-dtau)) / dtau``. Below ``taylor_cutoff`` in
    ``|dtau|`` both are evaluated from their Taylor series, which avoids the
    cancellation in ``1 - exp(-dtau)`` for vanishing optical depth.
    """
    dtau = np.asarray(dtau, dtype=np.float64)
    small = np.abs(dtau) < taylor_cutoff
    remnant_taylor = 1.0 - dtau * (1.0 - dtau / 3.0) / 2.0
    attenuation_taylor = 1.0 - dtau * remnant_taylor

    # dtau can only be near zero on the small branch
    safe = np.where(small, 1.0, dtau)
    attenuation_full = np.exp(-safe)
    remnant_full = (1.0 - attenuation_full) / safe

    remnant = np.where(small, remnant_taylor, remnant_full)
    attenuation = np.where(small, attenuation_taylor, attenuation_full)
    return remnant, attenuation


def line_coefficients(vfac, binv, nmol, pops, mol, knu, dust):
    """
    Emission and absorption coefficients of every line of a species.

    Parameters
    ----------
    vfac : array
        Line-profile factor of each line, shape (..., nline).
    binv : float or array
        Inverse Doppler width [s/m], broadcast against ``vfac[..., 0]``.
    nmol : float or array
        Molecular number density [m^-3].
    pops : array
        Level populations, shape (..., nlev).
    mol : MolecularData
    knu, dust : array
        Dust opacity [m^-1] and dust source function per line.

    Returns
    -------
    jnu, alpha : array
        Emissivity and opacity, shape (..., nline). ``jnu`` is in SI; the
        caller multiplies by ``mol.norminv``.
    """
    binv = np.asarray(binv)[..., None]
    nmol = np.asarray(nmol)[..., None]
    factor = vfac * HPIP * binv * nmol
    upper = pops[..., mol.lau]
    lower = pops[..., mol.lal]
    jnu = dust * knu + factor * upper * mol.aeinst
    alpha = knu + factor * (lower * mol.beinstl - upper * mol.beinstu)
    return jnu, alpha


class DustOpacity:
    """
    Dust mass opacity as a function of frequency.

    The table is interpolated with a natural cubic spline in
    log(frequency)-log(kappa) and continued linearly in log-log space
    outside its range.

    Parameters
    ----------
    freq : array_like
        Frequencies [Hz], any order.
    kappa : array_like
        Mass opacity [m^2 kg^-1] of the dust, positive.
    """

    def __init__(self, freq, kappa):
        freq = np.asarray(freq, dtype=np.float64)
        kappa = np.asarray(kappa, dtype=np.float64)
        if freq.shape != kappa.shape or freq.ndim != 1 or len(freq) < 2:
            raise ValueError("freq and kappa must be 1-d arrays of equal length >= 2")
        if np.any(freq <= 0) or np.any(kappa <= 0):
            raise ValueError("dust opacity tables must be strictly positive")
        order = np.argsort(freq)
        self.freq = freq[order]
        self.kappa = kappa[order]
        self._spline = cubic_spline(np.log(self.freq), np.log(self.kappa), extrapolate=True)

    @classmethod
    def from_wavelength_table(cls, wavelength_micron, kappa_cm2_per_g) -> "DustOpacity":
        """Build from the usual (wavelength [micron], kappa [cm^2/g]) tables."""
        wavelength = np.asarray(wavelength_micron, dtype=np.float64) * 1e-6
        return cls(CLIGHT / wavelength, np.asarray(kappa_cm2_per_g, dtype=np.float64) * 0.1)

    def __call__(self, freq):
        return np.exp(np.asarray(self._spline(jnp.log(jnp.asarray(freq, dtype=jnp.float64)))))


def dust_coefficients(opacity, mol, gas_density, gas_to_dust, t_dust):
    """
    Dust absorption coefficient and source function per line.

    Parameters
    ----------
    opacity : DustOpacity or None
        Without an opacity table, the dust contributes nothing.
    mol : MolecularData
    gas_density : array
        Density of the first collision partner per point [m^-3], shape (N,).
    gas_to_dust : array
        Gas-to-dust mass ratio per point, shape (N,).
    t_dust : array
        Dust temperature per point [K], shape (N,).

    Returns
    -------
    knu, dust : np.ndarray
        Both of shape (N, nline); ``dust`` is the Planck function at the dust
        temperature in SI units.
    """
    gas_density = np.asarray(gas_density, dtype=np.float64)
    n = len(gas_density)
    if opacity is None:
        zeros = np.zeros((n, mol.nline))
        return zeros, zeros.copy()
    kappa = opacity(mol.freq)
    dust_mass = GAS_MEAN_MOLECULAR_WEIGHT * AMU / np.asarray(gas_to_dust, dtype=np.float64)
    knu = (dust_mass * gas_density)[:, None] * kappa[None, :]
    dust = np.array(planck(mol.freq[None, :], np.asarray(t_dust)[:, None]))
    return knu, dust
