"""
Physical and numerical constants used throughout pylime.

All physical constants are in SI units unless otherwise specified. Level
energies are carried in cm⁻¹, which is why ``HCKB`` carries the factor 100.
"""

# Enable 64-bit precision in JAX; the rate-matrix solves need it.
# This must be done before any JAX operations are performed.
import jax
jax.config.update("jax_enable_x64", True)

import math

# Spatial dimension of the grid
DIM = 3

# Atomic mass unit
AMU = 1.66053904e-27  # kg

# Speed of light in vacuum
CLIGHT = 2.99792458e8  # m/s

# Planck constant
HPLANCK = 6.626070040e-34  # J*s

# Boltzmann constant
KBOLTZ = 1.38064852e-23  # J/K

# Astronomical unit and parsec
AU = 1.495978707e11  # m
PC = 3.08567758e16  # m

SPI = math.sqrt(math.pi)

# h c / (4 π √π), the line-profile prefactor for emission and absorption
HPIP = HPLANCK * CLIGHT / 4.0 / math.pi / SPI  # J*m

# 100 h c / k, converts level energies in cm⁻¹ to K
HCKB = 100.0 * HPLANCK * CLIGHT / KBOLTZ  # K*cm

# Temperature defining the intensity normalisation of every species
TNORM = 2.725  # K

# Ortho-to-para ratio used when splitting a total H2 density
ORTHO_TO_PARA = 3.0

# Velocity offsets of launched photons span ±(VELOCITY_SPAN/2) Doppler widths
VELOCITY_SPAN = 4.3

# Lower limit on the accumulated optical depth of a masing ray
NEGTAULIM = -30.0

# Number of velocity samples along each neighbour edge
N_EDGE_SAMPLES = 5

# Dust mass per unit gas density: mean molecular mass of the gas
GAS_MEAN_MOLECULAR_WEIGHT = 2.4  # amu
