"""Basic tests for the pylime package."""

import jax.numpy as jnp
import numpy as np

import pylime


def test_import():
    """Test that the package imports correctly."""
    assert hasattr(pylime, "run")
    assert hasattr(pylime, "resume")
    assert hasattr(pylime, "Parameters")


def test_all_exports_exist():
    for name in pylime.__all__:
        assert hasattr(pylime, name), name


def test_x64_enabled():
    assert jnp.zeros(1).dtype == jnp.float64


def test_version():
    assert isinstance(pylime.__version__, str)
    assert len(pylime.__version__.split(".")) == 3


def test_planck_rayleigh_jeans():
    """At low frequency the Planck function tends to 2 ν² k T / c²."""
    nu, T = 1e8, 100.0
    rj = 2 * nu ** 2 * pylime.constants.KBOLTZ * T / pylime.constants.CLIGHT ** 2
    assert np.isclose(float(pylime.planck(nu, T)), rj, rtol=1e-4)
