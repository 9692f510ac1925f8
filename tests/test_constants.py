"""Tests for physical constants."""

import numpy as np

from pylime import constants


class TestPhysicalConstants:

    def test_speed_of_light(self):
        assert np.isclose(constants.CLIGHT, 2.99792458e8, rtol=1e-12)

    def test_planck_constant(self):
        assert np.isclose(constants.HPLANCK, 6.626e-34, rtol=1e-3)

    def test_boltzmann_constant(self):
        assert np.isclose(constants.KBOLTZ, 1.381e-23, rtol=1e-3)

    def test_amu(self):
        assert np.isclose(constants.AMU, 1.6605e-27, rtol=1e-4)


class TestDerivedConstants:

    def test_hckb(self):
        """1 cm⁻¹ corresponds to about 1.4388 K."""
        assert np.isclose(constants.HCKB, 1.4388, rtol=1e-4)

    def test_hpip(self):
        expected = constants.HPLANCK * constants.CLIGHT / (4 * np.pi * np.sqrt(np.pi))
        assert np.isclose(constants.HPIP, expected, rtol=1e-14)

    def test_spi(self):
        assert np.isclose(constants.SPI ** 2, np.pi)

    def test_parsec_in_au(self):
        assert np.isclose(constants.PC / constants.AU, 206264.8, rtol=1e-6)
