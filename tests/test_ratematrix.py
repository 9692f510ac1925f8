"""Tests for rate-matrix assembly, the population solve and LTE populations."""

import jax.numpy as jnp
import numpy as np
import pytest

from pylime import MolecularData, PopulationSolveFailed, Parameters, lte_populations
from pylime.constants import HCKB
from pylime.molecular_data import two_level_molecule
from pylime.ratematrix import (
    CollisionTable, PointRates, assemble_rate_matrix, collision_rates, relative_change,
    solve_rate_matrix, statistical_equilibrium,
)


def point_rates(mol, T, density):
    table = CollisionTable(mol)
    up, down = collision_rates(mol, np.array([T]), np.array([[density]]), table)
    return PointRates(mol, table, up[0], down[0])


class TestAssembly:

    def test_column_sums_vanish(self, three_level):
        rates = point_rates(three_level, 30.0, 1e9)
        M = np.asarray(rates.matrix(np.array([1e-16, 3e-16])))
        assert np.allclose(M.sum(axis=0), 0.0, atol=1e-20)
        off = M[~np.eye(3, dtype=bool)]
        assert np.all(off >= 0)
        assert np.all(np.diag(M) <= 0)

    def test_entries(self, two_level):
        mol = two_level
        jbar = np.array([2e-17])
        M = np.asarray(assemble_rate_matrix(
            2, jnp.asarray(mol.lau), jnp.asarray(mol.lal), jnp.asarray(mol.aeinst),
            jnp.asarray(mol.beinstu), jnp.asarray(mol.beinstl), jnp.asarray(jbar),
            jnp.asarray([1]), jnp.asarray([0]), jnp.asarray([0.3]), jnp.asarray([0.5])))
        assert np.isclose(M[1, 0], mol.beinstl[0] * jbar[0] + 0.3)
        assert np.isclose(M[0, 1], mol.aeinst[0] + mol.beinstu[0] * jbar[0] + 0.5)


class TestSolve:

    def test_normalised_and_positive(self, three_level):
        rates = point_rates(three_level, 30.0, 1e9)
        pops = rates.solve(np.array([1e-16, 3e-16]), np.array([0.5, 0.3, 0.2]))
        assert np.isclose(pops.sum(), 1.0, rtol=0, atol=1e-9)
        assert np.all(pops >= 0)

    def test_steady_state(self, three_level):
        rates = point_rates(three_level, 30.0, 1e9)
        jbar = np.array([1e-16, 3e-16])
        pops = rates.solve(jbar, np.array([0.5, 0.3, 0.2]))
        M = np.asarray(rates.matrix(jbar))
        assert np.allclose(M @ pops, 0.0, atol=1e-12 * np.abs(M).max())

    def test_independent_of_eliminated_row(self, three_level):
        rates = point_rates(three_level, 30.0, 1e9)
        jbar = np.array([1e-16, 3e-16])
        a = rates.solve(jbar, np.array([0.6, 0.3, 0.1]))
        b = rates.solve(jbar, np.array([0.1, 0.3, 0.6]))
        assert np.allclose(a, b, rtol=1e-9)

    def test_floor(self, three_level):
        rates = point_rates(three_level, 3.0, 1e12)
        pops = rates.solve(np.zeros(2), np.array([0.9, 0.05, 0.05]), pop_floor=1e-30)
        assert np.all(pops >= 1e-30 / pops.sum())

    def test_singular(self):
        with pytest.raises(PopulationSolveFailed):
            solve_rate_matrix(np.zeros((3, 3)), np.array([0.5, 0.3, 0.2]))

    def test_negative_rejected(self):
        # with row 0 replaced by the normalisation the solution is (2, -1)
        matrix = np.array([[-1.0, 3.0], [1.0, 2.0]])
        with pytest.raises(PopulationSolveFailed):
            solve_rate_matrix(matrix, np.array([1.0, 0.0]))


class TestLTE:

    def test_boltzmann(self, three_level):
        T = 25.0
        pops = lte_populations(three_level, T)
        g, E = three_level.weights, three_level.energies
        expected = g * np.exp(-E * HCKB / T)
        assert np.allclose(pops, expected / expected.sum(), rtol=1e-12)

    def test_vectorised(self, three_level):
        pops = lte_populations(three_level, np.array([10.0, 50.0, 0.0]))
        assert pops.shape == (3, 3)
        assert np.allclose(pops.sum(axis=1), 1.0)
        assert pops[2, 0] == 1.0
        assert np.all(pops[2, 1:] == 1e-30)

    def test_floor_on_underflow(self, three_level):
        mol = MolecularData("cold", 28.0, [0.0, 3.845, 5000.0], three_level.weights,
                            three_level.lau, three_level.lal, three_level.aeinst,
                            three_level.freq, three_level.partners).validate()
        pops = lte_populations(mol, 10.0, pop_floor=1e-20)
        assert np.isclose(pops[2], 1e-20, rtol=1e-12)
        assert np.all(pops >= 1e-20 * (1 - 1e-12))
        assert np.isclose(pops.sum(), 1.0, rtol=0, atol=1e-12)

    def test_writable(self, three_level):
        pops = lte_populations(three_level, np.array([10.0, 20.0]))
        pops[0] = pops[1]
        assert np.array_equal(pops[0], pops[1])

    def test_collision_dominated_limit(self):
        """With negligible radiation the solution approaches the Boltzmann ratio."""
        mol = two_level_molecule(energy=3.84, aeinst=1e-12, rate=1e-16).validate()
        T = 40.0
        rates = point_rates(mol, T, 1e12)
        pops = rates.solve(np.zeros(1), np.array([0.5, 0.5]))
        boltzmann = mol.weights[1] / mol.weights[0] * np.exp(-mol.energies[1] * HCKB / T)
        assert np.isclose(pops[1] / pops[0], boltzmann, rtol=1e-6)


class TestStatisticalEquilibrium:

    def params(self, **changes):
        kwargs = dict(radius=1.0, min_scale=0.1, n_points=1, n_sink_points=0)
        kwargs.update(changes)
        return Parameters(**kwargs).validate()

    def test_constant_field_is_one_solve(self, three_level):
        rates = point_rates(three_level, 30.0, 1e9)
        jbar = np.array([1e-16, 3e-16])
        calls = []

        def jbar_fn(pops):
            calls.append(pops)
            return jbar

        pops, n_iter = statistical_equilibrium(rates, np.array([0.5, 0.3, 0.2]), jbar_fn,
                                               self.params())
        assert n_iter == 5
        assert np.allclose(pops, rates.solve(jbar, pops))

    def test_iteration_limit(self, three_level):
        rates = point_rates(three_level, 30.0, 1e9)
        flip = [1e-18, 1e-13]

        def jbar_fn(pops):
            flip.reverse()
            return np.array([flip[0], flip[0]])

        _, n_iter = statistical_equilibrium(rates, np.array([0.5, 0.3, 0.2]), jbar_fn,
                                            self.params(max_sub_iterations=12))
        assert n_iter == 12


def test_relative_change():
    new = np.array([0.5, 0.5 - 1e-8, 1e-8])
    old = np.array([0.5, 0.49, 0.02])
    assert np.isclose(relative_change(new, old, 1e-6), (0.5 - 1e-8 - 0.49) / (0.5 - 1e-8))
