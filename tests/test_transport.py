"""Tests for the Monte Carlo photon transport estimator."""

import numpy as np
import pytest

from pylime import MolecularData, Parameters, build_model_grid
from pylime.blends import find_blends
from pylime.populations import prepare_populations
from pylime.source_function import background_intensity
from pylime.transport import (
    LineContext, coefficients, mean_intensity, sample_directions, trace_photons,
)

from conftest import RADIUS, single_point_grid, uniform_model


def context(grid, mol, species=0, tcmb=2.725, blends=None):
    populations = prepare_populations(grid, mol, species)
    return LineContext.from_populations(mol, populations, background_intensity(mol, tcmb), blends)


@pytest.fixture(scope="module")
def small_grid():
    """A few dozen points in an expanding cloud."""
    params = Parameters(radius=RADIUS, min_scale=1e-2 * RADIUS, n_points=40, n_sink_points=30,
                        smooth_iterations=5, solid_angle_samples=300, seed=11).validate()

    def velocity(x, y, z):
        return 1e3 * np.array([x, y, z]) / RADIUS

    model = uniform_model(density=1e8, abundance=1e-14, velocity=velocity)
    return build_model_grid(model, params, n_species=1)


class TestSinkBackground:

    @pytest.mark.parametrize("molecule", ["two_level", "three_level"])
    def test_ray_into_sink_returns_background(self, molecule, request):
        mol = request.getfixturevalue(molecule)
        grid = single_point_grid(uniform_model(abundance=1e-8))
        ctx = context(grid, mol)
        rays = trace_photons(grid, 0, ctx, 50, np.random.default_rng(0))
        assert rays.phot.shape == (50, mol.nline)
        assert np.all(rays.phot == ctx.cmb[None, :])

    def test_mean_intensity_is_background_without_gas(self, three_level):
        grid = single_point_grid(uniform_model(abundance=0.0))
        ctx = context(grid, three_level)
        rays = trace_photons(grid, 0, ctx, 30, np.random.default_rng(1))
        jbar, n_contributing = mean_intensity(rays, 0, ctx)
        assert np.allclose(jbar, ctx.cmb * three_level.norm, rtol=1e-12, atol=0)
        assert np.all(n_contributing == 30)

    def test_no_background(self, two_level):
        grid = single_point_grid(uniform_model(abundance=0.0))
        ctx = context(grid, two_level, tcmb=0.0)
        rays = trace_photons(grid, 0, ctx, 20, np.random.default_rng(2))
        jbar, _ = mean_intensity(rays, 0, ctx)
        assert np.all(jbar == 0.0)

    def test_max_path_drops_background(self, two_level):
        grid = single_point_grid(uniform_model(abundance=1e-8))
        ctx = context(grid, two_level)
        rays = trace_photons(grid, 0, ctx, 20, np.random.default_rng(3), max_path=1.0)
        assert np.all(rays.phot == 0.0)


class TestRays:

    def test_reproducible(self, small_grid, two_level):
        ctx = context(small_grid, two_level)
        i = int(small_grid.interior[0])
        a = trace_photons(small_grid, i, ctx, 25, np.random.default_rng(9))
        b = trace_photons(small_grid, i, ctx, 25, np.random.default_rng(9))
        assert np.array_equal(a.phot, b.phot)
        assert np.array_equal(a.first_ds, b.first_ds)

    def test_first_segment_within_cell(self, small_grid, two_level):
        ctx = context(small_grid, two_level)
        for i in small_grid.interior[:5]:
            rays = trace_photons(small_grid, int(i), ctx, 20, np.random.default_rng(int(i)))
            assert np.all(np.isfinite(rays.first_ds))
            assert np.all(rays.first_ds >= 0)
            assert np.all((rays.vfac0 > 0) & (rays.vfac0 <= 1))

    def test_directions_follow_solid_angles(self, small_grid):
        i = int(small_grid.interior[0])
        k = small_grid.n_neighbors[i]
        n = 2000
        directions = sample_directions(small_grid, i, n, np.random.default_rng(5))
        assert np.allclose(np.linalg.norm(directions, axis=1), 1.0)
        cos = directions @ small_grid.edge_dir[i, :k].T
        metric = np.where(cos > 0, cos / small_grid.edge_length[i, :k], -np.inf)
        counts = np.bincount(np.argmax(metric, axis=1), minlength=k) / n
        assert np.allclose(counts, small_grid.solid_angle[i, :k], atol=0.05)

    def test_variance_decreases_with_rays(self, small_grid, two_level):
        ctx = context(small_grid, two_level)
        r = np.linalg.norm(small_grid.positions, axis=1)
        i = int(small_grid.interior[np.argmin(r[small_grid.interior])])

        def spread(n_rays):
            estimates = []
            for seed in range(30):
                rays = trace_photons(small_grid, i, ctx, n_rays, np.random.default_rng(seed))
                estimates.append(mean_intensity(rays, i, ctx)[0][0])
            return np.var(estimates)

        assert spread(160) < spread(10)


class TestBlends:

    def blended_molecule(self, three_level):
        f0 = 1.0e11
        f1 = f0 * (1 - 5.0e3 / 2.99792458e8)
        m = three_level
        return MolecularData("blended", 28.0, m.energies, m.weights, m.lau, m.lal, m.aeinst,
                             [f0, f1], m.partners).validate()

    def test_find_blends(self, three_level):
        mol = self.blended_molecule(three_level)
        blends = find_blends(mol, 1e4)
        assert blends.n_pairs == 2
        assert set(zip(blends.line.tolist(), blends.partner.tolist())) == {(0, 1), (1, 0)}
        assert np.isclose(blends.deltav[blends.line == 0][0], 5.0e3, rtol=1e-9)
        assert blends.deltav[blends.line == 1][0] < 0
        assert find_blends(mol, 1e3).empty
        assert find_blends(three_level, 1e4).empty

    def test_blend_adds_partner_opacity(self, three_level):
        mol = self.blended_molecule(three_level)
        grid = single_point_grid(uniform_model(abundance=1e-8))
        blends = find_blends(mol, 1e4)
        plain = context(grid, mol)
        blended = context(grid, mol, blends=blends)
        cells = np.zeros(4, dtype=np.int64)
        vfac = np.full(4, 0.7)
        vfac_blend = np.full((4, 2), 0.2)
        j0, a0 = coefficients(plain, cells, vfac, np.zeros((4, 0)))
        j1, a1 = coefficients(blended, cells, vfac, vfac_blend)
        assert np.all(j1 > j0)
        # the partner's line contribution enters scaled by its own profile factor
        line_only = a0 - plain.knu[cells]
        assert np.allclose(a1[:, 0] - a0[:, 0], line_only[:, 1] * 0.2 / 0.7, rtol=1e-10)
