"""Tests for saving, restoring and resuming grids."""

import warnings

import numpy as np
import pytest

from pylime import ConfigurationError, ConvergenceState, load_grid, prepare_populations, resume, save_grid
from pylime.engine import file_checkpoint, solve_populations
from pylime.persistence import _FIELDS, _GEOMETRY

from conftest import single_point_grid, uniform_model
from test_convergence import parameters


class TestRoundTrip:

    def test_arrays_identical(self, tmp_path, three_level):
        grid = single_point_grid(uniform_model(abundance=1e-9))
        populations = [prepare_populations(grid, three_level, 0)]
        populations[0].pops[0] = [0.2, 0.5, 0.3]
        populations[0].converged[0] = True
        n_rays = np.arange(grid.n_points) + 9
        path = tmp_path / "grid.h5"

        save_grid(path, grid, populations, n_rays, iteration=3, names=["rotor"], streak=1)
        saved = load_grid(path)

        for key in _GEOMETRY + _FIELDS:
            original, restored = getattr(grid, key), getattr(saved.grid, key)
            assert restored.dtype == original.dtype, key
            assert np.array_equal(restored, original), key
        assert saved.grid.radius == grid.radius
        assert saved.iteration == 3
        assert saved.streak == 1
        assert np.array_equal(saved.n_rays, n_rays)
        assert saved.species[0].name == "rotor"
        assert np.array_equal(saved.species[0].pops, populations[0].pops)
        assert np.array_equal(saved.species[0].converged, populations[0].converged)

    def test_not_hdf5(self, tmp_path):
        path = tmp_path / "junk.h5"
        path.write_text("not hdf5")
        with pytest.raises(ValueError):
            load_grid(path)


class TestResume:

    def run_with_checkpoint(self, tmp_path, mol, **changes):
        grid = single_point_grid(uniform_model(abundance=1e-9))
        params = parameters(n_points=1, n_sink_points=6, **changes)
        path = tmp_path / "checkpoint.h5"
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", RuntimeWarning)
            result = solve_populations(grid, [mol], params, checkpoint=path)
        return result, path, params

    def test_checkpoint_written_each_pass(self, tmp_path, two_level):
        result, path, _ = self.run_with_checkpoint(tmp_path, two_level, max_iterations=3)
        saved = load_grid(path)
        assert saved.iteration == result.iterations
        assert np.array_equal(saved.species[0].pops, result.populations[0].pops)
        assert np.array_equal(saved.n_rays, result.n_rays)

    def test_resume_continues_counter(self, tmp_path, two_level):
        _, path, params = self.run_with_checkpoint(tmp_path, two_level, max_iterations=2,
                                                   goal_streak=5)
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", RuntimeWarning)
            resumed = resume(path, [two_level], params.with_updates(max_iterations=4))
        assert resumed.iterations == 4
        assert [r.iteration for r in resumed.history] == [3, 4]

    def test_resume_keeps_goal_streak(self, tmp_path, two_level):
        grid = single_point_grid(uniform_model(abundance=1e-25))
        params = parameters(n_points=1, n_sink_points=6)
        full = solve_populations(grid, [two_level], params)
        assert full.state is ConvergenceState.CONVERGED

        path = tmp_path / "first.h5"
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", RuntimeWarning)
            solve_populations(grid, [two_level], params.with_updates(max_iterations=1),
                              checkpoint=path)
        saved = load_grid(path)
        assert saved.iteration == 1
        assert full.history[0].converged_fraction[0] > params.goal
        assert saved.streak == 1

        resumed = resume(path, [two_level], params)
        assert resumed.state is full.state
        assert resumed.iterations == full.iterations
        assert np.array_equal(resumed.populations[0].pops, full.populations[0].pops)

    def test_resume_matches_uninterrupted_run(self, tmp_path, two_level):
        grid = single_point_grid(uniform_model(abundance=1e-9))
        params = parameters(n_points=1, n_sink_points=6, max_iterations=5)

        def every_pass(solver):
            file_checkpoint(tmp_path / f"pass{solver.tracker.iteration}.h5")(solver)

        with warnings.catch_warnings():
            warnings.simplefilter("ignore", RuntimeWarning)
            full = solve_populations(grid, [two_level], params, checkpoint=every_pass)
            for k in range(1, full.iterations):
                resumed = resume(tmp_path / f"pass{k}.h5", [two_level], params)
                assert resumed.state is full.state, k
                assert resumed.iterations == full.iterations, k
                assert np.array_equal(resumed.populations[0].pops, full.populations[0].pops), k
                assert np.array_equal(resumed.n_rays, full.n_rays), k

    def test_resume_rejects_other_species(self, tmp_path, two_level, three_level):
        _, path, params = self.run_with_checkpoint(tmp_path, two_level, max_iterations=1)
        with pytest.raises(ConfigurationError):
            resume(path, [three_level], params)

    def test_callable_checkpoint(self, tmp_path, two_level):
        grid = single_point_grid(uniform_model(abundance=1e-25))
        calls = []
        solve_populations(grid, [two_level], parameters(n_points=1, n_sink_points=6),
                          checkpoint=lambda solver: calls.append(solver.tracker.iteration))
        assert calls and calls == list(range(1, len(calls) + 1))

    def test_file_checkpoint_hook(self, tmp_path, two_level):
        hook = file_checkpoint(tmp_path / "hook.h5")
        assert callable(hook)
