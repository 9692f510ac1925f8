"""Tests for run parameter validation."""

import pytest

from pylime import ConfigurationError, Parameters


def base(**changes):
    kwargs = dict(radius=1e15, min_scale=1e12, n_points=100, n_sink_points=50)
    kwargs.update(changes)
    return Parameters(**kwargs)


class TestParameters:

    def test_defaults_validate(self):
        params = base().validate()
        assert params.min_rays == 9
        assert params.max_rays == 10000
        assert params.tolerance == 1e-6
        assert params.goal == 0.5
        assert params.max_iterations == 16

    @pytest.mark.parametrize("changes", [
        dict(radius=0.0),
        dict(min_scale=0.0),
        dict(min_scale=2e15),
        dict(n_points=0),
        dict(n_sink_points=-1),
        dict(min_rays=0),
        dict(min_rays=100, max_rays=10),
        dict(ray_growth=1.0),
        dict(goal=0.0),
        dict(goal=1.5),
        dict(goal_streak=0),
        dict(tolerance=0.0),
        dict(sampling="gaussian"),
        dict(n_threads=0),
        dict(max_path=-1.0),
        dict(min_sub_iterations=10, max_sub_iterations=5),
        dict(pop_floor=1e-3),
    ])
    def test_invalid(self, changes):
        with pytest.raises(ConfigurationError):
            base(**changes).validate()

    def test_configuration_error_is_value_error(self):
        with pytest.raises(ValueError):
            base(radius=-1.0).validate()

    def test_with_updates(self):
        params = base().with_updates(n_threads=4, seed=7)
        assert params.n_threads == 4
        assert params.seed == 7
        with pytest.raises(ConfigurationError):
            base().with_updates(max_rays=1)
