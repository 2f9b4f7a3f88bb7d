from datetime import datetime
from pathlib import Path
import json

import pytest

from campusflow.common.exceptions import ConfigurationError
from campusflow.domain.models import Algorithm, Status, VehicleType
from campusflow.simulation.core import SimulationConfig, load_config


pytestmark = pytest.mark.unit

BUNDLED_CONFIG = Path(__file__).resolve().parents[1] / "config" / "campus.yaml"


def test_defaults_match_campus_deployment():
    config = SimulationConfig()

    assert config.cycle_interval == 10.0
    assert config.flow_interval == 3.0
    assert config.max_green == 1
    assert config.max_wait_seconds == 120.0
    assert config.policies.fixed.timing().as_dict() == {
        "red": 30.0,
        "yellow": 5.0,
        "green": 25.0,
        "cycle": 60.0,
    }
    assert [spec.name for spec in config.campus.intersections] == [
        "Main Gate Junction",
        "Library Intersection",
    ]


def test_bundled_yaml_config_loads():
    config = load_config(BUNDLED_CONFIG)

    assert config.seed == 42
    assert config.start_time == datetime(2024, 1, 15, 8, 0, 0)
    assert config.policies.ai.peak_hours == ((8, 9), (12, 13), (16, 17))
    assert config.flow.type_weights[VehicleType.EMERGENCY] == 0.015
    assert config.campus.intersections[1].algorithm == Algorithm.AI_OPTIMIZED
    assert config.campus.seed == 42


def test_json_config_overrides_only_given_keys(tmp_path):
    path = tmp_path / "campus.json"
    path.write_text(
        json.dumps(
            {
                "cycle_interval": 5,
                "max_green": 2,
                "timing": {"adaptive": {"max_green": 45, "unknown_key": 1}},
                "flow": {"color_weights": {"red": 5, "green": 1}},
            }
        )
    )

    config = load_config(path)

    assert config.cycle_interval == 5.0
    assert config.max_green == 2
    assert config.policies.adaptive.max_green == 45
    assert config.policies.adaptive.base_green == 15.0
    assert config.flow.color_weight(Status.RED) == 5.0
    assert config.flow.color_weight(Status.YELLOW) == 1.0


@pytest.mark.parametrize(
    "mapping",
    [
        {"max_green": 0},
        {"tick_duration": 0},
        {"timing": {"fixed": {"yellow": 0}}},
        {"timing": ["not", "a", "mapping"]},
        {"flow": {"type_weights": {"SPACESHIP": 1.0}}},
        {"flow": {"type_weights": {"CAR": 0}}},
        {"flow": {"color_weights": {"red": 0, "yellow": 0, "green": 0}, "other_color_weight": 0}},
        {"flow": {"color_weights": {"red": -1}}},
        {"flow": {"other_color_weight": "lots"}},
        {"campus": {"intersections": [{"name": "Gate", "roads": ["A"], "algorithm": "MAGIC"}]}},
        {"campus": {"intersections": [{"name": "Gate"}]}},
        {"start_time": "yesterday"},
    ],
)
def test_invalid_configuration_is_rejected(mapping):
    with pytest.raises(ConfigurationError):
        SimulationConfig.from_mapping(mapping)


def test_non_mapping_file_is_rejected(tmp_path):
    path = tmp_path / "campus.yaml"
    path.write_text("- just\n- a list\n")

    with pytest.raises(ConfigurationError):
        load_config(path)


def test_missing_file_is_a_configuration_error(tmp_path):
    with pytest.raises(ConfigurationError):
        load_config(tmp_path / "missing.yaml")
