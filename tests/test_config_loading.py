"""
Tests that the shipped YAML config loads and matches the code defaults.
"""

import math
from pathlib import Path

import pytest

from control.mpc_controller import MPCConfig, build_mpc_config
from mpc_stack import DEFAULT_CONFIG_PATH, load_config


def test_default_config_file_exists():
    assert DEFAULT_CONFIG_PATH.exists()


def test_mpc_section_matches_code_defaults():
    """Shipped YAML and dataclass defaults must not drift apart."""
    config = load_config()
    assert build_mpc_config(config["mpc"]) == MPCConfig()


def test_bridge_section():
    bridge = load_config()["bridge"]
    assert bridge["port"] == 4567
    assert bridge["cycle_timeout"] == pytest.approx(0.3)
    assert bridge["warm_up"] is True


def test_explicit_path(tmp_path):
    path = tmp_path / "custom.yaml"
    path.write_text("mpc:\n  horizon_steps: 12\n  bounds:\n    max_steer_deg: 20\n")
    config = build_mpc_config(load_config(str(path))["mpc"])
    assert config.horizon_steps == 12
    assert config.bounds.max_steer == pytest.approx(math.radians(20.0))


def test_missing_file_gives_empty_config(tmp_path):
    assert load_config(str(tmp_path / "missing.yaml")) == {}


def test_empty_file_gives_empty_config(tmp_path):
    path = tmp_path / "empty.yaml"
    path.write_text("")
    assert load_config(str(path)) == {}
