import tomllib
from pathlib import Path

from buildchain import __version__
from buildchain.config import BuildchainConfig, dumps_toml, load_config, save_config


def test_config_roundtrip(tmp_path: Path) -> None:
    config_path = tmp_path / "buildchain.toml"
    config = BuildchainConfig.default()
    config.paths.data_dir = str(tmp_path / "data")
    config.models.fast = "fast-model"
    config.invoker.max_attempts = 5
    config.invoker.retry_delay_seconds = 0.5
    config.session.ttl_seconds = 60
    config.pipeline.topology = "custom"

    save_config(config_path, config)
    loaded = load_config(config_path)

    assert loaded.paths.data_dir == str(tmp_path / "data")
    assert loaded.models.fast == "fast-model"
    assert loaded.models.complex == "claude-sonnet-4-5"
    assert loaded.invoker.max_attempts == 5
    assert loaded.invoker.retry_delay_seconds == 0.5
    assert loaded.session.ttl_seconds == 60
    assert loaded.session.max_rounds == 3
    assert loaded.pipeline.topology == "custom"


def test_missing_config_returns_defaults(tmp_path: Path) -> None:
    config = load_config(tmp_path / "absent.toml")

    assert config.invoker.binary == "claude"
    assert config.invoker.max_attempts == 3
    assert config.invoker.retry_delay_seconds == 2.0
    assert config.invoker.default_max_turns == 100
    assert config.session.ttl_seconds == 1800
    assert config.pipeline.topology == "development"


def test_dumps_toml_keeps_float_type() -> None:
    parsed = tomllib.loads(dumps_toml(BuildchainConfig.default()))

    assert isinstance(parsed["invoker"]["retry_delay_seconds"], float)
    assert isinstance(parsed["invoker"]["timeout_seconds"], float)
    assert parsed["invoker"]["timeout_seconds"] == 600.0


def test_small_floats_survive_a_save(tmp_path: Path) -> None:
    config_path = tmp_path / "buildchain.toml"
    config = BuildchainConfig.default()
    config.invoker.retry_delay_seconds = 0.0005
    config.invoker.timeout_seconds = 1e-7

    save_config(config_path, config)
    loaded = load_config(config_path)

    assert loaded.invoker.retry_delay_seconds == 0.0005
    assert loaded.invoker.timeout_seconds == 1e-7


def test_resolved_data_dir_expands_home(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("HOME", str(tmp_path))
    config = BuildchainConfig.default()

    assert config.paths.resolved_data_dir() == (tmp_path / ".buildchain").resolve()


def test_version_is_exposed() -> None:
    assert __version__ == "0.1.0"
