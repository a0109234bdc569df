"""Configuration loader tests."""
from __future__ import annotations

from pathlib import Path

import pytest
from fakes import make_machine

from maasflow.config import (
    AppConfig,
    ConfigError,
    build_processing_options,
    load_config,
    load_document,
    parse_duration,
)
from maasflow.models import NodeStatus


def test_load_config_defaults_when_file_missing(tmp_path: Path) -> None:
    """Defaults apply when no config file is present."""
    config = load_config(config_file=tmp_path / "missing.yml", env={})

    assert isinstance(config, AppConfig)
    assert config.maas.url == "http://localhost/MAAS"
    assert config.maas.api_version == "1.0"
    assert config.period == 15.0
    assert config.filter.zone_include == ("default",)
    assert config.filter.host_include == ()
    assert config.mappings == {}
    assert config.preview is False
    assert config.max_workers == 8
    assert config.inflight_ttl == 600.0
    assert config.logs_dir == Path("/var/log/maasflow")


def test_load_config_reads_yaml_file(tmp_path: Path) -> None:
    """Values are loaded from the YAML config file."""
    cfg = tmp_path / "maasflow.yml"
    cfg.write_text(
        "maas:\n"
        "  url: http://maas.example/MAAS\n"
        "  api_key: a:b:c\n"
        "period: 1m30s\n"
        "filter:\n"
        "  hosts:\n"
        "    include: ['^node-']\n"
        "  zones:\n"
        "    include: [rack-a]\n"
        "mappings:\n"
        "  AA:BB:CC:DD:EE:01: compute-1\n"
        "always_rename: true\n"
        f"logs_dir: {tmp_path / 'logs'}\n"
    )

    config = load_config(config_file=cfg, env={})

    assert config.config_file == cfg
    assert config.maas.url == "http://maas.example/MAAS"
    assert config.maas.api_key == "a:b:c"
    assert config.period == 90.0
    assert config.filter.host_include == ("^node-",)
    assert config.filter.zone_include == ("rack-a",)
    assert config.mappings == {"aa:bb:cc:dd:ee:01": "compute-1"}
    assert config.always_rename is True
    assert config.logs_dir == tmp_path / "logs"


def test_env_overrides_take_precedence(tmp_path: Path) -> None:
    """Environment variables override defaults and file settings."""
    cfg = tmp_path / "maasflow.yml"
    cfg.write_text("period: 15s\nmaas:\n  url: http://file/MAAS\n  api_key: a:b:c\n")
    env = {
        "MAASFLOW_PERIOD": "30",
        "MAASFLOW_MAAS__URL": "http://env/MAAS",
        "MAASFLOW_PREVIEW": "true",
        "MAASFLOW_MAX_WORKERS": "2",
    }

    config = load_config(config_file=cfg, env=env)

    assert config.period == 30.0
    assert config.maas.url == "http://env/MAAS"
    assert config.maas.api_key == "a:b:c"
    assert config.preview is True
    assert config.max_workers == 2


def test_config_file_from_environment(tmp_path: Path) -> None:
    """MAASFLOW_CONFIG_FILE selects the file without being treated as a setting."""
    cfg = tmp_path / "alt.yml"
    cfg.write_text("period: 5s\n")

    config = load_config(env={"MAASFLOW_CONFIG_FILE": str(cfg)})

    assert config.config_file == cfg
    assert config.period == 5.0


def test_overrides_win_and_none_is_ignored(tmp_path: Path) -> None:
    """Explicit overrides beat every other source; unset flags are skipped."""
    cfg = tmp_path / "maasflow.yml"
    cfg.write_text("preview: true\nverbose: true\n")

    config = load_config(
        config_file=cfg,
        env={"MAASFLOW_PERIOD": "20s"},
        overrides={"period": "45s", "preview": False, "verbose": None},
    )

    assert config.period == 45.0
    assert config.preview is False
    assert config.verbose is True


def test_filter_document_replaces_defaults(tmp_path: Path) -> None:
    """Filter documents are taken whole rather than merged with the default."""
    config = load_config(
        config_file=tmp_path / "none.yml",
        env={},
        overrides={"filter": '{"hosts": {"include": [".*"]}}'},
    )

    assert config.filter.host_include == (".*",)
    assert config.filter.zone_include == ()


def test_filter_and_mappings_from_files(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """``@path`` references are read, with environment variables expanded."""
    (tmp_path / "filter.json").write_text(
        '{"hosts": {"include": ["node"]}, "zones": {"include": ["default"]}}'
    )
    (tmp_path / "mappings.yml").write_text("aa-bb-cc-dd-ee-02: storage-2\n")
    monkeypatch.setenv("MAASFLOW_TEST_DIR", str(tmp_path))

    config = load_config(
        config_file=tmp_path / "none.yml",
        env={},
        overrides={
            "filter": "@$MAASFLOW_TEST_DIR/filter.json",
            "mappings": "@$MAASFLOW_TEST_DIR/mappings.yml",
        },
    )

    assert config.filter.host_include == ("node",)
    assert config.mappings == {"aa:bb:cc:dd:ee:02": "storage-2"}


def test_missing_document_file_is_fatal(tmp_path: Path) -> None:
    """Unreadable filter files stop configuration loading."""
    with pytest.raises(ConfigError, match="Unable to open file"):
        load_document(f"@{tmp_path / 'nope.json'}", "filter")


def test_malformed_filter_document(tmp_path: Path) -> None:
    """Structurally invalid filters surface as ConfigError."""
    with pytest.raises(ConfigError, match="Unknown filter sections"):
        load_config(
            config_file=tmp_path / "none.yml",
            env={},
            overrides={"filter": {"racks": {"include": []}}},
        )


def test_invalid_regex_rejected_when_building_options(tmp_path: Path) -> None:
    """Bad patterns are reported before the engine starts."""
    config = load_config(
        config_file=tmp_path / "none.yml",
        env={},
        overrides={"filter": {"hosts": {"include": ["("]}}},
    )
    with pytest.raises(ConfigError, match="Invalid regular expression"):
        build_processing_options(config)


def test_build_processing_options(tmp_path: Path) -> None:
    """Processing options carry the compiled filter and run-time flags."""
    config = load_config(
        config_file=tmp_path / "none.yml",
        env={},
        overrides={
            "filter": {"hosts": {"include": ["node"]}, "zones": {"include": ["default"]}},
            "preview": True,
            "max_workers": 3,
            "inflight_ttl": "30s",
        },
    )

    options = build_processing_options(config)

    assert options.preview is True
    assert options.max_workers == 3
    assert options.inflight_ttl == 30.0
    assert options.filter.matches(make_machine("node-1", status=NodeStatus.READY))


@pytest.mark.parametrize(
    ("value", "expected"),
    [("15s", 15.0), ("1m30s", 90.0), ("250ms", 0.25), ("1h", 3600.0), (10, 10.0), ("1.5s", 1.5)],
)
def test_parse_duration(value: object, expected: float) -> None:
    """Go-style durations and plain numbers are accepted."""
    assert parse_duration(value) == pytest.approx(expected)


@pytest.mark.parametrize("value", ["", "15", "fast", "0s", -1, True, "5s garbage"])
def test_parse_duration_rejects_invalid(value: object) -> None:
    """Malformed and non-positive durations are rejected."""
    with pytest.raises(ConfigError):
        parse_duration(value)


def test_unknown_keys_rejected(tmp_path: Path) -> None:
    """Typos in the config file are reported."""
    cfg = tmp_path / "maasflow.yml"
    cfg.write_text("perod: 10s\n")

    with pytest.raises(ConfigError, match="perod"):
        load_config(config_file=cfg, env={})


def test_unknown_maas_keys_rejected(tmp_path: Path) -> None:
    """Unknown keys in the maas section are reported."""
    cfg = tmp_path / "maasflow.yml"
    cfg.write_text("maas:\n  token: x\n")

    with pytest.raises(ConfigError, match="token"):
        load_config(config_file=cfg, env={})


def test_non_boolean_flag_rejected(tmp_path: Path) -> None:
    """Flags must be real booleans."""
    with pytest.raises(ConfigError, match="preview"):
        load_config(config_file=tmp_path / "none.yml", env={"MAASFLOW_PREVIEW": "maybe"})


def test_max_workers_must_be_positive(tmp_path: Path) -> None:
    """At least one worker is required to dispatch actions."""
    with pytest.raises(ConfigError, match="max_workers"):
        load_config(config_file=tmp_path / "none.yml", env={}, overrides={"max_workers": 0})


def test_env_nesting_under_scalar_rejected(tmp_path: Path) -> None:
    """A nested variable cannot descend into a value set as a scalar."""
    env = {"MAASFLOW_PERIOD": "5s", "MAASFLOW_PERIOD__UNIT": "s"}
    with pytest.raises(ConfigError, match="MAASFLOW_PERIOD__UNIT"):
        load_config(config_file=tmp_path / "none.yml", env=env)


@pytest.mark.parametrize("value", ["many", "2.5", True])
def test_max_workers_must_be_integer(tmp_path: Path, value: object) -> None:
    """Non-integer worker counts are rejected."""
    with pytest.raises(ConfigError, match="max_workers"):
        load_config(config_file=tmp_path / "none.yml", env={}, overrides={"max_workers": value})


def test_top_level_must_be_mapping(tmp_path: Path) -> None:
    """A config file holding a list is rejected."""
    cfg = tmp_path / "maasflow.yml"
    cfg.write_text("- period\n")

    with pytest.raises(ConfigError, match="mapping"):
        load_config(config_file=cfg, env={})


def test_to_dict_redacts_api_key(tmp_path: Path) -> None:
    """The API key never appears in rendered configuration."""
    config = load_config(
        config_file=tmp_path / "none.yml", env={"MAASFLOW_MAAS__API_KEY": "a:b:secret"}
    )

    rendered = config.to_dict()

    assert rendered["maas"]["api_key"] == "***"  # type: ignore[index]
    assert "secret" not in repr(rendered)
