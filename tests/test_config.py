"""
Tests for YAML configuration loading.
"""
from promptcard.config import Config


def test_defaults_when_file_missing(tmp_path, monkeypatch):
    monkeypatch.delenv("PROMPTCARD_DATA_DIR", raising=False)
    monkeypatch.delenv("PROMPTCARD_API_SECRET", raising=False)
    cfg = Config.load(str(tmp_path / "absent.yaml"))
    assert cfg.port == 3000
    assert cfg.recent_limit == 20
    assert cfg.api_secret == ""
    assert "~" not in cfg.data_dir


def test_yaml_values_and_unknown_keys(tmp_path, monkeypatch):
    monkeypatch.delenv("PROMPTCARD_DATA_DIR", raising=False)
    path = tmp_path / "config.yaml"
    path.write_text(
        "data_dir: {}\nport: 4100\nrecent_limit: 5\nnot_a_setting: true\n".format(tmp_path / "cards")
    )
    cfg = Config.load(str(path))
    assert cfg.port == 4100
    assert cfg.recent_limit == 5
    assert cfg.data_dir == str(tmp_path / "cards")


def test_malformed_yaml_falls_back(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("port: [unclosed\n")
    assert Config.load(str(path)).port == 3000


def test_environment_overrides(tmp_path, monkeypatch):
    monkeypatch.setenv("PROMPTCARD_DATA_DIR", str(tmp_path / "env"))
    monkeypatch.setenv("PROMPTCARD_API_SECRET", "s3cret")
    cfg = Config.load(str(tmp_path / "absent.yaml"))
    assert cfg.data_dir == str(tmp_path / "env")
    assert cfg.api_secret == "s3cret"


def test_config_path_from_environment(tmp_path, monkeypatch):
    path = tmp_path / "custom.yaml"
    path.write_text("host: 0.0.0.0\n")
    monkeypatch.setenv("PROMPTCARD_CONFIG", str(path))
    assert Config.load().host == "0.0.0.0"
