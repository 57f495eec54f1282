# tests/unit/config/test_loader_unit.py

import os

import pytest

from r_lsp_shim.config.loader import (
    ENV_OVERRIDES,
    LspSettings,
    _find_project_root,
    _to_bool,
    _update_nested_dict,
    get_lsp_settings,
    load_configuration,
)

VALID_YAML = """
lsp:
  debug: true
  use_stdio: false
  args: ["--vanilla"]
  lang: ""
  path: /opt/R/bin/R
  connect_timeout: null
  initialize_timeout: 10
"""


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for env_var, _, _ in ENV_OVERRIDES:
        monkeypatch.delenv(env_var, raising=False)


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "config.yml"
    path.write_text(VALID_YAML, encoding="utf-8")
    return path


def _load(path, tmp_path):
    return load_configuration(config_path=path, dotenv_path=str(tmp_path / "missing.env"))


def test_load_yaml(config_file, tmp_path):
    config = _load(config_file, tmp_path)

    assert config["lsp"]["debug"] is True
    assert config["lsp"]["args"] == ["--vanilla"]


def test_env_overrides_are_typed(config_file, tmp_path, monkeypatch):
    monkeypatch.setenv("R_LSP_USE_STDIO", "yes")
    monkeypatch.setenv("R_LSP_DEBUG", "0")
    monkeypatch.setenv("R_LSP_CONNECT_TIMEOUT", "2.5")
    monkeypatch.setenv("R_LSP_LANG", "C.UTF-8")

    config = _load(config_file, tmp_path)

    assert config["lsp"]["use_stdio"] is True
    assert config["lsp"]["debug"] is False
    assert config["lsp"]["connect_timeout"] == 2.5
    assert config["lsp"]["lang"] == "C.UTF-8"


def test_unconvertible_override_is_ignored(config_file, tmp_path, monkeypatch):
    monkeypatch.setenv("R_LSP_CONNECT_TIMEOUT", "soon")
    monkeypatch.setenv("R_LSP_DEBUG", "maybe")

    config = _load(config_file, tmp_path)

    assert config["lsp"]["connect_timeout"] is None
    assert config["lsp"]["debug"] is True


def test_missing_file_yields_overrides_only(tmp_path, monkeypatch):
    monkeypatch.setenv("R_LSP_PATH", "/usr/lib/R/bin/R")

    config = _load(tmp_path / "absent.yml", tmp_path)

    assert config == {"lsp": {"path": "/usr/lib/R/bin/R"}}


def test_invalid_yaml_returns_empty(tmp_path):
    path = tmp_path / "config.yml"
    path.write_text("lsp: [unclosed", encoding="utf-8")

    assert _load(path, tmp_path) == {}


def test_dotenv_file_feeds_overrides(config_file, tmp_path):
    dotenv = tmp_path / ".env"
    dotenv.write_text("R_LSP_LANG=sv_SE.UTF-8\n", encoding="utf-8")

    try:
        config = load_configuration(config_path=config_file, dotenv_path=str(dotenv))
    finally:
        os.environ.pop("R_LSP_LANG", None)

    assert config["lsp"]["lang"] == "sv_SE.UTF-8"


def test_settings_from_config(config_file, tmp_path):
    settings = LspSettings.from_config(_load(config_file, tmp_path))

    assert settings == LspSettings(
        debug=True,
        use_stdio=False,
        args=["--vanilla"],
        lang="",
        path="/opt/R/bin/R",
        connect_timeout=None,
        initialize_timeout=10.0,
        shutdown_timeout=5.0,
    )


def test_settings_defaults():
    assert get_lsp_settings({}) == LspSettings()
    assert LspSettings.from_config({"lsp": "bogus"}) == LspSettings()
    assert LspSettings().as_section() == {
        "debug": False,
        "use_stdio": False,
        "args": [],
        "lang": "",
        "path": "",
    }


@pytest.mark.parametrize(
    "value, expected", [("1", True), ("TRUE", True), ("on", True), ("false", False), ("", False)]
)
def test_to_bool(value, expected):
    assert _to_bool(value) is expected


def test_to_bool_rejects_garbage():
    with pytest.raises(ValueError):
        _to_bool("perhaps")


def test_update_nested_dict_conflict_leaves_config():
    config = {"lsp": "not-a-dict"}
    _update_nested_dict(config, ["lsp", "debug"], True)
    assert config == {"lsp": "not-a-dict"}


def test_find_project_root(tmp_path):
    (tmp_path / "pyproject.toml").write_text("", encoding="utf-8")
    nested = tmp_path / "a" / "b"
    nested.mkdir(parents=True)

    assert _find_project_root(nested) == tmp_path.resolve()
