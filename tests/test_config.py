import json

import pytest
from pydantic import ValidationError

from coldstart.config import Settings, load_routes_file
from coldstart.shared import ConfigurationError
from coldstart.supervisor.models import BackendConfig

BACKEND_ENV = (
    "COLDSTART_ROUTES_FILE",
    "BACKEND_NAME",
    "BACKEND_COMMAND",
    "BACKEND_IMAGE",
    "BACKEND_ARGS",
    "BACKEND_APP_PATH",
    "BACKEND_PORT",
    "BACKEND_IDLE_TIMEOUT_SECONDS",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in BACKEND_ENV:
        monkeypatch.delenv(name, raising=False)


def test_default_route_from_environment(monkeypatch):
    monkeypatch.setenv("BACKEND_COMMAND", "npm")
    monkeypatch.setenv("BACKEND_ARGS", "run start -- --host '0.0.0.0'")
    monkeypatch.setenv("BACKEND_APP_PATH", "/srv/app")
    monkeypatch.setenv("BACKEND_IDLE_TIMEOUT_SECONDS", "120")

    [config] = Settings().backend_configs()

    assert config.name == "default"
    assert config.kind == "process"
    assert config.args == ("run", "start", "--", "--host", "0.0.0.0")
    assert config.app_path == "/srv/app"
    assert config.idle_timeout == 120
    assert config.port is None
    assert config.path_prefix == "/"


def test_no_backend_configured():
    assert Settings().backend_configs() == []


def test_invalid_default_route_is_configuration_error(monkeypatch):
    monkeypatch.setenv("BACKEND_COMMAND", "npm")
    monkeypatch.setenv("BACKEND_IMAGE", "node:20")

    with pytest.raises(ConfigurationError):
        Settings().backend_configs()


def test_routes_file(tmp_path, monkeypatch):
    routes = tmp_path / "routes.json"
    routes.write_text(
        json.dumps(
            {
                "routes": [
                    {"name": "api", "path_prefix": "/api", "command": "uvicorn", "args": ["app:app"]},
                    {"name": "web", "image": "nginx:alpine", "app_path": "/srv/web", "port": 9200},
                ]
            }
        )
    )
    monkeypatch.setenv("COLDSTART_ROUTES_FILE", str(routes))
    monkeypatch.setenv("BACKEND_COMMAND", "ignored")

    api, web = Settings().backend_configs()

    assert (api.name, api.kind, api.args) == ("api", "process", ("app:app",))
    assert (web.name, web.kind, web.port) == ("web", "container", 9200)


@pytest.mark.parametrize(
    "content",
    [
        "not json",
        json.dumps({"backends": []}),
        json.dumps({"routes": [{"name": "api"}]}),
        json.dumps({"routes": [{"name": "a", "command": "x"}, {"name": "a", "command": "y"}]}),
    ],
)
def test_bad_routes_file(tmp_path, content):
    routes = tmp_path / "routes.json"
    routes.write_text(content)

    with pytest.raises(ConfigurationError):
        load_routes_file(routes)


def test_missing_routes_file(tmp_path):
    with pytest.raises(ConfigurationError):
        load_routes_file(tmp_path / "absent.json")


@pytest.mark.parametrize(
    "overrides",
    [
        {"name": "bad name"},
        {"name": "../escape"},
        {"command": None},
        {"image": "nginx"},
        {"path_prefix": "api"},
        {"port": 70000},
        {"port_range_start": 9100, "port_range_end": 9000},
        {"idle_timeout": 0},
        {"unknown": True},
    ],
)
def test_backend_config_validation(overrides):
    values = {"name": "app", "command": "node"}
    values.update(overrides)

    with pytest.raises(ValidationError):
        BackendConfig(**values)


def test_backend_config_is_frozen():
    config = BackendConfig(name="app", command="node")

    with pytest.raises(ValidationError):
        config.port = 9000
