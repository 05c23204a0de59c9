# tests/test_config.py
"""
Tests for configuration loading.
"""
import pytest

from autopol.config import AutopolConfig, load_config
from autopol.errors import ConfigError


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("AUTOPOL_CONFIG", "HUBBLE_SERVER", "CLUSTER_NAME", "AUTOPOL_TRIGGER"):
        monkeypatch.delenv(name, raising=False)


def test_defaults_without_file(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    config = load_config()

    assert isinstance(config, AutopolConfig)
    assert config.discovery.trigger == 100
    assert config.output.kind == "CiliumNetworkPolicy"
    assert config.dns.service_name == "kube-dns"


def test_load_file(tmp_path):
    path = tmp_path / "autopol.yaml"
    path.write_text(
        "cluster_name: kind\n"
        "hubble:\n"
        "  server: relay.kube-system:4245\n"
        "discovery:\n"
        "  trigger: 5\n"
    )
    config = load_config(str(path))

    assert config.cluster_name == "kind"
    assert config.hubble.server == "relay.kube-system:4245"
    assert config.hubble.kubectl_target == "ds/cilium"
    assert config.discovery.trigger == 5


def test_environment_overrides(tmp_path, monkeypatch):
    path = tmp_path / "autopol.yaml"
    path.write_text("cluster_name: kind\n")
    monkeypatch.setenv("AUTOPOL_CONFIG", str(path))
    monkeypatch.setenv("CLUSTER_NAME", "prod")
    monkeypatch.setenv("HUBBLE_SERVER", "hubble-relay:80")
    monkeypatch.setenv("AUTOPOL_TRIGGER", "20")

    config = load_config()

    assert config.cluster_name == "prod"
    assert config.hubble.server == "hubble-relay:80"
    assert config.discovery.trigger == 20


def test_missing_explicit_file():
    with pytest.raises(ConfigError):
        load_config("/nonexistent/autopol.yaml")


@pytest.mark.parametrize("content", [
    "discovery:\n  trigger: 0\n",
    "metrics:\n  port: 70000\n",
    "output:\n  kind: NetworkPolicy\n",
    "- not\n- a mapping\n",
    "hubble: [unclosed\n",
])
def test_invalid_config(tmp_path, content):
    path = tmp_path / "autopol.yaml"
    path.write_text(content)

    with pytest.raises(ConfigError):
        load_config(str(path))
