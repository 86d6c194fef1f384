"""Configuration loading and validation."""

from __future__ import annotations

from pathlib import Path

import pytest

from embedded_k8s_toolkit import config
from embedded_k8s_toolkit.errors import ConfigError


def _write(tmp_path: Path, text: str) -> Path:
    path = tmp_path / "config.toml"
    path.write_text(text, encoding="utf-8")
    return path


def test_defaults_without_any_file(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.delenv(config.ENV_CONFIG, raising=False)
    monkeypatch.setattr(config, "SYSTEM_CONFIG", tmp_path / "missing.toml")

    settings = config.load_settings()

    assert settings.source is None
    assert settings.jetson.microsd_device == "/dev/mmcblk0"
    assert settings.jetson.microsd_root_partition == "/dev/mmcblk0p1"
    assert settings.jetson.standard_boot_entries == tuple(f"000{n}" for n in range(9))
    assert settings.kubernetes.pod_network_cidr == "10.244.0.0/16"
    assert settings.registry.port == 5000


def test_overrides_and_relative_paths(tmp_path: Path) -> None:
    path = _write(
        tmp_path,
        """
[jetson]
ssd_device = "/dev/nvme1n1"
recovery_image = "images/sd-blob.img"
standard_boot_entries = ["0000", "0001", "000a"]

[kubernetes]
version = "v1.29"
manifest_dir = "manifests"

[versions]
calico = "v3.27.3"

[tls]
directory = "pki"
""",
    )

    settings = config.load_settings(path)

    assert settings.source == path
    assert settings.jetson.ssd_device == "/dev/nvme1n1"
    assert settings.jetson.recovery_image == (tmp_path / "images" / "sd-blob.img").resolve()
    assert settings.jetson.standard_boot_entries == ("0000", "0001", "000A")
    assert settings.kubernetes.version == "v1.29"
    assert settings.kubernetes.manifest_dir == (tmp_path / "manifests").resolve()
    assert settings.versions.calico == "v3.27.3"
    assert settings.versions.flannel == "v0.25.1"
    assert settings.tls.ca_cert == (tmp_path / "pki").resolve() / "ca.crt"


def test_environment_variable_selects_file(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    path = _write(tmp_path, '[registry]\nname = "docker-registry"\n')
    monkeypatch.setenv(config.ENV_CONFIG, str(path))

    assert config.load_settings().registry.name == "docker-registry"


def test_unknown_keys_are_rejected(tmp_path: Path) -> None:
    path = _write(tmp_path, "[jetson]\nmicrosd = '/dev/sda'\n")

    with pytest.raises(ConfigError, match="Invalid configuration at jetson"):
        config.load_settings(path)


def test_values_are_type_checked(tmp_path: Path) -> None:
    path = _write(tmp_path, "[registry]\nport = 70000\n")

    with pytest.raises(ConfigError, match="registry.port"):
        config.load_settings(path)


def test_gitea_section(tmp_path: Path) -> None:
    path = _write(tmp_path, '[gitea]\nbase_path = "/srv/gitea"\nssh_port = 2222\n')

    gitea = config.load_settings(path).gitea

    assert gitea.ssh_port == 2222
    assert gitea.http_port == 3000
    assert gitea.certs_dir == Path("/srv/gitea/data/certs")
    assert gitea.app_ini == Path("/srv/gitea/data/gitea/conf/app.ini")

    with pytest.raises(ConfigError, match="gitea.http_port"):
        config.load_settings(_write(tmp_path, "[gitea]\nhttp_port = 0\n"))


def test_bad_toml_and_missing_file(tmp_path: Path) -> None:
    broken = _write(tmp_path, "[jetson\n")
    with pytest.raises(ConfigError, match="Failed to parse"):
        config.load_settings(broken)

    with pytest.raises(ConfigError, match="Configuration not found"):
        config.load_settings(tmp_path / "nope.toml")
