"""Load toolkit settings from TOML with schema validation."""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

from jsonschema import Draft202012Validator

from .errors import ConfigError

try:
    import tomllib  # type: ignore[attr-defined]
except ModuleNotFoundError as exc:  # pragma: no cover - Python < 3.11 guard
    raise SystemExit("python 3.11+ is required to load TOML toolkit configs") from exc

ENV_CONFIG = "EMBEDDED_K8S_CONFIG"
SYSTEM_CONFIG = Path("/etc/embedded-k8s/config.toml")
STANDARD_BOOT_ENTRIES = tuple(f"{number:04d}" for number in range(9))


@dataclass(slots=True)
class JetsonSettings:
    microsd_device: str = "/dev/mmcblk0"
    ssd_device: str = ""
    extlinux_conf: Path = Path("/boot/extlinux/extlinux.conf")
    recovery_image: Path = Path("sd-blob.img")
    efi_partition: str = "/dev/mmcblk0p10"
    standard_boot_entries: tuple[str, ...] = STANDARD_BOOT_ENTRIES

    @property
    def microsd_root_partition(self) -> str:
        return f"{self.microsd_device}p1"


@dataclass(slots=True)
class NetworkSettings:
    dns: list[str] = field(default_factory=lambda: ["8.8.8.8", "8.8.4.4"])
    prefix_length: int = 24


@dataclass(slots=True)
class KubernetesSettings:
    version: str = "v1.30"
    pod_network_cidr: str = "10.244.0.0/16"
    manifest_dir: Path = Path("/var/lib/embedded-k8s/manifests")
    wait_timeout: int = 300


@dataclass(slots=True)
class VersionSettings:
    calico: str = "v3.28.0"
    flannel: str = "v0.25.1"
    cert_manager: str = "v1.13.2"
    ingress_nginx: str = "v1.9.4"
    istio: str = "1.20.0"
    knative: str = "v1.12.0"
    argocd: str = "v2.11.3"


@dataclass(slots=True)
class TlsSettings:
    directory: Path = Path(".")
    ca_days: int = 3650
    cert_days: int = 365
    ca_key_bits: int = 4096
    cert_key_bits: int = 2048

    @property
    def ca_cert(self) -> Path:
        return self.directory / "ca.crt"

    @property
    def ca_key(self) -> Path:
        return self.directory / "ca.key"


@dataclass(slots=True)
class RegistrySettings:
    name: str = "local-registry"
    port: int = 5000
    storage: Path = Path("/var/lib/docker-registry")
    certs_dir: Path = Path("/var/lib/docker-registry-certs")
    image: str = "registry:2"
    daemon_json: Path = Path("/etc/docker/daemon.json")


@dataclass(slots=True)
class GiteaSettings:
    base_path: Path = Path("/opt/gitea")
    http_port: int = 3000
    ssh_port: int = 222
    image: str = "gitea/gitea:latest"
    db_image: str = "postgres:15"

    @property
    def certs_dir(self) -> Path:
        return self.base_path / "data" / "certs"

    @property
    def app_ini(self) -> Path:
        return self.base_path / "data" / "gitea" / "conf" / "app.ini"


@dataclass(slots=True)
class Settings:
    """Fully parsed toolkit configuration."""

    jetson: JetsonSettings = field(default_factory=JetsonSettings)
    network: NetworkSettings = field(default_factory=NetworkSettings)
    kubernetes: KubernetesSettings = field(default_factory=KubernetesSettings)
    versions: VersionSettings = field(default_factory=VersionSettings)
    tls: TlsSettings = field(default_factory=TlsSettings)
    registry: RegistrySettings = field(default_factory=RegistrySettings)
    gitea: GiteaSettings = field(default_factory=GiteaSettings)
    source: Path | None = None


def _section(properties: dict[str, Any]) -> dict[str, Any]:
    return {"type": "object", "additionalProperties": False, "properties": properties}


_STRING = {"type": "string"}
_NONEMPTY = {"type": "string", "minLength": 1}
_POSITIVE = {"type": "integer", "minimum": 1}
_PORT = {"type": "integer", "minimum": 1, "maximum": 65535}

SCHEMA: dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "jetson": _section(
            {
                "microsd_device": _NONEMPTY,
                "ssd_device": _STRING,
                "extlinux_conf": _NONEMPTY,
                "recovery_image": _NONEMPTY,
                "efi_partition": _NONEMPTY,
                "standard_boot_entries": {
                    "type": "array",
                    "items": {"type": "string", "pattern": "^[0-9A-Fa-f]{4}$"},
                },
            }
        ),
        "network": _section(
            {
                "dns": {"type": "array", "items": _NONEMPTY, "minItems": 1},
                "prefix_length": {"type": "integer", "minimum": 8, "maximum": 30},
            }
        ),
        "kubernetes": _section(
            {
                "version": {"type": "string", "pattern": r"^v\d+\.\d+$"},
                "pod_network_cidr": _NONEMPTY,
                "manifest_dir": _NONEMPTY,
                "wait_timeout": _POSITIVE,
            }
        ),
        "versions": _section(
            {
                "calico": _NONEMPTY,
                "flannel": _NONEMPTY,
                "cert_manager": _NONEMPTY,
                "ingress_nginx": _NONEMPTY,
                "istio": _NONEMPTY,
                "knative": _NONEMPTY,
                "argocd": _NONEMPTY,
            }
        ),
        "tls": _section(
            {
                "directory": _NONEMPTY,
                "ca_days": _POSITIVE,
                "cert_days": _POSITIVE,
                "ca_key_bits": {"enum": [2048, 3072, 4096]},
                "cert_key_bits": {"enum": [2048, 3072, 4096]},
            }
        ),
        "registry": _section(
            {
                "name": _NONEMPTY,
                "port": _PORT,
                "storage": _NONEMPTY,
                "certs_dir": _NONEMPTY,
                "image": _NONEMPTY,
                "daemon_json": _NONEMPTY,
            }
        ),
        "gitea": _section(
            {
                "base_path": _NONEMPTY,
                "http_port": _PORT,
                "ssh_port": _PORT,
                "image": _NONEMPTY,
                "db_image": _NONEMPTY,
            }
        ),
    },
}


def _expand_path(value: str, *, base: Path) -> Path:
    path = Path(value).expanduser()
    if not path.is_absolute():
        path = (base / path).resolve()
    return path


def validate_config(data: dict[str, Any]) -> None:
    validator = Draft202012Validator(SCHEMA)
    errors = sorted(validator.iter_errors(data), key=lambda error: list(error.absolute_path))
    if not errors:
        return
    error = errors[0]
    location = ".".join(str(part) for part in error.absolute_path) or "<root>"
    raise ConfigError(f"Invalid configuration at {location}: {error.message}")


def resolve_config_path(explicit: Path | None = None) -> Path | None:
    """Pick the config file from ``--config``, the environment, or /etc."""

    if explicit is not None:
        return explicit
    env_value = os.environ.get(ENV_CONFIG)
    if env_value:
        return Path(env_value).expanduser()
    if SYSTEM_CONFIG.exists():
        return SYSTEM_CONFIG
    return None


def load_settings(path: Path | None = None) -> Settings:
    config_path = resolve_config_path(path)
    if config_path is None:
        return Settings()
    if not config_path.exists():
        raise ConfigError(f"Configuration not found: {config_path}")
    try:
        data = tomllib.loads(config_path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Failed to parse {config_path}: {exc}") from exc
    validate_config(data)
    return settings_from_dict(data, base=config_path.parent, source=config_path)


def settings_from_dict(
    data: dict[str, Any], *, base: Path, source: Path | None = None
) -> Settings:
    jetson = data.get("jetson", {})
    network = data.get("network", {})
    kubernetes = data.get("kubernetes", {})
    versions = data.get("versions", {})
    tls = data.get("tls", {})
    registry = data.get("registry", {})
    gitea = data.get("gitea", {})

    defaults = Settings()
    return Settings(
        jetson=JetsonSettings(
            microsd_device=jetson.get("microsd_device", defaults.jetson.microsd_device),
            ssd_device=jetson.get("ssd_device", defaults.jetson.ssd_device),
            extlinux_conf=Path(jetson.get("extlinux_conf", defaults.jetson.extlinux_conf)),
            recovery_image=(
                _expand_path(jetson["recovery_image"], base=base)
                if "recovery_image" in jetson
                else defaults.jetson.recovery_image
            ),
            efi_partition=jetson.get("efi_partition", defaults.jetson.efi_partition),
            standard_boot_entries=tuple(
                entry.upper()
                for entry in jetson.get(
                    "standard_boot_entries", defaults.jetson.standard_boot_entries
                )
            ),
        ),
        network=NetworkSettings(
            dns=list(network.get("dns", defaults.network.dns)),
            prefix_length=network.get("prefix_length", defaults.network.prefix_length),
        ),
        kubernetes=KubernetesSettings(
            version=kubernetes.get("version", defaults.kubernetes.version),
            pod_network_cidr=kubernetes.get(
                "pod_network_cidr", defaults.kubernetes.pod_network_cidr
            ),
            manifest_dir=(
                _expand_path(kubernetes["manifest_dir"], base=base)
                if "manifest_dir" in kubernetes
                else defaults.kubernetes.manifest_dir
            ),
            wait_timeout=kubernetes.get("wait_timeout", defaults.kubernetes.wait_timeout),
        ),
        versions=VersionSettings(
            **{
                entry.name: versions.get(entry.name, getattr(defaults.versions, entry.name))
                for entry in fields(VersionSettings)
            }
        ),
        tls=TlsSettings(
            directory=(
                _expand_path(tls["directory"], base=base)
                if "directory" in tls
                else defaults.tls.directory
            ),
            ca_days=tls.get("ca_days", defaults.tls.ca_days),
            cert_days=tls.get("cert_days", defaults.tls.cert_days),
            ca_key_bits=tls.get("ca_key_bits", defaults.tls.ca_key_bits),
            cert_key_bits=tls.get("cert_key_bits", defaults.tls.cert_key_bits),
        ),
        registry=RegistrySettings(
            name=registry.get("name", defaults.registry.name),
            port=registry.get("port", defaults.registry.port),
            storage=Path(registry.get("storage", defaults.registry.storage)),
            certs_dir=Path(registry.get("certs_dir", defaults.registry.certs_dir)),
            image=registry.get("image", defaults.registry.image),
            daemon_json=Path(registry.get("daemon_json", defaults.registry.daemon_json)),
        ),
        gitea=GiteaSettings(
            base_path=Path(gitea.get("base_path", defaults.gitea.base_path)),
            http_port=gitea.get("http_port", defaults.gitea.http_port),
            ssh_port=gitea.get("ssh_port", defaults.gitea.ssh_port),
            image=gitea.get("image", defaults.gitea.image),
            db_image=gitea.get("db_image", defaults.gitea.db_image),
        ),
        source=source,
    )
