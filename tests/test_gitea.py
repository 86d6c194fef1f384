"""Gitea install under Docker Compose and the HTTPS switch-over."""

from __future__ import annotations

from pathlib import Path
from types import SimpleNamespace

import pytest

from embedded_k8s_toolkit import gitea
from embedded_k8s_toolkit.config import GiteaSettings, Settings, TlsSettings
from embedded_k8s_toolkit.errors import PreflightError, ToolkitError
from embedded_k8s_toolkit.registry import running_filter

RUNNING = running_filter("gitea")


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    pki = tmp_path / "pki"
    pki.mkdir()
    return Settings(
        gitea=GiteaSettings(base_path=tmp_path / "gitea"),
        tls=TlsSettings(directory=pki),
    )


@pytest.fixture()
def gitea_certs(settings: Settings) -> tuple[Path, Path]:
    cert = settings.tls.directory / "gitea.crt"
    key = settings.tls.directory / "gitea.key"
    cert.write_text("cert")
    key.write_text("key")
    return cert, key


def test_enable_https_rewrites_server_section() -> None:
    app_ini = (
        "APP_NAME = Gitea\n"
        "\n"
        "[server]\n"
        "PROTOCOL = http\n"
        "DOMAIN = gitea.local\n"
        "CERT_FILE = old.pem\n"
        "\n"
        "[database]\n"
        "DB_TYPE = postgres\n"
        "\n"
        "[mailer]\n"
        "PROTOCOL = smtp\n"
    )

    assert gitea.enable_https(app_ini) == (
        "APP_NAME = Gitea\n"
        "\n"
        "[server]\n"
        "PROTOCOL = https\n"
        "CERT_FILE = /data/certs/cert.pem\n"
        "KEY_FILE = /data/certs/key.pem\n"
        "DOMAIN = gitea.local\n"
        "\n"
        "[database]\n"
        "DB_TYPE = postgres\n"
        "\n"
        "[mailer]\n"
        "PROTOCOL = smtp\n"
    )


def test_enable_https_appends_missing_server_section() -> None:
    updated = gitea.enable_https("[database]\nDB_TYPE = postgres\n")

    assert updated == (
        "[database]\n"
        "DB_TYPE = postgres\n"
        "\n"
        "[server]\n"
        "PROTOCOL = https\n"
        "CERT_FILE = /data/certs/cert.pem\n"
        "KEY_FILE = /data/certs/key.pem\n"
        "HTTP_PORT = 3000\n"
    )
    assert gitea.enable_https("").startswith("[server]\n")


def test_compose_file_uses_configured_ports(settings: Settings) -> None:
    settings.gitea.ssh_port = 2222

    compose = gitea.COMPOSE_FILE.render(gitea=settings.gitea)

    assert '- "3000:3000"' in compose
    assert '- "2222:22"' in compose
    assert "image: gitea/gitea:latest" in compose
    assert "image: postgres:15" in compose
    assert "GITEA__database__HOST=db:5432" in compose


def test_install_writes_compose_file_and_starts_services(
    fake_run, make_context, as_root, tools_present, settings, capsys
) -> None:
    fake_run.respond(["hostname", "-I"], "192.168.1.60\n")
    base = settings.gitea.base_path

    gitea.install_gitea(make_context(settings))

    assert not fake_run.ran("apt-get")
    assert fake_run.ran("mkdir", "-p", str(base / "data"), str(base / "postgres"))
    assert fake_run.ran("chown", "-R", "1000:1000", str(base))
    assert "container_name: gitea-db" in (base / "docker-compose.yml").read_text()
    up = fake_run.find("docker-compose", "up", "-d")
    assert up.kwargs["cwd"] == str(base)
    assert "Open http://192.168.1.60:3000" in capsys.readouterr().out


def test_install_installs_docker_when_missing(
    fake_run, make_context, as_root, settings, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(gitea.preflight.shutil, "which", lambda name: None)

    gitea.install_gitea(make_context(settings))

    assert fake_run.commands[:4] == [
        ["apt-get", "update"],
        ["apt-get", "install", "-y", "docker.io"],
        ["systemctl", "enable", "--now", "docker"],
        ["apt-get", "install", "-y", "docker-compose"],
    ]


def test_install_dry_run_writes_nothing(
    fake_run, make_context, as_root, tools_present, settings
) -> None:
    gitea.install_gitea(make_context(settings, dry_run=True))

    assert not settings.gitea.base_path.exists()
    assert not fake_run.ran("docker-compose")


def test_tls_requires_existing_container(
    fake_run, make_context, as_root, tools_present, settings, gitea_certs
) -> None:
    fake_run.respond(["docker", "ps", "-a"], "local-registry\n")

    with pytest.raises(PreflightError, match="gitea install"):
        gitea.enable_gitea_tls(make_context(settings))


def test_tls_requires_certificates(
    fake_run, make_context, as_root, tools_present, settings
) -> None:
    fake_run.respond(["docker", "ps", "-a"], "gitea\ngitea-db\n")

    with pytest.raises(PreflightError, match="gitea.crt"):
        gitea.enable_gitea_tls(make_context(settings))


def test_tls_installs_certificates_and_rewrites_app_ini(
    fake_run, make_context, as_root, tools_present, settings, gitea_certs, monkeypatch
) -> None:
    app_ini = settings.gitea.app_ini
    app_ini.parent.mkdir(parents=True)
    app_ini.write_text("[server]\nPROTOCOL = http\nDOMAIN = gitea.local\n")
    settings.tls.ca_cert.write_text("ca")
    fake_run.respond(["docker", "ps", "-a"], "gitea\ngitea-db\n")
    fake_run.respond(RUNNING, "9b1e\n")
    fake_run.respond(["hostname", "-I"], "192.168.1.60\n")
    requested = []

    def fake_get(url, **kwargs):
        requested.append((url, kwargs["verify"]))
        return SimpleNamespace(status_code=200)

    monkeypatch.setattr(gitea.download.requests, "get", fake_get)

    gitea.enable_gitea_tls(make_context(settings))

    cert, key = gitea_certs
    certs = settings.gitea.certs_dir
    commands = fake_run.commands
    assert fake_run.find("docker-compose", "stop").kwargs["cwd"] == str(settings.gitea.base_path)
    assert ["install", "-m", "644", str(cert), str(certs / "cert.pem")] in commands
    assert ["install", "-m", "600", str(key), str(certs / "key.pem")] in commands
    backup = fake_run.find("cp", str(app_ini)).command
    assert backup[-1].startswith(f"{app_ini}.backup.")
    assert app_ini.read_text() == (
        "[server]\n"
        "PROTOCOL = https\n"
        "CERT_FILE = /data/certs/cert.pem\n"
        "KEY_FILE = /data/certs/key.pem\n"
        "DOMAIN = gitea.local\n"
    )
    assert commands.index(["chown", "1000:1000", str(app_ini)]) < commands.index(
        ["docker-compose", "up", "-d"]
    )
    assert requested == [("https://192.168.1.60:3000/", str(settings.tls.ca_cert))]


def test_tls_reports_logs_when_gitea_fails_to_start(
    fake_run, make_context, as_root, tools_present, settings, gitea_certs
) -> None:
    fake_run.respond(["docker", "ps", "-a"], "gitea\n")
    fake_run.respond(RUNNING, "")
    fake_run.respond(["docker", "logs"], "open /data/certs/key.pem: permission denied")

    with pytest.raises(ToolkitError, match="permission denied"):
        gitea.enable_gitea_tls(make_context(settings))

    assert not fake_run.ran("docker-compose", "stop")
    assert settings.gitea.app_ini.read_text().startswith("[server]\nPROTOCOL = https\n")
