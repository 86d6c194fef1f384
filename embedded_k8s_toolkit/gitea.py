"""Self-hosted Gitea with PostgreSQL under Docker Compose."""

from __future__ import annotations

import re
from datetime import datetime
from pathlib import Path

from jinja2 import Template

from . import download, preflight
from .context import Context
from .errors import PreflightError, ToolkitError
from .registry import container_exists, host_address, is_running

CONTAINER = "gitea"
GITEA_UID = "1000:1000"
# Paths inside the container; ./data is mounted on /data.
CONTAINER_CERT = "/data/certs/cert.pem"
CONTAINER_KEY = "/data/certs/key.pem"

COMPOSE_FILE = Template(
    """\
version: "3"

networks:
  gitea:
    external: false

services:
  gitea:
    image: {{ gitea.image }}
    container_name: gitea
    environment:
      - USER_UID=1000
      - USER_GID=1000
      - GITEA__database__DB_TYPE=postgres
      - GITEA__database__HOST=db:5432
      - GITEA__database__NAME=gitea
      - GITEA__database__USER=gitea
      - GITEA__database__PASSWD=gitea
    restart: always
    networks:
      - gitea
    volumes:
      - ./data:/data
      - /etc/timezone:/etc/timezone:ro
      - /etc/localtime:/etc/localtime:ro
    ports:
      - "{{ gitea.http_port }}:3000"
      - "{{ gitea.ssh_port }}:22"
    depends_on:
      - db

  db:
    image: {{ gitea.db_image }}
    container_name: gitea-db
    restart: always
    environment:
      - POSTGRES_USER=gitea
      - POSTGRES_PASSWORD=gitea
      - POSTGRES_DB=gitea
    networks:
      - gitea
    volumes:
      - ./postgres:/var/lib/postgresql/data
"""
)

HTTPS_KEYS = re.compile(r"^(PROTOCOL|CERT_FILE|KEY_FILE)\s*=")


def enable_https(app_ini: str) -> str:
    """Return ``app_ini`` with the ``[server]`` section switched to HTTPS.

    Existing ``PROTOCOL``, ``CERT_FILE`` and ``KEY_FILE`` lines of that section
    are dropped and fresh ones follow its header. Without a ``[server]``
    section a new one is appended.
    """

    settings = [
        "PROTOCOL = https",
        f"CERT_FILE = {CONTAINER_CERT}",
        f"KEY_FILE = {CONTAINER_KEY}",
    ]
    result: list[str] = []
    section = None
    for line in app_ini.splitlines():
        stripped = line.strip()
        if stripped.startswith("[") and stripped.endswith("]"):
            section = stripped
            result.append(line)
            if section == "[server]":
                result.extend(settings)
            continue
        if section == "[server]" and HTTPS_KEYS.match(stripped):
            continue
        result.append(line)
    if "[server]" in result:
        return "\n".join(result) + "\n"
    body = app_ini.rstrip("\n")
    block = "\n".join(["[server]", *settings, "HTTP_PORT = 3000"])
    return f"{body}\n\n{block}\n" if body else f"{block}\n"


def _compose(ctx: Context, *args: str) -> None:
    ctx.runner.run(
        ["docker-compose", *args], cwd=ctx.settings.gitea.base_path, capture_stderr=False
    )


def _ensure_docker(ctx: Context) -> None:
    console, runner = ctx.console, ctx.runner
    if not preflight.has_tool("docker"):
        console.info("Docker not found. Installing docker.io...")
        runner.run(["apt-get", "update"])
        runner.run(["apt-get", "install", "-y", "docker.io"])
        runner.run(["systemctl", "enable", "--now", "docker"])
    console.success("Docker is installed.")
    if not preflight.has_tool("docker-compose"):
        console.info("Docker Compose not found. Installing docker-compose...")
        runner.run(["apt-get", "install", "-y", "docker-compose"])
    console.success("Docker Compose is installed.")


def install_gitea(ctx: Context) -> None:
    console, runner = ctx.console, ctx.runner
    gitea = ctx.settings.gitea
    base = gitea.base_path
    console.border("Step 0: Pre-flight Checks")
    preflight.ensure_root()
    console.success("Running as root.")
    _ensure_docker(ctx)

    console.border("Step 1: Prepare Directories and the Compose File")
    console.explain(
        """
        Gitea and its PostgreSQL database run as two containers on a private
        network. Repositories live under data/ and the database under
        postgres/, so both survive container upgrades.
        """
    )
    runner.run(["mkdir", "-p", str(base / "data"), str(base / "postgres")])
    runner.run(["chown", "-R", GITEA_UID, str(base)])
    runner.write_text(base / "docker-compose.yml", COMPOSE_FILE.render(gitea=gitea), mode=0o644)
    console.success("Docker Compose file created.")

    console.border("Step 2: Launch Gitea using Docker Compose")
    _compose(ctx, "up", "-d")
    console.success("Gitea services started successfully.")

    url = f"http://{host_address(ctx)}:{gitea.http_port}"
    console.border("Setup Complete")
    console.warn("ACTION REQUIRED: Complete the Gitea setup in your web browser.")
    console.echo(f"  Open {url}")
    console.echo("  Database Type: PostgreSQL, Host: db:5432, Name: gitea, User: gitea")
    console.echo(f"  Gitea Base URL: {url}/")
    console.next_steps(
        [
            "Create the admin account on the setup page and click 'Install Gitea'.",
            "Enable HTTPS later: sudo ek8s tls cert --service gitea ... && "
            "sudo ek8s gitea tls",
        ]
    )


def enable_gitea_tls(
    ctx: Context, *, cert: Path | None = None, key: Path | None = None
) -> None:
    console, runner = ctx.console, ctx.runner
    gitea = ctx.settings.gitea
    tls = ctx.settings.tls
    cert = cert or tls.directory / "gitea.crt"
    key = key or tls.directory / "gitea.key"

    console.border("Step 0: Pre-flight Checks")
    preflight.ensure_root()
    console.success("Running as root.")
    preflight.require_tool("docker", "Docker is not installed.")
    if not container_exists(ctx, CONTAINER):
        raise PreflightError(
            f"Gitea container '{CONTAINER}' not found. Run 'ek8s gitea install' first."
        )
    console.success("Gitea container found.")
    missing = [str(path) for path in (cert, key) if not path.exists()]
    if missing:
        raise PreflightError(
            "Gitea certificate files not found: " + ", ".join(missing)
            + ". Generate them with 'ek8s tls cert --service gitea'."
        )
    console.success(f"Gitea certificates found: {cert}, {key}")

    console.border("Step 1: Stopping Gitea")
    if is_running(ctx, CONTAINER):
        _compose(ctx, "stop")
        console.success("Gitea stopped.")
    else:
        console.info("Gitea was not running.")

    console.border("Step 2: Installing Certificates")
    certs_dir = gitea.certs_dir
    runner.run(["install", "-d", "-m", "755", str(certs_dir)])
    runner.run(["install", "-m", "644", str(cert), str(certs_dir / "cert.pem")])
    runner.run(["install", "-m", "600", str(key), str(certs_dir / "key.pem")])
    runner.run(["chown", "-R", GITEA_UID, str(certs_dir)])
    console.success(f"Certificates copied to {certs_dir}")

    console.border("Step 3: Configuring app.ini for HTTPS")
    app_ini = gitea.app_ini
    current = ""
    if app_ini.exists():
        stamp = datetime.now().strftime("%Y%m%d%H%M%S")
        runner.run(["cp", str(app_ini), f"{app_ini}.backup.{stamp}"])
        current = app_ini.read_text(encoding="utf-8")
    else:
        console.warn(f"{app_ini} not found. A new one will be created.")
    runner.write_text(app_ini, enable_https(current))
    runner.run(["chown", GITEA_UID, str(app_ini)])
    console.success("Gitea configuration updated for HTTPS.")

    console.border("Step 4: Restarting Gitea")
    _compose(ctx, "up", "-d")
    runner.pause(5)
    if not ctx.dry_run and not is_running(ctx, CONTAINER):
        logs = runner.capture(["docker", "logs", CONTAINER], check=False)
        raise ToolkitError(f"Gitea failed to start with HTTPS.\n{logs}")
    console.success("Gitea is running with HTTPS enabled.")

    console.border("Step 5: Verifying HTTPS")
    url = f"https://{host_address(ctx)}:{gitea.http_port}/"
    if ctx.dry_run:
        console.dry_run(f"GET {url}")
    else:
        verify: bool | str = str(tls.ca_cert) if tls.ca_cert.exists() else False
        status = download.endpoint_status(url, verify)
        if status is not None and status < 500:
            console.success(f"HTTPS endpoint responded: {url}")
        else:
            console.warn(
                f"Could not confirm {url} (status {status}). "
                "Gitea may still be starting; check 'docker-compose logs'."
            )
    console.next_steps(
        [
            "Trust the CA on every node: sudo ek8s tls trust",
            f"Update ROOT_URL in {app_ini} to {url} if clone links still show http.",
            f"Test: curl {url}",
        ]
    )
