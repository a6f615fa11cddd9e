"""
Idempotent OS-level setup and external collaborators for the Infisical stack.
"""

from __future__ import annotations

import os
import shutil
import subprocess
import time
from pathlib import Path
from shlex import quote
from typing import Callable, List, Optional

import requests

from infisical_wizard.config import RunConfig, TlsMode
from infisical_wizard.errors import EnvironmentCheckError
from infisical_wizard.files import write_file
from infisical_wizard.log import info, log_line, sh, warn

APT_LISTS_DIR = Path("/var/lib/apt/lists")
APT_CACHE_MAX_AGE_SECONDS = 3600
OS_RELEASE_PATH = Path("/etc/os-release")

BASE_PACKAGES = ("docker.io", "docker-compose-v2", "postgresql-client", "openssl")
TLS_PACKAGES = {
    TlsMode.HTTP01: ("nginx", "certbot", "python3-certbot-nginx"),
    TlsMode.DNS_CLOUDFLARE: ("nginx", "certbot", "python3-certbot-dns-cloudflare"),
}

HEALTH_TIMEOUT_SECONDS = 60
HEALTH_INTERVAL_SECONDS = 2


def require_root() -> None:
    if os.geteuid() != 0:
        raise EnvironmentCheckError("This installer must be run as root (use sudo).")


def _read_os_release() -> dict:
    values = {}
    for line in OS_RELEASE_PATH.read_text(encoding="utf-8", errors="ignore").splitlines():
        if "=" not in line:
            continue
        key, value = line.split("=", 1)
        values[key.strip()] = value.strip().strip('"')
    return values


def detect_ubuntu() -> None:
    if not OS_RELEASE_PATH.exists():
        warn("Cannot detect OS. Proceeding anyway.")
        return
    osr = _read_os_release()
    os_id = osr.get("ID", "")
    if os_id != "ubuntu":
        warn(
            "This installer is designed for Ubuntu. "
            f"Detected: {os_id or 'unknown'}. Proceeding anyway."
        )
    info(f"OS: {osr.get('PRETTY_NAME') or (os_id + ' ' + osr.get('VERSION_ID', '')).strip()}")


def check_connectivity() -> None:
    if shutil.which("ping") is None:
        raise EnvironmentCheckError(
            "Cannot check internet connectivity: 'ping' was not found on PATH "
            "(install iputils-ping)."
        )
    rc = subprocess.run(
        ["ping", "-c", "1", "-W", "3", "1.1.1.1"],
        capture_output=True,
        check=False,
    ).returncode
    if rc != 0:
        raise EnvironmentCheckError(
            "No internet connectivity. Cannot proceed with installation."
        )
    info("Internet connectivity: OK")


def preflight() -> None:
    require_root()
    detect_ubuntu()
    check_connectivity()


def apt_cache_is_stale(now: Optional[float] = None) -> bool:
    current = time.time() if now is None else now
    try:
        mtime = APT_LISTS_DIR.stat().st_mtime
    except OSError:
        return True
    return current - mtime > APT_CACHE_MAX_AGE_SECONDS


def packages_for(cfg: RunConfig) -> List[str]:
    return [*BASE_PACKAGES, *TLS_PACKAGES.get(cfg.tls_mode, ())]


def ensure_packages(cfg: RunConfig) -> None:
    if apt_cache_is_stale():
        info("Updating apt package cache...")
        sh("export DEBIAN_FRONTEND=noninteractive; apt-get update -qq")
    else:
        info("Apt cache is recent, skipping update")

    packages = packages_for(cfg)
    info(f"Installing packages: {' '.join(packages)}")
    sh(
        "export DEBIAN_FRONTEND=noninteractive; "
        f"apt-get install -y -qq {' '.join(quote(p) for p in packages)}",
        hint="Package installation failed; check apt sources and network access.",
    )

    sh("systemctl enable --now docker")
    info("Docker service enabled and running")


def enable_nginx(cfg: RunConfig) -> None:
    sh("systemctl enable --now nginx", hint="nginx is required for TLS modes.")
    info("nginx service enabled and running")


def ensure_directories(cfg: RunConfig) -> None:
    cfg.install_dir.mkdir(parents=True, exist_ok=True)
    cfg.backup_dir.mkdir(parents=True, exist_ok=True)
    if cfg.tls_enabled:
        cfg.acme_webroot.mkdir(parents=True, exist_ok=True)
    info(f"Directories created: {cfg.install_dir}, {cfg.backup_dir}")


def database_data_present() -> bool:
    if shutil.which("docker") is None:
        return False
    proc = subprocess.run(
        ["docker", "volume", "ls", "-q", "--filter", "name=pg_data"],
        capture_output=True,
        text=True,
        check=False,
    )
    return proc.returncode == 0 and bool(proc.stdout.strip())


def _compose(cfg: RunConfig, args: str) -> str:
    return f"docker compose -f {quote(str(cfg.compose_path))} {args}"


def start_containers(cfg: RunConfig) -> None:
    info("Pulling container images...")
    sh(
        _compose(cfg, "pull"),
        cwd=cfg.install_dir,
        hint="Check registry connectivity and the pinned image versions.",
    )
    info("Starting containers...")
    sh(_compose(cfg, "up -d"), cwd=cfg.install_dir)


def wait_for_backend(
    url: str,
    *,
    timeout: float = HEALTH_TIMEOUT_SECONDS,
    interval: float = HEALTH_INTERVAL_SECONDS,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> bool:
    """
    Poll the status endpoint until it answers or `timeout` seconds of wall
    clock have passed, including time spent waiting on the request itself.
    Returns False on timeout; never raises.
    """
    deadline = clock() + timeout
    while True:
        remaining = deadline - clock()
        if remaining <= 0:
            return False
        try:
            resp = requests.get(url, timeout=min(interval, remaining))
            if resp.ok:
                return True
        except requests.RequestException:
            pass
        remaining = deadline - clock()
        if remaining <= 0:
            return False
        sleep(min(interval, remaining))


def check_backend_health(cfg: RunConfig) -> bool:
    info("Waiting for Infisical backend to start...")
    if wait_for_backend(cfg.health_url):
        info("Infisical backend is healthy")
        return True
    warn(
        f"Backend did not respond within {HEALTH_TIMEOUT_SECONDS}s. "
        "It may still be starting up."
    )
    warn(f"Check logs with: docker compose -f {cfg.compose_path} logs -f backend")
    return False


def render_backup_cron(cfg: RunConfig) -> str:
    backup_dir = cfg.backup_dir
    return (
        "# Daily Infisical PostgreSQL backup at 2:00 AM\n"
        "SHELL=/bin/bash\n"
        "PATH=/usr/local/sbin:/usr/local/bin:/sbin:/bin:/usr/sbin:/usr/bin\n"
        "\n"
        "0 2 * * * root docker exec infisical-db pg_dump -U infisical -d infisical "
        f"| gzip > {backup_dir}/infisical-db-$(date +\\%Y\\%m\\%d-\\%H\\%M\\%S).sql.gz "
        f"2>/dev/null && find {backup_dir} -name \"infisical-db-*.sql.gz\" "
        f"-mtime +{cfg.backup_retention_days} -delete\n"
    )


def install_backup_cron(cfg: RunConfig) -> None:
    write_file(cfg.cron_path, render_backup_cron(cfg), mode=0o644)
    info(
        f"Daily backup cron installed (2:00 AM, "
        f"{cfg.backup_retention_days}-day retention)"
    )
    info(f"Backups stored in: {cfg.backup_dir}")
    log_line(f"[CRON] Wrote {cfg.cron_path}")


def show_container_status(cfg: RunConfig) -> None:
    sh(_compose(cfg, "ps"), check=False, cwd=cfg.install_dir)
