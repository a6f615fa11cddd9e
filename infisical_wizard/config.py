"""
Immutable run configuration and the persisted `.install.conf` store.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, Mapping, Optional

from infisical_wizard.errors import ConfigValidationError
from infisical_wizard.files import write_private_file
from infisical_wizard.log import log_line

DEFAULT_INSTALL_DIR = Path("/opt/infisical")
SAVED_CONFIG_NAME = ".install.conf"
DEFAULT_SAVED_CONFIG_PATH = DEFAULT_INSTALL_DIR / SAVED_CONFIG_NAME

LETSENCRYPT_LIVE_DIR = Path("/etc/letsencrypt/live")
NGINX_SITES_AVAILABLE = Path("/etc/nginx/sites-available")
NGINX_SITES_ENABLED = Path("/etc/nginx/sites-enabled")
ACME_WEBROOT = Path("/var/www/certbot")
CRON_PATH = Path("/etc/cron.d/infisical-backup")

NGINX_SITE_NAME = "infisical"
BACKEND_INTERNAL_PORT = 8080
HEALTH_PATH = "/api/status"


class TlsMode(str, Enum):
    OFF = "off"
    HTTP01 = "http01"
    DNS_CLOUDFLARE = "dns-cloudflare"

    @classmethod
    def parse(cls, raw: str) -> "TlsMode":
        """
        Case-insensitive parse. The historic `letsencrypt-http` name maps to
        HTTP01 and anything unrecognised falls back to OFF.
        """
        value = str(raw).strip().lower()
        if value == "letsencrypt-http":
            return cls.HTTP01
        for mode in cls:
            if mode.value == value:
                return mode
        return cls.OFF


DEFAULTS: Dict[str, str] = {
    "DOMAIN": "infisical.example.com",
    "INSTALL_DIR": str(DEFAULT_INSTALL_DIR),
    "TLS_MODE": TlsMode.OFF.value,
    "CERTBOT_EMAIL": "",
    "CLOUDFLARE_API_TOKEN": "",
    "LISTEN_PORT": "8080",
    "BACKUP_RETENTION_DAYS": "30",
    "INFISICAL_VERSION": "v0.158.0",
    "POSTGRES_VERSION": "14-alpine",
    "REDIS_VERSION": "7-alpine",
}

_LEGACY_TRUE = ("yes", "true", "1", "on")


@dataclass(frozen=True)
class RunConfig:
    domain: str
    install_dir: Path
    tls_mode: TlsMode
    listen_port: Optional[int] = None
    certbot_email: str = ""
    cloudflare_api_token: str = ""
    backup_retention_days: int = 30
    infisical_version: str = DEFAULTS["INFISICAL_VERSION"]
    postgres_version: str = DEFAULTS["POSTGRES_VERSION"]
    redis_version: str = DEFAULTS["REDIS_VERSION"]

    def __post_init__(self) -> None:
        if not self.domain.strip():
            raise ConfigValidationError("Domain name must not be empty.")
        if not str(self.install_dir).strip():
            raise ConfigValidationError("Install directory must not be empty.")

        if self.tls_mode == TlsMode.OFF:
            if self.listen_port is None:
                raise ConfigValidationError("A listen port is required when TLS mode is off.")
            if not (1 <= int(self.listen_port) <= 65535):
                raise ConfigValidationError(
                    f"listen_port={self.listen_port} must be between 1 and 65535."
                )
            if self.certbot_email or self.cloudflare_api_token:
                raise ConfigValidationError(
                    "Let's Encrypt email and DNS token are only used when TLS is enabled."
                )
        else:
            if self.listen_port is not None:
                raise ConfigValidationError(
                    f"listen_port is only used when TLS mode is off (got {self.tls_mode.value})."
                )
            if not self.certbot_email.strip():
                raise ConfigValidationError(
                    "Let's Encrypt email is required when TLS is enabled."
                )
            if self.tls_mode == TlsMode.DNS_CLOUDFLARE:
                if not self.cloudflare_api_token.strip():
                    raise ConfigValidationError(
                        "Cloudflare API token is required for dns-cloudflare mode."
                    )
            elif self.cloudflare_api_token:
                raise ConfigValidationError(
                    "Cloudflare API token is only used in dns-cloudflare mode."
                )

        if int(self.backup_retention_days) < 1:
            raise ConfigValidationError(
                f"backup_retention_days={self.backup_retention_days} must be >= 1."
            )

        for name in ("infisical_version", "postgres_version", "redis_version"):
            tag = str(getattr(self, name)).strip()
            if not tag:
                raise ConfigValidationError(f"{name} must not be empty.")
            if tag == "latest":
                raise ConfigValidationError(
                    f"{name} must be a pinned version, not 'latest'."
                )

    @property
    def tls_enabled(self) -> bool:
        return self.tls_mode != TlsMode.OFF

    @property
    def site_url(self) -> str:
        if self.tls_enabled:
            return f"https://{self.domain}"
        if self.listen_port == 80:
            return f"http://{self.domain}"
        return f"http://{self.domain}:{self.listen_port}"

    @property
    def backend_host_port(self) -> int:
        if self.tls_enabled:
            return BACKEND_INTERNAL_PORT
        return int(self.listen_port)

    @property
    def health_url(self) -> str:
        return f"http://127.0.0.1:{self.backend_host_port}{HEALTH_PATH}"

    @property
    def backup_dir(self) -> Path:
        return self.install_dir / "backups"

    @property
    def env_path(self) -> Path:
        return self.install_dir / ".env"

    @property
    def compose_path(self) -> Path:
        return self.install_dir / "docker-compose.yml"

    @property
    def saved_config_path(self) -> Path:
        return self.install_dir / SAVED_CONFIG_NAME

    @property
    def cloudflare_credentials_path(self) -> Path:
        return self.install_dir / ".cloudflare-credentials"

    @property
    def cert_dir(self) -> Path:
        return LETSENCRYPT_LIVE_DIR / self.domain

    @property
    def cert_path(self) -> Path:
        return self.cert_dir / "fullchain.pem"

    @property
    def key_path(self) -> Path:
        return self.cert_dir / "privkey.pem"

    @property
    def acme_webroot(self) -> Path:
        return ACME_WEBROOT

    @property
    def nginx_site_available_path(self) -> Path:
        return NGINX_SITES_AVAILABLE / NGINX_SITE_NAME

    @property
    def nginx_site_enabled_path(self) -> Path:
        return NGINX_SITES_ENABLED / NGINX_SITE_NAME

    @property
    def nginx_default_site_path(self) -> Path:
        return NGINX_SITES_ENABLED / "default"

    @property
    def cron_path(self) -> Path:
        return CRON_PATH

    def to_saved(self) -> Dict[str, str]:
        return {
            "DOMAIN": self.domain,
            "INSTALL_DIR": str(self.install_dir),
            "TLS_MODE": self.tls_mode.value,
            "CERTBOT_EMAIL": self.certbot_email,
            "CLOUDFLARE_API_TOKEN": self.cloudflare_api_token,
            "LISTEN_PORT": "" if self.listen_port is None else str(self.listen_port),
            "BACKUP_RETENTION_DAYS": str(self.backup_retention_days),
            "INFISICAL_VERSION": self.infisical_version,
            "POSTGRES_VERSION": self.postgres_version,
            "REDIS_VERSION": self.redis_version,
        }


def parse_saved_config(text: str) -> Dict[str, str]:
    """
    Parse `KEY=value` lines. Comments, blank lines and keys outside DEFAULTS
    are skipped; a legacy TLS_ENABLED flag is translated when TLS_MODE is
    absent.
    """
    values: Dict[str, str] = {}
    legacy_tls: Optional[str] = None
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if key == "TLS_ENABLED":
            legacy_tls = value.strip().lower()
            continue
        if key not in DEFAULTS:
            continue
        values[key] = value
    if "TLS_MODE" in values:
        values["TLS_MODE"] = TlsMode.parse(values["TLS_MODE"]).value
    elif legacy_tls is not None:
        values["TLS_MODE"] = (
            TlsMode.HTTP01.value if legacy_tls in _LEGACY_TRUE else TlsMode.OFF.value
        )
    return values


def load_saved_config(path: Path) -> Dict[str, str]:
    if not path.is_file():
        return {}
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        # A corrupt config must never abort the run; defaults apply instead.
        log_line(f"[CONFIG] Ignoring unreadable saved config {path}: {exc}")
        return {}
    return parse_saved_config(text)


def render_saved_config(values: Mapping[str, str]) -> str:
    lines = ["# Infisical install configuration - auto-generated, do not commit to VCS"]
    for key in DEFAULTS:
        lines.append(f"{key}={values.get(key, '')}")
    return "\n".join(lines) + "\n"


def save_config(path: Path, cfg: RunConfig) -> None:
    write_private_file(path, render_saved_config(cfg.to_saved()))
