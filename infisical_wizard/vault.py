"""
Secret resolution for the Infisical `.env` file.

A secret already present (and non-empty) in the existing file is reused
verbatim; a missing or empty one is generated. Sizes are part of the file
format and must not change between versions.
"""

from __future__ import annotations

import base64
import secrets
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, FrozenSet, Optional

from infisical_wizard.config import RunConfig
from infisical_wizard.errors import SecretFileError
from infisical_wizard.files import write_private_file
from infisical_wizard.log import info, warn

ENCRYPTION_KEY = "ENCRYPTION_KEY"
AUTH_SECRET = "AUTH_SECRET"
POSTGRES_PASSWORD = "POSTGRES_PASSWORD"

ENCRYPTION_KEY_BYTES = 16
AUTH_SECRET_BYTES = 32
POSTGRES_PASSWORD_BYTES = 24

DB_USER = "infisical"
DB_NAME = "infisical"


def _hex(nbytes: int) -> str:
    return secrets.token_hex(nbytes)


def _base64(nbytes: int) -> str:
    return base64.b64encode(secrets.token_bytes(nbytes)).decode("ascii")


GENERATORS = {
    ENCRYPTION_KEY: lambda: _hex(ENCRYPTION_KEY_BYTES),
    AUTH_SECRET: lambda: _base64(AUTH_SECRET_BYTES),
    POSTGRES_PASSWORD: lambda: _hex(POSTGRES_PASSWORD_BYTES),
}


@dataclass(frozen=True)
class SecretSet:
    encryption_key: str
    auth_secret: str
    postgres_password: str
    generated: FrozenSet[str] = field(default_factory=frozenset)

    @property
    def db_connection_uri(self) -> str:
        return f"postgres://{DB_USER}:{self.postgres_password}@db:5432/{DB_NAME}"

    @property
    def fresh_encryption_key(self) -> bool:
        return ENCRYPTION_KEY in self.generated


def read_env_value(text: str, key: str) -> str:
    """
    First `KEY=value` line wins; the value is everything after the first `=`.
    """
    prefix = f"{key}="
    for line in text.splitlines():
        if line.startswith(prefix):
            return line[len(prefix):]
    return ""


def render_env_file(cfg: RunConfig, secret_set: SecretSet) -> str:
    return (
        "# =============================================================================\n"
        "# Infisical Environment Configuration\n"
        "# Auto-generated by infisical_wizard - secrets are preserved across re-runs\n"
        "# DO NOT commit this file to version control\n"
        "# =============================================================================\n"
        "\n"
        "# Encryption - CRITICAL: back up this key separately\n"
        f"ENCRYPTION_KEY={secret_set.encryption_key}\n"
        "\n"
        "# JWT signing secret\n"
        f"AUTH_SECRET={secret_set.auth_secret}\n"
        "\n"
        "# PostgreSQL\n"
        f"POSTGRES_USER={DB_USER}\n"
        f"POSTGRES_PASSWORD={secret_set.postgres_password}\n"
        f"POSTGRES_DB={DB_NAME}\n"
        f"DB_CONNECTION_URI={secret_set.db_connection_uri}\n"
        "\n"
        "# Redis\n"
        "REDIS_URL=redis://redis:6379\n"
        "\n"
        "# Site URL (must match your nginx/DNS setup)\n"
        f"SITE_URL={cfg.site_url}\n"
        "\n"
        "# Telemetry (disabled for self-hosted)\n"
        "TELEMETRY_ENABLED=false\n"
        "OTEL_TELEMETRY_COLLECTION_ENABLED=false\n"
        "\n"
        "# SMTP (optional - configure to enable email invitations)\n"
        "SMTP_HOST=\n"
        "SMTP_PORT=\n"
        "SMTP_FROM_ADDRESS=\n"
        "SMTP_FROM_NAME=\n"
        "SMTP_USERNAME=\n"
        "SMTP_PASSWORD=\n"
    )


class SecretVault:
    def __init__(
        self,
        path: Path,
        *,
        prior_install: bool = False,
        generators: Optional[Dict[str, Callable[[], str]]] = None,
    ) -> None:
        self.path = path
        self.prior_install = prior_install
        self._generators = dict(GENERATORS)
        if generators:
            self._generators.update(generators)

    def _existing_text(self) -> str:
        if not self.path.exists():
            return ""
        try:
            return self.path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            # Regenerating here would silently orphan data encrypted with the old key.
            raise SecretFileError(
                f"Existing secret file {self.path} could not be read ({exc}). "
                "Fix its permissions/contents and re-run; refusing to generate new "
                "secrets over it."
            ) from exc

    def _resolve_one(self, key: str, existing: str, generated: set) -> str:
        current = read_env_value(existing, key)
        if current:
            info(f"{key}: preserved from existing {self.path.name}")
            return current
        generated.add(key)
        value = self._generators[key]()
        info(f"{key}: generated new value")
        return value

    def resolve(self) -> SecretSet:
        existing = self._existing_text()
        if existing:
            info(f"Existing {self.path.name} found - preserving secrets")
        generated: set = set()
        encryption_key = self._resolve_one(ENCRYPTION_KEY, existing, generated)
        auth_secret = self._resolve_one(AUTH_SECRET, existing, generated)
        postgres_password = self._resolve_one(POSTGRES_PASSWORD, existing, generated)

        if ENCRYPTION_KEY in generated:
            warn("BACK UP THIS KEY! Without it, your encrypted data is irrecoverable.")
            if self.prior_install:
                warn(
                    f"ENCRYPTION_KEY was missing from {self.path} but a previous install "
                    "was detected. Any secrets encrypted with the old key are now "
                    "PERMANENTLY UNRECOVERABLE. Restore the old key into this file and "
                    "re-run if you still have it."
                )

        return SecretSet(
            encryption_key=encryption_key,
            auth_secret=auth_secret,
            postgres_password=postgres_password,
            generated=frozenset(generated),
        )

    def write(self, cfg: RunConfig, secret_set: SecretSet) -> None:
        write_private_file(self.path, render_env_file(cfg, secret_set))
        info(f".env written to {self.path}")
