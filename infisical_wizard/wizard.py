"""
Configuration prompts for the installer.

Every field resolves from (saved value, built-in default, operator input).
In non-interactive mode no input is read: the saved value wins, then the
built-in default.
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Callable, Mapping, Optional

from infisical_wizard.config import DEFAULTS, RunConfig, TlsMode
from infisical_wizard.errors import ConfigValidationError
from infisical_wizard.log import info, log_line


class Prompter:
    def __init__(
        self,
        interactive: bool,
        ask: Optional[Callable[[str], str]] = None,
        out: Callable[[str], None] = print,
    ) -> None:
        self.interactive = interactive
        self._ask = ask or input
        self._out = out

    def _read(self, msg: str) -> str:
        try:
            return self._ask(msg).strip()
        except (EOFError, KeyboardInterrupt):
            self._out("")
            sys.exit(0)

    def resolve(
        self,
        name: str,
        label: str,
        saved: Mapping[str, str],
        builtin: Optional[str] = None,
        secret: bool = False,
    ) -> str:
        default = saved.get(name)
        if default is None:
            default = DEFAULTS.get(name, "") if builtin is None else builtin
        if not self.interactive:
            return default
        shown = "(token set)" if secret and default else default
        value = self._read(f"  {label} [{shown}]: ")
        return value if value else default

    def confirm(self, msg: str, default: bool = True) -> bool:
        if not self.interactive:
            return True
        hint = "Y/n" if default else "y/N"
        raw = self._read(f"  {msg} [{hint}]: ").lower()
        if not raw:
            return default
        return raw in ("y", "yes")


def _parse_int(name: str, raw: str) -> int:
    try:
        return int(raw.strip())
    except ValueError:
        raise ConfigValidationError(f"{name} must be a number (got {raw!r}).") from None


def resolve_run_config(saved: Mapping[str, str], prompter: Prompter) -> RunConfig:
    """
    Resolve every field in dependency order. TLS mode is resolved before the
    mode-specific branch: email (+ DNS token) for TLS modes, listen port
    otherwise.
    """
    domain = prompter.resolve("DOMAIN", "Domain name", saved)
    install_dir = prompter.resolve("INSTALL_DIR", "Install directory", saved)
    tls_mode = TlsMode.parse(
        prompter.resolve(
            "TLS_MODE",
            "TLS mode (off / http01 / dns-cloudflare)",
            saved,
        )
    )

    certbot_email = ""
    cloudflare_api_token = ""
    listen_port: Optional[int] = None
    if tls_mode == TlsMode.DNS_CLOUDFLARE:
        certbot_email = prompter.resolve(
            "CERTBOT_EMAIL", "Let's Encrypt email (required)", saved
        )
        cloudflare_api_token = prompter.resolve(
            "CLOUDFLARE_API_TOKEN",
            "Cloudflare API token (Zone DNS Edit)",
            saved,
            secret=True,
        )
    elif tls_mode == TlsMode.HTTP01:
        certbot_email = prompter.resolve(
            "CERTBOT_EMAIL", "Let's Encrypt email (required)", saved
        )
    else:
        listen_port = _parse_int(
            "Listen port",
            prompter.resolve("LISTEN_PORT", "Listen port for Infisical", saved)
            or DEFAULTS["LISTEN_PORT"],
        )

    retention = _parse_int(
        "Backup retention",
        prompter.resolve("BACKUP_RETENTION_DAYS", "Backup retention (days)", saved),
    )
    infisical_version = prompter.resolve("INFISICAL_VERSION", "Infisical version", saved)
    postgres_version = prompter.resolve("POSTGRES_VERSION", "PostgreSQL version", saved)
    redis_version = prompter.resolve("REDIS_VERSION", "Redis version", saved)

    return RunConfig(
        domain=domain.strip(),
        install_dir=Path(install_dir.strip()).expanduser(),
        tls_mode=tls_mode,
        listen_port=listen_port,
        certbot_email=certbot_email.strip(),
        cloudflare_api_token=cloudflare_api_token.strip(),
        backup_retention_days=retention,
        infisical_version=infisical_version.strip(),
        postgres_version=postgres_version.strip(),
        redis_version=redis_version.strip(),
    )


def print_summary(cfg: RunConfig, out: Callable[[str], None] = print) -> None:
    out("")
    out("Configuration Summary:")
    out("  ---------------------------------------------")
    out(f"  Domain:              {cfg.domain}")
    out(f"  Site URL:            {cfg.site_url}")
    out(f"  TLS mode:            {cfg.tls_mode.value}")
    if cfg.tls_mode == TlsMode.DNS_CLOUDFLARE:
        out(f"  Certbot email:       {cfg.certbot_email}")
        out("  Cloudflare token:    (token set)")
    elif cfg.tls_mode == TlsMode.HTTP01:
        out(f"  Certbot email:       {cfg.certbot_email}")
    else:
        out(f"  Listen port:         {cfg.listen_port}")
    out(f"  Install directory:   {cfg.install_dir}")
    out(f"  Backup directory:    {cfg.backup_dir}")
    out(f"  Backup retention:    {cfg.backup_retention_days} days")
    out(f"  Infisical version:   {cfg.infisical_version}")
    out(f"  PostgreSQL version:  {cfg.postgres_version}")
    out(f"  Redis version:       {cfg.redis_version}")
    out("  ---------------------------------------------")
    out("")


def run_wizard(saved: Mapping[str, str], prompter: Prompter) -> RunConfig:
    if not prompter.interactive:
        info("Non-interactive mode - using defaults/saved configuration")

    cfg = resolve_run_config(saved, prompter)
    print_summary(cfg)

    if not prompter.confirm("Proceed with this configuration?", default=True):
        info("Aborted by user.")
        log_line("[WIZARD] Configuration declined; nothing was changed.")
        sys.exit(0)
    return cfg
