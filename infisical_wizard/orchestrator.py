"""
Install orchestrator: one idempotent run from configuration to running stack.
"""

from __future__ import annotations

import datetime as dt
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, List, Optional

from tqdm import tqdm

from infisical_wizard import config as config_mod
from infisical_wizard import system
from infisical_wizard.compose import write_compose
from infisical_wizard.config import RunConfig, load_saved_config, save_config
from infisical_wizard.log import LOG_PATH, info, log_line
from infisical_wizard.tls import CertbotAuthority, NginxController, TlsProvisioner, TlsState
from infisical_wizard.vault import SecretSet, SecretVault
from infisical_wizard.wizard import Prompter, run_wizard


@dataclass
class Step:
    label: str
    fn: Callable[[], Any]
    skip_if: Optional[Callable[[], bool]] = None
    result: Any = field(default=None, repr=False)


@dataclass
class InstallResult:
    cfg: RunConfig
    secrets: SecretSet
    tls_state: TlsState
    healthy: bool


def run_steps(steps: List[Step], bar: Any) -> None:
    for step in steps:
        if step.skip_if and step.skip_if():
            tqdm.write(f"[SKIP] {step.label}")
            log_line(f"[SKIP] {step.label}")
            bar.update(1)
            continue
        tqdm.write(f"\n[STEP] {step.label}")
        log_line(f"[STEP] {step.label}")
        t0 = time.time()
        step.result = step.fn()
        elapsed = time.time() - t0
        tqdm.write(f"[DONE] {step.label} ({elapsed:.1f}s)")
        log_line(f"[DONE] {step.label} ({elapsed:.1f}s)")
        bar.update(1)


def header(title: str) -> None:
    tqdm.write(f"\n=== {title} ===\n")
    log_line(f"=== {title} ===")


def build_tls_provisioner(cfg: RunConfig) -> TlsProvisioner:
    return TlsProvisioner(cfg, CertbotAuthority(), NginxController(cfg))


def _save_config(cfg: RunConfig) -> None:
    save_config(cfg.saved_config_path, cfg)
    info(f"Configuration saved to {cfg.saved_config_path}")


def _resolve_secrets(cfg: RunConfig, prior_install: bool) -> SecretSet:
    vault = SecretVault(
        cfg.env_path,
        prior_install=prior_install or system.database_data_present(),
    )
    secret_set = vault.resolve()
    vault.write(cfg, secret_set)
    return secret_set


def run_install(
    interactive: bool,
    *,
    saved_config_path: Optional[Path] = None,
    prompter: Optional[Prompter] = None,
) -> InstallResult:
    header("Pre-flight Checks")
    system.preflight()

    header("Configuration")
    path = saved_config_path or config_mod.DEFAULT_SAVED_CONFIG_PATH
    saved = load_saved_config(path)
    if saved:
        info(f"Loaded saved configuration from previous install ({path})")
    cfg = run_wizard(saved, prompter or Prompter(interactive))
    prior_install = bool(saved) or cfg.env_path.exists()

    log_line(f"=== START {dt.datetime.now(dt.timezone.utc).isoformat()} ===")
    tqdm.write(f"[INFO] Logging to: {LOG_PATH}")
    try:
        secrets_step = Step(
            "Configure secrets (.env)",
            lambda: _resolve_secrets(cfg, prior_install),
        )
        tls_step = Step(
            "Provision TLS certificate and nginx",
            lambda: build_tls_provisioner(cfg).run(),
        )
        health_step = Step(
            "Wait for backend health",
            lambda: system.check_backend_health(cfg),
        )
        steps: List[Step] = [
            Step("Install system packages", lambda: system.ensure_packages(cfg)),
            Step(
                "Enable nginx",
                lambda: system.enable_nginx(cfg),
                skip_if=lambda: not cfg.tls_enabled,
            ),
            Step("Set up directories", lambda: system.ensure_directories(cfg)),
            Step("Save configuration", lambda: _save_config(cfg)),
            secrets_step,
            tls_step,
            Step(
                "Write Docker Compose configuration",
                lambda: write_compose(cfg, secrets_step.result),
            ),
            Step("Start Infisical services", lambda: system.start_containers(cfg)),
            health_step,
            Step("Configure database backups", lambda: system.install_backup_cron(cfg)),
        ]
        with tqdm(total=len(steps), desc="Installing Infisical", unit="step") as bar:
            run_steps(steps, bar)
        result = InstallResult(
            cfg=cfg,
            secrets=secrets_step.result,
            tls_state=tls_step.result,
            healthy=bool(health_step.result),
        )
        _print_summary(result)
        return result
    finally:
        log_line(f"=== END {dt.datetime.now(dt.timezone.utc).isoformat()} ===")


def _print_summary(result: InstallResult) -> None:
    cfg = result.cfg
    header("Installation Complete")
    print("Container Status:")
    system.show_container_status(cfg)
    print()
    print("Service Endpoints:")
    print(f"  Web UI     : {cfg.site_url}")
    print(f"  API Status : {cfg.site_url}/api/status")
    print()
    print("Important Files:")
    print(f"  Compose    : {cfg.compose_path}")
    print(f"  Env        : {cfg.env_path}")
    print(f"  Config     : {cfg.saved_config_path}")
    print(f"  Backups    : {cfg.backup_dir}/")
    if cfg.tls_enabled:
        print(f"  nginx      : {cfg.nginx_site_available_path}")
    print()
    print("Useful commands:")
    print(f"  View logs     : docker compose -f {cfg.compose_path} logs -f")
    print(f"  Restart       : docker compose -f {cfg.compose_path} restart")
    print(f"  Stop          : docker compose -f {cfg.compose_path} down")
    print(
        "  Manual backup : docker exec infisical-db pg_dump -U infisical -d infisical "
        f"| gzip > {cfg.backup_dir}/manual-backup.sql.gz"
    )
    print()
    print("+--------------------------------------------------------------+")
    print("|  CRITICAL: Back up your ENCRYPTION_KEY from .env             |")
    print("|  Without it, all secrets in the database are irrecoverable   |")
    print("|  Store it in your password manager NOW                       |")
    print("+--------------------------------------------------------------+")
    print()
    if result.secrets.fresh_encryption_key:
        print(
            "This is a fresh install. The first user to sign up at "
            f"{cfg.site_url} becomes the admin."
        )
        print()
    info(f"Done. Infisical is running at {cfg.site_url}")
