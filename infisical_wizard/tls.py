"""
TLS certificate provisioning and nginx site management.

The provisioner is a small state machine:

    off                       -> DISABLED
    certificate present       -> PROVISIONED
    certificate absent        -> AWAITING_CERTIFICATE -> (acquire) ->
                                 PROVISIONED | FAILED

Certificate presence on disk is the only state that survives between runs,
so a re-run never asks the CA for a certificate it already has.
"""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from shlex import quote
from typing import Callable, List, Optional, Protocol

from infisical_wizard.config import BACKEND_INTERNAL_PORT, RunConfig, TlsMode
from infisical_wizard.errors import ProvisioningError, ProxyConfigError
from infisical_wizard.files import write_file, write_private_file
from infisical_wizard.log import info, log_line, sh


class TlsState(str, Enum):
    DISABLED = "disabled"
    AWAITING_CERTIFICATE = "awaiting-certificate"
    PROVISIONED = "provisioned"
    FAILED = "failed"


class CertificateAuthority(Protocol):
    def obtain_via_webroot(self, domain: str, email: str, webroot: Path) -> int:
        ...

    def obtain_via_dns(self, domain: str, email: str, credentials_path: Path) -> int:
        ...


class ProxyController(Protocol):
    def install_site(self, content: str) -> Optional[str]:
        """Write and enable the site; return the previous content, if any."""
        ...

    def restore_site(self, previous: Optional[str]) -> None:
        ...

    def validate(self) -> bool:
        ...

    def reload(self) -> None:
        ...


_CERTBOT_COMMON = "--non-interactive --agree-tos --no-eff-email"


class CertbotAuthority:
    def obtain_via_webroot(self, domain: str, email: str, webroot: Path) -> int:
        cmd = (
            "certbot certonly --webroot "
            f"-w {quote(str(webroot))} "
            f"-d {quote(domain)} "
            f"--email {quote(email)} "
            f"{_CERTBOT_COMMON}"
        )
        return sh(cmd, check=False)

    def obtain_via_dns(self, domain: str, email: str, credentials_path: Path) -> int:
        cmd = (
            "certbot certonly --dns-cloudflare "
            f"--dns-cloudflare-credentials {quote(str(credentials_path))} "
            f"-d {quote(domain)} "
            f"--email {quote(email)} "
            f"{_CERTBOT_COMMON}"
        )
        return sh(cmd, check=False)


class NginxController:
    def __init__(self, cfg: RunConfig) -> None:
        self.available = cfg.nginx_site_available_path
        self.enabled = cfg.nginx_site_enabled_path
        self.default_site = cfg.nginx_default_site_path

    def _enable(self) -> None:
        self.enabled.parent.mkdir(parents=True, exist_ok=True)
        if self.default_site.exists() or self.default_site.is_symlink():
            self.default_site.unlink()
            log_line(f"[NGINX] Removed default site {self.default_site}")
        if self.enabled.exists() or self.enabled.is_symlink():
            if self.enabled.is_symlink() and self.enabled.resolve() == self.available.resolve():
                return
            self.enabled.unlink()
        self.enabled.symlink_to(self.available)

    def install_site(self, content: str) -> Optional[str]:
        previous: Optional[str] = None
        if self.available.is_file():
            previous = self.available.read_text(encoding="utf-8")
        write_file(self.available, content)
        self._enable()
        return previous

    def restore_site(self, previous: Optional[str]) -> None:
        if previous is None:
            if self.enabled.is_symlink():
                self.enabled.unlink()
            if self.available.exists():
                self.available.unlink()
            return
        write_file(self.available, previous)

    def validate(self) -> bool:
        return sh("nginx -t", check=False) == 0

    def reload(self) -> None:
        if sh("systemctl reload nginx", check=False) != 0:
            sh("systemctl start nginx", hint="nginx could not be reloaded or started.")


def _acme_location(webroot: Path) -> str:
    return (
        "    location /.well-known/acme-challenge/ {\n"
        f"        root {webroot};\n"
        "    }\n"
    )


def render_bootstrap_site(cfg: RunConfig) -> str:
    """Plain-HTTP site serving only the ACME challenge and a placeholder."""
    return (
        "server {\n"
        "    listen 80;\n"
        f"    server_name {cfg.domain};\n"
        "\n"
        f"{_acme_location(cfg.acme_webroot)}"
        "\n"
        "    location / {\n"
        "        return 200 'Infisical is being configured...';\n"
        "        add_header Content-Type text/plain;\n"
        "    }\n"
        "}\n"
    )


def render_tls_site(cfg: RunConfig) -> str:
    return (
        "server {\n"
        "    listen 80;\n"
        f"    server_name {cfg.domain};\n"
        "\n"
        f"{_acme_location(cfg.acme_webroot)}"
        "\n"
        "    location / {\n"
        "        return 301 https://$host$request_uri;\n"
        "    }\n"
        "}\n"
        "\n"
        "server {\n"
        "    listen 443 ssl http2;\n"
        f"    server_name {cfg.domain};\n"
        "\n"
        f"    ssl_certificate     {cfg.cert_path};\n"
        f"    ssl_certificate_key {cfg.key_path};\n"
        "    ssl_protocols       TLSv1.2 TLSv1.3;\n"
        "    ssl_ciphers         HIGH:!aNULL:!MD5;\n"
        "    ssl_prefer_server_ciphers on;\n"
        "\n"
        "    client_max_body_size 16m;\n"
        "\n"
        "    location / {\n"
        f"        proxy_pass http://127.0.0.1:{BACKEND_INTERNAL_PORT};\n"
        "        proxy_set_header Host $host;\n"
        "        proxy_set_header X-Real-IP $remote_addr;\n"
        "        proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;\n"
        "        proxy_set_header X-Forwarded-Proto $scheme;\n"
        "\n"
        "        # WebSocket support\n"
        "        proxy_http_version 1.1;\n"
        "        proxy_set_header Upgrade $http_upgrade;\n"
        '        proxy_set_header Connection "upgrade";\n'
        "\n"
        "        proxy_read_timeout 300;\n"
        "        proxy_connect_timeout 300;\n"
        "        proxy_send_timeout 300;\n"
        "    }\n"
        "}\n"
    )


def render_cloudflare_credentials(cfg: RunConfig) -> str:
    return f"dns_cloudflare_api_token = {cfg.cloudflare_api_token}\n"


def _failure_hint(cfg: RunConfig) -> str:
    if cfg.tls_mode == TlsMode.DNS_CLOUDFLARE:
        return (
            "Check that the domain's DNS zone is hosted on Cloudflare and that the API "
            "token has Zone DNS Edit permission for it."
        )
    return (
        f"Check that the DNS A/AAAA records for {cfg.domain} point at this host and "
        "that the firewall allows inbound port 80."
    )


class TlsProvisioner:
    def __init__(
        self,
        cfg: RunConfig,
        authority: CertificateAuthority,
        proxy: ProxyController,
        *,
        path_exists: Callable[[Path], bool] = Path.is_file,
    ) -> None:
        self.cfg = cfg
        self.authority = authority
        self.proxy = proxy
        self._path_exists = path_exists
        self.state: Optional[TlsState] = None
        self.history: List[TlsState] = []

    def _enter(self, state: TlsState) -> None:
        self.state = state
        self.history.append(state)
        log_line(f"[TLS] state -> {state.value}")

    def certificate_exists(self) -> bool:
        return self._path_exists(self.cfg.cert_path)

    def activate_site(self, content: str, label: str) -> None:
        """
        Install a site config, validate it, and only then reload nginx. A
        config that fails validation is rolled back before the error surfaces.
        """
        previous = self.proxy.install_site(content)
        if not self.proxy.validate():
            self.proxy.restore_site(previous)
            raise ProxyConfigError(
                f"nginx configuration test failed for the {label} site. "
                f"The previous configuration was restored. Check "
                f"{self.cfg.nginx_site_available_path}."
            )
        self.proxy.reload()
        info(f"nginx reloaded with {label} config")

    def _acquire(self) -> int:
        cfg = self.cfg
        if cfg.tls_mode == TlsMode.DNS_CLOUDFLARE:
            creds = cfg.cloudflare_credentials_path
            info(f"Writing Cloudflare credentials to {creds}")
            write_private_file(creds, render_cloudflare_credentials(cfg))
            info(f"Running certbot with dns-cloudflare plugin for {cfg.domain}...")
            return self.authority.obtain_via_dns(cfg.domain, cfg.certbot_email, creds)

        info("No TLS certificate found - writing HTTP-only config for certbot")
        cfg.acme_webroot.mkdir(parents=True, exist_ok=True)
        self.activate_site(render_bootstrap_site(cfg), "HTTP-only")
        info(f"Running certbot for {cfg.domain}...")
        return self.authority.obtain_via_webroot(cfg.domain, cfg.certbot_email, cfg.acme_webroot)

    def run(self) -> TlsState:
        cfg = self.cfg
        if not cfg.tls_enabled:
            self._enter(TlsState.DISABLED)
            info(f"TLS disabled - Infisical backend exposed directly on port {cfg.listen_port}")
            info("Ensure your external load balancer / HAProxy handles TLS termination")
            return self.state

        if self.certificate_exists():
            info("Existing TLS certificate found - skipping certbot")
        else:
            self._enter(TlsState.AWAITING_CERTIFICATE)
            rc = self._acquire()
            if not self.certificate_exists():
                self._enter(TlsState.FAILED)
                raise ProvisioningError(
                    f"certbot failed to obtain a certificate for {cfg.domain} "
                    f"(mode {cfg.tls_mode.value}, exit {rc}); expected {cfg.cert_path}. "
                    f"{_failure_hint(cfg)}"
                )
            info("TLS certificate obtained successfully")

        self._enter(TlsState.PROVISIONED)
        self.activate_site(render_tls_site(cfg), "TLS")
        return self.state
