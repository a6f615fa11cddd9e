import tempfile
import unittest
from pathlib import Path

from infisical_wizard.compose import backend_port_binding, render_compose, write_compose
from infisical_wizard.config import RunConfig, TlsMode
from infisical_wizard.vault import SecretSet

SECRETS = SecretSet(
    encryption_key="0123456789abcdef0123456789abcdef",
    auth_secret="c2VjcmV0",
    postgres_password="feedface",
)


def _cfg(mode: TlsMode = TlsMode.OFF, install_dir: Path = Path("/opt/infisical"), **kw) -> RunConfig:
    if mode == TlsMode.OFF:
        kw.setdefault("listen_port", 8080)
    else:
        kw.setdefault("certbot_email", "ops@example.com")
    return RunConfig(domain="vault.example.com", install_dir=install_dir, tls_mode=mode, **kw)


class InfisicalWizardComposeTests(unittest.TestCase):
    def test_port_binding_public_when_tls_off(self) -> None:
        self.assertEqual(backend_port_binding(_cfg(listen_port=9000)), "0.0.0.0:9000:8080")

    def test_port_binding_loopback_when_tls_on(self) -> None:
        self.assertEqual(backend_port_binding(_cfg(TlsMode.HTTP01)), "127.0.0.1:8080:8080")
        self.assertEqual(
            backend_port_binding(_cfg(TlsMode.DNS_CLOUDFLARE, cloudflare_api_token="t")),
            "127.0.0.1:8080:8080",
        )

    def test_backend_waits_for_healthy_database(self) -> None:
        content = render_compose(_cfg(), SECRETS)
        self.assertIn(
            "    depends_on:\n"
            "      db:\n"
            "        condition: service_healthy\n"
            "      redis:\n"
            "        condition: service_started\n",
            content,
        )
        self.assertIn(
            '      test: "pg_isready --username=infisical && psql --username=infisical --list"\n',
            content,
        )
        self.assertIn("      retries: 10\n", content)

    def test_images_are_pinned_to_configured_versions(self) -> None:
        content = render_compose(
            _cfg(infisical_version="v0.200.1", postgres_version="16-alpine", redis_version="7.2"),
            SECRETS,
        )
        self.assertIn("image: infisical/infisical:v0.200.1\n", content)
        self.assertIn("image: postgres:16-alpine\n", content)
        self.assertIn("image: redis:7.2\n", content)
        self.assertNotIn(":latest", content)

    def test_secrets_are_referenced_not_inlined(self) -> None:
        content = render_compose(_cfg(), SECRETS)
        self.assertEqual(content.count("env_file: .env\n"), 2)
        self.assertNotIn(SECRETS.encryption_key, content)
        self.assertNotIn(SECRETS.postgres_password, content)

    def test_named_volumes_and_network_declared(self) -> None:
        content = render_compose(_cfg(), SECRETS)
        self.assertIn("      - pg_data:/var/lib/postgresql/data\n", content)
        self.assertIn("      - redis_data:/data\n", content)
        self.assertIn("volumes:\n  pg_data:\n    driver: local\n  redis_data:\n", content)
        self.assertTrue(content.endswith("networks:\n  infisical:\n"))

    def test_write_compose_to_install_dir(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            cfg = _cfg(install_dir=Path(td))
            write_compose(cfg, SECRETS)
            written = (Path(td) / "docker-compose.yml").read_text(encoding="utf-8")
        self.assertIn('      - "0.0.0.0:8080:8080"\n', written)


if __name__ == "__main__":
    unittest.main()
