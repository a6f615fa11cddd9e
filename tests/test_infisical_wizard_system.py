import os
import stat
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import requests

from infisical_wizard import system
from infisical_wizard.config import RunConfig, TlsMode
from infisical_wizard.errors import EnvironmentCheckError


def _cfg(mode: TlsMode = TlsMode.OFF, install_dir: Path = Path("/opt/infisical")) -> RunConfig:
    if mode == TlsMode.OFF:
        return RunConfig(
            domain="vault.example.com",
            install_dir=install_dir,
            tls_mode=mode,
            listen_port=8080,
            backup_retention_days=14,
        )
    return RunConfig(
        domain="vault.example.com",
        install_dir=install_dir,
        tls_mode=mode,
        certbot_email="ops@example.com",
        cloudflare_api_token="t" if mode == TlsMode.DNS_CLOUDFLARE else "",
    )


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class InfisicalWizardHealthTests(unittest.TestCase):
    def test_wait_for_backend_returns_true_once_status_ok(self) -> None:
        clock = FakeClock()
        with mock.patch(
            "infisical_wizard.system.requests.get",
            side_effect=[requests.ConnectionError("refused"), mock.Mock(ok=False), mock.Mock(ok=True)],
        ) as get_mock:
            healthy = system.wait_for_backend(
                "http://127.0.0.1:8080/api/status", sleep=clock.sleep, clock=clock
            )
        self.assertTrue(healthy)
        self.assertEqual(get_mock.call_count, 3)
        self.assertEqual(clock.sleeps, [2, 2])

    def test_wait_for_backend_times_out_without_raising(self) -> None:
        clock = FakeClock()
        with mock.patch(
            "infisical_wizard.system.requests.get",
            side_effect=requests.Timeout("slow"),
        ) as get_mock:
            healthy = system.wait_for_backend(
                "http://127.0.0.1:8080/api/status",
                timeout=10,
                interval=2,
                sleep=clock.sleep,
                clock=clock,
            )
        self.assertFalse(healthy)
        self.assertEqual(get_mock.call_count, 5)
        self.assertEqual(clock.now, 10)

    def test_hanging_backend_counts_request_time_against_deadline(self) -> None:
        clock = FakeClock()
        timeouts = []

        def hang(url, timeout):
            timeouts.append(timeout)
            clock.now += timeout
            raise requests.Timeout("read timed out")

        with mock.patch("infisical_wizard.system.requests.get", side_effect=hang):
            healthy = system.wait_for_backend(
                "http://127.0.0.1:8080/api/status", sleep=clock.sleep, clock=clock
            )
        self.assertFalse(healthy)
        self.assertLessEqual(clock.now, system.HEALTH_TIMEOUT_SECONDS)
        self.assertEqual(len(timeouts), 15)
        self.assertTrue(all(t <= 2 for t in timeouts))

    def test_check_backend_health_only_warns(self) -> None:
        with mock.patch("infisical_wizard.system.wait_for_backend", return_value=False), \
             mock.patch("infisical_wizard.system.info"), \
             mock.patch("infisical_wizard.system.warn") as warn_mock:
            self.assertFalse(system.check_backend_health(_cfg()))
        self.assertEqual(warn_mock.call_count, 2)


class InfisicalWizardSystemTests(unittest.TestCase):
    def test_require_root_rejects_unprivileged_user(self) -> None:
        with mock.patch("infisical_wizard.system.os.geteuid", return_value=1000):
            with self.assertRaises(EnvironmentCheckError):
                system.require_root()
        with mock.patch("infisical_wizard.system.os.geteuid", return_value=0):
            system.require_root()

    def test_detect_ubuntu_warns_on_other_distributions(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            osr = Path(td) / "os-release"
            osr.write_text('ID=debian\nVERSION_ID="12"\n', encoding="utf-8")
            with mock.patch("infisical_wizard.system.OS_RELEASE_PATH", osr), \
                 mock.patch("infisical_wizard.system.info"), \
                 mock.patch("infisical_wizard.system.warn") as warn_mock:
                system.detect_ubuntu()
        self.assertIn("debian", warn_mock.call_args.args[0])

    def test_check_connectivity_failure_is_fatal(self) -> None:
        failed = mock.Mock(returncode=1)
        with mock.patch("infisical_wizard.system.shutil.which", return_value="/bin/ping"), \
             mock.patch("infisical_wizard.system.subprocess.run", return_value=failed):
            with self.assertRaises(EnvironmentCheckError) as ctx:
                system.check_connectivity()
        self.assertIn("No internet connectivity", str(ctx.exception))

    def test_check_connectivity_without_ping_names_the_cause(self) -> None:
        with mock.patch("infisical_wizard.system.shutil.which", return_value=None), \
             mock.patch("infisical_wizard.system.subprocess.run") as run_mock:
            with self.assertRaises(EnvironmentCheckError) as ctx:
                system.check_connectivity()
        self.assertIn("'ping' was not found", str(ctx.exception))
        run_mock.assert_not_called()

    def test_enable_nginx_starts_service(self) -> None:
        with mock.patch("infisical_wizard.system.info"), \
             mock.patch("infisical_wizard.system.sh", return_value=0) as sh_mock:
            system.enable_nginx(_cfg(TlsMode.HTTP01))
        self.assertEqual(sh_mock.call_args.args[0], "systemctl enable --now nginx")

    def test_apt_cache_staleness(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            lists = Path(td)
            mtime = lists.stat().st_mtime
            with mock.patch("infisical_wizard.system.APT_LISTS_DIR", lists):
                self.assertFalse(system.apt_cache_is_stale(now=mtime + 600))
                self.assertTrue(system.apt_cache_is_stale(now=mtime + 3601))
            with mock.patch("infisical_wizard.system.APT_LISTS_DIR", lists / "missing"):
                self.assertTrue(system.apt_cache_is_stale())

    def test_packages_follow_tls_mode(self) -> None:
        off = system.packages_for(_cfg())
        self.assertIn("docker.io", off)
        self.assertNotIn("nginx", off)
        http01 = system.packages_for(_cfg(TlsMode.HTTP01))
        self.assertIn("python3-certbot-nginx", http01)
        dns = system.packages_for(_cfg(TlsMode.DNS_CLOUDFLARE))
        self.assertIn("python3-certbot-dns-cloudflare", dns)
        self.assertNotIn("python3-certbot-nginx", dns)

    def test_ensure_packages_skips_fresh_apt_cache(self) -> None:
        with mock.patch("infisical_wizard.system.apt_cache_is_stale", return_value=False), \
             mock.patch("infisical_wizard.system.info"), \
             mock.patch("infisical_wizard.system.sh", return_value=0) as sh_mock:
            system.ensure_packages(_cfg())
        commands = [c.args[0] for c in sh_mock.call_args_list]
        self.assertFalse(any("apt-get update" in c for c in commands))
        self.assertTrue(any("apt-get install" in c for c in commands))
        self.assertNotIn("systemctl enable --now nginx", commands)

    def test_database_data_present_without_docker(self) -> None:
        with mock.patch("infisical_wizard.system.shutil.which", return_value=None):
            self.assertFalse(system.database_data_present())
        with mock.patch("infisical_wizard.system.shutil.which", return_value="/usr/bin/docker"), \
             mock.patch(
                 "infisical_wizard.system.subprocess.run",
                 return_value=mock.Mock(returncode=0, stdout="infisical_pg_data\n"),
             ):
            self.assertTrue(system.database_data_present())

    def test_backup_cron_uses_retention_and_backup_dir(self) -> None:
        content = system.render_backup_cron(_cfg())
        self.assertIn("0 2 * * * root docker exec infisical-db pg_dump", content)
        self.assertIn("/opt/infisical/backups/infisical-db-", content)
        self.assertIn("-mtime +14 -delete", content)
        self.assertIn("\\%Y\\%m\\%d", content)

    def test_install_backup_cron_is_world_readable(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            cron = Path(td) / "cron.d" / "infisical-backup"
            with mock.patch("infisical_wizard.config.CRON_PATH", cron), \
                 mock.patch("infisical_wizard.system.info"), \
                 mock.patch("infisical_wizard.system.log_line"):
                system.install_backup_cron(_cfg())
            self.assertEqual(stat.S_IMODE(os.stat(cron).st_mode), 0o644)


if __name__ == "__main__":
    unittest.main()
