"""
Docker Compose descriptor for the backend, cache and database services.
"""

from __future__ import annotations

from infisical_wizard.config import BACKEND_INTERNAL_PORT, RunConfig
from infisical_wizard.files import write_file
from infisical_wizard.vault import DB_USER, SecretSet

NETWORK_NAME = "infisical"
DB_VOLUME = "pg_data"
CACHE_VOLUME = "redis_data"


def backend_port_binding(cfg: RunConfig) -> str:
    if cfg.tls_enabled:
        # Only nginx on the host may reach the backend.
        return f"127.0.0.1:{BACKEND_INTERNAL_PORT}:{BACKEND_INTERNAL_PORT}"
    return f"0.0.0.0:{cfg.listen_port}:{BACKEND_INTERNAL_PORT}"


def render_compose(cfg: RunConfig, secret_set: SecretSet) -> str:
    # Containers read secrets through env_file; nothing secret is inlined here.
    env_file = cfg.env_path.name
    return (
        "services:\n"
        "  backend:\n"
        "    container_name: infisical-backend\n"
        "    restart: unless-stopped\n"
        "    depends_on:\n"
        "      db:\n"
        "        condition: service_healthy\n"
        "      redis:\n"
        "        condition: service_started\n"
        f"    image: infisical/infisical:{cfg.infisical_version}\n"
        "    pull_policy: always\n"
        f"    env_file: {env_file}\n"
        "    ports:\n"
        f'      - "{backend_port_binding(cfg)}"\n'
        "    environment:\n"
        "      - NODE_ENV=production\n"
        "    networks:\n"
        f"      - {NETWORK_NAME}\n"
        "\n"
        "  redis:\n"
        f"    image: redis:{cfg.redis_version}\n"
        "    container_name: infisical-redis\n"
        "    restart: always\n"
        "    environment:\n"
        "      - ALLOW_EMPTY_PASSWORD=yes\n"
        "    networks:\n"
        f"      - {NETWORK_NAME}\n"
        "    volumes:\n"
        f"      - {CACHE_VOLUME}:/data\n"
        "\n"
        "  db:\n"
        "    container_name: infisical-db\n"
        f"    image: postgres:{cfg.postgres_version}\n"
        "    restart: always\n"
        f"    env_file: {env_file}\n"
        "    volumes:\n"
        f"      - {DB_VOLUME}:/var/lib/postgresql/data\n"
        "    networks:\n"
        f"      - {NETWORK_NAME}\n"
        "    healthcheck:\n"
        f'      test: "pg_isready --username={DB_USER} && psql --username={DB_USER} --list"\n'
        "      interval: 5s\n"
        "      timeout: 10s\n"
        "      retries: 10\n"
        "\n"
        "volumes:\n"
        f"  {DB_VOLUME}:\n"
        "    driver: local\n"
        f"  {CACHE_VOLUME}:\n"
        "    driver: local\n"
        "\n"
        "networks:\n"
        f"  {NETWORK_NAME}:\n"
    )


def write_compose(cfg: RunConfig, secret_set: SecretSet) -> None:
    write_file(cfg.compose_path, render_compose(cfg, secret_set))
