"""Integration test fixtures using testcontainers for PostgreSQL and Redis."""

import os
from pathlib import Path
from typing import Generator

import pytest
import redis.asyncio as aioredis
from alembic import command
from alembic.config import Config
from sqlalchemy import text
from testcontainers.postgres import PostgresContainer
from testcontainers.redis import RedisContainer

from cicero.database.database import sessionmanager
from cicero.main.config import Settings, reset_settings, set_settings

# Ryuk can have connection issues in nested Docker setups
os.environ.setdefault("TESTCONTAINERS_RYUK_DISABLED", "true")

if not os.getenv("DOCKER_HOST") and os.path.exists("/var/run/docker.sock"):
    os.environ["DOCKER_HOST"] = "unix:///var/run/docker.sock"


@pytest.fixture(scope="session")
def postgres_container() -> Generator[PostgresContainer, None, None]:
    postgres = PostgresContainer(
        image="postgres:16-alpine",
        username="integration_test_user",
        password="integration_test_password",
        dbname="integration_test_db",
    )
    with postgres:
        yield postgres


@pytest.fixture(scope="session")
def redis_container() -> Generator[RedisContainer, None, None]:
    with RedisContainer(image="redis:7-alpine") as redis:
        yield redis


@pytest.fixture(scope="session")
def test_settings(
    postgres_container: PostgresContainer,
    redis_container: RedisContainer,
) -> Settings:
    return Settings(
        postgres_user="integration_test_user",
        postgres_host=postgres_container.get_container_host_ip(),
        postgres_password="integration_test_password",
        postgres_port=int(postgres_container.get_exposed_port(5432)),
        postgres_db="integration_test_db",
        redis_host=redis_container.get_container_host_ip(),
        redis_port=int(redis_container.get_exposed_port(6379)),
        timezone="Asia/Jakarta",
        testing=True,
        dev=True,
    )


@pytest.fixture(scope="session", autouse=True)
def override_settings_for_session(test_settings: Settings):
    reset_settings()
    set_settings(test_settings)
    yield
    reset_settings()


@pytest.fixture(scope="session")
def migrated_database(override_settings_for_session, test_settings: Settings):  # noqa: ARG001
    """Apply the alembic migrations once for the session."""
    root_dir = Path(__file__).parent.parent.parent
    alembic_cfg = Config(str(root_dir / "alembic.ini"))
    alembic_cfg.set_main_option("script_location", str(root_dir / "alembic"))
    command.upgrade(alembic_cfg, "head")


@pytest.fixture(autouse=True)
async def database(migrated_database, test_settings: Settings):  # noqa: ARG001
    """Fresh engine per test (the event loop is per test) and empty tables afterwards."""
    sessionmanager.init(test_settings.database_url)

    yield

    async with sessionmanager.transaction() as session:
        await session.execute(
            text("TRUNCATE TABLE notification_outbox, scheduler_state RESTART IDENTITY")
        )

    await sessionmanager.close()


@pytest.fixture
async def redis_client(test_settings: Settings):
    client = aioredis.Redis(
        host=test_settings.redis_host,
        port=test_settings.redis_port,
        decode_responses=True,
    )
    yield client
    await client.flushdb()
    await client.aclose()
