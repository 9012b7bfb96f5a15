"""Tests for calsync.db connection settings and the asyncpg pool."""

from __future__ import annotations

import uuid

import pytest

from calsync.config import DatabaseConfig
from calsync.db import Database, ServerAddress


class TestServerAddress:
    pytestmark = pytest.mark.unit

    def test_database_url_wins(self, monkeypatch: pytest.MonkeyPatch) -> None:
        url = "postgres://cal:pw@db.example.com:6543/x?sslmode=Require"
        monkeypatch.setenv("DATABASE_URL", url)
        monkeypatch.setenv("POSTGRES_HOST", "ignored")

        server = ServerAddress.from_env()

        assert server == ServerAddress("db.example.com", 6543, "cal", "pw", "require")

    def test_individual_variables(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("DATABASE_URL", raising=False)
        monkeypatch.setenv("POSTGRES_HOST", "pg")
        monkeypatch.setenv("POSTGRES_PORT", "5433")
        monkeypatch.setenv("POSTGRES_USER", "svc")
        monkeypatch.setenv("POSTGRES_PASSWORD", "secret")
        monkeypatch.setenv("POSTGRES_SSLMODE", "bogus")

        server = ServerAddress.from_env()

        assert server == ServerAddress("pg", 5433, "svc", "secret", None)

    def test_connect_kwargs_include_ssl_only_when_set(self) -> None:
        assert "ssl" not in ServerAddress().connect_kwargs("cal")
        assert ServerAddress(ssl="require").connect_kwargs("cal")["ssl"] == "require"


class TestDatabase:
    pytestmark = pytest.mark.unit

    def test_from_config(self) -> None:
        server = ServerAddress(host="pg")
        db = Database.from_config(
            DatabaseConfig(name="cal", schema="sync", min_pool_size=1, max_pool_size=4), server
        )

        assert (db.name, db.schema, db.min_pool_size, db.max_pool_size) == ("cal", "sync", 1, 4)
        assert db.server is server

    def test_dsn_escapes_credentials(self) -> None:
        db = Database("cal", ServerAddress(host="pg", user="a@b", password="p/w:1"))

        assert db.dsn() == "postgresql://a%40b:p%2Fw%3A1@pg:5432/cal"


@pytest.mark.integration
async def test_provision_is_idempotent_and_pool_uses_schema(postgres_container) -> None:
    server = ServerAddress(
        host=postgres_container.get_container_host_ip(),
        port=int(postgres_container.get_exposed_port(5432)),
        user=postgres_container.username,
        password=postgres_container.password,
    )
    db = Database(f"test_{uuid.uuid4().hex[:12]}", server, schema="cal", min_pool_size=1)

    await db.provision()
    await db.provision()
    pool = await db.connect()
    try:
        assert (await pool.fetchval("SHOW search_path")).startswith("cal")
    finally:
        await db.close()

    assert db.pool is None
