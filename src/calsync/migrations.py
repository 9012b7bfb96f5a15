"""Apply the calsync Alembic migrations from Python.

Used by ``calsync migrate`` and by the PostgreSQL test fixtures, so neither
needs an ``alembic.ini``.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path

from alembic.config import Config

from alembic import command

logger = logging.getLogger(__name__)

# alembic/ sits next to src/
ALEMBIC_DIR = Path(__file__).resolve().parents[2] / "alembic"

CHAINS = ["core"]
_IDENTIFIER = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")


def _schema_name(schema: str | None) -> str | None:
    name = (schema or "").strip()
    if not name:
        return None
    if _IDENTIFIER.fullmatch(name) is None:
        raise ValueError(f"Invalid migration schema name: {schema!r}")
    return name


def _build_alembic_config(db_url: str, target_schema: str | None = None) -> Config:
    config = Config()
    config.set_main_option("script_location", str(ALEMBIC_DIR))
    # Config values go through configparser interpolation.
    config.set_main_option("sqlalchemy.url", db_url.replace("%", "%%"))
    config.set_main_option(
        "version_locations", " ".join(str(ALEMBIC_DIR / "versions" / c) for c in CHAINS)
    )
    schema = _schema_name(target_schema)
    if schema is not None:
        config.set_main_option("calsync.target_schema", schema)
        config.set_main_option("version_table_schema", schema)
    return config


def run_migrations(db_url: str, chain: str = "core", schema: str | None = None) -> None:
    """Upgrade *chain* (``"all"`` for every chain) to its head on *db_url*."""
    chains = list(CHAINS) if chain == "all" else [chain]
    unknown = sorted(set(chains) - set(CHAINS))
    if unknown:
        raise ValueError(f"Unknown migration chain(s): {', '.join(unknown)}")

    config = _build_alembic_config(db_url, target_schema=schema)
    for name in chains:
        logger.info("Upgrading migration chain %s (schema=%s)", name, schema or "public")
        command.upgrade(config, f"{name}@head")
