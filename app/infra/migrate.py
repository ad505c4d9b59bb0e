from __future__ import annotations

from pathlib import Path

from alembic import command
from alembic.config import Config

from app.infra.db import DATABASE_URL

ALEMBIC_INI = Path(__file__).resolve().parents[2] / "alembic.ini"


def build_config(database_url: str | None = None) -> Config:
    config = Config(str(ALEMBIC_INI))
    config.set_main_option("script_location", str(ALEMBIC_INI.parent / "infra" / "migrations"))
    config.set_main_option("sqlalchemy.url", database_url or DATABASE_URL)
    config.attributes["url_override"] = database_url is not None
    config.attributes["configure_logger"] = False
    return config


def run_upgrade_head(database_url: str | None = None) -> None:
    command.upgrade(build_config(database_url), "head")


if __name__ == "__main__":
    run_upgrade_head()
