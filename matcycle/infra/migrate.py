from __future__ import annotations

from pathlib import Path

from alembic import command
from alembic.config import Config

from matcycle.infra.logging import get_logger

ROOT = Path(__file__).resolve().parents[2]

logger = get_logger(__name__)


def build_config() -> Config:
    config = Config(str(ROOT / "alembic.ini"))
    config.set_main_option("script_location", str(ROOT / "infra" / "migrations"))
    return config


def run_upgrade_head() -> None:
    logger.info("upgrading schema", target="head")
    command.upgrade(build_config(), "head")


if __name__ == "__main__":
    run_upgrade_head()
