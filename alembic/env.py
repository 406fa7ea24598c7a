import logging
import sys
from logging.config import fileConfig
from pathlib import Path

from alembic import context
from sqlalchemy import engine_from_config, pool

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

logger = logging.getLogger("alembic.env")


def _load_project():
    """Return ``(database_url, metadata)`` with every model registered."""
    from config import get_settings
    from database import Base
    import models  # noqa: F401

    return get_settings().database_url, Base.metadata


config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

database_url, target_metadata = _load_project()
config.set_main_option("sqlalchemy.url", database_url)


def _configure_options(is_sqlite: bool) -> dict:
    # SQLite cannot ALTER most constraints in place.
    return {
        "target_metadata": target_metadata,
        "render_as_batch": is_sqlite,
        "compare_type": True,
    }


def run_offline() -> None:
    context.configure(
        url=database_url,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        **_configure_options(database_url.startswith("sqlite")),
    )
    with context.begin_transaction():
        context.run_migrations()


def run_online() -> None:
    connectable = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            **_configure_options(connection.dialect.name == "sqlite"),
        )
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    logger.info(f"migrations_offline: url={database_url}")
    run_offline()
else:
    run_online()
