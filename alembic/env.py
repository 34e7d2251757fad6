import logging
import sys
from logging.config import fileConfig
from pathlib import Path

from alembic import context

BASE_DIR = Path(__file__).resolve().parents[1]
if str(BASE_DIR) not in sys.path:
    sys.path.insert(0, str(BASE_DIR))

from config import get_settings  # noqa: E402
from database import Base, make_engine  # noqa: E402
import models  # noqa: E402,F401

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

logger = logging.getLogger("alembic.env")


def _database_url() -> str:
    # `alembic -x url=sqlite:///other.db upgrade head` targets another store.
    return context.get_x_argument(as_dictionary=True).get(
        "url", get_settings().database_url
    )


DATABASE_URL = _database_url()
LEDGER_TABLES = Base.metadata
# SQLite cannot ALTER most constraints in place.
BATCH_MODE = DATABASE_URL.startswith("sqlite")


def run_migrations_offline() -> None:
    context.configure(
        url=DATABASE_URL,
        target_metadata=LEDGER_TABLES,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        render_as_batch=BATCH_MODE,
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    engine = make_engine(DATABASE_URL)
    logger.info(f"migrating: url={engine.url.render_as_string(hide_password=True)}")
    try:
        with engine.connect() as connection:
            context.configure(
                connection=connection,
                target_metadata=LEDGER_TABLES,
                compare_type=True,
                render_as_batch=BATCH_MODE,
            )
            with context.begin_transaction():
                context.run_migrations()
    finally:
        engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
