import os
from sqlalchemy import create_engine, pool
from alembic import context
from storefront.core.config import settings
from storefront.db.session import Base
import storefront.db.models  # noqa

config = context.config
target_metadata = Base.metadata

# One version table per service; several services may share a database.
VERSION_TABLE = "alembic_version_storefront"

def _dsn() -> str:
    return config.get_main_option("sqlalchemy.url") or os.getenv("POSTGRES_DSN") or settings.POSTGRES_DSN

def _options(dsn: str) -> dict:
    return {
        "target_metadata": target_metadata,
        "version_table": VERSION_TABLE,
        "compare_type": True,
        # ALTER on SQLite goes through table copies
        "render_as_batch": dsn.startswith("sqlite"),
    }

def run_migrations_offline():
    dsn = _dsn()
    context.configure(url=dsn, literal_binds=True, dialect_opts={"paramstyle": "named"}, **_options(dsn))
    with context.begin_transaction():
        context.run_migrations()

def run_migrations_online():
    dsn = _dsn()
    connectable = create_engine(dsn, poolclass=pool.NullPool)
    with connectable.connect() as connection:
        context.configure(connection=connection, **_options(dsn))
        with context.begin_transaction():
            context.run_migrations()

if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
