from __future__ import annotations

import os
from logging.config import fileConfig
from sqlalchemy import engine_from_config
from sqlalchemy import pool
from alembic import context

# import the models so autogenerate sees every table
from notify_hub.db.base_class import Base
from notify_hub.models.idempotency import InviteKey, ProcessedEvent  # noqa: F401
from notify_hub.models.invite import ReviewInvite, Store  # noqa: F401
from notify_hub.models.log import PipelineLog  # noqa: F401
from notify_hub.models.outbox import OutboxJob  # noqa: F401
from notify_hub.models.webhook import DeadLetterEntry, WebhookRetryEntry  # noqa: F401

config = context.config


def _alembic_url() -> str:
    url = os.getenv("DATABASE_URL") or config.get_main_option("sqlalchemy.url") or ""
    # Alembic runs synchronously
    return url.replace("+asyncpg", "+psycopg2").replace("+aiosqlite", "")


config.set_main_option("sqlalchemy.url", _alembic_url())

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def run_migrations_offline() -> None:
    url = config.get_main_option("sqlalchemy.url")
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        compare_type=True,
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    connectable = engine_from_config(
        config.get_section(config.config_ini_section),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            compare_type=True,
        )

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
