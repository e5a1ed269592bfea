import asyncio
from logging.config import fileConfig

# ruff: noqa: F401

from sqlalchemy import pool
from sqlalchemy.engine import Connection, make_url
from sqlalchemy.ext.asyncio import async_engine_from_config

from alembic import context

from labledger.core.config import settings
from labledger.core.database.base import Base

# Every ledger model must be imported so autogenerate sees its table
from labledger.core.auth.models import User
from labledger.core.audit.models import AuditLog
from labledger.core.documents.models import DocumentSequence
from labledger.core.system_settings.models import SystemSetting
from labledger.modules.patients.models import Patient
from labledger.modules.lab_tests.models import LabTest
from labledger.modules.lab_orders.models import LabTestOrder, LabTestOrderItem
from labledger.modules.lab_payments.models import LabOrderPayment, LabOrderPaymentAllocation

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def get_url() -> str:
    return settings.database_url


def configure_options(url: str) -> dict:
    """
    Options shared by offline and online runs.

    Money columns are Numeric(10, 2) and thresholds Numeric(3, 2), so type
    and server default changes must show up in autogenerate. SQLite (local
    development) needs batch mode to alter tables.
    """
    return {
        "target_metadata": target_metadata,
        "compare_type": True,
        "compare_server_default": True,
        "render_as_batch": make_url(url).get_backend_name() == "sqlite",
    }


def run_migrations_offline() -> None:
    """Emit SQL for the ledger schema without a database connection."""
    url = get_url()
    context.configure(
        url=url,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        **configure_options(url),
    )

    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection: Connection) -> None:
    context.configure(connection=connection, **configure_options(get_url()))

    with context.begin_transaction():
        context.run_migrations()


async def run_async_migrations() -> None:
    configuration = config.get_section(config.config_ini_section) or {}
    configuration["sqlalchemy.url"] = get_url()

    connectable = async_engine_from_config(
        configuration,
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    async with connectable.connect() as connection:
        await connection.run_sync(do_run_migrations)

    await connectable.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_async_migrations())
