"""
Alembic environment configuration for the contact system.

Imports the model modules so their tables are registered with Base.metadata,
then uses DATABASE_URL from the package settings (single source of truth).
"""

from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config, pool

from canonical_contacts.core.config import get_settings
from canonical_contacts.core.models import Base

# Import all model modules so their tables are registered with Base.metadata
import canonical_contacts.core.contact_models  # noqa: F401 - canonical layer, candidates, merge audit
import canonical_contacts.core.deal_models  # noqa: F401 - deal buyers, contacts, activities
import canonical_contacts.core.migration_models  # noqa: F401 - legacy rows, runs, ledger

# Alembic Config object (provides access to alembic.ini values)
config = context.config

# Set up Python logging from alembic.ini
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

# Target metadata for autogenerate
target_metadata = Base.metadata

_model_table_names = set(target_metadata.tables.keys())


def include_name(name, type_, parent_names):
    """Filter for autogenerate: only track tables defined in our models."""
    if type_ == "table":
        return name in _model_table_names
    return True


def get_url() -> str:
    """Read DATABASE_URL from package settings (same source as the CLI)."""
    return get_settings().database_url


def run_migrations_offline() -> None:
    """Run migrations in 'offline' mode: generates SQL without a live DB connection."""
    context.configure(
        url=get_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        include_name=include_name,
        render_as_batch=get_url().startswith("sqlite"),
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Run migrations in 'online' mode: connects to the database and applies changes."""
    configuration = config.get_section(config.config_ini_section, {})
    configuration["sqlalchemy.url"] = get_url()

    connectable = engine_from_config(
        configuration,
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            include_name=include_name,
            render_as_batch=connection.dialect.name == "sqlite",
        )

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
