"""contact system baseline

Revision ID: a1c4e2f0b7d3
Revises:
Create Date: 2026-10-19 09:12:44.381207

Creates every contact-system table from the model metadata. Databases
created earlier with create_tables() should be stamped instead:

    alembic stamp head
"""
from typing import Sequence, Union

from alembic import op

from canonical_contacts.core.models import Base
import canonical_contacts.core.contact_models  # noqa: F401
import canonical_contacts.core.deal_models  # noqa: F401
import canonical_contacts.core.migration_models  # noqa: F401

# revision identifiers, used by Alembic.
revision: str = 'a1c4e2f0b7d3'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    Base.metadata.create_all(bind=op.get_bind(), checkfirst=True)


def downgrade() -> None:
    Base.metadata.drop_all(bind=op.get_bind())
