"""
SQLAlchemy declarative base and shared enumerations.

Tables live in contact_models (canonical layer), deal_models (records that
reference canonical IDs) and migration_models (legacy rows and run ledger).
"""
import enum
import uuid
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def new_id() -> str:
    """Opaque stable identifier for every row in the contact system."""
    return str(uuid.uuid4())


class EntityType(str, enum.Enum):
    """Canonical entity kinds handled by matching and merging."""
    COMPANY = "COMPANY"
    PERSON = "PERSON"


class DataQuality(str, enum.Enum):
    """How much a canonical record has been checked - ONLY these values allowed."""
    PROVISIONAL = "PROVISIONAL"
    SUGGESTED = "SUGGESTED"
    VERIFIED = "VERIFIED"
    ENRICHED = "ENRICHED"


# Ranking used when a batch job has to pick a merge primary
DATA_QUALITY_RANK = {
    DataQuality.VERIFIED: 4,
    DataQuality.ENRICHED: 3,
    DataQuality.SUGGESTED: 2,
    DataQuality.PROVISIONAL: 1,
}


class CandidateStatus(str, enum.Enum):
    """Duplicate candidate lifecycle: PENDING -> RESOLVED (terminal)."""
    PENDING = "PENDING"
    RESOLVED = "RESOLVED"


class Resolution(str, enum.Enum):
    """Outcome recorded together with the RESOLVED transition."""
    MERGED = "MERGED"
    NOT_DUPLICATE = "NOT_DUPLICATE"
    SKIPPED = "SKIPPED"


class MigrationStatus(str, enum.Enum):
    """Migration run status."""
    COMPLETED = "COMPLETED"
    PARTIAL = "PARTIAL"
    ROLLED_BACK = "ROLLED_BACK"


class LedgerAction(str, enum.Enum):
    """What a migration run did with one record or relation."""
    CREATED = "CREATED"
    LINKED = "LINKED"
    ADOPTED = "ADOPTED"
