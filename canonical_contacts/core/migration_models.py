"""
Legacy buyer rows and the migration run ledger.

legacy_buyers is the old flat model: one row per prospective buyer with the
company and its primary contact stored inline. Migration runs turn those rows
into canonical records plus deal relations and write one ledger entry per
record they create, link or adopt. Rollback reads only the ledger.
"""
from datetime import datetime

from sqlalchemy import (
    Column, Integer, String, Text, DateTime, JSON, Enum, ForeignKey, Index,
)

from canonical_contacts.core.models import Base, new_id, MigrationStatus, LedgerAction


class LegacyBuyer(Base):
    """Flat legacy buyer row scoped to a deal."""
    __tablename__ = "legacy_buyers"

    id = Column(String(36), primary_key=True, default=new_id)
    deal_id = Column(String(36), ForeignKey("deals.id"), nullable=False, index=True)
    source_row = Column(Integer)  # position in the import file

    # Inline company
    company_name = Column(String(500))
    website = Column(String(500))
    industry = Column(String(255))
    headquarters = Column(String(255))
    employee_count = Column(String(50))  # free text in the legacy model
    buyer_type = Column(String(50))
    tier = Column(String(20))
    rationale = Column(Text)

    # Inline primary contact
    contact_name = Column(String(300))
    contact_email = Column(String(320))
    contact_phone = Column(String(50))
    contact_title = Column(String(300))
    contact_linkedin_url = Column(String(500))

    # Migration markers
    migrated_run_id = Column(String(36), ForeignKey("migration_runs.id"), index=True)
    migrated_at = Column(DateTime)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    @property
    def is_migrated(self) -> bool:
        return self.migrated_run_id is not None

    def __repr__(self):
        return f"<LegacyBuyer {self.id} {self.company_name!r}>"


class MigrationRun(Base):
    """One executed (non dry-run) migration of a deal scope."""
    __tablename__ = "migration_runs"

    id = Column(String(36), primary_key=True, default=new_id)
    scope_id = Column(String(36), ForeignKey("deals.id"), nullable=False, index=True)
    actor_id = Column(String(100), nullable=False)
    options = Column(JSON, nullable=False, default=dict)

    status = Column(
        Enum(MigrationStatus, native_enum=False, length=20),
        nullable=False,
        default=MigrationStatus.COMPLETED,
    )
    summary = Column(JSON, nullable=False, default=dict)
    errors = Column(JSON, nullable=False, default=list)

    started_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    completed_at = Column(DateTime)
    rolled_back_at = Column(DateTime)
    rolled_back_by = Column(String(100))

    def __repr__(self):
        return f"<MigrationRun {self.id} scope={self.scope_id} ({self.status})>"


class MigrationLedgerEntry(Base):
    """
    One record or relation touched by a migration run.

    record_type: company | person | deal_buyer | deal_contact
    action: CREATED (run inserted it), LINKED (match engine pointed at an
    existing record), ADOPTED (an earlier row of the same run created it)
    """
    __tablename__ = "migration_ledger"

    id = Column(Integer, primary_key=True, autoincrement=True)
    run_id = Column(String(36), ForeignKey("migration_runs.id"), nullable=False, index=True)
    legacy_row_id = Column(String(36), nullable=False)
    record_type = Column(String(20), nullable=False)
    record_id = Column(String(36), nullable=False)
    action = Column(Enum(LedgerAction, native_enum=False, length=20), nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_migration_ledger_record", "record_type", "record_id"),
    )
