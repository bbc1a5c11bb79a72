"""
Canonical Contact Layer - Database Models.

Identity records owned by the identity-resolution subsystem. Every other
table holds these by ID only, which is why merge cascades live here.

Canonical Tables (3):
- canonical_companies: one row per real-world organization
- canonical_domains: every domain a company is known by (moves on merge)
- canonical_people: one row per real-world individual

Relation Tables (3):
- person_employment: employment history (person <-> company)
- company_groups / company_group_members: PE families, conglomerates

Resolution Tables (2):
- duplicate_candidates: pair-level "might be the same entity" judgments
- merge_audit_log: one row per executed merge
"""
from datetime import datetime

from sqlalchemy import (
    Column, Integer, String, Text, DateTime, Boolean, Float, JSON,
    Enum, ForeignKey, Index, UniqueConstraint, CheckConstraint, text,
)

from canonical_contacts.core.models import (
    Base, new_id, EntityType, DataQuality, CandidateStatus, Resolution,
)


def _iso(value):
    if isinstance(value, datetime):
        return value.isoformat()
    return value


class SnapshotMixin:
    """Column snapshot used for merge audit and rollback bookkeeping."""

    def snapshot(self) -> dict:
        return {c.name: _iso(getattr(self, c.key, None)) for c in self.__table__.columns}

    @property
    def is_active(self) -> bool:
        return self.merged_into_id is None


# =============================================================================
# CANONICAL TABLES
# =============================================================================

class CanonicalCompany(SnapshotMixin, Base):
    """
    Identity record for an organization.

    normalized_name is the cheap dedup key; domain and linkedin_url are
    strong keys. merged_into_id is null while active and points at the
    surviving company once tombstoned.
    """
    __tablename__ = "canonical_companies"

    # Optional scalars a merge may fill on the primary
    MERGEABLE_ATTRIBUTES = (
        "legal_name", "domain", "website", "linkedin_url", "company_type",
        "industry", "employee_count", "headquarters", "description",
    )

    id = Column(String(36), primary_key=True, default=new_id)

    # Identity
    name = Column(String(500), nullable=False)
    normalized_name = Column(String(500), nullable=False, index=True)
    legal_name = Column(String(500))

    # Strong keys / web presence
    domain = Column(String(255), index=True)
    website = Column(String(500))
    linkedin_url = Column(String(500), index=True)

    # Classification
    company_type = Column(String(50))  # STRATEGIC, FINANCIAL, INDIVIDUAL, ...
    industry = Column(String(255))
    employee_count = Column(Integer)
    headquarters = Column(String(255))
    description = Column(Text)

    data_quality = Column(
        Enum(DataQuality, native_enum=False, length=20),
        nullable=False,
        default=DataQuality.PROVISIONAL,
    )

    # Tombstone
    merged_into_id = Column(String(36), ForeignKey("canonical_companies.id"), index=True)
    merged_at = Column(DateTime)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        CheckConstraint("name <> ''", name="ck_canonical_companies_name_not_empty"),
        CheckConstraint(
            "merged_into_id IS NULL OR merged_into_id <> id",
            name="ck_canonical_companies_not_self_merged",
        ),
    )

    def __repr__(self):
        return f"<CanonicalCompany {self.id} {self.name!r}>"


class CanonicalDomain(Base):
    """
    A web domain owned by one company.

    A domain belongs to at most one company. The company's own domain column
    mirrors its primary row; absorbed companies' domains move here on merge
    with is_primary cleared, so they keep resolving to the survivor.
    """
    __tablename__ = "canonical_domains"

    id = Column(String(36), primary_key=True, default=new_id)
    domain = Column(String(255), nullable=False, unique=True)
    is_primary = Column(Boolean, nullable=False, default=True)
    company_id = Column(String(36), ForeignKey("canonical_companies.id"), nullable=False, index=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    def __repr__(self):
        return f"<CanonicalDomain {self.domain} -> {self.company_id}>"


class CanonicalPerson(SnapshotMixin, Base):
    """
    Identity record for an individual.

    current_company_id is a weak employer reference (relation, not
    ownership). Email is stored trimmed and lower-cased; it is indexed but
    not unique so that two unmerged duplicates can coexist until reviewed.
    """
    __tablename__ = "canonical_people"

    MERGEABLE_ATTRIBUTES = (
        "first_name", "last_name", "email", "phone", "linkedin_url",
        "current_title", "current_company_id",
    )

    id = Column(String(36), primary_key=True, default=new_id)

    first_name = Column(String(200))
    last_name = Column(String(200))
    normalized_name = Column(String(500), nullable=False, default="", index=True)

    email = Column(String(320), index=True)
    phone = Column(String(50))
    linkedin_url = Column(String(500), index=True)
    current_title = Column(String(300))
    current_company_id = Column(String(36), ForeignKey("canonical_companies.id"), index=True)

    data_quality = Column(
        Enum(DataQuality, native_enum=False, length=20),
        nullable=False,
        default=DataQuality.PROVISIONAL,
    )

    merged_into_id = Column(String(36), ForeignKey("canonical_people.id"), index=True)
    merged_at = Column(DateTime)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        CheckConstraint(
            "merged_into_id IS NULL OR merged_into_id <> id",
            name="ck_canonical_people_not_self_merged",
        ),
    )

    @property
    def full_name(self) -> str:
        return " ".join(p for p in (self.first_name, self.last_name) if p)

    def __repr__(self):
        return f"<CanonicalPerson {self.id} {self.full_name!r}>"


# =============================================================================
# RELATION TABLES
# =============================================================================

class PersonEmployment(Base):
    """Employment history rows (person <-> company)."""
    __tablename__ = "person_employment"

    id = Column(String(36), primary_key=True, default=new_id)
    person_id = Column(String(36), ForeignKey("canonical_people.id"), nullable=False, index=True)
    company_id = Column(String(36), ForeignKey("canonical_companies.id"), nullable=False, index=True)
    title = Column(String(300), nullable=False, default="")
    is_current = Column(Boolean, nullable=False, default=True)
    start_date = Column(DateTime)
    end_date = Column(DateTime)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("person_id", "company_id", "title", name="uq_person_employment_role"),
    )

    def __repr__(self):
        return f"<PersonEmployment {self.person_id} @ {self.company_id} ({self.title})>"


class CompanyGroup(Base):
    """PE family, conglomerate or alliance grouping several companies."""
    __tablename__ = "company_groups"

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(500), nullable=False)
    group_type = Column(String(50), nullable=False, default="OTHER")
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)


class CompanyGroupMember(Base):
    """Company membership in a group."""
    __tablename__ = "company_group_members"

    id = Column(String(36), primary_key=True, default=new_id)
    group_id = Column(String(36), ForeignKey("company_groups.id"), nullable=False, index=True)
    company_id = Column(String(36), ForeignKey("canonical_companies.id"), nullable=False, index=True)
    relationship = Column(String(50), nullable=False, default="MEMBER")
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("group_id", "company_id", name="uq_company_group_member"),
    )


# =============================================================================
# RESOLUTION TABLES
# =============================================================================

class DuplicateCandidate(Base):
    """
    One unresolved "these two records might be the same entity" judgment.

    Pairs are stored with record_a_id < record_b_id so an unordered pair has
    exactly one spelling. The order carries no primary/duplicate meaning.
    At most one PENDING row may exist per (entity_type, pair).
    """
    __tablename__ = "duplicate_candidates"

    id = Column(String(36), primary_key=True, default=new_id)

    entity_type = Column(Enum(EntityType, native_enum=False, length=20), nullable=False)
    record_a_id = Column(String(36), nullable=False, index=True)
    record_b_id = Column(String(36), nullable=False, index=True)

    # Match details
    confidence = Column(Float, nullable=False, default=0.0)
    match_signals = Column(JSON, nullable=False, default=list)  # [{signal, weight, detail}]

    # Review workflow
    status = Column(
        Enum(CandidateStatus, native_enum=False, length=20),
        nullable=False,
        default=CandidateStatus.PENDING,
        index=True,
    )
    resolution = Column(Enum(Resolution, native_enum=False, length=20))
    resolved_by = Column(String(100))
    resolved_at = Column(DateTime)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        CheckConstraint("record_a_id < record_b_id", name="ck_duplicate_candidate_order"),
        Index(
            "uq_duplicate_candidates_pending_pair",
            "entity_type", "record_a_id", "record_b_id",
            unique=True,
            postgresql_where=text("status = 'PENDING'"),
            sqlite_where=text("status = 'PENDING'"),
        ),
        Index("ix_duplicate_candidates_status_confidence", "status", "confidence"),
    )

    @property
    def record_ids(self) -> tuple:
        return (self.record_a_id, self.record_b_id)

    def __repr__(self):
        return (
            f"<DuplicateCandidate {self.entity_type} {self.record_a_id} <-> "
            f"{self.record_b_id} ({self.status})>"
        )


class MergeAuditLog(Base):
    """
    Audit trail for every executed merge.

    previous_state holds column snapshots of the primary and every absorbed
    record taken before the merge touched them.
    """
    __tablename__ = "merge_audit_log"

    id = Column(String(36), primary_key=True, default=new_id)
    entity_type = Column(Enum(EntityType, native_enum=False, length=20), nullable=False)
    primary_id = Column(String(36), nullable=False, index=True)
    absorbed_ids = Column(JSON, nullable=False)

    actor_id = Column(String(100), nullable=False)
    performed_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)

    relations_repointed = Column(JSON, nullable=False, default=dict)
    relations_dropped = Column(JSON, nullable=False, default=dict)
    adopted_attributes = Column(JSON, nullable=False, default=dict)
    attribute_conflicts = Column(JSON, nullable=False, default=list)
    resolved_candidate_ids = Column(JSON, nullable=False, default=list)
    previous_state = Column(JSON)

    def __repr__(self):
        return f"<MergeAuditLog {self.entity_type} {self.primary_id} <- {self.absorbed_ids}>"
