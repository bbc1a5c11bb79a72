"""
Deal layer models.

These tables consume canonical records by ID. They are not owned by the
identity layer, but merges re-point them and migrations populate them.
"""
from datetime import datetime

from sqlalchemy import (
    Column, String, Text, DateTime, Boolean, JSON,
    ForeignKey, UniqueConstraint,
)

from canonical_contacts.core.models import Base, new_id


class Deal(Base):
    """A sell-side process; the unit of scope for legacy migration."""
    __tablename__ = "deals"

    id = Column(String(36), primary_key=True, default=new_id)
    code_name = Column(String(200), nullable=False)
    description = Column(Text)
    status = Column(String(20), nullable=False, default="ACTIVE")
    created_by = Column(String(100))
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self):
        return f"<Deal {self.id} {self.code_name!r}>"


class DealBuyer(Base):
    """A canonical company participating as a prospective buyer in a deal."""
    __tablename__ = "deal_buyers"

    id = Column(String(36), primary_key=True, default=new_id)
    deal_id = Column(String(36), ForeignKey("deals.id"), nullable=False, index=True)
    canonical_company_id = Column(
        String(36), ForeignKey("canonical_companies.id"), nullable=False, index=True
    )
    tier = Column(String(20), nullable=False, default="B_TIER")
    buyer_rationale = Column(Text)
    current_stage = Column(String(30), nullable=False, default="IDENTIFIED")
    internal_notes = Column(Text)
    created_by = Column(String(100))
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("deal_id", "canonical_company_id", name="uq_deal_buyer_company"),
    )

    def __repr__(self):
        return f"<DealBuyer {self.id} deal={self.deal_id} company={self.canonical_company_id}>"


class DealContact(Base):
    """A canonical person acting for a deal buyer."""
    __tablename__ = "deal_contacts"

    id = Column(String(36), primary_key=True, default=new_id)
    deal_buyer_id = Column(String(36), ForeignKey("deal_buyers.id"), nullable=False, index=True)
    canonical_person_id = Column(
        String(36), ForeignKey("canonical_people.id"), nullable=False, index=True
    )
    role = Column(String(30), nullable=False, default="DEAL_LEAD")
    is_primary = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("deal_buyer_id", "canonical_person_id", name="uq_deal_contact_person"),
    )


class DealActivity(Base):
    """Conversation history entry (call, email, meeting note)."""
    __tablename__ = "deal_activities"

    id = Column(String(36), primary_key=True, default=new_id)
    deal_id = Column(String(36), ForeignKey("deals.id"), nullable=False, index=True)
    deal_buyer_id = Column(String(36), ForeignKey("deal_buyers.id"), index=True)
    person_id = Column(String(36), ForeignKey("canonical_people.id"), index=True)
    activity_type = Column(String(30), nullable=False, default="NOTE")
    subject = Column(String(500), nullable=False)
    description = Column(Text)
    extra = Column(JSON)
    performed_by = Column(String(100))
    performed_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)


class EmailAttempt(Base):
    """Outbound email addressed to a canonical person for a deal buyer."""
    __tablename__ = "email_attempts"

    id = Column(String(36), primary_key=True, default=new_id)
    deal_buyer_id = Column(String(36), ForeignKey("deal_buyers.id"), nullable=False, index=True)
    person_id = Column(String(36), ForeignKey("canonical_people.id"), nullable=False, index=True)
    to_email = Column(String(320), nullable=False)
    subject = Column(String(500), nullable=False)
    status = Column(String(20), nullable=False, default="DRAFT")
    sent_at = Column(DateTime)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
