"""
Construction of canonical records with normalized keys.

Every write path (contact import, migration, tests) goes through these
builders so that stored strong keys are comparable with normalized probes.
"""

import logging
from typing import Optional

from sqlalchemy.orm import Session

from canonical_contacts.core.contact_models import CanonicalCompany, CanonicalDomain, CanonicalPerson
from canonical_contacts.core.errors import ValidationError
from canonical_contacts.core.models import DataQuality
from canonical_contacts.matching.fuzzy_matcher import (
    normalize_company_name,
    normalize_domain,
    normalize_email,
    normalize_linkedin_url,
    normalize_phone,
)
from canonical_contacts.matching.person_matcher import normalize_person_name

logger = logging.getLogger(__name__)


def new_company(
    session: Session,
    name: str,
    domain: Optional[str] = None,
    website: Optional[str] = None,
    linkedin_url: Optional[str] = None,
    data_quality: DataQuality = DataQuality.PROVISIONAL,
    **fields,
) -> CanonicalCompany:
    """
    Add a company to the session (flushed, not committed).

    The domain is also registered in canonical_domains unless another
    company already owns it; such a pair is left for duplicate review.
    """
    name = (name or "").strip()
    if not name:
        raise ValidationError("Company name is required")

    company = CanonicalCompany(
        name=name,
        normalized_name=normalize_company_name(name),
        domain=normalize_domain(domain) or normalize_domain(website),
        website=website.strip() if website else None,
        linkedin_url=normalize_linkedin_url(linkedin_url),
        data_quality=data_quality,
        **fields,
    )
    session.add(company)
    session.flush()
    if company.domain and not _domain_owned(session, company.domain):
        session.add(CanonicalDomain(domain=company.domain, company_id=company.id, is_primary=True))
        session.flush()
    return company


def new_person(
    session: Session,
    first_name: Optional[str] = None,
    last_name: Optional[str] = None,
    email: Optional[str] = None,
    phone: Optional[str] = None,
    linkedin_url: Optional[str] = None,
    current_title: Optional[str] = None,
    current_company_id: Optional[str] = None,
    data_quality: DataQuality = DataQuality.PROVISIONAL,
) -> CanonicalPerson:
    """Add a person to the session (flushed, not committed)."""
    first_name = first_name.strip() if first_name else None
    last_name = last_name.strip() if last_name else None
    if not (first_name or last_name or normalize_email(email)):
        raise ValidationError("Person needs a name or a valid email")

    person = CanonicalPerson(
        first_name=first_name,
        last_name=last_name,
        normalized_name=normalize_person_name(first_name, last_name),
        email=normalize_email(email),
        phone=normalize_phone(phone),
        linkedin_url=normalize_linkedin_url(linkedin_url),
        current_title=current_title.strip() if current_title else None,
        current_company_id=current_company_id,
        data_quality=data_quality,
    )
    session.add(person)
    session.flush()
    return person


def _domain_owned(session: Session, domain: str) -> bool:
    return session.query(CanonicalDomain.id).filter(CanonicalDomain.domain == domain).first() is not None
