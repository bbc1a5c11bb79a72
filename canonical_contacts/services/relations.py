"""
Registry of every table that references a canonical record.

Merges walk this registry to re-point references; migration rollback uses
it to decide whether a migration-created record is still referenced.
Adding a consumer table means adding one RelationSpec here.
"""

from dataclasses import dataclass
from typing import Any, Iterable, List, Tuple

from sqlalchemy.orm import Session

from canonical_contacts.core.models import EntityType
from canonical_contacts.core.contact_models import (
    CanonicalCompany,
    CanonicalDomain,
    CanonicalPerson,
    CompanyGroupMember,
    PersonEmployment,
)
from canonical_contacts.core.deal_models import (
    DealActivity,
    DealBuyer,
    DealContact,
    EmailAttempt,
)


@dataclass(frozen=True)
class RelationSpec:
    """
    One foreign-key column pointing at a canonical record.

    unique_with lists the other columns of a uniqueness key that includes
    the FK. children are relations hanging off a row of this table; they are
    moved to the surviving row before a colliding row is dropped. owned rows
    belong to the record itself: they move on merge and are deleted with the
    record, but do not count as outside references.
    """

    name: str
    model: Any
    fk: str
    unique_with: Tuple[str, ...] = ()
    children: Tuple["RelationSpec", ...] = ()
    owned: bool = False

    @property
    def column(self):
        return getattr(self.model, self.fk)


DEAL_BUYER_CHILDREN = (
    RelationSpec("deal_buyer_contacts", DealContact, "deal_buyer_id", ("canonical_person_id",)),
    RelationSpec("deal_buyer_activities", DealActivity, "deal_buyer_id"),
    RelationSpec("deal_buyer_email_attempts", EmailAttempt, "deal_buyer_id"),
)

COMPANY_RELATIONS = (
    RelationSpec("domains", CanonicalDomain, "company_id", ("domain",), owned=True),
    RelationSpec("employees", CanonicalPerson, "current_company_id"),
    RelationSpec("employment_history", PersonEmployment, "company_id", ("person_id", "title")),
    RelationSpec("group_memberships", CompanyGroupMember, "company_id", ("group_id",)),
    RelationSpec("deal_buyers", DealBuyer, "canonical_company_id", ("deal_id",), DEAL_BUYER_CHILDREN),
    RelationSpec("absorbed_companies", CanonicalCompany, "merged_into_id"),
)

PERSON_RELATIONS = (
    RelationSpec("employment_history", PersonEmployment, "person_id", ("company_id", "title")),
    RelationSpec("deal_contacts", DealContact, "canonical_person_id", ("deal_buyer_id",)),
    RelationSpec("deal_activities", DealActivity, "person_id"),
    RelationSpec("email_attempts", EmailAttempt, "person_id"),
    RelationSpec("absorbed_people", CanonicalPerson, "merged_into_id"),
)

CANONICAL_MODELS = {
    EntityType.COMPANY: CanonicalCompany,
    EntityType.PERSON: CanonicalPerson,
}


def relations_for(entity_type: EntityType) -> Tuple[RelationSpec, ...]:
    return COMPANY_RELATIONS if EntityType(entity_type) == EntityType.COMPANY else PERSON_RELATIONS


def model_for(entity_type: EntityType):
    return CANONICAL_MODELS[EntityType(entity_type)]


def referencing_rows(session: Session, spec: RelationSpec, record_ids: Iterable[str]) -> List[Any]:
    """Rows of one relation whose FK is in record_ids, in a stable order."""
    ids = list(record_ids)
    if not ids:
        return []
    return (
        session.query(spec.model)
        .filter(spec.column.in_(ids))
        .order_by(spec.model.created_at, spec.model.id)
        .all()
    )


def find_references(
    session: Session,
    entity_type: EntityType,
    record_id: str,
    ignore: Iterable[Tuple[str, str]] = (),
) -> List[Tuple[str, str]]:
    """
    (relation name, row id) for every row referencing a record.

    ignore holds (relation name, row id) pairs that should not count,
    e.g. rows about to be removed by the caller.
    """
    skip = set(ignore)
    found = []
    for spec in relations_for(entity_type):
        if spec.owned:
            continue
        for row in referencing_rows(session, spec, [record_id]):
            if (spec.name, row.id) not in skip:
                found.append((spec.name, row.id))
    return found


def delete_owned_rows(session: Session, entity_type: EntityType, record_ids: Iterable[str]) -> int:
    """Delete rows that belong to the given records; returns the count."""
    removed = 0
    for spec in relations_for(entity_type):
        if not spec.owned:
            continue
        for row in referencing_rows(session, spec, record_ids):
            session.delete(row)
            removed += 1
    session.flush()
    return removed
