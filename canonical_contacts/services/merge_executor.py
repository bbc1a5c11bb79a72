"""
Merge Executor.

Folds one or more duplicate canonical records into a primary inside a single
transaction:

1. re-point every relation row (domains included) from each duplicate to the
   primary; rows that would collide with a uniqueness key already held by the
   primary are dropped in favour of the primary's row (after moving their own
   children)
2. fill primary gaps from the duplicates' scalar attributes; disagreements
   keep the primary's value and are recorded
3. tombstone the duplicates (merged_into_id, merged_at); rows are never deleted
4. resolve PENDING duplicate candidates whose both records took part; pairs
   between an absorbed record and an outside record move to the primary

Liveness of every referenced record is re-checked after taking row locks, so
two overlapping merges cannot both succeed.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Sequence, Tuple

from sqlalchemy.orm import Session

from canonical_contacts.core.contact_models import CanonicalDomain, DuplicateCandidate
from canonical_contacts.core.database import transaction
from canonical_contacts.core.errors import (
    InternalError,
    NotFoundOrAlreadyMergedError,
    RecordNotFoundError,
    ValidationError,
)
from canonical_contacts.core.models import CandidateStatus, EntityType, Resolution
from canonical_contacts.matching.person_matcher import normalize_person_name
from canonical_contacts.services.audit import log_merge
from canonical_contacts.services.relations import (
    RelationSpec,
    model_for,
    referencing_rows,
    relations_for,
)

logger = logging.getLogger(__name__)


@dataclass
class MergeResult:
    entity_type: EntityType
    primary_id: str
    tombstoned_ids: List[str]
    relations_repointed: Dict[str, int]
    relations_dropped: Dict[str, int]
    adopted_attributes: Dict[str, Any] = field(default_factory=dict)
    attribute_conflicts: List[Dict[str, Any]] = field(default_factory=list)
    resolved_candidate_ids: List[str] = field(default_factory=list)
    audit_log_id: str = ""
    primary: Any = None

    @property
    def total_repointed(self) -> int:
        return sum(self.relations_repointed.values())

    @property
    def total_dropped(self) -> int:
        return sum(self.relations_dropped.values())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity_type": self.entity_type.value,
            "primary_id": self.primary_id,
            "tombstoned_ids": self.tombstoned_ids,
            "relations_repointed": self.relations_repointed,
            "relations_dropped": self.relations_dropped,
            "adopted_attributes": self.adopted_attributes,
            "attribute_conflicts": self.attribute_conflicts,
            "resolved_candidate_ids": self.resolved_candidate_ids,
            "audit_log_id": self.audit_log_id,
            "primary": self.primary.snapshot() if self.primary is not None else None,
        }


def _present(value) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    return True


class MergeExecutor:
    """Relation-cascading merge of canonical companies or people."""

    def __init__(self, session: Session):
        self.session = session

    def merge_companies(self, primary_id: str, duplicate_ids: Sequence[str], actor_id: str) -> MergeResult:
        return self.merge(EntityType.COMPANY, primary_id, duplicate_ids, actor_id)

    def merge_people(self, primary_id: str, duplicate_ids: Sequence[str], actor_id: str) -> MergeResult:
        return self.merge(EntityType.PERSON, primary_id, duplicate_ids, actor_id)

    def merge(
        self,
        entity_type: EntityType,
        primary_id: str,
        duplicate_ids: Sequence[str],
        actor_id: str,
    ) -> MergeResult:
        """
        Merge duplicate_ids into primary_id.

        Raises:
            ValidationError: empty or repeated duplicate ids, missing actor
            NotFoundOrAlreadyMergedError: primary or a duplicate is missing,
                tombstoned, or a duplicate equals the primary (nothing written)
        """
        entity_type = EntityType(entity_type)
        duplicate_ids = list(duplicate_ids or [])

        if not actor_id:
            raise ValidationError("actor_id is required for a merge")
        if not duplicate_ids:
            raise ValidationError("duplicate_ids must not be empty", record_ids=[primary_id])
        repeated = sorted({d for d in duplicate_ids if duplicate_ids.count(d) > 1})
        if repeated:
            raise ValidationError("duplicate_ids contains repeated ids", record_ids=repeated)

        with transaction(self.session):
            primary, duplicates = self._lock_and_validate(entity_type, primary_id, duplicate_ids)

            previous_state = {
                "primary": primary.snapshot(),
                "duplicates": [d.snapshot() for d in duplicates],
            }

            repointed, dropped = self._cascade(entity_type, primary.id, duplicate_ids)
            adopted, conflicts = self._merge_attributes(entity_type, primary, duplicates)
            if entity_type == EntityType.COMPANY:
                self._sync_primary_domain(primary)

            now = datetime.utcnow()
            for duplicate in duplicates:
                duplicate.merged_into_id = primary.id
                duplicate.merged_at = now
            self.session.flush()

            resolved = self._resolve_candidates(entity_type, primary.id, duplicate_ids, actor_id, now)
            self._carry_candidates(entity_type, primary.id, duplicate_ids, repointed, dropped)

            entry = log_merge(
                self.session,
                entity_type=entity_type,
                primary_id=primary.id,
                absorbed_ids=duplicate_ids,
                actor_id=actor_id,
                relations_repointed=repointed,
                relations_dropped=dropped,
                adopted_attributes=adopted,
                attribute_conflicts=conflicts,
                resolved_candidate_ids=resolved,
                previous_state=previous_state,
            )

        logger.info(
            f"Merged {entity_type.value} {duplicate_ids} into {primary.id}: "
            f"{sum(repointed.values())} relations re-pointed, {sum(dropped.values())} dropped, "
            f"{len(conflicts)} attribute conflicts"
        )

        return MergeResult(
            entity_type=entity_type,
            primary_id=primary.id,
            tombstoned_ids=list(duplicate_ids),
            relations_repointed=repointed,
            relations_dropped=dropped,
            adopted_attributes=adopted,
            attribute_conflicts=conflicts,
            resolved_candidate_ids=resolved,
            audit_log_id=entry.id,
            primary=primary,
        )

    # ------------------------------------------------------------------
    # Step 0: lock and validate
    # ------------------------------------------------------------------

    def _lock_and_validate(self, entity_type: EntityType, primary_id: str, duplicate_ids: List[str]) -> Tuple[Any, List[Any]]:
        model = model_for(entity_type)
        ids = [primary_id] + duplicate_ids
        locked = {
            row.id: row
            for row in (
                self.session.query(model)
                .filter(model.id.in_(ids))
                .order_by(model.id)
                .with_for_update()
                .populate_existing()
                .all()
            )
        }

        primary = locked.get(primary_id)
        if primary is None or not primary.is_active:
            raise NotFoundOrAlreadyMergedError(
                f"Primary {entity_type.value.lower()} {primary_id} does not exist or was already merged",
                record_ids=[primary_id],
            )

        duplicates = []
        for duplicate_id in duplicate_ids:
            if duplicate_id == primary_id:
                raise NotFoundOrAlreadyMergedError(
                    f"{duplicate_id} cannot be merged into itself",
                    record_ids=[duplicate_id],
                )
            duplicate = locked.get(duplicate_id)
            if duplicate is None or not duplicate.is_active:
                raise NotFoundOrAlreadyMergedError(
                    f"Duplicate {entity_type.value.lower()} {duplicate_id} does not exist or was already merged",
                    record_ids=[duplicate_id],
                )
            duplicates.append(duplicate)

        return primary, duplicates

    # ------------------------------------------------------------------
    # Step 1: relation cascade
    # ------------------------------------------------------------------

    def _cascade(self, entity_type: EntityType, primary_id: str, duplicate_ids: List[str]) -> Tuple[Dict[str, int], Dict[str, int]]:
        repointed: Dict[str, int] = {spec.name: 0 for spec in relations_for(entity_type)}
        dropped: Dict[str, int] = {spec.name: 0 for spec in relations_for(entity_type)}

        for duplicate_id in duplicate_ids:
            for spec in relations_for(entity_type):
                self._repoint(spec, duplicate_id, primary_id, repointed, dropped)

        return repointed, dropped

    def _repoint(
        self,
        spec: RelationSpec,
        from_id: str,
        to_id: str,
        repointed: Dict[str, int],
        dropped: Dict[str, int],
    ) -> None:
        for row in referencing_rows(self.session, spec, [from_id]):
            survivor = self._colliding_row(spec, row, to_id)
            if survivor is None:
                setattr(row, spec.fk, to_id)
                repointed[spec.name] = repointed.get(spec.name, 0) + 1
            else:
                for child in spec.children:
                    self._repoint(child, row.id, survivor.id, repointed, dropped)
                self.session.delete(row)
                dropped[spec.name] = dropped.get(spec.name, 0) + 1
                logger.debug(f"Dropped {spec.name} row {row.id}: collides with {survivor.id}")
            self.session.flush()

    def _colliding_row(self, spec: RelationSpec, row: Any, to_id: str):
        if not spec.unique_with:
            return None
        query = self.session.query(spec.model).filter(spec.column == to_id, spec.model.id != row.id)
        for column in spec.unique_with:
            query = query.filter(getattr(spec.model, column) == getattr(row, column))
        return query.order_by(spec.model.created_at, spec.model.id).first()

    # ------------------------------------------------------------------
    # Step 2: scalar attributes
    # ------------------------------------------------------------------

    def _merge_attributes(self, entity_type: EntityType, primary: Any, duplicates: List[Any]) -> Tuple[Dict[str, Any], List[Dict[str, Any]]]:
        adopted: Dict[str, Any] = {}
        conflicts: List[Dict[str, Any]] = []

        for attribute in primary.MERGEABLE_ATTRIBUTES:
            offered = []
            for duplicate in duplicates:
                value = getattr(duplicate, attribute)
                if _present(value) and value not in offered:
                    offered.append(value)
            if not offered:
                continue

            current = getattr(primary, attribute)
            if not _present(current) and len(offered) == 1:
                setattr(primary, attribute, offered[0])
                adopted[attribute] = offered[0]
            elif not _present(current) or any(value != current for value in offered):
                conflicts.append({
                    "attribute": attribute,
                    "kept": current,
                    "offered": offered,
                })

        if entity_type == EntityType.PERSON and ({"first_name", "last_name"} & adopted.keys()):
            primary.normalized_name = normalize_person_name(primary.first_name, primary.last_name)

        return adopted, conflicts

    def _sync_primary_domain(self, company: Any) -> None:
        rows = self.session.query(CanonicalDomain).filter(CanonicalDomain.company_id == company.id).all()
        for row in rows:
            row.is_primary = row.domain == company.domain
        self.session.flush()

    # ------------------------------------------------------------------
    # Step 4: duplicate candidates
    # ------------------------------------------------------------------

    def _resolve_candidates(self, entity_type: EntityType, primary_id: str, duplicate_ids: List[str], actor_id: str, now: datetime) -> List[str]:
        ids = [primary_id] + duplicate_ids
        candidates = (
            self.session.query(DuplicateCandidate)
            .filter(
                DuplicateCandidate.entity_type == entity_type,
                DuplicateCandidate.status == CandidateStatus.PENDING,
                DuplicateCandidate.record_a_id.in_(ids),
                DuplicateCandidate.record_b_id.in_(ids),
            )
            .order_by(DuplicateCandidate.id)
            .all()
        )
        for candidate in candidates:
            candidate.status = CandidateStatus.RESOLVED
            candidate.resolution = Resolution.MERGED
            candidate.resolved_by = actor_id
            candidate.resolved_at = now
        self.session.flush()
        return [c.id for c in candidates]

    def _carry_candidates(
        self,
        entity_type: EntityType,
        primary_id: str,
        duplicate_ids: List[str],
        repointed: Dict[str, int],
        dropped: Dict[str, int],
    ) -> None:
        """
        Move PENDING pairs (absorbed, outsider) to (primary, outsider). A pair
        the primary already holds is deleted instead.
        """
        repointed.setdefault("duplicate_candidates", 0)
        dropped.setdefault("duplicate_candidates", 0)

        pending = self.session.query(DuplicateCandidate).filter(
            DuplicateCandidate.entity_type == entity_type,
            DuplicateCandidate.status == CandidateStatus.PENDING,
        )
        held = {
            c.record_ids
            for c in pending.filter(
                (DuplicateCandidate.record_a_id == primary_id) | (DuplicateCandidate.record_b_id == primary_id)
            )
        }
        crossing = (
            pending.filter(
                DuplicateCandidate.record_a_id.in_(duplicate_ids) | DuplicateCandidate.record_b_id.in_(duplicate_ids)
            )
            .order_by(DuplicateCandidate.id)
            .all()
        )

        absorbed = set(duplicate_ids)
        for candidate in crossing:
            outsider = next(rid for rid in candidate.record_ids if rid not in absorbed)
            pair = tuple(sorted((primary_id, outsider)))
            if pair in held:
                self.session.delete(candidate)
                dropped["duplicate_candidates"] += 1
            else:
                candidate.record_a_id, candidate.record_b_id = pair
                held.add(pair)
                repointed["duplicate_candidates"] += 1
            self.session.flush()


def resolve_canonical_id(session: Session, entity_type: EntityType, record_id: str) -> str:
    """
    Follow the merged-into chain from record_id to the surviving record.

    Raises:
        RecordNotFoundError: a record on the chain does not exist
        InternalError: the chain loops
    """
    model = model_for(entity_type)
    seen = []
    current = record_id
    while True:
        if current in seen:
            raise InternalError("Merge chain contains a cycle", record_ids=seen)
        seen.append(current)
        record = session.get(model, current)
        if record is None:
            raise RecordNotFoundError(f"{EntityType(entity_type).value.lower()} {current} not found", record_ids=[current])
        if record.merged_into_id is None:
            return record.id
        current = record.merged_into_id
