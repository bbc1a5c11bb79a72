"""
Duplicate Queue.

Persistent review queue of suspected duplicate pairs. A candidate moves
PENDING -> RESOLVED exactly once, with its resolution (MERGED,
NOT_DUPLICATE, SKIPPED) written in the same step. Resolving as MERGED runs
the Merge Executor inside the same transaction.

Also hosts the batch jobs that feed and drain the queue: pair detection over
the canonical store, auto-merge of very-high-confidence candidates and
cleanup of candidates whose records no longer exist.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence

from sqlalchemy import case, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from canonical_contacts.core.config import get_settings
from canonical_contacts.core.contact_models import DuplicateCandidate
from canonical_contacts.core.database import transaction
from canonical_contacts.core.errors import (
    AlreadyResolvedError,
    IdentityError,
    InternalError,
    NotFoundOrAlreadyMergedError,
    RecordNotFoundError,
    ValidationError,
)
from canonical_contacts.core.models import (
    DATA_QUALITY_RANK,
    CandidateStatus,
    EntityType,
    Resolution,
)
from canonical_contacts.matching.fuzzy_matcher import domain_fragment
from canonical_contacts.services.match_engine import MatchConfig, MatchEngine, MatchSignal
from canonical_contacts.services.merge_executor import MergeExecutor, MergeResult
from canonical_contacts.services.relations import model_for

logger = logging.getLogger(__name__)


def _coerce_entity_type(entity_type) -> EntityType:
    try:
        return EntityType(entity_type)
    except ValueError:
        raise ValidationError(f"Unknown entity type: {entity_type!r}")


def _signal_dicts(signals: Optional[Iterable[Any]]) -> List[Dict[str, Any]]:
    out = []
    for s in signals or []:
        if isinstance(s, MatchSignal):
            out.append(s.to_dict())
        elif isinstance(s, dict):
            out.append({
                "signal": str(s.get("signal", "")),
                "weight": float(s.get("weight", 0.0)),
                "detail": str(s.get("detail", "")),
            })
        else:
            raise ValidationError(f"Unsupported match signal: {s!r}")
    return out


@dataclass
class ResolveResult:
    candidate_id: str
    resolution: Resolution
    resolved_by: str
    merge: Optional[MergeResult] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "candidate_id": self.candidate_id,
            "resolution": self.resolution.value,
            "resolved_by": self.resolved_by,
            "merge": self.merge.to_dict() if self.merge else None,
        }


@dataclass
class AutoMergeResult:
    considered: int = 0
    merged: int = 0
    skipped: int = 0
    dry_run: bool = False
    merges: List[Dict[str, str]] = field(default_factory=list)
    failures: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "considered": self.considered,
            "merged": self.merged,
            "skipped": self.skipped,
            "dry_run": self.dry_run,
            "merges": self.merges,
            "failures": self.failures,
        }


class DuplicateQueue:
    """
    Review queue for suspected duplicates plus its batch jobs.
    """

    def __init__(self, session: Session, config: Optional[MatchConfig] = None):
        self.session = session
        self.engine = MatchEngine(session, config)

    # ------------------------------------------------------------------
    # Queue operations
    # ------------------------------------------------------------------

    def enqueue(
        self,
        entity_type: EntityType,
        record_id_a: str,
        record_id_b: str,
        signals: Optional[Sequence[Any]] = None,
        confidence: float = 0.0,
    ) -> str:
        """
        Add a suspected pair, or return the id of the PENDING candidate
        already covering it. The pair is unordered.

        Raises:
            ValidationError: self-pair, bad entity type or confidence
            RecordNotFoundError: either record is missing or tombstoned
        """
        entity_type = _coerce_entity_type(entity_type)
        if not record_id_a or not record_id_b:
            raise ValidationError("Both record ids are required")
        if record_id_a == record_id_b:
            raise ValidationError("A record cannot be a duplicate of itself", record_ids=[record_id_a])
        if not 0.0 <= float(confidence) <= 1.0:
            raise ValidationError(f"confidence must be within [0, 1], got {confidence}")

        id_a, id_b = sorted((record_id_a, record_id_b))
        match_signals = _signal_dicts(signals)

        with transaction(self.session):
            self._require_active(entity_type, [id_a, id_b])

            existing = self._pending_pair(entity_type, id_a, id_b)
            if existing:
                return existing.id

            candidate = DuplicateCandidate(
                entity_type=entity_type,
                record_a_id=id_a,
                record_b_id=id_b,
                confidence=round(float(confidence), 4),
                match_signals=match_signals,
                status=CandidateStatus.PENDING,
            )
            try:
                with self.session.begin_nested():
                    self.session.add(candidate)
                    self.session.flush()
            except IntegrityError:
                # Concurrent enqueue of the same pair won the unique index
                winner = self._pending_pair(entity_type, id_a, id_b)
                if winner is None:
                    raise InternalError("Duplicate candidate insert failed", record_ids=[id_a, id_b])
                return winner.id

            logger.debug(f"Queued {entity_type.value} pair {id_a}/{id_b} at {candidate.confidence}")
            return candidate.id

    def resolve(
        self,
        candidate_id: str,
        resolution: Resolution,
        resolver_id: str,
        primary_id: Optional[str] = None,
    ) -> ResolveResult:
        """
        Resolve a PENDING candidate.

        MERGED requires primary_id to be one of the pair; the other record is
        merged into it in the same transaction. NOT_DUPLICATE and SKIPPED
        only record the decision.

        Raises:
            ValidationError: unknown resolution, missing resolver, bad primary_id
            RecordNotFoundError: no such candidate
            AlreadyResolvedError: candidate is no longer PENDING
            NotFoundOrAlreadyMergedError: a record of the pair was merged elsewhere
        """
        try:
            resolution = Resolution(resolution)
        except ValueError:
            raise ValidationError(f"Unknown resolution: {resolution!r}")
        if not resolver_id:
            raise ValidationError("resolver_id is required")

        with transaction(self.session):
            candidate = (
                self.session.query(DuplicateCandidate)
                .filter(DuplicateCandidate.id == candidate_id)
                .with_for_update()
                .populate_existing()
                .first()
            )
            if candidate is None:
                raise RecordNotFoundError(f"Duplicate candidate {candidate_id} not found", record_ids=[candidate_id])
            if candidate.status != CandidateStatus.PENDING:
                raise AlreadyResolvedError(
                    f"Duplicate candidate {candidate_id} is already {candidate.resolution.value if candidate.resolution else candidate.status.value}",
                    record_ids=[candidate_id],
                )

            merge = None
            if resolution == Resolution.MERGED:
                if primary_id not in candidate.record_ids:
                    raise ValidationError(
                        "primary_id must be one of the candidate pair",
                        record_ids=[candidate_id],
                        details={"primary_id": primary_id, "pair": list(candidate.record_ids)},
                    )
                duplicate_id = candidate.record_b_id if primary_id == candidate.record_a_id else candidate.record_a_id
                merge = MergeExecutor(self.session).merge(
                    candidate.entity_type, primary_id, [duplicate_id], resolver_id
                )
                if candidate.status != CandidateStatus.RESOLVED:
                    raise InternalError("Merge did not resolve its candidate", record_ids=[candidate_id])
            else:
                candidate.status = CandidateStatus.RESOLVED
                candidate.resolution = resolution
                candidate.resolved_by = resolver_id
                candidate.resolved_at = datetime.utcnow()
                self.session.flush()

        logger.info(f"Duplicate candidate {candidate_id} resolved {resolution.value} by {resolver_id}")
        return ResolveResult(candidate_id, resolution, resolver_id, merge)

    def delete(self, candidate_id: str) -> None:
        """Remove a candidate outright (administrative, not a resolution)."""
        with transaction(self.session):
            candidate = self.session.get(DuplicateCandidate, candidate_id)
            if candidate is None:
                raise RecordNotFoundError(f"Duplicate candidate {candidate_id} not found", record_ids=[candidate_id])
            self.session.delete(candidate)
            self.session.flush()
        logger.info(f"Duplicate candidate {candidate_id} deleted")

    def get(self, candidate_id: str) -> DuplicateCandidate:
        candidate = self.session.get(DuplicateCandidate, candidate_id)
        if candidate is None:
            raise RecordNotFoundError(f"Duplicate candidate {candidate_id} not found", record_ids=[candidate_id])
        return candidate

    def list_candidates(
        self,
        status: Optional[CandidateStatus] = None,
        entity_type: Optional[EntityType] = None,
        min_confidence: Optional[float] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        """
        Candidates with both records summarised, PENDING first, then by
        confidence descending.
        """
        query = self.session.query(DuplicateCandidate)
        if status:
            query = query.filter(DuplicateCandidate.status == CandidateStatus(status))
        if entity_type:
            query = query.filter(DuplicateCandidate.entity_type == _coerce_entity_type(entity_type))
        if min_confidence is not None:
            query = query.filter(DuplicateCandidate.confidence >= min_confidence)

        pending_first = case((DuplicateCandidate.status == CandidateStatus.PENDING, 0), else_=1)
        candidates = (
            query.order_by(pending_first, DuplicateCandidate.confidence.desc(), DuplicateCandidate.id)
            .offset(offset)
            .limit(limit)
            .all()
        )

        results = []
        for c in candidates:
            model = model_for(c.entity_type)
            record_a = self.session.get(model, c.record_a_id)
            record_b = self.session.get(model, c.record_b_id)
            results.append({
                "id": c.id,
                "entity_type": c.entity_type.value,
                "record_a": self._summary(record_a),
                "record_b": self._summary(record_b),
                "confidence": c.confidence,
                "match_signals": c.match_signals,
                "status": c.status.value,
                "resolution": c.resolution.value if c.resolution else None,
                "resolved_by": c.resolved_by,
                "resolved_at": c.resolved_at.isoformat() if c.resolved_at else None,
                "created_at": c.created_at.isoformat() if c.created_at else None,
            })
        return results

    def get_stats(self) -> Dict[str, Any]:
        """Queue counts per entity type and status, plus pending age and confidence."""
        stats: Dict[str, Any] = {
            "pending": 0,
            "resolved": 0,
            "by_entity_type": {
                t.value: {"pending": 0, "resolved": 0} for t in EntityType
            },
            "by_resolution": {r.value: 0 for r in Resolution},
        }

        rows = (
            self.session.query(DuplicateCandidate.entity_type, DuplicateCandidate.status, func.count(DuplicateCandidate.id))
            .group_by(DuplicateCandidate.entity_type, DuplicateCandidate.status)
            .all()
        )
        for entity_type, status, count in rows:
            key = status.value.lower()
            stats[key] += count
            stats["by_entity_type"][entity_type.value][key] += count

        for resolution, count in (
            self.session.query(DuplicateCandidate.resolution, func.count(DuplicateCandidate.id))
            .filter(DuplicateCandidate.resolution.isnot(None))
            .group_by(DuplicateCandidate.resolution)
            .all()
        ):
            stats["by_resolution"][resolution.value] = count

        avg_confidence, oldest = (
            self.session.query(func.avg(DuplicateCandidate.confidence), func.min(DuplicateCandidate.created_at))
            .filter(DuplicateCandidate.status == CandidateStatus.PENDING)
            .one()
        )
        stats["avg_pending_confidence"] = round(float(avg_confidence), 4) if avg_confidence is not None else None
        stats["oldest_pending_at"] = oldest.isoformat() if oldest else None
        return stats

    # ------------------------------------------------------------------
    # Batch jobs
    # ------------------------------------------------------------------

    def cleanup_stale(self) -> int:
        """Delete PENDING candidates whose records are missing or tombstoned."""
        removed = 0
        with transaction(self.session):
            pending = (
                self.session.query(DuplicateCandidate)
                .filter(DuplicateCandidate.status == CandidateStatus.PENDING)
                .order_by(DuplicateCandidate.id)
                .all()
            )
            for candidate in pending:
                model = model_for(candidate.entity_type)
                records = [self.session.get(model, rid) for rid in candidate.record_ids]
                if any(r is None or not r.is_active for r in records):
                    self.session.delete(candidate)
                    removed += 1
            self.session.flush()

        logger.info(f"Removed {removed} stale duplicate candidates")
        return removed

    def detect_duplicates(
        self,
        min_confidence: Optional[float] = None,
        entity_types: Optional[Sequence[EntityType]] = None,
    ) -> Dict[str, Any]:
        """
        Scan active records for likely duplicates and queue them.

        Records are grouped by blocking keys (name prefix, domain fragment,
        email, LinkedIn URL, last name) and only compared inside a group.
        Pairs already PENDING or previously judged NOT_DUPLICATE are skipped.

        Returns:
            Dict with counts: compared, queued, already_pending, rejected_before
        """
        if min_confidence is None:
            min_confidence = get_settings().duplicate_detection_min_confidence
        types = [_coerce_entity_type(t) for t in (entity_types or list(EntityType))]

        stats = {"compared": 0, "queued": 0, "already_pending": 0, "rejected_before": 0}

        with transaction(self.session):
            for entity_type in types:
                model = model_for(entity_type)
                records = (
                    self.session.query(model)
                    .filter(model.merged_into_id.is_(None))
                    .order_by(model.id)
                    .all()
                )
                if len(records) < 2:
                    continue

                known = self._known_pairs(entity_type)
                score = self.engine.score_company_pair if entity_type == EntityType.COMPANY else self.engine.score_person_pair

                for a, b in self._blocked_pairs(entity_type, records):
                    pair = (a.id, b.id)
                    status = known.get(pair)
                    if status == "pending":
                        stats["already_pending"] += 1
                        continue
                    if status == "rejected":
                        stats["rejected_before"] += 1
                        continue

                    stats["compared"] += 1
                    result = score(a, b)
                    if result is None or result.confidence < min_confidence:
                        continue

                    self.enqueue(entity_type, a.id, b.id, result.signals, result.confidence)
                    known[pair] = "pending"
                    stats["queued"] += 1

        logger.info(
            f"Duplicate detection complete: {stats['queued']} queued, "
            f"{stats['compared']} compared, {stats['already_pending']} already pending"
        )
        return stats

    def run_auto_merge(
        self,
        actor_id: str,
        min_confidence: Optional[float] = None,
        max_merges: Optional[int] = None,
        dry_run: bool = False,
        entity_types: Optional[Sequence[EntityType]] = None,
    ) -> AutoMergeResult:
        """
        Merge PENDING candidates at or above min_confidence.

        The primary is the record with the best data quality, then the older
        one. Candidates whose records were merged in the meantime are
        resolved SKIPPED. Each merge is its own transaction; failures are
        collected and do not stop the run.
        """
        if not actor_id:
            raise ValidationError("actor_id is required for auto-merge")
        settings = get_settings()
        if min_confidence is None:
            min_confidence = settings.auto_merge_min_confidence
        if max_merges is None:
            max_merges = settings.auto_merge_max_per_run
        types = [_coerce_entity_type(t) for t in (entity_types or list(EntityType))]

        result = AutoMergeResult(dry_run=dry_run)
        candidate_ids = [
            row[0]
            for row in (
                self.session.query(DuplicateCandidate.id)
                .filter(
                    DuplicateCandidate.status == CandidateStatus.PENDING,
                    DuplicateCandidate.confidence >= min_confidence,
                    DuplicateCandidate.entity_type.in_(types),
                )
                .order_by(DuplicateCandidate.confidence.desc(), DuplicateCandidate.id)
                .all()
            )
        ]
        # Records a dry run has already planned to absorb
        planned_absorbed = set()

        for candidate_id in candidate_ids:
            if result.merged >= max_merges:
                break
            candidate = self.session.get(DuplicateCandidate, candidate_id)
            if candidate is None or candidate.status != CandidateStatus.PENDING:
                continue
            result.considered += 1

            model = model_for(candidate.entity_type)
            records = [self.session.get(model, rid) for rid in candidate.record_ids]
            stale = any(r is None or not r.is_active or r.id in planned_absorbed for r in records)
            if stale:
                result.skipped += 1
                if not dry_run:
                    self.resolve(candidate_id, Resolution.SKIPPED, actor_id)
                continue

            primary, duplicate = self._pick_primary(*records)
            plan = {"candidate_id": candidate_id, "primary_id": primary.id, "duplicate_id": duplicate.id}

            if dry_run:
                planned_absorbed.add(duplicate.id)
                result.merges.append(plan)
                result.merged += 1
                continue

            try:
                self.resolve(candidate_id, Resolution.MERGED, actor_id, primary_id=primary.id)
            except IdentityError as e:
                logger.warning(f"Auto-merge failed for candidate {candidate_id}: {e}")
                result.failures.append({**plan, "error": e.to_dict()})
                continue
            result.merges.append(plan)
            result.merged += 1

        logger.info(
            f"Auto-merge {'(dry run) ' if dry_run else ''}complete: {result.merged} merged, "
            f"{result.skipped} skipped, {len(result.failures)} failed"
        )
        return result

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _pending_pair(self, entity_type: EntityType, id_a: str, id_b: str) -> Optional[DuplicateCandidate]:
        return (
            self.session.query(DuplicateCandidate)
            .filter(
                DuplicateCandidate.entity_type == entity_type,
                DuplicateCandidate.record_a_id == id_a,
                DuplicateCandidate.record_b_id == id_b,
                DuplicateCandidate.status == CandidateStatus.PENDING,
            )
            .first()
        )

    def _require_active(self, entity_type: EntityType, record_ids: List[str]) -> None:
        model = model_for(entity_type)
        for record_id in record_ids:
            record = self.session.get(model, record_id)
            if record is None:
                raise RecordNotFoundError(
                    f"{entity_type.value.lower()} {record_id} not found", record_ids=[record_id]
                )
            if not record.is_active:
                raise NotFoundOrAlreadyMergedError(
                    f"{entity_type.value.lower()} {record_id} was merged into {record.merged_into_id}",
                    record_ids=[record_id],
                )

    def _known_pairs(self, entity_type: EntityType) -> Dict[tuple, str]:
        known = {}
        rows = (
            self.session.query(
                DuplicateCandidate.record_a_id,
                DuplicateCandidate.record_b_id,
                DuplicateCandidate.status,
                DuplicateCandidate.resolution,
            )
            .filter(DuplicateCandidate.entity_type == entity_type)
            .all()
        )
        for a, b, status, resolution in rows:
            if status == CandidateStatus.PENDING:
                known[(a, b)] = "pending"
            elif resolution == Resolution.NOT_DUPLICATE:
                known.setdefault((a, b), "rejected")
        return known

    def _blocked_pairs(self, entity_type: EntityType, records: List[Any]):
        """Unique (a, b) pairs with a.id < b.id that share at least one blocking key."""
        blocks: Dict[tuple, List[Any]] = {}
        for record in records:
            for key in self._blocking_keys(entity_type, record):
                blocks.setdefault(key, []).append(record)

        seen = set()
        for key in sorted(blocks):
            group = blocks[key]
            for i in range(len(group)):
                for j in range(i + 1, len(group)):
                    a, b = sorted((group[i], group[j]), key=lambda r: r.id)
                    if (a.id, b.id) in seen:
                        continue
                    seen.add((a.id, b.id))
                    yield a, b

    @staticmethod
    def _blocking_keys(entity_type: EntityType, record: Any) -> List[tuple]:
        keys = []
        if record.linkedin_url:
            keys.append(("linkedin", record.linkedin_url))
        if record.normalized_name:
            keys.append(("name", record.normalized_name[:3]))

        if entity_type == EntityType.COMPANY:
            fragment = domain_fragment(record.domain or record.website)
            if fragment:
                keys.append(("domain", fragment))
        else:
            if record.email:
                keys.append(("email", record.email))
            tokens = record.normalized_name.split() if record.normalized_name else []
            if len(tokens) > 1:
                keys.append(("last_name", tokens[-1]))
        return keys

    @staticmethod
    def _pick_primary(a: Any, b: Any) -> tuple:
        """Better data quality wins, then the older record, then the lower id."""
        def rank(r):
            return (-DATA_QUALITY_RANK.get(r.data_quality, 0), r.created_at or datetime.max, r.id)

        primary, duplicate = sorted((a, b), key=rank)
        return primary, duplicate

    @staticmethod
    def _summary(record: Any) -> Optional[Dict[str, Any]]:
        if record is None:
            return None
        summary = {
            "id": record.id,
            "data_quality": record.data_quality.value if record.data_quality else None,
            "merged_into_id": record.merged_into_id,
        }
        if hasattr(record, "full_name"):
            summary.update({
                "name": record.full_name,
                "email": record.email,
                "current_title": record.current_title,
                "current_company_id": record.current_company_id,
            })
        else:
            summary.update({
                "name": record.name,
                "domain": record.domain,
                "website": record.website,
            })
        return summary
