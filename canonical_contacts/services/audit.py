"""
Merge audit trail.

Every executed merge writes one row; rollback of a migration reads the
trail to find out whether a record it created was absorbed since.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from canonical_contacts.core.contact_models import MergeAuditLog
from canonical_contacts.core.models import EntityType

logger = logging.getLogger(__name__)


def log_merge(
    db: Session,
    entity_type: EntityType,
    primary_id: str,
    absorbed_ids: List[str],
    actor_id: str,
    relations_repointed: Dict[str, int],
    relations_dropped: Dict[str, int],
    adopted_attributes: Dict[str, Any],
    attribute_conflicts: List[Dict[str, Any]],
    resolved_candidate_ids: List[str],
    previous_state: Optional[Dict[str, Any]] = None,
) -> MergeAuditLog:
    """
    Add an audit entry for a merge to the current transaction.

    The caller owns the transaction; the entry commits or rolls back
    together with the merge itself.
    """
    entry = MergeAuditLog(
        entity_type=entity_type,
        primary_id=primary_id,
        absorbed_ids=list(absorbed_ids),
        actor_id=actor_id,
        performed_at=datetime.utcnow(),
        relations_repointed=relations_repointed,
        relations_dropped=relations_dropped,
        adopted_attributes=adopted_attributes,
        attribute_conflicts=attribute_conflicts,
        resolved_candidate_ids=list(resolved_candidate_ids),
        previous_state=previous_state,
    )
    db.add(entry)
    db.flush()

    logger.debug(f"Audit: {entity_type.value} merge {absorbed_ids} -> {primary_id} by {actor_id}")
    return entry


def get_merge_history(
    db: Session,
    record_id: Optional[str] = None,
    entity_type: Optional[EntityType] = None,
    since: Optional[datetime] = None,
    limit: int = 50,
) -> List[Dict[str, Any]]:
    """
    Merge audit entries, newest first.

    Args:
        db: Database session
        record_id: Only merges where this id was the primary or was absorbed
        entity_type: Filter by entity type
        since: Only entries at or after this timestamp
        limit: Maximum results
    """
    query = db.query(MergeAuditLog)
    if entity_type:
        query = query.filter(MergeAuditLog.entity_type == entity_type)
    if since:
        query = query.filter(MergeAuditLog.performed_at >= since)

    entries = query.order_by(MergeAuditLog.performed_at.desc(), MergeAuditLog.id).all()
    if record_id:
        # absorbed_ids is a JSON list; filtered here to stay portable across backends
        entries = [
            e for e in entries
            if e.primary_id == record_id or record_id in (e.absorbed_ids or [])
        ]

    return [
        {
            "id": e.id,
            "entity_type": e.entity_type.value,
            "primary_id": e.primary_id,
            "absorbed_ids": e.absorbed_ids,
            "actor_id": e.actor_id,
            "performed_at": e.performed_at.isoformat() if e.performed_at else None,
            "relations_repointed": e.relations_repointed,
            "relations_dropped": e.relations_dropped,
            "adopted_attributes": e.adopted_attributes,
            "attribute_conflicts": e.attribute_conflicts,
        }
        for e in entries[:limit]
    ]


def absorbed_since(db: Session, record_ids: List[str], since: datetime) -> Dict[str, str]:
    """
    Which of record_ids were absorbed by a merge at or after since.

    Returns:
        {absorbed record id: audit entry id}
    """
    wanted = set(record_ids)
    if not wanted:
        return {}

    found = {}
    entries = (
        db.query(MergeAuditLog)
        .filter(MergeAuditLog.performed_at >= since)
        .order_by(MergeAuditLog.performed_at, MergeAuditLog.id)
        .all()
    )
    for entry in entries:
        for absorbed in entry.absorbed_ids or []:
            if absorbed in wanted:
                found.setdefault(absorbed, entry.id)
    return found
