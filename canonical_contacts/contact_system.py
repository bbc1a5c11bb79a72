"""
Contact system call contract.

Thin functions over the services, each taking the caller's SQLAlchemy
session first. Mutating calls run in their own transaction (or join the
caller's if one is already open through core.database.transaction).
Authorization happens before these are called; actor ids are recorded for
audit only.
"""

from typing import Any, Dict, Optional, Sequence, Union

from sqlalchemy.orm import Session

from canonical_contacts.core.models import EntityType, Resolution
from canonical_contacts.parsing.smart_parser import ParseResult
from canonical_contacts.parsing.smart_parser import parse as _parse
from canonical_contacts.services.contact_import import ContactImporter, ImportResult
from canonical_contacts.services.duplicate_queue import DuplicateQueue, ResolveResult
from canonical_contacts.services.match_engine import (
    CompanyProbe,
    MatchConfig,
    MatchEngine,
    MatchResult,
    PersonProbe,
)
from canonical_contacts.services.merge_executor import MergeExecutor, MergeResult
from canonical_contacts.services.migration import (
    MigrationOptions,
    MigrationPipeline,
    MigrationResult,
    ReadinessResult,
    RollbackResult,
)


def parse(raw: Union[str, bytes]) -> ParseResult:
    return _parse(raw)


def find_company_matches(
    db: Session, probe: Union[CompanyProbe, Dict[str, Any]], config: Optional[MatchConfig] = None
) -> MatchResult:
    return MatchEngine(db, config).find_company_matches(probe)


def find_person_matches(
    db: Session, probe: Union[PersonProbe, Dict[str, Any]], config: Optional[MatchConfig] = None
) -> MatchResult:
    return MatchEngine(db, config).find_person_matches(probe)


def merge_companies(db: Session, primary_id: str, duplicate_ids: Sequence[str], actor_id: str) -> MergeResult:
    return MergeExecutor(db).merge_companies(primary_id, duplicate_ids, actor_id)


def merge_people(db: Session, primary_id: str, duplicate_ids: Sequence[str], actor_id: str) -> MergeResult:
    return MergeExecutor(db).merge_people(primary_id, duplicate_ids, actor_id)


def enqueue_duplicate(
    db: Session,
    entity_type: EntityType,
    record_id_a: str,
    record_id_b: str,
    signals: Optional[Sequence[Any]] = None,
    confidence: float = 0.0,
) -> str:
    """Idempotent: the same unordered pair returns the same PENDING candidate id."""
    return DuplicateQueue(db).enqueue(entity_type, record_id_a, record_id_b, signals, confidence)


def resolve_duplicate(
    db: Session,
    candidate_id: str,
    resolution: Resolution,
    resolver_id: str,
    primary_id: Optional[str] = None,
) -> ResolveResult:
    return DuplicateQueue(db).resolve(candidate_id, resolution, resolver_id, primary_id)


def delete_duplicate(db: Session, candidate_id: str) -> None:
    DuplicateQueue(db).delete(candidate_id)


def validate_migration_readiness(db: Session, scope_id: str) -> ReadinessResult:
    return MigrationPipeline(db).validate_readiness(scope_id)


def run_migration(
    db: Session, scope_id: str, options: Union[MigrationOptions, Dict[str, Any], None] = None
) -> MigrationResult:
    return MigrationPipeline(db).run(scope_id, options)


def rollback_migration(
    db: Session, scope_id: str, dry_run: bool = False, actor_id: str = "system"
) -> RollbackResult:
    return MigrationPipeline(db).rollback(scope_id, dry_run=dry_run, actor_id=actor_id)


def import_contacts(
    db: Session, raw: Union[str, bytes], actor_id: str = "system", dry_run: bool = False
) -> ImportResult:
    return ContactImporter(db).import_text(raw, actor_id=actor_id, dry_run=dry_run)
