"""
Operator command line for the contact system.

    canonical-contacts init-db
    canonical-contacts create-deal "Project Falcon"
    canonical-contacts import-legacy DEAL_ID buyers.csv
    canonical-contacts validate DEAL_ID
    canonical-contacts migrate DEAL_ID --dry-run
    canonical-contacts rollback DEAL_ID
    canonical-contacts parse contacts.vcf
    canonical-contacts import-contacts notes.txt --dry-run
    canonical-contacts detect-duplicates --min-confidence 0.8
    canonical-contacts list-candidates --status PENDING
    canonical-contacts resolve CANDIDATE_ID MERGED --primary RECORD_ID
    canonical-contacts merge COMPANY PRIMARY_ID DUPLICATE_ID [DUPLICATE_ID ...]
    canonical-contacts auto-merge --dry-run
    canonical-contacts cleanup-candidates

Every command prints JSON. Identity errors print their structured form and
exit with status 1.
"""

import argparse
import json
import logging
import sys
from typing import List, Optional

from canonical_contacts.core.config import get_settings
from canonical_contacts.core.database import create_tables, get_session_factory, transaction
from canonical_contacts.core.deal_models import Deal
from canonical_contacts.core.errors import IdentityError, ParseIOError
from canonical_contacts.core.models import CandidateStatus, EntityType, Resolution
from canonical_contacts.parsing.smart_parser import parse_file
from canonical_contacts.services.contact_import import ContactImporter
from canonical_contacts.services.duplicate_queue import DuplicateQueue
from canonical_contacts.services.merge_executor import MergeExecutor
from canonical_contacts.services.migration import (
    MigrationOptions,
    MigrationPipeline,
    read_legacy_csv,
)

logger = logging.getLogger("canonical_contacts.cli")


def _emit(payload) -> None:
    print(json.dumps(payload, indent=2, default=str))


def _read_bytes(path: str) -> bytes:
    try:
        with open(path, "rb") as f:
            return f.read()
    except OSError as e:
        raise ParseIOError(f"Could not read {path}: {e.strerror or e}", details={"path": path}) from e


# =============================================================================
# COMMANDS
# =============================================================================

def cmd_init_db(db, args):
    create_tables()
    return {"status": "ok"}


def cmd_create_deal(db, args):
    with transaction(db):
        deal = Deal(code_name=args.code_name, description=args.description, created_by=args.actor)
        db.add(deal)
        db.flush()
        deal_id = deal.id
    return {"deal_id": deal_id, "code_name": args.code_name}


def cmd_import_legacy(db, args):
    rows = read_legacy_csv(_read_bytes(args.file))
    ids = MigrationPipeline(db).import_rows(args.deal_id, rows)
    return {"deal_id": args.deal_id, "imported": len(ids), "row_ids": ids}


def cmd_parse(db, args):
    return parse_file(args.file).to_dict()


def cmd_import_contacts(db, args):
    result = ContactImporter(db).import_text(_read_bytes(args.file), actor_id=args.actor, dry_run=args.dry_run)
    return result.to_dict()


def cmd_validate(db, args):
    return MigrationPipeline(db).validate_readiness(args.deal_id).to_dict()


def cmd_migrate(db, args):
    options = MigrationOptions(
        dry_run=args.dry_run,
        skip_duplicate_check=args.skip_duplicate_check,
        actor_id=args.actor,
    )
    return MigrationPipeline(db).run(args.deal_id, options).to_dict()


def cmd_rollback(db, args):
    return MigrationPipeline(db).rollback(args.deal_id, dry_run=args.dry_run, actor_id=args.actor).to_dict()


def cmd_detect_duplicates(db, args):
    entity_types = [EntityType(args.entity_type)] if args.entity_type else None
    return DuplicateQueue(db).detect_duplicates(min_confidence=args.min_confidence, entity_types=entity_types)


def cmd_list_candidates(db, args):
    return DuplicateQueue(db).list_candidates(
        status=CandidateStatus(args.status) if args.status else None,
        entity_type=EntityType(args.entity_type) if args.entity_type else None,
        min_confidence=args.min_confidence,
        limit=args.limit,
        offset=args.offset,
    )


def cmd_stats(db, args):
    return DuplicateQueue(db).get_stats()


def cmd_resolve(db, args):
    result = DuplicateQueue(db).resolve(args.candidate_id, Resolution(args.resolution), args.actor, args.primary)
    return result.to_dict()


def cmd_merge(db, args):
    result = MergeExecutor(db).merge(EntityType(args.entity_type), args.primary_id, args.duplicate_ids, args.actor)
    return result.to_dict()


def cmd_auto_merge(db, args):
    entity_types = [EntityType(args.entity_type)] if args.entity_type else None
    result = DuplicateQueue(db).run_auto_merge(
        actor_id=args.actor,
        min_confidence=args.min_confidence,
        max_merges=args.max_merges,
        dry_run=args.dry_run,
        entity_types=entity_types,
    )
    return result.to_dict()


def cmd_cleanup_candidates(db, args):
    return {"removed": DuplicateQueue(db).cleanup_stale()}


# =============================================================================
# ENTRY POINT
# =============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="canonical-contacts",
        description="Canonical contact identity resolution, merging and legacy migration",
    )
    parser.add_argument("--actor", default="system", help="Acting user id recorded in audit trails")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("init-db", help="Create all tables")
    p.set_defaults(func=cmd_init_db)

    p = sub.add_parser("create-deal", help="Create a deal (migration scope)")
    p.add_argument("code_name")
    p.add_argument("--description")
    p.set_defaults(func=cmd_create_deal)

    p = sub.add_parser("import-legacy", help="Load a legacy buyer CSV into a deal")
    p.add_argument("deal_id")
    p.add_argument("file")
    p.set_defaults(func=cmd_import_legacy)

    p = sub.add_parser("parse", help="Parse a contact file and print the extraction")
    p.add_argument("file")
    p.set_defaults(func=cmd_parse)

    p = sub.add_parser("import-contacts", help="Parse, match and store contacts from a file")
    p.add_argument("file")
    p.add_argument("--dry-run", action="store_true")
    p.set_defaults(func=cmd_import_contacts)

    p = sub.add_parser("validate", help="Check a deal's migration readiness")
    p.add_argument("deal_id")
    p.set_defaults(func=cmd_validate)

    p = sub.add_parser("migrate", help="Migrate a deal's legacy buyers")
    p.add_argument("deal_id")
    p.add_argument("--dry-run", action="store_true")
    p.add_argument("--skip-duplicate-check", action="store_true")
    p.set_defaults(func=cmd_migrate)

    p = sub.add_parser("rollback", help="Undo a deal's migration runs")
    p.add_argument("deal_id")
    p.add_argument("--dry-run", action="store_true")
    p.set_defaults(func=cmd_rollback)

    entity_choices = [t.value for t in EntityType]

    p = sub.add_parser("detect-duplicates", help="Scan for duplicate records and queue them")
    p.add_argument("--min-confidence", type=float)
    p.add_argument("--entity-type", choices=entity_choices)
    p.set_defaults(func=cmd_detect_duplicates)

    p = sub.add_parser("list-candidates", help="List duplicate candidates")
    p.add_argument("--status", choices=[s.value for s in CandidateStatus])
    p.add_argument("--entity-type", choices=entity_choices)
    p.add_argument("--min-confidence", type=float)
    p.add_argument("--limit", type=int, default=50)
    p.add_argument("--offset", type=int, default=0)
    p.set_defaults(func=cmd_list_candidates)

    p = sub.add_parser("stats", help="Duplicate queue statistics")
    p.set_defaults(func=cmd_stats)

    p = sub.add_parser("resolve", help="Resolve a duplicate candidate")
    p.add_argument("candidate_id")
    p.add_argument("resolution", choices=[r.value for r in Resolution])
    p.add_argument("--primary", help="Surviving record id (required for MERGED)")
    p.set_defaults(func=cmd_resolve)

    p = sub.add_parser("merge", help="Merge duplicate records into a primary")
    p.add_argument("entity_type", choices=entity_choices)
    p.add_argument("primary_id")
    p.add_argument("duplicate_ids", nargs="+")
    p.set_defaults(func=cmd_merge)

    p = sub.add_parser("auto-merge", help="Merge very-high-confidence candidates")
    p.add_argument("--dry-run", action="store_true")
    p.add_argument("--min-confidence", type=float)
    p.add_argument("--max-merges", type=int)
    p.add_argument("--entity-type", choices=entity_choices)
    p.set_defaults(func=cmd_auto_merge)

    p = sub.add_parser("cleanup-candidates", help="Delete candidates whose records are gone or merged")
    p.set_defaults(func=cmd_cleanup_candidates)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    db = get_session_factory()()
    try:
        _emit(args.func(db, args))
        return 0
    except IdentityError as e:
        logger.error(f"{args.command} failed: {e}")
        _emit({"error": e.to_dict()})
        return 1
    finally:
        db.close()


if __name__ == "__main__":
    sys.exit(main())
