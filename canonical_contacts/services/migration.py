"""
Migration Pipeline.

Converts the legacy flat buyer rows of one deal into canonical companies and
people plus the deal buyer / deal contact relations that reference them.

- validate_readiness: read-only scope check
- run: row-by-row conversion; each row runs in its own savepoint so a bad row
  is recorded and skipped without aborting the batch. Every record or
  relation the run creates, links or adopts is written to the migration
  ledger.
- rollback: undoes every live run of the scope from the ledger, unless a
  later merge has folded a migration-created record into something else.
- import_rows / read_legacy_csv: load CSV-shaped legacy rows into the
  legacy table.
"""

import csv
import io
import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from canonical_contacts.core.contact_models import (
    CanonicalCompany,
    CanonicalPerson,
    DuplicateCandidate,
)
from canonical_contacts.core.database import transaction
from canonical_contacts.core.deal_models import (
    Deal,
    DealActivity,
    DealBuyer,
    DealContact,
    EmailAttempt,
)
from canonical_contacts.core.errors import (
    ConflictError,
    IdentityError,
    RecordNotFoundError,
    RollbackBlockedError,
    ScopeAlreadyMigratedError,
    ValidationError,
)
from canonical_contacts.core.migration_models import (
    LegacyBuyer,
    MigrationLedgerEntry,
    MigrationRun,
)
from canonical_contacts.core.models import (
    CandidateStatus,
    DataQuality,
    EntityType,
    LedgerAction,
    MigrationStatus,
)
from canonical_contacts.matching.fuzzy_matcher import (
    normalize_company_name,
    normalize_domain,
    normalize_email,
    normalize_linkedin_url,
)
from canonical_contacts.matching.person_matcher import normalize_person_name
from canonical_contacts.parsing.smart_parser import split_full_name
from canonical_contacts.services.audit import absorbed_since
from canonical_contacts.services.canonical_records import new_company, new_person
from canonical_contacts.services.duplicate_queue import DuplicateQueue
from canonical_contacts.services.match_engine import (
    CompanyProbe,
    MatchConfig,
    MatchEngine,
    MatchResult,
    PersonProbe,
    SuggestedAction,
)
from canonical_contacts.services.relations import delete_owned_rows, find_references

logger = logging.getLogger(__name__)


# Scope-level issue codes that stop a run outright
SCOPE_BLOCKING_CODES = {"deal_not_found", "no_legacy_rows", "already_migrated"}

SUMMARY_KEYS = (
    "rows_total",
    "rows_migrated",
    "rows_failed",
    "companies_created",
    "companies_linked",
    "companies_review",
    "people_created",
    "people_linked",
    "people_review",
    "buyers_created",
    "buyers_adopted",
    "contacts_created",
    "contacts_adopted",
    "candidates_enqueued",
)

VALID_TIERS = {"A": "A_TIER", "B": "B_TIER", "C": "C_TIER"}
DEFAULT_TIER = "B_TIER"

# Legacy CSV header (squashed to lowercase alphanumerics) -> LegacyBuyer column
LEGACY_CSV_HEADERS = {
    "companyname": "company_name",
    "company": "company_name",
    "buyer": "company_name",
    "buyername": "company_name",
    "website": "website",
    "companywebsite": "website",
    "industry": "industry",
    "headquarters": "headquarters",
    "hq": "headquarters",
    "location": "headquarters",
    "employeecount": "employee_count",
    "employees": "employee_count",
    "buyertype": "buyer_type",
    "type": "buyer_type",
    "tier": "tier",
    "rationale": "rationale",
    "buyerrationale": "rationale",
    "contactname": "contact_name",
    "contactemail": "contact_email",
    "contactphone": "contact_phone",
    "contacttitle": "contact_title",
    "contactlinkedin": "contact_linkedin_url",
    "contactlinkedinurl": "contact_linkedin_url",
}

LEDGER_COMPANY = "company"
LEDGER_PERSON = "person"
LEDGER_DEAL_BUYER = "deal_buyer"
LEDGER_DEAL_CONTACT = "deal_contact"
LEDGER_DEAL_ACTIVITY = "deal_activity"


# =============================================================================
# RESULT TYPES
# =============================================================================

@dataclass
class ReadinessIssue:
    severity: str  # "error" | "warning"
    code: str
    message: str
    record_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "severity": self.severity,
            "code": self.code,
            "message": self.message,
            "record_id": self.record_id,
        }


@dataclass
class ReadinessResult:
    scope_id: str
    issues: List[ReadinessIssue] = field(default_factory=list)
    pending_rows: int = 0
    migrated_rows: int = 0

    @property
    def is_ready(self) -> bool:
        return all(i.severity != "error" for i in self.issues)

    @property
    def blocking_issues(self) -> List[ReadinessIssue]:
        return [i for i in self.issues if i.severity == "error" and i.code in SCOPE_BLOCKING_CODES]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scope_id": self.scope_id,
            "is_ready": self.is_ready,
            "pending_rows": self.pending_rows,
            "migrated_rows": self.migrated_rows,
            "issues": [i.to_dict() for i in self.issues],
        }


class MigrationOptions(BaseModel):
    """Options for a migration run."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    dry_run: bool = False
    skip_duplicate_check: bool = False
    actor_id: str = Field(default="system", min_length=1)


@dataclass
class MigrationError:
    source_row_id: str
    record_type: str
    code: str
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_row_id": self.source_row_id,
            "record_type": self.record_type,
            "code": self.code,
            "message": self.message,
        }


@dataclass
class MigrationResult:
    scope_id: str
    dry_run: bool
    run_id: Optional[str] = None
    summary: Dict[str, int] = field(default_factory=lambda: {k: 0 for k in SUMMARY_KEYS})
    errors: List[MigrationError] = field(default_factory=list)
    decisions: List[Dict[str, Any]] = field(default_factory=list)
    duration: float = 0.0

    @property
    def success(self) -> bool:
        return not self.errors

    @property
    def partial(self) -> bool:
        return bool(self.errors) and self.summary["rows_migrated"] > 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scope_id": self.scope_id,
            "run_id": self.run_id,
            "dry_run": self.dry_run,
            "success": self.success,
            "partial": self.partial,
            "summary": self.summary,
            "errors": [e.to_dict() for e in self.errors],
            "decisions": self.decisions,
            "duration": round(self.duration, 3),
        }


@dataclass
class RollbackResult:
    scope_id: str
    dry_run: bool
    run_ids: List[str] = field(default_factory=list)
    deal_activities_removed: int = 0
    deal_contacts_removed: int = 0
    deal_buyers_removed: int = 0
    deal_buyers_retained: List[str] = field(default_factory=list)
    companies_removed: int = 0
    companies_retained: List[str] = field(default_factory=list)
    people_removed: int = 0
    people_retained: List[str] = field(default_factory=list)
    legacy_rows_reset: int = 0
    candidates_removed: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scope_id": self.scope_id,
            "dry_run": self.dry_run,
            "run_ids": self.run_ids,
            "deal_activities_removed": self.deal_activities_removed,
            "deal_contacts_removed": self.deal_contacts_removed,
            "deal_buyers_removed": self.deal_buyers_removed,
            "deal_buyers_retained": self.deal_buyers_retained,
            "companies_removed": self.companies_removed,
            "companies_retained": self.companies_retained,
            "people_removed": self.people_removed,
            "people_retained": self.people_retained,
            "legacy_rows_reset": self.legacy_rows_reset,
            "candidates_removed": self.candidates_removed,
        }


class RowError(Exception):
    """A single legacy row cannot be migrated."""

    def __init__(self, record_type: str, code: str, message: str):
        super().__init__(message)
        self.record_type = record_type
        self.code = code
        self.message = message


# =============================================================================
# HELPERS
# =============================================================================

def parse_employee_count(value: Optional[str]) -> Optional[int]:
    """
    Legacy free-text head count -> int. "1,200" and "500+" are accepted.

    Raises:
        ValueError: text present but not a non-negative whole number
    """
    if value is None or not str(value).strip():
        return None
    text = str(value).strip().replace(",", "").rstrip("+").strip()
    if not text.isdigit():
        raise ValueError(f"Invalid employee count: {value!r}")
    return int(text)


def normalize_tier(value: Optional[str]) -> str:
    """"A", "a_tier", "Tier A" -> "A_TIER"; anything else -> B_TIER."""
    if not value:
        return DEFAULT_TIER
    letters = re.sub(r"[^A-Z]", "", value.upper()).replace("TIER", "")
    return VALID_TIERS.get(letters, DEFAULT_TIER)


def _is_planned(record_id: str) -> bool:
    """Placeholder id handed out by a dry run."""
    return record_id.startswith("dry-run:")


def ensure_deal_buyer(
    session: Session,
    deal_id: str,
    company_id: str,
    tier: str = DEFAULT_TIER,
    rationale: Optional[str] = None,
    created_by: Optional[str] = None,
) -> Tuple[DealBuyer, bool]:
    """Deal buyer for (deal, company), created if missing. Returns (row, created)."""
    existing = (
        session.query(DealBuyer)
        .filter(DealBuyer.deal_id == deal_id, DealBuyer.canonical_company_id == company_id)
        .first()
    )
    if existing:
        return existing, False

    buyer = DealBuyer(
        deal_id=deal_id,
        canonical_company_id=company_id,
        tier=tier,
        buyer_rationale=rationale,
        current_stage="IDENTIFIED",
        created_by=created_by,
    )
    session.add(buyer)
    session.flush()
    return buyer, True


def ensure_deal_contact(
    session: Session,
    deal_buyer_id: str,
    person_id: str,
    role: str = "PRIMARY",
    is_primary: bool = True,
) -> Tuple[DealContact, bool]:
    """Deal contact for (deal buyer, person), created if missing. Returns (row, created)."""
    existing = (
        session.query(DealContact)
        .filter(DealContact.deal_buyer_id == deal_buyer_id, DealContact.canonical_person_id == person_id)
        .first()
    )
    if existing:
        return existing, False

    contact = DealContact(
        deal_buyer_id=deal_buyer_id,
        canonical_person_id=person_id,
        role=role,
        is_primary=is_primary,
        is_active=True,
    )
    session.add(contact)
    session.flush()
    return contact, True


def read_legacy_csv(content: Union[str, bytes]) -> List[Dict[str, str]]:
    """Rows of a legacy buyer export, keyed by LegacyBuyer column name."""
    if isinstance(content, bytes):
        content = content.decode("utf-8-sig", errors="replace")
    reader = csv.DictReader(io.StringIO(content))
    rows = []
    for raw in reader:
        row = {}
        for header, value in raw.items():
            if header is None:
                continue
            column = LEGACY_CSV_HEADERS.get(re.sub(r"[^a-z0-9]", "", header.lower()))
            if column and value is not None and value.strip():
                row[column] = value.strip()
        if row:
            rows.append(row)
    return rows


# =============================================================================
# PIPELINE
# =============================================================================

class MigrationPipeline:
    """
    Legacy buyer migration for one deal at a time.
    """

    def __init__(self, session: Session, config: Optional[MatchConfig] = None):
        self.session = session
        self.engine = MatchEngine(session, config)
        self.queue = DuplicateQueue(session, self.engine.config)

    # ------------------------------------------------------------------
    # Readiness
    # ------------------------------------------------------------------

    def validate_readiness(self, scope_id: str) -> ReadinessResult:
        """Read-only check of a deal's legacy rows."""
        result = ReadinessResult(scope_id=scope_id)

        deal = self.session.get(Deal, scope_id)
        if deal is None:
            result.issues.append(ReadinessIssue("error", "deal_not_found", f"Deal {scope_id} not found"))
            return result

        rows = self._legacy_rows(scope_id)
        pending = [r for r in rows if not r.is_migrated]
        result.pending_rows = len(pending)
        result.migrated_rows = len(rows) - len(pending)

        if not rows:
            result.issues.append(ReadinessIssue("error", "no_legacy_rows", "Deal has no legacy buyer rows"))
            return result
        if not pending:
            result.issues.append(ReadinessIssue(
                "error", "already_migrated", f"All {len(rows)} legacy rows are already migrated"
            ))
            return result

        for row in pending:
            if not (row.company_name or "").strip():
                result.issues.append(ReadinessIssue(
                    "error", "missing_company_name", "Legacy row has no company name", row.id
                ))
            try:
                parse_employee_count(row.employee_count)
            except ValueError:
                result.issues.append(ReadinessIssue(
                    "error", "invalid_employee_count",
                    f"Employee count {row.employee_count!r} is not a number", row.id,
                ))
            if row.contact_email and not normalize_email(row.contact_email):
                result.issues.append(ReadinessIssue(
                    "warning", "invalid_contact_email",
                    f"Contact email {row.contact_email!r} is invalid and will be ignored", row.id,
                ))

        existing_buyers = self.session.query(DealBuyer).filter(DealBuyer.deal_id == scope_id).count()
        if existing_buyers:
            result.issues.append(ReadinessIssue(
                "warning", "existing_buyers", f"Deal already has {existing_buyers} buyers"
            ))

        if self.session.query(CanonicalCompany).count() == 0:
            result.issues.append(ReadinessIssue(
                "warning", "no_canonical_companies", "No canonical companies exist yet"
            ))

        return result

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def run(self, scope_id: str, options: Union[MigrationOptions, Dict[str, Any], None] = None) -> MigrationResult:
        """
        Migrate every unmarked legacy row of the deal.

        Raises:
            ValidationError: malformed options
            RecordNotFoundError: deal does not exist
            ScopeAlreadyMigratedError: every row is already migrated
            ConflictError: deal has no legacy rows
        """
        options = self._coerce_options(options)
        started = time.monotonic()

        readiness = self.validate_readiness(scope_id)
        self._raise_blocking(scope_id, readiness)

        result = MigrationResult(scope_id=scope_id, dry_run=options.dry_run)
        rows = [r for r in self._legacy_rows(scope_id) if not r.is_migrated]
        result.summary["rows_total"] = len(rows)

        if options.dry_run:
            self._process_rows(None, rows, options, result)
        else:
            with transaction(self.session):
                run = MigrationRun(
                    scope_id=scope_id,
                    actor_id=options.actor_id,
                    options=options.model_dump(),
                    status=MigrationStatus.COMPLETED,
                    started_at=datetime.utcnow(),
                )
                self.session.add(run)
                self.session.flush()
                result.run_id = run.id

                self._process_rows(run, rows, options, result)

                run.status = MigrationStatus.PARTIAL if result.errors else MigrationStatus.COMPLETED
                run.summary = dict(result.summary)
                run.errors = [e.to_dict() for e in result.errors]
                run.completed_at = datetime.utcnow()

                if result.summary["rows_migrated"]:
                    self._log_activity(run, result)
                self.session.flush()

        result.duration = time.monotonic() - started
        logger.info(
            f"Migration {'(dry run) ' if options.dry_run else ''}of deal {scope_id}: "
            f"{result.summary['rows_migrated']}/{result.summary['rows_total']} rows, "
            f"{result.summary['companies_created']} companies created, "
            f"{result.summary['companies_linked']} linked, "
            f"{len(result.errors)} errors in {result.duration:.2f}s"
        )
        return result

    def _process_rows(
        self,
        run: Optional[MigrationRun],
        rows: List[LegacyBuyer],
        options: MigrationOptions,
        result: MigrationResult,
    ) -> None:
        # Run-local key index: a later row resolving to a record an earlier
        # row created or linked adopts that record
        index: Dict[tuple, str] = {}

        for row in rows:
            counts: Dict[str, int] = {}
            staged: Dict[tuple, str] = {}
            try:
                if run is None:
                    decision = self._migrate_row(None, row, options, index, staged, counts)
                else:
                    with self.session.begin_nested():
                        decision = self._migrate_row(run, row, options, index, staged, counts)
            except RowError as e:
                self._record_failure(result, row, e.record_type, e.code, e.message)
                continue
            except IdentityError as e:
                self._record_failure(result, row, "row", e.code, e.message)
                continue
            except SQLAlchemyError as e:
                self._record_failure(result, row, "row", "internal", f"Storage failure: {e.__class__.__name__}")
                continue

            index.update(staged)
            for key, value in counts.items():
                result.summary[key] += value
            result.summary["rows_migrated"] += 1
            result.decisions.append(decision)

    def _record_failure(self, result: MigrationResult, row: LegacyBuyer, record_type: str, code: str, message: str) -> None:
        logger.warning(f"Legacy row {row.id} ({row.company_name!r}) failed: [{code}] {message}")
        result.errors.append(MigrationError(row.id, record_type, code, message))
        result.summary["rows_failed"] += 1

    def _migrate_row(
        self,
        run: Optional[MigrationRun],
        row: LegacyBuyer,
        options: MigrationOptions,
        index: Dict[tuple, str],
        staged: Dict[tuple, str],
        counts: Dict[str, int],
    ) -> Dict[str, Any]:
        company_name = (row.company_name or "").strip()
        if not company_name:
            raise RowError(LEDGER_COMPANY, "missing_company_name", "Legacy row has no company name")
        try:
            employee_count = parse_employee_count(row.employee_count)
        except ValueError as e:
            raise RowError(LEDGER_COMPANY, "invalid_employee_count", str(e))

        def bump(key: str) -> None:
            counts[key] = counts.get(key, 0) + 1

        decision: Dict[str, Any] = {"legacy_row_id": row.id, "company_name": company_name}

        # Company
        company_id, action = self._resolve_company(run, row, company_name, employee_count, options, index, staged, bump)
        decision["company"] = {"record_id": company_id, "action": action}

        # Deal buyer
        tier = normalize_tier(row.tier)
        if run is None:
            buyer_id, buyer_created = self._planned_buyer(row, company_id, index, staged)
        else:
            buyer, buyer_created = ensure_deal_buyer(
                self.session, row.deal_id, company_id, tier, row.rationale, options.actor_id
            )
            buyer_id = buyer.id
            self._ledger(run, row, LEDGER_DEAL_BUYER, buyer_id,
                         LedgerAction.CREATED if buyer_created else LedgerAction.ADOPTED)
        bump("buyers_created" if buyer_created else "buyers_adopted")
        decision["deal_buyer"] = {"record_id": buyer_id, "action": "created" if buyer_created else "adopted"}

        # Contact
        if (row.contact_name or "").strip() or normalize_email(row.contact_email) or normalize_linkedin_url(row.contact_linkedin_url):
            person_id, action = self._resolve_person(run, row, company_id, company_name, options, index, staged, bump)
            decision["person"] = {"record_id": person_id, "action": action}

            if run is None:
                contact_key = ("deal_contact", buyer_id, person_id)
                planned = self._index_lookup([contact_key], index, staged)
                if planned:
                    contact_id, contact_created = planned, False
                else:
                    contact_id = f"dry-run:deal_contact:{row.id}"
                    contact_created = (
                        _is_planned(buyer_id) or _is_planned(person_id) or not self._contact_exists(buyer_id, person_id)
                    )
                    staged[contact_key] = contact_id
            else:
                contact, contact_created = ensure_deal_contact(self.session, buyer_id, person_id)
                contact_id = contact.id
                self._ledger(run, row, LEDGER_DEAL_CONTACT, contact_id,
                             LedgerAction.CREATED if contact_created else LedgerAction.ADOPTED)
            bump("contacts_created" if contact_created else "contacts_adopted")
            decision["deal_contact"] = {"record_id": contact_id, "action": "created" if contact_created else "adopted"}

        if run is not None:
            row.migrated_run_id = run.id
            row.migrated_at = datetime.utcnow()
            self.session.flush()

        return decision

    # ------------------------------------------------------------------
    # Record resolution
    # ------------------------------------------------------------------

    def _resolve_company(self, run, row, company_name, employee_count, options, index, staged, bump) -> Tuple[str, str]:
        domain = normalize_domain(row.website)
        keys = [("company", "name", normalize_company_name(company_name), domain)]
        if domain:
            keys.insert(0, ("company", "domain", domain))

        known = self._index_lookup(keys, index, staged)
        if known:
            self._remember(keys, known, staged)
            if run is not None:
                self._ledger(run, row, LEDGER_COMPANY, known, LedgerAction.LINKED)
            bump("companies_linked")
            return known, "linked"

        match: Optional[MatchResult] = None
        if not options.skip_duplicate_check:
            match = self.engine.find_company_matches(CompanyProbe(name=company_name, website=row.website))
            if match.suggested_action == SuggestedAction.LINK_EXISTING:
                record_id = match.top.record_id
                self._remember(keys, record_id, staged)
                if run is not None:
                    self._ledger(run, row, LEDGER_COMPANY, record_id, LedgerAction.LINKED)
                bump("companies_linked")
                return record_id, "linked"

        if run is None:
            record_id = f"dry-run:company:{row.id}"
        else:
            company = new_company(
                self.session,
                company_name,
                website=row.website,
                industry=row.industry,
                headquarters=row.headquarters,
                employee_count=employee_count,
                company_type=row.buyer_type.strip().upper() if row.buyer_type else None,
                data_quality=DataQuality.SUGGESTED,
            )
            record_id = company.id
            self._ledger(run, row, LEDGER_COMPANY, record_id, LedgerAction.CREATED)
        self._remember(keys, record_id, staged)
        bump("companies_created")

        if match is not None and match.suggested_action == SuggestedAction.REVIEW:
            bump("companies_review")
            self._enqueue_review(run, EntityType.COMPANY, record_id, match, bump)
            return record_id, "review"
        return record_id, "created"

    def _resolve_person(self, run, row, company_id, company_name, options, index, staged, bump) -> Tuple[str, str]:
        first_name, last_name = split_full_name(row.contact_name)
        email = normalize_email(row.contact_email)
        linkedin = normalize_linkedin_url(row.contact_linkedin_url)
        norm = normalize_person_name(first_name, last_name)

        keys = []
        if email:
            keys.append(("person", "email", email))
        if linkedin:
            keys.append(("person", "linkedin", linkedin))
        if norm:
            keys.append(("person", "name", norm, company_id))

        known = self._index_lookup(keys, index, staged)
        if known:
            self._remember(keys, known, staged)
            if run is not None:
                self._ledger(run, row, LEDGER_PERSON, known, LedgerAction.LINKED)
            bump("people_linked")
            return known, "linked"

        match: Optional[MatchResult] = None
        if not options.skip_duplicate_check:
            match = self.engine.find_person_matches(PersonProbe(
                first_name=first_name,
                last_name=last_name,
                email=email,
                linkedin_url=linkedin,
                employer_name=company_name,
                title=row.contact_title,
            ))
            if match.suggested_action == SuggestedAction.LINK_EXISTING:
                record_id = match.top.record_id
                self._remember(keys, record_id, staged)
                if run is not None:
                    self._ledger(run, row, LEDGER_PERSON, record_id, LedgerAction.LINKED)
                bump("people_linked")
                return record_id, "linked"

        if run is None:
            record_id = f"dry-run:person:{row.id}"
        else:
            person = new_person(
                self.session,
                first_name=first_name,
                last_name=last_name,
                email=email,
                phone=row.contact_phone,
                linkedin_url=linkedin,
                current_title=row.contact_title,
                current_company_id=company_id,
                data_quality=DataQuality.SUGGESTED if email else DataQuality.PROVISIONAL,
            )
            record_id = person.id
            self._ledger(run, row, LEDGER_PERSON, record_id, LedgerAction.CREATED)
        self._remember(keys, record_id, staged)
        bump("people_created")

        if match is not None and match.suggested_action == SuggestedAction.REVIEW:
            bump("people_review")
            self._enqueue_review(run, EntityType.PERSON, record_id, match, bump)
            return record_id, "review"
        return record_id, "created"

    def _enqueue_review(self, run, entity_type: EntityType, record_id: str, match: MatchResult, bump) -> None:
        for candidate in match.candidates:
            if candidate.score < self.engine.config.review_floor:
                continue
            if run is not None:
                self.queue.enqueue(entity_type, record_id, candidate.record_id, candidate.signals, candidate.score)
            bump("candidates_enqueued")

    @staticmethod
    def _index_lookup(keys: List[tuple], index: Dict[tuple, str], staged: Dict[tuple, str]) -> Optional[str]:
        for key in keys:
            if key in staged:
                return staged[key]
            if key in index:
                return index[key]
        return None

    @staticmethod
    def _remember(keys: List[tuple], record_id: str, staged: Dict[tuple, str]) -> None:
        for key in keys:
            staged.setdefault(key, record_id)

    def _planned_buyer(self, row: LegacyBuyer, company_id: str, index: Dict[tuple, str], staged: Dict[tuple, str]) -> Tuple[str, bool]:
        key = ("deal_buyer", company_id)
        planned = self._index_lookup([key], index, staged)
        if planned:
            return planned, False
        if not _is_planned(company_id):
            existing = (
                self.session.query(DealBuyer)
                .filter(DealBuyer.deal_id == row.deal_id, DealBuyer.canonical_company_id == company_id)
                .first()
            )
            if existing:
                return existing.id, False
        buyer_id = f"dry-run:deal_buyer:{company_id}"
        staged[key] = buyer_id
        return buyer_id, True

    def _contact_exists(self, buyer_id: str, person_id: str) -> bool:
        return (
            self.session.query(DealContact)
            .filter(DealContact.deal_buyer_id == buyer_id, DealContact.canonical_person_id == person_id)
            .first()
            is not None
        )

    def _ledger(self, run: MigrationRun, row: LegacyBuyer, record_type: str, record_id: str, action: LedgerAction) -> None:
        self.session.add(MigrationLedgerEntry(
            run_id=run.id,
            legacy_row_id=row.id,
            record_type=record_type,
            record_id=record_id,
            action=action,
        ))

    def _log_activity(self, run: MigrationRun, result: MigrationResult) -> None:
        summary = result.summary
        activity = DealActivity(
            deal_id=run.scope_id,
            activity_type="NOTE",
            subject="Contact data migration completed",
            description=(
                f"Migrated {summary['rows_migrated']} buyers: {summary['companies_created']} companies created, "
                f"{summary['companies_linked']} linked, {summary['people_created']} people created"
            ),
            extra={"run_id": run.id, "summary": dict(summary)},
            performed_by=run.actor_id,
        )
        self.session.add(activity)
        self.session.flush()
        self.session.add(MigrationLedgerEntry(
            run_id=run.id,
            legacy_row_id="",
            record_type=LEDGER_DEAL_ACTIVITY,
            record_id=activity.id,
            action=LedgerAction.CREATED,
        ))

    # ------------------------------------------------------------------
    # Rollback
    # ------------------------------------------------------------------

    def rollback(self, scope_id: str, dry_run: bool = False, actor_id: str = "system") -> RollbackResult:
        """
        Undo every live migration run of the deal, newest first.

        Raises:
            RecordNotFoundError: deal does not exist
            RollbackBlockedError: a migration-created record was merged away
                since its run (offending ids attached)
        """
        if self.session.get(Deal, scope_id) is None:
            raise RecordNotFoundError(f"Deal {scope_id} not found", record_ids=[scope_id])

        result = RollbackResult(scope_id=scope_id, dry_run=dry_run)
        runs = (
            self.session.query(MigrationRun)
            .filter(MigrationRun.scope_id == scope_id, MigrationRun.status != MigrationStatus.ROLLED_BACK)
            .order_by(MigrationRun.started_at.desc(), MigrationRun.id.desc())
            .all()
        )
        if not runs:
            logger.info(f"Rollback of deal {scope_id}: no live migration runs")
            return result
        result.run_ids = [r.id for r in runs]

        entries = (
            self.session.query(MigrationLedgerEntry)
            .filter(MigrationLedgerEntry.run_id.in_(result.run_ids))
            .order_by(MigrationLedgerEntry.id)
            .all()
        )
        created: Dict[str, List[str]] = {}
        for entry in entries:
            if entry.action == LedgerAction.CREATED:
                created.setdefault(entry.record_type, []).append(entry.record_id)

        self._check_not_absorbed(runs, created)

        plan = self._rollback_plan(created)
        result.deal_activities_removed = len(plan["activities"])
        result.deal_contacts_removed = len(plan["contacts"])
        result.deal_buyers_removed = len(plan["buyers"])
        result.deal_buyers_retained = plan["buyers_retained"]
        result.people_removed = len(plan["people"])
        result.people_retained = plan["people_retained"]
        result.companies_removed = len(plan["companies"])
        result.companies_retained = plan["companies_retained"]

        removed_records = set(plan["people"]) | set(plan["companies"])
        stale_candidates = self._candidates_touching(removed_records)
        result.candidates_removed = len(stale_candidates)

        legacy_rows = (
            self.session.query(LegacyBuyer)
            .filter(LegacyBuyer.migrated_run_id.in_(result.run_ids))
            .all()
        )
        result.legacy_rows_reset = len(legacy_rows)

        if dry_run:
            logger.info(f"Rollback (dry run) of deal {scope_id}: {result.to_dict()}")
            return result

        with transaction(self.session):
            for model, ids in (
                (DealActivity, plan["activities"]),
                (DealContact, plan["contacts"]),
                (DealBuyer, plan["buyers"]),
            ):
                self._delete_ids(model, ids)
            for candidate in stale_candidates:
                self.session.delete(candidate)
            self.session.flush()

            for row in legacy_rows:
                row.migrated_run_id = None
                row.migrated_at = None
            self.session.flush()

            self._delete_ids(CanonicalPerson, plan["people"])
            delete_owned_rows(self.session, EntityType.COMPANY, plan["companies"])
            self._delete_ids(CanonicalCompany, plan["companies"])

            now = datetime.utcnow()
            for run in runs:
                run.status = MigrationStatus.ROLLED_BACK
                run.rolled_back_at = now
                run.rolled_back_by = actor_id
            self.session.flush()

        logger.info(
            f"Rolled back {len(runs)} migration run(s) of deal {scope_id}: "
            f"{result.deal_buyers_removed} buyers, {result.companies_removed} companies, "
            f"{result.people_removed} people removed; {len(result.deal_buyers_retained)} buyers retained"
        )
        return result

    def _check_not_absorbed(self, runs: List[MigrationRun], created: Dict[str, List[str]]) -> None:
        since = min(r.started_at for r in runs)
        blocked: Dict[str, Optional[str]] = {}
        for record_type, model in ((LEDGER_COMPANY, CanonicalCompany), (LEDGER_PERSON, CanonicalPerson)):
            ids = created.get(record_type, [])
            for record_id in ids:
                record = self.session.get(model, record_id)
                if record is not None and not record.is_active:
                    blocked[record_id] = None
            for record_id, audit_id in absorbed_since(self.session, ids, since).items():
                blocked[record_id] = audit_id

        if blocked:
            raise RollbackBlockedError(
                "Migration-created records were merged into other records after the migration",
                record_ids=sorted(blocked),
                details={"audit_log_ids": sorted({a for a in blocked.values() if a})},
            )

    def _rollback_plan(self, created: Dict[str, List[str]]) -> Dict[str, List[str]]:
        """
        Decide what can be removed. A row that something outside the
        migration now references is retained.
        """
        activities = self._existing_ids(DealActivity, created.get(LEDGER_DEAL_ACTIVITY, []))
        contacts = self._existing_ids(DealContact, created.get(LEDGER_DEAL_CONTACT, []))

        buyers, buyers_retained = [], []
        for buyer_id in self._existing_ids(DealBuyer, created.get(LEDGER_DEAL_BUYER, [])):
            foreign_children = (
                self.session.query(DealContact).filter(
                    DealContact.deal_buyer_id == buyer_id, DealContact.id.notin_(contacts)
                ).count()
                + self.session.query(DealActivity).filter(
                    DealActivity.deal_buyer_id == buyer_id, DealActivity.id.notin_(activities)
                ).count()
                + self.session.query(EmailAttempt).filter(EmailAttempt.deal_buyer_id == buyer_id).count()
            )
            (buyers_retained if foreign_children else buyers).append(buyer_id)

        ignore_for_people = {("deal_contacts", c) for c in contacts} | {("deal_activities", a) for a in activities}
        people, people_retained = [], []
        for person_id in self._existing_ids(CanonicalPerson, created.get(LEDGER_PERSON, [])):
            refs = find_references(self.session, EntityType.PERSON, person_id, ignore=ignore_for_people)
            (people_retained if refs else people).append(person_id)

        ignore_for_companies = {("employees", p) for p in people} | {("deal_buyers", b) for b in buyers}
        companies, companies_retained = [], []
        for company_id in self._existing_ids(CanonicalCompany, created.get(LEDGER_COMPANY, [])):
            refs = find_references(self.session, EntityType.COMPANY, company_id, ignore=ignore_for_companies)
            (companies_retained if refs else companies).append(company_id)

        return {
            "activities": activities,
            "contacts": contacts,
            "buyers": buyers,
            "buyers_retained": buyers_retained,
            "people": people,
            "people_retained": people_retained,
            "companies": companies,
            "companies_retained": companies_retained,
        }

    def _candidates_touching(self, record_ids: set) -> List[DuplicateCandidate]:
        if not record_ids:
            return []
        ids = list(record_ids)
        return (
            self.session.query(DuplicateCandidate)
            .filter(
                DuplicateCandidate.status == CandidateStatus.PENDING,
                (DuplicateCandidate.record_a_id.in_(ids)) | (DuplicateCandidate.record_b_id.in_(ids)),
            )
            .order_by(DuplicateCandidate.id)
            .all()
        )

    def _existing_ids(self, model, ids: List[str]) -> List[str]:
        if not ids:
            return []
        found = {row[0] for row in self.session.query(model.id).filter(model.id.in_(ids)).all()}
        # keep ledger order, drop repeats
        return [i for i in dict.fromkeys(ids) if i in found]

    def _delete_ids(self, model, ids: List[str]) -> None:
        for record_id in ids:
            record = self.session.get(model, record_id)
            if record is not None:
                self.session.delete(record)
        self.session.flush()

    # ------------------------------------------------------------------
    # Legacy import
    # ------------------------------------------------------------------

    def import_rows(self, scope_id: str, rows: Iterable[Dict[str, Any]]) -> List[str]:
        """
        Load legacy buyer rows (dicts keyed by LegacyBuyer column, e.g. from
        read_legacy_csv) into the deal. Returns the new row ids.
        """
        if self.session.get(Deal, scope_id) is None:
            raise RecordNotFoundError(f"Deal {scope_id} not found", record_ids=[scope_id])

        columns = set(LEGACY_CSV_HEADERS.values())
        ids = []
        with transaction(self.session):
            for i, data in enumerate(rows):
                unknown = set(data) - columns
                if unknown:
                    raise ValidationError(f"Row {i}: unknown legacy columns {sorted(unknown)}")
                row = LegacyBuyer(
                    deal_id=scope_id,
                    source_row=i,
                    **{k: v for k, v in data.items() if v not in (None, "")},
                )
                self.session.add(row)
                self.session.flush()
                ids.append(row.id)

        logger.info(f"Imported {len(ids)} legacy buyer rows into deal {scope_id}")
        return ids

    # ------------------------------------------------------------------
    # Misc
    # ------------------------------------------------------------------

    def _legacy_rows(self, scope_id: str) -> List[LegacyBuyer]:
        return (
            self.session.query(LegacyBuyer)
            .filter(LegacyBuyer.deal_id == scope_id)
            .order_by(LegacyBuyer.created_at, LegacyBuyer.source_row, LegacyBuyer.id)
            .all()
        )

    @staticmethod
    def _coerce_options(options) -> MigrationOptions:
        if options is None:
            return MigrationOptions()
        if isinstance(options, MigrationOptions):
            return options
        try:
            return MigrationOptions.model_validate(options)
        except PydanticValidationError as e:
            raise ValidationError(
                "Invalid migration options",
                details={"errors": [f"{'.'.join(map(str, err['loc']))}: {err['msg']}" for err in e.errors()]},
            ) from e

    @staticmethod
    def _raise_blocking(scope_id: str, readiness: ReadinessResult) -> None:
        for issue in readiness.blocking_issues:
            if issue.code == "deal_not_found":
                raise RecordNotFoundError(issue.message, record_ids=[scope_id])
            if issue.code == "already_migrated":
                raise ScopeAlreadyMigratedError(issue.message, record_ids=[scope_id])
            raise ConflictError(issue.message, record_ids=[scope_id], code=issue.code)
