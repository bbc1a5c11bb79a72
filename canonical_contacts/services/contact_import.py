"""
Contact import: parse -> match -> link / create / queue for review.

Runs the whole data flow for a piece of pasted or uploaded contact input in a
single transaction. Companies are resolved first so people can be attached
to their employer. A fragment whose keys (domain, name, email, LinkedIn URL)
were already resolved earlier in the same input reuses that record.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from sqlalchemy.orm import Session

from canonical_contacts.core.database import transaction
from canonical_contacts.core.errors import ValidationError
from canonical_contacts.core.models import DataQuality, EntityType
from canonical_contacts.matching.fuzzy_matcher import (
    email_domain,
    normalize_company_name,
    normalize_domain,
)
from canonical_contacts.parsing.smart_parser import CompanyFragment, PersonFragment, parse
from canonical_contacts.services.canonical_records import new_company, new_person
from canonical_contacts.services.duplicate_queue import DuplicateQueue
from canonical_contacts.services.match_engine import (
    CompanyProbe,
    MatchConfig,
    MatchEngine,
    MatchResult,
    PersonProbe,
    SuggestedAction,
    coerce_probe,
)

logger = logging.getLogger(__name__)

# (kind, key, ...) -> record id resolved earlier in the same input
KeyIndex = Dict[tuple, str]


@dataclass
class ImportOutcome:
    entity_type: EntityType
    action: str  # linked | created | review | skipped
    record_id: Optional[str] = None
    label: str = ""
    candidate_ids: List[str] = field(default_factory=list)
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity_type": self.entity_type.value,
            "action": self.action,
            "record_id": self.record_id,
            "label": self.label,
            "candidate_ids": self.candidate_ids,
            "reason": self.reason,
        }


@dataclass
class ImportResult:
    format: str
    dry_run: bool
    outcomes: List[ImportOutcome] = field(default_factory=list)

    @property
    def counts(self) -> Dict[str, int]:
        counts = {"linked": 0, "created": 0, "review": 0, "skipped": 0}
        for outcome in self.outcomes:
            counts[outcome.action] += 1
        return counts

    def to_dict(self) -> Dict[str, Any]:
        return {
            "format": self.format,
            "dry_run": self.dry_run,
            "counts": self.counts,
            "outcomes": [o.to_dict() for o in self.outcomes],
        }


class ContactImporter:
    """Turns parsed contact input into canonical records."""

    def __init__(self, session: Session, config: Optional[MatchConfig] = None):
        self.session = session
        self.engine = MatchEngine(session, config)
        self.queue = DuplicateQueue(session, self.engine.config)

    def import_text(self, raw: Union[str, bytes], actor_id: str = "system", dry_run: bool = False) -> ImportResult:
        parsed = parse(raw)
        result = ImportResult(format=parsed.format.value, dry_run=dry_run)
        if parsed.is_empty:
            return result

        if dry_run:
            self._import(parsed.companies, parsed.people, result, dry_run=True)
        else:
            with transaction(self.session):
                self._import(parsed.companies, parsed.people, result, dry_run=False)

        logger.info(
            f"Contact import {'(dry run) ' if dry_run else ''}by {actor_id}: {result.counts}"
        )
        return result

    def _import(self, companies: List[CompanyFragment], people: List[PersonFragment], result: ImportResult, dry_run: bool) -> None:
        employers: Dict[str, str] = {}  # normalized name or domain -> company id
        index: KeyIndex = {}
        for i, fragment in enumerate(companies):
            outcome = self._import_company(i, fragment, index, dry_run)
            result.outcomes.append(outcome)
            if outcome.record_id:
                if fragment.name:
                    employers[normalize_company_name(fragment.name)] = outcome.record_id
                domain = normalize_domain(fragment.domain or fragment.website)
                if domain:
                    employers.setdefault(domain, outcome.record_id)

        for i, fragment in enumerate(people):
            employer_id = None
            if fragment.company:
                employer_id = employers.get(normalize_company_name(fragment.company))
            if employer_id is None and fragment.email:
                employer_id = employers.get(email_domain(fragment.email) or "")
            result.outcomes.append(self._import_person(i, fragment, employer_id, index, dry_run))

    def _import_company(self, position: int, fragment: CompanyFragment, index: KeyIndex, dry_run: bool) -> ImportOutcome:
        label = fragment.name or fragment.domain or fragment.linkedin_url or ""
        try:
            probe = coerce_probe(CompanyProbe, fragment.to_probe())
        except ValidationError as e:
            return ImportOutcome(EntityType.COMPANY, "skipped", label=label, reason=e.message)

        keys = _company_keys(probe)
        known = _lookup(keys, index)
        if known:
            return ImportOutcome(EntityType.COMPANY, "linked", known, label)

        match = self.engine.find_company_matches(probe)
        if match.suggested_action == SuggestedAction.LINK_EXISTING:
            _remember(keys, match.top.record_id, index)
            return ImportOutcome(EntityType.COMPANY, "linked", match.top.record_id, label)
        if not fragment.name:
            # Nothing to name a new company with
            return ImportOutcome(EntityType.COMPANY, "skipped", label=label, reason="no company name")

        if dry_run:
            record_id = f"dry-run:company:{position}"
        else:
            record_id = new_company(
                self.session,
                fragment.name,
                domain=fragment.domain,
                website=fragment.website,
                linkedin_url=fragment.linkedin_url,
                data_quality=DataQuality.PROVISIONAL,
            ).id
        _remember(keys, record_id, index)
        return self._created(EntityType.COMPANY, record_id, label, match, dry_run)

    def _import_person(
        self, position: int, fragment: PersonFragment, employer_id: Optional[str], index: KeyIndex, dry_run: bool
    ) -> ImportOutcome:
        label = fragment.full_name or fragment.email or fragment.linkedin_url or ""
        try:
            probe = coerce_probe(PersonProbe, fragment.to_probe())
        except ValidationError as e:
            return ImportOutcome(EntityType.PERSON, "skipped", label=label, reason=e.message)

        keys = _person_keys(probe, employer_id)
        known = _lookup(keys, index)
        if known:
            return ImportOutcome(EntityType.PERSON, "linked", known, label)

        match = self.engine.find_person_matches(probe)
        if match.suggested_action == SuggestedAction.LINK_EXISTING:
            _remember(keys, match.top.record_id, index)
            return ImportOutcome(EntityType.PERSON, "linked", match.top.record_id, label)

        if dry_run:
            record_id = f"dry-run:person:{position}"
        else:
            try:
                person = new_person(
                    self.session,
                    first_name=fragment.first_name,
                    last_name=fragment.last_name,
                    email=fragment.email,
                    phone=fragment.phone,
                    linkedin_url=fragment.linkedin_url,
                    current_title=fragment.title,
                    current_company_id=employer_id,
                )
            except ValidationError as e:
                return ImportOutcome(EntityType.PERSON, "skipped", label=label, reason=e.message)
            record_id = person.id
        _remember(keys, record_id, index)
        return self._created(EntityType.PERSON, record_id, label, match, dry_run)

    def _created(self, entity_type: EntityType, record_id: str, label: str, match: MatchResult, dry_run: bool) -> ImportOutcome:
        if match.suggested_action != SuggestedAction.REVIEW:
            return ImportOutcome(entity_type, "created", record_id, label)

        candidate_ids = []
        for candidate in match.candidates:
            if candidate.score < self.engine.config.review_floor:
                continue
            if dry_run:
                candidate_ids.append(f"dry-run:candidate:{candidate.record_id}")
            else:
                candidate_ids.append(
                    self.queue.enqueue(entity_type, record_id, candidate.record_id, candidate.signals, candidate.score)
                )
        return ImportOutcome(entity_type, "review", record_id, label, candidate_ids)


def _company_keys(probe: CompanyProbe) -> List[tuple]:
    domain = probe.normalized_domain
    keys = []
    if domain:
        keys.append(("company", "domain", domain))
    if probe.normalized_linkedin:
        keys.append(("company", "linkedin", probe.normalized_linkedin))
    if probe.normalized_name:
        keys.append(("company", "name", probe.normalized_name, domain))
    return keys


def _person_keys(probe: PersonProbe, employer_id: Optional[str]) -> List[tuple]:
    keys = []
    if probe.normalized_email:
        keys.append(("person", "email", probe.normalized_email))
    if probe.normalized_linkedin:
        keys.append(("person", "linkedin", probe.normalized_linkedin))
    if probe.normalized_name:
        keys.append(("person", "name", probe.normalized_name, employer_id))
    return keys


def _lookup(keys: List[tuple], index: KeyIndex) -> Optional[str]:
    for key in keys:
        if key in index:
            return index[key]
    return None


def _remember(keys: List[tuple], record_id: str, index: KeyIndex) -> None:
    for key in keys:
        index.setdefault(key, record_id)
