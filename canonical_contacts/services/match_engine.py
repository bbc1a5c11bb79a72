"""
Match Engine.

Given a partial identity descriptor (a probe), searches the canonical store
and returns ranked candidates plus one suggested action.

Tier 1 (deterministic): exact strong-key lookup. Email for people, domain for
companies (including domains absorbed by merges), LinkedIn URL for both. A key that resolves to exactly one active
record links to it; keys resolving to several records are ambiguous and go
to review.

Tier 2 (fuzzy): normalized-name equality or near equality, raised by
corroborating signals:

    signal                  company   person
    name exact              0.80      0.60
    name near-exact         0.80*r    0.60*r   (r = Levenshtein ratio)
    nickname                -         0.55
    shared domain fragment  +0.15     -
    shared employer         -         +0.25
    shared email domain     -         +0.10
    same title              -         +0.05

The top score picks the action: >= link threshold links, >= review floor
needs review, anything lower creates a new record. Ranking is by
(-score, record id) so it depends on nothing but the probe and stored rows.
The engine never writes.
"""

import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, ValidationError as PydanticValidationError, model_validator
from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from canonical_contacts.core.config import Settings, get_settings
from canonical_contacts.core.contact_models import CanonicalCompany, CanonicalDomain, CanonicalPerson
from canonical_contacts.core.errors import ValidationError
from canonical_contacts.core.models import EntityType
from canonical_contacts.matching.fuzzy_matcher import (
    CompanyNameMatcher,
    domain_fragment,
    email_domain,
    is_free_mail_domain,
    normalize_company_name,
    normalize_domain,
    normalize_email,
    normalize_linkedin_url,
)
from canonical_contacts.matching.person_matcher import PersonNameMatcher, normalize_person_name

logger = logging.getLogger(__name__)


class SuggestedAction(str, enum.Enum):
    """What the caller should do with the probe."""
    CREATE_NEW = "CREATE_NEW"
    LINK_EXISTING = "LINK_EXISTING"
    REVIEW = "REVIEW"


STRONG_KEY_SCORE = 0.99

COMPANY_NAME_EXACT = 0.80
PERSON_NAME_EXACT = 0.60
PERSON_NICKNAME = 0.55

DOMAIN_FRAGMENT_BONUS = 0.15
SHARED_EMPLOYER_BONUS = 0.25
EMAIL_DOMAIN_BONUS = 0.10
SAME_TITLE_BONUS = 0.05

# Pair scores used by batch detection when two stored records share a strong key
PAIR_EMAIL_SCORE = 0.99
PAIR_STRONG_KEY_SCORE = 0.95

NAME_PREFIX_LENGTH = 3


# =============================================================================
# CONFIG & PROBES
# =============================================================================

@dataclass(frozen=True)
class MatchConfig:
    """Confidence bands and lookup limits. Both band boundaries are configuration."""

    link_threshold: float = 0.95
    review_floor: float = 0.50
    fuzzy_name_threshold: float = 0.90
    candidate_limit: int = 100

    def __post_init__(self):
        if not 0.0 <= self.review_floor < self.link_threshold <= 1.0:
            raise ValidationError(
                "review_floor must be below link_threshold and both within [0, 1]",
                details={"review_floor": self.review_floor, "link_threshold": self.link_threshold},
            )

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "MatchConfig":
        settings = settings or get_settings()
        return cls(
            link_threshold=settings.match_link_threshold,
            review_floor=settings.match_review_floor,
            fuzzy_name_threshold=settings.fuzzy_name_threshold,
            candidate_limit=settings.match_candidate_limit,
        )

    def action_for(self, score: float) -> SuggestedAction:
        if score >= self.link_threshold:
            return SuggestedAction.LINK_EXISTING
        if score >= self.review_floor:
            return SuggestedAction.REVIEW
        return SuggestedAction.CREATE_NEW


class CompanyProbe(BaseModel):
    """Whatever is known about a company."""

    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid", frozen=True)

    name: Optional[str] = None
    domain: Optional[str] = None
    website: Optional[str] = None
    linkedin_url: Optional[str] = None

    @model_validator(mode="after")
    def require_identifier(self) -> "CompanyProbe":
        if not any((self.name, self.domain, self.website, self.linkedin_url)):
            raise ValueError("company probe needs a name, domain, website or linkedin_url")
        return self

    @property
    def normalized_name(self) -> str:
        return normalize_company_name(self.name)

    @property
    def normalized_domain(self) -> Optional[str]:
        return normalize_domain(self.domain) or normalize_domain(self.website)

    @property
    def normalized_linkedin(self) -> Optional[str]:
        return normalize_linkedin_url(self.linkedin_url)


class PersonProbe(BaseModel):
    """Whatever is known about a person. employer_name and title only corroborate."""

    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid", frozen=True)

    first_name: Optional[str] = None
    last_name: Optional[str] = None
    full_name: Optional[str] = None
    email: Optional[str] = None
    linkedin_url: Optional[str] = None
    employer_name: Optional[str] = None
    title: Optional[str] = None

    @model_validator(mode="after")
    def require_identifier(self) -> "PersonProbe":
        if not any((self.first_name, self.last_name, self.full_name, self.email, self.linkedin_url)):
            raise ValueError("person probe needs a name, email or linkedin_url")
        return self

    @property
    def normalized_name(self) -> str:
        if self.first_name or self.last_name:
            return normalize_person_name(self.first_name, self.last_name)
        return PersonNameMatcher.normalize_name(self.full_name or "")

    @property
    def normalized_email(self) -> Optional[str]:
        return normalize_email(self.email)

    @property
    def normalized_linkedin(self) -> Optional[str]:
        return normalize_linkedin_url(self.linkedin_url)


def coerce_probe(model, probe: Union[BaseModel, Dict[str, Any]]):
    """Accept a probe instance or a dict; malformed input is a validation error."""
    if isinstance(probe, model):
        return probe
    if isinstance(probe, BaseModel):
        probe = probe.model_dump()
    if not isinstance(probe, dict):
        raise ValidationError(f"{model.__name__} expected, got {type(probe).__name__}")
    try:
        return model.model_validate(probe)
    except PydanticValidationError as e:
        raise ValidationError(
            f"Invalid {model.__name__}",
            details={"errors": [f"{'.'.join(map(str, err['loc']))}: {err['msg']}" for err in e.errors()]},
        ) from e


# =============================================================================
# RESULTS
# =============================================================================

@dataclass
class MatchSignal:
    signal: str
    weight: float
    detail: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"signal": self.signal, "weight": self.weight, "detail": self.detail}


@dataclass
class MatchCandidate:
    record_id: str
    score: float
    display_name: str
    signals: List[MatchSignal] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "record_id": self.record_id,
            "score": self.score,
            "display_name": self.display_name,
            "signals": [s.to_dict() for s in self.signals],
        }


@dataclass
class MatchResult:
    entity_type: EntityType
    suggested_action: SuggestedAction
    candidates: List[MatchCandidate] = field(default_factory=list)
    tier: int = 0  # 1 strong key, 2 fuzzy, 0 nothing found

    @property
    def top(self) -> Optional[MatchCandidate]:
        return self.candidates[0] if self.candidates else None

    @property
    def top_score(self) -> float:
        return self.candidates[0].score if self.candidates else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity_type": self.entity_type.value,
            "suggested_action": self.suggested_action.value,
            "tier": self.tier,
            "candidates": [c.to_dict() for c in self.candidates],
        }


@dataclass
class PairScore:
    """Similarity of two stored records (batch detection)."""
    confidence: float
    signals: List[MatchSignal]


# =============================================================================
# ENGINE
# =============================================================================

class MatchEngine:
    """Read-only matcher over the canonical store."""

    def __init__(self, session: Session, config: Optional[MatchConfig] = None):
        self.session = session
        self.config = config or MatchConfig.from_settings()
        self.company_matcher = CompanyNameMatcher(self.config.fuzzy_name_threshold)
        self.person_matcher = PersonNameMatcher(self.config.fuzzy_name_threshold)

    # ------------------------------------------------------------------
    # Companies
    # ------------------------------------------------------------------

    def find_company_matches(self, probe: Union[CompanyProbe, Dict[str, Any]]) -> MatchResult:
        probe = coerce_probe(CompanyProbe, probe)

        hits: Dict[str, Tuple[CanonicalCompany, List[MatchSignal]]] = {}
        domain = probe.normalized_domain
        if domain:
            for record in self._companies_with_domain(domain):
                hits.setdefault(record.id, (record, []))[1].append(
                    MatchSignal("DOMAIN_EXACT", STRONG_KEY_SCORE, f"Domain {domain} matches exactly")
                )
        linkedin = probe.normalized_linkedin
        if linkedin:
            for record in self._active(CanonicalCompany).filter(CanonicalCompany.linkedin_url == linkedin):
                hits.setdefault(record.id, (record, []))[1].append(
                    MatchSignal("LINKEDIN_EXACT", STRONG_KEY_SCORE, "LinkedIn URL matches exactly")
                )
        if hits:
            return self._strong_result(EntityType.COMPANY, hits)

        candidates = []
        norm = probe.normalized_name
        if norm:
            fragment = domain_fragment(domain)
            for record in self._name_pool(CanonicalCompany, norm):
                candidate = self._score_company_name(norm, fragment, record)
                if candidate:
                    candidates.append(candidate)

        return self._ranked_result(EntityType.COMPANY, candidates)

    def _companies_with_domain(self, domain: str) -> List[CanonicalCompany]:
        """Active companies holding the domain directly or through canonical_domains."""
        owners = select(CanonicalDomain.company_id).where(CanonicalDomain.domain == domain)
        return (
            self._active(CanonicalCompany)
            .filter(or_(CanonicalCompany.domain == domain, CanonicalCompany.id.in_(owners)))
            .order_by(CanonicalCompany.id)
            .all()
        )

    def _score_company_name(
        self, norm: str, fragment: Optional[str], record: CanonicalCompany
    ) -> Optional[MatchCandidate]:
        score, signals = self._company_name_signals(norm, record.normalized_name)
        if not signals:
            return None

        record_fragment = domain_fragment(record.domain or record.website)
        if fragment and fragment == record_fragment:
            score += DOMAIN_FRAGMENT_BONUS
            signals.append(MatchSignal("DOMAIN_FRAGMENT", DOMAIN_FRAGMENT_BONUS, f"Shared domain fragment {fragment!r}"))

        return MatchCandidate(record.id, round(min(score, 1.0), 4), record.name, signals)

    def _company_name_signals(self, norm_a: str, norm_b: str) -> Tuple[float, List[MatchSignal]]:
        match = self.company_matcher.compare_normalized(norm_a, norm_b)
        if not match.matched:
            return 0.0, []
        if match.exact:
            return COMPANY_NAME_EXACT, [
                MatchSignal("NAME_EXACT", COMPANY_NAME_EXACT, f"Normalized name {norm_a!r} matches exactly")
            ]
        weight = round(COMPANY_NAME_EXACT * match.similarity, 4)
        return weight, [MatchSignal("NAME_FUZZY", weight, f"Name similarity {match.similarity:.0%}")]

    # ------------------------------------------------------------------
    # People
    # ------------------------------------------------------------------

    def find_person_matches(self, probe: Union[PersonProbe, Dict[str, Any]]) -> MatchResult:
        probe = coerce_probe(PersonProbe, probe)

        hits: Dict[str, Tuple[CanonicalPerson, List[MatchSignal]]] = {}
        email = probe.normalized_email
        if email:
            for record in self._active(CanonicalPerson).filter(CanonicalPerson.email == email):
                hits.setdefault(record.id, (record, []))[1].append(
                    MatchSignal("EMAIL_EXACT", STRONG_KEY_SCORE, f"Email {email} matches exactly")
                )
        linkedin = probe.normalized_linkedin
        if linkedin:
            for record in self._active(CanonicalPerson).filter(CanonicalPerson.linkedin_url == linkedin):
                hits.setdefault(record.id, (record, []))[1].append(
                    MatchSignal("LINKEDIN_EXACT", STRONG_KEY_SCORE, "LinkedIn URL matches exactly")
                )
        if hits:
            return self._strong_result(EntityType.PERSON, hits)

        candidates = []
        norm = probe.normalized_name
        if norm:
            employer_ids = self._employer_ids(probe.employer_name)
            probe_email_domain = email_domain(email)
            for record in self._person_pool(norm):
                candidate = self._score_person(probe, norm, record, employer_ids, probe_email_domain)
                if candidate:
                    candidates.append(candidate)

        return self._ranked_result(EntityType.PERSON, candidates)

    def _score_person(
        self,
        probe: PersonProbe,
        norm: str,
        record: CanonicalPerson,
        employer_ids: set,
        probe_email_domain: Optional[str],
    ) -> Optional[MatchCandidate]:
        score, signals = self._person_name_signals(norm, record.normalized_name)
        if not signals:
            return None

        if record.current_company_id and record.current_company_id in employer_ids:
            score += SHARED_EMPLOYER_BONUS
            signals.append(MatchSignal("SHARED_EMPLOYER", SHARED_EMPLOYER_BONUS, f"Both at {probe.employer_name}"))

        if (
            probe_email_domain
            and not is_free_mail_domain(probe_email_domain)
            and probe_email_domain == email_domain(record.email)
        ):
            score += EMAIL_DOMAIN_BONUS
            signals.append(MatchSignal("EMAIL_DOMAIN", EMAIL_DOMAIN_BONUS, f"Same email domain {probe_email_domain}"))

        if _same_title(probe.title, record.current_title):
            score += SAME_TITLE_BONUS
            signals.append(MatchSignal("SAME_TITLE", SAME_TITLE_BONUS, f"Same title {record.current_title!r}"))

        return MatchCandidate(record.id, round(min(score, 1.0), 4), record.full_name, signals)

    def _person_name_signals(self, norm_a: str, norm_b: str) -> Tuple[float, List[MatchSignal]]:
        match = self.person_matcher.compare_normalized(norm_a, norm_b)
        if not match.matched:
            return 0.0, []
        if match.match_type == "name_exact":
            return PERSON_NAME_EXACT, [MatchSignal("NAME_EXACT", PERSON_NAME_EXACT, "Normalized name matches")]
        if match.match_type == "nickname_match":
            return PERSON_NICKNAME, [MatchSignal("NAME_NICKNAME", PERSON_NICKNAME, match.notes or "")]
        weight = round(PERSON_NAME_EXACT * match.similarity, 4)
        return weight, [MatchSignal("NAME_FUZZY", weight, f"Name similarity {match.similarity:.0%}")]

    def _employer_ids(self, employer_name: Optional[str]) -> set:
        norm = normalize_company_name(employer_name)
        if not norm:
            return set()
        rows = (
            self._active(CanonicalCompany)
            .filter(CanonicalCompany.normalized_name == norm)
            .with_entities(CanonicalCompany.id)
            .all()
        )
        return {row[0] for row in rows}

    # ------------------------------------------------------------------
    # Pair scoring (batch detection)
    # ------------------------------------------------------------------

    def score_company_pair(self, a: CanonicalCompany, b: CanonicalCompany) -> Optional[PairScore]:
        confidence = 0.0
        signals = []

        if a.domain and a.domain == b.domain:
            confidence = max(confidence, PAIR_STRONG_KEY_SCORE)
            signals.append(MatchSignal("DOMAIN_EXACT", PAIR_STRONG_KEY_SCORE, f"Shared domain {a.domain}"))
        if a.linkedin_url and a.linkedin_url == b.linkedin_url:
            confidence = max(confidence, PAIR_STRONG_KEY_SCORE)
            signals.append(MatchSignal("LINKEDIN_EXACT", PAIR_STRONG_KEY_SCORE, "Shared LinkedIn URL"))

        name_score, name_signals = self._company_name_signals(a.normalized_name, b.normalized_name)
        if name_signals:
            fragment = domain_fragment(a.domain or a.website)
            if fragment and fragment == domain_fragment(b.domain or b.website) and a.domain != b.domain:
                name_score += DOMAIN_FRAGMENT_BONUS
                name_signals.append(MatchSignal("DOMAIN_FRAGMENT", DOMAIN_FRAGMENT_BONUS, f"Shared domain fragment {fragment!r}"))
            confidence = max(confidence, name_score)
            signals.extend(name_signals)

        if not signals:
            return None
        return PairScore(round(min(confidence, 1.0), 4), signals)

    def score_person_pair(self, a: CanonicalPerson, b: CanonicalPerson) -> Optional[PairScore]:
        confidence = 0.0
        signals = []

        if a.email and a.email == b.email:
            confidence = max(confidence, PAIR_EMAIL_SCORE)
            signals.append(MatchSignal("EMAIL_EXACT", PAIR_EMAIL_SCORE, f"Shared email {a.email}"))
        if a.linkedin_url and a.linkedin_url == b.linkedin_url:
            confidence = max(confidence, PAIR_STRONG_KEY_SCORE)
            signals.append(MatchSignal("LINKEDIN_EXACT", PAIR_STRONG_KEY_SCORE, "Shared LinkedIn URL"))

        name_score, name_signals = self._person_name_signals(a.normalized_name, b.normalized_name)
        if name_signals:
            if a.current_company_id and a.current_company_id == b.current_company_id:
                name_score += SHARED_EMPLOYER_BONUS
                name_signals.append(MatchSignal("SHARED_EMPLOYER", SHARED_EMPLOYER_BONUS, "Same current employer"))
            domain_a = email_domain(a.email)
            if domain_a and not is_free_mail_domain(domain_a) and domain_a == email_domain(b.email) and a.email != b.email:
                name_score += EMAIL_DOMAIN_BONUS
                name_signals.append(MatchSignal("EMAIL_DOMAIN", EMAIL_DOMAIN_BONUS, f"Same email domain {domain_a}"))
            if _same_title(a.current_title, b.current_title):
                name_score += SAME_TITLE_BONUS
                name_signals.append(MatchSignal("SAME_TITLE", SAME_TITLE_BONUS, "Same title"))
            confidence = max(confidence, name_score)
            signals.extend(name_signals)

        if not signals:
            return None
        return PairScore(round(min(confidence, 1.0), 4), signals)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _active(self, model):
        return self.session.query(model).filter(model.merged_into_id.is_(None))

    def _name_pool(self, model, norm: str) -> List[Any]:
        """
        Exact-name records plus up to candidate_limit records sharing the
        name prefix. Exact matches are never cut by the limit.
        """
        pool = {
            r.id: r for r in self._active(model).filter(model.normalized_name == norm).order_by(model.id)
        }
        prefixed = (
            self._active(model)
            .filter(model.normalized_name.startswith(norm[:NAME_PREFIX_LENGTH], autoescape=True))
            .order_by(model.id)
            .limit(self.config.candidate_limit)
            .all()
        )
        for record in prefixed:
            pool.setdefault(record.id, record)
        return [pool[k] for k in sorted(pool)]

    def _person_pool(self, norm: str) -> List[CanonicalPerson]:
        """Prefix pool plus people sharing the last name token (nicknames)."""
        pool = {p.id: p for p in self._name_pool(CanonicalPerson, norm)}
        tokens = norm.split()
        if len(tokens) > 1:
            same_last = (
                self._active(CanonicalPerson)
                .filter(CanonicalPerson.normalized_name.endswith(f" {tokens[-1]}", autoescape=True))
                .order_by(CanonicalPerson.id)
                .limit(self.config.candidate_limit)
                .all()
            )
            for person in same_last:
                pool.setdefault(person.id, person)
        return [pool[k] for k in sorted(pool)]

    def _strong_result(self, entity_type: EntityType, hits: Dict[str, Tuple[Any, List[MatchSignal]]]) -> MatchResult:
        candidates = sorted(
            (
                MatchCandidate(
                    record_id=record_id,
                    score=STRONG_KEY_SCORE,
                    display_name=record.name if entity_type == EntityType.COMPANY else record.full_name,
                    signals=signals,
                )
                for record_id, (record, signals) in hits.items()
            ),
            key=lambda c: c.record_id,
        )
        action = SuggestedAction.LINK_EXISTING if len(candidates) == 1 else SuggestedAction.REVIEW
        logger.debug(f"{entity_type.value} strong-key match: {len(candidates)} hit(s) -> {action.value}")
        return MatchResult(entity_type, action, candidates, tier=1)

    def _ranked_result(self, entity_type: EntityType, candidates: List[MatchCandidate]) -> MatchResult:
        candidates.sort(key=lambda c: (-c.score, c.record_id))
        if not candidates:
            logger.debug(f"{entity_type.value} probe: no candidates -> CREATE_NEW")
            return MatchResult(entity_type, SuggestedAction.CREATE_NEW, [], tier=0)

        action = self.config.action_for(candidates[0].score)
        logger.debug(
            f"{entity_type.value} fuzzy match: top {candidates[0].record_id} "
            f"score={candidates[0].score} -> {action.value}"
        )
        return MatchResult(entity_type, action, candidates, tier=2)


def _same_title(a: Optional[str], b: Optional[str]) -> bool:
    if not a or not b:
        return False
    return " ".join(a.lower().split()) == " ".join(b.lower().split())
