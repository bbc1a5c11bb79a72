"""
Smart Parser.

Turns unstructured contact input into draft person/company fragments plus
deduplicated atomic extractions (emails, phones, URLs, social profiles,
domains). Three input shapes are recognised from content alone:

- vcard: payload contains a BEGIN:VCARD sentinel
- bulk: several blank-line separated blocks, or comma-delimited rows
- freeform: anything else (email signature, pasted text, a bare URL)

Fragments carry only what was extracted with confidence. Nothing is
invented: no person name from an email local part, no company name from a
domain or a LinkedIn slug. Unparseable input yields an empty result, never
an exception; only reading a file can fail.
"""

import csv
import enum
import io
import logging
import re
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from canonical_contacts.core.errors import ParseIOError
from canonical_contacts.matching.fuzzy_matcher import (
    is_free_mail_domain,
    normalize_domain,
    normalize_email,
    normalize_linkedin_url,
)

logger = logging.getLogger(__name__)


class InputFormat(str, enum.Enum):
    FREEFORM = "freeform"
    VCARD = "vcard"
    BULK = "bulk"


# =============================================================================
# PATTERNS
# =============================================================================

EMAIL_RE = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")

PHONE_RE = re.compile(r"(?:\+?1[-.\s]?)?(?:\(?[0-9]{3}\)?[-.\s]?)?[0-9]{3}[-.\s]?[0-9]{4}")

LINKEDIN_RE = re.compile(
    r"(?:https?://)?(?:www\.)?linkedin\.com/(?:in|company)/[a-zA-Z0-9_-]+/?",
    re.IGNORECASE,
)

URL_RE = re.compile(r"(?:https?://|www\.)[^\s<>\"{}|\\^`\[\]]+", re.IGNORECASE)

TITLE_RE = re.compile(
    r"\b(CEO|CFO|COO|CTO|CIO|CMO|CSO|CPO|CDO|CRO|CHRO|CLO|Partner|Principal|"
    r"Managing Director|Director|VP|Vice President|SVP|EVP|AVP|President|Chairman|"
    r"Founder|Co-Founder|Owner|Manager|Head of|Chief|Senior|Associate|Analyst|"
    r"Consultant|Advisor|Board Member)\b",
    re.IGNORECASE,
)

COMPANY_SUFFIX_RE = re.compile(
    r"\b(Inc\.?|Incorporated|Corp\.?|Corporation|LLC|LLP|Ltd\.?|Limited|Co\.|Company|"
    r"Group|Holdings?|Partners|LP|GP|Capital|Ventures?|Investments?|Management|"
    r"Advisory|Consulting|Services|Solutions|Technologies|Tech)(?=\W|$)",
    re.IGNORECASE,
)

FIELD_LABEL_RE = re.compile(
    r"^\s*(e-?mail|email|phone|tel|mobile|cell|fax|office|direct|web|website|linkedin|[tmef])\s*[:.]\s*",
    re.IGNORECASE,
)

SEGMENT_SPLIT_RE = re.compile(r"\s*[|•·]\s*|\s+[—–-]\s+|\s+at\s+")

FILLER_WORDS = frozenset({
    "the", "a", "an", "and", "or", "at", "in", "on", "for", "to", "of",
    "email", "phone", "tel", "mobile", "cell", "fax", "office", "direct",
    "sent", "from", "my", "best", "regards", "sincerely", "thanks", "thank",
    "you", "www", "http", "https", "com", "org", "net", "io", "cheers",
})

NAME_SUFFIXES = frozenset({"jr", "jr.", "sr", "sr.", "ii", "iii", "iv", "phd", "md", "esq", "esq."})

# Bulk CSV header aliases -> fragment field
HEADER_ALIASES = {
    "name": "full_name",
    "full name": "full_name",
    "contact": "full_name",
    "contact name": "full_name",
    "first name": "first_name",
    "firstname": "first_name",
    "given name": "first_name",
    "last name": "last_name",
    "lastname": "last_name",
    "surname": "last_name",
    "family name": "last_name",
    "email": "email",
    "e-mail": "email",
    "email address": "email",
    "contact email": "email",
    "company": "company",
    "company name": "company",
    "organization": "company",
    "organisation": "company",
    "employer": "company",
    "title": "title",
    "job title": "title",
    "position": "title",
    "role": "title",
    "phone": "phone",
    "phone number": "phone",
    "mobile": "phone",
    "contact phone": "phone",
    "linkedin": "linkedin_url",
    "linkedin url": "linkedin_url",
    "linkedin profile": "linkedin_url",
    "website": "website",
    "web": "website",
    "url": "website",
    "domain": "website",
}


# =============================================================================
# RESULT TYPES
# =============================================================================

@dataclass
class PersonFragment:
    """Draft person. Unknown fields stay None."""

    first_name: Optional[str] = None
    last_name: Optional[str] = None
    full_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    title: Optional[str] = None
    company: Optional[str] = None
    linkedin_url: Optional[str] = None
    confidence: float = 0.0
    source: str = "text"

    def to_probe(self) -> Dict[str, Any]:
        """Fields understood by the match engine's person probe."""
        return {
            "first_name": self.first_name,
            "last_name": self.last_name,
            "full_name": self.full_name,
            "email": self.email,
            "linkedin_url": self.linkedin_url,
            "employer_name": self.company,
            "title": self.title,
        }


@dataclass
class CompanyFragment:
    """Draft company. name is None when only a domain or profile was seen."""

    name: Optional[str] = None
    domain: Optional[str] = None
    website: Optional[str] = None
    linkedin_url: Optional[str] = None
    confidence: float = 0.0
    source: str = "text"

    def to_probe(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "domain": self.domain,
            "website": self.website,
            "linkedin_url": self.linkedin_url,
        }


@dataclass
class ParseResult:
    format: InputFormat
    raw: str
    people: List[PersonFragment] = field(default_factory=list)
    companies: List[CompanyFragment] = field(default_factory=list)
    emails: List[str] = field(default_factory=list)
    phones: List[str] = field(default_factory=list)
    urls: List[str] = field(default_factory=list)
    social_urls: List[str] = field(default_factory=list)
    domains: List[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (
            self.people or self.companies or self.emails or self.phones
            or self.urls or self.social_urls or self.domains
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["format"] = self.format.value
        return data


@dataclass
class LinkedInRef:
    kind: str  # person | company | unknown
    identifier: Optional[str]


# =============================================================================
# HELPERS
# =============================================================================

def _unique(values: Iterable[Optional[str]]) -> List[str]:
    """Order-preserving set union, skipping empties."""
    seen = set()
    out = []
    for value in values:
        if value and value not in seen:
            seen.add(value)
            out.append(value)
    return out


def _clean(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip(" \t,;")


def _decode(raw: Union[str, bytes, None]) -> str:
    if raw is None:
        return ""
    if isinstance(raw, bytes):
        try:
            return raw.decode("utf-8-sig")
        except UnicodeDecodeError:
            return raw.decode("latin-1")
    return raw


def split_full_name(full_name: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """
    Split a display name into (first, last), dropping suffixes and middle names.

    "Jane Q. Doe Jr." -> ("Jane", "Doe"); "Madonna" -> ("Madonna", None)
    """
    if not full_name:
        return None, None

    text = _clean(full_name)
    if "," in text:
        # "Doe, Jane" unless the part after the comma is only a suffix
        last, _, rest = text.partition(",")
        if rest.strip() and rest.strip().lower() not in NAME_SUFFIXES:
            text = f"{rest.strip()} {last.strip()}"
        else:
            text = last

    parts = [p for p in text.split(" ") if p]
    filtered = [p for p in parts if p.lower() not in NAME_SUFFIXES] or parts[:1]

    if not filtered:
        return None, None
    if len(filtered) == 1:
        return filtered[0], None
    return filtered[0], filtered[-1]


LEGAL_TAIL_RE = re.compile(r"^(inc|llc|llp|ltd|corp|co|lp|plc|jr|sr|ii|iii|iv|phd|md|esq)\.?$", re.IGNORECASE)


def _segments(line: str) -> List[str]:
    """
    Split a signature line into fields on separators and commas.

    A comma piece that is only a legal or name suffix stays attached
    ("Acme, Inc." is one segment).
    """
    segments = []
    for part in SEGMENT_SPLIT_RE.split(line):
        for piece in part.split(","):
            if segments and LEGAL_TAIL_RE.match(piece.strip()):
                segments[-1] = f"{segments[-1]},{piece}"
            elif piece.strip():
                segments.append(piece)
    return segments


def _is_likely_name(text: str) -> bool:
    words = [w for w in text.replace(",", " ").split() if len(w) > 1 or w.endswith(".")]
    if len(words) < 2 or len(words) > 4:
        return False
    for word in words:
        if word.lower() in NAME_SUFFIXES:
            continue
        if not re.match(r"^[A-Z][A-Za-z'.-]*$", word):
            return False
        if word.lower().strip(".") in FILLER_WORDS:
            return False
    return True


def _is_likely_company(text: str) -> bool:
    return bool(COMPANY_SUFFIX_RE.search(text))


def parse_linkedin_url(url: str) -> LinkedInRef:
    """Classify a LinkedIn URL as a person profile or company page."""
    normalized = normalize_linkedin_url(url)
    if not normalized:
        return LinkedInRef(kind="unknown", identifier=None)
    _, kind, slug = normalized.split("/", 2)
    return LinkedInRef(kind="person" if kind == "in" else "company", identifier=slug)


def _person_confidence(has_name, has_email, has_title, has_company, has_linkedin) -> float:
    score = 0.0
    score += 0.25 if has_name else 0.0
    score += 0.35 if has_email else 0.0
    score += 0.15 if has_title else 0.0
    score += 0.15 if has_company else 0.0
    score += 0.10 if has_linkedin else 0.0
    return round(min(1.0, score), 2)


def _org_domains(emails: Iterable[str], urls: Iterable[str]) -> List[str]:
    domains = []
    for email in emails:
        domain = email.rsplit("@", 1)[-1]
        if not is_free_mail_domain(domain):
            domains.append(domain)
    for url in urls:
        if normalize_linkedin_url(url):
            continue
        domains.append(normalize_domain(url))
    return _unique(domains)


def detect_format(text: str) -> InputFormat:
    """Content-based format detection."""
    if "BEGIN:VCARD" in text.upper():
        return InputFormat.VCARD

    stripped = text.strip()
    if not stripped:
        return InputFormat.FREEFORM

    blocks = [b for b in re.split(r"\n\s*\n", stripped) if b.strip()]
    if len(blocks) > 1:
        return InputFormat.BULK

    lines = [line for line in stripped.splitlines() if line.strip()]
    if len(lines) > 1 and "," in lines[0] and sum(1 for line in lines if "," in line) >= 2:
        return InputFormat.BULK

    return InputFormat.FREEFORM


# =============================================================================
# FREEFORM
# =============================================================================

def _parse_freeform(text: str, fmt: InputFormat = InputFormat.FREEFORM) -> ParseResult:
    result = ParseResult(format=fmt, raw=text)
    if not text or not text.strip():
        return result

    result.emails = _unique(e.lower() for e in EMAIL_RE.findall(text))

    result.urls = _unique(u.rstrip(".,;:)") for u in URL_RE.findall(text))
    linkedin_urls = _unique(m.group(0).rstrip("/") for m in LINKEDIN_RE.finditer(text))
    result.social_urls = linkedin_urls

    # Phones are searched with emails and URLs blanked out so slugs don't leak digits
    phone_text = LINKEDIN_RE.sub(" ", URL_RE.sub(" ", EMAIL_RE.sub(" ", text)))
    result.phones = _unique(
        re.sub(r"\D", "", p) for p in PHONE_RE.findall(phone_text)
        if len(re.sub(r"\D", "", p)) >= 7
    )

    result.domains = _org_domains(result.emails, result.urls + linkedin_urls)

    found_name = found_title = found_company = None
    for line in text.splitlines():
        for segment in _segments(line):
            residual = FIELD_LABEL_RE.sub("", segment)
            residual = LINKEDIN_RE.sub(" ", URL_RE.sub(" ", EMAIL_RE.sub(" ", residual)))
            residual = _clean(PHONE_RE.sub(" ", residual))
            if not residual or not re.search(r"[A-Za-z]{2,}", residual):
                continue

            if found_company is None and _is_likely_company(residual):
                found_company = residual
            elif found_title is None and TITLE_RE.search(residual):
                found_title = residual
            elif found_name is None and _is_likely_name(residual):
                found_name = residual

    person_links = [u for u in linkedin_urls if parse_linkedin_url(u).kind == "person"]
    company_links = [u for u in linkedin_urls if parse_linkedin_url(u).kind == "company"]

    if found_name or result.emails or person_links:
        first_name, last_name = split_full_name(found_name)
        result.people.append(PersonFragment(
            first_name=first_name,
            last_name=last_name,
            full_name=found_name,
            email=result.emails[0] if result.emails else None,
            phone=result.phones[0] if result.phones else None,
            title=found_title,
            company=found_company,
            linkedin_url=person_links[0] if person_links else None,
            confidence=_person_confidence(
                bool(found_name), bool(result.emails), bool(found_title),
                bool(found_company), bool(person_links),
            ),
            source="text",
        ))

    if found_company:
        result.companies.append(CompanyFragment(
            name=found_company,
            domain=result.domains[0] if result.domains else None,
            linkedin_url=company_links[0] if company_links else None,
            confidence=0.8,
            source="text",
        ))
        company_links = company_links[1:]
    else:
        for domain in result.domains:
            result.companies.append(CompanyFragment(domain=domain, confidence=0.6, source="domain"))

    for url in company_links:
        result.companies.append(CompanyFragment(linkedin_url=url, confidence=0.7, source="linkedin"))

    return result


# =============================================================================
# VCARD
# =============================================================================

def _vcard_properties(card: str) -> List[Tuple[str, str]]:
    # Unfold continuation lines (RFC 6350 3.2)
    unfolded = re.sub(r"\r?\n[ \t]", "", card)
    props = []
    for line in unfolded.splitlines():
        if ":" not in line:
            continue
        key, value = line.split(":", 1)
        name = key.split(";", 1)[0].split(".")[-1].strip().upper()
        props.append((name, value.strip()))
    return props


def _read_vcard(text: str) -> Tuple[Optional[PersonFragment], Optional[str]]:
    """One card -> (person fragment or None, first non-LinkedIn URL)."""
    data: Dict[str, str] = {}
    websites = []
    for name, value in _vcard_properties(text):
        if not value:
            continue
        if name == "FN":
            data.setdefault("full_name", value)
        elif name == "N":
            parts = value.split(";")
            if parts[0].strip():
                data.setdefault("last_name", parts[0].strip())
            if len(parts) > 1 and parts[1].strip():
                data.setdefault("first_name", parts[1].strip())
        elif name == "EMAIL":
            email = normalize_email(value)
            if email:
                data.setdefault("email", email)
        elif name == "TEL":
            data.setdefault("phone", re.sub(r"\D", "", value.replace("tel:", "")))
        elif name == "TITLE":
            data.setdefault("title", value)
        elif name == "ORG":
            org = value.split(";", 1)[0].strip()
            if org:
                data.setdefault("company", org)
        elif name in ("URL", "X-SOCIALPROFILE"):
            if normalize_linkedin_url(value):
                data.setdefault("linkedin_url", value)
            else:
                websites.append(value)

    if websites:
        data["website"] = websites[0]

    if not (data.get("full_name") or data.get("first_name") or data.get("email")):
        return None, data.get("website")

    if data.get("first_name") or data.get("last_name"):
        first_name, last_name = data.get("first_name"), data.get("last_name")
    else:
        first_name, last_name = split_full_name(data.get("full_name"))

    person = PersonFragment(
        first_name=first_name,
        last_name=last_name,
        full_name=data.get("full_name") or " ".join(p for p in (first_name, last_name) if p) or None,
        email=data.get("email"),
        phone=data.get("phone") or None,
        title=data.get("title"),
        company=data.get("company"),
        linkedin_url=data.get("linkedin_url"),
        confidence=0.9,
        source="vcard",
    )
    return person, data.get("website")


def parse_vcard(text: str) -> Optional[PersonFragment]:
    """
    Parse one vCard into a person fragment.

    Returns None when the card names nobody and has no email.
    """
    return _read_vcard(text)[0]


def _parse_vcards(text: str) -> ParseResult:
    result = ParseResult(format=InputFormat.VCARD, raw=text)
    cards = re.findall(r"BEGIN:VCARD.*?(?:END:VCARD|\Z)", text, flags=re.IGNORECASE | re.DOTALL)

    urls = []
    for card in cards:
        person, website = _read_vcard(card)
        if person is None:
            continue
        result.people.append(person)

        if person.email:
            result.emails.append(person.email)
        if person.phone:
            result.phones.append(person.phone)
        if person.linkedin_url:
            result.social_urls.append(person.linkedin_url)
            urls.append(person.linkedin_url)
        if website:
            urls.append(website)

        domain = normalize_domain(website) if website else None
        if not domain and person.email and not is_free_mail_domain(person.email.rsplit("@", 1)[1]):
            domain = person.email.rsplit("@", 1)[1]

        if person.company:
            result.companies.append(CompanyFragment(
                name=person.company, domain=domain, website=website,
                confidence=0.9, source="vcard",
            ))

    result.emails = _unique(result.emails)
    result.phones = _unique(result.phones)
    result.social_urls = _unique(result.social_urls)
    result.urls = _unique(urls)
    result.domains = _org_domains(result.emails, result.urls)
    return result


# =============================================================================
# BULK
# =============================================================================

def _header_fields(header: List[str]) -> Optional[List[Optional[str]]]:
    mapped = []
    for cell in header:
        key = re.sub(r"[_\-]+", " ", cell.strip().lower())
        key = " ".join(key.split())
        mapped.append(HEADER_ALIASES.get(key, HEADER_ALIASES.get(key.replace(" ", ""))))
    return mapped if any(mapped) else None


def _parse_csv_record(values: Dict[str, str], raw_line: str) -> ParseResult:
    result = ParseResult(format=InputFormat.BULK, raw=raw_line)
    get = lambda key: (values.get(key) or "").strip() or None  # noqa: E731

    first_name, last_name = get("first_name"), get("last_name")
    full_name = get("full_name")
    if full_name and not (first_name or last_name):
        first_name, last_name = split_full_name(full_name)
    if not full_name and (first_name or last_name):
        full_name = " ".join(p for p in (first_name, last_name) if p)

    email = normalize_email(get("email"))
    phone = re.sub(r"\D", "", get("phone") or "") or None
    linkedin = get("linkedin_url") if normalize_linkedin_url(get("linkedin_url")) else None
    website = get("website")
    company = get("company")
    title = get("title")

    result.emails = _unique([email])
    result.phones = _unique([phone])
    result.social_urls = _unique([linkedin])
    result.urls = _unique([website, linkedin])
    result.domains = _org_domains(result.emails, [website] if website else [])

    if full_name or email or linkedin:
        result.people.append(PersonFragment(
            first_name=first_name,
            last_name=last_name,
            full_name=full_name,
            email=email,
            phone=phone,
            title=title,
            company=company,
            linkedin_url=linkedin,
            confidence=0.9,
            source="csv",
        ))

    if company or website:
        result.companies.append(CompanyFragment(
            name=company,
            domain=normalize_domain(website) if website else (result.domains[0] if result.domains else None),
            website=website,
            confidence=0.9 if company else 0.6,
            source="csv",
        ))

    return result


def parse_entries(raw: Union[str, bytes]) -> List[ParseResult]:
    """
    Split bulk input into entries and parse each one.

    CSV with a recognised header is mapped by column; header-less CSV rows
    and blank-line separated blocks are each parsed as freeform text.
    """
    text = _decode(raw)
    lines = [line for line in text.splitlines() if line.strip()]

    if len(lines) > 1 and "," in lines[0]:
        rows = [r for r in csv.reader(io.StringIO("\n".join(lines))) if any(c.strip() for c in r)]
        fields = _header_fields(rows[0]) if rows else None
        if fields:
            entries = []
            for row, line in zip(rows[1:], lines[1:]):
                values = {}
                for name, cell in zip(fields, row):
                    if name and cell.strip() and name not in values:
                        values[name] = cell
                entries.append(_parse_csv_record(values, line))
            return entries
        return [
            _parse_freeform("\n".join(c.strip().strip("\"'") for c in row if c.strip()), InputFormat.BULK)
            for row in rows
        ]

    blocks = [b for b in re.split(r"\n\s*\n", text) if b.strip()]
    if len(blocks) > 1:
        return [_parse_freeform(block.strip(), InputFormat.BULK) for block in blocks]

    return [_parse_freeform(text)]


def _merge_entries(text: str, entries: List[ParseResult]) -> ParseResult:
    result = ParseResult(format=InputFormat.BULK, raw=text)
    for entry in entries:
        result.people.extend(entry.people)
        result.companies.extend(entry.companies)
    result.emails = _unique(v for e in entries for v in e.emails)
    result.phones = _unique(v for e in entries for v in e.phones)
    result.urls = _unique(v for e in entries for v in e.urls)
    result.social_urls = _unique(v for e in entries for v in e.social_urls)
    result.domains = _unique(v for e in entries for v in e.domains)
    return result


# =============================================================================
# ENTRY POINTS
# =============================================================================

def parse(raw: Union[str, bytes, None]) -> ParseResult:
    """
    Parse unstructured contact input.

    Args:
        raw: text or bytes (UTF-8, falling back to latin-1)

    Returns:
        ParseResult; empty (never an exception) when nothing is extractable
    """
    text = _decode(raw)
    fmt = detect_format(text)

    if fmt == InputFormat.VCARD:
        result = _parse_vcards(text)
    elif fmt == InputFormat.BULK:
        result = _merge_entries(text, parse_entries(text))
    else:
        result = _parse_freeform(text)

    logger.debug(
        f"Parsed {fmt.value} input: {len(result.people)} people, "
        f"{len(result.companies)} companies, {len(result.emails)} emails"
    )
    return result


def parse_file(path: str) -> ParseResult:
    """Read a file and parse it. I/O failures raise ParseIOError."""
    try:
        with open(path, "rb") as f:
            data = f.read()
    except OSError as e:
        raise ParseIOError(f"Could not read {path}: {e.strerror or e}", details={"path": str(path)}) from e
    return parse(data)
