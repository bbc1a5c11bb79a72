"""
String normalization and fuzzy matching for canonical records.

Uses Levenshtein distance to find similar company names that may
refer to the same entity despite minor differences in spelling,
punctuation, or legal suffixes, and normalizes the strong keys
(email, domain, LinkedIn URL) used for exact lookups.

Example matches:
- "Acme Corp" vs "ACME CORP."
- "Microsoft Corporation" vs "Microsoft Corp"
- "The Carlyle Group, Inc" vs "Carlyle Group"
"""

import logging
import re
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlsplit

logger = logging.getLogger(__name__)


@dataclass
class NameMatch:
    """Result of comparing two company names."""

    matched: bool
    similarity: float
    normalized_name1: str
    normalized_name2: str

    @property
    def exact(self) -> bool:
        return bool(self.normalized_name1) and self.normalized_name1 == self.normalized_name2


def levenshtein_distance(s1: str, s2: str) -> int:
    """
    Calculate the Levenshtein (edit) distance between two strings.

    Args:
        s1: First string
        s2: Second string

    Returns:
        Edit distance (0 = identical)
    """
    if len(s1) < len(s2):
        return levenshtein_distance(s2, s1)

    if len(s2) == 0:
        return len(s1)

    previous_row = list(range(len(s2) + 1))

    for i, c1 in enumerate(s1):
        current_row = [i + 1]
        for j, c2 in enumerate(s2):
            insertions = previous_row[j + 1] + 1
            deletions = current_row[j] + 1
            substitutions = previous_row[j] + (c1 != c2)
            current_row.append(min(insertions, deletions, substitutions))
        previous_row = current_row

    return previous_row[-1]


def similarity_ratio(s1: str, s2: str) -> float:
    """
    Similarity between two strings in [0.0, 1.0], 1.0 meaning identical.
    """
    if not s1 and not s2:
        return 1.0

    if not s1 or not s2:
        return 0.0

    distance = levenshtein_distance(s1, s2)
    return 1.0 - (distance / max(len(s1), len(s2)))


# =============================================================================
# NORMALIZATION
# =============================================================================

# Legal-form suffixes stripped from company names (matched as whole words)
LEGAL_SUFFIX_PATTERN = re.compile(
    r"\b(inc|incorporated|corp|corporation|llc|llp|ltd|limited|co|company|"
    r"plc|lp|gp|gmbh|ag|sa|nv|pllc)\b\.?",
    re.IGNORECASE,
)

EMAIL_PATTERN = re.compile(r"^[a-zA-Z0-9._%+-]+@([a-zA-Z0-9.-]+\.[a-zA-Z]{2,})$")
DOMAIN_PATTERN = re.compile(r"^[a-z0-9]([a-z0-9-]*[a-z0-9])?(\.[a-z0-9]([a-z0-9-]*[a-z0-9])?)*\.[a-z]{2,}$")
LINKEDIN_PATTERN = re.compile(
    r"^(?:https?://)?(?:[a-z]{2,3}\.)?linkedin\.com/(in|company)/([a-zA-Z0-9_%-]+)",
    re.IGNORECASE,
)

# Providers whose domain says nothing about the employer
FREE_MAIL_DOMAINS = frozenset({
    "gmail.com", "googlemail.com", "yahoo.com", "ymail.com", "hotmail.com",
    "outlook.com", "live.com", "msn.com", "aol.com", "icloud.com", "me.com",
    "mac.com", "protonmail.com", "proton.me", "gmx.com", "mail.com",
})


def normalize_company_name(name: Optional[str]) -> str:
    """
    Normalize a company name into its dedup key.

    Steps: lower-case, drop a leading "the", strip legal suffixes,
    remove punctuation, collapse whitespace.
    """
    if not name:
        return ""

    normalized = name.lower().strip()
    normalized = re.sub(r"^the\s+", "", normalized)
    normalized = LEGAL_SUFFIX_PATTERN.sub(" ", normalized)
    normalized = normalized.replace("&", " and ")
    normalized = re.sub(r"[^\w\s]", "", normalized)
    normalized = " ".join(normalized.split())

    # A name made only of suffixes ("The Company") keeps its letters
    if not normalized:
        normalized = " ".join(re.sub(r"[^\w\s]", "", name.lower()).split())

    return normalized


def normalize_email(email: Optional[str]) -> Optional[str]:
    """Trim and lower-case an email; None when it is not an address."""
    if not email:
        return None
    cleaned = email.strip().lower()
    if cleaned.startswith("mailto:"):
        cleaned = cleaned[len("mailto:"):]
    return cleaned if EMAIL_PATTERN.match(cleaned) else None


def email_domain(email: Optional[str]) -> Optional[str]:
    """Domain part of a valid email address."""
    normalized = normalize_email(email)
    if not normalized:
        return None
    return normalized.rsplit("@", 1)[1]


def is_free_mail_domain(domain: Optional[str]) -> bool:
    return bool(domain) and domain.lower() in FREE_MAIL_DOMAINS


def normalize_domain(value: Optional[str]) -> Optional[str]:
    """
    Reduce a website, URL, bare host or email to its host name.

    "https://www.Acme.com/about" -> "acme.com". Scheme, "www.", port,
    path and query are dropped. Returns None for anything that is not a host.
    """
    if not value:
        return None

    value = value.strip().lower()
    if "@" in value and "/" not in value:
        return email_domain(value)

    if "://" not in value:
        value = f"http://{value}"

    try:
        host = urlsplit(value).hostname
    except ValueError:
        return None

    if not host:
        return None

    if host.startswith("www."):
        host = host[4:]
    host = host.rstrip(".")

    return host if DOMAIN_PATTERN.match(host) else None


def domain_fragment(domain: Optional[str]) -> Optional[str]:
    """
    Registrable label of a domain: "mail.acme.co.uk" -> "acme".

    Used as a soft corroborating signal; two companies on "acme.com" and
    "acme.io" share the fragment "acme".
    """
    host = normalize_domain(domain)
    if not host:
        return None

    labels = host.split(".")
    if len(labels) >= 3 and len(labels[-1]) == 2 and labels[-2] in {"co", "com", "org", "net", "ac", "gov"}:
        labels = labels[:-2]
    else:
        labels = labels[:-1]

    return labels[-1] if labels else None


def normalize_linkedin_url(url: Optional[str]) -> Optional[str]:
    """
    Canonical form of a LinkedIn profile or company page.

    "HTTPS://www.linkedin.com/in/Jane-Doe/?trk=x" -> "linkedin.com/in/jane-doe"
    """
    if not url:
        return None

    match = LINKEDIN_PATTERN.match(url.strip())
    if not match:
        return None

    kind, slug = match.group(1).lower(), match.group(2).lower()
    return f"linkedin.com/{kind}/{slug}"


def normalize_phone(phone: Optional[str]) -> Optional[str]:
    """Digits only; None when fewer than seven digits remain."""
    if not phone:
        return None
    digits = re.sub(r"\D", "", phone)
    return digits if len(digits) >= 7 else None


class CompanyNameMatcher:
    """
    Fuzzy matcher specialized for company names.

    Handles common variations in company names:
    - Suffixes: Inc, LLC, Corp, Ltd, etc.
    - Punctuation differences
    - Case differences
    """

    def __init__(self, similarity_threshold: float = 0.90):
        self.similarity_threshold = similarity_threshold
        self._normalization_cache = {}

    def normalize(self, name: str) -> str:
        if name not in self._normalization_cache:
            self._normalization_cache[name] = normalize_company_name(name)
        return self._normalization_cache[name]

    def compare_normalized(self, norm1: str, norm2: str) -> NameMatch:
        """Compare two already-normalized names."""
        if not norm1 or not norm2:
            return NameMatch(False, 0.0, norm1, norm2)

        if norm1 == norm2:
            return NameMatch(True, 1.0, norm1, norm2)

        similarity = similarity_ratio(norm1, norm2)
        return NameMatch(
            matched=similarity >= self.similarity_threshold,
            similarity=similarity,
            normalized_name1=norm1,
            normalized_name2=norm2,
        )

    def match(self, name1: str, name2: str) -> NameMatch:
        """
        Check if two company names match.

        Returns:
            NameMatch with match status and similarity score
        """
        return self.compare_normalized(self.normalize(name1), self.normalize(name2))

    def is_match(self, name1: str, name2: str) -> bool:
        return self.match(name1, name2).matched
