"""
Person Name Fuzzy Matcher for Deduplication.

Compares person names using Levenshtein similarity with smart normalization:
- Handles "Last, First" format
- Strips suffixes (Jr, Sr, III, PhD)
- Expands common nicknames (Bob→Robert, Bill→William)
- Compares first+last only (drops middle names)

Uses similarity_ratio from canonical_contacts.matching.fuzzy_matcher.
"""

import re
import logging
from dataclasses import dataclass
from typing import Optional

from canonical_contacts.matching.fuzzy_matcher import similarity_ratio

logger = logging.getLogger(__name__)

# Common nickname → canonical name mappings
NICKNAME_MAP = {
    "bob": "robert",
    "bobby": "robert",
    "rob": "robert",
    "robbie": "robert",
    "bill": "william",
    "billy": "william",
    "will": "william",
    "willy": "william",
    "jim": "james",
    "jimmy": "james",
    "jamie": "james",
    "mike": "michael",
    "mikey": "michael",
    "dick": "richard",
    "rick": "richard",
    "rich": "richard",
    "ricky": "richard",
    "tom": "thomas",
    "tommy": "thomas",
    "dan": "daniel",
    "danny": "daniel",
    "dave": "david",
    "davy": "david",
    "joe": "joseph",
    "joey": "joseph",
    "steve": "steven",
    "stevie": "steven",
    "stephen": "steven",
    "chris": "christopher",
    "pat": "patrick",
    "paddy": "patrick",
    "ed": "edward",
    "eddie": "edward",
    "ted": "edward",
    "teddy": "edward",
    "tony": "anthony",
    "matt": "matthew",
    "matty": "matthew",
    "al": "albert",
    "alex": "alexander",
    "andy": "andrew",
    "drew": "andrew",
    "ben": "benjamin",
    "benny": "benjamin",
    "chuck": "charles",
    "charlie": "charles",
    "charley": "charles",
    "fred": "frederick",
    "freddy": "frederick",
    "greg": "gregory",
    "harry": "harold",
    "hank": "henry",
    "jack": "john",
    "johnny": "john",
    "jon": "john",
    "jerry": "gerald",
    "larry": "lawrence",
    "liz": "elizabeth",
    "beth": "elizabeth",
    "betty": "elizabeth",
    "lizzy": "elizabeth",
    "kate": "katherine",
    "kathy": "katherine",
    "cathy": "katherine",
    "katie": "katherine",
    "peg": "margaret",
    "peggy": "margaret",
    "maggie": "margaret",
    "meg": "margaret",
    "sue": "susan",
    "susie": "susan",
    "jen": "jennifer",
    "jenny": "jennifer",
    "deb": "deborah",
    "debbie": "deborah",
    "barb": "barbara",
    "barbie": "barbara",
    "sam": "samuel",
    "sammy": "samuel",
    "nick": "nicholas",
    "nicky": "nicholas",
    "phil": "philip",
    "pete": "peter",
    "ray": "raymond",
    "ron": "ronald",
    "ronnie": "ronald",
    "walt": "walter",
    "wally": "walter",
    "ken": "kenneth",
    "kenny": "kenneth",
    "doug": "douglas",
    "don": "donald",
    "donnie": "donald",
}

# Suffixes to strip
SUFFIX_PATTERN = re.compile(
    r",?\s+(jr|sr|ii|iii|iv|phd|md|esq|cpa|cfa|jd|mba)\.?$",
    re.IGNORECASE,
)


@dataclass
class PersonMatchResult:
    """Result of comparing two person names."""

    matched: bool
    similarity: float  # 0.0 to 1.0
    match_type: str  # "name_exact", "nickname_match", "name_fuzzy", "no_match"
    notes: Optional[str] = None


def normalize_person_name(first_name: Optional[str], last_name: Optional[str]) -> str:
    """Stored dedup key for a person: normalized "first last"."""
    full = " ".join(p for p in (first_name, last_name) if p)
    return PersonNameMatcher.normalize_name(full)


class PersonNameMatcher:
    """
    Fuzzy person name matcher for deduplication.

    Exact and nickname matches are reported as such; anything else is
    a fuzzy match when the first+last similarity clears the threshold.
    """

    def __init__(self, similarity_threshold: float = 0.90):
        self.similarity_threshold = similarity_threshold

    @staticmethod
    def normalize_name(name: str) -> str:
        """
        Normalize a person name for comparison.

        - Lowercase
        - Handle "Last, First" format
        - Strip suffixes (Jr/Sr/III/PhD)
        - Remove punctuation
        - Collapse whitespace
        """
        if not name:
            return ""

        name = name.strip().lower()

        # Strip suffixes first (repeat for "Jr., PhD")
        previous = None
        while previous != name:
            previous = name
            name = SUFFIX_PATTERN.sub("", name)

        # Handle "Last, First" or "Last, First Middle" format
        if "," in name:
            parts = [p.strip() for p in name.split(",", 1)]
            if len(parts) == 2 and parts[1]:
                name = f"{parts[1]} {parts[0]}"

        name = re.sub(r"[^\w\s\-]", "", name)
        name = re.sub(r"\s+", " ", name).strip()

        return name

    @staticmethod
    def _extract_first_last(normalized_name: str) -> tuple:
        """Extract first and last name, dropping middle names."""
        parts = normalized_name.split()
        if not parts:
            return ("", "")
        if len(parts) == 1:
            return (parts[0], "")
        return (parts[0], parts[-1])

    @staticmethod
    def expand_nickname(first_name: str) -> str:
        return NICKNAME_MAP.get(first_name, first_name)

    def compare(self, name1: str, name2: str) -> PersonMatchResult:
        """Compare two raw names."""
        return self.compare_normalized(self.normalize_name(name1), self.normalize_name(name2))

    def compare_normalized(self, norm1: str, norm2: str) -> PersonMatchResult:
        """
        Compare two normalized names.

        Performs multi-level comparison:
        1. Exact normalized match
        2. First+last only match (drop middle names)
        3. Nickname expansion match
        4. Fuzzy similarity on first+last
        """
        if not norm1 or not norm2:
            return PersonMatchResult(
                matched=False,
                similarity=0.0,
                match_type="no_match",
                notes="Empty name",
            )

        if norm1 == norm2:
            return PersonMatchResult(matched=True, similarity=1.0, match_type="name_exact")

        first1, last1 = self._extract_first_last(norm1)
        first2, last2 = self._extract_first_last(norm2)

        if first1 == first2 and last1 == last2:
            return PersonMatchResult(
                matched=True,
                similarity=1.0,
                match_type="name_exact",
                notes="Exact match after dropping middle names",
            )

        canonical1 = self.expand_nickname(first1)
        canonical2 = self.expand_nickname(first2)

        if canonical1 == canonical2 and last1 and last1 == last2:
            return PersonMatchResult(
                matched=True,
                similarity=0.95,
                match_type="nickname_match",
                notes=f"Nickname match: {first1}={canonical1}, {first2}={canonical2}",
            )

        similarity = similarity_ratio(f"{first1} {last1}".strip(), f"{first2} {last2}".strip())
        matched = similarity >= self.similarity_threshold

        return PersonMatchResult(
            matched=matched,
            similarity=round(similarity, 3),
            match_type="name_fuzzy" if matched else "no_match",
            notes=f"Fuzzy: {similarity:.3f}",
        )
