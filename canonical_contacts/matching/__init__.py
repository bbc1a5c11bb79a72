"""
Name and strong-key normalization plus fuzzy comparison.
"""

from canonical_contacts.matching.fuzzy_matcher import (
    CompanyNameMatcher,
    normalize_company_name,
    normalize_domain,
    normalize_email,
    normalize_linkedin_url,
    similarity_ratio,
)
from canonical_contacts.matching.person_matcher import PersonNameMatcher, normalize_person_name

__all__ = [
    "CompanyNameMatcher",
    "PersonNameMatcher",
    "normalize_company_name",
    "normalize_domain",
    "normalize_email",
    "normalize_linkedin_url",
    "normalize_person_name",
    "similarity_ratio",
]
