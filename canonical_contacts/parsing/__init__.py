"""
Smart parsing of unstructured contact input.
"""

from canonical_contacts.parsing.smart_parser import (
    CompanyFragment,
    InputFormat,
    ParseResult,
    PersonFragment,
    parse,
    parse_entries,
    parse_file,
)

__all__ = [
    "CompanyFragment",
    "InputFormat",
    "ParseResult",
    "PersonFragment",
    "parse",
    "parse_entries",
    "parse_file",
]
