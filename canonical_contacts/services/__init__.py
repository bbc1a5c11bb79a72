"""
Identity-resolution services.

Match engine, duplicate queue, merge executor, legacy migration and
contact import over the canonical contact store.
"""

from canonical_contacts.services.contact_import import ContactImporter
from canonical_contacts.services.duplicate_queue import DuplicateQueue
from canonical_contacts.services.match_engine import MatchConfig, MatchEngine, SuggestedAction
from canonical_contacts.services.merge_executor import MergeExecutor, MergeResult
from canonical_contacts.services.migration import MigrationOptions, MigrationPipeline

__all__ = [
    "ContactImporter",
    "DuplicateQueue",
    "MatchConfig",
    "MatchEngine",
    "MergeExecutor",
    "MergeResult",
    "MigrationOptions",
    "MigrationPipeline",
    "SuggestedAction",
]
