"""
Tests for the session-first call contract.
"""
import pytest

from canonical_contacts import contact_system
from canonical_contacts.core.contact_models import CanonicalCompany, DuplicateCandidate
from canonical_contacts.core.database import transaction
from canonical_contacts.core.errors import ValidationError
from canonical_contacts.core.models import EntityType, Resolution
from canonical_contacts.services.match_engine import SuggestedAction


class TestContactSystem:
    """Tests for the contact_system functions."""

    @pytest.mark.integration
    def test_review_queue_round_trip(self, test_db, sample_companies):
        """Probe, queue the uncertain pair, then merge it through the queue."""
        acme = sample_companies["acme"]
        other = CanonicalCompany(name="ACME CORP.", normalized_name="acme")
        test_db.add(other)
        test_db.commit()

        match = contact_system.find_company_matches(test_db, {"name": "Acme Corp"})
        assert match.suggested_action == SuggestedAction.REVIEW
        assert {c.record_id for c in match.candidates} == {acme.id, other.id}

        candidate_id = contact_system.enqueue_duplicate(
            test_db, EntityType.COMPANY, other.id, acme.id, match.top.signals, match.top.score
        )
        assert contact_system.enqueue_duplicate(test_db, "COMPANY", acme.id, other.id) == candidate_id

        result = contact_system.resolve_duplicate(test_db, candidate_id, Resolution.MERGED, "analyst-1", acme.id)

        assert result.merge.tombstoned_ids == [other.id]
        assert contact_system.find_company_matches(test_db, {"name": "Acme Corp"}).candidates[0].record_id == acme.id

    @pytest.mark.integration
    def test_calls_join_the_callers_transaction(self, test_db, sample_companies):
        """A failure later in the caller's unit of work undoes an earlier merge."""
        acme, globex = sample_companies["acme"], sample_companies["globex"]

        with pytest.raises(ValidationError):
            with transaction(test_db):
                contact_system.merge_companies(test_db, acme.id, [globex.id], "analyst-1")
                raise ValidationError("caller changed its mind")

        assert test_db.get(CanonicalCompany, globex.id).is_active

    @pytest.mark.integration
    def test_delete_duplicate(self, test_db, sample_people):
        candidate_id = contact_system.enqueue_duplicate(
            test_db, EntityType.PERSON, sample_people["jane"].id, sample_people["robert"].id, confidence=0.6
        )

        contact_system.delete_duplicate(test_db, candidate_id)

        assert test_db.query(DuplicateCandidate).count() == 0

    @pytest.mark.integration
    def test_migration_calls(self, test_db, sample_deal):
        assert not contact_system.validate_migration_readiness(test_db, sample_deal.id).is_ready
        assert contact_system.rollback_migration(test_db, sample_deal.id).run_ids == []

    @pytest.mark.unit
    def test_parse(self):
        result = contact_system.parse("jane.doe@acme.com")
        assert result.people[0].email == "jane.doe@acme.com"

    @pytest.mark.integration
    def test_import_and_person_lookup(self, test_db):
        contact_system.import_contacts(test_db, "Jane Doe\njane.doe@acme.com")

        match = contact_system.find_person_matches(test_db, {"email": "jane.doe@acme.com"})

        assert match.suggested_action == SuggestedAction.LINK_EXISTING
