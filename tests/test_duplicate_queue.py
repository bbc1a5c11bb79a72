"""
Tests for the duplicate review queue and its batch jobs.
"""
import pytest

from canonical_contacts.core.contact_models import CanonicalCompany, CanonicalPerson, DuplicateCandidate
from canonical_contacts.core.errors import (
    AlreadyResolvedError,
    NotFoundOrAlreadyMergedError,
    RecordNotFoundError,
    ValidationError,
)
from canonical_contacts.core.models import CandidateStatus, DataQuality, EntityType, Resolution
from canonical_contacts.services.canonical_records import new_company, new_person
from canonical_contacts.services.duplicate_queue import DuplicateQueue
from canonical_contacts.services.merge_executor import MergeExecutor


@pytest.fixture
def acme_pair(test_db):
    """Two spellings of the same company on sibling domains."""
    a = new_company(test_db, "Acme Corp", domain="acme.com")
    b = new_company(test_db, "ACME CORP.", domain="acme.io")
    test_db.commit()
    return a, b


class TestEnqueue:
    """Tests for adding candidates."""

    @pytest.mark.integration
    def test_pair_is_unordered_and_idempotent(self, test_db, acme_pair):
        """Enqueueing (a, b) then (b, a) yields one pending candidate."""
        a, b = acme_pair
        queue = DuplicateQueue(test_db)

        first = queue.enqueue(EntityType.COMPANY, a.id, b.id, confidence=0.8)
        second = queue.enqueue(EntityType.COMPANY, b.id, a.id, confidence=0.9)

        assert first == second
        assert test_db.query(DuplicateCandidate).count() == 1
        candidate = queue.get(first)
        assert (candidate.record_a_id, candidate.record_b_id) == tuple(sorted((a.id, b.id)))
        assert candidate.status == CandidateStatus.PENDING
        assert candidate.confidence == 0.8

    @pytest.mark.integration
    def test_signals_are_stored(self, test_db, acme_pair):
        a, b = acme_pair
        queue = DuplicateQueue(test_db)

        candidate_id = queue.enqueue(
            "COMPANY", a.id, b.id,
            signals=[{"signal": "NAME_EXACT", "weight": 0.8, "detail": "same name"}],
            confidence=0.8,
        )

        assert queue.get(candidate_id).match_signals == [
            {"signal": "NAME_EXACT", "weight": 0.8, "detail": "same name"},
        ]

    @pytest.mark.integration
    def test_invalid_pairs(self, test_db, acme_pair):
        a, b = acme_pair
        queue = DuplicateQueue(test_db)

        with pytest.raises(ValidationError):
            queue.enqueue(EntityType.COMPANY, a.id, a.id)
        with pytest.raises(ValidationError):
            queue.enqueue(EntityType.COMPANY, a.id, b.id, confidence=1.5)
        with pytest.raises(ValidationError):
            queue.enqueue("VENDOR", a.id, b.id)
        with pytest.raises(RecordNotFoundError) as exc_info:
            queue.enqueue(EntityType.COMPANY, a.id, "missing-id")
        assert exc_info.value.record_ids == ["missing-id"]

        assert test_db.query(DuplicateCandidate).count() == 0

    @pytest.mark.integration
    def test_tombstoned_record_rejected(self, test_db, acme_pair):
        a, b = acme_pair
        other = new_company(test_db, "Acme Corporation")
        test_db.commit()
        MergeExecutor(test_db).merge_companies(a.id, [b.id], "analyst-1")

        with pytest.raises(NotFoundOrAlreadyMergedError):
            DuplicateQueue(test_db).enqueue(EntityType.COMPANY, b.id, other.id)


class TestResolve:
    """Tests for resolving candidates."""

    @pytest.mark.integration
    def test_not_duplicate(self, test_db, acme_pair):
        a, b = acme_pair
        queue = DuplicateQueue(test_db)
        candidate_id = queue.enqueue(EntityType.COMPANY, a.id, b.id, confidence=0.8)

        result = queue.resolve(candidate_id, Resolution.NOT_DUPLICATE, "analyst-1")

        assert result.merge is None
        candidate = queue.get(candidate_id)
        assert candidate.status == CandidateStatus.RESOLVED
        assert candidate.resolution == Resolution.NOT_DUPLICATE
        assert candidate.resolved_by == "analyst-1"
        assert candidate.resolved_at is not None
        assert test_db.get(CanonicalCompany, b.id).is_active

    @pytest.mark.integration
    def test_merged_runs_the_merge(self, test_db, acme_pair):
        """Resolving MERGED folds the other record into the chosen primary."""
        a, b = acme_pair
        queue = DuplicateQueue(test_db)
        candidate_id = queue.enqueue(EntityType.COMPANY, a.id, b.id, confidence=0.95)

        result = queue.resolve(candidate_id, "MERGED", "analyst-1", primary_id=b.id)

        assert result.resolution == Resolution.MERGED
        assert result.merge.primary_id == b.id
        assert result.merge.resolved_candidate_ids == [candidate_id]
        assert test_db.get(CanonicalCompany, a.id).merged_into_id == b.id
        assert queue.get(candidate_id).resolution == Resolution.MERGED
        assert result.to_dict()["merge"]["tombstoned_ids"] == [a.id]

    @pytest.mark.integration
    def test_merged_needs_primary_from_pair(self, test_db, acme_pair):
        a, b = acme_pair
        other = new_company(test_db, "Initech")
        test_db.commit()
        queue = DuplicateQueue(test_db)
        candidate_id = queue.enqueue(EntityType.COMPANY, a.id, b.id, confidence=0.95)

        with pytest.raises(ValidationError):
            queue.resolve(candidate_id, Resolution.MERGED, "analyst-1")
        with pytest.raises(ValidationError):
            queue.resolve(candidate_id, Resolution.MERGED, "analyst-1", primary_id=other.id)

        assert queue.get(candidate_id).status == CandidateStatus.PENDING
        assert test_db.get(CanonicalCompany, a.id).is_active

    @pytest.mark.integration
    def test_resolve_only_once(self, test_db, acme_pair):
        a, b = acme_pair
        queue = DuplicateQueue(test_db)
        candidate_id = queue.enqueue(EntityType.COMPANY, a.id, b.id, confidence=0.8)
        queue.resolve(candidate_id, Resolution.SKIPPED, "analyst-1")

        with pytest.raises(AlreadyResolvedError) as exc_info:
            queue.resolve(candidate_id, Resolution.NOT_DUPLICATE, "analyst-2")

        assert exc_info.value.record_ids == [candidate_id]
        candidate = queue.get(candidate_id)
        assert candidate.resolution == Resolution.SKIPPED
        assert candidate.resolved_by == "analyst-1"

    @pytest.mark.integration
    def test_unknown_candidate_and_bad_arguments(self, test_db):
        queue = DuplicateQueue(test_db)

        with pytest.raises(RecordNotFoundError):
            queue.resolve("missing-id", Resolution.SKIPPED, "analyst-1")
        with pytest.raises(ValidationError):
            queue.resolve("missing-id", "MAYBE", "analyst-1")
        with pytest.raises(ValidationError):
            queue.resolve("missing-id", Resolution.SKIPPED, "")

    @pytest.mark.integration
    def test_resolved_pair_can_be_queued_again(self, test_db, acme_pair):
        """Only one PENDING candidate per pair; history is kept."""
        a, b = acme_pair
        queue = DuplicateQueue(test_db)
        first = queue.enqueue(EntityType.COMPANY, a.id, b.id, confidence=0.8)
        queue.resolve(first, Resolution.SKIPPED, "analyst-1")

        second = queue.enqueue(EntityType.COMPANY, a.id, b.id, confidence=0.8)

        assert second != first
        assert test_db.query(DuplicateCandidate).count() == 2


class TestQueueMaintenance:
    """Tests for listing, stats, delete and cleanup."""

    @pytest.mark.integration
    def test_list_orders_pending_first_then_confidence(self, test_db, sample_companies):
        acme, globex, initech = (sample_companies[k] for k in ("acme", "globex", "initech"))
        queue = DuplicateQueue(test_db)
        low = queue.enqueue(EntityType.COMPANY, acme.id, globex.id, confidence=0.55)
        high = queue.enqueue(EntityType.COMPANY, acme.id, initech.id, confidence=0.85)
        done = queue.enqueue(EntityType.COMPANY, globex.id, initech.id, confidence=0.95)
        queue.resolve(done, Resolution.NOT_DUPLICATE, "analyst-1")

        listed = queue.list_candidates()

        assert [c["id"] for c in listed] == [high, low, done]
        assert {listed[0]["record_a"]["name"], listed[0]["record_b"]["name"]} == {"Acme Corp", "Initech LLC"}
        assert [c["id"] for c in queue.list_candidates(status=CandidateStatus.PENDING, min_confidence=0.8)] == [high]
        assert queue.list_candidates(entity_type=EntityType.PERSON) == []

    @pytest.mark.integration
    def test_stats(self, test_db, sample_companies, sample_people):
        queue = DuplicateQueue(test_db)
        queue.enqueue(EntityType.COMPANY, sample_companies["acme"].id, sample_companies["globex"].id, confidence=0.6)
        person_candidate = queue.enqueue(
            EntityType.PERSON, sample_people["jane"].id, sample_people["robert"].id, confidence=0.8
        )
        queue.resolve(person_candidate, Resolution.NOT_DUPLICATE, "analyst-1")

        stats = queue.get_stats()

        assert stats["pending"] == 1
        assert stats["resolved"] == 1
        assert stats["by_entity_type"]["COMPANY"] == {"pending": 1, "resolved": 0}
        assert stats["by_entity_type"]["PERSON"] == {"pending": 0, "resolved": 1}
        assert stats["by_resolution"]["NOT_DUPLICATE"] == 1
        assert stats["avg_pending_confidence"] == 0.6
        assert stats["oldest_pending_at"] is not None

    @pytest.mark.integration
    def test_delete(self, test_db, acme_pair):
        a, b = acme_pair
        queue = DuplicateQueue(test_db)
        candidate_id = queue.enqueue(EntityType.COMPANY, a.id, b.id, confidence=0.8)

        queue.delete(candidate_id)

        assert test_db.query(DuplicateCandidate).count() == 0
        with pytest.raises(RecordNotFoundError):
            queue.delete(candidate_id)

    @pytest.mark.integration
    def test_cleanup_stale(self, test_db, acme_pair):
        """Pending pairs that point at a record tombstoned outside a merge are removed."""
        a, b = acme_pair
        c = new_company(test_db, "Acme Corporation")
        test_db.commit()
        queue = DuplicateQueue(test_db)
        stale = queue.enqueue(EntityType.COMPANY, b.id, c.id, confidence=0.7)
        live = queue.enqueue(EntityType.COMPANY, a.id, c.id, confidence=0.7)
        b.merged_into_id = a.id
        test_db.commit()

        assert queue.cleanup_stale() == 1

        assert test_db.get(DuplicateCandidate, stale) is None
        assert queue.get(live).status == CandidateStatus.PENDING


class TestDetectDuplicates:
    """Tests for batch pair detection."""

    @pytest.mark.integration
    def test_queues_likely_pairs_once(self, test_db, acme_pair):
        new_company(test_db, "Initech")
        test_db.commit()
        queue = DuplicateQueue(test_db)

        stats = queue.detect_duplicates(entity_types=[EntityType.COMPANY])

        assert stats == {"compared": 1, "queued": 1, "already_pending": 0, "rejected_before": 0}
        candidate = test_db.query(DuplicateCandidate).one()
        assert candidate.confidence == 0.95
        assert [s["signal"] for s in candidate.match_signals] == ["NAME_EXACT", "DOMAIN_FRAGMENT"]

        again = queue.detect_duplicates(entity_types=[EntityType.COMPANY])
        assert again["queued"] == 0
        assert again["already_pending"] == 1

    @pytest.mark.integration
    def test_rejected_pairs_are_not_requeued(self, test_db, acme_pair):
        queue = DuplicateQueue(test_db)
        queue.detect_duplicates(entity_types=[EntityType.COMPANY])
        candidate = test_db.query(DuplicateCandidate).one()
        queue.resolve(candidate.id, Resolution.NOT_DUPLICATE, "analyst-1")

        stats = queue.detect_duplicates(entity_types=[EntityType.COMPANY])

        assert stats["rejected_before"] == 1
        assert stats["queued"] == 0
        assert test_db.query(DuplicateCandidate).count() == 1

    @pytest.mark.integration
    def test_people_sharing_email(self, test_db):
        new_person(test_db, "Jane", "Doe", email="jane@acme.com")
        new_person(test_db, "J.", "Doe", email="Jane@Acme.com")
        new_person(test_db, "Hank", "Scorpio", email="hank@globex.com")
        test_db.commit()

        stats = DuplicateQueue(test_db).detect_duplicates(entity_types=["PERSON"])

        assert stats["queued"] == 1
        assert test_db.query(DuplicateCandidate).one().confidence == 0.99

    @pytest.mark.integration
    def test_min_confidence_filters(self, test_db, acme_pair):
        stats = DuplicateQueue(test_db).detect_duplicates(min_confidence=0.99, entity_types=[EntityType.COMPANY])

        assert stats["compared"] == 1
        assert stats["queued"] == 0


class TestAutoMerge:
    """Tests for merging very-high-confidence candidates."""

    @pytest.fixture
    def email_twins(self, test_db):
        """A newer verified record and an older provisional one sharing an email."""
        older = new_person(test_db, "J.", "Doe", email="jane@acme.com")
        newer = new_person(test_db, "Jane", "Doe", email="jane@acme.com", data_quality=DataQuality.VERIFIED)
        test_db.commit()
        candidate_id = DuplicateQueue(test_db).enqueue(EntityType.PERSON, older.id, newer.id, confidence=0.99)
        return older, newer, candidate_id

    @pytest.mark.integration
    def test_dry_run_writes_nothing(self, test_db, email_twins):
        older, newer, candidate_id = email_twins
        queue = DuplicateQueue(test_db)

        result = queue.run_auto_merge("auto-merge", dry_run=True)

        assert result.dry_run
        assert result.merged == 1
        assert result.merges == [{"candidate_id": candidate_id, "primary_id": newer.id, "duplicate_id": older.id}]
        assert queue.get(candidate_id).status == CandidateStatus.PENDING
        assert test_db.get(CanonicalPerson, older.id).is_active

    @pytest.mark.integration
    def test_merges_into_better_quality_record(self, test_db, email_twins):
        older, newer, candidate_id = email_twins
        queue = DuplicateQueue(test_db)

        result = queue.run_auto_merge("auto-merge")

        assert result.merged == 1
        assert result.failures == []
        assert test_db.get(CanonicalPerson, older.id).merged_into_id == newer.id
        candidate = queue.get(candidate_id)
        assert candidate.resolution == Resolution.MERGED
        assert candidate.resolved_by == "auto-merge"

    @pytest.mark.integration
    def test_below_threshold_is_left_alone(self, test_db, acme_pair):
        a, b = acme_pair
        queue = DuplicateQueue(test_db)
        candidate_id = queue.enqueue(EntityType.COMPANY, a.id, b.id, confidence=0.95)

        result = queue.run_auto_merge("auto-merge")

        assert result.considered == 0
        assert queue.get(candidate_id).status == CandidateStatus.PENDING

    @pytest.mark.integration
    def test_max_merges(self, test_db, email_twins, acme_pair):
        a, b = acme_pair
        queue = DuplicateQueue(test_db)
        queue.enqueue(EntityType.COMPANY, a.id, b.id, confidence=0.985)

        result = queue.run_auto_merge("auto-merge", max_merges=1)

        assert result.merged == 1
        assert test_db.query(DuplicateCandidate).filter(
            DuplicateCandidate.status == CandidateStatus.PENDING
        ).count() == 1

    @pytest.mark.unit
    def test_actor_required(self, test_db):
        with pytest.raises(ValidationError):
            DuplicateQueue(test_db).run_auto_merge("")
