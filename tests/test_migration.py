"""
Tests for the legacy buyer migration pipeline.

Legacy rows are loaded with import_rows, the same path the CLI uses for
CSV exports.
"""
import pytest
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import event
from sqlalchemy.exc import OperationalError

from canonical_contacts.core.contact_models import CanonicalCompany, CanonicalDomain, CanonicalPerson, DuplicateCandidate
from canonical_contacts.core.deal_models import Deal, DealActivity, DealBuyer, DealContact
from canonical_contacts.core.errors import (
    ConflictError,
    InternalError,
    RecordNotFoundError,
    RollbackBlockedError,
    ScopeAlreadyMigratedError,
    ValidationError,
)
from canonical_contacts.core.migration_models import LegacyBuyer, MigrationLedgerEntry, MigrationRun
from canonical_contacts.core.models import CandidateStatus, DataQuality, LedgerAction, MigrationStatus
from canonical_contacts.services.canonical_records import new_company
from canonical_contacts.services.merge_executor import MergeExecutor
from canonical_contacts.services.migration import (
    MigrationOptions,
    MigrationPipeline,
    normalize_tier,
    parse_employee_count,
    read_legacy_csv,
)


LEGACY_ROWS = [
    {
        "company_name": "Acme Corp",
        "website": "https://acme.com",
        "employee_count": "1,200",
        "tier": "A",
        "buyer_type": "strategic",
        "contact_name": "Jane Doe",
        "contact_email": "jane.doe@acme.com",
        "contact_title": "CFO",
    },
    {
        "company_name": "Globex",
        "website": "globex.com",
        "contact_name": "Hank Scorpio",
        "contact_email": "hank@globex.com",
    },
    {
        "company_name": "Acme Corporation",
        "website": "www.acme.com",
        "contact_name": "Bob Smith",
    },
]


@pytest.fixture
def pipeline(test_db):
    return MigrationPipeline(test_db)


@pytest.fixture
def legacy_deal(test_db, sample_deal, pipeline):
    """Project Falcon with three legacy buyer rows, two of them for Acme."""
    pipeline.import_rows(sample_deal.id, LEGACY_ROWS)
    return sample_deal


def _count(db, model):
    return db.query(model).count()


class TestHelpers:
    """Tests for legacy value parsing."""

    @pytest.mark.unit
    def test_parse_employee_count(self):
        assert parse_employee_count("1,200") == 1200
        assert parse_employee_count("500+") == 500
        assert parse_employee_count("  ") is None
        assert parse_employee_count(None) is None
        with pytest.raises(ValueError):
            parse_employee_count("lots")
        with pytest.raises(ValueError):
            parse_employee_count("-5")

    @pytest.mark.unit
    def test_normalize_tier(self):
        assert normalize_tier("A") == "A_TIER"
        assert normalize_tier("c_tier") == "C_TIER"
        assert normalize_tier("Tier B") == "B_TIER"
        assert normalize_tier("gold") == "B_TIER"
        assert normalize_tier(None) == "B_TIER"

    @pytest.mark.unit
    def test_read_legacy_csv(self):
        """Headers are matched loosely; unknown columns and blanks are dropped."""
        content = (
            "Company Name,Website,Contact Email,Contact Name,Notes\n"
            "Acme Corp,acme.com,jane@acme.com,Jane Doe,call back\n"
            "Globex,,,,\n"
        )
        assert read_legacy_csv(content) == [
            {"company_name": "Acme Corp", "website": "acme.com", "contact_email": "jane@acme.com", "contact_name": "Jane Doe"},
            {"company_name": "Globex"},
        ]

    @pytest.mark.unit
    def test_options(self):
        assert MigrationOptions().actor_id == "system"
        with pytest.raises(PydanticValidationError):
            MigrationOptions(bogus=True)


class TestImportRows:
    """Tests for loading legacy rows."""

    @pytest.mark.integration
    def test_rows_are_stored_in_order(self, test_db, legacy_deal):
        rows = test_db.query(LegacyBuyer).order_by(LegacyBuyer.source_row).all()

        assert [r.company_name for r in rows] == ["Acme Corp", "Globex", "Acme Corporation"]
        assert rows[0].employee_count == "1,200"
        assert not any(r.is_migrated for r in rows)

    @pytest.mark.integration
    def test_unknown_column_rejected(self, test_db, sample_deal, pipeline):
        with pytest.raises(ValidationError):
            pipeline.import_rows(sample_deal.id, [{"company_name": "Acme", "favourite_colour": "red"}])
        assert _count(test_db, LegacyBuyer) == 0

    @pytest.mark.integration
    def test_unknown_deal(self, pipeline):
        with pytest.raises(RecordNotFoundError):
            pipeline.import_rows("missing-deal", LEGACY_ROWS)


class TestReadiness:
    """Tests for validate_readiness."""

    @pytest.mark.integration
    def test_ready_scope(self, legacy_deal, pipeline):
        result = pipeline.validate_readiness(legacy_deal.id)

        assert result.is_ready
        assert result.pending_rows == 3
        assert result.migrated_rows == 0
        assert [i.code for i in result.issues] == ["no_canonical_companies"]

    @pytest.mark.integration
    def test_missing_deal(self, pipeline):
        result = pipeline.validate_readiness("missing-deal")
        assert not result.is_ready
        assert [i.code for i in result.issues] == ["deal_not_found"]

    @pytest.mark.integration
    def test_no_rows(self, sample_deal, pipeline):
        result = pipeline.validate_readiness(sample_deal.id)
        assert [i.code for i in result.issues] == ["no_legacy_rows"]

    @pytest.mark.integration
    def test_row_problems_are_reported(self, sample_deal, sample_companies, pipeline):
        ids = pipeline.import_rows(sample_deal.id, [
            {"contact_name": "Nobody"},
            {"company_name": "Initech", "employee_count": "lots", "contact_email": "not-an-email"},
        ])

        result = pipeline.validate_readiness(sample_deal.id)

        assert not result.is_ready
        assert [(i.severity, i.code, i.record_id) for i in result.issues] == [
            ("error", "missing_company_name", ids[0]),
            ("error", "invalid_employee_count", ids[1]),
            ("warning", "invalid_contact_email", ids[1]),
        ]

    @pytest.mark.integration
    def test_is_read_only(self, test_db, legacy_deal, pipeline):
        pipeline.validate_readiness(legacy_deal.id)
        assert not test_db.new
        assert not test_db.dirty


class TestRun:
    """Tests for a real migration run."""

    @pytest.mark.integration
    def test_creates_records_and_relations(self, test_db, legacy_deal, pipeline):
        result = pipeline.run(legacy_deal.id, {"actor_id": "analyst-1"})

        assert result.success
        assert not result.partial
        assert result.summary["rows_total"] == 3
        assert result.summary["rows_migrated"] == 3
        assert result.summary["companies_created"] == 2
        assert result.summary["companies_linked"] == 1
        assert result.summary["people_created"] == 3
        assert result.summary["buyers_created"] == 2
        assert result.summary["buyers_adopted"] == 1
        assert result.summary["contacts_created"] == 3

        acme = test_db.query(CanonicalCompany).filter(CanonicalCompany.domain == "acme.com").one()
        assert acme.name == "Acme Corp"
        assert acme.employee_count == 1200
        assert acme.company_type == "STRATEGIC"
        assert acme.data_quality == DataQuality.SUGGESTED

        buyer = test_db.query(DealBuyer).filter(DealBuyer.canonical_company_id == acme.id).one()
        assert buyer.tier == "A_TIER"
        assert buyer.created_by == "analyst-1"
        contacts = test_db.query(DealContact).filter(DealContact.deal_buyer_id == buyer.id).all()
        assert len(contacts) == 2
        assert all(c.role == "PRIMARY" for c in contacts)

        jane = test_db.query(CanonicalPerson).filter(CanonicalPerson.email == "jane.doe@acme.com").one()
        bob = test_db.query(CanonicalPerson).filter(CanonicalPerson.last_name == "Smith").one()
        assert jane.data_quality == DataQuality.SUGGESTED
        assert bob.data_quality == DataQuality.PROVISIONAL
        assert jane.current_company_id == acme.id
        assert bob.current_company_id == acme.id

    @pytest.mark.integration
    def test_run_bookkeeping(self, test_db, legacy_deal, pipeline):
        """Rows are marked, the run is recorded and every touched record is ledgered."""
        result = pipeline.run(legacy_deal.id)

        run = test_db.get(MigrationRun, result.run_id)
        assert run.status == MigrationStatus.COMPLETED
        assert run.summary == result.summary
        assert run.completed_at is not None

        rows = test_db.query(LegacyBuyer).all()
        assert all(r.migrated_run_id == run.id for r in rows)

        entries = test_db.query(MigrationLedgerEntry).filter(MigrationLedgerEntry.run_id == run.id).all()
        by_type = {}
        for entry in entries:
            by_type.setdefault(entry.record_type, []).append(entry.action)
        assert sorted(by_type["company"]) == sorted([LedgerAction.CREATED, LedgerAction.CREATED, LedgerAction.LINKED])
        assert sorted(by_type["deal_buyer"]) == sorted([LedgerAction.CREATED, LedgerAction.CREATED, LedgerAction.ADOPTED])
        assert by_type["person"] == [LedgerAction.CREATED] * 3
        assert by_type["deal_contact"] == [LedgerAction.CREATED] * 3
        assert by_type["deal_activity"] == [LedgerAction.CREATED]

        note = test_db.query(DealActivity).one()
        assert note.activity_type == "NOTE"
        assert note.extra["run_id"] == run.id

    @pytest.mark.integration
    def test_links_existing_records(self, test_db, sample_deal, sample_people, pipeline):
        """Known domain and email resolve to the existing canonical records."""
        pipeline.import_rows(sample_deal.id, [LEGACY_ROWS[0]])
        acme_id = test_db.query(CanonicalCompany).filter(CanonicalCompany.domain == "acme.com").one().id

        result = pipeline.run(sample_deal.id)

        assert result.summary["companies_linked"] == 1
        assert result.summary["companies_created"] == 0
        assert result.summary["people_linked"] == 1
        assert result.decisions[0]["company"] == {"record_id": acme_id, "action": "linked"}
        assert result.decisions[0]["person"]["record_id"] == sample_people["jane"].id
        assert _count(test_db, CanonicalCompany) == 3

    @pytest.mark.integration
    def test_uncertain_match_is_created_and_queued(self, test_db, sample_deal, sample_companies, pipeline):
        pipeline.import_rows(sample_deal.id, [{"company_name": "Globex Corp"}])

        result = pipeline.run(sample_deal.id)

        assert result.decisions[0]["company"]["action"] == "review"
        assert result.summary["companies_created"] == 1
        assert result.summary["companies_review"] == 1
        assert result.summary["candidates_enqueued"] == 1
        created_id = result.decisions[0]["company"]["record_id"]
        candidate = test_db.query(DuplicateCandidate).one()
        assert candidate.status == CandidateStatus.PENDING
        assert set(candidate.record_ids) == {created_id, sample_companies["globex"].id}

    @pytest.mark.integration
    def test_skip_duplicate_check(self, test_db, sample_deal, sample_companies, pipeline):
        pipeline.import_rows(sample_deal.id, [{"company_name": "Globex Corp"}])

        result = pipeline.run(sample_deal.id, MigrationOptions(skip_duplicate_check=True))

        assert result.decisions[0]["company"]["action"] == "created"
        assert _count(test_db, DuplicateCandidate) == 0

    @pytest.mark.integration
    def test_bad_rows_make_a_partial_run(self, test_db, sample_deal, pipeline):
        ids = pipeline.import_rows(sample_deal.id, [
            LEGACY_ROWS[1],
            {"contact_name": "Nobody"},
            {"company_name": "Initech", "employee_count": "lots"},
        ])

        result = pipeline.run(sample_deal.id)

        assert result.partial
        assert not result.success
        assert result.summary["rows_migrated"] == 1
        assert result.summary["rows_failed"] == 2
        assert [(e.source_row_id, e.code) for e in result.errors] == [
            (ids[1], "missing_company_name"),
            (ids[2], "invalid_employee_count"),
        ]
        assert test_db.get(MigrationRun, result.run_id).status == MigrationStatus.PARTIAL
        assert test_db.get(LegacyBuyer, ids[0]).is_migrated
        assert not test_db.get(LegacyBuyer, ids[2]).is_migrated
        assert test_db.query(CanonicalCompany).one().name == "Globex"

    @pytest.mark.integration
    def test_scope_errors(self, test_db, sample_deal, legacy_deal, pipeline):
        with pytest.raises(RecordNotFoundError):
            pipeline.run("missing-deal")

        empty = Deal(code_name="Project Heron")
        test_db.add(empty)
        test_db.commit()
        with pytest.raises(ConflictError) as exc_info:
            pipeline.run(empty.id)
        assert exc_info.value.code == "no_legacy_rows"

        with pytest.raises(ValidationError):
            pipeline.run(legacy_deal.id, {"dry_run": True, "bogus": 1})

    @pytest.mark.integration
    def test_second_run_rejected(self, test_db, legacy_deal, pipeline):
        pipeline.run(legacy_deal.id)

        with pytest.raises(ScopeAlreadyMigratedError):
            pipeline.run(legacy_deal.id)

        assert _count(test_db, MigrationRun) == 1
        assert _count(test_db, CanonicalCompany) == 2


class TestDryRun:
    """Tests for dry-run migration."""

    @pytest.mark.integration
    def test_writes_nothing(self, test_db, legacy_deal, pipeline):
        result = pipeline.run(legacy_deal.id, {"dry_run": True})

        assert result.dry_run
        assert result.run_id is None
        assert _count(test_db, CanonicalCompany) == 0
        assert _count(test_db, CanonicalPerson) == 0
        assert _count(test_db, DealBuyer) == 0
        assert _count(test_db, MigrationRun) == 0
        assert _count(test_db, MigrationLedgerEntry) == 0
        assert _count(test_db, DealActivity) == 0
        assert pipeline.validate_readiness(legacy_deal.id).pending_rows == 3
        assert result.decisions[0]["company"]["record_id"].startswith("dry-run:")

    @pytest.mark.integration
    def test_reports_what_a_real_run_does(self, test_db, legacy_deal, pipeline):
        planned = pipeline.run(legacy_deal.id, {"dry_run": True})
        actual = pipeline.run(legacy_deal.id)

        assert planned.summary == actual.summary
        assert [d["company"]["action"] for d in planned.decisions] == [d["company"]["action"] for d in actual.decisions]


class TestRollback:
    """Tests for migration rollback."""

    @pytest.mark.integration
    def test_removes_everything_the_run_created(self, test_db, legacy_deal, pipeline):
        run_id = pipeline.run(legacy_deal.id).run_id

        result = pipeline.rollback(legacy_deal.id, actor_id="analyst-1")

        assert result.run_ids == [run_id]
        assert result.companies_removed == 2
        assert result.people_removed == 3
        assert result.deal_buyers_removed == 2
        assert result.deal_contacts_removed == 3
        assert result.deal_activities_removed == 1
        assert result.legacy_rows_reset == 3

        for model in (CanonicalCompany, CanonicalPerson, DealBuyer, DealContact, DealActivity, CanonicalDomain):
            assert _count(test_db, model) == 0
        run = test_db.get(MigrationRun, run_id)
        assert run.status == MigrationStatus.ROLLED_BACK
        assert run.rolled_back_by == "analyst-1"
        # Ledger is kept for the record
        assert _count(test_db, MigrationLedgerEntry) > 0

        # The scope can be migrated again
        assert pipeline.validate_readiness(legacy_deal.id).pending_rows == 3
        assert pipeline.run(legacy_deal.id).summary["companies_created"] == 2

    @pytest.mark.integration
    def test_linked_records_survive(self, test_db, sample_deal, sample_people, pipeline):
        pipeline.import_rows(sample_deal.id, [LEGACY_ROWS[0]])
        pipeline.run(sample_deal.id)

        result = pipeline.rollback(sample_deal.id)

        assert result.companies_removed == 0
        assert result.people_removed == 0
        assert result.deal_buyers_removed == 1
        assert _count(test_db, CanonicalCompany) == 3
        assert test_db.get(CanonicalPerson, sample_people["jane"].id) is not None

    @pytest.mark.integration
    def test_dry_run_rollback(self, test_db, legacy_deal, pipeline):
        pipeline.run(legacy_deal.id)

        result = pipeline.rollback(legacy_deal.id, dry_run=True)

        assert result.dry_run
        assert result.companies_removed == 2
        assert _count(test_db, CanonicalCompany) == 2
        assert test_db.query(MigrationRun).one().status == MigrationStatus.COMPLETED

    @pytest.mark.integration
    def test_nothing_to_roll_back(self, legacy_deal, pipeline):
        result = pipeline.rollback(legacy_deal.id)
        assert result.run_ids == []

        with pytest.raises(RecordNotFoundError):
            pipeline.rollback("missing-deal")

    @pytest.mark.integration
    def test_blocked_after_merge(self, test_db, legacy_deal, pipeline):
        """A migration-created record absorbed by a later merge blocks rollback."""
        pipeline.run(legacy_deal.id)
        globex = test_db.query(CanonicalCompany).filter(CanonicalCompany.name == "Globex").one()
        survivor = new_company(test_db, "Globex Corporation", domain="globex.net")
        test_db.commit()
        merge = MergeExecutor(test_db).merge_companies(survivor.id, [globex.id], "analyst-1")

        with pytest.raises(RollbackBlockedError) as exc_info:
            pipeline.rollback(legacy_deal.id)

        assert exc_info.value.record_ids == [globex.id]
        assert exc_info.value.details["audit_log_ids"] == [merge.audit_log_id]
        assert _count(test_db, DealBuyer) == 2
        assert test_db.query(MigrationRun).one().status == MigrationStatus.COMPLETED

    @pytest.mark.integration
    def test_buyer_with_later_activity_is_retained(self, test_db, sample_deal, pipeline):
        """A buyer row that picked up work after the migration stays, and so does its company."""
        pipeline.import_rows(sample_deal.id, [LEGACY_ROWS[1]])
        pipeline.run(sample_deal.id)
        buyer = test_db.query(DealBuyer).one()
        test_db.add(DealActivity(deal_id=sample_deal.id, deal_buyer_id=buyer.id, subject="Intro call"))
        test_db.commit()

        result = pipeline.rollback(sample_deal.id)

        assert result.deal_buyers_retained == [buyer.id]
        assert result.companies_retained == [buyer.canonical_company_id]
        assert result.people_removed == 1
        assert result.deal_contacts_removed == 1
        assert test_db.get(DealBuyer, buyer.id) is not None
        assert _count(test_db, CanonicalPerson) == 0

    @pytest.mark.integration
    def test_storage_failure_leaves_the_migration_in_place(self, test_db, legacy_deal, pipeline):
        """A database error while deleting companies undoes the buyer and people deletes before it."""
        run_id = pipeline.run(legacy_deal.id).run_id

        def fail_on_company_delete(session, flush_context, instances):
            if any(isinstance(obj, CanonicalCompany) for obj in session.deleted):
                raise OperationalError("DELETE FROM canonical_companies", {}, Exception("disk I/O error"))

        event.listen(test_db, "before_flush", fail_on_company_delete)
        try:
            with pytest.raises(InternalError):
                pipeline.rollback(legacy_deal.id, actor_id="analyst-1")
        finally:
            event.remove(test_db, "before_flush", fail_on_company_delete)

        run = test_db.get(MigrationRun, run_id)
        assert run.status == MigrationStatus.COMPLETED
        assert run.rolled_back_at is None
        assert _count(test_db, DealBuyer) == 2
        assert _count(test_db, DealContact) == 3
        assert _count(test_db, DealActivity) == 1
        assert _count(test_db, CanonicalPerson) == 3
        assert _count(test_db, CanonicalCompany) == 2
        assert _count(test_db, CanonicalDomain) == 2
        assert all(row.migrated_run_id == run_id for row in test_db.query(LegacyBuyer))
