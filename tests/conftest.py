"""
Pytest configuration and shared fixtures.
"""
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from canonical_contacts.core.config import reset_settings
from canonical_contacts.core.database import enable_sqlite_savepoints
from canonical_contacts.core.deal_models import Deal
from canonical_contacts.core.models import Base, DataQuality
from canonical_contacts.services.canonical_records import new_company, new_person


@pytest.fixture(scope="function")
def clean_env(monkeypatch):
    """
    Clean environment for testing.

    Removes all contact-system env vars to ensure clean state.
    """
    env_vars = [
        "DATABASE_URL",
        "LOG_LEVEL",
        "MATCH_LINK_THRESHOLD",
        "MATCH_REVIEW_FLOOR",
        "FUZZY_NAME_THRESHOLD",
        "MATCH_CANDIDATE_LIMIT",
        "DUPLICATE_DETECTION_MIN_CONFIDENCE",
        "AUTO_MERGE_MIN_CONFIDENCE",
        "AUTO_MERGE_MAX_PER_RUN",
    ]
    for var in env_vars:
        monkeypatch.delenv(var, raising=False)

    # Reset settings singleton
    reset_settings()

    yield

    # Reset again after test
    reset_settings()


@pytest.fixture(scope="function")
def test_db(clean_env):
    """
    Create an in-memory SQLite database for testing.

    Fresh database for each test. Savepoints are enabled so per-row
    migration savepoints behave as they do on PostgreSQL.
    """
    engine = create_engine("sqlite:///:memory:")
    enable_sqlite_savepoints(engine)

    # Create all tables
    Base.metadata.create_all(bind=engine)

    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    db = TestingSessionLocal()

    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture(scope="function")
def db_session(test_db):
    """
    Alias for test_db fixture.
    """
    yield test_db


# =============================================================================
# SAMPLE DATA
# =============================================================================

@pytest.fixture
def sample_deal(test_db):
    """A deal with no legacy rows."""
    deal = Deal(code_name="Project Falcon", created_by="tester")
    test_db.add(deal)
    test_db.commit()
    return deal


@pytest.fixture
def sample_companies(test_db):
    """Three canonical companies: Acme (with domain), Globex, Initech."""
    acme = new_company(
        test_db, "Acme Corp", website="https://www.acme.com",
        industry="Manufacturing", data_quality=DataQuality.VERIFIED,
    )
    globex = new_company(test_db, "Globex Corporation", domain="globex.com")
    initech = new_company(test_db, "Initech LLC", linkedin_url="https://www.linkedin.com/company/initech")
    test_db.commit()
    return {"acme": acme, "globex": globex, "initech": initech}


@pytest.fixture
def sample_people(test_db, sample_companies):
    """Two people at Acme and one at Globex."""
    jane = new_person(
        test_db, "Jane", "Doe", email="jane.doe@acme.com",
        current_title="CFO", current_company_id=sample_companies["acme"].id,
    )
    robert = new_person(
        test_db, "Robert", "Smith", linkedin_url="https://linkedin.com/in/robert-smith",
        current_company_id=sample_companies["acme"].id,
    )
    hank = new_person(
        test_db, "Hank", "Scorpio", email="hank@globex.com",
        current_company_id=sample_companies["globex"].id,
    )
    test_db.commit()
    return {"jane": jane, "robert": robert, "hank": hank}
