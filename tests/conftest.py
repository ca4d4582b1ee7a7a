"""
Shared pytest configuration and fixtures for ballot-registry.

This module provides common test fixtures and utilities used across
all test modules.
"""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from analysis.events import AuditLog  # noqa: E402
from analysis.registry import BallotRegistry  # noqa: E402
from data.database import BallotDatabase  # noqa: E402

ADMIN = "0xAdmin"
VOTERS = ["0xAlice", "0xBob", "0xCarol", "0xDave"]


@pytest.fixture
def admin():
    return ADMIN


@pytest.fixture
def voters():
    return list(VOTERS)


@pytest.fixture
def registry():
    """Provide a fresh ballot in REGISTERING_VOTERS."""
    return BallotRegistry(ADMIN)


@pytest.fixture
def audit_log(registry):
    """Provide an audit log subscribed to the registry fixture."""
    log = AuditLog()
    registry.subscribe(log)
    return log


@pytest.fixture
def proposals_open(registry):
    """Ballot with all sample voters whitelisted and proposals open."""
    for voter in VOTERS:
        registry.whitelist_voter(ADMIN, voter)
    registry.start_proposals(ADMIN)
    return registry


@pytest.fixture
def voting_open(proposals_open):
    """Ballot with three proposals and the voting session started."""
    registry = proposals_open
    registry.register_proposal(VOTERS[0], "Build a bike shed")
    registry.register_proposal(VOTERS[1], "Paint the bike shed")
    registry.register_proposal(VOTERS[2], "Tear down the bike shed")
    registry.end_proposals(ADMIN)
    registry.start_voting_session(ADMIN)
    return registry


@pytest.fixture
def temp_db():
    """Provide a temporary in-memory database for testing."""
    db = BallotDatabase(":memory:", read_only=False)
    yield db
    db.close()


@pytest.fixture
def temp_db_file(tmp_path):
    """Provide a path for a database file that does not exist yet."""
    return str(tmp_path / "ballot.db")


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "unit: marks tests as unit tests (fast, no external dependencies)"
    )
    config.addinivalue_line(
        "markers",
        "integration: marks tests as integration tests (medium speed, database required)",
    )
    config.addinivalue_line(
        "markers",
        "golden: marks tests as golden dataset validation (hand-computed tallies)",
    )
    config.addinivalue_line(
        "markers", "invariant: marks tests as ballot invariant validation"
    )
    config.addinivalue_line(
        "markers", "smoke: marks tests as smoke tests (basic functionality check)"
    )
