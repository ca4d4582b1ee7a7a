import logging
import os
from contextlib import contextmanager
from dataclasses import asdict
from pathlib import Path
from typing import Any, List, Optional

import numpy as np
from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

try:
    from ..analysis.errors import (
        AlreadyVoted,
        BallotError,
        InvalidPhase,
        InvalidProposal,
        NotRegistered,
        SelfWhitelist,
        Unauthorized,
    )
    from ..analysis.events import AuditLog, BallotEvent, event_to_record
    from ..analysis.registry import TRANSITIONS, BallotRegistry
    from ..analysis.verification import TallyVerifier
    from ..data.database import BallotDatabase
except ImportError:
    from analysis.errors import (
        AlreadyVoted,
        BallotError,
        InvalidPhase,
        InvalidProposal,
        NotRegistered,
        SelfWhitelist,
        Unauthorized,
    )
    from analysis.events import AuditLog, BallotEvent, event_to_record
    from analysis.registry import TRANSITIONS, BallotRegistry
    from analysis.verification import TallyVerifier
    from data.database import BallotDatabase

logger = logging.getLogger(__name__)

DATABASE_PATH_ENV = "BALLOT_DATABASE_PATH"
ADMIN_ID_ENV = "BALLOT_ADMIN_ID"

app = FastAPI(
    title="Ballot Registry",
    description="Single-round ballot administration service",
)

# Global database path - None keeps the ballot in memory only
db_path = None

# The ballot owned by this process and the events not yet written out
registry: Optional[BallotRegistry] = None
audit_log = AuditLog()
_pending_events: List[BallotEvent] = []

ERROR_STATUS_CODES = {
    Unauthorized: 403,
    NotRegistered: 403,
    SelfWhitelist: 400,
    InvalidPhase: 409,
    AlreadyVoted: 409,
    InvalidProposal: 404,
}


class VoterRequest(BaseModel):
    voter_id: str = Field(min_length=1)


class ProposalRequest(BaseModel):
    description: str


class VoteRequest(BaseModel):
    proposal_id: int


def convert_numpy_types(obj: Any) -> Any:
    """Convert numpy types to native Python types for JSON serialization."""
    if isinstance(obj, np.integer):
        return int(obj)
    elif isinstance(obj, np.bool_):
        return bool(obj)
    elif isinstance(obj, (float, np.floating)):
        return None if np.isnan(obj) else float(obj)
    elif isinstance(obj, np.ndarray):
        return obj.tolist()
    elif isinstance(obj, dict):
        return {k: convert_numpy_types(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [convert_numpy_types(item) for item in obj]
    else:
        return obj


@app.on_event("startup")
async def startup_event():
    """Initialize the application."""
    logger.info("Starting Ballot Registry")


@app.on_event("shutdown")
async def shutdown_event():
    """Clean up on shutdown."""
    logger.info("Shutting down Ballot Registry")


@app.exception_handler(BallotError)
async def ballot_error_handler(request: Request, exc: BallotError):
    """Turn rejected ballot operations into client errors."""
    status_code = ERROR_STATUS_CODES.get(type(exc), 400)
    logger.warning(
        f"Rejected {request.method} {request.url.path}: {type(exc).__name__}: {exc}"
    )
    return JSONResponse(
        status_code=status_code,
        content={"error": type(exc).__name__, "detail": str(exc)},
    )


def get_database_path() -> Optional[str]:
    """Configured database path, falling back to the environment."""
    return db_path or os.environ.get(DATABASE_PATH_ENV)


def get_database(read_only: bool = True) -> BallotDatabase:
    """Open the configured ballot file, read-only unless asked otherwise."""
    path = get_database_path()
    if not path:
        raise HTTPException(status_code=500, detail="Database not configured")
    return BallotDatabase(path, read_only=read_only)


def _collect_event(event: BallotEvent) -> None:
    _pending_events.append(event)


def init_registry(administrator: str) -> BallotRegistry:
    """Start a fresh ballot administered by ``administrator``."""
    return _install_registry(BallotRegistry(administrator))


def _install_registry(
    new_registry: BallotRegistry, keep_audit_log: bool = False
) -> BallotRegistry:
    global registry
    if not keep_audit_log:
        audit_log.events.clear()
    registry = new_registry
    registry.subscribe(audit_log)
    registry.subscribe(_collect_event)
    _pending_events.clear()
    logger.info(
        f"Ballot ready: administrator={registry.administrator}, "
        f"status={registry.status.name}"
    )
    return registry


def _restore_registry(snapshot: dict) -> None:
    # Drop the uncommitted events from the in-memory log as well
    del audit_log.events[len(audit_log.events) - len(_pending_events) :]
    _install_registry(BallotRegistry.from_dict(snapshot), keep_audit_log=True)


def reset_registry() -> None:
    """Forget the current ballot and its in-memory audit log."""
    global registry
    registry = None
    audit_log.events.clear()
    _pending_events.clear()


def set_database_path(path: str):
    """Set the database path and resume the ballot stored there, if any."""
    global db_path
    db_path = path
    os.environ[DATABASE_PATH_ENV] = path
    logger.info(f"Database path set to: {path}")

    # Test connection to ensure database is accessible
    try:
        with BallotDatabase(path, read_only=True) as test_db:
            stored = test_db.load_registry()
        logger.info("Database connection test successful")
    except Exception as e:
        logger.error(f"Database connection test failed: {e}")
        raise

    if stored is not None:
        _install_registry(stored)


def get_registry() -> BallotRegistry:
    """
    Get the ballot owned by this process.

    Resumed from the configured database when it holds one, otherwise
    created on first use for the administrator named in the environment.
    """
    if registry is None:
        path = get_database_path()
        if path and Path(path).exists():
            set_database_path(path)
    if registry is None:
        administrator = os.environ.get(ADMIN_ID_ENV)
        if not administrator:
            raise HTTPException(
                status_code=500, detail="Ballot administrator not configured"
            )
        init_registry(administrator)
    return registry


def commit_changes(current: BallotRegistry, snapshot: dict) -> None:
    """
    Write the registry and its pending events through to the database.

    On failure the ballot is put back to ``snapshot`` before the error
    propagates, so a request that fails to save leaves nothing behind.
    """
    if not get_database_path():
        return

    try:
        with get_database(read_only=False) as database:
            database.commit(current, _pending_events)
    except Exception as e:
        logger.error(f"Failed to save ballot, reverting last change: {e}")
        _restore_registry(snapshot)
        raise


@contextmanager
def ballot_change():
    """Yield the ballot for one mutation, then commit it."""
    current = get_registry()
    snapshot = current.to_dict()
    try:
        yield current
        commit_changes(current, snapshot)
    finally:
        _pending_events.clear()


def _status_payload(current: BallotRegistry) -> dict:
    return {
        "status": current.status.name,
        "administrator": current.administrator,
        "proposal_count": current.proposal_count,
        "voter_count": sum(v.is_registered for v in current.voters.values()),
    }


# API Routes
@app.get("/api/status")
async def get_status():
    """Get the workflow status of the ballot."""
    return _status_payload(get_registry())


@app.post("/api/voters")
async def whitelist_voter(body: VoterRequest, x_caller_id: str = Header(...)):
    """Whitelist a voter (administrator only)."""
    with ballot_change() as current:
        event = current.whitelist_voter(x_caller_id, body.voter_id)
    return {"voter_id": body.voter_id, "newly_registered": event is not None}


@app.get("/api/voters/{voter_id}")
async def get_voter(voter_id: str):
    """Get a voter record."""
    return {"voter_id": voter_id, **asdict(get_registry().get_voter(voter_id))}


@app.post("/api/workflow/{action}")
async def advance_workflow(action: str, x_caller_id: str = Header(...)):
    """Advance the ballot to its next phase (administrator only)."""
    operation = action.replace("-", "_")
    if operation not in TRANSITIONS:
        raise HTTPException(status_code=404, detail=f"Unknown workflow action: {action}")

    with ballot_change() as current:
        event = getattr(current, operation)(x_caller_id)
    return asdict(event)


@app.get("/api/proposals")
async def list_proposals():
    """List proposals in ID order."""
    return [
        {"proposal_id": proposal_id, "description": p.description}
        for proposal_id, p in enumerate(get_registry().proposals)
    ]


@app.post("/api/proposals")
async def register_proposal(body: ProposalRequest, x_caller_id: str = Header(...)):
    """Submit a proposal (registered voters only)."""
    with ballot_change() as current:
        proposal_id = current.register_proposal(x_caller_id, body.description)
    return {"proposal_id": proposal_id, "description": body.description}


@app.post("/api/votes")
async def vote_for_proposal(body: VoteRequest, x_caller_id: str = Header(...)):
    """Cast a vote (registered voters only, once)."""
    with ballot_change() as current:
        event = current.vote_for_proposal(x_caller_id, body.proposal_id)
    return asdict(event)


@app.post("/api/tally/count")
async def count_votes(x_caller_id: str = Header(...)):
    """Compute the leading proposal without closing the ballot."""
    with ballot_change() as current:
        winning_proposal_id = current.count_votes(x_caller_id)
    return {"winning_proposal_id": winning_proposal_id}


@app.post("/api/tally")
async def tally_votes(x_caller_id: str = Header(...)):
    """Count the votes and close the ballot."""
    with ballot_change() as current:
        event = current.tally_votes(x_caller_id)
    return {**asdict(event), "winning_proposal_id": current.winning_proposal_id}


@app.get("/api/winner")
async def get_winner():
    """Get the winning proposal once votes are tallied."""
    current = get_registry()
    proposal = current.see_winning_proposal_details()
    return {"proposal_id": current.winning_proposal_id, **asdict(proposal)}


@app.get("/api/proposals/{proposal_id}/votes")
async def get_proposal_votes(proposal_id: int):
    """Get the vote count of one proposal once votes are tallied."""
    return {
        "proposal_id": proposal_id,
        "vote_count": get_registry().see_proposal_vote_count(proposal_id),
    }


@app.get("/api/events")
async def get_events():
    """Get the audit trail, from the database when one is configured."""
    if get_database_path():
        with get_database() as database:
            events = database.load_events()
    else:
        events = audit_log.events

    return [
        {"sequence": sequence, **event_to_record(event)}
        for sequence, event in enumerate(events, start=1)
    ]


@app.get("/api/verify-results")
async def verify_results():
    """Recount the ballot from the voter roll and compare."""
    verifier = TallyVerifier(get_registry())
    verification_results = verifier.verify_results()
    report = verifier.generate_verification_report(verification_results)

    return convert_numpy_types(
        {
            "verification_passed": verification_results["verification_passed"],
            "winner_match": verification_results["winner_match"],
            "expected_winner": verification_results["expected_winner"],
            "recorded_winner": verification_results["recorded_winner"],
            "total_vote_difference": verification_results["total_vote_difference"],
            "vote_comparisons": verification_results["vote_comparisons"].to_dict(
                "records"
            ),
            "report": report,
        }
    )
