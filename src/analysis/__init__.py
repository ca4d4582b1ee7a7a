"""
Analysis module for single-round ballots.

This module provides the ballot state machine and its result checks:
- BallotRegistry: voter roll, proposals and workflow status of one ballot
- TallyVerifier: recounts stored results from the voter roll

Every rejected operation raises a BallotError subclass.
"""

from .errors import (
    AlreadyVoted,
    BallotError,
    InvalidPhase,
    InvalidProposal,
    NotRegistered,
    SelfWhitelist,
    Unauthorized,
)
from .events import (
    AuditLog,
    ProposalRegistered,
    Voted,
    VoterRegistered,
    WorkflowStatusChange,
)
from .registry import (
    TRANSITIONS,
    BallotRegistry,
    Proposal,
    Voter,
    WorkflowStatus,
    find_winning_proposal,
)
from .verification import TallyVerifier

__all__ = [
    "BallotRegistry",
    "WorkflowStatus",
    "TRANSITIONS",
    "Voter",
    "Proposal",
    "find_winning_proposal",
    "AuditLog",
    "VoterRegistered",
    "WorkflowStatusChange",
    "ProposalRegistered",
    "Voted",
    "TallyVerifier",
    "BallotError",
    "Unauthorized",
    "InvalidPhase",
    "SelfWhitelist",
    "NotRegistered",
    "AlreadyVoted",
    "InvalidProposal",
]
