import logging
from dataclasses import dataclass, replace
from enum import IntEnum
from typing import Any, Dict, Iterable, List, Optional, Tuple

try:
    from .errors import (
        AlreadyVoted,
        InvalidPhase,
        InvalidProposal,
        NotRegistered,
        SelfWhitelist,
        Unauthorized,
    )
    from .events import (
        BallotEvent,
        EventListener,
        ProposalRegistered,
        Voted,
        VoterRegistered,
        WorkflowStatusChange,
    )
except ImportError:
    from analysis.errors import (
        AlreadyVoted,
        InvalidPhase,
        InvalidProposal,
        NotRegistered,
        SelfWhitelist,
        Unauthorized,
    )
    from analysis.events import (
        BallotEvent,
        EventListener,
        ProposalRegistered,
        Voted,
        VoterRegistered,
        WorkflowStatusChange,
    )

logger = logging.getLogger(__name__)


class WorkflowStatus(IntEnum):
    """Ballot phases, in the only order they can occur."""

    REGISTERING_VOTERS = 0
    PROPOSALS_REGISTRATION_STARTED = 1
    PROPOSALS_REGISTRATION_ENDED = 2
    VOTING_SESSION_STARTED = 3
    VOTING_SESSION_ENDED = 4
    VOTES_TALLIED = 5


# operation -> (required status, status after the call)
TRANSITIONS: Dict[str, Tuple[WorkflowStatus, WorkflowStatus]] = {
    "start_proposals": (
        WorkflowStatus.REGISTERING_VOTERS,
        WorkflowStatus.PROPOSALS_REGISTRATION_STARTED,
    ),
    "end_proposals": (
        WorkflowStatus.PROPOSALS_REGISTRATION_STARTED,
        WorkflowStatus.PROPOSALS_REGISTRATION_ENDED,
    ),
    "start_voting_session": (
        WorkflowStatus.PROPOSALS_REGISTRATION_ENDED,
        WorkflowStatus.VOTING_SESSION_STARTED,
    ),
    "end_voting_session": (
        WorkflowStatus.VOTING_SESSION_STARTED,
        WorkflowStatus.VOTING_SESSION_ENDED,
    ),
    "vote_tallied": (
        WorkflowStatus.VOTING_SESSION_ENDED,
        WorkflowStatus.VOTES_TALLIED,
    ),
}


@dataclass
class Voter:
    """Voting rights and choice of one participant."""

    is_registered: bool = False
    has_voted: bool = False
    voted_proposal_id: int = 0


@dataclass
class Proposal:
    """A proposal submitted by a registered voter."""

    description: str
    vote_count: int = 0


def require_status(current: WorkflowStatus, required: WorkflowStatus) -> None:
    """Raise InvalidPhase unless ``current`` is exactly ``required``."""
    if current != required:
        raise InvalidPhase(
            f"Operation requires status {required.name}, current status is {current.name}"
        )


def find_winning_proposal(vote_counts: List[int]) -> int:
    """
    Pick the winner of a first-past-the-post count.

    Scans in index order and only moves the lead on a strictly greater
    count, so the lowest index wins a tie. Returns 0 when every count is
    zero or there are no proposals.

    Args:
        vote_counts: Vote count per proposal ID

    Returns:
        Winning proposal ID
    """
    current_best = 0
    winning_proposal_id = 0
    for proposal_id, count in enumerate(vote_counts):
        if count > current_best:
            current_best = count
            winning_proposal_id = proposal_id
    return winning_proposal_id


class BallotRegistry:
    """
    Voter roll, proposal list and workflow status of one ballot.

    Every operation takes the caller identity explicitly. All checks run
    before any write, so a rejected call leaves the registry unchanged.
    Listeners are notified after a mutation is applied.
    """

    def __init__(self, administrator: str):
        """
        Initialize an empty ballot.

        Args:
            administrator: Identity allowed to whitelist voters and advance phases
        """
        if not administrator:
            raise ValueError("Administrator identity must not be empty")

        self.administrator = administrator
        self.status = WorkflowStatus.REGISTERING_VOTERS
        self._voters: Dict[str, Voter] = {}
        self._proposals: List[Proposal] = []
        self._winning_proposal_id = 0
        self._listeners: List[EventListener] = []

    # Listeners

    def subscribe(self, listener: EventListener) -> None:
        self._listeners.append(listener)

    def unsubscribe(self, listener: EventListener) -> None:
        self._listeners.remove(listener)

    def _emit(self, event: BallotEvent) -> BallotEvent:
        logger.info(f"Ballot event: {event}")
        for listener in self._listeners:
            listener(event)
        return event

    # Guards

    def _require_admin(self, caller: str) -> None:
        if caller != self.administrator:
            raise Unauthorized(f"{caller!r} is not the ballot administrator")

    def _require_voter(self, caller: str) -> Voter:
        voter = self._voters.get(caller)
        if voter is None or not voter.is_registered:
            raise NotRegistered(f"{caller!r} is not a registered voter")
        return voter

    def _require_proposal(self, proposal_id: int) -> Proposal:
        if (
            isinstance(proposal_id, bool)
            or not isinstance(proposal_id, int)
            or not 0 <= proposal_id < len(self._proposals)
        ):
            raise InvalidProposal(
                f"Proposal {proposal_id!r} does not exist "
                f"({len(self._proposals)} proposals registered)"
            )
        return self._proposals[proposal_id]

    # Workflow transitions

    def _advance(self, caller: str, operation: str) -> WorkflowStatusChange:
        required, new_status = TRANSITIONS[operation]
        self._require_admin(caller)
        require_status(self.status, required)

        previous = self.status
        self.status = new_status
        return self._emit(WorkflowStatusChange(previous.name, new_status.name))

    def start_proposals(self, caller: str) -> WorkflowStatusChange:
        return self._advance(caller, "start_proposals")

    def end_proposals(self, caller: str) -> WorkflowStatusChange:
        return self._advance(caller, "end_proposals")

    def start_voting_session(self, caller: str) -> WorkflowStatusChange:
        return self._advance(caller, "start_voting_session")

    def end_voting_session(self, caller: str) -> WorkflowStatusChange:
        return self._advance(caller, "end_voting_session")

    def vote_tallied(self, caller: str) -> WorkflowStatusChange:
        """
        Close the ballot.

        The winner is recomputed from the frozen counts before the status
        changes, so the result is the same whether or not ``count_votes``
        was called first.
        """
        required, _ = TRANSITIONS["vote_tallied"]
        self._require_admin(caller)
        require_status(self.status, required)

        self._winning_proposal_id = find_winning_proposal(
            [p.vote_count for p in self._proposals]
        )
        return self._advance(caller, "vote_tallied")

    def tally_votes(self, caller: str) -> WorkflowStatusChange:
        """Count the votes and close the ballot in one call."""
        self.count_votes(caller)
        return self.vote_tallied(caller)

    # Mutations

    def check_whitelist(self, caller: str, voter_ids: Iterable[str]) -> None:
        """
        Raise the error whitelisting ``voter_ids`` would raise, changing nothing.

        Lets a batch be rejected as a whole before its first voter is added.
        """
        self._require_admin(caller)
        require_status(self.status, WorkflowStatus.REGISTERING_VOTERS)
        for voter_id in voter_ids:
            if not voter_id:
                raise ValueError("Voter identity must not be empty")
            if voter_id == self.administrator:
                raise SelfWhitelist("The administrator cannot whitelist itself")

    def whitelist_voter(self, caller: str, voter_id: str) -> Optional[VoterRegistered]:
        """
        Give ``voter_id`` the right to submit proposals and vote.

        Returns:
            The emitted event, or None if the voter was already registered
        """
        self.check_whitelist(caller, [voter_id])

        voter = self._voters.setdefault(voter_id, Voter())
        if voter.is_registered:
            logger.debug(f"Voter {voter_id!r} already registered")
            return None

        voter.is_registered = True
        return self._emit(VoterRegistered(voter_id))

    def register_proposal(self, caller: str, description: str) -> int:
        """
        Append a proposal.

        Returns:
            The new proposal ID
        """
        self._require_voter(caller)
        require_status(self.status, WorkflowStatus.PROPOSALS_REGISTRATION_STARTED)

        proposal_id = len(self._proposals)
        self._proposals.append(Proposal(description=description))
        self._emit(ProposalRegistered(proposal_id))
        return proposal_id

    def vote_for_proposal(self, caller: str, proposal_id: int) -> Voted:
        voter = self._require_voter(caller)
        require_status(self.status, WorkflowStatus.VOTING_SESSION_STARTED)
        if voter.has_voted:
            raise AlreadyVoted(
                f"{caller!r} already voted for proposal {voter.voted_proposal_id}"
            )
        proposal = self._require_proposal(proposal_id)

        proposal.vote_count += 1
        voter.voted_proposal_id = proposal_id
        voter.has_voted = True
        return self._emit(Voted(caller, proposal_id))

    def count_votes(self, caller: str) -> int:
        """
        Compute the winning proposal without closing the ballot.

        Returns:
            Winning proposal ID (lowest index among the tied leaders)
        """
        self._require_admin(caller)
        require_status(self.status, WorkflowStatus.VOTING_SESSION_ENDED)

        self._winning_proposal_id = find_winning_proposal(
            [p.vote_count for p in self._proposals]
        )
        logger.info(f"Counted votes, leading proposal: {self._winning_proposal_id}")
        return self._winning_proposal_id

    # Reads

    @property
    def winning_proposal_id(self) -> int:
        require_status(self.status, WorkflowStatus.VOTES_TALLIED)
        return self._winning_proposal_id

    @property
    def proposals(self) -> Tuple[Proposal, ...]:
        return tuple(replace(p) for p in self._proposals)

    @property
    def proposal_count(self) -> int:
        return len(self._proposals)

    @property
    def voters(self) -> Dict[str, Voter]:
        return {voter_id: replace(v) for voter_id, v in self._voters.items()}

    def get_voter(self, voter_id: str) -> Voter:
        """Get a copy of a voter record; unknown identities read as zero-valued."""
        voter = self._voters.get(voter_id)
        return replace(voter) if voter is not None else Voter()

    def get_proposal(self, proposal_id: int) -> Proposal:
        return replace(self._require_proposal(proposal_id))

    def see_winning_proposal_details(self) -> Proposal:
        require_status(self.status, WorkflowStatus.VOTES_TALLIED)
        return replace(self._require_proposal(self._winning_proposal_id))

    def see_proposal_vote_count(self, proposal_id: int) -> int:
        require_status(self.status, WorkflowStatus.VOTES_TALLIED)
        return self._require_proposal(proposal_id).vote_count

    # Snapshots

    def to_dict(self) -> Dict[str, Any]:
        """Export the full state as plain Python types."""
        return {
            "administrator": self.administrator,
            "status": self.status.name,
            "winning_proposal_id": self._winning_proposal_id,
            "voters": {
                voter_id: {
                    "is_registered": v.is_registered,
                    "has_voted": v.has_voted,
                    "voted_proposal_id": v.voted_proposal_id,
                }
                for voter_id, v in self._voters.items()
            },
            "proposals": [
                {"description": p.description, "vote_count": p.vote_count}
                for p in self._proposals
            ],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BallotRegistry":
        """Restore a registry exported with ``to_dict``. Listeners are not restored."""
        registry = cls(data["administrator"])
        registry.status = WorkflowStatus[data["status"]]
        registry._winning_proposal_id = int(data.get("winning_proposal_id", 0))
        registry._voters = {
            voter_id: Voter(
                is_registered=bool(v["is_registered"]),
                has_voted=bool(v["has_voted"]),
                voted_proposal_id=int(v["voted_proposal_id"]),
            )
            for voter_id, v in data.get("voters", {}).items()
        }
        registry._proposals = [
            Proposal(description=p["description"], vote_count=int(p["vote_count"]))
            for p in data.get("proposals", [])
        ]
        return registry
