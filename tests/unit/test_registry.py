"""
Ballot registry unit tests.

These tests drive the state machine directly: phase guards, access
control, one vote per voter and the read operations after the tally.
"""

import pytest

from analysis.errors import (
    AlreadyVoted,
    InvalidPhase,
    InvalidProposal,
    NotRegistered,
    SelfWhitelist,
    Unauthorized,
)
from analysis.events import ProposalRegistered, Voted, VoterRegistered, WorkflowStatusChange
from analysis.registry import TRANSITIONS, BallotRegistry, Proposal, Voter, WorkflowStatus

ADMIN = "0xAdmin"


def advance_to(registry, status):
    """Walk the workflow forward until ``status`` is reached."""
    order = ["start_proposals", "end_proposals", "start_voting_session",
             "end_voting_session", "vote_tallied"]
    for operation in order:
        if registry.status == status:
            return
        getattr(registry, operation)(ADMIN)
    assert registry.status == status


@pytest.mark.unit
class TestWorkflow:
    """Test phase transitions."""

    def test_initial_status(self, registry):
        assert registry.status == WorkflowStatus.REGISTERING_VOTERS
        assert registry.administrator == ADMIN
        assert registry.proposal_count == 0

    def test_empty_administrator_rejected(self):
        with pytest.raises(ValueError):
            BallotRegistry("")

    def test_full_sequence_emits_status_changes(self, registry, audit_log):
        advance_to(registry, WorkflowStatus.VOTES_TALLIED)

        changes = audit_log.of_type(WorkflowStatusChange)
        assert [(c.previous_status, c.new_status) for c in changes] == [
            ("REGISTERING_VOTERS", "PROPOSALS_REGISTRATION_STARTED"),
            ("PROPOSALS_REGISTRATION_STARTED", "PROPOSALS_REGISTRATION_ENDED"),
            ("PROPOSALS_REGISTRATION_ENDED", "VOTING_SESSION_STARTED"),
            ("VOTING_SESSION_STARTED", "VOTING_SESSION_ENDED"),
            ("VOTING_SESSION_ENDED", "VOTES_TALLIED"),
        ]

    def test_transition_returns_event(self, registry):
        event = registry.start_proposals(ADMIN)
        assert event == WorkflowStatusChange(
            "REGISTERING_VOTERS", "PROPOSALS_REGISTRATION_STARTED"
        )

    @pytest.mark.parametrize("operation", sorted(TRANSITIONS))
    def test_non_admin_transition_unauthorized(self, registry, operation):
        with pytest.raises(Unauthorized):
            getattr(registry, operation)("0xMallory")
        assert registry.status == WorkflowStatus.REGISTERING_VOTERS

    @pytest.mark.parametrize("operation", sorted(TRANSITIONS))
    def test_transition_only_from_its_predecessor(self, operation):
        required, new_status = TRANSITIONS[operation]
        for status in WorkflowStatus:
            registry = BallotRegistry(ADMIN)
            advance_to(registry, status)
            if status == required:
                getattr(registry, operation)(ADMIN)
                assert registry.status == new_status
                assert new_status == status + 1
            else:
                with pytest.raises(InvalidPhase):
                    getattr(registry, operation)(ADMIN)
                assert registry.status == status

    def test_unauthorized_checked_before_phase(self, registry):
        advance_to(registry, WorkflowStatus.VOTES_TALLIED)
        with pytest.raises(Unauthorized):
            registry.start_proposals("0xMallory")

    def test_no_transition_out_of_votes_tallied(self, registry):
        advance_to(registry, WorkflowStatus.VOTES_TALLIED)
        for operation in TRANSITIONS:
            with pytest.raises(InvalidPhase):
                getattr(registry, operation)(ADMIN)
        assert registry.status == WorkflowStatus.VOTES_TALLIED


@pytest.mark.unit
class TestWhitelist:
    """Test voter registration."""

    def test_whitelist_voter(self, registry, audit_log):
        event = registry.whitelist_voter(ADMIN, "0xAlice")

        assert event == VoterRegistered("0xAlice")
        assert registry.get_voter("0xAlice") == Voter(is_registered=True)
        assert audit_log.events == [VoterRegistered("0xAlice")]

    def test_unknown_voter_reads_zero_valued(self, registry):
        assert registry.get_voter("0xNobody") == Voter()
        assert "0xNobody" not in registry.voters

    def test_non_admin_cannot_whitelist(self, registry):
        with pytest.raises(Unauthorized):
            registry.whitelist_voter("0xAlice", "0xBob")
        assert not registry.get_voter("0xBob").is_registered

    def test_admin_cannot_whitelist_itself(self, registry, audit_log):
        with pytest.raises(SelfWhitelist):
            registry.whitelist_voter(ADMIN, ADMIN)
        assert not registry.get_voter(ADMIN).is_registered
        assert len(audit_log) == 0

    def test_whitelist_outside_registration_phase(self, registry):
        registry.start_proposals(ADMIN)
        with pytest.raises(InvalidPhase):
            registry.whitelist_voter(ADMIN, "0xAlice")
        assert not registry.get_voter("0xAlice").is_registered

    def test_rewhitelisting_is_a_no_op(self, registry, audit_log):
        registry.whitelist_voter(ADMIN, "0xAlice")
        assert registry.whitelist_voter(ADMIN, "0xAlice") is None

        assert registry.get_voter("0xAlice") == Voter(is_registered=True)
        assert len(audit_log.of_type(VoterRegistered)) == 1

    def test_empty_voter_id_rejected(self, registry, audit_log):
        with pytest.raises(ValueError, match="must not be empty"):
            registry.whitelist_voter(ADMIN, "")

        assert "" not in registry.voters
        assert len(audit_log) == 0

    def test_check_whitelist_changes_nothing(self, registry, audit_log):
        registry.check_whitelist(ADMIN, ["0xAlice", "0xBob"])
        assert registry.voters == {}

        with pytest.raises(SelfWhitelist):
            registry.check_whitelist(ADMIN, ["0xAlice", ADMIN])
        with pytest.raises(Unauthorized):
            registry.check_whitelist("0xAlice", ["0xBob"])

        assert registry.voters == {}
        assert len(audit_log) == 0


@pytest.mark.unit
class TestProposals:
    """Test proposal registration."""

    def test_ids_follow_call_order(self, proposals_open, voters):
        descriptions = ["First", "Second", "  spaced  ", "Fourth", ""]
        ids = [
            proposals_open.register_proposal(voters[i % len(voters)], text)
            for i, text in enumerate(descriptions)
        ]

        assert ids == list(range(len(descriptions)))
        assert [p.description for p in proposals_open.proposals] == descriptions
        assert all(p.vote_count == 0 for p in proposals_open.proposals)

    def test_register_emits_event(self, proposals_open, voters):
        log = []
        proposals_open.subscribe(log.append)
        proposals_open.register_proposal(voters[0], "Proposal X")
        proposals_open.register_proposal(voters[1], "Proposal Y")
        assert log == [ProposalRegistered(0), ProposalRegistered(1)]

    def test_unregistered_caller_rejected(self, proposals_open):
        with pytest.raises(NotRegistered):
            proposals_open.register_proposal("0xStranger", "Sneaky proposal")
        assert proposals_open.proposal_count == 0

    def test_admin_is_not_a_voter(self, proposals_open):
        with pytest.raises(NotRegistered):
            proposals_open.register_proposal(ADMIN, "Admin proposal")

    def test_register_outside_proposal_phase(self, registry):
        registry.whitelist_voter(ADMIN, "0xAlice")
        with pytest.raises(InvalidPhase):
            registry.register_proposal("0xAlice", "Too early")

        advance_to(registry, WorkflowStatus.PROPOSALS_REGISTRATION_ENDED)
        with pytest.raises(InvalidPhase):
            registry.register_proposal("0xAlice", "Too late")
        assert registry.proposal_count == 0

    def test_proposals_view_is_a_copy(self, proposals_open, voters):
        proposals_open.register_proposal(voters[0], "Original")
        proposals_open.proposals[0].description = "Changed"
        assert proposals_open.get_proposal(0).description == "Original"


@pytest.mark.unit
class TestVoting:
    """Test vote casting."""

    def test_vote_records_choice(self, voting_open, voters, audit_log):
        event = voting_open.vote_for_proposal(voters[0], 2)

        assert event == Voted(voters[0], 2)
        assert voting_open.get_voter(voters[0]) == Voter(
            is_registered=True, has_voted=True, voted_proposal_id=2
        )
        assert voting_open.get_proposal(2).vote_count == 1
        assert audit_log.events[-1] == Voted(voters[0], 2)

    def test_second_vote_rejected(self, voting_open, voters):
        voting_open.vote_for_proposal(voters[0], 1)
        before = [p.vote_count for p in voting_open.proposals]

        with pytest.raises(AlreadyVoted):
            voting_open.vote_for_proposal(voters[0], 1)
        with pytest.raises(AlreadyVoted):
            voting_open.vote_for_proposal(voters[0], 0)

        assert [p.vote_count for p in voting_open.proposals] == before
        assert voting_open.get_voter(voters[0]).voted_proposal_id == 1

    @pytest.mark.parametrize("proposal_id", [-1, 3, 100])
    def test_out_of_range_proposal(self, voting_open, voters, proposal_id):
        with pytest.raises(InvalidProposal):
            voting_open.vote_for_proposal(voters[0], proposal_id)
        assert not voting_open.get_voter(voters[0]).has_voted
        assert sum(p.vote_count for p in voting_open.proposals) == 0

    def test_failed_vote_does_not_consume_right(self, voting_open, voters):
        with pytest.raises(InvalidProposal):
            voting_open.vote_for_proposal(voters[0], 7)
        voting_open.vote_for_proposal(voters[0], 0)
        assert voting_open.get_proposal(0).vote_count == 1

    def test_unregistered_caller_cannot_vote(self, voting_open):
        with pytest.raises(NotRegistered):
            voting_open.vote_for_proposal("0xStranger", 0)
        assert voting_open.get_proposal(0).vote_count == 0

    def test_vote_outside_voting_session(self, proposals_open, voters):
        proposals_open.register_proposal(voters[0], "Only proposal")
        with pytest.raises(InvalidPhase):
            proposals_open.vote_for_proposal(voters[0], 0)

        advance_to(proposals_open, WorkflowStatus.VOTING_SESSION_ENDED)
        with pytest.raises(InvalidPhase):
            proposals_open.vote_for_proposal(voters[0], 0)
        assert not proposals_open.get_voter(voters[0]).has_voted


@pytest.mark.unit
class TestTally:
    """Test counting and result reads."""

    def _cast(self, registry, voters, choices):
        for voter, proposal_id in zip(voters, choices):
            registry.vote_for_proposal(voter, proposal_id)
        registry.end_voting_session(ADMIN)

    def test_count_votes_picks_leader(self, voting_open, voters):
        self._cast(voting_open, voters, [1, 2, 2, 0])
        assert voting_open.count_votes(ADMIN) == 2
        assert voting_open.status == WorkflowStatus.VOTING_SESSION_ENDED

    def test_count_votes_admin_only(self, voting_open, voters):
        self._cast(voting_open, voters, [1])
        with pytest.raises(Unauthorized):
            voting_open.count_votes(voters[0])

    def test_count_votes_requires_ended_session(self, voting_open):
        with pytest.raises(InvalidPhase):
            voting_open.count_votes(ADMIN)

    def test_tie_goes_to_lowest_id(self, voting_open, voters):
        self._cast(voting_open, voters, [2, 1, 2, 1])
        voting_open.tally_votes(ADMIN)
        assert voting_open.winning_proposal_id == 1

    def test_no_votes_defaults_to_first_proposal(self, voting_open):
        voting_open.end_voting_session(ADMIN)
        voting_open.tally_votes(ADMIN)
        assert voting_open.winning_proposal_id == 0
        assert voting_open.see_winning_proposal_details() == Proposal(
            "Build a bike shed", 0
        )

    def test_vote_tallied_without_count(self, voting_open, voters):
        self._cast(voting_open, voters, [2, 2, 1])
        voting_open.vote_tallied(ADMIN)
        assert voting_open.winning_proposal_id == 2

    def test_tally_votes_closes_ballot(self, voting_open, voters, audit_log):
        self._cast(voting_open, voters, [0, 2, 2])
        event = voting_open.tally_votes(ADMIN)

        assert event == WorkflowStatusChange("VOTING_SESSION_ENDED", "VOTES_TALLIED")
        assert voting_open.status == WorkflowStatus.VOTES_TALLIED
        assert voting_open.see_winning_proposal_details() == Proposal(
            "Tear down the bike shed", 2
        )
        assert voting_open.see_proposal_vote_count(0) == 1
        assert voting_open.see_proposal_vote_count(1) == 0

    def test_reads_require_tallied_status(self, voting_open):
        with pytest.raises(InvalidPhase):
            voting_open.see_winning_proposal_details()
        with pytest.raises(InvalidPhase):
            voting_open.see_proposal_vote_count(0)
        with pytest.raises(InvalidPhase):
            voting_open.winning_proposal_id

    def test_vote_count_out_of_range(self, voting_open):
        voting_open.end_voting_session(ADMIN)
        voting_open.tally_votes(ADMIN)
        with pytest.raises(InvalidProposal):
            voting_open.see_proposal_vote_count(3)

    def test_winner_without_proposals(self, registry):
        advance_to(registry, WorkflowStatus.VOTES_TALLIED)
        with pytest.raises(InvalidProposal):
            registry.see_winning_proposal_details()

    def test_winner_details_are_a_copy(self, voting_open, voters):
        self._cast(voting_open, voters, [0])
        voting_open.tally_votes(ADMIN)
        voting_open.see_winning_proposal_details().vote_count = 99
        assert voting_open.see_proposal_vote_count(0) == 1


@pytest.mark.unit
class TestSnapshot:
    """Test exporting and restoring state."""

    def test_round_trip_preserves_state(self, voting_open, voters):
        voting_open.vote_for_proposal(voters[0], 1)
        voting_open.vote_for_proposal(voters[1], 1)

        restored = BallotRegistry.from_dict(voting_open.to_dict())

        assert restored.to_dict() == voting_open.to_dict()
        assert restored.status == WorkflowStatus.VOTING_SESSION_STARTED
        assert restored.get_voter(voters[0]).has_voted

        with pytest.raises(AlreadyVoted):
            restored.vote_for_proposal(voters[0], 2)
        restored.vote_for_proposal(voters[2], 2)
        assert restored.get_proposal(2).vote_count == 1

    def test_listeners_are_not_restored(self, registry, audit_log):
        restored = BallotRegistry.from_dict(registry.to_dict())
        restored.whitelist_voter(ADMIN, "0xAlice")
        assert len(audit_log) == 0
