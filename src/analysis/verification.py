import logging
from collections import Counter
from typing import Dict

import pandas as pd

try:
    from .registry import BallotRegistry, WorkflowStatus, find_winning_proposal
except ImportError:
    from analysis.registry import BallotRegistry, WorkflowStatus, find_winning_proposal

logger = logging.getLogger(__name__)


class TallyVerifier:
    """
    Cross-checks a ballot's stored counts against its voter roll.

    Every vote is recorded twice: as an increment on the proposal and as
    ``voted_proposal_id`` on the voter. The verifier recounts from the
    voter side and compares.
    """

    def __init__(self, registry: BallotRegistry):
        """
        Initialize verifier.

        Args:
            registry: Ballot to verify (any status)
        """
        self.registry = registry

    def recount_from_voters(self) -> Dict[int, int]:
        """Count votes per proposal ID from the voter records."""
        return dict(
            Counter(
                voter.voted_proposal_id
                for voter in self.registry.voters.values()
                if voter.has_voted
            )
        )

    def verify_results(self) -> Dict:
        """
        Verify stored counts and the winner.

        Returns:
            Verification report dictionary
        """
        logger.info("Verifying ballot counts against the voter roll")

        recount = self.recount_from_voters()
        proposals = self.registry.proposals

        comparisons = []
        for proposal_id, proposal in enumerate(proposals):
            recounted = recount.get(proposal_id, 0)
            comparisons.append(
                {
                    "proposal_id": proposal_id,
                    "description": proposal.description,
                    "stored_votes": proposal.vote_count,
                    "recounted_votes": recounted,
                    "difference": proposal.vote_count - recounted,
                }
            )

        comparison_df = pd.DataFrame(
            comparisons,
            columns=[
                "proposal_id",
                "description",
                "stored_votes",
                "recounted_votes",
                "difference",
            ],
        )

        # Votes pointing at proposals that do not exist
        orphan_votes = sum(
            count for proposal_id, count in recount.items()
            if not 0 <= proposal_id < len(proposals)
        )

        proposals_with_differences = int((comparison_df["difference"] != 0).sum())
        total_vote_difference = int(comparison_df["difference"].abs().sum())

        expected_winner = find_winning_proposal(
            [row["recounted_votes"] for row in comparisons]
        )
        tallied = self.registry.status == WorkflowStatus.VOTES_TALLIED
        recorded_winner = self.registry.winning_proposal_id if tallied else None
        winner_match = (not tallied) or recorded_winner == expected_winner

        report = {
            "status": self.registry.status.name,
            "tallied": tallied,
            "total_votes": sum(recount.values()),
            "vote_comparisons": comparison_df,
            "total_vote_difference": total_vote_difference,
            "proposals_with_differences": proposals_with_differences,
            "orphan_votes": orphan_votes,
            "expected_winner": expected_winner if proposals else None,
            "recorded_winner": recorded_winner,
            "winner_match": winner_match,
            "verification_passed": (
                total_vote_difference == 0 and orphan_votes == 0 and winner_match
            ),
        }

        if not report["verification_passed"]:
            logger.warning(
                f"Verification failed: {proposals_with_differences} proposals differ, "
                f"{orphan_votes} orphan votes, winner match={winner_match}"
            )

        return report

    def generate_verification_report(self, verification_results: Dict) -> str:
        """
        Generate a human-readable verification report.

        Args:
            verification_results: Results from verify_results()

        Returns:
            Formatted verification report string
        """
        report = []
        report.append("=" * 60)
        report.append("BALLOT TALLY VERIFICATION REPORT")
        report.append("=" * 60)

        if verification_results["verification_passed"]:
            report.append("✅ VERIFICATION PASSED - Stored counts match the voter roll")
        else:
            report.append("❌ VERIFICATION FAILED - Discrepancies found")

        report.append("")
        report.append(f"Status: {verification_results['status']}")
        report.append(f"Votes cast: {verification_results['total_votes']}")
        report.append(
            f"Total vote difference: {verification_results['total_vote_difference']}"
        )
        report.append(f"Orphan votes: {verification_results['orphan_votes']}")

        if verification_results["proposals_with_differences"] > 0:
            report.append("\nProposals with differences:")
            vote_df = verification_results["vote_comparisons"]
            for _, row in vote_df[vote_df["difference"] != 0].iterrows():
                report.append(
                    f"  #{row['proposal_id']} {row['description']}: "
                    f"Stored={row['stored_votes']}, Recounted={row['recounted_votes']}"
                )

        report.append("")
        report.append("WINNER VERIFICATION:")
        if not verification_results["tallied"]:
            report.append("Votes not tallied yet")
        elif verification_results["winner_match"]:
            report.append(
                f"✅ Recorded winner #{verification_results['recorded_winner']} confirmed"
            )
        else:
            report.append(
                f"❌ Recorded winner #{verification_results['recorded_winner']}, "
                f"expected #{verification_results['expected_winner']}"
            )

        return "\n".join(report)
