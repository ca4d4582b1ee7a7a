#!/usr/bin/env python3
"""
Show the state and results of a stored ballot.
"""

import argparse
import logging
import sys
from pathlib import Path

import pandas as pd

# Add src to path so we can import our modules
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from analysis.registry import WorkflowStatus  # noqa: E402
from analysis.verification import TallyVerifier  # noqa: E402
from data.database import BallotDatabase  # noqa: E402

logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def main():
    parser = argparse.ArgumentParser(description="Show ballot results")
    parser.add_argument("--db", help="Path to DuckDB database file with a stored ballot")
    parser.add_argument("--export", help="Export per-proposal results to CSV file")
    parser.add_argument(
        "--events", action="store_true", help="Also print the audit trail"
    )

    args = parser.parse_args()

    if not args.db or not Path(args.db).exists():
        logger.error("Database file required and must exist.")
        sys.exit(1)

    try:
        with BallotDatabase(args.db) as db:
            registry = db.load_registry()
            if registry is None:
                logger.error(f"No ballot stored in {args.db}")
                sys.exit(1)

            tallied = registry.status == WorkflowStatus.VOTES_TALLIED

            print("\n=== Ballot ===")
            print(f"Administrator: {registry.administrator}")
            print(f"Status:        {registry.status.name}")
            registered = sum(v.is_registered for v in registry.voters.values())
            voted = sum(v.has_voted for v in registry.voters.values())
            print(f"Voters:        {registered} registered, {voted} voted")

            results = pd.DataFrame(
                [
                    {
                        "proposal_id": proposal_id,
                        "description": p.description,
                        # Counts stay private until the ballot is tallied
                        "vote_count": p.vote_count if tallied else None,
                    }
                    for proposal_id, p in enumerate(registry.proposals)
                ],
                columns=["proposal_id", "description", "vote_count"],
            )

            print(f"\n=== Proposals ({len(results)}) ===")
            for _, row in results.iterrows():
                marker = (
                    "🏆"
                    if tallied and row["proposal_id"] == registry.winning_proposal_id
                    else "  "
                )
                count = f"{int(row['vote_count']):6d} votes" if tallied else ""
                print(f"  {marker} #{row['proposal_id']:<3d} {row['description']:40s} {count}")

            if tallied and registry.proposal_count > 0:
                winner = registry.see_winning_proposal_details()
                print(
                    f"\nWinner: #{registry.winning_proposal_id} "
                    f"{winner.description} ({winner.vote_count} votes)"
                )

            verifier = TallyVerifier(registry)
            print()
            print(verifier.generate_verification_report(verifier.verify_results()))

            if args.events:
                print("\n=== Audit Trail ===")
                events = db.get_events()
                if events.empty:
                    print("  (no events)")
                else:
                    print(events.to_string(index=False))

            if args.export:
                export_path = Path(args.export).with_suffix(".csv")
                results.to_csv(export_path, index=False)
                print(f"\n✓ Results exported to: {export_path}")

    except Exception as e:
        logger.error(f"Error reading ballot: {e}")
        import traceback

        traceback.print_exc()
        sys.exit(1)


if __name__ == "__main__":
    main()
