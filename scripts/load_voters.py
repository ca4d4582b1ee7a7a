#!/usr/bin/env python3
"""
Whitelist a CSV voter roll into a stored ballot.
Creates the ballot when the database does not hold one yet.
"""

import argparse
import logging
import sys
from pathlib import Path

# Add src to path so we can import our modules
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from analysis.errors import BallotError  # noqa: E402
from analysis.events import AuditLog  # noqa: E402
from analysis.registry import BallotRegistry  # noqa: E402
from data.database import BallotDatabase  # noqa: E402
from data.roll_loader import VoterRollLoader  # noqa: E402

logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def main():
    parser = argparse.ArgumentParser(description="Load a voter roll")
    parser.add_argument("csv_file", help="Path to voter roll CSV (voter_id column)")
    parser.add_argument("--db", required=True, help="Path to DuckDB database file")
    parser.add_argument(
        "--admin", required=True, help="Administrator identity of the ballot"
    )

    args = parser.parse_args()

    csv_path = Path(args.csv_file)
    if not csv_path.exists():
        logger.error(f"CSV file not found: {csv_path}")
        sys.exit(1)

    try:
        with BallotDatabase(args.db, read_only=False) as db:
            registry = db.load_registry()
            if registry is None:
                logger.info(f"Creating new ballot administered by {args.admin}")
                registry = BallotRegistry(args.admin)

            audit_log = AuditLog()
            registry.subscribe(audit_log)

            loader = VoterRollLoader(registry)
            stats = loader.load(str(csv_path), args.admin)

            db.commit(registry, audit_log.events)

        print("\n=== Voter Roll Summary ===")
        print(f"Roll size:          {stats['roll_size']}")
        print(f"Newly registered:   {stats['newly_registered']}")
        print(f"Already registered: {stats['already_registered']}")
        print(f"\n✓ Ballot saved to: {args.db}")

    except BallotError as e:
        logger.error(f"Voter roll rejected ({type(e).__name__}): {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
