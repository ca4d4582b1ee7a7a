import logging
from pathlib import Path
from typing import Dict, Optional

import pandas as pd

try:
    from ..analysis.registry import BallotRegistry
except ImportError:
    from analysis.registry import BallotRegistry

logger = logging.getLogger(__name__)

VOTER_ID_COLUMN = "voter_id"


class VoterRollLoader:
    """
    Loads a voter roll from CSV and whitelists it into a ballot.
    The CSV needs a ``voter_id`` column; other columns are ignored.
    """

    def __init__(self, registry: BallotRegistry):
        """
        Initialize loader.

        Args:
            registry: Ballot to whitelist voters into (must be in REGISTERING_VOTERS)
        """
        self.registry = registry
        self._roll: Optional[pd.DataFrame] = None

    def read_roll(self, csv_path: str) -> pd.DataFrame:
        """
        Read and clean a voter roll.

        Blank identities are dropped and duplicates keep their first row.

        Args:
            csv_path: Path to the roll CSV file

        Returns:
            DataFrame with one row per distinct voter_id
        """
        logger.info(f"Reading voter roll from: {csv_path}")

        roll = pd.read_csv(Path(csv_path), dtype={VOTER_ID_COLUMN: str})
        if VOTER_ID_COLUMN not in roll.columns:
            raise ValueError(
                f"Voter roll {csv_path} has no '{VOTER_ID_COLUMN}' column "
                f"(found: {', '.join(roll.columns)})"
            )

        roll[VOTER_ID_COLUMN] = roll[VOTER_ID_COLUMN].str.strip()
        roll = roll[roll[VOTER_ID_COLUMN].notna() & (roll[VOTER_ID_COLUMN] != "")]

        duplicates = int(roll.duplicated(subset=[VOTER_ID_COLUMN]).sum())
        if duplicates > 0:
            logger.warning(f"Found {duplicates} duplicate voter IDs in roll")

        self._roll = roll.drop_duplicates(subset=[VOTER_ID_COLUMN]).reset_index(
            drop=True
        )
        return self._roll

    def whitelist_roll(self, caller: str) -> Dict[str, int]:
        """
        Whitelist every voter of the loaded roll.

        The roll is checked as a whole first: if any entry would be
        rejected, nothing is whitelisted.

        Args:
            caller: Identity performing the whitelisting (the administrator)

        Returns:
            Dictionary with loading statistics
        """
        if self._roll is None:
            raise RuntimeError("Must read a voter roll first")

        voter_ids = self._roll[VOTER_ID_COLUMN].tolist()
        self.registry.check_whitelist(caller, voter_ids)

        newly_registered = 0
        for voter_id in voter_ids:
            if self.registry.whitelist_voter(caller, voter_id) is not None:
                newly_registered += 1

        stats = {
            "roll_size": len(voter_ids),
            "newly_registered": newly_registered,
            "already_registered": len(voter_ids) - newly_registered,
        }
        logger.info(
            f"Whitelisted {newly_registered} voters "
            f"({stats['already_registered']} already registered)"
        )
        return stats

    def load(self, csv_path: str, caller: str) -> Dict[str, int]:
        """Read a roll and whitelist it in one step."""
        self.read_roll(csv_path)
        return self.whitelist_roll(caller)
