import logging
from dataclasses import asdict, dataclass, fields
from typing import Callable, List, Union

import pandas as pd

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VoterRegistered:
    voter_id: str


@dataclass(frozen=True)
class WorkflowStatusChange:
    previous_status: str
    new_status: str


@dataclass(frozen=True)
class ProposalRegistered:
    proposal_id: int


@dataclass(frozen=True)
class Voted:
    voter_id: str
    proposal_id: int


BallotEvent = Union[VoterRegistered, WorkflowStatusChange, ProposalRegistered, Voted]
EventListener = Callable[[BallotEvent], None]

EVENT_TYPES = {
    cls.__name__: cls
    for cls in (VoterRegistered, WorkflowStatusChange, ProposalRegistered, Voted)
}


def event_to_record(event: BallotEvent) -> dict:
    """Flatten an event into a dict with its type name under ``event_type``."""
    record = {"event_type": type(event).__name__}
    record.update(asdict(event))
    return record


def event_from_record(record: dict) -> BallotEvent:
    """
    Rebuild an event from a flat record.

    Keys that are not fields of the event type are ignored, so rows read
    back from a wide audit table can be passed as-is.
    """
    event_type = record["event_type"]
    if event_type not in EVENT_TYPES:
        raise ValueError(f"Unknown event type: {event_type}")
    cls = EVENT_TYPES[event_type]
    return cls(**{f.name: f.type(record[f.name]) for f in fields(cls)})


class AuditLog:
    """
    Append-only in-memory sink for registry events.

    Subscribe an instance to a registry and it records every notification
    in the order it was emitted.
    """

    def __init__(self):
        self.events: List[BallotEvent] = []

    def __call__(self, event: BallotEvent) -> None:
        self.events.append(event)
        logger.debug(f"Audit event #{len(self.events)}: {event}")

    def __len__(self) -> int:
        return len(self.events)

    def of_type(self, event_type: type) -> List[BallotEvent]:
        return [e for e in self.events if isinstance(e, event_type)]

    def to_dataframe(self) -> pd.DataFrame:
        """
        Get the log as a DataFrame.

        Returns:
            DataFrame with a ``sequence`` column, ``event_type`` and the
            union of all event fields (missing fields are NaN)
        """
        if not self.events:
            return pd.DataFrame(columns=["sequence", "event_type"])

        records = []
        for sequence, event in enumerate(self.events, start=1):
            record = {"sequence": sequence}
            record.update(event_to_record(event))
            records.append(record)

        return pd.DataFrame(records)
