import logging
import random
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterable, List, Optional

import duckdb
import pandas as pd

try:
    from ..analysis.events import BallotEvent, event_from_record, event_to_record
    from ..analysis.registry import BallotRegistry
except ImportError:
    from analysis.events import BallotEvent, event_from_record, event_to_record
    from analysis.registry import BallotRegistry

logger = logging.getLogger(__name__)

MEMORY_DB = ":memory:"

AUDIT_COLUMNS = [
    "sequence",
    "event_type",
    "voter_id",
    "proposal_id",
    "previous_status",
    "new_status",
]


class DatabaseConnectionManager:
    """
    Opens DuckDB connections for ballot files.

    Readers of an existing file get a read-only connection so that
    several of them can inspect a stored ballot at once. Writers retry
    while another process holds the file lock.
    """

    def __init__(self):
        self.lock = threading.Lock()

    def get_connection(
        self, db_path: str, read_only: bool = True, max_retries: int = 3
    ) -> duckdb.DuckDBPyConnection:
        """
        Get a database connection with retry logic.

        Args:
            db_path: Path to DuckDB file, or ":memory:"
            read_only: Open an existing file read-only
            max_retries: Connection attempts before giving up on a held lock

        Returns:
            DuckDB connection
        """
        for attempt in range(max_retries):
            try:
                # Read-only only makes sense for a file that already exists
                with self.lock:
                    if read_only and Path(db_path).exists():
                        conn = duckdb.connect(db_path, read_only=True)
                        logger.debug(f"Opened read-only connection to {db_path}")
                    else:
                        conn = duckdb.connect(db_path)
                        logger.debug(f"Opened read-write connection to {db_path}")

                return conn

            except duckdb.IOException as e:
                if "Conflicting lock" in str(e) and attempt < max_retries - 1:
                    # Exponential backoff with jitter
                    wait_time = (2**attempt) + random.uniform(0, 1)  # nosec B311
                    logger.warning(
                        f"Database locked, retrying in {wait_time:.2f}s (attempt {attempt + 1}/{max_retries})"
                    )
                    time.sleep(wait_time)
                    continue
                else:
                    logger.error(
                        f"Failed to connect to database after {max_retries} attempts: {e}"
                    )
                    raise

        raise duckdb.IOException(
            f"Could not establish database connection after {max_retries} attempts"
        )

    @contextmanager
    def get_temporary_connection(self, db_path: str, read_only: bool = True):
        """Connection that is closed as soon as the block exits."""
        conn = None
        try:
            conn = self.get_connection(db_path, read_only)
            yield conn
        finally:
            if conn:
                try:
                    conn.close()
                    logger.debug(f"Closed temporary connection to {db_path}")
                except duckdb.Error as e:
                    logger.warning(f"Error closing connection: {e}")


_connection_manager = DatabaseConnectionManager()


class BallotDatabase:
    """
    Persists ballot registry snapshots and the audit trail in DuckDB.

    A snapshot is the full registry state (ballot_state, voters and
    proposals tables); saving replaces the previous snapshot in one
    transaction. Audit events are only ever appended, and ``commit`` writes
    a snapshot together with the events that produced it.
    """

    def __init__(self, db_path: Optional[str] = None, read_only: bool = True):
        """
        Args:
            db_path: Ballot file, or None for a throwaway in-memory ballot
            read_only: Open the file read-only; writers must pass False
        """
        self.db_path = db_path or MEMORY_DB
        self.read_only = read_only
        self.sql_dir = Path(__file__).parent.parent.parent / "sql"
        self._conn = None

    @property
    def conn(self) -> duckdb.DuckDBPyConnection:
        """Connection opened on first use."""
        if self._conn is None:
            self._conn = _connection_manager.get_connection(
                self.db_path, self.read_only
            )
        return self._conn

    @property
    def is_memory(self) -> bool:
        return self.db_path == MEMORY_DB

    @contextmanager
    def _reader(self, use_temporary_connection: bool):
        # An in-memory database only exists on its own connection, and DuckDB
        # refuses a read-only connection next to an open read-write one
        if use_temporary_connection and not self.is_memory and self._conn is None:
            with _connection_manager.get_temporary_connection(
                self.db_path, read_only=True
            ) as temp_conn:
                yield temp_conn
        else:
            yield self.conn

    def execute_script(self, script_name: str) -> None:
        """
        Execute every statement of a SQL script file.

        Args:
            script_name: Name of SQL file (without .sql extension)
        """
        script_path = self.sql_dir / f"{script_name}.sql"

        if not script_path.exists():
            raise FileNotFoundError(f"SQL script not found: {script_path}")

        with open(script_path, "r") as f:
            sql = f.read()

        statements = [s.strip() for s in sql.split(";") if s.strip()]
        try:
            for statement in statements:
                self.conn.execute(statement)
            logger.info(f"Executed script: {script_name}")
        except duckdb.Error as e:
            logger.error(f"Error executing script {script_name}: {e}")
            raise

    def create_schema(self) -> None:
        """Create the ballot tables if they do not exist yet."""
        self.execute_script("ballot_schema")

    def query(self, sql: str, use_temporary_connection: bool = False) -> pd.DataFrame:
        """
        Run a read query against the stored ballot.

        Args:
            sql: SQL query to execute
            use_temporary_connection: Read through a short-lived read-only
                connection instead of this object's own
        """
        with self._reader(use_temporary_connection) as conn:
            return conn.execute(sql).fetchdf()

    def table_exists(
        self, table_name: str, use_temporary_connection: bool = True
    ) -> bool:
        """Check whether the schema script has created ``table_name``."""
        sql = "SELECT COUNT(*) FROM information_schema.tables WHERE table_name = ?"

        with self._reader(use_temporary_connection) as conn:
            result = conn.execute(sql, [table_name]).fetchone()
            return result[0] > 0

    def has_ballot(self) -> bool:
        """Check whether a registry snapshot has been saved."""
        if not self.table_exists("ballot_state"):
            return False
        with self._reader(use_temporary_connection=True) as conn:
            return conn.execute("SELECT COUNT(*) FROM ballot_state").fetchone()[0] > 0

    def save_registry(self, registry: BallotRegistry) -> None:
        """
        Replace the stored snapshot with the current registry state.

        Args:
            registry: Registry to persist
        """
        self.commit(registry, [])

    def commit(self, registry: BallotRegistry, events: Iterable[BallotEvent]) -> int:
        """
        Replace the snapshot and append its events in one transaction.

        Either both land or neither does, so the stored ballot never holds
        a state whose audit events are missing.

        Args:
            registry: Registry to persist
            events: Events emitted since the previous commit

        Returns:
            Number of events written
        """
        state = registry.to_dict()
        events = list(events)

        self.create_schema()
        self.conn.begin()
        try:
            self._write_snapshot(state)
            written = self._insert_events(events)
            self.conn.commit()
        except duckdb.Error:
            self.conn.rollback()
            raise

        logger.info(
            f"Saved ballot snapshot: status={state['status']}, "
            f"{len(state['voters'])} voters, {len(state['proposals'])} proposals, "
            f"{written} new events"
        )
        return written

    def _write_snapshot(self, state: dict) -> None:
        voter_rows = [
            (
                voter_id,
                voter["is_registered"],
                voter["has_voted"],
                voter["voted_proposal_id"],
            )
            for voter_id, voter in state["voters"].items()
        ]
        proposal_rows = [
            (proposal_id, proposal["description"], proposal["vote_count"])
            for proposal_id, proposal in enumerate(state["proposals"])
        ]

        self.conn.execute("DELETE FROM ballot_state")
        self.conn.execute("DELETE FROM voters")
        self.conn.execute("DELETE FROM proposals")
        self.conn.execute(
            "INSERT INTO ballot_state VALUES (?, ?, ?)",
            [state["administrator"], state["status"], state["winning_proposal_id"]],
        )
        if voter_rows:
            self.conn.executemany("INSERT INTO voters VALUES (?, ?, ?, ?)", voter_rows)
        if proposal_rows:
            self.conn.executemany(
                "INSERT INTO proposals VALUES (?, ?, ?)", proposal_rows
            )

    def load_registry(self) -> Optional[BallotRegistry]:
        """
        Load the stored snapshot.

        Returns:
            Restored registry, or None if nothing has been saved
        """
        if not self.has_ballot():
            return None

        state = self.query("SELECT * FROM ballot_state", use_temporary_connection=True)
        voters = self.query(
            "SELECT * FROM voters ORDER BY voter_id", use_temporary_connection=True
        )
        proposals = self.query(
            "SELECT * FROM proposals ORDER BY proposal_id",
            use_temporary_connection=True,
        )

        row = state.iloc[0]
        registry = BallotRegistry.from_dict(
            {
                "administrator": row["administrator"],
                "status": row["status"],
                "winning_proposal_id": int(row["winning_proposal_id"]),
                "voters": {
                    v["voter_id"]: v for v in voters.to_dict("records")
                },
                "proposals": proposals.to_dict("records"),
            }
        )
        logger.info(f"Loaded ballot snapshot: status={registry.status.name}")
        return registry

    def append_events(self, events: Iterable[BallotEvent]) -> int:
        """
        Append events to the audit trail.

        Returns:
            Number of events written
        """
        events = list(events)
        if not events:
            return 0

        self.create_schema()
        self.conn.begin()
        try:
            written = self._insert_events(events)
            self.conn.commit()
        except duckdb.Error:
            self.conn.rollback()
            raise
        return written

    def _insert_events(self, events: List[BallotEvent]) -> int:
        if not events:
            return 0

        next_sequence = (
            self.conn.execute(
                "SELECT COALESCE(MAX(sequence), 0) FROM audit_events"
            ).fetchone()[0]
            + 1
        )

        rows = []
        for offset, event in enumerate(events):
            record = event_to_record(event)
            rows.append(
                [next_sequence + offset]
                + [record.get(column) for column in AUDIT_COLUMNS[1:]]
            )

        self.conn.executemany(
            f"INSERT INTO audit_events ({', '.join(AUDIT_COLUMNS)}) VALUES (?, ?, ?, ?, ?, ?)",
            rows,
        )
        logger.debug(f"Appended {len(rows)} audit events")
        return len(rows)

    def append_event(self, event: BallotEvent) -> None:
        """Listener-compatible single event append."""
        self.append_events([event])

    def get_events(self) -> pd.DataFrame:
        """Get the audit trail ordered by sequence."""
        if not self.table_exists("audit_events"):
            return pd.DataFrame(columns=AUDIT_COLUMNS)
        return self.query(
            "SELECT * FROM audit_events ORDER BY sequence",
            use_temporary_connection=True,
        )

    def load_events(self) -> List[BallotEvent]:
        return [event_from_record(r) for r in self.get_events().to_dict("records")]

    def close(self):
        """Close database connection."""
        if self._conn:
            try:
                self._conn.close()
                logger.debug(f"Closed database connection to {self.db_path}")
            except duckdb.Error as e:
                logger.warning(f"Error closing database connection: {e}")
            finally:
                self._conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
