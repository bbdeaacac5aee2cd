"""
Database models and operations for Shipgate
Uses SQLite for the append-only audit trail of pipeline runs
"""

from datetime import datetime, timezone
from sqlalchemy import create_engine, Column, String, Integer, DateTime, Text, Index, text
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.pool import StaticPool
import os
import logging

logger = logging.getLogger(__name__)


def utcnow():
    """Helper to get timezone-aware UTC datetime for database defaults"""
    return datetime.now(timezone.utc)


Base = declarative_base()


class AuditLogRecord(Base):
    """
    One audit entry: a state transition or a per-image outcome of a run.

    Rows are only ever inserted. No column can hold a secret value;
    ``reason`` carries the pipeline's fixed reason strings.
    """
    __tablename__ = "audit_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    run_id = Column(String, nullable=False)
    timestamp = Column(DateTime, default=utcnow, nullable=False)

    action = Column(String, nullable=False, default='transition')  # transition, decision, build, push, cleanup
    from_state = Column(String, nullable=True)
    to_state = Column(String, nullable=True)
    subject = Column(String, nullable=True)  # Repository for per-image entries
    reason = Column(Text, nullable=True)

    __table_args__ = (
        Index('idx_audit_run_id', 'run_id'),  # Replay one run
        Index('idx_audit_timestamp', 'timestamp'),
        {"sqlite_autoincrement": True},
    )


class DatabaseManager:
    """
    Database management for the audit trail.

    One instance per orchestrator; tests create their own against a
    temporary path.
    """

    def __init__(self, db_path: str = "data/shipgate.db"):
        self.db_path = db_path

        # Ensure data directory exists
        data_dir = os.path.dirname(db_path)
        if data_dir:
            os.makedirs(data_dir, exist_ok=True)

        self.engine = create_engine(
            f"sqlite:///{db_path}",
            connect_args={
                "check_same_thread": False,  # Builds/pushes audit from worker threads
                "timeout": 20
            },
            poolclass=StaticPool,
            echo=False
        )

        self._configure_sqlite_pragmas()

        # Create session factory
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

        # Create tables if they don't exist
        Base.metadata.create_all(bind=self.engine)

        # Set secure permissions on database file (rw for owner only)
        self._secure_database_file()

    def _configure_sqlite_pragmas(self):
        """
        Configure SQLite PRAGMA statements.

        - WAL mode: concurrent readers (`shipgate audit`) while a run writes
        - SYNCHRONOUS=NORMAL: safe with WAL, faster than FULL
        """
        try:
            with self.engine.connect() as conn:
                conn.execute(text("PRAGMA journal_mode=WAL"))
                conn.execute(text("PRAGMA synchronous=NORMAL"))
                conn.commit()
        except Exception as e:
            logger.warning(f"Failed to configure SQLite pragmas: {e}")

    def _secure_database_file(self):
        """Restrict the database file to its owner"""
        try:
            if os.path.exists(self.db_path):
                os.chmod(self.db_path, 0o600)
        except OSError as e:
            logger.warning(f"Could not set permissions on database file {self.db_path}: {e}")

    def get_session(self) -> Session:
        """Get a database session"""
        return self.SessionLocal()

    def dispose(self):
        """Close pooled connections (end of CLI invocation, tests)"""
        self.engine.dispose()
