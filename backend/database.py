"""
Database models and operations for YACU
Uses SQLite for the persisted freshness cache of remote image state
"""

import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Column, DateTime, Integer, String, UniqueConstraint, create_engine, text
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from utils.time_utils import ensure_utc

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = "yacu.db"


def utcnow():
    """Helper to get timezone-aware UTC datetime for database defaults"""
    return datetime.now(timezone.utc)


Base = declarative_base()


class RemoteImage(Base):
    """Last known remote registry state of a tagged image"""
    __tablename__ = "remote_images"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False)  # familiar repo:tag, e.g. "nginx:latest"
    domain = Column(String, nullable=False)  # registry domain, e.g. "docker.io"
    created = Column(DateTime(timezone=True), nullable=False)
    digest = Column(String, nullable=False)
    last_check = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint('name', 'domain', name='uq_remote_images_name_domain'),
    )


@dataclass(frozen=True)
class RemoteImageRow:
    """Detached snapshot of a remote_images row"""
    row_id: int
    name: str
    domain: str
    created: datetime
    digest: str
    last_check: datetime

    @classmethod
    def from_model(cls, model: RemoteImage) -> 'RemoteImageRow':
        # SQLite returns naive datetimes
        return cls(
            row_id=model.id,
            name=model.name,
            domain=model.domain,
            created=ensure_utc(model.created),
            digest=model.digest,
            last_check=ensure_utc(model.last_check),
        )


class DatabaseManager:
    """
    Persisted row store for the freshness cache.

    A single updater process owns the database file; rows are read and then
    written without cross-call locking.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path or DEFAULT_DB_PATH

        data_dir = os.path.dirname(self.db_path)
        if data_dir:
            os.makedirs(data_dir, exist_ok=True)

        self.engine = create_engine(
            f"sqlite:///{self.db_path}",
            connect_args={
                "check_same_thread": False,
                "timeout": 20
            },
            poolclass=StaticPool,
            echo=False
        )

        self._configure_sqlite_pragmas()

        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

        Base.metadata.create_all(bind=self.engine)
        logger.info(f"Database ready at {self.db_path}")

    def _configure_sqlite_pragmas(self):
        """
        Configure SQLite PRAGMA statements.

        - WAL mode: Write-Ahead Logging
        - SYNCHRONOUS=NORMAL: Safe with WAL, faster than FULL
        - TEMP_STORE=MEMORY: Keep temp tables in RAM
        """
        try:
            with self.engine.connect() as conn:
                conn.execute(text("PRAGMA journal_mode=WAL"))
                conn.execute(text("PRAGMA synchronous=NORMAL"))
                conn.execute(text("PRAGMA temp_store=MEMORY"))
                conn.commit()
        except Exception as e:
            logger.error(f"Failed to configure SQLite PRAGMAs: {e}", exc_info=True)
            # Non-fatal: SQLite will work with defaults

    def get_session(self) -> Session:
        """Get a database session"""
        return self.SessionLocal()

    def close(self):
        self.engine.dispose()

    # Remote Image Operations
    def get_remote_image(self, name: str) -> Optional[RemoteImageRow]:
        """Get the cache row for a familiar repo:tag name, None if never checked"""
        with self.get_session() as session:
            model = session.query(RemoteImage).filter_by(name=name).first()
            return RemoteImageRow.from_model(model) if model else None

    def get_remote_image_by_id(self, row_id: int) -> Optional[RemoteImageRow]:
        with self.get_session() as session:
            model = session.get(RemoteImage, row_id)
            return RemoteImageRow.from_model(model) if model else None

    def save_remote_image(self, name: str, domain: str, created: datetime, digest: str) -> int:
        """
        Insert the cache row for name+domain with last_check = now.

        An existing row for the same name+domain is overwritten in place.

        Returns:
            Row ID
        """
        with self.get_session() as session:
            try:
                model = session.query(RemoteImage).filter_by(name=name, domain=domain).first()
                if model is None:
                    model = RemoteImage(name=name, domain=domain)
                    session.add(model)
                model.created = ensure_utc(created)
                model.digest = digest
                model.last_check = utcnow()
                session.commit()
                logger.debug(f"Saved remote image {name} ({domain}) as row {model.id}")
                return model.id
            except Exception as e:
                session.rollback()
                logger.error(f"Failed to save remote image {name}: {e}")
                raise

    def update_remote_image(self, row_id: int, created: datetime, digest: str) -> None:
        """Update the remote creation time and digest of a row"""
        with self.get_session() as session:
            try:
                session.query(RemoteImage).filter_by(id=row_id).update({
                    RemoteImage.created: ensure_utc(created),
                    RemoteImage.digest: digest,
                })
                session.commit()
            except Exception as e:
                session.rollback()
                logger.error(f"Failed to update remote image row {row_id}: {e}")
                raise

    def update_remote_image_check(self, row_id: int) -> None:
        """Set last_check of a row to now"""
        with self.get_session() as session:
            try:
                session.query(RemoteImage).filter_by(id=row_id).update({
                    RemoteImage.last_check: utcnow(),
                })
                session.commit()
            except Exception as e:
                session.rollback()
                logger.error(f"Failed to update last check of remote image row {row_id}: {e}")
                raise
