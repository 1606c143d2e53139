"""Database models for the S3 detach audit log."""

from datetime import datetime, timedelta
from typing import List

from sqlalchemy import (
    BigInteger, DateTime, Float, Integer, String, Text,
    create_engine, Column, Index, ForeignKey, event
)
from sqlalchemy.orm import declarative_base, sessionmaker

Base = declarative_base()


class DetachRun(Base):
    """One detach of a backup to S3."""
    __tablename__ = 's3_detach_runs'

    id = Column(Integer, primary_key=True, autoincrement=True)

    # Backup and target
    backup_id = Column(String(20), nullable=False, index=True)
    s3_bucket = Column(String(255), nullable=False)
    s3_endpoint = Column(String(255))

    # Timing
    started_at = Column(DateTime)
    finished_at = Column(DateTime, default=datetime.now)
    duration_seconds = Column(Float)

    # Counts
    threads = Column(Integer)
    files_uploaded = Column(Integer, default=0)
    files_failed = Column(Integer, default=0)
    files_skipped = Column(Integer, default=0)
    bytes_transferred = Column(BigInteger, default=0)

    status = Column(String(20), index=True)  # 'success', 'failed'

    __table_args__ = (
        Index('idx_detach_run_backup', 'backup_id'),
        Index('idx_detach_run_finished', 'finished_at'),
    )

    def __repr__(self):
        return f"<DetachRun(backup_id='{self.backup_id}', status='{self.status}')>"


class DetachFileLog(Base):
    """Outcome of one file within a detach run."""
    __tablename__ = 's3_detach_files'

    id = Column(Integer, primary_key=True, autoincrement=True)
    run_id = Column(Integer, ForeignKey('s3_detach_runs.id', ondelete='CASCADE'), nullable=False)

    rel_path = Column(String(1024), nullable=False)
    s3_key = Column(String(1024))
    s3_etag = Column(String(100))
    file_size = Column(BigInteger)
    crc = Column(BigInteger)
    bytes_transferred = Column(BigInteger)

    status = Column(String(50))  # 'OK' or the store/local error code
    error_message = Column(Text)
    retry_count = Column(Integer, default=0)

    __table_args__ = (
        Index('idx_detach_file_run', 'run_id'),
        Index('idx_detach_file_status', 'status'),
    )

    def __repr__(self):
        return f"<DetachFileLog(rel_path='{self.rel_path}', status='{self.status}')>"


class DatabaseManager:
    """Database connection and session management."""

    def __init__(self, connection_string: str):
        self.engine = create_engine(connection_string, echo=False)

        if 'sqlite' in connection_string:
            @event.listens_for(self.engine, "connect")
            def set_sqlite_pragma(dbapi_connection, connection_record):
                cursor = dbapi_connection.cursor()
                cursor.execute("PRAGMA foreign_keys=ON")
                cursor.close()

        self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False)

    def create_tables(self):
        """Create all tables."""
        Base.metadata.create_all(bind=self.engine)

    def get_session(self):
        """Get a database session."""
        return self.SessionLocal()

    def close(self):
        """Close the database connection."""
        self.engine.dispose()


class DatabaseService:
    """High-level audit log operations."""

    def __init__(self, db_manager: DatabaseManager):
        self.db_manager = db_manager

    def record_run(self, result, bucket: str, endpoint: str = None, threads: int = None) -> int:
        """Store a DetachResult and its per-file outcomes. Returns the run id."""
        session = self.db_manager.get_session()
        try:
            finished_at = datetime.now()
            run = DetachRun(
                backup_id=result.backup_id,
                s3_bucket=bucket,
                s3_endpoint=endpoint,
                started_at=finished_at - timedelta(seconds=result.elapsed),
                finished_at=finished_at,
                duration_seconds=result.elapsed,
                threads=threads,
                files_uploaded=result.uploaded,
                files_failed=result.failed,
                files_skipped=result.skipped,
                bytes_transferred=result.bytes_sent,
                status='success' if result.success else 'failed',
            )
            session.add(run)
            session.flush()

            for file_result in result.files:
                session.add(DetachFileLog(
                    run_id=run.id,
                    rel_path=file_result.rel_path,
                    s3_key=file_result.s3_key,
                    s3_etag=file_result.etag,
                    file_size=file_result.size,
                    crc=file_result.crc,
                    bytes_transferred=file_result.bytes_sent,
                    status=file_result.status,
                    error_message=file_result.error,
                    retry_count=max(file_result.attempts - 1, 0),
                ))

            session.commit()
            return run.id

        except Exception as e:
            session.rollback()
            raise e
        finally:
            session.close()

    def recent_runs(self, limit: int = 10) -> List[DetachRun]:
        """Most recent detach runs, newest first."""
        session = self.db_manager.get_session()
        try:
            return session.query(DetachRun).order_by(
                DetachRun.finished_at.desc(), DetachRun.id.desc()
            ).limit(limit).all()
        finally:
            session.close()

    def failed_files(self, run_id: int) -> List[DetachFileLog]:
        """Files of a run that did not upload."""
        session = self.db_manager.get_session()
        try:
            return session.query(DetachFileLog).filter(
                DetachFileLog.run_id == run_id,
                DetachFileLog.status != 'OK'
            ).order_by(DetachFileLog.rel_path).all()
        finally:
            session.close()
