"""
Audit persistence for k8s-tenancy.

When DB_HOST is set the controller writes to PostgreSQL; otherwise it falls
back to a SQLite file at /tmp/k8s-tenancy.db (the emptyDir volume mounted on
the controller pod).

Usage:
    audit_db = AuditStore()
    audit_db.init()
    audit_db.log_audit("team-a/alice", "request.approved", actor="controller")

All public methods are no-ops when the DB engine cannot be initialised.
"""

import os
import logging
from datetime import datetime, timedelta, timezone
from contextlib import contextmanager

from sqlalchemy import create_engine, Column, Integer, String, DateTime, Text
from sqlalchemy.orm import DeclarativeBase, sessionmaker, Session

logger = logging.getLogger("k8s-tenancy.db")


# ---------------------------------------------------------------------------
# Engine setup
# ---------------------------------------------------------------------------

def build_url() -> str:
    host = os.environ.get("DB_HOST", "")
    if host:
        from urllib.parse import quote_plus
        port = os.environ.get("DB_PORT", "5432")
        name = os.environ.get("DB_NAME", "tenancy")
        user = quote_plus(os.environ.get("DB_USER", "tenancy"))
        pw   = quote_plus(os.environ.get("DB_PASSWORD", ""))
        return f"postgresql://{user}:{pw}@{host}:{port}/{name}"
    # Fallback: SQLite on the emptyDir /tmp volume
    return "sqlite:////tmp/k8s-tenancy.db"


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    pass


class RoleRequestRecord(Base):
    __tablename__ = "role_requests"

    id          = Column(Integer, primary_key=True, autoincrement=True)
    key         = Column(String(511), unique=True, nullable=False, index=True)
    namespace   = Column(String(255), nullable=False, index=True)
    email       = Column(String(255), nullable=False, index=True)
    role_kind   = Column(String(50))
    role_name   = Column(String(255))
    state       = Column(String(50), index=True)
    message     = Column(Text)
    created_at  = Column(DateTime(timezone=True), nullable=False, index=True)
    updated_at  = Column(DateTime(timezone=True), nullable=False)
    approved_at = Column(DateTime(timezone=True))
    deleted_at  = Column(DateTime(timezone=True))
    expires_at  = Column(DateTime(timezone=True))


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id           = Column(Integer, primary_key=True, autoincrement=True)
    request_key  = Column(String(511), nullable=False, index=True)
    event        = Column(String(100), nullable=False, index=True)
    actor        = Column(String(255))
    timestamp    = Column(DateTime(timezone=True), nullable=False, index=True)
    detail       = Column(Text)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class AuditStore:
    def __init__(self, url: str | None = None):
        self.url = url or build_url()
        self.enabled = False
        self._engine = None
        self._session_factory = None

    def init(self) -> None:
        """Call once at startup."""
        is_pg = self.url.startswith("postgresql")
        try:
            kwargs: dict = {"pool_pre_ping": True}
            if is_pg:
                kwargs["pool_size"] = 5
                kwargs["max_overflow"] = 10
                kwargs["connect_args"] = {"connect_timeout": 5}
            else:
                # SQLite: worker threads share the engine
                kwargs["connect_args"] = {"check_same_thread": False}
            self._engine = create_engine(self.url, **kwargs)
            self._session_factory = sessionmaker(bind=self._engine, autoflush=False, autocommit=False)
            Base.metadata.create_all(self._engine)
            self.enabled = True
            backend = "PostgreSQL" if is_pg else "SQLite"
            logger.info(f"DB initialised ({backend})")
        except Exception as e:
            logger.error(f"DB init failed — persistence disabled: {e}")
            self.enabled = False

    @contextmanager
    def session(self) -> Session:
        if not self.enabled or self._session_factory is None:
            yield None  # callers must check for None
            return
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def upsert_request(self, key: str, **fields) -> None:
        """Insert or update a RoleRequestRecord row.

        created_at is set on insert only; updated_at is refreshed every call.
        """
        if not self.enabled:
            return
        try:
            with self.session() as session:
                if session is None:
                    return
                now = _now()
                rec = session.query(RoleRequestRecord).filter_by(key=key).first()
                if rec is None:
                    fields.setdefault("created_at", now)
                    rec = RoleRequestRecord(key=key, updated_at=now, **fields)
                    session.add(rec)
                else:
                    for k, v in fields.items():
                        if k == "created_at":
                            continue  # never overwrite original creation time
                        setattr(rec, k, v)
                    rec.updated_at = now
        except Exception as e:
            logger.error(f"upsert_request({key}) failed: {e}")

    def log_audit(self, request_key: str, event: str, actor: str = "", detail: str = "") -> None:
        """Append a row to audit_logs."""
        if not self.enabled:
            return
        try:
            with self.session() as session:
                if session is None:
                    return
                session.add(AuditLog(
                    request_key=request_key,
                    event=event,
                    actor=actor,
                    timestamp=_now(),
                    detail=detail,
                ))
        except Exception as e:
            logger.error(f"log_audit({request_key}, {event}) failed: {e}")

    def get_request(self, key: str) -> dict | None:
        if not self.enabled:
            return None
        try:
            with self.session() as session:
                if session is None:
                    return None
                rec = session.query(RoleRequestRecord).filter_by(key=key).first()
                if rec is None:
                    return None
                return {
                    "key": rec.key,
                    "namespace": rec.namespace,
                    "email": rec.email,
                    "role_kind": rec.role_kind,
                    "role_name": rec.role_name,
                    "state": rec.state,
                    "message": rec.message,
                    "approved_at": rec.approved_at,
                    "deleted_at": rec.deleted_at,
                }
        except Exception as e:
            logger.error(f"get_request({key}) failed: {e}")
            return None

    def get_audit_log(self, request_key: str) -> list[dict]:
        """Return audit log entries for a specific request, oldest first."""
        if not self.enabled:
            return []
        try:
            with self.session() as session:
                if session is None:
                    return []
                rows = (
                    session.query(AuditLog)
                    .filter_by(request_key=request_key)
                    .order_by(AuditLog.timestamp, AuditLog.id)
                    .all()
                )
                return [
                    {
                        "event": r.event,
                        "actor": r.actor,
                        "timestamp": r.timestamp.isoformat() if r.timestamp else "",
                        "detail": r.detail,
                    }
                    for r in rows
                ]
        except Exception as e:
            logger.error(f"get_audit_log({request_key}) failed: {e}")
            return []

    def purge_old_records(self, days: int = 30) -> int:
        """Delete audit rows older than ``days``. Returns the number removed."""
        if not self.enabled:
            return 0
        cutoff = _now() - timedelta(days=days)
        try:
            with self.session() as session:
                if session is None:
                    return 0
                removed = session.query(AuditLog).filter(AuditLog.timestamp < cutoff).delete()
                logger.info(f"🧹 purged {removed} audit rows older than {days}d")
                return removed
        except Exception as e:
            logger.error(f"purge_old_records({days}) failed: {e}")
            return 0
