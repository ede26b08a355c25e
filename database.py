"""Relational storage for users, batches and their handoff history."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    create_engine,
)
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, relationship, sessionmaker
from sqlalchemy.pool import StaticPool

from errors import PersistenceError, TraceError

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    """Naive UTC timestamp; SQLite drops tzinfo anyway."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    phone: Mapped[str] = mapped_column(String(20), unique=True, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    location: Mapped[str] = mapped_column(String(255), nullable=False)
    gps_coordinates: Mapped[Optional[str]] = mapped_column(String(64))
    # 0: Farmer, 1: Distributor, 2: Retailer, 3: Consumer
    role: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    wallet_address: Mapped[str] = mapped_column(String(42), unique=True, nullable=False, index=True)
    # JSON: {"encrypted": hex, "iv": hex, "salt": hex}
    encrypted_private_key: Mapped[str] = mapped_column(Text, nullable=False)
    password_hash: Mapped[str] = mapped_column(String(128), nullable=False)
    is_verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<User {self.id} role={self.role} verified={self.is_verified}>"


class Batch(Base):
    __tablename__ = "batches"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    batch_number: Mapped[str] = mapped_column(String(80), unique=True, nullable=False, index=True)
    producer_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)

    produce: Mapped[str] = mapped_column(String(100), nullable=False)
    variety: Mapped[str] = mapped_column(String(100), nullable=False)
    quantity: Mapped[float] = mapped_column(Float, nullable=False)
    price: Mapped[float] = mapped_column(Float, nullable=False)
    quality_grade: Mapped[str] = mapped_column(String(50), nullable=False)
    is_organic: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    farm_location: Mapped[str] = mapped_column(String(255), nullable=False)
    gps_coordinates: Mapped[Optional[str]] = mapped_column(String(64))
    harvest_date: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    current_holder_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    # 0: Harvested, 1: InTransit, 2: AtDistributor, 3: AtRetailer, 4: Sold
    status: Mapped[int] = mapped_column(Integer, default=0, nullable=False, index=True)

    # Off-chain content references
    photo_url: Mapped[Optional[str]] = mapped_column(Text)
    metadata_url: Mapped[Optional[str]] = mapped_column(Text)
    qr_code: Mapped[Optional[str]] = mapped_column(Text)

    # Ledger mirror
    blockchain_id: Mapped[Optional[int]] = mapped_column(Integer)
    registration_tx_hash: Mapped[Optional[str]] = mapped_column(String(66))

    # Lineage of a split remainder: history of the parent up to (and including)
    # split_after_event_id belongs to this batch as well.
    parent_batch_id: Mapped[Optional[int]] = mapped_column(ForeignKey("batches.id"), index=True)
    split_after_event_id: Mapped[Optional[int]] = mapped_column(Integer)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False, index=True)

    producer = relationship("User", foreign_keys=[producer_id], lazy="joined")
    current_holder = relationship("User", foreign_keys=[current_holder_id], lazy="joined")
    parent = relationship("Batch", remote_side=[id])
    events = relationship(
        "HandoffEvent",
        back_populates="batch",
        order_by="HandoffEvent.id",
    )


class HandoffEvent(Base):
    """Immutable custody transition; the audit trail of a batch."""

    __tablename__ = "handoff_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    batch_id: Mapped[int] = mapped_column(ForeignKey("batches.id"), nullable=False, index=True)
    from_user_id: Mapped[Optional[int]] = mapped_column(ForeignKey("users.id"))
    to_user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)

    # Harvest | Pickup | Transit | Delivery | Sale
    event_type: Mapped[str] = mapped_column(String(20), nullable=False)
    # Batch status produced by this event
    status: Mapped[int] = mapped_column(Integer, nullable=False)
    quantity: Mapped[float] = mapped_column(Float, nullable=False)
    price: Mapped[float] = mapped_column(Float, nullable=False)
    location: Mapped[str] = mapped_column(String(255), nullable=False)

    gps_coordinates: Mapped[Optional[str]] = mapped_column(String(64))
    temperature: Mapped[Optional[str]] = mapped_column(String(32))
    notes: Mapped[Optional[str]] = mapped_column(Text)
    scan_location: Mapped[Optional[str]] = mapped_column(String(255))
    photo_url: Mapped[Optional[str]] = mapped_column(Text)
    document_url: Mapped[Optional[str]] = mapped_column(Text)

    # Written once, after the ledger confirms the mirrored transfer
    tx_hash: Mapped[Optional[str]] = mapped_column(String(66), index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False, index=True)

    batch = relationship("Batch", back_populates="events")
    from_user = relationship("User", foreign_keys=[from_user_id], lazy="joined")
    to_user = relationship("User", foreign_keys=[to_user_id], lazy="joined")


class Database:
    """Engine + session factory handed to every store."""

    def __init__(self, url: str, echo: bool = False):
        self.url = url
        self.engine = create_database_engine(url, echo=echo)
        self._sessions = sessionmaker(bind=self.engine, expire_on_commit=False)

    def create_all(self) -> None:
        try:
            Base.metadata.create_all(self.engine)
        except SQLAlchemyError as exc:
            raise PersistenceError("Failed to initialise database schema", details=str(exc)) from exc
        logger.info("Database initialised with batch-based supply chain tracking")

    @contextmanager
    def session_scope(self) -> Iterator[Session]:
        """One transaction: commit on success, roll back on any error."""
        session = self._sessions()
        try:
            yield session
            session.commit()
        except TraceError:
            session.rollback()
            raise
        except SQLAlchemyError as exc:
            session.rollback()
            logger.error("Database operation failed: %s", exc)
            raise PersistenceError("Database operation failed", details=str(exc)) from exc
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def dispose(self) -> None:
        self.engine.dispose()


def create_database_engine(url: str, echo: bool = False) -> Engine:
    parsed = make_url(url)
    kwargs = {"echo": echo}
    if parsed.get_backend_name() == "sqlite":
        kwargs["connect_args"] = {"check_same_thread": False}
        if parsed.database in (None, "", ":memory:"):
            kwargs["poolclass"] = StaticPool
        else:
            Path(parsed.database).parent.mkdir(parents=True, exist_ok=True)
    return create_engine(url, **kwargs)
