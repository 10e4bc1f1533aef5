"""SQLAlchemy database models."""

from datetime import datetime
from typing import Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from lastmile.db.encryption import EncryptedString

JSONType = JSON().with_variant(JSONB(), "postgresql")

# Alert types emitted by the problem detector
ALERT_STUCK_SHIPMENT = "stuck_shipment"
ALERT_READY_NOT_SHIPPED = "ready_not_shipped"
ALERT_NOT_RETURNED = "not_returned"
ALERT_NOT_DELIVERED_NO_RETURN = "not_delivered_no_return"

ALERT_PENDING = "pending"
ALERT_INVESTIGATING = "investigating"
ALERT_RESOLVED = "resolved"

ACCOUNT_ACTIVE = "active"
ACCOUNT_NEEDS_RECONNECT = "needs_reconnect"


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class MarketplaceAccount(Base):
    """Connected marketplace seller account and its OAuth credentials."""

    __tablename__ = "marketplace_accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    external_user_id: Mapped[int] = mapped_column(BigInteger, nullable=False, unique=True)
    site_id: Mapped[str] = mapped_column(String(8), nullable=False)
    nickname: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    access_token: Mapped[Optional[str]] = mapped_column(EncryptedString(1024), nullable=True)
    refresh_token: Mapped[Optional[str]] = mapped_column(EncryptedString(1024), nullable=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    status: Mapped[str] = mapped_column(
        String(20), default=ACCOUNT_ACTIVE, nullable=False
    )  # active, needs_reconnect
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    connected_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )


class Driver(Base):
    """Independent driver that carries packages."""

    __tablename__ = "drivers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    phone: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    assignments: Mapped[list["DriverAssignment"]] = relationship(
        "DriverAssignment", back_populates="driver"
    )


class CachedShipment(Base):
    """Local copy of marketplace shipment state."""

    __tablename__ = "shipments_cache"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    shipment_id: Mapped[str] = mapped_column(String(32), nullable=False)

    # Sticky: never regress to null once known
    order_id: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    pack_id: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    tracking_number: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    # Authoritative: always the latest fetch
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    substatus: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    account_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("marketplace_accounts.id"), nullable=True
    )
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    last_update_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    raw_payload: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)

    __table_args__ = (
        UniqueConstraint("shipment_id", name="uq_shipments_cache_shipment_id"),
        Index("ix_shipments_cache_status", "status"),
        Index("ix_shipments_cache_last_update_at", "last_update_at"),
    )


class DriverAssignment(Base):
    """A driver holding a package, bounded by assigned_at/returned_at."""

    __tablename__ = "driver_assignments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    driver_id: Mapped[int] = mapped_column(Integer, ForeignKey("drivers.id"), nullable=False)
    shipment_id: Mapped[str] = mapped_column(String(32), nullable=False)
    account_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("marketplace_accounts.id"), nullable=True
    )
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False)

    assigned_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    scanned_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    returned_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    driver: Mapped["Driver"] = relationship("Driver", back_populates="assignments")

    __table_args__ = (
        # At most one active holder per package and owner
        Index(
            "uq_driver_assignment_active",
            "shipment_id",
            "owner_id",
            unique=True,
            postgresql_where=text("returned_at IS NULL"),
            sqlite_where=text("returned_at IS NULL"),
        ),
        Index("ix_driver_assignments_shipment_id", "shipment_id"),
        Index("ix_driver_assignments_driver_id", "driver_id"),
    )


class ShipmentAlert(Base):
    """Operational alert raised by the problem detector."""

    __tablename__ = "shipment_alerts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    shipment_id: Mapped[str] = mapped_column(String(32), nullable=False)
    alert_type: Mapped[str] = mapped_column(String(40), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default=ALERT_PENDING, nullable=False
    )  # pending, investigating, resolved
    detected_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    driver_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("drivers.id"), nullable=True
    )
    account_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("marketplace_accounts.id"), nullable=True
    )
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index(
            "uq_shipment_alert_pending",
            "shipment_id",
            "alert_type",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
        Index("ix_shipment_alerts_status", "status"),
        Index("ix_shipment_alerts_shipment_id", "shipment_id"),
    )


class ScanLog(Base):
    """Append-only audit trail of driver scans."""

    __tablename__ = "scan_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    driver_id: Mapped[int] = mapped_column(Integer, ForeignKey("drivers.id"), nullable=False)
    shipment_id: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    scanned_code: Mapped[str] = mapped_column(Text, nullable=False)
    resolved_from: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    outcome: Mapped[str] = mapped_column(String(20), nullable=False)  # assigned, rescanned, conflict
    account_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("marketplace_accounts.id"), nullable=True
    )
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False)
    scanned_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )


class SyncRun(Base):
    """Tracks batch job runs and their per-item results."""

    __tablename__ = "sync_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    run_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)  # UUID hex
    job_type: Mapped[str] = mapped_column(String(32), nullable=False)  # shipment_refresh, account_sync, ...
    trigger: Mapped[str] = mapped_column(String(32), default="scheduled", nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="running", nullable=False)  # running, completed, failed
    started_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    total_items: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    success_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
