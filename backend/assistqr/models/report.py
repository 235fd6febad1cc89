"""
AssistQR Backend — Accident Report Models
===========================================

What:  ORM models for the `accident_reports` and `accident_images` tables.
Why:   A report is the durable record of an incident; notification happens
       only after it is committed.
How:   Report and image rows are inserted in one transaction. Images keep
       their upload order through an explicit `position` column.

Table Design Rationale:
    - UUID primary key: report ids are returned to anonymous bystanders, so
      they must not be guessable.
    - latitude/longitude: nullable; a report may only carry a typed location
      or nothing at all.
    - Immutable after creation. Images are attached at creation time only.
"""

import uuid
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import (
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from assistqr.database import Base
from assistqr.models.vehicle import Vehicle


class AccidentReport(Base):
    """
    One submitted accident report.

    Query Patterns:
        - Reports for a vehicle, newest first:
          → Uses idx_accident_reports_vehicle_created
    """

    __tablename__ = "accident_reports"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    vehicle_id: Mapped[int] = mapped_column(
        ForeignKey("vehicles.id", ondelete="CASCADE"),
        nullable=False,
    )

    latitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    longitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    manual_location: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    helper_note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    vehicle: Mapped[Vehicle] = relationship(back_populates="reports")
    images: Mapped[List["AccidentImage"]] = relationship(
        back_populates="report",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="AccidentImage.position",
    )

    __table_args__ = (
        Index("idx_accident_reports_vehicle_created", "vehicle_id", created_at.desc()),
    )

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    def __repr__(self) -> str:
        return f"<AccidentReport(id={self.id}, vehicle_id={self.vehicle_id})>"


class AccidentImage(Base):
    """A photo attached to a report, stored as a public URL."""

    __tablename__ = "accident_images"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    report_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("accident_reports.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    image_url: Mapped[str] = mapped_column(String(1024), nullable=False)

    report: Mapped[AccidentReport] = relationship(back_populates="images")

    def __repr__(self) -> str:
        return f"<AccidentImage(report_id={self.report_id}, position={self.position})>"
