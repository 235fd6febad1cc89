"""
AssistQR Backend — Vehicle & Emergency Contact Models
=======================================================

What:  ORM models for the `vehicles` and `emergency_contacts` tables.
Why:   A report is addressed to a vehicle by its QR token; the vehicle's
       contacts are who gets alerted.
Who:   Read by the vehicle store (token lookup) and the report service.

Table Design Rationale:
    - qr_token: opaque capability token printed in the QR code. Possession
      authorizes submitting a report, nothing else. Unique and never changed
      after creation.
    - phone_number: E.164, validated on assignment so the SMS chain can rely
      on a leading '+' and a country code.
    - Deleting a vehicle cascades to its contacts and its reports.
"""

import re
import secrets
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from assistqr.database import Base

E164_PATTERN = re.compile(r"^\+[1-9]\d{6,14}$")


def generate_qr_token() -> str:
    return secrets.token_urlsafe(16)


class Vehicle(Base):
    """
    A registered vehicle.

    Only license_plate, model and color are ever shown to a bystander
    (QR landing page, alert content); contact details never are.
    """

    __tablename__ = "vehicles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    license_plate: Mapped[str] = mapped_column(String(32), nullable=False)
    model: Mapped[str] = mapped_column(String(120), nullable=False)
    color: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    qr_token: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        unique=True,
        index=True,
        default=generate_qr_token,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    contacts: Mapped[List["EmergencyContact"]] = relationship(
        back_populates="vehicle",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="EmergencyContact.id",
    )
    reports: Mapped[List["AccidentReport"]] = relationship(  # noqa: F821
        back_populates="vehicle",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def __repr__(self) -> str:
        return f"<Vehicle(id={self.id}, plate='{self.license_plate}')>"


class EmergencyContact(Base):
    """A person to alert when a report is filed for their vehicle."""

    __tablename__ = "emergency_contacts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    vehicle_id: Mapped[int] = mapped_column(
        ForeignKey("vehicles.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    phone_number: Mapped[str] = mapped_column(String(20), nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    vehicle: Mapped[Vehicle] = relationship(back_populates="contacts")

    @validates("phone_number")
    def validate_phone_number(self, key: str, value: str) -> str:
        value = (value or "").strip()
        if not E164_PATTERN.match(value):
            raise ValueError(
                f"Phone number '{value}' is not in E.164 format (e.g. +919876543210)"
            )
        return value

    def __repr__(self) -> str:
        return f"<EmergencyContact(id={self.id}, vehicle_id={self.vehicle_id})>"
