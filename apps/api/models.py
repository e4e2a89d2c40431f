from sqlalchemy import Column, Integer, BigInteger, Boolean, Float, DateTime, ForeignKey, Text, Index
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from core.database import Base


class Athlete(Base):
    """A connected provider account. ``id`` is the provider's athlete id."""
    __tablename__ = "athlete"

    id = Column(BigInteger, primary_key=True, autoincrement=False)
    user_id = Column(Text, nullable=True, index=True)  # app user owning this athlete
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    # OAuth credentials - encrypted at rest (services.token_encryption)
    access_token = Column(Text, nullable=True)
    refresh_token = Column(Text, nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    scopes = Column(Text, nullable=True)  # comma-separated

    activities = relationship(
        "ActivitySummary",
        back_populates="athlete",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class ActivitySummary(Base):
    """Provider activity summary. Raw per-sample streams are never stored here."""
    __tablename__ = "activity"

    id = Column(BigInteger, primary_key=True, autoincrement=False)
    athlete_id = Column(BigInteger, ForeignKey("athlete.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(Text, nullable=True)
    name = Column(Text, nullable=True)
    type = Column(Text, nullable=True)
    start_date = Column(DateTime(timezone=True), nullable=True)
    distance = Column(Float, nullable=True)  # meters
    moving_time = Column(Integer, nullable=True)  # seconds
    elapsed_time = Column(Integer, nullable=True)
    total_elevation_gain = Column(Float, nullable=True)
    average_speed = Column(Float, nullable=True)
    max_speed = Column(Float, nullable=True)
    average_cadence = Column(Float, nullable=True)
    average_heartrate = Column(Float, nullable=True)
    max_heartrate = Column(Float, nullable=True)
    average_watts = Column(Float, nullable=True)
    weighted_average_watts = Column(Float, nullable=True)
    kilojoules = Column(Float, nullable=True)
    calories = Column(Float, nullable=True)
    private = Column(Boolean, nullable=True)
    visibility = Column(Text, nullable=True)
    gear_id = Column(Text, nullable=True)
    map_polyline = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    athlete = relationship("Athlete", back_populates="activities")

    __table_args__ = (
        Index("ix_activity_athlete_start", "athlete_id", "start_date"),
    )


class AuditLog(Base):
    """
    Append-only compliance / diagnostics trail.

    athlete_id is not a foreign key: deauth entries must outlive the athlete row.
    """
    __tablename__ = "audit_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    kind = Column(Text, nullable=False)  # webhook | deauth | api | job_error | cleanup
    ref_id = Column(Text, nullable=True)
    note = Column(Text, nullable=True)
    athlete_id = Column(BigInteger, nullable=True, index=True)
    user_id = Column(Text, nullable=True)
    at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False, index=True)
