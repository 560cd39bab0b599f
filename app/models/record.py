from sqlalchemy import String, Integer, DateTime, Text
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime, timezone
from app.db.session import Base

class Record(Base):
    __tablename__ = "kv_records"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)  # e.g. rental:<id>, car:<id>, payment:<pi_id>
    value_json: Mapped[str] = mapped_column(Text, default="null")
    version: Mapped[int] = mapped_column(Integer, default=1)  # bumped on every write; compare-and-set target

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))


class SetMember(Base):
    __tablename__ = "kv_set_members"

    set_key: Mapped[str] = mapped_column(String(255), primary_key=True)  # e.g. rentals:all, car_rentals:<car_id>
    member: Mapped[str] = mapped_column(String(255), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
