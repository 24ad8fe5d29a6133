from __future__ import annotations

from pathlib import Path
from typing import Iterable, List, Optional

from sqlalchemy import Boolean, Integer, create_engine, select
from sqlalchemy.engine import make_url
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from ferry_models import Capacity


DEFAULT_DATABASE_URL = "sqlite:///data/crossings.db"


class Base(DeclarativeBase):
    pass


class CrossingRecord(Base):
    """Persisted capacity reading, one row per sailing."""

    __tablename__ = "crossings"

    departure_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    arrival_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    departure_time: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    drive_up_capacity: Mapped[int] = mapped_column(Integer, default=0)
    reservable_capacity: Mapped[int] = mapped_column(Integer, default=0)
    total_capacity: Mapped[int] = mapped_column(Integer, default=0)
    has_drive_up: Mapped[bool] = mapped_column(Boolean, default=True)
    has_reservations: Mapped[bool] = mapped_column(Boolean, default=False)
    is_cancelled: Mapped[bool] = mapped_column(Boolean, default=False)
    departure_delta: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    @classmethod
    def from_capacity(cls, capacity: Capacity) -> "CrossingRecord":
        return cls(
            departure_id=capacity.departure_id,
            arrival_id=capacity.arrival_id,
            departure_time=capacity.departure_time,
            drive_up_capacity=capacity.drive_up_capacity,
            reservable_capacity=capacity.reservable_capacity,
            total_capacity=capacity.total_capacity,
            has_drive_up=capacity.has_drive_up,
            has_reservations=capacity.has_reservations,
            is_cancelled=capacity.is_cancelled,
            departure_delta=capacity.departure_delta,
        )

    def to_capacity(self) -> Capacity:
        return Capacity(
            departure_id=self.departure_id,
            arrival_id=self.arrival_id,
            departure_time=self.departure_time,
            drive_up_capacity=self.drive_up_capacity,
            reservable_capacity=self.reservable_capacity,
            total_capacity=self.total_capacity,
            has_drive_up=self.has_drive_up,
            has_reservations=self.has_reservations,
            is_cancelled=self.is_cancelled,
            departure_delta=self.departure_delta,
        )


class CrossingStorage:
    def __init__(self, database_url: str = DEFAULT_DATABASE_URL, echo: bool = False):
        url = make_url(database_url)
        if url.get_backend_name() == "sqlite" and url.database and url.database != ":memory:":
            Path(url.database).parent.mkdir(parents=True, exist_ok=True)
        self.engine = create_engine(database_url, echo=echo, pool_pre_ping=True)
        self._session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)

    def create_all(self) -> None:
        Base.metadata.create_all(self.engine)

    def upsert(self, capacity: Capacity) -> None:
        self.upsert_many([capacity])

    def upsert_many(self, capacities: Iterable[Capacity]) -> None:
        records = [CrossingRecord.from_capacity(c) for c in capacities]
        if not records:
            return
        with self._session_factory() as session:
            with session.begin():
                for record in records:
                    session.merge(record)

    def query_range(
        self,
        start: Optional[int] = None,
        end: Optional[int] = None,
        departure_id: Optional[int] = None,
        arrival_id: Optional[int] = None,
        include_start: bool = True,
    ) -> List[Capacity]:
        """Rows with departure time in [start, end], optionally for one route.

        ``include_start=False`` makes the lower bound exclusive.
        """
        stmt = select(CrossingRecord)
        if start is not None:
            if include_start:
                stmt = stmt.where(CrossingRecord.departure_time >= start)
            else:
                stmt = stmt.where(CrossingRecord.departure_time > start)
        if end is not None:
            stmt = stmt.where(CrossingRecord.departure_time <= end)
        if departure_id is not None:
            stmt = stmt.where(CrossingRecord.departure_id == departure_id)
        if arrival_id is not None:
            stmt = stmt.where(CrossingRecord.arrival_id == arrival_id)
        stmt = stmt.order_by(CrossingRecord.departure_time)
        with self._session_factory() as session:
            return [record.to_capacity() for record in session.scalars(stmt)]

    def dispose(self) -> None:
        self.engine.dispose()
