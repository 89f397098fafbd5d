"""SQLAlchemy-backed storage.

Any SQLAlchemy URL is accepted; SQLite is the default. Rows keep timestamps
as naive UTC so that every dialect orders and compares them the same way.
"""

from __future__ import annotations

import functools
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, TypeVar

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Index,
    String,
    Text,
    create_engine,
    delete,
    event,
    func,
    inspect,
    select,
)
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from datastore.base import Bracket, StorageBackend
from models.records import SensorData, SensorDataRef, Source, SourceSummary
from models.timestamps import check_interval, normalize_timestamp

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Base(DeclarativeBase):
    pass


class SourceRow(Base):
    __tablename__ = "sources"

    name: Mapped[str] = mapped_column(String(255), primary_key=True)
    owner: Mapped[str] = mapped_column(String(255), default="")
    public: Mapped[bool] = mapped_column(Boolean, default=False)
    virtual: Mapped[bool] = mapped_column(Boolean, default=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    location: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    coordinates: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    sub_sources: Mapped[List[str]] = mapped_column(JSON, default=list)
    properties: Mapped[Dict[str, str]] = mapped_column(JSON, default=dict)


class SensorDataRow(Base):
    __tablename__ = "sensor_data"

    source: Mapped[str] = mapped_column(String(255), primary_key=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime, primary_key=True)
    source_ref: Mapped[str] = mapped_column(Text, default="")
    tool: Mapped[str] = mapped_column(String(255), default="")
    properties: Mapped[Dict[str, str]] = mapped_column(JSON, default=dict)


Index(
    "ix_sensor_data_source_timestamp_desc",
    SensorDataRow.source,
    SensorDataRow.timestamp.desc(),
)


def _to_db(timestamp: datetime) -> datetime:
    return normalize_timestamp(timestamp).replace(tzinfo=None)


def _from_db(timestamp: datetime) -> datetime:
    return timestamp.replace(tzinfo=timezone.utc)


def _source_to_row(source: Source) -> SourceRow:
    return SourceRow(
        name=source.name,
        owner=source.owner,
        public=source.public,
        virtual=source.virtual,
        description=source.description,
        location=source.location,
        coordinates=source.coordinates,
        sub_sources=list(source.sub_sources),
        properties=dict(source.properties),
    )


def _row_to_source(row: SourceRow) -> Source:
    return Source(
        name=row.name,
        owner=row.owner or "",
        public=bool(row.public),
        virtual=bool(row.virtual),
        description=row.description,
        location=row.location,
        coordinates=row.coordinates,
        sub_sources=tuple(row.sub_sources or ()),
        properties=dict(row.properties or {}),
    )


def _row_to_sensor_data(row: SensorDataRow) -> SensorData:
    return SensorData(
        source=row.source_ref or row.source,
        timestamp=_from_db(row.timestamp),
        tool=row.tool or "",
        properties=dict(row.properties or {}),
    )


def _fault_tolerant(default: Callable[[], Any]) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Log SQLAlchemy faults and return ``default()`` instead of raising."""

    def decorator(method: Callable[..., T]) -> Callable[..., T]:
        @functools.wraps(method)
        def wrapper(self: "SqlStorage", *args: Any, **kwargs: Any) -> T:
            try:
                return method(self, *args, **kwargs)
            except SQLAlchemyError as exc:
                logger.exception(
                    "Storage operation %s failed",
                    method.__name__,
                    extra={"backend": self.name, "kind": "backend_fault", "reason": str(exc)},
                )
                return default()

        return wrapper

    return decorator


def create_storage_engine(database_url: str, echo: bool = False) -> Engine:
    url = make_url(database_url)
    kwargs: Dict[str, Any] = {"echo": echo, "future": True}
    in_memory = url.get_backend_name() == "sqlite" and url.database in (None, "", ":memory:")

    if url.get_backend_name() == "sqlite":
        kwargs["connect_args"] = {"check_same_thread": False}
        if in_memory:
            kwargs["poolclass"] = StaticPool
        else:
            Path(url.database).parent.mkdir(parents=True, exist_ok=True)
    else:
        kwargs["pool_pre_ping"] = True

    engine = create_engine(url, **kwargs)

    if url.get_backend_name() == "sqlite" and not in_memory:

        @event.listens_for(engine, "connect")
        def _on_connect(dbapi_conn: Any, _connection_record: Any) -> None:
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.close()
            logger.debug("SQLite connection established")

    return engine


class SqlStorage(StorageBackend):
    """Relational storage with one row per source and per reading."""

    name = "sql"

    def __init__(
        self,
        database_url: str,
        snapshot_path: Optional[Path] = None,
        echo: bool = False,
    ) -> None:
        self.database_url = database_url
        self.snapshot_path = snapshot_path
        self.engine = create_storage_engine(database_url, echo=echo)
        self._session_factory = sessionmaker(self.engine, expire_on_commit=False)
        self._freshly_created = True

    def initialize(self, wipe: bool = False) -> None:
        if wipe:
            Base.metadata.drop_all(self.engine)
        self._freshly_created = not inspect(self.engine).has_table(SourceRow.__tablename__)
        Base.metadata.create_all(self.engine)
        logger.info(
            "Storage initialized",
            extra={"backend": self.name, "reason": "fresh" if self._freshly_created else "existing"},
        )

    def is_freshly_created(self) -> bool:
        return self._freshly_created

    @_fault_tolerant(lambda: False)
    def wipe_data(self) -> bool:
        with self._session_factory.begin() as session:
            session.execute(delete(SensorDataRow))
            session.execute(delete(SourceRow))
        return True

    def close(self) -> None:
        self.engine.dispose()

    # Sources

    def store_source(self, source: Source, overwrite: bool = False) -> bool:
        try:
            with self._session_factory.begin() as session:
                if overwrite:
                    session.merge(_source_to_row(source))
                else:
                    session.add(_source_to_row(source))
        except IntegrityError:
            return False
        except SQLAlchemyError:
            logger.exception(
                "Failed to store source",
                extra={"backend": self.name, "source_name": source.name},
            )
            return False
        return True

    @_fault_tolerant(lambda: None)
    def get_source(self, source_name: str) -> Optional[Source]:
        with self._session_factory() as session:
            row = session.get(SourceRow, source_name)
            return _row_to_source(row) if row is not None else None

    @_fault_tolerant(list)
    def get_sources(self) -> List[Source]:
        with self._session_factory() as session:
            rows = session.scalars(select(SourceRow).order_by(SourceRow.name)).all()
            return [_row_to_source(row) for row in rows]

    @_fault_tolerant(lambda: False)
    def delete_source(self, source_name: str) -> bool:
        with self._session_factory.begin() as session:
            row = session.get(SourceRow, source_name)
            if row is None:
                return False
            session.execute(delete(SensorDataRow).where(SensorDataRow.source == source_name))
            session.delete(row)
        return True

    @_fault_tolerant(lambda: None)
    def get_source_summary(self, source_name: str) -> Optional[SourceSummary]:
        with self._session_factory() as session:
            if session.get(SourceRow, source_name) is None:
                return None
            first, last, count = session.execute(
                select(
                    func.min(SensorDataRow.timestamp),
                    func.max(SensorDataRow.timestamp),
                    func.count(),
                ).where(SensorDataRow.source == source_name)
            ).one()
        return SourceSummary(
            source=source_name,
            first_timestamp=_from_db(first) if first is not None else None,
            last_timestamp=_from_db(last) if last is not None else None,
            total_sensor_data=count or 0,
        )

    # Sensor data

    def store_sensor_data(self, data: SensorData) -> bool:
        source_name = data.source_name
        try:
            with self._session_factory.begin() as session:
                if session.get(SourceRow, source_name) is None:
                    logger.warning(
                        "Rejecting sensor data for unknown source",
                        extra={"source_name": source_name, "timestamp": data.timestamp.isoformat()},
                    )
                    return False
                session.add(
                    SensorDataRow(
                        source=source_name,
                        source_ref=data.source,
                        timestamp=_to_db(data.timestamp),
                        tool=data.tool,
                        properties=dict(data.properties),
                    )
                )
        except IntegrityError:
            return False
        except SQLAlchemyError:
            logger.exception(
                "Failed to store sensor data",
                extra={
                    "backend": self.name,
                    "source_name": source_name,
                    "timestamp": data.timestamp.isoformat(),
                },
            )
            return False
        return True

    @_fault_tolerant(lambda: None)
    def get_sensor_data(self, source_name: str, timestamp: datetime) -> Optional[SensorData]:
        with self._session_factory() as session:
            row = session.get(SensorDataRow, (source_name, _to_db(timestamp)))
            return _row_to_sensor_data(row) if row is not None else None

    @_fault_tolerant(lambda: False)
    def delete_sensor_data(self, source_name: str, timestamp: Optional[datetime] = None) -> bool:
        statement = delete(SensorDataRow).where(SensorDataRow.source == source_name)
        if timestamp is not None:
            statement = statement.where(SensorDataRow.timestamp == _to_db(timestamp))
        with self._session_factory.begin() as session:
            result = session.execute(statement)
        return bool(result.rowcount)

    @_fault_tolerant(list)
    def get_sensor_data_index(
        self,
        source_name: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[SensorDataRef]:
        statement = self._ranged(
            select(SensorDataRow.source, SensorDataRow.timestamp, SensorDataRow.tool),
            source_name,
            start,
            end,
        )
        with self._session_factory() as session:
            rows = session.execute(statement).all()
        return [
            SensorDataRef(source=row.source, timestamp=_from_db(row.timestamp), tool=row.tool or "")
            for row in rows
        ]

    @_fault_tolerant(list)
    def get_sensor_datas(
        self,
        source_name: str,
        start: datetime,
        end: Optional[datetime] = None,
    ) -> List[SensorData]:
        statement = self._ranged(select(SensorDataRow), source_name, start, end)
        with self._session_factory() as session:
            rows = session.scalars(statement).all()
            return [_row_to_sensor_data(row) for row in rows]

    @_fault_tolerant(lambda: None)
    def get_latest_non_virtual_sensor_data(self, source_name: str) -> Optional[SensorData]:
        with self._session_factory() as session:
            source = session.get(SourceRow, source_name)
            if source is None or source.virtual:
                return None
            row = session.scalars(
                select(SensorDataRow)
                .where(SensorDataRow.source == source_name)
                .order_by(SensorDataRow.timestamp.desc())
                .limit(1)
            ).first()
            return _row_to_sensor_data(row) if row is not None else None

    @_fault_tolerant(lambda: (None, None))
    def get_bracket(self, source_name: str, timestamp: datetime) -> Bracket:
        target = _to_db(timestamp)
        with self._session_factory() as session:
            before = session.scalars(
                select(SensorDataRow)
                .where(SensorDataRow.source == source_name, SensorDataRow.timestamp <= target)
                .order_by(SensorDataRow.timestamp.desc())
                .limit(1)
            ).first()
            if before is not None and before.timestamp == target:
                exact = _row_to_sensor_data(before)
                return exact, exact
            after = session.scalars(
                select(SensorDataRow)
                .where(SensorDataRow.source == source_name, SensorDataRow.timestamp >= target)
                .order_by(SensorDataRow.timestamp.asc())
                .limit(1)
            ).first()
            return (
                _row_to_sensor_data(before) if before is not None else None,
                _row_to_sensor_data(after) if after is not None else None,
            )

    # Housekeeping

    @_fault_tolerant(lambda: False)
    def perform_maintenance(self) -> bool:
        dialect = self.engine.dialect.name
        if dialect == "sqlite":
            command = "VACUUM"
        elif dialect == "postgresql":
            command = "VACUUM ANALYZE"
        else:
            command = "ANALYZE"
        with self.engine.connect().execution_options(isolation_level="AUTOCOMMIT") as conn:
            conn.exec_driver_sql(command)
        logger.info("Maintenance complete", extra={"backend": self.name, "reason": command})
        return True

    @_fault_tolerant(lambda: False)
    def index_tables(self) -> bool:
        for index in SensorDataRow.__table__.indexes:
            index.create(self.engine, checkfirst=True)
        return True

    @_fault_tolerant(lambda: False)
    def make_snapshot(self) -> bool:
        if self.snapshot_path is None:
            logger.info("Snapshot requested but no snapshot path is configured")
            return False
        if self.engine.dialect.name != "sqlite":
            logger.warning(
                "Snapshots are only supported on SQLite",
                extra={"backend": self.name, "reason": self.engine.dialect.name},
            )
            return False
        self.snapshot_path.parent.mkdir(parents=True, exist_ok=True)
        self.snapshot_path.unlink(missing_ok=True)
        target = str(self.snapshot_path).replace("'", "''")
        with self.engine.connect().execution_options(isolation_level="AUTOCOMMIT") as conn:
            conn.exec_driver_sql(f"VACUUM INTO '{target}'")
        return True

    def _ranged(
        self,
        statement: Any,
        source_name: str,
        start: Optional[datetime],
        end: Optional[datetime],
    ) -> Any:
        if start is not None and end is not None:
            check_interval(normalize_timestamp(start), normalize_timestamp(end))
        statement = statement.where(SensorDataRow.source == source_name)
        if start is not None:
            statement = statement.where(SensorDataRow.timestamp >= _to_db(start))
        if end is not None:
            statement = statement.where(SensorDataRow.timestamp <= _to_db(end))
        return statement.order_by(SensorDataRow.timestamp.asc())
