"""Persistence contract used by the ingestion core, and its SQLAlchemy implementation.

Items are exchanged as plain dicts keyed by column name so the pipeline
never holds ORM instances across session boundaries.
"""

import traceback
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence

import structlog
from sqlalchemy import func, inspect, or_, select, text, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dealflow.core.exceptions import UniqueViolation
from dealflow.models import Company, Coupon, Deal, IngestionError, IngestionRun

logger = structlog.get_logger(__name__)

# entity -> (model, column holding the item's own URL)
ENTITIES = {
    "deal": (Deal, "url"),
    "coupon": (Coupon, "source_url"),
}

ACTIVE_STATUSES = ("approved", "pending")


def _row_to_dict(obj: Any) -> Dict[str, Any]:
    data = {}
    for attr in inspect(obj).mapper.column_attrs:
        value = getattr(obj, attr.key)
        if isinstance(value, Decimal):
            value = float(value)
        data[attr.key] = value
    return data


def _truncate(value: Any, limit: int = 500) -> Any:
    if isinstance(value, str) and len(value) > limit:
        return value[:limit]
    return value


def _is_unique_error(error: IntegrityError) -> bool:
    message = str(error.orig).lower()
    return "unique" in message or "duplicate" in message


class IngestionStore(ABC):
    """Abstract store consumed by the pipeline, dedup engine and scheduler.

    Implementations must raise UniqueViolation (not a generic error) when an
    insert collides with a uniqueness constraint.
    """

    # Companies
    @abstractmethod
    async def find_company_by_name_or_slug(self, name: str, slug: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    async def list_companies(self, limit: int = 500) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    async def create_company(self, name: str, slug: str) -> Dict[str, Any]:
        ...

    # Items
    @abstractmethod
    async def item_exists_by_url(
        self, entity: str, url: str, url_hash: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    async def item_exists_by_external_id(
        self, entity: str, source: str, external_id: str
    ) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    async def recent_items(self, entity: str, since: datetime, limit: int) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    async def company_candidates(
        self,
        entity: str,
        company_id: uuid.UUID,
        since: datetime,
        limit: int,
        statuses: Sequence[str] = ACTIVE_STATUSES,
    ) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    async def global_candidates(
        self,
        entity: str,
        key_terms: Sequence[str],
        since: datetime,
        limit: int,
        statuses: Sequence[str] = ACTIVE_STATUSES,
    ) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    async def get_item(self, entity: str, item_id: uuid.UUID) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    async def insert_item(self, entity: str, data: Dict[str, Any]) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def update_item(self, entity: str, item_id: uuid.UUID, updates: Dict[str, Any]) -> bool:
        ...

    # Runs and errors
    @abstractmethod
    async def start_run(self, source: str, metadata: Optional[Dict[str, Any]] = None) -> uuid.UUID:
        ...

    @abstractmethod
    async def complete_run(
        self,
        run_id: uuid.UUID,
        status: str,
        stats: Optional[Dict[str, int]] = None,
        error: Optional[BaseException] = None,
    ) -> None:
        ...

    @abstractmethod
    async def log_error(
        self,
        source: str,
        error: BaseException,
        context: Optional[Dict[str, Any]] = None,
        error_type: str = "processing",
    ) -> None:
        ...

    @abstractmethod
    async def get_ingestion_stats(self) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def ping(self) -> bool:
        ...


class SqlAlchemyStore(IngestionStore):
    """IngestionStore over an async SQLAlchemy session factory.

    Global search is an in-memory scan: the store narrows recent rows by
    key-term substring match and the dedup engine scores them.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory
        self.logger = logger.bind(service="store")

    @staticmethod
    def _model(entity: str):
        try:
            return ENTITIES[entity]
        except KeyError:
            raise ValueError(f"Unknown entity type: {entity}") from None

    async def find_company_by_name_or_slug(self, name: str, slug: str) -> Optional[Dict[str, Any]]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Company).where(func.lower(Company.name) == name.lower()).limit(1)
            )
            company = result.scalar_one_or_none()
            if company is None:
                result = await session.execute(select(Company).where(Company.slug == slug))
                company = result.scalar_one_or_none()
            return _row_to_dict(company) if company else None

    async def list_companies(self, limit: int = 500) -> List[Dict[str, Any]]:
        async with self.session_factory() as session:
            result = await session.execute(select(Company).order_by(Company.name).limit(limit))
            return [_row_to_dict(c) for c in result.scalars().all()]

    async def create_company(self, name: str, slug: str) -> Dict[str, Any]:
        async with self.session_factory() as session:
            company = Company(name=name, slug=slug, status="pending", is_verified=False)
            session.add(company)
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                if _is_unique_error(e):
                    raise UniqueViolation("company", str(e.orig)) from e
                raise
            await session.refresh(company)
            self.logger.info("company_created", name=name, slug=slug)
            return _row_to_dict(company)

    async def item_exists_by_url(
        self, entity: str, url: str, url_hash: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        model, url_field = self._model(entity)
        column = getattr(model, url_field)
        condition = column == url
        if url_hash:
            condition = or_(condition, model.url_hash == url_hash)

        async with self.session_factory() as session:
            result = await session.execute(select(model).where(condition).limit(1))
            item = result.scalar_one_or_none()
            return _row_to_dict(item) if item else None

    async def item_exists_by_external_id(
        self, entity: str, source: str, external_id: str
    ) -> Optional[Dict[str, Any]]:
        model, _ = self._model(entity)
        async with self.session_factory() as session:
            result = await session.execute(
                select(model)
                .where(model.source == source, model.external_id == external_id)
                .limit(1)
            )
            item = result.scalar_one_or_none()
            return _row_to_dict(item) if item else None

    async def recent_items(self, entity: str, since: datetime, limit: int) -> List[Dict[str, Any]]:
        model, _ = self._model(entity)
        async with self.session_factory() as session:
            result = await session.execute(
                select(model)
                .where(model.created_at >= since)
                .order_by(model.created_at.desc())
                .limit(limit)
            )
            return [_row_to_dict(i) for i in result.scalars().all()]

    async def company_candidates(
        self,
        entity: str,
        company_id: uuid.UUID,
        since: datetime,
        limit: int,
        statuses: Sequence[str] = ACTIVE_STATUSES,
    ) -> List[Dict[str, Any]]:
        model, _ = self._model(entity)
        async with self.session_factory() as session:
            result = await session.execute(
                select(model)
                .where(
                    model.company_id == company_id,
                    model.created_at >= since,
                    model.status.in_(statuses),
                )
                .order_by(model.created_at.desc())
                .limit(limit)
            )
            return [_row_to_dict(i) for i in result.scalars().all()]

    async def global_candidates(
        self,
        entity: str,
        key_terms: Sequence[str],
        since: datetime,
        limit: int,
        statuses: Sequence[str] = ACTIVE_STATUSES,
    ) -> List[Dict[str, Any]]:
        model, _ = self._model(entity)
        query = select(model).where(model.created_at >= since, model.status.in_(statuses))
        terms = [t for t in key_terms[:5] if t]
        if terms:
            query = query.where(or_(*[model.title.ilike(f"%{t}%") for t in terms]))

        async with self.session_factory() as session:
            result = await session.execute(query.order_by(model.created_at.desc()).limit(limit))
            return [_row_to_dict(i) for i in result.scalars().all()]

    async def get_item(self, entity: str, item_id: uuid.UUID) -> Optional[Dict[str, Any]]:
        model, _ = self._model(entity)
        async with self.session_factory() as session:
            item = await session.get(model, item_id)
            return _row_to_dict(item) if item else None

    async def insert_item(self, entity: str, data: Dict[str, Any]) -> Dict[str, Any]:
        """Insert a new item.

        Raises:
            UniqueViolation: If the row collides with a unique constraint
        """
        model, _ = self._model(entity)
        async with self.session_factory() as session:
            item = model(**data)
            session.add(item)
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                if _is_unique_error(e):
                    raise UniqueViolation(entity, str(e.orig)) from e
                raise
            await session.refresh(item)
            return _row_to_dict(item)

    async def update_item(self, entity: str, item_id: uuid.UUID, updates: Dict[str, Any]) -> bool:
        if not updates:
            return False
        model, _ = self._model(entity)
        async with self.session_factory() as session:
            result = await session.execute(
                update(model).where(model.id == item_id).values(**updates)
            )
            await session.commit()
            return result.rowcount > 0

    async def start_run(self, source: str, metadata: Optional[Dict[str, Any]] = None) -> uuid.UUID:
        async with self.session_factory() as session:
            run = IngestionRun(
                source=source,
                status="running",
                started_at=datetime.now(timezone.utc),
                metadata_=metadata or {},
            )
            session.add(run)
            await session.commit()
            return run.id

    async def complete_run(
        self,
        run_id: uuid.UUID,
        status: str,
        stats: Optional[Dict[str, int]] = None,
        error: Optional[BaseException] = None,
    ) -> None:
        stats = stats or {}
        async with self.session_factory() as session:
            run = await session.get(IngestionRun, run_id)
            if run is None:
                self.logger.warning("ingestion_run_not_found", run_id=str(run_id))
                return

            now = datetime.now(timezone.utc)
            started = run.started_at
            if started.tzinfo is None:
                started = started.replace(tzinfo=timezone.utc)

            run.status = status
            run.completed_at = now
            run.duration_seconds = Decimal(str(round((now - started).total_seconds(), 2)))
            run.items_fetched = stats.get("fetched", 0)
            run.items_created = stats.get("created", 0)
            run.items_updated = stats.get("updated", 0)
            run.items_skipped = stats.get("skipped", 0)
            run.items_failed = stats.get("errors", 0)
            if error is not None:
                run.error_message = str(error)
                run.error_traceback = "".join(
                    traceback.format_exception(type(error), error, error.__traceback__)
                )
            await session.commit()

    async def log_error(
        self,
        source: str,
        error: BaseException,
        context: Optional[Dict[str, Any]] = None,
        error_type: str = "processing",
    ) -> None:
        """Write a structured error record. Never raises."""
        context = {k: _truncate(v) for k, v in (context or {}).items()}
        try:
            async with self.session_factory() as session:
                session.add(IngestionError(
                    source=source,
                    error_type=error_type,
                    error_message=str(error) or type(error).__name__,
                    error_traceback="".join(
                        traceback.format_exception(type(error), error, error.__traceback__)
                    )[:5000],
                    context=context,
                ))
                await session.commit()
        except Exception as e:
            # The error log must not turn one failure into two
            self.logger.error("error_log_write_failed", source=source, error=str(e))

    async def get_ingestion_stats(self) -> Dict[str, Any]:
        since = datetime.now(timezone.utc) - timedelta(hours=24)
        async with self.session_factory() as session:
            deals_24h = await session.scalar(
                select(func.count()).select_from(Deal).where(Deal.created_at >= since)
            )
            coupons_24h = await session.scalar(
                select(func.count()).select_from(Coupon).where(Coupon.created_at >= since)
            )
            errors_24h = await session.scalar(
                select(func.count()).select_from(IngestionError).where(IngestionError.created_at >= since)
            )
            last_success = await session.scalar(
                select(func.max(IngestionRun.completed_at)).where(IngestionRun.status == "completed")
            )
            run_rows = await session.execute(
                select(IngestionRun.status, func.count())
                .where(IngestionRun.started_at >= since)
                .group_by(IngestionRun.status)
            )
            runs_24h = {status: count for status, count in run_rows.all()}

        return {
            "deals_24h": deals_24h or 0,
            "coupons_24h": coupons_24h or 0,
            "errors_24h": errors_24h or 0,
            "last_successful_run": last_success.isoformat() if last_success else None,
            "runs_24h": runs_24h,
        }

    async def ping(self) -> bool:
        try:
            async with self.session_factory() as session:
                await session.execute(text("SELECT 1"))
            return True
        except Exception as e:
            self.logger.error("store_ping_failed", error=str(e))
            return False
