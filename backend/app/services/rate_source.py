"""
Rate sources — read-only views of the current global rate card.

Callers receive a frozen RateSnapshot copy; nothing downstream keeps a handle
on the source itself.
"""
import logging
from typing import Optional, Protocol

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.models.assessment import RateSnapshot
from app.services.errors import PersistenceError

logger = logging.getLogger("costing-rates")

_RATE_FIELDS = tuple(RateSnapshot.model_fields)


class RateSource(Protocol):
    async def current_rates(self) -> RateSnapshot: ...


class DefaultRateSource:
    """Configured defaults (see app.config), optionally overridden per field."""

    def __init__(self, **overrides) -> None:
        self._rates = RateSnapshot(**overrides)

    async def current_rates(self) -> RateSnapshot:
        return self._rates.model_copy()


class SqlRateSource:
    """Reads the latest company_settings row; falls back to defaults when empty."""

    def __init__(self, session_factory: async_sessionmaker, fallback: Optional[DefaultRateSource] = None) -> None:
        self._session_factory = session_factory
        self._fallback = fallback or DefaultRateSource()

    async def current_rates(self) -> RateSnapshot:
        from app.models.orm_models import CompanySettingsRow

        try:
            async with self._session_factory() as session:
                row = (await session.execute(
                    select(CompanySettingsRow).order_by(CompanySettingsRow.id.desc()).limit(1)
                )).scalar_one_or_none()
                if row is None:
                    logger.info("No company_settings row; using default rate card")
                    return await self._fallback.current_rates()
                return RateSnapshot(**{name: getattr(row, name) for name in _RATE_FIELDS})
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Could not read company settings: {exc}") from exc
