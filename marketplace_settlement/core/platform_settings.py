"""
Platform settlement settings.

Commission rate, minimum payout and payout processing days live in the
platform_settings table so administrators can change them without a deploy;
missing rows fall back to the service configuration.
"""
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from marketplace_settlement.config import Settings, get_settings
from marketplace_settlement.core.cache import TTLCache
from marketplace_settlement.core.clock import Clock, utcnow
from marketplace_settlement.database.connection import get_session_factory
from marketplace_settlement.database.models import PlatformSetting

logger = structlog.get_logger(__name__)

COMMISSION_RATE = "commission_rate"
MINIMUM_PAYOUT_MINOR = "minimum_payout_minor"
PAYOUT_PROCESSING_DAYS = "payout_processing_days"

_CACHE_KEY = "platform_settings"


class PlatformSettingsError(ValueError):
    """Raised when a platform setting update is invalid."""

    pass


def _parse_rate(raw: Any) -> Decimal:
    try:
        rate = Decimal(str(raw))
    except InvalidOperation:
        raise PlatformSettingsError(f"Invalid commission rate: {raw!r}")
    if rate < 0 or rate > 1:
        raise PlatformSettingsError("Commission rate must be between 0 and 1")
    return rate


def _parse_minimum(raw: Any) -> int:
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise PlatformSettingsError(f"Invalid minimum payout: {raw!r}")
    if value < 0:
        raise PlatformSettingsError("Minimum payout cannot be negative")
    return value


def _parse_days(raw: Any) -> int:
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise PlatformSettingsError(f"Invalid payout processing days: {raw!r}")
    if value < 1 or value > 30:
        raise PlatformSettingsError("Payout processing days must be between 1 and 30")
    return value


_PARSERS: Dict[str, Callable[[Any], Any]] = {
    COMMISSION_RATE: _parse_rate,
    MINIMUM_PAYOUT_MINOR: _parse_minimum,
    PAYOUT_PROCESSING_DAYS: _parse_days,
}


class PlatformSettingsProvider:
    """
    Reads platform settings through a scoped TTL cache.

    Each provider owns its cache; updates through ``update`` invalidate it.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        cache: Optional[TTLCache[Dict[str, Any]]] = None,
        clock: Clock = utcnow,
    ):
        self.settings = settings or get_settings()
        self.session_factory = session_factory or get_session_factory()
        # An empty TTLCache is falsy, so test against None
        if cache is None:
            cache = TTLCache(ttl_seconds=self.settings.settings_cache_ttl, max_entries=1)
        self.cache = cache
        self.clock = clock

    def _defaults(self) -> Dict[str, Any]:
        return {
            COMMISSION_RATE: self.settings.platform_commission_rate,
            MINIMUM_PAYOUT_MINOR: self.settings.minimum_payout_minor,
            PAYOUT_PROCESSING_DAYS: self.settings.payout_processing_days,
        }

    async def _load(self) -> Dict[str, Any]:
        values = self._defaults()
        async with self.session_factory() as db:
            result = await db.execute(select(PlatformSetting))
            for row in result.scalars().all():
                parser = _PARSERS.get(row.key)
                if parser is None:
                    continue
                try:
                    values[row.key] = parser(row.value)
                except PlatformSettingsError as e:
                    # Keep serving the fallback rather than failing every job
                    logger.error("platform_setting_invalid", key=row.key, error=str(e))
        logger.debug("platform_settings_loaded", **{k: str(v) for k, v in values.items()})
        return values

    async def get_all(self) -> Dict[str, Any]:
        """Current settings, from cache when fresh."""
        return await self.cache.get_or_load(_CACHE_KEY, self._load)

    async def get_commission_rate(self) -> Decimal:
        """Platform commission rate applied to orders without a rate snapshot."""
        return (await self.get_all())[COMMISSION_RATE]

    async def get_minimum_payout_minor(self) -> int:
        """Minimum payout request amount in minor units."""
        return (await self.get_all())[MINIMUM_PAYOUT_MINOR]

    async def get_payout_processing_days(self) -> int:
        """Business days between a payout request and its scheduled transfer."""
        return (await self.get_all())[PAYOUT_PROCESSING_DAYS]

    async def update(self, changes: Dict[str, Any], updated_by: str) -> Dict[str, Any]:
        """
        Validate and persist setting changes, then drop the cached copy.

        Args:
            changes: Setting key to new value
            updated_by: Administrator making the change

        Returns:
            Dict[str, Any]: Settings after the update

        Raises:
            PlatformSettingsError: If a key is unknown or a value is invalid
        """
        parsed: Dict[str, Any] = {}
        for key, raw in changes.items():
            parser = _PARSERS.get(key)
            if parser is None:
                raise PlatformSettingsError(f"Unknown platform setting: {key}")
            parsed[key] = parser(raw)

        async with self.session_factory() as db:
            try:
                for key, value in parsed.items():
                    row = await db.get(PlatformSetting, key)
                    if row is None:
                        row = PlatformSetting(key=key, value=str(value))
                        db.add(row)
                    row.value = str(value)
                    row.updated_by = updated_by
                    row.updated_at = self.clock()
                await db.commit()
            except Exception:
                await db.rollback()
                raise

        self.cache.invalidate()
        logger.info(
            "platform_settings_updated",
            updated_by=updated_by,
            keys=sorted(parsed),
        )
        return await self.get_all()
