"""
Currency normalization for expense amounts.

Responsibility:
    - RateCache: explicit, clock-driven TTL cache of exchange rates.
    - CachedCurrencyConverter: CurrencyConverter over any RateSource,
      reading the company currency from the directory.
    - UsdPivotRateSource: RateSource over a table of rates quoted against
      one pivot currency (cross rates go through the pivot).

Architecture position:
    Kernel > Services.  No database access of its own.

Invariants enforced:
    - Rates are Decimal; converted amounts are quantized to cents with
      ROUND_HALF_UP.
    - Expired entries are refreshed from the source.  When the source
      fails, a stale entry is used if one exists.

Failure modes:
    - CurrencyConversionError when no rate can be obtained.  The workflow
      service catches it, logs a warning and keeps the original amount.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from uuid import UUID

from approval_kernel.domain.clock import Clock, SystemClock
from approval_kernel.domain.directory import DirectoryService, RateSource
from approval_kernel.exceptions import CurrencyConversionError
from approval_kernel.logging_config import get_logger

logger = get_logger("services.currency")

_CENTS = Decimal("0.01")


@dataclass(frozen=True)
class _CachedRate:
    rate: Decimal
    fetched_at: datetime


class RateCache:
    """Exchange-rate cache with a TTL measured on the injected clock."""

    def __init__(self, ttl_seconds: int = 3600, clock: Clock | None = None):
        self._ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock or SystemClock()
        self._entries: dict[tuple[str, str], _CachedRate] = {}

    def get(self, from_currency: str, to_currency: str) -> Decimal | None:
        """Fresh rate, or None when missing or expired."""
        entry = self._entries.get((from_currency, to_currency))
        if entry is None:
            return None
        if self._clock.now() - entry.fetched_at >= self._ttl:
            return None
        return entry.rate

    def get_stale(self, from_currency: str, to_currency: str) -> Decimal | None:
        """Last known rate regardless of age."""
        entry = self._entries.get((from_currency, to_currency))
        return entry.rate if entry is not None else None

    def put(self, from_currency: str, to_currency: str, rate: Decimal) -> None:
        self._entries[(from_currency, to_currency)] = _CachedRate(
            rate=rate, fetched_at=self._clock.now(),
        )

    def clear(self) -> None:
        self._entries.clear()


class UsdPivotRateSource:
    """RateSource over rates quoted as "units per one pivot currency"."""

    def __init__(self, rates: Mapping[str, Decimal | str | int], pivot: str = "USD"):
        self._pivot = pivot
        self._rates = {code: Decimal(str(rate)) for code, rate in rates.items()}
        self._rates.setdefault(pivot, Decimal("1"))

    def __call__(self, from_currency: str, to_currency: str) -> Decimal:
        try:
            from_rate = self._rates[from_currency]
            to_rate = self._rates[to_currency]
        except KeyError as exc:
            raise CurrencyConversionError(
                from_currency, to_currency, f"unknown currency {exc.args[0]}",
            ) from exc
        if from_rate <= 0:
            raise CurrencyConversionError(from_currency, to_currency, "invalid rate")
        return to_rate / from_rate


class CachedCurrencyConverter:
    """CurrencyConverter that caches rates from a fallible source."""

    def __init__(
        self,
        directory: DirectoryService,
        rate_source: RateSource,
        cache: RateCache | None = None,
    ):
        self._directory = directory
        self._source = rate_source
        self._cache = cache or RateCache()

    def get_rate(self, from_currency: str, to_currency: str) -> Decimal:
        if from_currency == to_currency:
            return Decimal("1")

        rate = self._cache.get(from_currency, to_currency)
        if rate is not None:
            return rate

        try:
            rate = Decimal(str(self._source(from_currency, to_currency)))
        except Exception as exc:
            stale = self._cache.get_stale(from_currency, to_currency)
            if stale is None:
                if isinstance(exc, CurrencyConversionError):
                    raise
                raise CurrencyConversionError(
                    from_currency, to_currency, str(exc),
                ) from exc
            logger.warning(
                "stale_exchange_rate_used",
                extra={
                    "from_currency": from_currency,
                    "to_currency": to_currency,
                    "rate": str(stale),
                },
            )
            return stale

        self._cache.put(from_currency, to_currency, rate)
        return rate

    def convert(self, amount: Decimal, from_currency: str, to_currency: str) -> Decimal:
        rate = self.get_rate(from_currency, to_currency)
        return (amount * rate).quantize(_CENTS, rounding=ROUND_HALF_UP)

    def normalize_to_company_currency(
        self, amount: Decimal, currency: str, company_id: UUID,
    ) -> Decimal:
        target = self._directory.get_company_currency(company_id)
        if target is None or target == currency:
            return amount
        return self.convert(amount, currency, target)
