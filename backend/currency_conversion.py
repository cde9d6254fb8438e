from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
import json
import logging
from typing import Mapping
from urllib.error import HTTPError, URLError
from urllib.request import urlopen

from sqlalchemy.exc import SQLAlchemyError

from backend.store import RecordStore, daily_exchange_rates

log = logging.getLogger(__name__)

PIVOT_CURRENCY = "USD"
SUPPORTED_CURRENCIES = ("EUR", "GBP", "INR", "JPY")


class RateProviderUnavailable(RuntimeError):
    """Raised when historical rates cannot be fetched for a date."""


class UnsupportedCurrency(ValueError):
    """Raised when a conversion rate is undefined for a currency pair."""


@dataclass(frozen=True)
class FrankfurterRateProvider:
    """Historical rates from the Frankfurter API.

    Rates are expressed as target currency per 1 unit of the pivot currency.
    """

    base_url: str = "https://api.frankfurter.app"
    timeout: float = 8
    symbols: tuple[str, ...] = SUPPORTED_CURRENCIES

    def fetch_rates(self, date_key: str) -> dict[str, Decimal]:
        url = f"{self.base_url}/{date_key}?from={PIVOT_CURRENCY}&to={','.join(self.symbols)}"
        try:
            with urlopen(url, timeout=self.timeout) as response:
                payload = json.load(response)
        except (HTTPError, URLError, TimeoutError, json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise RateProviderUnavailable(f"Failed to fetch exchange rates for {date_key}") from exc

        rates = payload.get("rates") if isinstance(payload, dict) else None
        if not isinstance(rates, dict):
            raise RateProviderUnavailable("Frankfurter response missing rates")
        try:
            return {normalize_currency(code): Decimal(str(value)) for code, value in rates.items()}
        except (InvalidOperation, ValueError) as exc:
            raise RateProviderUnavailable("Frankfurter response has malformed rates") from exc


class ExchangeRateService:
    """Date-specific conversion rates with a persistent cache-aside snapshot table.

    Each calendar date is fetched from the provider at most once for the whole
    system once its snapshot row exists; concurrent misses for the same date
    may each fetch, and all but one snapshot insert are discarded.
    """

    def __init__(self, store: RecordStore, provider: FrankfurterRateProvider | None = None) -> None:
        self.store = store
        self.provider = provider or FrankfurterRateProvider()

    def get_rate(self, on_date: date | datetime | str, source: str, target: str) -> Decimal:
        """Return the multiplier converting ``source`` amounts into ``target``."""
        source = normalize_currency(source)
        target = normalize_currency(target)
        if source == target:
            return Decimal("1")

        date_key = normalize_rate_date(on_date)
        cached = self._load_snapshot(date_key)
        if cached is not None:
            try:
                return cross_rate(cached, source, target)
            except UnsupportedCurrency:
                log.info("Incomplete rate snapshot for %s, refetching", date_key)

        rates = self.provider.fetch_rates(date_key)
        self._store_snapshot(date_key, rates)
        return cross_rate(rates, source, target)

    def get_latest_rate(self, source: str, target: str) -> Decimal:
        return self.get_rate(date.today(), source, target)

    def _load_snapshot(self, date_key: str) -> dict[str, Decimal] | None:
        rows = self.store.select(daily_exchange_rates, {"date": date_key})
        if not rows or not isinstance(rows[0]["rates"], dict):
            return None
        try:
            return {code: Decimal(str(value)) for code, value in rows[0]["rates"].items()}
        except InvalidOperation:
            return None

    def _store_snapshot(self, date_key: str, rates: Mapping[str, Decimal]) -> None:
        try:
            self.store.insert(
                daily_exchange_rates,
                [{"date": date_key, "rates": {code: str(value) for code, value in rates.items()}}],
            )
        except SQLAlchemyError:
            log.warning("Could not cache exchange rates for %s", date_key, exc_info=True)


def cross_rate(rates: Mapping[str, Decimal], source: str, target: str) -> Decimal:
    source_rate = _pivot_rate(rates, source)
    target_rate = _pivot_rate(rates, target)
    if not source_rate or not target_rate:
        raise UnsupportedCurrency(f"Exchange rate not available for {source} to {target}")
    return target_rate / source_rate


def convert_amount(
    amount: Decimal | int | float | str,
    source_currency: str,
    target_currency: str,
    rate_service: ExchangeRateService,
    on_date: date | datetime | str | None = None,
) -> Decimal:
    """Convert a monetary amount using the rate in effect on ``on_date``."""
    coerced_amount = _coerce_amount(amount)
    if normalize_currency(source_currency) == normalize_currency(target_currency):
        return coerced_amount
    rate = rate_service.get_rate(on_date or date.today(), source_currency, target_currency)
    return coerced_amount * rate


def normalize_currency(value: str) -> str:
    normalized = value.strip().upper()
    if len(normalized) != 3 or not normalized.isalpha():
        raise ValueError("Currency must be a 3-letter ISO 4217 code.")
    return normalized


def normalize_rate_date(value: date | datetime | str) -> str:
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    try:
        parsed = datetime.strptime(value[:10], "%Y-%m-%d").date()
    except (TypeError, ValueError) as exc:
        raise ValueError("Date must be in YYYY-MM-DD format.") from exc
    return parsed.isoformat()


def _pivot_rate(rates: Mapping[str, Decimal], currency: str) -> Decimal | None:
    if currency == PIVOT_CURRENCY:
        return Decimal("1")
    return rates.get(currency)


def _coerce_amount(amount: Decimal | int | float | str) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
