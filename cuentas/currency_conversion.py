from __future__ import annotations

from dataclasses import dataclass, field, replace
from decimal import Decimal
import json
import logging
import time
from http.client import HTTPException
from typing import Iterable, Mapping, Protocol
from urllib.request import urlopen

from cuentas.transactions import Transaction, coerce_amount

logger = logging.getLogger(__name__)

SUPPORTED_CURRENCIES = ("ILS", "USD", "EUR", "ARS")
STORED_CURRENCY = "ILS"
CENTS = Decimal("0.01")

SNAPSHOT_FIELDS = {
    "USD": "amount_usd",
    "ARS": "amount_ars",
    "ILS": "amount_ils",
    "EUR": "amount_eur",
}

# Target currency per 1 USD.
DEFAULT_RATES: dict[str, Decimal] = {
    "USD": Decimal("1"),
    "ILS": Decimal("3.65"),
    "EUR": Decimal("0.92"),
    "ARS": Decimal("1050"),
}


class RateProviderUnavailable(RuntimeError):
    """Raised when a rate provider cannot fetch live rates."""


class RateProvider(Protocol):
    def get_rates(self) -> Mapping[str, Decimal]:
        ...


@dataclass(frozen=True)
class StaticRateProvider:
    """Deterministic, in-memory FX rates.

    Rates are expressed as target currency per 1 USD.
    """

    rates: Mapping[str, Decimal] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "rates", dict(self.rates or DEFAULT_RATES))

    def get_rates(self) -> Mapping[str, Decimal]:
        return dict(self.rates)


@dataclass(frozen=True)
class CachedRates:
    rates: Mapping[str, Decimal]
    expires_at: float


@dataclass
class ExchangeRateApiProvider:
    """USD-based global rates from exchangerate-api.com."""

    base_url: str = "https://api.exchangerate-api.com/v4/latest"
    timeout_seconds: float = 8
    cache_ttl_seconds: int = 10 * 60
    _cache: CachedRates | None = field(default=None, repr=False)

    def get_rates(self) -> Mapping[str, Decimal]:
        now = time.monotonic()
        if self._cache and self._cache.expires_at > now:
            return self._cache.rates

        payload = _fetch_json(f"{self.base_url}/USD", self.timeout_seconds, "exchangerate-api")
        rates = payload.get("rates")
        if not isinstance(rates, dict):
            raise RateProviderUnavailable("exchangerate-api response missing rates")
        try:
            parsed = {code.upper(): Decimal(str(value)) for code, value in rates.items()}
        except ArithmeticError as exc:
            raise RateProviderUnavailable("exchangerate-api returned invalid rates") from exc
        parsed["USD"] = Decimal("1")
        self._cache = CachedRates(rates=parsed, expires_at=now + self.cache_ttl_seconds)
        return parsed


@dataclass
class DolarApiProvider:
    """Argentine peso "blue" selling rate, pesos per 1 USD."""

    base_url: str = "https://dolarapi.com/v1/dolares/blue"
    timeout_seconds: float = 8

    def get_ars_rate(self) -> Decimal:
        payload = _fetch_json(self.base_url, self.timeout_seconds, "dolarapi")
        venta = payload.get("venta")
        if venta is None:
            raise RateProviderUnavailable("dolarapi response missing venta")
        try:
            rate = Decimal(str(venta))
        except ArithmeticError as exc:
            raise RateProviderUnavailable("dolarapi returned an invalid rate") from exc
        if rate <= 0:
            raise RateProviderUnavailable("dolarapi returned a non-positive rate")
        return rate


@dataclass
class MarketRateProvider:
    """Global rates with ARS overridden by the parallel-market rate."""

    global_provider: ExchangeRateApiProvider = field(default_factory=ExchangeRateApiProvider)
    ars_provider: DolarApiProvider = field(default_factory=DolarApiProvider)

    def get_rates(self) -> Mapping[str, Decimal]:
        rates = dict(self.global_provider.get_rates())
        rates["ARS"] = self.ars_provider.get_ars_rate()
        return rates


@dataclass(frozen=True)
class RateSnapshot:
    usd: Decimal
    ils: Decimal
    eur: Decimal
    ars: Decimal

    def per_usd(self, currency: str) -> Decimal:
        return getattr(self, normalize_currency(currency).lower())


@dataclass(frozen=True)
class AmountSnapshot:
    amount_usd: Decimal
    amount_ils: Decimal
    amount_eur: Decimal
    amount_ars: Decimal

    @property
    def stored_amount(self) -> Decimal:
        return self.amount_ils

    def as_fields(self) -> dict[str, Decimal]:
        return {
            "amount": self.stored_amount,
            "amount_usd": self.amount_usd,
            "amount_ils": self.amount_ils,
            "amount_eur": self.amount_eur,
            "amount_ars": self.amount_ars,
        }


def fetch_rate_snapshot(provider: RateProvider) -> RateSnapshot:
    """Read one set of rates for a save; any failure aborts the save."""
    rates = provider.get_rates()
    missing = [code for code in SUPPORTED_CURRENCIES if code not in rates]
    if missing:
        raise RateProviderUnavailable(f"Rate source missing currencies: {', '.join(missing)}")
    snapshot = RateSnapshot(
        usd=Decimal("1"),
        ils=coerce_amount(rates["ILS"]),
        eur=coerce_amount(rates["EUR"]),
        ars=coerce_amount(rates["ARS"]),
    )
    if min(snapshot.ils, snapshot.eur, snapshot.ars) <= 0:
        raise RateProviderUnavailable("Rate source returned a non-positive rate")
    logger.info("Fetched rates ILS=%s EUR=%s ARS=%s", snapshot.ils, snapshot.eur, snapshot.ars)
    return snapshot


def build_amount_snapshot(
    amount: Decimal | int | float | str,
    source_currency: str,
    rates: RateSnapshot,
) -> AmountSnapshot:
    normalized_source = normalize_currency(source_currency)
    coerced_amount = coerce_amount(amount)
    amount_in_usd = coerced_amount / rates.per_usd(normalized_source)
    return AmountSnapshot(
        amount_usd=_to_cents(amount_in_usd),
        amount_ils=_to_cents(amount_in_usd * rates.ils),
        amount_eur=_to_cents(amount_in_usd * rates.eur),
        amount_ars=_to_cents(amount_in_usd * rates.ars),
    )


def original_currency_note(amount: Decimal | int | float | str, currency: str) -> str | None:
    normalized = normalize_currency(currency)
    if normalized == STORED_CURRENCY:
        return None
    shown = coerce_amount(amount).quantize(CENTS).normalize()
    return f"*(Cargado originalmente como {normalized} {shown:f})*"


def append_note(details: str | None, note: str | None) -> str | None:
    if not note:
        return details
    if details:
        return f"{details}\n\n{note}"
    return note


def display_amount(txn: Transaction, currency: str) -> Decimal:
    """Amount to show for ``currency``; falls back to the stored amount."""
    snapshot_value = getattr(txn, SNAPSHOT_FIELDS[normalize_currency(currency)])
    if snapshot_value is None:
        logger.debug(
            "Transaction %s has no %s snapshot, showing stored amount",
            txn.id,
            currency,
        )
        return txn.amount
    return snapshot_value


def has_snapshot(txn: Transaction, currency: str) -> bool:
    return getattr(txn, SNAPSHOT_FIELDS[normalize_currency(currency)]) is not None


def project_for_display(transactions: Iterable[Transaction], currency: str) -> list[Transaction]:
    normalized = normalize_currency(currency)
    return [replace(txn, amount=display_amount(txn, normalized)) for txn in transactions]


def normalize_currency(value: str) -> str:
    normalized = value.strip().upper()
    if normalized not in SUPPORTED_CURRENCIES:
        raise ValueError(f"Unsupported currency: {normalized or value}")
    return normalized


def _fetch_json(url: str, timeout_seconds: float, source: str) -> dict:
    try:
        with urlopen(url, timeout=timeout_seconds) as response:
            payload = json.load(response)
    except (OSError, HTTPException, ValueError) as exc:
        logger.warning("Rate source %s unavailable: %s", source, exc)
        raise RateProviderUnavailable(f"{source} unavailable") from exc
    if not isinstance(payload, dict):
        raise RateProviderUnavailable(f"{source} returned an unexpected payload")
    return payload


def _to_cents(value: Decimal) -> Decimal:
    return value.quantize(CENTS)
