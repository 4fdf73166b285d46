from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from threading import Event, RLock, Thread
from typing import Callable

from .markets import currency_for_code, normalize_asset_code
from .models import ExchangeRate
from .providers.base import FxRateProvider

logger = logging.getLogger(__name__)

PAIRS: tuple[str, ...] = ("USD-CNY", "HKD-CNY")
FALLBACK_RATES: dict[str, float] = {"HKD-CNY": 0.9, "USD-CNY": 7.2}


def _pair_key(base: str, quote: str | None = None) -> str:
    if quote is None:
        base, _, quote = base.partition("-")
    return f"{base.strip().upper()}-{quote.strip().upper()}"


@dataclass(slots=True)
class DailyRefreshPolicy:
    refresh_hour: int = 1

    def due_at(self, day: datetime) -> datetime:
        return day.replace(hour=self.refresh_hour, minute=0, second=0, microsecond=0)

    def is_due(self, last_refreshed_at: datetime | None, now: datetime) -> bool:
        if last_refreshed_at is None:
            return True
        if last_refreshed_at.date() >= now.date():
            return False
        return now >= self.due_at(now)

    def next_due(self, now: datetime) -> datetime:
        today_due = self.due_at(now)
        if now < today_due:
            return today_due
        return today_due + timedelta(days=1)


class FxRateCache:
    """Owned CNY exchange-rate cache.

    Rates are loaded from ``rates_path`` at construction and refreshed from the
    provider on demand or on the daily schedule. A failed refresh keeps the
    previous value; pairs that were never fetched fall back to constants.
    """

    _SCHEMA_VERSION = 1

    def __init__(
        self,
        provider: FxRateProvider | None = None,
        rates_path: str | Path | None = None,
        clock: Callable[[], datetime] = datetime.now,
        policy: DailyRefreshPolicy | None = None,
        fallback_rates: dict[str, float] | None = None,
    ) -> None:
        self._provider = provider
        self._rates_path = Path(rates_path) if rates_path else None
        self._clock = clock
        self.policy = policy or DailyRefreshPolicy()
        self._fallback_rates = {_pair_key(k): float(v) for k, v in (fallback_rates or FALLBACK_RATES).items()}
        self._lock = RLock()
        self._rates: dict[str, dict[str, object]] = {}
        self._last_refreshed_at: datetime | None = None
        self._load()

    @property
    def last_refreshed_at(self) -> datetime | None:
        return self._last_refreshed_at

    def _load(self) -> None:
        if self._rates_path is None or not self._rates_path.exists():
            return
        try:
            raw = json.loads(self._rates_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.error(f"Failed to load FX rates from {self._rates_path}: {e}")
            return
        if not isinstance(raw, dict):
            return
        rates = raw.get("rates") if isinstance(raw.get("rates"), dict) else raw
        for pair, info in rates.items():
            if not isinstance(info, dict):
                continue
            try:
                rate = float(info.get("rate"))
            except (TypeError, ValueError):
                continue
            if rate > 0:
                self._rates[_pair_key(pair)] = {"rate": rate, "timestamp": str(info.get("timestamp") or "")}
        last = raw.get("last_refreshed_at")
        if isinstance(last, str) and last:
            try:
                self._last_refreshed_at = datetime.fromisoformat(last)
            except ValueError:
                self._last_refreshed_at = None
        logger.info(f"Loaded {len(self._rates)} FX rates from {self._rates_path}")

    def _write(self) -> None:
        if self._rates_path is None:
            return
        payload = {
            "schema_version": self._SCHEMA_VERSION,
            "rates": self._rates,
            "last_refreshed_at": self._last_refreshed_at.isoformat() if self._last_refreshed_at else None,
        }
        try:
            self._rates_path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self._rates_path.with_suffix(".tmp")
            tmp_path.write_text(json.dumps(payload, ensure_ascii=False, sort_keys=True, indent=2), encoding="utf-8")
            tmp_path.replace(self._rates_path)
        except OSError as e:
            logger.error(f"Failed to persist FX rates to {self._rates_path}: {e}")

    def set_rate(self, base: str, quote: str | None, rate: float) -> None:
        with self._lock:
            self._rates[_pair_key(base, quote)] = {
                "rate": float(rate),
                "timestamp": self._clock().replace(microsecond=0).isoformat(),
            }

    def get_rate(self, base: str, quote: str | None = None) -> float | None:
        key = _pair_key(base, quote)
        if key.split("-")[0] == key.split("-")[1]:
            return 1.0
        with self._lock:
            info = self._rates.get(key)
            return float(info["rate"]) if info else None

    def rate_info(self, pair: str) -> dict[str, object] | None:
        with self._lock:
            info = self._rates.get(_pair_key(pair))
            return dict(info) if info else None

    def refresh(self) -> dict[str, float]:
        """Fetch every tracked pair; failed pairs keep their previous value."""
        updated: dict[str, float] = {}
        if self._provider is None:
            logger.warning("No FX provider configured, skipping refresh")
            return updated
        for pair in PAIRS:
            base, quote = pair.split("-")
            try:
                rate = self._provider.fetch_rate(base, quote)
            except Exception as e:
                logger.error(f"FX provider raised while fetching {pair}: {e}")
                rate = None
            if rate is None or rate <= 0:
                logger.warning(f"FX refresh for {pair} failed, keeping previous value")
                continue
            self.set_rate(base, quote, rate)
            updated[pair] = rate
        with self._lock:
            if updated:
                self._last_refreshed_at = self._clock()
            self._write()
        logger.info(f"FX rates refreshed: {updated}")
        return updated

    def refresh_if_due(self) -> bool:
        if not self.policy.is_due(self._last_refreshed_at, self._clock()):
            return False
        self.refresh()
        return True

    def rate_to_cny(self, asset_code: str | None) -> float:
        """CNY rate for the asset's trading currency. Never raises."""
        currency = currency_for_code(asset_code)
        if currency is None:
            logger.warning(f"Unknown market prefix for {normalize_asset_code(asset_code)!r}, using rate 1")
            return 1.0
        if currency == "CNY":
            return 1.0
        pair = f"{currency}-CNY"
        rate = self.get_rate(pair)
        if rate is not None:
            return rate
        fallback = self._fallback_rates.get(pair, 1.0)
        logger.warning(f"No cached {pair} rate, using fallback {fallback}")
        return fallback

    def snapshot(self) -> list[ExchangeRate]:
        items: list[ExchangeRate] = []
        for pair in PAIRS:
            info = self.rate_info(pair)
            if info is not None:
                items.append(ExchangeRate(pair=pair, rate=float(info["rate"]), timestamp=str(info["timestamp"]) or None, source="cache"))
            else:
                items.append(ExchangeRate(pair=pair, rate=self._fallback_rates.get(pair, 1.0), source="fallback"))
        return items


class FxRefreshScheduler:
    """Background thread that refreshes ``cache`` once a day at the policy hour."""

    def __init__(self, cache: FxRateCache, clock: Callable[[], datetime] = datetime.now, max_sleep_sec: float = 3600.0) -> None:
        self._cache = cache
        self._clock = clock
        self._max_sleep_sec = max_sleep_sec
        self._stop = Event()
        self._thread: Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = Thread(target=self._run, name="fx-refresh", daemon=True)
        self._thread.start()
        logger.info("FX refresh scheduler started")

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
        self._thread = None

    def seconds_until_next_run(self) -> float:
        now = self._clock()
        wait = (self._cache.policy.next_due(now) - now).total_seconds()
        return max(1.0, min(wait, self._max_sleep_sec))

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                self._cache.refresh_if_due()
            except Exception as e:
                logger.error(f"Scheduled FX refresh failed: {e}")
            self._stop.wait(self.seconds_until_next_run())
