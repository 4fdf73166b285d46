from __future__ import annotations

import json
import sys
from datetime import datetime
from pathlib import Path

import httpx
import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from portfolio_ledger.currency import DailyRefreshPolicy, FxRateCache, FxRefreshScheduler
from portfolio_ledger.providers.base import FxRateProvider
from portfolio_ledger.providers.fx_provider import FrankfurterFxProvider


class StubFxProvider(FxRateProvider):
    def __init__(self, rates: dict[str, float | None]) -> None:
        self.rates = rates
        self.calls: list[str] = []

    def fetch_rate(self, base: str, quote: str) -> float | None:
        pair = f"{base}-{quote}"
        self.calls.append(pair)
        return self.rates.get(pair)


class Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def test_rate_to_cny_falls_back_when_cache_is_empty() -> None:
    cache = FxRateCache()
    assert cache.rate_to_cny("sh600519") == 1.0
    assert cache.rate_to_cny("sz000001") == 1.0
    assert cache.rate_to_cny("hk00700") == pytest.approx(0.9)
    assert cache.rate_to_cny("usAAPL") == pytest.approx(7.2)
    assert cache.rate_to_cny("xx123") == 1.0
    assert cache.rate_to_cny(None) == 1.0


def test_refresh_updates_and_persists_rates(tmp_path: Path) -> None:
    rates_path = tmp_path / "market" / "rates.json"
    clock = Clock(datetime(2024, 5, 1, 2, 0, 0))
    cache = FxRateCache(StubFxProvider({"USD-CNY": 7.1, "HKD-CNY": 0.91}), rates_path=rates_path, clock=clock)
    updated = cache.refresh()
    assert updated == {"USD-CNY": 7.1, "HKD-CNY": 0.91}
    assert cache.rate_to_cny("usMSFT") == pytest.approx(7.1)
    assert cache.get_rate("HKD", "CNY") == pytest.approx(0.91)
    assert cache.get_rate("CNY-CNY") == 1.0

    saved = json.loads(rates_path.read_text(encoding="utf-8"))
    assert saved["rates"]["USD-CNY"]["rate"] == pytest.approx(7.1)

    reloaded = FxRateCache(rates_path=rates_path)
    assert reloaded.rate_to_cny("usMSFT") == pytest.approx(7.1)
    assert reloaded.last_refreshed_at == datetime(2024, 5, 1, 2, 0, 0)


def test_failed_refresh_keeps_previous_value() -> None:
    provider = StubFxProvider({"USD-CNY": 7.1, "HKD-CNY": 0.91})
    cache = FxRateCache(provider)
    cache.refresh()
    provider.rates = {"USD-CNY": None, "HKD-CNY": 0.92}
    updated = cache.refresh()
    assert updated == {"HKD-CNY": 0.92}
    assert cache.rate_to_cny("usAAPL") == pytest.approx(7.1)
    assert cache.rate_to_cny("hk00700") == pytest.approx(0.92)


def test_provider_exception_does_not_escape() -> None:
    class Exploding(FxRateProvider):
        def fetch_rate(self, base: str, quote: str) -> float | None:
            raise RuntimeError("boom")

    cache = FxRateCache(Exploding())
    assert cache.refresh() == {}
    assert cache.last_refreshed_at is None
    assert cache.rate_to_cny("usAAPL") == pytest.approx(7.2)


def test_legacy_rates_file_is_loaded(tmp_path: Path) -> None:
    rates_path = tmp_path / "rates.json"
    rates_path.write_text(
        json.dumps({"USD-CNY": {"rate": 7.25, "timestamp": 1714521600000}}),
        encoding="utf-8",
    )
    cache = FxRateCache(rates_path=rates_path)
    assert cache.rate_to_cny("usAAPL") == pytest.approx(7.25)


def test_daily_policy_due_rules() -> None:
    policy = DailyRefreshPolicy(refresh_hour=1)
    assert policy.is_due(None, datetime(2024, 5, 1, 0, 30))
    assert not policy.is_due(datetime(2024, 5, 1, 1, 5), datetime(2024, 5, 1, 23, 0))
    assert not policy.is_due(datetime(2024, 4, 30, 1, 5), datetime(2024, 5, 1, 0, 59))
    assert policy.is_due(datetime(2024, 4, 30, 1, 5), datetime(2024, 5, 1, 1, 0))
    assert policy.next_due(datetime(2024, 5, 1, 0, 30)) == datetime(2024, 5, 1, 1, 0)
    assert policy.next_due(datetime(2024, 5, 1, 1, 30)) == datetime(2024, 5, 2, 1, 0)


def test_refresh_if_due_only_once_per_day() -> None:
    provider = StubFxProvider({"USD-CNY": 7.1, "HKD-CNY": 0.91})
    clock = Clock(datetime(2024, 5, 1, 1, 30))
    cache = FxRateCache(provider, clock=clock)
    assert cache.refresh_if_due() is True
    assert cache.refresh_if_due() is False
    clock.now = datetime(2024, 5, 2, 1, 0)
    assert cache.refresh_if_due() is True
    assert len(provider.calls) == 4


def test_scheduler_waits_until_next_due_time() -> None:
    clock = Clock(datetime(2024, 5, 1, 0, 50))
    scheduler = FxRefreshScheduler(FxRateCache(clock=clock), clock=clock)
    assert scheduler.seconds_until_next_run() == pytest.approx(600)
    clock.now = datetime(2024, 5, 1, 1, 0, 1)
    assert scheduler.seconds_until_next_run() == pytest.approx(3600)


def test_frankfurter_provider_parses_rate() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params["from"] == "USD"
        assert request.url.params["to"] == "CNY"
        return httpx.Response(200, json={"amount": 1.0, "base": "USD", "date": "2024-05-01", "rates": {"CNY": 7.24}})

    provider = FrankfurterFxProvider(transport=httpx.MockTransport(handler))
    assert provider.fetch_rate("USD", "CNY") == pytest.approx(7.24)


def test_frankfurter_provider_returns_none_on_error() -> None:
    provider = FrankfurterFxProvider(transport=httpx.MockTransport(lambda request: httpx.Response(503)))
    assert provider.fetch_rate("HKD", "CNY") is None
