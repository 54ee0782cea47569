import asyncio

import pytest
import requests

from donor_draws import prices
from donor_draws.prices import PriceResolver


def _counting(value):
    calls = []

    def fake(symbol):
        calls.append(symbol)
        return value

    return fake, calls


def test_resolve_multiplies_unit_price(monkeypatch):
    resolver = PriceResolver()
    fake, calls = _counting(2.0)
    monkeypatch.setattr(resolver, "api_price", fake)
    assert asyncio.run(resolver.resolve("usdt", 5)) == 10.0
    assert calls == ["USDT"]


def test_price_is_cached(monkeypatch):
    resolver = PriceResolver(cache_seconds=300)
    fake, calls = _counting(1.5)
    monkeypatch.setattr(resolver, "api_price", fake)
    asyncio.run(resolver.resolve("LTC", 1))
    asyncio.run(resolver.resolve("ltc", 2))
    assert len(calls) == 1
    assert resolver.cached("LTC") == 1.5
    resolver.clear_cache()
    assert resolver.cached("LTC") is None


def test_override_skips_lookup(monkeypatch):
    resolver = PriceResolver(overrides={"xla": 0.5})

    def boom(symbol):
        raise AssertionError("should not be called")

    monkeypatch.setattr(resolver, "api_price", boom)
    assert asyncio.run(resolver.resolve("XLA", 10)) == 5.0


def test_missing_price_or_amount(monkeypatch):
    resolver = PriceResolver()
    monkeypatch.setattr(resolver, "api_price", lambda symbol: None)
    assert asyncio.run(resolver.resolve("FOO", 10)) is None
    assert asyncio.run(resolver.resolve("FOO", 0)) is None


@pytest.mark.parametrize("symbol, expected", [("DOGE", 20.0), ("BTC", 10.0)])
def test_large_discrepancy_rule(monkeypatch, symbol, expected):
    resolver = PriceResolver()
    monkeypatch.setattr(resolver, "api_price", lambda s: 1.0)
    total = asyncio.run(resolver.resolve(symbol, 10, "sent **10 X** (≈ $20.00)"))
    assert total == pytest.approx(expected)


def test_small_discrepancy_uses_api(monkeypatch):
    resolver = PriceResolver()
    monkeypatch.setattr(resolver, "api_price", lambda s: 1.0)
    assert asyncio.run(resolver.resolve("DOGE", 10, "(≈ $10.50)")) == pytest.approx(10.0)


def test_message_estimate_used_when_api_fails(monkeypatch):
    resolver = PriceResolver()
    monkeypatch.setattr(resolver, "api_price", lambda s: None)
    assert asyncio.run(resolver.resolve("AEGS", 100, "(≈ $3.00)")) == pytest.approx(3.0)


def test_provider_order(monkeypatch):
    resolver = PriceResolver()
    seen = []

    def provider(name, value):
        def fn(symbol):
            seen.append(name)
            return value
        return fn

    monkeypatch.setattr(resolver, "price_from_coingecko", provider("gecko", None))
    monkeypatch.setattr(resolver, "price_from_coinmarketcap", provider("cmc", None))
    monkeypatch.setattr(resolver, "price_from_coinpaprika", provider("paprika", 3.0))
    assert resolver.api_price("SOL") == 3.0
    assert seen == ["gecko", "cmc", "paprika"]


def test_coinmarketcap_needs_key():
    assert PriceResolver().price_from_coinmarketcap("BTC") is None


def test_coingecko_parsing(monkeypatch):
    requested = []

    def fake_get_json(url, *, params=None, headers=None, timeout=10.0):
        requested.append((url, params))
        return {"tether": {"usd": 1.001}}

    monkeypatch.setattr(prices, "_get_json", fake_get_json)
    assert PriceResolver().price_from_coingecko("USDT") == 1.001
    assert requested[0][1] == {"ids": "tether", "vs_currencies": "usd"}


def test_coingecko_http_error_returns_none(monkeypatch):
    def fake_get_json(url, **kwargs):
        raise requests.ConnectionError("offline")

    monkeypatch.setattr(prices, "_get_json", fake_get_json)
    assert PriceResolver().price_from_coingecko("BTC") is None
    assert PriceResolver().price_from_coinpaprika("BTC") is None


def test_coinpaprika_parsing(monkeypatch):
    def fake_get_json(url, *, params=None, headers=None, timeout=10.0):
        if url.endswith("/search"):
            return {"currencies": [{"id": "ton-toncoin", "symbol": "TON"}]}
        assert url.endswith("/tickers/ton-toncoin")
        return {"quotes": {"USD": {"price": 5.25}}}

    monkeypatch.setattr(prices, "_get_json", fake_get_json)
    assert PriceResolver().price_from_coinpaprika("TON") == 5.25
