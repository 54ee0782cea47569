"""
USD price lookup for tipped coins.

Providers are tried in order (CoinGecko, CoinMarketCap when a key is set,
CoinPaprika) and a result is cached per symbol for a few minutes. HTTP calls
use blocking ``requests`` pushed onto a worker thread. Every failure ends in
``None``: a donation with no trustworthy price gets no entries.

The donation pipeline takes a tip.cc ``(≈ $x)`` estimate parsed out of the
confirmation as the USD value directly and never calls this resolver for
it. The message-vs-API cross-check in ``unit_price`` therefore only runs
when the caller passes the raw message text for a confirmation whose
estimate the confirmation grammar did not capture.
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Dict, Optional, Tuple

import requests

from .tipparse import extract_usd_estimate

log = logging.getLogger(__name__)

HEADERS = {
    "User-Agent": "donor-draws-bot/1.0 requests",
    "Accept": "application/json",
}

COINGECKO_URL = "https://api.coingecko.com/api/v3"
COINGECKO_PRO_URL = "https://pro-api.coingecko.com/api/v3"
COINMARKETCAP_URL = "https://pro-api.coinmarketcap.com/v1"
COINPAPRIKA_URL = "https://api.coinpaprika.com/v1"

SYMBOL_TO_COINGECKO_ID = {
    "USDT": "tether",
    "BTC": "bitcoin",
    "ETH": "ethereum",
    "TON": "the-open-network",
    "PEPE": "pepecoin-network",
    "BONC": "bonc1-bonkcoin",
    "SHIC": "shic-shibacoin",
    "AEGS": "aegs-aegisum",
    "BNB": "binancecoin",
    "USDC": "usd-coin",
    "LTC": "litecoin",
    "XRP": "ripple",
    "ADA": "cardano",
    "AVAX": "avalanche-2",
    "TRX": "tron",
    "TRON": "tron",
    "DOGE": "dogecoin",
    "SHIB": "shiba-inu",
    "SOL": "solana",
}

# the tipping bot's own quote is trusted over an API for these
MEME_COINS = {"PEPE", "SHIB", "DOGE", "SHIC", "BONC"}
MAX_DISCREPANCY = 0.2


def _get_json(url: str, *, params=None, headers=None, timeout: float = 10.0):
    hdrs = dict(HEADERS)
    if headers:
        hdrs.update(headers)
    resp = requests.get(url, params=params, headers=hdrs, timeout=timeout)
    resp.raise_for_status()
    return resp.json()


class PriceResolver:
    def __init__(
        self,
        *,
        coinmarketcap_key: Optional[str] = None,
        coingecko_pro_key: Optional[str] = None,
        cache_seconds: float = 300,
        timeout: float = 10.0,
        overrides: Optional[Dict[str, float]] = None,
    ):
        self.coinmarketcap_key = coinmarketcap_key or None
        self.coingecko_pro_key = coingecko_pro_key or None
        self.cache_seconds = cache_seconds
        self.timeout = timeout
        self.overrides = {k.upper(): float(v) for k, v in (overrides or {}).items()}
        # symbol -> (unit price, fetched at)
        self._cache: Dict[str, Tuple[float, float]] = {}

    # --- providers (blocking; run via asyncio.to_thread) ---

    def _coingecko_price(self, coin_id: str) -> Optional[float]:
        base = COINGECKO_PRO_URL if self.coingecko_pro_key else COINGECKO_URL
        headers = {"x-cg-pro-api-key": self.coingecko_pro_key} if self.coingecko_pro_key else None
        data = _get_json(
            f"{base}/simple/price",
            params={"ids": coin_id, "vs_currencies": "usd"},
            headers=headers,
            timeout=self.timeout,
        )
        price = (data.get(coin_id) or {}).get("usd")
        return float(price) if price else None

    def price_from_coingecko(self, symbol: str) -> Optional[float]:
        try:
            coin_id = SYMBOL_TO_COINGECKO_ID.get(symbol, symbol.lower())
            price = self._coingecko_price(coin_id)
            if price is not None:
                return price
            data = _get_json(f"{COINGECKO_URL}/search", params={"query": symbol.lower()}, timeout=self.timeout)
            coins = data.get("coins") or []
            if not coins:
                return None
            exact = next((c for c in coins if str(c.get("symbol", "")).lower() == symbol.lower()), coins[0])
            return self._coingecko_price(exact["id"])
        except Exception as e:
            log.warning("CoinGecko lookup failed for %s: %s", symbol, e)
            return None

    def price_from_coinmarketcap(self, symbol: str) -> Optional[float]:
        if not self.coinmarketcap_key:
            return None
        try:
            data = _get_json(
                f"{COINMARKETCAP_URL}/cryptocurrency/quotes/latest",
                params={"symbol": symbol},
                headers={"X-CMC_PRO_API_KEY": self.coinmarketcap_key},
                timeout=self.timeout,
            )
            quote = (((data.get("data") or {}).get(symbol) or {}).get("quote") or {}).get("USD") or {}
            price = quote.get("price")
            return float(price) if price else None
        except Exception as e:
            log.warning("CoinMarketCap lookup failed for %s: %s", symbol, e)
            return None

    def price_from_coinpaprika(self, symbol: str) -> Optional[float]:
        try:
            data = _get_json(
                f"{COINPAPRIKA_URL}/search",
                params={"q": symbol.lower(), "c": "currencies"},
                timeout=self.timeout,
            )
            match = next(
                (c for c in data.get("currencies") or [] if str(c.get("symbol", "")).upper() == symbol),
                None,
            )
            if not match:
                return None
            ticker = _get_json(f"{COINPAPRIKA_URL}/tickers/{match['id']}", timeout=self.timeout)
            price = ((ticker.get("quotes") or {}).get("USD") or {}).get("price")
            return float(price) if price else None
        except Exception as e:
            log.warning("CoinPaprika lookup failed for %s: %s", symbol, e)
            return None

    def api_price(self, symbol: str) -> Optional[float]:
        for provider in (self.price_from_coingecko, self.price_from_coinmarketcap, self.price_from_coinpaprika):
            price = provider(symbol)
            if price is not None:
                log.info("%s price for %s: $%s", provider.__name__.replace("price_from_", ""), symbol, price)
                return price
        return None

    # --- public ---

    def cached(self, symbol: str, now: Optional[float] = None) -> Optional[float]:
        now = time.time() if now is None else now
        hit = self._cache.get(symbol.upper())
        if hit and now - hit[1] < self.cache_seconds:
            return hit[0]
        return None

    def clear_cache(self) -> None:
        self._cache.clear()

    async def unit_price(self, symbol: str, amount: Optional[float] = None, context_text: Optional[str] = None) -> Optional[float]:
        symbol = symbol.upper()
        if symbol in self.overrides:
            return self.overrides[symbol]
        hit = self.cached(symbol)
        if hit is not None:
            return hit

        message_price = None
        if context_text and amount:
            estimate = extract_usd_estimate(context_text)
            if estimate:
                message_price = estimate / amount

        api_price = await asyncio.to_thread(self.api_price, symbol)

        if message_price is not None and api_price is not None:
            diff = abs(message_price - api_price) / max(message_price, api_price)
            if diff > MAX_DISCREPANCY:
                log.warning(
                    "Large price discrepancy for %s: message $%s vs API $%s", symbol, message_price, api_price,
                )
                price = message_price if symbol in MEME_COINS else api_price
            else:
                price = api_price
        else:
            price = message_price if message_price is not None else api_price

        if price is not None:
            self._cache[symbol] = (price, time.time())
        return price

    async def resolve(self, symbol: str, amount: float, context_text: Optional[str] = None) -> Optional[float]:
        """Total USD value of ``amount`` units of ``symbol``, or None."""
        if not symbol or amount is None or amount <= 0:
            return None
        price = await self.unit_price(symbol, amount, context_text)
        if price is None:
            log.warning("No price available for %s", symbol.upper())
            return None
        return price * amount
