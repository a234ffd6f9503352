from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterable, Optional
from urllib.error import URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

from config import get_settings

COINMARKETCAP_QUOTES_URL = (
    "https://pro-api.coinmarketcap.com/v1/cryptocurrency/quotes/latest"
)


@dataclass(frozen=True)
class CryptoQuote:
    symbol: str
    name: str
    price: Decimal  # USD per coin
    market_cap: Optional[Decimal]
    volume_24h: Optional[Decimal]
    percent_change_24h: Optional[Decimal]
    percent_change_7d: Optional[Decimal]
    last_updated: datetime


class CryptoPriceClient:
    def __init__(self) -> None:
        self.settings = get_settings()

    @property
    def configured(self) -> bool:
        return bool(self.settings.crypto_api_key)

    def fetch_quotes(self, symbols: Iterable[str]) -> list[CryptoQuote]:
        provider = (self.settings.crypto_provider or "coinmarketcap").lower()
        if provider != "coinmarketcap":
            raise ValueError(f"Unsupported crypto price provider: {provider}")
        if not self.configured:
            raise RuntimeError("Crypto price feed API key is not configured")

        wanted = sorted({s.strip().upper() for s in symbols if s and s.strip()})
        if not wanted:
            return []
        payload = _fetch_coinmarketcap_quotes(
            wanted,
            api_key=self.settings.crypto_api_key or "",
            timeout=self.settings.crypto_timeout_secs,
        )
        return parse_coinmarketcap_quotes(payload)


def _fetch_coinmarketcap_quotes(
    symbols: list[str], *, api_key: str, timeout: float
) -> dict:
    query = urlencode({"symbol": ",".join(symbols), "convert": "USD"})
    req = Request(
        f"{COINMARKETCAP_QUOTES_URL}?{query}",
        headers={"Accept": "application/json", "X-CMC_PRO_API_KEY": api_key},
    )
    try:
        with urlopen(req, timeout=timeout) as resp:
            return json.loads(resp.read().decode("utf-8"))
    except (URLError, TimeoutError, json.JSONDecodeError) as exc:
        raise RuntimeError(
            f"Failed to fetch crypto quotes from CoinMarketCap for {symbols}"
        ) from exc


def _decimal_or_none(value: object) -> Optional[Decimal]:
    if value is None:
        return None
    return Decimal(str(value))


def parse_coinmarketcap_quotes(payload: dict) -> list[CryptoQuote]:
    try:
        data = payload["data"]
    except (KeyError, TypeError) as exc:
        raise RuntimeError("Unexpected crypto price provider response") from exc

    quotes: list[CryptoQuote] = []
    for symbol, entry in data.items():
        # newer API versions return a list of coins per symbol
        if isinstance(entry, list):
            if not entry:
                continue
            entry = entry[0]
        try:
            usd = entry["quote"]["USD"]
            price = Decimal(str(usd["price"]))
            raw_updated = usd.get("last_updated")
        except (KeyError, TypeError) as exc:
            raise RuntimeError(f"Malformed quote for {symbol}") from exc
        if raw_updated:
            last_updated = datetime.fromisoformat(raw_updated.replace("Z", "+00:00"))
        else:
            last_updated = datetime.now(timezone.utc)
        quotes.append(
            CryptoQuote(
                symbol=str(entry.get("symbol", symbol)).upper(),
                name=str(entry.get("name", symbol)),
                price=price,
                market_cap=_decimal_or_none(usd.get("market_cap")),
                volume_24h=_decimal_or_none(usd.get("volume_24h")),
                percent_change_24h=_decimal_or_none(usd.get("percent_change_24h")),
                percent_change_7d=_decimal_or_none(usd.get("percent_change_7d")),
                last_updated=last_updated,
            )
        )
    return quotes
