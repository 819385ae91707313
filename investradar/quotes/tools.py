import asyncio
import logging
from typing import Any, Dict, List

import httpx
from pydantic import ValidationError as PydanticValidationError

from investradar.app.errors import ConfigError, NotFoundError, RateLimitError, UpstreamError, is_rate_limit_message
from investradar.app.schemas import PriceDataPoint, Stock, StockResponse
from investradar.app.settings import Settings
from investradar.quotes.schemas import CompanyOverview, DailySeries, GlobalQuote, QuoteEnvelope

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://www.alphavantage.co/query"
# Alpha Vantage reports problems with HTTP 200 and one of these keys.
UPSTREAM_MESSAGE_KEYS = ("Error Message", "Information", "Note")


def format_history_date(day) -> str:
    return day.strftime("%d %b")


def build_stock(overview: CompanyOverview, quote: GlobalQuote, default_currency: str) -> Stock:
    return Stock(
        ticker=overview.symbol,
        name=overview.name,
        price=quote.price,
        change=quote.change,
        change_percent=quote.change_percent,
        market_cap=overview.market_capitalization,
        volume=quote.volume,
        currency=overview.currency or default_currency,
    )


def build_history(series: DailySeries) -> List[PriceDataPoint]:
    # Upstream keys arrive newest first; the chart wants oldest first.
    return [
        PriceDataPoint(date=format_history_date(day), price=bar.close)
        for day, bar in sorted(series.daily.items())
    ]


class QuoteAggregator:
    """Joins the overview, quote and daily series endpoints into one stock payload."""

    def __init__(
        self,
        api_key: str,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 30.0,
        default_currency: str = "NOK",
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key
        self.base_url = base_url
        self.timeout = timeout
        self.default_currency = default_currency
        self.transport = transport

    @classmethod
    def from_settings(cls, settings: Settings) -> "QuoteAggregator":
        if not settings.alphavantage_api_key:
            raise ConfigError("Alpha Vantage API key is not configured on the server.")
        return cls(
            api_key=settings.alphavantage_api_key,
            base_url=settings.alphavantage_base_url,
            timeout=settings.request_timeout,
            default_currency=settings.default_currency,
        )

    async def fetch_json(self, client: httpx.AsyncClient, function: str, symbol: str, **extra: str) -> Dict[str, Any]:
        params = {"function": function, "symbol": symbol, "apikey": self.api_key, **extra}
        try:
            resp = await client.get(self.base_url, params=params)
        except httpx.HTTPError as exc:
            logger.error("Alpha Vantage %s request failed for %s: %s", function, symbol, exc)
            raise UpstreamError(detail=str(exc)) from exc
        if resp.is_error:
            logger.error("Alpha Vantage %s returned status %s for %s", function, resp.status_code, symbol)
            raise UpstreamError(detail=f"{function} request failed with status {resp.status_code}")
        try:
            data = resp.json()
        except ValueError as exc:
            logger.error("Alpha Vantage %s response not valid JSON: %s", function, exc)
            raise UpstreamError(detail=str(exc)) from exc
        if not isinstance(data, dict):
            raise UpstreamError(detail=f"{function} returned {type(data).__name__}, expected an object")

        message = next((data[key] for key in UPSTREAM_MESSAGE_KEYS if data.get(key)), None)
        if message:
            message = str(message)
            logger.warning("Alpha Vantage %s error for %s: %s", function, symbol, message)
            if is_rate_limit_message(message):
                raise RateLimitError()
            raise UpstreamError(detail=message)
        if not data:
            raise NotFoundError(f"Received an empty response from the API for '{symbol}'.")
        return data

    async def lookup(self, ticker: str) -> StockResponse:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            tasks = [
                asyncio.ensure_future(self.fetch_json(client, "OVERVIEW", ticker)),
                asyncio.ensure_future(self.fetch_json(client, "GLOBAL_QUOTE", ticker)),
                asyncio.ensure_future(self.fetch_json(client, "TIME_SERIES_DAILY", ticker, outputsize="compact")),
            ]
            try:
                overview_raw, quote_raw, series_raw = await asyncio.gather(*tasks)
            except BaseException:
                # Fail fast: the first failure aborts the whole lookup.
                for task in tasks:
                    task.cancel()
                raise

        try:
            envelope = QuoteEnvelope.model_validate(quote_raw)
            if not envelope.global_quote:
                raise NotFoundError(f"No quote data found for ticker '{ticker}'. It might be an invalid symbol.")
            series = DailySeries.model_validate(series_raw)
            if not series.daily:
                raise NotFoundError(f"Could not fetch historical data for '{ticker}'.")
            overview = CompanyOverview.model_validate(overview_raw)
            quote = GlobalQuote.model_validate(envelope.global_quote)
        except PydanticValidationError as exc:
            logger.warning("Incomplete upstream data for %s: %s", ticker, exc)
            raise NotFoundError(f"Incomplete data returned for ticker '{ticker}'.") from exc

        stock = build_stock(overview, quote, self.default_currency)
        history = build_history(series)
        logger.info("Fetched %s: price=%s, %d history points", stock.ticker, stock.price, len(history))
        return StockResponse(stock=stock, history=history)
