"""HTTP client for the InvestRadar API: stock lookup and the streaming analysis consumer."""
import logging
from contextlib import aclosing
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from investradar.analysis.framing import FrameDecoder
from investradar.app.schemas import AnalysisEvent, ErrorEvent, SourceRef, SourcesEvent, StockResponse, TextEvent
from investradar.app.settings import get_settings

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://localhost:8000"
DEFAULT_TIMEOUT = 60.0
START_FAILED = "Failed to start analysis stream."
STREAM_FAILED = "An error occurred while streaming the analysis."


class StockLookupError(Exception):
    def __init__(self, status_code: int, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.message = message


def format_ticker(raw: str, suffix: Optional[str] = None) -> str:
    """Uppercase a user-typed ticker and append the market suffix if it is missing."""
    ticker = raw.strip().upper()
    suffix = (suffix or get_settings().ticker_suffix).upper()
    return ticker if ticker.endswith(suffix) else ticker + suffix


def _error_message(resp: httpx.Response, fallback: str) -> str:
    try:
        body = resp.json()
    except ValueError:
        return fallback
    if isinstance(body, dict) and isinstance(body.get("error"), str) and body["error"]:
        return body["error"]
    return fallback


async def fetch_stock_data(
    ticker: str,
    client: Optional[httpx.AsyncClient] = None,
    base_url: str = DEFAULT_BASE_URL,
    timeout: float = DEFAULT_TIMEOUT,
) -> StockResponse:
    if client is None:
        async with httpx.AsyncClient(timeout=timeout) as own_client:
            return await fetch_stock_data(ticker, client=own_client, base_url=base_url)

    resp = await client.get(f"{base_url}/api/stock", params={"ticker": ticker})
    if resp.is_error:
        fallback = f"Failed to fetch stock data with status {resp.status_code}"
        raise StockLookupError(resp.status_code, _error_message(resp, fallback))
    return StockResponse.model_validate(resp.json())


async def _read_analysis(client: httpx.AsyncClient, url: str, payload: Dict[str, Any]) -> AsyncIterator[AnalysisEvent]:
    decoder = FrameDecoder()
    try:
        async with client.stream("POST", url, json=payload) as response:
            if response.is_error:
                # Error responses are plain JSON, not a frame stream.
                await response.aread()
                yield ErrorEvent(error=_error_message(response, START_FAILED))
                return
            async for data in response.aiter_bytes():
                for event in decoder.feed(data):
                    yield event
    except httpx.TransportError as exc:
        logger.error("Stream reading error: %s", exc)
        yield ErrorEvent(error=STREAM_FAILED)
        return
    for event in decoder.finish():
        yield event


async def stream_analysis(
    stock_name: str,
    user_query: str,
    client: Optional[httpx.AsyncClient] = None,
    base_url: str = DEFAULT_BASE_URL,
    timeout: float = DEFAULT_TIMEOUT,
) -> AsyncIterator[AnalysisEvent]:
    """
    Request an analysis and yield its events in arrival order.

    The sequence is single pass. Stopping early (break, aclose) releases the
    underlying response.
    """
    url = f"{base_url}/api/analyze"
    payload = {"stockName": stock_name, "userQuery": user_query}
    if client is None:
        async with httpx.AsyncClient(timeout=timeout) as own_client:
            async with aclosing(_read_analysis(own_client, url, payload)) as events:
                async for event in events:
                    yield event
        return
    async with aclosing(_read_analysis(client, url, payload)) as events:
        async for event in events:
            yield event


class AnalysisTurn:
    """Text and sources accumulated for one analysis request."""

    def __init__(self):
        self.reset()

    def reset(self) -> None:
        self.text = ""
        self.sources: List[SourceRef] = []
        self.error: Optional[str] = None

    def apply(self, event: AnalysisEvent) -> bool:
        """Fold one event into the turn. Returns False once the turn has failed."""
        if isinstance(event, ErrorEvent):
            self.error = event.error
            return False
        if isinstance(event, TextEvent):
            self.text += event.text
        elif isinstance(event, SourcesEvent):
            known = {source.uri for source in self.sources}
            self.sources.extend(source for source in event.sources if source.uri not in known)
        return True


async def run_analysis(
    stock_name: str,
    user_query: str,
    client: Optional[httpx.AsyncClient] = None,
    base_url: str = DEFAULT_BASE_URL,
    turn: Optional[AnalysisTurn] = None,
) -> AnalysisTurn:
    """Consume one analysis stream into a fresh (or reset) AnalysisTurn, stopping at the first error."""
    turn = turn or AnalysisTurn()
    turn.reset()
    async with aclosing(stream_analysis(stock_name, user_query, client=client, base_url=base_url)) as events:
        async for event in events:
            if not turn.apply(event):
                break
    return turn
