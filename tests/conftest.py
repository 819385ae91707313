"""Shared fixtures: fake Gemini sessions and canned Alpha Vantage payloads."""
import asyncio

import httpx
import pytest
from google.genai import types

from investradar.analysis.framing import FrameDecoder
from investradar.app.settings import Settings


def make_chunk(text=None, webs=None):
    """Build a Gemini stream chunk with optional text and grounding web entries."""
    parts = [types.Part(text=text)] if text is not None else []
    metadata = None
    if webs is not None:
        metadata = types.GroundingMetadata(
            grounding_chunks=[types.GroundingChunk(web=types.GroundingChunkWeb(**web)) for web in webs]
        )
    return types.GenerateContentResponse(
        candidates=[types.Candidate(content=types.Content(role="model", parts=parts), grounding_metadata=metadata)]
    )


class FakeGeminiClient:
    """Stands in for GeminiClient; replays chunks and records how the session was used."""

    def __init__(self, chunks, open_error=None, fail_at=None, delay_before_first=0.0, delay_after_first=0.0):
        self.chunks = chunks
        self.open_error = open_error
        self.fail_at = fail_at
        self.delay_before_first = delay_before_first
        self.delay_after_first = delay_after_first
        self.system_instruction = None
        self.prompt = None
        self.closed = False
        self.released = False

    async def aclose(self):
        self.released = True

    async def stream_grounded(self, system_instruction, prompt):
        self.system_instruction = system_instruction
        self.prompt = prompt
        if self.open_error is not None:
            raise self.open_error
        return self._iterate()

    async def _iterate(self):
        try:
            if self.delay_before_first:
                await asyncio.sleep(self.delay_before_first)
            for index, chunk in enumerate(self.chunks):
                if index == self.fail_at:
                    raise RuntimeError("upstream connection reset")
                if index > 0 and self.delay_after_first:
                    await asyncio.sleep(self.delay_after_first)
                yield chunk
        finally:
            self.closed = True


def decode_all(body: bytes):
    decoder = FrameDecoder()
    return decoder.feed(body) + decoder.finish()


OVERVIEW = {
    "Symbol": "EQNR.OL",
    "Name": "Equinor ASA",
    "MarketCapitalization": "850000000000",
    "Currency": "NOK",
}

GLOBAL_QUOTE = {
    "Global Quote": {
        "01. symbol": "EQNR.OL",
        "05. price": "301.5000",
        "06. volume": "4521337",
        "08. previous close": "299.2000",
        "09. change": "2.3000",
        "10. change percent": "0.7687%",
    }
}

TIME_SERIES_DAILY = {
    "Meta Data": {"2. Symbol": "EQNR.OL"},
    "Time Series (Daily)": {
        "2024-03-06": {"1. open": "300.0", "4. close": "301.5000"},
        "2024-03-05": {"1. open": "298.0", "4. close": "299.2000"},
        "2024-03-04": {"1. open": "296.0", "4. close": "297.0000"},
    },
}


def alpha_vantage_transport(**overrides):
    """MockTransport answering by the `function` query parameter."""
    responses = {
        "OVERVIEW": OVERVIEW,
        "GLOBAL_QUOTE": GLOBAL_QUOTE,
        "TIME_SERIES_DAILY": TIME_SERIES_DAILY,
    }
    responses.update(overrides)
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        function = request.url.params["function"]
        seen.append(function)
        body = responses[function]
        if isinstance(body, httpx.Response):
            return body
        return httpx.Response(200, json=body)

    transport = httpx.MockTransport(handler)
    transport.seen = seen
    return transport


@pytest.fixture
def settings():
    return Settings.model_construct(gemini_api_key="test-gemini-key", alphavantage_api_key="demo")
