"""Tests for the streaming analysis consumer and the stock lookup client."""
import asyncio
import json
from unittest.mock import patch

import httpx
import pytest

from investradar.analysis.framing import FINAL_FRAME_ERROR
from investradar.app.schemas import ErrorEvent, SourceRef, SourcesEvent, TextEvent
from investradar.app.settings import Settings
from investradar.tools.api_client import (
    START_FAILED,
    STREAM_FAILED,
    AnalysisTurn,
    StockLookupError,
    fetch_stock_data,
    format_ticker,
    run_analysis,
    stream_analysis,
)

BASE_URL = "http://investradar.test"


class RecordingStream(httpx.AsyncByteStream):
    """Response body delivered in the given pieces; optionally fails after them."""

    def __init__(self, pieces, error=None):
        self.pieces = pieces
        self.error = error
        self.reads = 0
        self.closed = False

    async def __aiter__(self):
        for piece in self.pieces:
            self.reads += 1
            yield piece
        if self.error is not None:
            raise self.error

    async def aclose(self):
        self.closed = True


def analysis_client(response):
    requests = []

    def handler(request):
        requests.append(request)
        return response

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    client.requests = requests
    return client


def collect(client, stock_name="Equinor ASA", user_query="Outlook?"):
    async def run():
        async with client:
            return [event async for event in stream_analysis(stock_name, user_query, client=client, base_url=BASE_URL)]

    return asyncio.run(run())


class TestStreamAnalysis:
    def test_decodes_fragmented_body(self):
        body = (
            b'{"text":"Hello "}__END_OF_OBJECT__'
            b'{"text":"world"}__END_OF_OBJECT__'
            b'{"sources":[{"uri":"x","title":"X"}]}__END_OF_OBJECT__'
        )
        pieces = [body[i:i + 7] for i in range(0, len(body), 7)]
        client = analysis_client(httpx.Response(200, stream=RecordingStream(pieces)))

        events = collect(client)

        assert events == [
            TextEvent(text="Hello "),
            TextEvent(text="world"),
            SourcesEvent(sources=[SourceRef(uri="x", title="X")]),
        ]
        request = client.requests[0]
        assert request.method == "POST"
        assert request.url == f"{BASE_URL}/api/analyze"
        assert json.loads(request.content) == {"stockName": "Equinor ASA", "userQuery": "Outlook?"}

    def test_flushes_last_frame_without_delimiter(self):
        client = analysis_client(httpx.Response(200, stream=RecordingStream([b'{"text":"a"}__END_OF_OBJECT__{"text":"b"}'])))

        assert collect(client) == [TextEvent(text="a"), TextEvent(text="b")]

    def test_truncated_final_frame_yields_error(self):
        client = analysis_client(httpx.Response(200, stream=RecordingStream([b'{"text":"a"}__END_OF_OBJECT__{"te'])))

        assert collect(client) == [TextEvent(text="a"), ErrorEvent(error=FINAL_FRAME_ERROR)]

    def test_error_status_yields_server_message(self):
        client = analysis_client(httpx.Response(400, json={"error": "Missing stockName or userQuery in request body."}))

        assert collect(client, stock_name="") == [ErrorEvent(error="Missing stockName or userQuery in request body.")]

    def test_error_status_with_unparseable_body_yields_generic_message(self):
        client = analysis_client(httpx.Response(502, text="<html>Bad Gateway</html>"))

        assert collect(client) == [ErrorEvent(error=START_FAILED)]

    def test_transport_failure_mid_stream_yields_one_error(self):
        stream = RecordingStream([b'{"text":"a"}__END_OF_OBJECT__'], error=httpx.ReadError("connection reset"))
        client = analysis_client(httpx.Response(200, stream=stream))

        assert collect(client) == [TextEvent(text="a"), ErrorEvent(error=STREAM_FAILED)]

    def test_abandoning_the_stream_releases_the_response(self):
        stream = RecordingStream([
            b'{"text":"a"}__END_OF_OBJECT__',
            b'{"text":"b"}__END_OF_OBJECT__',
            b'{"text":"c"}__END_OF_OBJECT__',
        ])
        client = analysis_client(httpx.Response(200, stream=stream))

        async def take_first():
            async with client:
                events = stream_analysis("Equinor ASA", "Outlook?", client=client, base_url=BASE_URL)
                first = await events.__anext__()
                await events.aclose()
                return first

        assert asyncio.run(take_first()) == TextEvent(text="a")
        assert stream.closed
        assert stream.reads == 1


class TestAnalysisTurn:
    def test_accumulates_text_and_merges_sources(self):
        turn = AnalysisTurn()

        turn.apply(TextEvent(text="Hello "))
        turn.apply(TextEvent(text="world"))
        turn.apply(SourcesEvent(sources=[SourceRef(uri="a", title="A")]))
        turn.apply(SourcesEvent(sources=[SourceRef(uri="a", title="A2"), SourceRef(uri="b", title="B")]))

        assert turn.text == "Hello world"
        assert [(s.uri, s.title) for s in turn.sources] == [("a", "A"), ("b", "B")]
        assert turn.error is None

    def test_reset_clears_previous_turn(self):
        turn = AnalysisTurn()
        turn.apply(TextEvent(text="old"))
        turn.apply(ErrorEvent(error="boom"))

        turn.reset()

        assert (turn.text, turn.sources, turn.error) == ("", [], None)

    def test_run_analysis_stops_at_first_error(self):
        stream = RecordingStream([
            b'{"text":"partial"}__END_OF_OBJECT__',
            b'{"error":"The analysis stream was interrupted."}__END_OF_OBJECT__',
            b'{"text":"ignored"}__END_OF_OBJECT__',
        ])
        client = analysis_client(httpx.Response(200, stream=stream))
        previous = AnalysisTurn()
        previous.apply(TextEvent(text="stale"))

        async def run():
            async with client:
                return await run_analysis("Equinor ASA", "Outlook?", client=client, base_url=BASE_URL, turn=previous)

        turn = asyncio.run(run())

        assert turn is previous
        assert turn.text == "partial"
        assert turn.error == "The analysis stream was interrupted."
        assert stream.closed


@pytest.mark.parametrize(
    "raw, expected",
    [("eqnr", "EQNR.OL"), ("EQNR.OL", "EQNR.OL"), ("dnb.ol", "DNB.OL"), (" nhy ", "NHY.OL")],
)
def test_format_ticker(raw, expected):
    assert format_ticker(raw) == expected


def test_format_ticker_uses_configured_suffix():
    with patch("investradar.tools.api_client.get_settings", return_value=Settings.model_construct(ticker_suffix=".ST")):
        assert format_ticker("volv-b") == "VOLV-B.ST"
        assert format_ticker("eqnr", suffix=".ol") == "EQNR.OL"


class TestFetchStockData:
    def test_parses_payload(self):
        payload = {
            "stock": {
                "ticker": "EQNR.OL", "name": "Equinor ASA", "price": 301.5, "change": 2.3,
                "changePercent": 0.77, "marketCap": 850000000000, "volume": 4521337, "currency": "NOK",
            },
            "history": [{"date": "05 Mar", "price": 299.2}, {"date": "06 Mar", "price": 301.5}],
        }
        client = analysis_client(httpx.Response(200, json=payload))

        async def run():
            async with client:
                return await fetch_stock_data("EQNR.OL", client=client, base_url=BASE_URL)

        result = asyncio.run(run())

        assert result.stock.change_percent == 0.77
        assert [p.price for p in result.history] == [299.2, 301.5]
        assert client.requests[0].url.params["ticker"] == "EQNR.OL"

    def test_error_status_raises_with_server_message(self):
        client = analysis_client(httpx.Response(429, json={"error": "Please wait a minute and try again."}))

        async def run():
            async with client:
                return await fetch_stock_data("EQNR.OL", client=client, base_url=BASE_URL)

        with pytest.raises(StockLookupError) as excinfo:
            asyncio.run(run())

        assert excinfo.value.status_code == 429
        assert excinfo.value.message == "Please wait a minute and try again."
