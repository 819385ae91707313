"""Streaming analysis producer: one grounded Gemini session re-encoded as analysis frames."""
import asyncio
import logging
from typing import Any, AsyncIterator, Iterable, List, Optional, Tuple

from langchain_core.prompts import ChatPromptTemplate

from investradar.analysis.framing import encode_event
from investradar.app.errors import ConfigError, UpstreamError
from investradar.app.schemas import ErrorEvent, SourceRef, SourcesEvent, TextEvent
from investradar.app.settings import Settings
from investradar.inference.gemini_client import GeminiClient
from investradar.prompts.analysis_prompt import ANALYSIS_SYSTEM, ANALYSIS_USER_TEMPLATE

logger = logging.getLogger(__name__)

UNKNOWN_TITLE = "Unknown"
GENERATION_FAILED = "An error occurred on the server while generating the analysis."
GENERATION_TIMED_OUT = "The analysis request timed out before the model responded. Please try again."
STREAM_INTERRUPTED = "The analysis stream was interrupted. The text above may be incomplete."
STREAM_TIMED_OUT = "The analysis timed out while waiting for the model. The text above may be incomplete."

_DONE = object()


def render_prompt(stock_name: str, user_query: str) -> Tuple[str, str]:
    """Return (system_instruction, prompt) for one analysis request."""
    prompt = ChatPromptTemplate.from_messages([("system", ANALYSIS_SYSTEM), ("user", ANALYSIS_USER_TEMPLATE)])
    system_msg, user_msg = prompt.format_messages(stock_name=stock_name, user_query=user_query)
    return system_msg.content, user_msg.content


def dedupe_sources(webs: Iterable[Any]) -> List[SourceRef]:
    """Keep web entries with a uri, first occurrence per uri wins, missing titles defaulted."""
    seen = set()
    sources = []
    for web in webs:
        uri = getattr(web, "uri", None)
        if not uri or uri in seen:
            continue
        seen.add(uri)
        sources.append(SourceRef(uri=uri, title=getattr(web, "title", None) or UNKNOWN_TITLE))
    return sources


def extract_sources(response: Any) -> List[SourceRef]:
    candidates = getattr(response, "candidates", None) or []
    if not candidates:
        return []
    metadata = getattr(candidates[0], "grounding_metadata", None)
    grounding_chunks = getattr(metadata, "grounding_chunks", None) or []
    return dedupe_sources(getattr(chunk, "web", None) for chunk in grounding_chunks)


async def _next_chunk(iterator: AsyncIterator[Any]) -> Any:
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return _DONE


async def _close(iterator: AsyncIterator[Any]) -> None:
    aclose = getattr(iterator, "aclose", None)
    if aclose is None:
        return
    try:
        await aclose()
    except Exception as exc:  # noqa: BLE001
        logger.warning("Closing the upstream stream failed: %s", exc)


class AnalysisStreamProducer:
    """
    Turns one search-grounded generation session into a framed byte stream.

    open() starts the upstream session and waits for its first chunk, so a
    failure at that point can still become a plain HTTP error. Everything
    after that is reported in-band as a final error frame. The producer owns
    its client and closes it once the session ends, whichever way it ends.
    """

    def __init__(self, client: GeminiClient, request_timeout: float = 30.0, idle_timeout: float = 60.0):
        self.client = client
        self.request_timeout = request_timeout
        self.idle_timeout = idle_timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> "AnalysisStreamProducer":
        if not settings.gemini_api_key:
            raise ConfigError("API key is not configured on the server.")
        client = GeminiClient(
            api_key=settings.gemini_api_key,
            model=settings.model_name,
            timeout=settings.request_timeout,
        )
        return cls(client, request_timeout=settings.request_timeout, idle_timeout=settings.stream_idle_timeout)

    async def open(self, stock_name: str, user_query: str) -> AsyncIterator[bytes]:
        system_instruction, prompt = render_prompt(stock_name, user_query)
        iterator = None
        try:
            upstream = await asyncio.wait_for(
                self.client.stream_grounded(system_instruction, prompt),
                self.request_timeout,
            )
            iterator = upstream.__aiter__()
            first = await asyncio.wait_for(_next_chunk(iterator), self.request_timeout)
        except asyncio.TimeoutError as exc:
            logger.error("Gemini did not respond within %.1fs; analysis not started", self.request_timeout)
            await self._release(iterator)
            raise UpstreamError(GENERATION_TIMED_OUT, detail="timed out opening the upstream session") from exc
        except Exception as exc:  # noqa: BLE001
            logger.exception("Gemini API error before streaming started")
            await self._release(iterator)
            raise UpstreamError(GENERATION_FAILED, detail=str(exc)) from exc
        logger.info("Analysis stream opened for %r", stock_name)
        return self._frames(iterator, first)

    async def _frames(self, iterator: AsyncIterator[Any], first: Any) -> AsyncIterator[bytes]:
        # Only the last chunk is kept: grounding metadata is complete there, not on every chunk.
        last = None
        chunk = first
        text_frames = 0
        try:
            while chunk is not _DONE:
                last = chunk
                text = getattr(chunk, "text", None)
                if text:
                    text_frames += 1
                    yield encode_event(TextEvent(text=text))
                chunk = await asyncio.wait_for(_next_chunk(iterator), self.idle_timeout)

            sources = extract_sources(last) if last is not None else []
            if sources:
                yield encode_event(SourcesEvent(sources=sources))
            logger.info("Analysis stream finished: %d text frames, %d sources", text_frames, len(sources))
        except asyncio.TimeoutError:
            logger.error("Gemini stream idle for more than %.1fs; closing analysis stream", self.idle_timeout)
            yield encode_event(ErrorEvent(error=STREAM_TIMED_OUT))
        except Exception:  # noqa: BLE001
            logger.exception("Gemini stream failed mid-response")
            yield encode_event(ErrorEvent(error=STREAM_INTERRUPTED))
        finally:
            await self._release(iterator)

    async def _release(self, iterator: Optional[AsyncIterator[Any]]) -> None:
        if iterator is not None:
            await _close(iterator)
        try:
            await self.client.aclose()
        except Exception as exc:  # noqa: BLE001
            logger.warning("Closing the Gemini client failed: %s", exc)
