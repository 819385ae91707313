"""Client for search-grounded streaming generation on Gemini."""
import logging
from typing import AsyncIterator, Optional

from google import genai
from google.genai import errors, types

logger = logging.getLogger(__name__)


class GeminiClient:
    """Thin wrapper around the google-genai async API with Google Search grounding enabled."""

    def __init__(self, api_key: str, model: str = "gemini-2.5-flash", timeout: float = 30.0):
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self._client: Optional[genai.Client] = None

    @property
    def client(self) -> genai.Client:
        # Built on first use so requests rejected before generation never open a connection pool.
        if self._client is None:
            # HttpOptions.timeout is in milliseconds.
            self._client = genai.Client(api_key=self.api_key, http_options=types.HttpOptions(timeout=int(self.timeout * 1000)))
        return self._client

    async def aclose(self) -> None:
        """Release the SDK's async HTTP client, if one was opened."""
        if self._client is None:
            return
        client, self._client = self._client, None
        await client.aio.aclose()

    async def stream_grounded(
        self,
        system_instruction: str,
        prompt: str,
    ) -> AsyncIterator[types.GenerateContentResponse]:
        """
        Open one streaming generation session.

        Args:
            system_instruction: Persona for the model
            prompt: User prompt

        Returns:
            Async iterator of response chunks. Grounding metadata is only
            reliable on the last chunk.
        """
        config = types.GenerateContentConfig(
            tools=[types.Tool(google_search=types.GoogleSearch())],
            system_instruction=system_instruction,
        )
        try:
            return await self.client.aio.models.generate_content_stream(
                model=self.model,
                contents=prompt,
                config=config,
            )
        except errors.APIError as e:
            logger.error("Gemini request failed: %s", e)
            raise
