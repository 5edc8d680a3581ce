"""OpenRouter (OpenAI-compatible chat completions) client for engagement analysis."""

import json
from typing import Any, AsyncIterator, Optional, Protocol

import httpx
from loguru import logger

from postlab.api.config import Settings
from postlab.api.exceptions import ConfigurationError, ProviderError
from postlab.models.schemas import AnalysisRequest, ModelTier


class AnalysisProvider(Protocol):
    """Capability the analysis service depends on."""

    async def generate(self, request: AnalysisRequest) -> str:
        ...

    def generate_stream(self, request: AnalysisRequest) -> AsyncIterator[str]:
        ...

    async def chat(
        self, message: str, tweet_context: Optional[str] = None, tier: ModelTier = ModelTier.PREMIUM
    ) -> str:
        ...


class OpenRouterClient:
    """Client for producing engagement analyses through OpenRouter."""

    # Model constants
    MODEL_PREMIUM = "google/gemini-2.5-flash"
    MODEL_LITE = "google/gemini-2.5-flash-lite"

    DEFAULT_BASE_URL = "https://openrouter.ai/api/v1"
    DEFAULT_TIMEOUT = 120.0
    DEFAULT_TEMPERATURE = 0.7

    SSE_DATA_PREFIX = "data:"
    SSE_DONE = "[DONE]"
    _STREAM_END = object()

    SYSTEM_PROMPT = """You are an expert X (Twitter) engagement analyst who knows how the ranking algorithm rewards posts.

ALGORITHM FACTS TO APPLY:
- Replies are worth far more than likes for reach
- Bookmarks and DM shares are strong engagement multipliers
- The first 15-30 minutes of engagement decide how far a post travels
- Dwell time (how long people stop scrolling) is a core signal
- External links are penalized
- Curiosity and debate hooks earn broader distribution

Analyze the post HONESTLY. If it is weak, say so.

RULES:
- Single-word or generic posts ("gm", "hi") get LOW scores and critical analysis
- Predictions must be realistic, not inflated
- Every audience_reactions list must contain specific, varied reactions
- Suggestions must improve reply potential

RESPOND WITH VALID JSON ONLY. No markdown, no explanation, just the JSON object."""

    JSON_FORMAT = """{
  "tweet": "original post text",
  "predicted_likes": <10-2000 realistic>,
  "predicted_retweets": <1-200 realistic>,
  "predicted_replies": <0-50 realistic, the most important metric>,
  "predicted_quotes": <0-20>,
  "predicted_views": <50-50000 realistic>,
  "engagement_outlook": "Low" | "Medium" | "High",
  "engagement_justification": "Honest 1-2 sentence assessment naming algorithm factors.",
  "analysis": [
    "Hook: does it stop the scroll in the first 5 words?",
    "Reply Potential: will people want to respond?",
    "Dwell: will readers pause or scroll past?",
    "Share Value: is it bookmark or repost worthy?"
  ],
  "suggestions": [
    {
      "version": "Curiosity",
      "tweet": "Rewrite that opens an information gap, keeping the original format.",
      "reason": "Why this version earns more replies. Max 20 words.",
      "audience_reactions": ["Reaction 1", "Reaction 2", "Reaction 3"]
    },
    {
      "version": "Authority",
      "tweet": "Rewrite in a confident, expert voice, same format.",
      "reason": "Why this establishes expertise.",
      "audience_reactions": ["Reaction 1", "Reaction 2", "Reaction 3"]
    },
    {
      "version": "Controversy",
      "tweet": "Rewrite that challenges assumptions without being toxic, same format.",
      "reason": "Why this sparks debate and sharing.",
      "audience_reactions": ["Reaction 1", "Reaction 2", "Reaction 3"]
    }
  ]
}"""

    CHAT_PROMPT = "PostLab AI. Help improve posts. Be concise.\n\nContext:"

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        premium_model: Optional[str] = None,
        lite_model: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the OpenRouter client.

        Args:
            api_key: OpenRouter API key
            base_url: API base URL (default: https://openrouter.ai/api/v1)
            premium_model: Model id used for the premium tier
            lite_model: Model id used for the lite tier
            timeout: Request timeout in seconds, applied to each network read
            transport: Optional httpx transport (used by tests)

        Raises:
            ConfigurationError: If no API key is provided
        """
        if not api_key:
            raise ConfigurationError(
                "OpenRouter API key is required. Set OPENROUTER_API_KEY environment variable."
            )
        self.base_url = (base_url or self.DEFAULT_BASE_URL).rstrip("/")
        self.premium_model = premium_model or self.MODEL_PREMIUM
        self.lite_model = lite_model or self.MODEL_LITE
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport,
            headers={
                "Authorization": f"Bearer {api_key}",
                "X-Title": "PostLab",
            },
        )

    def model_for(self, tier: ModelTier) -> str:
        """Model id serving a tier."""
        return self.premium_model if tier is ModelTier.PREMIUM else self.lite_model

    @classmethod
    def build_system_prompt(cls, request: AnalysisRequest) -> str:
        """System prompt, extended with whatever the author told us about themselves."""
        prompt = cls.SYSTEM_PROMPT
        context = request.user_context
        if context is None:
            return prompt
        if context.target_audience:
            prompt += f"\n[Audience: {context.target_audience}]"
        if context.bio:
            prompt += f"\n[Author bio: {context.bio}]"
        if context.ai_context:
            prompt += f"\n[Author notes: {context.ai_context}]"
        return prompt

    @classmethod
    def build_messages(cls, request: AnalysisRequest) -> list[dict[str, Any]]:
        """Chat messages for an analysis request; the image, if any, goes first."""
        content: list[dict[str, Any]] = []
        if request.image:
            content.append(
                {"type": "image_url", "image_url": {"url": request.image.data_url()}}
            )
        content.append(
            {
                "type": "text",
                "text": f'Tweet to analyze: "{request.text}"\n\nOUTPUT FORMAT (JSON only):\n{cls.JSON_FORMAT}',
            }
        )
        return [
            {"role": "system", "content": cls.build_system_prompt(request)},
            {"role": "user", "content": content},
        ]

    def _payload(self, request: AnalysisRequest, stream: bool) -> dict[str, Any]:
        return {
            "model": self.model_for(request.model_tier),
            "messages": self.build_messages(request),
            "temperature": self.DEFAULT_TEMPERATURE,
            "stream": stream,
        }

    async def generate(self, request: AnalysisRequest) -> str:
        """
        Produce an analysis in one blocking call.

        Returns:
            Raw model output (expected to be a JSON document)

        Raises:
            ProviderError: If the request fails or the response has no content
        """
        model = self.model_for(request.model_tier)
        logger.info(f"Requesting analysis ({len(request.text)} chars) with model: {model}")
        data = await self._post_completion(self._payload(request, stream=False))
        return self._extract_content(data)

    async def generate_stream(self, request: AnalysisRequest) -> AsyncIterator[str]:
        """
        Produce an analysis incrementally.

        Yields the raw text fragments as they arrive. The iterator cannot be
        restarted; make a new call to retry. Closing it early releases the
        underlying connection.

        Raises:
            ProviderError: If the request fails at any point
        """
        model = self.model_for(request.model_tier)
        logger.info(f"Streaming analysis ({len(request.text)} chars) with model: {model}")
        fragments = 0
        try:
            async with self.client.stream(
                "POST", "/chat/completions", json=self._payload(request, stream=True)
            ) as response:
                if response.is_error:
                    await response.aread()
                    self._raise_status_error(response.status_code, response.text)
                async for line in response.aiter_lines():
                    delta = self._parse_stream_line(line)
                    if delta is None:
                        continue
                    if delta is self._STREAM_END:
                        break
                    fragments += 1
                    yield delta
        except httpx.TimeoutException as e:
            logger.error(f"OpenRouter stream timed out after {fragments} fragments")
            raise ProviderError(f"Analysis provider timed out: {e}") from e
        except httpx.HTTPError as e:
            logger.error(f"OpenRouter stream transport error: {e}")
            raise ProviderError(f"Analysis provider unreachable: {e}") from e
        logger.debug(f"Stream finished after {fragments} fragments")

    def _parse_stream_line(self, line: str):
        """
        Decode one SSE line.

        Returns the content delta, None for lines carrying no text (comments,
        keep-alives, role-only deltas), or _STREAM_END on the terminator.
        """
        line = line.strip()
        if not line or not line.startswith(self.SSE_DATA_PREFIX):
            return None
        data = line[len(self.SSE_DATA_PREFIX):].strip()
        if data == self.SSE_DONE:
            return self._STREAM_END
        try:
            chunk = json.loads(data)
        except json.JSONDecodeError:
            logger.debug(f"Skipping undecodable stream line: {data[:80]}")
            return None

        if not isinstance(chunk, dict):
            raise ProviderError(f"Analysis provider sent a malformed stream chunk: {data[:80]}")

        if chunk.get("error"):
            error = chunk["error"]
            message = error.get("message", str(error)) if isinstance(error, dict) else str(error)
            status = error.get("code") if isinstance(error, dict) else None
            raise ProviderError(
                f"Analysis provider error mid-stream: {message}",
                status_code=status if isinstance(status, int) else None,
            )

        choices = chunk.get("choices") or []
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            return None
        delta = choices[0].get("delta") or {}
        content = delta.get("content") if isinstance(delta, dict) else None
        return content if isinstance(content, str) and content else None

    async def chat(
        self,
        message: str,
        tweet_context: Optional[str] = None,
        tier: ModelTier = ModelTier.PREMIUM,
    ) -> str:
        """Short conversational help about a post."""
        context = f'"{tweet_context}"' if tweet_context else "None"
        payload = {
            "model": self.model_for(tier),
            "messages": [
                {"role": "system", "content": f"{self.CHAT_PROMPT} {context}"},
                {"role": "user", "content": message},
            ],
            "stream": False,
        }
        data = await self._post_completion(payload)
        try:
            return self._extract_content(data)
        except ProviderError:
            return "Please try again."

    async def _post_completion(self, payload: dict[str, Any]) -> dict[str, Any]:
        try:
            response = await self.client.post("/chat/completions", json=payload)
        except httpx.TimeoutException as e:
            logger.error("OpenRouter request timed out")
            raise ProviderError(f"Analysis provider timed out: {e}") from e
        except httpx.HTTPError as e:
            logger.error(f"OpenRouter transport error: {e}")
            raise ProviderError(f"Analysis provider unreachable: {e}") from e

        if response.is_error:
            self._raise_status_error(response.status_code, response.text)

        try:
            data = response.json()
        except ValueError as e:
            raise ProviderError("Analysis provider returned a non-JSON envelope") from e
        if not isinstance(data, dict):
            raise ProviderError("Analysis provider returned a malformed envelope")
        return data

    @staticmethod
    def _extract_content(data: dict[str, Any]) -> str:
        """
        Extract the message text from a completion envelope.

        Raises:
            ProviderError: If the envelope has no text content
        """
        choices = data.get("choices") or []
        if not choices:
            logger.warning("No choices in OpenRouter response")
            raise ProviderError("No response from analysis provider")

        content = (choices[0].get("message") or {}).get("content")
        if not isinstance(content, str) or not content:
            raise ProviderError("Empty response from analysis provider")

        logger.debug(f"Analysis received: {len(content)} characters")
        return content

    @staticmethod
    def _raise_status_error(status_code: int, body: str) -> None:
        """Convert an HTTP error status into ProviderError."""
        if status_code == 429:
            logger.error(f"OpenRouter rate limit exceeded: {body[:200]}")
            raise ProviderError(f"Rate limit exceeded. Please retry later: {body}", status_code)
        if status_code in (401, 403):
            logger.error("OpenRouter rejected the API key")
            raise ProviderError("Analysis provider authentication failed", status_code)
        if status_code == 400:
            logger.error(f"OpenRouter bad request: {body[:200]}")
            raise ProviderError(f"Invalid request parameters: {body}", status_code)
        logger.error(f"OpenRouter API error ({status_code}): {body[:200]}")
        raise ProviderError(f"Analysis provider error ({status_code}): {body}", status_code)

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        await self.client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()


def build_provider(settings: Settings) -> Optional[OpenRouterClient]:
    """OpenRouter client from settings, or None when no key is configured."""
    if not settings.openrouter_api_key:
        logger.warning("OPENROUTER_API_KEY not set, analysis endpoints will fail")
        return None
    return OpenRouterClient(
        api_key=settings.openrouter_api_key,
        base_url=settings.openrouter_base_url,
        premium_model=settings.premium_model,
        lite_model=settings.lite_model,
        timeout=settings.provider_timeout,
    )
