"""Analysis orchestration: quota check, tier choice, provider call, commit."""

import asyncio
from contextlib import aclosing
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Optional, Union

from fastapi.concurrency import run_in_threadpool
from loguru import logger

from postlab.analysis.validator import validate
from postlab.api.database import Database
from postlab.api.exceptions import (
    ConfigurationError,
    QuotaExceededError,
    RequestValidationFailed,
)
from postlab.api.history import add_history_entry, increment_stat
from postlab.api.identity import SessionProvider, resolve_identity
from postlab.api.usage import DAILY_LIMIT, UsageLedger
from postlab.llm.openrouter_client import AnalysisProvider
from postlab.models.events import (
    CompleteEvent,
    DoneEvent,
    ErrorEvent,
    PartialEvent,
    StreamEvent,
    TierInfoEvent,
    UsageUpdateEvent,
)
from postlab.models.schemas import (
    AnalysisRequest,
    AnalysisResult,
    Identity,
    ImageData,
    ModelTier,
    ParseFailure,
    Session,
    UsageDecision,
    UserContext,
)

MAX_POST_LENGTH = 280

GENERIC_FAILURE = "Failed to simulate tweet. Please try again."


class RunState(str, Enum):
    """Lifecycle of one analysis run."""

    INIT = "init"
    AUTHORIZING = "authorizing"
    INVOKING = "invoking"
    STREAMING = "streaming"
    FINALIZING = "finalizing"
    COMMITTING = "committing"
    CLOSED = "closed"
    ABORTED = "aborted"


@dataclass
class AnalysisRun:
    """State of a single analysis request, owned by AnalysisService."""

    text: str
    identity: Optional[Identity] = None
    user_id: Optional[str] = None
    image: Optional[ImageData] = None
    user_context: Optional[UserContext] = None
    decision: Optional[UsageDecision] = None
    state: RunState = RunState.INIT
    result: Optional[Union[AnalysisResult, ParseFailure]] = None
    committed: bool = False
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return isinstance(self.result, AnalysisResult)

    def analysis_request(self) -> AnalysisRequest:
        return AnalysisRequest(
            text=self.text,
            image=self.image,
            user_context=self.user_context,
            model_tier=ModelTier.PREMIUM
            if self.decision is None or self.decision.is_premium_tier
            else ModelTier.LITE,
        )

    def transition(self, state: RunState) -> None:
        logger.debug(f"Analysis run {self.state.value} -> {state.value}")
        self.state = state


def post_length(text: str) -> int:
    """Length in UTF-16 code units, the way browsers count characters."""
    return len(text.encode("utf-16-le", "surrogatepass")) // 2


def validate_post(tweet: Any, max_length: Optional[int] = MAX_POST_LENGTH) -> str:
    """
    Check the post text of an incoming request.

    Raises:
        RequestValidationFailed: If the post is missing, not a string or too long
    """
    if not tweet or not isinstance(tweet, str):
        raise RequestValidationFailed("Tweet content is required")
    if max_length is not None and post_length(tweet) > max_length:
        raise RequestValidationFailed(f"Tweet exceeds {max_length} characters")
    return tweet


class AnalysisService:
    """
    Runs analyses against the provider under the daily usage policy.

    Usage is only committed after the provider output validates; a parse
    failure is reported to the caller but never consumes quota.
    """

    def __init__(
        self,
        database: Database,
        ledger: UsageLedger,
        provider: Optional[AnalysisProvider],
        sessions: Optional[SessionProvider] = None,
    ):
        self.database = database
        self.ledger = ledger
        self.provider = provider
        self.sessions = sessions or SessionProvider(database)

    def require_provider(self) -> AnalysisProvider:
        if self.provider is None:
            raise ConfigurationError("OPENROUTER_API_KEY environment variable not set")
        return self.provider

    async def prepare(
        self,
        text: str,
        session: Optional[Session] = None,
        anonymous_id: Optional[str] = None,
        image: Optional[ImageData] = None,
    ) -> AnalysisRun:
        """
        Resolve identity and check the quota.

        Returns a run ready for `stream` or `simulate`.

        Raises:
            QuotaExceededError: If the identity has no analyses left today
            ConfigurationError: If no analysis provider is configured
        """
        user_id = session.user.id if session else None
        run = AnalysisRun(text=text, user_id=user_id, image=image)

        run.transition(RunState.AUTHORIZING)
        run.identity = resolve_identity(user_id, anonymous_id)
        run.decision = await run_in_threadpool(self.ledger.check, run.identity)
        if not run.decision.allowed:
            run.transition(RunState.ABORTED)
            logger.info(f"Daily limit reached for {run.identity.kind.value} identity")
            raise QuotaExceededError(
                run.decision.reset_at,
                f"Daily analysis limit reached. You can analyze up to {DAILY_LIMIT} posts per day.",
            )

        self.require_provider()
        if user_id:
            run.user_context = await run_in_threadpool(self.sessions.get_user_context, user_id)

        run.transition(RunState.INVOKING)
        return run

    async def stream(self, run: AnalysisRun) -> AsyncIterator[StreamEvent]:
        """
        Drive a streaming analysis.

        Events come out as TierInfo, Partial*, Complete, UsageUpdate (only on
        a validated result), Done. A provider failure ends the stream with a
        single ErrorEvent instead of Complete.
        """
        provider = self.require_provider()
        request = run.analysis_request()
        yield TierInfoEvent(
            is_premium_tier=run.decision.is_premium_tier,
            premium_remaining=run.decision.premium_remaining,
        )

        run.transition(RunState.STREAMING)
        full_text = ""
        try:
            async with aclosing(provider.generate_stream(request)) as fragments:
                async for fragment in fragments:
                    full_text += fragment
                    yield PartialEvent(accumulated_text=full_text)
        except (asyncio.CancelledError, GeneratorExit):
            run.transition(RunState.ABORTED)
            logger.info(f"Client went away after {len(full_text)} characters, nothing committed")
            raise
        except Exception as e:
            run.transition(RunState.ABORTED)
            run.error = str(e)
            logger.exception("Streaming analysis failed")
            yield ErrorEvent(message=GENERIC_FAILURE)
            return

        run.transition(RunState.FINALIZING)
        run.result = validate(full_text)
        yield CompleteEvent(result=run.result)

        if run.succeeded:
            run.transition(RunState.COMMITTING)
            run.committed = await run_in_threadpool(self.ledger.try_consume, run.identity)
            fresh = await run_in_threadpool(self.ledger.check, run.identity)
            yield UsageUpdateEvent(remaining=fresh.remaining, reset_at=fresh.reset_at)
        else:
            logger.warning("Analysis output could not be parsed, usage not consumed")

        run.transition(RunState.CLOSED)
        yield DoneEvent()

    async def simulate(self, run: AnalysisRun) -> dict[str, Any]:
        """
        Run a whole-response analysis.

        Returns the analysis fields merged with `_usage` and `_tierInfo`; on a
        parse failure the payload carries `error` instead and usage is left
        untouched.

        Raises:
            ProviderError: If the provider call fails
        """
        provider = self.require_provider()
        request = run.analysis_request()
        tier_info = run.decision.tier_payload()

        run.transition(RunState.STREAMING)
        try:
            raw_text = await provider.generate(request)
        except Exception as e:
            run.transition(RunState.ABORTED)
            run.error = str(e)
            raise

        run.transition(RunState.FINALIZING)
        run.result = validate(raw_text)
        if not run.succeeded:
            logger.warning("Analysis output could not be parsed, usage not consumed")
            run.transition(RunState.CLOSED)
            return {
                **run.result.model_dump(mode="json"),
                "_usage": run.decision.usage_payload(),
                "_tierInfo": tier_info,
            }

        run.transition(RunState.COMMITTING)
        run.committed = await run_in_threadpool(self.ledger.try_consume, run.identity)
        fresh = await run_in_threadpool(self.ledger.check, run.identity)
        run.transition(RunState.CLOSED)
        return {
            **run.result.model_dump(mode="json"),
            "_usage": fresh.usage_payload(),
            "_tierInfo": tier_info,
        }

    async def chat(self, message: str, tweet_context: Optional[str] = None) -> str:
        """Conversational help about a post; unmetered, premium model."""
        return await self.require_provider().chat(message, tweet_context, ModelTier.PREMIUM)

    def record_side_effects(self, run: AnalysisRun) -> None:
        """
        Bump the global counter and save history for a finished run.

        Runs after the response has been sent; failures are logged and
        dropped so they can never change what the caller already received.
        """
        if run.state is not RunState.CLOSED or not run.succeeded:
            return

        try:
            increment_stat(self.database)
        except Exception as e:
            logger.warning(f"Failed to increment global stats: {e}")

        if not run.user_id:
            return
        try:
            add_history_entry(
                self.database,
                user_id=run.user_id,
                tweet_content=run.text,
                analysis=run.result.model_dump(mode="json"),
                image_data=run.image.data_url() if run.image else None,
            )
        except Exception as e:
            logger.warning(f"Failed to save to history: {e}")
