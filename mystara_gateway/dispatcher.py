"""Request pipeline and response dispatch for the Mystara gateway.

Every request passes through a fixed sequence of stages::

    Validate -> CheckQuota -> CheckFilter -> Generate -> Emit

Each stage returns either ``Continue(value)``, handing its result to the next
stage, or ``Terminate(result)``, ending the request with an ``Answer`` or a
``Rejection``. Emit renders the final result as one JSON payload (buffered
mode) or as an ordered sequence of ``StreamFrame`` values (streaming mode).

Stream frame protocol, per response:

- zero or more TEXT frames, then exactly one META frame, then DONE; or
- an ERROR frame (possibly after some TEXT frames), then DONE.

A caller that disconnects mid-stream simply stops receiving frames.

The generator passed to the dispatcher is duck-typed: it must provide
``ensure_configured()`` and ``async generate(prompt)``, and may provide
``supports_streaming = True`` with an async-iterator ``stream(prompt)``.
Raw upstream responses are normalized with ``extract_text``.
"""

import asyncio
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    Generic,
    List,
    Optional,
    Tuple,
    TypeVar,
    Union,
)

from mystara_gateway.config import ConfigurationError, GatewayConfig
from mystara_gateway.content_filter import ContentFilter
from mystara_gateway.models import (
    ChatRequest,
    ChatResponse,
    ErrorResponse,
    RateLimitedResponse,
)
from mystara_gateway.prompt import (
    MSG_CONFIGURATION_ERROR,
    MSG_INVALID_BODY,
    MSG_INVALID_MESSAGE,
    MSG_MISSING_USER_ID,
    MSG_UPSTREAM_ERROR,
    build_prompt,
    rate_limit_message,
)
from mystara_gateway.quota import CallerTier, QuotaTracker
from mystara_gateway.telemetry import log_request
from mystara_gateway.upstream import (
    MalformedUpstreamResponse,
    UpstreamError,
    extract_text,
)

T = TypeVar("T")

DONE_SENTINEL = "[DONE]"

_TRUE_STRINGS = {"true", "1", "yes", "on"}


def coerce_flag(value: Any) -> bool:
    """Coerce the caller's premium flag to a bool."""
    if isinstance(value, str):
        return value.strip().lower() in _TRUE_STRINGS
    return bool(value)


def coerce_caller_id(value: Any) -> Optional[str]:
    """Return a usable caller id, or None if it is missing or blank."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        value = str(value)
    if not isinstance(value, str):
        return None
    return value.strip() or None


def rechunk(text: str, size: int) -> List[str]:
    """Split text into consecutive slices of at most ``size`` characters."""
    return [text[i:i + size] for i in range(0, len(text), size)]


@dataclass(frozen=True)
class GenerationRequest:
    """A validated request, ready for quota and filtering."""

    caller_id: str
    message: str
    context: Any
    tier: CallerTier

    @property
    def is_premium(self) -> bool:
        return self.tier is CallerTier.ELEVATED


@dataclass(frozen=True)
class Admission:
    """A request that passed the quota check."""

    request: GenerationRequest
    remaining: int


@dataclass(frozen=True)
class Answer:
    """Text to return to the caller with its quota metadata."""

    text: str
    remaining: int
    is_premium: bool
    outcome: str = "success"

    @property
    def status(self) -> int:
        return 200

    def body(self) -> Dict[str, Any]:
        return ChatResponse(
            response=self.text,
            remaining_requests=self.remaining,
            is_premium=self.is_premium,
        ).model_dump(by_alias=True)


@dataclass(frozen=True)
class Rejection:
    """A request ended without an answer.

    ``detail`` is for the server log only and never reaches the caller.
    """

    status: int
    error: str
    message: str
    outcome: str
    detail: Optional[str] = None
    reset_in: Optional[int] = None

    def body(self) -> Dict[str, Any]:
        if self.reset_in is not None:
            return RateLimitedResponse(
                error=self.error, mensaje=self.message, reset_in=self.reset_in
            ).model_dump(by_alias=True)
        return ErrorResponse(error=self.error, message=self.message).model_dump()


Result = Union[Answer, Rejection]


@dataclass(frozen=True)
class Continue(Generic[T]):
    value: T


@dataclass(frozen=True)
class Terminate:
    result: Result


Outcome = Union[Continue, Terminate]


class FrameKind(str, Enum):
    TEXT = "text"
    META = "meta"
    ERROR = "error"
    DONE = "done"


@dataclass(frozen=True)
class StreamFrame:
    """One unit of a streamed response."""

    kind: FrameKind
    payload: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def text(cls, text: str) -> "StreamFrame":
        return cls(FrameKind.TEXT, {"text": text})

    @classmethod
    def meta(cls, remaining: int, is_premium: bool) -> "StreamFrame":
        return cls(
            FrameKind.META,
            {"remainingRequests": remaining, "isPremium": is_premium},
        )

    @classmethod
    def error(cls, body: Dict[str, Any]) -> "StreamFrame":
        return cls(FrameKind.ERROR, dict(body))

    @classmethod
    def done(cls) -> "StreamFrame":
        return cls(FrameKind.DONE)

    def encode(self) -> str:
        """Serialize as a server-sent event."""
        if self.kind is FrameKind.DONE:
            return "data: {}\n\n".format(DONE_SENTINEL)
        return "data: {}\n\n".format(json.dumps(self.payload, ensure_ascii=False))


async def iter_frames(
    frames: List[StreamFrame],
) -> AsyncIterator[StreamFrame]:
    for frame in frames:
        yield frame


def frames_for(result: Result) -> List[StreamFrame]:
    """Render a finished result with the stream frame protocol."""
    if isinstance(result, Answer):
        return [
            StreamFrame.text(result.text),
            StreamFrame.meta(result.remaining, result.is_premium),
            StreamFrame.done(),
        ]
    return [StreamFrame.error(result.body()), StreamFrame.done()]


class ResponseDispatcher:
    """Runs the request stages and produces buffered or streamed output."""

    def __init__(
        self,
        config: GatewayConfig,
        tracker: QuotaTracker,
        content_filter: ContentFilter,
        generator: Any,
    ) -> None:
        self._config = config
        self._tracker = tracker
        self._filter = content_filter
        self._generator = generator

    @property
    def mode(self) -> str:
        return self._config.response_mode

    @property
    def tracker(self) -> QuotaTracker:
        return self._tracker

    # --- Stages ---

    def validate(self, body: ChatRequest) -> Outcome:
        """Check the payload and server credentials; consumes no quota."""
        message = body.user_message
        if (
            not isinstance(message, str)
            or not message
            or len(message) > self._config.max_message_chars
        ):
            return Terminate(
                Rejection(
                    status=400,
                    error="invalid_message",
                    message=MSG_INVALID_MESSAGE,
                    outcome="validation_error",
                )
            )

        caller_id = coerce_caller_id(body.user_id)
        if caller_id is None:
            return Terminate(
                Rejection(
                    status=400,
                    error="missing_user_id",
                    message=MSG_MISSING_USER_ID,
                    outcome="validation_error",
                )
            )

        try:
            self._generator.ensure_configured()
        except ConfigurationError as exc:
            return Terminate(
                Rejection(
                    status=500,
                    error="configuration_error",
                    message=MSG_CONFIGURATION_ERROR,
                    outcome="configuration_error",
                    detail=exc.detail,
                )
            )

        return Continue(
            GenerationRequest(
                caller_id=caller_id,
                message=message,
                context=body.context,
                tier=CallerTier.from_flag(coerce_flag(body.is_premium)),
            )
        )

    def check_quota(self, request: GenerationRequest) -> Outcome:
        decision = self._tracker.admit(request.caller_id, request.tier)
        if not decision.allowed:
            limit = self._tracker.limit_for(request.tier)
            return Terminate(
                Rejection(
                    status=429,
                    error="rate_limit_exceeded",
                    message=rate_limit_message(limit, decision.retry_after_seconds),
                    outcome="rate_limited",
                    reset_in=decision.retry_after_seconds,
                )
            )
        return Continue(Admission(request=request, remaining=decision.remaining))

    def check_filter(self, admission: Admission) -> Outcome:
        if self._filter.is_blocked(admission.request.message):
            return Terminate(
                Answer(
                    text=self._filter.canned_reply,
                    remaining=admission.remaining,
                    is_premium=admission.request.is_premium,
                    outcome="filtered",
                )
            )
        return Continue(admission)

    async def generate(self, admission: Admission) -> Outcome:
        """Buffered generation: one upstream call, normalized to text."""
        request = admission.request
        prompt = build_prompt(request.context, request.message)
        try:
            raw = await self._generator.generate(prompt)
            extracted = extract_text(raw)
        except UpstreamError as exc:
            return Terminate(self._upstream_failure(admission, exc.detail))
        except Exception as exc:
            return Terminate(self._upstream_failure(admission, repr(exc)))

        return Continue(
            Answer(
                text=extracted.text,
                remaining=admission.remaining,
                is_premium=request.is_premium,
            )
        )

    def preflight(self, body: ChatRequest) -> Outcome:
        """Run Validate, CheckQuota and CheckFilter in order."""
        outcome: Outcome = Continue(body)
        for stage in (self.validate, self.check_quota, self.check_filter):
            outcome = stage(outcome.value)
            if isinstance(outcome, Terminate):
                break
        return outcome

    # --- Emit ---

    async def respond(self, body: ChatRequest) -> Result:
        """Buffered mode: return the whole answer or a rejection."""
        outcome = self.preflight(body)
        if isinstance(outcome, Continue):
            outcome = await self.generate(outcome.value)

        result = outcome.value if isinstance(outcome, Continue) else outcome.result
        self._log_result(body, result)
        return result

    def stream(
        self,
        body: ChatRequest,
        is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
    ) -> Tuple[int, AsyncIterator[StreamFrame]]:
        """Streaming mode: return the HTTP status and the frame iterator.

        The pre-flight stages run immediately, so quota is consumed before
        this returns and the status reflects their outcome. Generation only
        starts once the returned iterator is consumed.

        Args:
            body: The parsed request body.
            is_disconnected: Optional coroutine function reporting whether
                the caller has gone away; checked before each text frame.
        """
        outcome = self.preflight(body)
        if isinstance(outcome, Terminate):
            self._log_result(body, outcome.result)
            result = outcome.result
            return result.status, iter_frames(frames_for(result))
        return 200, self._stream_generation(body, outcome.value, is_disconnected)

    def invalid_body(self, detail: str) -> Rejection:
        """Reject a body that could not be parsed at all."""
        rejection = Rejection(
            status=400,
            error="invalid_body",
            message=MSG_INVALID_BODY,
            outcome="validation_error",
            detail=detail,
        )
        log_request(
            caller_id=None,
            message_length=0,
            tier=None,
            outcome=rejection.outcome,
            mode=self.mode,
            error=detail,
        )
        return rejection

    async def _stream_generation(
        self,
        body: ChatRequest,
        admission: Admission,
        is_disconnected: Optional[Callable[[], Awaitable[bool]]],
    ) -> AsyncIterator[StreamFrame]:
        request = admission.request
        prompt = build_prompt(request.context, request.message)
        fragments = self._fragments(prompt)
        failure: Optional[Rejection] = None

        try:
            async for text in fragments:
                if is_disconnected is not None and await is_disconnected():
                    self._log(
                        body, "client_disconnected", remaining=admission.remaining
                    )
                    return
                yield StreamFrame.text(text)
        except UpstreamError as exc:
            failure = self._upstream_failure(admission, exc.detail)
        except Exception as exc:
            failure = self._upstream_failure(admission, repr(exc))
        finally:
            await fragments.aclose()

        if failure is not None:
            self._log_result(body, failure)
            yield StreamFrame.error(failure.body())
        else:
            self._log(body, "success", remaining=admission.remaining)
            yield StreamFrame.meta(admission.remaining, request.is_premium)
        yield StreamFrame.done()

    async def _fragments(self, prompt: str) -> AsyncIterator[str]:
        """Yield text fragments from upstream, relayed or re-chunked."""
        streaming = self._config.streaming
        if streaming.upstream_streaming and getattr(
            self._generator, "supports_streaming", False
        ):
            upstream = self._generator.stream(prompt)
            relayed = False
            try:
                async for chunk in upstream:
                    try:
                        text = extract_text(chunk).text
                    except MalformedUpstreamResponse:
                        continue
                    if text:
                        relayed = True
                        yield text
            finally:
                aclose = getattr(upstream, "aclose", None)
                if aclose is not None:
                    await aclose()
            if not relayed:
                raise MalformedUpstreamResponse("Upstream stream produced no text.")
            return

        raw = await self._generator.generate(prompt)
        text = extract_text(raw).text
        delay = streaming.inter_chunk_delay_ms / 1000.0
        for index, piece in enumerate(rechunk(text, streaming.chunk_size_chars)):
            if index and delay:
                await asyncio.sleep(delay)
            yield piece

    # --- Helpers ---

    def _upstream_failure(self, admission: Admission, detail: str) -> Rejection:
        if self._config.quota.refund_on_upstream_failure:
            self._tracker.refund(admission.request.caller_id)
        return Rejection(
            status=500,
            error="upstream_error",
            message=MSG_UPSTREAM_ERROR,
            outcome="upstream_error",
            detail=detail,
        )

    def _log_result(self, body: ChatRequest, result: Result) -> None:
        if isinstance(result, Answer):
            self._log(body, result.outcome, remaining=result.remaining)
        else:
            self._log(body, result.outcome, error=result.detail)

    def _log(
        self,
        body: ChatRequest,
        outcome: str,
        remaining: Optional[int] = None,
        error: Optional[str] = None,
    ) -> None:
        message = body.user_message
        tier = None
        if outcome != "validation_error":
            tier = CallerTier.from_flag(coerce_flag(body.is_premium)).value
        log_request(
            caller_id=coerce_caller_id(body.user_id),
            message_length=len(message) if isinstance(message, str) else 0,
            tier=tier,
            outcome=outcome,
            mode=self.mode,
            remaining=remaining,
            error=error,
        )
