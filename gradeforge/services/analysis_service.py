"""
Analysis service client.

Wraps the multimodal model that identifies, grades, summarises and values
cards. Each operation is a single request; retry policy is owned by the
RetryExecutor, so SDK-level retries are disabled.

Failure classification lives here too, because only this module knows which
SDK errors mean "try again later" and which mean "this will never work".
"""

import base64
import binascii
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Protocol, TypeVar

import anthropic
import httpx
from anthropic.types import Message, TextBlock
from pydantic import BaseModel, ValidationError

from gradeforge.config import settings
from gradeforge.models.analysis import (
    CardIdentification,
    ChallengeResult,
    GradingResult,
    JustificationResult,
    SummaryResult,
    ValuationPayload,
)
from gradeforge.models.card import Card, ChallengeDirection, MarketValue, SourceLink
from gradeforge.models.failure import FailureKind, KnownError
from gradeforge.services import prompts
from gradeforge.services.retry import ErrorClass, RetryExhaustedError

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

# Status codes worth another attempt: timeouts, conflicts, rate limits, overload
RETRYABLE_STATUS_CODES = frozenset({408, 409, 429, 500, 502, 503, 504, 529})

WEB_SEARCH_TOOL: dict[str, Any] = {
    "type": "web_search_20250305",
    "name": "web_search",
    "max_uses": 5,
}

_FENCED_JSON = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```")
_DATA_URL = re.compile(r"^data:(?P<media>[\w/+.-]+);base64,(?P<data>.*)$", re.DOTALL)


class CredentialError(KnownError):
    """The analysis service has no usable API key."""

    def __init__(self, detail: str | None = None):
        super().__init__(
            kind=FailureKind.CREDENTIAL_REQUIRED,
            message="An API key is required before cards can be analysed.",
            detail=detail,
            suggestion="Supply an API key; queued cards resume automatically.",
            status_code=401,
        )


class MalformedResponseError(KnownError):
    """The analysis service answered, but not with what was asked for."""

    def __init__(self, message: str, detail: str | None = None):
        super().__init__(
            kind=FailureKind.INVALID_RESPONSE,
            message=message,
            detail=detail,
            suggestion="Retry the card; responses are usually valid on a second try.",
            status_code=502,
        )


class MissingImagesError(KnownError):
    """A card without photographs cannot be analysed."""

    def __init__(self, card_id: str):
        self.card_id = card_id
        super().__init__(
            kind=FailureKind.INVALID_INPUT,
            message="This card has no images to analyse.",
            suggestion="Set the grade manually or submit the card again with photos.",
        )


class AnalysisService(Protocol):
    """Operations the pipeline stages need from the analysis model."""

    async def identify(self, card: Card) -> CardIdentification: ...

    async def grade(self, card: Card) -> GradingResult: ...

    async def summarize(self, card: Card) -> str: ...

    async def challenge(self, card: Card, direction: ChallengeDirection) -> ChallengeResult: ...

    async def justify_grade(self, card: Card, grade: int, grade_name: str) -> JustificationResult: ...

    async def market_value(self, card: Card) -> MarketValue: ...


# =============================================================================
# RESPONSE PARSING
# =============================================================================


def extract_json(text: str) -> Any:
    """
    Pull a JSON value out of model output.

    Accepts a fenced ```json block, a bare JSON document, or prose with one
    JSON object embedded in it (the last resort for web-search answers).

    Raises:
        MalformedResponseError: If no JSON can be recovered
    """
    if not text or not text.strip():
        raise MalformedResponseError(
            "The analysis service returned an empty response. "
            "This may be due to content restrictions or a temporary issue."
        )

    match = _FENCED_JSON.search(text)
    if match:
        try:
            return json.loads(match.group(1))
        except json.JSONDecodeError as e:
            raise MalformedResponseError(
                "The analysis service returned invalid JSON inside a code block.",
                detail=str(e),
            ) from e

    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass

    start, end = text.find("{"), text.rfind("}")
    if start != -1 and end > start:
        try:
            return json.loads(text[start : end + 1])
        except json.JSONDecodeError as e:
            raise MalformedResponseError(
                "The analysis service response was not in the expected JSON format.",
                detail=str(e),
            ) from e

    raise MalformedResponseError(
        "The analysis service response was not in the expected JSON format."
    )


def parse_response(model: type[ModelT], text: str) -> ModelT:
    """Extract JSON from text and validate it against a response model."""
    data = extract_json(text)
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise MalformedResponseError(
            "The analysis service response was missing required fields.",
            detail=str(e),
        ) from e


def image_block(image: str) -> dict[str, Any]:
    """Convert a data URL (or raw base64 JPEG) into an image content block."""
    match = _DATA_URL.match(image)
    if match:
        media_type, data = match.group("media"), match.group("data")
    else:
        media_type, data = "image/jpeg", image

    try:
        base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError) as e:
        raise KnownError(
            kind=FailureKind.INVALID_INPUT,
            message="A card image is not valid base64 data.",
            detail=str(e),
        ) from e

    return {
        "type": "image",
        "source": {"type": "base64", "media_type": media_type, "data": data},
    }


def response_text(message: Message) -> str:
    return "".join(block.text for block in message.content if isinstance(block, TextBlock))


def collect_sources(message: Message) -> tuple[SourceLink, ...]:
    """Web pages returned by the search tool, in order, without duplicates."""
    seen: set[str] = set()
    sources: list[SourceLink] = []
    for block in message.content:
        if getattr(block, "type", None) != "web_search_tool_result":
            continue
        results = getattr(block, "content", None)
        if not isinstance(results, list):
            continue
        for result in results:
            url = getattr(result, "url", None)
            title = getattr(result, "title", None)
            if url and title and url not in seen:
                seen.add(url)
                sources.append(SourceLink(title=title, uri=url))
    return tuple(sources)


# =============================================================================
# CLIENT
# =============================================================================


class ClaudeAnalysisService:
    """
    AnalysisService backed by the Anthropic Messages API.

    The client is created lazily so a key can be supplied after startup;
    `set_api_key` drops the cached client.
    """

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        valuation_model: str | None = None,
        client: anthropic.AsyncAnthropic | None = None,
    ):
        self._api_key = api_key if api_key is not None else settings.anthropic_api_key
        self.model = model or settings.analysis_model
        self.valuation_model = valuation_model or settings.valuation_model
        self._client = client

    @property
    def has_credentials(self) -> bool:
        return self._client is not None or bool(self._api_key)

    def set_api_key(self, api_key: str) -> None:
        self._api_key = api_key
        self._client = None

    def _get_client(self) -> anthropic.AsyncAnthropic:
        if self._client is not None:
            return self._client
        if not self._api_key:
            raise CredentialError("ANTHROPIC_API_KEY is not set")
        self._client = anthropic.AsyncAnthropic(api_key=self._api_key, max_retries=0)
        return self._client

    async def _complete(
        self,
        operation: str,
        prompt: str,
        *,
        images: tuple[str, ...] = (),
        model: str | None = None,
        max_tokens: int = 2048,
        temperature: float | None = None,
        tools: list[dict[str, Any]] | None = None,
    ) -> Message:
        client = self._get_client()
        content: list[dict[str, Any]] = [image_block(image) for image in images]
        content.append({"type": "text", "text": prompt})

        kwargs: dict[str, Any] = {
            "model": model or self.model,
            "max_tokens": max_tokens,
            "system": prompts.SYSTEM_PROMPT,
            "messages": [{"role": "user", "content": content}],
        }
        if temperature is not None:
            kwargs["temperature"] = temperature
        if tools:
            kwargs["tools"] = tools

        message = await client.messages.create(**kwargs)

        if message.usage:
            logger.info(
                "ANALYSIS_TOKEN_USAGE",
                extra={
                    "operation": operation,
                    "model": kwargs["model"],
                    "input_tokens": message.usage.input_tokens,
                    "output_tokens": message.usage.output_tokens,
                },
            )

        if message.stop_reason == "refusal":
            raise MalformedResponseError(
                "The analysis service declined to answer for this card.",
                detail=f"stop_reason={message.stop_reason}",
            )
        return message

    @staticmethod
    def _images(card: Card) -> tuple[str, str]:
        if not card.has_images:
            raise MissingImagesError(card.id)
        return card.front_image, card.back_image

    async def identify(self, card: Card) -> CardIdentification:
        message = await self._complete(
            "identify",
            prompts.identify_prompt(),
            images=self._images(card),
            max_tokens=512,
            temperature=0.1,
        )
        return parse_response(CardIdentification, response_text(message))

    async def grade(self, card: Card) -> GradingResult:
        message = await self._complete(
            "grade",
            prompts.grade_prompt(),
            images=self._images(card),
            temperature=0.0,
        )
        return parse_response(GradingResult, response_text(message))

    async def summarize(self, card: Card) -> str:
        message = await self._complete(
            "summarize",
            prompts.summary_prompt(card),
            images=self._images(card),
            max_tokens=1024,
            temperature=0.7,
        )
        return parse_response(SummaryResult, response_text(message)).summary

    async def challenge(self, card: Card, direction: ChallengeDirection) -> ChallengeResult:
        message = await self._complete(
            "challenge",
            prompts.challenge_prompt(card, direction),
            images=self._images(card),
        )
        return parse_response(ChallengeResult, response_text(message))

    async def justify_grade(self, card: Card, grade: int, grade_name: str) -> JustificationResult:
        message = await self._complete(
            "justify_grade",
            prompts.justify_prompt(card, grade, grade_name),
            images=self._images(card),
        )
        return parse_response(JustificationResult, response_text(message))

    async def market_value(self, card: Card) -> MarketValue:
        message = await self._complete(
            "market_value",
            prompts.valuation_prompt(card),
            model=self.valuation_model,
            max_tokens=4096,
            temperature=0.1,
            tools=[WEB_SEARCH_TOOL],
        )
        payload = parse_response(ValuationPayload, response_text(message))
        return MarketValue(
            **payload.model_dump(),
            source_urls=collect_sources(message),
        )


# =============================================================================
# FAILURE CLASSIFICATION
# =============================================================================


def classify_analysis_error(error: BaseException) -> ErrorClass:
    """
    Decide whether an analysis failure is worth another attempt.

    Retryable: rate limits, overload, 5xx, connection failures, timeouts.
    Fatal: missing or rejected credentials, bad requests, malformed responses,
    and anything unrecognised.
    """
    if isinstance(error, KnownError):
        return ErrorClass.FATAL
    if isinstance(error, (anthropic.AuthenticationError, anthropic.PermissionDeniedError)):
        return ErrorClass.FATAL
    if isinstance(error, anthropic.APIConnectionError):
        return ErrorClass.RETRYABLE
    if isinstance(error, anthropic.APIStatusError):
        if error.status_code in RETRYABLE_STATUS_CODES or error.status_code >= 500:
            return ErrorClass.RETRYABLE
        return ErrorClass.FATAL
    if isinstance(error, httpx.TransportError):
        return ErrorClass.RETRYABLE

    text = str(error).lower()
    if "overloaded" in text or "unavailable" in text:
        return ErrorClass.RETRYABLE
    return ErrorClass.FATAL


@dataclass(frozen=True, slots=True)
class StageFailure:
    """What gets written onto a card when its stage fails."""

    kind: FailureKind
    message: str

    @property
    def needs_credentials(self) -> bool:
        return self.kind is FailureKind.CREDENTIAL_REQUIRED


def describe_stage_failure(error: BaseException) -> StageFailure:
    """Map any stage exception to the error fields recorded on the card."""
    if isinstance(error, RetryExhaustedError):
        return StageFailure(
            FailureKind.SERVICE_UNAVAILABLE,
            f"The analysis service did not recover after {error.attempts} attempts "
            f"({error.last_message}). Please retry later.",
        )
    if isinstance(error, KnownError):
        return StageFailure(error.kind, error.message)
    if isinstance(error, (anthropic.AuthenticationError, anthropic.PermissionDeniedError)):
        return StageFailure(
            FailureKind.CREDENTIAL_REQUIRED,
            "The analysis service rejected the API key. Supply a valid key and retry.",
        )
    if isinstance(error, anthropic.APIStatusError):
        return StageFailure(
            FailureKind.EXTERNAL_API_ERROR,
            f"The analysis service rejected the request ({error.status_code}): {error.message}",
        )
    if isinstance(error, (anthropic.APIConnectionError, httpx.TransportError)):
        return StageFailure(
            FailureKind.SERVICE_UNAVAILABLE,
            "A network error occurred while contacting the analysis service.",
        )
    detail = str(error) or type(error).__name__
    return StageFailure(FailureKind.UNKNOWN, f"An unexpected error occurred: {detail}")
