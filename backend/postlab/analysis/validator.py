"""Validation of raw provider output into an AnalysisResult."""

import json
from typing import Union

from loguru import logger
from pydantic import ValidationError

from postlab.models.schemas import AnalysisResult, ParseFailure

FENCE = "```"
JSON_FENCE = "```json"


def strip_code_fence(text: str) -> str:
    """Remove a surrounding ```json / ``` markdown fence, if any."""
    cleaned = text.strip()
    if cleaned.startswith(JSON_FENCE):
        cleaned = cleaned[len(JSON_FENCE):]
    elif cleaned.startswith(FENCE):
        cleaned = cleaned[len(FENCE):]
    if cleaned.endswith(FENCE):
        cleaned = cleaned[: -len(FENCE)]
    return cleaned.strip()


def validate(raw_text: str) -> Union[AnalysisResult, ParseFailure]:
    """
    Parse and validate provider output.

    Never raises: anything that is not valid JSON matching the analysis schema
    field-by-field comes back as a ParseFailure.
    """
    body = strip_code_fence(raw_text or "")
    if not body:
        logger.warning("Provider returned empty analysis text")
        return ParseFailure(raw_text=raw_text or "", details="empty response")

    try:
        result = AnalysisResult.model_validate_json(body, strict=True)
    except ValidationError as e:
        logger.warning(f"Provider output failed schema validation: {e.error_count()} error(s)")
        logger.debug(f"Rejected output preview: {body[:200]}")
        return ParseFailure(raw_text=raw_text, details=str(e))

    return result


def serialize(result: AnalysisResult) -> str:
    """Serialize a result back into the JSON document the provider is asked for."""
    return json.dumps(result.model_dump(mode="json"), ensure_ascii=False)
