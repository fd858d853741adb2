"""Error analysis over a vision LLM.

The model sees the raster plus the canonical character positions and returns
structured error annotations. Its coordinates are untrusted: they are echoed
back in pixel space and reconciled against OCR afterwards.
"""
from __future__ import annotations

import json
import logging
import os
import time
from dataclasses import dataclass
from typing import Literal, Optional, Protocol, Sequence

from openai import AsyncOpenAI
from pydantic import BaseModel, Field, ValidationError

from .errors import AnalysisServiceError
from .types import CharacterBox, ErrorAnalysisResult, ErrorAnnotation, Point, Rect
from .utils import png_data_url

logger = logging.getLogger(__name__)


SYSTEM_PROMPT = """You are a mathematics professor analyzing handwritten matrix calculations.

**TASK**: Find mathematical errors in the handwritten content shown in the image.

**FOCUS**: Matrix operations, calculations, and numerical values.

**WHEN YOU FIND AN ERROR**:
- Identify the coordinate ID of the wrong element (c001, c002, etc.)
- Provide the correct value
- Explain why it's wrong

**RESPONSE FORMAT**:
Return JSON with:
- originalContent: What you see in the math
- hasErrors: true/false
- results: Array of errors with id, bbox, center, errorType, suggestion, explanation, and action: "circle"

Analyze the mathematics carefully and find any calculation errors."""

USER_MESSAGE = (
    "Please analyze the handwritten mathematical content and identify any calculation errors. "
    "Use only your visual ability to analyze the image, ignoring any text recognition data."
)


class BBoxModel(BaseModel):
    x: float
    y: float
    w: float
    h: float


class CenterModel(BaseModel):
    x: float
    y: float


class ErrorItem(BaseModel):
    id: str
    bbox: BBoxModel
    center: CenterModel
    errorType: Literal["math", "notation", "dimension", "property", "concept"]
    suggestion: str
    explanation: str
    action: Literal["circle", "strikethrough", "underline", "highlight"]


class ErrorAnalysisSchema(BaseModel):
    originalContent: str
    hasErrors: bool
    results: list[ErrorItem]
    fills: list[str] = Field(default_factory=list)


def schema_to_result(parsed: ErrorAnalysisSchema, processing_time_ms: float = 0.0) -> ErrorAnalysisResult:
    results = [
        ErrorAnnotation(
            id=item.id,
            bbox=Rect(item.bbox.x, item.bbox.y, item.bbox.w, item.bbox.h),
            center=Point(item.center.x, item.center.y),
            error_type=item.errorType,
            suggestion=item.suggestion,
            explanation=item.explanation,
            action=item.action,
        )
        for item in parsed.results
    ]
    return ErrorAnalysisResult(
        original_content=parsed.originalContent,
        has_errors=parsed.hasErrors,
        results=results,
        processing_time_ms=processing_time_ms,
    )


def build_request_payload(char_boxes: Sequence[CharacterBox]) -> dict:
    return {
        "message": USER_MESSAGE,
        "characterPositions": [
            {"id": c.id, "bbox": c.bbox.to_dict(), "center": c.center.to_dict()} for c in char_boxes
        ],
    }


class Analyzer(Protocol):
    async def analyze(self, image: bytes, char_boxes: list[CharacterBox], full_text: str) -> ErrorAnalysisResult: ...


class ErrorAnalyzer:
    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = "gpt-4o",
        base_url: Optional[str] = None,
        system_prompt: Optional[str] = None,
        temperature: float = 0.0,
        max_output_tokens: int = 2048,
    ) -> None:
        api_key = api_key or os.getenv("OPENAI_API_KEY")
        if not api_key:
            raise ValueError("OPENAI_API_KEY environment variable is not set and no api_key was provided.")

        self.client = AsyncOpenAI(api_key=api_key, base_url=base_url) if base_url else AsyncOpenAI(api_key=api_key)
        self.model = model
        self.system_prompt = system_prompt or SYSTEM_PROMPT
        self.temperature = temperature
        self.max_output_tokens = max_output_tokens

    async def analyze(self, image: bytes, char_boxes: list[CharacterBox], full_text: str) -> ErrorAnalysisResult:
        """Send the raster and canonical character positions; return parsed annotations.

        Raises AnalysisServiceError for transport failures and malformed output.
        """
        if not image or not full_text:
            raise AnalysisServiceError("Missing required fields: image, charBoxes, fullText")

        start = time.time()
        payload = build_request_payload(char_boxes)
        try:
            response = await self.client.responses.parse(
                model=self.model,
                input=[
                    {"role": "system", "content": self.system_prompt},
                    {
                        "role": "user",
                        "content": [
                            {"type": "input_text", "text": json.dumps(payload)},
                            {"type": "input_image", "image_url": png_data_url(image)},
                        ],
                    },
                ],
                text_format=ErrorAnalysisSchema,
                temperature=self.temperature,
                max_output_tokens=self.max_output_tokens,
            )
        except ValidationError as e:
            raise AnalysisServiceError(f"malformed analysis response: {e}") from e
        except Exception as e:
            raise AnalysisServiceError(str(e)) from e

        parsed = response.output_parsed
        if parsed is None:
            raise AnalysisServiceError("analysis response had no parsed output")

        result = schema_to_result(parsed, processing_time_ms=(time.time() - start) * 1000.0)
        logger.info("analysis: has_errors=%s errors=%d", result.has_errors, len(result.results))
        return result


def parse_analysis_json(data: str | dict) -> ErrorAnalysisResult:
    """Parse a raw JSON analysis payload (e.g. a recorded response)."""
    try:
        if isinstance(data, str):
            parsed = ErrorAnalysisSchema.model_validate_json(data)
        else:
            parsed = ErrorAnalysisSchema.model_validate(data)
    except ValidationError as e:
        raise AnalysisServiceError(f"malformed analysis response: {e}") from e
    return schema_to_result(parsed)


@dataclass
class AnalysisValidation:
    is_valid: bool
    issues: list[str]


def validate_error_analysis_result(
    errors: Sequence[ErrorAnnotation],
    char_boxes: Sequence[CharacterBox],
) -> AnalysisValidation:
    issues: list[str] = []
    known = {c.id for c in char_boxes}
    for i, e in enumerate(errors, start=1):
        if e.id not in known:
            issues.append(f"error {i}: id {e.id!r} not present in character list")
        if e.bbox is None or e.center is None:
            issues.append(f"error {i}: missing bbox or center")
        if not e.suggestion.strip():
            issues.append(f"error {i}: missing suggestion")
    return AnalysisValidation(is_valid=not issues, issues=issues)


def format_error_report(original_content: str, errors: Sequence[ErrorAnnotation]) -> str:
    if not errors:
        return f'Handwritten content "{original_content}": no errors found.'

    lines = [f'Handwritten content: "{original_content}"', f"Found {len(errors)} error(s):", ""]
    for i, e in enumerate(errors, start=1):
        lines.append(f"{i}. Character ID: {e.id}")
        lines.append(f"   Error type: {e.error_type}")
        lines.append(f'   Suggestion: "{e.suggestion}"')
        lines.append(f"   Explanation: {e.explanation}")
        lines.append(f"   Position: ({e.center.x:g}, {e.center.y:g})")
        lines.append("")
    return "\n".join(lines)
