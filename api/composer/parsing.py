"""
Structured parsing of language-model output.

Every response is first validated strictly against its pydantic model.
Only when that fails does ``extract_json_object`` look for a JSON object
inside fenced code blocks or surrounding prose, and the result is validated
again. Anything that still does not fit raises ParseError.
"""

from __future__ import annotations

import json
import re
from typing import Optional, Type, TypeVar

import structlog
from pydantic import BaseModel, ValidationError

from libs.common.errors import ParseError

logger = structlog.get_logger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

_FENCE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)


def extract_json_object(text: str) -> Optional[str]:
    """
    Heuristic extractor for JSON embedded in model prose.

    Tries fenced code blocks first, then the outermost balanced ``{...}``
    span. Returns the candidate JSON text, or None when nothing plausible
    is found.
    """
    for block in _FENCE.findall(text or ""):
        candidate = block.strip()
        if candidate.startswith("{"):
            return candidate

    start = (text or "").find("{")
    if start == -1:
        return None

    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return text[start : index + 1]
    return None


def looks_structured(text: str) -> bool:
    """True when ``text`` carries JSON structure or a fenced block rather than plain prose."""
    return any(marker in (text or "") for marker in ("{", "[", "```"))


def parse_model_output(text: str, model: Type[ModelT]) -> ModelT:
    """
    Validate ``text`` as ``model``, falling back to extract_json_object.

    Raises:
        ParseError: when neither strict validation nor extraction yields a valid object
    """
    try:
        return model.model_validate_json(text)
    except ValidationError as strict_error:
        candidate = extract_json_object(text)
        if candidate is None:
            raise ParseError(f"No JSON object in {model.__name__} output", raw=text) from strict_error
        try:
            parsed = model.model_validate(json.loads(candidate))
        except (json.JSONDecodeError, ValidationError) as e:
            raise ParseError(f"Extracted text is not a valid {model.__name__}", raw=text) from e

        logger.info("Model output recovered by extractor", model=model.__name__)
        return parsed
