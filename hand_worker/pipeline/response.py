"""
Typed contracts for model responses.

Raw model text never leaves this module unvalidated: it is reduced to a
JSON object and checked against pydantic models, or a ResponseSchemaError
is raised.
"""

import json
import logging
from typing import Any, Dict, List, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from pydantic.alias_generators import to_camel

from ..errors import ResponseSchemaError

logger = logging.getLogger("hand_worker")

ModelT = TypeVar("ModelT", bound=BaseModel)


class CamelModel(BaseModel):
    """Accepts camelCase keys from the model and snake_case from code"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    @model_validator(mode="before")
    @classmethod
    def _null_means_default(cls, data: Any) -> Any:
        # Models send null for unknown values; treat it as an absent key
        if isinstance(data, dict):
            return {k: v for k, v in data.items() if v is not None}
        return data


class BoundaryItem(CamelModel):
    hand_number: int = Field(description="Window-local hand number")
    start: str = Field(description="Start timestamp relative to the window")
    end: str = Field(description="End timestamp relative to the window")


class Phase1Response(CamelModel):
    hands: List[BoundaryItem]


class BoardCards(CamelModel):
    flop: Optional[List[Optional[str]]] = None
    turn: Optional[str] = None
    river: Optional[str] = None


class PlayerItem(CamelModel):
    name: str
    position: Optional[str] = None
    seat: Optional[int] = None
    stack_size: Optional[float] = None
    hole_cards: Optional[List[Optional[str]]] = None


class ActionItem(CamelModel):
    player: str
    street: str
    action: str
    amount: float = 0.0


class WinnerItem(CamelModel):
    name: str
    amount: float = 0.0
    hand: Optional[str] = None


class AIAnalysis(CamelModel):
    confidence: float = Field(default=0.0, ge=0, le=1)
    reasoning: str = "No analysis data"
    player_states: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    hand_quality: str = "routine"


class HandItem(CamelModel):
    hand_number: int
    stakes: Optional[str] = None
    pot: float = 0.0
    board: BoardCards = Field(default_factory=BoardCards)
    players: List[PlayerItem] = Field(default_factory=list)
    actions: List[ActionItem] = Field(default_factory=list)
    winners: List[WinnerItem] = Field(default_factory=list)
    timestamp_start: Optional[str] = None
    timestamp_end: Optional[str] = None
    semantic_tags: List[str] = Field(default_factory=list)
    ai_analysis: AIAnalysis = Field(default_factory=AIAnalysis)


class Phase2Response(CamelModel):
    # Validated one hand at a time so a single bad hand does not sink the batch
    hands: List[Dict[str, Any]]


def _strip_fences(text: str) -> str:
    clean = text.strip()
    if clean.startswith("```json"):
        clean = clean[7:]
    elif clean.startswith("```"):
        clean = clean[3:]
    if clean.endswith("```"):
        clean = clean[:-3]
    return clean.strip()


def extract_json_object(text: Optional[str]) -> Dict[str, Any]:
    """
    Reduce raw model output to a JSON object.

    Markdown code fences are stripped first; if the remaining text is not
    valid JSON the outermost {...} span is tried before giving up.

    Raises:
        ResponseSchemaError: if no JSON object can be recovered
    """
    if not text or not text.strip():
        raise ResponseSchemaError("Empty model response")

    clean = _strip_fences(text)
    try:
        parsed = json.loads(clean)
    except json.JSONDecodeError as e:
        first = clean.find("{")
        last = clean.rfind("}")
        if first == -1 or last <= first:
            raise ResponseSchemaError(f"Model response is not JSON: {e}") from e
        try:
            parsed = json.loads(clean[first:last + 1])
        except json.JSONDecodeError:
            raise ResponseSchemaError(f"Model response is not JSON: {e}") from e
        logger.debug("Recovered JSON object from surrounding text")

    if not isinstance(parsed, dict):
        raise ResponseSchemaError(f"Expected a JSON object, got {type(parsed).__name__}")
    return parsed


def parse_response(text: Optional[str], model: Type[ModelT]) -> ModelT:
    """Parse and validate raw model text against a response model"""
    data = extract_json_object(text)
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise ResponseSchemaError(
            f"{model.__name__} validation failed: {e.error_count()} error(s): {e.errors()[0]['msg']}"
        ) from e
