# gamepulse/payloads.py
"""
Typed views over opaque event payloads.

Ingestion stores payloads untouched. Aggregators call `extract()` at the
point of use, so a new event type never breaks ingestion and a malformed
payload only fails the fold that needs it.
"""
from typing import Any, Dict, Literal, Optional, Type

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from gamepulse.exceptions import PayloadError
from gamepulse.models import EventType


class Payload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    platform: Optional[str] = None


class GameEnded(Payload):
    score: int = Field(ge=0)
    duration_seconds: int = Field(default=0, ge=0)
    game_mode: Optional[str] = None


class CurrencyEarned(Payload):
    amount: int = Field(ge=0)
    currency_type: Literal["coins", "gems"]
    source: Optional[str] = None


class CurrencySpent(Payload):
    amount: int = Field(ge=0)
    currency_type: Literal["coins", "gems"]
    spent_on: Optional[str] = None


class PurchaseCompleted(Payload):
    product_id: Optional[str] = None
    price_usd: float = Field(default=0.0, ge=0)


class NicknameChanged(Payload):
    new_nickname: str = Field(min_length=1, max_length=50)


PAYLOAD_MODELS: Dict[str, Type[Payload]] = {
    EventType.GAME_ENDED.value: GameEnded,
    EventType.CURRENCY_EARNED.value: CurrencyEarned,
    EventType.CURRENCY_SPENT.value: CurrencySpent,
    EventType.PURCHASE_COMPLETED.value: PurchaseCompleted,
    EventType.NICKNAME_CHANGED.value: NicknameChanged,
}


def extract(event_type: str, payload: Any) -> Payload:
    """Validate `payload` against the model registered for `event_type`.

    Types without a registered model get the generic `Payload` view.
    Raises PayloadError when the payload does not fit.
    """
    if not isinstance(payload, dict):
        raise PayloadError(event_type, f"payload must be an object, got {type(payload).__name__}")
    model = PAYLOAD_MODELS.get(event_type, Payload)
    try:
        return model.model_validate(payload)
    except ValidationError as e:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) or "payload" for err in e.errors())
        raise PayloadError(event_type, f"invalid fields: {fields}") from e


def platform_of(payload: Any) -> str:
    """Best-effort platform dimension; never raises."""
    if isinstance(payload, dict):
        value = payload.get("platform")
        if isinstance(value, str) and value.strip():
            return value.strip().lower()[:20]
    return "unknown"
