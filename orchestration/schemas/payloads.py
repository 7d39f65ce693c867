"""Schema registry for opaque JSON payloads (approval action data, step inputs).

Action types with a registered model are validated against it; anything
else only has to be a JSON object.
"""

from typing import Any, Dict, Optional, Type

from pydantic import BaseModel, ConfigDict, Field, JsonValue, TypeAdapter, ValidationError

from orchestration.core.errors import InvalidRequest

JsonObject = Dict[str, JsonValue]

_json_object = TypeAdapter(JsonObject)


class SendEmailData(BaseModel):
    model_config = ConfigDict(extra="allow")

    to: str = Field(min_length=1)
    subject: str = Field(min_length=1)
    body: Optional[str] = None
    external_recipient: bool = False


class FinancialTransactionData(BaseModel):
    model_config = ConfigDict(extra="allow")

    amount: float = Field(gt=0)
    currency: str = Field(min_length=3, max_length=3)
    counterparty: Optional[str] = None


_REGISTRY: Dict[str, Type[BaseModel]] = {
    "send_email": SendEmailData,
    "financial_transaction": FinancialTransactionData,
}


def register_action_schema(action_type: str, model: Type[BaseModel]) -> None:
    _REGISTRY[action_type] = model


def action_schema(action_type: str) -> Optional[Type[BaseModel]]:
    return _REGISTRY.get(action_type)


def validate_json_object(data: Any, *, what: str = "payload") -> dict:
    if not isinstance(data, dict):
        raise InvalidRequest(f"{what} must be a JSON object")
    try:
        return _json_object.validate_python(data)
    except ValidationError as exc:
        raise InvalidRequest(f"{what} is not valid JSON: {exc.errors()[0]['msg']}") from exc


def validate_action_data(action_type: str, data: Any) -> dict:
    payload = validate_json_object(data, what=f"action data for '{action_type}'")

    model = _REGISTRY.get(action_type)
    if model is None:
        return payload

    try:
        model.model_validate(payload)
    except ValidationError as exc:
        first = exc.errors()[0]
        loc = ".".join(str(p) for p in first.get("loc", ()))
        raise InvalidRequest(f"Invalid action data for '{action_type}': {loc} {first['msg']}") from exc

    return payload
