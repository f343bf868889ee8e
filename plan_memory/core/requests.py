"""
Request validation for the exposed compression and context operations.
"""

from typing import Dict, Optional

import pydantic
from pydantic import BaseModel, field_validator

from .config import COMPRESSION_MODES
from .errors import ValidationError


class PlanRequest(BaseModel):
    plan_id: str
    user_id: Optional[str] = None

    @field_validator('plan_id')
    @classmethod
    def plan_id_must_not_be_empty(cls, v):
        if not v or not v.strip():
            raise ValueError('plan_id cannot be empty')
        return v


class CompressionRequest(PlanRequest):
    mode: str
    dry_run: bool = False

    @field_validator('mode')
    @classmethod
    def mode_must_be_valid(cls, v):
        if v not in COMPRESSION_MODES:
            raise ValueError(f'mode must be one of: {list(COMPRESSION_MODES)}')
        return v


class ComposeContextRequest(BaseModel):
    plan_id: str
    conversation_id: Optional[str] = None
    query: Optional[str] = None
    max_tokens: Optional[int] = None
    priorities: Optional[Dict[str, Optional[int]]] = None

    @field_validator('plan_id')
    @classmethod
    def plan_id_must_not_be_empty(cls, v):
        if not v or not v.strip():
            raise ValueError('plan_id cannot be empty')
        return v

    @field_validator('max_tokens')
    @classmethod
    def max_tokens_must_be_positive(cls, v):
        if v is not None and v <= 0:
            raise ValueError('max_tokens must be positive')
        return v

    @field_validator('priorities')
    @classmethod
    def priorities_must_name_known_blocks(cls, v):
        if v is None:
            return v
        unknown = set(v) - {'messages', 'embeddings', 'plan'}
        if unknown:
            raise ValueError(f'unknown priority keys: {sorted(unknown)}')
        for key, value in v.items():
            if value is not None and value < 0:
                raise ValueError(f'priority for {key} must be >= 0')
        return v


def validate_request(model: type, **fields):
    """Build a request model, translating pydantic errors into ValidationError."""
    try:
        return model(**fields)
    except pydantic.ValidationError as e:
        errors = e.errors()
        message = errors[0]["msg"] if errors else str(e)
        raise ValidationError(
            message,
            details={"errors": [{"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
                                for err in errors]}
        ) from e
