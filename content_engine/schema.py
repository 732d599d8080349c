"""Payload schemas per content type, enforced at the cache write boundary."""

from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, model_validator

from content_engine.errors import SchemaValidationError
from content_engine.models import ContentType


class Article(BaseModel):
    """News or funding article as returned by search providers."""

    model_config = ConfigDict(extra="allow")

    title: str = Field(..., min_length=1)
    description: Optional[str] = None
    url: Optional[str] = None
    publishedAt: Optional[Union[str, int, float]] = None
    source: Optional[Union[str, Dict[str, Any]]] = None


class EventListing(BaseModel):
    """Event listing; providers name the title either ``name`` or ``title``."""

    model_config = ConfigDict(extra="allow")

    name: Optional[str] = None
    title: Optional[str] = None
    date: Optional[Union[str, int, float]] = None
    location: Optional[str] = None
    url: Optional[str] = None

    @model_validator(mode="after")
    def _has_label(self) -> "EventListing":
        if not (self.name or self.title):
            raise ValueError("event needs a name or title")
        return self


class SocialPost(BaseModel):
    model_config = ConfigDict(extra="allow")

    title: Optional[str] = None
    text: Optional[str] = None
    url: Optional[str] = None

    @model_validator(mode="after")
    def _has_body(self) -> "SocialPost":
        if not (self.title or self.text):
            raise ValueError("post needs a title or text")
        return self


class AISummary(BaseModel):
    model_config = ConfigDict(extra="allow")

    summary: str = Field(..., min_length=1)
    title: Optional[str] = None


_SCHEMAS: Dict[ContentType, TypeAdapter] = {
    ContentType.NEWS: TypeAdapter(List[Article]),
    ContentType.FUNDING: TypeAdapter(List[Article]),
    ContentType.EVENTS: TypeAdapter(List[EventListing]),
    ContentType.SOCIAL: TypeAdapter(List[SocialPost]),
    ContentType.AI_SUMMARY: TypeAdapter(Union[AISummary, str]),
}


def validate_payload(content_type: ContentType, payload: Any) -> Any:
    """Check a payload against its content type schema.

    The payload is returned untouched; validation never reshapes what gets
    cached.

    Raises:
        SchemaValidationError: If the payload does not match the schema
    """
    content_type = ContentType(content_type)
    if content_type is ContentType.AI_SUMMARY and isinstance(payload, str) and not payload.strip():
        raise SchemaValidationError(content_type.value, "summary is empty")
    try:
        _SCHEMAS[content_type].validate_python(payload)
    except ValidationError as e:
        raise SchemaValidationError(content_type.value, str(e.errors()[0]["msg"])) from e
    return payload
