"""Input checks run before any mutation reaches the store."""

from __future__ import annotations

from typing import Any, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from korum_sync.core.errors import ValidationError
from korum_sync.core.settings import Settings, settings
from korum_sync.schemas.korum import KorumCreate
from korum_sync.schemas.post import PostCreate

ModelT = TypeVar("ModelT", bound=BaseModel)


def require_text(value: str | None, field_name: str, minimum: int, maximum: int) -> str:
    """Strip ``value`` and check its length; returns the stripped text."""
    text = (value or "").strip()
    if not text:
        raise ValidationError(f"{field_name.replace('_', ' ').capitalize()} must not be empty", field_name)
    if len(text) < minimum:
        raise ValidationError(f"{field_name.replace('_', ' ').capitalize()} must be at least {minimum} characters", field_name)
    if len(text) > maximum:
        raise ValidationError(f"{field_name.replace('_', ' ').capitalize()} must be at most {maximum} characters", field_name)
    return text


def parse_input(schema: type[ModelT], data: ModelT | dict[str, Any]) -> ModelT:
    """Coerce raw input into ``schema``, reporting the first bad field."""
    if isinstance(data, schema):
        return data
    try:
        return schema.model_validate(data)
    except PydanticValidationError as exc:
        error = exc.errors()[0]
        field_name = ".".join(str(part) for part in error["loc"]) or None
        raise ValidationError(error["msg"], field_name=field_name) from exc


def validate_post(data: PostCreate | dict[str, Any], config: Settings = settings) -> PostCreate:
    post = parse_input(PostCreate, data)
    title = require_text(post.title, "title", config.post_title_min, config.post_title_max)
    content = require_text(post.content, "content", config.post_content_min, config.post_content_max)
    if len(post.tags) > config.post_max_tags:
        raise ValidationError(f"At most {config.post_max_tags} tags are allowed", field_name="tags")
    return post.model_copy(update={"title": title, "content": content})


def validate_comment(content: str, config: Settings = settings) -> str:
    return require_text(content, "content", 1, config.comment_max)


def validate_message(content: str, config: Settings = settings) -> str:
    return require_text(content, "content", 1, config.message_max)


def validate_korum(data: KorumCreate | dict[str, Any], config: Settings = settings) -> KorumCreate:
    korum = parse_input(KorumCreate, data)
    name = require_text(korum.name, "name", config.korum_name_min, config.korum_name_max)
    description = require_text(
        korum.description, "description", config.korum_description_min, config.korum_description_max
    )
    return korum.model_copy(update={"name": name, "description": description})
