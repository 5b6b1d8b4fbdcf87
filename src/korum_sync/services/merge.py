"""Fail-closed conversion of store rows into typed snapshots."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from korum_sync.core.errors import SchemaMismatchError

ModelT = TypeVar("ModelT", bound=BaseModel)


def _describe(exc: PydanticValidationError) -> list[str]:
    return [
        f"{'.'.join(str(part) for part in error['loc']) or '<row>'}: {error['msg']}"
        for error in exc.errors()
    ]


def merge_row(
    schema: type[ModelT],
    row: Mapping[str, Any],
    collection: str,
    **joined: Any,
) -> ModelT:
    """Validate ``row`` plus joined fields into ``schema``.

    Raises:
        SchemaMismatchError: If a required field is missing or malformed
    """
    try:
        return schema.model_validate({**row, **joined})
    except PydanticValidationError as exc:
        raise SchemaMismatchError(
            f"Row from '{collection}' does not match {schema.__name__}",
            collection=collection,
            errors=_describe(exc),
        ) from exc
