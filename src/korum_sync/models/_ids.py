"""Identifier helpers shared by the ORM models."""

import uuid


def new_id() -> str:
    """Return a random UUID string used as a primary key."""
    return str(uuid.uuid4())
