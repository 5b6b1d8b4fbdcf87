"""Database helpers for the reference SQL store."""

from .session import Base, create_tables, make_engine, make_session_factory

__all__ = ["Base", "create_tables", "make_engine", "make_session_factory"]
