"""Database package for giving_sync: schema and connector utilities."""

from .connector import create_schema, get_engine, upsert
from .schema import metadata

__all__ = ["create_schema", "get_engine", "upsert", "metadata"]
