"""Relational persistence for the escalation store protocol."""

from .sqlalchemy_store import SqlAlchemyEmergencyStore, create_store_engine

__all__ = ["SqlAlchemyEmergencyStore", "create_store_engine"]
