"""Concrete adapters for the store and transport boundaries."""
