"""Concrete adapters for the maintenance providers."""
