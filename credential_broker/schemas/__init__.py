"""Pydantic schemas exchanged across the broker's service boundary."""
