"""Deterministic simulation core for the campaign game."""
