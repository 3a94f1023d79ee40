"""Utility helpers for trackgate."""
