"""Utility helpers for History Bridge."""
