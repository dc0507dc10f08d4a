"""Utility helpers for tallycache."""
