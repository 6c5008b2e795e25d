"""Utility helpers."""

from godelpy.utils.helpers import Timer, format_speedup
