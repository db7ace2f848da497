"""Repair for tool-call arguments that some backends emit twice in a row."""

from __future__ import annotations

import json


def fix_duplicated_arguments(raw: str) -> str:
    """
    Undo the "argument string concatenated with itself" failure mode.

    Valid JSON is returned unchanged. Otherwise the string is split exactly in
    half by character count and the first half is returned when both halves
    are identical. Any other malformation is left alone so genuine errors
    still surface when the arguments are parsed.
    """
    try:
        json.loads(raw)
        return raw
    except json.JSONDecodeError:
        pass

    half = len(raw) // 2
    first, second = raw[:half], raw[half:]
    if first == second:
        return first
    return raw
