"""
Utility functions for comparing listing field values.
"""
import html
import re
from typing import Iterable, Optional

from listing_sync.core.enums import PRICE_EPSILON

_WHITESPACE = re.compile(r"\s+")


def normalize_text(value: Optional[str]) -> str:
    """
    Normalize free text for comparison: decode HTML entities (the API
    returns titles like ``Tom&#39;s``), collapse whitespace runs, trim.
    """
    if not value:
        return ""
    decoded = html.unescape(value)
    return _WHITESPACE.sub(" ", decoded).strip()


def tags_equal(left: Iterable[str], right: Iterable[str]) -> bool:
    """Order-independent tag comparison after normalization"""
    return {normalize_text(t) for t in left} == {normalize_text(t) for t in right}


def prices_equal(left: float, right: float, epsilon: float = PRICE_EPSILON) -> bool:
    return abs(left - right) <= epsilon


def format_price(value: float) -> str:
    return f"{value:.2f}"
