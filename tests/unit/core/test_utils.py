# Field comparison helpers
import pytest

from listing_sync.core.utils import format_price, normalize_text, prices_equal, tags_equal


@pytest.mark.parametrize("value, expected", [
    ("Tom&#39;s  Mug ", "Tom's Mug"),
    ("line\n\tbreak", "line break"),
    ("", ""),
    (None, ""),
])
def test_normalize_text(value, expected):
    assert normalize_text(value) == expected


def test_tags_equal_ignores_order_and_spacing():
    assert tags_equal(["mug", "ceramic "], ["ceramic", "mug"])
    assert not tags_equal(["mug"], ["mug", "cup"])


def test_prices_equal_within_a_cent():
    assert prices_equal(10.0, 10.005)
    assert not prices_equal(10.0, 10.02)


def test_format_price():
    assert format_price(12.5) == "12.50"
