import re
from pipeline.slug import (
    fallback_slug,
    generate_slug,
    generate_unique_slug,
    slugify,
    to_base36,
    unique_suffix,
)


def test_generate_slug_from_name_and_locality():
    assert generate_slug("Test Shop", "Euljiro-dong") == "test-shop-euljiro-dong"


def test_generate_slug_keeps_hangul_and_drops_punctuation():
    assert generate_slug("스타벅스 (을지로점)!", "을지로동") == "스타벅스-을지로점-을지로동"


def test_generate_slug_without_locality():
    assert generate_slug("Cafe  Latte") == "cafe-latte"


def test_slugify_collapses_hyphens():
    assert slugify("  a -- b  ") == "a-b"


def test_to_base36():
    assert to_base36(0) == "0"
    assert to_base36(35) == "z"
    assert to_base36(36) == "10"


def test_unique_suffix_shape():
    suffix = unique_suffix()
    assert len(suffix) == 8
    assert re.fullmatch(r"[0-9a-z]{8}", suffix)


def test_unique_slug_extends_base():
    slug = generate_unique_slug("test-shop-euljiro-dong")
    assert slug.startswith("test-shop-euljiro-dong-")
    assert slug != generate_unique_slug("test-shop-euljiro-dong")


def test_fallback_slug_uses_place_id():
    assert fallback_slug("0b6f-42") == "place-0b6f-42"
