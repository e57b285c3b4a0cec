from pipeline.validation import (
    is_valid_coordinate,
    parse_float,
    parse_int,
    sanitize_string,
    validate_coordinates,
)


def test_sanitize_string_strips_tags_and_escapes():
    assert sanitize_string("<b>Cafe</b> & Bar ") == "Cafe &amp; Bar"
    assert sanitize_string("   ") is None
    assert sanitize_string(None) is None
    assert sanitize_string("abcdef", max_length=3) == "abc"


def test_parse_helpers():
    assert parse_float("37.5") == 37.5
    assert parse_float("") is None
    assert parse_float("north") is None
    assert parse_int("5", default=1) == 5
    assert parse_int("x", default=1) == 1
    assert parse_int("0", default=1, minimum=1) == 1


def test_coordinates_inside_bounding_box():
    assert is_valid_coordinate(37.566, 126.978)
    assert validate_coordinates("37.566", "126.978") == (37.566, 126.978)


def test_coordinates_outside_bounding_box_are_nulled():
    assert validate_coordinates(40.0, 126.9) == (None, None)
    assert validate_coordinates(37.5, 140.0) == (None, None)
    assert validate_coordinates(None, 126.9) == (None, None)
    assert not is_valid_coordinate(None, None)
