import pytest
from pipeline.address import ParsedAddress, parse_address


@pytest.mark.parametrize("address,expected", [
    ("서울특별시 중구 을지로동 123", ParsedAddress("서울특별시", "중구", "을지로동")),
    ("경기도 수원시 팔달구 행궁동 1-2", ParsedAddress("경기도", "수원시", "행궁동")),
    ("부산광역시 해운대구 우동", ParsedAddress("부산광역시", "해운대구", "우동")),
    ("강남구 역삼1동", ParsedAddress(None, "강남구", "역삼1동")),
])
def test_parse_address(address, expected):
    assert parse_address(address) == expected


@pytest.mark.parametrize("address", [None, ""])
def test_parse_empty_address(address):
    assert parse_address(address) == ParsedAddress()
