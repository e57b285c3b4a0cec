"""
Korean address parsing into region / subregion / neighborhood
"""

import re
from dataclasses import dataclass
from typing import Optional

SIDO_NAMES = (
    "서울특별시", "부산광역시", "대구광역시", "인천광역시", "광주광역시",
    "대전광역시", "울산광역시", "세종특별자치시", "경기도", "강원특별자치도",
    "강원도", "충청북도", "충청남도", "전북특별자치도", "전라북도", "전라남도",
    "경상북도", "경상남도", "제주특별자치도",
)

_SIDO_RE = re.compile("(" + "|".join(SIDO_NAMES) + ")")
_SIGUNGU_RE = re.compile(r"([가-힣]+(?:시|군|구))(?=\s|$)")
_DONG_RE = re.compile(r"([가-힣0-9]+(?:동|읍|면|가))(?=\s|$)")


@dataclass
class ParsedAddress:
    sido: Optional[str] = None
    sigungu: Optional[str] = None
    dong: Optional[str] = None


def parse_address(address: Optional[str]) -> ParsedAddress:
    """
    Extract administrative units from a free-form address.

    >>> parse_address("서울특별시 중구 을지로동 123")
    ParsedAddress(sido='서울특별시', sigungu='중구', dong='을지로동')
    """
    if not address:
        return ParsedAddress()

    parsed = ParsedAddress()
    rest = address

    sido_match = _SIDO_RE.search(rest)
    if sido_match:
        parsed.sido = sido_match.group(1)
        rest = rest[sido_match.end():]

    sigungu_match = _SIGUNGU_RE.search(rest)
    if sigungu_match:
        parsed.sigungu = sigungu_match.group(1)
        rest = rest[sigungu_match.end():]

    dong_match = _DONG_RE.search(rest)
    if dong_match:
        parsed.dong = dong_match.group(1)

    return parsed
