"""
Partition sources for the by-partition fetch.

A partition is an administrative unit (10-digit dong code). The initial
fetch asks for a window of partitions starting at its cursor; an empty
window means every partition has been visited.
"""

from abc import ABC, abstractmethod
from typing import List, Optional, Sequence
import logging

import httpx

from core.config import settings
from core.exceptions import MalformedResponseError
from core.retry import with_timeout

logger = logging.getLogger(__name__)


# Major administrative units (sido(2) + sigungu(3) + dong(5))
DEFAULT_PARTITIONS = (
    # 서울특별시 강남구
    "1168010100", "1168010200", "1168010300", "1168010400", "1168010500",
    "1168010600", "1168010700", "1168010800", "1168010900", "1168011000",
    "1168011100", "1168011200", "1168011300", "1168011400", "1168011500",
    # 부산광역시 중구
    "2623010100", "2623010200", "2623010300", "2623010400", "2623010500",
    # 대구광역시 중구
    "2723010100", "2723010200", "2723010300", "2723010400", "2723010500",
    # 인천광역시 중구
    "2823010100", "2823010200", "2823010300", "2823010400", "2823010500",
    # 광주광역시 동구
    "2923010100", "2923010200", "2923010300", "2923010400", "2923010500",
    # 대전광역시 동구
    "3023010100", "3023010200", "3023010300", "3023010400", "3023010500",
    # 울산광역시 중구
    "3123010100", "3123010200", "3123010300", "3123010400", "3123010500",
    # 경기도 수원시
    "4113010100", "4113010200", "4113010300", "4113010400", "4113010500",
    "4113110100", "4113110200", "4113110300", "4113110400", "4113110500",
    # 강원도 춘천시
    "4211010100", "4211010200", "4211010300", "4211010400", "4211010500",
    # 충청북도 청주시
    "4311010100", "4311010200", "4311010300", "4311010400", "4311010500",
    # 충청남도 천안시
    "4413010100", "4413010200", "4413010300", "4413010400", "4413010500",
    # 전라북도 전주시
    "4511010100", "4511010200", "4511010300", "4511010400", "4511010500",
    # 전라남도 목포시
    "4611010100", "4611010200", "4611010300", "4611010400", "4611010500",
    # 경상북도 포항시
    "4711010100", "4711010200", "4711010300", "4711010400", "4711010500",
    # 경상남도 창원시
    "4812010100", "4812010200", "4812010300", "4812010400", "4812010500",
    # 제주특별자치도 제주시
    "5011010100", "5011010200", "5011010300", "5011010400", "5011010500",
)


class PartitionSource(ABC):
    """Lists partitions in a stable order."""

    @abstractmethod
    async def list_partitions(self, offset: int, count: int) -> List[str]:
        """Return at most `count` partitions starting at `offset`."""


class StaticPartitionSource(PartitionSource):
    def __init__(self, partitions: Sequence[str] = DEFAULT_PARTITIONS):
        self.partitions = list(partitions)

    async def list_partitions(self, offset: int, count: int) -> List[str]:
        window = self.partitions[offset:offset + count]
        if not window:
            logger.info(f"No partitions left at offset {offset} ({len(self.partitions)} total)")
        return window


class ApiPartitionSource(PartitionSource):
    """
    Partition list served over HTTP.

    The endpoint must return either a JSON list of codes or
    {"items": [{"code": ...}, ...]}. The list is fetched once per instance.
    """

    def __init__(
        self,
        url: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0
    ):
        self.url = url
        self.client = client
        self.timeout = timeout
        self._partitions: Optional[List[str]] = None

    async def _load(self) -> List[str]:
        if self._partitions is not None:
            return self._partitions

        if self.client is not None:
            response = await with_timeout(self.client.get(self.url), self.timeout, "partition list")
        else:
            async with httpx.AsyncClient() as client:
                response = await with_timeout(client.get(self.url), self.timeout, "partition list")
        response.raise_for_status()

        try:
            data = response.json()
        except ValueError as e:
            raise MalformedResponseError(
                "Partition list is not JSON",
                context={"api_url": self.url},
                original_exception=e
            )

        items = data.get("items", []) if isinstance(data, dict) else data
        partitions = []
        for item in items or []:
            code = item.get("code") if isinstance(item, dict) else item
            if code:
                partitions.append(str(code))

        self._partitions = partitions
        logger.info(f"Loaded {len(partitions)} partitions from {self.url}")
        return partitions

    async def list_partitions(self, offset: int, count: int) -> List[str]:
        partitions = await self._load()
        return partitions[offset:offset + count]


def build_partition_source() -> PartitionSource:
    if settings.PARTITION_SOURCE == "api" and settings.PARTITION_LIST_URL:
        return ApiPartitionSource(settings.PARTITION_LIST_URL)
    return StaticPartitionSource()
