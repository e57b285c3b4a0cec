"""
Generative text client used by the enrichment stage
"""

import logging
from typing import Optional

from openai import AsyncOpenAI

from core.config import settings
from core.exceptions import ConfigurationError, EnrichmentError
from core.retry import with_timeout
from models.place import NormalizedPlace

logger = logging.getLogger(__name__)

DEFAULT_SUMMARY = "공공데이터 기반 상가 정보입니다."

SUMMARY_SYSTEM_PROMPT = "당신은 지역 상가 정보를 요약하는 전문가입니다. 간결하고 정확한 정보를 제공하세요."
FAQ_SYSTEM_PROMPT = "당신은 지역 상가 정보에 대한 FAQ를 생성하는 전문가입니다. 자주 묻는 질문 3개를 생성하세요."


def describe_place(place: NormalizedPlace) -> str:
    return (
        f"상호: {place.name}\n"
        f"주소: {place.addr_road or place.addr_jibun or ''}\n"
        f"업종: {place.category or ''}"
    )


class GenerativeTextClient:
    """
    Summary and FAQ generation over the OpenAI chat API.

    Construction fails with ConfigurationError when no API key is
    configured; the enrichment stage treats that as "stage disabled".
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[AsyncOpenAI] = None
    ):
        api_key = api_key or settings.OPENAI_API_KEY
        if client is None and not api_key:
            raise ConfigurationError(
                "OPENAI_API_KEY is not configured",
                context={"setting": "OPENAI_API_KEY"}
            )
        self.model = model or settings.OPENAI_MODEL
        self.timeout = timeout or settings.OPENAI_TIMEOUT_SECONDS
        self._client = client or AsyncOpenAI(api_key=api_key, max_retries=0)

    async def _complete(self, system_prompt: str, user_prompt: str, max_tokens: int, purpose: str) -> str:
        response = await with_timeout(
            self._client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                max_tokens=max_tokens,
            ),
            self.timeout,
            f"openai {purpose}"
        )
        content = response.choices[0].message.content if response.choices else None
        if not content or not content.strip():
            raise EnrichmentError(
                f"Empty {purpose} returned by {self.model}",
                context={"model": self.model, "purpose": purpose}
            )
        return content.strip()

    async def summarize(self, place: NormalizedPlace) -> str:
        return await self._complete(
            SUMMARY_SYSTEM_PROMPT,
            f"다음 상가 정보를 요약해주세요:\n{describe_place(place)}",
            settings.SUMMARY_MAX_TOKENS,
            "summary"
        )

    async def generate_faq(self, place: NormalizedPlace) -> str:
        return await self._complete(
            FAQ_SYSTEM_PROMPT,
            f"다음 상가 정보에 대한 FAQ를 생성해주세요:\n{describe_place(place)}",
            settings.FAQ_MAX_TOKENS,
            "faq"
        )
