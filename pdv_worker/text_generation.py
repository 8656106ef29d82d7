import logging
import os
import threading
import time
from typing import Any, Iterable, Optional

import openai
from dotenv import load_dotenv
from openai import OpenAI
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from pdv_worker.errors import TextGenerationError
from pdv_worker.settings import settings

logger = logging.getLogger(__name__)

_TRANSIENT_ERRORS = (
    openai.APIConnectionError,
    openai.APITimeoutError,
    openai.RateLimitError,
    openai.InternalServerError,
)


class TextGenerator:
    """Capability: generate text for a prompt."""

    def generate(self, prompt: str, system_prompt: Optional[str] = None, max_tokens: int = 1024) -> str:
        raise NotImplementedError


def collect_text(output: Optional[Iterable[Any]]) -> str:
    """
    Concatenate every text segment of a Responses API output.

    With the web-search tool enabled the answer is split across several
    message items and content parts; taking only the first one truncates it.
    """
    parts = []
    for item in output or []:
        if getattr(item, "type", None) != "message":
            continue
        for content in getattr(item, "content", None) or []:
            if getattr(content, "type", None) == "output_text":
                parts.append(getattr(content, "text", "") or "")
    return "".join(parts)


class OpenAITextGenerator(TextGenerator):
    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        web_search: Optional[bool] = None,
        timeout: Optional[float] = None,
    ):
        self.model = model or settings.text_model
        self.web_search = settings.text_web_search if web_search is None else web_search
        self.timeout = timeout or settings.text_timeout_seconds
        self._api_key = api_key
        self._llm: Optional[OpenAI] = None
        self._llm_lock = threading.Lock()

    @property
    def llm(self) -> OpenAI:
        """Client built on first use, so wiring a worker needs no API key."""
        with self._llm_lock:
            if self._llm is None:
                self._llm = self._set_up_llm(self._api_key, self.timeout)
            return self._llm

    @llm.setter
    def llm(self, client) -> None:
        self._llm = client

    def _set_up_llm(self, api_key: Optional[str], timeout: float) -> OpenAI:
        load_dotenv()
        api_key = api_key or settings.openai_api_key or os.getenv("OPENAI_API_KEY")
        if not api_key:
            raise TextGenerationError("OPENAI_API_KEY is not configured")
        return OpenAI(
            api_key=api_key,
            timeout=timeout,
            max_retries=0,
        )

    @retry(
        wait=wait_exponential(multiplier=2, max=30),
        stop=stop_after_attempt(settings.text_retry_max),
        retry=retry_if_exception_type(_TRANSIENT_ERRORS),
        reraise=True,
    )
    def _create(self, prompt: str, system_prompt: Optional[str], max_tokens: int):
        kwargs = {
            "model": self.model,
            "input": prompt,
            "max_output_tokens": max_tokens,
        }
        if system_prompt:
            kwargs["instructions"] = system_prompt
        if self.web_search:
            kwargs["tools"] = [{"type": "web_search_preview"}]
        return self.llm.responses.create(**kwargs)

    def generate(self, prompt: str, system_prompt: Optional[str] = None, max_tokens: int = 1024) -> str:
        start = time.perf_counter()
        try:
            response = self._create(prompt, system_prompt, max_tokens)
        except openai.OpenAIError as e:
            raise TextGenerationError(f"Text generation failed: {e}") from e
        text = collect_text(getattr(response, "output", None))
        logger.debug(
            "text_generated model=%s chars=%d latency_ms=%.1f",
            self.model, len(text), (time.perf_counter() - start) * 1000,
        )
        return text
