"""Text-generation client (Gemini gateway).

The gateway takes a form POST of {prompt, token} and answers
{success, answer} or {success: false, error|message}. Answers may wrap the
useful text in <prompt>...</prompt> tags; the first tagged block wins.
"""

import re

from automation.clients.base import HttpProvider, TextGenerator
from automation.config import get_gemini_settings, require
from automation.exceptions import GenerationFailed, ProviderError
from automation.utils.logging import get_logger

log = get_logger(__name__)

PROMPT_TAG_PATTERN = re.compile(r"<prompt>(.*?)</prompt>", re.DOTALL)


def extract_answer_text(answer: str) -> str:
    """Return the first <prompt> block of answer, or the whole answer stripped."""
    match = PROMPT_TAG_PATTERN.search(answer)
    return (match.group(1) if match else answer).strip()


class GeminiClient(HttpProvider, TextGenerator):
    """Generates motion prompts and voice scripts."""

    name = "gemini"

    def __init__(self, api_url: str | None = None, api_key: str | None = None) -> None:
        default_url, default_key = get_gemini_settings()
        self.api_url = api_url or default_url
        super().__init__(self.api_url or "", max_rate=5, time_period=1)
        self.api_key = api_key or default_key

    async def generate(self, prompt: str) -> str:
        api_url = require(self.api_url, "GEMINI_API_URL")
        token = require(self.api_key, "GEMINI_API_KEY")

        try:
            data = await self._request("POST", api_url, data={"prompt": prompt, "token": token})
        except ProviderError as e:
            raise GenerationFailed(f"Text generation request failed: {e}") from e

        if not isinstance(data, dict) or not data.get("success"):
            error = (data.get("error") or data.get("message")) if isinstance(data, dict) else None
            raise GenerationFailed(f"Text generation failed: {error or 'unknown error'}")

        answer = data.get("answer")
        text = extract_answer_text(answer) if isinstance(answer, str) else ""
        if not text:
            raise GenerationFailed("Text generation returned an empty answer")

        log.info("text_generated", prompt_length=len(prompt), text_length=len(text))
        return text
