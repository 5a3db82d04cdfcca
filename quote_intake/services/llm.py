# --------------------------- quote_intake/services/llm.py ----------------------------
"""
Quote Intake · LLM Completion Client

OVERVIEW:
Thin wrapper around ChatOpenAI that every agent uses for structured prompts.
Calls are scheduled through the ``llm`` rate limiter, responses are cleaned of
markdown fences and parsed as JSON when a structured answer is expected.

DEPENDENCIES:
- Environment variables: OPENAI_API_KEY, LLM_MODEL
- langchain_openai.ChatOpenAI, langchain_core.messages.HumanMessage
"""

# ─── Standard-library imports ───────────────────────────────────────────
import json
import logging
from typing import Any, Dict, Optional

# ─── Environment setup ─────────────────────────────────────────────────
from dotenv import load_dotenv
load_dotenv()

# ─── Third-party imports ────────────────────────────────────────────────
from langchain_openai import ChatOpenAI
from langchain_core.messages import HumanMessage

from quote_intake.config import settings
from quote_intake.errors import ExternalDependencyError
from quote_intake.services.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)


def strip_code_fences(content: str) -> str:
    """Remove ```json ... ``` wrappers the model sometimes adds."""
    content = content.strip()
    if content.startswith("```"):
        content = content.strip("`").strip()
        if content.lower().startswith("json"):
            content = content[4:].strip()
    return content


class LLMClient:
    """
    Rate-limited chat completion client.

    ARGS:
        limiter: RateLimiter for the ``llm`` tier
        model: OpenAI model name (defaults to LLM_MODEL)
        temperature: sampling temperature
        llm: pre-built chat model, mainly for tests
    """

    def __init__(self, limiter: RateLimiter, model: Optional[str] = None,
                 temperature: float = 0.1, llm: Any = None):
        self.limiter = limiter
        self.model = model or settings.LLM_MODEL
        self.temperature = temperature
        self._llm = llm

    @property
    def llm(self) -> ChatOpenAI:
        # Built lazily: ChatOpenAI refuses to construct without an API key
        if self._llm is None:
            self._llm = ChatOpenAI(model=self.model, temperature=self.temperature)
        return self._llm

    async def complete(self, prompt: str, priority: int = 5) -> str:
        """
        Send a single-message prompt and return the text answer.

        RAISES:
            ExternalDependencyError: the completion call failed
        """
        try:
            response = await self.limiter.schedule(
                lambda: self.llm.ainvoke([HumanMessage(content=prompt)]),
                priority=priority,
            )
        except Exception as e:
            logger.error(f"LLM completion failed: {e}")
            raise ExternalDependencyError("llm", "completion failed", cause=e)
        return response.content if hasattr(response, "content") else str(response)

    async def complete_json(self, prompt: str, priority: int = 5) -> Dict[str, Any]:
        """
        Send a prompt that asks for a JSON object and parse the answer.

        RAISES:
            ExternalDependencyError: the call failed or the answer is not a JSON object
        """
        content = strip_code_fences(await self.complete(prompt, priority=priority))
        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            logger.error(f"LLM returned invalid JSON: {e}")
            raise ExternalDependencyError("llm", f"invalid JSON response: {e}", cause=e)
        if not isinstance(data, dict):
            raise ExternalDependencyError("llm", "expected a JSON object")
        return data
