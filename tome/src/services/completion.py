"""
Tome - Completion Service Adapter
===================================
Wraps the Gemini chat model (``ChatGoogleGenerativeAI`` via LangChain)
behind one coroutine::

    text = await completion.complete(system_prompt, history, prompt)

``history`` is an ordered list of ``{"role", "content"}`` pairs; the
current user turn (*prompt*) is appended unless it already is the tail.

Without ``GOOGLE_API_KEY`` the adapter answers with a mock reply so the
rest of the pipeline can be exercised locally.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Protocol, runtime_checkable

from tome.config.prompt_templates import MOCK_RESPONSE_TEMPLATE
from tome.config.settings import settings
from tome.src.core.errors import CompletionError
from tome.src.core.models import ChatMessage
from tome.src.utils.logger import get_logger

logger = get_logger(__name__)


@runtime_checkable
class ChatModel(Protocol):
    """Anything exposing LangChain's async ``ainvoke``."""

    async def ainvoke(self, input: object) -> object: ...


def with_current_turn(history: Sequence[ChatMessage], prompt: str) -> list[ChatMessage]:
    """Return a copy of *history* whose last entry is the user *prompt*."""
    formatted = [{"role": m["role"], "content": m["content"]} for m in history]
    if not formatted or formatted[-1]["content"] != prompt:
        formatted.append({"role": "user", "content": prompt})
    return formatted


def _as_text(response: object) -> str:
    """Flatten a LangChain message (string or content-part list) into text."""
    content = response.content if hasattr(response, "content") else response
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = [part if isinstance(part, str) else str(part.get("text", "")) for part in content if isinstance(part, (str, dict))]
        return "".join(parts)
    return str(content)


class CompletionService:
    """
    Parameters
    ----------
    llm
        A LangChain chat model.  ``None`` enables mock mode.
    """

    __slots__ = ("_llm",)

    def __init__(self, llm: ChatModel | None = None) -> None:
        self._llm = llm


    @property
    def is_mock(self) -> bool:
        return self._llm is None


    async def complete(self, system_prompt: str, history: Sequence[ChatMessage], prompt: str) -> str:
        """
        Run one completion request.

        Raises
        ------
        CompletionError
            If the model call fails.
        """
        turns = with_current_turn(history, prompt)

        if self._llm is None:
            logger.debug("[LLM] Mock mode — %d turn(s).", len(turns))
            return MOCK_RESPONSE_TEMPLATE.format(prompt=prompt)

        from langchain_core.messages import AIMessage, HumanMessage, SystemMessage

        messages: list[object] = [SystemMessage(content=system_prompt)]
        for turn in turns:
            if turn["role"] == "assistant":
                messages.append(AIMessage(content=turn["content"]))
            else:
                messages.append(HumanMessage(content=turn["content"]))

        try:
            response = await self._llm.ainvoke(messages)
        except Exception as exc:
            logger.exception("[LLM] Completion call failed.")
            raise CompletionError("Completion service call failed") from exc

        return _as_text(response).strip()


def create_completion_service(temperature: float | None = None) -> CompletionService:
    """Build the service from settings; mock mode without ``GOOGLE_API_KEY``."""
    api_key = settings.google_api_key
    if api_key is None:
        logger.warning("GOOGLE_API_KEY not set — completions run in mock mode.")
        return CompletionService()

    from langchain_google_genai import ChatGoogleGenerativeAI

    resolved_temperature = settings.LLM_TEMPERATURE if temperature is None else temperature
    llm = ChatGoogleGenerativeAI(model=settings.LLM_MODEL, temperature=resolved_temperature, max_output_tokens=settings.LLM_MAX_TOKENS, google_api_key=api_key)
    logger.info("LLM initialised: %s (temperature=%.1f)", settings.LLM_MODEL, resolved_temperature)
    return CompletionService(llm)
