from __future__ import annotations

import logging
import os
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from dotenv import load_dotenv
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI

from .models import StoredMessage
from .settings import RuntimeSettings

logger = logging.getLogger(__name__)

_DEFAULT_TIMEOUT: int = 120
_DEFAULT_MAX_RETRIES: int = 3


class SupportsInvoke(Protocol):
    """Protocol for any LangChain-compatible chat runnable."""

    def invoke(self, input: Any) -> Any:  # noqa: ANN401 - external runnable protocol.
        ...


@dataclass
class TurnResult:
    response: str
    history: list[StoredMessage] = field(default_factory=list)


class ConversationalAgent(Protocol):
    """Runs one conversational turn: prior history plus a prompt in, reply and new history out."""

    def run_turn(
        self,
        history: Sequence[StoredMessage],
        prompt: str,
        *,
        system: str | None = None,
    ) -> TurnResult: ...


def ensure_openai_api_key(repo_root: Path | None = None) -> str:
    """Load OPENAI_API_KEY from environment or .env and return it.

    Args:
        repo_root: Optional directory holding a ``.env`` file (defaults to cwd).

    Returns:
        The API key string.

    Raises:
        RuntimeError: If OPENAI_API_KEY is unavailable after all sources are checked.
    """
    repo = repo_root if repo_root is not None else Path.cwd()
    env_path = repo / ".env"
    if env_path.is_file():
        load_dotenv(env_path)

    key = os.getenv("OPENAI_API_KEY", "").strip()
    if not key:
        raise RuntimeError("OPENAI_API_KEY is required for LLM workflow steps")
    return key


def get_chat_model(
    *,
    model_name: str,
    temperature: float = 0.0,
    timeout: int = _DEFAULT_TIMEOUT,
    max_retries: int = _DEFAULT_MAX_RETRIES,
    max_completion_tokens: int | None = None,
    repo_root: Path | None = None,
) -> ChatOpenAI:
    """Construct a ChatOpenAI instance with a validated API key.

    Raises:
        ValueError: If ``model_name`` is blank.
        RuntimeError: If OPENAI_API_KEY is not available.
    """
    if not model_name or not model_name.strip():
        raise ValueError("model_name must be a non-empty string")
    ensure_openai_api_key(repo_root=repo_root)
    kwargs: dict[str, Any] = {
        "model": model_name,
        "temperature": temperature,
        "timeout": timeout,
        "max_retries": max_retries,
    }
    if max_completion_tokens is not None:
        kwargs["max_completion_tokens"] = max_completion_tokens
    return ChatOpenAI(**kwargs)


def to_langchain_messages(history: Sequence[StoredMessage]) -> list[BaseMessage]:
    messages: list[BaseMessage] = []
    for message in history:
        if message.type == "user":
            messages.append(HumanMessage(content=message.content))
        elif message.type == "assistant":
            messages.append(AIMessage(content=message.content))
        elif message.type == "system":
            messages.append(SystemMessage(content=message.content))
        # "result" entries are bookkeeping for tool/command output and are not replayed.
    return messages


def _content_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = [part.get("text", "") if isinstance(part, dict) else str(part) for part in content]
        return "".join(parts)
    return str(content)


class ChatAgent:
    """Conversational agent backed by a LangChain chat model."""

    def __init__(self, model: SupportsInvoke) -> None:
        self.model = model

    @classmethod
    def from_settings(cls, settings: RuntimeSettings, *, temperature: float = 0.0) -> "ChatAgent":
        return cls(get_chat_model(model_name=settings.llm_model, temperature=temperature))

    def run_turn(
        self,
        history: Sequence[StoredMessage],
        prompt: str,
        *,
        system: str | None = None,
    ) -> TurnResult:
        messages = to_langchain_messages(history)
        if system:
            messages.insert(0, SystemMessage(content=system))
        messages.append(HumanMessage(content=prompt))
        logger.debug("Invoking chat model with %d messages", len(messages))
        reply = self.model.invoke(messages)
        text = _content_text(getattr(reply, "content", reply))
        updated = [
            *history,
            StoredMessage(type="user", content=prompt),
            StoredMessage(type="assistant", content=text),
        ]
        return TurnResult(response=text, history=updated)


class NullAgent:
    """Agent placeholder for workflows that have no LLM configured."""

    def run_turn(
        self,
        history: Sequence[StoredMessage],
        prompt: str,
        *,
        system: str | None = None,
    ) -> TurnResult:
        raise RuntimeError("No conversational agent is configured for this workflow")
