"""Answer generation for worker nodes."""

from __future__ import annotations

import logging
from typing import Protocol, runtime_checkable

import openai
from openai import AsyncOpenAI

from depin.errors import InferenceError

_log = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a helpful assistant. Provide concise and accurate answers to questions."
)
NO_ANSWER = "No answer generated"


@runtime_checkable
class InferenceClient(Protocol):
    """Produces an answer string for a question."""

    async def answer(self, question: str) -> str: ...


class OpenAIInference:
    """Chat-completion inference through the ``openai`` SDK.

    Args:
        api_key: OpenAI API key. Required.
        model: Chat model name.
        max_tokens: Completion token limit.
        temperature: Sampling temperature.
        client: Pre-built ``AsyncOpenAI`` client, mainly for tests.
    """

    def __init__(
        self,
        api_key: str | None = None,
        *,
        model: str = "gpt-4o",
        max_tokens: int = 150,
        temperature: float = 0.7,
        client: AsyncOpenAI | None = None,
    ) -> None:
        if client is None:
            if not api_key:
                raise InferenceError("OPENAI_API_KEY is not set")
            client = AsyncOpenAI(api_key=api_key)
        self._client = client
        self._model = model
        self._max_tokens = max_tokens
        self._temperature = temperature

    @property
    def model(self) -> str:
        return self._model

    async def answer(self, question: str) -> str:
        """Ask the model *question*.

        Returns:
            The trimmed answer, or ``"No answer generated"`` for empty output.

        Raises:
            InferenceError: If the API call fails.
        """
        _log.debug("openai answer: model=%s, chars=%d", self._model, len(question))
        try:
            response = await self._client.chat.completions.create(
                model=self._model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": question},
                ],
                max_tokens=self._max_tokens,
                temperature=self._temperature,
            )
        except openai.OpenAIError as exc:
            _log.error("openai answer failed: model=%s, error=%s", self._model, exc)
            raise InferenceError(str(exc)) from exc

        if not response.choices:
            return NO_ANSWER
        content = response.choices[0].message.content
        return content.strip() if content and content.strip() else NO_ANSWER


class EchoInference:
    """Offline client that answers from a fixed table, else echoes the question."""

    def __init__(self, answers: dict[str, str] | None = None) -> None:
        self._answers = dict(answers or {})
        self.questions: list[str] = []

    async def answer(self, question: str) -> str:
        self.questions.append(question)
        return self._answers.get(question, f"echo: {question}")


def error_answer(exc: BaseException) -> str:
    """Answer text recorded on the ledger when inference fails."""
    return f"Error: Unable to generate answer - {exc}"
