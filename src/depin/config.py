"""Runtime configuration for control-plane and worker-node processes."""

from __future__ import annotations

import hashlib
import os
import socket
from collections.abc import Mapping

from pydantic import BaseModel, Field

from depin.models import InferenceFailurePolicy

_DEFAULT_REDIS_URL = "redis://localhost:6379/0"


class RetryPolicy(BaseModel):
    """Broker connection retry settings.

    Args:
        max_attempts: Connection attempts at startup before giving up.
        delay: Seconds between startup attempts.
        reconnect_delay: Seconds to wait before each mid-life reconnect attempt.
    """

    model_config = {"frozen": True}

    max_attempts: int = Field(default=5, ge=1)
    delay: float = Field(default=5.0, ge=0.0)
    reconnect_delay: float = Field(default=5.0, ge=0.0)

    def backoff(self, attempt: int) -> float:
        """Delay before reconnect attempt number *attempt* (1-based). Fixed for now."""
        return self.reconnect_delay


def _default_address() -> str:
    """Derived from the hostname only; the same across restarts on one host."""
    digest = hashlib.sha256(socket.gethostname().encode()).hexdigest()
    return f"0x{digest[:40]}"


class Settings(BaseModel):
    """Process settings, usually built with :meth:`from_env`.

    Args:
        redis_url: Broker connection URL.
        task_queue: Durable stream carrying assignments.
        result_queue: Durable stream carrying task results.
        registration_queue: Non-durable list carrying worker announcements.
        ledger_prefix: Key prefix of the Redis development ledger.
        node_id: Identifier this worker is dispatched to.
        node_name: Display name registered on the ledger.
        node_address: Ledger address this worker signs with.
        openai_api_key: API key for :class:`~depin.inference.OpenAIInference`.
        inference_model: Chat model used for answers.
        inference_failure_policy: Handling of inference failures.
        retry: Broker connection retry settings.
    """

    model_config = {"frozen": True}

    redis_url: str = _DEFAULT_REDIS_URL
    task_queue: str = "depin:tasks"
    result_queue: str = "depin:results"
    registration_queue: str = "depin:registration"
    ledger_prefix: str = "depin:ledger:"
    node_id: str | None = None
    node_name: str = "AI_Node"
    node_address: str = Field(default_factory=_default_address)
    openai_api_key: str | None = None
    inference_model: str = "gpt-4o"
    inference_failure_policy: InferenceFailurePolicy = InferenceFailurePolicy.SUBMIT_ERROR
    retry: RetryPolicy = Field(default_factory=RetryPolicy)

    @property
    def resolved_node_id(self) -> str:
        """``node_id`` if set, else derived from the ledger address."""
        if self.node_id:
            return self.node_id
        return f"node_{self.node_address[:8]}"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None, **overrides: object) -> Settings:
        """Build settings from environment variables.

        Keyword *overrides* win over the environment; ``None`` overrides are
        ignored so CLI options can be passed through unconditionally.
        """
        env = os.environ if environ is None else environ
        fields: dict[str, object] = {}

        mapping = {
            "DEPIN_REDIS_URL": "redis_url",
            "DEPIN_TASK_QUEUE": "task_queue",
            "DEPIN_RESULT_QUEUE": "result_queue",
            "DEPIN_REGISTRATION_QUEUE": "registration_queue",
            "DEPIN_LEDGER_PREFIX": "ledger_prefix",
            "NODE_ID": "node_id",
            "NODE_NAME": "node_name",
            "NODE_ADDRESS": "node_address",
            "OPENAI_API_KEY": "openai_api_key",
            "DEPIN_INFERENCE_MODEL": "inference_model",
            "DEPIN_INFERENCE_FAILURE_POLICY": "inference_failure_policy",
        }
        for var, field in mapping.items():
            value = env.get(var)
            if value:
                fields[field] = value

        retry: dict[str, str] = {}
        for var, field in (
            ("DEPIN_CONNECT_ATTEMPTS", "max_attempts"),
            ("DEPIN_CONNECT_DELAY", "delay"),
            ("DEPIN_RECONNECT_DELAY", "reconnect_delay"),
        ):
            value = env.get(var)
            if value:
                retry[field] = value
        if retry:
            fields["retry"] = RetryPolicy.model_validate(retry)

        fields.update({k: v for k, v in overrides.items() if v is not None})
        return cls.model_validate(fields)
