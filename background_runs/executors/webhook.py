"""Executor that hands a run to an HTTP endpoint."""

import logging
from typing import Any, Dict, Optional

import httpx
from pydantic import BaseModel, Field

from background_runs.errors import PermanentRunError
from background_runs.executors.base import BaseExecutor, ExecutorRegistry, RunContext

logger = logging.getLogger(__name__)


class WebhookRunInput(BaseModel):
    """Input shape for 'webhook' runs."""

    event: str = Field(min_length=1)
    payload: Dict[str, Any] = Field(default_factory=dict)


class WebhookExecutor(BaseExecutor):
    """POSTs the run input to a configured URL and stores the JSON reply."""

    run_type = "webhook"
    input_model = WebhookRunInput

    def __init__(self, url: str, timeout: float = 120.0, transport: Optional[httpx.BaseTransport] = None):
        """Initialize executor."""
        self.url = url
        self.timeout = timeout
        self.transport = transport

    def _run(self, context: RunContext, payload: WebhookRunInput) -> Dict[str, Any]:
        context.raise_if_cancelled()
        context.heartbeat()

        body = {
            "runId": context.run_id,
            "attempt": context.attempt,
            "event": payload.event,
            "payload": payload.payload,
        }
        logger.info(f"Webhook run {context.run_id} attempt {context.attempt}: POST {self.url}")

        with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
            response = client.post(self.url, json=body)

        if 400 <= response.status_code < 500:
            raise PermanentRunError(
                f"Webhook rejected run with status {response.status_code}",
                status_code=response.status_code,
            )
        # 5xx raises HTTPStatusError, which is retried
        response.raise_for_status()

        try:
            reply = response.json()
        except ValueError:
            reply = {"body": response.text}

        return {
            "statusCode": response.status_code,
            "response": reply,
        }


def build_default_registry(settings) -> ExecutorRegistry:
    """Registry with every executor the configuration enables."""
    registry = ExecutorRegistry()
    if settings.WEBHOOK_EXECUTOR_URL:
        registry.register(
            WebhookExecutor.run_type,
            WebhookExecutor(settings.WEBHOOK_EXECUTOR_URL, timeout=settings.WEBHOOK_EXECUTOR_TIMEOUT),
        )
    else:
        logger.warning("WEBHOOK_EXECUTOR_URL not set; no executors configured")
    return registry
