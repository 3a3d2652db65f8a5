"""Generation provider interface and the RunwayML image-to-video client."""

import logging
import os
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import httpx

from ..errors import TerminalProviderError
from ..models import ExternalTaskHandle, GenerationConfig, ProviderTaskStatus
from .base import HTTPProviderClient

logger = logging.getLogger(__name__)


class GenerationProvider(ABC):
    """Asynchronous remote video generation: submit, then poll by task id."""

    @abstractmethod
    def submit(self, prompt: str, image_url: str, params: Dict[str, Any]) -> str:
        """Start a generation task.

        Args:
            prompt: Text prompt
            image_url: Source image (http(s) or data URI)
            params: model, ratio, duration and optional seed

        Returns:
            Opaque external task id
        """

    @abstractmethod
    def get_status(self, task_id: str) -> ExternalTaskHandle:
        """Fetch the current status of a task."""


# Runway task status -> normalised provider status
_RUNWAY_STATUS = {
    "PENDING": ProviderTaskStatus.PENDING,
    "THROTTLED": ProviderTaskStatus.PENDING,
    "RUNNING": ProviderTaskStatus.RUNNING,
    "SUCCEEDED": ProviderTaskStatus.SUCCEEDED,
    "FAILED": ProviderTaskStatus.FAILED,
    "CANCELLED": ProviderTaskStatus.FAILED,
}


class RunwayGenerationClient(HTTPProviderClient, GenerationProvider):
    """RunwayML REST client (``/image_to_video`` + ``/tasks/{id}``)."""

    provider_name = "runway"

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.dev.runwayml.com/v1",
        api_version: str = "2024-11-06",
        timeout_s: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        super().__init__(
            base_url,
            timeout_s=timeout_s,
            headers={
                "Authorization": f"Bearer {api_key}",
                "X-Runway-Version": api_version,
            },
            transport=transport,
        )

    @classmethod
    def from_config(cls, config: GenerationConfig) -> "RunwayGenerationClient":
        """Build a client reading the API key from ``config.api_key_env``."""
        api_key = os.environ.get(config.api_key_env, "")
        if not api_key:
            # Requests will be rejected with 401 and fail the job terminally
            logger.warning("%s is not set; generation requests will be unauthenticated", config.api_key_env)
        return cls(
            api_key,
            base_url=config.api_base_url,
            api_version=config.api_version,
            timeout_s=config.request_timeout_s,
        )

    def submit(self, prompt: str, image_url: str, params: Dict[str, Any]) -> str:
        body: Dict[str, Any] = {
            "promptImage": image_url,
            "promptText": prompt,
            "model": params.get("model", "gen4_turbo"),
            "ratio": params["ratio"],
            "duration": params.get("duration", 10),
        }
        if params.get("seed") is not None:
            body["seed"] = params["seed"]

        data = self._request("POST", "/image_to_video", json=body)
        task_id = data.get("id")
        if not task_id:
            raise TerminalProviderError("runway: image_to_video response has no task id")
        logger.info("Runway task %s created (model=%s, ratio=%s)", task_id, body["model"], body["ratio"])
        return task_id

    def get_status(self, task_id: str) -> ExternalTaskHandle:
        data = self._request("GET", f"/tasks/{task_id}")
        raw_status = str(data.get("status", "")).upper()
        status = _RUNWAY_STATUS.get(raw_status, ProviderTaskStatus.RUNNING)

        output = data.get("output") or []
        failure = None
        if status is ProviderTaskStatus.FAILED:
            failure = data.get("failure") or data.get("error") or f"Task {raw_status.lower()}"

        return ExternalTaskHandle(
            external_task_id=task_id,
            provider_status=status,
            output_url=output[0] if output else None,
            failure=failure,
        )
