"""
Image Processor — boundary to the AI image-processing capability.
=================================================================

The capability is opaque, slow and fallible. HttpImageProcessor makes a
single attempt per call; retrying is a step-level decision owned by the
WorkflowExecutor (retry_step), so there is no retry loop here.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Protocol

import httpx

from photoledger.config import settings
from photoledger.models.workflow import ProcessingMode, StepConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProcessingOutcome:
    success: bool
    output_uri: Optional[str] = None
    error: Optional[str] = None
    status_code: int = 0


class ImageProcessor(Protocol):
    async def process(
        self, input_uri: str, mode: ProcessingMode, config: StepConfig,
    ) -> ProcessingOutcome: ...


class HttpImageProcessor:
    """POST {processing_url}/api/v1/process with the step's mode and params."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self._base_url = (base_url or settings.processing_url).rstrip("/")
        self._api_key = api_key if api_key is not None else settings.processing_api_key
        self._timeout = timeout if timeout is not None else settings.processing_timeout

    async def process(
        self, input_uri: str, mode: ProcessingMode, config: StepConfig,
    ) -> ProcessingOutcome:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        payload = {
            "input_uri": input_uri,
            "mode": ProcessingMode(mode).value,
            "params": config.params(),
        }

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(f"{self._base_url}/api/v1/process", json=payload, headers=headers)
        except httpx.TimeoutException:
            logger.error("Processing timeout: mode=%s", payload["mode"])
            return ProcessingOutcome(success=False, error="timeout")
        except httpx.HTTPError as exc:
            logger.error("Processing network error: mode=%s error=%s", payload["mode"], exc)
            return ProcessingOutcome(success=False, error=f"network_error: {exc}")

        try:
            data = resp.json()
        except ValueError:
            data = None

        if resp.status_code == 200 and isinstance(data, dict):
            output_uri = data.get("output_uri")
            if data.get("success", True) and output_uri:
                return ProcessingOutcome(success=True, output_uri=output_uri, status_code=200)
            return ProcessingOutcome(
                success=False,
                error=data.get("error") or "no output returned",
                status_code=200,
            )

        error = (data.get("detail") or data.get("error")) if isinstance(data, dict) else None
        logger.error("Processing failed: mode=%s status=%d", payload["mode"], resp.status_code)
        return ProcessingOutcome(
            success=False,
            error=error or f"HTTP {resp.status_code}",
            status_code=resp.status_code,
        )
