"""
Generation Backend: panel image generation providers

A backend turns a job's input into a result payload, or raises
GenerationError. The worker treats it as an opaque, possibly slow call.
"""

import asyncio
import random
import uuid
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Optional

import structlog

from comicstudio.core.config import settings
from comicstudio.core.errors import GenerationError

logger = structlog.get_logger()

ProgressCallback = Callable[[int], Awaitable[Any]]


class GenerationBackend(ABC):
    """Produces ``{"image_url", "thumbnail_url", "prompt_used", ...}`` for a job input"""

    name: str = "abstract"

    @abstractmethod
    async def generate(
        self,
        job_input: dict[str, Any],
        on_progress: Optional[ProgressCallback] = None,
    ) -> dict[str, Any]:
        ...


class MockGenerationBackend(GenerationBackend):
    """Stand-in provider: waits, then returns placeholder image references."""

    name = "mock"

    def __init__(
        self,
        delay_seconds: Optional[float] = None,
        steps: Optional[int] = None,
        failure_rate: Optional[float] = None,
    ):
        self.delay_seconds = (
            settings.generation_delay_seconds if delay_seconds is None else delay_seconds
        )
        self.steps = max(1, settings.generation_progress_steps if steps is None else steps)
        self.failure_rate = (
            settings.mock_failure_rate if failure_rate is None else failure_rate
        )

    async def generate(
        self,
        job_input: dict[str, Any],
        on_progress: Optional[ProgressCallback] = None,
    ) -> dict[str, Any]:
        step_delay = self.delay_seconds / self.steps
        for step in range(1, self.steps + 1):
            await asyncio.sleep(step_delay)  # Simulate API delay
            if on_progress and step < self.steps:
                await on_progress(10 + int(80 * step / self.steps))

        if self.failure_rate and random.random() < self.failure_rate:
            raise GenerationError("Mock generation failed")

        image_key = uuid.uuid4().hex[:12]
        width, height = _get_size(_style(job_input).get("aspect_ratio"))
        return {
            "image_url": f"/mock-images/panel-{image_key}.jpg",
            "thumbnail_url": f"/mock-images/thumb-{image_key}.jpg",
            "width": width,
            "height": height,
            "prompt_used": job_input.get("scene_description") or "Generated image",
            "generation_metadata": {"provider": self.name},
        }


def get_generation_backend() -> GenerationBackend:
    """Backend selected by ``settings.generation_provider``"""
    if settings.generation_provider == "mock":
        return MockGenerationBackend()
    raise ValueError(f"Unknown generation provider: {settings.generation_provider}")


def _style(job_input: dict[str, Any]) -> dict[str, Any]:
    style = job_input.get("style")
    return style if isinstance(style, dict) else {}


def _get_size(aspect_ratio: Optional[str]) -> tuple[int, int]:
    """Get (width, height) for aspect ratio"""
    sizes = {
        "1:1": (1024, 1024),
        "3:4": (768, 1024),
        "4:3": (1024, 768),
        "16:9": (1024, 576),
        "9:16": (576, 1024),
    }
    return sizes.get(aspect_ratio or "16:9", (1024, 576))
