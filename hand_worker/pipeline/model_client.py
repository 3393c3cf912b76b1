"""
Model client interface and the OpenAI implementation.

The orchestrator only sees ModelClient.generate(): a request describing
one window of media plus instructions goes in, raw response text comes
out. Validation of that text happens in response.py.
"""

import asyncio
import base64
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional, Tuple

import openai
from openai import AsyncOpenAI

from .media import sample_frames
from .util import format_timestamp
from ..errors import AICallError, AuthorizationError

logger = logging.getLogger("hand_worker")


@dataclass
class ModelRequest:
    """One model call over a window of media"""
    prompt: str
    media_uri: str
    start_seconds: float
    end_seconds: float
    model: str
    phase: str  # "phase1" or "phase2"
    window_index: int = 0


class ModelClient(ABC):
    """Opaque text/video in, JSON text out"""

    @abstractmethod
    async def generate(self, request: ModelRequest) -> str:
        """
        Run one model call.

        Raises:
            AuthorizationError: credentials rejected (never retried)
            AICallError: any other failure talking to the model
        """
        pass

    async def close(self) -> None:
        pass


class OpenAIModelClient(ModelClient):
    """
    Sends sampled frames of the window to the OpenAI chat completions API.

    Each frame is preceded by its window-relative timestamp so the model can
    report hand boundaries on the clip's own clock.
    """

    def __init__(self, frame_interval_sec: float = 10.0, max_frames: int = 180,
                 client: Optional[AsyncOpenAI] = None):
        self.frame_interval_sec = frame_interval_sec
        self.max_frames = max_frames
        self.client = client or AsyncOpenAI()

    def _build_content(self, prompt: str, frames: List[Tuple[float, bytes]]) -> list:
        content = [{"type": "text", "text": prompt}]
        for offset, jpeg in frames:
            content.append({"type": "text", "text": f"[{format_timestamp(offset)}]"})
            content.append({
                "type": "image_url",
                "image_url": {
                    "url": f"data:image/jpeg;base64,{base64.b64encode(jpeg).decode('utf-8')}",
                    "detail": "low"
                }
            })
        return content

    async def generate(self, request: ModelRequest) -> str:
        frames = await asyncio.to_thread(
            sample_frames,
            request.media_uri,
            request.start_seconds,
            request.end_seconds,
            self.frame_interval_sec,
            self.max_frames,
        )
        if not frames:
            raise AICallError(
                f"No frames could be sampled for window {request.window_index} "
                f"({request.start_seconds:.0f}s-{request.end_seconds:.0f}s)"
            )

        logger.debug(
            f"{request.phase} call for window {request.window_index}: "
            f"{len(frames)} frames, model {request.model}"
        )

        try:
            response = await self.client.chat.completions.create(
                model=request.model,
                messages=[{"role": "user", "content": self._build_content(request.prompt, frames)}],
                response_format={"type": "json_object"},
                temperature=0.2
            )
        except (openai.AuthenticationError, openai.PermissionDeniedError) as e:
            raise AuthorizationError(f"OpenAI rejected credentials: {e}") from e
        except openai.APIError as e:
            raise AICallError(f"OpenAI call failed: {e}") from e

        content = response.choices[0].message.content
        if content is None:
            raise AICallError("OpenAI returned an empty message")
        return content

    async def close(self) -> None:
        await self.client.close()
