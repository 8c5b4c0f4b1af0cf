"""
Renderer abstraction.

A renderer accepts a storyboard and brand kit, starts an asynchronous
render and reports progress when polled.

- HttpRenderer: remote render service over HTTP
- MockRenderer: in-process renderer that advances a fixed step per poll
"""

import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import requests
import structlog
from pydantic import BaseModel

from config import settings
from errors import ExternalServiceError
from models import new_id

logger = structlog.get_logger()

SERVICE_NAME = "renderer"


class RenderHandle(BaseModel):
    """Opaque reference to a render running on the renderer"""
    renderId: str
    bucketName: Optional[str] = None


class RenderProgress(BaseModel):
    """
    One progress observation.

    ``overall_progress`` is a fraction in [0, 1]. ``fatal_errors`` lists the
    renderer's error messages, first one first.
    """
    overall_progress: float
    done: bool = False
    fatal_error: bool = False
    fatal_errors: List[str] = []

    @property
    def percent(self) -> int:
        return max(0, min(100, round(self.overall_progress * 100)))

    @property
    def first_error(self) -> str:
        return self.fatal_errors[0] if self.fatal_errors else "Unknown render error"


class Renderer(ABC):
    """
    Abstract interface for the video renderer.
    """

    @abstractmethod
    def submit_render(self, storyboard: Dict[str, Any], brand_kit: Dict[str, Any], format: str) -> RenderHandle:
        """Start a render and return its handle"""
        pass

    @abstractmethod
    def poll_progress(self, handle: RenderHandle) -> RenderProgress:
        """Report the current progress of a render"""
        pass


class HttpRenderer(Renderer):
    """
    Remote render service.

    ``POST /renders`` returns ``{"renderId", "bucketName"}``;
    ``GET /renders/{renderId}`` returns ``{"overallProgress", "done",
    "fatalErrorEncountered", "errors": [{"message"}]}``.
    """

    def __init__(self, base_url: Optional[str] = None, timeout: Optional[float] = None):
        self.base_url = (base_url or settings.RENDERER_URL).rstrip("/")
        if not self.base_url:
            raise ValueError("RENDERER_URL is required when MOCK_RENDERS=false")
        self.timeout = timeout or settings.EXTERNAL_TIMEOUT
        self.session = requests.Session()

    def _request(self, method: str, path: str, operation: str, **kwargs) -> Dict[str, Any]:
        try:
            response = self.session.request(
                method,
                f"{self.base_url}{path}",
                timeout=self.timeout,
                **kwargs,
            )
            response.raise_for_status()
            return response.json()
        except requests.RequestException as e:
            timeout = isinstance(e, requests.Timeout)
            logger.warning("renderer_request_failed", operation=operation, timeout=timeout, error=str(e))
            raise ExternalServiceError(SERVICE_NAME, f"Renderer {operation} failed: {e}", timeout=timeout) from e

    def submit_render(self, storyboard, brand_kit, format):
        data = self._request(
            "POST",
            "/renders",
            "submit_render",
            json={
                "composition": "Master",
                "codec": "h264",
                "format": format,
                "inputProps": {"storyboard": storyboard, "brandKit": brand_kit},
            },
        )
        return RenderHandle(renderId=data["renderId"], bucketName=data.get("bucketName"))

    def poll_progress(self, handle):
        params = {"bucketName": handle.bucketName} if handle.bucketName else None
        data = self._request("GET", f"/renders/{handle.renderId}", "poll_progress", params=params)
        return RenderProgress(
            overall_progress=float(data.get("overallProgress", 0)),
            done=bool(data.get("done", False)),
            fatal_error=bool(data.get("fatalErrorEncountered", False)),
            fatal_errors=[err.get("message", "") for err in data.get("errors") or []],
        )


class MockRenderer(Renderer):
    """
    In-process renderer that advances ``step`` per poll until done.
    """

    def __init__(self, step: float = 0.25):
        self.step = step
        self._progress: Dict[str, float] = {}
        self._lock = threading.Lock()

    def submit_render(self, storyboard, brand_kit, format):
        handle = RenderHandle(renderId=new_id(), bucketName="mock-renders")
        with self._lock:
            self._progress[handle.renderId] = 0.0
        logger.info("mock_render_submitted", render_id=handle.renderId, format=format)
        return handle

    def poll_progress(self, handle):
        with self._lock:
            current = min(1.0, self._progress.get(handle.renderId, 0.0) + self.step)
            self._progress[handle.renderId] = current
        return RenderProgress(overall_progress=current, done=current >= 1.0)


_mock_renderer: Optional[MockRenderer] = None


def get_renderer() -> Renderer:
    """
    Factory for the configured renderer.
    """
    global _mock_renderer
    if settings.MOCK_RENDERS:
        if _mock_renderer is None:
            _mock_renderer = MockRenderer()
        return _mock_renderer
    return HttpRenderer()
