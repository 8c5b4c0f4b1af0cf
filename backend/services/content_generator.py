"""
Content generator abstraction.

The generator turns a product URL into a storyboard, script and brand kit,
and rewrites single scenes or asset suggestions on request. Two providers
are available:

- HttpContentGenerator: remote generation service over HTTP
- MockContentGenerator: deterministic output for local development and tests

Usage:
    >>> generator = get_content_generator()
    >>> for event in generator.generate("https://example.com/p", "9:16"):
    ...     print(event)
"""

import json
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterator, List, Optional, Union
from urllib.parse import urlparse

import requests
import structlog
from pydantic import BaseModel

from config import settings
from errors import ExternalServiceError
from models import new_id

logger = structlog.get_logger()

SERVICE_NAME = "content_generator"


class GenerationProgress(BaseModel):
    """Intermediate generation event"""
    message: str
    progress: float


class GenerationResult(BaseModel):
    """Final generation event"""
    storyboard: Dict[str, Any]
    script: Dict[str, Any]
    brandKit: Dict[str, Any]


GenerationEvent = Union[GenerationProgress, GenerationResult]


class ContentGenerator(ABC):
    """
    Abstract interface for AI content generation.
    """

    @abstractmethod
    def generate(self, source_url: str, format: str, tone: Optional[str] = None) -> Iterator[GenerationEvent]:
        """
        Generate storyboard, script and brand kit for a product page.

        Yields zero or more GenerationProgress events followed by exactly
        one GenerationResult.
        """
        pass

    @abstractmethod
    def regenerate_scene(
        self,
        storyboard: Dict[str, Any],
        scene: Dict[str, Any],
        instruction: str,
        brand_kit: Dict[str, Any],
    ) -> Dict[str, Any]:
        """
        Produce a replacement for ``scene`` following ``instruction``.

        Returns:
            Scene fields (duration, onScreenText, voiceoverText,
            assetSuggestions); the scene id is preserved by the caller
        """
        pass

    @abstractmethod
    def suggest_assets(
        self,
        scene: Dict[str, Any],
        prompt: str,
        brand_kit: Dict[str, Any],
    ) -> List[Dict[str, Any]]:
        """Return asset suggestions (type, description, placeholderUrl) for a scene"""
        pass


def _translate_request_error(e: requests.RequestException, operation: str) -> ExternalServiceError:
    timeout = isinstance(e, requests.Timeout)
    logger.warning(
        "content_generator_request_failed",
        operation=operation,
        timeout=timeout,
        error=str(e),
    )
    return ExternalServiceError(SERVICE_NAME, f"Content generator {operation} failed: {e}", timeout=timeout)


class HttpContentGenerator(ContentGenerator):
    """
    Remote generation service.

    ``/generate`` streams newline-delimited JSON events, each either
    ``{"progress": float, "message": str}`` or ``{"result": {...}}``.
    """

    def __init__(self, base_url: Optional[str] = None, timeout: Optional[float] = None):
        self.base_url = (base_url or settings.CONTENT_GENERATOR_URL).rstrip("/")
        if not self.base_url:
            raise ValueError("CONTENT_GENERATOR_URL is required when MOCK_CONTENT_GENERATION=false")
        self.timeout = timeout or settings.EXTERNAL_TIMEOUT
        self.session = requests.Session()

    def _post(self, path: str, payload: Dict[str, Any], operation: str, stream: bool = False):
        try:
            response = self.session.post(
                f"{self.base_url}{path}",
                json=payload,
                timeout=self.timeout,
                stream=stream,
            )
            response.raise_for_status()
            return response
        except requests.RequestException as e:
            raise _translate_request_error(e, operation) from e

    def generate(self, source_url: str, format: str, tone: Optional[str] = None) -> Iterator[GenerationEvent]:
        response = self._post(
            "/generate",
            {"url": source_url, "format": format, "tone": tone},
            "generate",
            stream=True,
        )
        try:
            for line in response.iter_lines(decode_unicode=True):
                if not line:
                    continue
                event = json.loads(line)
                if "result" in event:
                    yield GenerationResult(**event["result"])
                    return
                yield GenerationProgress(
                    message=event.get("message", ""),
                    progress=event.get("progress", 0),
                )
        except requests.RequestException as e:
            raise _translate_request_error(e, "generate") from e
        finally:
            response.close()

        raise ExternalServiceError(SERVICE_NAME, "Content generator stream ended without a result")

    def regenerate_scene(self, storyboard, scene, instruction, brand_kit):
        response = self._post(
            "/regenerate-scene",
            {
                "storyboard": storyboard,
                "scene": scene,
                "instruction": instruction,
                "brandKit": brand_kit,
            },
            "regenerate_scene",
        )
        return response.json()["scene"]

    def suggest_assets(self, scene, prompt, brand_kit):
        response = self._post(
            "/suggest-assets",
            {"scene": scene, "prompt": prompt, "brandKit": brand_kit},
            "suggest_assets",
        )
        return response.json()["suggestions"]


class MockContentGenerator(ContentGenerator):
    """
    Deterministic generator producing a three-scene storyboard.
    """

    SCENE_DURATIONS = (5.0, 5.0, 5.0)

    def generate(self, source_url: str, format: str, tone: Optional[str] = None) -> Iterator[GenerationEvent]:
        product = urlparse(source_url).hostname or "product"
        tone = tone or "friendly"

        yield GenerationProgress(message="Reading product page", progress=25)
        yield GenerationProgress(message="Writing storyboard", progress=75)

        scenes = []
        script_scenes = []
        start = 0.0
        for index, duration in enumerate(self.SCENE_DURATIONS):
            scene_id = new_id()
            voiceover = f"Scene {index + 1} voiceover for {product}"
            scenes.append({
                "id": scene_id,
                "duration": duration,
                "onScreenText": f"{product} highlight {index + 1}",
                "voiceoverText": voiceover,
                "assetSuggestions": [
                    {"id": new_id(), "type": "image", "description": f"{product} hero shot {index + 1}"}
                ],
            })
            script_scenes.append({
                "sceneId": scene_id,
                "voiceover": voiceover,
                "timing": {"start": start, "end": start + duration},
            })
            start += duration

        yield GenerationResult(
            storyboard={
                "version": "1",
                "format": format,
                "totalDuration": sum(self.SCENE_DURATIONS),
                "scenes": scenes,
            },
            script={"version": "1", "tone": tone, "scenes": script_scenes},
            brandKit={
                "version": "1",
                "productName": product,
                "tagline": f"The best of {product}",
                "benefits": ["Fast", "Reliable"],
                "colors": {"primary": "#111111", "secondary": "#eeeeee", "accent": "#ff6600"},
                "fonts": {"heading": "Inter", "body": "Inter"},
                "tone": tone,
            },
        )

    def regenerate_scene(self, storyboard, scene, instruction, brand_kit):
        return {
            "id": scene["id"],
            "duration": scene["duration"],
            "onScreenText": f"{scene['onScreenText']} ({instruction})",
            "voiceoverText": f"{scene['voiceoverText']} ({instruction})",
            "assetSuggestions": scene.get("assetSuggestions", []),
        }

    def suggest_assets(self, scene, prompt, brand_kit):
        return [
            {"type": "image", "description": f"{prompt} still"},
            {"type": "video", "description": f"{prompt} clip"},
        ]


def get_content_generator() -> ContentGenerator:
    """
    Factory for the configured content generator.
    """
    if settings.MOCK_CONTENT_GENERATION:
        logger.info("content_generator_selected", provider="mock")
        return MockContentGenerator()

    logger.info("content_generator_selected", provider="http", url=settings.CONTENT_GENERATOR_URL)
    return HttpContentGenerator()
