"""Client for the external image stylization provider (fal.ai)."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Protocol

import httpx

from config import settings
from services.errors import StylizeError

logger = logging.getLogger(__name__)


class Stylizer(Protocol):
    async def stylize(self, image_url: str) -> str:
        ...


def _extract_image_url(payload: Dict[str, Any]) -> Optional[str]:
    image = payload.get("image")
    if isinstance(image, dict) and image.get("url"):
        return str(image["url"])
    images = payload.get("images")
    if isinstance(images, list) and images and isinstance(images[0], dict) and images[0].get("url"):
        return str(images[0]["url"])
    if payload.get("image_url"):
        return str(payload["image_url"])
    return None


class FalStylizer:
    """Calls the fal.ai cartoonify endpoint with a bounded timeout."""

    def __init__(self, api_key: str, endpoint: str, timeout_seconds: float = 60.0):
        self.api_key = api_key
        self.endpoint = endpoint
        self.timeout_seconds = timeout_seconds

    async def stylize(self, image_url: str) -> str:
        if not self.api_key:
            raise StylizeError("Stylization provider is not configured.")

        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                response = await client.post(
                    self.endpoint,
                    json={"image_url": image_url},
                    headers={"Authorization": f"Key {self.api_key}"},
                )
                response.raise_for_status()
                payload = response.json()
        except httpx.HTTPError as exc:
            logger.warning("Stylization request failed: %s", exc)
            raise StylizeError("Error generating cartoon image") from exc
        except ValueError as exc:
            raise StylizeError("Stylization provider returned invalid JSON.") from exc

        result_url = _extract_image_url(payload) if isinstance(payload, dict) else None
        if not result_url:
            raise StylizeError("Stylization provider returned no image.")
        return result_url


def get_stylizer() -> Stylizer:
    """FastAPI dependency returning the configured stylizer."""
    return FalStylizer(
        api_key=settings.FAL_API_KEY,
        endpoint=settings.FAL_STYLIZE_URL,
        timeout_seconds=float(settings.STYLIZE_TIMEOUT_SECONDS),
    )
