"""Concept image generation via an OpenAI-compatible images endpoint.

Builds an asset-aware prompt (category, style and a few keyword
refinements) and asks ``POST {base_url}/images/generations`` for a single
image URL.  The image is what the model stage later turns into a mesh, so
the prompt always asks for a centered, evenly lit subject.

Authentication
--------------
Set ``ASSETSMITH_IMAGE_API_KEY`` or pass ``api_key`` to the constructor.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from typing import Any, Dict, Optional

import requests

from assetsmith.errors import AuthenticationError, RemoteError
from assetsmith.models import AssetType, ImageResult
from assetsmith.retry import retry

logger = logging.getLogger(__name__)

_BASE_URL = "https://api.openai.com/v1"
_DEFAULT_MODEL = "dall-e-3"
_DEFAULT_SIZE = "1024x1024"

_RETRYABLE_STATUS = (429, 500, 502, 503, 504)

_STYLE_DIRECTIVES: Dict[str, str] = {
    "realistic": "Photorealistic rendering with PBR materials. ",
    "cartoon": "Cartoon style with vibrant colors and simplified forms. ",
    "low-poly": "Low poly geometric style with flat shading. ",
    "stylized": "Stylized artistic rendering with unique visual appeal. ",
}

_TYPE_DIRECTIVES: Dict[AssetType, str] = {
    AssetType.WEAPON: (
        "Show the full weapon clearly on a neutral background, oriented horizontally. "
        "Include details like grips, blades, and decorative elements. "
    ),
    AssetType.ARMOR: (
        "Display the armor piece on a mannequin or stand, showing all angles "
        "and attachment points clearly. "
    ),
    AssetType.CHARACTER: (
        "Full body character in T-pose, neutral expression, clear anatomy for rigging. "
    ),
    AssetType.TOOL: (
        "Show the tool clearly with handle and working end visible, realistic wear and materials. "
    ),
    AssetType.RESOURCE: (
        "Raw material or resource in its natural form, showing texture and "
        "material properties clearly. "
    ),
    AssetType.MISC: "Clear view of the object showing all important details and features. ",
}

_GENERIC_DIRECTIVE = (
    "Clear view of the object on neutral background, showing all important details. "
)

_TECHNICAL_SUFFIX = (
    "High quality, centered composition, soft lighting, no harsh shadows, "
    "suitable for 3D reconstruction."
)


def build_prompt(description: str, asset_type: AssetType, style: Optional[str] = None) -> str:
    """Compose the image prompt for one asset."""
    prompt = f"Create a {asset_type.value} asset: {description}. "
    prompt += _STYLE_DIRECTIVES.get(style or "realistic", "")

    desc = description.lower()
    if asset_type == AssetType.BUILDING:
        if "bank" in desc:
            prompt += (
                "Grand bank building with columns, vault door visible, gold accents, "
                "secure appearance. Show full exterior with main entrance. "
            )
        elif "store" in desc or "shop" in desc:
            prompt += (
                "Shop building with display windows, merchant sign, welcoming entrance, "
                "market stall elements. Show full exterior with storefront. "
            )
        else:
            prompt += (
                "3/4 isometric view of the complete structure, showing architectural "
                "details and scale. "
            )
    elif asset_type == AssetType.CONSUMABLE:
        if "potion" in desc:
            prompt += "Glass bottle or vial with colored liquid, cork or stopper, mystical glow effect. "
        elif "food" in desc:
            prompt += "Appetizing food item with realistic textures and colors. "
        else:
            prompt += "Clear view of the consumable item showing its form and purpose. "
    else:
        prompt += _TYPE_DIRECTIVES.get(asset_type, _GENERIC_DIRECTIVE)

    return prompt + _TECHNICAL_SUFFIX


class ImageGenerationService:
    """Client for an OpenAI-compatible image generation API.

    Args:
        api_key: API key.  Falls back to ``ASSETSMITH_IMAGE_API_KEY``.
        base_url: API root (default ``https://api.openai.com/v1``).
        model: Image model name.
        size: Requested resolution.
        quality: Requested quality tier.
        timeout: Per-request HTTP timeout in seconds.
        max_retries: Attempts per request (including the first).
        retry_delay: Initial backoff delay in seconds.
    """

    def __init__(
        self,
        api_key: str = "",
        *,
        base_url: str = _BASE_URL,
        model: str = _DEFAULT_MODEL,
        size: str = _DEFAULT_SIZE,
        quality: str = "standard",
        timeout: float = 60,
        max_retries: int = 3,
        retry_delay: float = 1.0,
    ) -> None:
        self._api_key = api_key or os.environ.get("ASSETSMITH_IMAGE_API_KEY", "")
        if not self._api_key:
            raise AuthenticationError(
                "Image API key required.  Set ASSETSMITH_IMAGE_API_KEY or pass api_key.",
                code="AUTH_REQUIRED",
                status_code=None,
            )
        self._base_url = base_url.rstrip("/")
        self.model = model
        self.size = size
        self.quality = quality
        self._timeout = timeout
        self._max_retries = max_retries
        self._retry_delay = retry_delay
        self._session = requests.Session()
        self._session.headers.update(
            {
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
            }
        )

    def generate_image(
        self,
        description: str,
        asset_type: AssetType,
        style: Optional[str] = None,
        *,
        cancel_event: Optional[threading.Event] = None,
    ) -> ImageResult:
        """Generate one concept image and return its URL and provenance."""
        prompt = build_prompt(description, asset_type, style)
        body: Dict[str, Any] = {
            "model": self.model,
            "prompt": prompt,
            "n": 1,
            "size": self.size,
            "quality": self.quality,
            "response_format": "url",
        }
        logger.info("Generating %s concept image: %s", asset_type.value, description[:80])

        data = retry(
            lambda: self._post("/images/generations", body),
            self._max_retries,
            self._retry_delay,
            cancel_event=cancel_event,
            description="Image generation",
        )

        images = data.get("data") or []
        if not images:
            raise RemoteError("No image generated.", code="NO_RESULT", retryable=False)
        image_url = images[0].get("url") if isinstance(images[0], dict) else None
        if not image_url:
            raise RemoteError(
                "Image API returned no image URL.", code="NO_RESULT", retryable=False
            )

        return ImageResult(
            image_url=image_url,
            prompt=prompt,
            model=self.model,
            resolution=self.size,
            created_at=time.time(),
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _post(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        try:
            resp = self._session.post(
                f"{self._base_url}{path}",
                json=body,
                timeout=self._timeout,
            )
        except requests.ConnectionError:
            raise RemoteError(
                "Could not connect to image API.", code="CONNECTION_ERROR"
            ) from None
        except requests.Timeout:
            raise RemoteError(
                f"Image API request timed out after {self._timeout}s.", code="TIMEOUT"
            ) from None

        self._handle_http_error(resp)
        try:
            data = resp.json()
        except ValueError:
            raise RemoteError(
                f"Image API returned invalid JSON: {resp.text[:200]}",
                code="INVALID_RESPONSE",
                retryable=False,
            ) from None
        if not isinstance(data, dict):
            raise RemoteError(
                "Image API returned an unexpected payload.",
                code="INVALID_RESPONSE",
                retryable=False,
            )
        return data

    def _handle_http_error(self, resp: requests.Response) -> None:
        """Raise a typed exception for non-2xx responses."""
        if resp.ok:
            return

        if resp.status_code == 401:
            raise AuthenticationError("Image API key is invalid or expired.")
        if resp.status_code == 429:
            raise RemoteError(
                "Image API rate limit exceeded.  Try again later.",
                code="RATE_LIMITED",
                status_code=429,
            )

        message = ""
        try:
            err = resp.json().get("error", {})
            message = err.get("message", "") if isinstance(err, dict) else str(err)
        except (ValueError, AttributeError):
            message = ""
        message = message or resp.text[:200]

        raise RemoteError(
            f"Image API error (HTTP {resp.status_code}): {message}",
            code="API_ERROR",
            status_code=resp.status_code,
            retryable=resp.status_code in _RETRYABLE_STATUS,
        )
