"""Image generation capability backed by the Gemini image models.

The dispatcher only needs two coroutines, generate(prompt) and
transform(image_b64, prompt), each returning a ``data:image/...;base64,`` URL.
Single attempt: any failure raises ToolExecutionFailed and is not retried.
"""

import base64
import logging

from google import genai
from google.genai import types

from session_errors import ToolExecutionFailed

logger = logging.getLogger(__name__)

DEFAULT_IMAGE_MODEL = "gemini-3-pro-image-preview"


def _first_image(response):
    """Return the first inline image in a response as a data URL, or None."""
    for candidate in getattr(response, "candidates", None) or []:
        content = getattr(candidate, "content", None)
        for part in getattr(content, "parts", None) or []:
            inline = getattr(part, "inline_data", None)
            if inline is not None and inline.data:
                data = inline.data
                if isinstance(data, bytes):
                    data = base64.b64encode(data).decode("ascii")
                mime_type = inline.mime_type or "image/png"
                return f"data:{mime_type};base64,{data}"
    return None


class GeminiImageService:
    """generate/transform via ``client.aio.models.generate_content``."""

    def __init__(self, api_key, model=DEFAULT_IMAGE_MODEL, client=None):
        self.model = model
        self._client = client or genai.Client(api_key=api_key)

    async def _generate(self, contents, label):
        try:
            response = await self._client.aio.models.generate_content(
                model=self.model,
                contents=contents,
            )
        except Exception as e:
            logger.error("%s request failed: %s", label, e)
            raise ToolExecutionFailed(f"Failed to {label} image.") from e

        image = _first_image(response)
        if image is None:
            raise ToolExecutionFailed("No image data received.")
        logger.info("%s successful", label.capitalize())
        return image

    async def generate(self, prompt: str) -> str:
        logger.info("Generating image with prompt: %s", prompt)
        return await self._generate([prompt], "generate")

    async def transform(self, image_b64: str, prompt: str) -> str:
        logger.info("Reimagining image with prompt: %s", prompt)
        try:
            image_bytes = base64.b64decode(image_b64)
        except ValueError as e:
            raise ToolExecutionFailed(f"Camera frame is not valid base64: {e}") from e
        contents = [
            types.Part.from_bytes(data=image_bytes, mime_type="image/jpeg"),
            prompt,
        ]
        return await self._generate(contents, "reimagine")
