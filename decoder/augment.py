"""
OCR Augmenter (/api/augment)

Rewrites raw OCR output of a problem into one clean statement, using the
optional diagram image to recover numeric labels. If the image-bearing call
is rejected the call is retried once text-only.
"""

import logging
from typing import Any

from decoder.errors import EmptyContentError, ProviderError, ProviderTimeout, ValidationError
from decoder.gpt_client import system_message, user_message
from decoder.schemas import AugmentRequest, AugmentResponse, ImageInput

log = logging.getLogger("decoder.pipeline")

AUGMENT_TIMEOUT_S = 20.0
AUGMENT_MAX_TOKENS = 1000
AUGMENT_RETRY_MAX_TOKENS = 600

AUGMENT_SYSTEM = """You rewrite OCR output of exam problems into a clean, single-block statement suitable for solving.
- Use the diagram/image (if provided) to recover numeric labels (masses, angles, tan values) and relationships.
- Normalise fractions and units: join stacked lines (5/12, 12mg/5), keep symbols (alpha, mu) where present.
- Remove headings like "Figure 1", stray labels (A, B) unless referenced, and page numbers.
- Output ONLY the final cleaned problem text. No explanations."""


async def augment_text(client: Any, request: AugmentRequest) -> AugmentResponse:
    """
    Raises:
        ValidationError:   blank text
        ProviderError:     non-2xx (after the text-only retry, when an image was sent)
        EmptyContentError: 2xx with blank content
    """
    text = (request.text or "").strip()
    if not text:
        raise ValidationError("Missing 'text'")

    prompt = f"OCR text:\n{text}"
    images = []
    if (request.image_base64 or "").strip() and (request.image_mime_type or "").strip():
        images = [ImageInput(data=request.image_base64.strip(), mime_type=request.image_mime_type.strip())]

    def messages(with_image: bool):
        return [system_message(AUGMENT_SYSTEM), user_message([prompt], images if with_image else [])]

    try:
        result = await client.complete(
            messages(True),
            response_format=None,
            max_tokens=AUGMENT_MAX_TOKENS,
            timeout=AUGMENT_TIMEOUT_S,
        )
    except ProviderError as e:
        if not images or isinstance(e, ProviderTimeout):
            raise
        log.warning(f"[AUGMENT] {e.status_code} with image; retrying text-only")
        result = await client.complete(
            messages(False),
            response_format=None,
            max_tokens=AUGMENT_RETRY_MAX_TOKENS,
            timeout=AUGMENT_TIMEOUT_S,
        )

    if result.empty:
        raise EmptyContentError("Empty augmentation response", details={"finish_reason": result.finish_reason})
    log.info(f"[AUGMENT] cleaned text ({len(result.content.strip())} chars)")
    return AugmentResponse(text=result.content.strip())
