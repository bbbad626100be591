"""
Image token estimation.

Tiling formula used to price image inputs in chat messages.
"""

import math

LOW_DETAIL_TOKENS = 85
BASE_TOKENS = 85
TOKENS_PER_TILE = 170
TILE_SIZE = 512
MAX_DIMENSION = 2048

DEFAULT_IMAGE_WIDTH = 1024
DEFAULT_IMAGE_HEIGHT = 1024


def estimate_image_tokens(width: int, height: int, detail: str = "high") -> int:
    """Estimate token usage for an image from its dimensions.

    - "low" detail costs a constant 85 tokens
    - "high" detail costs 85 plus 170 per 512x512 tile, after scaling the
      image down so that neither side exceeds 2048

    Args:
        width: Image width in pixels
        height: Image height in pixels
        detail: "low" or "high"

    Returns:
        Estimated token count

    Raises:
        ValueError: If a dimension is not positive
    """
    if detail.lower() == "low":
        return LOW_DETAIL_TOKENS

    if width <= 0 or height <= 0:
        raise ValueError(f"Image dimensions must be positive, got {width}x{height}")

    if width > MAX_DIMENSION or height > MAX_DIMENSION:
        aspect_ratio = width / height
        if aspect_ratio > 1:
            width = MAX_DIMENSION
            height = math.floor(MAX_DIMENSION / aspect_ratio)
        else:
            height = MAX_DIMENSION
            width = math.floor(MAX_DIMENSION * aspect_ratio)

    tiles_wide = math.ceil(width / TILE_SIZE)
    tiles_high = math.ceil(height / TILE_SIZE)
    return BASE_TOKENS + TOKENS_PER_TILE * tiles_wide * tiles_high
