#!/usr/bin/env python3
"""Post-render pixel operations: alpha-correct resizing, mask multiply and encoding."""

import argparse
import io
import os
from typing import Optional, Tuple

import numpy as np
from PIL import Image, UnidentifiedImageError

from render_errors import AssetLoadingError

WEBP_MEDIA_TYPE = "image/webp"
PNG_MEDIA_TYPE = "image/png"


def decode_image(data: bytes) -> Image.Image:
    """Decode PNG/JPEG/WebP/... bytes into an RGBA image."""
    try:
        with Image.open(io.BytesIO(data)) as image:
            image.load()
            return image.convert("RGBA")
    except (UnidentifiedImageError, OSError, ValueError) as exc:
        raise AssetLoadingError(f"Could not decode image: {exc}") from exc


def texture_array(image: Image.Image) -> np.ndarray:
    return np.array(image.convert("RGBA"), dtype=np.uint8)


def premultiply_alpha(pixels: np.ndarray) -> np.ndarray:
    """Scale RGB by alpha. ``pixels`` is a float array in [0, 255] with 4 channels."""
    result = pixels.astype(np.float32, copy=True)
    result[..., :3] *= result[..., 3:4] / 255.0
    return result


def unpremultiply_alpha(pixels: np.ndarray) -> np.ndarray:
    """Inverse of :func:`premultiply_alpha`; fully transparent pixels become black."""
    result = pixels.astype(np.float32, copy=True)
    alpha = np.clip(result[..., 3:4], 0.0, 255.0)
    result[..., 3:4] = alpha
    safe_alpha = np.where(alpha > 0, alpha, 1.0)
    result[..., :3] = np.where(alpha > 0, result[..., :3] * 255.0 / safe_alpha, 0.0)
    return np.clip(result, 0.0, 255.0)


def resize_premultiplied(
    image: Image.Image,
    size: Tuple[int, int],
    resample: Image.Resampling = Image.Resampling.LANCZOS,
) -> Image.Image:
    """Resize in premultiplied space so transparent edges do not bleed dark fringes."""
    rgba = np.asarray(image.convert("RGBA"), dtype=np.float32)
    premultiplied = premultiply_alpha(rgba)

    channels = []
    for index in range(4):
        channel = Image.fromarray(np.ascontiguousarray(premultiplied[..., index]))
        channels.append(np.asarray(channel.resize(size, resample), dtype=np.float32))

    restored = unpremultiply_alpha(np.stack(channels, axis=-1))
    return Image.fromarray(np.rint(restored).astype(np.uint8))


def multiply(bottom: Image.Image, top: Image.Image) -> Image.Image:
    """Multiply-blend ``top`` over ``bottom``.

    A channel that is exactly 0 in either layer takes the larger of the two values
    instead of the product; alpha always comes from ``bottom``.
    """
    if top.size != bottom.size:
        top = resize_premultiplied(top, bottom.size)

    bottom_np = np.asarray(bottom.convert("RGBA"), dtype=np.float64)
    top_np = np.asarray(top.convert("RGBA"), dtype=np.float64)

    bottom_rgb = bottom_np[..., :3]
    top_rgb = top_np[..., :3]
    product = np.rint(bottom_rgb * top_rgb / 255.0)
    either_zero = (bottom_rgb == 0) | (top_rgb == 0)

    result = np.empty(bottom_np.shape, dtype=np.uint8)
    result[..., :3] = np.where(either_zero, np.maximum(bottom_rgb, top_rgb), product).astype(np.uint8)
    result[..., 3] = bottom_np[..., 3].astype(np.uint8)
    return Image.fromarray(result)


def fit_to_size(image: Image.Image, width: int, height: int) -> Image.Image:
    """Thumbnail the rendered buffer to exactly ``width`` x ``height``."""
    if image.size == (width, height):
        return image
    return resize_premultiplied(image, (width, height))


def wants_webp(accept: Optional[str]) -> bool:
    return bool(accept) and WEBP_MEDIA_TYPE in accept


def encode_image(image: Image.Image, accept: Optional[str] = None) -> Tuple[bytes, str]:
    """Encode as lossless WebP when the client accepts it, PNG otherwise."""
    buffer = io.BytesIO()
    if wants_webp(accept):
        image.save(buffer, format="WEBP", lossless=True)
        return buffer.getvalue(), WEBP_MEDIA_TYPE
    image.save(buffer, format="PNG")
    return buffer.getvalue(), PNG_MEDIA_TYPE


def ensure_folder(path: str) -> None:
    folder = os.path.dirname(path)
    if folder and not os.path.exists(folder):
        os.makedirs(folder, exist_ok=True)


def multiply_files(mask_path: str, render_path: str, output_path: str) -> None:
    with Image.open(mask_path) as mask, Image.open(render_path) as render:
        composite = multiply(mask.convert("RGBA"), render.convert("RGBA"))
    ensure_folder(output_path)
    composite.save(output_path)


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Multiply-blend a product render over a mask image.")
    parser.add_argument("--mask", required=True, help="Bottom layer; its size and alpha are kept.")
    parser.add_argument("--render", required=True, help="Top layer, resized to the mask if needed.")
    parser.add_argument("--output", required=True, help="Destination path for the composited image.")
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    multiply_files(args.mask, args.render, args.output)
    print(f"Saved composite to {args.output}")


if __name__ == "__main__":
    main()
