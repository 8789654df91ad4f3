"""
Frame Preprocessing
===================

Converts raw emulator screens into the compact frames stored in replay memory
and fed to the recurrent Q-network.

Pipeline:
    1. Crop the score area at the top (keep the bottom 85% of the rows)
       and the leftmost 8 columns (HUD artifacts)
    2. NTSC palette value -> RGB -> grayscale (luminosity weights)
    3. Area-resample the cropped image down to 84x84

The area resampling averages every source pixel that overlaps a destination
pixel, weighted by the fraction of the destination pixel it covers. Unlike
nearest-neighbour sampling, thin sprites (bullets, balls) never disappear
between frames.

References:
    Mnih et al., 2015 - "Human-level control through deep reinforcement learning"
    Hausknecht & Stone, 2015 - "Deep Recurrent Q-Learning for Partially Observable MDPs"
"""

from functools import lru_cache
from typing import Union
import os

import numpy as np


# Side of the square output frame
CROPPED_FRAME_SIZE = 84
CROPPED_FRAME_DATA_SIZE = CROPPED_FRAME_SIZE * CROPPED_FRAME_SIZE

# Fraction of the raw rows kept after cropping the top margin
CROP_HEIGHT_RATIO = 0.85

# Number of leftmost columns dropped
CROP_LEFT = 8

# NTSC palette (128 colours). ALE palette values are even, so the colour of
# value v is NTSC_PALETTE[v >> 1].
NTSC_PALETTE = np.array([
    0x000000, 0x4a4a4a, 0x6f6f6f, 0x8e8e8e, 0xaaaaaa, 0xc0c0c0, 0xd6d6d6, 0xececec,
    0x484800, 0x69690f, 0x86861d, 0xa2a22a, 0xbbbb35, 0xd2d240, 0xe8e84a, 0xfcfc54,
    0x7c2c00, 0x904811, 0xa26221, 0xb47a30, 0xc3903d, 0xd2a44a, 0xdfb755, 0xecc860,
    0x901c00, 0xa33915, 0xb55328, 0xc66c3a, 0xd5824a, 0xe39759, 0xf0aa67, 0xfcbc74,
    0x940000, 0xa71a1a, 0xb83232, 0xc84848, 0xd65c5c, 0xe46f6f, 0xf08080, 0xfc9090,
    0x840064, 0x97197a, 0xa8308f, 0xb846a2, 0xc659b3, 0xd46cc3, 0xe07cd2, 0xec8ce0,
    0x500084, 0x68199a, 0x7d30ad, 0x9246c0, 0xa459d0, 0xb56ce0, 0xc57cee, 0xd48cfc,
    0x140090, 0x331aa3, 0x4e32b5, 0x6848c6, 0x7f5cd5, 0x956fe3, 0xa980f0, 0xbc90fc,
    0x000094, 0x181aa7, 0x2d32b8, 0x4248c8, 0x545cd6, 0x656fe4, 0x7580f0, 0x8490fc,
    0x001c88, 0x183b9d, 0x2d57b0, 0x4272c2, 0x548ad2, 0x65a0e1, 0x75b5ef, 0x84c8fc,
    0x003064, 0x185080, 0x2d6d98, 0x4288b0, 0x54a0c5, 0x65b7d9, 0x75cceb, 0x84e0fc,
    0x004030, 0x18624e, 0x2d8169, 0x429e82, 0x54b899, 0x65d1ae, 0x75e7c2, 0x84fcd4,
    0x004400, 0x1a661a, 0x328432, 0x48a048, 0x5cba5c, 0x6fd26f, 0x80e880, 0x90fc90,
    0x143c00, 0x355f18, 0x527e2d, 0x6e9c42, 0x87b754, 0x9ed065, 0xb4e775, 0xc8fc84,
    0x303800, 0x505916, 0x6d762b, 0x88923e, 0xa0ab4f, 0xb7c25f, 0xccd86e, 0xe0ec7c,
    0x482c00, 0x694d14, 0x866a26, 0xa28638, 0xbb9f47, 0xd2b656, 0xe8cc63, 0xfce070,
], dtype=np.int64)

# Luminosity weights (perceptual, not a plain average)
LUMINOSITY_WEIGHTS = (0.21, 0.72, 0.07)


def pixel_to_rgb(pixels: np.ndarray) -> np.ndarray:
    """
    Convert NTSC palette values to RGB.

    Args:
        pixels: Integer array of palette values in [0, 255]

    Returns:
        Array of shape pixels.shape + (3,) with channel values in [0, 255]
    """
    rgb = NTSC_PALETTE[np.asarray(pixels, dtype=np.int64) >> 1]
    return np.stack([rgb >> 16, (rgb >> 8) & 0xFF, rgb & 0xFF], axis=-1)


def rgb_to_grayscale(rgb: np.ndarray) -> np.ndarray:
    """Convert RGB values in [0, 255] to uint8 grayscale with luminosity weights."""
    rgb = np.asarray(rgb)
    assert rgb.shape[-1] == 3, "RGB input must have 3 channels"
    assert rgb.min() >= 0 and rgb.max() <= 255, "RGB values must be in [0, 255]"
    r = rgb[..., 0].astype(np.float64)
    g = rgb[..., 1].astype(np.float64)
    b = rgb[..., 2].astype(np.float64)
    wr, wg, wb = LUMINOSITY_WEIGHTS
    return (r * wr + g * wg + b * wb).astype(np.uint8)


def pixel_to_grayscale(pixels: np.ndarray) -> np.ndarray:
    """NTSC palette values -> uint8 grayscale."""
    return rgb_to_grayscale(pixel_to_rgb(pixels))


@lru_cache(maxsize=16)
def _coverage_matrix(source_size: int, target_size: int) -> np.ndarray:
    """
    Build the (target_size, source_size) area-resampling matrix for one axis.

    Entry [k, x] is the length of the overlap between source pixel
    [x, x + 1) and destination pixel [k * ratio, (k + 1) * ratio), divided
    by ratio. Every row sums to one.
    """
    ratio = source_size / float(target_size)
    edges = np.arange(target_size + 1, dtype=np.float64) * ratio
    starts = np.arange(source_size, dtype=np.float64)
    lo = np.maximum(starts[None, :], edges[:-1, None])
    hi = np.minimum(starts[None, :] + 1.0, edges[1:, None])
    weights = np.clip(hi - lo, 0.0, None) / ratio
    weights.setflags(write=False)
    return weights


def preprocess_screen(raw_screen: np.ndarray) -> np.ndarray:
    """
    Preprocess a raw screen (downsampling & grayscaling).

    Args:
        raw_screen: (height, width) array of NTSC palette values, or
                    (height, width, 3) RGB array. width must be < height.

    Returns:
        Read-only uint8 frame of shape (84, 84)
    """
    raw_screen = np.asarray(raw_screen)
    assert raw_screen.ndim in (2, 3), f"Unexpected screen shape {raw_screen.shape}"
    raw_height, raw_width = raw_screen.shape[:2]
    assert raw_height > raw_width, "Raw screen must be taller than it is wide"
    assert raw_width > CROP_LEFT, "Raw screen too narrow to crop"

    cropped_height = int(CROP_HEIGHT_RATIO * raw_height)
    start_y = raw_height - cropped_height
    cropped = raw_screen[start_y:, CROP_LEFT:]

    if raw_screen.ndim == 3:
        gray = rgb_to_grayscale(cropped)
    else:
        gray = pixel_to_grayscale(cropped)

    wy = _coverage_matrix(cropped.shape[0], CROPPED_FRAME_SIZE)
    wx = _coverage_matrix(cropped.shape[1], CROPPED_FRAME_SIZE)
    resampled = wy @ gray.astype(np.float64) @ wx.T

    frame = np.clip(np.rint(resampled), 0, 255).astype(np.uint8)
    frame.setflags(write=False)
    return frame


class FramePreprocessor:
    """
    Stateless screen -> frame converter with a processed-frame counter.

    Example:
        >>> preprocessor = FramePreprocessor()
        >>> frame = preprocessor(ale.getScreen())
        >>> frame.shape
        (84, 84)
    """

    def __init__(self):
        self.frames_processed = 0

    def __call__(self, raw_screen: np.ndarray) -> np.ndarray:
        return self.preprocess(raw_screen)

    def preprocess(self, raw_screen: np.ndarray) -> np.ndarray:
        frame = preprocess_screen(raw_screen)
        self.frames_processed += 1
        return frame

    @staticmethod
    def save_frame(frame: np.ndarray, filepath: Union[str, os.PathLike]) -> None:
        """Dump a frame's raw bytes (84*84 uint8, row-major) for inspection."""
        assert frame.shape == (CROPPED_FRAME_SIZE, CROPPED_FRAME_SIZE)
        with open(filepath, 'wb') as f:
            f.write(np.ascontiguousarray(frame, dtype=np.uint8).tobytes())
