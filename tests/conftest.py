"""
Pytest configuration for the test suite.

This file is automatically loaded by pytest and provides the shared
fixtures (small configs, synthetic frames and episodes) used across the
tests/ directory.
"""

import os
import sys

import numpy as np
import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import Config
from drqn.ai.frames import CROPPED_FRAME_SIZE
from drqn.ai.replay_memory import make_episode


def pytest_configure(config):
    """Configure pytest with custom markers and settings."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )


@pytest.fixture
def small_config():
    """Tiny network and batches so real engines train in milliseconds."""
    return Config(
        MINIBATCH_SIZE=2,
        UNROLL=2,
        LSTM_SIZE=16,
        REPLAY_MEMORY_CAPACITY=1000,
        CLONE_FREQUENCY=5,
        FORCE_CPU=True,
        SEED=0,
    )


@pytest.fixture
def frame_factory():
    """Create read-only uniform frames (value identifies the frame)."""
    def _make_frame(value: int = 0) -> np.ndarray:
        frame = np.full((CROPPED_FRAME_SIZE, CROPPED_FRAME_SIZE), value % 256, dtype=np.uint8)
        frame.setflags(write=False)
        return frame
    return _make_frame


@pytest.fixture
def episode_factory(frame_factory):
    """Create an episode whose frame j has value offset + j."""
    def _make_episode(length, offset=0, actions=None, rewards=None):
        frames = [frame_factory(offset + j) for j in range(length)]
        if actions is None:
            actions = [j % 3 for j in range(length)]
        if rewards is None:
            rewards = [0.0] * (length - 1) + [1.0] if length > 0 else []
        return make_episode(frames, actions, rewards)
    return _make_episode
