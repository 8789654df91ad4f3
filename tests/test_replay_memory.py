"""
Tests for the episodic replay memory.

These tests verify:
    - Episode construction and next-frame links
    - Capacity eviction of whole episodes
    - Sampling without replacement
    - Save/load of the gzip file format
    - Errors on missing, truncated and corrupt files
"""

import gzip

import pytest
import numpy as np
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from drqn.ai.frames import CROPPED_FRAME_DATA_SIZE
from drqn.ai.replay_memory import (
    EpisodeRecorder, ReplayMemory, ReplayMemoryFormatError, Transition, make_episode
)


@pytest.fixture
def memory():
    """Create a replay memory with room for 100 transitions."""
    return ReplayMemory(capacity=100)


class TestEpisodes:
    """Test episode construction."""

    def test_next_frame_is_successor_frame(self, episode_factory):
        """Transition j points at the very frame of transition j + 1."""
        episode = episode_factory(4)
        for j in range(3):
            assert episode[j].next_frame is episode[j + 1].frame
            assert not episode[j].terminal

    def test_last_transition_terminal(self, episode_factory):
        """Only the last transition is terminal."""
        episode = episode_factory(3)
        assert episode[-1].next_frame is None
        assert episode[-1].terminal

    def test_recorder(self, frame_factory):
        """The recorder builds a linked episode and resets."""
        recorder = EpisodeRecorder()
        for j in range(3):
            recorder.record(frame_factory(j), j, 0.5)
        assert len(recorder) == 3
        episode = recorder.finish()
        assert len(episode) == 3
        assert len(recorder) == 0
        assert isinstance(episode[0], Transition)
        assert episode[1].action == 1
        assert episode[1].reward == 0.5
        assert episode[1].next_frame is episode[2].frame

    def test_mismatched_lengths_rejected(self, frame_factory):
        """Frames, actions and rewards must line up."""
        with pytest.raises(AssertionError):
            make_episode([frame_factory(0)], [0, 1], [0.0])


class TestCapacity:
    """Test eviction."""

    def test_starts_empty(self, memory):
        """Memory should start empty."""
        assert len(memory) == 0
        assert memory.num_episodes == 0

    def test_three_episodes_capacity_ten(self, episode_factory):
        """Appending 4, 4, 4 into capacity 10 evicts the first episode."""
        memory = ReplayMemory(capacity=10)
        first = episode_factory(4, offset=0)
        second = episode_factory(4, offset=10)
        third = episode_factory(4, offset=20)
        memory.append(first)
        memory.append(second)
        assert len(memory) == 8
        memory.append(third)

        assert len(memory) == 8
        assert memory.num_episodes == 2
        assert memory[0] is second
        assert memory[1] is third

    def test_exactly_at_capacity_kept(self, episode_factory):
        """A memory filled exactly to capacity evicts nothing."""
        memory = ReplayMemory(capacity=8)
        memory.append(episode_factory(4))
        memory.append(episode_factory(4))
        assert len(memory) == 8
        assert memory.num_episodes == 2

    def test_oversized_episode_evicted(self, episode_factory):
        """An episode longer than the capacity cannot be kept."""
        memory = ReplayMemory(capacity=5)
        memory.append(episode_factory(3))
        memory.append(episode_factory(6))
        assert len(memory) == 0
        assert memory.num_episodes == 0

    def test_invariant_random_appends(self, episode_factory):
        """Count never exceeds capacity and always equals the sum of lengths."""
        rng = np.random.default_rng(0)
        memory = ReplayMemory(capacity=37)
        for _ in range(50):
            memory.append(episode_factory(int(rng.integers(1, 12))))
            assert len(memory) <= 37
            assert len(memory) == sum(len(ep) for ep in memory)

    def test_clear(self, memory, episode_factory):
        """Clear removes every episode and resets the count."""
        memory.append(episode_factory(5))
        memory.clear()
        assert len(memory) == 0
        assert memory.num_episodes == 0


class TestSampling:
    """Test episode sampling."""

    def test_distinct_indices(self, memory, episode_factory):
        """Indices are distinct and in range."""
        for _ in range(10):
            memory.append(episode_factory(2))
        indices = memory.sample_episode_indices(5, np.random.default_rng(1))
        assert len(indices) == 5
        assert len(set(indices)) == 5
        assert all(0 <= i < 10 for i in indices)

    def test_fewer_episodes_than_requested(self, memory, episode_factory):
        """All episodes are returned when fewer than k exist."""
        for _ in range(3):
            memory.append(episode_factory(2))
        indices = memory.sample_episode_indices(32, np.random.default_rng(1))
        assert sorted(indices) == [0, 1, 2]

    def test_empty_memory(self, memory):
        """Sampling an empty memory returns nothing."""
        assert memory.sample_episode_indices(4, np.random.default_rng(1)) == []

    def test_min_length(self, memory, episode_factory):
        """Only long enough episodes are eligible."""
        memory.append(episode_factory(2))
        memory.append(episode_factory(6))
        memory.append(episode_factory(3))
        indices = memory.sample_episode_indices(3, np.random.default_rng(1), min_length=3)
        assert sorted(indices) == [1, 2]


class TestPersistence:
    """Test save/load."""

    def _fill(self, memory, frame_factory):
        rng = np.random.default_rng(3)
        for length in (3, 1, 5):
            frames = []
            for _ in range(length):
                frame = rng.integers(0, 256, size=(84, 84), dtype=np.uint8)
                frame.setflags(write=False)
                frames.append(frame)
            actions = rng.integers(0, 18, size=length)
            rewards = rng.uniform(-1.0, 1.0, size=length).astype(np.float32)
            memory.append(make_episode(frames, actions, rewards))

    def test_round_trip(self, memory, frame_factory, tmp_path):
        """Loading restores counts, bytes, actions, rewards and links."""
        self._fill(memory, frame_factory)
        path = tmp_path / "memory.replaymemory"
        memory.save(path)

        loaded = ReplayMemory(capacity=100)
        loaded.load(path)

        assert len(loaded) == len(memory) == 9
        assert loaded.num_episodes == 3
        for original, restored in zip(memory, loaded):
            assert len(original) == len(restored)
            for j, (a, b) in enumerate(zip(original, restored)):
                assert a.frame.tobytes() == b.frame.tobytes()
                assert a.action == b.action
                assert a.reward == pytest.approx(b.reward, abs=1e-7)
                if j + 1 < len(restored):
                    assert b.next_frame is restored[j + 1].frame
                else:
                    assert b.next_frame is None

    def test_file_layout(self, memory, episode_factory, tmp_path):
        """Header holds the episode count followed by the lengths."""
        memory.append(episode_factory(2))
        memory.append(episode_factory(1))
        path = tmp_path / "memory.replaymemory"
        memory.save(path)

        with gzip.open(path, 'rb') as f:
            data = f.read()
        header = np.frombuffer(data[:12], dtype='<i4')
        assert header.tolist() == [2, 2, 1]
        assert len(data) == 12 + 3 * (CROPPED_FRAME_DATA_SIZE + 8)

    def test_load_replaces_contents(self, memory, episode_factory, tmp_path):
        """Loading clears what was there before."""
        memory.append(episode_factory(2))
        path = tmp_path / "memory.replaymemory"
        memory.save(path)
        memory.append(episode_factory(4))
        memory.load(path)
        assert len(memory) == 2
        assert memory.num_episodes == 1

    def test_empty_round_trip(self, memory, tmp_path):
        """An empty memory saves and loads."""
        path = tmp_path / "empty.replaymemory"
        memory.save(path)
        memory.load(path)
        assert len(memory) == 0

    def test_missing_file(self, memory, tmp_path):
        """Missing files raise FileNotFoundError."""
        with pytest.raises(FileNotFoundError):
            memory.load(tmp_path / "missing.replaymemory")

    def test_truncated_file(self, memory, episode_factory, tmp_path):
        """A stream that ends early is a format error."""
        memory.append(episode_factory(3))
        path = tmp_path / "memory.replaymemory"
        memory.save(path)
        with gzip.open(path, 'rb') as f:
            data = f.read()
        with gzip.open(path, 'wb') as f:
            f.write(data[:-100])

        with pytest.raises(ReplayMemoryFormatError):
            ReplayMemory(capacity=100).load(path)

    def test_failed_load_keeps_contents(self, memory, episode_factory, tmp_path):
        """A truncated file leaves the current episodes in place."""
        memory.append(episode_factory(3))
        path = tmp_path / "memory.replaymemory"
        memory.save(path)
        with gzip.open(path, 'rb') as f:
            data = f.read()
        with gzip.open(path, 'wb') as f:
            f.write(data[:-100])

        memory.append(episode_factory(2, offset=20))
        with pytest.raises(ReplayMemoryFormatError):
            memory.load(path)
        assert len(memory) == 5
        assert memory.num_episodes == 2

    def test_not_gzip(self, memory, tmp_path):
        """Plain bytes are a format error."""
        path = tmp_path / "garbage.replaymemory"
        path.write_bytes(b"definitely not gzip data")
        with pytest.raises(ReplayMemoryFormatError):
            memory.load(path)

    def test_format_error_is_io_error(self):
        """Callers catching IOError also catch format errors."""
        assert issubclass(ReplayMemoryFormatError, IOError)
