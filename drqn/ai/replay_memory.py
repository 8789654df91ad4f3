"""
Episodic Replay Memory
======================

A memory that stores complete episodes for training the recurrent DQN.

Why whole episodes?
    A recurrent network needs temporally ordered sequences to build up its
    hidden state, so experience is stored and evicted per episode instead of
    per transition.

How it works:
    1. The environment loop records an episode (frame, action, reward) step by
       step and commits it as a whole
    2. During training, whole episodes are sampled at random (no replacement)
    3. Once the total transition count exceeds the capacity, the oldest
       episodes are evicted (FIFO), never partially

Frames are shared: the next frame of a transition is the very same array as
the frame of the following transition, so no frame bytes are duplicated.

File format (gzip, little-endian, no version header):
    int32 episode_count
    episode_count x int32 episode_length
    for every transition in order: 7056 x uint8 frame, int32 action,
    float32 reward
"""

from collections import deque
from typing import Deque, Iterator, List, NamedTuple, Optional, Sequence, Union
import gzip
import os
import zlib

import numpy as np

from .frames import CROPPED_FRAME_SIZE, CROPPED_FRAME_DATA_SIZE
from ..utils.logger import get_logger

logger = get_logger(__name__)


class ReplayMemoryFormatError(IOError):
    """Raised when a replay memory file is truncated, corrupt or not gzip."""


class Transition(NamedTuple):
    """
    One step of experience.

    next_frame is None exactly when the transition ends the episode.
    """
    frame: np.ndarray
    action: int
    reward: float
    next_frame: Optional[np.ndarray]

    @property
    def terminal(self) -> bool:
        return self.next_frame is None


Episode = List[Transition]


class EpisodeRecorder:
    """
    Collects the steps of one episode and links next frames on completion.

    Example:
        >>> recorder = EpisodeRecorder()
        >>> recorder.record(frame, action, reward)
        >>> ...
        >>> agent.remember_episode(recorder.finish())
    """

    def __init__(self):
        self._frames: List[np.ndarray] = []
        self._actions: List[int] = []
        self._rewards: List[float] = []

    def record(self, frame: np.ndarray, action: int, reward: float) -> None:
        """Record the frame seen, the action taken and the reward received."""
        self._frames.append(frame)
        self._actions.append(int(action))
        self._rewards.append(float(reward))

    def finish(self) -> Episode:
        """Return the recorded episode (last transition terminal) and reset."""
        episode = make_episode(self._frames, self._actions, self._rewards)
        self._frames, self._actions, self._rewards = [], [], []
        return episode

    def __len__(self) -> int:
        return len(self._frames)


def make_episode(
    frames: Sequence[np.ndarray],
    actions: Sequence[int],
    rewards: Sequence[float]
) -> Episode:
    """Build an episode whose transition j points at frame j + 1."""
    assert len(frames) == len(actions) == len(rewards), "Episode arrays differ in length"
    episode: Episode = []
    for j, frame in enumerate(frames):
        next_frame = frames[j + 1] if j + 1 < len(frames) else None
        episode.append(Transition(frame, int(actions[j]), float(rewards[j]), next_frame))
    return episode


class ReplayMemory:
    """
    Bounded, ordered collection of episodes.

    Invariant: len(memory) (the transition count) equals the sum of the
    stored episode lengths and never exceeds capacity after append().

    Example:
        >>> memory = ReplayMemory(capacity=10)
        >>> memory.append(episode)
        >>> indices = memory.sample_episode_indices(32, rng)
    """

    def __init__(self, capacity: int):
        """
        Initialize the replay memory.

        Args:
            capacity: Maximum number of transitions to store
        """
        assert capacity > 0, "Replay memory capacity must be positive"
        self.capacity = capacity
        self._episodes: Deque[Episode] = deque()
        self._size = 0  # Number of transitions across all episodes

    def append(self, episode: Episode) -> None:
        """
        Add an episode, then evict the oldest episodes while over capacity.

        Args:
            episode: Complete episode (list of transitions)
        """
        self._size += len(episode)
        self._episodes.append(episode)
        while self._size > self.capacity:
            evicted = self._episodes.popleft()
            self._size -= len(evicted)

    def sample_episode_indices(
        self,
        k: int,
        rng: np.random.Generator,
        min_length: int = 0
    ) -> List[int]:
        """
        Choose up to k distinct episode indices uniformly without replacement.

        Args:
            k: Maximum number of indices
            rng: Random generator
            min_length: Only consider episodes with at least this many transitions

        Returns:
            List of indices (all eligible indices, shuffled, if fewer than k)
        """
        if min_length > 0:
            eligible = np.array(
                [i for i, ep in enumerate(self._episodes) if len(ep) >= min_length],
                dtype=np.int64
            )
        else:
            eligible = np.arange(len(self._episodes), dtype=np.int64)
        if len(eligible) == 0:
            return []
        chosen = rng.choice(eligible, size=min(k, len(eligible)), replace=False)
        return [int(i) for i in chosen]

    def clear(self) -> None:
        """Clear all episodes from the memory."""
        self._episodes.clear()
        self._size = 0

    @property
    def num_episodes(self) -> int:
        return len(self._episodes)

    def __len__(self) -> int:
        """Return the number of stored transitions."""
        return self._size

    def __getitem__(self, index: int) -> Episode:
        return self._episodes[index]

    def __iter__(self) -> Iterator[Episode]:
        return iter(self._episodes)

    # =========================================================================
    # PERSISTENCE
    # =========================================================================

    def save(self, filepath: Union[str, os.PathLike]) -> None:
        """
        Save the replay memory to a gzip compressed file.

        Args:
            filepath: Destination path
        """
        with gzip.open(filepath, 'wb') as out:
            out.write(np.array([len(self._episodes)], dtype='<i4').tobytes())
            lengths = np.array([len(ep) for ep in self._episodes], dtype='<i4')
            out.write(lengths.tobytes())
            for episode in self._episodes:
                for transition in episode:
                    frame = np.ascontiguousarray(transition.frame, dtype=np.uint8)
                    assert frame.size == CROPPED_FRAME_DATA_SIZE, "Unexpected frame size"
                    out.write(frame.tobytes())
                    out.write(np.array([transition.action], dtype='<i4').tobytes())
                    out.write(np.array([transition.reward], dtype='<f4').tobytes())
        logger.info(f"Saved memory of size {self._size} ({len(self._episodes)} episodes)")

    def load(self, filepath: Union[str, os.PathLike]) -> None:
        """
        Replace the contents of the memory with a file written by save().

        The file is decoded completely before the current contents are
        dropped, so a failed load leaves the memory as it was.

        Raises:
            FileNotFoundError: If the file does not exist
            ReplayMemoryFormatError: If the stream is truncated or malformed
        """
        self.replace_episodes(self.read_episodes(filepath))

    @classmethod
    def read_episodes(cls, filepath: Union[str, os.PathLike]) -> List[Episode]:
        """
        Decode a file written by save() into a list of episodes.

        Next frames are rebuilt from episode order: each transition points at
        the frame of its successor and the last transition is terminal.

        Args:
            filepath: Source path

        Raises:
            FileNotFoundError: If the file does not exist
            ReplayMemoryFormatError: If the stream is truncated or malformed
        """
        logger.info(f"Loading memory from {filepath}")
        with open(filepath, 'rb') as raw:
            try:
                with gzip.GzipFile(fileobj=raw, mode='rb') as stream:
                    return cls._read_episodes(stream)
            except (OSError, EOFError, zlib.error) as e:
                if isinstance(e, ReplayMemoryFormatError):
                    raise
                raise ReplayMemoryFormatError(f"Corrupt replay memory {filepath}: {e}") from e

    def replace_episodes(self, episodes: List[Episode]) -> None:
        """Drop the current contents and store the given episodes in order."""
        self.clear()
        for episode in episodes:
            self._episodes.append(episode)
            self._size += len(episode)
        logger.info(f"replay_mem_size = {self._size}")

    @staticmethod
    def _read_exact(stream, num_bytes: int) -> bytes:
        data = stream.read(num_bytes)
        if len(data) != num_bytes:
            raise ReplayMemoryFormatError(
                f"Truncated replay memory: expected {num_bytes} bytes, got {len(data)}"
            )
        return data

    @classmethod
    def _read_episodes(cls, stream) -> List[Episode]:
        num_episodes = int(np.frombuffer(cls._read_exact(stream, 4), dtype='<i4')[0])
        if num_episodes < 0:
            raise ReplayMemoryFormatError(f"Invalid episode count {num_episodes}")
        lengths = np.frombuffer(cls._read_exact(stream, 4 * num_episodes), dtype='<i4')
        if np.any(lengths < 0):
            raise ReplayMemoryFormatError("Invalid negative episode length")

        episodes: List[Episode] = []
        for ep_len in lengths:
            frames, actions, rewards = [], [], []
            for _ in range(int(ep_len)):
                frame = np.frombuffer(
                    cls._read_exact(stream, CROPPED_FRAME_DATA_SIZE), dtype=np.uint8
                ).reshape(CROPPED_FRAME_SIZE, CROPPED_FRAME_SIZE)
                frames.append(frame)
                actions.append(int(np.frombuffer(cls._read_exact(stream, 4), dtype='<i4')[0]))
                rewards.append(float(np.frombuffer(cls._read_exact(stream, 4), dtype='<f4')[0]))
            episodes.append(make_episode(frames, actions, rewards))
        return episodes
