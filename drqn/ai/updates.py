"""
Training Updates
================

Turns stored episodes into training batches for the live engine.

Two strategies:
    sequential  - every sampled episode is replayed from its first step to
                  its last in windows of UNROLL steps, the recurrent state
                  carried from one window to the next
    random      - a single window of UNROLL steps is cut at a random offset
                  out of every sampled episode, the recurrent state reset at
                  the start of the window

Targets use the frozen clone (target network):

    terminal:      y = r
    non-terminal:  y = r + gamma * max_a' Q_clone(s', a')

Only the Q-value of the action actually taken is trained: the filter
matrix holds 1 at (step, slot, action) and 0 elsewhere.
"""

from typing import List, Optional, Sequence
import math

import numpy as np

from config import Config
from .engine import FrameWindow, ValueFunctionEngine
from .policy import greedy_action_values
from .replay_memory import Episode, ReplayMemory
from ..utils.logger import get_logger, log_update

logger = get_logger(__name__)


class NoEligibleEpisodeError(RuntimeError):
    """Raised when no stored episode is long enough for a training window."""


class TrainingUpdateEngine:
    """
    Builds minibatches from replay memory and steps the live engine.

    Example:
        >>> updater = TrainingUpdateEngine(memory, live, evaluation, legal_actions, config, rng)
        >>> num_steps = updater.update_sequential()
    """

    def __init__(
        self,
        memory: ReplayMemory,
        live: ValueFunctionEngine,
        evaluation: ValueFunctionEngine,
        legal_actions: Sequence[int],
        config: Optional[Config] = None,
        rng: Optional[np.random.Generator] = None
    ):
        """
        Initialize the update engine.

        Args:
            memory: Episodes to train on
            live: Engine that receives train_step()
            evaluation: Engine the clone is copied from
            legal_actions: Actions considered for the bootstrapped max
            config: Configuration object
            rng: Random generator for episode and window sampling
        """
        self.config = config or Config()
        self.memory = memory
        self.live = live
        self.evaluation = evaluation
        self.legal_actions = [int(a) for a in legal_actions]
        self.rng = rng if rng is not None else np.random.default_rng()

        self.clone: Optional[ValueFunctionEngine] = None
        self.last_clone_iter = 0
        self.last_loss: Optional[float] = None

        self.minibatch_size = self.config.MINIBATCH_SIZE
        self.unroll = self.config.UNROLL
        self.frames_per_timestep = self.config.FRAMES_PER_TIMESTEP
        self.gamma = self.config.GAMMA
        self.num_outputs = self.config.OUTPUT_COUNT

        n, s = self.minibatch_size, self.config.FRAME_SIZE
        self._frames = np.zeros((n, self.config.FRAMES_PER_FORWARD, s, s), dtype=np.float32)
        self._cont = np.zeros((self.unroll, n), dtype=np.float32)
        self._targets = np.zeros((self.unroll, n, self.num_outputs), dtype=np.float32)
        self._filters = np.zeros((self.unroll, n, self.num_outputs), dtype=np.float32)

    # =========================================================================
    # TARGET NETWORK
    # =========================================================================

    def refresh_clone(self) -> None:
        """Copy the evaluation engine's parameters into the frozen clone."""
        iteration = self.live.iteration
        logger.info(f"Iter {iteration}: Updating Clone Net")
        if self.clone is None:
            self.clone = self.evaluation.clone()
        else:
            self.clone.copy_from(self.evaluation)
        self.last_clone_iter = iteration

    def refresh_clone_if_due(self) -> bool:
        """Refresh the clone if none exists or CLONE_FREQUENCY iterations passed."""
        if self.clone is None or \
                self.live.iteration >= self.last_clone_iter + self.config.CLONE_FREQUENCY:
            self.refresh_clone()
            return True
        return False

    # =========================================================================
    # UPDATES
    # =========================================================================

    def update_sequential(self) -> int:
        """
        Replay whole episodes in consecutive UNROLL-step windows.

        Returns:
            Number of train_step() calls performed
        """
        self.refresh_clone_if_due()

        indices = self.memory.sample_episode_indices(self.minibatch_size, self.rng)
        episodes = [self.memory[i] for i in indices]
        if not episodes:
            return 0

        f = self.frames_per_timestep
        longest = max(len(ep) for ep in episodes)
        num_steps = 0

        for start in range(0, longest, self.unroll):
            self._clear_buffers()
            self._stage_sequential_frames(episodes, start)
            trainable = False

            for i in range(self.unroll):
                t = start + i
                windows = [
                    _next_state_window(ep, t - f + 1, t) if f - 1 <= t < len(ep) else None
                    for ep in episodes
                ]
                max_q = self._clone_max_q(windows, [t != f - 1] * len(episodes))

                for n, episode in enumerate(episodes):
                    if not (f - 1 <= t < len(episode)):
                        continue
                    trainable = True
                    self._stage_target(i, n, episode, t, max_q)
                    self._cont[i, n] = 0.0 if t == f - 1 else 1.0

            if trainable:
                self._train()
                num_steps += 1

        log_update('sequential', self.live.iteration, num_steps, self.last_loss)
        return num_steps

    def update_random(self) -> int:
        """
        Train on one randomly placed UNROLL-step window per sampled episode.

        Returns:
            1 (one train_step() call)

        Raises:
            NoEligibleEpisodeError: If no episode has at least
                                    FRAMES_PER_TIMESTEP + UNROLL - 1 transitions
        """
        self.refresh_clone_if_due()

        f = self.frames_per_timestep
        min_length = f + self.unroll - 1
        indices = self.memory.sample_episode_indices(
            self.minibatch_size, self.rng, min_length=min_length
        )
        if not indices:
            raise NoEligibleEpisodeError(
                f"No episode with at least {min_length} transitions in replay memory"
            )
        episodes = [self.memory[i] for i in indices]
        starts = [int(self.rng.integers(0, len(ep) - min_length + 1)) for ep in episodes]

        self._clear_buffers()
        for n, (episode, s) in enumerate(zip(episodes, starts)):
            for p in range(f - 1):
                self._frames[n, p] = episode[s + p].frame

        for u in range(self.unroll):
            windows: List[FrameWindow] = []
            for episode, s in zip(episodes, starts):
                ts = s + u + f - 1
                windows.append(_next_state_window(episode, s + u, ts))
            max_q = self._clone_max_q(windows, u > 0)

            for n, (episode, s) in enumerate(zip(episodes, starts)):
                ts = s + u + f - 1
                self._frames[n, u + f - 1] = episode[ts].frame
                self._stage_target(u, n, episode, ts, max_q)

        self._cont[0, :] = 0.0
        self._cont[1:, :] = 1.0
        self._train()
        log_update('random', self.live.iteration, 1, self.last_loss)
        return 1

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _clear_buffers(self) -> None:
        self._frames.fill(0.0)
        self._cont.fill(0.0)
        self._targets.fill(0.0)
        self._filters.fill(0.0)

    def _stage_sequential_frames(self, episodes: List[Episode], start: int) -> None:
        # Position p holds the frame at time start - (F - 1) + p
        offset = start - (self.frames_per_timestep - 1)
        for n, episode in enumerate(episodes):
            for p in range(self._frames.shape[1]):
                t = offset + p
                if 0 <= t < len(episode):
                    self._frames[n, p] = episode[t].frame

    def _clone_max_q(self, windows: List[FrameWindow], cont) -> List[Optional[float]]:
        """Max legal clone Q-value per slot (None where the window is None)."""
        if all(w is None for w in windows):
            return [None] * len(windows)
        q_values = self.clone.evaluate_batch(windows, cont)
        best = greedy_action_values(q_values, self.legal_actions)
        return [None if w is None else best[n].value for n, w in enumerate(windows)]

    def _stage_target(
        self,
        step: int,
        slot: int,
        episode: Episode,
        t: int,
        max_q: List[Optional[float]]
    ) -> None:
        assert 0 <= t < len(episode), f"Index {t} outside episode of length {len(episode)}"
        transition = episode[t]
        reward = transition.reward
        action = transition.action
        assert -1.0 <= reward <= 1.0, f"Reward {reward} outside [-1, 1]"
        assert 0 <= action < self.num_outputs, f"Action {action} outside output range"

        if transition.terminal:
            target = reward
        else:
            assert max_q[slot] is not None
            target = reward + self.gamma * max_q[slot]
        assert math.isfinite(target), f"Non-finite target {target}"

        self._targets[step, slot, action] = target
        self._filters[step, slot, action] = 1.0

    def _train(self) -> None:
        self.last_loss = self.live.train_step(
            self._frames, self._cont, self._targets, self._filters
        )


def _next_state_window(episode: Episode, first: int, last: int) -> FrameWindow:
    """Next frames of transitions first..last, or None if last is terminal."""
    if episode[last].terminal:
        return None
    return [episode[k].next_frame for k in range(first, last + 1)]
