"""
DRQN Agent
==========

The session object that ties the recurrent DQN core together.

Key Components:
    1. Live Engine       - Owns the network and the optimizer
    2. Evaluation Engine - Shares the live parameters, selects actions
    3. Clone             - Frozen copy used for bootstrapped targets
    4. Replay Memory     - Complete episodes for sequence training
    5. Checkpoints       - Snapshot families for resuming

Training Loop (driven by the caller):
    1. Observe a screen, preprocess it into a frame
    2. Choose an action with select_action() (epsilon-greedy)
    3. Record (frame, action, reward) until the episode ends
    4. remember_episode() the complete episode
    5. update() - sequential or random window training
    6. snapshot() whenever should_snapshot() says so

References:
    Hausknecht & Stone, 2015 - "Deep Recurrent Q-Learning for Partially Observable MDPs"
"""

from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Optional, Sequence, Union
import os
import time

import numpy as np
import torch

from config import Config
from .checkpoint import CheckpointCoordinator
from .engine import ValueFunctionEngine
from .policy import ActionSelector, ActionValue, annealed_epsilon
from .replay_memory import Episode, ReplayMemory
from .updates import TrainingUpdateEngine
from ..utils.logger import get_logger, log_model_event

logger = get_logger(__name__)


@dataclass
class BenchmarkResult:
    """Timings of one benchmark run."""
    iterations: int
    avg_update_ms: float
    avg_select_ms: float
    total_ms: float
    hours_per_million_iters: float
    device: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class Agent:
    """
    Recurrent DQN agent.

    The agent holds three engines over one network family:
        - live:       updated every training step
        - evaluation: same parameters, own recurrent state for acting
        - clone:      refreshed every CLONE_FREQUENCY iterations

    Example:
        >>> agent = Agent(legal_actions=[0, 1, 3, 4])
        >>> action = agent.select_action([frame], epsilon=0.1, cont=False)
        >>> agent.remember_episode(episode)
        >>> agent.update()
    """

    def __init__(
        self,
        legal_actions: Sequence[int],
        config: Optional[Config] = None
    ):
        """
        Initialize the agent.

        Args:
            legal_actions: Output indices the environment accepts
            config: Configuration object
        """
        self.config = config or Config()
        self.legal_actions = [int(a) for a in legal_actions]
        assert all(0 <= a < self.config.OUTPUT_COUNT for a in self.legal_actions), \
            "Legal actions must be valid network outputs"

        if self.config.SEED is not None:
            torch.manual_seed(self.config.SEED)
        self.rng = np.random.default_rng(self.config.SEED)

        self.memory = ReplayMemory(self.config.REPLAY_MEMORY_CAPACITY)
        self.live = ValueFunctionEngine.create(self.config, self.config.OUTPUT_COUNT)
        self.evaluation = self.live.shared()
        self.selector = ActionSelector(
            self.legal_actions, self.evaluation, self.rng, self.config.MINIBATCH_SIZE
        )
        self.updater = TrainingUpdateEngine(
            self.memory, self.live, self.evaluation, self.legal_actions, self.config, self.rng
        )
        self.checkpoints = CheckpointCoordinator(self.live, self.memory)

        logger.info(
            f"Agent initialized on {self.live.device} "
            f"({self.live.network.count_parameters():,} parameters, "
            f"{len(self.legal_actions)} legal actions)"
        )

    # =========================================================================
    # ACTING
    # =========================================================================

    def select_action(
        self,
        frames: Sequence[np.ndarray],
        epsilon: Optional[float] = None,
        cont: bool = False
    ) -> int:
        """
        Epsilon-greedy action for one game (cont=False at episode start).

        Without an explicit epsilon the agent acts with EVAL_EPSILON, the
        exploration rate used when playing a trained model.
        """
        if epsilon is None:
            epsilon = self.config.EVAL_EPSILON
        return self.selector.select_action(frames, epsilon, cont)

    def select_actions(
        self,
        frames_batch: Sequence[Sequence[np.ndarray]],
        epsilon: Optional[float] = None,
        cont: Union[bool, Sequence[bool]] = False
    ) -> List[int]:
        """Epsilon-greedy actions for a batch of games (EVAL_EPSILON by default)."""
        if epsilon is None:
            epsilon = self.config.EVAL_EPSILON
        return self.selector.select_actions(frames_batch, epsilon, cont)

    def select_greedily(
        self,
        frames_batch: Sequence[Sequence[np.ndarray]],
        cont: Union[bool, Sequence[bool]]
    ) -> List[ActionValue]:
        return self.selector.select_greedily(frames_batch, cont)

    def epsilon(self) -> float:
        """Exploration rate for the current iteration."""
        return annealed_epsilon(
            self.current_iteration(),
            self.config.EPSILON_START,
            self.config.EPSILON_END,
            self.config.EPSILON_ANNEAL_ITERS
        )

    # =========================================================================
    # MEMORY
    # =========================================================================

    def remember_episode(self, episode: Episode) -> None:
        self.memory.append(episode)

    def clear_replay_memory(self) -> None:
        self.memory.clear()

    def snapshot_replay_memory(self, filepath: Union[str, os.PathLike]) -> None:
        self.memory.save(filepath)

    def load_replay_memory(self, filepath: Union[str, os.PathLike]) -> None:
        self.memory.load(filepath)

    def memory_episodes(self) -> int:
        return self.memory.num_episodes

    def memory_size(self) -> int:
        return len(self.memory)

    # =========================================================================
    # TRAINING
    # =========================================================================

    def update(self) -> int:
        """Run one update with the configured strategy."""
        if self.config.UPDATE_STRATEGY == 'random':
            return self.update_random()
        return self.update_sequential()

    def update_sequential(self) -> int:
        return self.updater.update_sequential()

    def update_random(self) -> int:
        return self.updater.update_random()

    def current_iteration(self) -> int:
        return self.live.iteration

    def clone_test_net(self) -> None:
        """Refresh the target clone from the evaluation engine now."""
        self.updater.refresh_clone()

    @property
    def last_loss(self) -> Optional[float]:
        return self.updater.last_loss

    # =========================================================================
    # PERSISTENCE
    # =========================================================================

    def load_trained_model(self, filepath: Union[str, os.PathLike]) -> None:
        """Load network weights (e.g. for evaluation) and refresh the clone."""
        self.live.restore_weights(filepath)
        self.evaluation.reset_state()
        self.clone_test_net()
        log_model_event('load', os.fspath(filepath), iteration=self.current_iteration())

    def restore_solver(
        self,
        solverstate_path: Union[str, os.PathLike],
        load_memory: bool = True
    ) -> int:
        """Restore one snapshot family and refresh the clone."""
        iteration = self.checkpoints.restore(solverstate_path, load_memory=load_memory)
        self.evaluation.reset_state()
        self.clone_test_net()
        return iteration

    def snapshot(
        self,
        prefix: Optional[str] = None,
        remove_old: Optional[bool] = None,
        snapshot_memory: Optional[bool] = None
    ) -> int:
        """Write a snapshot family (defaults from the config)."""
        return self.checkpoints.snapshot(
            prefix or self.config.SNAPSHOT_PREFIX,
            remove_old=self.config.REMOVE_OLD_SNAPSHOTS if remove_old is None else remove_old,
            snapshot_memory=self.config.SNAPSHOT_MEMORY if snapshot_memory is None
            else snapshot_memory,
        )

    def should_snapshot(self, iteration: Optional[int] = None) -> bool:
        """True when the iteration (default: current) is a positive multiple of SNAPSHOT_EVERY."""
        if iteration is None:
            iteration = self.current_iteration()
        return iteration > 0 and iteration % self.config.SNAPSHOT_EVERY == 0

    def resume(self, prefix: Optional[str] = None) -> Optional[int]:
        """
        Resume from the newest complete snapshot of the prefix.

        Returns:
            Restored iteration, or None when starting fresh
        """
        iteration = self.checkpoints.resume_latest(prefix or self.config.SNAPSHOT_PREFIX)
        if iteration is not None:
            self.evaluation.reset_state()
            self.clone_test_net()
        return iteration

    # =========================================================================
    # BENCHMARK
    # =========================================================================

    def benchmark(self, iterations: int = 1000) -> BenchmarkResult:
        """
        Time random updates and action selection.

        Episode 0 is duplicated until the memory holds a full minibatch of
        episodes or another copy would evict an episode, so at least one
        stored episode must be long enough for a random window.
        """
        assert iterations > 0, "Benchmark needs at least one iteration"
        assert self.memory.num_episodes > 0, "Benchmark needs at least one episode"
        self.update_random()
        episode = self.memory[0]
        while (self.memory_episodes() < self.config.MINIBATCH_SIZE
               and self.memory_size() + len(episode) <= self.memory.capacity):
            self.remember_episode(episode)
        if self.memory_episodes() < self.config.MINIBATCH_SIZE:
            logger.warning(
                f"Replay memory holds only {self.memory_episodes()} copies of a "
                f"{len(episode)}-step episode; minibatches will be partial"
            )

        logger.info("*** Benchmark begins ***")
        logger.info(f"Testing for {iterations} iterations.")
        total_start = time.perf_counter()

        update_start = time.perf_counter()
        for _ in range(iterations):
            self.update_random()
        update_ms = (time.perf_counter() - update_start) * 1000.0
        logger.info(f"Average Update: {update_ms / iterations:.3f} ms.")

        f = self.config.FRAMES_PER_TIMESTEP
        assert len(episode) >= f, "Episode 0 is shorter than one frame window"
        frames = [episode[i].frame for i in range(f)]

        select_start = time.perf_counter()
        for _ in range(iterations):
            self.select_action(frames, 0.0, True)
        select_ms = (time.perf_counter() - select_start) * 1000.0
        logger.info(f"Average Select Action: {select_ms / iterations:.3f} ms.")

        total_ms = (time.perf_counter() - total_start) * 1000.0
        hours = 1_000_000.0 / iterations * total_ms / 1000.0 / 3600.0
        logger.info(f"Total Time: {total_ms:.1f} ms.")
        logger.info(f"Estimated Time to 1M iters: {hours:.2f} hours.")
        logger.info("*** Benchmark ends ***")

        return BenchmarkResult(
            iterations=iterations,
            avg_update_ms=update_ms / iterations,
            avg_select_ms=select_ms / iterations,
            total_ms=total_ms,
            hours_per_million_iters=hours,
            device=str(self.live.device),
        )

