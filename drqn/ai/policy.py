"""
Epsilon-Greedy Action Selection
===============================

Balances exploration and exploitation for a batch of parallel games:

    - With probability epsilon: every item gets a uniformly random legal action
    - Otherwise: the evaluation engine is queried and every item gets the
      legal action with the highest Q-value

The coin is flipped once per call, not per item, so a whole batch either
explores or exploits. Ties between equal Q-values go to the action listed
first in the legal action set.
"""

from typing import List, NamedTuple, Optional, Sequence, Union

import numpy as np

from .engine import FrameWindow, ValueFunctionEngine


class ActionValue(NamedTuple):
    """Greedy choice for one input: the action and its estimated Q-value."""
    action: int
    value: float


def greedy_action_values(
    q_values: np.ndarray,
    legal_actions: Sequence[int]
) -> List[ActionValue]:
    """
    Pick the best legal action per row of a Q-value matrix.

    Args:
        q_values: (N, num_outputs) Q-values
        legal_actions: Output indices that may be chosen

    Returns:
        One ActionValue per row (first legal action wins ties)
    """
    legal = np.asarray(legal_actions, dtype=np.int64)
    legal_q = np.asarray(q_values)[:, legal]
    assert not np.any(np.isnan(legal_q)), "NaN Q-value"
    best = np.argmax(legal_q, axis=1)
    return [ActionValue(int(legal[b]), float(legal_q[n, b])) for n, b in enumerate(best)]


def annealed_epsilon(
    iteration: int,
    start: float,
    end: float,
    anneal_iters: int
) -> float:
    """Linearly anneal epsilon from start to end over anneal_iters iterations."""
    if anneal_iters <= 0 or iteration >= anneal_iters:
        return end
    return start - (start - end) * (iteration / float(anneal_iters))


class ActionSelector:
    """
    Epsilon-greedy policy over the evaluation engine.

    Attributes:
        legal_actions: Output indices the environment accepts
        engine: Evaluation engine queried for greedy choices
        last_action_explored: Whether the last call took random actions

    Example:
        >>> selector = ActionSelector([0, 1, 3, 4], evaluation, rng, 32)
        >>> actions = selector.select_actions(frames_batch, epsilon=0.1, cont=True)
    """

    def __init__(
        self,
        legal_actions: Sequence[int],
        engine: ValueFunctionEngine,
        rng: np.random.Generator,
        minibatch_size: int
    ):
        assert len(legal_actions) > 0, "At least one legal action is required"
        self.legal_actions = [int(a) for a in legal_actions]
        self.engine = engine
        self.rng = rng
        self.minibatch_size = minibatch_size
        self.last_action_explored = False

    def select_action(
        self,
        frames: Sequence[np.ndarray],
        epsilon: float,
        cont: bool
    ) -> int:
        """
        Select an action for a single game.

        Args:
            frames: The FRAMES_PER_TIMESTEP most recent frames
            epsilon: Exploration rate in [0, 1]
            cont: False resets the recurrent state (start of an episode)
        """
        return self.select_actions([frames], epsilon, cont)[0]

    def select_actions(
        self,
        frames_batch: Sequence[Sequence[np.ndarray]],
        epsilon: float,
        cont: Union[bool, Sequence[bool]]
    ) -> List[int]:
        """
        Select one action per game with a single shared exploration coin.

        Args:
            frames_batch: One frame window per game
            epsilon: Exploration rate in [0, 1]
            cont: Continuation flag(s) passed to the evaluation engine

        Returns:
            Selected action per game
        """
        assert 0.0 <= epsilon <= 1.0, f"Epsilon {epsilon} outside [0, 1]"
        assert len(frames_batch) <= self.minibatch_size, \
            f"Batch of {len(frames_batch)} exceeds minibatch size {self.minibatch_size}"

        if self.rng.random() < epsilon:
            # Exploration: random legal action for every game
            self.last_action_explored = True
            picks = self.rng.integers(0, len(self.legal_actions), size=len(frames_batch))
            return [self.legal_actions[int(i)] for i in picks]

        # Exploitation: best Q-value action
        self.last_action_explored = False
        actions_and_values = self.select_greedily(frames_batch, cont)
        assert len(actions_and_values) == len(frames_batch)
        return [av.action for av in actions_and_values]

    def select_greedily(
        self,
        frames_batch: Sequence[FrameWindow],
        cont: Union[bool, Sequence[bool]],
        engine: Optional[ValueFunctionEngine] = None
    ) -> List[ActionValue]:
        """
        Evaluate a batch and return the greedy action and value per item.

        Args:
            frames_batch: One frame window per item
            cont: Continuation flag(s)
            engine: Engine to query (defaults to the evaluation engine)
        """
        if len(frames_batch) == 0:
            return []
        engine = engine or self.engine
        q_values = engine.evaluate_batch(frames_batch, cont)
        return greedy_action_values(q_values, self.legal_actions)
