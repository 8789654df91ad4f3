"""
Value Function Engine
=====================

The only interface through which the core touches trainable parameters.

One class, three roles:
    live        - owns the network and the optimizer, receives train_step()
    evaluation  - shares the live parameters at all times, keeps its own
                  recurrent state; used for action selection
    target      - an independent copy refreshed every CLONE_FREQUENCY
                  iterations; used to compute bootstrapped targets

Recurrent continuity is part of every call: a continuation flag per batch
slot says whether the hidden state of that slot carries over from the
previous call (True) or is reset to zero (False).
"""

from typing import Any, Dict, Optional, Sequence, Union
import copy
import math
import os

import numpy as np
import torch
import torch.nn.functional as F
import torch.optim as optim

from config import Config
from .network import DRQN, Hidden

FrameWindow = Optional[Sequence[np.ndarray]]


class ValueFunctionEngine:
    """
    Batched Q-value evaluation and masked training on a DRQN.

    Example:
        >>> live = ValueFunctionEngine.create(config, num_outputs=18)
        >>> evaluation = live.shared()
        >>> target = evaluation.clone()
        >>> q_values = evaluation.evaluate_batch([[frame]], cont=False)
    """

    def __init__(
        self,
        network: DRQN,
        config: Optional[Config] = None,
        optimizer: Optional[optim.Optimizer] = None,
        device: Optional[torch.device] = None
    ):
        """
        Initialize the engine.

        Args:
            network: The network evaluated (and trained, if optimizer is set)
            config: Configuration object
            optimizer: Optimizer over network parameters (live role only)
            device: Torch device of the network
        """
        self.config = config or Config()
        self.network = network
        self.optimizer = optimizer
        self.device = device or torch.device('cpu')
        self.num_outputs = network.num_outputs

        self.minibatch_size = self.config.MINIBATCH_SIZE
        self.frames_per_timestep = self.config.FRAMES_PER_TIMESTEP
        self.unroll = self.config.UNROLL
        self.frame_size = self.config.FRAME_SIZE

        self._iteration = 0
        self._parent: Optional['ValueFunctionEngine'] = None

        # Recurrent state carried between evaluate_batch() / train_step() calls
        self._eval_hidden: Optional[Hidden] = None
        self._train_hidden: Optional[Hidden] = None

        # Pre-allocated staging buffers (zero-filled before every use)
        n, f, s = self.minibatch_size, self.frames_per_timestep, self.frame_size
        self._frame_buffer = np.zeros((n, f, s, s), dtype=np.float32)
        self._cont_buffer = np.zeros((1, n), dtype=np.float32)
        self._frame_input = torch.zeros((n, f, s, s), dtype=torch.float32, device=self.device)
        self._cont_input = torch.zeros((1, n), dtype=torch.float32, device=self.device)

    @classmethod
    def create(cls, config: Config, num_outputs: int) -> 'ValueFunctionEngine':
        """Build the live engine: a fresh network plus its Adam optimizer."""
        device = config.DEVICE
        network = DRQN(num_outputs, config).to(device)
        optimizer = optim.Adam(network.parameters(), lr=config.LEARNING_RATE)
        return cls(network, config, optimizer, device)

    # =========================================================================
    # ROLES
    # =========================================================================

    def shared(self) -> 'ValueFunctionEngine':
        """Engine over the same parameters with its own recurrent state."""
        engine = ValueFunctionEngine(self.network, self.config, device=self.device)
        engine._parent = self
        return engine

    def clone(self) -> 'ValueFunctionEngine':
        """Engine over an independent, frozen copy of the parameters."""
        network = copy.deepcopy(self.network)
        for param in network.parameters():
            param.requires_grad_(False)
        network.eval()
        return ValueFunctionEngine(network, self.config, device=self.device)

    def copy_from(self, source: 'ValueFunctionEngine') -> None:
        """Overwrite this engine's parameters with the source's."""
        with torch.no_grad():
            self.network.load_state_dict(source.network.state_dict())

    @property
    def iteration(self) -> int:
        """Number of optimizer steps taken by the live engine."""
        if self._parent is not None:
            return self._parent.iteration
        return self._iteration

    def reset_state(self) -> None:
        """Forget the recurrent state of every batch slot."""
        self._eval_hidden = None
        self._train_hidden = None

    # =========================================================================
    # EVALUATION
    # =========================================================================

    def evaluate_batch(
        self,
        frame_windows: Sequence[FrameWindow],
        cont: Union[bool, Sequence[bool]]
    ) -> np.ndarray:
        """
        Evaluate one recurrent timestep for a batch of frame windows.

        Args:
            frame_windows: Per slot, FRAMES_PER_TIMESTEP frames (oldest first),
                           or None for an inactive slot
            cont: Continuation flag for the whole batch or one per slot

        Returns:
            (len(frame_windows), num_outputs) array of Q-values
        """
        batch = len(frame_windows)
        assert batch <= self.minibatch_size, \
            f"Batch of {batch} exceeds minibatch size {self.minibatch_size}"

        self._frame_buffer.fill(0.0)
        for n, window in enumerate(frame_windows):
            if window is None:
                continue
            assert len(window) == self.frames_per_timestep, \
                f"Expected {self.frames_per_timestep} frames, got {len(window)}"
            for i, frame in enumerate(window):
                self._frame_buffer[n, i] = frame

        if np.isscalar(cont):
            self._cont_buffer.fill(float(cont))
        else:
            assert len(cont) == batch, "One continuation flag per slot expected"
            self._cont_buffer.fill(0.0)
            self._cont_buffer[0, :batch] = np.asarray(cont, dtype=np.float32)

        self._frame_input.copy_(torch.from_numpy(self._frame_buffer))
        self._cont_input.copy_(torch.from_numpy(self._cont_buffer))

        with torch.no_grad():
            q_values, self._eval_hidden = self.network(
                self._frame_input.unsqueeze(0), self._cont_input, self._eval_hidden
            )
        result = q_values[0, :batch].cpu().numpy()
        assert np.all(np.isfinite(result)), "Non-finite Q-values"
        return result

    # =========================================================================
    # TRAINING
    # =========================================================================

    def train_step(
        self,
        frames: np.ndarray,
        cont: np.ndarray,
        targets: np.ndarray,
        filters: np.ndarray
    ) -> float:
        """
        One optimizer step on the masked squared error.

        Args:
            frames: (N, UNROLL + F - 1, 84, 84); timestep t sees frames[:, t:t+F]
            cont: (UNROLL, N) continuation mask
            targets: (UNROLL, N, num_outputs) target Q-values
            filters: (UNROLL, N, num_outputs) 1 where a target applies, else 0

        Returns:
            Loss value
        """
        assert self.optimizer is not None, "train_step() requires the live engine"
        n = self.minibatch_size
        f = self.frames_per_timestep
        assert frames.shape == (n, self.unroll + f - 1, self.frame_size, self.frame_size), \
            f"Unexpected frames shape {frames.shape}"
        assert cont.shape == (self.unroll, n), f"Unexpected cont shape {cont.shape}"
        assert targets.shape == filters.shape == (self.unroll, n, self.num_outputs), \
            "Unexpected target/filter shape"

        frames_t = torch.from_numpy(np.asarray(frames, dtype=np.float32)).to(self.device)
        cont_t = torch.from_numpy(np.asarray(cont, dtype=np.float32)).to(self.device)
        targets_t = torch.from_numpy(np.asarray(targets, dtype=np.float32)).to(self.device)
        filters_t = torch.from_numpy(np.asarray(filters, dtype=np.float32)).to(self.device)

        # (T, N, F, 84, 84): timestep t uses the F frames ending at t + F - 1
        sequence = torch.stack([frames_t[:, t:t + f] for t in range(self.unroll)])

        self.network.train()
        q_values, hidden = self.network(sequence, cont_t, self._train_hidden)
        loss = F.mse_loss(q_values * filters_t, targets_t, reduction='sum') / (2 * n)

        self.optimizer.zero_grad()
        loss.backward()
        if self.config.GRAD_CLIP > 0:
            torch.nn.utils.clip_grad_norm_(self.network.parameters(), self.config.GRAD_CLIP)
        self.optimizer.step()

        if hidden is not None:
            self._train_hidden = (hidden[0].detach(), hidden[1].detach())
        self._iteration += 1

        loss_value = loss.item()
        assert math.isfinite(loss_value), "Non-finite training loss"
        return loss_value

    # =========================================================================
    # PERSISTENCE
    # =========================================================================

    def save_weights(self, filepath: Union[str, os.PathLike]) -> None:
        torch.save(self.network.state_dict(), filepath)

    def read_weights(self, filepath: Union[str, os.PathLike]) -> Dict[str, torch.Tensor]:
        """
        Read a weights file without touching the network.

        Raises:
            ValueError: If the file holds no state dict for this network
        """
        state_dict = torch.load(filepath, map_location=self.device)
        expected = self.network.state_dict()
        if not isinstance(state_dict, dict) or set(state_dict) != set(expected):
            raise ValueError(f"{filepath} does not hold weights for this network")
        for key, tensor in expected.items():
            if tuple(state_dict[key].shape) != tuple(tensor.shape):
                raise ValueError(
                    f"{filepath}: {key} has shape {tuple(state_dict[key].shape)}, "
                    f"expected {tuple(tensor.shape)}"
                )
        return state_dict

    def apply_weights(self, state_dict: Dict[str, torch.Tensor]) -> None:
        self.network.load_state_dict(state_dict)

    def restore_weights(self, filepath: Union[str, os.PathLike]) -> None:
        self.apply_weights(self.read_weights(filepath))

    def save_optimizer_state(self, filepath: Union[str, os.PathLike]) -> None:
        assert self.optimizer is not None, "Only the live engine has optimizer state"
        torch.save({
            'iteration': self._iteration,
            'optimizer_state_dict': self.optimizer.state_dict(),
        }, filepath)

    def read_optimizer_state(self, filepath: Union[str, os.PathLike]) -> Dict[str, Any]:
        """
        Read an optimizer state file without touching the optimizer.

        Raises:
            ValueError: If the file is not an optimizer state written by
                        save_optimizer_state()
        """
        data = torch.load(filepath, map_location=self.device)
        if not isinstance(data, dict) or 'optimizer_state_dict' not in data:
            raise ValueError(f"{filepath} is not a valid optimizer state")
        return data

    def apply_optimizer_state(self, data: Dict[str, Any]) -> None:
        """Load optimizer state and iteration counter read by read_optimizer_state()."""
        assert self.optimizer is not None, "Only the live engine has optimizer state"
        self.optimizer.load_state_dict(data['optimizer_state_dict'])
        self._iteration = int(data.get('iteration', 0))

    def restore_optimizer_state(self, filepath: Union[str, os.PathLike]) -> None:
        """Restore optimizer state and iteration counter from a file."""
        assert self.optimizer is not None, "Only the live engine has optimizer state"
        self.apply_optimizer_state(self.read_optimizer_state(filepath))
