"""
Configuration file for the Recurrent DQN core
=============================================

All hyperparameters for the replay memory, the recurrent Q-network and the
training updates are centralized here.
Modify these values to experiment with different training configurations.

Usage:
    from config import Config
    cfg = Config()
    print(cfg.UNROLL)
"""

from dataclasses import dataclass
from typing import Optional
import torch


@dataclass
class Config:
    """
    Central configuration for the entire project.

    Sections:
    1. Replay Memory - Capacity of the episodic memory
    2. Q-Learning - Discount, target clone and unroll settings
    3. Neural Network - Recurrent network sizes
    4. Optimization - Solver hyperparameters
    5. Exploration - Epsilon-greedy settings
    6. Snapshots - Checkpoint naming and rotation
    7. System - Hardware, seed and paths
    """

    # =========================================================================
    # REPLAY MEMORY
    # =========================================================================

    # Maximum number of transitions kept in the replay memory.
    # Whole episodes are evicted (oldest first) once this is exceeded.
    REPLAY_MEMORY_CAPACITY: int = 400_000

    # =========================================================================
    # Q-LEARNING
    # =========================================================================

    # Discount factor (gamma) - How much to value future rewards
    GAMMA: float = 0.99

    # How often (in solver iterations) the target clone is refreshed
    CLONE_FREQUENCY: int = 10_000

    # Number of timesteps the recurrent layer is unrolled per training step
    UNROLL: int = 10

    # Number of episodes trained in parallel (also the widest action batch)
    MINIBATCH_SIZE: int = 32

    # Number of recent frames stacked as the input of a single timestep
    FRAMES_PER_TIMESTEP: int = 1

    # Update algorithm: 'sequential' (whole episodes) or 'random' (one window
    # per episode)
    UPDATE_STRATEGY: str = 'sequential'

    # =========================================================================
    # NEURAL NETWORK ARCHITECTURE
    # =========================================================================

    # Size of the network output (full ALE action set)
    OUTPUT_COUNT: int = 18

    # Side of the square preprocessed frame
    FRAME_SIZE: int = 84

    # Recurrent layer width
    LSTM_SIZE: int = 512

    # Use an LSTM even when UNROLL == 1 (otherwise a dense layer is used)
    USE_LSTM: bool = True

    # Negative slope of the leaky ReLU after every convolution
    LEAKY_RELU_SLOPE: float = 0.01

    # =========================================================================
    # OPTIMIZATION
    # =========================================================================

    # Learning rate - How big of steps to take during optimization
    LEARNING_RATE: float = 0.0001

    # Gradient clipping (max global norm) to prevent exploding gradients
    # Set to 0 to disable clipping
    GRAD_CLIP: float = 10.0

    # =========================================================================
    # EXPLORATION SETTINGS (Epsilon-Greedy)
    # =========================================================================

    # Starting exploration rate (1.0 = 100% random)
    EPSILON_START: float = 1.0

    # Final exploration rate after annealing
    EPSILON_END: float = 0.1

    # Number of solver iterations over which epsilon is annealed linearly
    EPSILON_ANNEAL_ITERS: int = 1_000_000

    # Exploration rate used while evaluating a trained model
    EVAL_EPSILON: float = 0.05

    # =========================================================================
    # SNAPSHOTS
    # =========================================================================

    # Files are written as <prefix>_iter_<N>.(pth|solverstate|replaymemory)
    SNAPSHOT_PREFIX: str = 'snapshots/drqn'

    # Snapshot every N solver iterations
    SNAPSHOT_EVERY: int = 100_000

    # Delete older snapshots sharing the prefix after a successful snapshot
    REMOVE_OLD_SNAPSHOTS: bool = True

    # Include the replay memory in snapshots (required for resuming)
    SNAPSHOT_MEMORY: bool = True

    # =========================================================================
    # SYSTEM SETTINGS
    # =========================================================================

    # Force CPU device
    FORCE_CPU: bool = False

    # Device selection
    @property
    def DEVICE(self) -> torch.device:
        """Auto-detect CUDA/MPS/CPU, or force CPU if configured."""
        if self.FORCE_CPU:
            return torch.device('cpu')
        if torch.cuda.is_available():
            return torch.device('cuda')
        elif hasattr(torch.backends, 'mps') and torch.backends.mps.is_available():
            return torch.device('mps')
        return torch.device('cpu')

    @property
    def FRAMES_PER_FORWARD(self) -> int:
        """Number of frames one training sequence needs per batch slot."""
        return self.UNROLL + self.FRAMES_PER_TIMESTEP - 1

    # Paths
    LOG_DIR: str = 'logs'

    # Logging verbosity: 'DEBUG', 'INFO', 'WARNING', 'ERROR'
    LOG_LEVEL: str = 'INFO'

    # Random seed for reproducibility (None for random)
    SEED: Optional[int] = 0

    def __post_init__(self):
        """Validation and derived calculations."""
        assert self.REPLAY_MEMORY_CAPACITY > 0, "Replay memory capacity must be positive"
        assert 0 < self.GAMMA <= 1, "Gamma must be in (0, 1]"
        assert self.CLONE_FREQUENCY > 0, "Clone frequency must be positive"
        assert self.UNROLL > 0, "Unroll must be positive"
        assert self.MINIBATCH_SIZE > 0, "Minibatch size must be positive"
        assert self.FRAMES_PER_TIMESTEP > 0, "Frames per timestep must be positive"
        assert self.UPDATE_STRATEGY in ('sequential', 'random'), \
            "Update strategy must be 'sequential' or 'random'"
        assert self.LEARNING_RATE > 0, "Learning rate must be positive"
        assert 0.0 <= self.EPSILON_END <= self.EPSILON_START <= 1.0, \
            "Epsilon must satisfy 0 <= end <= start <= 1"
        assert 0.0 <= self.EVAL_EPSILON <= 1.0, "Evaluation epsilon must be in [0, 1]"
        assert self.SNAPSHOT_EVERY > 0, "Snapshot interval must be positive"
        assert self.UNROLL == 1 or self.USE_LSTM, "Unrolling requires the LSTM layer"


# Global config instance for easy importing
config = Config()


if __name__ == "__main__":
    # Print configuration summary
    cfg = Config()
    print("=" * 60)
    print("Recurrent DQN - Configuration Summary")
    print("=" * 60)
    print(f"\nReplay memory: {cfg.REPLAY_MEMORY_CAPACITY:,} transitions")
    print(f"\nNetwork:")
    print(f"   Frames per timestep: {cfg.FRAMES_PER_TIMESTEP}")
    print(f"   LSTM size: {cfg.LSTM_SIZE} (enabled: {cfg.USE_LSTM})")
    print(f"   Outputs: {cfg.OUTPUT_COUNT}")
    print(f"\nTraining:")
    print(f"   Strategy: {cfg.UPDATE_STRATEGY}")
    print(f"   Minibatch: {cfg.MINIBATCH_SIZE} | Unroll: {cfg.UNROLL}")
    print(f"   Gamma: {cfg.GAMMA} | Clone every: {cfg.CLONE_FREQUENCY:,}")
    print(f"   Learning rate: {cfg.LEARNING_RATE}")
    print(f"\nExploration:")
    print(f"   Epsilon: {cfg.EPSILON_START} -> {cfg.EPSILON_END} over {cfg.EPSILON_ANNEAL_ITERS:,} iters")
    print(f"\nDevice: {cfg.DEVICE}")
    print("=" * 60)
