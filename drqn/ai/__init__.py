"""
AI Module
=========

Recurrent deep Q-learning components.

Classes:
    DRQN                   - Convolutional LSTM Q-network
    ValueFunctionEngine    - Batched evaluation and masked training
    ReplayMemory           - Episodic experience memory
    ActionSelector         - Epsilon-greedy action selection
    TrainingUpdateEngine   - Sequential and random window updates
    CheckpointCoordinator  - Snapshot families and resuming
    Agent                  - Session object wiring everything together
"""

from .network import DRQN
from .engine import ValueFunctionEngine
from .frames import FramePreprocessor, preprocess_screen
from .replay_memory import ReplayMemory, ReplayMemoryFormatError, Transition, EpisodeRecorder
from .policy import ActionSelector, ActionValue
from .updates import TrainingUpdateEngine, NoEligibleEpisodeError
from .checkpoint import CheckpointCoordinator, find_latest_snapshot
from .agent import Agent

__all__ = [
    'DRQN', 'ValueFunctionEngine', 'FramePreprocessor', 'preprocess_screen',
    'ReplayMemory', 'ReplayMemoryFormatError', 'Transition', 'EpisodeRecorder',
    'ActionSelector', 'ActionValue', 'TrainingUpdateEngine', 'NoEligibleEpisodeError',
    'CheckpointCoordinator', 'find_latest_snapshot', 'Agent',
]
