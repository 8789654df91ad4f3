"""
Recurrent Deep Q-Network - Source Package
=========================================

This package contains the training and inference core of a recurrent DQN
agent for pixel-based games.

Modules:
    ai/    - Frame preprocessing, replay memory, value engine, action
             selection, training updates and checkpoints
    utils/ - Logging infrastructure
"""

__version__ = "1.0.0"
