"""
Deep Recurrent Q-Network (DRQN) Architecture
============================================

The neural network that approximates Q-values from a short history of
preprocessed frames, carrying an LSTM hidden state across timesteps.

Theory:
    A single frame does not reveal velocities, and games are only partially
    observable. The LSTM integrates information over time so the network can
    act on what it has seen before, not only on the current frame.

    Input:  (T, N, F, 84, 84) frames and a (T, N) continuation mask
    Output: (T, N, A) Q-values

The continuation mask makes hidden-state resets explicit: where cont is 0
the hidden state is zeroed before the timestep is processed (start of an
episode or of a training window), where it is 1 the previous state is kept.

References:
    Hausknecht & Stone, 2015 - "Deep Recurrent Q-Learning for Partially Observable MDPs"
"""

from typing import Optional, Tuple

import torch
import torch.nn as nn
import torch.nn.functional as F

from config import Config

Hidden = Tuple[torch.Tensor, torch.Tensor]


class DRQN(nn.Module):
    """
    Convolutional recurrent Q-network.

    Architecture:
        conv(32, 8x8, s4) -> conv(64, 4x4, s2) -> conv(64, 3x3, s1)
        -> LSTM(LSTM_SIZE) (or dense + ReLU without recurrence)
        -> Linear(num_outputs)

    Example:
        >>> net = DRQN(num_outputs=18, config=Config())
        >>> frames = torch.zeros(1, 4, 1, 84, 84)
        >>> cont = torch.zeros(1, 4)
        >>> q_values, hidden = net(frames, cont)  # q_values: (1, 4, 18)
    """

    def __init__(self, num_outputs: int, config: Optional[Config] = None):
        """
        Initialize the DRQN.

        Args:
            num_outputs: Number of Q-values produced per timestep
            config: Configuration object
        """
        super(DRQN, self).__init__()

        self.config = config or Config()
        self.num_outputs = num_outputs
        self.frames_per_timestep = self.config.FRAMES_PER_TIMESTEP
        self.frame_size = self.config.FRAME_SIZE
        self.hidden_size = self.config.LSTM_SIZE
        self.recurrent = self.config.USE_LSTM or self.config.UNROLL > 1
        self.negative_slope = self.config.LEAKY_RELU_SLOPE

        self.conv1 = nn.Conv2d(self.frames_per_timestep, 32, kernel_size=8, stride=4)
        self.conv2 = nn.Conv2d(32, 64, kernel_size=4, stride=2)
        self.conv3 = nn.Conv2d(64, 64, kernel_size=3, stride=1)
        self.conv_output_size = self._conv_output_size()

        if self.recurrent:
            self.lstm = nn.LSTM(self.conv_output_size, self.hidden_size)
        else:
            self.ip1 = nn.Linear(self.conv_output_size, self.hidden_size)
        self.ip2 = nn.Linear(self.hidden_size, num_outputs)

        self._init_weights()

    def _conv_output_size(self) -> int:
        """Flattened size of the conv stack output for one frame stack."""
        with torch.no_grad():
            dummy = torch.zeros(1, self.frames_per_timestep, self.frame_size, self.frame_size)
            return int(self._features(dummy).shape[1])

    def _init_weights(self) -> None:
        """
        Gaussian convolutions, small uniform LSTM weights, constant biases.
        """
        for conv in (self.conv1, self.conv2, self.conv3):
            nn.init.normal_(conv.weight, std=0.01)
            nn.init.constant_(conv.bias, 0.0)
        if self.recurrent:
            for name, param in self.lstm.named_parameters():
                if name.startswith('weight'):
                    nn.init.uniform_(param, -0.08, 0.08)
                else:
                    nn.init.constant_(param, 0.0)
        else:
            nn.init.normal_(self.ip1.weight, std=0.005)
            nn.init.constant_(self.ip1.bias, 1.0)
        nn.init.normal_(self.ip2.weight, std=0.005)
        nn.init.constant_(self.ip2.bias, 1.0)

    def _features(self, x: torch.Tensor) -> torch.Tensor:
        x = F.leaky_relu(self.conv1(x), self.negative_slope)
        x = F.leaky_relu(self.conv2(x), self.negative_slope)
        x = F.leaky_relu(self.conv3(x), self.negative_slope)
        return x.flatten(start_dim=1)

    def initial_hidden(self, batch_size: int, device: torch.device) -> Hidden:
        """Zero LSTM state for a batch."""
        shape = (1, batch_size, self.hidden_size)
        return torch.zeros(shape, device=device), torch.zeros(shape, device=device)

    def forward(
        self,
        frames: torch.Tensor,
        cont: torch.Tensor,
        hidden: Optional[Hidden] = None
    ) -> Tuple[torch.Tensor, Optional[Hidden]]:
        """
        Forward pass over T timesteps.

        Args:
            frames: (T, N, F, 84, 84) tensor of raw intensities in [0, 255]
            cont: (T, N) continuation mask (0 resets the hidden state)
            hidden: LSTM state from a previous call, zeros if None

        Returns:
            (q_values of shape (T, N, num_outputs), new hidden state)
        """
        steps, batch = frames.shape[0], frames.shape[1]
        x = frames.reshape(steps * batch, self.frames_per_timestep,
                           self.frame_size, self.frame_size) / 255.0
        x = self._features(x).reshape(steps, batch, -1)

        if self.recurrent:
            h, c = hidden if hidden is not None else self.initial_hidden(batch, frames.device)
            outputs = []
            for t in range(steps):
                mask = cont[t].reshape(1, batch, 1).to(x.dtype)
                h, c = h * mask, c * mask
                out, (h, c) = self.lstm(x[t:t + 1], (h, c))
                outputs.append(out)
            x = torch.cat(outputs, dim=0)
            hidden = (h, c)
        else:
            x = F.relu(self.ip1(x))

        return self.ip2(x), hidden

    def count_parameters(self) -> int:
        """Return total number of trainable parameters."""
        return sum(p.numel() for p in self.parameters() if p.requires_grad)
