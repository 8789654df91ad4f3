#!/usr/bin/env python3
"""
Performance benchmark for recurrent DQN updates and action selection.

Usage:
    python benchmark.py                      # 1000 iterations, default network
    python benchmark.py --iterations 100     # Shorter run
    python benchmark.py --small              # Small LSTM / minibatch (quick check)
    python benchmark.py --cpu                # Force CPU
    python benchmark.py --save results.json  # Save results to file

Example output:
    Average Update: 41.212 ms.
    Average Select Action: 1.804 ms.
    Total Time: 43016.0 ms.
    Estimated Time to 1M iters: 11.95 hours.

Notes:
    - Episodes are synthetic (random frames, random legal actions, rewards
      in [-1, 1]) so the timings depend only on the network and the device
    - The replay memory is filled with copies of the first episode until it
      holds a full minibatch of episodes
"""

import argparse
import json
import platform
import sys
import time

import numpy as np
import torch

from config import Config
from drqn.ai.agent import Agent, BenchmarkResult
from drqn.ai.frames import CROPPED_FRAME_SIZE
from drqn.ai.replay_memory import make_episode
from drqn.utils.logger import get_log_path, setup_logging_from_config

# Minimal legal action set (NOOP, FIRE, UP, DOWN)
DEFAULT_LEGAL_ACTIONS = [0, 1, 2, 5]


def make_synthetic_episode(
    length: int,
    legal_actions,
    rng: np.random.Generator
):
    """Random-frame episode with random legal actions and rewards in [-1, 1]."""
    frames = []
    for _ in range(length):
        frame = rng.integers(0, 256, size=(CROPPED_FRAME_SIZE, CROPPED_FRAME_SIZE), dtype=np.uint8)
        frame.setflags(write=False)
        frames.append(frame)
    actions = rng.choice(legal_actions, size=length)
    rewards = rng.choice([-1.0, 0.0, 0.0, 0.0, 1.0], size=length)
    return make_episode(frames, actions, rewards)


def get_system_info() -> dict:
    """Collect system information for benchmark context."""
    info = {
        'python_version': sys.version.split()[0],
        'pytorch_version': torch.__version__,
        'platform': platform.platform(),
        'processor': platform.processor() or 'unknown',
        'cuda_available': torch.cuda.is_available(),
        'mps_available': hasattr(torch.backends, 'mps') and torch.backends.mps.is_available(),
    }

    if torch.cuda.is_available():
        info['cuda_device'] = torch.cuda.get_device_name(0)

    return info


def run_benchmark(config: Config, iterations: int, episode_length: int) -> BenchmarkResult:
    """Build an agent over synthetic episodes and time it."""
    agent = Agent(DEFAULT_LEGAL_ACTIONS, config)
    rng = np.random.default_rng(config.SEED)
    agent.remember_episode(make_synthetic_episode(episode_length, DEFAULT_LEGAL_ACTIONS, rng))
    return agent.benchmark(iterations)


def main():
    parser = argparse.ArgumentParser(
        description='Recurrent DQN Performance Benchmark',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python benchmark.py                      # Standard benchmark
  python benchmark.py --small --iterations 50
  python benchmark.py --cpu --save cpu.json
        """
    )
    parser.add_argument('--iterations', type=int, default=1000, help='Number of timed iterations')
    parser.add_argument('--episode-length', type=int, default=200, help='Length of the synthetic episode')
    parser.add_argument('--small', action='store_true', help='Small network and minibatch')
    parser.add_argument('--cpu', action='store_true', help='Force CPU')
    parser.add_argument('--save', type=str, help='Save results to JSON file')
    parser.add_argument('--quiet', action='store_true', help='Only log warnings')
    parser.add_argument('--log-file', action='store_true', help='Also log to a file in LOG_DIR')
    args = parser.parse_args()

    overrides = {'FORCE_CPU': args.cpu}
    if args.small:
        overrides.update({'LSTM_SIZE': 64, 'MINIBATCH_SIZE': 4, 'UNROLL': 4})
    config = Config(**overrides)

    setup_logging_from_config(config, quiet=args.quiet, file_output=args.log_file)

    if args.episode_length < config.FRAMES_PER_FORWARD:
        parser.error(f"--episode-length must be at least {config.FRAMES_PER_FORWARD}")

    sys_info = get_system_info()
    print("=" * 60)
    print("Recurrent DQN Performance Benchmark")
    print("=" * 60)
    print(f"\nSystem: {sys_info['platform']}")
    print(f"Python: {sys_info['python_version']} | PyTorch: {sys_info['pytorch_version']}")
    print(f"Minibatch: {config.MINIBATCH_SIZE} | Unroll: {config.UNROLL} | LSTM: {config.LSTM_SIZE}")
    print(f"Iterations: {args.iterations:,}")

    result = run_benchmark(config, args.iterations, args.episode_length)

    print(f"\n{'─' * 50}")
    print(f"Device: {result.device}")
    print(f"Average update:        {result.avg_update_ms:10.3f} ms")
    print(f"Average select action: {result.avg_select_ms:10.3f} ms")
    print(f"Total time:            {result.total_ms:10.1f} ms")
    print(f"Estimated 1M iters:    {result.hours_per_million_iters:10.2f} hours")

    if args.save:
        output = {
            'timestamp': time.strftime('%Y-%m-%d %H:%M:%S'),
            'system_info': sys_info,
            'config': {
                'minibatch_size': config.MINIBATCH_SIZE,
                'unroll': config.UNROLL,
                'lstm_size': config.LSTM_SIZE,
                'frames_per_timestep': config.FRAMES_PER_TIMESTEP,
            },
            'result': result.to_dict(),
        }
        with open(args.save, 'w') as f:
            json.dump(output, f, indent=2)
        print(f"\nResults saved to {args.save}")

    log_path = get_log_path()
    if log_path is not None:
        print(f"Log written to {log_path}")


if __name__ == '__main__':
    main()
