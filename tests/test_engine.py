"""
Tests for the value function engine.

These tests verify:
    - The live / evaluation / clone roles
    - Batched evaluation and continuation flags
    - Masked training steps and the iteration counter
    - Weight and optimizer state persistence
"""

from dataclasses import replace

import pytest
import numpy as np
import torch
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from drqn.ai.engine import ValueFunctionEngine


@pytest.fixture
def live(small_config):
    """Create the live engine."""
    torch.manual_seed(0)
    return ValueFunctionEngine.create(small_config, small_config.OUTPUT_COUNT)


@pytest.fixture
def evaluation(live):
    """Create the evaluation engine."""
    return live.shared()


def random_frame(seed):
    frame = np.random.default_rng(seed).integers(0, 256, size=(84, 84), dtype=np.uint8)
    frame.setflags(write=False)
    return frame


def training_batch(config, action=3, target=0.5):
    n, f = config.MINIBATCH_SIZE, config.FRAMES_PER_TIMESTEP
    rng = np.random.default_rng(7)
    frames = rng.integers(0, 256, size=(n, config.UNROLL + f - 1, 84, 84)).astype(np.float32)
    cont = np.ones((config.UNROLL, n), dtype=np.float32)
    cont[0, :] = 0.0
    targets = np.zeros((config.UNROLL, n, config.OUTPUT_COUNT), dtype=np.float32)
    filters = np.zeros_like(targets)
    targets[:, :, action] = target
    filters[:, :, action] = 1.0
    return frames, cont, targets, filters


def parameters_of(engine):
    return [p.detach().clone() for p in engine.network.parameters()]


def same_parameters(first, second):
    return all(torch.equal(a, b) for a, b in zip(first, second))


class TestRoles:
    """Test live, evaluation and clone engines."""

    def test_live_has_optimizer(self, live):
        """Only the live engine owns an optimizer."""
        assert live.optimizer is not None
        assert live.shared().optimizer is None

    def test_evaluation_shares_network(self, live, evaluation):
        """The evaluation engine uses the live parameters."""
        assert evaluation.network is live.network

    def test_clone_is_independent(self, evaluation):
        """The clone owns a copy of the parameters."""
        clone = evaluation.clone()
        assert clone.network is not evaluation.network
        assert same_parameters(parameters_of(clone), parameters_of(evaluation))
        assert all(not p.requires_grad for p in clone.network.parameters())

    def test_iteration_delegates_to_live(self, live, evaluation, small_config):
        """The evaluation engine reports the live iteration."""
        live.train_step(*training_batch(small_config))
        assert live.iteration == 1
        assert evaluation.iteration == 1


class TestEvaluateBatch:
    """Test batched evaluation."""

    def test_output_shape(self, evaluation, small_config):
        """One row of Q-values per window."""
        q_values = evaluation.evaluate_batch([[random_frame(0)], [random_frame(1)]], False)
        assert q_values.shape == (2, small_config.OUTPUT_COUNT)
        assert np.all(np.isfinite(q_values))

    def test_partial_batch(self, evaluation, small_config):
        """Batches smaller than the minibatch are allowed."""
        q_values = evaluation.evaluate_batch([[random_frame(0)]], False)
        assert q_values.shape == (1, small_config.OUTPUT_COUNT)

    def test_none_window(self, evaluation):
        """Inactive slots evaluate on zero frames."""
        q_values = evaluation.evaluate_batch([None, [random_frame(1)]], False)
        assert q_values.shape[0] == 2

    def test_reset_is_repeatable(self, evaluation):
        """cont=False gives the same result regardless of history."""
        window = [[random_frame(0)]]
        first = evaluation.evaluate_batch(window, False)
        evaluation.evaluate_batch([[random_frame(5)]], True)
        second = evaluation.evaluate_batch(window, False)
        assert np.allclose(first, second)

    def test_continuation_uses_history(self, evaluation):
        """cont=True carries the hidden state of the previous call."""
        window = [[random_frame(0)]]
        fresh = evaluation.evaluate_batch(window, False)
        continued = evaluation.evaluate_batch(window, True)
        assert not np.array_equal(fresh, continued)

    def test_per_slot_flags(self, evaluation):
        """Continuation flags may differ per slot."""
        windows = [[random_frame(0)], [random_frame(1)]]
        evaluation.evaluate_batch(windows, False)
        mixed = evaluation.evaluate_batch(windows, [False, True])
        evaluation.reset_state()
        fresh = evaluation.evaluate_batch(windows, False)
        assert np.allclose(mixed[0], fresh[0])

    def test_oversized_batch_rejected(self, evaluation):
        """Batches wider than the minibatch are contract violations."""
        with pytest.raises(AssertionError):
            evaluation.evaluate_batch([[random_frame(i)] for i in range(3)], False)

    def test_wrong_window_length_rejected(self, evaluation):
        """Each window must hold FRAMES_PER_TIMESTEP frames."""
        with pytest.raises(AssertionError):
            evaluation.evaluate_batch([[random_frame(0), random_frame(1)]], False)


class TestTrainStep:
    """Test masked training."""

    def test_returns_finite_loss(self, live, small_config):
        """train_step returns the loss."""
        loss = live.train_step(*training_batch(small_config))
        assert np.isfinite(loss)
        assert loss >= 0.0

    def test_updates_parameters(self, live, small_config):
        """A filtered target moves the parameters."""
        before = parameters_of(live)
        live.train_step(*training_batch(small_config))
        assert not same_parameters(before, parameters_of(live))

    def test_clone_not_affected(self, live, evaluation, small_config):
        """Training never changes the clone."""
        clone = evaluation.clone()
        before = parameters_of(clone)
        live.train_step(*training_batch(small_config))
        assert same_parameters(before, parameters_of(clone))

    def test_copy_from(self, live, evaluation, small_config):
        """copy_from brings the clone up to date."""
        clone = evaluation.clone()
        live.train_step(*training_batch(small_config))
        clone.copy_from(evaluation)
        assert same_parameters(parameters_of(clone), parameters_of(live))

    def test_empty_filter_zero_loss(self, live, small_config):
        """Without any filter the loss is zero."""
        frames, cont, targets, filters = training_batch(small_config)
        filters[:] = 0.0
        targets[:] = 0.0
        assert live.train_step(frames, cont, targets, filters) == 0.0

    def test_shape_checked(self, live, small_config):
        """Mis-shaped inputs are contract violations."""
        frames, cont, targets, filters = training_batch(small_config)
        with pytest.raises(AssertionError):
            live.train_step(frames[:, :1], cont, targets, filters)

    def test_evaluation_cannot_train(self, evaluation, small_config):
        """Only the live engine trains."""
        with pytest.raises(AssertionError):
            evaluation.train_step(*training_batch(small_config))


class TestPersistence:
    """Test weight and optimizer state files."""

    def test_weights_round_trip(self, live, small_config, tmp_path):
        """Restored weights equal the saved ones."""
        path = tmp_path / "weights.pth"
        live.save_weights(path)
        saved = parameters_of(live)
        live.train_step(*training_batch(small_config))
        live.restore_weights(path)
        assert same_parameters(saved, parameters_of(live))

    def test_optimizer_state_restores_iteration(self, live, small_config, tmp_path):
        """The iteration counter travels with the optimizer state."""
        live.train_step(*training_batch(small_config))
        live.train_step(*training_batch(small_config))
        path = tmp_path / "state.solverstate"
        live.save_optimizer_state(path)

        torch.manual_seed(1)
        other = ValueFunctionEngine.create(small_config, small_config.OUTPUT_COUNT)
        other.restore_optimizer_state(path)
        assert other.iteration == 2

    def test_invalid_optimizer_state(self, live, tmp_path):
        """Files that are not optimizer states are rejected."""
        path = tmp_path / "bogus.solverstate"
        torch.save({'something': 1}, path)
        with pytest.raises(ValueError):
            live.restore_optimizer_state(path)

    def test_missing_weights(self, live, tmp_path):
        """Missing weight files propagate FileNotFoundError."""
        with pytest.raises(FileNotFoundError):
            live.restore_weights(tmp_path / "missing.pth")

    def test_mismatched_weights_leave_network_untouched(self, live, small_config, tmp_path):
        """Weights of a differently sized network are rejected before loading."""
        bigger = ValueFunctionEngine.create(
            replace(small_config, LSTM_SIZE=32), small_config.OUTPUT_COUNT
        )
        path = tmp_path / "bigger.pth"
        bigger.save_weights(path)
        before = parameters_of(live)

        with pytest.raises(ValueError):
            live.restore_weights(path)
        assert same_parameters(before, parameters_of(live))

    def test_read_optimizer_state_does_not_apply(self, live, small_config, tmp_path):
        """Reading a solver state leaves the iteration counter alone."""
        live.train_step(*training_batch(small_config))
        path = tmp_path / "state.solverstate"
        live.save_optimizer_state(path)

        torch.manual_seed(1)
        other = ValueFunctionEngine.create(small_config, small_config.OUTPUT_COUNT)
        data = other.read_optimizer_state(path)
        assert other.iteration == 0
        other.apply_optimizer_state(data)
        assert other.iteration == 1
