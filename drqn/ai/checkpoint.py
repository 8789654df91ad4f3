"""
Snapshots
=========

A snapshot of iteration N is a family of three files sharing one stem:

    <prefix>_iter_<N>.pth            network weights
    <prefix>_iter_<N>.replaymemory   replay memory (gzip)
    <prefix>_iter_<N>.solverstate    optimizer state and iteration counter

Every file is written under a temporary name and moved into place. The
solver state is written last, so its presence marks a snapshot whose
other files are complete. Resuming picks the highest N whose three files
all exist.
"""

from typing import List, NamedTuple, Optional, Union
import os
import re

from .engine import ValueFunctionEngine
from .replay_memory import ReplayMemory
from ..utils.logger import get_logger, log_model_event

logger = get_logger(__name__)

WEIGHTS_EXTENSION = '.pth'
SOLVERSTATE_EXTENSION = '.solverstate'
REPLAY_MEMORY_EXTENSION = '.replaymemory'
SNAPSHOT_EXTENSIONS = (WEIGHTS_EXTENSION, SOLVERSTATE_EXTENSION, REPLAY_MEMORY_EXTENSION)

_ITER_PATTERN = re.compile(r'_iter_(\d+)\.[A-Za-z]+$')


class SnapshotPaths(NamedTuple):
    weights: str
    solverstate: str
    replaymemory: str


def snapshot_paths(prefix: str, iteration: int) -> SnapshotPaths:
    """Paths of the snapshot family for one iteration."""
    stem = f"{prefix}_iter_{iteration}"
    return SnapshotPaths(
        weights=stem + WEIGHTS_EXTENSION,
        solverstate=stem + SOLVERSTATE_EXTENSION,
        replaymemory=stem + REPLAY_MEMORY_EXTENSION,
    )


def files_matching_regexp(regexp: str) -> List[str]:
    """
    List files whose name fully matches a regular expression.

    The directory part of the argument is taken literally, the file-name part
    is the pattern. Without a directory part the current directory is listed.

    Args:
        regexp: e.g. 'snapshots/drqn_iter_\\d+\\.solverstate'

    Returns:
        Sorted matching paths (joined with the literal directory part)
    """
    directory, pattern = os.path.split(regexp)
    listed = directory or '.'
    if not os.path.isdir(listed):
        return []
    compiled = re.compile(pattern)
    return sorted(
        os.path.join(directory, name)
        for name in os.listdir(listed)
        if compiled.fullmatch(name) and os.path.isfile(os.path.join(listed, name))
    )


def parse_iter_from_snapshot(path: str) -> int:
    """
    Extract N from '<prefix>_iter_<N>.<ext>'.

    Raises:
        ValueError: If the path does not name a snapshot file
    """
    match = _ITER_PATTERN.search(path)
    if match is None:
        raise ValueError(f"Not a snapshot path: {path}")
    return int(match.group(1))


def _snapshot_regexp(prefix: str, extension: str) -> str:
    directory, base = os.path.split(prefix)
    return os.path.join(directory, re.escape(base) + r'_iter_\d+' + re.escape(extension))


def remove_snapshots(prefix: str, min_iter: int) -> List[str]:
    """
    Delete every snapshot file of the prefix with an iteration below min_iter.

    Returns:
        Removed paths
    """
    removed = []
    for extension in SNAPSHOT_EXTENSIONS:
        for path in files_matching_regexp(_snapshot_regexp(prefix, extension)):
            if parse_iter_from_snapshot(path) < min_iter:
                logger.info(f"Removing {path}")
                os.remove(path)
                removed.append(path)
    return removed


def find_latest_snapshot(prefix: str) -> Optional[str]:
    """
    Find the newest complete snapshot.

    Returns:
        Path of the .solverstate with the highest iteration whose .pth and
        .replaymemory siblings exist, or None
    """
    solverstates = files_matching_regexp(_snapshot_regexp(prefix, SOLVERSTATE_EXTENSION))
    for path in sorted(solverstates, key=parse_iter_from_snapshot, reverse=True):
        stem = path[:-len(SOLVERSTATE_EXTENSION)]
        if os.path.isfile(stem + WEIGHTS_EXTENSION) and \
                os.path.isfile(stem + REPLAY_MEMORY_EXTENSION):
            return path
    return None


def _write_atomic(path: str, writer) -> None:
    tmp_path = path + '.tmp'
    try:
        writer(tmp_path)
        os.replace(tmp_path, path)
    except Exception:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise


class CheckpointCoordinator:
    """
    Writes and restores snapshot families for one engine and memory.

    Example:
        >>> checkpoints = CheckpointCoordinator(live, memory)
        >>> checkpoints.snapshot('snapshots/drqn', remove_old=True)
        >>> checkpoints.resume_latest('snapshots/drqn')
    """

    def __init__(self, engine: ValueFunctionEngine, memory: ReplayMemory):
        self.engine = engine
        self.memory = memory

    def snapshot(
        self,
        prefix: str,
        remove_old: bool = False,
        snapshot_memory: bool = True
    ) -> int:
        """
        Write the snapshot family for the current iteration.

        Args:
            prefix: Path prefix (directories are created)
            remove_old: Delete snapshot files of earlier iterations
            snapshot_memory: Also write the replay memory

        Returns:
            The iteration N the snapshot was taken at
        """
        iteration = self.engine.iteration
        paths = snapshot_paths(prefix, iteration)

        directory = os.path.dirname(prefix)
        if directory:
            os.makedirs(directory, exist_ok=True)

        _write_atomic(paths.weights, self.engine.save_weights)
        if snapshot_memory:
            _write_atomic(paths.replaymemory, self.memory.save)
        _write_atomic(paths.solverstate, self.engine.save_optimizer_state)

        assert os.path.isfile(paths.weights), f"Missing {paths.weights}"
        assert os.path.isfile(paths.solverstate), f"Missing {paths.solverstate}"
        if snapshot_memory:
            assert os.path.isfile(paths.replaymemory), f"Missing {paths.replaymemory}"

        log_model_event('snapshot', paths.solverstate, iteration=iteration,
                        memory=snapshot_memory)

        if remove_old:
            remove_snapshots(prefix, iteration)
        return iteration

    def restore(
        self,
        solverstate_path: Union[str, os.PathLike],
        load_memory: bool = True
    ) -> int:
        """
        Restore weights, optimizer state and (optionally) replay memory.

        Every file of the family is read and validated before the engine or
        the memory is modified. If any of them is missing or corrupt the
        error propagates and the current session is left unchanged.

        Args:
            solverstate_path: Path of a .solverstate file
            load_memory: Also load the sibling .replaymemory

        Returns:
            Restored iteration

        Raises:
            FileNotFoundError: If a file of the family is missing
            ValueError: If the weights or optimizer state do not fit the engine
            ReplayMemoryFormatError: If the replay memory is corrupt
        """
        solverstate_path = os.fspath(solverstate_path)
        assert solverstate_path.endswith(SOLVERSTATE_EXTENSION), \
            f"Not a solver state: {solverstate_path}"
        stem = solverstate_path[:-len(SOLVERSTATE_EXTENSION)]

        weights = self.engine.read_weights(stem + WEIGHTS_EXTENSION)
        solver_state = self.engine.read_optimizer_state(solverstate_path)
        episodes = None
        if load_memory:
            episodes = ReplayMemory.read_episodes(stem + REPLAY_MEMORY_EXTENSION)

        self.engine.apply_weights(weights)
        self.engine.apply_optimizer_state(solver_state)
        if episodes is not None:
            self.memory.replace_episodes(episodes)

        iteration = self.engine.iteration
        log_model_event('restore', solverstate_path, iteration=iteration,
                        transitions=len(self.memory))
        return iteration

    def resume_latest(self, prefix: str, load_memory: bool = True) -> Optional[int]:
        """
        Restore the newest complete snapshot of the prefix, if any.

        Returns:
            Restored iteration, or None if no complete snapshot exists
        """
        path = find_latest_snapshot(prefix)
        if path is None:
            logger.info(f"No complete snapshot found for {prefix}")
            return None
        return self.restore(path, load_memory=load_memory)
