"""
Pipeline orchestrator.

Sequences topology discovery, the two transposes, the peer copy and the
validation, and owns every buffer for the duration of a run:

INIT → PROBED → PRIMARY_READY → PRIMARY_COMPUTED → LINK_ENABLED →
TRANSFERRED → SECONDARY_READY → SECONDARY_COMPUTED → LINK_DISABLED →
VALIDATED → DONE

Fatal errors end in ABORTED; a missing device pair ends in SKIPPED_CLEANLY.
"""

from __future__ import annotations

import logging
import os
import time
from collections.abc import Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import TYPE_CHECKING

import numpy as np

from peertranspose.backends import BACKEND_NAMES, get_backend
from peertranspose.core.peer_link import PeerLinkManager
from peertranspose.core.topology import DevicePair, DeviceTopologyProber
from peertranspose.core.transfer import CrossDeviceTransfer
from peertranspose.core.validator import DEFAULT_EPSILON, ValidationResult, validate
from peertranspose.exceptions import (
    InsufficientDevicesError,
    InvalidConfigurationError,
    NoPeerAccessError,
    PeerTransposeError,
    ValidationMismatchError,
)
from peertranspose.kernels.dispatcher import KernelDispatcher, KernelVariant

if TYPE_CHECKING:
    from collections.abc import Iterator

    from numpy.typing import NDArray

    from peertranspose.backends.base import Backend, DeviceBuffer

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_VALIDATION_FAILED = 2

_TRUE_VALUES = ("1", "true", "yes", "on")


class PipelineState(Enum):
    """State of a pipeline run."""

    INIT = auto()
    PROBED = auto()
    PRIMARY_READY = auto()
    PRIMARY_COMPUTED = auto()
    LINK_ENABLED = auto()
    TRANSFERRED = auto()
    SECONDARY_READY = auto()
    SECONDARY_COMPUTED = auto()
    LINK_DISABLED = auto()
    VALIDATED = auto()
    DONE = auto()
    ABORTED = auto()
    SKIPPED_CLEANLY = auto()


_SEQUENCE = [
    PipelineState.INIT,
    PipelineState.PROBED,
    PipelineState.PRIMARY_READY,
    PipelineState.PRIMARY_COMPUTED,
    PipelineState.LINK_ENABLED,
    PipelineState.TRANSFERRED,
    PipelineState.SECONDARY_READY,
    PipelineState.SECONDARY_COMPUTED,
    PipelineState.LINK_DISABLED,
    PipelineState.VALIDATED,
    PipelineState.DONE,
]


@dataclass
class PipelineConfig:
    """Configuration for a pipeline run."""

    width: int = 32
    block_size: int = 4
    epsilon: float = DEFAULT_EPSILON
    backend: str = "auto"  # auto, cuda, simulated
    strict_validation: bool = False  # mismatches exit with EXIT_VALIDATION_FAILED

    def __post_init__(self) -> None:
        """Validate configuration."""
        if self.width < 1:
            raise InvalidConfigurationError("width", self.width, "must be >= 1")
        if self.block_size < 1:
            raise InvalidConfigurationError("block_size", self.block_size, "must be >= 1")
        if self.epsilon < 0:
            raise InvalidConfigurationError("epsilon", self.epsilon, "must be >= 0")
        if self.backend not in BACKEND_NAMES:
            raise InvalidConfigurationError(
                "backend", self.backend, f"expected one of {BACKEND_NAMES}"
            )

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> PipelineConfig:
        """
        Build a configuration from environment variables.

        Reads PEERTRANSPOSE_BACKEND and PEERTRANSPOSE_STRICT; everything else
        keeps its default.
        """
        if environ is None:
            environ = os.environ
        return cls(
            backend=environ.get("PEERTRANSPOSE_BACKEND", "auto").strip().lower(),
            strict_validation=environ.get("PEERTRANSPOSE_STRICT", "").strip().lower()
            in _TRUE_VALUES,
        )

    @property
    def nbytes(self) -> int:
        """Get the size of one matrix in bytes."""
        return self.width * self.width * np.dtype(np.float32).itemsize


@dataclass
class PipelineReport:
    """Outcome of a pipeline run."""

    state: PipelineState = PipelineState.INIT
    history: list[PipelineState] = field(default_factory=list)
    pair: DevicePair | None = None
    validation: ValidationResult | None = None
    error: Exception | None = None
    exit_code: int = EXIT_OK
    start_time: float = 0.0
    end_time: float = 0.0

    @property
    def duration_ms(self) -> float:
        """Get run duration in milliseconds."""
        return (self.end_time - self.start_time) * 1000

    @property
    def skipped(self) -> bool:
        """Check whether the run was skipped for lack of a device pair."""
        return self.state is PipelineState.SKIPPED_CLEANLY


def initial_matrix(width: int) -> NDArray[np.float32]:
    """Sequential values 1..width*width in row-major order."""
    return np.arange(1, width * width + 1, dtype=np.float32)


class TransposePipeline:
    """
    Runs the peer-to-peer transpose round trip once.

    Device A is the pair's `peer`, device B its `current`; B is granted
    access to A's memory for the copy.

    Example:
        >>> pipeline = TransposePipeline(SimulatedBackend(device_count=2))
        >>> report = pipeline.run()
        >>> report.validation.error_count
        0
    """

    def __init__(self, backend: Backend, config: PipelineConfig | None = None) -> None:
        """
        Initialize the pipeline.

        Args:
            backend: Backend providing the devices.
            config: Run configuration.
        """
        self._backend = backend
        self._config = config or PipelineConfig()
        self._prober = DeviceTopologyProber(backend)
        self._links = PeerLinkManager(backend)
        self._transfer = CrossDeviceTransfer(backend, self._links)
        self._dispatcher = KernelDispatcher(backend, static_width=self._config.width)
        self._buffers: list[DeviceBuffer] = []
        self._report = PipelineReport()

    @property
    def state(self) -> PipelineState:
        """Get the current state."""
        return self._report.state

    @property
    def config(self) -> PipelineConfig:
        """Get the configuration."""
        return self._config

    @property
    def links(self) -> PeerLinkManager:
        """Get the peer link manager."""
        return self._links

    @property
    def dispatcher(self) -> KernelDispatcher:
        """Get the kernel dispatcher."""
        return self._dispatcher

    def _enter(self, state: PipelineState) -> None:
        current = self._report.state
        if _SEQUENCE.index(state) != _SEQUENCE.index(current) + 1:
            raise RuntimeError(f"Invalid transition {current.name} -> {state.name}")
        self._finish(state)

    def _finish(self, state: PipelineState) -> None:
        self._report.state = state
        self._report.history.append(state)
        logger.debug(f"State: {state.name}")

    def _track(self, buffer: DeviceBuffer) -> DeviceBuffer:
        self._buffers.append(buffer)
        return buffer

    def _release(self, *buffers: DeviceBuffer) -> None:
        for buffer in buffers:
            if not buffer.is_freed:
                self._backend.free(buffer)

    def _quiesce(self) -> None:
        devices = sorted({buffer.device for buffer in self._buffers if not buffer.is_freed})
        for device in devices:
            try:
                self._backend.synchronize(device)
            except PeerTransposeError as e:
                logger.error(f"Failed to synchronize device {device} during cleanup: {e}")

    @contextmanager
    def _quiescing(self) -> Iterator[None]:
        """Drain outstanding work on live buffers' devices if the block raises."""
        try:
            yield
        except BaseException:
            self._quiesce()
            raise

    def _release_all(self) -> None:
        pending = [buffer for buffer in self._buffers if not buffer.is_freed]
        for buffer in pending:
            try:
                self._backend.free(buffer)
            except PeerTransposeError as e:
                logger.error(f"Failed to free buffer on device {buffer.device}: {e}")
                if self._report.error is None:
                    self._report.error = e
                    self._report.exit_code = EXIT_FAILURE
                    self._finish(PipelineState.ABORTED)
        self._buffers.clear()

    def run(self) -> PipelineReport:
        """
        Run the pipeline.

        Returns:
            The report; never raises for skips or accelerator failures.
        """
        if self._report.history:
            raise RuntimeError("A pipeline runs once; create a new one")

        self._report.start_time = time.perf_counter()
        self._finish(PipelineState.INIT)
        try:
            with self._quiescing():
                self._run()
        except (InsufficientDevicesError, NoPeerAccessError) as e:
            logger.warning(f"Skipping: {e}")
            self._report.exit_code = EXIT_OK
            self._finish(PipelineState.SKIPPED_CLEANLY)
        except PeerTransposeError as e:
            logger.error(f"Aborted in state {self._report.state.name}: {e}")
            self._report.error = e
            self._report.exit_code = EXIT_FAILURE
            self._finish(PipelineState.ABORTED)
        except BaseException:
            self._report.exit_code = EXIT_FAILURE
            self._finish(PipelineState.ABORTED)
            raise
        finally:
            self._release_all()
            self._report.end_time = time.perf_counter()

        return self._report

    def _run(self) -> None:
        cfg = self._config
        backend = self._backend
        n = cfg.width * cfg.width

        pair = self._prober.discover_pair()
        self._report.pair = pair
        device_a, device_b = pair.peer, pair.current
        self._enter(PipelineState.PROBED)
        logger.info(f"Using device {device_a} (primary) and device {device_b} (secondary)")

        host_input = initial_matrix(cfg.width)
        stream_a = backend.create_stream(device_a)
        input_a = self._track(backend.copy_to_device(device_a, host_input))
        output_a = self._track(backend.allocate(device_a, n))
        self._enter(PipelineState.PRIMARY_READY)

        self._dispatcher.launch(
            KernelVariant.STATIC, input_a, output_a, cfg.width, cfg.block_size, stream_a
        )
        backend.synchronize(device_a)
        self._release(input_a)
        self._enter(PipelineState.PRIMARY_COMPUTED)

        stream_b = backend.create_stream(device_b)
        input_b = self._track(backend.allocate(device_b, n))
        with self._links.link(device_b, device_a), self._quiescing():
            self._enter(PipelineState.LINK_ENABLED)

            self._transfer.copy(device_b, device_a, input_b, output_a, cfg.nbytes, stream_b)
            self._enter(PipelineState.TRANSFERRED)

            output_b = self._track(backend.allocate(device_b, n))
            self._enter(PipelineState.SECONDARY_READY)

            self._dispatcher.launch(
                KernelVariant.DYNAMIC, input_b, output_b, cfg.width, cfg.block_size, stream_b
            )
            backend.synchronize(device_b)
            self._release(output_a, input_b)
            self._enter(PipelineState.SECONDARY_COMPUTED)

            result = backend.copy_to_host(output_b)
            self._release(output_b)
        self._enter(PipelineState.LINK_DISABLED)

        validation = validate(host_input, result, cfg.epsilon)
        self._report.validation = validation
        self._enter(PipelineState.VALIDATED)

        if validation.passed:
            logger.info(f"Validation passed: {validation.total} elements match")
        else:
            logger.warning(
                f"Validation found {validation.error_count} mismatches "
                f"(max abs error {validation.max_abs_error})"
            )
            if cfg.strict_validation:
                self._report.error = ValidationMismatchError(
                    validation.error_count, validation.total, validation.epsilon
                )
                self._report.exit_code = EXIT_VALIDATION_FAILED
        self._enter(PipelineState.DONE)


def run_pipeline(
    config: PipelineConfig | None = None,
    backend: Backend | None = None,
) -> PipelineReport:
    """
    Run the pipeline once.

    Args:
        config: Run configuration (defaults to PipelineConfig()).
        backend: Backend to use; created from ``config.backend`` when None.

    Returns:
        The run report.
    """
    config = config or PipelineConfig()
    if backend is None:
        backend = get_backend(config.backend)
    logger.info(f"Running peer transpose on {backend!r}")
    return TransposePipeline(backend, config).run()
