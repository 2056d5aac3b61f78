"""
Unit tests for the pipeline orchestrator.

Tests PipelineConfig, PipelineReport, and TransposePipeline state
transitions, resource cleanup and exit codes.
"""

from __future__ import annotations

from typing import Any

import numpy as np
import pytest

from peertranspose.backends.base import DeviceBuffer
from peertranspose.backends.simulated import SimulatedBackend
from peertranspose.core.orchestrator import (
    EXIT_FAILURE,
    EXIT_OK,
    EXIT_VALIDATION_FAILED,
    PipelineConfig,
    PipelineReport,
    PipelineState,
    TransposePipeline,
    initial_matrix,
    run_pipeline,
)
from peertranspose.core.topology import DevicePair
from peertranspose.exceptions import (
    InvalidConfigurationError,
    ResourceError,
    RuntimeCallError,
    ValidationMismatchError,
)

SUCCESS_HISTORY = [
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


class CorruptingBackend(SimulatedBackend):
    """Simulator whose downloads come back off by one."""

    def copy_to_host(self, buffer: DeviceBuffer) -> Any:
        return super().copy_to_host(buffer) + 1


class FailingAllocationBackend(SimulatedBackend):
    """Simulator whose n-th allocation runs out of memory."""

    def __init__(self, fail_on: int, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._fail_on = fail_on
        self._allocations_seen = 0

    def allocate(self, device: int, size: int, dtype: Any = np.float32) -> DeviceBuffer:
        self._allocations_seen += 1
        if self._allocations_seen == self._fail_on:
            raise ResourceError(device, size * np.dtype(dtype).itemsize)
        return super().allocate(device, size, dtype)


class TestPipelineConfig:
    """Tests for PipelineConfig."""

    def test_defaults(self) -> None:
        """Test default configuration."""
        config = PipelineConfig()

        assert config.width == 32
        assert config.block_size == 4
        assert config.epsilon == 1e-6
        assert config.backend == "auto"
        assert not config.strict_validation
        assert config.nbytes == 32 * 32 * 4

    @pytest.mark.parametrize(
        "kwargs",
        [{"width": 0}, {"block_size": 0}, {"epsilon": -1.0}, {"backend": "opencl"}],
    )
    def test_invalid(self, kwargs: dict[str, Any]) -> None:
        """Test invalid values are rejected."""
        with pytest.raises(InvalidConfigurationError):
            PipelineConfig(**kwargs)

    def test_from_env(self) -> None:
        """Test environment overrides."""
        config = PipelineConfig.from_env(
            {"PEERTRANSPOSE_BACKEND": "Simulated", "PEERTRANSPOSE_STRICT": "yes"}
        )

        assert config.backend == "simulated"
        assert config.strict_validation

    def test_from_empty_env(self) -> None:
        """Test defaults when nothing is set."""
        config = PipelineConfig.from_env({})

        assert config.backend == "auto"
        assert not config.strict_validation


class TestInitialMatrix:
    """Tests for the sequential input matrix."""

    def test_values(self) -> None:
        """Test values 1..width^2 in row-major order."""
        matrix = initial_matrix(32)

        assert matrix.dtype == np.float32
        assert matrix.shape == (1024,)
        assert matrix[0] == 1
        assert matrix[-1] == 1024


class TestTransposePipeline:
    """Tests for TransposePipeline runs on the simulator."""

    def test_success(self, backend: SimulatedBackend) -> None:
        """Test a full run passes through every state in order."""
        report = TransposePipeline(backend).run()

        assert isinstance(report, PipelineReport)
        assert report.state is PipelineState.DONE
        assert report.history == SUCCESS_HISTORY
        assert report.pair == DevicePair(current=1, peer=0)
        assert report.validation is not None
        assert report.validation.error_count == 0
        assert report.exit_code == EXIT_OK
        assert report.error is None
        assert report.duration_ms >= 0

    def test_resources_released(self, backend: SimulatedBackend) -> None:
        """Test every buffer is freed and the link is disabled."""
        pipeline = TransposePipeline(backend)

        pipeline.run()

        assert backend.live_allocations == 0
        assert backend.enabled_links == set()
        assert pipeline.links.active_links() == []
        allocs = [e for e in backend.trace if e.kind == "alloc"]
        frees = [e for e in backend.trace if e.kind == "free"]
        assert len(allocs) == len(frees) == 4

    def test_device_roles(self, backend: SimulatedBackend) -> None:
        """Test the static kernel runs on the peer and the dynamic one on current."""
        pipeline = TransposePipeline(backend)

        pipeline.run()

        static, dynamic = pipeline.dispatcher.history
        assert static.stream is not None and static.stream.device == 0
        assert static.shared_memory_bytes == 0
        assert dynamic.stream is not None and dynamic.stream.device == 1
        assert dynamic.shared_memory_bytes == 32 * 32 * 4
        enable = next(e for e in backend.trace if e.kind == "enable_peer")
        assert (enable.device, enable.detail) == (1, "peer=0")

    def test_synchronization_points(self, backend: SimulatedBackend) -> None:
        """Test the host syncs A before the peer copy and B before the download."""
        TransposePipeline(backend).run()

        trace = backend.trace
        kinds = [(e.kind, e.device) for e in trace]
        sync_a = kinds.index(("synchronize", 0))
        sync_b = kinds.index(("synchronize", 1))
        copy_issue = next(
            i for i, e in enumerate(trace) if e.kind == "issue" and e.detail.startswith("copy_peer")
        )
        download = kinds.index(("download", 1))
        disable = kinds.index(("disable_peer", 1))

        assert sync_a < copy_issue < sync_b < download < disable

    def test_later_pair(self) -> None:
        """Test the pipeline uses the discovered pair, not devices 0 and 1."""
        backend = SimulatedBackend(device_count=3, peer_access=[(2, 1)])

        report = TransposePipeline(backend).run()

        assert report.state is PipelineState.DONE
        assert report.pair == DevicePair(current=2, peer=1)
        assert all(e.device in (1, 2) for e in backend.trace)

    @pytest.mark.parametrize("device_count", [0, 1])
    def test_insufficient_devices(self, device_count: int) -> None:
        """Test a clean skip before any allocation."""
        backend = SimulatedBackend(device_count=device_count)

        report = TransposePipeline(backend).run()

        assert report.state is PipelineState.SKIPPED_CLEANLY
        assert report.skipped
        assert report.exit_code == EXIT_OK
        assert report.history == [PipelineState.INIT, PipelineState.SKIPPED_CLEANLY]
        assert not any(e.kind == "alloc" for e in backend.trace)

    def test_no_peer_access(self) -> None:
        """Test a clean skip when no pair is capable."""
        backend = SimulatedBackend(device_count=4, peer_access=[(0, 3)])

        report = TransposePipeline(backend).run()

        assert report.state is PipelineState.SKIPPED_CLEANLY
        assert report.exit_code == EXIT_OK
        assert backend.trace == []

    def test_runtime_failure_aborts(self) -> None:
        """Test a failing runtime call aborts and still releases everything."""
        backend = SimulatedBackend(device_count=2, fail_calls=["memcpyPeerAsync"])

        report = TransposePipeline(backend).run()

        assert report.state is PipelineState.ABORTED
        assert report.exit_code == EXIT_FAILURE
        assert isinstance(report.error, RuntimeCallError)
        assert report.error.call == "memcpyPeerAsync"
        assert report.history[-2] is PipelineState.LINK_ENABLED
        assert backend.enabled_links == set()
        assert backend.live_allocations == 0

    def test_allocation_failure_aborts(self) -> None:
        """Test running out of device memory aborts before any link exists."""
        backend = SimulatedBackend(device_count=2, memory_per_device=32 * 32 * 4)

        report = TransposePipeline(backend).run()

        assert report.state is PipelineState.ABORTED
        assert isinstance(report.error, ResourceError)
        assert report.exit_code == EXIT_FAILURE
        assert not any(e.kind == "enable_peer" for e in backend.trace)
        assert backend.live_allocations == 0

    def test_upload_failure_frees_everything(self) -> None:
        """Test a failing host-to-device copy leaves no allocation behind."""
        backend = SimulatedBackend(device_count=2, fail_calls=["memcpyHtoD"])

        report = TransposePipeline(backend).run()

        assert report.state is PipelineState.ABORTED
        assert isinstance(report.error, RuntimeCallError)
        assert report.error.call == "memcpyHtoD"
        assert report.history[-2] is PipelineState.PROBED
        assert backend.live_allocations == 0

    def test_abort_after_copy_drains_before_cleanup(self) -> None:
        """Test an in-flight peer copy completes before the link and buffers go."""
        # Allocations: input_a, output_a, input_b, output_b
        backend = FailingAllocationBackend(fail_on=4, device_count=2)

        report = TransposePipeline(backend).run()

        assert report.state is PipelineState.ABORTED
        assert isinstance(report.error, ResourceError)
        assert report.history[-2] is PipelineState.TRANSFERRED
        assert backend.pending(0) == 0
        assert backend.pending(1) == 0
        assert backend.enabled_links == set()
        assert backend.live_allocations == 0

        kinds = [(e.kind, e.detail) for e in backend.trace]
        copy_done = next(
            i for i, (kind, detail) in enumerate(kinds)
            if kind == "execute" and detail.startswith("copy_peer")
        )
        disable = next(i for i, (kind, _) in enumerate(kinds) if kind == "disable_peer")
        first_free_after_copy = next(
            i for i, (kind, _) in enumerate(kinds) if kind == "free" and i > copy_done
        )
        assert copy_done < disable < first_free_after_copy

    def test_abort_before_link_drains_primary(self) -> None:
        """Test a failure after the primary launch waits for that kernel."""
        # Allocations: input_a, output_a, input_b
        backend = FailingAllocationBackend(fail_on=3, device_count=2)
        pipeline = TransposePipeline(backend)

        report = pipeline.run()

        assert report.state is PipelineState.ABORTED
        assert report.history[-2] is PipelineState.PRIMARY_COMPUTED
        assert backend.pending(0) == 0
        assert backend.live_allocations == 0
        assert not any(e.kind == "enable_peer" for e in backend.trace)

    def test_kernel_failure_aborts(self) -> None:
        """Test a kernel that cannot be launched aborts the run."""
        config = PipelineConfig(width=32, block_size=64)
        backend = SimulatedBackend(device_count=2)

        report = TransposePipeline(backend, config).run()

        assert report.state is PipelineState.ABORTED
        assert report.history[-2] is PipelineState.PRIMARY_READY
        assert backend.live_allocations == 0

    def test_mismatch_keeps_exit_status(self) -> None:
        """Test mismatches are reported but exit 0 by default."""
        backend = CorruptingBackend(device_count=2)

        report = TransposePipeline(backend).run()

        assert report.state is PipelineState.DONE
        assert report.validation is not None
        assert report.validation.error_count == 32 * 32
        assert not report.validation.passed
        assert report.exit_code == EXIT_OK

    def test_mismatch_in_strict_mode(self) -> None:
        """Test strict validation turns mismatches into a distinct exit code."""
        backend = CorruptingBackend(device_count=2)
        config = PipelineConfig(strict_validation=True)

        report = TransposePipeline(backend, config).run()

        assert report.state is PipelineState.DONE
        assert report.exit_code == EXIT_VALIDATION_FAILED
        assert isinstance(report.error, ValidationMismatchError)
        assert report.error.error_count == 32 * 32

    def test_runs_once(self, backend: SimulatedBackend) -> None:
        """Test a pipeline object cannot be reused."""
        pipeline = TransposePipeline(backend)
        pipeline.run()

        with pytest.raises(RuntimeError):
            pipeline.run()


class TestRunPipeline:
    """Tests for run_pipeline()."""

    def test_with_backend(self, backend: SimulatedBackend) -> None:
        """Test running with an explicit backend."""
        report = run_pipeline(PipelineConfig(width=8, block_size=2), backend)

        assert report.state is PipelineState.DONE
        assert report.validation is not None
        assert report.validation.total == 64

    def test_from_config(self) -> None:
        """Test the backend is created from the configuration."""
        report = run_pipeline(PipelineConfig(backend="simulated"))

        assert report.state is PipelineState.DONE
