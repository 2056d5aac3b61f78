"""
Run the peer transpose pipeline once.

Usage:
    python -m peertranspose

Exit status is 0 on completion or when no peer-capable device pair exists,
1 on any accelerator failure, and 2 on validation mismatches when
PEERTRANSPOSE_STRICT is set.
"""

from __future__ import annotations

import logging
import sys

from peertranspose.core.orchestrator import EXIT_FAILURE, PipelineConfig, run_pipeline
from peertranspose.exceptions import PeerTransposeError

logger = logging.getLogger("peertranspose")


def main() -> int:
    """Entry point; returns the process exit status."""
    logging.basicConfig(level=logging.INFO, format="[%(name)s] %(levelname)s: %(message)s")

    try:
        config = PipelineConfig.from_env()
        report = run_pipeline(config)
    except PeerTransposeError as e:
        logger.error(f"Failed to start: {e}")
        return EXIT_FAILURE

    if report.validation is not None:
        print(
            f"Validation: {report.validation.error_count} errors "
            f"out of {report.validation.total} elements"
        )
    return report.exit_code


if __name__ == "__main__":
    sys.exit(main())
