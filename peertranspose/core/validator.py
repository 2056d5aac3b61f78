"""
Result validation.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np

if TYPE_CHECKING:
    from numpy.typing import ArrayLike

DEFAULT_EPSILON = 1e-6


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of an elementwise comparison."""

    error_count: int
    total: int
    max_abs_error: float
    epsilon: float

    @property
    def passed(self) -> bool:
        """Check whether every element matched."""
        return self.error_count == 0


def compare(expected: ArrayLike, actual: ArrayLike, epsilon: float = DEFAULT_EPSILON) -> int:
    """
    Count positions where ``|expected[i] - actual[i]| > epsilon``.

    Raises:
        ValueError: If the shapes differ.
    """
    return validate(expected, actual, epsilon).error_count


def validate(
    expected: ArrayLike,
    actual: ArrayLike,
    epsilon: float = DEFAULT_EPSILON,
) -> ValidationResult:
    """
    Compare two matrices elementwise.

    NaN in either input counts as a mismatch.

    Raises:
        ValueError: If the shapes differ.
    """
    expected_arr = np.asarray(expected)
    actual_arr = np.asarray(actual)
    if expected_arr.shape != actual_arr.shape:
        raise ValueError(f"Shape mismatch: expected {expected_arr.shape}, got {actual_arr.shape}")

    diff = np.abs(expected_arr.astype(np.float64) - actual_arr.astype(np.float64))
    mismatched = ~(diff <= epsilon)
    return ValidationResult(
        error_count=int(np.count_nonzero(mismatched)),
        total=int(expected_arr.size),
        max_abs_error=float(np.max(diff)) if diff.size else 0.0,
        epsilon=epsilon,
    )
