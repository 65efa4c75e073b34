"""
Error types raised by the AVR stack analysis tools.

    AnalysisError
    ├── UnsupportedInstructionError  - instruction whose stack effect is not modelled
    ├── MalformedImageError          - image cannot be loaded or decoded
    └── ConfigError                  - bad configuration file or value

Unresolved branch targets and stack underflow are not errors; they are
reported as diagnostics on the analysis result.
"""

from __future__ import annotations

from typing import Optional


class AnalysisError(Exception):
    """Base class for analysis failures.

    `address` is a word address; it is shown as a byte address.
    """

    def __init__(self, message: str, address: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.address = address

    def __str__(self) -> str:
        if self.address is None:
            return self.message
        return f"{self.message} (at 0x{self.address * 2:04x})"


class UnsupportedInstructionError(AnalysisError):
    """Raised when the analysis reaches an instruction it refuses to approximate."""

    def __init__(self, instruction, address: Optional[int] = None):
        super().__init__(f"Unsupported instruction: {instruction}", address)
        self.instruction = instruction


class MalformedImageError(AnalysisError):
    """Raised when a firmware image cannot be loaded or an instruction is truncated."""


class ConfigError(AnalysisError):
    """Raised for an invalid analysis configuration."""
