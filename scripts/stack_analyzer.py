#!/usr/bin/env python3
"""
AVR Stack Analyzer - Worst-Case Stack Usage for AVR Firmware

Walks every path reachable from the entry point of an Intel HEX image and
reports the deepest stack seen:
- PUSH/POP move the stack by one byte
- CALL/RCALL add the return address along the called path
- STS (32-bit) is charged two bytes
- loops and recursion that keep growing the stack are reported as unbounded
- indirect jumps and calls are recorded as reachability gaps

Interrupt handlers are not modelled: reaching RETI aborts the analysis.

Usage:
    python3 stack_analyzer.py <firmware.hex> [--config analysis.json] [--limit BYTES]
    python3 stack_analyzer.py --help
"""

from __future__ import annotations

import argparse
import dataclasses
import json
import logging
import math
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Union

from analysis_errors import AnalysisError, ConfigError, UnsupportedInstructionError
from avr_decoder import AvrDecoder, Instruction, OpType
from firmware_memory import WORD_SIZE, FirmwareMemory, load_hex

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

# Result for paths whose stack usage has no finite bound.
UNBOUNDED = math.inf

_VISIT = 'visit'
_LEAVE = 'leave'


def format_address(pc: int) -> str:
    """Format a word address as the byte address avr-objdump would show."""
    return f"0x{pc * WORD_SIZE:04x}"


def format_height(height: Union[int, float]) -> str:
    return 'unbounded' if height == UNBOUNDED else f"{height} bytes"


# =============================================================================
# Data Structures
# =============================================================================

@dataclass
class AnalysisConfig:
    """Tunables for one analysis run."""
    entry_point: int = 0                     # byte address, must be even
    call_overhead: int = 2                   # return address bytes pushed by CALL/RCALL
    wide_store_cost: int = 2                 # bytes charged for a 32-bit STS
    max_steps: int = 1_000_000               # 0 = no limit
    max_depth: int = 0                       # active path length, 0 = no limit
    detect_growing_cycles: bool = True
    explore_rcall_fallthrough: bool = False
    reexplore_taller_paths: bool = False     # revisit joins reached with a taller stack
    stack_limit: Optional[int] = None        # bytes available for the stack

    def __post_init__(self):
        for name in ('entry_point', 'call_overhead', 'wide_store_cost', 'max_steps', 'max_depth'):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise ConfigError(f"{name} must be a non-negative integer, got {value!r}")
        if self.entry_point % WORD_SIZE:
            raise ConfigError(f"entry_point must be word aligned, got {self.entry_point:#x}")
        if self.stack_limit is not None and (
                isinstance(self.stack_limit, bool) or not isinstance(self.stack_limit, int)
                or self.stack_limit < 0):
            raise ConfigError(f"stack_limit must be a non-negative integer, got {self.stack_limit!r}")


@dataclass
class AnalysisDiagnostic:
    """A diagnostic from stack analysis."""
    severity: str                      # 'error', 'warning', 'info'
    message: str
    address: int                       # word address
    context: dict = field(default_factory=dict)


@dataclass(frozen=True)
class ReachabilityGap:
    """A path the analysis could not follow."""
    address: int                       # word address of the instruction
    instruction: Instruction
    reason: str


@dataclass
class AnalysisResult:
    """Complete analysis result."""
    max_height: Union[int, float] = 0
    diagnostics: list[AnalysisDiagnostic] = field(default_factory=list)
    gaps: list[ReachabilityGap] = field(default_factory=list)
    steps: int = 0
    states: int = 0
    image_size: int = 0
    unbounded_reason: Optional[str] = None
    stack_limit: Optional[int] = None

    @property
    def is_unbounded(self) -> bool:
        return self.max_height == UNBOUNDED

    def errors(self) -> list[AnalysisDiagnostic]:
        return [d for d in self.diagnostics if d.severity == 'error']

    def warnings(self) -> list[AnalysisDiagnostic]:
        return [d for d in self.diagnostics if d.severity == 'warning']

    def success(self) -> bool:
        return len(self.errors()) == 0

    def headroom(self, limit: Optional[int] = None) -> Optional[int]:
        """Bytes left under `limit` (default: the configured stack limit)."""
        if limit is None:
            limit = self.stack_limit
        if limit is None or self.is_unbounded:
            return None
        return limit - self.max_height

    def to_dict(self) -> dict:
        return {
            'success': self.success(),
            'max_height': 'unbounded' if self.is_unbounded else self.max_height,
            'unbounded': self.is_unbounded,
            'unbounded_reason': self.unbounded_reason,
            'stack_limit': self.stack_limit,
            'headroom': self.headroom(),
            'image_size': self.image_size,
            'steps': self.steps,
            'states': self.states,
            'gaps': [
                {
                    'address': format_address(gap.address),
                    'instruction': str(gap.instruction),
                    'reason': gap.reason,
                }
                for gap in self.gaps
            ],
            'diagnostics': [
                {
                    'severity': d.severity,
                    'message': d.message,
                    'address': format_address(d.address),
                    'context': d.context,
                }
                for d in self.diagnostics
            ],
        }


class VisitedStateMemo:
    """Control-flow states already explored, keyed by (instruction, pc).

    The key does not include the stack height: a state reached a second time
    is not explored again, whatever the height. The recorded height is kept
    so that a cycle re-entered with a taller stack can be told apart from an
    ordinary loop.

    With `reexplore_taller`, a state that is no longer on the current path
    is explored again when reached with a taller stack than recorded.
    """

    def __init__(self):
        self._heights: dict[tuple[Instruction, int], int] = {}
        self._active: set[tuple[Instruction, int]] = set()  # keys on the current path

    def record_and_check(self, instruction: Instruction, pc: int, height: int = 0,
                         reexplore_taller: bool = False) -> bool:
        """Return True if (instruction, pc) was seen before, recording it otherwise."""
        key = (instruction, pc)
        recorded = self._heights.get(key)
        if recorded is not None:
            if not reexplore_taller or height <= recorded or key in self._active:
                return True
        self._heights[key] = height
        self._active.add(key)
        return False

    def recorded_height(self, instruction: Instruction, pc: int) -> Optional[int]:
        return self._heights.get((instruction, pc))

    def grows(self, instruction: Instruction, pc: int, height: int) -> bool:
        """True if the state is on the current path and is re-entered higher."""
        key = (instruction, pc)
        return key in self._active and height > self._heights[key]

    def leave(self, instruction: Instruction, pc: int) -> None:
        """Mark exploration below (instruction, pc) as complete."""
        self._active.discard((instruction, pc))

    @property
    def depth(self) -> int:
        return len(self._active)

    def clear(self) -> None:
        self._heights.clear()
        self._active.clear()

    def __len__(self):
        return len(self._heights)

    def __contains__(self, key):
        return key in self._heights


# =============================================================================
# Stack Analysis
# =============================================================================

class StackAnalysis:
    """Computes the maximum stack usage of a firmware image.

    All state lives on the instance and is reset by every call to `apply()`
    or `run()`, so one instance can be re-run but must not be shared
    between concurrent runs.
    """

    def __init__(self, memory: FirmwareMemory, decoder=None,
                 config: Optional[AnalysisConfig] = None):
        self.memory = memory
        self.decoder = decoder if decoder is not None else AvrDecoder()
        self.config = config if config is not None else AnalysisConfig()
        self.memo = VisitedStateMemo()
        self.max_height: Union[int, float] = 0
        self.diagnostics: list[AnalysisDiagnostic] = []
        self.gaps: list[ReachabilityGap] = []
        self.steps = 0
        self.unbounded_reason: Optional[str] = None
        self._underflows: set[int] = set()
        self._pending: list[tuple] = []

    @classmethod
    def from_hex(cls, path: Union[str, Path], config: Optional[AnalysisConfig] = None) -> 'StackAnalysis':
        return cls(load_hex(path), config=config)

    def apply(self) -> Union[int, float]:
        """Return the maximum stack usage in bytes, or UNBOUNDED."""
        return self.run().max_height

    def run(self) -> AnalysisResult:
        """Analyze from the configured entry point and return the full result."""
        self._reset()
        self._pending.append((_VISIT, self.config.entry_point // WORD_SIZE, 0))

        while self._pending and self.max_height != UNBOUNDED:
            action, first, second = self._pending.pop()
            if action == _LEAVE:
                self.memo.leave(first, second)
            else:
                self.traverse(first, second)
        self._pending.clear()

        limit = self.config.stack_limit
        if limit is not None and self.max_height != UNBOUNDED and self.max_height > limit:
            self.diagnostics.append(AnalysisDiagnostic(
                severity='error',
                message=f"Stack usage of {self.max_height} bytes exceeds limit of {limit} bytes",
                address=self.config.entry_point // WORD_SIZE,
                context={'max_height': self.max_height, 'limit': limit},
            ))

        logger.info("Explored %d instruction(s), %d state(s): max stack %s, %d gap(s)",
                    self.steps, len(self.memo), format_height(self.max_height), len(self.gaps))

        return AnalysisResult(
            max_height=self.max_height,
            diagnostics=list(self.diagnostics),
            gaps=list(self.gaps),
            steps=self.steps,
            states=len(self.memo),
            image_size=self.memory.size(),
            unbounded_reason=self.unbounded_reason,
            stack_limit=limit,
        )

    def _reset(self) -> None:
        self.memo.clear()
        self.max_height = 0
        self.diagnostics = []
        self.gaps = []
        self.steps = 0
        self.unbounded_reason = None
        self._underflows = set()
        self._pending = []

    def traverse(self, pc: int, height: int) -> None:
        """Visit the instruction at `pc` with the stack `height` bytes deep."""
        self.steps += 1
        if self.config.max_steps and self.steps > self.config.max_steps:
            self._promote_unbounded(pc, f"step budget of {self.config.max_steps} exhausted")
            return

        self.max_height = max(self.max_height, height)

        # Fell off either end of the image; a trailing odd byte is not a word
        if pc < 0 or (pc + 1) * WORD_SIZE > self.memory.size():
            return

        instruction = self.decoder.decode(self.memory, pc)
        self.process(instruction, pc, pc + instruction.width, height)

    def process(self, instruction: Instruction, pc: int, next_pc: int, height: int) -> None:
        """Apply the effect of `instruction` and schedule its successors."""
        if self.memo.record_and_check(instruction, next_pc, height,
                                      reexplore_taller=self.config.reexplore_taller_paths):
            if self.config.detect_growing_cycles and self.memo.grows(instruction, next_pc, height):
                recorded = self.memo.recorded_height(instruction, next_pc)
                self._promote_unbounded(
                    pc, f"stack grows from {recorded} to {height} bytes on each pass through {instruction}")
            return

        if self.config.max_depth and self.memo.depth > self.config.max_depth:
            self._promote_unbounded(pc, f"path depth budget of {self.config.max_depth} exhausted")
            return

        successors = self._successors(instruction, pc, next_pc, height)

        # Depth first: successors are explored in list order, then the state is left
        self._pending.append((_LEAVE, instruction, next_pc))
        for target, target_height in reversed(successors):
            self._pending.append((_VISIT, target, target_height))

    def _successors(self, instruction: Instruction, pc: int, next_pc: int,
                    height: int) -> list[tuple[int, int]]:
        optype = instruction.optype

        if optype is OpType.BRANCH:
            return [(next_pc + instruction.offset, height), (next_pc, height)]

        elif optype is OpType.SKIP:
            return [(self._skip_target(next_pc), height), (next_pc, height)]

        elif optype is OpType.RELATIVE_JUMP:
            if instruction.unresolved:
                self._record_gap(pc, instruction, "relative jump target unknown")
                return []
            return [(next_pc + instruction.offset, height)]

        elif optype is OpType.JUMP:
            if instruction.unresolved:
                self._record_gap(pc, instruction, "indirect jump target unknown")
                return []
            return [(instruction.target, height)]

        elif optype is OpType.CALL:
            if instruction.unresolved:
                self._record_gap(pc, instruction, "indirect call target unknown")
                return []
            # The return site is explored as a sibling at the caller's height
            return [(next_pc, height), (instruction.target, height + self.config.call_overhead)]

        elif optype is OpType.RELATIVE_CALL:
            if instruction.unresolved:
                self._record_gap(pc, instruction, "relative call target unknown")
                return []
            callee = (next_pc + instruction.offset, height + self.config.call_overhead)
            if self.config.explore_rcall_fallthrough:
                return [callee, (next_pc, height)]
            return [callee]

        elif optype is OpType.RETURN:
            return []

        elif optype is OpType.INTERRUPT_RETURN:
            raise UnsupportedInstructionError(instruction, pc)

        elif optype is OpType.STACK_PUSH:
            return [(next_pc, height + 1)]

        elif optype is OpType.STACK_PULL:
            if height - 1 < 0:
                self._record_underflow(pc, instruction, height - 1)
            return [(next_pc, height - 1)]

        elif optype is OpType.WIDE_STORE:
            return [(next_pc, height + self.config.wide_store_cost)]

        else:
            # Control passes to the following instruction
            return [(next_pc, height)]

    def _skip_target(self, next_pc: int) -> int:
        """Address after the instruction a skip would jump over."""
        if (next_pc + 1) * WORD_SIZE > self.memory.size():
            return next_pc + 1
        return next_pc + self.decoder.decode(self.memory, next_pc).width

    def _record_gap(self, pc: int, instruction: Instruction, reason: str) -> None:
        logger.debug("Not following %s at %s: %s", instruction, format_address(pc), reason)
        self.gaps.append(ReachabilityGap(pc, instruction, reason))
        self.diagnostics.append(AnalysisDiagnostic(
            severity='info',
            message=f"Path not followed: {reason} ({instruction})",
            address=pc,
        ))

    def _record_underflow(self, pc: int, instruction: Instruction, height: int) -> None:
        if pc in self._underflows:
            return
        self._underflows.add(pc)
        logger.debug("Stack underflow at %s: height %d", format_address(pc), height)
        self.diagnostics.append(AnalysisDiagnostic(
            severity='warning',
            message=f"Stack underflow: {instruction} leaves height {height}",
            address=pc,
            context={'height': height},
        ))

    def _promote_unbounded(self, pc: int, reason: str) -> None:
        logger.warning("Stack usage unbounded at %s: %s", format_address(pc), reason)
        self.max_height = UNBOUNDED
        self.unbounded_reason = reason
        self.diagnostics.append(AnalysisDiagnostic(
            severity='error',
            message=f"Stack usage unbounded: {reason}",
            address=pc,
        ))


# =============================================================================
# Configuration
# =============================================================================

_INT_KEYS = ('entry_point', 'call_overhead', 'wide_store_cost', 'max_steps', 'max_depth', 'stack_limit')
_BOOL_KEYS = ('detect_growing_cycles', 'explore_rcall_fallthrough', 'reexplore_taller_paths')


def _coerce_int(key: str, value) -> Optional[int]:
    if value is None and key == 'stack_limit':
        return None
    if isinstance(value, bool):
        raise ConfigError(f"{key}: expected an integer, got {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        text = value.strip()
        if text.startswith('$'):
            text = '0x' + text[1:]
        try:
            return int(text, 0)
        except ValueError:
            raise ConfigError(f"{key}: invalid integer {value!r}") from None
    raise ConfigError(f"{key}: expected an integer, got {value!r}")


def parse_config(data: dict) -> AnalysisConfig:
    """Build an AnalysisConfig from a decoded JSON object."""
    if not isinstance(data, dict):
        raise ConfigError("configuration must be a JSON object")

    unknown = sorted(set(data) - set(_INT_KEYS) - set(_BOOL_KEYS))
    if unknown:
        raise ConfigError(f"unknown configuration key(s): {', '.join(unknown)}")

    values = {}
    for key in _INT_KEYS:
        if key in data:
            values[key] = _coerce_int(key, data[key])
    for key in _BOOL_KEYS:
        if key in data:
            if not isinstance(data[key], bool):
                raise ConfigError(f"{key}: expected true or false, got {data[key]!r}")
            values[key] = data[key]

    return AnalysisConfig(**values)


def load_config(path: Union[str, Path]) -> AnalysisConfig:
    """Load an AnalysisConfig from a JSON file."""
    try:
        with open(path) as f:
            data = json.load(f)
    except OSError as exc:
        raise ConfigError(f"cannot read configuration {path}: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise ConfigError(f"invalid JSON in {path}: {exc}") from exc
    return parse_config(data)


# =============================================================================
# Main Analysis
# =============================================================================

def analyze_hex(path: Union[str, Path], config: Optional[AnalysisConfig] = None) -> AnalysisResult:
    """Perform stack analysis on an Intel HEX firmware image."""
    return StackAnalysis.from_hex(path, config).run()


# =============================================================================
# CLI
# =============================================================================

def _configure_logging(verbosity: int) -> None:
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity >= 2:
        level = logging.DEBUG
    logging.basicConfig(
        level=level,
        stream=sys.stderr,
        format="%(asctime)s [%(levelname)-5.5s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def _config_from_args(args) -> AnalysisConfig:
    config = load_config(args.config) if args.config else AnalysisConfig()
    overrides = {}
    if args.entry is not None:
        overrides['entry_point'] = args.entry
    if args.call_overhead is not None:
        overrides['call_overhead'] = args.call_overhead
    if args.max_steps is not None:
        overrides['max_steps'] = args.max_steps
    if args.max_depth is not None:
        overrides['max_depth'] = args.max_depth
    if args.limit is not None:
        overrides['stack_limit'] = args.limit
    if args.rcall_fallthrough:
        overrides['explore_rcall_fallthrough'] = True
    if args.reexplore:
        overrides['reexplore_taller_paths'] = True
    return dataclasses.replace(config, **overrides)


def _print_report(firmware: Path, result: AnalysisResult, verbose: bool) -> None:
    print("AVR Stack Analysis Report")
    print("=" * 60)
    print(f"Firmware: {firmware}")
    print(f"Image size: {result.image_size} bytes")
    print(f"Instructions explored: {result.steps}")
    print(f"Visited states: {result.states}")
    print(f"Max stack usage: {format_height(result.max_height)}")
    if result.stack_limit is not None:
        headroom = result.headroom()
        if headroom is None:
            print(f"Stack limit: {result.stack_limit} bytes")
        else:
            print(f"Stack limit: {result.stack_limit} bytes ({headroom} bytes headroom)")
    if result.gaps:
        print(f"Reachability gaps: {len(result.gaps)}")
    print()

    shown = [d for d in result.diagnostics if verbose or d.severity != 'info']
    if shown:
        print(f"Diagnostics ({len(shown)}):")
        print("-" * 60)
        for d in shown:
            prefix = "ERROR" if d.severity == 'error' else "WARN" if d.severity == 'warning' else "INFO"
            print(f"  [{prefix}] {format_address(d.address)}: {d.message}")
            if verbose and d.context:
                for k, v in d.context.items():
                    print(f"          {k}: {v}")
        print()
    else:
        print("No issues found.")


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="AVR Stack Analyzer - worst-case stack usage of a firmware image",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Report the maximum stack usage
  %(prog)s firmware.hex

  # Fail when the stack may need more than 256 bytes
  %(prog)s firmware.hex --limit 256

  # Devices with more than 128 KiB of flash push 3-byte return addresses
  %(prog)s firmware.hex --call-overhead 3

  # Output as JSON
  %(prog)s firmware.hex --config analysis.json --json > report.json
"""
    )

    parser.add_argument('firmware', type=Path, help='Intel HEX firmware image')
    parser.add_argument('--config', type=Path, help='Analysis configuration (JSON)')
    parser.add_argument('--entry', type=lambda x: int(x, 0),
                        help='Entry point byte address (default: 0)')
    parser.add_argument('--call-overhead', type=int,
                        help='Bytes pushed by CALL/RCALL (default: 2)')
    parser.add_argument('--max-steps', type=int,
                        help='Instruction visits before giving up (0 = no limit)')
    parser.add_argument('--max-depth', type=int,
                        help='Longest path explored before giving up (0 = no limit)')
    parser.add_argument('--limit', type=lambda x: int(x, 0),
                        help='Stack size in bytes; exceeding it is an error')
    parser.add_argument('--rcall-fallthrough', action='store_true',
                        help='Also explore the instruction after RCALL at the caller height')
    parser.add_argument('--reexplore', action='store_true',
                        help='Re-explore code reached again with a taller stack (slower, more conservative)')
    parser.add_argument('--json', action='store_true', help='Output as JSON')
    parser.add_argument('-v', '--verbose', action='count', default=0,
                        help='Verbose output (-vv for debug logging)')

    args = parser.parse_args(argv)
    _configure_logging(args.verbose)

    if not args.firmware.is_file():
        print(f"Error: firmware file not found: {args.firmware}", file=sys.stderr)
        return 1

    try:
        config = _config_from_args(args)
        result = analyze_hex(args.firmware, config)
    except (AnalysisError, OSError) as exc:
        if args.json:
            print(json.dumps({'success': False, 'error': str(exc), 'kind': type(exc).__name__}, indent=2))
        else:
            print(f"Error: {exc}", file=sys.stderr)
        return 1

    if args.json:
        print(json.dumps(result.to_dict(), indent=2))
    else:
        _print_report(args.firmware, result, args.verbose > 0)

    return 0 if result.success() else 1


if __name__ == '__main__':
    sys.exit(main())
