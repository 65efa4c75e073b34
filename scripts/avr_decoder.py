"""
AVR instruction decoder for stack analysis.

Decodes just enough of the AVR instruction set to follow control flow and
stack effects: every control transfer, skip, push/pop and 32-bit encoding is
recognised; anything else becomes a one-word OTHER instruction that carries
its raw encoding.

Program counters are word addresses.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, auto
from typing import Optional, Tuple

from analysis_errors import MalformedImageError


# =============================================================================
# Constants
# =============================================================================

class OpType(Enum):
    """Opcode category, as seen by the stack analyzer."""
    NORMAL = auto()
    BRANCH = auto()            # BREQ, BRNE, BRLT, BRGE, ...
    SKIP = auto()              # CPSE, SBRC, SBRS, SBIC, SBIS
    JUMP = auto()              # JMP, IJMP, EIJMP
    RELATIVE_JUMP = auto()     # RJMP
    CALL = auto()              # CALL, ICALL, EICALL
    RELATIVE_CALL = auto()     # RCALL
    RETURN = auto()            # RET
    INTERRUPT_RETURN = auto()  # RETI
    STACK_PUSH = auto()        # PUSH
    STACK_PULL = auto()        # POP
    WIDE_STORE = auto()        # STS (32-bit)


class Opcode(Enum):
    NOP = auto()
    LDI = auto()
    LDS = auto()
    STS = auto()
    PUSH = auto()
    POP = auto()
    RJMP = auto()
    RCALL = auto()
    JMP = auto()
    CALL = auto()
    IJMP = auto()
    EIJMP = auto()
    ICALL = auto()
    EICALL = auto()
    RET = auto()
    RETI = auto()
    CPSE = auto()
    SBRC = auto()
    SBRS = auto()
    SBIC = auto()
    SBIS = auto()
    BRCS = auto()
    BREQ = auto()
    BRMI = auto()
    BRVS = auto()
    BRLT = auto()
    BRHS = auto()
    BRTS = auto()
    BRIE = auto()
    BRCC = auto()
    BRNE = auto()
    BRPL = auto()
    BRVC = auto()
    BRGE = auto()
    BRHC = auto()
    BRTC = auto()
    BRID = auto()
    OTHER = auto()


# BRBS s / BRBC s, indexed by SREG bit
BRBS_OPCODES = (Opcode.BRCS, Opcode.BREQ, Opcode.BRMI, Opcode.BRVS,
                Opcode.BRLT, Opcode.BRHS, Opcode.BRTS, Opcode.BRIE)
BRBC_OPCODES = (Opcode.BRCC, Opcode.BRNE, Opcode.BRPL, Opcode.BRVC,
                Opcode.BRGE, Opcode.BRHC, Opcode.BRTC, Opcode.BRID)

# Fixed one-word encodings
FIXED_OPCODES = {
    0x0000: Opcode.NOP,
    0x9508: Opcode.RET,
    0x9518: Opcode.RETI,
    0x9409: Opcode.IJMP,
    0x9419: Opcode.EIJMP,
    0x9509: Opcode.ICALL,
    0x9519: Opcode.EICALL,
}

OPTYPES = {
    Opcode.CPSE: OpType.SKIP,
    Opcode.SBRC: OpType.SKIP,
    Opcode.SBRS: OpType.SKIP,
    Opcode.SBIC: OpType.SKIP,
    Opcode.SBIS: OpType.SKIP,
    Opcode.JMP: OpType.JUMP,
    Opcode.IJMP: OpType.JUMP,
    Opcode.EIJMP: OpType.JUMP,
    Opcode.RJMP: OpType.RELATIVE_JUMP,
    Opcode.CALL: OpType.CALL,
    Opcode.ICALL: OpType.CALL,
    Opcode.EICALL: OpType.CALL,
    Opcode.RCALL: OpType.RELATIVE_CALL,
    Opcode.RET: OpType.RETURN,
    Opcode.RETI: OpType.INTERRUPT_RETURN,
    Opcode.PUSH: OpType.STACK_PUSH,
    Opcode.POP: OpType.STACK_PULL,
    Opcode.STS: OpType.WIDE_STORE,
}
OPTYPES.update({op: OpType.BRANCH for op in BRBS_OPCODES + BRBC_OPCODES})


# =============================================================================
# Data Structures
# =============================================================================

@dataclass(frozen=True)
class Instruction:
    """A decoded instruction.

    Two instructions compare equal when opcode, width and every operand
    match; the address they were decoded from is not part of the value.
    """
    opcode: Opcode
    width: int = 1                    # in words
    operands: Tuple[int, ...] = ()    # registers, immediates, raw encoding
    offset: Optional[int] = None      # relative displacement, in words
    target: Optional[int] = None      # absolute word address
    unresolved: bool = False          # target only known at runtime

    @property
    def optype(self) -> OpType:
        return OPTYPES.get(self.opcode, OpType.NORMAL)

    def __str__(self):
        if self.opcode is Opcode.OTHER:
            return f".word 0x{self.operands[0]:04x}"
        parts = [str(op) for op in self.operands]
        if self.offset is not None:
            parts.append(f".{self.offset * 2:+d}")  # byte displacement, avr-objdump style
        if self.target is not None:
            parts.append(f"0x{self.target * 2:x}")
        name = self.opcode.name.lower()
        return f"{name} {', '.join(parts)}" if parts else name


def _signed(value: int, bits: int) -> int:
    if value & (1 << (bits - 1)):
        value -= 1 << bits
    return value


# =============================================================================
# Decoder
# =============================================================================

class AvrDecoder:
    """Decodes AVR instructions from a FirmwareMemory."""

    def decode(self, memory, pc: int) -> Instruction:
        """Decode the instruction at word address `pc`."""
        word = memory.read_word(pc)

        opcode = FIXED_OPCODES.get(word)
        if opcode is not None:
            unresolved = opcode in (Opcode.IJMP, Opcode.EIJMP, Opcode.ICALL, Opcode.EICALL)
            return Instruction(opcode, unresolved=unresolved)

        # Conditional branches: 1111 0Xkk kkkk ksss
        if word & 0xF800 == 0xF000:
            table = BRBC_OPCODES if word & 0x0400 else BRBS_OPCODES
            return Instruction(table[word & 0x7], offset=_signed((word >> 3) & 0x7F, 7))

        # RJMP / RCALL: 110X kkkk kkkk kkkk
        if word & 0xE000 == 0xC000:
            opcode = Opcode.RCALL if word & 0x1000 else Opcode.RJMP
            return Instruction(opcode, offset=_signed(word & 0xFFF, 12))

        # JMP / CALL: 1001 010k kkkk 11Xk kkkk kkkk kkkk kkkk
        if word & 0xFE0C == 0x940C:
            opcode = Opcode.CALL if word & 0x0002 else Opcode.JMP
            low = self._second_word(memory, pc)
            target = (((word >> 4) & 0x1F) << 17) | ((word & 0x1) << 16) | low
            return Instruction(opcode, width=2, target=target)

        register = (word >> 4) & 0x1F

        # PUSH / POP / STS / LDS: 1001 00Xd dddd 1111 and 1001 00Xd dddd 0000
        if word & 0xFC0F == 0x900F:
            opcode = Opcode.PUSH if word & 0x0200 else Opcode.POP
            return Instruction(opcode, operands=(register,))
        if word & 0xFC0F == 0x9000:
            opcode = Opcode.STS if word & 0x0200 else Opcode.LDS
            address = self._second_word(memory, pc)
            return Instruction(opcode, width=2, operands=(register, address))

        # Skips
        if word & 0xFC00 == 0x1000:
            rr = (word & 0xF) | ((word >> 5) & 0x10)
            return Instruction(Opcode.CPSE, operands=(register, rr))
        if word & 0xFC08 == 0xFC00:
            opcode = Opcode.SBRS if word & 0x0200 else Opcode.SBRC
            return Instruction(opcode, operands=(register, word & 0x7))
        if word & 0xFD00 == 0x9900:
            opcode = Opcode.SBIS if word & 0x0200 else Opcode.SBIC
            return Instruction(opcode, operands=((word >> 3) & 0x1F, word & 0x7))

        # LDI: 1110 KKKK dddd KKKK
        if word & 0xF000 == 0xE000:
            constant = ((word >> 4) & 0xF0) | (word & 0xF)
            return Instruction(Opcode.LDI, operands=(16 + ((word >> 4) & 0xF), constant))

        return Instruction(Opcode.OTHER, operands=(word,))

    def _second_word(self, memory, pc: int) -> int:
        try:
            return memory.read_word(pc + 1)
        except MalformedImageError as exc:
            raise MalformedImageError("truncated 32-bit instruction", pc) from exc


def decode_instruction(memory, pc: int) -> Instruction:
    """Decode one instruction with a default decoder."""
    return AvrDecoder().decode(memory, pc)
