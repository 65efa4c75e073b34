"""Tiny AVR assembler used to synthesize firmware images for tests.

Offsets are in words, relative to the following instruction, exactly as
they are encoded.
"""

from __future__ import annotations

import struct


def words(*values: int) -> bytes:
    return b''.join(struct.pack('<H', v & 0xFFFF) for v in values)


def nop() -> bytes:
    return words(0x0000)


def ldi(d: int, k: int) -> bytes:
    return words(0xE000 | ((k & 0xF0) << 4) | ((d - 16) << 4) | (k & 0x0F))


def push(r: int) -> bytes:
    return words(0x920F | (r << 4))


def pop(r: int) -> bytes:
    return words(0x900F | (r << 4))


def sts(address: int, r: int) -> bytes:
    return words(0x9200 | (r << 4), address)


def lds(r: int, address: int) -> bytes:
    return words(0x9000 | (r << 4), address)


def rjmp(k: int) -> bytes:
    return words(0xC000 | (k & 0xFFF))


def rcall(k: int) -> bytes:
    return words(0xD000 | (k & 0xFFF))


def _long(base: int, target: int) -> bytes:
    high = ((target >> 17) & 0x1F) << 4 | ((target >> 16) & 0x1)
    return words(base | high, target & 0xFFFF)


def jmp(target: int) -> bytes:
    return _long(0x940C, target)


def call(target: int) -> bytes:
    return _long(0x940E, target)


def ijmp() -> bytes:
    return words(0x9409)


def icall() -> bytes:
    return words(0x9509)


def ret() -> bytes:
    return words(0x9508)


def reti() -> bytes:
    return words(0x9518)


def breq(k: int) -> bytes:
    return words(0xF001 | ((k & 0x7F) << 3))


def brne(k: int) -> bytes:
    return words(0xF401 | ((k & 0x7F) << 3))


def brlt(k: int) -> bytes:
    return words(0xF004 | ((k & 0x7F) << 3))


def brge(k: int) -> bytes:
    return words(0xF404 | ((k & 0x7F) << 3))


def sbrs(r: int, bit: int) -> bytes:
    return words(0xFE00 | (r << 4) | bit)


def sbrc(r: int, bit: int) -> bytes:
    return words(0xFC00 | (r << 4) | bit)


def sbis(a: int, bit: int) -> bytes:
    return words(0x9B00 | (a << 3) | bit)


def cpse(d: int, r: int) -> bytes:
    return words(0x1000 | ((r & 0x10) << 5) | (d << 4) | (r & 0x0F))


def program(*chunks: bytes) -> bytes:
    return b''.join(chunks)
