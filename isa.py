"""ISA: memory layout, font table, opcode variants and the decoder."""

from __future__ import annotations

import struct
from dataclasses import dataclass
from enum import IntEnum

from errors import UnknownOpcodeError

MEMORY_SIZE = 4096
LOAD_ADDRESS = 0x200  # program image is copied here; 0x000..0x1FF is reserved
ADDRESS_MASK = 0x0FFF

REGISTER_COUNT = 16
FLAG_REGISTER = 0xF
STACK_DEPTH = 16
KEY_COUNT = 16

SCREEN_WIDTH = 64
SCREEN_HEIGHT = 32
SPRITE_WIDTH = 8

INSTR_SIZE = 2  # every opcode is one big-endian 16-bit word

FONT_START = 0x050
GLYPH_SIZE = 5
# fmt: off
FONTSET = bytes([
    0xF0, 0x90, 0x90, 0x90, 0xF0,  # 0
    0x20, 0x60, 0x20, 0x20, 0x70,  # 1
    0xF0, 0x10, 0xF0, 0x80, 0xF0,  # 2
    0xF0, 0x10, 0xF0, 0x10, 0xF0,  # 3
    0x90, 0x90, 0xF0, 0x10, 0x10,  # 4
    0xF0, 0x80, 0xF0, 0x10, 0xF0,  # 5
    0xF0, 0x80, 0xF0, 0x90, 0xF0,  # 6
    0xF0, 0x10, 0x20, 0x40, 0x40,  # 7
    0xF0, 0x90, 0xF0, 0x90, 0xF0,  # 8
    0xF0, 0x90, 0xF0, 0x10, 0xF0,  # 9
    0xF0, 0x90, 0xF0, 0x90, 0x90,  # A
    0xE0, 0x90, 0xE0, 0x90, 0xE0,  # B
    0xF0, 0x80, 0x80, 0x80, 0xF0,  # C
    0xE0, 0x90, 0x90, 0x90, 0xE0,  # D
    0xF0, 0x80, 0xF0, 0x80, 0xF0,  # E
    0xF0, 0x80, 0xF0, 0x80, 0x80,  # F
])
# fmt: on


class OpCode(IntEnum):
    """One member per instruction variant."""

    CLS = 0x00E0  # clear display
    RET = 0x00EE
    JP = 0x1000  # PC = NNN
    CALL = 0x2000
    SE_BYTE = 0x3000  # skip if Vx == NN
    SNE_BYTE = 0x4000  # skip if Vx != NN
    SE_REG = 0x5000  # skip if Vx == Vy
    LD_BYTE = 0x6000  # Vx = NN
    ADD_BYTE = 0x7000  # Vx += NN, no flag
    LD_REG = 0x8000
    OR = 0x8001
    AND = 0x8002
    XOR = 0x8003
    ADD_REG = 0x8004  # with carry
    SUB = 0x8005  # Vx - Vy
    SHR = 0x8006
    SUBN = 0x8007  # Vy - Vx
    SHL = 0x800E
    SNE_REG = 0x9000  # skip if Vx != Vy
    LD_I = 0xA000
    JP_V0 = 0xB000  # PC = NNN + V0
    RND = 0xC000
    DRW = 0xD000
    SKP = 0xE09E  # skip if key Vx down
    SKNP = 0xE0A1  # skip if key Vx up
    LD_X_DT = 0xF007
    LD_KEY = 0xF00A  # wait for key
    LD_DT = 0xF015
    LD_ST = 0xF018
    ADD_I = 0xF01E
    LD_FONT = 0xF029
    LD_BCD = 0xF033
    STORE_REGS = 0xF055
    LOAD_REGS = 0xF065


# classes whose variant is fully selected by the top nibble
_SINGLE = {
    0x1: OpCode.JP,
    0x2: OpCode.CALL,
    0x3: OpCode.SE_BYTE,
    0x4: OpCode.SNE_BYTE,
    0x5: OpCode.SE_REG,
    0x6: OpCode.LD_BYTE,
    0x7: OpCode.ADD_BYTE,
    0x9: OpCode.SNE_REG,
    0xA: OpCode.LD_I,
    0xB: OpCode.JP_V0,
    0xC: OpCode.RND,
    0xD: OpCode.DRW,
}

# secondary dispatch: low nibble for 0x8, low byte for 0x0/0xE/0xF
_BY_LOW_NIBBLE = {
    0x8: {op.value & 0x000F: op for op in OpCode if op.value & 0xF000 == 0x8000},
}
_BY_LOW_BYTE = {
    kind: {op.value & 0x00FF: op for op in OpCode if op.value & 0xF000 == kind << 12} for kind in (0x0, 0xE, 0xF)
}


@dataclass(frozen=True)
class Instruction:
    """Operand fields sliced out of one raw opcode."""

    raw: int
    kind: int  # top nibble, selects the class
    x: int
    y: int
    n: int
    nn: int
    nnn: int

    @classmethod
    def from_raw(cls, raw: int) -> Instruction:
        if not 0 <= raw <= 0xFFFF:
            msg = f"opcode {raw!r} is not a 16-bit value"
            raise ValueError(msg)
        return cls(
            raw=raw,
            kind=(raw >> 12) & 0xF,
            x=(raw >> 8) & 0xF,
            y=(raw >> 4) & 0xF,
            n=raw & 0x000F,
            nn=raw & 0x00FF,
            nnn=raw & 0x0FFF,
        )


def fetch_opcode(memory: bytes | bytearray, pc: int) -> int:
    """Assemble the big-endian opcode at pc (addresses wrap at 4 KiB)."""
    hi = memory[pc & ADDRESS_MASK]
    lo = memory[(pc + 1) & ADDRESS_MASK]
    (raw,) = struct.unpack(">H", bytes((hi, lo)))
    return int(raw)


def encode_program(*words: int) -> bytes:
    """Pack opcode words into a big-endian program image."""
    return struct.pack(f">{len(words)}H", *words)


def decode(raw: int) -> tuple[OpCode, Instruction]:
    """Identify the variant of `raw`.

    Raises UnknownOpcodeError when no variant matches.
    """
    instr = Instruction.from_raw(raw)
    op = _SINGLE.get(instr.kind)
    if op is not None:
        return op, instr
    if instr.kind in _BY_LOW_NIBBLE:
        op = _BY_LOW_NIBBLE[instr.kind].get(instr.n)
    elif instr.kind in _BY_LOW_BYTE:
        # 0NNN machine-code calls fall through here as unknown
        op = _BY_LOW_BYTE[instr.kind].get(instr.nn)
    if op is None:
        raise UnknownOpcodeError(raw)
    return op, instr
