"""Error kinds raised by the loader and the execution engine."""

from __future__ import annotations

from enum import Enum


class ErrorKind(Enum):
    """Structured kind reported to the host with a fault."""

    IMAGE_TOO_LARGE = "ImageTooLarge"
    IMAGE_UNREADABLE = "ImageUnreadable"
    STACK_OVERFLOW = "StackOverflow"
    STACK_UNDERFLOW = "StackUnderflow"
    UNKNOWN_OPCODE = "UnknownOpcode"
    MEMORY_ACCESS = "MemoryAccess"


class MachineError(Exception):
    """Base for every loader/execution failure."""

    kind: ErrorKind


class ImageTooLargeError(MachineError):
    kind = ErrorKind.IMAGE_TOO_LARGE

    def __init__(self, size: int, max_size: int) -> None:
        super().__init__(f"Program image size ({size}) is greater than the maximum allowed size ({max_size})")
        self.size = size
        self.max_size = max_size


class ImageUnreadableError(MachineError):
    kind = ErrorKind.IMAGE_UNREADABLE


class StackOverflowError(MachineError):
    kind = ErrorKind.STACK_OVERFLOW


class StackUnderflowError(MachineError):
    kind = ErrorKind.STACK_UNDERFLOW


class UnknownOpcodeError(MachineError):
    kind = ErrorKind.UNKNOWN_OPCODE

    def __init__(self, opcode: int) -> None:
        super().__init__(f"Unsupported opcode: {opcode:#06x}")
        self.opcode = opcode


class MemoryAccessError(MachineError, IndexError):
    """Raised on a read or write outside the address space."""

    kind = ErrorKind.MEMORY_ACCESS
