"""Processor (MemoryImage + Datapath + ControlUnit), run controller and CLI wrapper.

Provides the fetch-decode-execute engine, the RUNNING/PAUSED/HALTED run
controller the host drives one tick at a time, logging initialization and a
headless command-line runner.
"""

from __future__ import annotations

import argparse
import logging
import random
import sys
import time
from collections import deque
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Protocol, assert_never

from config import ConfigError, load_config
from errors import (
    ErrorKind,
    ImageTooLargeError,
    ImageUnreadableError,
    MachineError,
    MemoryAccessError,
    StackOverflowError,
    StackUnderflowError,
)
from isa import (
    ADDRESS_MASK,
    FLAG_REGISTER,
    FONT_START,
    FONTSET,
    GLYPH_SIZE,
    INSTR_SIZE,
    KEY_COUNT,
    LOAD_ADDRESS,
    MEMORY_SIZE,
    REGISTER_COUNT,
    SCREEN_HEIGHT,
    SCREEN_WIDTH,
    SPRITE_WIDTH,
    STACK_DEPTH,
    Instruction,
    OpCode,
    decode,
    fetch_opcode,
)

LOGFILE = "processor.log"

Frame = tuple[tuple[bool, ...], ...]
KeyEvent = tuple[int, int, bool]  # (tick, key, pressed)


def init_logging(logfile: str = LOGFILE, debug: bool = False, console: bool = False) -> None:
    """Route the root logger to `logfile`, replacing any earlier handlers.

    Debug mode records one STATE line per executed instruction, indented under
    the memory-image load message, e.g.:
        DEBUG root:processor.py MemoryImage: loaded 4 program bytes at 0x200
            DEBUG root:processor.py STATE: RUNNING ... INSTR: LD_BYTE 6005
    Otherwise only warnings and faults reach the file.
    """
    root = logging.getLogger()
    for h in list(root.handlers):
        root.removeHandler(h)
    level = logging.DEBUG if debug else logging.WARNING
    root.setLevel(level)

    class _TraceFormatter(logging.Formatter):
        def __init__(self, fmt: str) -> None:
            super().__init__(fmt)
            self._header_done = False

        def format(self, record: logging.LogRecord) -> str:
            line = super().format(record)
            if self._header_done:
                return "    " + line
            self._header_done = True
            return line

    trace = logging.FileHandler(logfile, mode="w", encoding="utf-8")
    trace.setLevel(level)
    if debug:
        trace.setFormatter(_TraceFormatter("%(levelname)s %(name)s:%(filename)s %(message)s"))
    else:
        trace.setFormatter(logging.Formatter("%(levelname)-5s %(message)s"))
    root.addHandler(trace)

    if console:
        echo = logging.StreamHandler(sys.stdout)
        echo.setLevel(level)
        echo.setFormatter(logging.Formatter("%(levelname)5s %(message)s"))
        root.addHandler(echo)


def load_program(path: str | Path) -> bytes:
    """Read a raw program image from disk.

    Raises ImageUnreadableError when the file cannot be read.
    """
    p = Path(path)
    try:
        blob = p.read_bytes()
    except OSError as e:
        err = f"Failed to read program image {path}: {e}"
        raise ImageUnreadableError(err) from e
    logging.debug("load_program: read %d bytes from %s", len(blob), p)
    return blob


class MemoryImage:
    """Fixed 4 KiB byte store holding the font table and the program image."""

    data: bytearray
    program_len: int

    def __init__(self, program: bytes) -> None:
        """Copy the font table, then the program image at LOAD_ADDRESS.

        Raises ImageTooLargeError if the image doesn't fit above LOAD_ADDRESS.
        """
        max_size = MEMORY_SIZE - LOAD_ADDRESS
        if len(program) > max_size:
            raise ImageTooLargeError(len(program), max_size)

        self.data = bytearray(MEMORY_SIZE)
        self.data[FONT_START : FONT_START + len(FONTSET)] = FONTSET
        self.data[LOAD_ADDRESS : LOAD_ADDRESS + len(program)] = program
        self.program_len = len(program)
        logging.debug("MemoryImage: loaded %d program bytes at %#05x", self.program_len, LOAD_ADDRESS)

    def __len__(self) -> int:
        return len(self.data)

    def _check(self, addr: int) -> None:
        if not 0 <= addr < len(self.data):
            err = f"memory access out of range: {addr:#x}"
            raise MemoryAccessError(err)

    def read(self, addr: int) -> int:
        self._check(addr)
        return self.data[addr]

    def write(self, addr: int, value: int) -> None:
        self._check(addr)
        self.data[addr] = value & 0xFF


class Datapath:
    """Execution state: registers, index, PC, call stack, timers, keys and screen."""

    mem: MemoryImage

    V: bytearray
    I: int  # noqa: E741
    PC: int

    stack: list[int]
    SP: int  # number of occupied stack slots, 0..STACK_DEPTH

    delay_timer: int
    sound_timer: int
    beep_edge: bool
    beep_count: int

    keys: list[bool]
    display: list[bool]  # row-major, SCREEN_WIDTH * SCREEN_HEIGHT
    screen_dirty: bool

    tick: int

    def __init__(self, mem: MemoryImage) -> None:
        self.mem = mem

        self.V = bytearray(REGISTER_COUNT)
        self.I = 0
        self.PC = LOAD_ADDRESS

        self.stack = [0] * STACK_DEPTH
        self.SP = 0

        self.delay_timer = 0
        self.sound_timer = 0
        self.beep_edge = False
        self.beep_count = 0

        self.keys = [False] * KEY_COUNT
        self.display = [False] * (SCREEN_WIDTH * SCREEN_HEIGHT)
        self.screen_dirty = False

        self.tick = 0

    # --- call-stack helpers (return-address stack) ---
    def call_push(self, addr: int) -> None:
        """Push a return address. Raises StackOverflowError when full."""
        if self.SP == STACK_DEPTH:
            err = f"Stack overflow: call depth exceeds {STACK_DEPTH} (PC={self.PC:#05x})"
            raise StackOverflowError(err)
        self.stack[self.SP] = addr
        self.SP += 1

    def call_pop(self) -> int:
        """Pop a return address. Raises StackUnderflowError when empty."""
        if self.SP == 0:
            err = f"Stack underflow: return with empty call stack (PC={self.PC:#05x})"
            raise StackUnderflowError(err)
        self.SP -= 1
        return self.stack[self.SP]

    def skip(self) -> None:
        self.PC = (self.PC + INSTR_SIZE) & 0xFFFF

    # --- timers ---
    def tick_timers(self) -> None:
        """Decrement both timers toward zero and latch the beep edge on 1 -> 0."""
        if self.delay_timer > 0:
            self.delay_timer -= 1

        if self.sound_timer > 0:
            self.sound_timer -= 1
            if self.sound_timer == 0:
                self.beep_edge = True
                self.beep_count += 1
                logging.debug("[tick %d] sound timer expired -> beep", self.tick)

    # --- display ---
    def clear_screen(self) -> None:
        for i in range(len(self.display)):
            self.display[i] = False
        self.screen_dirty = True

    def draw_sprite(self, x: int, y: int, rows: Sequence[int]) -> bool:
        """XOR an 8-pixel-wide sprite onto the screen.

        The start position wraps around the screen; pixels past the right or
        bottom edge are clipped. Returns True if any set pixel was erased.
        """
        x0 = x % SCREEN_WIDTH
        y0 = y % SCREEN_HEIGHT
        collided = False
        for r, bits in enumerate(rows):
            py = y0 + r
            if py >= SCREEN_HEIGHT:
                break
            for c in range(SPRITE_WIDTH):
                px = x0 + c
                if px >= SCREEN_WIDTH:
                    break
                if not bits & (0x80 >> c):
                    continue
                idx = py * SCREEN_WIDTH + px
                if self.display[idx]:
                    collided = True
                self.display[idx] = not self.display[idx]
        self.screen_dirty = True
        return collided

    def framebuffer(self) -> Frame:
        """Immutable snapshot of the screen indexed [row][column]."""
        return tuple(
            tuple(self.display[row * SCREEN_WIDTH : (row + 1) * SCREEN_WIDTH]) for row in range(SCREEN_HEIGHT)
        )

    # --- input ---
    def pressed_key(self) -> int | None:
        """Return the lowest-indexed key currently down, or None."""
        for i, down in enumerate(self.keys):
            if down:
                return i
        return None


class ControlUnit:
    """Control unit implementing the FETCH-DECODE-EXEC cycle for the Datapath."""

    dp: Datapath
    rand_byte: Callable[[], int]
    lenient_log: bool

    def __init__(self, dp: Datapath, rand_byte: Callable[[], int], lenient_log: bool = False) -> None:
        """Create a ControlUnit bound to `dp` drawing random bytes from `rand_byte`."""
        self.dp = dp
        self.rand_byte = rand_byte
        self.lenient_log = lenient_log

    def _log_step(self, state: str, step: str, instr: str) -> None:
        # skip verbose per-step logs in lenient mode to reduce log size
        if self.lenient_log:
            return
        dp = self.dp
        regs = " ".join(f"{v:02X}" for v in dp.V)
        logging.debug(
            "STATE: %-8s STEP: %-10s TICK: %5d PC: %#05x I: %#05x SP: %2d DT: %3d ST: %3d V: %s\tINSTR: %s",
            state,
            step,
            dp.tick,
            dp.PC,
            dp.I,
            dp.SP,
            dp.delay_timer,
            dp.sound_timer,
            regs,
            instr,
        )

    def step(self) -> OpCode:
        """Fetch, decode and execute exactly one instruction.

        Raises a MachineError subclass on a fatal condition; state is left as
        the failing instruction left it.
        """
        dp = self.dp
        raw = fetch_opcode(dp.mem.data, dp.PC)
        # operands are pre-consumed: PC points past the opcode during exec
        dp.PC = (dp.PC + INSTR_SIZE) & 0xFFFF
        dp.tick += 1
        op, instr = decode(raw)
        self.exec(op, instr)
        self._log_step("RUNNING", "EXECUTION", f"{op.name} {raw:04X}")
        return op

    def exec(self, op: OpCode, ins: Instruction) -> None:
        """Apply the semantic effect of one decoded instruction."""
        dp = self.dp
        mem = dp.mem
        V = dp.V
        x, y = ins.x, ins.y

        match op:
            case OpCode.CLS:
                dp.clear_screen()
            case OpCode.RET:
                dp.PC = dp.call_pop()
            case OpCode.JP:
                dp.PC = ins.nnn
            case OpCode.CALL:
                dp.call_push(dp.PC)
                dp.PC = ins.nnn
            case OpCode.SE_BYTE:
                if V[x] == ins.nn:
                    dp.skip()
            case OpCode.SNE_BYTE:
                if V[x] != ins.nn:
                    dp.skip()
            case OpCode.SE_REG:
                if V[x] == V[y]:
                    dp.skip()
            case OpCode.SNE_REG:
                if V[x] != V[y]:
                    dp.skip()
            case OpCode.LD_BYTE:
                V[x] = ins.nn
            case OpCode.ADD_BYTE:
                V[x] = (V[x] + ins.nn) & 0xFF
            case OpCode.LD_REG:
                V[x] = V[y]
            case OpCode.OR:
                V[x] |= V[y]
            case OpCode.AND:
                V[x] &= V[y]
            case OpCode.XOR:
                V[x] ^= V[y]
            # 8XY4..8XYE: flag first, then the result; with X == F the result remains
            case OpCode.ADD_REG:
                total = V[x] + V[y]
                V[FLAG_REGISTER] = 1 if total > 0xFF else 0
                V[x] = total & 0xFF
            case OpCode.SUB:
                diff = V[x] - V[y]
                V[FLAG_REGISTER] = 1 if diff > 0 else 0
                V[x] = diff & 0xFF
            case OpCode.SHR:
                val = V[x]
                V[FLAG_REGISTER] = val & 0x1
                V[x] = val >> 1
            case OpCode.SUBN:
                diff = V[y] - V[x]
                V[FLAG_REGISTER] = 1 if diff > 0 else 0
                V[x] = diff & 0xFF
            case OpCode.SHL:
                val = V[x]
                V[FLAG_REGISTER] = (val & 0x80) >> 7
                V[x] = (val << 1) & 0xFF
            case OpCode.LD_I:
                dp.I = ins.nnn
            case OpCode.JP_V0:
                dp.PC = ins.nnn + V[0]
            case OpCode.RND:
                V[x] = self.rand_byte() & 0xFF & ins.nn
            case OpCode.DRW:
                rows = [mem.read((dp.I + r) & ADDRESS_MASK) for r in range(ins.n)]
                V[FLAG_REGISTER] = 0
                collided = dp.draw_sprite(V[x], V[y], rows)
                V[FLAG_REGISTER] = 1 if collided else 0
            case OpCode.SKP:
                if dp.keys[V[x] & 0xF]:
                    dp.skip()
            case OpCode.SKNP:
                if not dp.keys[V[x] & 0xF]:
                    dp.skip()
            case OpCode.LD_X_DT:
                V[x] = dp.delay_timer
            case OpCode.LD_KEY:
                key = dp.pressed_key()
                if key is None:
                    # re-run this instruction next tick
                    dp.PC = (dp.PC - INSTR_SIZE) & 0xFFFF
                else:
                    V[x] = key
                    logging.debug("LD_KEY: key %X -> V%X", key, x)
            case OpCode.LD_DT:
                dp.delay_timer = V[x]
            case OpCode.LD_ST:
                dp.sound_timer = V[x]
            case OpCode.ADD_I:
                dp.I = (dp.I + V[x]) & 0xFFFF
            case OpCode.LD_FONT:
                dp.I = FONT_START + V[x] * GLYPH_SIZE
            case OpCode.LD_BCD:
                val = V[x]
                mem.write(dp.I & ADDRESS_MASK, val // 100)
                mem.write((dp.I + 1) & ADDRESS_MASK, (val // 10) % 10)
                mem.write((dp.I + 2) & ADDRESS_MASK, val % 10)
            case OpCode.STORE_REGS:
                for i in range(x + 1):
                    mem.write((dp.I + i) & ADDRESS_MASK, V[i])
            case OpCode.LOAD_REGS:
                for i in range(x + 1):
                    V[i] = mem.read((dp.I + i) & ADDRESS_MASK)
            case _:
                assert_never(op)


class RunState(Enum):
    RUNNING = "running"
    PAUSED = "paused"
    HALTED = "halted"


class TickStatus(Enum):
    NORMAL = "normal"
    PAUSED = "paused"
    HALTED = "halted"
    FAULT = "fault"


@dataclass(frozen=True)
class TickOutcome:
    """What one tick did, as seen by the host."""

    status: TickStatus
    error: MachineError | None = None

    @property
    def kind(self) -> ErrorKind | None:
        return self.error.kind if self.error is not None else None


class Presenter(Protocol):
    """Host-side sink for the screen and the beep signal."""

    def publish(self, frame: Frame, beep: bool) -> None: ...


class TimerClock:
    """Wall-clock cadence for the delay and sound timers.

    `due()` reports at most one elapsed period per call; periods that elapse
    between calls are carried over to later calls.
    """

    def __init__(self, hz: float = 60.0, clock: Callable[[], float] = time.monotonic) -> None:
        self.period = 1.0 / hz
        self._clock = clock
        self._next = clock() + self.period

    def restart(self) -> None:
        self._next = self._clock() + self.period

    def due(self) -> bool:
        if self._clock() < self._next:
            return False
        self._next += self.period
        return True


class Machine:
    """Run controller owning one memory image and its execution state.

    The host calls `tick()` repeatedly, feeds key events through `set_key()`
    and reads `framebuffer()` / `beep_pending()` between ticks.
    """

    state: RunState
    fault: MachineError | None

    def __init__(
        self,
        program: bytes,
        rand_byte: Callable[[], int],
        timer_clock: TimerClock | None = None,
        presenter: Presenter | None = None,
        lenient_log: bool = False,
    ) -> None:
        """Build the machine from a program image.

        Raises ImageTooLargeError; the machine is not created in that case.
        """
        self.mem = MemoryImage(program)
        self.dp = Datapath(self.mem)
        self.cu = ControlUnit(self.dp, rand_byte, lenient_log=lenient_log)
        self.timer_clock = timer_clock
        self.presenter = presenter
        self.state = RunState.RUNNING
        self.fault = None

    # --- host input ---
    def set_key(self, index: int, pressed: bool) -> None:
        if not 0 <= index < KEY_COUNT:
            err = f"key index {index} out of range 0..{KEY_COUNT - 1}"
            raise ValueError(err)
        self.dp.keys[index] = bool(pressed)

    def quit(self) -> None:
        if self.state is not RunState.HALTED:
            logging.debug("Machine: quit requested -> HALTED")
        self.state = RunState.HALTED

    def toggle_pause(self) -> None:
        if self.state is RunState.RUNNING:
            self.state = RunState.PAUSED
            logging.debug("Machine: paused")
        elif self.state is RunState.PAUSED:
            self.state = RunState.RUNNING
            if self.timer_clock is not None:
                self.timer_clock.restart()
            logging.debug("Machine: resumed")

    # --- host output ---
    def framebuffer(self) -> Frame:
        return self.dp.framebuffer()

    def beep_pending(self) -> bool:
        """Return whether a beep edge occurred since the last call, and clear it."""
        pending = self.dp.beep_edge
        self.dp.beep_edge = False
        return pending

    def _publish(self) -> None:
        if self.presenter is None:
            return
        if self.dp.screen_dirty or self.dp.beep_edge:
            self.presenter.publish(self.framebuffer(), self.beep_pending())
            self.dp.screen_dirty = False

    def tick(self) -> TickOutcome:
        """Advance by at most one instruction and one timer decrement."""
        if self.state is RunState.HALTED:
            return TickOutcome(TickStatus.HALTED)
        if self.state is RunState.PAUSED:
            return TickOutcome(TickStatus.PAUSED)

        try:
            self.cu.step()
        except MachineError as e:
            self.fault = e
            self.state = RunState.HALTED
            logging.debug("[tick %d] fault %s: %s -> HALTED", self.dp.tick, e.kind.value, e)
            return TickOutcome(TickStatus.FAULT, e)

        if self.timer_clock is None or self.timer_clock.due():
            self.dp.tick_timers()
        self._publish()
        return TickOutcome(TickStatus.NORMAL)

    def run(
        self,
        tick_limit: int,
        pause_tick: int | None = None,
        key_schedule: Iterable[KeyEvent] | None = None,
        cpu_hz: float | None = None,
    ) -> tuple[int, str]:
        """Drive the machine headless until halt, pause or tick limit.

        Scheduled key events `(tick, key, pressed)` are applied before the tick
        with that number. Returns (ticks, state) where state is one of
        "running", "paused", "halted" or "fault".
        """
        events = deque(sorted(key_schedule or (), key=lambda ev: ev[0]))
        period = 1.0 / cpu_hz if cpu_hz else None
        deadline = time.monotonic()

        ticks = 0
        while ticks < tick_limit:
            if pause_tick is not None and ticks == pause_tick:
                if self.state is RunState.RUNNING:
                    self.toggle_pause()
                break

            while events and events[0][0] <= ticks:
                _, key, pressed = events.popleft()
                self.set_key(key, pressed)
                logging.debug("[tick %d] key %X %s", ticks, key, "down" if pressed else "up")

            outcome = self.tick()
            ticks += 1
            if outcome.status is TickStatus.FAULT:
                return ticks, "fault"
            if outcome.status is TickStatus.HALTED:
                break

            if period is not None:
                deadline += period
                delay = deadline - time.monotonic()
                if delay > 0:
                    time.sleep(delay)

        return ticks, self.state.value


def render_frame(frame: Frame, on: str = "#", off: str = ".") -> str:
    """Render a framebuffer snapshot as text, one line per row."""
    return "\n".join("".join(on if px else off for px in row) for row in frame)


class TextPresenter:
    """Presenter keeping the latest frame and counting beeps."""

    def __init__(self) -> None:
        self.frame: Frame | None = None
        self.frames = 0
        self.beeps = 0

    def publish(self, frame: Frame, beep: bool) -> None:
        self.frame = frame
        self.frames += 1
        if beep:
            self.beeps += 1


def make_rand_byte(seed: int | None) -> Callable[[], int]:
    """Random byte source; seeded for reproducible runs."""
    rng = random.Random(seed)
    return lambda: rng.getrandbits(8)


# ---------- Public API ----------
def run_bytes(
    program: bytes,
    config: dict[str, Any] | None,
    key_schedule: Iterable[KeyEvent] | None = None,
    presenter: Presenter | None = None,
) -> tuple[Machine, int, str]:
    """Run the machine on a program image and config and return (machine, ticks, state)."""
    cfg = load_config(dict(config) if config is not None else None)

    timer_clock = TimerClock(cfg["timer_hz"]) if cfg["timer_hz"] is not None else None
    machine = Machine(
        program,
        make_rand_byte(cfg["seed"]),
        timer_clock=timer_clock,
        presenter=presenter,
        lenient_log=cfg["lenient_log"],
    )
    ticks, state = machine.run(
        cfg["tick_limit"],
        pause_tick=cfg["pause_tick"],
        key_schedule=key_schedule,
        cpu_hz=cfg["cpu_hz"],
    )
    return machine, ticks, state


def parse_key_schedule(path: str) -> list[KeyEvent]:
    """Parse schedule file with lines "<tick> <key-hex> <down|up>".

    Returns list of (tick, key, pressed).
    """
    result: list[KeyEvent] = []
    with open(path, encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            parts = line.split()
            if len(parts) != 3:
                err = f"Bad schedule line (expected 3 fields): {line!r}"
                raise ValueError(err)
            try:
                tick = int(parts[0])
                key = int(parts[1], 16)
            except ValueError as e:
                err = f"Bad schedule line (bad tick or key): {line!r}"
                raise ValueError(err) from e
            if not 0 <= key < KEY_COUNT:
                err = f"Bad schedule line (key out of range): {line!r}"
                raise ValueError(err)
            action = parts[2].lower()
            if action not in ("down", "up"):
                err = f"Bad schedule line (expected down/up): {line!r}"
                raise ValueError(err)
            result.append((tick, key, action == "down"))
    return result


# ---------- CLI ----------
def main(argv: list[str] | None = None) -> int:
    ap = argparse.ArgumentParser(
        description="Headless VM runner. Loads a raw program image at 0x200, runs it and "
        "prints the final screen. Key input is provided via --key-schedule."
    )
    ap.add_argument("program", help="raw program image (no header)")
    ap.add_argument(
        "--key-schedule",
        help="key schedule file. Each non-empty line: '<tick> <key-hex> <down|up>'",
        default=None,
    )
    ap.add_argument("--config", help="path to yaml config", default=None)

    help_debug = "enable debug logging to logfile (detailed per-step state)."
    help_logfile = "path to processor log"
    help_console = "also echo logs to console"
    ap.add_argument("--debug", action="store_true", help=help_debug)
    ap.add_argument("--logfile", default=LOGFILE, help=help_logfile)
    ap.add_argument("--console", action="store_true", help=help_console)
    args = ap.parse_args(argv)

    init_logging(logfile=args.logfile, debug=args.debug, console=args.console)

    try:
        cfg = load_config(args.config)
    except ConfigError as e:
        print("Bad config:", e)
        return 2

    sched: list[KeyEvent] = []
    if args.key_schedule:
        if not Path(args.key_schedule).exists():
            print("Key schedule file not found:", args.key_schedule)
            return 2
        try:
            sched = parse_key_schedule(args.key_schedule)
            logging.debug("CLI: parsed key schedule from %s: %r", args.key_schedule, sched)
        except ValueError:
            logging.exception("Failed to parse --key-schedule %s", args.key_schedule)
            return 2

    presenter = TextPresenter()
    try:
        program = load_program(args.program)
        machine, ticks, state = run_bytes(program, cfg, key_schedule=sched, presenter=presenter)
    except (ImageUnreadableError, ImageTooLargeError) as e:
        print(f"Failed to load program: {e}")
        return 2

    sys.stdout.write(render_frame(machine.framebuffer()))
    sys.stdout.write("\n")
    sys.stdout.write(f"TICKS: {ticks}\n")
    sys.stdout.write(f"BEEPS: {presenter.beeps}\n")
    sys.stdout.write(f"STATE: {state}\n")

    if machine.fault is not None:
        logging.error("Fatal %s at tick %d: %s", machine.fault.kind.value, ticks, machine.fault)
        sys.stdout.write(f"ERROR: {machine.fault.kind.value}: {machine.fault}\n")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
