"""Command-line runner: exit codes and printed output."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from pathlib import Path

import pytest
from isa import encode_program
from processor import main, parse_key_schedule


@pytest.fixture(autouse=True)
def _reset_logging() -> Iterator[None]:
    yield
    root = logging.getLogger()
    for h in list(root.handlers):
        h.close()
        root.removeHandler(h)


def _write_rom(tmp_path: Path, *words: int) -> str:
    rom = tmp_path / "prog.ch8"
    rom.write_bytes(encode_program(*words))
    return str(rom)


def _write_config(tmp_path: Path, text: str) -> str:
    p = tmp_path / "vm.yaml"
    p.write_text(text, encoding="utf-8")
    return str(p)


def test_normal_run(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    rom = _write_rom(tmp_path, 0x6000, 0xF029, 0xD005, 0x1206)
    cfg = _write_config(tmp_path, "tick_limit: 10\n")
    code = main([rom, "--config", cfg, "--logfile", str(tmp_path / "vm.log")])
    out = capsys.readouterr().out
    assert code == 0
    lines = out.splitlines()
    assert lines[0].startswith("####....")
    assert lines[1].startswith("#..#....")
    assert "TICKS: 10" in lines
    assert "STATE: running" in lines


def test_fault_exit_code(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    rom = _write_rom(tmp_path, 0x00EE)
    code = main([rom, "--logfile", str(tmp_path / "vm.log")])
    out = capsys.readouterr().out
    assert code == 1
    assert "STATE: fault" in out
    assert "ERROR: StackUnderflow" in out


def test_missing_program(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    code = main([str(tmp_path / "nope.ch8"), "--logfile", str(tmp_path / "vm.log")])
    assert code == 2
    assert "Failed to load program" in capsys.readouterr().out


def test_program_too_large(tmp_path: Path) -> None:
    rom = tmp_path / "big.ch8"
    rom.write_bytes(b"\x00" * 4000)
    assert main([str(rom), "--logfile", str(tmp_path / "vm.log")]) == 2


def test_bad_config(tmp_path: Path) -> None:
    rom = _write_rom(tmp_path, 0x1200)
    cfg = _write_config(tmp_path, "tick_limit: -5\n")
    assert main([rom, "--config", cfg, "--logfile", str(tmp_path / "vm.log")]) == 2


def test_key_schedule(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    # wait for a key, draw its glyph, spin
    rom = _write_rom(tmp_path, 0xF00A, 0xF029, 0x6100, 0xD115, 0x1208)
    sched = tmp_path / "keys.txt"
    sched.write_text("# press 1 on tick 3\n3 1 down\n5 1 up\n", encoding="utf-8")
    cfg = _write_config(tmp_path, "tick_limit: 8\n")
    code = main([rom, "--config", cfg, "--key-schedule", str(sched), "--logfile", str(tmp_path / "vm.log")])
    lines = capsys.readouterr().out.splitlines()
    assert code == 0
    assert lines[0].startswith("..#.....")
    assert lines[1].startswith(".##.....")


def test_debug_log_written(tmp_path: Path) -> None:
    rom = _write_rom(tmp_path, 0x6005, 0x1202)
    cfg = _write_config(tmp_path, "tick_limit: 2\n")
    log = tmp_path / "vm.log"
    assert main([rom, "--config", cfg, "--debug", "--logfile", str(log)]) == 0
    text = log.read_text(encoding="utf-8")
    assert "MemoryImage: loaded 4 program bytes" in text
    assert "INSTR: LD_BYTE 6005" in text


def test_parse_key_schedule(tmp_path: Path) -> None:
    p = tmp_path / "keys.txt"
    p.write_text("0 a down\n\n10 F UP\n", encoding="utf-8")
    assert parse_key_schedule(str(p)) == [(0, 0xA, True), (10, 0xF, False)]


@pytest.mark.parametrize("line", ["1 2", "x 1 down", "1 g down", "1 10 down", "1 1 sideways"])
def test_parse_key_schedule_rejects(tmp_path: Path, line: str) -> None:
    p = tmp_path / "keys.txt"
    p.write_text(line + "\n", encoding="utf-8")
    with pytest.raises(ValueError):
        parse_key_schedule(str(p))


def test_bad_key_schedule_exit_code(tmp_path: Path) -> None:
    rom = _write_rom(tmp_path, 0x1200)
    sched = tmp_path / "keys.txt"
    sched.write_text("oops\n", encoding="utf-8")
    assert main([rom, "--key-schedule", str(sched), "--logfile", str(tmp_path / "vm.log")]) == 2
