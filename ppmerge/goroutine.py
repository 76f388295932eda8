"""Goroutine profiles in the debug=1 text format, and their compact encoding."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Iterator

from ppmerge.wire import MASK64, Message

_COUNT_START_RE = re.compile(r"(\S+) profile: total (\d+)", re.ASCII)
_COUNT_RE = re.compile(r"(\d+) @((?: 0x[0-9a-f]+)+)", re.ASCII)
_FRAME_INFO_RE = re.compile(
    r"#\t+(0x[0-9a-f]+)\t+(\S+)[+](0x[0-9a-f]+)\t+(\S+):(\d+)", re.ASCII
)


class UnrecognizedProfileError(ValueError):
    """The input does not start like a goroutine profile."""

    def __init__(self, msg: str = "unrecognized profile format") -> None:
        super().__init__(msg)


class MalformedProfileError(ValueError):
    """The input looks like a goroutine profile but cannot be parsed."""

    def __init__(self, msg: str = "malformed profile format") -> None:
        super().__init__(msg)


@dataclass
class Frame(Message):
    address: int = 0
    function_name: int = 0
    offset: int = 0
    filename: int = 0
    line: int = 0


Frame._fields = (
    (1, "address", "uint"),
    (2, "function_name", "uint"),
    (3, "offset", "uint"),
    (4, "filename", "uint"),
    (5, "line", "uint"),
)


@dataclass
class Stacktrace(Message):
    total: int = 0
    pc: list[int] = field(default_factory=list)
    frames: list[Frame] = field(default_factory=list)

    def to_bytes(self) -> bytes:
        """Encode the stack trace as a protobuf message."""
        return super().to_bytes()

    @classmethod
    def from_bytes(cls, data: bytes) -> "Stacktrace":
        """Decode a stack trace from a protobuf message."""
        return super().from_bytes(data)


Stacktrace._fields = ((1, "total", "uint"), (2, "pc", "packed"), (3, "frames", Frame))


def _parse_uint(digits: str, base: int = 10) -> int:
    try:
        value = int(digits, base)
    except ValueError as exc:
        raise MalformedProfileError() from exc
    if value > MASK64:
        raise MalformedProfileError()
    return value


def _parse_uint_auto(digits: str) -> int:
    """Parse with the base taken from the prefix: 0x hex, leading 0 octal."""
    if digits.startswith(("0x", "0X")):
        return _parse_uint(digits[2:], 16)
    if len(digits) > 1 and digits.startswith("0"):
        return _parse_uint(digits[1:], 8)
    return _parse_uint(digits)


def _is_space(line: str) -> bool:
    return not line.strip()


@dataclass
class GoroutineProfile(Message):
    total: int = 0
    stacktraces: list[Stacktrace] = field(default_factory=list)
    string_table: list[str] = field(default_factory=list)

    def to_bytes(self) -> bytes:
        """Encode the goroutine profile as a protobuf message."""
        return super().to_bytes()

    @classmethod
    def from_bytes(cls, data: bytes) -> "GoroutineProfile":
        """Decode a goroutine profile from a protobuf message."""
        return super().from_bytes(data)

    @classmethod
    def parse(cls, raw_profile: bytes) -> "GoroutineProfile":
        """Parse a goroutine profile in debug=1 text format."""
        lines = (
            ln.removesuffix("\r")
            for ln in raw_profile.decode("utf-8", errors="replace").split("\n")
        )
        first = next((ln for ln in lines if not _is_space(ln) and not ln.strip().startswith("#")), "")

        m = _COUNT_START_RE.fullmatch(first)
        if m is None:
            raise UnrecognizedProfileError()
        gp = cls(total=_parse_uint(m.group(2)))

        table = {"": 0}
        for line in lines:
            if not _is_space(line):
                gp.stacktraces.append(_parse_stacktrace(line, lines, table))
        gp.string_table = list(table)
        return gp

    def marshal_debug(self) -> str:
        """Render the profile in debug=1 text format."""
        out = [f"goroutine profile: total {self.total}\n"]
        for st in self.stacktraces:
            out.append(f"{st.total} @ {' '.join(hex(a) for a in st.pc)}\n")
            for f in st.frames:
                if f.function_name == 0:
                    out.append(f"#\t{hex(f.address)}\n")
                else:
                    out.append(
                        f"#\t{hex(f.address)}\t{self.string_table[f.function_name]}"
                        f"+{hex(f.offset)}\t{self.string_table[f.filename]}:{f.line}\n"
                    )
            out.append("\n")
        return "".join(out)


GoroutineProfile._fields = (
    (1, "total", "uint"),
    (2, "stacktraces", Stacktrace),
    (3, "string_table", "strings"),
)


def _parse_stacktrace(line: str, lines: Iterator[str], table: dict[str, int]) -> Stacktrace:
    m = _COUNT_RE.fullmatch(line)
    if m is None:
        raise MalformedProfileError()
    st = Stacktrace(
        total=_parse_uint_auto(m.group(1)),
        pc=[_parse_uint_auto(pc) for pc in m.group(2).split()],
    )
    for frame_line in lines:
        if _is_space(frame_line):
            break
        if frame_line.startswith("# labels:"):
            continue
        fm = _FRAME_INFO_RE.fullmatch(frame_line)
        if fm is None:
            raise MalformedProfileError()
        st.frames.append(
            Frame(
                address=_parse_uint(fm.group(1)[2:], 16),
                function_name=table.setdefault(fm.group(2), len(table)),
                offset=_parse_uint(fm.group(3)[2:], 16),
                filename=table.setdefault(fm.group(4), len(table)),
                line=_parse_uint(fm.group(5).strip('"')),
            )
        )
    return st