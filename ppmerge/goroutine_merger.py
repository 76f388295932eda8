"""Merging of goroutine profiles into one compact profile, and recovering them."""

from __future__ import annotations

import gzip
from dataclasses import dataclass, field
from typing import BinaryIO, Optional

from ppmerge.goroutine import Frame, GoroutineProfile, Stacktrace
from ppmerge.merge import IndexOutOfRangeError
from ppmerge.wire import (
    ProtoWriter,
    decode_packed,
    iter_fields,
    message,
    text,
)


@dataclass
class MergedGoroutineProfile:
    """Several goroutine profiles sharing one string table."""

    totals: list[int] = field(default_factory=list)
    num_stacktraces: list[int] = field(default_factory=list)
    stacktraces: list[Stacktrace] = field(default_factory=list)
    string_table: list[str] = field(default_factory=list)

    def to_bytes(self) -> bytes:
        w = ProtoWriter()
        w.packed_varints(1, self.totals)
        w.packed_varints(2, self.num_stacktraces)
        for st in self.stacktraces:
            w.bytes_field(3, st.to_bytes())
        for s in self.string_table:
            w.string(4, s)
        return w.getvalue()

    @classmethod
    def from_bytes(cls, data: bytes) -> "MergedGoroutineProfile":
        mp = cls()
        for num, _, value in iter_fields(data):
            if num == 1:
                mp.totals.extend(decode_packed(value))
            elif num == 2:
                mp.num_stacktraces.extend(decode_packed(value))
            elif num == 3:
                mp.stacktraces.append(Stacktrace.from_bytes(message(value)))
            elif num == 4:
                mp.string_table.append(text(value))
        return mp


class _StringTable:
    """Interns strings with ids starting at 0 for the empty string."""

    def __init__(self) -> None:
        self._ids: dict[str, int] = {"": 0}

    def put(self, value: str) -> int:
        return self._ids.setdefault(value, len(self._ids))

    def table(self) -> list[str]:
        table = [""] * len(self._ids)
        for value, idx in self._ids.items():
            table[idx] = value
        return table


def _remap_stacktrace(st: Stacktrace, source_table: list[str], strings: _StringTable) -> Stacktrace:
    return Stacktrace(
        total=st.total,
        pc=list(st.pc),
        frames=[
            Frame(
                address=f.address,
                function_name=strings.put(source_table[f.function_name]),
                offset=f.offset,
                filename=strings.put(source_table[f.filename]),
                line=f.line,
            )
            for f in st.frames
        ],
    )


class GoroutineProfileMerger:
    """Merges several goroutine profiles into a MergedGoroutineProfile."""

    def __init__(self) -> None:
        self._merged = MergedGoroutineProfile()
        self._strings = _StringTable()

    @property
    def merged_profile(self) -> MergedGoroutineProfile:
        return self._merged

    def write_compressed(self, stream: BinaryIO) -> None:
        """Write the merged profile as gzip-compressed protobuf."""
        with gzip.GzipFile(fileobj=stream, mode="wb", mtime=0) as zw:
            zw.write(self._merged.to_bytes())

    def merge(self, *args: GoroutineProfile) -> MergedGoroutineProfile:
        """Merge ``args`` into the merged profile and return it."""
        mp = self._merged
        mp.totals = [gp.total for gp in args]
        mp.num_stacktraces = [len(gp.stacktraces) for gp in args]
        mp.stacktraces = [
            _remap_stacktrace(st, gp.string_table, self._strings)
            for gp in args
            for st in gp.stacktraces
        ]
        mp.string_table = self._strings.table()
        return mp


class GoroutineProfileUnPacker:
    """Recovers any of the goroutine profiles stored in a MergedGoroutineProfile."""

    def __init__(self, merged_profile: Optional[MergedGoroutineProfile] = None) -> None:
        self._merged = merged_profile
        self._strings = _StringTable()

    def unpack_compressed(self, compressed_raw_profile: bytes, idx: int) -> GoroutineProfile:
        """Decompress and decode a merged profile and recover profile ``idx``."""
        return self.unpack_raw(gzip.decompress(compressed_raw_profile), idx)

    def unpack_raw(self, raw_profile: bytes, idx: int) -> GoroutineProfile:
        """Decode a serialized merged profile and recover profile ``idx``."""
        self._merged = MergedGoroutineProfile.from_bytes(raw_profile)
        return self.unpack(idx)

    def unpack(self, idx: int) -> GoroutineProfile:
        """Recover profile ``idx`` from the merged profile."""
        if self._merged is None:
            self._merged = MergedGoroutineProfile()
        mp = self._merged
        if idx < 0 or idx >= len(mp.num_stacktraces):
            raise IndexOutOfRangeError()
        offset = sum(mp.num_stacktraces[:idx])
        limit = offset + mp.num_stacktraces[idx]
        gp = GoroutineProfile(total=mp.totals[idx])
        gp.stacktraces = [
            _remap_stacktrace(st, mp.string_table, self._strings)
            for st in mp.stacktraces[offset:limit]
        ]
        gp.string_table = self._strings.table()
        return gp