"""Merging of several profiles into one compact profile, and recovering them."""

from __future__ import annotations

import gzip
from dataclasses import dataclass, field
from typing import BinaryIO, Optional, Sequence, TypeVar

from ppmerge.profile import (
    Label,
    Labels,
    Profile,
    ResolvedFunction,
    ResolvedLine,
    ResolvedLocation,
    ResolvedMapping,
    ResolvedProfile,
    ResolvedSample,
    ResolvedValueType,
    ValueType,
    convert_labels,
)
from ppmerge.wire import (
    MASK64,
    ProtoWriter,
    decode_packed,
    iter_fields,
    message,
    scalar,
    text,
    to_signed,
)

UNSYMBOLIZABLE_LOCATION_ADDRESS = 0x0

_T = TypeVar("_T")


class IndexOutOfRangeError(IndexError):
    """Raised when a profile index is outside the merged profile."""

    def __init__(self, msg: str = "index out of range") -> None:
        super().__init__(msg)


@dataclass
class MergeFunction:
    id: int = 0
    name: int = 0
    system_name: int = 0
    filename: int = 0
    start_line: int = 0

    def _encode(self) -> bytes:
        w = ProtoWriter()
        w.varint(1, self.id)
        w.int64(2, self.name)
        w.int64(3, self.system_name)
        w.int64(4, self.filename)
        w.int64(5, self.start_line)
        return w.getvalue()

    @classmethod
    def _decode(cls, data: bytes) -> "MergeFunction":
        fn = cls()
        for num, _, value in iter_fields(data):
            if num == 1:
                fn.id = scalar(value)
            elif num == 2:
                fn.name = to_signed(scalar(value))
            elif num == 3:
                fn.system_name = to_signed(scalar(value))
            elif num == 4:
                fn.filename = to_signed(scalar(value))
            elif num == 5:
                fn.start_line = to_signed(scalar(value))
        return fn


@dataclass
class MergeMapping:
    id: int = 0
    memory_start: int = 0
    memory_limit: int = 0
    file_offset: int = 0
    filename: int = 0
    build_id: int = 0
    has_functions: bool = False
    has_filenames: bool = False
    has_line_numbers: bool = False
    has_inline_frames: bool = False

    def _encode(self) -> bytes:
        w = ProtoWriter()
        w.varint(1, self.id)
        w.varint(2, self.memory_start)
        w.varint(3, self.memory_limit)
        w.varint(4, self.file_offset)
        w.int64(5, self.filename)
        w.int64(6, self.build_id)
        w.boolean(7, self.has_functions)
        w.boolean(8, self.has_filenames)
        w.boolean(9, self.has_line_numbers)
        w.boolean(10, self.has_inline_frames)
        return w.getvalue()

    @classmethod
    def _decode(cls, data: bytes) -> "MergeMapping":
        m = cls()
        for num, _, value in iter_fields(data):
            v = scalar(value)
            if num == 1:
                m.id = v
            elif num == 2:
                m.memory_start = v
            elif num == 3:
                m.memory_limit = v
            elif num == 4:
                m.file_offset = v
            elif num == 5:
                m.filename = to_signed(v)
            elif num == 6:
                m.build_id = to_signed(v)
            elif num == 7:
                m.has_functions = bool(v)
            elif num == 8:
                m.has_filenames = bool(v)
            elif num == 9:
                m.has_line_numbers = bool(v)
            elif num == 10:
                m.has_inline_frames = bool(v)
        return m


@dataclass
class MergeLine:
    function_id: int = 0
    line: int = 0

    def _encode(self) -> bytes:
        w = ProtoWriter()
        w.varint(1, self.function_id)
        w.int64(2, self.line)
        return w.getvalue()

    @classmethod
    def _decode(cls, data: bytes) -> "MergeLine":
        ln = cls()
        for num, _, value in iter_fields(data):
            if num == 1:
                ln.function_id = scalar(value)
            elif num == 2:
                ln.line = to_signed(scalar(value))
        return ln


@dataclass
class MergeLocation:
    id: int = 0
    mapping_id: int = 0
    address: int = 0
    line: list[MergeLine] = field(default_factory=list)
    is_folded: bool = False

    def _encode(self) -> bytes:
        w = ProtoWriter()
        w.varint(1, self.id)
        w.varint(2, self.mapping_id)
        w.varint(3, self.address)
        for ln in self.line:
            w.bytes_field(4, ln._encode())
        w.boolean(5, self.is_folded)
        return w.getvalue()

    @classmethod
    def _decode(cls, data: bytes) -> "MergeLocation":
        loc = cls()
        for num, _, value in iter_fields(data):
            if num == 1:
                loc.id = scalar(value)
            elif num == 2:
                loc.mapping_id = scalar(value)
            elif num == 3:
                loc.address = scalar(value)
            elif num == 4:
                loc.line.append(MergeLine._decode(message(value)))
            elif num == 5:
                loc.is_folded = bool(scalar(value))
        return loc


@dataclass
class MergeSample:
    location_id: list[int] = field(default_factory=list)
    value: list[int] = field(default_factory=list)

    def _encode(self) -> bytes:
        w = ProtoWriter()
        w.packed_varints(1, self.location_id)
        w.packed_varints(2, self.value)
        return w.getvalue()

    @classmethod
    def _decode(cls, data: bytes) -> "MergeSample":
        s = cls()
        for num, _, value in iter_fields(data):
            if num == 1:
                s.location_id.extend(to_signed(v) for v in decode_packed(value))
            elif num == 2:
                s.value.extend(to_signed(v) for v in decode_packed(value))
        return s


_PACKED_INT_FIELDS = {
    6: "sample_type",
    7: "num_functions",
    8: "num_locations",
    9: "num_sample_types",
    10: "num_mappings",
    11: "num_samples",
    13: "times_nanos",
    14: "durations_nanos",
    15: "periods",
    16: "period_types",
}

_UNSIGNED_FIELDS = {"num_functions", "num_locations", "num_sample_types", "num_mappings", "num_samples"}


@dataclass
class MergedProfile:
    """Several profiles stored with shared functions, mappings, locations and strings."""

    samples: list[MergeSample] = field(default_factory=list)
    mappings: list[MergeMapping] = field(default_factory=list)
    locations: list[MergeLocation] = field(default_factory=list)
    functions: list[MergeFunction] = field(default_factory=list)
    string_table: list[str] = field(default_factory=list)
    sample_type: list[int] = field(default_factory=list)
    num_functions: list[int] = field(default_factory=list)
    num_locations: list[int] = field(default_factory=list)
    num_sample_types: list[int] = field(default_factory=list)
    num_mappings: list[int] = field(default_factory=list)
    num_samples: list[int] = field(default_factory=list)
    labels: dict[int, Labels] = field(default_factory=dict)
    times_nanos: list[int] = field(default_factory=list)
    durations_nanos: list[int] = field(default_factory=list)
    periods: list[int] = field(default_factory=list)
    period_types: list[int] = field(default_factory=list)

    def to_bytes(self) -> bytes:
        w = ProtoWriter()
        for s in self.samples:
            w.bytes_field(1, s._encode())
        for m in self.mappings:
            w.bytes_field(2, m._encode())
        for loc in self.locations:
            w.bytes_field(3, loc._encode())
        for fn in self.functions:
            w.bytes_field(4, fn._encode())
        for s in self.string_table:
            w.string(5, s)
        for num, name in _PACKED_INT_FIELDS.items():
            if num == 12:
                continue
            w.packed_varints(num, getattr(self, name))
        for key in sorted(self.labels):
            entry = ProtoWriter()
            entry.varint(1, key)
            entry.bytes_field(2, self.labels[key].to_bytes())
            w.bytes_field(12, entry.getvalue())
        return w.getvalue()

    @classmethod
    def from_bytes(cls, data: bytes) -> "MergedProfile":
        mp = cls()
        for num, _, value in iter_fields(data):
            if num == 1:
                mp.samples.append(MergeSample._decode(message(value)))
            elif num == 2:
                mp.mappings.append(MergeMapping._decode(message(value)))
            elif num == 3:
                mp.locations.append(MergeLocation._decode(message(value)))
            elif num == 4:
                mp.functions.append(MergeFunction._decode(message(value)))
            elif num == 5:
                mp.string_table.append(text(value))
            elif num == 12:
                key = 0
                labels = Labels()
                for enum, _, evalue in iter_fields(message(value)):
                    if enum == 1:
                        key = scalar(evalue)
                    elif enum == 2:
                        labels = Labels.from_bytes(message(evalue))
                mp.labels[key] = labels
            elif num in _PACKED_INT_FIELDS:
                name = _PACKED_INT_FIELDS[num]
                items = decode_packed(value)
                if name not in _UNSIGNED_FIELDS:
                    items = [to_signed(v) for v in items]
                getattr(mp, name).extend(items)
        return mp


def _by_id(items: Sequence[_T], ident: int) -> _T:
    if ident < 1 or ident > len(items):
        raise IndexError(f"id {ident} out of range")
    return items[ident - 1]


def _write_gzip(stream: BinaryIO, data: bytes) -> None:
    with gzip.GzipFile(fileobj=stream, mode="wb", mtime=0) as zw:
        zw.write(data)


class ProfileMerger:
    """Merges several profiles into a single MergedProfile."""

    def __init__(self) -> None:
        self._merged = MergedProfile()
        self._strings: dict[str, int] = {}
        self._functions: dict[tuple, int] = {}
        self._mappings: dict[tuple, int] = {}
        self._locations: dict[tuple, int] = {}

    @property
    def merged_profile(self) -> MergedProfile:
        return self._merged

    def write_compressed(self, stream: BinaryIO) -> None:
        """Write the merged profile as gzip-compressed protobuf."""
        _write_gzip(stream, self._merged.to_bytes())

    def write_uncompressed(self, stream: BinaryIO) -> None:
        """Write the merged profile as plain protobuf."""
        stream.write(self._merged.to_bytes())

    def merge(self, *args: Profile) -> MergedProfile:
        """Merge ``args`` into the merged profile and return it."""
        mp = self._merged
        mp.num_functions = [len(p.function) for p in args]
        mp.num_locations = [len(p.location) for p in args]
        mp.num_sample_types = [len(p.sample_type) for p in args]
        mp.num_mappings = [len(p.mapping) for p in args]
        mp.num_samples = [len(p.sample) for p in args]
        mp.labels = {}

        self._merge_samples(args)
        mp.sample_type = [
            sid
            for p in args
            for vt in p.sample_type
            for sid in (self._put_string(vt.type, p), self._put_string(vt.unit, p))
        ]
        mp.times_nanos = [p.time_nanos for p in args]
        mp.durations_nanos = [p.duration_nanos for p in args]
        mp.periods = [p.period for p in args]
        mp.period_types = []
        for p in args:
            pt = p.period_type or ValueType()
            mp.period_types.append(self._put_string(pt.type, p))
            mp.period_types.append(self._put_string(pt.unit, p))

        table = [""] * (len(self._strings) + 1)
        for value, sid in self._strings.items():
            table[sid] = value
        mp.string_table = table
        return mp

    def _merge_samples(self, profiles: Sequence[Profile]) -> None:
        mp = self._merged
        mp.samples = []
        for p in profiles:
            for s in p.sample:
                mp.samples.append(
                    MergeSample(
                        location_id=[
                            self._put_location(_by_id(p.location, loc_id), p)
                            for loc_id in s.location_id
                        ],
                        value=list(s.value),
                    )
                )
                if s.label:
                    self._merge_labels(s.label, p)

    def _merge_labels(self, labels: list[Label], p: Profile) -> None:
        merged = Labels()
        for label in labels:
            lbl = Label(key=self._put_string(label.key, p))
            if label.str > 0:
                lbl.str = self._put_string(label.str, p)
            elif label.num != 0 or label.num_unit != 0:
                lbl.num = label.num
                lbl.num_unit = self._put_string(label.num_unit, p)
            merged.labels.append(lbl)
        self._merged.labels[len(self._merged.samples) - 1] = merged

    def _put_string(self, idx: int, p: Profile) -> int:
        value = p.string_table[idx]
        if value not in self._strings:
            self._strings[value] = len(self._strings) + 1
        return self._strings[value]

    def _put_mapping(self, src: Optional[object], p: Profile) -> int:
        if src is None:
            return MASK64
        mapping = MergeMapping(
            memory_start=src.memory_start,
            memory_limit=src.memory_limit,
            file_offset=src.file_offset,
            filename=self._put_string(src.filename, p),
            build_id=self._put_string(src.build_id, p),
            has_filenames=src.has_filenames,
            has_functions=src.has_functions,
            has_inline_frames=src.has_inline_frames,
            has_line_numbers=src.has_inline_frames,
        )
        if mapping.filename > 0:
            build_id_or_file = mapping.filename
        elif mapping.build_id > 0:
            build_id_or_file = mapping.build_id
        else:
            build_id_or_file = 0
        key = (mapping.memory_start, mapping.memory_limit, mapping.file_offset, build_id_or_file)
        if key in self._mappings:
            return self._mappings[key]
        mapping.id = len(self._merged.mappings) + 1
        self._mappings[key] = mapping.id
        self._merged.mappings.append(mapping)
        return mapping.id

    def _put_function(self, src: Optional[object], p: Profile) -> int:
        if src is None:
            return MASK64
        fn = MergeFunction(
            name=self._put_string(src.name, p),
            system_name=self._put_string(src.system_name, p),
            filename=self._put_string(src.filename, p),
            start_line=src.start_line,
        )
        key = (fn.name, fn.system_name, fn.filename, fn.start_line)
        if key in self._functions:
            return self._functions[key]
        fn.id = len(self._merged.functions) + 1
        self._functions[key] = fn.id
        self._merged.functions.append(fn)
        return fn.id

    def _put_location(self, src: Optional[object], p: Profile) -> int:
        if src is None:
            return MASK64
        loc = MergeLocation()
        if src.mapping_id == 0 and not src.line:
            loc.address = UNSYMBOLIZABLE_LOCATION_ADDRESS
        if src.mapping_id != 0:
            loc.mapping_id = self._put_mapping(_by_id(p.mapping, src.mapping_id), p)
            loc.address = src.address
        loc.is_folded = src.is_folded
        loc.line = [
            MergeLine(
                function_id=self._put_function(_by_id(p.function, ln.function_id), p),
                line=ln.line,
            )
            for ln in src.line
        ]

        parts = []
        for ln in loc.line:
            parts.append(format(ln.function_id, "x") if ln.function_id > 0 else "")
            parts.append(format(ln.line, "x"))
        key = (loc.mapping_id, loc.address, "|".join(parts), loc.is_folded)
        if key in self._locations:
            return self._locations[key]
        loc.id = len(self._merged.locations) + 1
        self._locations[key] = loc.id
        self._merged.locations.append(loc)
        return loc.id


class ProfileUnPacker:
    """Recovers any of the profiles stored inside a MergedProfile."""

    def __init__(self, merged_profile: Optional[MergedProfile] = None) -> None:
        self._merged = merged_profile
        self._function_by_id: dict[int, ResolvedFunction] = {}
        self._mapping_by_id: dict[int, ResolvedMapping] = {}
        self._location_by_id: dict[int, ResolvedLocation] = {}

    def unpack_raw(self, raw_profile: bytes, idx: int) -> ResolvedProfile:
        """Decode a serialized merged profile and recover profile ``idx``."""
        self._merged = MergedProfile.from_bytes(raw_profile)
        return self.unpack(idx)

    def unpack_compressed(self, compressed_raw_profile: bytes, idx: int) -> ResolvedProfile:
        """Decompress and decode a merged profile and recover profile ``idx``."""
        return self.unpack_raw(gzip.decompress(compressed_raw_profile), idx)

    def unpack(self, idx: int) -> ResolvedProfile:
        """Recover profile ``idx`` from the merged profile."""
        if self._merged is None:
            self._merged = MergedProfile()
        mp = self._merged
        p = ResolvedProfile()
        self._unpack_sample_types(p, idx)
        self._unpack_samples(p, idx)
        if idx * 2 + 1 >= len(mp.period_types):
            raise IndexOutOfRangeError("unpack period type: index out of range")
        p.period_type = ResolvedValueType(
            type=self._get_string(mp.period_types[idx * 2]),
            unit=self._get_string(mp.period_types[idx * 2 + 1]),
        )
        if idx >= len(mp.periods):
            raise IndexOutOfRangeError("unpack period: index out of range")
        p.period = mp.periods[idx]
        if idx >= len(mp.durations_nanos):
            raise IndexOutOfRangeError("unpack duration: index out of range")
        p.duration_nanos = mp.durations_nanos[idx]
        if idx >= len(mp.times_nanos):
            raise IndexOutOfRangeError("unpack time: index out of range")
        p.time_nanos = mp.times_nanos[idx]
        return p

    def _unpack_sample_types(self, p: ResolvedProfile, idx: int) -> None:
        mp = self._merged
        if idx < 0 or idx >= len(mp.num_sample_types):
            raise IndexOutOfRangeError("unpack sample types: index out of range")
        offset = sum(mp.num_sample_types[:idx]) * 2
        for i in range(mp.num_sample_types[idx]):
            pos = offset + 2 * i
            p.sample_type.append(
                ResolvedValueType(
                    type=self._get_string(mp.sample_type[pos]),
                    unit=self._get_string(mp.sample_type[pos + 1]),
                )
            )

    def _unpack_samples(self, p: ResolvedProfile, idx: int) -> None:
        mp = self._merged
        if idx < 0 or idx >= len(mp.num_samples):
            raise IndexOutOfRangeError("unpack samples: index out of range")
        offset = sum(mp.num_samples[:idx])
        for pos in range(offset, offset + mp.num_samples[idx]):
            merged = mp.samples[pos]
            sample = ResolvedSample(
                location=[self._unpack_location(p, loc_id) for loc_id in merged.location_id],
                value=merged.value,
            )
            labels = mp.labels.get(pos)
            if labels is not None:
                convert_labels(sample, labels, mp.string_table)
            p.sample.append(sample)

    def _get_string(self, sid: int) -> str:
        table = self._merged.string_table
        if sid < 0 or sid >= len(table):
            return ""
        return table[sid]

    def _unpack_location(self, p: ResolvedProfile, ident: int) -> Optional[ResolvedLocation]:
        if ident in self._location_by_id:
            return self._location_by_id[ident]
        locations = self._merged.locations
        if ident < 1 or ident > len(locations):
            return None
        merged = locations[ident - 1]
        loc = ResolvedLocation(
            id=len(p.location) + 1,
            mapping=self._unpack_mapping(p, merged.mapping_id),
            address=merged.address,
        )
        loc.line = [
            ResolvedLine(line=ln.line, function=self._unpack_function(p, ln.function_id))
            for ln in merged.line
        ]
        p.location.append(loc)
        self._location_by_id[ident] = loc
        return loc

    def _unpack_function(self, p: ResolvedProfile, ident: int) -> Optional[ResolvedFunction]:
        if ident in self._function_by_id:
            return self._function_by_id[ident]
        functions = self._merged.functions
        if ident < 1 or ident > len(functions):
            return None
        merged = functions[ident - 1]
        fn = ResolvedFunction(
            id=len(p.function) + 1,
            name=self._get_string(merged.name),
            system_name=self._get_string(merged.system_name),
            filename=self._get_string(merged.filename),
            start_line=merged.start_line,
        )
        p.function.append(fn)
        self._function_by_id[ident] = fn
        return fn

    def _unpack_mapping(self, p: ResolvedProfile, ident: int) -> Optional[ResolvedMapping]:
        if ident in self._mapping_by_id:
            return self._mapping_by_id[ident]
        mappings = self._merged.mappings
        if ident < 1 or ident > len(mappings):
            return None
        merged = mappings[ident - 1]
        mapping = ResolvedMapping(
            id=len(p.mapping) + 1,
            start=merged.memory_start,
            limit=merged.memory_limit,
            offset=merged.file_offset,
            file=self._get_string(merged.filename),
            build_id=self._get_string(merged.build_id),
            has_filenames=merged.has_filenames,
            has_line_numbers=merged.has_line_numbers,
            has_functions=merged.has_functions,
            has_inline_frames=merged.has_inline_frames,
        )
        p.mapping.append(mapping)
        self._mapping_by_id[ident] = mapping
        return mapping