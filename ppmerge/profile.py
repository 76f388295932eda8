"""Profile data model with string-table indices, and its resolved counterpart."""

from __future__ import annotations

import gzip
import zlib
from dataclasses import dataclass, field
from typing import BinaryIO, Optional

from ppmerge.wire import DecodeError, Message


class ProfileParseError(ValueError):
    """Raised when profile data cannot be read or decoded."""


@dataclass
class ValueType(Message):
    type: int = 0
    unit: int = 0


ValueType._fields = ((1, "type", "int"), (2, "unit", "int"))


@dataclass
class Label(Message):
    key: int = 0
    str: int = 0
    num: int = 0
    num_unit: int = 0


Label._fields = ((1, "key", "int"), (2, "str", "int"), (3, "num", "int"), (4, "num_unit", "int"))


@dataclass
class Labels(Message):
    labels: list[Label] = field(default_factory=list)

    def to_bytes(self) -> bytes:
        """Encode the label set as a protobuf message."""
        return super().to_bytes()

    @classmethod
    def from_bytes(cls, data: bytes) -> "Labels":
        """Decode a label set from a protobuf message."""
        return super().from_bytes(data)


Labels._fields = ((1, "labels", Label),)


@dataclass
class Sample(Message):
    location_id: list[int] = field(default_factory=list)
    value: list[int] = field(default_factory=list)
    label: list[Label] = field(default_factory=list)


Sample._fields = ((1, "location_id", "packed"), (2, "value", "packed_int"), (3, "label", Label))


@dataclass
class Line(Message):
    function_id: int = 0
    line: int = 0


Line._fields = ((1, "function_id", "uint"), (2, "line", "int"))


@dataclass
class Location(Message):
    id: int = 0
    mapping_id: int = 0
    address: int = 0
    line: list[Line] = field(default_factory=list)
    is_folded: bool = False


Location._fields = (
    (1, "id", "uint"),
    (2, "mapping_id", "uint"),
    (3, "address", "uint"),
    (4, "line", Line),
    (5, "is_folded", "bool"),
)


@dataclass
class Function(Message):
    id: int = 0
    name: int = 0
    system_name: int = 0
    filename: int = 0
    start_line: int = 0


Function._fields = (
    (1, "id", "uint"),
    (2, "name", "int"),
    (3, "system_name", "int"),
    (4, "filename", "int"),
    (5, "start_line", "int"),
)


@dataclass
class Mapping(Message):
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


Mapping._fields = (
    (1, "id", "uint"),
    (2, "memory_start", "uint"),
    (3, "memory_limit", "uint"),
    (4, "file_offset", "uint"),
    (5, "filename", "int"),
    (6, "build_id", "int"),
    (7, "has_functions", "bool"),
    (8, "has_filenames", "bool"),
    (9, "has_line_numbers", "bool"),
    (10, "has_inline_frames", "bool"),
)


@dataclass
class ResolvedValueType:
    type: str = ""
    unit: str = ""


@dataclass
class ResolvedFunction:
    id: int = 0
    name: str = ""
    system_name: str = ""
    filename: str = ""
    start_line: int = 0


@dataclass
class ResolvedMapping:
    id: int = 0
    start: int = 0
    limit: int = 0
    offset: int = 0
    file: str = ""
    build_id: str = ""
    has_functions: bool = False
    has_filenames: bool = False
    has_line_numbers: bool = False
    has_inline_frames: bool = False


@dataclass
class ResolvedLine:
    function: Optional[ResolvedFunction] = None
    line: int = 0


@dataclass
class ResolvedLocation:
    id: int = 0
    mapping: Optional[ResolvedMapping] = None
    address: int = 0
    line: list[ResolvedLine] = field(default_factory=list)
    is_folded: bool = False


@dataclass
class ResolvedSample:
    location: list[Optional[ResolvedLocation]] = field(default_factory=list)
    value: list[int] = field(default_factory=list)
    label: dict[str, list[str]] = field(default_factory=dict)
    num_label: dict[str, list[int]] = field(default_factory=dict)
    num_unit: dict[str, list[str]] = field(default_factory=dict)


@dataclass
class ResolvedProfile:
    """A profile whose strings and references are resolved."""

    sample_type: list[ResolvedValueType] = field(default_factory=list)
    default_sample_type: str = ""
    sample: list[ResolvedSample] = field(default_factory=list)
    mapping: list[ResolvedMapping] = field(default_factory=list)
    location: list[ResolvedLocation] = field(default_factory=list)
    function: list[ResolvedFunction] = field(default_factory=list)
    comments: list[str] = field(default_factory=list)
    drop_frames: str = ""
    keep_frames: str = ""
    time_nanos: int = 0
    duration_nanos: int = 0
    period_type: Optional[ResolvedValueType] = None
    period: int = 0


@dataclass
class Profile(Message):
    """A profile in its compact, string-table-indexed form."""

    sample_type: list[ValueType] = field(default_factory=list)
    sample: list[Sample] = field(default_factory=list)
    mapping: list[Mapping] = field(default_factory=list)
    location: list[Location] = field(default_factory=list)
    function: list[Function] = field(default_factory=list)
    string_table: list[str] = field(default_factory=list)
    drop_frames: int = 0
    keep_frames: int = 0
    time_nanos: int = 0
    duration_nanos: int = 0
    period_type: Optional[ValueType] = None
    period: int = 0
    comment: list[int] = field(default_factory=list)
    default_sample_type: int = 0

    def to_bytes(self) -> bytes:
        """Encode the profile as a protobuf message."""
        return super().to_bytes()

    @classmethod
    def from_bytes(cls, data: bytes) -> "Profile":
        """Decode a profile from a protobuf message."""
        return super().from_bytes(data)

    @classmethod
    def from_resolved(cls, src: ResolvedProfile) -> "Profile":
        """Build a compact profile from a resolved one, interning its strings."""
        ids: dict[str, int] = {}

        def put(value: str) -> int:
            return ids.setdefault(value, len(ids) + 1)

        p = cls()
        for s in src.sample:
            sample = Sample(value=list(s.value))
            for key, values in s.label.items():
                sample.label.append(Label(key=put(key), str=put(values[0])))
            for key, values in s.num_label.items():
                sample.label.append(
                    Label(key=put(key), num=values[0], num_unit=put(s.num_unit[key][0]))
                )
            p.sample.append(sample)

        p.function = [
            Function(f.id, put(f.name), put(f.system_name), put(f.filename), f.start_line)
            for f in src.function
        ]
        p.location = [
            Location(
                id=loc.id,
                mapping_id=loc.mapping.id if loc.mapping is not None else 0,
                address=loc.address,
                line=[Line(ln.function.id if ln.function else 0, ln.line) for ln in loc.line],
                is_folded=loc.is_folded,
            )
            for loc in src.location
        ]
        p.mapping = [
            Mapping(
                m.id, m.start, m.limit, m.offset, put(m.file), put(m.build_id),
                m.has_functions, m.has_filenames, m.has_line_numbers, m.has_inline_frames,
            )
            for m in src.mapping
        ]
        p.sample_type = [ValueType(put(t.type), put(t.unit)) for t in src.sample_type]
        period_type = src.period_type or ResolvedValueType()
        p.period_type = ValueType(put(period_type.type), put(period_type.unit))
        p.comment = [put(c) for c in src.comments]
        p.default_sample_type = put(src.default_sample_type)
        p.keep_frames = put(src.keep_frames)
        p.drop_frames = put(src.drop_frames)
        p.duration_nanos = src.duration_nanos
        p.time_nanos = src.time_nanos
        p.period = src.period
        p.string_table = ["", *ids]
        return p


Profile._fields = (
    (1, "sample_type", ValueType),
    (2, "sample", Sample),
    (3, "mapping", Mapping),
    (4, "location", Location),
    (5, "function", Function),
    (6, "string_table", "strings"),
    (7, "drop_frames", "int"),
    (8, "keep_frames", "int"),
    (9, "time_nanos", "int"),
    (10, "duration_nanos", "int"),
    (11, "period_type", ValueType),
    (12, "period", "int"),
    (13, "comment", "packed_int"),
    (14, "default_sample_type", "int"),
)


def convert_labels(sample: ResolvedSample, labels: Labels, string_table: list[str]) -> None:
    """Resolve compact labels into the string and numeric label maps of ``sample``."""
    for label in labels.labels:
        key = string_table[label.key]
        if label.str > 0:
            sample.label[key] = [string_table[label.str]]
        elif label.num != 0 or label.num_unit > 0:
            sample.num_label[key] = [label.num]
            sample.num_unit[key] = [string_table[label.num_unit]]


def parse_profile_data(raw_profile: bytes) -> Profile:
    """Decode a profile, gunzipping it first if it is gzip-compressed."""
    if raw_profile[:2] == b"\x1f\x8b":
        try:
            raw_profile = gzip.decompress(raw_profile)
        except (OSError, EOFError, zlib.error) as exc:
            raise ProfileParseError(f"decompressing profile: {exc}") from exc
    try:
        return Profile.from_bytes(raw_profile)
    except DecodeError as exc:
        raise ProfileParseError(f"unmarshalling profile: {exc}") from exc


def parse_profile(reader: BinaryIO) -> Profile:
    """Read all of ``reader`` and decode it as a profile."""
    try:
        data = reader.read()
    except OSError as exc:
        raise ProfileParseError(f"could not read profile: {exc}") from exc
    return parse_profile_data(data)