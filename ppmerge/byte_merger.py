"""Packing of opaque profile blobs into a single merged message."""

from __future__ import annotations

import gzip
from dataclasses import dataclass, field
from typing import BinaryIO, Optional

from ppmerge.merge import IndexOutOfRangeError
from ppmerge.wire import ProtoWriter, iter_fields, message


@dataclass
class MergedByteProfile:
    """A list of serialized profiles stored side by side."""

    profiles: list[bytes] = field(default_factory=list)

    def to_bytes(self) -> bytes:
        w = ProtoWriter()
        for p in self.profiles:
            w.bytes_field(1, p)
        return w.getvalue()

    @classmethod
    def from_bytes(cls, data: bytes) -> "MergedByteProfile":
        return cls([message(v) for n, _, v in iter_fields(data) if n == 1])


class ByteProfileMerger:
    """Collects serialized profiles into a MergedByteProfile."""

    def __init__(self) -> None:
        self._merged = MergedByteProfile()

    @property
    def merged_profile(self) -> MergedByteProfile:
        return self._merged

    def merge(self, *args: bytes) -> MergedByteProfile:
        """Store ``args`` in the merged profile and return it."""
        self._merged.profiles = [bytes(p) for p in args]
        return self._merged

    def write_compressed(self, stream: BinaryIO) -> None:
        """Write the merged profile as gzip-compressed protobuf."""
        with gzip.GzipFile(fileobj=stream, mode="wb", mtime=0) as zw:
            zw.write(self._merged.to_bytes())

    def write_uncompressed(self, stream: BinaryIO) -> None:
        """Write the merged profile as plain protobuf."""
        stream.write(self._merged.to_bytes())


class ByteProfileUnPacker:
    """Recovers the serialized profiles stored in a MergedByteProfile."""

    def __init__(self, merged_profile: Optional[MergedByteProfile] = None) -> None:
        self._merged = merged_profile

    def unpack_raw(self, compressed_raw_profile: bytes, idx: int) -> bytes:
        """Decompress and decode a merged profile and return profile ``idx``."""
        raw = gzip.decompress(compressed_raw_profile)
        self._merged = MergedByteProfile.from_bytes(raw)
        return self.unpack(idx)

    def unpack(self, idx: int) -> bytes:
        """Return the serialized profile at ``idx``."""
        profiles = self._merged.profiles if self._merged is not None else []
        if idx < 0 or idx >= len(profiles):
            raise IndexOutOfRangeError()
        return profiles[idx]