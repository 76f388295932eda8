# ppmerge

`ppmerge` packs several profiles into one compact container and gets any of
them back out. Strings, functions, mappings and locations shared between the
profiles are stored only once, so the merged container is much smaller than the
profiles stored side by side.

It handles three kinds of input:

- **pprof profiles** (protobuf, optionally gzip-compressed), through
  `ppmerge.merge.ProfileMerger` and `ppmerge.merge.ProfileUnPacker`;
- **goroutine profiles in the `debug=1` text format**, through
  `ppmerge.goroutine_merger.GoroutineProfileMerger` and
  `ppmerge.goroutine_merger.GoroutineProfileUnPacker`;
- **opaque byte blobs**, through `ppmerge.byte_merger.ByteProfileMerger` and
  `ppmerge.byte_merger.ByteProfileUnPacker`.

It has no dependencies outside the standard library.

## Installation

```
pip install .
```

## Merging pprof profiles

```python
import io

from ppmerge.profile import parse_profile
from ppmerge.merge import ProfileMerger, ProfileUnPacker

with open("heap1.prof", "rb") as f1, open("heap2.prof", "rb") as f2:
    profiles = [parse_profile(f1), parse_profile(f2)]

merger = ProfileMerger()
merged = merger.merge(*profiles)

buf = io.BytesIO()
merger.write_compressed(buf)           # gzip-compressed container

unpacker = ProfileUnPacker(None)
second = unpacker.unpack_compressed(buf.getvalue(), 1)
print(second.period_type.type, [s.value for s in second.sample])
```

`parse_profile` reads a binary stream and `parse_profile_data` takes raw bytes;
both accept gzip-compressed or plain protobuf and return a compact `Profile`
whose fields hold string-table indices. Data that cannot be decompressed or
decoded raises `ProfileParseError`.

`ProfileMerger.merge` returns the `MergedProfile`, which is also available as
`merger.merged_profile`. `write_compressed` writes it gzip-compressed,
`write_uncompressed` writes it as plain protobuf; `MergedProfile.to_bytes` and
`MergedProfile.from_bytes` give the same encoding in memory.

A recovered profile is a `ResolvedProfile`: its samples point at locations,
functions and mappings directly, with strings already filled in, and sample
labels appear as `label`, `num_label` and `num_unit` dictionaries.
`ProfileUnPacker.unpack_raw` decodes an uncompressed container,
`unpack_compressed` a gzip-compressed one, and `ProfileUnPacker(merged).unpack(idx)`
works on a merged profile already in memory. An index with no profile behind it
raises `IndexOutOfRangeError`; a container that is not valid protobuf raises
`ppmerge.wire.DecodeError`.

`Profile.from_resolved` turns a `ResolvedProfile` back into the compact,
string-table form that the merger takes, and `Profile.to_bytes` encodes that
as pprof protobuf.

## Merging goroutine profiles

```python
import io

from ppmerge.goroutine import GoroutineProfile
from ppmerge.goroutine_merger import GoroutineProfileMerger, GoroutineProfileUnPacker

texts = [open(name, "rb").read() for name in ("g1.txt", "g2.txt")]
profiles = [GoroutineProfile.parse(text) for text in texts]

merger = GoroutineProfileMerger()
merged = merger.merge(*profiles)

buf = io.BytesIO()
merger.write_compressed(buf)

first = GoroutineProfileUnPacker(None).unpack_compressed(buf.getvalue(), 0)
print(first.marshal_debug())
```

`GoroutineProfile.parse` raises `UnrecognizedProfileError` when the first line
that is neither blank nor a comment is not a `... profile: total N` header, and
`MalformedProfileError` when a stack trace cannot be read. `marshal_debug`
writes a profile back in the same text format. `GoroutineProfileUnPacker` also
offers `unpack_raw` for an uncompressed container and `unpack` for a merged
profile already in memory; an index with no profile behind it raises
`IndexOutOfRangeError`.

## Bundling raw bytes

```python
import io

from ppmerge.byte_merger import ByteProfileMerger, ByteProfileUnPacker

merger = ByteProfileMerger()
merger.merge(b"first", b"second")

buf = io.BytesIO()
merger.write_compressed(buf)

assert ByteProfileUnPacker(None).unpack_raw(buf.getvalue(), 1) == b"second"
```

`ByteProfileUnPacker.unpack_raw` expects a gzip-compressed container;
`unpack` returns a blob from a `MergedByteProfile` already in memory. The blobs
are stored as given, without deduplication.

## Low-level wire format

`ppmerge.wire` holds the small protobuf encoder and decoder the containers are
built on: `ProtoWriter`, `encode_varint`, `decode_varint`, `iter_fields`,
`decode_packed` and `to_signed`. Malformed input raises `DecodeError`.

## What it does not do

`ppmerge` is a library only: it has no command-line tool. It does not
symbolize addresses, fetch profiles from running programs, or aggregate sample
values across profiles; each merged profile is recovered as it was stored.

## Running the tests

```
pip install ".[test]"
pytest
```