import gzip
import io

import pytest

from ppmerge.merge import (
    IndexOutOfRangeError,
    MergedProfile,
    ProfileMerger,
    ProfileUnPacker,
)
from ppmerge.profile import (
    Location,
    Profile,
    ResolvedFunction,
    ResolvedLine,
    ResolvedLocation,
    ResolvedMapping,
    ResolvedProfile,
    ResolvedSample,
    ResolvedValueType,
    Sample,
    ValueType,
)


def _make(seed, n_samples=50, labels=False):
    mapping = ResolvedMapping(
        id=1,
        start=0x400000,
        limit=0x800000,
        file="/usr/bin/app",
        build_id="build-1",
        has_functions=True,
        has_inline_frames=True,
    )
    functions = [
        ResolvedFunction(
            id=i + 1,
            name=f"main.work{i}",
            system_name=f"main.work{i}",
            filename="main.go",
            start_line=10 * (i + 1),
        )
        for i in range(4)
    ]
    functions.append(
        ResolvedFunction(
            id=5,
            name=f"main.only{seed}",
            system_name=f"main.only{seed}",
            filename=f"only{seed}.go",
            start_line=seed,
        )
    )
    locations = [
        ResolvedLocation(
            id=i + 1,
            mapping=mapping,
            address=0x401000 + 0x20 * i,
            line=[ResolvedLine(function=fn, line=100 + i)],
        )
        for i, fn in enumerate(functions)
    ]
    samples = []
    for i in range(n_samples):
        s = ResolvedSample(value=[seed * 1000 + i, (seed * 1000 + i) * 64])
        if labels and i % 2 == 0:
            s.label = {"handler": [f"h{i % 3}"]}
        if labels and i % 3 == 0:
            s.num_label = {"bytes": [i * 8]}
            s.num_unit = {"bytes": ["bytes"]}
        samples.append(s)
    resolved = ResolvedProfile(
        sample_type=[
            ResolvedValueType("alloc_objects", "count"),
            ResolvedValueType("alloc_space", "bytes"),
        ],
        sample=samples,
        mapping=[mapping],
        location=locations,
        function=functions,
        time_nanos=1_700_000_000_000_000_000 + seed,
        duration_nanos=10_000_000_000 + seed,
        period_type=ResolvedValueType("space", "bytes"),
        period=524288 + seed,
    )
    profile = Profile.from_resolved(resolved)
    for i, s in enumerate(profile.sample):
        s.location_id = [(i % 5) + 1, ((i + 1) % 5) + 1]
    return resolved, profile


def _profiles(count=4, n_samples=50):
    return [_make(seed + 1, n_samples)[1] for seed in range(count)]


def test_labeled_profiles_merge():
    resolved, profile = _make(7, labels=True)
    merged = ProfileMerger().merge(profile)
    recovered = ProfileUnPacker(merged).unpack(0)
    assert len(recovered.sample) == len(resolved.sample)
    for rec, actual in zip(recovered.sample, resolved.sample):
        assert rec.label == actual.label
        assert rec.num_label == actual.num_label
        assert rec.num_unit == actual.num_unit


@pytest.mark.parametrize("idx", [0, 1, 2, 3])
def test_heap_merge(idx):
    profiles = _profiles()
    merger = ProfileMerger()
    merger.merge(*profiles)
    recovered = ProfileUnPacker(merger.merged_profile).unpack(idx)
    actual = profiles[idx]
    strings = actual.string_table

    assert len(recovered.sample) == len(actual.sample)
    for i, sample in enumerate(actual.sample):
        rec_sample = recovered.sample[i]
        assert rec_sample.value == sample.value
        for loc_idx, loc_id in enumerate(sample.location_id):
            actual_loc = actual.location[loc_id - 1]
            rec_loc = rec_sample.location[loc_idx]
            for line_idx, line in enumerate(actual_loc.line):
                rec_line = rec_loc.line[line_idx]
                assert rec_line.line == line.line
                fn = actual.function[line.function_id - 1]
                assert rec_line.function.start_line == fn.start_line
                assert rec_line.function.name == strings[fn.name]
                assert rec_line.function.system_name == strings[fn.system_name]
                assert rec_line.function.filename == strings[fn.filename]
            assert rec_loc.address == actual_loc.address

    assert recovered.period == actual.period
    for i, st in enumerate(actual.sample_type):
        assert recovered.sample_type[i].type == strings[st.type]
        assert recovered.sample_type[i].unit == strings[st.unit]
    assert recovered.duration_nanos == actual.duration_nanos
    assert recovered.time_nanos == actual.time_nanos
    assert recovered.period_type.type == strings[actual.period_type.type]
    assert recovered.period_type.unit == strings[actual.period_type.unit]


def test_merge_write():
    profiles = _profiles(n_samples=200)
    merger = ProfileMerger()
    merger.merge(*profiles)

    compressed = io.BytesIO()
    merger.write_compressed(compressed)
    uncompressed = io.BytesIO()
    merger.write_uncompressed(uncompressed)

    assert len(compressed.getvalue()) > 0
    assert len(uncompressed.getvalue()) > len(compressed.getvalue())
    separate = b"".join(p.to_bytes() for p in profiles)
    assert len(compressed.getvalue()) < len(separate)

    other = [_make(seed, n_samples=120)[1] for seed in (11, 12, 13)]
    merged = merger.merge(*other)
    assert merged.num_samples == [120, 120, 120]
    compressed = io.BytesIO()
    merger.write_compressed(compressed)
    assert len(compressed.getvalue()) < len(b"".join(p.to_bytes() for p in other))


def test_written_outputs_decode_to_merged_profile():
    merger = ProfileMerger()
    merged = merger.merge(*_profiles())
    compressed = io.BytesIO()
    merger.write_compressed(compressed)
    raw = io.BytesIO()
    merger.write_uncompressed(raw)
    assert gzip.decompress(compressed.getvalue()) == raw.getvalue()
    assert MergedProfile.from_bytes(raw.getvalue()) == merged


def test_merge_unpack_compressed():
    profiles = _profiles()
    merger = ProfileMerger()
    merger.merge(*profiles)
    buf = io.BytesIO()
    merger.write_compressed(buf)
    p = ProfileUnPacker(None).unpack_compressed(buf.getvalue(), 0)
    assert [s.value for s in p.sample] == [s.value for s in profiles[0].sample]


def test_merge_unpack_raw():
    profiles = _profiles()
    merger = ProfileMerger()
    merger.merge(*profiles)
    buf = io.BytesIO()
    merger.write_uncompressed(buf)
    p = ProfileUnPacker(None).unpack_raw(buf.getvalue(), 2)
    assert [s.value for s in p.sample] == [s.value for s in profiles[2].sample]
    assert p.period == profiles[2].period


def test_unpack_out_of_range():
    merged = ProfileMerger().merge(*_profiles())
    with pytest.raises(IndexOutOfRangeError, match="unpack sample types"):
        ProfileUnPacker(merged).unpack(4)


def test_unpack_compressed_rejects_garbage():
    with pytest.raises(OSError):
        ProfileUnPacker(None).unpack_compressed(b"not gzip data", 0)


def test_identical_profiles_share_entries():
    _, profile = _make(3)
    merged = ProfileMerger().merge(profile, profile)
    assert len(merged.functions) == 5
    assert len(merged.mappings) == 1
    assert len(merged.locations) == 5
    assert merged.num_samples == [50, 50]
    assert len(merged.samples) == 100
    second = ProfileUnPacker(merged).unpack(1)
    assert [s.value for s in second.sample] == [s.value for s in profile.sample]


def test_string_table_is_unique_and_starts_empty():
    merged = ProfileMerger().merge(*_profiles())
    assert merged.string_table[0] == ""
    assert len(set(merged.string_table[1:])) == len(merged.string_table) - 1
    assert "main.only1" in merged.string_table
    assert "main.only4" in merged.string_table


def test_mapping_line_numbers_follow_inline_frames():
    _, profile = _make(1)
    merged = ProfileMerger().merge(profile)
    mapping = merged.mappings[0]
    assert mapping.has_inline_frames is True
    assert mapping.has_line_numbers is True
    recovered = ProfileUnPacker(merged).unpack(0)
    rec_mapping = recovered.sample[0].location[0].mapping
    assert rec_mapping.file == "/usr/bin/app"
    assert rec_mapping.build_id == "build-1"
    assert rec_mapping.start == 0x400000
    assert rec_mapping.limit == 0x800000


def test_unsymbolizable_location_has_zero_address():
    profile = Profile(
        string_table=["", "samples", "count"],
        sample_type=[ValueType(type=1, unit=2)],
        location=[Location(id=1, address=0xDEAD)],
        sample=[Sample(location_id=[1], value=[5])],
        period_type=ValueType(type=1, unit=2),
        period=1,
    )
    merged = ProfileMerger().merge(profile)
    assert merged.locations[0].address == 0
    recovered = ProfileUnPacker(merged).unpack(0)
    loc = recovered.sample[0].location[0]
    assert loc.address == 0
    assert loc.mapping is None
    assert recovered.sample_type[0] == ResolvedValueType("samples", "count")


def test_labels_keyed_by_merged_sample_index():
    _, plain = _make(1, n_samples=3)
    _, labeled = _make(2, n_samples=4, labels=True)
    merged = ProfileMerger().merge(plain, labeled)
    assert sorted(merged.labels) == [3, 5, 6]
    recovered = ProfileUnPacker(merged).unpack(1)
    assert recovered.sample[0].label == {"handler": ["h0"]}
    assert recovered.sample[0].num_label == {"bytes": [0]}
    assert recovered.sample[3].num_unit == {"bytes": ["bytes"]}
    assert recovered.sample[1].label == {}