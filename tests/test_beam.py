import gzip
import struct

import pytest

from conftest import atom_table, make_beam
from escriptize.beam import (
    SIGNIFICANT_CHUNKS,
    BeamError,
    BeamFile,
    Chunk,
    atoms,
    build_beam,
    module_name,
    parse_beam,
    strip_beam,
    strip_entries,
)
from escriptize.config import STRIP_DISABLED, StripPolicy


def test_parse_and_build_preserve_chunks():
    data = make_beam("my_mod", extra=("Dbgi", "Docs", "ExCk"))
    beam = parse_beam(data)
    assert beam.chunk_names() == ["AtU8", "Code", "ExpT", "Dbgi", "Docs", "ExCk"]
    assert build_beam(beam) == data


def test_build_pads_chunks_to_four_bytes():
    data = build_beam(BeamFile(chunks=(Chunk("Code", b"abcde"),)))
    assert data[0:4] == b"FOR1"
    assert struct.unpack(">I", data[4:8])[0] == len(data) - 8
    assert data[8:12] == b"BEAM"
    # 4 id + 4 size + 5 data + 3 padding
    assert len(data) == 12 + 16
    assert data.endswith(b"abcde\0\0\0")


def test_strip_removes_auxiliary_chunks_only():
    data = make_beam("my_mod", extra=("Dbgi", "Docs", "CInf"))
    stripped = parse_beam(strip_beam(data))
    assert stripped.chunk_names() == ["AtU8", "Code", "ExpT"]
    original = parse_beam(data)
    for name in stripped.chunk_names():
        assert name in SIGNIFICANT_CHUNKS
        assert stripped.get(name) == original.get(name)


def test_strip_keep_list_retains_named_chunks():
    data = make_beam("my_mod", extra=("Dbgi", "Docs"))
    stripped = parse_beam(strip_beam(data, keep=("Docs",)))
    assert stripped.chunk_names() == ["AtU8", "Code", "ExpT", "Docs"]


@pytest.mark.parametrize("compress", [False, True])
def test_strip_is_idempotent(compress):
    data = make_beam("my_mod", extra=("Dbgi", "Docs"))
    once = strip_beam(data, compress=compress)
    twice = strip_beam(once, compress=compress)
    assert once == twice


def test_compressed_units_parse():
    data = make_beam("my_mod")
    packed = gzip.compress(data, mtime=0)
    assert parse_beam(packed) == parse_beam(data)
    assert strip_beam(packed, compress=True)[0:2] == b"\x1f\x8b"


@pytest.mark.parametrize(
    "data",
    [
        b"",
        b"not a beam file at all",
        b"FOR1\x00\x00\x00\x40BEAM",
        b"FOR1\x00\x00\x00\x10XXXX" + b"\0" * 12,
        b"\x1f\x8b garbage",
    ],
)
def test_parse_rejects_invalid_containers(data):
    with pytest.raises(BeamError):
        parse_beam(data)


def test_parse_rejects_truncated_chunk():
    data = make_beam("my_mod")
    body = data[:16] + b"\xff\xff\x00\x00" + data[20:]
    with pytest.raises(BeamError, match="truncated"):
        parse_beam(body)


def test_module_name_reads_atom_table():
    assert module_name(make_beam("Elixir.MyApp.CLI")) == "Elixir.MyApp.CLI"


def test_module_name_reads_compact_atom_table():
    names = [b"my_mod", b"main"]
    table = struct.pack(">i", -len(names))
    for raw in names:
        table += bytes([len(raw) << 4]) + raw
    beam = BeamFile(chunks=(Chunk("AtU8", table), Chunk("Code", b"")))
    assert atoms(beam) == ["my_mod", "main"]


def test_atoms_require_a_table():
    with pytest.raises(BeamError):
        atoms(BeamFile(chunks=(Chunk("Code", b""),)))
    with pytest.raises(BeamError):
        atoms(BeamFile(chunks=(Chunk("AtU8", atom_table(["abc"])[:-1]),)))


def test_strip_entries_skips_non_beams_and_corrupt_units(logger):
    good = make_beam("my_mod")
    entries = {
        "my_app/ebin/my_app.app": b"{application, my_app, []}.",
        "my_app/ebin/my_mod.beam": good,
        "my_app/ebin/broken.beam": b"definitely not a beam",
        "my_app/priv/data.beam.txt": b"FOR1",
    }
    out = strip_entries(entries, policy=StripPolicy(), logger=logger)
    assert list(out) == list(entries)
    assert out["my_app/ebin/my_app.app"] == entries["my_app/ebin/my_app.app"]
    assert out["my_app/ebin/broken.beam"] == entries["my_app/ebin/broken.beam"]
    assert out["my_app/priv/data.beam.txt"] == b"FOR1"
    assert parse_beam(out["my_app/ebin/my_mod.beam"]).chunk_names() == ["AtU8", "Code", "ExpT"]


def test_strip_entries_disabled_is_passthrough(logger):
    entries = {"a/ebin/m.beam": make_beam("m")}
    assert strip_entries(entries, policy=STRIP_DISABLED, logger=logger) == entries
