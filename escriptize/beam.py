"""BEAM container handling.

A compiled unit is an IFF container::

    "FOR1" <u32 form length> "BEAM"
    <chunk>*

    chunk := <4-byte id> <u32 data length> <data> <zero padding to 4 bytes>

All integers are big-endian. Units may also be gzip-compressed as a whole.

Stripping keeps the chunks the loader needs (:data:`SIGNIFICANT_CHUNKS`) plus
any names the caller asks to retain, and drops everything else. The dropped
set is typically debug info and documentation: ``Dbgi``, ``Abst``, ``Docs``,
``ExCk``, ``ExDp``, ``CInf``, ``Meta``, ``Type``. Remaining chunks keep their
order and bytes.
"""

from dataclasses import dataclass
import gzip
import logging
import struct
import zlib

from escriptize.config import StripPolicy
from escriptize.terms import Atom


class BeamError(ValueError):
    """Raised when bytes cannot be parsed as a BEAM container."""


SIGNIFICANT_CHUNKS: tuple[str, ...] = (
    "Atom",
    "AtU8",
    "Attr",
    "Code",
    "StrT",
    "ImpT",
    "ExpT",
    "FunT",
    "LitT",
    "Line",
)

_GZIP_MAGIC: bytes = b"\x1f\x8b"


@dataclass(frozen=True, slots=True)
class Chunk:
    """One named chunk.

    :ivar name: Four-character chunk id (e.g. ``Code``).
    :ivar data: Raw chunk bytes, without padding.
    """

    name: str
    data: bytes


@dataclass(frozen=True, slots=True)
class BeamFile:
    """A parsed BEAM container.

    :ivar chunks: Chunks in file order.
    """

    chunks: tuple[Chunk, ...]

    def chunk_names(self) -> list[str]:
        return [c.name for c in self.chunks]

    def get(self, name: str) -> Chunk | None:
        for c in self.chunks:
            if c.name == name:
                return c
        return None


def _align4(n: int) -> int:
    return (n + 3) & ~3


def parse_beam(data: bytes) -> BeamFile:
    """Parse a BEAM container into its chunk list.

    :param data: Unit bytes, optionally gzip-compressed.
    :returns: Parsed container.
    :raises BeamError: If the bytes are not a valid container.
    """

    if data[0:2] == _GZIP_MAGIC:
        try:
            data = gzip.decompress(data)
        except (OSError, EOFError, zlib.error) as e:
            raise BeamError(f"corrupt gzip wrapper: {e}") from e

    if len(data) < 12:
        raise BeamError("too short for a BEAM header")
    if data[0:4] != b"FOR1":
        raise BeamError("missing FOR1 magic")
    form_len: int = struct.unpack_from(">I", data, 4)[0]
    end: int = 8 + form_len
    if end > len(data):
        raise BeamError(f"form length {form_len} exceeds file size {len(data)}")
    if data[8:12] != b"BEAM":
        raise BeamError(f"unexpected form type {data[8:12]!r}")

    chunks: list[Chunk] = []
    pos: int = 12
    while pos + 8 <= end:
        name: str = data[pos : pos + 4].decode("latin-1")
        size: int = struct.unpack_from(">I", data, pos + 4)[0]
        start: int = pos + 8
        if start + size > end:
            raise BeamError(f"chunk {name!r} is truncated")
        chunks.append(Chunk(name=name, data=bytes(data[start : start + size])))
        pos = start + _align4(size)

    if pos < end and data[pos:end].strip(b"\0") != b"":
        raise BeamError("trailing garbage after last chunk")

    return BeamFile(chunks=tuple(chunks))


def build_beam(beam: BeamFile) -> bytes:
    """Serialize a container.

    :param beam: Container to serialize.
    :returns: Unit bytes.
    :raises BeamError: If a chunk name is not four bytes long.
    """

    body: bytearray = bytearray(b"BEAM")
    for c in beam.chunks:
        raw_name: bytes = c.name.encode("latin-1")
        if len(raw_name) != 4:
            raise BeamError(f"chunk name must be 4 bytes: {c.name!r}")
        body += raw_name
        body += struct.pack(">I", len(c.data))
        body += c.data
        body += b"\0" * (_align4(len(c.data)) - len(c.data))
    return b"FOR1" + struct.pack(">I", len(body)) + bytes(body)


def strip_beam(data: bytes, *, keep: tuple[str, ...] = (), compress: bool = False) -> bytes:
    """Drop every chunk that is neither significant nor explicitly kept.

    :param data: Unit bytes.
    :param keep: Extra chunk names to retain (e.g. ``("Docs",)``).
    :param compress: Gzip the result.
    :returns: Stripped unit bytes.
    :raises BeamError: If the unit cannot be parsed.
    """

    beam: BeamFile = parse_beam(data)
    wanted: set[str] = set(SIGNIFICANT_CHUNKS) | set(keep)
    stripped: BeamFile = BeamFile(chunks=tuple(c for c in beam.chunks if c.name in wanted))
    out: bytes = build_beam(stripped)
    if compress is True:
        # mtime=0 keeps repeated builds byte-identical.
        out = gzip.compress(out, mtime=0)
    return out


def strip_entries(
    entries: dict[str, bytes],
    *,
    policy: StripPolicy,
    logger: logging.Logger,
) -> dict[str, bytes]:
    """Strip every ``.beam`` entry of an archive entry set.

    A unit that fails to parse is passed through unchanged.

    :param entries: Archive path to payload, in archive order.
    :param policy: Strip policy.
    :param logger: Logger for progress output.
    :returns: New entry mapping with the same keys and order.
    """

    if policy.enabled is False:
        logger.info("escriptize: beam stripping disabled")
        return dict(entries)

    out: dict[str, bytes] = {}
    stripped_count: int = 0
    bytes_before: int = 0
    bytes_after: int = 0
    for archive_path, payload in entries.items():
        if archive_path.endswith(".beam") is False:
            out[archive_path] = payload
            continue

        try:
            new_payload: bytes = strip_beam(payload, keep=policy.keep, compress=policy.compress)
        except BeamError as e:
            logger.warning(f"escriptize: leaving {archive_path} unstripped ({e})")
            out[archive_path] = payload
            continue

        out[archive_path] = new_payload
        stripped_count += 1
        bytes_before += len(payload)
        bytes_after += len(new_payload)

    logger.info(
        f"escriptize: stripped {stripped_count} beams "
        f"({bytes_before / 1024:.1f} KiB -> {bytes_after / 1024:.1f} KiB)"
    )
    return out


def _compact_length(data: bytes, pos: int) -> tuple[int, int]:
    """Decode one compact-term encoded atom length (OTP 26+ ``AtU8``).

    :param data: Chunk bytes.
    :param pos: Offset of the tag byte.
    :returns: ``(length, new_pos)``.
    :raises BeamError: If the encoding is not a small or medium integer.
    """

    b: int = data[pos]
    if b & 0x08 == 0:
        return (b >> 4, pos + 1)
    if b & 0x10 == 0:
        if pos + 1 >= len(data):
            raise BeamError("truncated atom length")
        return (((b >> 5) << 8) | data[pos + 1], pos + 2)
    raise BeamError("unsupported atom length encoding")


def atoms(beam: BeamFile) -> list[Atom]:
    """Decode the atom table.

    :param beam: Parsed container.
    :returns: Atoms in table order (the first one is the module name).
    :raises BeamError: If there is no atom chunk or it is malformed.
    """

    chunk: Chunk | None = beam.get("AtU8")
    encoding: str = "utf-8"
    if chunk is None:
        chunk = beam.get("Atom")
        encoding = "latin-1"
    if chunk is None:
        raise BeamError("no atom table chunk")

    data: bytes = chunk.data
    if len(data) < 4:
        raise BeamError("atom table is truncated")
    count: int = struct.unpack_from(">i", data, 0)[0]
    compact: bool = count < 0
    count = abs(count)

    out: list[Atom] = []
    pos: int = 4
    try:
        for _ in range(count):
            length: int
            if compact is True:
                length, pos = _compact_length(data, pos)
            else:
                length = data[pos]
                pos += 1
            if pos + length > len(data):
                raise BeamError("atom table is truncated")
            out.append(Atom(data[pos : pos + length].decode(encoding)))
            pos += length
    except IndexError as e:
        raise BeamError("atom table is truncated") from e
    except UnicodeDecodeError as e:
        raise BeamError(f"atom table is not valid {encoding}") from e
    return out


def module_name(data: bytes) -> Atom:
    """Return the module a unit defines.

    :param data: Unit bytes.
    :returns: Module atom.
    :raises BeamError: If the unit cannot be parsed.
    """

    table: list[Atom] = atoms(parse_beam(data))
    if len(table) == 0:
        raise BeamError("atom table is empty")
    return table[0]
