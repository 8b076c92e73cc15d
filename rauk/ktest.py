"""Reader/writer for KLEE ``.ktest`` test-vector files.

A ``.ktest`` file records one concrete path found by the symbolic execution
engine: the program arguments it ran with and the named symbolic objects with
the bytes that drive that path.  Layout (all integers unsigned 32-bit)::

    magic       5 bytes   b"KTEST" (or the legacy b"BOUT\\n")
    version     u32       1..3
    num_args    u32       followed by num_args x (u32 size, size bytes)
    sym_argvs   u32       version >= 2 only
    sym_argv_len u32      version >= 2 only
    num_objects u32       followed by num_objects x
                              (u32 name size, name, u32 data size, data)

The decoder never guesses: a declared length that runs past the end of the
buffer, an unknown magic, or bytes left over after the last object are all
hard failures.
"""

from __future__ import annotations

import os
import struct
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import List, Optional, Tuple, Union

KTEST_MAGIC = b"KTEST"
BOUT_MAGIC = b"BOUT\n"
MAGIC_SIZE = 5
VALID_MAGICS = (KTEST_MAGIC, BOUT_MAGIC)
KTEST_VERSION_MIN = 1
KTEST_VERSION_MAX = 3
SYM_ARGS_MIN_VERSION = 2
KTEST_SUFFIX = ".ktest"

_BYTEORDERS = {"little": "<", "big": ">"}


class KTestError(ValueError):
    """Base class for malformed test-vector files."""


class FormatError(KTestError):
    """Raised when the stream is not a ktest file or is structurally invalid."""


class VersionError(KTestError):
    """Raised when the stream declares an unsupported format version."""


class TruncatedError(KTestError):
    """Raised when a declared length exceeds the remaining bytes."""


@dataclass(frozen=True)
class KTestObject:
    name: str
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class KTestRecord:
    """One decoded test vector."""

    format_tag: bytes = KTEST_MAGIC
    version: int = KTEST_VERSION_MAX
    arguments: Tuple[bytes, ...] = ()
    sym_argvs: int = 0
    sym_argv_len: int = 0
    objects: Tuple[KTestObject, ...] = ()
    path: Optional[Path] = field(default=None, compare=False)

    @property
    def name(self) -> str:
        if self.path is not None:
            return self.path.name
        return "<memory>"

    def names(self) -> List[str]:
        return [obj.name for obj in self.objects]

    def get(self, name: str) -> Optional[KTestObject]:
        """Return the first object called ``name`` (``None`` when absent)."""
        for obj in self.objects:
            if obj.name == name:
                return obj
        return None


def _struct_for(byteorder: str) -> struct.Struct:
    try:
        prefix = _BYTEORDERS[byteorder]
    except KeyError:
        raise ValueError(f"byteorder must be one of {sorted(_BYTEORDERS)} (got {byteorder!r})") from None
    return struct.Struct(prefix + "I")


class _Reader:
    def __init__(self, data: bytes, u32: struct.Struct) -> None:
        self._data = data
        self._u32 = u32
        self.offset = 0

    @property
    def remaining(self) -> int:
        return len(self._data) - self.offset

    def take(self, size: int, what: str) -> bytes:
        if size > self.remaining:
            raise TruncatedError(
                f"{what}: need {size} bytes at offset {self.offset}, only {self.remaining} left"
            )
        chunk = self._data[self.offset : self.offset + size]
        self.offset += size
        return chunk

    def u32(self, what: str) -> int:
        return self._u32.unpack(self.take(self._u32.size, what))[0]

    def sized(self, what: str) -> bytes:
        size = self.u32(f"{what} size")
        return self.take(size, what)


def decode_ktest(data: Union[bytes, bytearray, memoryview], *, byteorder: str = "little") -> KTestRecord:
    """Decode ``data`` into a :class:`KTestRecord`."""

    reader = _Reader(bytes(data), _struct_for(byteorder))
    if reader.remaining < MAGIC_SIZE:
        raise FormatError("stream too short for ktest magic")
    magic = reader.take(MAGIC_SIZE, "magic")
    if magic not in VALID_MAGICS:
        raise FormatError(f"unrecognised magic {magic!r}")

    version = reader.u32("version")
    if not KTEST_VERSION_MIN <= version <= KTEST_VERSION_MAX:
        raise VersionError(
            f"unsupported ktest version {version} (supported {KTEST_VERSION_MIN}..{KTEST_VERSION_MAX})"
        )

    num_args = reader.u32("argument count")
    arguments = tuple(reader.sized(f"argument[{idx}]") for idx in range(num_args))

    sym_argvs = sym_argv_len = 0
    if version >= SYM_ARGS_MIN_VERSION:
        sym_argvs = reader.u32("sym_argvs")
        sym_argv_len = reader.u32("sym_argv_len")

    num_objects = reader.u32("object count")
    objects: List[KTestObject] = []
    for idx in range(num_objects):
        raw_name = reader.sized(f"object[{idx}] name")
        try:
            name = raw_name.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise FormatError(f"object[{idx}] name is not valid UTF-8") from exc
        payload = reader.sized(f"object[{idx}] data")
        objects.append(KTestObject(name=name, data=payload))

    if reader.remaining:
        raise FormatError(f"{reader.remaining} trailing bytes after {num_objects} objects")

    return KTestRecord(
        format_tag=magic,
        version=version,
        arguments=arguments,
        sym_argvs=sym_argvs,
        sym_argv_len=sym_argv_len,
        objects=tuple(objects),
    )


def encode_ktest(record: KTestRecord, *, byteorder: str = "little") -> bytes:
    """Serialise ``record`` using the same layout :func:`decode_ktest` reads."""

    u32 = _struct_for(byteorder)
    if record.format_tag not in VALID_MAGICS:
        raise FormatError(f"unrecognised magic {record.format_tag!r}")
    if not KTEST_VERSION_MIN <= record.version <= KTEST_VERSION_MAX:
        raise VersionError(f"unsupported ktest version {record.version}")
    out = bytearray(record.format_tag)
    out += u32.pack(record.version)
    out += u32.pack(len(record.arguments))
    for arg in record.arguments:
        out += u32.pack(len(arg))
        out += arg
    if record.version >= SYM_ARGS_MIN_VERSION:
        out += u32.pack(record.sym_argvs)
        out += u32.pack(record.sym_argv_len)
    out += u32.pack(len(record.objects))
    for obj in record.objects:
        name = obj.name.encode("utf-8")
        out += u32.pack(len(name))
        out += name
        out += u32.pack(len(obj.data))
        out += obj.data
    return bytes(out)


def load_ktest(path: Union[str, os.PathLike], *, byteorder: str = "little") -> KTestRecord:
    """Read and decode a ``.ktest`` file, remembering where it came from."""

    file_path = Path(path)
    try:
        record = decode_ktest(file_path.read_bytes(), byteorder=byteorder)
    except KTestError as exc:
        raise type(exc)(f"{file_path}: {exc}") from exc
    return replace(record, path=file_path)


def _run_index(path: Path) -> int:
    suffix = path.name.rsplit("-", 1)[-1]
    return int(suffix) if suffix.isdigit() else -1


def _newest_run_dir(root: Path) -> Optional[Path]:
    last = root / "klee-last"
    if last.is_dir():
        return last.resolve()
    runs = [p for p in root.iterdir() if p.is_dir() and p.name.startswith("klee-out-")]
    if runs:
        return max(runs, key=_run_index)
    return None


def iter_ktest_files(directory: Union[str, os.PathLike]) -> List[Path]:
    """Return the sorted ``.ktest`` files of a KLEE output directory.

    ``directory`` may be a run directory (``klee-out-3``) or the folder that
    holds the runs, in which case ``klee-last`` (or the highest numbered
    ``klee-out-N``) is used.
    """

    root = Path(directory)
    if not root.is_dir():
        raise FileNotFoundError(f"ktest directory not found: {root}")
    files = sorted(p for p in root.iterdir() if p.is_file() and p.suffix == KTEST_SUFFIX)
    if files:
        return files
    run_dir = _newest_run_dir(root)
    if run_dir is None:
        return []
    return sorted(p for p in run_dir.iterdir() if p.is_file() and p.suffix == KTEST_SUFFIX)


def load_ktest_dir(
    directory: Union[str, os.PathLike], *, byteorder: str = "little"
) -> Tuple[List[KTestRecord], List[Tuple[Path, KTestError]]]:
    """Decode every vector in ``directory``.

    Returns the decoded records and the files that failed to decode; one bad
    file never prevents the others from loading.
    """

    records: List[KTestRecord] = []
    failures: List[Tuple[Path, KTestError]] = []
    for path in iter_ktest_files(directory):
        try:
            records.append(load_ktest(path, byteorder=byteorder))
        except KTestError as exc:
            failures.append((path, exc))
    return records, failures


def describe_record(record: KTestRecord) -> dict:
    """JSON-friendly view of a record (used by ``rauk decode``)."""

    return {
        "file": record.name,
        "format": record.format_tag.decode("ascii", errors="replace").strip(),
        "version": record.version,
        "args": [arg.decode("utf-8", errors="replace") for arg in record.arguments],
        "sym_argvs": record.sym_argvs,
        "sym_argv_len": record.sym_argv_len,
        "objects": [
            {"name": obj.name, "size": obj.size, "data": obj.data.hex()} for obj in record.objects
        ],
    }


__all__ = [
    "KTEST_MAGIC",
    "BOUT_MAGIC",
    "KTestError",
    "FormatError",
    "VersionError",
    "TruncatedError",
    "KTestObject",
    "KTestRecord",
    "decode_ktest",
    "encode_ktest",
    "load_ktest",
    "load_ktest_dir",
    "iter_ktest_files",
    "describe_record",
]
