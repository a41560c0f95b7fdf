"""Helpers that emit pickle opcodes and build zip checkpoints for the tests."""

from __future__ import annotations

import struct
import zipfile
from pathlib import Path
from typing import Mapping, Sequence, Tuple

PROTO2 = b"\x80\x02"
STOP = b"."
MARK = b"("
EMPTY_DICT = b"}"
EMPTY_TUPLE = b")"
SETITEMS = b"u"
TUPLE = b"t"
REDUCE = b"R"
BINPERSID = b"Q"
NEWTRUE = b"\x88"
NEWFALSE = b"\x89"

_STORAGE_ITEMSIZE = {"Float32Storage": 4, "Float16Storage": 2, "BFloat16Storage": 2}


def binput(key: int) -> bytes:
    return b"q" + bytes([key])


def long_binput(key: int) -> bytes:
    return b"r" + struct.pack("<I", key)


def binget(key: int) -> bytes:
    return b"h" + bytes([key])


def integer(value: int) -> bytes:
    if 0 <= value <= 0xFF:
        return b"K" + bytes([value])
    if 0 <= value <= 0xFFFF:
        return b"M" + struct.pack("<H", value)
    return b"J" + struct.pack("<i", value)


def unicode(value: str | bytes) -> bytes:
    raw = value.encode("utf-8") if isinstance(value, str) else value
    return b"X" + struct.pack("<I", len(raw)) + raw


def global_(module: str, name: str) -> bytes:
    return b"c" + module.encode() + b"\n" + name.encode() + b"\n"


def tuple_of(items: Sequence[bytes]) -> bytes:
    if not items:
        return EMPTY_TUPLE
    body = b"".join(items)
    if len(items) <= 3:
        return body + bytes([0x84 + len(items)])
    return MARK + body + TUPLE


def persid(storage: str, key: str, numel: int) -> bytes:
    fields = [unicode("storage"), global_("torch", storage), unicode(key), unicode("cpu"), integer(numel)]
    return tuple_of(fields) + BINPERSID


def rebuild_tensor(
    storage: str,
    key: str,
    numel: int,
    shape: Sequence[int],
    *,
    rebuild: Tuple[str, str] = ("torch._utils", "_rebuild_tensor_v2"),
) -> bytes:
    """Emit ``_rebuild_tensor_v2(storage, 0, shape, stride, False, OrderedDict())``."""

    stride = []
    running = 1
    for dim in reversed(shape):
        stride.insert(0, running)
        running *= max(dim, 1)
    args = [
        persid(storage, key, numel),
        integer(0),
        tuple_of([integer(dim) for dim in shape]),
        tuple_of([integer(step) for step in stride]),
        NEWFALSE,
        global_("collections", "OrderedDict") + EMPTY_TUPLE + REDUCE,
    ]
    return global_(*rebuild) + MARK + b"".join(args) + TUPLE + REDUCE


def state_dict(entries: Sequence[Tuple[str, bytes]]) -> bytes:
    """Emit ``{name: value, ...}`` built with a single ``SETITEMS``."""

    body = b"".join(unicode(name) + value for name, value in entries)
    return EMPTY_DICT + binput(0) + MARK + body + SETITEMS


def pickle_stream(body: bytes) -> bytes:
    return PROTO2 + body + STOP


TensorSpec = Tuple[str, bytes, Tuple[int, ...]]


def checkpoint_pickle(tensors: Mapping[str, TensorSpec]) -> bytes:
    entries = []
    for index, (name, (storage, data, shape)) in enumerate(tensors.items()):
        numel = len(data) // _STORAGE_ITEMSIZE.get(storage, 4)
        entries.append((name, rebuild_tensor(storage, str(index), numel, shape)))
    return pickle_stream(state_dict(entries))


def write_checkpoint(
    path: Path,
    tensors: Mapping[str, TensorSpec],
    *,
    base: str = "archive",
    pickle_bytes: bytes | None = None,
) -> Path:
    """Write a torch-style zip checkpoint.

    ``tensors`` maps a tensor name to ``(storage class, payload, shape)``; the
    payload of the n-th tensor is stored as ``{base}/data/{n}``.
    """

    path.parent.mkdir(parents=True, exist_ok=True)
    if pickle_bytes is None:
        pickle_bytes = checkpoint_pickle(tensors)
    with zipfile.ZipFile(path, "w") as archive:
        archive.writestr(f"{base}/data.pkl", pickle_bytes)
        for index, (_storage, data, _shape) in enumerate(tensors.values()):
            archive.writestr(f"{base}/data/{index}", data)
        archive.writestr(f"{base}/version", "3\n")
    return path
