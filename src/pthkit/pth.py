"""Locate tensors inside zip-format PyTorch checkpoints."""

from __future__ import annotations

import logging
import math
import zipfile
import zlib
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Dict, Iterable, List, Mapping, Optional, Tuple

from .errors import ArchiveError, PickleFormatError, UnknownDtypeError
from .unpickler import Unpickler
from .values import (
    PyDict,
    PyGlobal,
    PyInt,
    PyPersId,
    PyReduce,
    PyString,
    PyTuple,
    PyValue,
    find_first,
)

if TYPE_CHECKING:  # pragma: no cover - typing helper
    from numpy import ndarray as _NDArray
    from safetensors import TensorSpec as _TensorSpec

# Errors raised while inflating a damaged zip member.
_ZIP_READ_ERRORS = (OSError, EOFError, zipfile.BadZipFile, zlib.error)

__all__ = [
    "PKL_SUFFIX",
    "REBUILD_TENSOR",
    "PthDtype",
    "PthReader",
    "PthTensorLoc",
    "find_state_dict",
    "load_tensors",
    "locate_tensors",
    "read_tensors",
]

logger = logging.getLogger(__name__)

PKL_SUFFIX = "data.pkl"
REBUILD_TENSOR = ("torch._utils", "_rebuild_tensor_v2")


class PthDtype(Enum):
    FP32 = "Float32Storage"
    FP16 = "Float16Storage"
    BF16 = "BFloat16Storage"

    @property
    def size(self) -> int:
        return 4 if self is PthDtype.FP32 else 2

    @property
    def safetensors_dtype(self) -> str:
        return _SAFETENSORS_DTYPES[self]

    @classmethod
    def from_storage_name(cls, name: str) -> "PthDtype":
        try:
            return cls(name)
        except ValueError:
            raise UnknownDtypeError(name) from None


_SAFETENSORS_DTYPES = {
    PthDtype.FP32: "float32",
    PthDtype.FP16: "float16",
    PthDtype.BF16: "bfloat16",
}


@dataclass(frozen=True)
class PthTensorLoc:
    """Where a tensor's bytes live and how to interpret them.

    Reading the payload reopens the owning archive every time; descriptors
    share no handles and can be read independently of each other.
    """

    dtype: PthDtype
    zipfile: Path
    zip_inner_file: str
    nelements: int
    shape: Tuple[int, ...]

    @property
    def data_len(self) -> int:
        return self.nelements * self.dtype.size

    def data(self) -> bytes:
        logger.debug("loading pth tensor %s from %s", self.zip_inner_file, self.zipfile)
        expected = self.data_len
        try:
            with zipfile.ZipFile(self.zipfile) as archive:
                with archive.open(self.zip_inner_file) as handle:
                    payload = handle.read(expected)
        except KeyError:
            raise ArchiveError(
                "zip inner file not found", archive=self.zipfile, entry=self.zip_inner_file
            ) from None
        except _ZIP_READ_ERRORS as exc:
            raise ArchiveError(
                f"unable to read tensor payload: {exc}",
                archive=self.zipfile,
                entry=self.zip_inner_file,
            ) from exc
        if len(payload) != expected:
            raise ArchiveError(
                f"short read: wanted {expected} bytes, got {len(payload)}",
                archive=self.zipfile,
                entry=self.zip_inner_file,
            )
        return payload

    @property
    def shape_nelements(self) -> int:
        return math.prod(self.shape)

    @property
    def is_view(self) -> bool:
        """True when the storage holds a different element count than the shape."""

        return self.shape_nelements != self.nelements

    def to_safetensors(self, keep_alive: List[object]) -> "_TensorSpec":
        """Describe the payload as a ``safetensors.TensorSpec``.

        The spec points at a buffer appended to ``keep_alive``; that list must
        outlive the ``serialize_file`` call consuming the spec.
        """

        import numpy as _np
        from safetensors import TensorSpec

        buffer = _np.frombuffer(self.data(), dtype=_np.uint8)
        keep_alive.append(buffer)
        return TensorSpec(
            dtype=self.dtype.safetensors_dtype,
            shape=list(self.shape),
            data_ptr=buffer.ctypes.data,
            data_len=buffer.nbytes,
        )

    def to_numpy(self) -> "_NDArray":
        """Decode the payload; BF16 storage is widened to ``float32``."""

        import numpy as _np

        payload = self.data()
        if self.dtype is PthDtype.BF16:
            raw = _np.frombuffer(payload, dtype="<u2").astype(_np.uint32)
            raw <<= 16
            array = raw.view(_np.float32)
        elif self.dtype is PthDtype.FP16:
            array = _np.frombuffer(payload, dtype="<f2")
        else:
            array = _np.frombuffer(payload, dtype="<f4")
        return array.reshape(self.shape)


def _is_rebuild_call(value: PyValue) -> bool:
    return (
        isinstance(value, PyReduce)
        and isinstance(value.callable, PyGlobal)
        and value.callable.matches(*REBUILD_TENSOR)
    )


def find_state_dict(root: PyValue) -> Optional[PyDict]:
    """Find the dict holding the tensors.

    Only the first pair of each dict is inspected: the state dict is the first
    dict, in pre-order, whose first entry maps a string to a
    ``_rebuild_tensor_v2`` call.
    """

    def _is_state_dict(node: PyValue) -> bool:
        if not isinstance(node, PyDict):
            return False
        first = node.first()
        return (
            first is not None
            and isinstance(first[0], PyString)
            and _is_rebuild_call(first[1])
        )

    found = find_first(root, _is_state_dict)
    return found if isinstance(found, PyDict) else None


def _shape_of(args: PyTuple) -> Tuple[int, ...]:
    if len(args) < 3 or not isinstance(args[2], PyTuple):
        return ()
    dims: List[int] = []
    for dim in args[2].items:
        if not isinstance(dim, PyInt) or dim.value < 0:
            raise PickleFormatError(f"invalid tensor dimension {dim!r}")
        dims.append(dim.value)
    return tuple(dims)


def _storage_base(pkl_name: str) -> str:
    base, sep, _ = pkl_name.rpartition("/")
    if not sep:
        raise PickleFormatError(f"{pkl_name!r} is not inside an archive directory")
    return base


def locate_tensors(root: PyValue, archive: Path, pkl_name: str) -> Dict[str, PthTensorLoc]:
    """Describe every tensor entry of the state dict found under ``root``.

    Entries that do not look like tensors are skipped.  An unknown storage
    class or a persistent id with too few fields is a format error.
    """

    state = find_state_dict(root)
    tensors: Dict[str, PthTensorLoc] = {}
    if state is None:
        logger.debug("no state dict found in %s:%s", archive, pkl_name)
        return tensors

    for key, value in state.items:
        if not isinstance(key, PyString) or not _is_rebuild_call(value):
            continue
        args = value.args
        if not isinstance(args, PyTuple):
            continue
        shape = _shape_of(args)
        persid = find_first(args, lambda node: isinstance(node, PyPersId))
        if persid is None:
            logger.debug("tensor %s has no persistent id; skipping", key.value)
            continue
        fields = persid.inner
        if not isinstance(fields, PyTuple):
            continue
        if len(fields) < 5:
            raise PickleFormatError(
                f"malformed persistent id for {key.value!r}: expected 5 fields, got {len(fields)}"
            )
        storage, filename, count = fields[1], fields[2], fields[4]
        if not (
            isinstance(storage, PyGlobal)
            and isinstance(filename, PyString)
            and isinstance(count, PyInt)
        ):
            continue
        if count.value < 0:
            raise PickleFormatError(f"negative element count for {key.value!r}")
        tensors[key.value] = PthTensorLoc(
            dtype=PthDtype.from_storage_name(storage.name),
            zipfile=archive,
            zip_inner_file=f"{_storage_base(pkl_name)}/data/{filename.value}",
            nelements=count.value,
            shape=shape,
        )
    return tensors


def _select_pkl(names: Iterable[str]) -> Optional[str]:
    selected = None
    for name in names:
        if name.endswith(PKL_SUFFIX):
            selected = name
    return selected


def load_tensors(path: Path) -> Dict[str, PthTensorLoc]:
    """Read the tensor descriptors of a single checkpoint archive."""

    path = Path(path)
    logger.debug("read zip: %s", path)
    try:
        with zipfile.ZipFile(path) as archive:
            pkl_name = _select_pkl(archive.namelist())
            logger.debug("pkl: %s", pkl_name)
            if pkl_name is None:
                return {}
            with archive.open(pkl_name) as stream:
                root = Unpickler().load(stream)
    except PickleFormatError as exc:
        exc.archive = path
        raise
    except _ZIP_READ_ERRORS as exc:
        raise ArchiveError(f"unable to read archive: {exc}", archive=path) from exc

    try:
        return locate_tensors(root, path, pkl_name)
    except PickleFormatError as exc:
        exc.archive = path
        raise


class PthReader:
    """Tensor descriptors gathered from one or more checkpoint archives.

    Archives are read in the given order; a tensor name seen again in a later
    archive replaces the earlier descriptor.
    """

    def __init__(self, paths: Iterable[Path]) -> None:
        self.paths: Tuple[Path, ...] = tuple(Path(path) for path in paths)
        self.tensors: Dict[str, PthTensorLoc] = {}
        for path in self.paths:
            found = load_tensors(path)
            logger.debug("found %d tensors in %s", len(found), path)
            self.tensors.update(found)

    def __len__(self) -> int:
        return len(self.tensors)

    def items(self) -> Iterable[Tuple[str, PthTensorLoc]]:
        return self.tensors.items()


def read_tensors(paths: Iterable[Path]) -> Mapping[str, PthTensorLoc]:
    return PthReader(paths).tensors
