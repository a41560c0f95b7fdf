"""Convert zip-format PyTorch checkpoints into safetensors files."""

from .errors import ArchiveError, PickleFormatError, PthError, UnknownDtypeError
from .pth import PthDtype, PthReader, PthTensorLoc, find_state_dict, locate_tensors, read_tensors
from .unpickler import Opcode, Unpickler, loads
from .values import PyValue, find_first, visit

__version__ = "0.1.0"

__all__ = [
    "ArchiveError",
    "Opcode",
    "PickleFormatError",
    "PthDtype",
    "PthError",
    "PthReader",
    "PthTensorLoc",
    "PyValue",
    "UnknownDtypeError",
    "Unpickler",
    "find_first",
    "find_state_dict",
    "loads",
    "locate_tensors",
    "read_tensors",
    "visit",
    "__version__",
]
