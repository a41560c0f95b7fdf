"""Stack interpreter for the pickle subset written by ``torch.save``.

Only the opcodes needed to describe a checkpoint's tensor metadata are
understood.  Globals are recorded by name and ``REDUCE`` only records the
application, so decoding an untrusted stream never runs code.
"""

from __future__ import annotations

import io
import logging
import struct
from enum import IntEnum
from typing import BinaryIO, Callable, Dict, List

from .errors import PickleFormatError
from .values import (
    MARK,
    PyBool,
    PyDict,
    PyGlobal,
    PyInt,
    PyMark,
    PyPersId,
    PyReduce,
    PyString,
    PyTuple,
    PyValue,
)

__all__ = ["HIGHEST_PROTOCOL", "Opcode", "Unpickler", "load", "loads"]

logger = logging.getLogger(__name__)

HIGHEST_PROTOCOL = 4

_U16 = struct.Struct("<H")
_U32 = struct.Struct("<I")
_I32 = struct.Struct("<i")


class Opcode(IntEnum):
    PROTO = 0x80
    BINPUT = ord("q")
    LONG_BINPUT = ord("r")
    BINGET = ord("h")
    BININT = ord("J")
    BININT1 = ord("K")
    BININT2 = ord("M")
    EMPTY_DICT = ord("}")
    MARK = ord("(")
    EMPTY_TUPLE = ord(")")
    SETITEMS = ord("u")
    TUPLE = ord("t")
    TUPLE1 = 0x85
    TUPLE2 = 0x86
    TUPLE3 = 0x87
    NEWTRUE = 0x88
    NEWFALSE = 0x89
    BINUNICODE = ord("X")
    GLOBAL = ord("c")
    REDUCE = ord("R")
    BINPERSID = ord("Q")
    STOP = ord(".")


class _Machine:
    """State of a single ``load`` call: input cursor, operand stack and memo."""

    def __init__(self, stream: BinaryIO) -> None:
        self._stream = stream
        self._offset = 0
        self._op_offset = 0
        self._opcode: int | None = None
        self.stack: List[PyValue] = []
        self.memo: Dict[int, PyValue] = {}

    def _error(self, message: str) -> PickleFormatError:
        return PickleFormatError(message, opcode=self._opcode, offset=self._op_offset)

    # Input -------------------------------------------------------------

    def _read(self, size: int) -> bytes:
        data = self._stream.read(size)
        if data is None or len(data) != size:
            got = 0 if data is None else len(data)
            raise self._error(f"truncated pickle: wanted {size} bytes, got {got}")
        self._offset += size
        return data

    def _readline(self) -> bytes:
        line = self._stream.readline()
        if not line.endswith(b"\n"):
            raise self._error("truncated pickle: unterminated line")
        self._offset += len(line)
        return line

    # Stack -------------------------------------------------------------

    def _pop(self) -> PyValue:
        if not self.stack:
            raise self._error("stack underflow")
        return self.stack.pop()

    def _pop_mark(self) -> List[PyValue]:
        items: List[PyValue] = []
        while True:
            item = self._pop()
            if isinstance(item, PyMark):
                break
            items.append(item)
        items.reverse()
        return items

    def _put(self, key: int) -> None:
        if not self.stack:
            raise self._error("binput with nothing on stack")
        self.memo[key] = self.stack[-1]

    # Handlers ----------------------------------------------------------

    def load_proto(self) -> None:
        proto = self._read(1)[0]
        if proto > HIGHEST_PROTOCOL:
            raise self._error(f"unsupported pickle protocol {proto}")

    def load_binput(self) -> None:
        self._put(self._read(1)[0])

    def load_long_binput(self) -> None:
        self._put(_U32.unpack(self._read(4))[0])

    def load_binget(self) -> None:
        key = self._read(1)[0]
        try:
            self.stack.append(self.memo[key])
        except KeyError:
            raise self._error(f"memo key {key} not found") from None

    def load_binint(self) -> None:
        self.stack.append(PyInt(_I32.unpack(self._read(4))[0]))

    def load_binint1(self) -> None:
        self.stack.append(PyInt(self._read(1)[0]))

    def load_binint2(self) -> None:
        self.stack.append(PyInt(_U16.unpack(self._read(2))[0]))

    def load_empty_dict(self) -> None:
        self.stack.append(PyDict())

    def load_mark(self) -> None:
        self.stack.append(MARK)

    def load_empty_tuple(self) -> None:
        self.stack.append(PyTuple())

    def load_setitems(self) -> None:
        items = self._pop_mark()
        if len(items) % 2:
            raise self._error("setitems with an odd number of items")
        target = self._pop()
        if not isinstance(target, PyDict):
            raise self._error("setitems on not a dict")
        pairs = zip(items[::2], items[1::2])
        self.stack.append(target.extended(pairs))

    def load_tuple(self) -> None:
        self.stack.append(PyTuple(tuple(self._pop_mark())))

    def load_tuple1(self) -> None:
        self.stack.append(PyTuple((self._pop(),)))

    def load_tuple2(self) -> None:
        second = self._pop()
        first = self._pop()
        self.stack.append(PyTuple((first, second)))

    def load_tuple3(self) -> None:
        third = self._pop()
        second = self._pop()
        first = self._pop()
        self.stack.append(PyTuple((first, second, third)))

    def load_newtrue(self) -> None:
        self.stack.append(PyBool(True))

    def load_newfalse(self) -> None:
        self.stack.append(PyBool(False))

    def load_binunicode(self) -> None:
        size = _U32.unpack(self._read(4))[0]
        raw = self._read(size)
        self.stack.append(PyString(raw.decode("utf-8", errors="replace")))

    def load_global(self) -> None:
        module = self._readline().decode("utf-8", errors="replace").rstrip()
        name = self._readline().decode("utf-8", errors="replace").rstrip()
        self.stack.append(PyGlobal(module, name))

    def load_reduce(self) -> None:
        args = self._pop()
        func = self._pop()
        self.stack.append(PyReduce(func, args))

    def load_binpersid(self) -> None:
        self.stack.append(PyPersId(self._pop()))

    dispatch: Dict[Opcode, Callable[["_Machine"], None]] = {
        Opcode.PROTO: load_proto,
        Opcode.BINPUT: load_binput,
        Opcode.LONG_BINPUT: load_long_binput,
        Opcode.BINGET: load_binget,
        Opcode.BININT: load_binint,
        Opcode.BININT1: load_binint1,
        Opcode.BININT2: load_binint2,
        Opcode.EMPTY_DICT: load_empty_dict,
        Opcode.MARK: load_mark,
        Opcode.EMPTY_TUPLE: load_empty_tuple,
        Opcode.SETITEMS: load_setitems,
        Opcode.TUPLE: load_tuple,
        Opcode.TUPLE1: load_tuple1,
        Opcode.TUPLE2: load_tuple2,
        Opcode.TUPLE3: load_tuple3,
        Opcode.NEWTRUE: load_newtrue,
        Opcode.NEWFALSE: load_newfalse,
        Opcode.BINUNICODE: load_binunicode,
        Opcode.GLOBAL: load_global,
        Opcode.REDUCE: load_reduce,
        Opcode.BINPERSID: load_binpersid,
    }

    def run(self) -> PyValue:
        trace = logger.isEnabledFor(logging.DEBUG)
        while True:
            self._op_offset = self._offset
            self._opcode = None
            key = self._read(1)[0]
            self._opcode = key
            if key == Opcode.STOP:
                break
            try:
                handler = self.dispatch[Opcode(key)]
            except ValueError:
                raise self._error("unpickler: unknown op") from None
            if trace:
                logger.debug("%s at offset %d", Opcode(key).name, self._op_offset)
            handler(self)

        if not self.stack:
            raise self._error("nothing left on stack")
        if len(self.stack) > 1:
            raise self._error(f"extra values left on stack ({len(self.stack) - 1})")
        return self.stack[0]


class Unpickler:
    """Decode a pickle stream into a :data:`~pthkit.values.PyValue` tree.

    The operand stack and memo live only for the duration of one
    :meth:`load` call, so an instance can be reused freely.
    """

    def load(self, stream: BinaryIO) -> PyValue:
        return _Machine(stream).run()


def load(stream: BinaryIO) -> PyValue:
    return Unpickler().load(stream)


def loads(data: bytes) -> PyValue:
    return Unpickler().load(io.BytesIO(data))
