"""Value model for the pickle subset used by checkpoint archives.

Every value produced by :class:`pthkit.unpickler.Unpickler` is one of the
frozen dataclasses below.  Callables referenced by the stream are recorded as
:class:`PyGlobal` names and :class:`PyReduce` applications; nothing is ever
imported or executed.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Iterable, Iterator, List, Optional, Tuple, Union

__all__ = [
    "MARK",
    "PyBool",
    "PyBytes",
    "PyDict",
    "PyGlobal",
    "PyInt",
    "PyMark",
    "PyPersId",
    "PyReduce",
    "PyString",
    "PyTuple",
    "PyValue",
    "children",
    "find_first",
    "visit",
]


@dataclass(frozen=True)
class PyMark:
    """Stack delimiter pushed by ``MARK``; never part of a finished graph."""

    def __repr__(self) -> str:
        return "MARK"


MARK = PyMark()


@dataclass(frozen=True)
class PyBool:
    value: bool


@dataclass(frozen=True)
class PyInt:
    value: int


@dataclass(frozen=True)
class PyString:
    value: str


@dataclass(frozen=True)
class PyBytes:
    value: bytes


@dataclass(frozen=True)
class PyGlobal:
    """Named reference ``module.name``; never resolved."""

    module: str
    name: str

    def matches(self, module: str, name: str) -> bool:
        return self.module == module and self.name == name


@dataclass(frozen=True)
class PyTuple:
    items: Tuple["PyValue", ...] = ()

    def __len__(self) -> int:
        return len(self.items)

    def __getitem__(self, index: int) -> "PyValue":
        return self.items[index]


@dataclass(frozen=True)
class PyDict:
    """Ordered key/value pairs.

    Keys are not deduplicated: pairs are kept exactly as ``SETITEMS`` appended
    them, so the same key may appear more than once.
    """

    items: Tuple[Tuple["PyValue", "PyValue"], ...] = ()

    def __len__(self) -> int:
        return len(self.items)

    def first(self) -> Optional[Tuple["PyValue", "PyValue"]]:
        return self.items[0] if self.items else None

    def extended(self, pairs: Iterable[Tuple["PyValue", "PyValue"]]) -> "PyDict":
        return PyDict(self.items + tuple(pairs))


@dataclass(frozen=True)
class PyReduce:
    """Recorded ``callable(*args)``.  ``args`` is usually, not always, a tuple."""

    callable: "PyValue"
    args: "PyValue"


@dataclass(frozen=True)
class PyPersId:
    """Reference to an object stored outside the stream (tensor storage)."""

    inner: "PyValue"


PyValue = Union[
    PyMark, PyBool, PyInt, PyString, PyBytes, PyGlobal, PyTuple, PyDict, PyReduce, PyPersId
]


def children(value: PyValue) -> Iterator[PyValue]:
    """Yield the direct children of ``value`` in construction order."""

    if isinstance(value, PyTuple):
        yield from value.items
    elif isinstance(value, PyDict):
        for key, item in value.items:
            yield key
            yield item
    elif isinstance(value, PyReduce):
        yield value.callable
        yield value.args
    elif isinstance(value, PyPersId):
        yield value.inner


def visit(value: PyValue, visitor: Callable[[PyValue], bool]) -> None:
    """Walk ``value`` in pre-order.

    ``visitor`` sees every node before its children.  When it returns a false
    value the children of that node are skipped; the rest of the tree is still
    walked.  The walk keeps its own work stack so deeply nested graphs do not
    depend on the interpreter recursion limit.
    """

    pending: List[PyValue] = [value]
    while pending:
        node = pending.pop()
        if not visitor(node):
            continue
        pending.extend(reversed(list(children(node))))


def find_first(value: PyValue, predicate: Callable[[PyValue], bool]) -> Optional[PyValue]:
    """Return the first pre-order node satisfying ``predicate``, or ``None``."""

    found: List[PyValue] = []

    def _check(node: PyValue) -> bool:
        if found:
            return False
        if predicate(node):
            found.append(node)
            return False
        return True

    visit(value, _check)
    return found[0] if found else None
