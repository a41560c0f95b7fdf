"""Convert zip-format PyTorch checkpoints into a single safetensors file."""

from __future__ import annotations

import argparse
import importlib.util
import json
import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Sequence, Tuple

_SAFETENSORS_MISSING_MSG = (
    "The `safetensors` package is required for checkpoint conversion. "
    "Install it with 'pip install safetensors'."
)

if importlib.util.find_spec("safetensors") is None:  # pragma: no cover - deterministic import guard
    raise ModuleNotFoundError(_SAFETENSORS_MISSING_MSG)
from safetensors import SafetensorError

from .. import __version__
from ..errors import PthError
from ..pth import PthReader

logger = logging.getLogger(__name__)

__all__ = [
    "ConversionSummary",
    "TensorInfo",
    "convert",
    "format_summary",
    "main",
    "render_summary",
    "serialize_file",
]


def serialize_file(*args, **kwargs):
    """Proxy ``safetensors.serialize_file`` so it can be monkeypatched in tests."""

    from safetensors import serialize_file as _serialize_file

    return _serialize_file(*args, **kwargs)


def _normalise_path(path: Path) -> Path:
    """Return an absolute version of *path* tolerant of exotic links."""

    path = Path(path).expanduser()
    try:
        return path.resolve()
    except OSError:  # pragma: no cover - exercised on Windows
        return path.absolute()


@dataclass(frozen=True)
class TensorInfo:
    """Description of one tensor copied into the output file."""

    name: str
    dtype: str
    shape: Tuple[int, ...]
    bytes: int
    archive: Path


@dataclass(frozen=True)
class ConversionSummary:
    """Summary of the tensors written by :func:`convert`."""

    sources: Tuple[Path, ...]
    output: Path
    tensors: Tuple[TensorInfo, ...]
    total_bytes: int

    @property
    def tensor_count(self) -> int:
        return len(self.tensors)

    def to_dict(self) -> Dict[str, object]:
        """Serialise the summary into JSON-serialisable primitives."""

        return {
            "sources": [str(source) for source in self.sources],
            "output": str(self.output),
            "tensors": [
                {
                    "name": info.name,
                    "dtype": info.dtype,
                    "shape": list(info.shape),
                    "bytes": info.bytes,
                    "archive": str(info.archive),
                }
                for info in self.tensors
            ],
            "total_bytes": self.total_bytes,
        }


def _shape_text(shape: Tuple[int, ...]) -> str:
    return "x".join(str(dim) for dim in shape) if shape else "scalar"


def format_summary(summary: ConversionSummary) -> str:
    """Return a plain-text table of the tensors written by :func:`convert`."""

    rows = [("name", "dtype", "shape", "bytes")]
    rows.extend(
        (info.name, info.dtype, _shape_text(info.shape), str(info.bytes))
        for info in summary.tensors
    )
    widths = [max(len(row[column]) for row in rows) for column in range(4)]

    lines = [f"{summary.output} <- " + ", ".join(str(source) for source in summary.sources)]
    for name, dtype, shape, size in rows:
        lines.append(
            f"  {name:<{widths[0]}}  {dtype:<{widths[1]}}  {shape:<{widths[2]}}  {size:>{widths[3]}}"
        )
    lines.append(f"{summary.tensor_count} tensors, {summary.total_bytes} bytes")
    return "\n".join(lines)


def _summary_json(summary: ConversionSummary) -> str:
    return json.dumps(summary.to_dict(), indent=2, sort_keys=True)


_RENDERERS = {"table": format_summary, "json": _summary_json}


def render_summary(summary: ConversionSummary, *, format: str = "table") -> str:
    """Render ``summary`` as ``"table"`` or ``"json"`` (case-insensitive)."""

    try:
        renderer = _RENDERERS[format.lower()]
    except KeyError:
        raise ValueError(f"Unsupported summary format: {format}") from None
    return renderer(summary)


def convert(
    sources: Iterable[Path],
    output: Path,
    *,
    metadata: Mapping[str, str] | None = None,
    verbose: bool = False,
) -> ConversionSummary:
    """Merge the tensors of ``sources`` into the safetensors file ``output``.

    Archives are read in order and a tensor name found in a later archive
    replaces the earlier one.  Every payload is read before anything is
    written; if writing fails, an output file created by this call is removed.
    """

    sources = tuple(_normalise_path(source) for source in sources)
    output = _normalise_path(output)

    if verbose and not logging.getLogger().handlers:
        logging.basicConfig(level=logging.INFO)

    def log_verbose(message: str, *args: object) -> None:
        if verbose:
            logger.info(message, *args)
        else:
            logger.debug(message, *args)

    for source in sources:
        log_verbose("Reading checkpoint archive %s", source)
    reader = PthReader(sources)
    logger.info("Found %d tensors in %d archive(s)", len(reader), len(sources))

    payload: Dict[str, object] = {}
    keep_alive: List[object] = []
    infos: List[TensorInfo] = []
    total_bytes = 0
    for name, loc in reader.items():
        if loc.is_view:
            raise PthError(
                f"tensor {name!r} in {loc.zipfile} is a view: storage holds "
                f"{loc.nelements} elements but shape {list(loc.shape)} needs {loc.shape_nelements}"
            )
        log_verbose(
            "Loading %s: %s %s (%d bytes) from %s",
            name,
            loc.dtype.safetensors_dtype,
            list(loc.shape),
            loc.data_len,
            loc.zip_inner_file,
        )
        payload[name] = loc.to_safetensors(keep_alive)
        infos.append(
            TensorInfo(
                name=name,
                dtype=loc.dtype.safetensors_dtype,
                shape=loc.shape,
                bytes=loc.data_len,
                archive=loc.zipfile,
            )
        )
        total_bytes += loc.data_len

    created_output = not output.exists()
    output.parent.mkdir(parents=True, exist_ok=True)
    try:
        serialize_file(payload, str(output), metadata=dict(metadata) if metadata else None)
    except BaseException:
        if created_output and output.exists():
            logger.error("Removing incomplete output %s", output)
            output.unlink()
        raise
    logger.info("Wrote %d tensors (%d bytes) to %s", len(infos), total_bytes, output)

    return ConversionSummary(
        sources=sources,
        output=output,
        tensors=tuple(infos),
        total_bytes=total_bytes,
    )


def _parse_metadata(parser: argparse.ArgumentParser, entries: Sequence[str]) -> Dict[str, str]:
    metadata: Dict[str, str] = {}
    for entry in entries:
        key, sep, value = entry.partition("=")
        if not sep or not key:
            parser.error(f"--metadata expects KEY=VALUE, got {entry!r}")
        metadata[key] = value
    return metadata


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="pth-transfer",
        description=(
            "Convert zip-format PyTorch checkpoints into a safetensors file. "
            "Tensors from later inputs replace same-named tensors from earlier ones. "
            "The optional flags only affect logging, the printed summary and extra "
            "header metadata; they never change which tensors are written or their bytes."
        ),
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument(
        "input_files",
        type=Path,
        nargs="+",
        help="Checkpoint archives to read, in order",
    )
    parser.add_argument("output_file", type=Path, help="Safetensors file to write")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--metadata",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Extra string metadata stored in the safetensors header (repeatable)",
    )
    parser.add_argument(
        "--verbose",
        dest="verbose",
        action="store_true",
        default=None,
        help="Enable verbose logging (can also set PTH_TRANSFER_VERBOSE=1)",
    )
    parser.add_argument(
        "--quiet",
        dest="verbose",
        action="store_false",
        help="Disable verbose logging",
    )
    parser.add_argument(
        "--no-summary",
        dest="print_summary",
        action="store_false",
        help="Do not print the conversion summary table",
    )
    parser.add_argument(
        "--summary-format",
        choices=sorted(_RENDERERS),
        default="table",
        help="Format to use when rendering the conversion summary",
    )
    parser.set_defaults(print_summary=True)

    args = parser.parse_args(argv)

    args.input_files = [path.expanduser() for path in args.input_files]
    args.output_file = args.output_file.expanduser()
    args.metadata = _parse_metadata(parser, args.metadata)

    if args.verbose is None:
        env_value = os.environ.get("PTH_TRANSFER_VERBOSE")
        if env_value is None:
            args.verbose = False
        else:
            args.verbose = env_value.lower() not in {"", "0", "false", "no"}

    return args


def main(argv: Sequence[str] | None = None) -> None:
    args = _parse_args(argv)
    if args.verbose:
        logging.basicConfig(level=logging.INFO)

    try:
        summary = convert(
            args.input_files,
            args.output_file,
            metadata=args.metadata,
            verbose=args.verbose,
        )
    except (PthError, SafetensorError, OSError) as exc:
        message = str(exc) or exc.__class__.__name__
        print(f"pth_transfer: {message}", file=sys.stderr)
        raise SystemExit(1) from exc

    if args.print_summary:
        print(render_summary(summary, format=args.summary_format))


if __name__ == "__main__":
    main()
