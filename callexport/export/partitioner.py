"""
Input partitioning and split reading.

The export directory is treated as an ordered stream of bytes spread over one
or more part files. ``plan_partitions`` cuts that stream into at most
``parallelism`` contiguous, roughly equal partitions whose boundaries are
moved forward to the next line delimiter, so a record is never split across
two partitions. ``iter_lines`` streams one partition's lines in chunks without
loading whole files.
"""

from __future__ import annotations

from pathlib import Path
from typing import BinaryIO, Iterator, List, Sequence

from callexport.domain.models import FileSegment, Partition

_CHUNK_SIZE = 64 * 1024


def list_input_files(export_dir: Path | str) -> List[Path]:
    """
    Resolve the input files of an export.

    A file path is used as-is. For a directory, regular files are returned in
    name order, skipping hidden and bookkeeping files (``.crc``, ``_SUCCESS``).
    """
    root = Path(export_dir)
    if root.is_file():
        return [root]
    if not root.is_dir():
        raise FileNotFoundError(f"Export source {root} does not exist")
    return sorted(
        path
        for path in root.iterdir()
        if path.is_file() and not path.name.startswith((".", "_"))
    )


def _align(handle: BinaryIO, offset: int, size: int, delimiter: bytes) -> int:
    """Return the first line start at or after ``offset`` (or ``size``)."""
    base = max(offset - len(delimiter), 0)
    handle.seek(base)
    carry = b""
    while True:
        chunk = handle.read(_CHUNK_SIZE)
        if not chunk:
            return size
        data = carry + chunk
        index = data.find(delimiter)
        if index != -1:
            return min(base + index + len(delimiter), size)
        keep = len(delimiter) - 1
        carry = data[len(data) - keep:] if keep else b""
        base += len(data) - len(carry)


def plan_partitions(
    paths: Sequence[Path | str],
    parallelism: int,
    line_delimiter: str = "\n",
    encoding: str = "utf-8",
) -> List[Partition]:
    """
    Split the input into at most ``parallelism`` line-aligned partitions.

    Empty input yields an empty list. Partitions may span several files;
    each file contributes contiguous segments in order.
    """
    if parallelism < 1:
        raise ValueError("parallelism must be >= 1")
    delimiter = line_delimiter.encode(encoding)
    sized = [(Path(path), Path(path).stat().st_size) for path in paths]
    total = sum(size for _, size in sized)
    if total == 0:
        return []

    target = -(-total // parallelism)
    partitions: List[Partition] = []
    current: List[FileSegment] = []
    current_len = 0

    for path, size in sized:
        if size == 0:
            continue
        with path.open("rb") as handle:
            pos = 0
            while pos < size:
                end = pos + (target - current_len)
                end = size if end >= size else _align(handle, end, size, delimiter)
                current.append(FileSegment(path=str(path), start=pos, end=end))
                current_len += end - pos
                pos = end
                if current_len >= target:
                    partitions.append(
                        Partition(partition_id=len(partitions), segments=tuple(current))
                    )
                    current, current_len = [], 0

    if current:
        partitions.append(Partition(partition_id=len(partitions), segments=tuple(current)))
    return partitions


def _segment_lines(segment: FileSegment, delimiter: bytes) -> Iterator[bytes]:
    remaining = segment.length
    buffer = b""
    with open(segment.path, "rb") as handle:
        handle.seek(segment.start)
        while remaining > 0:
            chunk = handle.read(min(_CHUNK_SIZE, remaining))
            if not chunk:
                break
            remaining -= len(chunk)
            buffer += chunk
            *lines, buffer = buffer.split(delimiter)
            yield from lines
    if buffer:
        yield buffer


def iter_lines(partition: Partition, line_delimiter: str = "\n", encoding: str = "utf-8") -> Iterator[bytes]:
    """Yield the raw (undecoded, delimiter-stripped) lines of a partition in order."""
    delimiter = line_delimiter.encode(encoding)
    for segment in partition.segments:
        yield from _segment_lines(segment, delimiter)


__all__ = ["iter_lines", "list_input_files", "plan_partitions"]
