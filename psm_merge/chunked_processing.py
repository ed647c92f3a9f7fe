"""Chunked processing of oversized line-oriented files.

Some downstream tools (statistical re-scoring in particular) are
single-threaded and impractically slow or memory hungry beyond a certain
input size. This module keeps each invocation under a size limit:

1. Split the input round-robin into N balanced parts (header copied to each)
2. Run the tool once per part
3. Interleave the per-part outputs back into one file in the original row order

Key design principles:
- Never load a whole file into memory; all steps are line streaming
- Round-robin distribution makes ``interleave_files`` the exact inverse of
  ``split_file_round_robin``
- Interleaving is all-or-nothing: a failed run leaves no partial output
"""

from __future__ import annotations

import logging
import math
import shutil
from collections.abc import Callable
from contextlib import ExitStack
from dataclasses import dataclass
from pathlib import Path

from .data_io import is_number

logger = logging.getLogger(__name__)

# Largest file handed to the re-scoring tool in one piece - 200 MB
MAX_PART_SIZE_BYTES = 200 * 1024 * 1024


@dataclass
class InterleaveResult:
    """Result of interleaving part files."""

    output_path: Path
    n_parts: int
    n_lines: int
    header_written: bool


@dataclass
class ChunkedRunResult:
    """Result of running a per-part step over a (possibly) split file."""

    output_path: Path
    n_parts: int
    source_size_bytes: int


def is_large_file(path: Path, max_bytes: int = MAX_PART_SIZE_BYTES) -> bool:
    """Check if a file is too large to process in one piece."""
    return Path(path).stat().st_size > max_bytes


def _looks_like_header(line: str) -> bool:
    """A first line whose first tab-delimited field is not numeric is a header."""
    if not line.strip():
        return False
    return not is_number(line.split("\t", 1)[0])


def _strip_newline(line: str) -> str:
    return line.rstrip("\r\n")


def split_file_round_robin(
    source_path: Path,
    max_bytes: int = MAX_PART_SIZE_BYTES,
    has_header: bool = True,
) -> list[Path]:
    """Split a file into parts no larger than roughly ``max_bytes``.

    Data lines are dealt round-robin (line 1 to part 1, line 2 to part 2,
    ...). When ``has_header`` is set and the first line looks like a header,
    it is copied to every part instead of being dealt.

    Parts are written beside the source as ``<stem>_part<N><suffix>``.

    Args:
        source_path: File to split
        max_bytes: Size limit per part
        has_header: Whether to look for a header line

    Returns:
        Paths of the parts, or ``[source_path]`` if no split was needed

    Raises:
        FileNotFoundError: If the source file does not exist
        ValueError: If max_bytes is not positive

    """
    source_path = Path(source_path)
    if not source_path.exists():
        raise FileNotFoundError(f"File not found: {source_path}")
    if max_bytes <= 0:
        raise ValueError(f"max_bytes must be positive, got {max_bytes}")

    size = source_path.stat().st_size
    if size <= max_bytes:
        return [source_path]

    n_parts = max(2, math.ceil(size / max_bytes))
    logger.info(
        f"{source_path.name} is {size / 1024 / 1024:.1f} MB; "
        f"splitting into {n_parts} parts"
    )

    part_paths = [
        source_path.with_name(f"{source_path.stem}_part{i + 1}{source_path.suffix}")
        for i in range(n_parts)
    ]

    with ExitStack() as stack:
        reader = stack.enter_context(open(source_path, encoding="utf-8", newline=""))
        writers = [
            stack.enter_context(open(p, "w", encoding="utf-8", newline="\n"))
            for p in part_paths
        ]

        target = 0
        for line_number, line in enumerate(reader, start=1):
            line = _strip_newline(line)

            if line_number == 1 and has_header and _looks_like_header(line):
                for writer in writers:
                    writer.write(line + "\n")
                continue

            writers[target].write(line + "\n")
            target += 1
            if target == n_parts:
                target = 0

    logger.debug(f"Split {source_path.name} into {len(part_paths)} parts")
    return part_paths


def interleave_files(
    part_paths: list[Path],
    output_path: Path,
    has_header: bool = True,
) -> InterleaveResult:
    """Recombine part files by reading one line from each part in turn.

    This reverses :func:`split_file_round_robin`. A header line (first line
    with a non-numeric first field) is written once, from the first part.

    Args:
        part_paths: Part files, in part order
        output_path: Combined file to create
        has_header: Whether to look for header lines

    Returns:
        InterleaveResult with line counts

    Raises:
        ValueError: If no parts are given
        FileNotFoundError: If any part is missing (nothing is written)
        OSError: On a read or write failure (the partial output is removed)

    """
    part_paths = [Path(p) for p in part_paths]
    output_path = Path(output_path)

    if not part_paths:
        raise ValueError("No part files to interleave")

    missing = [p for p in part_paths if not p.exists()]
    if missing:
        raise FileNotFoundError(
            f"Part file not found, unable to interleave: {', '.join(str(p) for p in missing)}"
        )

    n_lines = 0
    header_written = False

    try:
        with ExitStack() as stack:
            readers = [
                stack.enter_context(open(p, encoding="utf-8", newline="")) for p in part_paths
            ]
            writer = stack.enter_context(open(output_path, "w", encoding="utf-8", newline="\n"))
            lines_read = [0] * len(readers)

            while True:
                read_this_round = 0
                for i, reader in enumerate(readers):
                    line = reader.readline()
                    if not line:
                        continue

                    read_this_round += 1
                    lines_read[i] += 1
                    line = _strip_newline(line)

                    if lines_read[i] == 1 and has_header and _looks_like_header(line):
                        if i == 0:
                            writer.write(line + "\n")
                            header_written = True
                        continue

                    writer.write(line + "\n")
                    n_lines += 1

                if read_this_round == 0:
                    break
    except OSError:
        logger.error(f"Error interleaving {len(part_paths)} files into {output_path.name}")
        output_path.unlink(missing_ok=True)
        raise

    logger.debug(f"Interleaved {n_lines:,} lines from {len(part_paths)} parts into {output_path}")

    return InterleaveResult(
        output_path=output_path,
        n_parts=len(part_paths),
        n_lines=n_lines,
        header_written=header_written,
    )


def delete_temporary_files(paths: list[Path]) -> None:
    """Delete each file, logging (not raising) on failure."""
    for path in paths:
        logger.debug(f"Deleting file {path}")
        try:
            Path(path).unlink(missing_ok=True)
        except OSError as e:
            logger.error(f"Error deleting file {Path(path).name}: {e}")


def process_in_parts(
    source_path: Path,
    output_path: Path,
    process_part: Callable[[Path], Path],
    max_bytes: int = MAX_PART_SIZE_BYTES,
    has_header: bool = True,
) -> ChunkedRunResult:
    """Run ``process_part`` over a file, splitting it first if it is too large.

    ``process_part`` receives one input file and returns the path of the
    file it produced. With more than one part, the per-part outputs are
    interleaved into ``output_path`` and all temporary files are deleted.

    Args:
        source_path: File to process
        output_path: Final combined output
        process_part: Callable that processes one part and returns its output path
        max_bytes: Size limit per part
        has_header: Whether the input and outputs carry a header line

    Returns:
        ChunkedRunResult

    Raises:
        FileNotFoundError: If a part output was not created

    """
    source_path = Path(source_path)
    output_path = Path(output_path)
    source_size = source_path.stat().st_size if source_path.exists() else 0

    parts = split_file_round_robin(source_path, max_bytes, has_header)

    if len(parts) == 1:
        produced = Path(process_part(parts[0]))
        if not produced.exists():
            raise FileNotFoundError(f"Output not created for {parts[0].name}: {produced}")
        if produced.resolve() == source_path.resolve():
            shutil.copyfile(produced, output_path)
        elif produced.resolve() != output_path.resolve():
            shutil.move(str(produced), str(output_path))
        return ChunkedRunResult(output_path=output_path, n_parts=1, source_size_bytes=source_size)

    part_outputs: list[Path] = []
    try:
        for part in parts:
            logger.info(
                f"Processing {part.name} (file size = {part.stat().st_size / 1024 / 1024:.2f} MB; "
                f"parent file is {source_size / 1024 / 1024:.2f} MB)"
            )
            produced = Path(process_part(part))
            if not produced.exists():
                raise FileNotFoundError(f"Output not created for {part.name}: {produced}")
            part_outputs.append(produced)
    finally:
        delete_temporary_files(parts)

    logger.info(f"Combining {len(part_outputs)} part results to create {output_path.name}")
    try:
        interleave_files(part_outputs, output_path, has_header)
    finally:
        delete_temporary_files(part_outputs)

    return ChunkedRunResult(
        output_path=output_path,
        n_parts=len(parts),
        source_size_bytes=source_size,
    )
