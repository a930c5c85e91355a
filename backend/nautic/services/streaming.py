from pathlib import Path
from typing import Iterator, Tuple

CHUNK_SIZE = 64 * 1024


class RangeNotSatisfiable(ValueError):
    pass


def parse_range(header: str, size: int) -> Tuple[int, int]:
    """
    Parse an HTTP Range header into an inclusive (start, end) byte span.

    Only the first range of a multi-range request is honoured. Suffix ranges
    ("bytes=-500") and open ranges ("bytes=100-") are supported; an end past
    the file is clamped to the last byte.
    """
    unit, _, ranges = header.partition("=")
    if unit.strip().lower() != "bytes" or not ranges.strip():
        raise RangeNotSatisfiable(header)

    first = ranges.split(",")[0].strip()
    start_text, sep, end_text = first.partition("-")
    if not sep:
        raise RangeNotSatisfiable(header)

    try:
        if not start_text.strip():
            length = int(end_text)
            if length <= 0:
                raise RangeNotSatisfiable(header)
            start, end = max(0, size - length), size - 1
        else:
            start = int(start_text)
            end = int(end_text) if end_text.strip() else size - 1
    except ValueError:
        raise RangeNotSatisfiable(header) from None

    end = min(end, size - 1)
    if start < 0 or start >= size or end < start:
        raise RangeNotSatisfiable(header)
    return start, end


def iter_file(path: Path, start: int, end: int, chunk_size: int = CHUNK_SIZE) -> Iterator[bytes]:
    remaining = end - start + 1
    with open(path, "rb") as f:
        f.seek(start)
        while remaining > 0:
            chunk = f.read(min(chunk_size, remaining))
            if not chunk:
                break
            remaining -= len(chunk)
            yield chunk
