from __future__ import annotations

import csv
import os
from collections.abc import Iterable, Sequence
from pathlib import Path


def ensure_dir(path: Path) -> Path:
    path = Path(path)
    path.mkdir(parents=True, exist_ok=True)
    return path


def write_text_atomic(path: Path, text: str) -> None:
    """Write text through a temp file so readers never see a partial file."""
    path = Path(path)
    ensure_dir(path.parent)
    tmp_path = path.with_name(path.name + ".tmp")
    with tmp_path.open("w", encoding="utf-8", newline="\n") as f:
        f.write(text)
        f.flush()
        os.fsync(f.fileno())
    tmp_path.replace(path)


def read_first_line(path: Path) -> str:
    """Return the first line of a text file without its newline ("" if empty)."""
    with Path(path).open("r", encoding="utf-8", errors="replace") as f:
        return f.readline().rstrip("\r\n")


def read_tsv(path: Path) -> list[dict[str, str]]:
    """Read a tab-separated file with a header line into a list of row dicts."""
    with Path(path).open("r", encoding="utf-8", newline="") as f:
        reader = csv.DictReader((line for line in f if line.strip()), delimiter="\t")
        return [dict(row) for row in reader]


def write_tsv(path: Path, header: Sequence[str], rows: Iterable[Sequence[object]]) -> None:
    lines = ["\t".join(header)]
    lines.extend("\t".join(str(value) for value in row) for row in rows)
    write_text_atomic(path, "\n".join(lines) + "\n")
