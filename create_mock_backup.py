#!/usr/bin/env python3
"""
Utility to create mock backup payloads of a given size.

Useful for exercising uploads, multipart chunking and rotation without real
backup data. Large files are written sparse so they cost no disk space.
"""
from __future__ import annotations

import argparse
from pathlib import Path
from typing import Iterable, List, Optional


SIZE_UNITS = {
    "b": 1,
    "k": 1024,
    "m": 1024 * 1024,
    "g": 1024 * 1024 * 1024,
}


def parse_args(argv: Iterable[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Create mock backup files for testing s3backup."
    )
    parser.add_argument(
        "--output-dir",
        type=Path,
        required=True,
        help="Directory where the mock files should be placed.",
    )
    parser.add_argument(
        "--name",
        default="testBackupFile",
        help="Base name of the mock file (default: testBackupFile).",
    )
    parser.add_argument(
        "--size",
        default="1K",
        help="Size of each file, with an optional B/K/M/G suffix (default: 1K).",
    )
    parser.add_argument(
        "--content",
        help="Literal text content; overrides --size.",
    )
    parser.add_argument(
        "--count",
        type=int,
        default=1,
        help="Number of files to create (default: 1).",
    )
    return parser.parse_args(argv)


def parse_size(value: str) -> int:
    normalized = value.strip().lower()
    if not normalized:
        raise ValueError("Size value must not be empty.")

    suffix = normalized[-1]
    if suffix in SIZE_UNITS:
        number_part = normalized[:-1]
        multiplier = SIZE_UNITS[suffix]
    else:
        number_part = normalized
        multiplier = 1

    try:
        number = int(number_part)
    except ValueError as error:
        raise ValueError(f"Invalid size value: {value}") from error

    if number < 0:
        raise ValueError("Size value must not be negative.")

    return number * multiplier


def make_mock_backup(
    output_dir: Path,
    name: str,
    size: int = 0,
    content: Optional[bytes] = None,
) -> Path:
    output_dir.mkdir(parents=True, exist_ok=True)
    path = output_dir / name

    with open(path, "wb") as handle:
        if content is not None:
            handle.write(content)
        elif size > 0:
            handle.seek(size - 1)
            handle.write(b"\0")

    return path


def main(argv: Iterable[str] | None = None) -> int:
    args = parse_args(argv)

    try:
        size = parse_size(args.size)
    except ValueError as error:
        print(f"Error: {error}")
        return 2

    if args.count <= 0:
        print("Error: --count must be a positive integer.")
        return 2

    content = args.content.encode("utf-8") if args.content is not None else None
    output_dir = args.output_dir.resolve()

    created: List[Path] = []
    for index in range(args.count):
        name = args.name if args.count == 1 else f"{args.name}_{index + 1}"
        created.append(make_mock_backup(output_dir, name, size=size, content=content))
        print(f"Created mock backup: {created[-1]}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
