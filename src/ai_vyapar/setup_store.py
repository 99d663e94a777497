"""Bootstrap script for the AI Vyapar store workbook.

Run as ``vyapar-setup``. The workbook it writes holds nothing but the header
of the ``KeyValueStore`` sheet; the default catalog is served on first read
rather than written here.
"""

from __future__ import annotations

import argparse
import configparser
import sys
from pathlib import Path
from typing import Optional, Sequence

import openpyxl
from openpyxl.styles import Font

from . import data_manager, log
from .constants import STORE_SHEET


def load_data_file(config_path: Path) -> Path:
    """Return the workbook path named by ``[System] DataFile``.

    Only that one entry is needed here, so a config that is still missing its
    shop name or schema version can already bootstrap the store. Relative
    entries are anchored to the config file's folder.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist.
        KeyError: If ``DataFile`` is missing.
    """

    config_path = config_path.expanduser().resolve()
    parser = data_manager.read_config(config_path)
    try:
        entry = Path(parser.get("System", "DataFile"))
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc
    return entry if entry.is_absolute() else (config_path.parent / entry).resolve()


def create_store_workbook(destination: Path, *, overwrite: bool = False) -> Path:
    """Write an empty store workbook to ``destination`` and return its path.

    Raises:
        FileExistsError: If the file exists and ``overwrite`` is ``False``.
    """

    target = Path(destination).expanduser().resolve()
    if target.exists() and not overwrite:
        raise FileExistsError(f"Store workbook already exists: {target}")

    workbook = openpyxl.Workbook()
    placeholder = workbook.active
    data_manager.WorkbookStore(workbook)
    if placeholder is not None:
        workbook.remove(placeholder)

    for cell in workbook[STORE_SHEET][1]:
        cell.font = Font(bold=True)

    data_manager.save_workbook(workbook, target)
    log.info("Created store workbook '%s'", target)
    return target


def run_from_config(
    config_path: Path,
    *,
    data_file: Optional[Path] = None,
    overwrite: bool = False,
) -> Path:
    """Create the workbook named by ``config_path`` or by ``data_file``."""

    target = data_file if data_file is not None else load_data_file(config_path)
    return create_store_workbook(target, overwrite=overwrite)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="vyapar-setup",
        description="Create the AI Vyapar store workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=Path(data_manager.CONFIG_FILE_NAME),
        help="config.ini naming the workbook (default: ./config.ini).",
    )
    parser.add_argument(
        "--data-file",
        type=Path,
        default=None,
        help="Write the workbook here instead of the configured DataFile.",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Replace an existing workbook.",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Create the store and report the outcome; returns the exit code."""

    args = parse_args(argv)
    try:
        target = run_from_config(args.config, data_file=args.data_file, overwrite=args.force)
    except FileExistsError as exc:
        print(f"[ERROR] {exc}")
        print("Pass --force to replace it.")
        return 1
    except (FileNotFoundError, KeyError) as exc:
        print(f"[ERROR] {exc}")
        return 1
    except OSError as exc:
        print(f"[ERROR] Could not write the store workbook: {exc}")
        return 1

    print(f"[SUCCESS] Store workbook ready at '{target}'.")
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
