"""Utility for initializing the POS ledger master workbook.

The module doubles as a script (``pos-ledger-setup``) and as a library used by
tests or other tooling. Shared helpers keep the workbook bootstrap logic
consistent regardless of the execution path.
"""

from __future__ import annotations

import argparse
import configparser
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

import openpyxl
from openpyxl.styles import Font

from . import data_manager, log
from .constants import Collection
from .sequence_counter import SequenceCounter

CONFIG_FILE = data_manager.CONFIG_FILE_NAME


@dataclass(frozen=True)
class SetupSettings:
    """Type-safe representation of configuration values used during setup."""

    data_file: Path


def load_settings(config_path: Path) -> SetupSettings:
    """Read ``config.ini`` and produce :class:`SetupSettings`.

    Relative paths inside the config file are resolved against the config
    file's directory.
    """

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)

    try:
        data_file_raw = parser.get("System", "DataFile")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        data_file_path = (config_path.parent / data_file_path).resolve()

    return SetupSettings(data_file=data_file_path)


def create_master_workbook(
    destination: Path,
    *,
    collections: Sequence[Collection] = tuple(Collection),
    overwrite: bool = False,
) -> Path:
    """Create the master workbook at ``destination``.

    One worksheet per collection is created with the bold ``ID``/``Document``
    header pair, and every document counter is seeded at its floor so the
    first issued numbers are predictable.

    Raises:
        FileExistsError: If the target exists and ``overwrite`` is ``False``.
    """

    destination = destination.expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(
            f"Refusing to overwrite existing master workbook: {destination}"
        )

    workbook = openpyxl.Workbook()

    # Remove the default sheet openpyxl generates so we can create ours.
    if workbook.active and workbook.active.title == "Sheet":
        workbook.remove(workbook.active)

    bold_font = Font(bold=True)

    for collection in collections:
        worksheet = workbook.create_sheet(title=collection.value)
        for column_index, column_name in enumerate(data_manager.STORE_HEADERS, start=1):
            cell = worksheet.cell(row=1, column=column_index)
            cell.value = column_name
            cell.font = bold_font

    seeded = SequenceCounter(data_manager.WorkbookRecordStore(workbook)).initialize_all()
    log.info("Seeded counters: %s", ", ".join(name for name, created in seeded.items() if created))

    data_manager.save_workbook(workbook, destination)
    return destination


def run_from_config(config_path: Path, *, overwrite: bool = False) -> Path:
    """Create the workbook named by ``config.ini``."""

    settings = load_settings(config_path)
    return create_master_workbook(settings.data_file, overwrite=overwrite)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for the setup script."""

    parser = argparse.ArgumentParser(prog="pos-ledger-setup", description="Initialize the POS ledger data file")
    parser.add_argument(
        "--config",
        default=CONFIG_FILE,
        help="Path to configuration file (default: config.ini)",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite the target workbook if it already exists.",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for the setup script."""

    args = parse_args(argv)
    config_path = Path(args.config).expanduser().resolve()

    print("--- POS Ledger Setup ---")
    print(f"Using configuration: {config_path}")

    try:
        output_path = run_from_config(config_path, overwrite=args.force)
    except (FileNotFoundError, KeyError) as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except FileExistsError as exc:
        print(f"\n[ERROR] {exc}")
        print("Run with --force to overwrite the existing file if appropriate.")
        return 1
    except (PermissionError, OSError) as exc:
        print(f"\n[ERROR] Unable to write workbook: {exc}")
        return 1

    print(f"\n[SUCCESS] Created master workbook at '{output_path}'.")
    return 0


if __name__ == "__main__":  # pragma: no cover - exercised via manual runs
    sys.exit(main())
