"""Utility for initializing the stock ledger workbook.

The module doubles as a script (``python -m stock_ledger.setup_excel``) and as
a library used by tests. Either way the workbook gets one sheet per store with
bold header rows taken from :data:`stock_ledger.data_manager.SHEET_COLUMNS`.
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Mapping, Sequence

import openpyxl
from openpyxl.styles import Font

from . import data_manager, log
from .data_manager import LocationRow


def create_master_workbook(
    destination: Path,
    *,
    locations: Sequence[LocationRow] = (),
    sheet_columns: Mapping[str, Sequence[str]] = data_manager.SHEET_COLUMNS,
    overwrite: bool = False,
) -> Path:
    """Create the ledger workbook at ``destination``.

    When ``overwrite`` is ``False`` (the default) this function raises
    ``FileExistsError`` if the target already exists. ``locations`` are
    written to the ``Locations`` sheet so counts and receipts have somewhere
    to point.
    """

    destination = Path(destination).expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(
            f"Refusing to overwrite existing ledger workbook: {destination}"
        )

    destination.parent.mkdir(parents=True, exist_ok=True)

    workbook = openpyxl.Workbook()

    if workbook.active and workbook.active.title == "Sheet":
        workbook.remove(workbook.active)

    bold_font = Font(bold=True)

    for sheet_name, columns in sheet_columns.items():
        worksheet = workbook.create_sheet(title=sheet_name)
        for column_index, column_name in enumerate(columns, start=1):
            cell = worksheet.cell(row=1, column=column_index)
            cell.value = column_name
            cell.font = bold_font

    for location in locations:
        data_manager.append_location(workbook, location)

    workbook.save(destination)
    log.info("Created ledger workbook '%s' with %d location(s)", destination, len(locations))
    return destination


def parse_location(raw: str) -> LocationRow:
    """Parse a ``LOCATION_ID:FACILITY_ID:Name`` command-line value."""

    parts = raw.split(":", 2)
    if len(parts) != 3 or not all(part.strip() for part in parts):
        raise argparse.ArgumentTypeError(
            f"Expected LOCATION_ID:FACILITY_ID:Name, got '{raw}'"
        )
    location_id, facility_id, name = (part.strip() for part in parts)
    return LocationRow(location_id=location_id, facility_id=facility_id, location_name=name)


def run_from_config(
    config_path: Path,
    *,
    locations: Sequence[LocationRow] = (),
    overwrite: bool = False,
) -> Path:
    """Create the workbook named by ``config.ini``'s ``DataFile`` entry."""

    config_path = Path(config_path).expanduser().resolve()
    parser = data_manager.read_config(config_path)
    settings = data_manager.parse_settings(parser, base_path=config_path.parent)
    return create_master_workbook(
        settings.data_file,
        locations=locations,
        overwrite=overwrite,
    )


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for the setup script."""

    parser = argparse.ArgumentParser(description="Initialize the stock ledger workbook")
    parser.add_argument(
        "--config",
        default=data_manager.CONFIG_FILE_NAME,
        help="Path to configuration file (default: config.ini)",
    )
    parser.add_argument(
        "--location",
        dest="locations",
        action="append",
        type=parse_location,
        default=[],
        metavar="ID:FACILITY:NAME",
        help="Storage location to register; repeat for several.",
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

    print("--- Stock Ledger Setup ---")
    print(f"Using configuration: {config_path}")

    try:
        output_path = run_from_config(config_path, locations=args.locations, overwrite=args.force)
    except (FileNotFoundError, KeyError) as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except FileExistsError as exc:
        print(f"\n[ERROR] {exc}")
        print("Run with --force to overwrite the existing file if appropriate.")
        return 1
    except OSError as exc:
        print(f"\n[ERROR] Unable to write workbook: {exc}")
        return 1

    print(f"\n[SUCCESS] Created ledger workbook at '{output_path}'.")
    return 0


if __name__ == "__main__":  # pragma: no cover - exercised via manual runs
    sys.exit(main())
