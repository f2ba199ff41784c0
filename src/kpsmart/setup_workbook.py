"""Utility for initializing the KPSmart event log workbook.

The module doubles as a script (``kpsmart-setup`` or
``python -m kpsmart.setup_workbook``) and as a library used by tests. The
workbook it creates holds an empty ``EventLog`` sheet and a ``Metadata`` sheet
recording the schema version and network name.
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Mapping, Sequence

import openpyxl
from openpyxl.styles import Font

from . import data_manager
from .constants import EXPECTED_SCHEMA_VERSION, SheetName

SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    SheetName.EVENT_LOG.value: data_manager.EVENT_LOG_COLUMNS,
    SheetName.METADATA.value: data_manager.METADATA_COLUMNS,
}


def create_master_workbook(
    destination: Path,
    *,
    network_name: str,
    schema_version: str = EXPECTED_SCHEMA_VERSION,
    sheet_columns: Mapping[str, Sequence[str]] = SHEET_COLUMNS,
    overwrite: bool = False,
) -> Path:
    """Create an empty event log workbook at ``destination``.

    Raises:
        FileExistsError: If the target exists and ``overwrite`` is ``False``.
    """

    destination = destination.expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(f"Refusing to overwrite existing workbook: {destination}")

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

    metadata_sheet = workbook[SheetName.METADATA.value]
    metadata_sheet.append(["SchemaVersion", schema_version])
    metadata_sheet.append(["NetworkName", network_name])

    workbook.save(destination)
    return destination


def run_from_config(config_path: Path, *, overwrite: bool = False) -> Path:
    """Create the workbook named by the ``DataFile`` entry of ``config_path``."""

    config_path = config_path.expanduser().resolve()
    parser = data_manager.read_config(config_path)
    settings = data_manager.parse_settings(parser, base_path=config_path.parent)
    return create_master_workbook(
        settings.data_file,
        network_name=settings.network_name,
        schema_version=settings.schema_version,
        overwrite=overwrite,
    )


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Initialize the KPSmart event log workbook")
    parser.add_argument(
        "--config",
        default=data_manager.CONFIG_FILE_NAME,
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

    print("--- KPSmart Setup ---")
    print(f"Using configuration: {config_path}")

    try:
        output_path = run_from_config(config_path, overwrite=args.force)
    except (FileNotFoundError, KeyError, ValueError) as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except FileExistsError as exc:
        print(f"\n[ERROR] {exc}")
        print("Run with --force to overwrite the existing file if appropriate.")
        return 1
    except OSError as exc:
        print(f"\n[ERROR] Unable to write workbook: {exc}")
        return 1

    print(f"\n[SUCCESS] Created event log workbook at '{output_path}'.")
    return 0


if __name__ == "__main__":  # pragma: no cover - exercised via manual runs
    sys.exit(main())
