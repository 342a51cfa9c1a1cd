"""Utility for initializing the FrigoGest ERP master workbook.

The module doubles as a script (``python -m frigo_erp.setup_excel``) and as a
library used by tests or other tooling. Every collection of the ledger store
gets its own sheet with a bold header row.
"""

from __future__ import annotations

import argparse
from decimal import Decimal
from pathlib import Path
from typing import Optional, Sequence
import sys

import openpyxl
from openpyxl.styles import Font

from . import data_manager, log

# Walk-in counter client available in every new workbook.
DEFAULT_CLIENT = data_manager.ClientRow(
    client_id="BALCAO",
    name="Counter sale",
    credit_limit=Decimal("0"),
    is_active=True,
)

CONFIG_FILE = "config.ini"


def create_master_workbook(
    destination: Path,
    *,
    collections: Sequence[str] = tuple(data_manager.COLLECTION_COLUMNS),
    default_client: Optional[data_manager.ClientRow] = DEFAULT_CLIENT,
    overwrite: bool = False,
) -> Path:
    """Create the master workbook at ``destination``.

    Parameters are overridable to facilitate testing. When ``overwrite`` is
    ``False`` (the default) this function raises ``FileExistsError`` if the
    target already exists.
    """

    destination = Path(destination).expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(
            f"Refusing to overwrite existing master workbook: {destination}"
        )

    destination.parent.mkdir(parents=True, exist_ok=True)

    workbook = openpyxl.Workbook()

    # Remove the default sheet openpyxl generates so we can create ours.
    if workbook.active and workbook.active.title == "Sheet":
        workbook.remove(workbook.active)

    bold_font = Font(bold=True)

    for collection in collections:
        worksheet = workbook.create_sheet(title=collection)
        for column_index, column_name in enumerate(data_manager.sheet_header(collection), start=1):
            cell = worksheet.cell(row=1, column=column_index)
            cell.value = column_name
            cell.font = bold_font

    if default_client and data_manager.CollectionName.CLIENTS.value in collections:
        document = data_manager.serialize_client(default_client)
        document[data_manager.VERSION_FIELD] = 1
        data_manager.write_sheet_documents(
            workbook, data_manager.CollectionName.CLIENTS.value, [document]
        )

    workbook.save(destination)
    log.info("Created master workbook '%s' with %d sheets", destination, len(collections))
    return destination


def run_from_config(config_path: Path, *, overwrite: bool = False) -> Path:
    """Create the workbook named by ``[System] DataFile`` in ``config_path``."""

    config_path = Path(config_path).expanduser().resolve()
    parser = data_manager.read_config(config_path)
    settings = data_manager.parse_settings(parser, base_path=config_path.parent)
    return create_master_workbook(settings.data_file, overwrite=overwrite)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for the setup script."""

    parser = argparse.ArgumentParser(description="Initialize FrigoGest ERP data file")
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

    print("--- FrigoGest ERP Setup ---")
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
    except OSError as exc:
        print(f"\n[ERROR] Unable to write workbook: {exc}")
        return 1

    print(f"\n[SUCCESS] Created master workbook at '{output_path}'.")
    return 0


if __name__ == "__main__":  # pragma: no cover - exercised via manual runs
    sys.exit(main())
