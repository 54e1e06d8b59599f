"""Shared pytest fixtures and utilities for stock ledger tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Callable, Iterator, Optional

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from stock_ledger import constants, core_logic, data_manager  # noqa: E402
from stock_ledger.setup_excel import create_master_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
DEFAULT_USER_ID = "U-DEFAULT"
MAIN_FACILITY = "FAC-MAIN"
SATELLITE_FACILITY = "FAC-SAT"

SEED_LOCATIONS = (
    data_manager.LocationRow("LOC-PHARM", MAIN_FACILITY, "Main Pharmacy"),
    data_manager.LocationRow("LOC-WARD", MAIN_FACILITY, "Ward Store"),
    data_manager.LocationRow("LOC-EMPTY", MAIN_FACILITY, "Overflow Shelf"),
    data_manager.LocationRow("LOC-SAT", SATELLITE_FACILITY, "Satellite Pharmacy"),
)

_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "SiteName = {site_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Defaults]\n"
    "DefaultUser = {default_user_id}\n"
)


def at(day: int, hour: int = 0, minute: int = 0) -> datetime:
    """Return a UTC moment in March 2024, the month every scenario lives in."""

    return datetime(2024, 3, day, hour, minute, tzinfo=UTC)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    default_user_id: str
    schema_version: str
    site_name: str


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an initialized ledger workbook in a temp folder."""

    def _create_workbook(
        *,
        subdir: str | None = None,
        filename: str = "stock_ledger.xlsx",
        locations=SEED_LOCATIONS,
    ) -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_master_workbook(workbook_path, locations=locations, overwrite=True)
        return workbook_path

    return _create_workbook


@pytest.fixture
def master_workbook_path(workbook_factory: Callable[..., Path]) -> Path:
    """Return a fresh ledger workbook ready for use in a test."""

    return workbook_factory(subdir=f"workbook_{uuid.uuid4().hex}")


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        site_name: str = "Test Site",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        default_user_id: str = DEFAULT_USER_ID,
    ) -> ConfigBundle:
        bundle_id = uuid.uuid4().hex
        bundle_dir = tmp_path / f"bundle_{bundle_id}"
        bundle_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = workbook_factory(subdir=f"bundle_{bundle_id}")
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                site_name=site_name,
                schema_version=schema_version,
                default_user_id=default_user_id,
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            default_user_id=default_user_id,
            schema_version=schema_version,
            site_name=site_name,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path) -> core_logic.RuntimeContext:
    """Load the runtime context for tests through the public API."""

    context = core_logic.load_runtime_context(config_file)
    core_logic.ensure_schema_version(context)
    return context


@pytest.fixture
def receive_stock(runtime_context: core_logic.RuntimeContext) -> Callable[..., str]:
    """Receive one lot through the business layer and return its new batch id."""

    def _receive(
        quantity: int,
        *,
        item_id: str = "ITEM-AMOX",
        location_id: str = "LOC-PHARM",
        facility_id: str = MAIN_FACILITY,
        when: Optional[datetime] = None,
        lot_number: Optional[str] = "LOT-1",
        expiry_date: Optional[str] = "2026-12-31",
    ) -> str:
        record = core_logic.record_receive(
            runtime_context,
            core_logic.ReceiveCommand(
                facility_id=facility_id,
                location_id=location_id,
                user_id="U-RECEIVER",
                lines=[
                    core_logic.ReceiveLine(
                        item_id=item_id,
                        quantity=quantity,
                        lot_number=lot_number,
                        expiry_date=expiry_date,
                    )
                ],
                timestamp=when or at(1),
            ),
        )
        return record.lines[0].batch_id

    return _receive


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="stock-ledger", description="Stock ledger CLI")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    """Return the subparser action used to register commands."""

    return cli_parser.add_subparsers(dest="command")


# ---------------------------------------------------------------------------
# Core logic fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def set_fixed_datetime(monkeypatch: pytest.MonkeyPatch) -> Callable[[datetime], datetime]:
    """Patch ``core_logic.datetime`` to return a predetermined moment."""

    def _apply(moment: datetime) -> datetime:
        class _FixedDateTime:
            @staticmethod
            def now(tz=None):
                assert tz is UTC
                return moment

        monkeypatch.setattr(core_logic, "datetime", _FixedDateTime)
        return moment

    return _apply
