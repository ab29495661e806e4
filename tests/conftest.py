"""Shared pytest fixtures and utilities for POS ledger tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

candidate_str = str(SRC_DIR)
if candidate_str not in sys.path:
    sys.path.insert(0, candidate_str)

from pos_ledger import cli, constants, core_logic, data_manager  # noqa: E402
from pos_ledger.records import ProductRow  # noqa: E402
from pos_ledger.setup_excel import create_master_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
DEFAULT_ACTOR = "front-desk"
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "StoreName = {store_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Defaults]\n"
    "DefaultActor = {default_actor}\n\n"
    "[Concurrency]\n"
    "MaxAttempts = 5\n"
    "BackoffBase = 0\n"
    "LockTimeout = 0.2\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    default_actor: str
    schema_version: str
    store_name: str


class FaultyRecordStore(data_manager.MemoryRecordStore):
    """In-memory store that can be told to lose races or fail writes.

    ``lose(path, times)`` makes the next ``times`` conditional updates of
    ``path`` report a lost race. ``break_path(path, times)`` makes them raise
    instead. ``fail_create(collection, after, times)`` skips ``after`` creates
    in ``collection`` and fails the following ``times``.
    """

    def __init__(self) -> None:
        super().__init__()
        self.lost_races: Dict[str, int] = {}
        self.broken_paths: Dict[str, int] = {}
        self.create_failures: Dict[str, List[int]] = {}
        self.create_calls: Dict[str, int] = {}
        self.cas_paths: List[str] = []

    def lose(self, path: str, times: int = 1) -> None:
        self.lost_races[path] = times

    def break_path(self, path: str, times: int = 1) -> None:
        self.broken_paths[path] = times

    def fail_create(self, collection: Any, *, after: int = 0, times: int = 1) -> None:
        name = data_manager.collection_name(collection)
        self.create_failures[name] = [after, times]

    def conditional_update(self, path: str, expected: Any, new: Any) -> bool:
        self.cas_paths.append(path)
        if self.broken_paths.get(path, 0) > 0:
            self.broken_paths[path] -= 1
            raise data_manager.RecordStoreError(f"injected failure on {path}")
        if self.lost_races.get(path, 0) > 0:
            self.lost_races[path] -= 1
            return False
        return super().conditional_update(path, expected, new)

    def create(self, collection: Any, document: Mapping[str, Any], record_id: Optional[str] = None) -> str:
        name = data_manager.collection_name(collection)
        index = self.create_calls.get(name, 0)
        self.create_calls[name] = index + 1
        if name in self.create_failures:
            after, times = self.create_failures[name]
            if after <= index < after + times:
                raise data_manager.RecordStoreError(f"injected create failure in {name}")
        return super().create(collection, document, record_id)


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
    """Factory that creates an initialized master workbook in a temp folder."""

    def _create_workbook(
        *,
        subdir: str | None = None,
        filename: str = "pos_master_data.xlsx",
    ) -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_master_workbook(workbook_path, overwrite=True)
        return workbook_path

    return _create_workbook


@pytest.fixture
def master_workbook_path(workbook_factory: Callable[..., Path]) -> Path:
    """Return a fresh master workbook ready for use in a test."""

    unique_dir = f"workbook_{uuid.uuid4().hex}"
    return workbook_factory(subdir=unique_dir)


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        store_name: str = "Test Store",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        default_actor: str = DEFAULT_ACTOR,
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
                store_name=store_name,
                schema_version=schema_version,
                default_actor=default_actor,
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            default_actor=default_actor,
            schema_version=schema_version,
            store_name=store_name,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path) -> Iterator[core_logic.RuntimeContext]:
    """Load a workbook-backed runtime context through the public API."""

    context = core_logic.load_runtime_context(config_file)
    core_logic.ensure_schema_version(context)
    yield context
    core_logic.release_context(context)


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="pos-ledger", description="POS ledger")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    """Return the subparser action used to register commands."""

    return cli_parser.add_subparsers(dest="command")


@pytest.fixture
def command_table_entry() -> tuple[str, cli.CommandSpec]:
    """Provide a placeholder command table entry for dispatch tests."""

    def execute(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
        execute.__dict__["called"] = True
        return 0

    def register(
        subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
    ) -> argparse.ArgumentParser:
        return subparsers.add_parser("catalog-test")

    spec = cli.CommandSpec(
        name="catalog-test",
        help_text="help",
        register=register,
        execute=execute,
    )
    return "catalog-test", spec


@pytest.fixture
def command_spec_iterable() -> list[cli.CommandSpec]:
    """Provide a list of command specs for indexing tests."""

    def _make_spec(name: str) -> cli.CommandSpec:
        return cli.CommandSpec(
            name,
            f"{name} help",
            lambda subparsers: subparsers.add_parser(name),
            lambda *_: 0,
        )

    return [_make_spec("alpha"), _make_spec("beta"), _make_spec("gamma")]


# ---------------------------------------------------------------------------
# Core logic fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path: Path) -> data_manager.ConfigSettings:
    """Provide default configuration settings for runtime context tests."""

    return data_manager.ConfigSettings(
        data_file=tmp_path / "pos_master_data.xlsx",
        store_name="Test Store",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
        default_actor=DEFAULT_ACTOR,
        max_attempts=5,
        backoff_base=0.0,
    )


@pytest.fixture
def store() -> FaultyRecordStore:
    """Return an empty in-memory store with fault injection hooks."""

    return FaultyRecordStore()


@pytest.fixture
def context(settings: data_manager.ConfigSettings, store: FaultyRecordStore) -> core_logic.RuntimeContext:
    """Assemble a memory-backed runtime context that never sleeps."""

    return core_logic.build_runtime_context(settings, store, sleep=lambda _: None)


@pytest.fixture
def make_product(context: core_logic.RuntimeContext) -> Callable[..., ProductRow]:
    """Register products in the context's store with sensible defaults."""

    def _make(
        product_id: str = "P1",
        *,
        stock: int = 10,
        price: str = "100",
        name: str | None = None,
        **fields: Any,
    ) -> ProductRow:
        product = ProductRow(
            product_id=product_id,
            name=name or f"Product {product_id}",
            stock=stock,
            current_price=Decimal(price),
            **fields,
        )
        return core_logic.add_product(context, product)

    return _make


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
