"""Unit tests describing the CLI presentation layer contract."""

from __future__ import annotations

import argparse
import logging
from decimal import Decimal
from unittest.mock import Mock

import pytest

from pos_ledger import CONSOLE_HANDLER_NAME, cli, core_logic, log, set_console_level
from pos_ledger.constants import DisposalCondition, DisposalMethod, PaymentMethod, ReturnType, TransactionKind
from pos_ledger.errors import InsufficientStockError, PartialReconciliationError, ValidationError
from pos_ledger.records import LineItem


WRITE_COMMANDS = {
    "add-product",
    "sale",
    "purchase",
    "customer-return",
    "supplier-return",
    "dispose",
    "discard-sale",
    "adjust-stock",
    "reconcile",
    "reset-counter",
}

READ_COMMANDS = {
    "stock",
    "low-stock",
    "movements",
    "counters",
    "transactions",
}

# ---------------------------------------------------------------------------
# Parser construction
# ---------------------------------------------------------------------------


def test_build_parser_sets_program_metadata():
    """build_parser should set user-facing program metadata."""

    parser = cli.build_parser()
    assert isinstance(parser, argparse.ArgumentParser)
    assert parser.prog == "pos-ledger"


def test_configure_subcommands_registers_every_command(cli_parser):
    """configure_subcommands should wire all read and write sub-commands."""

    command_table = cli.configure_subcommands(cli_parser)

    assert set(command_table) == WRITE_COMMANDS | READ_COMMANDS


def test_register_write_commands_returns_command_specs(subparsers_action):
    specs = cli.register_write_commands(subparsers_action)

    assert set(specs) == WRITE_COMMANDS
    assert all(isinstance(spec, cli.CommandSpec) for spec in specs.values())


def test_sale_parser_collects_repeated_lines():
    parser = cli.build_parser()
    cli.configure_subcommands(parser)

    args = parser.parse_args(
        ["sale", "--line", "P1:2:100", "--line", "P2:1:50:1", "--discount-percent", "10", "--payment", "card"]
    )

    assert args.lines == [
        LineItem("P1", 2, Decimal("100")),
        LineItem("P2", 1, Decimal("50"), free_quantity=1),
    ]
    assert args.discount_percent == Decimal("10")
    assert args.payment == "card"


def test_sale_parser_rejects_both_discount_forms():
    parser = cli.build_parser()
    cli.configure_subcommands(parser)

    with pytest.raises(SystemExit):
        parser.parse_args(["sale", "--line", "P1:1:10", "--discount", "1", "--discount-percent", "5"])


@pytest.mark.parametrize("raw", ["P1:2", ":1:10", "P1:x:10", "P1:1:abc", "P1:1:10:y:z"])
def test_parse_line_rejects_malformed_input(raw):
    with pytest.raises(argparse.ArgumentTypeError):
        cli.parse_line(raw)


# ---------------------------------------------------------------------------
# Dispatch helpers
# ---------------------------------------------------------------------------


def test_load_runtime_context_uses_provided_path(config_file):
    context = cli.load_runtime_context(config_file)

    assert context.workbook is not None
    assert context.settings.default_actor == "front-desk"
    core_logic.release_context(context)


def test_dispatch_command_invokes_executor(context, command_table_entry):
    name, spec = command_table_entry

    assert cli.dispatch_command(context, argparse.Namespace(command=name), {name: spec}) == 0
    assert spec.execute.__dict__["called"] is True


def test_dispatch_command_handles_unknown_commands(context):
    with pytest.raises(KeyError):
        cli.dispatch_command(context, argparse.Namespace(command="missing"), {})


def test_build_command_table_indexes_specs(command_spec_iterable):
    table = cli.build_command_table(command_spec_iterable)

    assert list(table) == ["alpha", "beta", "gamma"]


def test_build_command_table_detects_duplicate_commands(command_spec_iterable):
    with pytest.raises(ValueError):
        cli.build_command_table([*command_spec_iterable, command_spec_iterable[0]])


def test_resolve_actor_falls_back_to_default(context):
    assert cli.resolve_actor(context, argparse.Namespace(actor=None)) == "front-desk"
    assert cli.resolve_actor(context, argparse.Namespace(actor="bea")) == "bea"


# ---------------------------------------------------------------------------
# Translators
# ---------------------------------------------------------------------------


def test_translate_sale_returns_sale_command():
    args = argparse.Namespace(
        lines=[LineItem("P1", 1, Decimal("10"))],
        discount=Decimal("2"),
        discount_percent=None,
        customer_name=None,
        customer_phone=None,
        payment="credit",
        notes=None,
    )

    command = cli.translate_sale(args, "ana")

    assert command.actor == "ana"
    assert command.customer == core_logic.Customer()
    assert command.payment_method is PaymentMethod.CREDIT
    assert command.discount == Decimal("2")


def test_translate_customer_return_marks_invoice_returns():
    args = argparse.Namespace(
        lines=[LineItem("P1", 1, Decimal("10"))],
        customer_name="Rita",
        customer_phone="555",
        invoice="1000",
        notes=None,
    )

    command = cli.translate_customer_return(args, "ana")

    assert command.return_type is ReturnType.INVOICE
    assert command.original_invoice == "1000"


def test_translate_dispose_returns_disposal_command():
    args = argparse.Namespace(
        product_id="P1",
        quantity=2,
        original_price=Decimal("50"),
        recovered_value=Decimal("0"),
        condition="expired",
        method="donate",
        reason=None,
        notes=None,
    )

    command = cli.translate_dispose(args, "ana")

    assert command.condition is DisposalCondition.EXPIRED
    assert command.method is DisposalMethod.DONATE


# ---------------------------------------------------------------------------
# Error handling
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("error", "code"),
    [
        (PartialReconciliationError("x", kind="sale", record_id="r", document_number="1000"), 4),
        (ValidationError("bad"), 2),
        (InsufficientStockError([]), 2),
        (FileNotFoundError("gone"), 3),
        (RuntimeError("boom"), 1),
    ],
)
def test_handle_cli_error_maps_exit_codes(error, code):
    assert cli.handle_cli_error(error) == code


# ---------------------------------------------------------------------------
# End-to-end through main
# ---------------------------------------------------------------------------


def _main(config_file, *argv) -> int:
    return cli.main(["--config", str(config_file), *argv])


def test_main_runs_sale_and_persists_workbook(config_file, capsys):
    assert _main(config_file, "add-product", "--product-id", "P1", "--name", "Tea", "--price", "100", "--stock", "10") == 0
    assert _main(config_file, "sale", "--line", "P1:3:100", "--discount", "30") == 0
    out = capsys.readouterr().out
    assert "sale 1000" in out
    assert "total 270" in out

    assert _main(config_file, "stock") == 0
    assert "P1\tTea\t7" in capsys.readouterr().out

    context = cli.load_runtime_context(config_file)
    sale = core_logic.find_transaction(context, TransactionKind.SALE, "1000")
    assert sale.actor == "front-desk"
    core_logic.release_context(context)


def test_main_customer_return_against_invoice(config_file, capsys):
    _main(config_file, "add-product", "--product-id", "P1", "--name", "Tea", "--price", "100", "--stock", "10")
    _main(config_file, "sale", "--line", "P1:3:100")

    code = _main(
        config_file,
        "customer-return",
        "--line",
        "P1:3:100",
        "--customer-name",
        "Rita",
        "--customer-phone",
        "555",
        "--invoice",
        "1000",
    )

    assert code == 0
    assert "customer-return 1000-R" in capsys.readouterr().out
    assert _main(config_file, "customer-return", "--line", "P1:3:100", "--customer-name", "Rita",
                 "--customer-phone", "555", "--invoice", "1000") == 2


def test_main_reports_business_errors(config_file):
    assert _main(config_file, "sale", "--line", "ghost:1:10") == 2


def test_main_reports_missing_config(tmp_path):
    assert cli.main(["--config", str(tmp_path / "missing.ini"), "stock"]) == 3


def test_main_releases_workbook_lock_and_reports_busy_workbook(config_file, runtime_context):
    """A command against a workbook held elsewhere fails without touching it."""

    assert _main(config_file, "stock") == 1

    core_logic.release_context(runtime_context)
    assert _main(config_file, "stock") == 0
    assert _main(config_file, "counters") == 0


def test_main_verbose_echoes_info_logs(config_file):
    try:
        assert cli.main(["--config", str(config_file), "--verbose", "counters"]) == 0
        console = next(h for h in log.handlers if h.get_name() == CONSOLE_HANDLER_NAME)
        assert console.level == logging.INFO
    finally:
        set_console_level(logging.WARNING)


def test_main_reports_schema_mismatch(config_factory):
    bundle = config_factory(schema_version="0.1.0")

    assert _main(bundle.config_path, "stock") == 1


def test_main_persists_partial_reconciliation(config_file, monkeypatch):
    """Flagged documents are saved before the exit code is reported."""

    persist = Mock()

    def _flagged(context, command):
        raise PartialReconciliationError("flagged", kind="sale", record_id="r1", document_number="1000")

    monkeypatch.setattr(core_logic, "issue_sale_invoice", _flagged)
    monkeypatch.setattr(cli, "persist_workbook", persist)

    assert _main(config_file, "sale", "--line", "P1:1:10") == 4
    persist.assert_called_once()


def test_main_counters_and_reset(config_file, capsys):
    assert _main(config_file, "reset-counter", "--name", "invoice", "--value", "4999") == 0
    capsys.readouterr()

    assert _main(config_file, "counters") == 0
    assert "invoice\t4999" in capsys.readouterr().out
