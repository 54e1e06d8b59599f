"""Command-line entry points for the stock ledger.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into the objects consumed by the business layer and
printing results. Keeping the CLI thin lets tests and alternative front-ends
reuse the same parser configuration.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from datetime import date, datetime
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence, Union

from . import configure_logging, core_logic, ledger, log, physical_count
from .constants import TransactionKind, VarianceReason
from .exceptions import BusinessRuleViolation, PartialCommitDetected


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]


def parse_window_bound(raw: str) -> Union[date, datetime]:
    """Parse ``YYYY-MM-DD`` as a whole day, anything longer as an ISO datetime."""

    try:
        if len(raw) == 10:
            return date.fromisoformat(raw)
        return datetime.fromisoformat(raw)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Invalid date or datetime: '{raw}'") from exc


def parse_assignment(raw: str) -> tuple[str, str]:
    """Parse a ``BATCH_ID=VALUE`` pair."""

    batch_id, sep, value = raw.partition("=")
    if not sep or not batch_id.strip() or not value.strip():
        raise argparse.ArgumentTypeError(f"Expected BATCH_ID=VALUE, got '{raw}'")
    return batch_id.strip(), value.strip()


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="stock-ledger",
        description="Ledger and physical-count tools for the stock workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to ./config.ini).",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        type=str.upper,
        default=None,
        help="Override STOCK_LEDGER_LOG_LEVEL for this run.",
    )
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    specs = [
        *register_read_commands(subparsers),
        *register_location_commands(subparsers),
        *register_count_commands(subparsers),
    ]
    specs.append(register_purge_command(subparsers))
    return build_command_table(specs)


def _simple_spec(
    name: str,
    help_text: str,
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int],
    configure: Callable[[argparse.ArgumentParser], None],
) -> CommandSpec:
    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        configure(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=execute)


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> List[CommandSpec]:
    """Declare read-only commands: ledger, frozen batches and stock."""

    def configure_ledger(parser: argparse.ArgumentParser) -> None:
        target = parser.add_mutually_exclusive_group(required=True)
        target.add_argument("--batch-id")
        target.add_argument("--item-id")
        parser.add_argument("--facility-id", default=None)
        parser.add_argument("--start", type=parse_window_bound, default=None)
        parser.add_argument("--end", type=parse_window_bound, default=None)

    def configure_stock(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--location-id", default=None)

    specs = [
        _simple_spec("ledger", "Display the balance ledger of a batch or item.", run_ledger, configure_ledger),
        _simple_spec("frozen", "List batches frozen by open physical counts.", run_frozen, lambda parser: None),
        _simple_spec("stock", "Display current stock per item.", run_stock_report, configure_stock),
    ]
    for spec in specs:
        spec.register(subparsers)
    return specs


def register_location_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> List[CommandSpec]:
    """Declare the location listing and registration commands."""

    def configure_add(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--location-id", required=True)
        parser.add_argument("--facility-id", required=True)
        parser.add_argument("--name", dest="location_name", required=True)

    specs = [
        _simple_spec("locations", "List registered storage locations.", run_locations, lambda parser: None),
        _simple_spec("location-add", "Register a storage location.", run_location_add, configure_add),
    ]
    for spec in specs:
        spec.register(subparsers)
    return specs


def register_count_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> List[CommandSpec]:
    """Declare the physical count workflow commands."""

    def configure_start(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--location-id", required=True)
        parser.add_argument("--user-id", default=None)
        parser.add_argument("--assigned-to", default=None)
        parser.add_argument("--name", default=None)

    def configure_enter(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--count-id", required=True)
        parser.add_argument(
            "--entry",
            dest="entries",
            action="append",
            type=parse_assignment,
            default=[],
            metavar="BATCH_ID=QTY",
        )
        parser.add_argument(
            "--reason",
            dest="reasons",
            action="append",
            type=parse_assignment,
            default=[],
            metavar="BATCH_ID=REASON",
        )

    def configure_submit(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--count-id", required=True)
        parser.add_argument(
            "--zero-fill",
            action="store_true",
            help="Record uncounted batches as zero instead of refusing to submit.",
        )

    def configure_approve(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--count-id", required=True)
        parser.add_argument("--reviewer-id", default=None)
        parser.add_argument(
            "--reason",
            dest="reasons",
            action="append",
            type=parse_assignment,
            default=[],
            metavar="BATCH_ID=REASON",
            help=f"One of: {', '.join(member.value for member in VarianceReason)}",
        )

    def configure_reject(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--count-id", required=True)
        parser.add_argument("--reviewer-id", default=None)
        parser.add_argument("--notes", required=True)

    def configure_cancel(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--count-id", required=True)
        parser.add_argument("--user-id", default=None)

    def configure_variances(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--count-id", required=True)

    specs = [
        _simple_spec("count-start", "Open a physical count over a location.", run_count_start, configure_start),
        _simple_spec("count-enter", "Enter counted quantities or reasons.", run_count_enter, configure_enter),
        _simple_spec("count-submit", "Submit a count for review.", run_count_submit, configure_submit),
        _simple_spec("count-approve", "Approve a count and apply its variances.", run_count_approve, configure_approve),
        _simple_spec("count-reject", "Send a count back for recounting.", run_count_reject, configure_reject),
        _simple_spec("count-cancel", "Cancel an open count.", run_count_cancel, configure_cancel),
        _simple_spec("count-variances", "Show counted vs system quantities.", run_count_variances, configure_variances),
    ]
    for spec in specs:
        spec.register(subparsers)
    return specs


def register_purge_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``purge``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument(
            "--kind",
            choices=[member.value for member in TransactionKind],
            required=True,
        )
        parser.add_argument("--record-id", required=True)

    spec = _simple_spec("purge", "Remove a transaction and reverse its stock effect.", run_purge, configure)
    spec.register(subparsers)
    return spec


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    target = Path(config_path) if config_path is not None else Path.cwd() / "config.ini"
    return core_logic.load_runtime_context(target)


def dispatch_command(
    context: core_logic.RuntimeContext,
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Dispatch the parsed arguments to the configured executor."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    return spec.execute(context, args)


def build_command_table(
    specs: Iterable[CommandSpec],
) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


def _user(context: core_logic.RuntimeContext, value: Optional[str]) -> str:
    return value or context.settings.default_user_id


def translate_count_entries(args: argparse.Namespace) -> List[physical_count.CountEntry]:
    """Merge ``--entry`` and ``--reason`` pairs into count entries per batch."""
    quantities: Dict[str, int] = {}
    for batch_id, raw in args.entries:
        try:
            quantities[batch_id] = int(raw)
        except ValueError as exc:
            raise ValueError(f"Counted quantity for '{batch_id}' must be a whole number") from exc
    reasons = dict(args.reasons)
    return [
        physical_count.CountEntry(
            batch_id=batch_id,
            counted_quantity=quantities.get(batch_id),
            variance_reason=reasons.get(batch_id),
        )
        for batch_id in dict.fromkeys([*quantities, *reasons])
    ]


def run_ledger(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the reconstructed ledger."""
    result = ledger.build_ledger(
        context,
        batch_id=args.batch_id,
        item_id=args.item_id,
        facility_id=args.facility_id,
        start=args.start,
        end=args.end,
    )
    print(f"Opening balance: {result.opening_balance}")
    for entry in result.entries:
        print(
            f"{entry.date.isoformat()}  {entry.kind.value:<16} {entry.reference:<20} "
            f"{entry.batch_id:<24} +{entry.quantity_in:<6} -{entry.quantity_out:<6} {entry.running_balance}"
        )
    print(f"Closing balance: {result.closing_balance}")
    for skipped in result.skipped:
        print(f"Skipped: record '{skipped.record_id}' references unknown batch '{skipped.batch_id}'")
    return 0


def run_frozen(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print every frozen batch and the count holding it."""
    for batch_id, count_id in sorted(core_logic.get_freeze_index(context).frozen_batches().items()):
        print(f"{batch_id}\t{count_id}")
    return 0


def run_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print on-hand quantities per item."""
    totals = core_logic.calculate_stock_by_item(context, location_id=args.location_id)
    for item_id, quantity in sorted(totals.items()):
        print(f"{item_id}\t{quantity}")
    return 0


def run_locations(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    for location in core_logic.list_locations(context):
        print(f"{location.location_id}\t{location.facility_id}\t{location.location_name}")
    return 0


def run_location_add(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Register a location and echo its identifier."""
    location = core_logic.add_location(
        context,
        location_id=args.location_id,
        facility_id=args.facility_id,
        location_name=args.location_name,
    )
    print(f"Registered location {location.location_id}")
    return 0


def run_count_start(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Open a count via the count workflow."""
    count = physical_count.create_count(
        context,
        physical_count.StartCountCommand(
            location_id=args.location_id,
            initiated_by=_user(context, args.user_id),
            assigned_to=args.assigned_to,
            name=args.name,
        ),
    )
    print(count.count_id)
    return 0


def run_count_enter(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Record counted quantities and reasons."""
    physical_count.update_count_items(context, args.count_id, translate_count_entries(args))
    return 0


def run_count_submit(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Submit a count for review."""
    physical_count.submit_count(context, args.count_id, zero_fill_uncounted=args.zero_fill)
    return 0


def run_count_approve(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Approve a count."""
    physical_count.approve_count(
        context,
        args.count_id,
        reviewer_id=_user(context, args.reviewer_id),
        reasons=dict(args.reasons),
    )
    return 0


def run_count_reject(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Reject a count."""
    physical_count.reject_count(
        context,
        args.count_id,
        reviewer_id=_user(context, args.reviewer_id),
        notes=args.notes,
    )
    return 0


def run_count_cancel(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Cancel a count."""
    physical_count.cancel_count(context, args.count_id, user_id=_user(context, args.user_id))
    return 0


def run_count_variances(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the variance review table of a count."""
    for line in physical_count.summarize_variances(context, args.count_id):
        counted = "-" if line.counted_quantity is None else line.counted_quantity
        variance = "-" if line.variance is None else f"{line.variance:+d}"
        print(
            f"{line.batch_id}\t{line.item_id or '?'}\tsystem={line.system_quantity}\t"
            f"counted={counted}\tvariance={variance}\tledger={line.ledger_balance}\t"
            f"reason={line.variance_reason or '-'}"
        )
    return 0


def run_purge(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Purge a transaction record."""
    removed = core_logic.purge_transaction(context, TransactionKind(args.kind), args.record_id)
    for record in removed:
        print(f"Removed {record.kind.value} {record.record_id}")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, BusinessRuleViolation):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    if isinstance(error, PartialCommitDetected):
        log.critical("%s", error)
        return 4
    log.error("%s", error)
    return 1


def persist_workbook(context: core_logic.RuntimeContext) -> None:
    """Persist workbook changes after successful execution."""
    try:
        core_logic.persist_context(context)
    except PermissionError as error:
        raise RuntimeError(str(error)) from error


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    if getattr(args, "log_level", None):
        configure_logging(args.log_level)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        core_logic.ensure_schema_version(context)
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0:
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
