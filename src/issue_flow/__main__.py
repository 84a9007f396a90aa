"""Entry point for `python -m issue_flow` and the `issue-flow` CLI script."""

from __future__ import annotations

import argparse
import logging
from collections.abc import Sequence

from issue_flow.dispatcher import Dispatcher, format_result_summary, set_ci_output, write_matrix_to_file
from issue_flow.errors import DispatchError
from issue_flow.github_client import GitHubClient
from issue_flow.settings import SOURCE_CHOICES, RuntimeSettings, build_dispatch_config
from issue_flow.state_store import WorkflowStateStore


def _logging_options(*, suppress_defaults: bool = False) -> argparse.ArgumentParser:
    # Subcommand copies suppress their defaults so they never overwrite top-level values.
    parent = argparse.ArgumentParser(add_help=False)
    parent.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        default=argparse.SUPPRESS if suppress_defaults else False,
        help="Enable debug logging",
    )
    parent.add_argument(
        "--log-level",
        default=argparse.SUPPRESS if suppress_defaults else "INFO",
        type=lambda value: value.upper(),
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    return parent


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments.

    Dispatch flags live at the top level, so ``issue-flow --owner acme --repo app``
    runs a dispatch. ``issue-flow workflows ...`` inspects stored checkpoints.
    """
    parser = argparse.ArgumentParser(
        prog="issue-flow",
        description="Resolve issue dependencies and emit a GitHub Actions matrix of ready work",
        parents=[_logging_options()],
    )
    parser.add_argument("--owner", default=None, help="Repository owner (default: from GITHUB_REPOSITORY)")
    parser.add_argument("--repo", default=None, help="Repository name (default: from GITHUB_REPOSITORY)")
    parser.add_argument("--token", default=None, help="GitHub token (default: GITHUB_TOKEN)")
    parser.add_argument("--label", default=None, help="Queue label for the label source (default: queue)")
    parser.add_argument("--source", default="label", choices=SOURCE_CHOICES, help="Where to read candidate issues from")
    parser.add_argument("--project-owner", default=None, help="Project board owner (default: --owner)")
    parser.add_argument("--project-number", default=None, help="Project board number")
    parser.add_argument("--ready-status", default="Ready", help="Board column holding ready items")
    parser.add_argument("--in-progress", dest="in_progress", default="In Progress", help="Board column for dispatched items")
    parser.add_argument("--priority-field", default="Priority", help="Board field holding item priority")
    parser.add_argument("--max-concurrent", default=None, help="Maximum items to dispatch (non-positive means unlimited)")
    parser.add_argument("-o", "--output", default=None, help="Also write the matrix JSON to this file")
    parser.add_argument("--dry-run", action="store_true", help="Compute the batch without updating the tracker")

    subcommands = parser.add_subparsers(dest="command")
    workflows = subcommands.add_parser(
        "workflows",
        parents=[_logging_options(suppress_defaults=True)],
        help="Inspect stored workflow checkpoints",
    )
    workflows.add_argument("action", choices=["list", "show", "delete"])
    workflows.add_argument("instance_id", nargs="?", default=None)
    workflows.add_argument("--state-dir", default=None, help="Checkpoint directory (default: ISSUE_FLOW_STATE_DIR)")

    args = parser.parse_args(argv)
    if args.command is None:
        args.command = "dispatch"
    return args


def run_dispatch(args: argparse.Namespace, settings: RuntimeSettings) -> int:
    try:
        config = build_dispatch_config(
            token=args.token,
            owner=args.owner,
            repo=args.repo,
            source=args.source,
            label=args.label,
            project_owner=args.project_owner,
            project_number=args.project_number,
            ready_status=args.ready_status,
            in_progress_status=args.in_progress,
            priority_field=args.priority_field,
            max_concurrent=args.max_concurrent,
            dry_run=args.dry_run,
            verbose=args.verbose,
            output_file=args.output,
            settings=settings,
        )
    except DispatchError as exc:
        logging.error("%s: %s", exc.code.value, exc)
        return 1

    client = GitHubClient.from_config(config, settings)
    try:
        result = Dispatcher(config, client).run()
        print(format_result_summary(result))
        if config.output_file:
            write_matrix_to_file(result.matrix, config.output_file)
        if set_ci_output(result.matrix):
            logging.info("Matrix written to GITHUB_OUTPUT")
    except DispatchError as exc:
        logging.error("Dispatch failed (%s): %s", exc.code.value, exc)
        return 1
    except Exception as exc:  # noqa: BLE001
        logging.exception("Dispatch failed: %s", exc)
        return 1
    return 0


def run_workflows(args: argparse.Namespace, settings: RuntimeSettings) -> int:
    store = WorkflowStateStore(args.state_dir or settings.state_path())
    if args.action == "list":
        for instance_id in store.list():
            print(instance_id)
        return 0

    if not args.instance_id:
        logging.error("workflows %s requires an instance id", args.action)
        return 1
    if args.action == "show":
        state = store.load(args.instance_id)
        if state is None:
            logging.error("No stored workflow state for %s", args.instance_id)
            return 1
        print(state.model_dump_json(indent=2))
        return 0

    store.delete(args.instance_id)
    print(f"deleted={args.instance_id}")
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    try:
        args = parse_args(argv)
    except SystemExit as exc:
        # argparse exits 2 on usage errors and 0 after --help.
        return 0 if exc.code in (0, None) else 1
    level = logging.DEBUG if args.verbose else getattr(logging, args.log_level)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        settings = RuntimeSettings.from_env()
    except ValueError as exc:
        logging.error("Invalid runtime settings: %s", exc)
        return 1

    if args.command == "dispatch":
        return run_dispatch(args, settings)
    return run_workflows(args, settings)


if __name__ == "__main__":
    raise SystemExit(main())
