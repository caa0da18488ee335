# run.py
# Entry point. Config and wiring only; no logic lives here.
#
# Swap model strings for any OpenRouter-supported model.
# https://openrouter.ai/models

import argparse
import asyncio
import signal
import sys
from contextlib import suppress

from fixloop import display
from fixloop.backends import OpenAIBackend
from fixloop.config import Settings, configure_logging
from fixloop.errors import AgentCancelledError, ContractViolation, FixloopError
from fixloop.fixer import CodeFixer
from fixloop.runner import AgentRunner
from fixloop.usage import UsageTracker
from fixloop.workflow import DEFAULT_MAX_ITERATIONS, REQUEST_TYPES, CommandVerifier, FixWorkflow


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="fixloop", description="LLM-driven fix-and-verify coordinator")
    parser.add_argument("--log-level", default=None, help="Logging level (default: FIXLOOP_LOG_LEVEL or WARNING)")
    commands = parser.add_subparsers(dest="command", required=True)

    fix = commands.add_parser("fix", help="Run the sandboxed code fixer against build errors")
    fix.add_argument("package_path", help="Package directory the agent may read and write")
    fix.add_argument("--errors", required=True, help="Build error text to fix")
    fix.add_argument("--model", default=None)
    fix.add_argument("--max-iterations", type=int, default=None, help="Validation retries before giving up")
    fix.add_argument("--check-command", default=None, help="Command the agent can run to check its work")

    flow = commands.add_parser("workflow", help="Drive a fix workflow interactively from stdin")
    flow.add_argument("--request", required=True, help="Build errors or a change request")
    flow.add_argument("--request-type", required=True, choices=REQUEST_TYPES)
    flow.add_argument("--package-path", required=True)
    flow.add_argument("--source-path", default=None)
    flow.add_argument("--max-iterations", type=int, default=DEFAULT_MAX_ITERATIONS)
    flow.add_argument(
        "--verify",
        action="store_true",
        help="Run FIXLOOP_BUILD_COMMAND (and FIXLOOP_REGENERATE_COMMAND) instead of asking for verify results",
    )
    return parser


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def run_fix(args: argparse.Namespace, settings: Settings) -> int:
    tracker = UsageTracker()
    backend = OpenAIBackend(api_key=settings.api_key, base_url=settings.base_url, timeout=settings.request_timeout)
    fixer = CodeFixer(
        AgentRunner(backend, usage_sink=tracker),
        model=settings.model,
        check_command=settings.check_command,
        check_timeout=settings.check_timeout,
        max_iterations=settings.agent_max_iterations,
        max_turn_steps=settings.max_turn_steps,
        tool_timeout=settings.tool_timeout,
    )

    display.banner(settings.model, args.package_path)
    display.fix_started(args.errors)

    async def _fix():
        cancel = asyncio.Event()
        with suppress(NotImplementedError):
            asyncio.get_running_loop().add_signal_handler(signal.SIGINT, cancel.set)
        return await fixer.fix(args.package_path, args.errors, cancel)

    try:
        result = asyncio.run(_fix())
    finally:
        display.usage_table(tracker.totals())

    display.fix_result(result)
    display.step_result_json(result.to_step_result())
    return 0 if result.success else 1


def run_workflow(args: argparse.Namespace, settings: Settings) -> int:
    verifier = None
    if args.verify:
        if not settings.build_command:
            raise ContractViolation("--verify needs FIXLOOP_BUILD_COMMAND to be set")
        verifier = CommandVerifier(settings.build_command, settings.regenerate_command, settings.verify_timeout)

    workflow = FixWorkflow(verifier=verifier)
    response = workflow.start(
        args.request,
        args.request_type,
        args.package_path,
        source_path=args.source_path,
        max_iterations=args.max_iterations,
    )
    display.workflow_response(response)

    while response.continuation_required:
        display.awaiting_step_result(response.expected_result.type if response.expected_result else None)
        line = sys.stdin.readline()
        if not line:
            display.halt("Input closed before the workflow completed.")
            return 1
        if not line.strip():
            continue
        try:
            response = workflow.continue_workflow(response.workflow_id, line.strip())
        except ContractViolation as exc:
            display.contract_violation(str(exc))
            continue
        display.workflow_response(response)

    return 0 if response.status == "success" else 1


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    overrides = {"log_level": args.log_level}
    if args.command == "fix":
        overrides.update(model=args.model, agent_max_iterations=args.max_iterations, check_command=args.check_command)

    try:
        settings = Settings.from_env(**overrides)
        configure_logging(settings.log_level)
        handler = run_fix if args.command == "fix" else run_workflow
        code = handler(args, settings)
    except AgentCancelledError:
        display.cancelled()
        code = 130
    except ContractViolation as exc:
        display.contract_violation(str(exc))
        code = 2
    except FixloopError as exc:
        display.halt(str(exc))
        code = 1
    sys.exit(code)


if __name__ == "__main__":
    main()
