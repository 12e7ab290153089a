"""asmintr command line entry point."""

from __future__ import annotations
import argparse
import sys
from typing import List, Optional, TextIO

from extensions import HookRegistry, StepContext
from interpreter import ASMRuntimeError, Interpreter, MachineState, OutputPolicy, TracebackFormatter
from lexer import ParseError
from parser import DuplicateLabelError


class StepLimitExceeded(ASMRuntimeError):
    """Raised by the --max-steps rule when a program runs too long."""


def install_step_limit(hooks: HookRegistry, max_steps: int) -> None:
    def _check(_: Interpreter, ctx: StepContext) -> None:
        if ctx.step_index >= max_steps:
            raise StepLimitExceeded(
                f"Step limit of {max_steps} instructions exceeded",
                location=ctx.location,
                rule=ctx.rule,
                ip=ctx.ip,
            )

    hooks.add_step_rule(name="max-steps", every_n=1, handler=_check, owner="cli")


def format_state(state: MachineState) -> str:
    delimiter = "-" * 20
    lines = ["Registers:", delimiter]
    for name, value in state.registers.items():
        lines.append(f"{name:<5}: {value:<10}")
    lines.append(delimiter)

    lines.append("")
    if state.call_stack:
        lines.append("Stack:")
        lines.append(delimiter)
        for depth, address in enumerate(state.call_stack):
            lines.append(f"{depth:<10}: {address:<10}")
        lines.append(delimiter)
    else:
        lines.append("Stack: Empty")

    lines.append("")
    lines.append("Flags:")
    lines.append(delimiter)
    lines.append(f"CMP: {state.flags.value if state.flags else 'unset'}")
    lines.append(delimiter)

    lines.append("")
    lines.append(f"Output: {''.join(state.output)!r}")
    lines.append("")
    lines.append(f"IP: {state.ip}")
    return "\n".join(lines)


def run_cli(argv: Optional[List[str]] = None, stdout: TextIO = sys.stdout, stderr: TextIO = sys.stderr) -> int:
    parser = argparse.ArgumentParser(description="Interpreter for a small assembler-like language")
    parser.add_argument("program", help="Source file path or literal source with -source")
    parser.add_argument("-source", "--source", dest="source_mode", action="store_true", help="Treat program argument as literal source text")
    parser.add_argument("-d", "--debug", action="store_true", help="Print registers, stack, flags and output after the run")
    parser.add_argument("-i", "--instructions", action="store_true", help="Print parsed instructions")
    parser.add_argument(
        "--policy",
        choices=[policy.value for policy in OutputPolicy],
        default=OutputPolicy.CONCAT.value,
        help="How the output of several msg instructions is joined",
    )
    parser.add_argument("--max-steps", type=int, default=None, help="Abort after this many executed instructions")
    parser.add_argument("--default", dest="default_output", default="-1", help="Printed when the program never reaches end")
    parser.add_argument("--traceback-json", action="store_true", help="Also emit JSON traceback")
    args = parser.parse_args(argv)

    if args.source_mode:
        source_text = args.program
        filename = "<string>"
    else:
        filename = args.program
        try:
            with open(filename, "r", encoding="utf-8") as handle:
                source_text = handle.read()
        except OSError as exc:
            print(f"Failed to read {filename}: {exc}", file=stderr)
            return 1

    hooks = HookRegistry()
    if args.max_steps is not None:
        if args.max_steps <= 0:
            print("--max-steps must be positive", file=stderr)
            return 1
        install_step_limit(hooks, args.max_steps)

    interpreter = Interpreter(
        source=source_text,
        filename=filename,
        verbose=args.debug,
        policy=OutputPolicy(args.policy),
        hooks=hooks,
    )

    if args.instructions:
        try:
            program = interpreter.parse()
        except (ParseError, DuplicateLabelError) as error:
            print(f"{error.__class__.__name__}: {error}", file=stderr)
            return 1
        print("Instructions:", file=stdout)
        for line in program.listing():
            print(f"  {line}", file=stdout)

    try:
        output = interpreter.run()
    except (ParseError, DuplicateLabelError) as error:
        print(f"{error.__class__.__name__}: {error}", file=stderr)
        return 1
    except ASMRuntimeError as error:
        formatter = TracebackFormatter(interpreter)
        print(formatter.format_text(error, verbose=args.debug), file=stderr)
        if args.traceback_json:
            print(formatter.to_json(error), file=stderr)
        return 1

    if args.debug:
        print(format_state(interpreter.snapshot()), file=stdout)
    print(args.default_output if output is None else output, file=stdout)
    return 0


if __name__ == "__main__":
    raise SystemExit(run_cli())
