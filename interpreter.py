from __future__ import annotations
import json
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Type

import numpy as np

from lexer import ASMError, Lexer
from extensions import HookRegistry, StepContext
from parser import (
    Arithmetic,
    Add,
    Call,
    Cmp,
    ConditionalJump,
    Dec,
    Div,
    End,
    Immediate,
    Inc,
    Instruction,
    Je,
    Jg,
    Jge,
    Jl,
    Jle,
    Jmp,
    Jne,
    Label,
    Literal,
    MessagePart,
    Mov,
    Msg,
    Mul,
    Operand,
    Parser,
    Program,
    Ret,
    SourceLocation,
    Sub,
)


_WORD_MASK = 0xFFFF_FFFF_FFFF_FFFF


def to_word(value: int) -> int:
    """Wrap an arbitrary integer into a signed 64-bit register value."""
    return int(np.array(value & _WORD_MASK, dtype=np.uint64).view(np.int64))


class Comparison(Enum):
    LESS = "less"
    EQUAL = "equal"
    GREATER = "greater"


class OutputPolicy(Enum):
    CONCAT = "concat"
    LINES = "lines"
    LAST = "last"

    def join(self, messages: Sequence[str]) -> str:
        if self is OutputPolicy.LINES:
            return "\n".join(messages)
        if self is OutputPolicy.LAST:
            return messages[-1] if messages else ""
        return "".join(messages)


class ASMRuntimeError(ASMError):
    """Raised for runtime faults."""

    def __init__(
        self,
        message: str,
        *,
        location: Optional[SourceLocation] = None,
        rule: Optional[str] = None,
        ip: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.location = location
        self.rule = rule
        self.ip = ip
        self.step_index: Optional[int] = None


class UnresolvedLabelError(ASMRuntimeError):
    pass


class UninitializedRegisterError(ASMRuntimeError):
    pass


class DivisionByZeroError(ASMRuntimeError):
    pass


class StackUnderflowError(ASMRuntimeError):
    pass


class UnresolvedFlagsError(ASMRuntimeError):
    pass


@dataclass(frozen=True)
class MachineState:
    ip: int
    registers: Mapping[str, int]
    flags: Optional[Comparison]
    call_stack: Tuple[int, ...]
    output: Tuple[str, ...]


@dataclass(frozen=True)
class StateEntry:
    step_index: int
    state_id: str
    ip: int
    source_location: Optional[SourceLocation]
    statement: Optional[str]
    rule: str
    state: Optional[MachineState]


class StateLogger:
    def __init__(self, verbose: bool) -> None:
        self.verbose = verbose
        self.entries: List[StateEntry] = []
        self.next_state_index = 0

    def record(
        self,
        *,
        ip: int,
        location: Optional[SourceLocation],
        rule: str,
        state: Optional[MachineState] = None,
    ) -> StateEntry:
        step_index = self.next_state_index
        entry = StateEntry(
            step_index=step_index,
            state_id=f"s_{step_index:06d}",
            ip=ip,
            source_location=location,
            statement=location.statement if location else None,
            rule=rule,
            state=state,
        )
        self.entries.append(entry)
        self.next_state_index += 1
        return entry

    def last_entry(self) -> Optional[StateEntry]:
        return self.entries[-1] if self.entries else None


def render_message(
    parts: Sequence[MessagePart],
    registers: Mapping[str, int],
    location: Optional[SourceLocation] = None,
) -> str:
    rendered: List[str] = []
    for part in parts:
        if isinstance(part, Literal):
            rendered.append(part.text)
            continue
        if part.name not in registers:
            raise UninitializedRegisterError(
                f"Register '{part.name}' is read before it is written", location=location, rule="Msg"
            )
        rendered.append(str(int(registers[part.name])))
    return "".join(rendered)


_BRANCHES: Dict[Type[ConditionalJump], Callable[[Comparison], bool]] = {
    Jne: lambda flags: flags is not Comparison.EQUAL,
    Je: lambda flags: flags is Comparison.EQUAL,
    Jge: lambda flags: flags is not Comparison.LESS,
    Jg: lambda flags: flags is Comparison.GREATER,
    Jle: lambda flags: flags is not Comparison.GREATER,
    Jl: lambda flags: flags is Comparison.LESS,
}

_ARITHMETIC: Dict[Type[Arithmetic], Callable[[int, int], int]] = {
    Add: lambda a, b: a + b,
    Sub: lambda a, b: a - b,
    Mul: lambda a, b: a * b,
}


class Interpreter:
    def __init__(
        self,
        *,
        source: str,
        filename: str = "<string>",
        verbose: bool = False,
        policy: OutputPolicy = OutputPolicy.CONCAT,
        hooks: Optional[HookRegistry] = None,
    ) -> None:
        self.source = source
        self._source_lines = source.splitlines()
        self.filename = filename
        self.verbose = verbose
        self.policy = policy
        self.hook_registry = hooks or HookRegistry()
        self.program: Optional[Program] = None
        self._reset()

    def _reset(self) -> None:
        self.registers: Dict[str, int] = {}
        self.flags: Optional[Comparison] = None
        self.call_stack: List[int] = []
        self.output: List[str] = []
        self.ip = 0
        self.logger = StateLogger(verbose=self.verbose)

    def parse(self) -> Program:
        lexer = Lexer(self.source, self.filename)
        tokens = lexer.tokenize()
        parser = Parser(tokens, self.filename, self._source_lines)
        return parser.parse()

    def run(self) -> Optional[str]:
        """Execute the program and return its output.

        Returns the joined ``msg`` output when ``end`` executes, or ``None``
        when the instruction pointer runs past the last instruction.
        Parse and runtime faults are raised, never folded into the result.
        """
        program = self.parse()
        self.program = program
        self._reset()
        self._emit_event("program_start", self, program)
        try:
            result = self._execute_program(program)
        except ASMRuntimeError as error:
            if error.ip is None:
                error.ip = self.ip
            last = self.logger.last_entry()
            if last is not None:
                error.step_index = last.step_index
            self._emit_event("on_error", self, error)
            raise
        except Exception as exc:
            self._emit_event("on_error", self, exc)
            # Convert unexpected Python-level exceptions into ASMRuntimeError
            # so callers can format them with the same traceback machinery.
            last = self.logger.last_entry()
            wrapped = ASMRuntimeError(
                f"Internal interpreter error: {exc}",
                location=last.source_location if last else None,
                rule="internal",
                ip=self.ip,
            )
            if last is not None:
                wrapped.step_index = last.step_index
            raise wrapped from exc
        self._emit_event("program_end", self, result)
        return result

    def snapshot(self) -> MachineState:
        return MachineState(
            ip=self.ip,
            registers=MappingProxyType(dict(self.registers)),
            flags=self.flags,
            call_stack=tuple(self.call_stack),
            output=tuple(self.output),
        )

    def trace(self) -> List[StateEntry]:
        return list(self.logger.entries)

    def _execute_program(self, program: Program) -> Optional[str]:
        instructions = program.instructions
        emit_event = self._emit_event
        log_step = self._log_step
        execute = self._execute_instruction

        while self.ip < len(instructions):
            instruction = instructions[self.ip]
            emit_event("before_instruction", self, instruction)
            log_step(instruction)
            if isinstance(instruction, End):
                emit_event("after_instruction", self, instruction)
                return self.policy.join(self.output)
            self.ip = execute(instruction)
            emit_event("after_instruction", self, instruction)
        return None

    def _execute_instruction(self, instruction: Instruction) -> int:
        """Apply one instruction and return the next instruction pointer."""
        ip = self.ip
        if isinstance(instruction, Mov):
            self._store(instruction.dst, self._evaluate(instruction.src, instruction))
            return ip + 1
        if isinstance(instruction, Inc):
            self._store(instruction.dst, self._read(instruction.dst, instruction) + 1)
            return ip + 1
        if isinstance(instruction, Dec):
            self._store(instruction.dst, self._read(instruction.dst, instruction) - 1)
            return ip + 1
        if isinstance(instruction, Div):
            dividend = self._read(instruction.dst, instruction)
            divisor = self._evaluate(instruction.src, instruction)
            if divisor == 0:
                raise DivisionByZeroError(
                    f"Division by zero in '{instruction.location.statement}'",
                    location=instruction.location,
                    rule="Div",
                    ip=ip,
                )
            quotient = abs(dividend) // abs(divisor)
            if (dividend < 0) != (divisor < 0):
                quotient = -quotient
            self._store(instruction.dst, quotient)
            return ip + 1
        if isinstance(instruction, Arithmetic):
            left = self._read(instruction.dst, instruction)
            right = self._evaluate(instruction.src, instruction)
            self._store(instruction.dst, _ARITHMETIC[type(instruction)](left, right))
            return ip + 1
        if isinstance(instruction, Label):
            return ip + 1
        if isinstance(instruction, Jmp):
            return self._resolve(instruction.target, instruction)
        if isinstance(instruction, Cmp):
            a = self._evaluate(instruction.a, instruction)
            b = self._evaluate(instruction.b, instruction)
            if a == b:
                self.flags = Comparison.EQUAL
            elif a < b:
                self.flags = Comparison.LESS
            else:
                self.flags = Comparison.GREATER
            return ip + 1
        if isinstance(instruction, ConditionalJump):
            if self.flags is None:
                raise UnresolvedFlagsError(
                    f"'{instruction.location.statement}' executed before any cmp",
                    location=instruction.location,
                    rule=type(instruction).__name__,
                    ip=ip,
                )
            if _BRANCHES[type(instruction)](self.flags):
                return self._resolve(instruction.target, instruction)
            return ip + 1
        if isinstance(instruction, Call):
            target = self._resolve(instruction.target, instruction)
            self.call_stack.append(ip + 1)
            return target
        if isinstance(instruction, Ret):
            if not self.call_stack:
                raise StackUnderflowError(
                    "ret with an empty call stack", location=instruction.location, rule="Ret", ip=ip
                )
            return self.call_stack.pop()
        if isinstance(instruction, Msg):
            self.output.append(render_message(instruction.parts, self.registers, instruction.location))
            return ip + 1
        raise ASMRuntimeError(
            f"Unsupported instruction {type(instruction).__name__}",
            location=instruction.location,
            rule="internal",
            ip=ip,
        )

    def _read(self, name: str, instruction: Instruction) -> int:
        try:
            return self.registers[name]
        except KeyError:
            raise UninitializedRegisterError(
                f"Register '{name}' is read before it is written",
                location=instruction.location,
                rule=type(instruction).__name__,
                ip=self.ip,
            ) from None

    def _evaluate(self, operand: Operand, instruction: Instruction) -> int:
        if isinstance(operand, Immediate):
            return operand.value
        return self._read(operand.name, instruction)

    def _store(self, name: str, value: int) -> None:
        self.registers[name] = to_word(value)

    def _resolve(self, target: str, instruction: Instruction) -> int:
        assert self.program is not None
        index = self.program.get_label(target)
        if index is None:
            raise UnresolvedLabelError(
                f"Undefined label '{target}'",
                location=instruction.location,
                rule=type(instruction).__name__,
                ip=self.ip,
            )
        return index

    def _emit_event(self, event: str, *args: Any, **kwargs: Any) -> None:
        try:
            self.hook_registry.emit(event, *args, **kwargs)
        except ASMError:
            raise
        except Exception as exc:
            last = self.logger.last_entry()
            raise ASMRuntimeError(
                f"Extension hook '{event}' failed: {exc}",
                location=last.source_location if last else None,
                rule="EXT",
                ip=self.ip,
            ) from exc

    def _log_step(self, instruction: Instruction) -> None:
        rule = type(instruction).__name__
        entry = self.logger.record(
            ip=self.ip,
            location=instruction.location,
            rule=rule,
            state=self.snapshot() if self.verbose else None,
        )
        try:
            self.hook_registry.after_step(
                self,
                StepContext(step_index=entry.step_index, ip=self.ip, rule=rule, location=instruction.location),
            )
        except ASMError:
            raise
        except Exception as exc:
            raise ASMRuntimeError(
                f"Extension step rule failed: {exc}",
                location=instruction.location,
                rule="EXT",
                ip=self.ip,
            ) from exc


def interpret(
    source: str,
    *,
    filename: str = "<string>",
    policy: OutputPolicy = OutputPolicy.CONCAT,
    hooks: Optional[HookRegistry] = None,
) -> Optional[str]:
    """Parse and run ``source`` in a fresh interpreter."""
    return Interpreter(source=source, filename=filename, policy=policy, hooks=hooks).run()


@dataclass
class TracebackFrame:
    name: str
    location: Optional[SourceLocation]
    statement: Optional[str]


class TracebackFormatter:
    def __init__(self, interpreter: Interpreter) -> None:
        self.interpreter = interpreter

    def build_frames(self, error: ASMRuntimeError) -> List[TracebackFrame]:
        frames: List[TracebackFrame] = []
        program = self.interpreter.program
        name = "<top-level>"
        if program is not None:
            for return_address in self.interpreter.call_stack:
                call = program.instructions[return_address - 1]
                frames.append(TracebackFrame(name=name, location=call.location, statement=call.location.statement))
                if isinstance(call, Call):
                    name = call.target
        location = error.location
        frames.append(
            TracebackFrame(name=name, location=location, statement=location.statement if location else None)
        )
        return frames

    def format_text(self, error: ASMRuntimeError, verbose: bool) -> str:
        lines = ["Traceback (most recent call last):"]
        for frame in self.build_frames(error):
            if frame.location:
                lines.append(f"  File \"{frame.location.file}\", line {frame.location.line}, in {frame.name}")
                if frame.statement:
                    lines.append(f"    {frame.statement}")
            else:
                lines.append(f"  <unknown location> in {frame.name}")
        last = self.interpreter.logger.last_entry()
        if last is not None:
            lines.append(f"    State log index: {last.step_index}  State id: {last.state_id}  IP: {last.ip}")
            if verbose and last.state is not None:
                registers = ", ".join(f"{k}={v}" for k, v in last.state.registers.items())
                lines.append(f"    Registers: {registers}")
        rule = error.rule or "runtime"
        lines.append(f"{error.__class__.__name__}: {error.message} (instruction: {rule})")
        return "\n".join(lines)

    def to_json(self, error: ASMRuntimeError) -> str:
        frames_json: List[Dict[str, Any]] = []
        for index, frame in enumerate(self.build_frames(error)):
            entry: Dict[str, Any] = {"frame_index": index, "name": frame.name}
            if frame.location:
                entry["source_location"] = {
                    "file": frame.location.file,
                    "line": frame.location.line,
                    "statement": frame.location.statement,
                }
            frames_json.append(entry)
        last = self.interpreter.logger.last_entry()
        data: Dict[str, Any] = {
            "error": {
                "type": error.__class__.__name__,
                "message": error.message,
                "instruction": error.rule,
                "ip": error.ip,
                "failing_step_index": error.step_index,
            },
            "traceback": frames_json,
        }
        if last is not None and last.state is not None:
            data["state"] = {
                "registers": dict(last.state.registers),
                "flags": last.state.flags.value if last.state.flags else None,
                "call_stack": list(last.state.call_stack),
            }
        return json.dumps(data, indent=2)
