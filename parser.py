from __future__ import annotations
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Union

import numpy as np

from lexer import ASMError, ParseError, Token


_WORD = np.iinfo(np.int64)


class DuplicateLabelError(ASMError):
    """Raised when the same label is defined more than once."""

    def __init__(self, name: str, *, location: Optional["SourceLocation"] = None, first_index: Optional[int] = None) -> None:
        where = f" at line {location.line}" if location else ""
        super().__init__(f"Label '{name}' is already defined{where}")
        self.message = str(self)
        self.name = name
        self.location = location
        self.first_index = first_index


@dataclass
class SourceLocation:
    file: str
    line: int
    column: int
    statement: str


@dataclass
class Node:
    location: SourceLocation = field(repr=False, compare=False)


# ---- Operands ----

@dataclass(frozen=True)
class Register:
    name: str


@dataclass(frozen=True)
class Immediate:
    value: int


@dataclass(frozen=True)
class Literal:
    text: str


Operand = Union[Register, Immediate]
MessagePart = Union[Literal, Register]


# ---- Instructions ----

class Instruction(Node):
    pass


@dataclass
class Mov(Instruction):
    dst: str
    src: Operand


@dataclass
class Inc(Instruction):
    dst: str


@dataclass
class Dec(Instruction):
    dst: str


@dataclass
class Arithmetic(Instruction):
    dst: str
    src: Operand


class Add(Arithmetic):
    pass


class Sub(Arithmetic):
    pass


class Mul(Arithmetic):
    pass


class Div(Arithmetic):
    pass


@dataclass
class Label(Instruction):
    name: str


@dataclass
class Jmp(Instruction):
    target: str


@dataclass
class Cmp(Instruction):
    a: Operand
    b: Operand


@dataclass
class ConditionalJump(Instruction):
    target: str


class Jne(ConditionalJump):
    pass


class Je(ConditionalJump):
    pass


class Jge(ConditionalJump):
    pass


class Jg(ConditionalJump):
    pass


class Jle(ConditionalJump):
    pass


class Jl(ConditionalJump):
    pass


@dataclass
class Call(Instruction):
    target: str


@dataclass
class Ret(Instruction):
    pass


@dataclass
class Msg(Instruction):
    parts: List[MessagePart]


@dataclass
class End(Instruction):
    pass


@dataclass
class Program(Node):
    instructions: List[Instruction]
    labels: Dict[str, int]

    @classmethod
    def build(cls, instructions: List[Instruction], location: SourceLocation) -> "Program":
        labels: Dict[str, int] = {}
        for index, instruction in enumerate(instructions):
            if not isinstance(instruction, Label):
                continue
            if instruction.name in labels:
                raise DuplicateLabelError(
                    instruction.name,
                    location=instruction.location,
                    first_index=labels[instruction.name] - 1,
                )
            # Jumps land on the instruction after the label.
            labels[instruction.name] = index + 1
        return cls(location=location, instructions=instructions, labels=labels)

    def get_label(self, name: str) -> Optional[int]:
        return self.labels.get(name)

    def listing(self) -> List[str]:
        return [f"{index}: {instruction!r}" for index, instruction in enumerate(self.instructions)]


class Parser:
    def __init__(
        self,
        tokens: List[Token],
        filename: str,
        source_lines: List[str],
    ):
        self.tokens = tokens
        self.filename = filename
        self.source_lines = source_lines
        self.index = 0
        self._opcodes: Dict[str, Callable[[Token, List[List[Token]]], Instruction]] = {
            "mov": self._parse_mov,
            "inc": lambda op, groups: Inc(location=self._location_from_token(op), dst=self._register(op, groups, 1)),
            "dec": lambda op, groups: Dec(location=self._location_from_token(op), dst=self._register(op, groups, 1)),
            "add": self._arithmetic(Add),
            "sub": self._arithmetic(Sub),
            "mul": self._arithmetic(Mul),
            "div": self._arithmetic(Div),
            "cmp": self._parse_cmp,
            "jmp": self._jump(Jmp),
            "jne": self._jump(Jne),
            "je": self._jump(Je),
            "jge": self._jump(Jge),
            "jg": self._jump(Jg),
            "jle": self._jump(Jle),
            "jl": self._jump(Jl),
            "call": self._jump(Call),
            "ret": self._nullary(Ret),
            "end": self._nullary(End),
            "msg": self._parse_msg,
        }

    def parse(self) -> Program:
        instructions: List[Instruction] = []
        while self._peek().type != "EOF":
            line = self._take_line()
            if line:
                instructions.append(self._parse_line(line))
        eof_token: Token = self._peek()
        return Program.build(instructions, self._location_from_token(eof_token))

    def _take_line(self) -> List[Token]:
        line: List[Token] = []
        while not self._match("NEWLINE"):
            if self._peek().type == "EOF":
                break
            line.append(self._peek())
            self.index += 1
        return line

    def _parse_line(self, line: List[Token]) -> Instruction:
        head = line[0]
        if head.type != "IDENT":
            raise self._error(f"Expected opcode or label but found {head.type}", head)
        if len(line) >= 2 and line[1].type == "COLON":
            return self._parse_label(line)
        handler = self._opcodes.get(head.value)
        if handler is None:
            raise self._error(f"Unknown opcode '{head.value}'", head)
        return handler(head, self._split_operands(head, line[1:]))

    def _parse_label(self, line: List[Token]) -> Label:
        name, colon = line[0], line[1]
        if len(line) > 2:
            raise self._error(f"Unexpected {line[2].type} after label '{name.value}'", line[2])
        if colon.line != name.line or colon.column != name.column + len(name.value):
            raise self._error(f"Whitespace is not allowed before ':' in label '{name.value}'", name)
        return Label(location=self._location_from_token(name), name=name.value)

    def _split_operands(self, opcode: Token, tokens: List[Token]) -> List[List[Token]]:
        if not tokens:
            return []
        groups: List[List[Token]] = [[]]
        for token in tokens:
            if token.type == "COMMA":
                groups.append([])
            else:
                groups[-1].append(token)
        for group in groups:
            if not group:
                raise self._error(f"Empty operand in '{opcode.value}'", opcode)
            if len(group) > 1:
                raise self._error(f"Expected ',' between operands of '{opcode.value}'", group[1])
        return groups

    def _expect_arity(self, opcode: Token, groups: List[List[Token]], arity: int) -> List[Token]:
        if len(groups) != arity:
            raise self._error(
                f"'{opcode.value}' expects {arity} operand(s) but got {len(groups)}", opcode
            )
        return [group[0] for group in groups]

    def _register(self, opcode: Token, groups: List[List[Token]], arity: int) -> str:
        return self._destination(opcode, self._expect_arity(opcode, groups, arity)[0])

    def _destination(self, opcode: Token, token: Token) -> str:
        if token.type != "IDENT":
            raise self._error(f"Destination of '{opcode.value}' must be a register", token)
        return token.value

    def _operand(self, token: Token) -> Operand:
        if token.type == "IDENT":
            return Register(token.value)
        if token.type == "NUMBER":
            value = int(token.value)
            if not _WORD.min <= value <= _WORD.max:
                raise self._error(f"Integer literal {token.value} does not fit a 64-bit register", token)
            return Immediate(value)
        raise self._error(f"Expected register or integer but found {token.type}", token)

    def _parse_mov(self, opcode: Token, groups: List[List[Token]]) -> Mov:
        dst, src = self._expect_arity(opcode, groups, 2)
        return Mov(
            location=self._location_from_token(opcode),
            dst=self._destination(opcode, dst),
            src=self._operand(src),
        )

    def _arithmetic(self, kind: type) -> Callable[[Token, List[List[Token]]], Instruction]:
        def parse(opcode: Token, groups: List[List[Token]]) -> Instruction:
            dst, src = self._expect_arity(opcode, groups, 2)
            return kind(
                location=self._location_from_token(opcode),
                dst=self._destination(opcode, dst),
                src=self._operand(src),
            )

        return parse

    def _parse_cmp(self, opcode: Token, groups: List[List[Token]]) -> Cmp:
        a, b = self._expect_arity(opcode, groups, 2)
        return Cmp(location=self._location_from_token(opcode), a=self._operand(a), b=self._operand(b))

    def _jump(self, kind: type) -> Callable[[Token, List[List[Token]]], Instruction]:
        def parse(opcode: Token, groups: List[List[Token]]) -> Instruction:
            (target,) = self._expect_arity(opcode, groups, 1)
            if target.type != "IDENT":
                raise self._error(f"'{opcode.value}' expects a label name", target)
            return kind(location=self._location_from_token(opcode), target=target.value)

        return parse

    def _nullary(self, kind: type) -> Callable[[Token, List[List[Token]]], Instruction]:
        def parse(opcode: Token, groups: List[List[Token]]) -> Instruction:
            self._expect_arity(opcode, groups, 0)
            return kind(location=self._location_from_token(opcode))

        return parse

    def _parse_msg(self, opcode: Token, groups: List[List[Token]]) -> Msg:
        if not groups:
            raise self._error("'msg' expects at least one argument", opcode)
        parts: List[MessagePart] = []
        for (token,) in groups:
            if token.type == "STRING":
                parts.append(Literal(token.value))
            elif token.type == "IDENT":
                parts.append(Register(token.value))
            else:
                raise self._error(f"'msg' arguments must be quoted text or registers, found {token.type}", token)
        return Msg(location=self._location_from_token(opcode), parts=parts)

    def _error(self, message: str, token: Token) -> ParseError:
        location = self._location_from_token(token)
        return ParseError(
            f"{message} at {self.filename}:{token.line}:{token.column}: {location.statement}",
            location=location,
        )

    def _match(self, token_type: str) -> bool:
        if self._peek().type == token_type:
            self.index += 1
            return True
        return False

    def _peek(self) -> Token:
        return self.tokens[self.index]

    def _location_from_token(self, token: Token) -> SourceLocation:
        line_index = token.line - 1
        statement = ""
        if 0 <= line_index < len(self.source_lines):
            statement = self.source_lines[line_index].strip()
        return SourceLocation(file=self.filename, line=token.line, column=token.column, statement=statement)
