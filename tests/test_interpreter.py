#!/usr/bin/env python3
"""
Execution engine tests
"""

import unittest
import sys
from pathlib import Path

# Add the project root to the Python path
sys.path.insert(0, str(Path(__file__).parent.parent))

from extensions import ASMExtensionError, HookRegistry
from interpreter import (
    ASMRuntimeError, Comparison, DivisionByZeroError, Interpreter, OutputPolicy, StackUnderflowError,
    TracebackFormatter, UninitializedRegisterError, UnresolvedFlagsError, UnresolvedLabelError,
    interpret, render_message, to_word,
)
from lexer import ParseError
from parser import DuplicateLabelError, Literal, Register


WORKED_EXAMPLE = """
; My first program
mov  a, 5
inc  a
call function
msg  '(5+1)/2 = ', a    ; output message
end

function:
    div  a, 2
    ret
"""

FACTORIAL = """
mov   a, 5
mov   b, a
mov   c, a
call  proc_fact
call  print
end

proc_fact:
    dec   b
    mul   c, b
    cmp   b, 1
    jne   proc_fact
    ret

print:
    msg   a, '! = ', c ; output text
    ret
"""

NO_END = """
call  func1
call  print
end

func1:
    call  func2
    ret

func2:
    ret

print:
    msg 'This program should return null'
"""

EXIT_WITHOUT_END = """
            mov a, 173   ; instruction mov a, 173
            mov k, 88   ; instruction mov k, 88
            call func
            msg 'Random result: ', o
            end
            func:
              cmp a, k
              jne exit
              mov o, a
              add o, k
              ret
            ; Do nothing
            exit:
              msg 'Do nothing'"""

QUOTIENT = """
            mov q, 86   ; instruction mov q, 86
            mov m, 73   ; instruction mov m, 73
            call func
            msg 'Random result: ', g
            end
            func:
              cmp q, m
              jl exit
              mov g, q
              div g, m
              ret
            ; Do nothing
            exit:
              msg 'Do nothing'"""


def run_and_get(source: str, register: str) -> int:
    interpreter = Interpreter(source=source + "\nend")
    interpreter.run()
    return interpreter.registers[register]


class TestPrograms(unittest.TestCase):

    def test_worked_example(self):
        self.assertEqual(interpret(WORKED_EXAMPLE), "(5+1)/2 = 3")

    def test_factorial(self):
        self.assertEqual(interpret(FACTORIAL), "5! = 120")

    def test_program_without_end_returns_default(self):
        self.assertIsNone(interpret(NO_END))

    def test_conditional_exit_without_end(self):
        self.assertIsNone(interpret(EXIT_WITHOUT_END))

    def test_quotient_program(self):
        self.assertEqual(interpret(QUOTIENT), "Random result: 1")

    def test_default_output_ignores_accumulated_messages(self):
        self.assertIsNone(interpret("mov a, 1\nmsg 'partial ', a\n"))

    def test_empty_program(self):
        self.assertIsNone(interpret(""))

    def test_end_without_messages(self):
        self.assertEqual(interpret("mov a, 1\nend"), "")


class TestRegisters(unittest.TestCase):

    def test_inc_dec_round_trip(self):
        self.assertEqual(run_and_get("mov a, 5\ninc a", "a"), 6)
        self.assertEqual(run_and_get("mov a, 5\ninc a\ndec a", "a"), 5)

    def test_arithmetic(self):
        self.assertEqual(run_and_get("mov a, 5\nadd a, 7", "a"), 12)
        self.assertEqual(run_and_get("mov a, 5\nmov b, 9\nsub a, b", "a"), -4)
        self.assertEqual(run_and_get("mov a, -6\nmul a, 7", "a"), -42)

    def test_mov_copies_register(self):
        self.assertEqual(run_and_get("mov a, 3\nmov b, a\ninc a", "b"), 3)

    def test_div_truncates_toward_zero(self):
        self.assertEqual(run_and_get("mov a, 7\ndiv a, 2", "a"), 3)
        self.assertEqual(run_and_get("mov a, -7\ndiv a, 2", "a"), -3)
        self.assertEqual(run_and_get("mov a, 7\ndiv a, -2", "a"), -3)
        self.assertEqual(run_and_get("mov a, -7\ndiv a, -2", "a"), 3)

    def test_registers_wrap_at_64_bits(self):
        self.assertEqual(run_and_get("mov a, 9223372036854775807\ninc a", "a"), -9223372036854775808)
        self.assertEqual(run_and_get("mov a, -9223372036854775808\ndec a", "a"), 9223372036854775807)
        self.assertEqual(run_and_get("mov a, -9223372036854775808\ndiv a, -1", "a"), -9223372036854775808)

    def test_to_word(self):
        self.assertEqual(to_word(0), 0)
        self.assertEqual(to_word(-1), -1)
        self.assertEqual(to_word(2 ** 64 + 5), 5)
        self.assertEqual(to_word(2 ** 63), -(2 ** 63))


class TestControlFlow(unittest.TestCase):

    def test_forward_label_reference(self):
        source = "mov a, 1\njmp skip\nmov a, 2\nskip:\nmsg 'a=', a\nend"
        self.assertEqual(interpret(source), "a=1")

    def test_backward_loop(self):
        source = "mov i, 0\nloop:\ninc i\ncmp i, 10\njl loop\nmsg i\nend"
        self.assertEqual(interpret(source), "10")

    def test_nested_call_returns(self):
        source = """
        mov t, 0
        call outer
        add t, 100
        msg 't=', t
        end
        outer:
            add t, 1
            call inner
            add t, 10
            ret
        inner:
            mul t, 2
            ret
        """
        # ((0 + 1) * 2 + 10) + 100
        self.assertEqual(interpret(source), "t=112")

    def test_call_pushes_return_address(self):
        seen = []
        hooks = HookRegistry()
        hooks.on_event(
            "after_instruction",
            lambda interp, instr: seen.append(tuple(interp.call_stack)),
        )
        interpret("call f\nend\nf:\nret", hooks=hooks)
        self.assertEqual(seen, [(1,), (), ()])

    def test_flags_persist_across_instructions(self):
        source = "cmp 1, 2\nmov a, 5\ninc a\njl yes\nmsg 'no'\nend\nyes:\nmsg 'yes'\nend"
        self.assertEqual(interpret(source), "yes")

    def test_conditional_jump_matrix(self):
        table = {
            "jne": {(3, 5): True, (5, 5): False, (5, 3): True},
            "je": {(3, 5): False, (5, 5): True, (5, 3): False},
            "jge": {(3, 5): False, (5, 5): True, (5, 3): True},
            "jg": {(3, 5): False, (5, 5): False, (5, 3): True},
            "jle": {(3, 5): True, (5, 5): True, (5, 3): False},
            "jl": {(3, 5): True, (5, 5): False, (5, 3): False},
        }
        for opcode, cases in table.items():
            for (a, b), taken in cases.items():
                with self.subTest(opcode=opcode, a=a, b=b):
                    source = f"cmp {a}, {b}\n{opcode} hit\nmsg 'miss'\nend\nhit:\nmsg 'hit'\nend"
                    self.assertEqual(interpret(source), "hit" if taken else "miss")

    def test_flags_values(self):
        interpreter = Interpreter(source="mov a, 2\ncmp a, 9\nend")
        interpreter.run()
        self.assertIs(interpreter.flags, Comparison.LESS)

    def test_label_is_a_no_op(self):
        self.assertEqual(interpret("here:\nmsg 'ok'\nend"), "ok")


class TestOutput(unittest.TestCase):

    def test_render_message(self):
        parts = [Literal("x = "), Register("x"), Literal(", y =  "), Register("y")]
        self.assertEqual(render_message(parts, {"x": -12, "y": 0}), "x = -12, y =  0")

    def test_render_message_unset_register(self):
        with self.assertRaises(UninitializedRegisterError):
            render_message([Register("nope")], {})

    def test_policies(self):
        source = "mov a, 1\nmsg 'one'\nmsg 'two ', a\nend"
        self.assertEqual(interpret(source), "onetwo 1")
        self.assertEqual(interpret(source, policy=OutputPolicy.LINES), "one\ntwo 1")
        self.assertEqual(interpret(source, policy=OutputPolicy.LAST), "two 1")

    def test_message_reflects_register_at_that_point(self):
        source = "mov a, 1\nmsg a\ninc a\nmsg ',', a\nend"
        self.assertEqual(interpret(source), "1,2")


class TestErrors(unittest.TestCase):

    def test_stack_underflow(self):
        with self.assertRaises(StackUnderflowError) as ctx:
            interpret("mov a, 1\nret\nend")
        self.assertEqual(ctx.exception.ip, 1)
        self.assertEqual(ctx.exception.location.line, 2)

    def test_division_by_zero(self):
        with self.assertRaises(DivisionByZeroError):
            interpret("mov a, 4\ndiv a, 0\nend")
        with self.assertRaises(DivisionByZeroError):
            interpret("mov a, 4\nmov z, 0\ndiv a, z\nend")

    def test_uninitialized_register(self):
        for source in ("mov a, b\nend", "inc b\nend", "add b, 1\nend", "mov a, 1\nadd a, b\nend",
                       "cmp b, 1\nend", "msg 'b=', b\nend"):
            with self.subTest(source=source):
                with self.assertRaises(UninitializedRegisterError):
                    interpret(source)

    def test_unresolved_label(self):
        with self.assertRaises(UnresolvedLabelError) as ctx:
            interpret("mov a, 1\ncall missing\nend")
        self.assertEqual(ctx.exception.ip, 1)

    def test_unresolved_label_only_when_executed(self):
        self.assertEqual(interpret("jmp over\njmp missing\nover:\nmsg 'ok'\nend"), "ok")

    def test_conditional_jump_before_cmp(self):
        with self.assertRaises(UnresolvedFlagsError):
            interpret("je x\nx:\nend")

    def test_parse_errors_abort_before_execution(self):
        seen = []
        hooks = HookRegistry()
        hooks.on_event("before_instruction", lambda interp, instr: seen.append(instr))
        with self.assertRaises(ParseError):
            interpret("msg 'x'\nbogus a\nend", hooks=hooks)
        self.assertEqual(seen, [])

    def test_duplicate_label(self):
        with self.assertRaises(DuplicateLabelError):
            interpret("a:\na:\nend")

    def test_errors_are_distinguishable(self):
        errors = (
            UnresolvedLabelError, UninitializedRegisterError, DivisionByZeroError,
            StackUnderflowError, UnresolvedFlagsError,
        )
        for error in errors:
            self.assertTrue(issubclass(error, ASMRuntimeError))
        self.assertEqual(len(set(errors)), 5)

    def test_step_index_is_stamped(self):
        with self.assertRaises(DivisionByZeroError) as ctx:
            interpret("mov a, 4\nmov b, 0\ndiv a, b\nend")
        self.assertEqual(ctx.exception.step_index, 2)


class TestIntrospection(unittest.TestCase):

    def test_trace_records_each_step(self):
        interpreter = Interpreter(source=WORKED_EXAMPLE, verbose=True)
        interpreter.run()
        trace = interpreter.trace()
        self.assertEqual([entry.ip for entry in trace], [0, 1, 2, 6, 7, 3, 4])
        self.assertEqual(trace[0].rule, "Mov")
        self.assertEqual(trace[0].state_id, "s_000000")
        self.assertEqual(trace[4].state.call_stack, (3,))
        self.assertEqual(dict(trace[5].state.registers), {"a": 3})

    def test_trace_without_verbose_has_no_state(self):
        interpreter = Interpreter(source="mov a, 1\nend")
        interpreter.run()
        self.assertTrue(all(entry.state is None for entry in interpreter.trace()))

    def test_snapshot_is_read_only(self):
        interpreter = Interpreter(source="mov a, 1\ncmp a, 1\nmsg a\nend")
        interpreter.run()
        state = interpreter.snapshot()
        self.assertEqual(state.flags, Comparison.EQUAL)
        self.assertEqual(state.output, ("1",))
        with self.assertRaises(TypeError):
            state.registers["a"] = 9
        self.assertEqual(interpreter.registers["a"], 1)

    def test_runs_are_independent(self):
        interpreter = Interpreter(source="mov a, 1\ninc a\nmsg a\nend")
        self.assertEqual(interpreter.run(), "2")
        self.assertEqual(interpreter.run(), "2")
        self.assertEqual(len(interpreter.trace()), 4)

    def test_step_rule_can_bound_execution(self):
        class Stop(ASMRuntimeError):
            pass

        def limit(interp, ctx):
            if ctx.step_index >= 50:
                raise Stop("too many steps")

        hooks = HookRegistry()
        hooks.add_step_rule(name="limit", every_n=1, handler=limit)
        with self.assertRaises(Stop):
            interpret("loop:\njmp loop", hooks=hooks)

    def test_failing_hook_is_wrapped(self):
        hooks = HookRegistry()
        hooks.on_event("before_instruction", lambda interp, instr: 1 / 0)
        with self.assertRaises(ASMRuntimeError) as ctx:
            interpret("end", hooks=hooks)
        self.assertEqual(ctx.exception.rule, "EXT")

    def test_unknown_event(self):
        with self.assertRaises(ASMExtensionError):
            HookRegistry().on_event("whenever", lambda: None)

    def test_program_end_event_receives_result(self):
        results = []
        hooks = HookRegistry()
        hooks.on_event("program_end", lambda interp, result: results.append(result))
        interpret(WORKED_EXAMPLE, hooks=hooks)
        interpret(NO_END, hooks=hooks)
        self.assertEqual(results, ["(5+1)/2 = 3", None])

    def test_traceback_lists_call_sites(self):
        source = "mov a, 1\ncall f\nend\nf:\n    div a, 0\n    ret"
        interpreter = Interpreter(source=source, filename="prog.asm")
        with self.assertRaises(DivisionByZeroError) as ctx:
            interpreter.run()
        text = TracebackFormatter(interpreter).format_text(ctx.exception, verbose=False)
        self.assertIn('File "prog.asm", line 2, in <top-level>', text)
        self.assertIn("    call f", text)
        self.assertIn('File "prog.asm", line 5, in f', text)
        self.assertTrue(text.splitlines()[-1].startswith("DivisionByZeroError: "))


if __name__ == "__main__":
    unittest.main()
