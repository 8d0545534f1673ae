"""
test_script_parser.py - Test Script Preprocessor Tests (M1a)

Tests macro rewriting, comment stripping, TIMEOUT extraction and the
generated harness.
"""

import pytest
import sys
import types
from pathlib import Path
from unittest.mock import Mock

# Add project root to path
_project_root = Path(__file__).parent.parent.parent.parent
if str(_project_root) not in sys.path:
    sys.path.insert(0, str(_project_root))

from motesim.script.errors import ScriptSyntaxError
from motesim.script.parser import Timeout, harness, preprocess


def body(text):
    """Body as preprocess() hands it to harness(): padded with newlines."""
    return "\n" + text + "\n"


class TestPlainScripts:
    """Scripts without macros pass through unchanged."""

    def test_macro_free_script_round_trips(self):
        """Macro-free text becomes harness(text) with no substitutions."""
        src = 'x = 1\nif x:\n    log.log("one")'
        parsed = preprocess(src)

        assert parsed.program == harness(body(src))
        assert parsed.substitutions == 0
        assert parsed.timeout is None

    def test_crlf_normalized(self):
        """Windows newlines are normalized."""
        parsed = preprocess("a = 1\r\nb = 2")
        assert parsed.program == harness(body("a = 1\nb = 2"))

    def test_program_compiles_to_generator(self):
        """The driver routine is a generator that suspends before the body."""
        parsed = preprocess('log.log("hi")')
        namespace = {'log': Mock()}
        exec(compile(parsed.program, '<test>', 'exec'), namespace)

        gen = namespace['_run']()
        assert isinstance(gen, types.GeneratorType)
        next(gen)
        namespace['log'].log.assert_not_called()
        next(gen)
        namespace['log'].log.assert_called_once_with("hi")

    def test_triple_quoted_string_not_reindented(self):
        """Lines inside a multi-line string keep their content."""
        parsed = preprocess('text = """first\nsecond"""\nshared["text"] = text')
        namespace = {'shared': {}}
        exec(compile(parsed.program, '<test>', 'exec'), namespace)

        gen = namespace['_run']()
        next(gen)
        next(gen)
        assert namespace['shared']['text'] == "first\nsecond"

    def test_body_line_offset_maps_to_script_lines(self):
        """body_line_offset + script line = program line."""
        parsed = preprocess("a = 1\nmarker = 2")
        lines = parsed.program.split("\n")
        assert lines[parsed.body_line_offset + 2 - 1].strip() == "marker = 2"


class TestComments:
    """Comment stripping."""

    def test_line_comment_hides_macro(self):
        """Macros inside # comments are not rewritten."""
        parsed = preprocess("x = 1  # YIELD()")
        assert parsed.substitutions == 0
        assert "YIELD" not in parsed.program

    def test_hash_inside_string_kept(self):
        """A # inside a string literal is not a comment."""
        parsed = preprocess("s = '# not a comment'")
        assert "s = '# not a comment'" in parsed.program

    def test_block_comment_keeps_line_count(self):
        """Block comments are replaced by as many newlines as they spanned."""
        parsed = preprocess("a = 1\n/* WAIT_UNTIL(x)\n   more */\nb = 2")
        assert parsed.program == harness(body("a = 1\n\n\nb = 2"))
        assert parsed.substitutions == 0

    def test_macro_inside_string_not_rewritten(self):
        """String literals are left alone."""
        parsed = preprocess('log.log("call YIELD() now")')
        assert parsed.substitutions == 0
        assert '"call YIELD() now"' in parsed.program

    def test_block_comment_markers_inside_string_kept(self):
        """/* ... */ inside a string literal is not a comment."""
        src = 'pattern = "/* keep */"\nlog.log(\'*/\')'
        parsed = preprocess(src)
        assert parsed.program == harness(body(src))

    def test_quote_inside_block_comment(self):
        """An apostrophe inside a block comment does not open a string."""
        parsed = preprocess("/* don't wait */\nYIELD()")
        assert parsed.program == harness(body("\nyield"))


class TestSuspendMacros:
    """YIELD, WAIT_UNTIL and YIELD_THEN_WAIT_UNTIL."""

    def test_yield(self):
        parsed = preprocess("YIELD()")
        assert parsed.program == harness(body("yield"))
        assert parsed.substitutions == 1

    def test_wait_until(self):
        """WAIT_UNTIL becomes a loop that suspends while the predicate is false."""
        parsed = preprocess('WAIT_UNTIL(msg == "x")')
        assert parsed.program == harness(body('while not (msg == "x"): yield'))
        assert parsed.substitutions == 1

    def test_wait_until_nested_parentheses(self):
        """Arguments are found by balanced parenthesis scanning."""
        parsed = preprocess('WAIT_UNTIL(msg.startswith(("a", ")")) and (id == 1))')
        assert 'while not (msg.startswith(("a", ")")) and (id == 1)): yield' in parsed.program

    def test_wait_until_after_semicolon(self):
        """A WAIT_UNTIL after ';' gets a line of its own at the same indentation."""
        parsed = preprocess("a = 1; WAIT_UNTIL(a == 1); b = 2")
        assert parsed.program == harness(body("a = 1; \nwhile not (a == 1): yield\nb = 2"))

    def test_wait_until_as_if_body(self):
        """A WAIT_UNTIL body of a single-line if moves into an indented block."""
        parsed = preprocess("if x: WAIT_UNTIL(y)")
        assert parsed.program == harness(body("if x: \n    while not (y): yield"))

    def test_wait_until_indented(self):
        """Indentation of the macro line is preserved."""
        parsed = preprocess("for i in range(3):\n    WAIT_UNTIL(msg == str(i))")
        assert parsed.program == harness(
            body("for i in range(3):\n    while not (msg == str(i)): yield")
        )

    def test_yield_then_wait_until(self):
        """YIELD_THEN_WAIT_UNTIL always suspends once before waiting."""
        parsed = preprocess('YIELD_THEN_WAIT_UNTIL(msg == "pong")')
        assert parsed.program == harness(body('yield; \nwhile not (msg == "pong"): yield'))
        assert parsed.substitutions == 3

    def test_rewritten_scripts_compile(self):
        """Every macro placement produces valid Python."""
        scripts = [
            "if x: YIELD_THEN_WAIT_UNTIL(y)",
            "while True:\n    YIELD()\n    if msg == 'q': break",
            "a = 1; WAIT_UNTIL(a == 1); b = 2",
            "try:\n    WAIT_UNTIL(msg == 'x')\nfinally:\n    log.log('done')",
        ]
        for src in scripts:
            compile(preprocess(src).program, '<test>', 'exec')

    def test_unterminated_macro(self):
        """A macro call without its closing parenthesis is rejected."""
        with pytest.raises(ScriptSyntaxError, match="Unterminated WAIT_UNTIL"):
            preprocess("WAIT_UNTIL(msg == 'x'")


class TestTimeout:
    """TIMEOUT directive extraction."""

    def test_timeout_without_code(self):
        parsed = preprocess("TIMEOUT(1000)\nYIELD()")
        assert parsed.timeout == Timeout(duration_ms=1000, code="")
        assert parsed.program == harness(body("pass\nyield"))
        assert parsed.substitutions == 2

    def test_timeout_with_code(self):
        """The handler code ends up in _on_timeout()."""
        parsed = preprocess("TIMEOUT(5000, log.log('late, ' + msg))")
        assert parsed.timeout == Timeout(duration_ms=5000, code="log.log('late, ' + msg)")
        assert parsed.program == harness(body("pass"), "log.log('late, ' + msg)")

    def test_timeout_code_runs_in_handler(self):
        """_on_timeout() executes the extracted code."""
        parsed = preprocess("TIMEOUT(10, shared.append(msg))")
        namespace = {'shared': [], 'msg': 'last'}
        exec(compile(parsed.program, '<test>', 'exec'), namespace)

        namespace['_on_timeout']()
        assert namespace['shared'] == ['last']

    def test_duplicate_timeout_rejected(self):
        """Only one TIMEOUT per script."""
        with pytest.raises(ScriptSyntaxError, match="Only one timeout handler allowed"):
            preprocess("TIMEOUT(1000)\nYIELD()\nTIMEOUT(2000)")

    def test_non_numeric_duration_rejected(self):
        with pytest.raises(ScriptSyntaxError, match="TIMEOUT duration"):
            preprocess("TIMEOUT(soon)")

    def test_suspend_in_timeout_handler_rejected(self):
        """The timeout handler runs once and may not suspend."""
        with pytest.raises(ScriptSyntaxError, match="WAIT_UNTIL"):
            preprocess("TIMEOUT(1000, WAIT_UNTIL(msg == 'x'))")
        with pytest.raises(ScriptSyntaxError, match="yield"):
            preprocess("TIMEOUT(1000, (yield))")


class TestVerdicts:
    """testOK()/testFailed() are plain calls; the engine unwinds the script."""

    def test_verdicts_not_rewritten(self):
        src = "log.testOK()\nif msg == 'bad': testFailed()"
        parsed = preprocess(src)

        assert parsed.program == harness(body(src))
        assert parsed.substitutions == 0
