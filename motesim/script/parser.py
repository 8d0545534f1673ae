"""
parser.py - Test Script Preprocessor (M1a)

Turns the text of a test script into the Python program run by the
LogScriptEngine.

Test scripts are plain Python plus a handful of macros:

    TIMEOUT(ms)                    - fail the test after ms of simulated time
    TIMEOUT(ms, code)              - same, running code first
    YIELD()                        - hand control back to the simulation
    WAIT_UNTIL(expr)               - suspend until expr holds
    YIELD_THEN_WAIT_UNTIL(expr)    - YIELD(), then WAIT_UNTIL(expr)

Every suspend macro becomes a `yield` inside the generated driver routine
`_run()`, so a script is a generator that the engine resumes once per
simulation event.

Pipeline (order is load-bearing):
1. Normalize newlines, pad with one newline on each side
2. Strip /* block comments */ (line count preserved)
3. Strip # line comments
4. Extract the TIMEOUT directive
5. Expand YIELD_THEN_WAIT_UNTIL (must precede 6-7)
6. Rewrite YIELD()
7. Rewrite WAIT_UNTIL()

Suspend macros are statements: they must start a line, follow a `;`, or be
the body of a single-line compound statement.
"""

import re
from dataclasses import dataclass
from typing import Callable, List, Optional, Pattern, Tuple

from motesim.script.errors import ScriptSyntaxError

INDENT = "    "

# Names the engine publishes into the script namespace before each resume
PUBLISHED_NAMES = ('mote', 'id', 'time', 'msg', 'SHUTDOWN', 'TIMEOUT')

SUSPEND_MACROS = ('YIELD_THEN_WAIT_UNTIL', 'WAIT_UNTIL', 'YIELD')

_TRAILING_SEPARATOR = re.compile(r'[ \t]*;?[ \t]*')
_COMPOUND_HEADER = re.compile(
    r'^(?:if|elif|else|while|for|try|except|finally|with)\b.*:$'
)

_HARNESS_HEAD = """\
def GENERATE_MSG(delay, text):
    log.generateMessage(delay, text)


def write(mote, text):
    mote.write_string(text)


def _on_timeout():
    global {names}
{timeout_code}


def _run():
    global {names}
    yield
"""

_HARNESS_TAIL = """
    while True:
        yield
"""


@dataclass(frozen=True)
class Timeout:
    """TIMEOUT directive extracted from a script."""
    duration_ms: int
    code: str = ""


@dataclass
class ParsedScript:
    """
    Preprocessed script.

    Attributes:
        program: Complete program text (harness + rewritten body)
        timeout: Extracted TIMEOUT directive, None if the script has none
        substitutions: Number of macro rewrites performed
        body_line_offset: Subtract from a program line number to get the
            matching line of the user's script
    """
    program: str
    timeout: Optional[Timeout] = None
    substitutions: int = 0
    body_line_offset: int = 0


def preprocess(source: str) -> ParsedScript:
    """
    Preprocess a test script.

    Args:
        source: Script text as written by the user

    Returns:
        ParsedScript with the generated program and the timeout directive

    Raises:
        ScriptSyntaxError: Duplicated or malformed macro directive
    """
    code = _fix_newlines(source)
    code = _strip_block_comments(code)
    code = _strip_line_comments(code)

    code, timeout = _extract_timeout(code)
    substitutions = 1 if timeout else 0

    code, count = _rewrite(code, 'YIELD_THEN_WAIT_UNTIL', _expand_yield_then_wait_until)
    substitutions += count
    code, count = _rewrite(code, 'YIELD', _expand_yield)
    substitutions += count
    code, count = _rewrite(code, 'WAIT_UNTIL', _expand_wait_until)
    substitutions += count

    timeout_code = timeout.code if timeout else ""
    return ParsedScript(
        program=harness(code, timeout_code),
        timeout=timeout,
        substitutions=substitutions,
        body_line_offset=_harness_head(timeout_code).count('\n') + 1
    )


def harness(body: str, timeout_code: str = "") -> str:
    """Wrap an already rewritten script body in the driver harness."""
    return _harness_head(timeout_code) + _indent(body) + _HARNESS_TAIL


def _harness_head(timeout_code: str) -> str:
    return _HARNESS_HEAD.format(
        names=', '.join(PUBLISHED_NAMES),
        timeout_code=_indent(timeout_code.strip() or 'pass')
    )


def _fix_newlines(code: str) -> str:
    return "\n" + code.replace("\r\n", "\n") + "\n"


def _strip_block_comments(code: str) -> str:
    return ''.join(
        '\n' * text.count('\n') if kind == 'block' else text
        for kind, text in _lex(code)
    )


def _strip_line_comments(code: str) -> str:
    return ''.join(text for kind, text in _lex(code) if kind != 'comment')


def _extract_timeout(code: str) -> Tuple[str, Optional[Timeout]]:
    found = _find_macro(code, 'TIMEOUT')
    if found is None:
        return code, None

    start, end, args = found
    duration, _, action = args.partition(',')
    duration = duration.strip()
    if not duration.isdigit():
        raise ScriptSyntaxError(
            f"TIMEOUT duration must be a number of milliseconds, got '{duration}' "
            f"(line {_line_of(code, start)})"
        )
    action = action.strip()
    _check_timeout_action(action)

    code = code[:start] + 'pass' + code[end:]
    if _find_macro(code, 'TIMEOUT', start) is not None:
        raise ScriptSyntaxError("Only one timeout handler allowed")

    return code, Timeout(duration_ms=int(duration), code=action)


def _check_timeout_action(action: str):
    """The TIMEOUT handler runs once and must not suspend."""
    for name in SUSPEND_MACROS:
        if _find_macro(action, name) is not None:
            raise ScriptSyntaxError(f"{name}() is not allowed in a TIMEOUT handler")
    if re.search(r'\byield\b', action):
        raise ScriptSyntaxError("'yield' is not allowed in a TIMEOUT handler")


def _rewrite(
    code: str,
    name: str,
    expand: Callable[[str, int, int, str], Tuple[str, int]]
) -> Tuple[str, int]:
    """Replace every NAME(...) call with expand(code, start, end, args)."""
    count = 0
    pos = 0
    while True:
        found = _find_macro(code, name, pos)
        if found is None:
            return code, count
        start, end, args = found
        replacement, end = expand(code, start, end, args)
        code = code[:start] + replacement + code[end:]
        pos = start + len(replacement)
        count += 1


def _expand_yield_then_wait_until(code: str, start: int, end: int, args: str) -> Tuple[str, int]:
    indent, before = _line_context(code, start)
    prefix = ""
    if _COMPOUND_HEADER.match(before):
        # Both statements belong to the single-line body
        prefix = "\n" + indent + INDENT
    return f"{prefix}YIELD(); WAIT_UNTIL({args})", end


def _expand_yield(code: str, start: int, end: int, args: str) -> Tuple[str, int]:
    return "yield", end


def _expand_wait_until(code: str, start: int, end: int, args: str) -> Tuple[str, int]:
    # A while loop is a compound statement: it needs a line of its own
    indent, before = _line_context(code, start)
    prefix = ""
    if _COMPOUND_HEADER.match(before):
        indent += INDENT
        prefix = "\n" + indent
    elif before.endswith(';'):
        prefix = "\n" + indent

    end = _TRAILING_SEPARATOR.match(code, end).end()
    suffix = ""
    if end < len(code) and code[end] != '\n':
        suffix = "\n" + indent

    return f"{prefix}while not ({args}): yield{suffix}", end


def _find_macro(code: str, name: str, pos: int = 0) -> Optional[Tuple[int, int, str]]:
    """
    Locate the next NAME(...) call outside string literals.

    Returns:
        (start, end, args) with end just past the closing parenthesis,
        or None if there is no further call
    """
    pattern = re.compile(r'(?<![\w.])' + name + r'\(')
    match = _search_outside_strings(code, pattern, pos)
    if match is None:
        return None

    close = _closing_paren(code, match.end())
    if close < 0:
        raise ScriptSyntaxError(
            f"Unterminated {name}(...) on line {_line_of(code, match.start())}"
        )
    return match.start(), close + 1, code[match.end():close]


def _search_outside_strings(code: str, pattern: Pattern, pos: int):
    spans = _string_spans(code)
    for match in pattern.finditer(code, pos):
        if not any(start <= match.start() < end for start, end in spans):
            return match
    return None


def _closing_paren(code: str, i: int) -> int:
    depth = 1
    while i < len(code):
        c = code[i]
        if c in '\'"':
            i = _string_end(code, i)
            continue
        if c in '([{':
            depth += 1
        elif c in ')]}':
            depth -= 1
            if depth == 0:
                return i
        i += 1
    return -1


def _line_context(code: str, pos: int) -> Tuple[str, str]:
    """Return (indentation, stripped text before pos) of the line holding pos."""
    line = code[code.rfind('\n', 0, pos) + 1:pos]
    stripped = line.lstrip(' \t')
    return line[:len(line) - len(stripped)], stripped.strip()


def _line_of(code: str, pos: int) -> int:
    # Line 1 of the padded text is the padding newline
    return code.count('\n', 0, pos)


def _indent(text: str) -> str:
    """Indent every line that does not start inside a string literal."""
    chunks = []
    for kind, chunk in _lex(text):
        if kind == 'string':
            chunks.append(chunk)
        else:
            chunks.append(chunk.replace('\n', '\n' + INDENT))
    return INDENT + ''.join(chunks)


def _string_spans(code: str) -> List[Tuple[int, int]]:
    spans = []
    pos = 0
    for kind, text in _lex(code):
        if kind == 'string':
            spans.append((pos, pos + len(text)))
        pos += len(text)
    return spans


def _lex(code: str) -> List[Tuple[str, str]]:
    """Split code into ('code' | 'string' | 'comment' | 'block', text) chunks."""
    chunks = []
    start = i = 0
    while i < len(code):
        c = code[i]
        if c == '#':
            end = code.find('\n', i)
            if end < 0:
                end = len(code)
            kind = 'comment'
        elif c in '\'"':
            end = _string_end(code, i)
            kind = 'string'
        elif code.startswith('/*', i):
            close = code.find('*/', i + 2)
            if close < 0:
                i += 1
                continue
            end = close + 2
            kind = 'block'
        else:
            i += 1
            continue

        if start < i:
            chunks.append(('code', code[start:i]))
        chunks.append((kind, code[i:end]))
        start = i = end

    if start < len(code):
        chunks.append(('code', code[start:]))
    return chunks


def _string_end(code: str, i: int) -> int:
    """Index just past the string literal opening at i."""
    quote = code[i] * 3 if code.startswith(code[i] * 3, i) else code[i]
    j = i + len(quote)
    while j < len(code):
        if code[j] == '\\':
            j += 2
            continue
        if code.startswith(quote, j):
            return j + len(quote)
        if code[j] == '\n' and len(quote) == 1:
            # Unterminated; left for the compiler to report
            return j
        j += 1
    return len(code)
