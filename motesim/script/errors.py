"""
errors.py - Test script exceptions (M1a)

Three failure kinds, each detected at a different point:
- ScriptSyntaxError: malformed or duplicated macro directive (preprocessing)
- ScriptCompileError: preprocessed program is not valid Python (compile)
- ScriptRuntimeError: exception raised by the script after activation
"""

from typing import Optional


class ScriptError(Exception):
    """Base class for all test script failures."""
    pass


class ScriptSyntaxError(ScriptError):
    """Raised when a macro directive is malformed or duplicated."""
    pass


class ScriptCompileError(ScriptError):
    """
    Raised when the preprocessed program fails to compile.

    The underlying SyntaxError is kept as __cause__; lineno refers to the
    user's script, not to the generated program.
    """

    def __init__(self, message: str, lineno: Optional[int] = None):
        super().__init__(message)
        self.lineno = lineno


class ScriptRuntimeError(ScriptError):
    """Wraps an exception raised by a running script (kept as __cause__)."""
    pass
