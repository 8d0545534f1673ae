"""
motesim.script - Test script preprocessing and execution

Preprocessor, simulation/script handshake and the LogScriptEngine that
drives one test script per simulation.
"""

from .errors import ScriptError, ScriptSyntaxError, ScriptCompileError, ScriptRuntimeError
from .parser import ParsedScript, Timeout, preprocess, harness
from .engine import CompiledScript, LogScriptEngine, DEFAULT_TIMEOUT_US

__all__ = [
    'ScriptError',
    'ScriptSyntaxError',
    'ScriptCompileError',
    'ScriptRuntimeError',
    'ParsedScript',
    'Timeout',
    'preprocess',
    'harness',
    'CompiledScript',
    'LogScriptEngine',
    'DEFAULT_TIMEOUT_US',
]
