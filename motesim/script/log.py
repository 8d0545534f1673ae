"""
log.py - Library object published to test scripts as `log` (M1c)

Method names follow the script API (log.testOK(), log.generateMessage(...)),
not Python naming, so existing test scripts read the same.
"""

import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from motesim.script.engine import LogScriptEngine

logger = logging.getLogger(__name__)


class ScriptLog:
    """Calls a running script can make into the engine."""

    def __init__(self, engine: 'LogScriptEngine'):
        self._engine = engine

    def log(self, text: str):
        """Forward text to the script log observer / test log file."""
        self._engine.script_log_message(str(text))

    def append(self, filename: str, text: str):
        try:
            with open(filename, 'a', encoding='utf-8') as f:
                f.write(text)
        except OSError as e:
            logger.warning(f"Test append failed: {filename}: {e}")

    def writeFile(self, filename: str, text: str):
        try:
            with open(filename, 'w', encoding='utf-8') as f:
                f.write(text)
        except OSError as e:
            logger.warning(f"Write file failed: {filename}: {e}")

    def testOK(self):
        """End the session with a passing verdict."""
        self._engine.report_verdict(0)

    def testFailed(self):
        """End the session with a failing verdict."""
        self._engine.report_verdict(1)

    def generateMessage(self, delay_ms: int, text: str):
        """Inject text as a log line of the current mote, delay_ms from now."""
        self._engine.generate_message(self._engine.current_mote(), delay_ms, text)
