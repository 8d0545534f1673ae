"""
engine.py - Log Script Engine (M1c)

Runs one test script against the log output of a simulation.

The script runs on its own thread but never concurrently with the
simulation: every mote log line (and every timer that concerns the script)
is delivered on the simulation's driver thread as exactly one handshake
step, during which the script runs up to its next suspend point.

Session lifecycle:
    Idle -> Starting -> Running -> {Completed | TimedOut | Killed | Errored} -> Idle

- Starting: script thread created, first handshake round not yet done
- Running: one suspend/resume round trip per delivered event
- Completed: testOK()/testFailed() unwinds the script from any call depth;
  a plain return from the body counts as testFailed()
- TimedOut: timeout timer fired; on-timeout code runs once, test fails
- Killed: deactivate(); the script thread stops at its next suspend point
- Errored: any script exception; logged, session torn down, simulation
  stopped (exit code 1 when unattended)

Cancellation is cooperative. A script that loops forever without reaching
a suspend point cannot be stopped and deactivate() will block on it.
"""

import logging
import threading
import time
import types
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from motesim.harness.simulation import (
    MILLISECOND, SECOND, LogOutputEvent, Simulation, TimeEvent
)
from motesim.script.errors import ScriptCompileError, ScriptRuntimeError
from motesim.script.handshake import Handshake
from motesim.script.log import ScriptLog
from motesim.script.parser import ParsedScript, preprocess

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_US = 20 * 60 * 1000 * MILLISECOND  # 20 simulated minutes
SCRIPT_FILENAME = '<test script>'


@dataclass
class CompiledScript:
    """Compiled test script, ready for activate()."""
    code: types.CodeType
    timeout_us: int
    parsed: ParsedScript


class _VerdictReported(BaseException):
    """Unwinds the script thread after testOK()/testFailed()."""
    pass


class ScriptSession:
    """Live state of one script activation."""

    def __init__(self, compiled: CompiledScript, namespace: Dict[str, Any]):
        self.compiled = compiled
        self.namespace = namespace
        self.handshake = Handshake()
        self.thread: Optional[threading.Thread] = None
        self.shutdown = False
        self.timed_out = False
        self.start_time_us = 0
        self.start_wall_time = 0.0
        self.timeout_event: Optional[TimeEvent] = None
        self.progress_event: Optional[TimeEvent] = None

    @property
    def progress_interval_us(self) -> int:
        return max(SECOND, self.compiled.timeout_us // 20)


class LogScriptEngine:
    """
    Compiles, activates and steps a test script.

    Usage:
        engine = LogScriptEngine(simulation, log_dir='logs')
        compiled = engine.compile_script(source)
        engine.activate(compiled)
        simulation.run()
        engine.close_log()

    Unattended (visualized=False) runs write the script log to a test log
    file and stop the simulation with exit code 0/1 on a verdict.
    """

    def __init__(
        self,
        simulation: Simulation,
        visualized: bool = False,
        log_dir: Optional[str] = None,
        log_number: int = 0
    ):
        """
        Args:
            simulation: Simulation whose mote log output drives the script
            visualized: True when an operator is watching; the simulation is
                then stopped without an exit code
            log_dir: Directory for the test log file (unattended only);
                None disables the file
            log_number: Suffix for numbered test logs (0 = no suffix)
        """
        self.simulation = simulation
        self.visualized = visualized
        self.session: Optional[ScriptSession] = None
        self.exit_code: Optional[int] = None
        self.script_log = ScriptLog(self)

        self._lock = threading.Lock()
        self._log_observer: Optional[Callable[[str], None]] = None
        self._error_observer: Optional[Callable[[ScriptRuntimeError], None]] = None
        self._log_file = None
        self.log_path: Optional[Path] = None

        if not visualized and log_dir is not None:
            name = "motesim.testlog" if log_number == 0 else f"motesim-{log_number:02d}.testlog"
            self.log_path = Path(log_dir) / name
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            self._log_file = open(self.log_path, 'w', encoding='utf-8')
            self._log_file.write(f"Random seed: {simulation.seed}\n")
            self._log_file.flush()

    # ------------------------------------------------------------------
    # Observers and script log
    # ------------------------------------------------------------------

    def set_script_log_observer(self, observer: Optional[Callable[[str], None]]):
        self._log_observer = observer

    def set_error_observer(self, observer: Optional[Callable[[ScriptRuntimeError], None]]):
        """Called with the wrapped error when a script fails at runtime."""
        self._error_observer = observer

    def script_log_message(self, text: str):
        if self._log_observer is not None:
            self._log_observer(text)
        if self._log_file is not None:
            self._log_file.write(text)
            self._log_file.flush()

    def close_log(self):
        """Unsubscribe from the simulation and close the test log file."""
        self.simulation.remove_log_output_listener(self.on_log_line)
        if self._log_file is None:
            return
        self._log_file.write(
            f"Test ended at simulation time: {self.simulation.current_time_us}\n"
        )
        self._log_file.close()
        self._log_file = None

    # ------------------------------------------------------------------
    # Compile / activate / deactivate
    # ------------------------------------------------------------------

    def compile_script(self, source: str) -> CompiledScript:
        """
        Preprocess and compile a test script.

        Does not touch engine state, so a failed compile leaves any active
        session alone.

        Raises:
            ScriptSyntaxError: Malformed or duplicated macro directive
            ScriptCompileError: Preprocessed program is not valid Python
        """
        parsed = preprocess(source)
        if parsed.timeout is not None:
            timeout_us = parsed.timeout.duration_ms * MILLISECOND
        else:
            timeout_us = DEFAULT_TIMEOUT_US
        logger.info(f"Script timeout in {timeout_us // MILLISECOND} ms")

        try:
            code = compile(parsed.program, SCRIPT_FILENAME, 'exec')
        except SyntaxError as e:
            lineno = e.lineno - parsed.body_line_offset if e.lineno else None
            if lineno is not None and lineno < 1:
                # Error inside the TIMEOUT handler code
                raise ScriptCompileError(f"{e.msg} (TIMEOUT handler)") from e
            raise ScriptCompileError(f"{e.msg} (script line {lineno})", lineno=lineno) from e

        return CompiledScript(code=code, timeout_us=timeout_us, parsed=parsed)

    def activate(self, compiled: Optional[CompiledScript]) -> bool:
        """
        Start a compiled script.

        Returns once the script has reached its first suspend point.

        Returns:
            True if the script is now active; False if nothing was compiled,
            a script is already active, or the script died while starting
        """
        if compiled is None:
            logger.warning("No compiled script to activate")
            return False

        session = ScriptSession(compiled, self._create_namespace())
        exec(compiled.code, session.namespace)

        with self._lock:
            if self.session is not None:
                logger.warning("A test script is already active")
                return False
            self.session = session
        self.exit_code = None
        session.thread = threading.Thread(
            target=self._script_main,
            args=(session,),
            name="script",
            daemon=True
        )
        session.thread.start()
        session.handshake.wait_for_script()
        if session.shutdown:
            logger.error("Test script stopped before reaching its first suspend point")
            return False

        session.start_wall_time = time.time()
        session.start_time_us = self.simulation.current_time_us
        if self.simulation.is_running:
            self.simulation.invoke_simulation_thread(lambda: self._arm(session))
        else:
            self._arm(session)
        return True

    def deactivate(self):
        """
        Stop the active script. Safe to call repeatedly and from the script
        thread itself (which is then not joined).
        """
        with self._lock:
            session, self.session = self.session, None
        if session is not None:
            self._teardown(session)

    def _end_session(self, session: ScriptSession):
        """Script thread exit: tear down session unless it was already replaced."""
        with self._lock:
            if self.session is not session:
                return
            self.session = None
        self._teardown(session)

    def _teardown(self, session: ScriptSession):
        session.shutdown = True
        session.namespace['SHUTDOWN'] = True
        for event in (session.timeout_event, session.progress_event):
            if event is not None:
                event.remove()
        self.simulation.remove_log_output_listener(self.on_log_line)

        session.handshake.release_all()

        if session.thread is not None and session.thread is not threading.current_thread():
            session.thread.join()
        logger.debug("Test script deactivated")

    def is_active(self) -> bool:
        return self.session is not None

    # ------------------------------------------------------------------
    # Driver-thread side
    # ------------------------------------------------------------------

    def on_log_line(self, event: LogOutputEvent):
        """Log output listener. Only called on the simulation thread."""
        session = self.session
        if session is None or not session.thread.is_alive():
            return

        namespace = session.namespace
        namespace['mote'] = event.mote
        namespace['id'] = event.mote.mote_id if event.mote is not None else None
        namespace['time'] = event.time_us
        namespace['msg'] = event.msg

        self._step(session)

    def generate_message(self, mote, delay_ms: int, text: str):
        """
        Deliver text as a log line of mote, delay_ms from now.

        May be called from the script thread; scheduling happens on the
        simulation thread.
        """
        def deliver(time_us: int):
            session = self.session
            if session is None or not session.thread.is_alive():
                logger.info("Script thread not alive, dropping generated message")
                return
            self.on_log_line(LogOutputEvent(time_us=time_us, mote=mote, msg=text))

        def schedule():
            self.simulation.schedule_event(
                TimeEvent(deliver, name=f"generated:{text!r}"),
                self.simulation.current_time_us + delay_ms * MILLISECOND
            )

        self.simulation.invoke_simulation_thread(schedule)

    def current_mote(self):
        session = self.session
        return session.namespace.get('mote') if session is not None else None

    def _step(self, session: ScriptSession):
        if session.shutdown:
            return
        session.handshake.step()

    def _arm(self, session: ScriptSession):
        """Subscribe to log output and schedule both timers."""
        if session.shutdown:
            return
        self.simulation.add_log_output_listener(self.on_log_line)

        session.progress_event = TimeEvent(self._report_progress, name="script progress")
        self.simulation.schedule_event(
            session.progress_event,
            session.start_time_us + session.progress_interval_us
        )
        session.timeout_event = TimeEvent(self._timeout_expired, name="script timeout")
        self.simulation.schedule_event(
            session.timeout_event,
            session.start_time_us + session.compiled.timeout_us
        )

    def _timeout_expired(self, time_us: int):
        session = self.session
        if session is None:
            return
        logger.info(f"Timeout event @ {time_us}")
        session.timed_out = True
        session.namespace['TIMEOUT'] = True
        self._step(session)
        self.deactivate()

    def _report_progress(self, time_us: int):
        session = self.session
        if session is None:
            return
        self.simulation.schedule_event(session.progress_event, time_us + session.progress_interval_us)

        timeout_us = session.compiled.timeout_us
        progress = (time_us - session.start_time_us) / timeout_us if timeout_us > 0 else 1.0
        real_duration = time.time() - session.start_wall_time
        estimated_left = real_duration / progress - real_duration if progress > 0 else 0.0
        logger.info(f"{int(100 * progress):2d}% completed, {estimated_left:4.1f} sec remaining")

    # ------------------------------------------------------------------
    # Script-thread side
    # ------------------------------------------------------------------

    def _create_namespace(self) -> Dict[str, Any]:
        return {
            '__name__': '__script__',
            'log': self.script_log,
            'testOK': self.script_log.testOK,
            'testFailed': self.script_log.testFailed,
            'sim': self.simulation,
            'shared': {},
            'mote': None,
            'id': None,
            'time': self.simulation.current_time_us,
            'msg': '',
            'SHUTDOWN': False,
            'TIMEOUT': False,
        }

    def _script_main(self, session: ScriptSession):
        """
        Script thread: drive the script generator one suspend point at a time.

        The driver stays blocked until this thread has left the user's code;
        _end_session() releases it.
        """
        body = session.namespace['_run']()
        try:
            for _ in body:
                if not self._suspend(session):
                    break
            else:
                # Explicit return from the body without a verdict
                logger.warning("Test script returned without a verdict")
                self.script_log.testFailed()
        except _VerdictReported:
            pass
        except Exception as e:
            self._script_failed(e)
        finally:
            self._close_body(body)
            self._end_session(session)
        logger.debug("Test script finished")

    def _close_body(self, body):
        """Close the generator; finally clauses of the script run here."""
        try:
            body.close()
        except _VerdictReported:
            pass
        except Exception as e:
            self._script_failed(e)

    def _suspend(self, session: ScriptSession) -> bool:
        """Hand control to the simulation. False once the script must stop."""
        if session.shutdown:
            return False
        session.handshake.suspend()
        if session.shutdown:
            return False
        if session.timed_out:
            self._run_timeout(session)
            return False
        return True

    def _run_timeout(self, session: ScriptSession):
        """Run the TIMEOUT handler, then fail. A verdict from the handler wins."""
        session.namespace['_on_timeout']()
        self.script_log.log("TEST TIMEOUT\n")
        self.script_log.testFailed()

    def _script_failed(self, error: Exception):
        logger.error("Script error:", exc_info=error)
        failure = ScriptRuntimeError(f"Script error: {type(error).__name__}: {error}")
        failure.__cause__ = error

        if self._error_observer is not None:
            self._error_observer(failure)
        if self.exit_code is not None:
            return
        self.exit_code = 1
        if not self.visualized:
            logger.error("Test script error, terminating simulation")
        self.simulation.invoke_simulation_thread(
            lambda: self.simulation.stop_simulation(None if self.visualized else 1)
        )

    def report_verdict(self, exit_code: int):
        """
        testOK()/testFailed(): record the verdict and end the session.

        On the script thread the verdict unwinds the script from any call
        depth; the session ends once the script thread is out of user code.

        Raises:
            _VerdictReported: When called on the script thread
        """
        if self.exit_code is not None:
            logger.debug(f"Verdict already reported, ignoring exit code {exit_code}")
            return
        self.exit_code = exit_code
        if exit_code == 0:
            logger.info("TEST OK")
            self.script_log_message("TEST OK\n")
        else:
            logger.warning("TEST FAILED")
            self.script_log_message("TEST FAILED\n")

        if self.visualized:
            self.script_log_message(
                "[if test was run without visualization, the simulation would now have been terminated]\n"
            )
        self.simulation.invoke_simulation_thread(
            lambda: self.simulation.stop_simulation(None if self.visualized else exit_code)
        )

        session = self.session
        if session is not None and session.thread is threading.current_thread():
            session.shutdown = True
            raise _VerdictReported()
        self.deactivate()
