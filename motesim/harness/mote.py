"""
mote.py - Simulated motes (M0)

A mote here is just a source of log lines and a sink for serial input.
ScriptedMote replays a fixed output schedule and answers serial input from
a lookup table, which is enough to drive test scripts end to end.
"""

from typing import Dict, Iterable, List, Optional, Tuple

from motesim.harness.simulation import MILLISECOND, Simulation, TimeEvent


class Mote:
    """Base mote: forwards log output to the simulation, records serial input."""

    def __init__(self, mote_id: int, simulation: Simulation):
        self.mote_id = mote_id
        self.simulation = simulation
        self.serial_input: List[str] = []

    def start(self):
        """Schedule the mote's initial events. No-op for the base mote."""
        pass

    def log_output(self, msg: str):
        """Emit one log line at the current simulation time."""
        self.simulation.log_output(self, msg)

    def write_string(self, text: str):
        """
        Write text to the mote's serial input.

        Safe to call from the script thread: delivery happens on the
        simulation thread.
        """
        self.simulation.invoke_simulation_thread(lambda: self._receive(text))

    def _receive(self, text: str):
        self.serial_input.append(text)
        self.on_serial_input(text)

    def on_serial_input(self, text: str):
        pass

    def __repr__(self) -> str:
        return f"{type(self).__name__}(id={self.mote_id})"


class ScriptedMote(Mote):
    """
    Mote with a canned behavior.

    Usage:
        mote = ScriptedMote(1, sim,
                            outputs=[(500 * MILLISECOND, "Hello, world")],
                            responses={"ping": "pong"})
        sim.add_mote(mote)
        mote.start()
    """

    def __init__(
        self,
        mote_id: int,
        simulation: Simulation,
        outputs: Iterable[Tuple[int, str]] = (),
        responses: Optional[Dict[str, str]] = None,
        response_delay_us: int = MILLISECOND
    ):
        """
        Args:
            mote_id: Mote identifier, published to scripts as `id`
            simulation: Owning simulation
            outputs: (time_us, line) pairs printed at absolute times
            responses: Serial input line -> reply printed after response_delay_us
            response_delay_us: Delay between serial input and its reply
        """
        super().__init__(mote_id, simulation)
        self.outputs = sorted(outputs, key=lambda output: output[0])
        self.responses = responses or {}
        self.response_delay_us = response_delay_us

    def start(self):
        for time_us, msg in self.outputs:
            self.simulation.schedule_event(self._output_event(msg), time_us)

    def on_serial_input(self, text: str):
        reply = self.responses.get(text.strip())
        if reply is None:
            return
        self.simulation.schedule_event(
            self._output_event(reply),
            self.simulation.current_time_us + self.response_delay_us
        )

    def _output_event(self, msg: str) -> TimeEvent:
        return TimeEvent(lambda t: self.log_output(msg), name=f"mote{self.mote_id}:{msg!r}")
