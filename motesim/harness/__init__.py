"""
motesim.harness - Simulation and test-run orchestration

Minimal discrete-event simulation and scripted motes. The launcher and
CLI live in motesim.harness.launcher / motesim.harness.run_script (not
imported here, they depend on motesim.script).
"""

from .simulation import Simulation, TimeEvent, LogOutputEvent, MILLISECOND, SECOND
from .mote import Mote, ScriptedMote

__all__ = [
    'Simulation',
    'TimeEvent',
    'LogOutputEvent',
    'MILLISECOND',
    'SECOND',
    'Mote',
    'ScriptedMote',
]
