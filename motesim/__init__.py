"""
motesim - Scripted test automation for mote log output

Test scripts are Python with a few blocking-style macros (WAIT_UNTIL,
YIELD, TIMEOUT). The LogScriptEngine runs them against the log output of a
discrete-event simulation without ever blocking the simulation loop.
"""

__version__ = "0.1.0"
