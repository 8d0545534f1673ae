"""
handshake.py - Simulation/script rendezvous (M1b)

Two counting semaphores used strictly as a rendezvous between the
simulation's driver thread and the script thread:

    driver                          script
    ------                          ------
    script_gate.release()   ----->  (wakes from script_gate.acquire())
    sim_gate.acquire()              runs until its next suspend point
         (blocks)                   sim_gate.release()
    (wakes)                 <-----  script_gate.acquire()  (blocks)

Exactly one side runs application logic at any time, and the script can
never run ahead of simulated time. The acquire/release order above is what
prevents lost wake-ups and double resumes; do not reorder it.

Both gates start empty. The first round is completed by the activating
thread calling wait_for_script() while the script runs up to its initial
suspend point.
"""

import threading

# Enough permits to unblock any waiter on either side; each gate has at
# most one waiter.
RELEASE_ALL = 100


class Handshake:
    """Two-gate handshake for one script session."""

    def __init__(self):
        self.script_gate = threading.Semaphore(0)
        self.sim_gate = threading.Semaphore(0)

    def step(self):
        """Driver side: resume the script and block until it suspends again."""
        self.script_gate.release()
        self.sim_gate.acquire()

    def wait_for_script(self):
        """Driver side: block until the script reaches its first suspend point."""
        self.sim_gate.acquire()

    def suspend(self):
        """Script side: hand control to the driver and block until resumed."""
        self.sim_gate.release()
        self.script_gate.acquire()

    def release_all(self):
        """Unblock both sides for teardown. The handshake is unusable afterwards."""
        self.script_gate.release(RELEASE_ALL)
        self.sim_gate.release(RELEASE_ALL)
