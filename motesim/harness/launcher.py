#!/usr/bin/env python3
"""
launcher.py - Test Run Launcher (M2b)

Manages the lifecycle of one scripted test run:
- Simulation and scripted motes
- Test script compilation and activation
- Test log file

Design philosophy:
- Fail-fast during setup (validation before launch)
- Graceful during execution (errors become a failed SimulationResult)
- Always cleanup on shutdown (script thread joined, test log closed)
"""

import time
from dataclasses import dataclass
from typing import List, Optional

from motesim.config.scenario import Scenario
from motesim.harness.mote import ScriptedMote
from motesim.harness.simulation import MILLISECOND, SECOND, Simulation
from motesim.script.engine import LogScriptEngine
from motesim.script.errors import ScriptError
from motesim.script.parser import preprocess


@dataclass
class SimulationResult:
    """Results from a test run."""
    success: bool
    exit_code: Optional[int]
    duration_sec: float
    virtual_time_sec: float
    error_message: Optional[str] = None


class SimulationLauncher:
    """
    Runs one scenario from setup to verdict.

    Responsibilities:
    1. Validate scenario before launch
    2. Create the simulation and its scripted motes
    3. Compile and activate the test script
    4. Run the simulation until the script reports a verdict
    5. Clean shutdown of the script session and the test log
    """

    def __init__(self, scenario: Scenario, visualized: bool = False, log_number: int = 0):
        """
        Initialize launcher with scenario.

        Args:
            scenario: Parsed scenario configuration
            visualized: Attended run; the script log goes to stdout only
            log_number: Suffix for numbered test log files (0 = none)
        """
        self.scenario = scenario
        self.visualized = visualized
        self.log_number = log_number
        self.simulation: Optional[Simulation] = None
        self.engine: Optional[LogScriptEngine] = None
        self.start_wall_time = None

    def validate_scenario(self) -> List[str]:
        """
        Validate scenario before launch.

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []

        seen = set()
        for mote in self.scenario.motes:
            if mote.id in seen:
                errors.append(f"Duplicate mote id: {mote.id}")
            seen.add(mote.id)

        if not self.scenario.script_code.strip():
            errors.append("Test script is empty")
        else:
            try:
                preprocess(self.scenario.script_code)
            except ScriptError as e:
                errors.append(f"Test script: {e}")

        return errors

    def launch(self) -> Simulation:
        """
        Create all components and activate the test script.

        Returns:
            Simulation ready to run

        Raises:
            ValueError: If validation fails
            ScriptError: If the script does not compile
            RuntimeError: If the script cannot be activated
        """
        print("\n" + "="*60)
        print("motesim Test Launcher")
        print("="*60)

        print("\n[Launcher] Validating scenario...")
        errors = self.validate_scenario()
        if errors:
            error_msg = "Scenario validation failed:\n" + "\n".join(f"  - {e}" for e in errors)
            raise ValueError(error_msg)
        print("[Launcher] ✓ Scenario validation passed")

        print("\n[Launcher] Creating simulation...")
        self.simulation = Simulation(seed=self.scenario.seed)
        print("[Launcher] ✓ Simulation created")
        print(f"  Seed: {self.scenario.seed}")
        if self.scenario.duration_s is not None:
            print(f"  Duration: {self.scenario.duration_s}s")

        print("\n[Launcher] Creating motes...")
        for config in self.scenario.motes:
            mote = ScriptedMote(
                config.id,
                self.simulation,
                outputs=[(o.time_ms * MILLISECOND, o.msg) for o in config.outputs],
                responses=config.responses,
                response_delay_us=config.response_delay_ms * MILLISECOND
            )
            self.simulation.add_mote(mote)
            mote.start()
            print(f"  - mote {config.id}: {len(config.outputs)} output(s), "
                  f"{len(config.responses)} response(s)")
        print(f"[Launcher] ✓ Created {len(self.scenario.motes)} mote(s)")

        print("\n[Launcher] Activating test script...")
        self.engine = LogScriptEngine(
            self.simulation,
            visualized=self.visualized,
            log_dir=None if self.visualized else self.scenario.log_dir,
            log_number=self.log_number
        )
        if self.visualized:
            self.engine.set_script_log_observer(lambda text: print(text, end=''))
        compiled = self.engine.compile_script(self.scenario.script_code)
        if not self.engine.activate(compiled):
            raise RuntimeError("Test script could not be activated")
        print(f"[Launcher] ✓ Test script active (timeout {compiled.timeout_us // MILLISECOND} ms)")
        if self.engine.log_path is not None:
            print(f"  Test log: {self.engine.log_path}")

        print("\n" + "="*60)
        print("Simulation ready to run")
        print("="*60 + "\n")

        return self.simulation

    def run(self) -> SimulationResult:
        """
        Launch and run the test.

        Returns:
            SimulationResult; success only if the script reported testOK
        """
        try:
            simulation = self.launch()

            self.start_wall_time = time.time()
            duration_us = None
            if self.scenario.duration_s is not None:
                duration_us = int(self.scenario.duration_s * SECOND)
            simulation.run(duration_us=duration_us)

            elapsed = time.time() - self.start_wall_time
            exit_code = self.engine.exit_code
            error_message = None
            if exit_code is None:
                error_message = "Simulation ended without a test verdict"
            elif exit_code != 0:
                error_message = "Test failed"
            return SimulationResult(
                success=exit_code == 0,
                exit_code=exit_code,
                duration_sec=elapsed,
                virtual_time_sec=simulation.current_time_us / SECOND,
                error_message=error_message
            )

        except Exception as e:
            elapsed = time.time() - self.start_wall_time if self.start_wall_time else 0
            return SimulationResult(
                success=False,
                exit_code=1,
                duration_sec=elapsed,
                virtual_time_sec=self.simulation.current_time_us / SECOND if self.simulation else 0,
                error_message=str(e)
            )

        finally:
            self.shutdown()

    def shutdown(self):
        """Deactivate the script and close the test log. Safe to call twice."""
        print("\n" + "="*60)
        print("Shutting down test run...")
        print("="*60)

        if self.engine is not None:
            self.engine.deactivate()
            self.engine.close_log()
            print("[Launcher] ✓ Test script deactivated")

        print("\n" + "="*60 + "\n")


def run_scenario(
    scenario_path: str,
    seed: Optional[int] = None,
    visualized: bool = False
) -> SimulationResult:
    """
    Convenience function to run a scenario from YAML file.

    Args:
        scenario_path: Path to YAML scenario file
        seed: Optional override for scenario seed
        visualized: Attended run (no test log file, no exit code on verdict)

    Returns:
        SimulationResult
    """
    from motesim.config.scenario import load_scenario

    scenario = load_scenario(scenario_path)

    if seed is not None:
        scenario.seed = seed

    launcher = SimulationLauncher(scenario, visualized=visualized)
    return launcher.run()
