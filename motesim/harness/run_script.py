#!/usr/bin/env python3
"""
run_script.py - Unattended Test Execution (M2b)

Runs a scripted test scenario from a YAML configuration file and exits
with the test verdict.

Usage:
    python3 -m motesim.harness.run_script scenarios/hello_world.yaml
    python3 -m motesim.harness.run_script scenarios/hello_world.yaml --seed 123
    python3 -m motesim.harness.run_script scenarios/hello_world.yaml --verbose

Exit status:
    0  test script reported testOK
    1  testFailed, timeout, script error or invalid scenario
"""

import argparse
import logging
import sys
from pathlib import Path

from motesim.config.scenario import load_scenario
from motesim.harness.launcher import SimulationLauncher
from motesim.script.errors import ScriptError


def parse_args(argv=None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="Run a motesim test scenario from YAML configuration.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run scenario with default seed
  python3 -m motesim.harness.run_script scenarios/hello_world.yaml

  # Override seed (recorded in the test log)
  python3 -m motesim.harness.run_script scenarios/hello_world.yaml --seed 123

  # Check scenario and script without running
  python3 -m motesim.harness.run_script scenarios/hello_world.yaml --dry-run
        """
    )

    parser.add_argument(
        "config",
        type=Path,
        help="Path to scenario YAML file"
    )

    parser.add_argument(
        "--seed",
        type=int,
        default=None,
        help="Override random seed (default: use seed from YAML)"
    )

    parser.add_argument(
        "--log-dir",
        type=Path,
        default=None,
        help="Directory for the test log file (default: simulation.log_dir)"
    )

    parser.add_argument(
        "--attended",
        action="store_true",
        help="Print the script log instead of writing a test log file; "
             "verdicts stop the simulation without an exit code"
    )

    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Verbose output (debug logging)"
    )

    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Validate scenario and script without executing"
    )

    return parser.parse_args(argv)


def main(argv=None) -> int:
    """
    Main entry point.

    Returns:
        0 if the test passed, 1 otherwise
    """
    args = parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='[%(name)s] %(levelname)s: %(message)s',
        stream=sys.stderr
    )

    if not args.config.exists():
        print(f"ERROR: Scenario file not found: {args.config}", file=sys.stderr)
        return 1

    try:
        print(f"Loading scenario from: {args.config}")
        scenario = load_scenario(str(args.config))

        if args.seed is not None:
            print(f"Overriding seed: {scenario.seed} → {args.seed}")
            scenario.seed = args.seed

        if args.log_dir is not None:
            scenario.log_dir = str(args.log_dir)

        launcher = SimulationLauncher(scenario, visualized=args.attended)

        if args.dry_run:
            print("\n" + "="*60)
            print("DRY RUN MODE - Validation Only")
            print("="*60)

            errors = launcher.validate_scenario()
            if errors:
                print("\n✗ Scenario validation FAILED:")
                for error in errors:
                    print(f"  - {error}")
                return 1

            print("\n✓ Scenario validation PASSED")
            print("\nScenario summary:")
            print(f"  Seed: {scenario.seed}")
            if scenario.duration_s is not None:
                print(f"  Duration: {scenario.duration_s}s")
            print(f"  Motes: {len(scenario.motes)}")
            print(f"  Script: {scenario.script_path or '(inline)'}")
            print("\n(Use without --dry-run to execute)")
            return 0

        print("\n" + "="*60)
        print("Executing Test")
        print("="*60)

        result = launcher.run()

        print("\n" + "="*60)
        print("Test Complete")
        print("="*60)

        print(f"\nResults:")
        print(f"  Virtual time: {result.virtual_time_sec:.3f}s")
        print(f"  Wall time: {result.duration_sec:.2f}s")

        if result.success:
            print("\n✓ TEST OK")
            return 0

        print("\n✗ TEST FAILED")
        print(f"\nError: {result.error_message}")
        return 1

    except FileNotFoundError as e:
        print(f"\nERROR: File not found: {e}", file=sys.stderr)
        return 1

    except (ValueError, ScriptError) as e:
        print(f"\nERROR: Invalid scenario configuration:", file=sys.stderr)
        print(f"  {e}", file=sys.stderr)
        return 1

    except Exception as e:
        print(f"\nERROR: Unexpected error:", file=sys.stderr)
        print(f"  {type(e).__name__}: {e}", file=sys.stderr)
        if args.verbose:
            import traceback
            traceback.print_exc()
        return 1


if __name__ == "__main__":
    sys.exit(main())
