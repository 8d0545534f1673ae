"""
scenario.py - YAML Scenario Parser (M2a)

Parses scripted test scenarios from YAML configuration files.

Design philosophy:
- Keep it simple: minimal validation, no schema framework
- Fail fast: raise clear exceptions on errors
- No magic: explicit field names, no dynamic configuration

Example YAML:
    simulation:
      seed: 42
      duration_s: 60        # optional hard stop (simulated seconds)
      log_dir: logs         # optional, where motesim.testlog is written

    script:
      path: hello_world.script   # relative to this file
      # or inline:
      # code: |
      #   TIMEOUT(5000)
      #   WAIT_UNTIL(msg == "Hello, world")
      #   log.testOK()

    motes:
      - id: 1
        outputs:
          - time_ms: 500
            msg: "Hello, world"
        responses:
          ping: pong
        response_delay_ms: 2
"""

import yaml
from dataclasses import dataclass, field
from typing import Dict, List, Optional
from pathlib import Path


@dataclass
class MoteOutput:
    """One scripted log line: msg printed at time_ms."""
    time_ms: int
    msg: str

    def __post_init__(self):
        if self.time_ms < 0:
            raise ValueError(f"Output time_ms must be non-negative, got {self.time_ms}")


@dataclass
class MoteConfig:
    """
    Scripted mote configuration.

    Attributes:
        id: Mote identifier (published to scripts as `id`)
        outputs: Log lines printed at fixed simulation times
        responses: Serial input line -> reply log line
        response_delay_ms: Delay between serial input and its reply
    """
    id: int
    outputs: List[MoteOutput] = field(default_factory=list)
    responses: Dict[str, str] = field(default_factory=dict)
    response_delay_ms: int = 1

    def __post_init__(self):
        if self.response_delay_ms < 0:
            raise ValueError(
                f"Mote {self.id}: response_delay_ms must be non-negative, "
                f"got {self.response_delay_ms}"
            )


@dataclass
class Scenario:
    """
    Scripted test scenario.

    Attributes:
        seed: Random seed, recorded in the test log
        motes: Mote configurations
        script_code: Test script source
        script_path: File the script was read from (None for inline code)
        duration_s: Optional simulated-time limit in seconds
        log_dir: Directory for the test log file
    """
    seed: int
    motes: List[MoteConfig]
    script_code: str
    script_path: Optional[str] = None
    duration_s: Optional[float] = None
    log_dir: str = "."

    def __post_init__(self):
        """Validate scenario after initialization."""
        if self.duration_s is not None and self.duration_s <= 0:
            raise ValueError(f"duration_s must be positive, got {self.duration_s}")

        if not self.motes:
            raise ValueError("No motes defined in scenario")


def load_scenario(yaml_path: str) -> Scenario:
    """
    Load scenario from YAML file.

    Args:
        yaml_path: Path to YAML scenario file

    Returns:
        Scenario object with parsed configuration

    Raises:
        FileNotFoundError: If the YAML file or the script file doesn't exist
        ValueError: If required fields are missing or invalid
        yaml.YAMLError: If YAML syntax is invalid
    """
    path = Path(yaml_path)
    if not path.exists():
        raise FileNotFoundError(f"Scenario file not found: {yaml_path}")

    with open(path, 'r') as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML syntax in {yaml_path}: {e}")

    if not isinstance(data, dict):
        raise ValueError(f"Scenario file must contain a YAML dict, got {type(data)}")

    # Simulation section
    if 'simulation' not in data:
        raise ValueError("Missing required section: 'simulation'")

    sim = data['simulation']
    if not isinstance(sim, dict):
        raise ValueError("'simulation' section must be a dict")

    seed = sim.get('seed')
    if seed is None:
        raise ValueError("Missing required field: simulation.seed")

    duration_s = sim.get('duration_s')
    log_dir = sim.get('log_dir', '.')

    # Script section
    if 'script' not in data:
        raise ValueError("Missing required section: 'script'")

    script_code, script_path = _load_script(data['script'], path.parent)

    # Motes section
    if 'motes' not in data:
        raise ValueError("Missing required section: 'motes'")

    motes = data['motes']
    if not isinstance(motes, list):
        raise ValueError("'motes' section must be a list")

    if len(motes) == 0:
        raise ValueError("No motes defined in scenario")

    return Scenario(
        seed=int(seed),
        motes=[_parse_mote(i, mote) for i, mote in enumerate(motes)],
        script_code=script_code,
        script_path=script_path,
        duration_s=float(duration_s) if duration_s is not None else None,
        log_dir=str(log_dir)
    )


def _load_script(script, base_dir: Path):
    """Return (source, path) for the script section; path is None for inline code."""
    if not isinstance(script, dict):
        raise ValueError("'script' section must be a dict")

    if 'code' in script and 'path' in script:
        raise ValueError("'script' section must have either 'path' or 'code', not both")

    if 'code' in script:
        return str(script['code']), None

    if 'path' not in script:
        raise ValueError("'script' section requires 'path' or 'code'")

    script_path = Path(script['path'])
    if not script_path.is_absolute():
        script_path = base_dir / script_path
    if not script_path.exists():
        raise FileNotFoundError(f"Script file not found: {script_path}")

    return script_path.read_text(encoding='utf-8'), str(script_path)


def _parse_mote(i: int, mote) -> MoteConfig:
    if not isinstance(mote, dict):
        raise ValueError(f"Mote {i} must be a dict, got {type(mote)}")

    if 'id' not in mote:
        raise ValueError(f"Mote {i}: Missing required field 'id'")

    outputs = []
    for j, output in enumerate(mote.get('outputs') or []):
        if not isinstance(output, dict):
            raise ValueError(f"Mote {mote['id']}: output {j} must be a dict, got {type(output)}")
        if 'time_ms' not in output:
            raise ValueError(f"Mote {mote['id']}: output {j}: Missing required field 'time_ms'")
        if 'msg' not in output:
            raise ValueError(f"Mote {mote['id']}: output {j}: Missing required field 'msg'")
        outputs.append(MoteOutput(time_ms=int(output['time_ms']), msg=str(output['msg'])))

    responses = mote.get('responses') or {}
    if not isinstance(responses, dict):
        raise ValueError(f"Mote {mote['id']}: 'responses' must be a dict")

    return MoteConfig(
        id=int(mote['id']),
        outputs=outputs,
        responses={str(k): str(v) for k, v in responses.items()},
        response_delay_ms=int(mote.get('response_delay_ms', 1))
    )
