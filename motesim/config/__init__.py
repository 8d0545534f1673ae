"""
motesim.config - Scenario configuration

Provides YAML-based scenario parsing for scripted test runs.
"""

from .scenario import MoteConfig, MoteOutput, Scenario, load_scenario

__all__ = ['MoteConfig', 'MoteOutput', 'Scenario', 'load_scenario']
