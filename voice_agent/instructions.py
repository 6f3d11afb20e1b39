"""
System instructions for the rental intake agent.

Scenarios are YAML files in `scenarios/` (PyYAML safe_load, which also
reads plain JSON). Selection: explicit name, then AGENT_SCENARIO, then
"default"; if no file matches, the built-in prompt is used.
"""

import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml


AGENT_INSTRUCTIONS = """
You are "AutoRent Agent", the voice interface for AutoRent Azores.
Your voice is warm, professional, and efficient. Speak Portuguese (PT-PT) by default.

You control the user's screen. Do not just talk about a step; take the user there
with navigateApp. Call updateReservationDetails as soon as the user gives information
and confirm every field before moving on.
""".strip()

DEFAULT_GREETING = "Olá! Bem-vindo à AutoRent. Vamos tratar do seu aluguer."


def _get_scenarios_dir() -> Path:
    return Path(__file__).parent / "scenarios"


def _load_file(path: Path) -> Dict[str, Any]:
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Scenario file {path} must contain a mapping at top-level")
    return data


def load_scenario(scenario_name: str) -> Dict[str, Any]:
    """
    Load a scenario by name.

    Resolution order: <name>.yaml, <name>.yml, <name>.json, then the same
    for "default", then the built-in prompt.
    """
    scenarios_dir = _get_scenarios_dir()
    for name in (scenario_name, "default"):
        for suffix in (".yaml", ".yml", ".json"):
            candidate = scenarios_dir / f"{name}{suffix}"
            if candidate.exists():
                return _load_file(candidate)

    return {
        "name": "default",
        "prompt": AGENT_INSTRUCTIONS,
        "greeting_text": DEFAULT_GREETING,
    }


def get_scenario(name: Optional[str] = None) -> Dict[str, Any]:
    return load_scenario(name or os.getenv("AGENT_SCENARIO", "default"))


def get_instructions(name: Optional[str] = None, custom_instructions: Optional[str] = None) -> str:
    """Base system prompt for a scenario, optionally extended."""
    scenario = get_scenario(name)
    prompt = (scenario.get("prompt") or AGENT_INSTRUCTIONS).strip()

    if custom_instructions:
        return f"{prompt}\n\n{custom_instructions}"
    return prompt


def get_greeting_text(name: Optional[str] = None) -> str:
    return get_scenario(name).get("greeting_text", DEFAULT_GREETING)
