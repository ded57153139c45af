"""Every public module must import cleanly on its own."""

from __future__ import annotations

import os
import subprocess
import sys
from pathlib import Path

import pytest

SRC_DIR = Path(__file__).resolve().parents[1] / "src"


@pytest.mark.parametrize(
    "module",
    [
        "canvasagent.ai.agent.messages",
        "canvasagent.ai.agent.stream_agent",
        "canvasagent.ai.agent.agent",
        "canvasagent.ai.prompt.system_prompt",
        "canvasagent.ai.providers.factory",
        "canvasagent.services.settings",
        "canvasagent.utils.logging",
    ],
)
def test_module_imports_in_fresh_interpreter(module):
    env = dict(os.environ)
    env["PYTHONPATH"] = os.pathsep.join(filter(None, [str(SRC_DIR), env.get("PYTHONPATH")]))

    result = subprocess.run(
        [sys.executable, "-c", f"import {module}"],
        capture_output=True,
        text=True,
        env=env,
        timeout=60,
    )

    assert result.returncode == 0, result.stderr
