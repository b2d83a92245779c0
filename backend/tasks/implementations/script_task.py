"""Script execution handler for ScriptTask steps.

Runs a Python script in a subprocess with the step input injected as
variables. The last line of stdout, if it is JSON, becomes the result.
"""

import asyncio
import json
import os
import sys
import tempfile
from typing import Any, Dict

import structlog

from tasks.base_task import BaseHandler, HandlerResult

logger = structlog.get_logger(__name__)

MAX_SCRIPT_TIMEOUT_SECONDS = 300


class PythonScriptHandler(BaseHandler):
    """Execute Python code in an isolated subprocess.

    Parameters:
        script: Python source code (required)
        language: Must be "python" (default)
        timeout: Execution timeout in seconds (default: 60, capped at 300)
        inputs: Extra variables to inject; the step input is always injected
    """

    handler_type = "script"
    display_name = "Python Script"
    description = "Execute Python code in a subprocess"

    async def execute(self, parameters: Dict[str, Any], context: Dict[str, Any]) -> HandlerResult:
        code = parameters.get("script") or parameters.get("code")
        if not code:
            return HandlerResult.fail("Missing required parameter: script", "ConfigurationError")

        language = str(parameters.get("language") or "python").lower()
        if language != "python":
            return HandlerResult.fail(f"Unsupported script language: {language}", "ConfigurationError")

        timeout = min(float(parameters.get("timeout", 60)), MAX_SCRIPT_TIMEOUT_SECONDS)
        inputs = {**(context.get("input") or {}), **(parameters.get("inputs") or {})}

        with tempfile.NamedTemporaryFile(mode="w", suffix=".py", delete=False) as f:
            f.write(self._build_script(code, inputs))
            script_path = f.name

        try:
            process = await asyncio.create_subprocess_exec(
                sys.executable, script_path,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env={**os.environ},
            )
            try:
                stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
            except asyncio.TimeoutError:
                process.kill()
                await process.wait()
                return HandlerResult.fail(f"Script timed out after {timeout}s", "TimeoutError")
        finally:
            os.unlink(script_path)

        stdout_text = stdout.decode("utf-8", errors="replace").strip()
        stderr_text = stderr.decode("utf-8", errors="replace").strip()

        result_data: Any = None
        if stdout_text:
            try:
                result_data = json.loads(stdout_text.splitlines()[-1])
            except json.JSONDecodeError:
                result_data = stdout_text

        output = {
            "return_code": process.returncode,
            "stdout": stdout_text,
            "stderr": stderr_text,
            "result": result_data,
        }
        if process.returncode != 0:
            return HandlerResult.fail(stderr_text or f"Exit code {process.returncode}", "ScriptError", output=output)
        return HandlerResult.ok(output)

    def _build_script(self, code: str, inputs: dict) -> str:
        """Build a runnable script with injected variables."""
        lines = ["import json", "import sys", ""]

        if inputs:
            lines.append(f"_inputs = json.loads({json.dumps(json.dumps(inputs, default=str))})")
            for key in inputs:
                if key.isidentifier():
                    lines.append(f"{key} = _inputs[{json.dumps(key)}]")
            lines.append("")

        lines.append(code)
        return "\n".join(lines)


# Export for handler registry
SCRIPT_HANDLER_TYPES = {
    "script": PythonScriptHandler,
}
