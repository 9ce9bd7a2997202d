"""
Runs the external automation scripts (AutoHotkey or any executable).
"""

import asyncio
import logging
import os
from typing import Optional, Sequence

from config import AUTOHOTKEY_EXE, SCRIPT_TIMEOUT_SECONDS
from errors import ScriptExecutionError, ScriptNotConfiguredError, ScriptNotFoundError
from models import ScriptResult

logger = logging.getLogger(__name__)


class ScriptExecutor:
    """Launch a script as a subprocess and capture its output."""

    def __init__(
        self,
        autohotkey_exe: Optional[str] = AUTOHOTKEY_EXE,
        timeout: float = SCRIPT_TIMEOUT_SECONDS,
    ):
        self.autohotkey_exe = autohotkey_exe or None
        self.timeout = timeout

    def build_command(self, script_path: str, args: Sequence[str] = ()) -> list:
        path = os.path.normpath(script_path)
        if path.lower().endswith(".ahk") and self.autohotkey_exe:
            return [self.autohotkey_exe, path, *args]
        return [path, *args]

    async def run(self, script_path: Optional[str], args: Sequence[str] = (), name: str = "script") -> ScriptResult:
        """
        Run `script_path` with `args` and return its captured output.

        Raises ScriptNotConfiguredError when the path is unset,
        ScriptNotFoundError when the file is missing and
        ScriptExecutionError on non-zero exit or timeout. A zero exit with
        stderr output is returned normally so callers can inspect it.
        """
        if not script_path:
            raise ScriptNotConfiguredError(f"Path for {name} is not configured")
        if not os.path.isfile(script_path):
            raise ScriptNotFoundError(f"{name} not found at {script_path}", script_path=script_path)

        command = self.build_command(script_path, [str(arg) for arg in args])
        logger.info("Executing %s: %s", name, command)

        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as error:
            raise ScriptExecutionError(
                f"Could not start {name}: {error}",
                script_path=script_path,
            ) from error

        try:
            stdout_raw, stderr_raw = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError as error:
            process.kill()
            await process.wait()
            raise ScriptExecutionError(
                f"{name} timed out after {self.timeout:.0f}s",
                script_path=script_path,
            ) from error

        stdout = stdout_raw.decode(errors="replace").strip()
        stderr = stderr_raw.decode(errors="replace").strip()

        if process.returncode != 0:
            logger.error(
                "%s (%s) exited with code %s. Stderr:\n%s",
                name, script_path, process.returncode, stderr or "(no stderr)",
            )
            raise ScriptExecutionError(
                f"{name} exited with code {process.returncode}",
                script_path=script_path,
                returncode=process.returncode,
                stdout=stdout,
                stderr=stderr,
            )

        if stderr:
            logger.warning("Stderr from %s (%s):\n%s", name, script_path, stderr)
        logger.info("Successfully executed %s. Stdout: %s", name, stdout or "(no stdout)")
        return ScriptResult(stdout=stdout, stderr=stderr, returncode=process.returncode)
