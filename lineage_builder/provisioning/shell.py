"""Local command execution helper."""

import asyncio
import logging

logger = logging.getLogger(__name__)


async def run_shell_cmd(command, timeout=600, cwd=None, env=None, display=None):
    """Run a local command and return (returncode, stdout, stderr).

    Args:
        command: list of command arguments
        timeout: maximum seconds to wait for the command
        cwd: working directory for the command
        env: full environment for the child, or None to inherit
        display: text logged instead of the command line, for commands
            that carry credentials in their arguments

    Returns:
        (returncode, stdout, stderr) tuple
    """
    logger.info(f"$ {display or ' '.join(command)}")
    try:
        proc = await asyncio.create_subprocess_exec(
            *command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
            env=env,
        )
    except FileNotFoundError:
        logger.error(f"Error: '{command[0]}' not found. Is it installed and on PATH?")
        return 127, "", f"'{command[0]}' not found"

    try:
        stdout_bytes, stderr_bytes = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except TimeoutError:
        logger.error(f"Command timed out after {timeout}s: {display or command[0]}")
        proc.kill()
        await proc.wait()
        return 1, "", f"timed out after {timeout}s"
    stdout = stdout_bytes.decode(errors="replace") if stdout_bytes else ""
    stderr = stderr_bytes.decode(errors="replace") if stderr_bytes else ""
    return proc.returncode, stdout, stderr
