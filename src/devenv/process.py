"""External command execution."""

import asyncio
import os
import re
import shlex
import shutil
from pathlib import Path
from typing import Mapping, Optional, Sequence

from devenv.errors import CommandTimeout, InstallFailed
from devenv.logging import get_logger
from devenv.types import CommandResult

logger = get_logger(__name__)

TRANSIENT_PATTERNS = re.compile(
    r"Could not resolve|Connection timed out|Failed to fetch|"
    r"Network is unreachable|Temporary failure in name resolution|"
    r"Failed to connect|Connection reset|Connection refused|"
    r"timed out|ETIMEDOUT|ECONNRESET|EAI_AGAIN|HTTP 5\d\d|"
    r"503 Service Unavailable|502 Bad Gateway|TLS handshake timeout",
    re.IGNORECASE,
)


async def run_command(
    args: Sequence[str],
    env: Optional[Mapping[str, str]] = None,
    cwd: Optional[Path] = None,
    timeout: Optional[float] = None,
) -> CommandResult:
    """Run an external command and capture its output.

    ``env`` is layered over the current process environment.

    Raises:
        CommandTimeout: If the command does not finish within ``timeout``;
            the process is killed first.
        FileNotFoundError: If the executable does not exist.
    """
    cmd = shlex.join(args)
    cmd_env = {**os.environ, **(env or {})}

    logger.debug("cmd_exec", cmd=cmd, cwd=str(cwd) if cwd else None)

    process = await asyncio.create_subprocess_exec(
        *args,
        cwd=cwd,
        env=cmd_env,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        logger.warning("cmd_timeout", cmd=cmd, timeout=timeout)
        raise CommandTimeout(cmd, timeout)

    result = CommandResult(
        returncode=process.returncode,
        stdout=stdout.decode(errors="replace") if stdout else "",
        stderr=stderr.decode(errors="replace") if stderr else "",
    )

    if result.stderr:
        logger.debug("cmd_stderr", cmd=cmd, output=result.stderr)
    logger.debug("cmd_complete", cmd=cmd, returncode=result.returncode)

    return result


def which(name: str, env: Optional[Mapping[str, str]] = None) -> Optional[Path]:
    """Locate an executable using the PATH of ``env`` (or the process PATH)."""
    path = (env or {}).get("PATH") or os.environ.get("PATH")
    found = shutil.which(name, path=path)
    return Path(found) if found else None


def classify_output(output: str) -> bool:
    """True when command output points at a transient (network/timeout) failure."""
    return bool(TRANSIENT_PATTERNS.search(output or ""))


def check_result(
    result: CommandResult, plugin: str, version: Optional[str], action: str
) -> CommandResult:
    """Raise InstallFailed for a non-zero exit, classified by its output."""
    if result.ok:
        return result
    output = result.stderr.strip() or result.stdout.strip()
    raise InstallFailed(
        plugin,
        version,
        f"{action} exited with code {result.returncode}: {output[-2000:]}",
        transient=classify_output(output),
        details={"returncode": result.returncode},
    )

