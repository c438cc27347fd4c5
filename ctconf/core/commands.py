"""External command execution with timeouts."""
import subprocess
from typing import Callable, List, Optional

from ctconf.core.errors import ExternalCommandError
from ctconf.core.logger import get_logger

logger = get_logger(__name__)


def run_command(
    cmd: List[str],
    timeout: Optional[int] = None,
    mock: bool = False,
    outfunc: Optional[Callable[[str], None]] = None,
    input: Optional[str] = None,
    vmid: Optional[int] = None,
) -> subprocess.CompletedProcess:
    """Run an external command and raise on failure.

    Args:
        cmd: Command and arguments
        timeout: Seconds before the process is killed (None = no limit)
        mock: Log the command instead of running it
        outfunc: Optional callback invoked once per stdout line
        input: Optional text passed on stdin
        vmid: Container id recorded on the raised error

    Returns:
        CompletedProcess with captured text output

    Raises:
        ExternalCommandError: On non-zero exit or timeout
    """
    cmd = [str(part) for part in cmd]

    if mock:
        logger.info(f"MOCK: Would run {' '.join(cmd)}")
        return subprocess.CompletedProcess(cmd, 0, "", "")

    logger.debug(f"Command: {' '.join(cmd)}")
    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            check=True,
            timeout=timeout,
            input=input,
        )
    except subprocess.TimeoutExpired as e:
        raise ExternalCommandError(cmd, timed_out=True, vmid=vmid) from e
    except subprocess.CalledProcessError as e:
        raise ExternalCommandError(cmd, returncode=e.returncode, stderr=e.stderr or "", vmid=vmid) from e
    except FileNotFoundError as e:
        raise ExternalCommandError(cmd, returncode=127, stderr=str(e), vmid=vmid) from e

    if outfunc:
        for line in result.stdout.splitlines():
            outfunc(line)

    return result
