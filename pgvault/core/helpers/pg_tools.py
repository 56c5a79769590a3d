import logging
import os
import subprocess
import tempfile
import threading
import time
from typing import BinaryIO, Callable, Dict, List, Optional

from pgvault.core.errors import OperationCancelled, PgToolError

logger = logging.getLogger(__name__)

STREAM_CHUNK_SIZE = 1024 * 1024


def quote_identifier(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def quote_literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def connection_args(host: str, port: int, user: str, database: str) -> List[str]:
    return ["--host", host, "--port", str(port), "--username", user, "--dbname", database]


def pg_env(password: str, sslmode: Optional[str] = None) -> Dict[str, str]:
    env = os.environ.copy()
    env["PGPASSWORD"] = password
    if sslmode:
        env["PGSSLMODE"] = sslmode
    return env


def run_pg_tool(
    command: List[str],
    password: str,
    sslmode: Optional[str] = None,
    timeout: Optional[float] = None,
) -> bytes:
    """Run a pg client tool to completion and return its stdout.

    The password travels in PGPASSWORD, never on the command line.
    """
    tool = command[0]
    try:
        result = subprocess.run(
            command,
            capture_output=True,
            env=pg_env(password, sslmode),
            timeout=timeout,
        )
    except subprocess.TimeoutExpired:
        raise OperationCancelled(f"{tool} did not finish within {timeout:g}s")
    except FileNotFoundError:
        raise PgToolError(tool, 127, f"{tool} not found - install postgresql-client")

    if result.returncode != 0:
        raise PgToolError(tool, result.returncode, result.stderr.decode(errors="replace"))
    return result.stdout


class Deadline:
    """One time budget shared by every step of a job.

    ``remaining()`` raises once the budget is spent, so each step gets
    what is left rather than a fresh allowance.
    """

    def __init__(self, timeout: Optional[float], clock: Optional[Callable[[], float]] = None) -> None:
        self.timeout = timeout
        self._clock = clock or time.monotonic
        self.expires_at = None if timeout is None else self._clock() + timeout

    def remaining(self) -> Optional[float]:
        if self.expires_at is None:
            return None
        left = self.expires_at - self._clock()
        if left <= 0:
            raise OperationCancelled(f"job exceeded its {self.timeout:g}s deadline")
        return left


def stream_into_pg_tool(
    command: List[str],
    source: BinaryIO,
    password: str,
    sslmode: Optional[str] = None,
    timeout: Optional[float] = None,
) -> bytes:
    """Feed ``source`` to the tool's stdin chunk by chunk.

    Output goes to a temporary file so a chatty tool can never block on a
    full pipe while we are still writing. A watchdog kills the child when
    ``timeout`` expires, which also unblocks a write stuck on a full pipe.
    Returns the combined output.
    """
    tool = command[0]

    with tempfile.TemporaryFile() as output:
        try:
            process = subprocess.Popen(
                command,
                stdin=subprocess.PIPE,
                stdout=output,
                stderr=subprocess.STDOUT,
                env=pg_env(password, sslmode),
            )
        except FileNotFoundError:
            raise PgToolError(tool, 127, f"{tool} not found - install postgresql-client")

        expired = threading.Event()

        def _expire() -> None:
            expired.set()
            process.kill()

        watchdog = None
        if timeout:
            watchdog = threading.Timer(timeout, _expire)
            watchdog.daemon = True
            watchdog.start()

        truncated = False
        try:
            try:
                while True:
                    chunk = source.read(STREAM_CHUNK_SIZE)
                    if not chunk:
                        break
                    process.stdin.write(chunk)
            except BrokenPipeError:
                logger.debug(f"{tool} closed stdin before the input was fully written")
                truncated = True
            finally:
                try:
                    process.stdin.close()
                except BrokenPipeError:
                    truncated = True
            returncode = process.wait()
        except BaseException:
            process.kill()
            process.wait()
            if expired.is_set():
                raise OperationCancelled(f"{tool} did not finish within {timeout:g}s")
            raise
        finally:
            if watchdog is not None:
                watchdog.cancel()

        output.seek(0)
        captured = output.read()

    if expired.is_set():
        raise OperationCancelled(f"{tool} did not finish within {timeout:g}s")
    if returncode != 0:
        raise PgToolError(tool, returncode, captured.decode(errors="replace"))
    if truncated:
        raise PgToolError(tool, returncode, f"{tool} exited before consuming all input")
    return captured
