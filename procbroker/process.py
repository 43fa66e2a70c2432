import asyncio
import logging
from typing import AsyncIterator, Awaitable, Callable, Dict, List, Optional, Protocol

logger = logging.getLogger("uvicorn.error")

_READ_SIZE = 4096


class ExternalProcessHandle(Protocol):
    pid: Optional[int]

    @property
    def returncode(self) -> Optional[int]: ...

    async def write_input(self, data: bytes) -> None: ...

    def read_output(self) -> AsyncIterator[bytes]: ...

    async def read_error(self) -> bytes: ...

    def terminate(self) -> None: ...

    def kill(self) -> None: ...

    async def wait(self) -> int: ...


ProcessSpawner = Callable[[List[str], Dict[str, str]], Awaitable[ExternalProcessHandle]]


class AsyncioProcessHandle:
    def __init__(self, process: asyncio.subprocess.Process) -> None:
        self._process = process
        self.pid: Optional[int] = process.pid

    @property
    def returncode(self) -> Optional[int]:
        return self._process.returncode

    async def write_input(self, data: bytes) -> None:
        stdin = self._process.stdin
        if stdin is None:
            return
        try:
            if data:
                stdin.write(data)
                await stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            # The process exited before reading its input; its exit code reports why.
            logger.debug("stdin closed early for pid %s", self.pid)
        finally:
            stdin.close()

    async def read_output(self) -> AsyncIterator[bytes]:
        stdout = self._process.stdout
        if stdout is None:
            return
        while True:
            chunk = await stdout.read(_READ_SIZE)
            if not chunk:
                break
            yield chunk

    async def read_error(self) -> bytes:
        stderr = self._process.stderr
        if stderr is None:
            return b""
        return await stderr.read()

    def terminate(self) -> None:
        try:
            self._process.terminate()
        except ProcessLookupError:
            pass

    def kill(self) -> None:
        try:
            self._process.kill()
        except ProcessLookupError:
            pass

    async def wait(self) -> int:
        return await self._process.wait()


async def spawn_process(argv: List[str], env: Dict[str, str]) -> ExternalProcessHandle:
    process = await asyncio.create_subprocess_exec(
        *argv,
        stdin=asyncio.subprocess.PIPE,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        env=env,
    )
    return AsyncioProcessHandle(process)


async def stop_process(handle: ExternalProcessHandle, grace_s: float) -> bool:
    """Terminate, escalate to kill after ``grace_s``. Returns True if a kill was needed."""
    if handle.returncode is not None:
        return False
    handle.terminate()
    try:
        await asyncio.wait_for(handle.wait(), timeout=grace_s)
        return False
    except asyncio.TimeoutError:
        pass
    logger.warning("pid %s ignored SIGTERM for %.1fs; killing", handle.pid, grace_s)
    handle.kill()
    try:
        await asyncio.wait_for(handle.wait(), timeout=grace_s)
    except asyncio.TimeoutError:
        logger.warning("pid %s still running after kill", handle.pid)
    return True
