"""Supervision of external tunnel provider processes."""

import asyncio
import os
import re
from typing import Awaitable, Callable, Dict, List, Optional, Pattern, Sequence
from uuid import uuid4

from lattice_agent.models.tunnels import TunnelHandle, TunnelStatus
from lattice_agent.utils import get_logger
from lattice_agent.utils.exceptions import TunnelError

logger = get_logger(__name__)

# Seconds a closed tunnel process gets between SIGTERM and SIGKILL
TERMINATE_GRACE_S = 5.0

# Seconds allowed for the connect-then-close check of the local port
PORT_CHECK_TIMEOUT_S = 3.0

# Provider output lines can be long (ngrok logfmt); keep well above the default 64KiB
STREAM_LIMIT = 1024 * 1024

_SUBDOMAIN_RE = re.compile(r"[^a-z0-9-]+")

ExitCallback = Callable[[TunnelHandle], Optional[Awaitable[None]]]


class TunnelProvider:
    """
    Describes how to run one tunnel provider's CLI.

    A provider knows its executable, the argv for exposing a local port and
    the pattern its output uses to announce the public URL.
    """

    name: str = "generic"
    default_binary: str = ""
    protocols: Sequence[str] = ("http",)
    url_pattern: Pattern[str] = re.compile(r"(https://\S+)")

    def __init__(self, binary: str | None = None, env: Dict[str, str] | None = None) -> None:
        """
        Initialize provider.

        Args:
            binary: Executable to run instead of the provider default
            env: Extra environment for the subprocess
        """
        self.binary = binary or self.default_binary
        self.env = env or {}

    def build_args(self, port: int, protocol: str, subdomain: str | None) -> List[str]:
        raise NotImplementedError

    def extract_url(self, line: str) -> Optional[str]:
        match = self.url_pattern.search(line)
        if not match:
            return None
        return match.group(1) if match.groups() else match.group(0)


class CloudflaredProvider(TunnelProvider):
    """Cloudflare quick tunnels (``*.trycloudflare.com``)."""

    name = "cloudflared"
    default_binary = "cloudflared"
    protocols = ("http",)
    url_pattern = re.compile(r"(https://[a-z0-9-]+\.trycloudflare\.com)")

    def build_args(self, port: int, protocol: str, subdomain: str | None) -> List[str]:
        return [self.binary, "tunnel", "--no-autoupdate", "--url", f"http://127.0.0.1:{port}"]


class NgrokProvider(TunnelProvider):
    """ngrok agent; supports raw TCP for database workloads."""

    name = "ngrok"
    default_binary = "ngrok"
    protocols = ("http", "tcp")
    url_pattern = re.compile(r"url=((?:https|tcp)://[^\s\"]+)")

    def __init__(
        self,
        binary: str | None = None,
        env: Dict[str, str] | None = None,
        authtoken: str | None = None,
    ) -> None:
        super().__init__(binary, env)
        self.authtoken = authtoken

    def build_args(self, port: int, protocol: str, subdomain: str | None) -> List[str]:
        args = [self.binary, protocol, str(port), "--log", "stdout", "--log-format", "logfmt"]
        if self.authtoken:
            args += ["--authtoken", self.authtoken]
        return args


class LocaltunnelProvider(TunnelProvider):
    """localtunnel CLI (``lt``)."""

    name = "localtunnel"
    default_binary = "lt"
    protocols = ("http",)
    url_pattern = re.compile(r"your url is: (https://\S+)", re.IGNORECASE)

    def build_args(self, port: int, protocol: str, subdomain: str | None) -> List[str]:
        args = [self.binary, "--port", str(port)]
        if subdomain:
            args += ["--subdomain", subdomain]
        return args


PROVIDERS = {
    CloudflaredProvider.name: CloudflaredProvider,
    NgrokProvider.name: NgrokProvider,
    LocaltunnelProvider.name: LocaltunnelProvider,
}


def create_provider(
    name: str, binary: str | None = None, ngrok_authtoken: str | None = None
) -> Optional[TunnelProvider]:
    """
    Build the provider selected in settings.

    Returns:
        Provider instance, or None when tunnels are disabled
    """
    if name == "none":
        return None
    if name not in PROVIDERS:
        raise ValueError(f"Unknown tunnel provider: {name}")
    if name == NgrokProvider.name:
        return NgrokProvider(binary, authtoken=ngrok_authtoken)
    return PROVIDERS[name](binary)


def sanitize_subdomain(hint: str | None) -> Optional[str]:
    if not hint:
        return None
    cleaned = _SUBDOMAIN_RE.sub("-", hint.lower()).strip("-")
    return cleaned[:63] or None


class TunnelManager:
    """
    Spawns tunnel provider processes and owns their lifecycle.

    A tunnel is ``connecting`` until the provider prints a public URL,
    ``connected`` afterwards and ``disconnected`` once its process exits.
    A process that exits or stays silent past the URL timeout is an error
    and surfaces as ``TunnelError``.
    """

    def __init__(
        self,
        provider: Optional[TunnelProvider],
        url_timeout_s: float = 30.0,
        probe_host: str = "127.0.0.1",
    ) -> None:
        """
        Initialize tunnel manager.

        Args:
            provider: Provider to spawn, or None to disable tunnels
            url_timeout_s: Seconds to wait for the public URL
            probe_host: Host used for the local port check
        """
        self.provider = provider
        self.url_timeout_s = url_timeout_s
        self.probe_host = probe_host

        self._tunnels: Dict[str, TunnelHandle] = {}
        self._watchers: Dict[str, asyncio.Task] = {}
        self._closing: set[str] = set()
        self._lock = asyncio.Lock()

        # Called when a connected tunnel's process exits without close()
        self.on_unexpected_exit: Optional[ExitCallback] = None

    @property
    def provider_name(self) -> str:
        return self.provider.name if self.provider else "none"

    @property
    def enabled(self) -> bool:
        return self.provider is not None

    async def open(
        self,
        local_port: int,
        protocol: str = "http",
        subdomain_hint: str | None = None,
    ) -> TunnelHandle:
        """
        Expose a local port through the configured provider.

        Args:
            local_port: Host port to expose
            protocol: "http" or "tcp"
            subdomain_hint: Preferred subdomain where the provider supports one

        Returns:
            Connected tunnel handle

        Raises:
            TunnelError: If the tunnel could not be established
        """
        if self.provider is None:
            raise TunnelError(local_port, "tunnels are disabled")
        if protocol not in self.provider.protocols:
            raise TunnelError(
                local_port, f"provider {self.provider.name} does not support {protocol} tunnels"
            )

        await self._check_port(local_port)

        args = self.provider.build_args(local_port, protocol, sanitize_subdomain(subdomain_hint))
        env = {**os.environ, **self.provider.env}

        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                stdin=asyncio.subprocess.DEVNULL,
                env=env,
                limit=STREAM_LIMIT,
            )
        except (FileNotFoundError, PermissionError) as e:
            raise TunnelError(local_port, f"cannot start {args[0]}: {e}")

        handle = TunnelHandle(
            id=f"t_{uuid4()}",
            local_port=local_port,
            provider=self.provider.name,
            protocol=protocol,
            process=process,
        )
        async with self._lock:
            self._tunnels[handle.id] = handle

        logger.info(
            "Tunnel process started",
            extra={"tunnel_id": handle.id, "port": local_port, "provider": self.provider.name, "pid": process.pid},
        )

        try:
            url = await asyncio.wait_for(self._read_url(handle), timeout=self.url_timeout_s)
        except asyncio.TimeoutError:
            await self._discard(handle)
            raise TunnelError(local_port, f"no public URL within {self.url_timeout_s:g} seconds")

        if url is None:
            exit_code = await process.wait()
            handle.exit_code = exit_code
            await self._discard(handle)
            raise TunnelError(local_port, f"provider exited with code {exit_code} before publishing a URL")

        handle.public_url = url
        handle.status = TunnelStatus.CONNECTED
        self._watchers[handle.id] = asyncio.create_task(self._watch(handle))

        logger.info(
            "Tunnel connected",
            extra={"tunnel_id": handle.id, "port": local_port, "url": url},
        )
        return handle

    async def _check_port(self, port: int) -> None:
        """Connect-then-close probe so a dead port fails fast with a clear message."""
        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(self.probe_host, port), timeout=PORT_CHECK_TIMEOUT_S
            )
        except (OSError, asyncio.TimeoutError) as e:
            raise TunnelError(port, f"nothing is listening on {self.probe_host}:{port} ({e})")

        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass

    async def _read_url(self, handle: TunnelHandle) -> Optional[str]:
        """Scan provider output until a URL appears; None means the process exited first."""
        stream = handle.process.stdout
        while True:
            try:
                raw = await stream.readline()
            except ValueError:
                # Line over STREAM_LIMIT; the URL is never in such a line
                continue
            if not raw:
                return None
            line = raw.decode("utf-8", errors="replace").rstrip()
            logger.debug("Tunnel output", extra={"tunnel_id": handle.id, "line": line})
            url = self.provider.extract_url(line)
            if url:
                return url

    async def _watch(self, handle: TunnelHandle) -> None:
        """Drain output of a connected tunnel and record its exit."""
        stream = handle.process.stdout
        while True:
            try:
                raw = await stream.readline()
            except ValueError:
                continue
            if not raw:
                break
        handle.exit_code = await handle.process.wait()

        handle.status = TunnelStatus.DISCONNECTED
        expected = handle.id in self._closing

        async with self._lock:
            self._tunnels.pop(handle.id, None)
            self._watchers.pop(handle.id, None)

        if expected:
            return

        logger.warning(
            "Tunnel process exited unexpectedly",
            extra={"tunnel_id": handle.id, "port": handle.local_port, "exit_code": handle.exit_code},
        )
        if self.on_unexpected_exit is not None:
            try:
                result = self.on_unexpected_exit(handle)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error("Tunnel exit callback failed", extra={"tunnel_id": handle.id, "error": str(e)})

    async def _terminate(self, process: asyncio.subprocess.Process) -> Optional[int]:
        if process.returncode is not None:
            return process.returncode
        try:
            process.terminate()
        except ProcessLookupError:
            return process.returncode
        try:
            return await asyncio.wait_for(process.wait(), timeout=TERMINATE_GRACE_S)
        except asyncio.TimeoutError:
            process.kill()
            return await process.wait()

    async def _discard(self, handle: TunnelHandle) -> None:
        handle.status = TunnelStatus.ERROR
        async with self._lock:
            self._tunnels.pop(handle.id, None)
        handle.exit_code = await self._terminate(handle.process)

    async def close(self, tunnel_id: str) -> None:
        """
        Terminate a tunnel's process and forget it. Unknown ids are ignored.

        Args:
            tunnel_id: Tunnel to close
        """
        async with self._lock:
            handle = self._tunnels.pop(tunnel_id, None)
            watcher = self._watchers.pop(tunnel_id, None)
            if handle is not None:
                self._closing.add(tunnel_id)

        if handle is None:
            logger.debug("Tunnel already closed", extra={"tunnel_id": tunnel_id})
            return

        try:
            handle.exit_code = await self._terminate(handle.process)
            if watcher is not None:
                try:
                    await asyncio.wait_for(watcher, timeout=TERMINATE_GRACE_S)
                except asyncio.TimeoutError:
                    watcher.cancel()
        finally:
            self._closing.discard(tunnel_id)

        handle.status = TunnelStatus.DISCONNECTED
        logger.info("Tunnel closed", extra={"tunnel_id": tunnel_id, "port": handle.local_port})

    async def close_all(self) -> None:
        """Close every tunnel, continuing past individual failures."""
        async with self._lock:
            tunnel_ids = list(self._tunnels)

        logger.info("Closing all tunnels", extra={"count": len(tunnel_ids)})
        results = await asyncio.gather(
            *(self.close(tunnel_id) for tunnel_id in tunnel_ids), return_exceptions=True
        )
        for tunnel_id, result in zip(tunnel_ids, results):
            if isinstance(result, Exception):
                logger.error("Failed to close tunnel", extra={"tunnel_id": tunnel_id, "error": str(result)})

    def get(self, tunnel_id: str) -> Optional[TunnelHandle]:
        return self._tunnels.get(tunnel_id)

    def list(self) -> List[TunnelHandle]:
        return list(self._tunnels.values())

    def __len__(self) -> int:
        return len(self._tunnels)
