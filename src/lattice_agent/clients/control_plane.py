"""HTTP client for the Lattice control plane."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

import httpx
from pydantic import ValidationError

from lattice_agent.models.deployments import ResourceUsage
from lattice_agent.models.workloads import Workload, WorkloadStatus
from lattice_agent.utils import get_logger
from lattice_agent.utils.exceptions import (
    ControlPlaneAuthError,
    ControlPlaneError,
    ControlPlaneUnreachableError,
    InvalidWorkloadConfigError,
)

logger = get_logger(__name__)

LOCAL_HOSTS = {"localhost", "127.0.0.1", "::1"}


@dataclass
class AgentRegistration:
    """Identity handed out by the control plane."""

    agent_id: str
    auth_token: str = field(repr=False)


@dataclass
class AssignedWorkloads:
    """Desired-state listing; entries that failed validation are kept apart."""

    workloads: List[Workload] = field(default_factory=list)
    invalid: List[InvalidWorkloadConfigError] = field(default_factory=list)

    @property
    def ids(self) -> set[str]:
        return {w.id for w in self.workloads} | {e.workload_id for e in self.invalid}


class ControlPlaneClient:
    """
    Async client for the agent endpoints under ``/api/agents``.

    Registration stores the agent id and token on the client; every later
    call sends them as ``X-Agent-Id``/``X-Agent-Token`` headers.
    """

    def __init__(
        self,
        base_url: str,
        agent_secret: str = "",
        timeout_s: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """
        Initialize control plane client.

        Args:
            base_url: Control plane base URL, without the ``/api`` suffix
            agent_secret: Shared secret presented at registration
            timeout_s: Per-request timeout
            transport: Optional transport override
        """
        self.base_url = base_url.rstrip("/")
        self.agent_secret = agent_secret
        self.timeout_s = timeout_s
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self.registration: Optional[AgentRegistration] = None

        parsed = urlparse(self.base_url)
        if parsed.scheme == "http" and parsed.hostname not in LOCAL_HOSTS:
            logger.warning(
                "Control plane URL is not HTTPS; agent token and workload credentials travel unencrypted",
                extra={"control_plane_url": self.base_url},
            )

    @property
    def agent_id(self) -> Optional[str]:
        return self.registration.agent_id if self.registration else None

    @property
    def is_registered(self) -> bool:
        return self.registration is not None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout_s,
                follow_redirects=True,
                transport=self._transport,
            )
        return self._client

    def _auth_headers(self, operation: str) -> Dict[str, str]:
        if self.registration is None:
            raise ControlPlaneError(f"{operation} requires a registered agent")
        return {
            "X-Agent-Id": self.registration.agent_id,
            "X-Agent-Token": self.registration.auth_token,
        }

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        headers: Dict[str, str] | None = None,
        **kwargs: Any,
    ) -> Any:
        client = self._get_client()
        try:
            response = await client.request(method, path, headers=headers, **kwargs)
        except httpx.HTTPError as e:
            raise ControlPlaneUnreachableError(operation, e) from e

        if response.status_code in (401, 403):
            raise ControlPlaneAuthError(operation, response.status_code)
        if response.is_error:
            raise ControlPlaneError(
                f"{operation} failed with HTTP {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise ControlPlaneError(f"{operation} returned invalid JSON", original_error=e) from e

    async def register(
        self,
        hostname: str,
        platform: str,
        runtime_version: str,
        capabilities: Dict[str, Any],
    ) -> AgentRegistration:
        """
        Register this agent and store the issued credentials.

        Args:
            hostname: Host name reported to the control plane
            platform: OS platform string
            runtime_version: Container runtime version
            capabilities: cpuCores, totalMemory, totalDisk, serviceTypes

        Returns:
            Agent id and token
        """
        payload = {
            "hostname": hostname,
            "platform": platform,
            "runtimeVersion": runtime_version,
            "capabilities": capabilities,
            "secret": self.agent_secret,
        }
        data = await self._request("register", "POST", "/api/agents/register", json=payload)

        data = data or {}
        agent_id = data.get("agentId") or data.get("id")
        token = data.get("authToken") or data.get("token")
        if not agent_id or not token:
            raise ControlPlaneError("register response is missing agentId or authToken")

        self.registration = AgentRegistration(agent_id=str(agent_id), auth_token=str(token))
        logger.info("Agent registered", extra={"agent_id": self.registration.agent_id})
        return self.registration

    async def heartbeat(self, usage: ResourceUsage) -> None:
        headers = self._auth_headers("heartbeat")
        await self._request(
            "heartbeat",
            "POST",
            f"/api/agents/{self.agent_id}/heartbeat",
            headers=headers,
            json={"resources": usage.to_dict()},
        )

    async def get_assigned_workloads(self) -> AssignedWorkloads:
        """
        Fetch the desired state for this agent.

        Entries that fail validation are returned in ``invalid`` rather than
        dropped, so the caller can report them and avoid tearing them down.
        """
        headers = self._auth_headers("get_workloads")
        data = await self._request(
            "get_workloads", "GET", f"/api/agents/{self.agent_id}/workloads", headers=headers
        )

        if isinstance(data, dict):
            data = data.get("workloads", [])
        if not isinstance(data, list):
            raise ControlPlaneError("get_workloads returned an unexpected payload")

        assigned = AssignedWorkloads()
        for entry in data:
            try:
                assigned.workloads.append(Workload.model_validate(entry))
            except ValidationError as e:
                workload_id = entry.get("id") if isinstance(entry, dict) else None
                if not workload_id:
                    logger.warning("Ignoring workload entry without id", extra={"error": str(e)})
                    continue
                reason = "; ".join(err["msg"] for err in e.errors())
                assigned.invalid.append(InvalidWorkloadConfigError(str(workload_id), reason))
                logger.warning(
                    "Workload failed validation",
                    extra={"workload_id": workload_id, "reason": reason},
                )
        return assigned

    async def report_status(
        self,
        workload_id: str,
        status: WorkloadStatus,
        message: str | None = None,
        public_url: str | None = None,
        credentials: Dict[str, str] | None = None,
    ) -> None:
        """
        Report a workload's observed status.

        ``publicUrl`` is always sent for ``running`` reports so a degraded
        deployment is visible as an explicit null.
        """
        headers = self._auth_headers("report_status")
        payload: Dict[str, Any] = {"status": WorkloadStatus(status).value}
        if message is not None:
            payload["message"] = message
        if public_url is not None or status == WorkloadStatus.RUNNING:
            payload["publicUrl"] = public_url
        if credentials:
            payload["credentials"] = credentials

        await self._request(
            "report_status",
            "POST",
            f"/api/agents/{self.agent_id}/workloads/{workload_id}/status",
            headers=headers,
            json=payload,
        )
        logger.debug(
            "Workload status reported",
            extra={"workload_id": workload_id, "status": payload["status"]},
        )

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
