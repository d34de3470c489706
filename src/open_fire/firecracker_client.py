"""Async client for the Firecracker API on the VM's Unix control socket.

Firecracker serves a small REST API over a Unix socket inside the jail
(``<chroot>/run/firecracker.socket``). Every configuration call is a ``PUT``
with a JSON body; a ``204 No Content`` means success and errors come back
as ``{"fault_message": "..."}``.

Usage:
    async with FirecrackerClient(socket_path, vm_id=vm_id) as api:
        await api.wait_until_ready(timeout=5.0)
        await api.put_machine_config({"vcpu_count": 2, "mem_size_mib": 256})
        await api.create_sync_action("InstanceStart")
"""

from __future__ import annotations

import types
from pathlib import Path
from typing import Any

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_delay, wait_random_exponential

from open_fire import constants
from open_fire._logging import get_logger
from open_fire.exceptions import FirecrackerAPIError

logger = get_logger(__name__)


def is_connection_refused(exc: BaseException) -> bool:
    """Whether exc (or anything in its cause chain) is a refused connection.

    A refused connection on the control socket means nothing is listening:
    the VM process is already gone even though the socket file remains.
    """
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        if isinstance(current, ConnectionRefusedError):
            return True
        seen.add(id(current))
        current = current.__cause__ or current.__context__
    return "connection refused" in str(exc).lower()


class FirecrackerClient:
    """Thin async wrapper over the Firecracker REST API."""

    def __init__(
        self,
        socket_path: str | Path,
        *,
        vm_id: str = "",
        timeout: float = constants.API_REQUEST_TIMEOUT_SECONDS,
        log_calls: bool = False,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the client; no connection is made until the first call.

        Args:
            socket_path: Host path of the Firecracker API socket
            vm_id: VM identifier for log correlation
            timeout: Per-request timeout in seconds
            log_calls: Log each request and response at DEBUG level
            transport: Alternative transport (tests use httpx.MockTransport)
        """
        self._socket_path = str(socket_path)
        self._vm_id = vm_id
        self._log_calls = log_calls
        self._client = httpx.AsyncClient(
            transport=transport or httpx.AsyncHTTPTransport(uds=self._socket_path),
            base_url="http://localhost",
            timeout=timeout,
        )

    async def __aenter__(self) -> FirecrackerClient:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: types.TracebackType | None,
    ) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    @property
    def socket_path(self) -> str:
        return self._socket_path

    async def _request(self, method: str, path: str, body: Any = None) -> httpx.Response:
        if self._log_calls:
            logger.debug("Firecracker API request", extra={"vm_id": self._vm_id, "method": method, "path": path})

        try:
            response = await self._client.request(method, path, json=body)
        except httpx.HTTPError as e:
            raise FirecrackerAPIError(
                f"{method} {path} failed: {e}",
                context={"vm_id": self._vm_id, "socket": self._socket_path, "path": path},
            ) from e

        if self._log_calls:
            logger.debug(
                "Firecracker API response",
                extra={"vm_id": self._vm_id, "path": path, "status_code": response.status_code},
            )

        if response.is_error:
            fault = ""
            try:
                fault = str(response.json().get("fault_message", ""))
            except ValueError:
                fault = response.text
            raise FirecrackerAPIError(
                f"{method} {path} returned {response.status_code}: {fault}",
                context={"vm_id": self._vm_id, "path": path},
                status_code=response.status_code,
                fault_message=fault,
            )
        return response

    async def _put(self, path: str, body: Any) -> None:
        await self._request("PUT", path, body)

    # ------------------------------------------------------------------
    # Instance
    # ------------------------------------------------------------------

    async def get_instance_info(self) -> dict[str, Any]:
        response = await self._request("GET", "/")
        return response.json()

    async def wait_until_ready(self, timeout: float = constants.API_READY_TIMEOUT_SECONDS) -> None:
        """Poll ``GET /`` until the API answers.

        Raises:
            FirecrackerAPIError: API still unreachable after timeout
        """
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(FirecrackerAPIError),
            stop=stop_after_delay(timeout),
            wait=wait_random_exponential(multiplier=0.01, min=0.005, max=0.1),
            reraise=True,
        ):
            with attempt:
                await self.get_instance_info()

    async def create_sync_action(self, action_type: str) -> None:
        """``PUT /actions`` (InstanceStart, SendCtrlAltDel, FlushMetrics)."""
        await self._put("/actions", {"action_type": action_type})

    # ------------------------------------------------------------------
    # Pre-boot configuration
    # ------------------------------------------------------------------

    async def put_machine_config(self, body: dict[str, Any]) -> None:
        await self._put("/machine-config", body)

    async def put_boot_source(self, kernel_image_path: str, boot_args: str) -> None:
        await self._put("/boot-source", {"kernel_image_path": kernel_image_path, "boot_args": boot_args})

    async def put_drive(self, body: dict[str, Any]) -> None:
        await self._put(f"/drives/{body['drive_id']}", body)

    async def put_network_interface(
        self,
        iface_id: str,
        host_dev_name: str,
        *,
        guest_mac: str = "",
        rx_rate_limiter: dict[str, Any] | None = None,
        tx_rate_limiter: dict[str, Any] | None = None,
    ) -> None:
        body: dict[str, Any] = {"iface_id": iface_id, "host_dev_name": host_dev_name}
        if guest_mac:
            body["guest_mac"] = guest_mac
        if rx_rate_limiter is not None:
            body["rx_rate_limiter"] = rx_rate_limiter
        if tx_rate_limiter is not None:
            body["tx_rate_limiter"] = tx_rate_limiter
        await self._put(f"/network-interfaces/{iface_id}", body)

    async def put_vsock(self, vsock_id: str, guest_cid: int, uds_path: str) -> None:
        await self._put("/vsock", {"vsock_id": vsock_id, "guest_cid": guest_cid, "uds_path": uds_path})

    async def put_logger(self, log_path: str, level: str) -> None:
        await self._put("/logger", {"log_path": log_path, "level": level, "show_level": True, "show_log_origin": False})

    async def put_metrics(self, metrics_path: str) -> None:
        await self._put("/metrics", {"metrics_path": metrics_path})

    # ------------------------------------------------------------------
    # MMDS
    # ------------------------------------------------------------------

    async def put_mmds_config(self, network_interfaces: list[str], version: str = constants.MMDS_VERSION) -> None:
        await self._put("/mmds/config", {"version": version, "network_interfaces": network_interfaces})

    async def put_mmds(self, data: Any) -> None:
        """Replace the MMDS data store with data (any JSON document)."""
        await self._put("/mmds", data)
