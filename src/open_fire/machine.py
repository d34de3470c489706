"""Runtime of one jailed Firecracker microVM.

A Machine owns the jailer process, the API client bound to the chroot's
control socket, the CNI results for its interfaces and the FIFO readers.
It boots by running a resolved HandlerList (see handlers) followed by the
InstanceStart action.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
from pathlib import Path
from typing import Any, BinaryIO

from open_fire import constants, handlers
from open_fire._logging import get_logger
from open_fire.cni import CNIResult, CNIRuntime, remove_netns
from open_fire.exceptions import CNIError, LaunchError, OpenFireError
from open_fire.firecracker_client import FirecrackerClient
from open_fire.launch_spec import JailerParams, LaunchSpec
from open_fire.placement import Handler, HandlerList
from open_fire.platform_utils import ProcessWrapper
from open_fire.subprocess_utils import drain_subprocess_output, log_task_exception, wait_for_socket

logger = get_logger(__name__)


def default_handlers() -> HandlerList:
    """Base boot pipeline of a jailed microVM."""
    return HandlerList(
        [
            Handler(handlers.SETUP_NETWORK, handlers.setup_network),
            Handler(handlers.SETUP_KERNEL_ARGS, handlers.setup_kernel_args),
            Handler(handlers.START_VMM, handlers.start_vmm),
            Handler(handlers.CREATE_LOG_FILES, handlers.create_log_files),
            Handler(handlers.BOOTSTRAP_LOGGING, handlers.bootstrap_logging),
            Handler(handlers.CREATE_MACHINE, handlers.create_machine),
            Handler(handlers.CREATE_BOOT_SOURCE, handlers.create_boot_source),
            Handler(handlers.ATTACH_DRIVES, handlers.attach_drives),
            Handler(handlers.CREATE_NETWORK_INTERFACES, handlers.create_network_interfaces),
            Handler(handlers.ADD_VSOCKS, handlers.add_vsocks),
            Handler(handlers.CONFIG_MMDS, handlers.config_mmds),
        ]
    )


def build_jailer_command(params: JailerParams) -> list[str]:
    """Command line for the jailer, which execs Firecracker inside the chroot."""
    cmd = [
        str(params.jailer_binary),
        "--id",
        params.vm_id,
        "--exec-file",
        str(params.exec_file),
        "--uid",
        str(params.uid),
        "--gid",
        str(params.gid),
        "--chroot-base-dir",
        str(params.chroot_base),
        "--cgroup-version",
        params.cgroup_version,
    ]
    if params.numa_node is not None:
        cmd.extend(["--node", str(params.numa_node)])
    if params.netns is not None:
        cmd.extend(["--netns", str(params.netns)])
    if params.daemonize:
        cmd.append("--daemonize")
    socket_in_chroot = "/" + str(params.socket_path.relative_to(params.chroot_dir))
    cmd.extend(["--", "--api-sock", socket_in_chroot])
    return cmd


async def copy_fifo(path: str, vm_id: str, sink: BinaryIO | None = None) -> None:
    """Forward everything written to the FIFO at path into sink (or the debug log).

    The FIFO is opened read-write so the open never blocks and no EOF is
    seen before Firecracker connects; the task runs until cancelled.
    """
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader()
    fifo = os.fdopen(os.open(path, os.O_RDWR | os.O_NONBLOCK), "rb", buffering=0)
    transport, _ = await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), fifo)
    try:
        while chunk := await reader.read(constants.FIFO_COPY_CHUNK_SIZE):
            if sink is None:
                logger.debug(f"[firecracker fifo] {chunk.decode(errors='replace').rstrip()}", extra={"vm_id": vm_id})
                continue
            sink.write(chunk)
            sink.flush()
    finally:
        transport.close()


class Machine:
    """A Firecracker microVM being booted or running under the jailer."""

    def __init__(
        self,
        spec: LaunchSpec,
        *,
        cni: CNIRuntime,
        handler_list: HandlerList | None = None,
        socket_wait_timeout: float = constants.SOCKET_WAIT_TIMEOUT_SECONDS,
        log_http_calls: bool = False,
    ) -> None:
        self.spec = spec
        self.cni = cni
        self.handlers = handler_list if handler_list is not None else default_handlers()
        self.kernel_args = spec.kernel_args
        self.cni_results: list[CNIResult] = []
        # host path -> path inside the chroot
        self.chroot_paths: dict[str, str] = {}
        self.process: ProcessWrapper | None = None
        self._api: FirecrackerClient | None = None
        self._socket_wait_timeout = socket_wait_timeout
        self._log_http_calls = log_http_calls
        self._background: list[asyncio.Task[None]] = []

    @property
    def vm_id(self) -> str:
        return self.spec.vm_id

    @property
    def pid(self) -> int:
        if self.process is None or self.process.pid is None:
            return 0
        return self.process.pid

    @property
    def ip(self) -> str:
        return self.cni_results[0].ip if self.cni_results else ""

    @property
    def netns_path(self) -> Path:
        if self.spec.netns is not None:
            return self.spec.netns
        return constants.DEFAULT_NETNS_DIR / self.vm_id

    @property
    def api(self) -> FirecrackerClient:
        if self._api is None:
            raise LaunchError("Firecracker API used before the VMM was started", context={"vm_id": self.vm_id})
        return self._api

    # ------------------------------------------------------------------
    # Boot
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Run every handler in order, then start the instance."""
        for handler in self.handlers:
            logger.debug("Running boot handler", extra={"vm_id": self.vm_id, "handler": handler.name})
            await handler.fn(self)
        await self.api.create_sync_action(constants.INSTANCE_START_ACTION)
        logger.info("MicroVM started", extra={"vm_id": self.vm_id, "pid": self.pid, "ip": self.ip})

    async def start_vmm(self) -> None:
        """Spawn the jailer and wait until Firecracker's API answers."""
        params = self.spec.jailer
        cmd = build_jailer_command(params)
        stdio = None if params.inherit_stdio else asyncio.subprocess.PIPE
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=stdio,
            stderr=stdio,
            start_new_session=True,
        )
        self.process = ProcessWrapper(proc)
        logger.debug("Jailer spawned", extra={"vm_id": self.vm_id, "pid": proc.pid, "cmd": cmd})

        if stdio is not None:
            self._spawn(
                drain_subprocess_output(self.process, process_name="firecracker", vm_id=self.vm_id),
                "drain",
            )

        def abort_if_exited() -> None:
            if proc.returncode is not None:
                raise LaunchError(
                    f"jailer exited with code {proc.returncode} before the API socket was ready",
                    context={"vm_id": self.vm_id, "returncode": proc.returncode},
                )

        try:
            await wait_for_socket(params.socket_path, timeout=self._socket_wait_timeout, abort_check=abort_if_exited)
        except TimeoutError as e:
            raise LaunchError(
                f"API socket not ready after {self._socket_wait_timeout}s",
                context={"vm_id": self.vm_id, "socket": str(params.socket_path)},
            ) from e

        self._api = FirecrackerClient(params.socket_path, vm_id=self.vm_id, log_calls=self._log_http_calls)
        await self._api.wait_until_ready()

    async def create_fifos(self) -> None:
        """Create the log/metrics FIFOs inside the chroot and start their readers.

        A FIFO cannot be linked or copied across filesystems, so each one is
        made directly at its chroot path.
        """
        jailer = self.spec.jailer
        fifos = (
            (self.spec.log_fifo, constants.LOG_FIFO_NAME, "log-fifo", self.spec.fifo_log_writer),
            (self.spec.metrics_fifo, constants.METRICS_FIFO_NAME, "metrics-fifo", None),
        )
        for host_path, name, task_name, sink in fifos:
            if not host_path:
                continue
            target = jailer.chroot_dir / name
            if not target.exists():
                os.mkfifo(target, constants.FIFO_LOG_FILE_MODE)
            os.chown(target, jailer.uid, jailer.gid)
            self.chroot_paths[host_path] = f"/{name}"
            self._spawn(copy_fifo(str(target), self.vm_id, sink), task_name)

    def _spawn(self, coro: Any, name: str) -> None:
        task = asyncio.create_task(coro, name=f"{name}-{self.vm_id}")
        task.add_done_callback(log_task_exception)
        self._background.append(task)

    async def set_metadata(self, data: Any) -> None:
        await self.api.put_mmds(data)

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def shutdown(self) -> None:
        """Ask the guest to power off (SendCtrlAltDel) and wait for the VMM to exit."""
        await self.api.create_sync_action(constants.SEND_CTRL_ALT_DEL_ACTION)
        await self.wait()

    async def stop_vmm(self) -> None:
        """Kill the VMM immediately (SIGKILL)."""
        if self.process is None:
            return
        with contextlib.suppress(ProcessLookupError):
            await self.process.kill()

    async def wait(self) -> int | None:
        """Wait for the VMM process to exit; returns its exit code."""
        if self.process is None:
            return None
        return await self.process.wait()

    async def teardown_network(self) -> None:
        """CNI DEL for every interface, then remove the network namespace.

        Every DEL runs and the namespace is removed even when a plugin fails;
        the failures are raised together afterwards.

        Raises:
            CNIError: a plugin or the namespace removal failed
        """
        spec = self.spec
        errors: list[OpenFireError] = []
        for nic in spec.network_interfaces:
            try:
                await self.cni.delete(nic.cni.network_name, spec.vm_id, self.netns_path, nic.cni.if_name)
            except OpenFireError as e:
                logger.warning(
                    "CNI DEL failed",
                    extra={"vm_id": spec.vm_id, "network": nic.cni.network_name, "error": e.message},
                )
                errors.append(e)
        try:
            await remove_netns(self.netns_path)
        except CNIError as e:
            errors.append(e)
        if errors:
            raise CNIError(
                "; ".join(e.message for e in errors),
                context={"vm_id": spec.vm_id, "failures": len(errors)},
            ) from errors[0]
        logger.debug("Network detached", extra={"vm_id": spec.vm_id})

    async def close(self) -> None:
        """Stop background readers and close the API client."""
        for task in self._background:
            task.cancel()
        for task in self._background:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._background.clear()
        if self._api is not None:
            await self._api.aclose()
