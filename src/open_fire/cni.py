"""CNI network attach/detach for microVMs.

A VM gets its own network namespace (``<netns_dir>/<vm_id>``, created with
pyroute2). The named CNI network list is loaded from ``conf_dir`` and its
plugin chain is executed from ``bin_dir`` following the CNI protocol:
network config on stdin, ``CNI_*`` environment variables, result JSON on
stdout.

The chain is expected to end in a tap-redirect plugin (tc-redirect-tap),
which reports two interfaces: the tap device inside the namespace, and a
pseudo-interface whose ``sandbox`` is the VM id describing the guest side.

ADD results are cached under ``<cache_dir>/results/`` so DEL can replay
them as ``prevResult`` even after a server restart.
"""

from __future__ import annotations

import asyncio
import ipaddress
import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import aiofiles
import aiofiles.os
from pyroute2 import netns

from open_fire import constants
from open_fire._logging import get_logger
from open_fire.config import CNIConfig
from open_fire.exceptions import CNIError, NetworkConfigError
from open_fire.resource_cleanup import cleanup_file

logger = get_logger(__name__)

_CONF_SUFFIXES = (".conflist", ".conf", ".json")
_DEFAULT_CNI_VERSION = "1.0.0"


# ============================================================================
# Results
# ============================================================================


@dataclass(frozen=True, slots=True)
class CNIResult:
    """Parsed result of a successful ADD on the VM's interface."""

    raw: dict[str, Any]
    vm_id: str
    netns_path: str

    def _interfaces(self) -> list[dict[str, Any]]:
        return list(self.raw.get("interfaces") or [])

    def _vm_interface_index(self) -> int:
        for index, iface in enumerate(self._interfaces()):
            if iface.get("sandbox") == self.vm_id:
                return index
        raise CNIError(
            "CNI result has no interface for the VM",
            context={"vm_id": self.vm_id, "interfaces": self._interfaces()},
        )

    @property
    def vm_mac(self) -> str:
        return str(self._interfaces()[self._vm_interface_index()].get("mac", ""))

    @property
    def tap_name(self) -> str:
        """Name of the tap device inside the namespace backing the VM interface."""
        vm_iface = self._interfaces()[self._vm_interface_index()]
        for iface in self._interfaces():
            if iface.get("sandbox") == self.netns_path and iface.get("name") == vm_iface.get("name"):
                return str(iface["name"])
        raise CNIError(
            "CNI result has no tap device in the network namespace",
            context={"vm_id": self.vm_id, "netns": self.netns_path},
        )

    def _vm_ip_config(self) -> dict[str, Any]:
        index = self._vm_interface_index()
        ips = list(self.raw.get("ips") or [])
        for ip in ips:
            if ip.get("interface") == index:
                return ip
        if ips:
            return ips[0]
        raise CNIError("CNI result has no IP configuration", context={"vm_id": self.vm_id})

    @property
    def interface(self) -> ipaddress.IPv4Interface | ipaddress.IPv6Interface:
        return ipaddress.ip_interface(self._vm_ip_config()["address"])

    @property
    def ip(self) -> str:
        return str(self.interface.ip)

    @property
    def gateway(self) -> str:
        return str(self._vm_ip_config().get("gateway", ""))

    @property
    def nameservers(self) -> list[str]:
        return list((self.raw.get("dns") or {}).get("nameservers") or [])

    def ip_boot_param(self) -> str:
        """Kernel ``ip=`` argument configuring the guest's static address.

        Format: ``ip=<client>:<server>:<gw>:<netmask>:<hostname>:<device>:<autoconf>[:<dns0>[:<dns1>]]``
        """
        fields = [self.ip, "", self.gateway, str(self.interface.netmask), "", constants.GUEST_IFACE_NAME, "off"]
        fields.extend(self.nameservers[:2])
        return "ip=" + ":".join(fields)


# ============================================================================
# Network namespaces
# ============================================================================


async def create_netns(path: Path) -> None:
    """Create a named network namespace at path (idempotent)."""
    if await aiofiles.os.path.exists(path):
        return
    try:
        await asyncio.to_thread(netns.create, str(path))
    except FileExistsError:
        return
    except OSError as e:
        raise CNIError(f"failed to create network namespace {path}: {e}", context={"netns": str(path)}) from e


async def remove_netns(path: Path) -> None:
    """Remove a named network namespace (absent = success)."""
    try:
        await asyncio.to_thread(netns.remove, str(path))
    except FileNotFoundError:
        return
    except OSError as e:
        raise CNIError(f"failed to remove network namespace {path}: {e}", context={"netns": str(path)}) from e


# ============================================================================
# Plugin runtime
# ============================================================================


class CNIRuntime:
    """Executes CNI plugin chains for one host configuration."""

    def __init__(self, config: CNIConfig, *, plugin_timeout: float = constants.CNI_PLUGIN_TIMEOUT_SECONDS) -> None:
        self._config = config
        self._plugin_timeout = plugin_timeout

    @property
    def config(self) -> CNIConfig:
        return self._config

    async def load_network_list(self, name: str) -> dict[str, Any]:
        """Find the network list called name in conf_dir.

        Single-plugin ``.conf`` files are wrapped into a one-plugin list.

        Raises:
            NetworkConfigError: no configuration with that name
        """
        conf_dir = self._config.conf_dir
        try:
            entries = sorted(await aiofiles.os.listdir(conf_dir))
        except FileNotFoundError:
            entries = []

        for entry in entries:
            if not entry.endswith(_CONF_SUFFIXES):
                continue
            async with aiofiles.open(conf_dir / entry) as f:
                try:
                    conf = json.loads(await f.read())
                except json.JSONDecodeError:
                    logger.warning("Skipping unparsable CNI config", extra={"path": str(conf_dir / entry)})
                    continue
            if conf.get("name") != name:
                continue
            if "plugins" not in conf:
                plugin = {k: v for k, v in conf.items() if k not in ("name", "cniVersion")}
                conf = {"cniVersion": conf.get("cniVersion", _DEFAULT_CNI_VERSION), "name": name, "plugins": [plugin]}
            return conf

        raise NetworkConfigError(
            f"CNI network {name!r} not found in {conf_dir}",
            context={"network": name, "conf_dir": str(conf_dir)},
        )

    def _cache_path(self, network: str, container_id: str, if_name: str) -> Path:
        return self._config.cache_dir / "results" / f"{network}-{container_id}-{if_name}"

    async def add(self, network: str, container_id: str, netns_path: Path, if_name: str) -> CNIResult:
        """Run ADD through the plugin chain and cache the final result.

        Raises:
            NetworkConfigError: unknown network
            CNIError: a plugin failed
        """
        conf_list = await self.load_network_list(network)
        prev_result: dict[str, Any] | None = None
        for plugin in conf_list["plugins"]:
            prev_result = await self._exec_plugin(
                "ADD", conf_list, plugin, container_id, netns_path, if_name, prev_result
            )

        result = prev_result or {}
        cache_path = self._cache_path(network, container_id, if_name)
        await aiofiles.os.makedirs(cache_path.parent, exist_ok=True)
        async with aiofiles.open(cache_path, "w") as f:
            await f.write(json.dumps({"kind": "cniCacheV1", "result": result}))

        logger.debug(
            "CNI network attached",
            extra={"vm_id": container_id, "network": network, "if_name": if_name},
        )
        return CNIResult(raw=result, vm_id=container_id, netns_path=str(netns_path))

    async def delete(self, network: str, container_id: str, netns_path: Path, if_name: str) -> None:
        """Run DEL through the plugin chain in reverse, replaying the cached ADD result.

        Raises:
            CNIError: a plugin failed
        """
        conf_list = await self.load_network_list(network)
        cache_path = self._cache_path(network, container_id, if_name)
        prev_result: dict[str, Any] | None = None
        try:
            async with aiofiles.open(cache_path) as f:
                prev_result = json.loads(await f.read()).get("result")
        except (FileNotFoundError, json.JSONDecodeError):
            prev_result = None

        for plugin in reversed(conf_list["plugins"]):
            await self._exec_plugin("DEL", conf_list, plugin, container_id, netns_path, if_name, prev_result)

        await cleanup_file(cache_path, container_id, description="CNI result cache")
        logger.debug("CNI network detached", extra={"vm_id": container_id, "network": network})

    async def _exec_plugin(
        self,
        command: str,
        conf_list: dict[str, Any],
        plugin: dict[str, Any],
        container_id: str,
        netns_path: Path,
        if_name: str,
        prev_result: dict[str, Any] | None,
    ) -> dict[str, Any] | None:
        plugin_type = plugin.get("type", "")
        binary = self._config.bin_dir / plugin_type
        if not plugin_type or not binary.exists():
            raise CNIError(
                f"CNI plugin {plugin_type!r} not found in {self._config.bin_dir}",
                context={"plugin": plugin_type},
            )

        stdin_conf = dict(plugin)
        stdin_conf["name"] = conf_list["name"]
        stdin_conf["cniVersion"] = conf_list.get("cniVersion", _DEFAULT_CNI_VERSION)
        if prev_result is not None:
            stdin_conf["prevResult"] = prev_result

        env = {
            **os.environ,
            "CNI_COMMAND": command,
            "CNI_CONTAINERID": container_id,
            "CNI_NETNS": str(netns_path),
            "CNI_IFNAME": if_name,
            "CNI_PATH": str(self._config.bin_dir),
        }

        proc = await asyncio.create_subprocess_exec(
            str(binary),
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=env,
        )
        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(json.dumps(stdin_conf).encode()),
                timeout=self._plugin_timeout,
            )
        except TimeoutError as e:
            proc.kill()
            await proc.wait()
            raise CNIError(
                f"CNI plugin {plugin_type} {command} timed out after {self._plugin_timeout}s",
                context={"plugin": plugin_type, "vm_id": container_id},
            ) from e

        if proc.returncode != 0:
            message = stderr.decode(errors="replace").strip()
            try:
                error = json.loads(stdout)
                message = f"{error.get('msg', '')} {error.get('details', '')}".strip() or message
            except json.JSONDecodeError:
                pass
            raise CNIError(
                f"CNI plugin {plugin_type} {command} failed: {message}",
                context={"plugin": plugin_type, "vm_id": container_id, "returncode": proc.returncode},
            )

        if command != "ADD" or not stdout.strip():
            return prev_result
        try:
            return json.loads(stdout)
        except json.JSONDecodeError as e:
            raise CNIError(
                f"CNI plugin {plugin_type} returned invalid JSON",
                context={"plugin": plugin_type, "vm_id": container_id},
            ) from e
