"""Tests for cni.py.

Plugin execution uses small shell scripts standing in for CNI plugins.
"""

import json
import os
from pathlib import Path

import pytest

from open_fire.cni import CNIResult, CNIRuntime
from open_fire.config import CNIConfig
from open_fire.exceptions import CNIError, NetworkConfigError

NETNS = "/var/run/netns/vm1"

RESULT = {
    "cniVersion": "1.0.0",
    "interfaces": [
        {"name": "veth0", "mac": "aa:aa:aa:aa:aa:aa", "sandbox": NETNS},
        {"name": "tap0", "mac": "bb:bb:bb:bb:bb:bb", "sandbox": NETNS},
        {"name": "tap0", "mac": "cc:cc:cc:cc:cc:cc", "sandbox": "vm1"},
    ],
    "ips": [{"address": "192.168.1.2/24", "gateway": "192.168.1.1", "interface": 2}],
    "dns": {"nameservers": ["1.1.1.1", "8.8.8.8", "9.9.9.9"]},
}


# ============================================================================
# Results
# ============================================================================


class TestCNIResult:
    def test_vm_interface(self) -> None:
        result = CNIResult(raw=RESULT, vm_id="vm1", netns_path=NETNS)
        assert result.vm_mac == "cc:cc:cc:cc:cc:cc"
        assert result.tap_name == "tap0"
        assert result.ip == "192.168.1.2"
        assert result.gateway == "192.168.1.1"

    def test_ip_boot_param(self) -> None:
        """At most two nameservers are passed to the kernel."""
        result = CNIResult(raw=RESULT, vm_id="vm1", netns_path=NETNS)
        assert result.ip_boot_param() == "ip=192.168.1.2::192.168.1.1:255.255.255.0::eth0:off:1.1.1.1:8.8.8.8"

    def test_ip_boot_param_without_dns(self) -> None:
        raw = {k: v for k, v in RESULT.items() if k != "dns"}
        result = CNIResult(raw=raw, vm_id="vm1", netns_path=NETNS)
        assert result.ip_boot_param() == "ip=192.168.1.2::192.168.1.1:255.255.255.0::eth0:off"

    def test_no_vm_interface(self) -> None:
        result = CNIResult(raw=RESULT, vm_id="other-vm", netns_path=NETNS)
        with pytest.raises(CNIError):
            _ = result.vm_mac

    def test_no_tap_in_netns(self) -> None:
        result = CNIResult(raw=RESULT, vm_id="vm1", netns_path="/var/run/netns/elsewhere")
        with pytest.raises(CNIError):
            _ = result.tap_name

    def test_no_ips(self) -> None:
        raw = {k: v for k, v in RESULT.items() if k != "ips"}
        result = CNIResult(raw=raw, vm_id="vm1", netns_path=NETNS)
        with pytest.raises(CNIError):
            _ = result.ip


# ============================================================================
# Configuration lookup
# ============================================================================


@pytest.fixture
def cni_config(tmp_path: Path) -> CNIConfig:
    config = CNIConfig(bin_dir=tmp_path / "bin", conf_dir=tmp_path / "conf.d", cache_dir=tmp_path / "cache")
    config.bin_dir.mkdir()
    config.conf_dir.mkdir()
    return config


def _write_conf(config: CNIConfig, filename: str, conf: dict) -> None:
    (config.conf_dir / filename).write_text(json.dumps(conf))


class TestLoadNetworkList:
    async def test_conflist(self, cni_config: CNIConfig) -> None:
        conf = {"cniVersion": "1.0.0", "name": "fcnet", "plugins": [{"type": "ptp"}, {"type": "tc-redirect-tap"}]}
        _write_conf(cni_config, "10-fcnet.conflist", conf)

        assert await CNIRuntime(cni_config).load_network_list("fcnet") == conf

    async def test_single_plugin_conf_is_wrapped(self, cni_config: CNIConfig) -> None:
        conf = {"cniVersion": "0.4.0", "name": "br", "type": "bridge", "isGateway": True}
        _write_conf(cni_config, "20-bridge.conf", conf)

        conf = await CNIRuntime(cni_config).load_network_list("br")

        assert conf == {"cniVersion": "0.4.0", "name": "br", "plugins": [{"type": "bridge", "isGateway": True}]}

    async def test_skips_unparsable_and_other_networks(self, cni_config: CNIConfig) -> None:
        (cni_config.conf_dir / "00-broken.conflist").write_text("{not json")
        _write_conf(cni_config, "05-other.conflist", {"name": "other", "plugins": []})
        _write_conf(cni_config, "10-fcnet.conflist", {"name": "fcnet", "plugins": [{"type": "ptp"}]})

        conf = await CNIRuntime(cni_config).load_network_list("fcnet")

        assert conf["name"] == "fcnet"

    async def test_unknown_network(self, cni_config: CNIConfig) -> None:
        with pytest.raises(NetworkConfigError):
            await CNIRuntime(cni_config).load_network_list("missing")

    async def test_missing_conf_dir(self, tmp_path: Path) -> None:
        config = CNIConfig(conf_dir=tmp_path / "nowhere")
        with pytest.raises(NetworkConfigError):
            await CNIRuntime(config).load_network_list("fcnet")


# ============================================================================
# Plugin execution
# ============================================================================


def _install_plugin(config: CNIConfig, name: str, log: Path, *, fail: bool = False) -> None:
    """Shell plugin: logs its invocation, saves stdin, prints RESULT on ADD."""
    script = config.bin_dir / name
    body = [
        "#!/bin/sh",
        f'cat > "{log.parent}/{name}-$CNI_COMMAND.stdin"',
        f'echo "{name} $CNI_COMMAND $CNI_CONTAINERID $CNI_IFNAME" >> "{log}"',
    ]
    if fail:
        body += ["echo '{\"code\": 7, \"msg\": \"boom\", \"details\": \"no address\"}'", "exit 1"]
    else:
        body += [f"[ \"$CNI_COMMAND\" = ADD ] && echo '{json.dumps(RESULT)}'", "exit 0"]
    script.write_text("\n".join(body) + "\n")
    os.chmod(script, 0o755)


class TestPluginChain:
    """ADD/DEL through a two-plugin chain."""

    @pytest.fixture
    def log(self, tmp_path: Path) -> Path:
        return tmp_path / "plugins.log"

    @pytest.fixture
    def runtime(self, cni_config: CNIConfig, log: Path) -> CNIRuntime:
        _write_conf(
            cni_config,
            "10-fcnet.conflist",
            {"cniVersion": "1.0.0", "name": "fcnet", "plugins": [{"type": "ptp"}, {"type": "tc-redirect-tap"}]},
        )
        _install_plugin(cni_config, "ptp", log)
        _install_plugin(cni_config, "tc-redirect-tap", log)
        return CNIRuntime(cni_config, plugin_timeout=10.0)

    async def test_add(self, runtime: CNIRuntime, cni_config: CNIConfig, log: Path) -> None:
        result = await runtime.add("fcnet", "vm1", Path(NETNS), "vethabcdefghijk")

        assert result.ip == "192.168.1.2"
        assert result.tap_name == "tap0"
        assert log.read_text().splitlines() == [
            "ptp ADD vm1 vethabcdefghijk",
            "tc-redirect-tap ADD vm1 vethabcdefghijk",
        ]

        # The second plugin sees the first one's result
        stdin = json.loads((log.parent / "tc-redirect-tap-ADD.stdin").read_text())
        assert stdin["name"] == "fcnet"
        assert stdin["prevResult"] == RESULT

        cache = json.loads((cni_config.cache_dir / "results" / "fcnet-vm1-vethabcdefghijk").read_text())
        assert cache == {"kind": "cniCacheV1", "result": RESULT}

    async def test_delete_runs_in_reverse_with_cached_result(
        self, runtime: CNIRuntime, cni_config: CNIConfig, log: Path
    ) -> None:
        await runtime.add("fcnet", "vm1", Path(NETNS), "vethabcdefghijk")
        log.unlink()

        await runtime.delete("fcnet", "vm1", Path(NETNS), "vethabcdefghijk")

        assert log.read_text().splitlines() == [
            "tc-redirect-tap DEL vm1 vethabcdefghijk",
            "ptp DEL vm1 vethabcdefghijk",
        ]
        stdin = json.loads((log.parent / "ptp-DEL.stdin").read_text())
        assert stdin["prevResult"] == RESULT
        assert not (cni_config.cache_dir / "results" / "fcnet-vm1-vethabcdefghijk").exists()

    async def test_delete_without_cache(self, runtime: CNIRuntime, log: Path) -> None:
        await runtime.delete("fcnet", "vm1", Path(NETNS), "vethabcdefghijk")
        stdin = json.loads((log.parent / "ptp-DEL.stdin").read_text())
        assert "prevResult" not in stdin

    async def test_plugin_failure(self, cni_config: CNIConfig, log: Path) -> None:
        _write_conf(cni_config, "10-fcnet.conflist", {"name": "fcnet", "plugins": [{"type": "ptp"}]})
        _install_plugin(cni_config, "ptp", log, fail=True)

        with pytest.raises(CNIError, match="boom no address"):
            await CNIRuntime(cni_config).add("fcnet", "vm1", Path(NETNS), "vethabcdefghijk")

    async def test_missing_plugin_binary(self, cni_config: CNIConfig) -> None:
        _write_conf(cni_config, "10-fcnet.conflist", {"name": "fcnet", "plugins": [{"type": "absent"}]})
        with pytest.raises(CNIError, match="not found"):
            await CNIRuntime(cni_config).add("fcnet", "vm1", Path(NETNS), "vethabcdefghijk")
