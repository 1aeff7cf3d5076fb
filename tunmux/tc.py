"""Network emulation (tc netem) and docker helpers for exercising the multiplexer."""

from __future__ import annotations

import ipaddress
import socket
import subprocess
from dataclasses import dataclass
from typing import Callable, Dict, Iterator, List, Sequence, Tuple, TypeVar

import psutil

T = TypeVar("T")

_IP_FAMILIES = (socket.AF_INET, socket.AF_INET6)


@dataclass(frozen=True)
class Eth:
    """A network interface and one of its IP addresses."""

    eth_name: str
    eth_addr: str


def _prefix_length(address: ipaddress._BaseAddress, netmask: str | None) -> int:
    if not netmask:
        return address.max_prefixlen
    try:
        mask = ipaddress.ip_address(netmask.split("%", 1)[0])
    except ValueError:
        return address.max_prefixlen
    return bin(int(mask)).count("1")


def _interface_addresses() -> Iterator[Tuple[str, List[str]]]:
    """Yield (interface name, ["ip/prefix", ...]) for every interface."""
    for name, addrs in psutil.net_if_addrs().items():
        cidrs = []
        for addr in addrs:
            if addr.family not in _IP_FAMILIES:
                continue
            try:
                parsed = ipaddress.ip_address(addr.address.split("%", 1)[0])
            except ValueError:
                continue
            cidrs.append(f"{parsed}/{_prefix_length(parsed, addr.netmask)}")
        yield name, cidrs


def ips() -> Dict[str, str]:
    """Map each non-loopback interface name to its last address in CIDR form."""
    result: Dict[str, str] = {}
    for name, cidrs in _interface_addresses():
        if "Loopback" in name or "isatap" in name:
            continue
        for cidr in cidrs:
            result[name] = cidr
    return result


def get_eth_by_ip(ip_addr: str) -> Eth:
    """Find the interface holding ``ip_addr``, or the first one if it is empty.

    Raises LookupError when no interface matches.
    """
    for name, cidrs in _interface_addresses():
        if "Loopback" in name or "isatap" in name or "lo" in name:
            continue
        for cidr in cidrs:
            parts = cidr.split("/")
            if len(parts) == 2 and (ip_addr == "" or parts[0] == ip_addr):
                return Eth(eth_name=name, eth_addr=parts[0])
    raise LookupError("not found interface")


def array_exhaustivity(items: Sequence[T]) -> List[List[T]]:
    """Return every non-empty subset of ``items``, ordered by its bit pattern."""
    return [
        [item for bit, item in enumerate(items) if (mask >> bit) & 1]
        for mask in range(1, 1 << len(items))
    ]


def run_cmd(args: Sequence[str]) -> subprocess.CompletedProcess:
    """Run a command, capturing its output; raise if it fails."""
    command = list(args)
    print("run cmd:", command)
    try:
        return subprocess.run(command, capture_output=True, check=True)
    except subprocess.CalledProcessError as exc:
        stderr = exc.stderr or b""
        if isinstance(stderr, bytes):
            stderr = stderr.decode(errors="replace")
        print(f"{exc}: {stderr}")
        raise
    except OSError as exc:
        print(f"{exc}: ")
        raise


def create_network(name: str, network: str) -> subprocess.CompletedProcess:
    """Create a docker network with the given subnet."""
    return run_cmd(["docker", "network", "create", "--subnet=" + network, name])


def delete_network(name: str) -> subprocess.CompletedProcess:
    """Remove a docker network."""
    return run_cmd(["docker", "network", "rm", name])


def run_docker(
    docker_name: str, network_name: str, ip: str, test_name: str, now_dir: str
) -> subprocess.CompletedProcess:
    """Run the named test inside a container attached to ``network_name`` at ``ip``."""
    return run_cmd([
        "docker", "run", "--rm", "--name", docker_name, "--net", network_name,
        "--cap-add=NET_ADMIN", "--ip", ip, "-v", now_dir + ":/usr/src/myapp",
        "-w", "/usr/src/myapp", "python", "python", "-m", "pytest",
        "-v", "-k", test_name, "./",
    ])


def stop_docker(docker_name: str) -> subprocess.CompletedProcess:
    """Stop a running container."""
    return run_cmd(["docker", "stop", docker_name])


class TrafficControl:
    """Builds and applies netem settings on one interface."""

    def __init__(self, eth: Eth) -> None:
        self.eth = eth
        self.params: List[str] = []

    @classmethod
    def from_ip(cls, ip_addr: str) -> "TrafficControl":
        """Control the interface that holds ``ip_addr`` (any interface if empty)."""
        return cls(get_eth_by_ip(ip_addr))

    def run_net_range_test(self, func: Callable[[], None]) -> None:
        """Run ``func`` under every combination of the impairments."""
        for group in array_exhaustivity(self._test_variables()):
            try:
                self.delete()
            except (subprocess.CalledProcessError, OSError):
                pass
            for action in group:
                action()
            self.run()
            func()
            self.delete()

    def _test_variables(self) -> List[Callable[[], None]]:
        return [
            lambda: self.delay("add", "100ms", "10ms", "30%"),
            lambda: self.loss("add", "1%", "30%"),
            lambda: self.duplicate("add", "1%"),
            lambda: self.corrupt("add", "0.2%"),
        ]

    def delay(self, opt: str, delay_val: str, wave: str, wave_ratio: str) -> None:
        """Delay packets by ``delay_val``, ``wave_ratio`` of them varying by ``wave``."""
        self.params.extend(["delay", delay_val, wave, wave_ratio])

    def loss(self, opt: str, loss_ratio: str, loss_success_ratio: str) -> None:
        """Drop ``loss_ratio`` of packets with correlation ``loss_success_ratio``."""
        self.params.extend(["loss", loss_ratio, loss_success_ratio])

    def duplicate(self, opt: str, duplicate_ratio: str) -> None:
        """Duplicate ``duplicate_ratio`` of packets."""
        self.params.extend(["duplicate", duplicate_ratio])

    def corrupt(self, opt: str, corrupt_ratio: str) -> None:
        """Corrupt ``corrupt_ratio`` of packets."""
        self.params.extend(["corrupt", corrupt_ratio])

    def run(self) -> subprocess.CompletedProcess:
        """Apply the collected settings as a netem root qdisc."""
        self.params = ["qdisc", "add", "dev", self.eth.eth_name, "root", "netem", *self.params]
        return run_cmd(["tc", *self.params])

    def delete(self) -> subprocess.CompletedProcess:
        """Remove every tc setting from the interface."""
        self.clear()
        return run_cmd(["tc", "qdisc", "del", "dev", self.eth.eth_name, "root"])

    def clear(self) -> None:
        """Forget the collected settings."""
        self.params.clear()

    def bandwidth(self, bw: str) -> subprocess.CompletedProcess:
        """Limit the interface to ``bw`` with an htb qdisc."""
        try:
            run_cmd([
                "tc", "qdisc", "add", "dev", self.eth.eth_name, "root",
                "handle", "2:", "htb", "default", "30",
            ])
        except (subprocess.CalledProcessError, OSError):
            pass
        return run_cmd([
            "tc", "qdisc", "add", "dev", self.eth.eth_name, "parent", "2:",
            "classid", "2:30", "htb", "rate", bw,
        ])