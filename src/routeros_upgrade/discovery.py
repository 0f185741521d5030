"""Build a device registry from a seed device's neighbor table."""

import ipaddress
from typing import Dict, List

from routeros_upgrade import constants
from routeros_upgrade.config import Config
from routeros_upgrade.credentials import Credentials
from routeros_upgrade.device_session import Command, RouterOSSession, SessionFactory, strip_channel
from routeros_upgrade.exceptions import DiscoveryError
from routeros_upgrade.logging_config import get_logger
from routeros_upgrade.models import DeviceRecord


logger = get_logger("routeros_upgrade.discovery")

# as-value key -> DeviceRecord field
NEIGHBOR_FIELDS = {
    "identity": "identity",
    "mac-address": "mac_addr",
    "interface": "interface",
    "board": "board_name",
    "version": "version",
}

ADDRESS_KEYS = ("address", "address4", "address6")


def is_routable(address: str) -> bool:
    """True for any IPv4 address or a non link-local IPv6 address."""
    try:
        ip = ipaddress.ip_address(address.strip())
    except ValueError:
        return False
    if ip.version == 6:
        return not ip.is_link_local
    return True


def _split_entries(raw: str) -> List[Dict[str, str]]:
    entries: List[Dict[str, str]] = []
    current: Dict[str, str] = {}

    for token in raw.split(";"):
        key, sep, value = token.strip().partition("=")
        if not sep:
            continue
        if key == ".id":
            if current:
                entries.append(current)
            current = {}
        current[key] = value

    if current:
        entries.append(current)
    return entries


def parse_neighbors(raw: str) -> List[DeviceRecord]:
    """
    Parse ":put [/ip/neighbor/print as-value]" output.

    The output is a ";"-separated stream of key=value pairs in which each
    neighbor begins with ".id=". Neighbors without an identity or without a
    routable address are skipped; repeated identities keep the first entry.

    Args:
        raw: Console output

    Returns:
        Device records with empty status, in discovery order
    """
    if ".id=" not in raw:
        logger.warning("No valid neighbors found in output")
        return []

    records: List[DeviceRecord] = []
    seen = set()

    for entry in _split_entries(raw):
        identity = entry.get("identity", "")
        address = next((entry[k] for k in ADDRESS_KEYS if entry.get(k)), "")

        if not identity:
            continue
        if not address or not is_routable(address):
            logger.debug(f"Skipping entry: identity={identity} (ip_addr={address}, mac_addr={entry.get('mac-address', '')})")
            continue
        if identity in seen:
            logger.debug(f"Skipping duplicate neighbor {identity} ({address})")
            continue

        values = {field: entry.get(key, "") for key, field in NEIGHBOR_FIELDS.items()}
        values["version"] = strip_channel(values["version"])
        record = DeviceRecord(ip_addr=address, platform=constants.PLATFORM_TAG, status="", **values)

        seen.add(identity)
        records.append(record)
        logger.debug(f"Discovered: {identity} ({address})")

    logger.info(f"Processed {len(records)} device(s)")
    if not records:
        logger.warning("No neighbors with a routable IPv4 or IPv6 address")
    return records


class InventoryBuilder:
    """Collects neighbor data from a seed device."""

    def __init__(self, config: Config, session_factory: SessionFactory = RouterOSSession.connect):
        """
        Initialize inventory builder.

        Args:
            config: Configuration instance
            session_factory: Opens a device session (host, credentials, timeout=, port=)
        """
        self.config = config
        self._session_factory = session_factory

    def build(self, host: str, credentials: Credentials) -> List[DeviceRecord]:
        """
        Discover the seed device's neighbors.

        Args:
            host: Seed device address
            credentials: Login credentials

        Returns:
            Device records

        Raises:
            SessionError: If the seed device cannot be reached
            DiscoveryError: If the neighbor command returned nothing
        """
        logger.info(f"Building inventory for {host}")
        with self._session_factory(
            host,
            credentials,
            timeout=self.config.ssh_timeout,
            port=self.config.ssh_port
        ) as session:
            result = session.exec(Command.neighbors())

        if not result.output.strip():
            raise DiscoveryError(f"Empty output from {Command.neighbors()} on {host}")
        if not result.ok:
            raise DiscoveryError(f"Neighbor query on {host} failed: {result.output.strip()}")

        logger.info("Parsing neighbor data")
        return parse_neighbors(result.output)
