import logging
import socket
from typing import List, Optional

logger = logging.getLogger(__name__)


def local_ips() -> List[str]:
    ips = []
    try:
        infos = socket.getaddrinfo(socket.gethostname(), None, socket.AF_INET)
    except socket.gaierror as e:
        logger.debug(f"Could not resolve local host name: {e}")
        infos = []
    for info in infos:
        address = info[4][0]
        if not address.startswith("127.") and address not in ips:
            ips.append(address)
    # Home wifi ranges first
    return sorted(ips, key=lambda ip: not ip.startswith("192.168"))


def primary_ip() -> Optional[str]:
    """The address of the interface used for outbound traffic. No packet is sent."""
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
            s.connect(("8.8.8.8", 80))
            return s.getsockname()[0]
    except OSError:
        return None


def best_ips() -> List[str]:
    ips = local_ips()
    primary = primary_ip()
    if primary:
        ips = [primary] + [ip for ip in ips if ip != primary]
    return ips or ["127.0.0.1"]
