import ipaddress
from datetime import datetime, timezone
from typing import Iterable, Optional

from werkzeug.wrappers import Request

from models import ClientInfo

UNKNOWN = "unknown"


def extract_client_info(request: Request) -> ClientInfo:
    """
    Resolve the caller's identity from proxy headers.

    The first entry of X-Forwarded-For wins, then X-Real-IP, then "unknown".
    """
    forwarded = request.headers.get("X-Forwarded-For", "")
    ip = forwarded.split(",")[0].strip() if forwarded else ""
    if not ip:
        ip = (request.headers.get("X-Real-IP") or "").strip() or UNKNOWN

    return ClientInfo(
        ip_address=ip,
        user_agent=request.headers.get("User-Agent") or UNKNOWN,
        origin=request.headers.get("Origin") or UNKNOWN,
        referer=request.headers.get("Referer") or UNKNOWN,
    )


def is_ip_whitelisted(ip: str, whitelist: Optional[Iterable[str]] = None) -> bool:
    """
    Check an address against exact entries and CIDR ranges.

    No whitelist means all IPs are allowed.
    """
    allowed = list(whitelist or [])
    if not allowed:
        return True

    try:
        address = ipaddress.ip_address(ip)
    except ValueError:
        address = None

    for entry in allowed:
        if "/" in entry:
            if address is None:
                continue
            try:
                network = ipaddress.ip_network(entry, strict=False)
            except ValueError:
                continue
            if address.version == network.version and address in network:
                return True
        elif ip == entry:
            return True
    return False


def utc_now() -> datetime:
    return datetime.now(timezone.utc)
