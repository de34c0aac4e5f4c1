"""
scope.py — Sharing scopes and the per-session scope resolver.

A scope is either a network prefix (derived from the client's public IP) or
a private-space key. The resolver caches the network lookup on an explicit
SessionContext instead of module globals, so switching scopes is a visible,
testable transition.
"""

import ipaddress
import logging
import random
from dataclasses import dataclass, field
from typing import Optional

import httpx

import config
from errors import ScopeUnavailable
from retry import with_retry

logger = logging.getLogger(__name__)

NETWORK = "network"
SPACE = "space"


@dataclass(frozen=True)
class Scope:
    kind: str
    id: str

    @classmethod
    def network(cls, prefix: str) -> "Scope":
        return cls(NETWORK, prefix)

    @classmethod
    def private(cls, key: str) -> "Scope":
        key = (key or "").strip()
        if not key:
            raise ScopeUnavailable("Private space key must not be empty")
        return cls(SPACE, key)

    @property
    def is_private(self) -> bool:
        return self.kind == SPACE

    def as_dict(self) -> dict:
        # Private keys are secrets; only their kind is echoed back.
        return {"kind": self.kind, "id": None if self.is_private else self.id}

    def __str__(self):
        return f"{self.kind}:{'***' if self.is_private else self.id}"


def network_prefix(ip: str, segments: int = None) -> str:
    """Leading ``segments`` octets of an IPv4 address, or the /64 of an IPv6 one."""
    segments = segments or config.NETWORK_PREFIX_SEGMENTS
    addr = ipaddress.ip_address(ip.strip())
    if addr.version == 4:
        return ".".join(str(addr).split(".")[:segments])
    return str(ipaddress.ip_network(f"{addr}/64", strict=False).network_address)


def pseudo_ip() -> str:
    return f"192.168.{random.randint(0, 254)}.{random.randint(1, 254)}"


@dataclass
class SessionContext:
    """State held for one client session: the cached lookup and loaded items."""
    ip: Optional[str] = None
    prefix: Optional[str] = None
    scope: Optional[Scope] = None
    degraded: bool = False
    warnings: list = field(default_factory=list)
    files: list = field(default_factory=list)
    text: Optional[object] = None

    def clear_items(self):
        self.files = []
        self.text = None

    def invalidate(self):
        self.ip = None
        self.prefix = None
        self.scope = None
        self.degraded = False
        self.clear_items()


class IpLookupClient:
    """Client for an IP lookup service answering ``GET -> {"ip": "..."}``."""

    def __init__(self, url: str = None, timeout: float = None, transport=None):
        self.url = url or config.IP_LOOKUP_URL
        self.timeout = config.IP_LOOKUP_TIMEOUT if timeout is None else timeout
        self._transport = transport

    async def fetch_ip(self) -> str:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            response = await client.get(self.url)
            response.raise_for_status()
            ip = response.json().get("ip")
        if not ip:
            raise ValueError("IP lookup response has no 'ip' field")
        return ip


class ScopeResolver:

    def __init__(self, ip_lookup: IpLookupClient = None, gateway=None,
                 context: SessionContext = None, retry_delay: float = None):
        self.ip_lookup = ip_lookup or IpLookupClient()
        self.gateway = gateway
        self.context = context or SessionContext()
        self.retry_delay = retry_delay

    async def resolve_scope(self, explicit_key: Optional[str] = None) -> Scope:
        if explicit_key is not None:
            scope = Scope.private(explicit_key)
            self.context.scope = scope
            return scope

        if self.context.prefix is None:
            await self._lookup_network()
        scope = Scope.network(self.context.prefix)
        self.context.scope = scope
        return scope

    async def switch_scope(self, explicit_key: Optional[str] = None) -> Scope:
        """Explicit transition between network and private-space mode."""
        self.context.clear_items()
        self.context.scope = None
        return await self.resolve_scope(explicit_key)

    async def _lookup_network(self):
        ctx = self.context
        try:
            ip = await with_retry(
                self.ip_lookup.fetch_ip,
                what="IP lookup",
                delay=self.retry_delay,
                retry_on=(httpx.HTTPError, OSError),
            )
            prefix = network_prefix(ip)
            ctx.degraded = False
        except (httpx.HTTPError, OSError, ValueError) as e:
            ip = pseudo_ip()
            prefix = network_prefix(ip)
            ctx.degraded = True
            message = f"IP lookup failed ({e}); using simulated address {ip}"
            ctx.warnings.append(message)
            logger.warning(message)

        ctx.ip = ip
        ctx.prefix = prefix
        if not ctx.degraded:
            await self._register(ip, prefix)

    async def _register(self, ip: str, prefix: str):
        if self.gateway is None:
            return
        try:
            await self.gateway.register_connection(ip, prefix)
        except Exception as e:
            logger.warning(f"Could not register network connection for {prefix}: {e}")
