import hashlib
import threading
from collections.abc import Iterator
import inspect
import ipaddress
from inspect import Parameter, signature
from typing import Callable, Optional, Sequence

from fastapi import Request

_FORWARDED_HEADERS = (
    "x-forwarded-for",
    "x-real-ip",
    "cf-connecting-ip",
    "x-client-ip",
)


def merge_dedup_seq_params(
    *seqs_of_params: Sequence[Parameter],
):
    seen = {}
    for seq_of_params in seqs_of_params:
        for param in seq_of_params:
            if param.name not in seen:
                seen[param.name] = param
                yield param


def prepend_request_to_signature_params_of_function(
    function: Callable,
):
    new_request_param: Parameter = Parameter(
        name="request",
        kind=Parameter.POSITIONAL_ONLY,
        annotation=Request,
        default=Parameter.empty,
    )
    yield new_request_param
    yield from signature(function).parameters.values()


def rearrange_params(params: Iterator[Parameter]):
    """Order parameters so that `inspect.Signature` accepts them.

    Order: POSITIONAL_ONLY, required POSITIONAL_OR_KEYWORD, optional POSITIONAL_OR_KEYWORD,
           VAR_POSITIONAL, KEYWORD_ONLY, VAR_KEYWORD
    """

    def rank(p: Parameter) -> int:
        if p.kind == Parameter.POSITIONAL_ONLY:
            return 0
        if p.kind == Parameter.POSITIONAL_OR_KEYWORD:
            return 1 if p.default is Parameter.empty else 2
        if p.kind == Parameter.VAR_POSITIONAL:
            return 3
        if p.kind == Parameter.KEYWORD_ONLY:
            return 4
        return 5

    # sorted() is stable, so declaration order survives within each group
    yield from sorted(params, key=rank)


def _peer_is_trusted(peer: Optional[str], trusted_proxies: Sequence[str]) -> bool:
    if not peer:
        return False
    try:
        address = ipaddress.ip_address(peer)
    except ValueError:
        return False
    return any(
        address in ipaddress.ip_network(network, strict=False)
        for network in trusted_proxies
    )


def get_client_ip(request: Request, trusted_proxies: Optional[Sequence[str]] = None) -> str:
    """Extract the client IP, honouring the usual proxy headers.

    With ``trusted_proxies`` set, forwarded headers are only believed when
    the connecting peer sits inside one of those networks; otherwise the
    peer address itself is the client.
    """
    peer = request.client.host if getattr(request, "client", None) else None
    honour_headers = trusted_proxies is None or _peer_is_trusted(peer, trusted_proxies)

    if honour_headers:
        for header in _FORWARDED_HEADERS:
            value = request.headers.get(header)
            if value:
                ip = value.split(",")[0].strip()
                if ip and ip != "unknown":
                    return ip

    if peer:
        return peer

    return "unknown"


def derive_identity_key(client_ip: str, cookie_value: Optional[str]) -> str:
    """Identity key for a session: connection address plus session cookie."""
    combined = f"{client_ip}|{cookie_value or ''}"
    return hashlib.sha256(combined.encode()).hexdigest()[:32]


class ShardedLockMap:
    """Fixed pool of locks; each key always maps to the same lock.

    Mutations for one key are serialized while unrelated keys mostly land
    on different shards and do not contend.
    """

    def __init__(self, shards: int = 64):
        if shards < 1:
            raise ValueError("shards must be at least 1")
        self._locks = tuple(threading.Lock() for _ in range(shards))

    def __len__(self) -> int:
        return len(self._locks)

    def lock_for(self, key: str) -> threading.Lock:
        return self._locks[hash(key) % len(self._locks)]


def is_coroutine_callable(call: Callable) -> bool:
    """True for ``async def`` functions and objects with an ``async __call__``."""
    if inspect.isroutine(call):
        return inspect.iscoroutinefunction(call)
    if inspect.isclass(call):
        return False
    return inspect.iscoroutinefunction(getattr(call, "__call__", None))
