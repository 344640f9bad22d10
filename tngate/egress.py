"""Egress helpers: traffic that bypasses the tunnel, and netfilter redirect rules."""

from __future__ import annotations

import asyncio
import logging
import re
import shutil
from collections.abc import Iterable
from dataclasses import dataclass
from email.utils import formatdate
from typing import Any

from tngate.supervise import ShutdownGuard

logger = logging.getLogger(__name__)

INVALID_HTTP_REQUEST_RESPONSE_BODY = (
    "This service is secured by TNG secure session and you must establish the connection "
    "via TNG.\n\nIf this is an unexpected behavior, add path matching rules to "
    "`decap_from_http.allow_non_tng_traffic_regexes` option."
)

READ_REQUEST_TIMEOUT = 5.0

_HEAD_TERMINATOR = b"\r\n\r\n"
_HTTP1_VERSIONS = ("HTTP/1.0", "HTTP/1.1")


class DirectlyForwardTrafficDetector:
    """Decides from a request path whether traffic skips the secure tunnel."""

    def __init__(self, regexes: Iterable[str] | None = None) -> None:
        compiled = []
        for pattern in regexes or ():
            try:
                compiled.append(re.compile(pattern))
            except re.error as exc:
                raise ValueError(f"Invalid regex: {pattern}") from exc
        self.regexes = tuple(compiled)

    def should_forward_directly(self, path: str) -> bool:
        """Whether any configured pattern matches somewhere in ``path``."""
        return any(regex.search(path) for regex in self.regexes)


def _http_response(status: int, reason: str, body: bytes) -> bytes:
    head = (
        f"HTTP/1.1 {status} {reason}\r\n"
        "connection: close\r\n"
        f"content-length: {len(body)}\r\n"
        f"date: {formatdate(usegmt=True)}\r\n"
        "\r\n"
    )
    return head.encode("ascii") + body


def _is_valid_request_head(head: bytes) -> bool:
    lines = head[: -len(_HEAD_TERMINATOR)].decode("latin-1").split("\r\n")
    parts = lines[0].split(" ")
    if len(parts) != 3:
        return False
    method, target, version = parts
    if not method or not target or version not in _HTTP1_VERSIONS:
        return False
    for line in lines[1:]:
        name, sep, _ = line.partition(":")
        if not sep or not name or name != name.strip():
            return False
    return True


async def _close_writer(writer: Any) -> None:
    try:
        writer.close()
        wait_closed = getattr(writer, "wait_closed", None)
        if callable(wait_closed):
            await wait_closed()
    except OSError:
        logger.debug("error while closing connection", exc_info=True)


async def _answer_non_tng_client(reader: asyncio.StreamReader, writer: Any) -> None:
    try:
        try:
            head = await asyncio.wait_for(
                reader.readuntil(_HEAD_TERMINATOR), READ_REQUEST_TIMEOUT
            )
        except asyncio.TimeoutError:
            logger.error("Failed to serve connection: timed out reading request header")
            return
        except asyncio.IncompleteReadError:
            logger.error("Failed to serve connection: connection closed before message completed")
            return
        except asyncio.LimitOverrunError:
            writer.write(_http_response(431, "Request Header Fields Too Large", b""))
            await writer.drain()
            logger.error("Failed to serve connection: request header too large")
            return

        if _is_valid_request_head(head):
            body = INVALID_HTTP_REQUEST_RESPONSE_BODY.encode("utf-8")
            writer.write(_http_response(418, "I'm a teapot", body))
        else:
            writer.write(_http_response(400, "Bad Request", b""))
            logger.error("Failed to serve connection: invalid HTTP request")
        await writer.drain()
    except OSError as error:
        logger.error("Failed to serve connection: %s", error)
    finally:
        await _close_writer(writer)


async def send_http1_response_to_non_tng_client(
    shutdown_guard: ShutdownGuard, reader: asyncio.StreamReader, writer: Any
) -> asyncio.Task[Any]:
    """Answer a plain HTTP/1 client with a notice in the background.

    Returns the supervised task that serves the single request.
    """
    return shutdown_guard.spawn_supervised_task(
        _answer_non_tng_client(reader, writer), name="direct_response"
    )


@dataclass(frozen=True)
class NetfilterEgressRules:
    """The iptables rules that redirect captured traffic to a netfilter egress."""

    id: int
    capture_dst_port: int
    listen_port: int
    so_mark: int
    capture_dst_host: str | None = None
    capture_local_traffic: bool = False

    def gen_script(self) -> tuple[str, str]:
        """Return the shell scripts that install and remove the rules."""
        if shutil.which("iptables") is None:
            raise FileNotFoundError(
                'The external tool "iptables" is not found, please install it'
            )

        chain = f"TNG_EGRESS_{self.id}"
        clean_up = (
            f"iptables -t nat -D PREROUTING -p tcp -j {chain} 2>/dev/null || true ; "
            f"iptables -t nat -D OUTPUT -p tcp -j {chain} 2>/dev/null || true ; "
            f"iptables -t nat -F {chain} 2>/dev/null || true ; "
            f"iptables -t nat -X {chain} 2>/dev/null || true ; "
        )

        port = self.capture_dst_port
        listen = self.listen_port
        host = self.capture_dst_host
        if host is not None:
            if self.capture_local_traffic:
                match = f"--dst {host}/32 --dport {port}"
            else:
                match = f"-m addrtype ! --src-type LOCAL --dst {host}/32 --dport {port}"
        elif self.capture_local_traffic:
            match = f"-m addrtype --dst-type LOCAL --dport {port}"
        else:
            match = f"-m addrtype ! --src-type LOCAL --dst-type LOCAL --dport {port}"

        invoke = "".join(
            [
                clean_up,
                f"iptables -t nat -N {chain} ; ",
                f"iptables -t nat -A {chain} -p tcp -m mark --mark {self.so_mark} -j RETURN ; ",
                f"iptables -t nat -A {chain} -p tcp {match} -j REDIRECT --to-ports {listen} ; ",
                f"iptables -t nat -I PREROUTING 1 -p tcp -j {chain} ; ",
                f"iptables -t nat -I OUTPUT 1 -p tcp -j {chain} ; ",
            ]
        )
        return invoke, clean_up