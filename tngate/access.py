"""Attestation results and access log records."""

from __future__ import annotations

import enum
import json
from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from typing import Any


def _render_claim(value: bytes) -> str:
    try:
        text = value.decode("utf-8")
    except UnicodeDecodeError:
        return value.hex()
    if "\0" in text:
        return value.hex()
    return text


class PrettyPrintClaims(Mapping[str, bytes]):
    """Attestation claims whose repr shows text values as text and others as hex."""

    def __init__(self, claims: Mapping[str, bytes]) -> None:
        self._claims = {str(name): bytes(value) for name, value in claims.items()}

    def __getitem__(self, name: str) -> bytes:
        return self._claims[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._claims)

    def __len__(self) -> int:
        return len(self._claims)

    def __repr__(self) -> str:
        entries = ", ".join(
            f"{json.dumps(name, ensure_ascii=False)}: "
            f"{json.dumps(_render_claim(value), ensure_ascii=False)}"
            for name, value in self._claims.items()
        )
        return "{" + entries + "}"


@dataclass(frozen=True, repr=False)
class AttestationResult:
    """The claims of a peer that passed remote attestation."""

    claims: PrettyPrintClaims

    @staticmethod
    def from_claims(claims: Mapping[str, bytes]) -> AttestationResult:
        """Take a copy of ``claims``."""
        return AttestationResult(PrettyPrintClaims(claims))

    def __repr__(self) -> str:
        return f"AttestationResult {{ claims: {self.claims!r} }}"


class AccessKind(enum.Enum):
    """Direction of a tunnelled connection."""

    INGRESS = "Ingress"
    EGRESS = "Egress"


def _format_endpoint(endpoint: Any) -> str:
    if isinstance(endpoint, tuple) and len(endpoint) >= 2:
        host, port = endpoint[0], endpoint[1]
        if ":" in str(host):
            return f"[{host}]:{port}"
        return f"{host}:{port}"
    return str(endpoint)


@dataclass(frozen=True)
class AccessLog:
    """One connection passing through an ingress or an egress."""

    kind: AccessKind
    downstream: Any
    upstream: Any
    trusted_tunnel: bool
    peer_attested: AttestationResult | None = None

    @staticmethod
    def ingress(
        downstream: Any,
        upstream: Any,
        to_trusted_tunnel: bool,
        peer_attested: AttestationResult | None = None,
    ) -> AccessLog:
        return AccessLog(AccessKind.INGRESS, downstream, upstream, to_trusted_tunnel, peer_attested)

    @staticmethod
    def egress(
        downstream: Any,
        upstream: Any,
        from_trusted_tunnel: bool,
        peer_attested: AttestationResult | None = None,
    ) -> AccessLog:
        return AccessLog(AccessKind.EGRESS, downstream, upstream, from_trusted_tunnel, peer_attested)

    def __str__(self) -> str:
        flag = "to_trusted_tunnel" if self.kind is AccessKind.INGRESS else "from_trusted_tunnel"
        attested = "None" if self.peer_attested is None else f"Some({self.peer_attested!r})"
        return (
            f"{self.kind.value} {{ downstream: {_format_endpoint(self.downstream)}, "
            f"upstream: {_format_endpoint(self.upstream)}, "
            f"{flag}: {'true' if self.trusted_tunnel else 'false'}, "
            f"peer_attested: {attested} }}"
        )