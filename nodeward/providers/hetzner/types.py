"""Hetzner Cloud API response types.

TypedDicts for API responses, only the fields nodeward reads.
"""

from __future__ import annotations

from typing import NotRequired, TypedDict


class IPv4Response(TypedDict):
    ip: str


class IPv6Response(TypedDict):
    ip: str


class PublicNetResponse(TypedDict):
    ipv4: IPv4Response | None
    ipv6: IPv6Response | None


class PrivateNetResponse(TypedDict):
    network: int
    ip: str


class ServerResponse(TypedDict):
    id: int
    name: str
    status: str
    public_net: PublicNetResponse
    private_net: NotRequired[list[PrivateNetResponse]]
    labels: NotRequired[dict[str, str]]


class ActionResponse(TypedDict):
    id: int
    command: str
    status: str  # running | success | error
    error: NotRequired[dict[str, str] | None]


class CreateServerResponse(TypedDict):
    server: ServerResponse
    action: ActionResponse


class FirewallRuleParams(TypedDict):
    direction: str
    protocol: str
    source_ips: list[str]
    port: NotRequired[str]
    description: NotRequired[str]


class FirewallResponse(TypedDict):
    id: int
    name: str
    rules: list[FirewallRuleParams]


class NamedResourceResponse(TypedDict):
    """server_types, images, networks and ssh_keys all share this shape."""

    id: int
    name: str


class PaginationMeta(TypedDict):
    page: int
    next_page: int | None


class MetaResponse(TypedDict):
    pagination: PaginationMeta
