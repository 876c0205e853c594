"""OVHcloud Public Cloud API response types."""

from __future__ import annotations

from typing import NotRequired, TypedDict


class IPAddressResponse(TypedDict):
    ip: str
    type: str  # public | private
    version: int


class InstanceResponse(TypedDict):
    id: str
    name: str
    status: str
    ipAddresses: NotRequired[list[IPAddressResponse]]


class FlavorResponse(TypedDict):
    id: str
    name: str
    available: bool


class ImageResponse(TypedDict):
    id: str
    name: str
    status: str


class SSHKeyResponse(TypedDict):
    id: str
    name: str
    region: NotRequired[str]


class NetworkRegionResponse(TypedDict):
    region: str
    status: str


class NetworkResponse(TypedDict):
    id: str
    name: str
    status: str
    regions: list[NetworkRegionResponse]
    type: NotRequired[str]


class NetworkParams(TypedDict):
    networkId: str


class InstanceCreateParams(TypedDict):
    name: str
    flavorId: str
    imageId: str
    region: str
    userData: str
    monthlyBilling: bool
    sshKeyId: NotRequired[str]
    networks: NotRequired[list[NetworkParams]]
