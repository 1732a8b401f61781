"""Endpoint descriptors and connection strategies."""

from enum import Enum
from typing import Iterable

from pydantic import BaseModel, ConfigDict, model_validator

from config import RAW_CHANNELS, SERVICE_IDS


class ServiceEndpoint(BaseModel):
    """One (service identifier, security mode) pair of the endpoint descriptor."""

    model_config = ConfigDict(frozen=True)

    service_id: str
    secure: bool


class StrategyKind(str, Enum):
    SECURE = "secure"
    INSECURE = "insecure"
    RAW_CHANNEL = "raw_channel"


class ConnectionStrategy(BaseModel):
    """
    A single way of opening a stream to a peer.

    SECURE and INSECURE address a service identifier; RAW_CHANNEL skips
    the service lookup and dials an RFCOMM channel directly.
    """

    model_config = ConfigDict(frozen=True)

    kind: StrategyKind
    service_id: str | None = None
    channel: int | None = None

    @model_validator(mode="after")
    def _check_target(self) -> "ConnectionStrategy":
        if self.kind == StrategyKind.RAW_CHANNEL:
            if self.channel is None or self.service_id is not None:
                raise ValueError("raw channel strategy takes a channel only")
        elif self.service_id is None or self.channel is not None:
            raise ValueError(f"{self.kind.value} strategy takes a service id only")
        return self

    @classmethod
    def secure_service(cls, service_id: str) -> "ConnectionStrategy":
        return cls(kind=StrategyKind.SECURE, service_id=service_id)

    @classmethod
    def insecure_service(cls, service_id: str) -> "ConnectionStrategy":
        return cls(kind=StrategyKind.INSECURE, service_id=service_id)

    @classmethod
    def raw_channel(cls, channel: int) -> "ConnectionStrategy":
        return cls(kind=StrategyKind.RAW_CHANNEL, channel=channel)

    @property
    def secure(self) -> bool:
        return self.kind == StrategyKind.SECURE

    def describe(self) -> str:
        if self.kind == StrategyKind.RAW_CHANNEL:
            return f"raw channel {self.channel}"
        return f"{self.kind.value} {self.service_id}"


def listen_endpoints(service_ids: Iterable[str] = SERVICE_IDS) -> list[ServiceEndpoint]:
    """Secure then insecure, for each identifier in order."""
    endpoints = []
    for service_id in service_ids:
        endpoints.append(ServiceEndpoint(service_id=service_id, secure=True))
        endpoints.append(ServiceEndpoint(service_id=service_id, secure=False))
    return endpoints


def connect_strategies(
    service_ids: Iterable[str] = SERVICE_IDS,
    raw_channels: Iterable[int] = RAW_CHANNELS,
) -> list[ConnectionStrategy]:
    """All secure attempts, then all insecure attempts, then raw channels."""
    service_ids = list(service_ids)
    return (
        [ConnectionStrategy.secure_service(s) for s in service_ids]
        + [ConnectionStrategy.insecure_service(s) for s in service_ids]
        + [ConnectionStrategy.raw_channel(c) for c in raw_channels]
    )
