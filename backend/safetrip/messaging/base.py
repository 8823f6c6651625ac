from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol


@dataclass
class AlertMessage:
    """What every channel renders for one emergency contact."""
    alert_id: int
    kind: str
    title: str
    body: str
    subject_name: str
    reason: str
    timestamp: str
    map_link: str | None = None

    def data(self) -> dict[str, Any]:
        return {"alert_id": self.alert_id, "kind": self.kind, "map_link": self.map_link}


@dataclass
class DeliveryResult:
    ok: bool
    channel: str
    provider_id: str | None = None
    error: str | None = None
    # False when the contact has no address for this channel (no phone, no email, no linked devices)
    applicable: bool = True

    def dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "channel": self.channel,
            "provider_id": self.provider_id,
            "error": self.error,
            "applicable": self.applicable,
        }


def not_applicable(channel: str, reason: str) -> DeliveryResult:
    return DeliveryResult(ok=False, channel=channel, error=reason, applicable=False)


class AlertChannel(Protocol):
    name: str

    async def send(self, contact: Any, message: AlertMessage) -> DeliveryResult:
        ...
