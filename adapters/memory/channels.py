"""
Logging channel stubs.

Neither channel talks to a real provider; deliveries are logged and kept in
an outbox so local runs and tests can see what would have gone out.
"""

from dataclasses import dataclass, field

import structlog

logger = structlog.get_logger(__name__)


@dataclass
class PushMessage:
    push_token: str
    title: str
    body: str
    data: dict[str, str] = field(default_factory=dict)


@dataclass
class SmsMessage:
    phone: str
    body: str


class LoggingPushChannel:
    def __init__(self) -> None:
        self.outbox: list[PushMessage] = []

    async def send(self, push_token: str, title: str, body: str, data: dict[str, str]) -> None:
        self.outbox.append(PushMessage(push_token, title, body, dict(data)))
        logger.info("push_sent", title=title, kind=data.get("kind"))


class LoggingSmsChannel:
    """SMS is not wired to a provider yet; messages are only logged."""

    def __init__(self) -> None:
        self.outbox: list[SmsMessage] = []

    async def send(self, phone: str, body: str) -> None:
        self.outbox.append(SmsMessage(phone, body))
        logger.info("sms_logged", phone_suffix=phone[-4:], length=len(body))
