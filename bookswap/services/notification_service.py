import logging
from typing import Any

from bookswap.core.exceptions import DeliveryFailure
from bookswap.schemas.notification import NotificationEvent, WireMessage, WirePayload
from bookswap.services.websocket_service import RealtimeChannelManager

logger = logging.getLogger(__name__)


def to_wire(event: NotificationEvent) -> dict[str, Any]:
    message = WireMessage(
        type=event.type,
        payload=WirePayload(
            message=event.message,
            tradeId=str(event.related_trade_id) if event.related_trade_id is not None else None,
            timestamp=event.timestamp.isoformat().replace("+00:00", "Z"),
        ),
    )
    return message.model_dump(mode="json", exclude_none=True)


class NotificationDispatcher:
    """Routes trade events to the target user's live connections, best effort."""

    def __init__(self, channel_manager: RealtimeChannelManager):
        self.channel_manager = channel_manager

    async def dispatch(self, event: NotificationEvent) -> None:
        try:
            delivered = await self.channel_manager.send(event.target_user_id, to_wire(event))
        except DeliveryFailure as e:
            logger.debug(f"Dropped {event.type.value} for user {event.target_user_id}: {e.reason}")
            return
        except Exception:
            logger.exception(
                f"Unexpected error dispatching {event.type.value} to user {event.target_user_id}"
            )
            return

        logger.info(
            f"Delivered {event.type.value} for trade {event.related_trade_id} "
            f"to user {event.target_user_id} ({delivered} connection(s))"
        )

    async def dispatch_all(self, events: list[NotificationEvent]) -> None:
        for event in events:
            await self.dispatch(event)
