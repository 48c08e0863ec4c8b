import json
import logging
from datetime import datetime, timezone

from bookswap.config import settings

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

trade_logger = logging.getLogger("trade")
realtime_logger = logging.getLogger("realtime")


class TradeAuditLogger:
    @staticmethod
    def log_transition(
        trade_id: int,
        actor_id: int,
        from_status: str | None,
        to_status: str,
        additional_data: dict[str, object] | None = None,
    ):
        log_data: dict[str, object] = {
            "event_type": "trade_transition",
            "trade_id": trade_id,
            "actor_id": actor_id,
            "from_status": from_status,
            "to_status": to_status,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        if additional_data:
            log_data.update(additional_data)

        trade_logger.info(f"Trade {trade_id} {from_status or 'new'} -> {to_status}: {json.dumps(log_data)}")

    @staticmethod
    def log_rejected_transition(
        trade_id: int | None,
        actor_id: int,
        attempted: str,
        reason: str,
    ):
        log_data: dict[str, object] = {
            "event_type": "trade_transition_refused",
            "trade_id": trade_id,
            "actor_id": actor_id,
            "attempted": attempted,
            "reason": reason,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

        trade_logger.warning(f"Trade transition refused: {json.dumps(log_data)}")

    @staticmethod
    def log_connection_event(event: str, user_id: int | None, **details: object):
        log_data: dict[str, object] = {
            "event_type": event,
            "user_id": user_id,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            **details,
        }
        realtime_logger.info(json.dumps(log_data))
