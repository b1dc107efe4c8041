import logging
import sys
from datetime import datetime
from typing import Any, Dict, Optional

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout)
    ]
)

logger = logging.getLogger("shipping_connector")


class CarrierConnectionLogger:
    """Bounded in-memory log of carrier API events for admin diagnostics."""

    def __init__(self, max_logs: int = 1000):
        self.logs = []
        self.max_logs = max_logs

    def log_carrier_event(
        self,
        carrier: str,
        event_type: str,
        description: str,
        request_data: Optional[Dict[str, Any]] = None,
        response_data: Optional[Dict[str, Any]] = None,
        status: str = "info",
        error: Optional[str] = None
    ):
        log_entry = {
            "timestamp": datetime.utcnow().isoformat(),
            "carrier": carrier,
            "event_type": event_type,
            "description": description,
            "request_data": self._sanitize_credentials(request_data) if request_data else None,
            "response_data": self._sanitize_credentials(response_data) if response_data else None,
            "status": status,
            "error": error
        }

        self.logs.append(log_entry)

        if len(self.logs) > self.max_logs:
            self.logs.pop(0)

        log_msg = f"[{carrier}:{event_type}] {description}"
        if error:
            logger.error(f"{log_msg} - Error: {error}")
        else:
            logger.info(log_msg)

        return log_entry

    def _sanitize_credentials(self, data: Dict[str, Any]) -> Dict[str, Any]:
        if not data:
            return {}

        sanitized = data.copy()
        sensitive_keys = [
            "client_secret", "access_token", "refresh_token", "api_secret",
            "password", "authorization", "client_id", "api_key"
        ]

        for key in sensitive_keys:
            if key in sanitized and sanitized[key] is not None:
                value = str(sanitized[key])
                if len(value) > 8:
                    sanitized[key] = f"{value[:4]}...{value[-4:]}"
                else:
                    sanitized[key] = "***"

        return sanitized

    def get_logs(self, limit: Optional[int] = None, carrier: Optional[str] = None) -> list:
        logs = self.logs
        if carrier:
            logs = [entry for entry in logs if entry["carrier"] == carrier]
        if limit:
            return logs[-limit:]
        return logs

    def clear_logs(self):
        self.logs = []
        logger.info("Cleared carrier connection logs")


carrier_logger = CarrierConnectionLogger()
