import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout)
    ]
)

logger = logging.getLogger("prodflow")


SENSITIVE_KEYS = (
    "client_secret",
    "access_token",
    "refresh_token",
    "authorization",
    "client_id",
)


def mask_secret(value: Any) -> str:
    text = str(value)
    if len(text) > 8:
        return f"{text[:4]}...{text[-4:]}"
    return "***"


class MeliConnectionLogger:
    """Bounded in-memory trail of recent MercadoLibre API events.

    The API client and the token provider record one entry per outbound call so
    the internal endpoints can show what happened during the last runs without
    querying the database. Credential fields are masked before storage.
    """

    def __init__(self, max_logs: int = 1000):
        self.logs = []
        self.max_logs = max_logs

    def log_meli_event(
        self,
        event_type: str,
        description: str,
        request_data: Optional[Dict[str, Any]] = None,
        response_data: Optional[Dict[str, Any]] = None,
        status: str = "info",
        error: Optional[str] = None,
    ) -> Dict[str, Any]:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event_type": event_type,
            "description": description,
            "request_data": self._sanitize_credentials(request_data) if request_data else None,
            "response_data": self._sanitize_credentials(response_data) if response_data else None,
            "status": status,
            "error": error,
        }

        self.logs.append(log_entry)
        if len(self.logs) > self.max_logs:
            self.logs.pop(0)

        log_msg = f"[{event_type}] {description}"
        if error:
            logger.error(f"{log_msg} - Error: {error}")
        elif status == "warning":
            logger.warning(log_msg)
        else:
            logger.info(log_msg)

        return log_entry

    def _sanitize_credentials(self, data: Dict[str, Any]) -> Dict[str, Any]:
        if not data:
            return {}
        sanitized = dict(data)
        for key in SENSITIVE_KEYS:
            if key in sanitized and sanitized[key] is not None:
                sanitized[key] = mask_secret(sanitized[key])
        return sanitized

    def get_logs(self, limit: Optional[int] = None) -> list:
        if limit:
            return self.logs[-limit:]
        return self.logs

    def clear_logs(self):
        self.logs = []
        logger.info("Cleared MercadoLibre connection logs")


meli_logger = MeliConnectionLogger()
