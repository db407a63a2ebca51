"""Operator alerting for failures that should not stay buried in logs."""

from typing import Any, Mapping, Optional

import httpx

from cicero.main.config import Settings, get_settings
from cicero.main.logging import get_logger

logger = get_logger(__name__)

TELEGRAM_API_URL = "https://api.telegram.org"
MAX_ALERT_LENGTH = 3500


def format_alert(
    context: str,
    error: BaseException,
    extra: Optional[Mapping[str, Any]] = None,
) -> str:
    lines = [f"[cicero] {context}", f"{type(error).__name__}: {error}"]
    for key, value in (extra or {}).items():
        lines.append(f"{key}: {value}")
    return "\n".join(lines)[:MAX_ALERT_LENGTH]


class LoggingAlertSink:
    async def alert_on_error(
        self,
        context: str,
        error: BaseException,
        extra: Optional[Mapping[str, Any]] = None,
    ) -> None:
        logger.error(
            "Operator alert",
            extra={
                "alert_context": context,
                "error": f"{type(error).__name__}: {error}",
                **{f"alert_{key}": value for key, value in (extra or {}).items()},
            },
        )


class TelegramAlertSink:
    """Sends alerts to a Telegram chat. Failures to send are only logged."""

    def __init__(
        self,
        bot_token: str,
        chat_id: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ):
        self._url = f"{TELEGRAM_API_URL}/bot{bot_token}/sendMessage"
        self._chat_id = chat_id
        self._client = client
        self._timeout = timeout
        self._fallback = LoggingAlertSink()

    async def alert_on_error(
        self,
        context: str,
        error: BaseException,
        extra: Optional[Mapping[str, Any]] = None,
    ) -> None:
        await self._fallback.alert_on_error(context, error, extra)

        payload = {"chat_id": self._chat_id, "text": format_alert(context, error, extra)}
        try:
            if self._client is not None:
                response = await self._client.post(self._url, json=payload, timeout=self._timeout)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.post(self._url, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning(
                "Failed to deliver Telegram alert",
                extra={"error": str(exc), "alert_context": context},
            )


def build_alert_sink(settings: Settings | None = None):
    settings = settings or get_settings()
    if settings.telegram_bot_token and settings.telegram_chat_id:
        return TelegramAlertSink(settings.telegram_bot_token, settings.telegram_chat_id)
    return LoggingAlertSink()
