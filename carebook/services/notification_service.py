"""
Notification dispatch

The engine emits booking events (requested, accepted, cancelled, refunded,
disputed, ...) through a Notifier. Delivery itself (email, SMS, push) lives
outside this service; channels are plain callables registered at startup.
A failing channel is logged and never breaks the booking flow.
"""

import logging
from typing import Callable, Optional

logger = logging.getLogger(__name__)

Channel = Callable[[str, dict], None]


def log_channel(event: str, payload: dict) -> None:
    """Default channel: write the event to the application log"""
    logger.info(f"🔔 {event}: {payload}")


class Notifier:
    """Fan-out of booking events to registered delivery channels"""

    def __init__(self, channels: Optional[dict[str, Channel]] = None):
        self.channels: dict[str, Channel] = (
            dict(channels) if channels is not None else {"log": log_channel}
        )

    def register(self, name: str, channel: Channel) -> None:
        self.channels[name] = channel

    def notify(self, event: str, **payload) -> dict:
        """
        Send an event to every channel

        Returns:
            Dict of channel name -> True on success or the error message
        """
        result = {}
        for name, channel in self.channels.items():
            try:
                channel(event, payload)
                result[name] = True
            except Exception as e:
                result[name] = str(e)
                logger.error(f"❌ Failed to deliver {event} via {name}: {e}")
        return result


default_notifier = Notifier()
